"""Executor for api activities."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .config import HttpConfig
from .errors import ExternalCallFailed
from .expression import ExpressionEvaluator
from .models import ApiActivity, ProcessInstance

logger = logging.getLogger(__name__)


class ApiExecutor:
    """Perform the outbound request described by an api activity.

    HTTP error statuses are returned as data. Only timeouts and transport
    failures raise ``ExternalCallFailed``.
    """

    def __init__(
        self,
        evaluator: Optional[ExpressionEvaluator] = None,
        config: Optional[HttpConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.evaluator = evaluator or ExpressionEvaluator()
        self.config = config or HttpConfig()
        self._transport = transport

    def _substitute(self, value: Any, instance: ProcessInstance) -> Any:
        if isinstance(value, str):
            return self.evaluator.substitute(value, instance)
        if isinstance(value, dict):
            return {key: self._substitute(item, instance) for key, item in value.items()}
        if isinstance(value, list):
            return [self._substitute(item, instance) for item in value]
        return value

    def build_request(self, activity: ApiActivity, instance: ProcessInstance) -> Dict[str, Any]:
        """Resolve references in every request field."""
        request: Dict[str, Any] = {
            "method": activity.method.value,
            "url": self._substitute(activity.url, instance),
            "headers": self._substitute(dict(activity.headers), instance),
            "params": self._substitute(dict(activity.query_params), instance),
        }
        if activity.body is not None and activity.method.value != "GET":
            body = self._substitute(activity.body, instance)
            if isinstance(body, (dict, list)):
                request["json"] = body
            else:
                request["content"] = str(body)
        return request

    async def execute(self, activity: ApiActivity, instance: ProcessInstance) -> Dict[str, Any]:
        request = self.build_request(activity, instance)
        timeout = activity.timeout or self.config.timeout
        logger.info(f"Calling {request['method']} {request['url']} for activity {activity.id}")
        try:
            async with httpx.AsyncClient(
                timeout=timeout, verify=self.config.verify, transport=self._transport
            ) as client:
                response = await client.request(**request)
        except httpx.TimeoutException as exc:
            raise ExternalCallFailed(
                f"Request to {request['url']} timed out after {timeout}s"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalCallFailed(f"Request to {request['url']} failed: {exc}") from exc

        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        logger.info(f"Activity {activity.id} received HTTP {response.status_code}")
        return {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "headers": dict(response.headers),
            "data": data,
        }
