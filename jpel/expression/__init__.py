"""JPEL: the reference and expression language used inside processes."""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional

from ..errors import ExpressionEvaluationFailed
from ..models import ProcessInstance
from .interpreter import PASS_FAIL_PROPS, Interpreter, ReturnSignal, Scope
from .parser import parse_expression, parse_script
from .references import resolve_reference, substitute
from .values import canonical, truthy


class ExpressionEvaluator:
    """Evaluate conditions and run scripts against a process instance.

    ``environment`` backs ``env:NAME`` references and is never written to.
    """

    def __init__(self, environment: Optional[Mapping[str, str]] = None):
        self.environment: Mapping[str, str] = MappingProxyType(dict(environment or {}))

    def scope(self, instance: ProcessInstance, current_activity_id: Optional[str] = None) -> Scope:
        return Scope(instance, self.environment, current_activity_id)

    def evaluate(self, expression: str, instance: ProcessInstance) -> Any:
        node = parse_expression(expression)
        return Interpreter(self.scope(instance)).eval(node)

    def evaluate_condition(self, expression: str, instance: ProcessInstance) -> bool:
        try:
            return truthy(self.evaluate(expression, instance))
        except ExpressionEvaluationFailed as exc:
            raise ExpressionEvaluationFailed(f"Condition evaluation failed: {exc}") from exc

    def execute_script(
        self,
        lines: Iterable[str],
        instance: ProcessInstance,
        current_activity_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run script lines and return the values the script produced.

        Produced values are the properties assigned on ``this``; failing
        that, a returned object, or ``{"result": value}`` for any other
        returned value. Writes to references land on ``instance`` directly.
        """

        scope = self.scope(instance, current_activity_id)
        interpreter = Interpreter(scope)
        returned: Any = None
        try:
            for line in lines:
                if line.strip():
                    interpreter.run(parse_script(line))
        except ReturnSignal as signal:
            returned = signal.value
        except ExpressionEvaluationFailed as exc:
            raise ExpressionEvaluationFailed(f"Code execution failed: {exc}") from exc

        if scope.assigned:
            return {
                name: scope.this[name]
                for name in scope.assigned
                if name not in PASS_FAIL_PROPS
            }
        if isinstance(returned, dict):
            return returned
        if returned is not None:
            return {"result": returned}
        return {}

    def substitute(self, text: str, instance: ProcessInstance) -> str:
        return substitute(text, self.scope(instance))

    def resolve(self, ref: str, instance: ProcessInstance) -> Any:
        return resolve_reference(ref, self.scope(instance))

    def switch_value(self, expression: str, instance: ProcessInstance) -> str:
        """Evaluate a switch expression into its case-matching string."""
        try:
            return canonical(self.evaluate(expression, instance))
        except ExpressionEvaluationFailed as exc:
            raise ExpressionEvaluationFailed(f"Switch evaluation failed: {exc}") from exc


__all__ = [
    "ExpressionEvaluator",
    "parse_expression",
    "parse_script",
    "resolve_reference",
    "substitute",
]
