"""Error taxonomy for the JPEL runtime."""

from __future__ import annotations

from typing import Dict, List, Optional


class JpelError(Exception):
    """Base class for all runtime errors raised by jpel."""

    #: Activity the error is attributed to, when known.
    activity_id: Optional[str] = None


class DefinitionInvalid(JpelError):
    """A process definition failed structural validation."""

    def __init__(self, errors: List[str], message: Optional[str] = None):
        self.errors = list(errors)
        super().__init__(message or "Invalid process definition: " + "; ".join(self.errors))


class ProcessNotFound(JpelError):
    def __init__(self, process_id: str):
        self.process_id = process_id
        super().__init__(f"Process '{process_id}' not found")


class InstanceNotFound(JpelError):
    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Process instance '{instance_id}' not found")


class ActivityNotFound(JpelError):
    def __init__(self, activity_id: str):
        self.activity_id = activity_id
        super().__init__(f"Activity '{activity_id}' not found")


class ActivityNotWaiting(JpelError):
    """Submission targeted an activity that is not a running human task."""


class FieldValidationFailed(JpelError):
    def __init__(self, errors: Dict[str, List[str]]):
        self.errors = errors
        details = "; ".join(
            f"{name}: {', '.join(messages)}" for name, messages in errors.items()
        )
        super().__init__(f"Field validation failed: {details}")


class ExpressionEvaluationFailed(JpelError):
    """A script or condition could not be parsed or evaluated."""


class NoMatchingCase(JpelError):
    def __init__(self, switch_id: str, value: str):
        self.switch_id = switch_id
        self.activity_id = switch_id
        self.value = value
        super().__init__(
            f"No matching case for value '{value}' in switch '{switch_id}' and no default"
        )


class UnknownActivityType(JpelError):
    def __init__(self, activity_id: str, activity_type: str):
        self.activity_id = activity_id
        self.activity_type = activity_type
        super().__init__(f"Unknown activity type '{activity_type}' for '{activity_id}'")


class ExternalCallFailed(JpelError):
    """An outbound call timed out or could not be delivered."""


class FlowError(JpelError):
    """Routing could not determine a consistent next activity."""


__all__ = [
    "JpelError",
    "DefinitionInvalid",
    "ProcessNotFound",
    "InstanceNotFound",
    "ActivityNotFound",
    "ActivityNotWaiting",
    "FieldValidationFailed",
    "ExpressionEvaluationFailed",
    "NoMatchingCase",
    "UnknownActivityType",
    "ExternalCallFailed",
    "FlowError",
]
