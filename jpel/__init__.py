"""jpel: a runtime for JPEL process definitions."""

from .engine import ProcessEngine
from .expression import ExpressionEvaluator
from .flow import FlowResolver
from .loader import load_definition, normalize, validate
from .persistence import get_repositories

__version__ = "0.1.0"
__all__ = [
    "ProcessEngine",
    "ExpressionEvaluator",
    "FlowResolver",
    "load_definition",
    "normalize",
    "validate",
    "get_repositories",
]
