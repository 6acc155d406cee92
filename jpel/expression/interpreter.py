"""Tree-walking interpreter for parsed JPEL scripts."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from ..errors import ExpressionEvaluationFailed
from ..models import PassFail, ProcessInstance
from . import nodes
from .builtins import FUNCTIONS, Builtin, console, method_for
from .references import resolve_reference
from .values import arithmetic, compare, loose_equals, strict_equals, to_number, to_string, truthy

logger = logging.getLogger(__name__)

PASS_FAIL_PROPS = ("passFail", "pass_fail")
READ_ONLY_PROPS = ("status", "id", "type")
# Largest gap an index assignment may leave between the end of an array and the new item.
MAX_ARRAY_GAP = 1000


class ReturnSignal(Exception):
    """Unwinds script execution on ``return``."""

    def __init__(self, value: Any):
        super().__init__("return")
        self.value = value


class Scope:
    """Reads and writes references against one instance snapshot."""

    def __init__(
        self,
        instance: ProcessInstance,
        environment: Mapping[str, str],
        current_activity_id: Optional[str] = None,
    ):
        self.instance = instance
        self.environment = environment
        self.current_activity_id = current_activity_id
        self.this: Dict[str, Any] = {}
        self.assigned: List[str] = []
        current = instance.activity(current_activity_id) if current_activity_id else None
        if current is not None:
            self.this.update(current.variable_map())
            if current.pass_fail is not None:
                self.this["passFail"] = current.pass_fail.value

    # ------------------------------------------------------------------
    # Reads
    def process_var(self, name: str) -> Any:
        return self.instance.variables.get(name)

    def activity_var(self, activity_id: str, name: str) -> Any:
        activity = self.instance.activity(activity_id)
        if activity is None:
            return None
        return activity.variable_map().get(name)

    def activity_prop(self, activity_id: str, prop: str) -> Any:
        activity = self.instance.activity(activity_id)
        if activity is None:
            return None
        if prop in PASS_FAIL_PROPS:
            return activity.pass_fail.value if activity.pass_fail else None
        if prop == "status":
            return activity.status.value
        if prop == "id":
            return activity.id
        return activity.variable_map().get(prop)

    def env(self, name: str) -> Any:
        return self.environment.get(name)

    # ------------------------------------------------------------------
    # Writes
    def set_process_var(self, name: str, value: Any) -> None:
        self.instance.variables[name] = value

    def set_activity_var(self, activity_id: str, name: str, value: Any) -> None:
        activity = self.instance.activity(activity_id)
        if activity is None:
            raise ExpressionEvaluationFailed(f"Unknown activity '{activity_id}'")
        activity.set_variable(name, value)

    def set_activity_prop(self, activity_id: str, prop: str, value: Any) -> None:
        activity = self.instance.activity(activity_id)
        if activity is None:
            raise ExpressionEvaluationFailed(f"Unknown activity '{activity_id}'")
        if prop in READ_ONLY_PROPS:
            raise ExpressionEvaluationFailed(f"Property '{prop}' of '{activity_id}' is read-only")
        if prop in PASS_FAIL_PROPS:
            activity.pass_fail = _pass_fail(value)
            return
        activity.set_variable(prop, value)

    def set_this(self, prop: str, value: Any) -> None:
        if prop in PASS_FAIL_PROPS:
            result = _pass_fail(value)
            value = result.value if result else None
            if self.current_activity_id:
                self.instance.activity(self.current_activity_id).pass_fail = result
        self.this[prop] = value
        if prop not in self.assigned:
            self.assigned.append(prop)


def _pass_fail(value: Any) -> Optional[PassFail]:
    if value is None:
        return None
    if isinstance(value, bool):
        return PassFail.PASS if value else PassFail.FAIL
    try:
        return PassFail(to_string(value).lower())
    except ValueError as exc:
        raise ExpressionEvaluationFailed(
            f"passFail must be 'pass' or 'fail', got '{to_string(value)}'"
        ) from exc


class Interpreter:
    def __init__(self, scope: Scope):
        self.scope = scope
        self.globals: Dict[str, Any] = dict(FUNCTIONS)
        self.globals["getValue"] = Builtin("getValue", self._get_value)
        self.globals["console"] = console(self._log)

    def run(self, script: nodes.Script) -> None:
        for statement in script.statements:
            self.execute(statement)

    def execute(self, node: nodes.Node) -> None:
        if isinstance(node, nodes.Return):
            raise ReturnSignal(None if node.value is None else self.eval(node.value))
        if isinstance(node, nodes.Assign):
            self._assign(node)
        else:
            self.eval(node)

    def eval(self, node: nodes.Node) -> Any:
        handler = getattr(self, f"_eval_{type(node).__name__}", None)
        if handler is None:
            raise ExpressionEvaluationFailed(f"Unsupported construct {type(node).__name__}")
        return handler(node)

    # ------------------------------------------------------------------
    def _eval_Literal(self, node: nodes.Literal) -> Any:
        return node.value

    def _eval_ProcessVar(self, node: nodes.ProcessVar) -> Any:
        return self.scope.process_var(node.name)

    def _eval_ActivityVar(self, node: nodes.ActivityVar) -> Any:
        return self.scope.activity_var(node.activity_id, node.name)

    def _eval_ActivityProp(self, node: nodes.ActivityProp) -> Any:
        return self.scope.activity_prop(node.activity_id, node.prop)

    def _eval_EnvRef(self, node: nodes.EnvRef) -> Any:
        return self.scope.env(node.name)

    def _eval_Name(self, node: nodes.Name) -> Any:
        if node.name == "this":
            return self.scope.this
        if node.name == "process":
            return self.scope.instance.variables
        if node.name in self.globals:
            return self.globals[node.name]
        raise ExpressionEvaluationFailed(f"'{node.name}' is not defined")

    def _eval_Member(self, node: nodes.Member) -> Any:
        return self._property(self.eval(node.obj), node.name)

    def _eval_Index(self, node: nodes.Index) -> Any:
        obj = self.eval(node.obj)
        key = self.eval(node.key)
        if isinstance(obj, (list, str)):
            index = to_number(key)
            if isinstance(index, int) and 0 <= index < len(obj):
                return obj[index]
            return None
        return self._property(obj, to_string(key))

    def _eval_Call(self, node: nodes.Call) -> Any:
        if isinstance(node.callee, nodes.Member):
            obj = self.eval(node.callee.obj)
            func = self._property(obj, node.callee.name) if isinstance(obj, dict) else None
            if not isinstance(func, Builtin):
                func = method_for(obj, node.callee.name)
            label = node.callee.name
        else:
            func = self.eval(node.callee)
            label = getattr(node.callee, "name", "expression")
        if not isinstance(func, Builtin):
            raise ExpressionEvaluationFailed(f"'{label}' is not a function")
        return func(*(self.eval(arg) for arg in node.args))

    def _eval_Unary(self, node: nodes.Unary) -> Any:
        value = self.eval(node.operand)
        if node.op == "!":
            return not truthy(value)
        number = to_number(value)
        return -number if node.op == "-" else number

    def _eval_Binary(self, node: nodes.Binary) -> Any:
        left = self.eval(node.left)
        right = self.eval(node.right)
        op = node.op
        if op == "===":
            return strict_equals(left, right)
        if op == "!==":
            return not strict_equals(left, right)
        if op == "==":
            return loose_equals(left, right)
        if op == "!=":
            return not loose_equals(left, right)
        if op in ("<", "<=", ">", ">="):
            return compare(op, left, right)
        return arithmetic(op, left, right)

    def _eval_Logical(self, node: nodes.Logical) -> Any:
        left = self.eval(node.left)
        if node.op == "&&":
            return self.eval(node.right) if truthy(left) else left
        return left if truthy(left) else self.eval(node.right)

    def _eval_Conditional(self, node: nodes.Conditional) -> Any:
        if truthy(self.eval(node.test)):
            return self.eval(node.then)
        return self.eval(node.otherwise)

    def _eval_ArrayLit(self, node: nodes.ArrayLit) -> Any:
        return [self.eval(item) for item in node.items]

    def _eval_ObjectLit(self, node: nodes.ObjectLit) -> Any:
        return {key: self.eval(value) for key, value in node.pairs}

    # ------------------------------------------------------------------
    def _property(self, obj: Any, name: str) -> Any:
        if obj is None:
            raise ExpressionEvaluationFailed(f"Cannot read property '{name}' of null")
        if isinstance(obj, dict):
            return obj.get(name)
        if name == "length" and isinstance(obj, (str, list)):
            return len(obj)
        return None

    def _assign(self, node: nodes.Assign) -> None:
        value = self.eval(node.value)
        if node.op != "=":
            current = self.eval(node.target)
            value = arithmetic(node.op[0], current, value)
        target = node.target
        scope = self.scope
        if isinstance(target, nodes.ProcessVar):
            scope.set_process_var(target.name, value)
        elif isinstance(target, nodes.ActivityVar):
            scope.set_activity_var(target.activity_id, target.name, value)
        elif isinstance(target, nodes.ActivityProp):
            scope.set_activity_prop(target.activity_id, target.prop, value)
        elif isinstance(target, nodes.Member) and target.obj == nodes.Name("this"):
            scope.set_this(target.name, value)
        elif isinstance(target, nodes.Member) and target.obj == nodes.Name("process"):
            scope.set_process_var(target.name, value)
        elif isinstance(target, (nodes.Member, nodes.Index)):
            self._assign_item(target, value)
        elif isinstance(target, nodes.EnvRef):
            raise ExpressionEvaluationFailed(f"env:{target.name} is read-only")
        else:
            raise ExpressionEvaluationFailed("Invalid assignment target")

    def _assign_item(self, target: nodes.Node, value: Any) -> None:
        container = self.eval(target.obj)
        if isinstance(target, nodes.Member):
            key: Any = target.name
        else:
            key = self.eval(target.key)
        if isinstance(container, dict):
            container[to_string(key)] = value
        elif isinstance(container, list):
            index = to_number(key)
            if not isinstance(index, int) or index < 0:
                raise ExpressionEvaluationFailed(f"Invalid array index '{to_string(key)}'")
            if index - len(container) > MAX_ARRAY_GAP:
                raise ExpressionEvaluationFailed(
                    f"Array index {index} is too far past the end (length {len(container)})"
                )
            container.extend([None] * (index + 1 - len(container)))
            container[index] = value
        else:
            raise ExpressionEvaluationFailed("Cannot assign a property of a non-object value")

    # ------------------------------------------------------------------
    def _get_value(self, ref: Any) -> Any:
        return resolve_reference(to_string(ref), self.scope)

    def _log(self, *args: Any) -> None:
        message = " ".join(to_string(arg) for arg in args)
        logger.info(f"[{self.scope.instance.instance_id}] {message}")
