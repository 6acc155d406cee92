"""Allow-listed functions and methods callable from scripts."""

from __future__ import annotations

import json
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from ..errors import ExpressionEvaluationFailed
from .values import is_number, normalize_number, to_number, to_string, truthy


class Builtin:
    """Marks a Python callable as reachable from script code."""

    __slots__ = ("name", "func")

    def __init__(self, name: str, func: Callable[..., Any]):
        self.name = name
        self.func = func

    def __call__(self, *args: Any) -> Any:
        try:
            return self.func(*args)
        except ExpressionEvaluationFailed:
            raise
        except (TypeError, ValueError, OverflowError, IndexError, KeyError) as exc:
            raise ExpressionEvaluationFailed(f"{self.name}() failed: {exc}") from exc

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"<builtin {self.name}>"


def _round(value: Any) -> Any:
    return normalize_number(math.floor(to_number(value) + 0.5))


def _parse_int(value: Any, radix: Any = 10) -> Any:
    text = to_string(value).strip()
    sign = 1
    if text and text[0] in "+-":
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    digits = ""
    base = int(radix)
    for char in text:
        if char.isalnum() and int(char, 36) < base:
            digits += char
        else:
            break
    return sign * int(digits, base) if digits else math.nan


def _parse_float(value: Any) -> Any:
    text = to_string(value).strip()
    end = len(text)
    while end > 0:
        try:
            return normalize_number(float(text[:end]))
        except ValueError:
            end -= 1
    return math.nan


def _is_nan(value: Any) -> bool:
    number = to_number(value)
    return isinstance(number, float) and math.isnan(number)


def _json_parse(text: Any) -> Any:
    try:
        return json.loads(to_string(text))
    except json.JSONDecodeError as exc:
        raise ExpressionEvaluationFailed(f"JSON.parse failed: {exc}") from exc


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    text = to_string(value)
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return date.fromisoformat(text[:10])


def _days_between(start: Any, end: Any) -> int:
    return (_to_date(end) - _to_date(start)).days


def _add_days(value: Any, days: Any) -> str:
    return (_to_date(value) + timedelta(days=int(to_number(days)))).isoformat()


def _ns(name: str, **members: Any) -> Dict[str, Any]:
    return {
        key: Builtin(f"{name}.{key}", value) if callable(value) else value
        for key, value in members.items()
    }


MATH = _ns(
    "Math",
    round=_round,
    floor=lambda x: normalize_number(math.floor(to_number(x))),
    ceil=lambda x: normalize_number(math.ceil(to_number(x))),
    abs=lambda x: abs(to_number(x)),
    min=lambda *xs: min(to_number(x) for x in xs),
    max=lambda *xs: max(to_number(x) for x in xs),
    pow=lambda x, y: normalize_number(math.pow(to_number(x), to_number(y))),
    sqrt=lambda x: normalize_number(math.sqrt(to_number(x))),
    PI=math.pi,
)

JSON = _ns(
    "JSON",
    stringify=lambda value: json.dumps(value, separators=(",", ":"), default=str),
    parse=_json_parse,
)

OBJECT = _ns(
    "Object",
    keys=lambda obj: list(obj.keys()) if isinstance(obj, dict) else [],
    values=lambda obj: list(obj.values()) if isinstance(obj, dict) else [],
)

FUNCTIONS: Dict[str, Any] = {
    "Math": MATH,
    "JSON": JSON,
    "Object": OBJECT,
    "String": Builtin("String", lambda value="": to_string(value)),
    "Number": Builtin("Number", lambda value=0: to_number(value)),
    "Boolean": Builtin("Boolean", lambda value=False: truthy(value)),
    "parseInt": Builtin("parseInt", _parse_int),
    "parseFloat": Builtin("parseFloat", _parse_float),
    "isNaN": Builtin("isNaN", _is_nan),
    "now": Builtin("now", lambda: datetime.now(timezone.utc).isoformat()),
    "today": Builtin("today", lambda: date.today().isoformat()),
    "daysBetween": Builtin("daysBetween", _days_between),
    "addDays": Builtin("addDays", _add_days),
}


def _replace(text: str, old: Any, new: Any) -> str:
    return text.replace(to_string(old), to_string(new), 1)


def _substring(text: str, start: Any, end: Any = None) -> str:
    begin = max(0, int(to_number(start)))
    stop = len(text) if end is None else max(0, int(to_number(end)))
    if begin > stop:
        begin, stop = stop, begin
    return text[begin:stop]


def _slice(seq: Any, start: Any = 0, end: Any = None) -> Any:
    begin = int(to_number(start))
    return seq[begin:] if end is None else seq[begin:int(to_number(end))]


def _index_of(seq: Any, item: Any) -> int:
    try:
        return seq.index(to_string(item) if isinstance(seq, str) else item)
    except ValueError:
        return -1


def _to_fixed(number: Any, digits: Any = 0) -> str:
    return f"{to_number(number):.{int(to_number(digits))}f}"


STRING_METHODS: Dict[str, Callable[..., Any]] = {
    "toUpperCase": lambda s: s.upper(),
    "toLowerCase": lambda s: s.lower(),
    "trim": lambda s: s.strip(),
    "includes": lambda s, sub: to_string(sub) in s,
    "startsWith": lambda s, sub: s.startswith(to_string(sub)),
    "endsWith": lambda s, sub: s.endswith(to_string(sub)),
    "indexOf": _index_of,
    "split": lambda s, sep=None: list(s) if sep == "" else s.split(to_string(sep)) if sep is not None else [s],
    "substring": _substring,
    "slice": _slice,
    "replace": _replace,
    "replaceAll": lambda s, old, new: s.replace(to_string(old), to_string(new)),
    "padStart": lambda s, width, fill=" ": s.rjust(int(to_number(width)), to_string(fill)[:1] or " "),
    "charAt": lambda s, i=0: s[int(to_number(i))] if 0 <= int(to_number(i)) < len(s) else "",
    "toString": lambda s: s,
}

LIST_METHODS: Dict[str, Callable[..., Any]] = {
    "includes": lambda seq, item: item in seq,
    "indexOf": _index_of,
    "join": lambda seq, sep=",": to_string(sep).join(to_string(item) for item in seq),
    "slice": _slice,
    "concat": lambda seq, *others: seq + [x for other in others for x in (other if isinstance(other, list) else [other])],
    "toString": lambda seq: ",".join(to_string(item) for item in seq),
}

NUMBER_METHODS: Dict[str, Callable[..., Any]] = {
    "toFixed": _to_fixed,
    "toString": lambda n: to_string(n),
}


def method_for(value: Any, name: str) -> Optional[Builtin]:
    """Return the bound allow-listed method ``name`` of ``value``."""
    if isinstance(value, str):
        table = STRING_METHODS
    elif isinstance(value, list):
        table = LIST_METHODS
    elif is_number(value):
        table = NUMBER_METHODS
    elif isinstance(value, bool):
        table = {"toString": to_string}
    else:
        return None
    func = table.get(name)
    if func is None:
        return None
    return Builtin(name, lambda *args: func(value, *args))


def console(log: Callable[..., None]) -> Dict[str, Any]:
    return _ns("console", log=log, info=log, warn=log, error=log)
