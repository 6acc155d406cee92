"""Lark grammar and tree builder for JPEL."""

from __future__ import annotations

import re
from functools import lru_cache

from lark import Lark, Transformer, v_args
from lark.exceptions import LarkError

from ..errors import ExpressionEvaluationFailed
from . import nodes

GRAMMAR = r"""
script: [statement] (";" [statement])*

?statement: return_stmt
          | assignment
          | expression

return_stmt: "return" [expression]

assignment: postfix "=" expression   -> assign
          | postfix "+=" expression  -> assign_add
          | postfix "-=" expression  -> assign_sub

?expression: conditional

?conditional: or_test
            | or_test "?" expression ":" expression -> ternary

?or_test: and_test
        | or_test "||" and_test -> or_

?and_test: equality
         | and_test "&&" equality -> and_

?equality: relation
         | equality "===" relation -> strict_eq
         | equality "!==" relation -> strict_ne
         | equality "==" relation -> eq
         | equality "!=" relation -> ne

?relation: additive
         | relation "<" additive -> lt
         | relation "<=" additive -> le
         | relation ">" additive -> gt
         | relation ">=" additive -> ge

?additive: multiplicative
         | additive "+" multiplicative -> add
         | additive "-" multiplicative -> sub

?multiplicative: unary
               | multiplicative "*" unary -> mul
               | multiplicative "/" unary -> div
               | multiplicative "%" unary -> mod

?unary: postfix
      | "!" unary -> not_
      | "-" unary -> neg
      | "+" unary -> pos

?postfix: atom
        | postfix "." NAME -> member
        | postfix "[" expression "]" -> index
        | postfix "(" [arguments] ")" -> call

arguments: expression ("," expression)*

?atom: NUMBER -> number
     | STRING -> string
     | "true" -> true
     | "false" -> false
     | "null" -> null
     | "undefined" -> null
     | ACTIVITY_REF -> activity_ref
     | PROCESS_REF -> process_ref
     | ENV_REF -> env_ref
     | NAME -> name
     | "(" expression ")"
     | "[" [arguments] "]" -> array
     | "{" [pairs] "}" -> object

pairs: pair ("," pair)*
pair: (NAME | STRING) ":" expression

ACTIVITY_REF.3: /a:[A-Za-z0-9_-]+\.(?:[vf]:[A-Za-z0-9_-]+|[A-Za-z_][A-Za-z0-9_]*)/
PROCESS_REF.3: /(?:var|v):[A-Za-z0-9_-]+/
ENV_REF.3: /env:[A-Za-z_][A-Za-z0-9_]*/
NAME: /[A-Za-z_$][A-Za-z0-9_$]*/
NUMBER: /\d+(?:\.\d+)?(?:[eE][+-]?\d+)?/
STRING: /"(?:[^"\\]|\\.)*"/ | /'(?:[^'\\]|\\.)*'/

%import common.WS
%ignore WS
"""

_ACTIVITY_REF = re.compile(
    r"a:(?P<activity>[A-Za-z0-9_-]+)\.(?:(?P<scope>[vf]):(?P<name>[A-Za-z0-9_-]+)|(?P<prop>[A-Za-z_][A-Za-z0-9_]*))"
)
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "0": "\0"}
_ESCAPE = re.compile(r"\\(.)", re.DOTALL)


def unquote(token: str) -> str:
    """Decode a quoted string literal."""
    return _ESCAPE.sub(lambda m: _ESCAPES.get(m.group(1), m.group(1)), token[1:-1])


def activity_reference(text: str) -> nodes.Node:
    match = _ACTIVITY_REF.fullmatch(text)
    if match is None:
        raise ExpressionEvaluationFailed(f"Malformed activity reference '{text}'")
    if match.group("scope"):
        return nodes.ActivityVar(match.group("activity"), match.group("name"))
    return nodes.ActivityProp(match.group("activity"), match.group("prop"))


def _binary(op: str):
    return lambda self, left, right: nodes.Binary(op, left, right)


def _logical(op: str):
    return lambda self, left, right: nodes.Logical(op, left, right)


def _assign(op: str):
    return lambda self, target, value: nodes.Assign(target, op, value)


@v_args(inline=True)
class _TreeBuilder(Transformer):
    """Turn the Lark parse tree into immutable nodes."""

    def script(self, *statements):
        return nodes.Script(tuple(s for s in statements if s is not None))

    def return_stmt(self, value=None):
        return nodes.Return(value)

    assign = _assign("=")
    assign_add = _assign("+=")
    assign_sub = _assign("-=")

    def ternary(self, test, then, otherwise):
        return nodes.Conditional(test, then, otherwise)

    or_ = _logical("||")
    and_ = _logical("&&")
    strict_eq = _binary("===")
    strict_ne = _binary("!==")
    eq = _binary("==")
    ne = _binary("!=")
    lt = _binary("<")
    le = _binary("<=")
    gt = _binary(">")
    ge = _binary(">=")
    add = _binary("+")
    sub = _binary("-")
    mul = _binary("*")
    div = _binary("/")
    mod = _binary("%")

    def not_(self, operand):
        return nodes.Unary("!", operand)

    def neg(self, operand):
        return nodes.Unary("-", operand)

    def pos(self, operand):
        return nodes.Unary("+", operand)

    def member(self, obj, name):
        return nodes.Member(obj, str(name))

    def index(self, obj, key):
        return nodes.Index(obj, key)

    def call(self, callee, arguments=None):
        return nodes.Call(callee, tuple(arguments or ()))

    def arguments(self, *items):
        return list(items)

    def number(self, token):
        text = str(token)
        if "." in text or "e" in text or "E" in text:
            return nodes.Literal(float(text))
        return nodes.Literal(int(text))

    def string(self, token):
        return nodes.Literal(unquote(str(token)))

    def true(self):
        return nodes.Literal(True)

    def false(self):
        return nodes.Literal(False)

    def null(self):
        return nodes.Literal(None)

    def activity_ref(self, token):
        return activity_reference(str(token))

    def process_ref(self, token):
        return nodes.ProcessVar(str(token).split(":", 1)[1])

    def env_ref(self, token):
        return nodes.EnvRef(str(token)[len("env:"):])

    def name(self, token):
        return nodes.Name(str(token))

    def array(self, arguments=None):
        return nodes.ArrayLit(tuple(arguments or ()))

    def object(self, pairs=None):
        return nodes.ObjectLit(tuple(pairs or ()))

    def pairs(self, *items):
        return list(items)

    def pair(self, key, value):
        text = str(key)
        if key.type == "STRING":
            text = unquote(text)
        return (text, value)


_parser = Lark(GRAMMAR, parser="lalr", start=["script", "expression"])
_builder = _TreeBuilder()


def _parse(source: str, start: str) -> nodes.Node:
    try:
        tree = _parser.parse(source, start=start)
    except LarkError as exc:
        raise ExpressionEvaluationFailed(f"Syntax error in '{source}': {exc}") from exc
    return _builder.transform(tree)


@lru_cache(maxsize=1024)
def parse_script(source: str) -> nodes.Script:
    """Parse one script line (statements separated by ``;``)."""
    return _parse(source, "script")


@lru_cache(maxsize=1024)
def parse_expression(source: str) -> nodes.Node:
    return _parse(source, "expression")
