"""Sandboxed evaluation of conditional-bonus expressions.

Condition strings are stored in bonus catalogs using a JavaScript-style
expression syntax, for example::

    dice[0] >= 4 && dice[1] >= 4
    Math.max(...dice) - Math.min(...dice) <= 1
    familiars.every(f => f.element === 'Fire')
    familiars.filter(f => f.type === 'Beast').length >= 2

The strings are tokenized and parsed into a tree of Python closures; no host
``eval`` is involved. Only ``dice``, ``familiars``, ``Math``, a handful of
aggregate helpers and arrow-function parameters can be referenced. Any
syntax or runtime problem makes the condition evaluate to ``False``.
"""

from __future__ import annotations

import logging
import math
import re
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import fields, is_dataclass
from enum import Enum
from typing import Any, Final, NamedTuple, Optional

from .models import BonusContribution, ConditionalBonus, ConditionalTotals

logger = logging.getLogger(__name__)

Scope = dict[str, Any]
Node = Callable[[Scope], Any]
Predicate = Callable[[Sequence[int], Sequence[Any]], bool]


class ConditionError(ValueError):
    """Base class for condition problems; never escapes :func:`evaluate_condition`."""


class ConditionSyntaxError(ConditionError):
    """Raised when a condition string cannot be parsed."""


class ConditionEvaluationError(ConditionError):
    """Raised when a parsed condition fails while being evaluated."""


# ---- tokenizer ---------------------------------------------------------------


class Token(NamedTuple):
    kind: str
    value: Any
    position: int


_TOKEN_PATTERN: Final = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d*)?(?:[eE][+-]?\d+)?|\.\d+)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<name>[A-Za-z_$][A-Za-z0-9_$]*)
  | (?P<op>===|!==|\.\.\.|=>|==|!=|<=|>=|&&|\|\||[<>+\-*/%!?:.,()\[\]])
    """,
    re.VERBOSE,
)

_ESCAPES: Final[dict[str, str]] = {"n": "\n", "t": "\t", "r": "\r", "0": "\0"}


def _unescape(body: str) -> str:
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


def tokenize(source: str) -> list[Token]:
    """Split a condition string into tokens, ending with an ``eof`` token."""

    tokens: list[Token] = []
    position = 0
    length = len(source)
    while position < length:
        match = _TOKEN_PATTERN.match(source, position)
        if match is None:
            raise ConditionSyntaxError(
                f"Unexpected character {source[position]!r} at offset {position}"
            )
        kind = match.lastgroup
        text = match.group()
        if kind == "number":
            value: Any = float(text) if any(c in text for c in ".eE") else int(text)
            tokens.append(Token("number", value, position))
        elif kind == "string":
            tokens.append(Token("string", _unescape(text[1:-1]), position))
        elif kind == "name":
            tokens.append(Token("name", text, position))
        elif kind == "op":
            tokens.append(Token("op", text, position))
        position = match.end()
    tokens.append(Token("eof", None, length))
    return tokens


def references_name(condition: str, name: str) -> bool:
    """Return True when ``condition`` mentions ``name`` as a variable.

    Property names (``x.dice``) and string literals do not count. Strings
    that cannot be tokenized fall back to a whole-word text search.
    """

    try:
        tokens = tokenize(condition)
    except ConditionSyntaxError:
        return re.search(rf"\b{re.escape(name)}\b", condition) is not None
    previous: Optional[Token] = None
    for token in tokens:
        if token.kind == "name" and token.value == name:
            if not (previous is not None and previous.kind == "op" and previous.value == "."):
                return True
        previous = token
    return False


# ---- value semantics ---------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float))


def truthy(value: Any) -> bool:
    """JavaScript truthiness: arrays are truthy, ``0``/``""``/``NaN``/null are not."""

    if value is None or value is False:
        return False
    if value is True:
        return True
    if isinstance(value, (int, float)):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    if isinstance(value, str):
        return len(value) > 0
    return True


def _require_number(value: Any, operator: str) -> float:
    if not _is_number(value):
        raise ConditionEvaluationError(f"Operator {operator!r} needs numbers, got {value!r}")
    return value


def _to_text(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, list):
        return ",".join(_to_text(item) for item in value)
    return str(value)


def _add(left: Any, right: Any) -> Any:
    if isinstance(left, str) or isinstance(right, str):
        return _to_text(left) + _to_text(right)
    return _require_number(left, "+") + _require_number(right, "+")


def _divide(left: Any, right: Any) -> Any:
    numerator = _require_number(left, "/")
    denominator = _require_number(right, "/")
    if denominator == 0:
        if numerator == 0 or math.isnan(numerator):
            return math.nan
        return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)
    result = numerator / denominator
    return int(result) if isinstance(result, float) and result.is_integer() else result


def _modulo(left: Any, right: Any) -> Any:
    numerator = _require_number(left, "%")
    denominator = _require_number(right, "%")
    if denominator == 0:
        return math.nan
    result = math.fmod(numerator, denominator)
    if isinstance(numerator, int) and isinstance(denominator, int):
        return int(result)
    return result


def strict_equals(left: Any, right: Any) -> bool:
    """``===`` semantics over the value kinds a condition can produce."""

    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if left is None or right is None:
        return left is None and right is None
    return left is right


def _loose_number(value: Any) -> float:
    if isinstance(value, str):
        stripped = value.strip()
        return float(stripped) if stripped else 0.0
    return float(value)


def loose_equals(left: Any, right: Any) -> bool:
    """``==`` semantics: numbers, booleans and numeric strings coerce.

    A blank string compares as 0.
    """

    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, (int, float, str)) and isinstance(right, (int, float, str)):
        if isinstance(left, str) and isinstance(right, str):
            return left == right
        try:
            return _loose_number(left) == _loose_number(right)
        except ValueError:
            return False
    return strict_equals(left, right)


def _ordering(operator: str) -> Callable[[Any, Any], bool]:
    compare: Callable[[Any, Any], bool] = {
        "<": lambda a, b: a < b,
        "<=": lambda a, b: a <= b,
        ">": lambda a, b: a > b,
        ">=": lambda a, b: a >= b,
    }[operator]

    def ordered(left: Any, right: Any) -> bool:
        if left is None or right is None:
            return False
        if _is_number(left) and _is_number(right):
            return compare(left, right)
        if isinstance(left, str) and isinstance(right, str):
            return compare(left, right)
        raise ConditionEvaluationError(f"Cannot compare {left!r} {operator} {right!r}")

    return ordered


_BINARY_OPERATORS: Final[dict[str, Callable[[Any, Any], Any]]] = {
    "+": _add,
    "-": lambda a, b: _require_number(a, "-") - _require_number(b, "-"),
    "*": lambda a, b: _require_number(a, "*") * _require_number(b, "*"),
    "/": _divide,
    "%": _modulo,
    "===": strict_equals,
    "!==": lambda a, b: not strict_equals(a, b),
    "==": loose_equals,
    "!=": lambda a, b: not loose_equals(a, b),
    "<": _ordering("<"),
    "<=": _ordering("<="),
    ">": _ordering(">"),
    ">=": _ordering(">="),
}


# ---- callables visible to conditions -----------------------------------------


class _Builtin:
    """Host function exposed to conditions under a fixed name."""

    __slots__ = ("name", "function")

    def __init__(self, name: str, function: Callable[..., Any]) -> None:
        self.name = name
        self.function = function

    def __call__(self, *args: Any) -> Any:
        return self.function(*args)


class _ArrowFunction:
    """Arrow function closed over the scope it was created in."""

    __slots__ = ("params", "body", "scope")

    def __init__(self, params: tuple[str, ...], body: Node, scope: Scope) -> None:
        self.params = params
        self.body = body
        self.scope = scope

    def __call__(self, *args: Any) -> Any:
        local = dict(self.scope)
        for index, param in enumerate(self.params):
            local[param] = args[index] if index < len(args) else None
        return self.body(local)


def _invoke(function: Any, *args: Any) -> Any:
    if not isinstance(function, (_Builtin, _ArrowFunction)):
        raise ConditionEvaluationError(f"{function!r} is not a function")
    return function(*args)


def _numbers(values: Sequence[Any], name: str) -> list[float]:
    for value in values:
        if not _is_number(value):
            raise ConditionEvaluationError(f"{name} expects numbers, got {value!r}")
    return list(values)


def _math_round(value: Any) -> Any:
    return math.floor(_require_number(value, "Math.round") + 0.5)


class _MathNamespace:
    """The ``Math`` object; only a few pure functions are reachable."""

    members: Final[dict[str, _Builtin]] = {
        "max": _Builtin("max", lambda *a: max(_numbers(a, "Math.max"), default=-math.inf)),
        "min": _Builtin("min", lambda *a: min(_numbers(a, "Math.min"), default=math.inf)),
        "abs": _Builtin("abs", lambda v: abs(_require_number(v, "Math.abs"))),
        "floor": _Builtin("floor", lambda v: math.floor(_require_number(v, "Math.floor"))),
        "ceil": _Builtin("ceil", lambda v: math.ceil(_require_number(v, "Math.ceil"))),
        "round": _Builtin("round", _math_round),
    }


_MATH: Final = _MathNamespace()


def _aggregate_values(args: tuple[Any, ...]) -> Sequence[Any]:
    if len(args) == 1 and isinstance(args[0], list):
        return args[0]
    return args


def _require_list(value: Any, name: str) -> list[Any]:
    if not isinstance(value, list):
        raise ConditionEvaluationError(f"{name} expects an array, got {value!r}")
    return value


def _count(items: Any, predicate: Any = None) -> int:
    values = _require_list(items, "count")
    if predicate is None:
        return sum(1 for item in values if truthy(item))
    return sum(1 for i, item in enumerate(values) if truthy(_invoke(predicate, item, i, values)))


def _all(items: Any, predicate: Any = None) -> bool:
    values = _require_list(items, "all")
    if predicate is None:
        return all(truthy(item) for item in values)
    return all(truthy(_invoke(predicate, item, i, values)) for i, item in enumerate(values))


def _any(items: Any, predicate: Any = None) -> bool:
    values = _require_list(items, "any")
    if predicate is None:
        return any(truthy(item) for item in values)
    return any(truthy(_invoke(predicate, item, i, values)) for i, item in enumerate(values))


_GLOBALS: Final[dict[str, Any]] = {
    "Math": _MATH,
    "sum": _Builtin("sum", lambda *a: sum(_numbers(_aggregate_values(a), "sum"))),
    "min": _Builtin("min", lambda *a: min(_numbers(_aggregate_values(a), "min"))),
    "max": _Builtin("max", lambda *a: max(_numbers(_aggregate_values(a), "max"))),
    "count": _Builtin("count", _count),
    "all": _Builtin("all", _all),
    "any": _Builtin("any", _any),
}

_CONSTANTS: Final[dict[str, Any]] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "NaN": math.nan,
    "Infinity": math.inf,
}

BOUND_NAMES: Final[tuple[str, ...]] = ("dice", "familiars")


def _array_method(items: list[Any], name: str) -> _Builtin:
    def each(function: Any) -> list[Any]:
        return [_invoke(function, item, i, items) for i, item in enumerate(items)]

    def find(predicate: Any) -> Any:
        for i, item in enumerate(items):
            if truthy(_invoke(predicate, item, i, items)):
                return item
        return None

    def find_index(predicate: Any) -> int:
        for i, item in enumerate(items):
            if truthy(_invoke(predicate, item, i, items)):
                return i
        return -1

    def index_of(value: Any) -> int:
        for i, item in enumerate(items):
            if strict_equals(item, value):
                return i
        return -1

    def reduce(function: Any, *initial: Any) -> Any:
        if initial:
            accumulator, start = initial[0], 0
        elif items:
            accumulator, start = items[0], 1
        else:
            raise ConditionEvaluationError("reduce of empty array with no initial value")
        for i in range(start, len(items)):
            accumulator = _invoke(function, accumulator, items[i], i, items)
        return accumulator

    def slice_(start: Any = None, end: Any = None) -> list[Any]:
        lower = None if start is None else int(_require_number(start, "slice"))
        upper = None if end is None else int(_require_number(end, "slice"))
        return items[lower:upper]

    methods: dict[str, Callable[..., Any]] = {
        "every": lambda f: all(truthy(v) for v in each(f)),
        "some": lambda f: any(truthy(v) for v in each(f)),
        "filter": lambda f: [item for item, keep in zip(items, each(f)) if truthy(keep)],
        "map": each,
        "find": find,
        "findIndex": find_index,
        "includes": lambda value: index_of(value) >= 0,
        "indexOf": index_of,
        "reduce": reduce,
        "slice": slice_,
        "join": lambda sep=",": _to_text(sep).join(_to_text(item) for item in items),
    }
    if name not in methods:
        raise ConditionEvaluationError(f"Arrays have no method {name!r}")
    return _Builtin(name, methods[name])


def _string_method(text: str, name: str) -> _Builtin:
    methods: dict[str, Callable[..., Any]] = {
        "includes": lambda sub: _to_text(sub) in text,
        "startsWith": lambda sub: text.startswith(_to_text(sub)),
        "endsWith": lambda sub: text.endswith(_to_text(sub)),
        "toLowerCase": lambda: text.lower(),
        "toUpperCase": lambda: text.upper(),
    }
    if name not in methods:
        raise ConditionEvaluationError(f"Strings have no method {name!r}")
    return _Builtin(name, methods[name])


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, tuple):
        return list(value)
    return value


def get_member(target: Any, name: Any) -> Any:
    """Resolve ``target.name`` / ``target[name]`` without touching host attributes."""

    if target is None:
        raise ConditionEvaluationError(f"Cannot read {name!r} of null")
    if isinstance(target, list):
        if isinstance(name, (int, float)) and not isinstance(name, bool):
            if float(name).is_integer() and 0 <= int(name) < len(target):
                return target[int(name)]
            return None
        if name == "length":
            return len(target)
        return _array_method(target, str(name))
    if isinstance(target, str):
        if _is_number(name) and not isinstance(name, bool):
            if float(name).is_integer() and 0 <= int(name) < len(target):
                return target[int(name)]
            return None
        if name == "length":
            return len(target)
        return _string_method(target, str(name))
    if not isinstance(name, str) or name.startswith("_"):
        raise ConditionEvaluationError(f"Property {name!r} is not accessible")
    if target is _MATH:
        if name not in _MathNamespace.members:
            raise ConditionEvaluationError(f"Math has no member {name!r}")
        return _MathNamespace.members[name]
    if isinstance(target, Mapping):
        return _plain(target.get(name))
    if is_dataclass(target) and not isinstance(target, type):
        if name in {field.name for field in fields(target)}:
            return _plain(getattr(target, name))
        return None
    raise ConditionEvaluationError(f"Cannot read {name!r} of {type(target).__name__}")


# ---- parser / closure compiler -----------------------------------------------


class _Spread(NamedTuple):
    node: Node


class _Parser:
    """Recursive-descent parser producing closures over a scope dict."""

    def __init__(self, source: str) -> None:
        self.tokens = tokenize(source)
        self.index = 0
        self.locals: list[frozenset[str]] = []

    # token helpers
    def peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.index + offset, len(self.tokens) - 1)]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != "eof":
            self.index += 1
        return token

    def at_op(self, *values: str) -> bool:
        token = self.peek()
        return token.kind == "op" and token.value in values

    def expect_op(self, value: str) -> Token:
        token = self.advance()
        if token.kind != "op" or token.value != value:
            raise ConditionSyntaxError(
                f"Expected {value!r} at offset {token.position}, found {token.value!r}"
            )
        return token

    # grammar
    def parse(self) -> Node:
        node = self.expression()
        token = self.peek()
        if token.kind != "eof":
            raise ConditionSyntaxError(
                f"Unexpected {token.value!r} at offset {token.position}"
            )
        return node

    def expression(self) -> Node:
        condition = self.logical_or()
        if not self.at_op("?"):
            return condition
        self.advance()
        when_true = self.expression()
        self.expect_op(":")
        when_false = self.expression()
        return lambda scope: when_true(scope) if truthy(condition(scope)) else when_false(scope)

    def logical_or(self) -> Node:
        node = self.logical_and()
        while self.at_op("||"):
            self.advance()
            left, right = node, self.logical_and()

            def either(scope: Scope, left: Node = left, right: Node = right) -> Any:
                value = left(scope)
                return value if truthy(value) else right(scope)

            node = either
        return node

    def logical_and(self) -> Node:
        node = self.equality()
        while self.at_op("&&"):
            self.advance()
            left, right = node, self.equality()

            def both(scope: Scope, left: Node = left, right: Node = right) -> Any:
                value = left(scope)
                return right(scope) if truthy(value) else value

            node = both
        return node

    def _binary_level(self, operand: Callable[[], Node], operators: tuple[str, ...]) -> Node:
        node = operand()
        while self.at_op(*operators):
            operator = _BINARY_OPERATORS[self.advance().value]
            left, right = node, operand()
            node = (lambda op, lhs, rhs: lambda scope: op(lhs(scope), rhs(scope)))(operator, left, right)
        return node

    def equality(self) -> Node:
        return self._binary_level(self.comparison, ("===", "!==", "==", "!="))

    def comparison(self) -> Node:
        return self._binary_level(self.additive, ("<", "<=", ">", ">="))

    def additive(self) -> Node:
        return self._binary_level(self.multiplicative, ("+", "-"))

    def multiplicative(self) -> Node:
        return self._binary_level(self.unary, ("*", "/", "%"))

    def unary(self) -> Node:
        if self.at_op("!"):
            self.advance()
            operand = self.unary()
            return lambda scope: not truthy(operand(scope))
        if self.at_op("-"):
            self.advance()
            operand = self.unary()
            return lambda scope: -_require_number(operand(scope), "-")
        if self.at_op("+"):
            self.advance()
            operand = self.unary()
            return lambda scope: _require_number(operand(scope), "+")
        return self.postfix()

    def postfix(self) -> Node:
        node = self.primary()
        while True:
            if self.at_op("."):
                self.advance()
                token = self.advance()
                if token.kind != "name":
                    raise ConditionSyntaxError(f"Expected a property name at offset {token.position}")
                node = (lambda target, key: lambda scope: get_member(target(scope), key))(
                    node, token.value
                )
            elif self.at_op("["):
                self.advance()
                key_node = self.expression()
                self.expect_op("]")
                node = (lambda target, key: lambda scope: get_member(target(scope), key(scope)))(
                    node, key_node
                )
            elif self.at_op("("):
                self.advance()
                arguments = self.arguments(")")
                node = (lambda callee, args: lambda scope: _invoke(callee(scope), *_expand(args, scope)))(
                    node, arguments
                )
            else:
                return node

    def arguments(self, closing: str) -> list[Node | _Spread]:
        items: list[Node | _Spread] = []
        if self.at_op(closing):
            self.advance()
            return items
        while True:
            if self.at_op("..."):
                self.advance()
                items.append(_Spread(self.expression()))
            else:
                items.append(self.expression())
            if self.at_op(","):
                self.advance()
                if self.at_op(closing):
                    self.advance()
                    return items
                continue
            self.expect_op(closing)
            return items

    def arrow_params(self) -> Optional[tuple[str, ...]]:
        """Return parameter names when the upcoming tokens start an arrow function."""

        token = self.peek()
        if token.kind == "name" and self.peek(1).kind == "op" and self.peek(1).value == "=>":
            return (token.value,)
        if not (token.kind == "op" and token.value == "("):
            return None
        params: list[str] = []
        offset = 1
        if self.peek(offset).kind == "op" and self.peek(offset).value == ")":
            offset += 1
        else:
            while True:
                candidate = self.peek(offset)
                if candidate.kind != "name":
                    return None
                params.append(candidate.value)
                separator = self.peek(offset + 1)
                offset += 2
                if separator.kind == "op" and separator.value == ",":
                    continue
                if separator.kind == "op" and separator.value == ")":
                    break
                return None
        arrow = self.peek(offset)
        if arrow.kind == "op" and arrow.value == "=>":
            return tuple(params)
        return None

    def arrow(self, params: tuple[str, ...]) -> Node:
        # skip "(a, b) =>" or "a =>"
        while not self.at_op("=>"):
            self.advance()
        self.advance()
        self.locals.append(frozenset(params))
        try:
            body = self.expression()
        finally:
            self.locals.pop()
        return lambda scope: _ArrowFunction(params, body, scope)

    def is_local(self, name: str) -> bool:
        return any(name in frame for frame in self.locals)

    def primary(self) -> Node:
        params = self.arrow_params()
        if params is not None:
            return self.arrow(params)

        token = self.advance()
        if token.kind in ("number", "string"):
            value = token.value
            return lambda scope: value
        if token.kind == "name":
            name = token.value
            if self.is_local(name) or name in BOUND_NAMES:
                return lambda scope: scope[name]
            if name in _CONSTANTS:
                constant = _CONSTANTS[name]
                return lambda scope: constant
            if name in _GLOBALS:
                builtin = _GLOBALS[name]
                return lambda scope: builtin
            raise ConditionSyntaxError(f"Unknown name {name!r} at offset {token.position}")
        if token.kind == "op" and token.value == "(":
            node = self.expression()
            self.expect_op(")")
            return node
        if token.kind == "op" and token.value == "[":
            elements = self.arguments("]")
            return lambda scope: _expand(elements, scope)
        if token.kind == "eof":
            raise ConditionSyntaxError("Unexpected end of condition")
        raise ConditionSyntaxError(f"Unexpected {token.value!r} at offset {token.position}")


def _expand(items: list[Node | _Spread], scope: Scope) -> list[Any]:
    values: list[Any] = []
    for item in items:
        if isinstance(item, _Spread):
            spread = item.node(scope)
            if not isinstance(spread, list):
                raise ConditionEvaluationError(f"Cannot spread {spread!r}")
            values.extend(spread)
        else:
            values.append(item(scope))
    return values


def compile_condition(condition: str) -> Predicate:
    """Compile ``condition`` into a predicate over ``(dice, familiars)``.

    Raises
    ------
    ConditionSyntaxError
        If the string is not a valid condition.
    """

    if not isinstance(condition, str):
        raise ConditionSyntaxError(f"Condition must be a string, got {condition!r}")
    try:
        body = _Parser(condition).parse()
    except RecursionError as exc:
        raise ConditionSyntaxError("Condition is nested too deeply") from exc

    def predicate(dice: Sequence[int], familiars: Sequence[Any]) -> bool:
        scope: Scope = {"dice": list(dice), "familiars": list(familiars)}
        return truthy(body(scope))

    return predicate


def _never(dice: Sequence[int], familiars: Sequence[Any]) -> bool:
    return False


# ---- cache and evaluator -----------------------------------------------------


class ConditionCache:
    """Compiled predicates keyed by the literal condition string."""

    def __init__(self) -> None:
        self._compiled: dict[str, Predicate] = {}
        self._lock = threading.Lock()

    def get_or_compile(self, condition: str, compiler: Callable[[str], Predicate]) -> Predicate:
        compiled = self._compiled.get(condition)
        if compiled is not None:
            return compiled
        with self._lock:
            compiled = self._compiled.get(condition)
            if compiled is None:
                compiled = compiler(condition)
                self._compiled[condition] = compiled
        return compiled

    def clear(self) -> None:
        with self._lock:
            self._compiled.clear()

    def __contains__(self, condition: object) -> bool:
        return condition in self._compiled

    def __len__(self) -> int:
        return len(self._compiled)


def normalize_multiplier(multiplier: Optional[float]) -> float:
    """Multipliers of exactly 0 or 1 mean "no multiplier" and contribute nothing."""

    if multiplier is None or multiplier == 0 or multiplier == 1:
        return 0.0
    return multiplier


class ConditionEvaluator:
    """Evaluates condition strings, caching compiled predicates in ``cache``."""

    def __init__(self, cache: Optional[ConditionCache] = None) -> None:
        self.cache = cache if cache is not None else ConditionCache()

    def _compile_or_never(self, condition: str) -> Predicate:
        try:
            return compile_condition(condition)
        except ConditionSyntaxError as exc:
            logger.debug("Condition %r does not compile: %s", condition, exc)
            return _never

    def compile(self, condition: str) -> Predicate:
        return self.cache.get_or_compile(condition, self._compile_or_never)

    def evaluate(self, condition: str, dice: Sequence[int], familiars: Sequence[Any]) -> bool:
        """Return whether ``condition`` holds; every failure counts as ``False``."""

        predicate = self.compile(condition)
        try:
            return bool(predicate(dice, familiars))
        except (
            ConditionError,
            TypeError,
            ValueError,
            ArithmeticError,
            IndexError,
            KeyError,
            AttributeError,
            RecursionError,
        ) as exc:
            logger.debug("Condition %r failed for dice %s: %s", condition, list(dice), exc)
            return False

    def evaluate_bonus(
        self,
        bonus: ConditionalBonus,
        dice: Sequence[int],
        familiars: Sequence[Any],
    ) -> BonusContribution:
        """Evaluate a bonus, returning zero contributions when it is inactive."""

        if not self.evaluate(bonus.condition, dice, familiars):
            return BonusContribution(is_active=False, flat_bonus=0, multiplier_bonus=0.0)
        return BonusContribution(
            is_active=True,
            flat_bonus=bonus.flat_bonus or 0,
            multiplier_bonus=normalize_multiplier(bonus.multiplier_bonus),
        )

    def evaluate_bonuses(
        self,
        bonuses: Sequence[ConditionalBonus],
        dice: Sequence[int],
        familiars: Sequence[Any],
    ) -> ConditionalTotals:
        active_names: list[str] = []
        total_flat: float = 0
        total_multiplier = 0.0
        for bonus in bonuses:
            result = self.evaluate_bonus(bonus, dice, familiars)
            if result.is_active:
                active_names.append(bonus.name)
                total_flat += result.flat_bonus
                total_multiplier += result.multiplier_bonus
        return ConditionalTotals(
            active_names=active_names,
            total_flat=total_flat,
            total_multiplier=total_multiplier,
        )

    def clear_cache(self) -> None:
        self.cache.clear()


# Shared by every scoring and optimizer function called without an explicit
# ``evaluator``. Pass your own ConditionEvaluator to keep a private cache.
default_evaluator = ConditionEvaluator()


def _resolve(evaluator: Optional[ConditionEvaluator]) -> ConditionEvaluator:
    return evaluator if evaluator is not None else default_evaluator


def evaluate_condition(
    condition: str,
    dice: Sequence[int],
    familiars: Sequence[Any],
    evaluator: Optional[ConditionEvaluator] = None,
) -> bool:
    return _resolve(evaluator).evaluate(condition, dice, familiars)


def evaluate_conditional_bonus(
    bonus: ConditionalBonus,
    dice: Sequence[int],
    familiars: Sequence[Any],
    evaluator: Optional[ConditionEvaluator] = None,
) -> BonusContribution:
    return _resolve(evaluator).evaluate_bonus(bonus, dice, familiars)


def evaluate_conditional_bonuses(
    bonuses: Sequence[ConditionalBonus],
    dice: Sequence[int],
    familiars: Sequence[Any],
    evaluator: Optional[ConditionEvaluator] = None,
) -> ConditionalTotals:
    return _resolve(evaluator).evaluate_bonuses(bonuses, dice, familiars)


def clear_condition_cache(evaluator: Optional[ConditionEvaluator] = None) -> None:
    """Drop compiled conditions, e.g. after the bonus catalog is reloaded."""

    _resolve(evaluator).clear_cache()
