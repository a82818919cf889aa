"""Sandboxed evaluator for AI-generated row filters.

Filters arrive as expression text such as::

    row => row.Duration > 1 && row.PreferredPhases.includes('2')

The text is tokenized and parsed into a small AST which is then interpreted
against one row at a time. Nothing is ever handed to ``eval``: the only name
in scope is ``row``, the only attribute access is on row fields, ``length``
and the methods in ``ALLOWED_METHODS``, and the only callables are the
conversions in ``ALLOWED_FUNCTIONS``.
"""
import math
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

MAX_SOURCE_LENGTH = 2000

KEYWORD_OPERATORS = {"and": "&&", "or": "||", "not": "!"}
LITERALS = {"true": True, "false": False, "null": None, "undefined": None, "None": None,
            "True": True, "False": False}
COMPARISON_OPERATORS = ("===", "!==", "==", "!=", "<=", ">=", "<", ">")

TOKEN_PATTERN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
  | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
  | (?P<name>[A-Za-z_$][A-Za-z0-9_$]*)
  | (?P<op>=>|===|!==|==|!=|<=|>=|&&|\|\||\?\.|[<>!().,\[\]-])
    """,
    re.VERBOSE,
)

ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"'}


class PredicateError(ValueError):
    pass


class PredicateSyntaxError(PredicateError):
    pass


class PredicateEvaluationError(PredicateError):
    pass


# --------- Value helpers ---------

def to_number(value: Any) -> float:
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def to_text(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, list):
        return ",".join(to_text(item) for item in value)
    return str(value)


def truthy(value: Any) -> bool:
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def loose_equal(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if _is_number(left) or _is_number(right) or isinstance(left, bool) or isinstance(right, bool):
        a, b = to_number(left), to_number(right)
        return not (math.isnan(a) or math.isnan(b)) and a == b
    return left == right


def compare(operator: str, left: Any, right: Any) -> bool:
    if operator in ("==", "==="):
        return loose_equal(left, right)
    if operator in ("!=", "!=="):
        return not loose_equal(left, right)
    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        a, b = to_number(left), to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if operator == "<":
        return a < b
    if operator == "<=":
        return a <= b
    if operator == ">":
        return a > b
    return a >= b


def _includes(target: Any, needle: Any) -> bool:
    if isinstance(target, list):
        return any(loose_equal(item, needle) for item in target)
    if isinstance(target, str):
        return to_text(needle) in target
    raise PredicateEvaluationError(f"includes() is not supported on {type(target).__name__}")


def _string_method(name: str, func: Callable[..., Any]) -> Callable[..., Any]:
    def method(target, *args):
        if not isinstance(target, str):
            raise PredicateEvaluationError(f"{name}() is not supported on {type(target).__name__}")
        return func(target, *args)
    return method


ALLOWED_METHODS: Dict[str, Callable[..., Any]] = {
    "includes": _includes,
    "toLowerCase": _string_method("toLowerCase", lambda s: s.lower()),
    "toUpperCase": _string_method("toUpperCase", lambda s: s.upper()),
    "trim": _string_method("trim", lambda s: s.strip()),
    "startsWith": _string_method("startsWith", lambda s, prefix: s.startswith(to_text(prefix))),
    "endsWith": _string_method("endsWith", lambda s, suffix: s.endswith(to_text(suffix))),
}

ALLOWED_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "Number": to_number,
    "parseFloat": to_number,
    "parseInt": lambda value: math.trunc(to_number(value)) if not math.isnan(to_number(value)) else math.nan,
    "String": to_text,
}


# --------- Tokenizer ---------

def _unquote(literal: str) -> str:
    body = literal[1:-1]
    return re.sub(r"\\(.)", lambda m: ESCAPES.get(m.group(1), m.group(1)), body)


def tokenize(source: str) -> List[Tuple[str, Any]]:
    tokens = []
    position = 0
    while position < len(source):
        match = TOKEN_PATTERN.match(source, position)
        if not match:
            raise PredicateSyntaxError(f"Unexpected character {source[position]!r} at {position}")
        position = match.end()
        kind = match.lastgroup
        text = match.group()
        if kind == "ws":
            continue
        if kind == "number":
            tokens.append(("number", float(text)))
        elif kind == "string":
            tokens.append(("string", _unquote(text)))
        elif kind == "name" and text in KEYWORD_OPERATORS:
            tokens.append(("op", KEYWORD_OPERATORS[text]))
        else:
            tokens.append((kind, text))
    tokens.append(("end", None))
    return tokens


# --------- Parser ---------
# AST nodes are tuples: ("lit", v), ("row",), ("get", obj, name),
# ("call", obj, method, args), ("func", name, args), ("not", x),
# ("neg", x), ("and", a, b), ("or", a, b), ("cmp", op, a, b)

class _Parser:
    def __init__(self, tokens: List[Tuple[str, Any]]):
        self.tokens = tokens
        self.index = 0
        self.param = "row"

    def peek(self, offset: int = 0) -> Tuple[str, Any]:
        return self.tokens[min(self.index + offset, len(self.tokens) - 1)]

    def take(self) -> Tuple[str, Any]:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def accept(self, kind: str, value: Any = None) -> bool:
        token = self.peek()
        if token[0] == kind and (value is None or token[1] == value):
            self.index += 1
            return True
        return False

    def expect(self, kind: str, value: Any = None) -> Tuple[str, Any]:
        token = self.peek()
        if token[0] != kind or (value is not None and token[1] != value):
            raise PredicateSyntaxError(f"Expected {value or kind}, found {token[1]!r}")
        return self.take()

    def parse(self):
        self._parse_parameter()
        node = self.parse_or()
        if self.peek()[0] != "end":
            raise PredicateSyntaxError(f"Unexpected token {self.peek()[1]!r}")
        return node

    def _parse_parameter(self):
        # Optional "row =>" or "(row) =>" prefix
        if self.peek()[0] == "name" and self.peek(1) == ("op", "=>"):
            self.param = self.take()[1]
            self.take()
        elif (self.peek() == ("op", "(") and self.peek(1)[0] == "name"
              and self.peek(2) == ("op", ")") and self.peek(3) == ("op", "=>")):
            self.take()
            self.param = self.take()[1]
            self.take()
            self.take()

    def parse_or(self):
        node = self.parse_and()
        while self.accept("op", "||"):
            node = ("or", node, self.parse_and())
        return node

    def parse_and(self):
        node = self.parse_not()
        while self.accept("op", "&&"):
            node = ("and", node, self.parse_not())
        return node

    def parse_not(self):
        if self.accept("op", "!"):
            return ("not", self.parse_not())
        return self.parse_comparison()

    def parse_comparison(self):
        node = self.parse_unary()
        token = self.peek()
        if token[0] == "op" and token[1] in COMPARISON_OPERATORS:
            self.take()
            node = ("cmp", token[1], node, self.parse_unary())
        return node

    def parse_unary(self):
        if self.accept("op", "-"):
            return ("neg", self.parse_unary())
        return self.parse_postfix()

    def parse_postfix(self):
        node = self.parse_primary()
        while True:
            if self.accept("op", ".") or self.accept("op", "?."):
                name = self.expect("name")[1]
                if self.accept("op", "("):
                    if name not in ALLOWED_METHODS:
                        raise PredicateSyntaxError(f"Method {name!r} is not allowed")
                    node = ("call", node, name, self.parse_arguments())
                else:
                    node = ("get", node, name)
            elif self.accept("op", "["):
                key = self.expect("string")[1]
                self.expect("op", "]")
                node = ("get", node, key)
            else:
                return node

    def parse_arguments(self) -> List[Any]:
        args = []
        if self.accept("op", ")"):
            return args
        while True:
            args.append(self.parse_or())
            if self.accept("op", ")"):
                return args
            self.expect("op", ",")

    def parse_primary(self):
        kind, value = self.take()
        if kind in ("number", "string"):
            return ("lit", value)
        if kind == "op" and value == "(":
            node = self.parse_or()
            self.expect("op", ")")
            return node
        if kind == "name":
            if value == self.param:
                return ("row",)
            if value in LITERALS:
                return ("lit", LITERALS[value])
            if value in ALLOWED_FUNCTIONS and self.accept("op", "("):
                return ("func", value, self.parse_arguments())
            raise PredicateSyntaxError(f"Unknown name {value!r}")
        raise PredicateSyntaxError(f"Unexpected token {value!r}")


# --------- Interpreter ---------

def _evaluate(node, row: Mapping[str, Any]) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "row":
        return row
    if kind == "get":
        target = _evaluate(node[1], row)
        name = node[2]
        if target is row:
            return row.get(name)
        if name == "length" and isinstance(target, (str, list)):
            return len(target)
        raise PredicateEvaluationError(f"Cannot read property {name!r} of {to_text(target)!r}")
    if kind == "call":
        target = _evaluate(node[1], row)
        if target is None:
            raise PredicateEvaluationError(f"Cannot call {node[2]}() on a missing value")
        args = [_evaluate(arg, row) for arg in node[3]]
        return ALLOWED_METHODS[node[2]](target, *args)
    if kind == "func":
        args = [_evaluate(arg, row) for arg in node[2]]
        if len(args) != 1:
            raise PredicateEvaluationError(f"{node[1]}() takes exactly one argument")
        return ALLOWED_FUNCTIONS[node[1]](args[0])
    if kind == "not":
        return not truthy(_evaluate(node[1], row))
    if kind == "neg":
        return -to_number(_evaluate(node[1], row))
    if kind == "and":
        left = _evaluate(node[1], row)
        return _evaluate(node[2], row) if truthy(left) else left
    if kind == "or":
        left = _evaluate(node[1], row)
        return left if truthy(left) else _evaluate(node[2], row)
    if kind == "cmp":
        return compare(node[1], _evaluate(node[2], row), _evaluate(node[3], row))
    raise PredicateEvaluationError(f"Unknown node {kind!r}")


class Predicate:
    """A compiled filter. Calling it with a row always yields a bool or raises PredicateEvaluationError."""

    def __init__(self, source: str, tree):
        self.source = source
        self._tree = tree

    def __call__(self, row: Mapping[str, Any]) -> bool:
        if not isinstance(row, Mapping):
            raise PredicateEvaluationError("Filters only accept a single row mapping")
        try:
            return truthy(_evaluate(self._tree, row))
        except PredicateEvaluationError:
            raise
        except (TypeError, ValueError, ArithmeticError, RecursionError) as exc:
            raise PredicateEvaluationError(str(exc)) from exc

    def __repr__(self):
        return f"Predicate({self.source!r})"


def compile_predicate(source: Optional[str]) -> Predicate:
    if not isinstance(source, str) or not source.strip():
        raise PredicateSyntaxError("Empty filter expression")
    if len(source) > MAX_SOURCE_LENGTH:
        raise PredicateSyntaxError("Filter expression is too long")
    text = source.strip().rstrip(";")
    try:
        tree = _Parser(tokenize(text)).parse()
    except RecursionError as exc:
        raise PredicateSyntaxError("Filter expression is nested too deeply") from exc
    return Predicate(source, tree)
