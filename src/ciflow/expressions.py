# expressions.py
"""
A small evaluator for `${{ }}` expressions used by `if` conditions,
`runs-on` references, matrix values, env values and step commands.

Supported:
  - literals: 'single quoted', numbers, true, false, null
  - context access: matrix.rust, needs.prepare-checks.outputs.label,
    steps.build.outputs['key'], env.DISABLE_WGPU
  - operators: ! == != < <= > >= && || ( )
  - functions: success() failure() cancelled() always() contains()
    startsWith() endsWith() format() join() toJSON() fromJSON()

Conditions never go through string interpolation: they are parsed once into
a tree and evaluated against an explicit `ExpressionContext`.
"""
from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Tuple

from .errors import ConfigError

STATUS_FUNCTIONS = frozenset({"success", "failure", "cancelled", "always"})

_TEMPLATE = re.compile(r"\$\{\{(.*?)\}\}", re.DOTALL)

_TOKEN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|<=|>=|&&|\|\||[!<>()\[\],.])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)


@dataclass
class ExpressionContext:
    """Everything an expression can see: named contexts plus job/step status."""
    values: Dict[str, Any] = field(default_factory=dict)
    failed: bool = False          # a previous step, or a needed job, failed
    cancelled: bool = False       # the run was cancelled
    incomplete: bool = False      # a needed job was skipped or cancelled

    @property
    def succeeded(self) -> bool:
        return not (self.failed or self.cancelled or self.incomplete)

    def with_values(self, **values: Any) -> "ExpressionContext":
        return replace(self, values={**self.values, **values})


# ---------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Node:
    kind: str                 # literal | name | attr | index | call | not | binary
    value: Any = None
    children: Tuple["Node", ...] = ()


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m:
            raise ConfigError(
                message=f"Unexpected character {text[pos]!r} in expression",
                details={"expression": text, "position": pos},
            )
        pos = m.end()
        kind = m.lastgroup
        if kind == "ws":
            continue
        tokens.append((kind, m.group()))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> Tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _accept(self, op: str) -> bool:
        tok = self._peek()
        if tok is not None and tok[0] == "op" and tok[1] == op:
            self.pos += 1
            return True
        return False

    def _expect(self, op: str) -> None:
        if not self._accept(op):
            self._error(f"expected {op!r}")

    def _error(self, what: str) -> None:
        tok = self._peek()
        found = tok[1] if tok else "end of expression"
        raise ConfigError(
            message=f"Invalid expression: {what}, found {found!r}",
            details={"expression": self.text},
        )

    def parse(self) -> Node:
        if not self.tokens:
            self._error("empty expression")
        node = self._or()
        if self._peek() is not None:
            self._error("unexpected trailing input")
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = Node("binary", "||", (node, self._and()))
        return node

    def _and(self) -> Node:
        node = self._equality()
        while self._accept("&&"):
            node = Node("binary", "&&", (node, self._equality()))
        return node

    def _equality(self) -> Node:
        node = self._comparison()
        while True:
            for op in ("==", "!="):
                if self._accept(op):
                    node = Node("binary", op, (node, self._comparison()))
                    break
            else:
                return node

    def _comparison(self) -> Node:
        node = self._unary()
        while True:
            for op in ("<=", ">=", "<", ">"):
                if self._accept(op):
                    node = Node("binary", op, (node, self._unary()))
                    break
            else:
                return node

    def _unary(self) -> Node:
        if self._accept("!"):
            return Node("not", children=(self._unary(),))
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            if self._accept("."):
                tok = self._peek()
                if tok is None or tok[0] != "ident":
                    self._error("expected property name")
                self.pos += 1
                node = Node("attr", tok[1], (node,))
            elif self._accept("["):
                index = self._or()
                self._expect("]")
                node = Node("index", children=(node, index))
            else:
                return node

    def _primary(self) -> Node:
        tok = self._peek()
        if tok is None:
            self._error("expected a value")
        kind, text = tok
        if kind == "string":
            self.pos += 1
            return Node("literal", text[1:-1].replace("''", "'"))
        if kind == "number":
            self.pos += 1
            return Node("literal", float(text) if "." in text else int(text))
        if kind == "ident":
            self.pos += 1
            lowered = text.lower()
            if lowered in ("true", "false"):
                return Node("literal", lowered == "true")
            if lowered == "null":
                return Node("literal", None)
            if self._accept("("):
                args: List[Node] = []
                if not self._accept(")"):
                    args.append(self._or())
                    while self._accept(","):
                        args.append(self._or())
                    self._expect(")")
                if lowered not in _FUNCTIONS and lowered not in STATUS_FUNCTIONS:
                    raise ConfigError(
                        message=f"Unknown function {text}()",
                        details={"expression": self.text},
                    )
                return Node("call", lowered, tuple(args))
            return Node("name", text)
        if self._accept("("):
            node = self._or()
            self._expect(")")
            return node
        self._error("expected a value")
        raise AssertionError("unreachable")


@lru_cache(maxsize=512)
def parse(text: str) -> Node:
    return _Parser(text).parse()


def uses_status_function(node: Node) -> bool:
    if node.kind == "call" and node.value in STATUS_FUNCTIONS:
        return True
    return any(uses_status_function(c) for c in node.children)


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        if value.strip() == "":
            return 0.0
        try:
            return float(value)
        except ValueError:
            return math.nan
    return math.nan


def _loose_equal(a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        return a.lower() == b.lower()
    if type(a) is type(b) or (a is None and b is None):
        return a == b
    if isinstance(a, (dict, list)) or isinstance(b, (dict, list)):
        return a is b
    return _to_number(a) == _to_number(b)


def _compare(op: str, a: Any, b: Any) -> bool:
    if isinstance(a, str) and isinstance(b, str):
        x, y = a.lower(), b.lower()
    else:
        x, y = _to_number(a), _to_number(b)
        if math.isnan(x) or math.isnan(y):
            return False
    if op == "<":
        return x < y
    if op == "<=":
        return x <= y
    if op == ">":
        return x > y
    return x >= y


def _lookup(obj: Any, key: Any) -> Any:
    if isinstance(obj, Mapping):
        if key in obj:
            return obj[key]
        if isinstance(key, str):
            lowered = key.lower()
            for k, v in obj.items():
                if isinstance(k, str) and k.lower() == lowered:
                    return v
        return None
    if isinstance(obj, (list, tuple)) and isinstance(key, (int, float)) and not isinstance(key, bool):
        i = int(key)
        return obj[i] if 0 <= i < len(obj) else None
    return None


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _format(fmt: Any, *args: Any) -> str:
    text = to_string(fmt)
    out: List[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if text.startswith("{{", i):
            out.append("{")
            i += 2
        elif text.startswith("}}", i):
            out.append("}")
            i += 2
        elif ch == "{":
            end = text.find("}", i)
            if end == -1 or not text[i + 1:end].isdigit():
                raise ConfigError(message=f"Invalid format string {text!r}")
            idx = int(text[i + 1:end])
            if idx >= len(args):
                raise ConfigError(message=f"format() argument {idx} missing for {text!r}")
            out.append(to_string(args[idx]))
            i = end + 1
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def _contains(search: Any, item: Any) -> bool:
    if isinstance(search, (list, tuple)):
        return any(_loose_equal(x, item) for x in search)
    return to_string(item).lower() in to_string(search).lower()


def _join(items: Any, sep: Any = ",") -> str:
    if isinstance(items, (list, tuple)):
        return to_string(sep).join(to_string(x) for x in items)
    return to_string(items)


def _from_json(text: Any) -> Any:
    try:
        return json.loads(to_string(text))
    except ValueError as e:
        raise ConfigError(message=f"fromJSON() could not parse {text!r}: {e}") from e


_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "contains": _contains,
    "startswith": lambda s, p: to_string(s).lower().startswith(to_string(p).lower()),
    "endswith": lambda s, p: to_string(s).lower().endswith(to_string(p).lower()),
    "format": _format,
    "join": _join,
    "tojson": lambda v: json.dumps(v, indent=2),
    "fromjson": _from_json,
}


def _eval(node: Node, ctx: ExpressionContext) -> Any:
    kind = node.kind
    if kind == "literal":
        return node.value
    if kind == "name":
        return _lookup(ctx.values, node.value)
    if kind == "attr":
        return _lookup(_eval(node.children[0], ctx), node.value)
    if kind == "index":
        return _lookup(_eval(node.children[0], ctx), _eval(node.children[1], ctx))
    if kind == "not":
        return not truthy(_eval(node.children[0], ctx))
    if kind == "call":
        name = node.value
        if name == "always":
            return True
        if name == "cancelled":
            return ctx.cancelled
        if name == "failure":
            return ctx.failed and not ctx.cancelled
        if name == "success":
            return ctx.succeeded
        args = [_eval(c, ctx) for c in node.children]
        try:
            return _FUNCTIONS[name](*args)
        except TypeError as e:
            raise ConfigError(message=f"Bad arguments to {name}(): {e}") from e
    if kind == "binary":
        op = node.value
        left = _eval(node.children[0], ctx)
        if op == "&&":
            return _eval(node.children[1], ctx) if truthy(left) else left
        if op == "||":
            return left if truthy(left) else _eval(node.children[1], ctx)
        right = _eval(node.children[1], ctx)
        if op == "==":
            return _loose_equal(left, right)
        if op == "!=":
            return not _loose_equal(left, right)
        return _compare(op, left, right)
    raise AssertionError(f"unknown node {kind}")


def _unwrap(text: str) -> str:
    stripped = text.strip()
    m = _TEMPLATE.fullmatch(stripped)
    if m:
        return m.group(1).strip()
    return stripped


def evaluate(text: str, ctx: ExpressionContext) -> Any:
    return _eval(parse(_unwrap(text)), ctx)


def evaluate_condition(condition: Any, ctx: ExpressionContext) -> bool:
    """
    Evaluate a job/step `if`.

    Missing condition means `success()`. A condition that calls no status
    function is implicitly `success() && (<condition>)`.
    """
    if condition is None:
        return ctx.succeeded
    if isinstance(condition, bool):
        return condition and ctx.succeeded
    node = parse(_unwrap(str(condition)))
    if not uses_status_function(node) and not ctx.succeeded:
        return False
    return truthy(_eval(node, ctx))


def interpolate(text: str, ctx: ExpressionContext) -> str:
    """Replace every `${{ expr }}` in `text` with its string value."""
    if "${{" not in text:
        return text
    return _TEMPLATE.sub(lambda m: to_string(_eval(parse(m.group(1).strip()), ctx)), text)


def interpolate_value(value: Any, ctx: ExpressionContext) -> Any:
    """
    Like `interpolate` but keeps the native type when the whole value is a
    single expression (so `${{ fromJSON('[1,2]') }}` stays a list).
    """
    if isinstance(value, str):
        m = _TEMPLATE.fullmatch(value.strip())
        if m:
            return _eval(parse(m.group(1).strip()), ctx)
        return interpolate(value, ctx)
    if isinstance(value, list):
        return [interpolate_value(v, ctx) for v in value]
    if isinstance(value, dict):
        return {k: interpolate_value(v, ctx) for k, v in value.items()}
    return value


def check_condition(text: str) -> None:
    """Raise ConfigError if an `if` condition does not parse."""
    parse(_unwrap(text))


def check_template(text: str) -> None:
    """Raise ConfigError if any `${{ }}` block inside `text` does not parse."""
    for m in _TEMPLATE.finditer(text):
        parse(m.group(1).strip())
