"""Expression language for `if:` guards and `${{ }}` interpolation.

Expressions are parsed into a small AST once (cached per source string) and
evaluated against an `EvalContext`: a mapping of namespaces (`github`, `env`,
`matrix`, `steps`, `needs`, `secrets`, `runner`, `job`) plus the status used by
the status functions.

Values are plain Python objects: str, bool, int, float, None (null/undefined),
list and dict. Looking up a path that does not exist yields None; only
malformed syntax raises `ExpressionSyntaxError`.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .cache import hash_files
from .errors import ExpressionSyntaxError

Value = Union[str, bool, int, float, None, list, dict]

STATUS_FUNCTIONS = frozenset({"success", "failure", "cancelled", "always"})

# name -> (min args, max args); None = unbounded
_ARITY: Dict[str, Tuple[int, Optional[int]]] = {
    "success": (0, 0),
    "failure": (0, 0),
    "cancelled": (0, 0),
    "always": (0, 0),
    "contains": (2, 2),
    "startsWith": (2, 2),
    "endsWith": (2, 2),
    "format": (1, None),
    "join": (1, 2),
    "toJSON": (1, 1),
    "fromJSON": (1, 1),
    "hashFiles": (1, None),
}


# ----------------------------------------------------------------------
# AST
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Value


@dataclass(frozen=True)
class Ref:
    name: str


@dataclass(frozen=True)
class Member:
    obj: "Node"
    name: str


@dataclass(frozen=True)
class Index:
    obj: "Node"
    key: "Node"


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Logical:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Node", ...]


@dataclass(frozen=True)
class Template:
    """A string with embedded `${{ }}` expressions; parts are str or Node."""
    parts: Tuple[Any, ...]


Node = Union[Literal, Ref, Member, Index, Not, Binary, Logical, Call, Template]


# ----------------------------------------------------------------------
# Tokenizer
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class _Token:
    kind: str  # string | number | ident | op | punct | eof
    value: Any
    pos: int


_OPERATORS = ("==", "!=", "<=", ">=", "&&", "||", "<", ">", "!")
_PUNCT = "()[],."
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_\-]*")
_NUMBER_RE = re.compile(r"-?(0x[0-9a-fA-F]+|\d+(\.\d+)?([eE][+-]?\d+)?)")


def _tokenize(src: str) -> List[_Token]:
    tokens: List[_Token] = []
    i = 0
    n = len(src)
    while i < n:
        ch = src[i]
        if ch.isspace():
            i += 1
            continue

        if ch == "'":
            j = i + 1
            buf = []
            while True:
                if j >= n:
                    raise ExpressionSyntaxError(src, i, "unterminated string literal")
                if src[j] == "'":
                    if j + 1 < n and src[j + 1] == "'":
                        buf.append("'")
                        j += 2
                        continue
                    break
                buf.append(src[j])
                j += 1
            tokens.append(_Token("string", "".join(buf), i))
            i = j + 1
            continue

        # a leading '-' is a sign only where a value may start
        prev_is_value = bool(tokens) and (
            tokens[-1].kind in ("string", "number", "ident")
            or tokens[-1].value in (")", "]")
        )
        if ch.isdigit() or (ch == "-" and not prev_is_value):
            m = _NUMBER_RE.match(src, i)
            if m:
                text = m.group(0)
                if "x" in text.lower():
                    num: Union[int, float] = int(text, 16)
                elif "." in text or "e" in text.lower():
                    num = float(text)
                else:
                    num = int(text)
                tokens.append(_Token("number", num, i))
                i = m.end()
                continue

        m = _IDENT_RE.match(src, i)
        if m:
            tokens.append(_Token("ident", m.group(0), i))
            i = m.end()
            continue

        op = next((o for o in _OPERATORS if src.startswith(o, i)), None)
        if op is not None:
            tokens.append(_Token("op", op, i))
            i += len(op)
            continue

        if ch in _PUNCT:
            tokens.append(_Token("punct", ch, i))
            i += 1
            continue

        raise ExpressionSyntaxError(src, i, f"unexpected character '{ch}'")

    tokens.append(_Token("eof", None, n))
    return tokens


# ----------------------------------------------------------------------
# Parser (recursive descent; precedence || < && < ==,!= < <,> < ! < postfix)
# ----------------------------------------------------------------------

class _Parser:
    def __init__(self, src: str):
        self.src = src
        self.tokens = _tokenize(src)
        self.i = 0

    @property
    def tok(self) -> _Token:
        return self.tokens[self.i]

    def _error(self, reason: str, tok: Optional[_Token] = None) -> ExpressionSyntaxError:
        t = tok or self.tok
        return ExpressionSyntaxError(self.src, t.pos, reason)

    def _advance(self) -> _Token:
        t = self.tokens[self.i]
        self.i += 1
        return t

    def _accept(self, kind: str, value: Any = None) -> Optional[_Token]:
        t = self.tok
        if t.kind == kind and (value is None or t.value == value):
            return self._advance()
        return None

    def _expect(self, kind: str, value: Any) -> _Token:
        t = self._accept(kind, value)
        if t is None:
            found = "end of expression" if self.tok.kind == "eof" else repr(self.tok.value)
            raise self._error(f"expected '{value}' but found {found}")
        return t

    def parse(self) -> Node:
        if self.tok.kind == "eof":
            raise self._error("empty expression")
        node = self._or()
        if self.tok.kind != "eof":
            raise self._error(f"unexpected token {self.tok.value!r}")
        return node

    def _or(self) -> Node:
        node = self._and()
        while self._accept("op", "||"):
            node = Logical("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._equality()
        while self._accept("op", "&&"):
            node = Logical("&&", node, self._equality())
        return node

    def _equality(self) -> Node:
        node = self._comparison()
        while self.tok.kind == "op" and self.tok.value in ("==", "!="):
            op = self._advance().value
            node = Binary(op, node, self._comparison())
        return node

    def _comparison(self) -> Node:
        node = self._unary()
        while self.tok.kind == "op" and self.tok.value in ("<", "<=", ">", ">="):
            op = self._advance().value
            node = Binary(op, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._accept("op", "!"):
            return Not(self._unary())
        return self._postfix()

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            if self._accept("punct", "."):
                name = self._accept("ident")
                if name is None:
                    raise self._error("expected property name after '.'")
                node = Member(node, name.value)
            elif self._accept("punct", "["):
                key = self._or()
                self._expect("punct", "]")
                node = Index(node, key)
            else:
                return node

    def _primary(self) -> Node:
        t = self.tok
        if t.kind in ("string", "number"):
            self._advance()
            return Literal(t.value)

        if t.kind == "ident":
            self._advance()
            if t.value == "true":
                return Literal(True)
            if t.value == "false":
                return Literal(False)
            if t.value == "null":
                return Literal(None)
            if self._accept("punct", "("):
                return self._call(t)
            return Ref(t.value)

        if self._accept("punct", "("):
            node = self._or()
            self._expect("punct", ")")
            return node

        if t.kind == "eof":
            raise self._error("unexpected end of expression")
        raise self._error(f"unexpected token {t.value!r}")

    def _call(self, name_tok: _Token) -> Node:
        name = _canonical_function(name_tok.value)
        if name is None:
            raise self._error(f"unknown function '{name_tok.value}'", name_tok)
        args: List[Node] = []
        if not self._accept("punct", ")"):
            while True:
                args.append(self._or())
                if self._accept("punct", ")"):
                    break
                self._expect("punct", ",")
        lo, hi = _ARITY[name]
        if len(args) < lo or (hi is not None and len(args) > hi):
            raise self._error(f"wrong number of arguments to {name}()", name_tok)
        return Call(name, tuple(args))


def _canonical_function(name: str) -> Optional[str]:
    # function names are case-insensitive
    lowered = name.lower()
    for known in _ARITY:
        if known.lower() == lowered:
            return known
    return None


@lru_cache(maxsize=1024)
def parse(expr: str) -> Node:
    """Parse one bare expression (no `${{ }}` markers)."""
    return _Parser(expr).parse()


def find_expressions(text: str) -> List[Tuple[int, int, str]]:
    """
    Locate every `${{ ... }}` in text.

    Returns (start, end, inner) triples; `}}` inside a quoted string does not
    close the marker.
    """
    found: List[Tuple[int, int, str]] = []
    i = 0
    while True:
        start = text.find("${{", i)
        if start < 0:
            return found
        j = start + 3
        in_string = False
        while True:
            if j >= len(text):
                raise ExpressionSyntaxError(text, start, "unterminated '${{'")
            ch = text[j]
            if ch == "'":
                in_string = not in_string
            elif not in_string and text.startswith("}}", j):
                break
            j += 1
        found.append((start, j + 2, text[start + 3:j].strip()))
        i = j + 2


@lru_cache(maxsize=1024)
def parse_template(text: str) -> Template:
    parts: List[Any] = []
    pos = 0
    for start, end, inner in find_expressions(text):
        if start > pos:
            parts.append(text[pos:start])
        try:
            parts.append(parse(inner))
        except ExpressionSyntaxError as e:
            raise ExpressionSyntaxError(text, start + 3 + e.position, e.message.split(" at position ")[0]) from None
        pos = end
    if pos < len(text):
        parts.append(text[pos:])
    return Template(tuple(parts))


def uses_status_function(node: Node) -> bool:
    if isinstance(node, Call):
        return node.name in STATUS_FUNCTIONS or any(uses_status_function(a) for a in node.args)
    if isinstance(node, (Member,)):
        return uses_status_function(node.obj)
    if isinstance(node, Index):
        return uses_status_function(node.obj) or uses_status_function(node.key)
    if isinstance(node, Not):
        return uses_status_function(node.operand)
    if isinstance(node, (Binary, Logical)):
        return uses_status_function(node.left) or uses_status_function(node.right)
    if isinstance(node, Template):
        return any(uses_status_function(p) for p in node.parts if not isinstance(p, str))
    return False


@lru_cache(maxsize=1024)
def parse_guard(expr: Optional[str]) -> Node:
    """
    Parse an `if:` guard.

    The guard may be bare (`a == 'b'`) or wrapped (`${{ a == 'b' }}`). Guards
    that call no status function are implicitly `success() && (guard)`.
    """
    if expr is None or not str(expr).strip():
        return Call("success", ())
    src = str(expr).strip()
    found = find_expressions(src)
    if len(found) == 1 and found[0][0] == 0 and found[0][1] == len(src):
        node: Node = parse(found[0][2]) if found[0][2] else Literal(None)
    elif found:
        node = parse_template(src)
    else:
        node = parse(src)
    if not uses_status_function(node):
        node = Logical("&&", Call("success", ()), node)
    return node


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

class EvalContext:
    """
    Namespaces visible to an expression plus the current status.

    status is the aggregate the status functions test: for a step guard it is
    the job's status so far; for a job guard it is the outcome of its needs.
    """

    def __init__(
        self,
        namespaces: Optional[Mapping[str, Any]] = None,
        *,
        status: str = "success",
        workspace: Optional[Path] = None,
    ):
        self.namespaces = dict(namespaces or {})
        self.status = status
        self.workspace = workspace

    def with_status(self, status: str) -> "EvalContext":
        return EvalContext(self.namespaces, status=status, workspace=self.workspace)


def _kind(v: Value) -> str:
    if v is None:
        return "null"
    if isinstance(v, bool):
        return "bool"
    if isinstance(v, (int, float)):
        return "number"
    if isinstance(v, str):
        return "string"
    return "object"


def to_number(v: Value) -> float:
    k = _kind(v)
    if k == "null":
        return 0.0
    if k == "bool":
        return 1.0 if v else 0.0
    if k == "number":
        return float(v)
    if k == "string":
        s = v.strip()
        if not s:
            return 0.0
        try:
            if s.lower().startswith(("0x", "-0x")):
                return float(int(s, 16))
            return float(s)
        except ValueError:
            return math.nan
    return math.nan


def truthy(v: Value) -> bool:
    k = _kind(v)
    if k == "null":
        return False
    if k == "bool":
        return bool(v)
    if k == "number":
        return v != 0 and not (isinstance(v, float) and math.isnan(v))
    if k == "string":
        return v != ""
    return True


def _json_default(o: Any) -> Any:
    # namespaces may be read-only Mappings (e.g. secrets)
    if isinstance(o, Mapping):
        return dict(o)
    return str(o)


def _to_json(v: Value) -> str:
    return json.dumps(v, indent=2, default=_json_default)


def to_string(v: Value) -> str:
    """Stringify a value the way interpolation renders it."""
    k = _kind(v)
    if k == "null":
        return ""
    if k == "bool":
        return "true" if v else "false"
    if k == "number":
        if isinstance(v, float):
            if math.isnan(v):
                return "NaN"
            if math.isinf(v):
                return "Infinity" if v > 0 else "-Infinity"
            if v.is_integer():
                return str(int(v))
        return str(v)
    if k == "string":
        return v
    return _to_json(v)


def loose_equals(a: Value, b: Value) -> bool:
    ka, kb = _kind(a), _kind(b)
    if ka == kb:
        if ka == "string":
            return a.casefold() == b.casefold()
        if ka == "object":
            return a is b
        return a == b
    if "object" in (ka, kb):
        return False
    x, y = to_number(a), to_number(b)
    return x == y  # NaN never equals


def _compare(op: str, a: Value, b: Value) -> bool:
    if _kind(a) == "string" and _kind(b) == "string":
        x: Any = a.casefold()
        y: Any = b.casefold()
    else:
        x, y = to_number(a), to_number(b)
        if math.isnan(x) or math.isnan(y):
            return False
    if op == "<":
        return x < y
    if op == "<=":
        return x <= y
    if op == ">":
        return x > y
    return x >= y


def _lookup(obj: Any, key: Value) -> Value:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        k = to_string(key) if not isinstance(key, str) else key
        try:
            return obj[k]
        except KeyError:
            pass
        lowered = k.lower()
        for existing in obj:
            if isinstance(existing, str) and existing.lower() == lowered:
                return obj[existing]
        return None
    if isinstance(obj, list) and _kind(key) == "number":
        idx = to_number(key)
        if not math.isnan(idx) and idx.is_integer() and 0 <= int(idx) < len(obj):
            return obj[int(idx)]
    return None


def _format(fmt: Value, *args: Value) -> str:
    out: List[str] = []
    s = to_string(fmt)
    i = 0
    while i < len(s):
        if s.startswith("{{", i):
            out.append("{")
            i += 2
        elif s.startswith("}}", i):
            out.append("}")
            i += 2
        elif s[i] == "{":
            close = s.find("}", i)
            token = s[i + 1:close] if close > 0 else ""
            if token.isdigit() and int(token) < len(args):
                out.append(to_string(args[int(token)]))
                i = close + 1
            else:
                out.append(s[i])
                i += 1
        else:
            out.append(s[i])
            i += 1
    return "".join(out)


def _from_json(v: Value) -> Value:
    try:
        return json.loads(to_string(v))
    except ValueError:
        return None


def _hash_files(ctx: EvalContext, *patterns: Value) -> str:
    if ctx.workspace is None:
        return ""
    return hash_files(ctx.workspace, [to_string(p) for p in patterns])


def _contains(search: Value, item: Value) -> bool:
    if isinstance(search, list):
        return any(loose_equals(x, item) for x in search)
    return to_string(item).casefold() in to_string(search).casefold()


_FUNCTIONS: Dict[str, Callable[..., Value]] = {
    "contains": _contains,
    "startsWith": lambda a, b: to_string(a).casefold().startswith(to_string(b).casefold()),
    "endsWith": lambda a, b: to_string(a).casefold().endswith(to_string(b).casefold()),
    "format": _format,
    "join": lambda arr, sep=",": (
        to_string(sep).join(to_string(x) for x in arr) if isinstance(arr, list) else to_string(arr)
    ),
    "toJSON": _to_json,
    "fromJSON": _from_json,
}


def _eval(node: Node, ctx: EvalContext) -> Value:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Ref):
        return _lookup(ctx.namespaces, node.name)
    if isinstance(node, Member):
        return _lookup(_eval(node.obj, ctx), node.name)
    if isinstance(node, Index):
        return _lookup(_eval(node.obj, ctx), _eval(node.key, ctx))
    if isinstance(node, Not):
        return not truthy(_eval(node.operand, ctx))
    if isinstance(node, Logical):
        left = _eval(node.left, ctx)
        if node.op == "&&":
            return _eval(node.right, ctx) if truthy(left) else left
        return left if truthy(left) else _eval(node.right, ctx)
    if isinstance(node, Binary):
        a, b = _eval(node.left, ctx), _eval(node.right, ctx)
        if node.op == "==":
            return loose_equals(a, b)
        if node.op == "!=":
            return not loose_equals(a, b)
        return _compare(node.op, a, b)
    if isinstance(node, Call):
        if node.name == "always":
            return True
        if node.name in STATUS_FUNCTIONS:
            return ctx.status == node.name
        args = [_eval(a, ctx) for a in node.args]
        if node.name == "hashFiles":
            return _hash_files(ctx, *args)
        return _FUNCTIONS[node.name](*args)
    if isinstance(node, Template):
        return "".join(p if isinstance(p, str) else to_string(_eval(p, ctx)) for p in node.parts)
    raise TypeError(f"not an expression node: {node!r}")


def _as_context(context: Union[EvalContext, Mapping[str, Any]]) -> EvalContext:
    return context if isinstance(context, EvalContext) else EvalContext(context)


def evaluate(expr: Union[str, Node], context: Union[EvalContext, Mapping[str, Any]]) -> Value:
    """Evaluate a bare expression (or a pre-parsed node)."""
    node = parse(expr) if isinstance(expr, str) else expr
    return _eval(node, _as_context(context))


def evaluate_guard(expr: Optional[str], context: Union[EvalContext, Mapping[str, Any]]) -> bool:
    return truthy(_eval(parse_guard(expr), _as_context(context)))


def interpolate(value: Any, context: Union[EvalContext, Mapping[str, Any]]) -> Any:
    """
    Replace every `${{ }}` inside value.

    Strings are interpolated; dicts and lists are walked; other values are
    returned unchanged.
    """
    ctx = _as_context(context)
    if isinstance(value, str):
        if "${{" not in value:
            return value
        return _eval(parse_template(value), ctx)
    if isinstance(value, dict):
        return {k: interpolate(v, ctx) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate(v, ctx) for v in value]
    return value


def validate_template(value: Any) -> None:
    """Parse every `${{ }}` inside value; raises ExpressionSyntaxError."""
    if isinstance(value, str):
        if "${{" in value:
            parse_template(value)
    elif isinstance(value, dict):
        for v in value.values():
            validate_template(v)
    elif isinstance(value, list):
        for v in value:
            validate_template(v)
