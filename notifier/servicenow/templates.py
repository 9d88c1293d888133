"""Text templates for handler fields: ``{{.Field}}`` action syntax.

Handler options such as node or message key are small text templates
rendered against the alert that triggered them::

    {{.Name}}/{{index .Tags "host"}}
    {{if .Fields.value}}{{printf "%.2f" .Fields.value}}{{else}}n/a{{end}}

Supported: comments, ``{{-``/``-}}`` trim markers, field chains on dot and
on ``$``, string/number/bool/nil literals, parenthesised pipelines, ``|``
pipelines, ``if``/``else if``/``else``, ``with``/``else``, ``range``/``else``
and the functions listed in ``_FUNCS``. Named templates and variables are
not supported.
"""

from __future__ import annotations

import io
import json
import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TextIO

from pydantic import BaseModel, Field

from notifier.servicenow.exceptions import TemplateCompileError, TemplateExecError

_LEFT = "{{"
_RIGHT = "}}"
_WS = " \t\r\n"

# Token kinds
_TEXT = "text"
_OPEN = "open"
_CLOSE = "close"
_PIPE = "pipe"
_LPAREN = "lparen"
_RPAREN = "rparen"
_FIELD = "field"
_DOT = "dot"
_CONST = "const"
_IDENT = "ident"

_BRANCHES = ("if", "with", "range")
_UNSUPPORTED = ("define", "template", "block", "break", "continue")

_FIELD_RE = re.compile(r"(?:\.[A-Za-z_]\w*)+")
_IDENT_RE = re.compile(r"[A-Za-z_]\w*")
_NUMBER_RE = re.compile(r"[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?")
_VERB_RE = re.compile(r"%([-+ 0#]*)(\d*)(\.\d*)?([a-zA-Z%])")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}
_MAX_DEPTH = 100


class TemplateData(BaseModel):
    """Record handler templates are rendered against (``{{.ID}}`` etc.)."""

    ID: str = ""
    Name: str = ""
    TaskName: str = ""
    Fields: dict[str, Any] = Field(default_factory=dict)
    Tags: dict[str, str] = Field(default_factory=dict)


class _NoValue:
    """Result of looking up a missing map key."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "<no value>"

    def __bool__(self) -> bool:
        return False


NO_VALUE = _NoValue()
_NO_ARG = object()


class _StringMap(dict):
    """A ``dict[str, str]`` record field; ``index`` on a missing key gives ``""``."""


_STRING_MAP = dict[str, str]


# ── Lexer ───────────────────────────────────────────────────────


@dataclass
class _Token:
    kind: str
    value: Any
    pos: int


class _Lexer:
    def __init__(self, name: str, source: str) -> None:
        self.name = name
        self.source = source
        self.tokens: list[_Token] = []

    def error(self, pos: int, msg: str) -> TemplateCompileError:
        line = self.source.count("\n", 0, pos) + 1
        return TemplateCompileError(f"template: {self.name}:{line}: {msg}")

    def lex(self) -> list[_Token]:
        src = self.source
        n = len(src)
        pos = 0
        while pos < n:
            start = src.find(_LEFT, pos)
            if start < 0:
                self.tokens.append(_Token(_TEXT, src[pos:], pos))
                break
            text = src[pos:start]
            inner = start + len(_LEFT)
            if src.startswith("-", inner) and inner + 1 < n and src[inner + 1] in _WS:
                text = text.rstrip(_WS)
                inner += 1
            if text:
                self.tokens.append(_Token(_TEXT, text, pos))
            pos, trim = self._lex_action(start, inner)
            if trim:
                while pos < n and src[pos] in _WS:
                    pos += 1
        return self.tokens

    def _skip_ws(self, j: int) -> int:
        while j < len(self.source) and self.source[j] in _WS:
            j += 1
        return j

    def _match_close(self, j: int) -> tuple[int, bool] | None:
        src = self.source
        if src.startswith(_RIGHT, j):
            return j + len(_RIGHT), False
        if src.startswith("-" + _RIGHT, j) and j > 0 and src[j - 1] in _WS:
            return j + 1 + len(_RIGHT), True
        return None

    def _lex_action(self, start: int, inner: int) -> tuple[int, bool]:
        j = self._skip_ws(inner)
        if self.source.startswith("/*", j):
            close = self.source.find("*/", j + 2)
            if close < 0:
                raise self.error(start, "unclosed comment")
            end = self._match_close(self._skip_ws(close + 2))
            if end is None:
                raise self.error(start, "comment ends before closing delimiter")
            return end

        self.tokens.append(_Token(_OPEN, None, start))
        while True:
            j = self._skip_ws(j)
            if j >= len(self.source):
                raise self.error(start, "unclosed action")
            end = self._match_close(j)
            if end is not None:
                self.tokens.append(_Token(_CLOSE, end[0], j))
                return end
            j = self._lex_item(j, start)

    def _lex_item(self, j: int, start: int) -> int:
        src = self.source
        ch = src[j]
        simple = {"|": _PIPE, "(": _LPAREN, ")": _RPAREN}
        if ch in simple:
            self.tokens.append(_Token(simple[ch], ch, j))
            return j + 1
        if ch == '"':
            return self._lex_quote(j, start)
        if ch == "`":
            close = src.find("`", j + 1)
            if close < 0:
                raise self.error(start, "unterminated raw quoted string")
            self.tokens.append(_Token(_CONST, src[j + 1:close], j))
            return close + 1
        if ch == "$":
            var = _IDENT_RE.match(src, j + 1)
            if var:
                raise self.error(start, f'undefined variable "${var.group()}"')
            chain = _FIELD_RE.match(src, j + 1)
            names = tuple(chain.group()[1:].split(".")) if chain else ()
            self.tokens.append(_Token(_FIELD, (True, names), j))
            return chain.end() if chain else j + 1
        if ch == ".":
            chain = _FIELD_RE.match(src, j)
            if chain:
                names = tuple(chain.group()[1:].split("."))
                self.tokens.append(_Token(_FIELD, (False, names), j))
                return chain.end()
            if not _NUMBER_RE.match(src, j):
                self.tokens.append(_Token(_DOT, ".", j))
                return j + 1
        number = _NUMBER_RE.match(src, j)
        if number and (ch.isdigit() or ch in "+-."):
            text = number.group()
            value: Any = float(text) if any(c in text for c in ".eE") else int(text)
            self.tokens.append(_Token(_CONST, value, j))
            return number.end()
        word = _IDENT_RE.match(src, j)
        if word:
            name = word.group()
            if name in ("true", "false"):
                self.tokens.append(_Token(_CONST, name == "true", j))
            elif name == "nil":
                self.tokens.append(_Token(_CONST, None, j))
            else:
                self.tokens.append(_Token(_IDENT, name, j))
            return word.end()
        if ch in ":=":
            raise self.error(start, "variable declarations are not supported")
        raise self.error(start, f"unexpected {ch!r} in command")

    def _lex_quote(self, j: int, start: int) -> int:
        src = self.source
        out: list[str] = []
        k = j + 1
        while True:
            if k >= len(src) or src[k] == "\n":
                raise self.error(start, "unterminated quoted string")
            c = src[k]
            if c == '"':
                break
            if c == "\\":
                esc = src[k + 1] if k + 1 < len(src) else ""
                if esc not in _ESCAPES:
                    raise self.error(start, f"invalid escape \\{esc} in quoted string")
                out.append(_ESCAPES[esc])
                k += 2
                continue
            out.append(c)
            k += 1
        self.tokens.append(_Token(_CONST, "".join(out), j))
        return k + 1


# ── Parser ──────────────────────────────────────────────────────


@dataclass
class _Operand:
    kind: str  # "field" | "dot" | "const" | "func" | "pipe"
    value: Any = None


@dataclass
class _Pipeline:
    commands: list[list[_Operand]]


@dataclass
class _Text:
    text: str


@dataclass
class _Action:
    pipeline: _Pipeline
    pos: int
    source: str


@dataclass
class _Branch:
    keyword: str
    pipeline: _Pipeline
    pos: int
    source: str
    body: list[Any] = field(default_factory=list)
    else_body: list[Any] = field(default_factory=list)


def _describe(tok: _Token) -> str:
    if tok.kind == _CLOSE:
        return '"}}"'
    if tok.kind == _FIELD:
        root, names = tok.value
        return ("$" if root else "") + "".join(f".{n}" for n in names)
    return repr(tok.value)


class _Parser:
    def __init__(self, lexer: _Lexer, tokens: list[_Token]) -> None:
        self._lexer = lexer
        self._tokens = tokens
        self._i = 0
        self._depth = 0

    def parse(self) -> list[Any]:
        nodes, term = self._parse_list()
        if term is not None:
            raise self._error(term, "unexpected {{" + term.value + "}}")
        return nodes

    def _error(self, tok: _Token, msg: str) -> TemplateCompileError:
        return self._lexer.error(tok.pos, msg)

    def _descend(self, tok: _Token) -> None:
        self._depth += 1
        if self._depth > _MAX_DEPTH:
            raise self._error(tok, "max expression depth exceeded")

    def _expect(self, kind: str) -> _Token:
        tok = self._tokens[self._i]
        if tok.kind != kind:
            raise self._error(tok, f"unexpected {_describe(tok)}")
        self._i += 1
        return tok

    def _parse_list(self) -> tuple[list[Any], _Token | None]:
        """Parse nodes up to an ``{{else}}``/``{{end}}`` (returned) or EOF."""
        nodes: list[Any] = []
        while self._i < len(self._tokens):
            tok = self._tokens[self._i]
            if tok.kind == _TEXT:
                nodes.append(_Text(tok.value))
                self._i += 1
                continue
            head = self._tokens[self._i + 1]
            if head.kind == _IDENT and head.value in ("end", "else"):
                self._i += 1
                return nodes, head
            if head.kind == _IDENT and head.value in _BRANCHES:
                self._i += 2
                nodes.append(self._parse_branch(tok, head))
                continue
            if head.kind == _IDENT and head.value in _UNSUPPORTED:
                raise self._error(head, "{{" + head.value + "}} is not supported")
            self._i += 1
            pipeline = self._parse_pipeline()
            close = self._expect(_CLOSE)
            source = self._lexer.source[tok.pos:close.value]
            nodes.append(_Action(pipeline, tok.pos, source))
        return nodes, None

    def _parse_branch(self, open_tok: _Token, head: _Token) -> _Branch:
        self._descend(head)
        if self._tokens[self._i].kind == _CLOSE:
            raise self._error(head, f"missing value for {head.value}")
        pipeline = self._parse_pipeline()
        close = self._expect(_CLOSE)
        node = _Branch(
            keyword=head.value,
            pipeline=pipeline,
            pos=open_tok.pos,
            source=self._lexer.source[open_tok.pos:close.value],
        )
        node.body, term = self._parse_list()
        if term is None:
            raise self._error(head, f"unexpected EOF in {head.value}")
        if term.value == "else":
            self._i += 1
            nxt = self._tokens[self._i]
            # {{else if ...}} / {{else with ...}} share the enclosing {{end}}.
            if nxt.kind == _IDENT and nxt.value == head.value and head.value != "range":
                self._i += 1
                node.else_body = [self._parse_branch(term, nxt)]
                self._depth -= 1
                return node
            self._expect(_CLOSE)
            node.else_body, term = self._parse_list()
            if term is None or term.value != "end":
                raise self._error(term or head, f"expected end in {head.value}")
        self._i += 1
        self._expect(_CLOSE)
        self._depth -= 1
        return node

    def _parse_pipeline(self) -> _Pipeline:
        commands = [self._parse_command()]
        while self._tokens[self._i].kind == _PIPE:
            self._i += 1
            commands.append(self._parse_command())
        return _Pipeline(commands)

    def _parse_command(self) -> list[_Operand]:
        args: list[_Operand] = []
        while self._tokens[self._i].kind not in (_PIPE, _CLOSE, _RPAREN):
            args.append(self._parse_operand())
        if not args:
            raise self._error(self._tokens[self._i], "missing value for command")
        return args

    def _parse_operand(self) -> _Operand:
        tok = self._tokens[self._i]
        self._i += 1
        if tok.kind == _FIELD:
            return _Operand("field", tok.value)
        if tok.kind == _DOT:
            return _Operand("dot")
        if tok.kind == _CONST:
            return _Operand("const", tok.value)
        if tok.kind == _LPAREN:
            self._descend(tok)
            pipeline = self._parse_pipeline()
            self._expect(_RPAREN)
            self._depth -= 1
            return _Operand("pipe", pipeline)
        if tok.kind == _IDENT:
            if tok.value in _FUNCS:
                return _Operand("func", tok.value)
            raise self._error(tok, f'function "{tok.value}" not defined')
        raise self._error(tok, f"unexpected {_describe(tok)} in operand")


# ── Formatting & builtin functions ──────────────────────────────


class _FuncError(Exception):
    pass


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e21:
        return str(int(value))
    mantissa, sep, exp = repr(value).partition("e")
    if sep:
        return f"{mantissa}e{int(exp):+03d}"
    return mantissa


def format_value(value: Any) -> str:
    """Render a value the way an action prints it."""
    if value is NO_VALUE:
        return "<no value>"
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, Mapping):
        items = " ".join(
            f"{format_value(k)}:{format_value(value[k])}" for k in sorted(value, key=str)
        )
        return f"map[{items}]"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(format_value(v) for v in value) + "]"
    if isinstance(value, BaseModel):
        return "{" + " ".join(format_value(getattr(value, n)) for n in type(value).model_fields) + "}"
    return str(value)


def _truth(value: Any) -> bool:
    if value is None or value is NO_VALUE:
        return False
    return bool(value)


def _and(first: Any, *rest: Any) -> Any:
    value = first
    for value in (first, *rest):
        if not _truth(value):
            break
    return value


def _or(first: Any, *rest: Any) -> Any:
    value = first
    for value in (first, *rest):
        if _truth(value):
            break
    return value


def _not(value: Any) -> bool:
    return not _truth(value)


def _kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if value is None or value is NO_VALUE:
        return "nil"
    raise _FuncError(f"invalid type for comparison: {type(value).__name__}")


def _eq(first: Any, *others: Any) -> bool:
    if not others:
        raise _FuncError("missing argument for comparison")
    kind = _kind(first)
    for other in others:
        if _kind(other) != kind:
            raise _FuncError("incompatible types for comparison")
        if first == other:
            return True
    return False


def _ne(a: Any, b: Any) -> bool:
    return not _eq(a, b)


def _lt(a: Any, b: Any) -> bool:
    kind = _kind(a)
    if _kind(b) != kind:
        raise _FuncError("incompatible types for comparison")
    if kind in ("bool", "nil"):
        raise _FuncError(f"invalid type for comparison: {kind}")
    return a < b


def _le(a: Any, b: Any) -> bool:
    return _lt(a, b) or _eq(a, b)


def _gt(a: Any, b: Any) -> bool:
    return not _le(a, b)


def _ge(a: Any, b: Any) -> bool:
    return not _lt(a, b)


def _index(item: Any, *keys: Any) -> Any:
    for key in keys:
        if isinstance(item, Mapping):
            item = item.get(key, "" if isinstance(item, _StringMap) else NO_VALUE)
        elif isinstance(item, (list, tuple, str)):
            if not isinstance(key, int) or isinstance(key, bool):
                raise _FuncError(f"cannot index slice/array with type {type(key).__name__}")
            if not 0 <= key < len(item):
                raise _FuncError(f"index out of range: {key}")
            item = item[key]
        elif item is None or item is NO_VALUE:
            raise _FuncError("index of untyped nil")
        else:
            raise _FuncError(f"can't index item of type {type(item).__name__}")
    return item


def _len(value: Any) -> int:
    if isinstance(value, (str, Mapping, list, tuple)):
        return len(value)
    raise _FuncError(f"len of type {type(value).__name__}")


def _sprint(*args: Any) -> str:
    out: list[str] = []
    for i, arg in enumerate(args):
        # Operands are space-separated only when neither side is a string.
        if i and not isinstance(arg, str) and not isinstance(args[i - 1], str):
            out.append(" ")
        out.append(format_value(arg))
    return "".join(out)


def _sprintln(*args: Any) -> str:
    return " ".join(format_value(a) for a in args) + "\n"


def _bad_verb(verb: str, arg: Any) -> str:
    return f"%!{verb}({type(arg).__name__}={format_value(arg)})"


def _sprintf(fmt: str, *args: Any) -> str:
    if not isinstance(fmt, str):
        raise _FuncError("format must be a string")
    remaining = list(args)

    def convert(match: re.Match[str]) -> str:
        flags, width, precision, verb = match.groups()
        if verb == "%":
            return "%"
        if not remaining:
            return f"%!{verb}(MISSING)"
        arg = remaining.pop(0)
        precision = precision or ""
        align = "<" if "-" in flags else ""
        sign = "+" if "+" in flags else (" " if " " in flags else "")
        zero = "0" if "0" in flags and not align else ""
        number_spec = f"{align}{sign}{zero}{width}"
        if verb in ("v", "s"):
            if verb == "s" and not isinstance(arg, str):
                return _bad_verb(verb, arg)
            return format(format_value(arg), f"{align or '>'}{width}{precision}")
        if verb == "q":
            quoted = json.dumps(format_value(arg), ensure_ascii=False)
            return format(quoted, f"{align or '>'}{width}")
        if verb == "d":
            if not isinstance(arg, int) or isinstance(arg, bool):
                return _bad_verb(verb, arg)
            return format(arg, number_spec + "d")
        if verb in ("f", "e", "g"):
            if not isinstance(arg, (int, float)) or isinstance(arg, bool):
                return _bad_verb(verb, arg)
            return format(float(arg), number_spec + precision + verb)
        return _bad_verb(verb, arg)

    text = _VERB_RE.sub(convert, fmt)
    if remaining:
        extra = ", ".join(f"{type(a).__name__}={format_value(a)}" for a in remaining)
        text += f"%!(EXTRA {extra})"
    return text


_FUNCS: dict[str, Callable[..., Any]] = {
    "and": _and,
    "or": _or,
    "not": _not,
    "eq": _eq,
    "ne": _ne,
    "lt": _lt,
    "le": _le,
    "gt": _gt,
    "ge": _ge,
    "index": _index,
    "len": _len,
    "print": _sprint,
    "printf": _sprintf,
    "println": _sprintln,
}


# ── Execution ───────────────────────────────────────────────────


class _State:
    def __init__(self, template: Template, out: TextIO, root: Any) -> None:
        self._template = template
        self._out = out
        self._root = root

    def _error(self, node: _Action | _Branch, msg: str) -> TemplateExecError:
        src = self._template.source
        line = src.count("\n", 0, node.pos) + 1
        col = node.pos - (src.rfind("\n", 0, node.pos) + 1)
        name = self._template.name
        return TemplateExecError(
            f'template: {name}:{line}:{col}: executing "{name}" at <{node.source}>: {msg}'
        )

    def walk(self, nodes: list[Any], dot: Any) -> None:
        for node in nodes:
            if isinstance(node, _Text):
                self._out.write(node.text)
            elif isinstance(node, _Action):
                self._out.write(format_value(self._eval_pipeline(node, node.pipeline, dot)))
            else:
                self._walk_branch(node, dot)

    def _walk_branch(self, node: _Branch, dot: Any) -> None:
        value = self._eval_pipeline(node, node.pipeline, dot)
        if node.keyword == "range":
            items = self._range_items(node, value)
            if not items:
                self.walk(node.else_body, dot)
            for item in items:
                self.walk(node.body, item)
        elif _truth(value):
            self.walk(node.body, value if node.keyword == "with" else dot)
        else:
            self.walk(node.else_body, dot)

    def _range_items(self, node: _Branch, value: Any) -> list[Any]:
        if value is None or value is NO_VALUE:
            return []
        if isinstance(value, Mapping):
            return [value[k] for k in sorted(value, key=str)]
        if isinstance(value, (list, tuple)):
            return list(value)
        raise self._error(node, f"range can't iterate over {format_value(value)}")

    def _eval_pipeline(self, node: _Action | _Branch, pipeline: _Pipeline, dot: Any) -> Any:
        value: Any = _NO_ARG
        for command in pipeline.commands:
            value = self._eval_command(node, command, dot, value)
        return value

    def _eval_command(
        self,
        node: _Action | _Branch,
        command: list[_Operand],
        dot: Any,
        final: Any,
    ) -> Any:
        head, args = command[0], command[1:]
        if head.kind == "func":
            values = [self._eval_arg(node, arg, dot) for arg in args]
            if final is not _NO_ARG:
                values.append(final)
            return self._call(node, head.value, values)
        if args or final is not _NO_ARG:
            raise self._error(node, "can't give argument to non-function")
        return self._eval_arg(node, head, dot)

    def _eval_arg(self, node: _Action | _Branch, op: _Operand, dot: Any) -> Any:
        if op.kind == "dot":
            return dot
        if op.kind == "const":
            return op.value
        if op.kind == "pipe":
            return self._eval_pipeline(node, op.value, dot)
        if op.kind == "func":
            return self._call(node, op.value, [])
        root, names = op.value
        value = self._root if root else dot
        for name in names:
            value = self._field(node, value, name)
        return value

    def _field(self, node: _Action | _Branch, value: Any, name: str) -> Any:
        if isinstance(value, BaseModel):
            fields = type(value).model_fields
            if name in fields:
                result = getattr(value, name)
                if fields[name].annotation == _STRING_MAP:
                    return _StringMap(result)
                return result
        elif isinstance(value, Mapping):
            return value.get(name, NO_VALUE)
        elif value is None or value is NO_VALUE:
            raise self._error(node, f"nil pointer evaluating interface {{}}.{name}")
        raise self._error(node, f"can't evaluate field {name} in type {type(value).__name__}")

    def _call(self, node: _Action | _Branch, name: str, args: list[Any]) -> Any:
        try:
            return _FUNCS[name](*args)
        except (_FuncError, TypeError, ValueError, OverflowError) as exc:
            raise self._error(node, f"error calling {name}: {exc}") from exc


class Template:
    """A compiled handler template."""

    def __init__(self, name: str, source: str, nodes: list[Any]) -> None:
        self.name = name
        self.source = source
        self._nodes = nodes

    def execute(self, out: TextIO, data: Any) -> None:
        """Write the rendered template to *out*.

        Raises:
            TemplateExecError: a field or function could not be evaluated.
        """
        _State(self, out, data).walk(self._nodes, data)


def compile_template(name: str, source: str) -> Template:
    """Parse *source* into a Template.

    Raises:
        TemplateCompileError: the source is not a valid template.
    """
    lexer = _Lexer(name, source)
    nodes = _Parser(lexer, lexer.lex()).parse()
    return Template(name, source, nodes)


def render(name: str, source: str, data: Any, buffer: io.StringIO | None = None) -> str:
    """Compile and execute *source* against *data*.

    An empty source renders to ``""`` without being parsed. When *buffer* is
    given it is reset and reused for the output.
    """
    if not source:
        return ""
    if buffer is None:
        buffer = io.StringIO()
    buffer.seek(0)
    buffer.truncate()
    compile_template(name, source).execute(buffer, data)
    return buffer.getvalue()
