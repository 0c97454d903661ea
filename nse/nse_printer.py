"""
A pretty-printer for captured expressions and NSE runtime values.
"""
import collections.abc
import os
import re
from typing import Any, List, Optional

from nse.nse_datatypes import (
    Symbol, Call, Formals, Missing, Scope, Promise, Dots, Closure, ReturnValue
)

RESERVED_WORDS = {"if", "else", "function", "TRUE", "FALSE", "NULL", "for", "while", "repeat", "in", "next", "break"}
_SYNTACTIC_NAME = re.compile(r"^(\.\.\.|[A-Za-z][A-Za-z0-9._]*|\.(?![0-9])[A-Za-z0-9._]*)$")

# Binding strength of operators; higher binds tighter.
BINARY_PRECEDENCE = {
    "<-": 1,
    "||": 2, "|": 2,
    "&&": 3, "&": 3,
    "==": 5, "!=": 5, "<": 5, ">": 5, "<=": 5, ">=": 5,
    "+": 6, "-": 6,
    "*": 7, "/": 7,
    ":": 9,
    "^": 11,
}
SPECIAL_PRECEDENCE = 8
UNARY_PRECEDENCE = {"!": 4, "-": 10, "+": 10}
POSTFIX_PRECEDENCE = 12
ATOM_PRECEDENCE = 13
RIGHT_ASSOCIATIVE = {"<-", "^"}
NON_ASSOCIATIVE = {"==", "!=", "<", ">", "<=", ">="}
UNSPACED = {"^", ":"}

DEFAULT_WIDTH_CUTOFF = int(os.environ.get("NSE_WIDTH_CUTOFF", "60"))


_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\t": "\\t", "\r": "\\r"}


def _escape(text: str, quote: str) -> str:
    """Escapes `text` for use between `quote` characters; control characters become \\xNN."""
    out = []
    for ch in text:
        if ch in _ESCAPES:
            out.append(_ESCAPES[ch])
        elif ch == quote:
            out.append("\\" + ch)
        elif ord(ch) < 0x20 or ord(ch) == 0x7f:
            out.append(f"\\x{ord(ch):02x}")
        else:
            out.append(ch)
    return "".join(out)


def is_syntactic_name(name: str) -> bool:
    return bool(_SYNTACTIC_NAME.match(name)) and name not in RESERVED_WORDS


def _binary_precedence(op: str) -> Optional[int]:
    if op in BINARY_PRECEDENCE:
        return BINARY_PRECEDENCE[op]
    if len(op) >= 2 and op.startswith("%") and op.endswith("%"):
        return SPECIAL_PRECEDENCE
    return None


class Printer:
    """Formats expressions and values into readable NSE source strings.

    With `oneline=True` blocks are joined with '; ' so the result never
    spans more than one line.
    """

    def __init__(self, indent_width=4, oneline=False):
        self._indent_char = " " * indent_width
        self.oneline = oneline
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        """Dispatcher to find the correct formatting method."""
        if obj is Missing:
            return self._pformat_missing
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, Scope):
            return self._pformat_scope
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_dict
        if isinstance(obj, (list, tuple)):
            return self._pformat_list
        if callable(obj):
            return self._pformat_builtin
        # Default to Python's repr for unknown types
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            float: self._pformat_float,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            Symbol: self._pformat_symbol,
            Call: self._pformat_call,
            Formals: self._pformat_formals,
            Closure: self._pformat_closure,
            Promise: self._pformat_promise,
            Dots: self._pformat_dots,
            ReturnValue: self._pformat_return,
        }

    # -----------------------------------------------------------------
    # Literals
    # -----------------------------------------------------------------

    def _pformat_primitive(self, obj, level):
        return str(obj)

    def _pformat_float(self, obj, level):
        text = repr(obj)
        if text.endswith(".0"):
            text = text[:-2]
        return {"inf": "Inf", "-inf": "-Inf", "nan": "NaN"}.get(text, text)

    def _pformat_str(self, obj, level):
        return '"' + _escape(obj, '"') + '"'

    def _pformat_bool(self, obj, level):
        return 'TRUE' if obj else 'FALSE'

    def _pformat_none(self, obj, level):
        return 'NULL'

    def _pformat_missing(self, obj, level):
        return ''

    # -----------------------------------------------------------------
    # Language objects
    # -----------------------------------------------------------------

    def _pformat_symbol(self, obj, level):
        return self._name(obj.name)

    def _name(self, name):
        return name if is_syntactic_name(name) else "`" + _escape(name, "`") + "`"

    def _pformat_formals(self, obj, level):
        parts = []
        for name, default in obj.params:
            if default is Missing:
                parts.append(self._name(name))
            else:
                parts.append(f"{self._name(name)} = {self.pformat(default, level)}")
        return ", ".join(parts)

    def _pformat_call(self, obj, level):
        fname = obj.fname
        n = len(obj.args)
        unnamed = all(name is None for name in obj.names)
        if fname is not None and unnamed:
            match fname:
                case "{":
                    return self._pformat_block(obj, level)
                case "(" if n == 1:
                    return f"({self.pformat(obj.args[0], level)})"
                case "if" if n in (2, 3):
                    return self._pformat_if(obj, level)
                case "function" if n == 2 and isinstance(obj.args[0], Formals):
                    return f"function({self.pformat(obj.args[0], level)}) {self.pformat(obj.args[1], level)}"
                case "$" if n == 2:
                    target = self._operand(obj.args[0], POSTFIX_PRECEDENCE, level)
                    member = obj.args[1]
                    member_s = self._name(member.name) if isinstance(member, Symbol) else self.pformat(member, level)
                    return f"{target}${member_s}"
            if n == 2 and _binary_precedence(fname) is not None:
                return self._pformat_binary(obj, level)
            if n == 1 and fname in UNARY_PRECEDENCE:
                operand = self._operand(obj.args[0], UNARY_PRECEDENCE[fname], level)
                return f"{fname}{operand}"
        if fname == "[" and n >= 1 and obj.names[0] is None:
            target = self._operand(obj.args[0], POSTFIX_PRECEDENCE, level)
            inner = self._pformat_args(obj.args[1:], obj.names[1:], level)
            return f"{target}[{inner}]"
        head = self._operand(obj.head, POSTFIX_PRECEDENCE, level)
        return f"{head}({self._pformat_args(obj.args, obj.names, level)})"

    def _pformat_args(self, args, names, level):
        parts = []
        for name, arg in zip(names, args):
            value = self.pformat(arg, level)
            if name is None:
                parts.append(value)
            elif arg is Missing:
                parts.append(f"{self._name(name)} = ")
            else:
                parts.append(f"{self._name(name)} = {value}")
        return ", ".join(parts)

    def _pformat_binary(self, obj, level):
        op = obj.fname
        prec = _binary_precedence(op)
        lhs, rhs = obj.args
        left_min = prec + 1 if (op in RIGHT_ASSOCIATIVE or op in NON_ASSOCIATIVE) else prec
        right_min = prec if op in RIGHT_ASSOCIATIVE else prec + 1
        left = self._operand(lhs, left_min, level)
        right = self._operand(rhs, right_min, level)
        if op in UNSPACED:
            return f"{left}{op}{right}"
        return f"{left} {op} {right}"

    def _operand(self, node, min_prec, level):
        text = self.pformat(node, level)
        if self.precedence(node) < min_prec:
            return f"({text})"
        return text

    def precedence(self, node) -> int:
        """How tightly a node binds when it appears as an operand."""
        if isinstance(node, (int, float)) and not isinstance(node, bool) and node < 0:
            return UNARY_PRECEDENCE["-"]
        if not isinstance(node, Call) or node.fname is None:
            return ATOM_PRECEDENCE
        fname = node.fname
        n = len(node.args)
        if not all(name is None for name in node.names):
            return POSTFIX_PRECEDENCE
        if fname in ("if", "function"):
            return 0
        if n == 2 and _binary_precedence(fname) is not None:
            return _binary_precedence(fname)
        if n == 1 and fname in UNARY_PRECEDENCE:
            return UNARY_PRECEDENCE[fname]
        if fname in ("(", "{"):
            return ATOM_PRECEDENCE
        return POSTFIX_PRECEDENCE

    def _pformat_if(self, obj, level):
        cond = self.pformat(obj.args[0], level)
        yes = self.pformat(obj.args[1], level)
        if len(obj.args) == 3:
            return f"if ({cond}) {yes} else {self.pformat(obj.args[2], level)}"
        return f"if ({cond}) {yes}"

    def _pformat_block(self, obj, level):
        if self.oneline:
            inner = "; ".join(self.pformat(stmt, level) for stmt in obj.args)
            return f"{{{inner}}}"
        if not obj.args:
            return "{\n" + self._indent_char * level + "}"

        outer_indent = self._indent_char * level
        inner_level = level + 1
        inner_indent = self._indent_char * inner_level

        lines = []
        for stmt in obj.args:
            stmt_str = self.pformat(stmt, inner_level)
            stmt_lines = stmt_str.splitlines() or [""]
            # Indent the first line only; nested blocks indent their own contents.
            lines.append("\n".join([inner_indent + stmt_lines[0]] + stmt_lines[1:]))
        return "{\n" + "\n".join(lines) + f"\n{outer_indent}}}"

    # -----------------------------------------------------------------
    # Runtime values
    # -----------------------------------------------------------------

    def _pformat_list(self, obj, level):
        items = [self.pformat(item, level) for item in obj]
        atomic = all(item is None or isinstance(item, (bool, int, float, str)) for item in obj)
        fn = "c" if atomic and obj else "list"
        return f"{fn}({', '.join(items)})"

    def _pformat_dict(self, obj, level):
        parts = [f"{self._name(str(k))} = {self.pformat(v, level)}" for k, v in obj.items()]
        return f"list({', '.join(parts)})"

    def _pformat_closure(self, obj, level):
        return f"function({self.pformat(obj.formals, level)}) {self.pformat(obj.body, level)}"

    def _pformat_promise(self, obj, level):
        return self.pformat(obj.expr, level)

    def _pformat_dots(self, obj, level):
        return self._pformat_args(obj.exprs, obj.names, level)

    def _pformat_return(self, obj, level):
        return f"return({self.pformat(obj.value, level)})"

    def _pformat_scope(self, obj, level):
        name = obj.meta.get("name")
        return f"<environment: {name}>" if name else "<environment>"

    def _pformat_builtin(self, obj, level):
        name = getattr(obj, "_nse_name", None) or getattr(obj, "__name__", "builtin")
        return f"<builtin {name}>"


# =================================================================
# Rendering entry points
# =================================================================

def render(expr: Any) -> str:
    """Renders an expression as a single line of source text."""
    return Printer(oneline=True).pformat(expr)


def deparse(expr: Any, width_cutoff: int = DEFAULT_WIDTH_CUTOFF) -> List[str]:
    """Renders an expression as a list of text segments.

    Blocks span several segments, and any line longer than `width_cutoff`
    is broken at the first token boundary at or past the cutoff, with
    continuation lines indented four spaces. Callers that keep only the
    first segment (or join them) rely on the result being short.
    """
    if not 20 <= width_cutoff <= 500:
        raise ValueError(f"width_cutoff must be between 20 and 500, got {width_cutoff}")
    out: List[str] = []
    for line in Printer().pformat(expr).split("\n"):
        out.extend(_wrap_line(line, width_cutoff))
    return out


def _break_points(line: str):
    """Positions of spaces that sit outside string literals and backticked names."""
    quote = None
    escaped = False
    for i, ch in enumerate(line):
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in ('"', "'", "`"):
            quote = ch
        elif ch == " ":
            yield i


def _wrap_line(line: str, width_cutoff: int) -> List[str]:
    indent = line[:len(line) - len(line.lstrip(" "))]
    prefix = indent + "    "
    segments = []
    current = line
    while len(current) > width_cutoff:
        start = max(width_cutoff, len(prefix) + 1)
        split_at = next((i for i in _break_points(current) if i >= start), None)
        if split_at is None:
            break
        head = current[:split_at].rstrip()
        rest = current[split_at:].lstrip(" ")
        if not rest:
            break
        segments.append(head)
        current = prefix + rest
    segments.append(current)
    return segments
