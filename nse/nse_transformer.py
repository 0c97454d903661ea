"""
Transforms the lark parse tree into captured expressions using nse_datatypes.
"""
import ast
import re

from lark import Transformer, Token, v_args

from nse.nse_datatypes import Symbol, Call, Formals, Missing


class _Named:
    """Internal carrier for a `name = value` argument until the call is built."""
    __slots__ = ("name", "value")

    def __init__(self, name, value):
        self.name = name
        self.value = value


_BACKTICK_ESCAPE = re.compile(r"\\(x[0-9a-fA-F]{2}|.)")
_SIMPLE_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}


def _unescape(m: re.Match) -> str:
    code = m.group(1)
    if code.startswith("x") and len(code) == 3:
        return chr(int(code[1:], 16))
    return _SIMPLE_ESCAPES.get(code, code)


def _name_text(tok: Token) -> str:
    text = str(tok)
    match tok.type:
        case "BACKTICK":
            return _BACKTICK_ESCAPE.sub(_unescape, text[1:-1])
        case "STRING":
            return ast.literal_eval(text)
    return text


@v_args(inline=True)
class NseTransformer(Transformer):
    """Builds Symbol/Call/Formals trees; literals become plain Python values."""

    # Program and blocks
    def start(self, *stmts):
        return list(stmts)

    def block(self, *stmts):
        return Call("{", stmts)

    def paren(self, expr):
        return Call("(", [expr])

    # Atomics
    def symbol(self, tok):
        return Symbol(str(tok))

    def backtick(self, tok):
        return Symbol(_name_text(tok))

    def number(self, tok):
        text = str(tok)
        # Integers without '.' or exponent stay exact Python ints.
        if not any(c in text for c in ".eE"):
            return int(text)
        return float(text)

    def string(self, tok):
        return ast.literal_eval(str(tok))

    def true(self):
        return True

    def false(self):
        return False

    def null(self):
        return None

    # Operators
    def binop(self, lhs, op, rhs):
        return Call(str(op), [lhs, rhs])

    def unop(self, op, operand):
        return Call(str(op), [operand])

    # Postfix forms
    def call(self, head, args=None):
        return self._build_call(head, [], args)

    def index(self, target, args=None):
        return self._build_call(Symbol("["), [target], args)

    def dollar(self, target, member):
        if isinstance(member, str):
            member = Symbol(member)
        return Call("$", [target, member])

    def args(self, *items):
        return list(items)

    def named_arg(self, name_tok, value):
        return _Named(_name_text(name_tok), value)

    def _build_call(self, head, leading, args):
        values = list(leading)
        names = [None] * len(leading)
        for item in args or []:
            if isinstance(item, _Named):
                values.append(item.value)
                names.append(item.name)
            else:
                values.append(item)
                names.append(None)
        return Call(head, values, names)

    # Functions and conditionals
    def function(self, *parts):
        if len(parts) == 2:
            params, body = parts
        else:
            params, body = Formals(), parts[0]
        return Call("function", [params, body])

    def params(self, *items):
        return Formals(items)

    def param(self, name_tok):
        return (str(name_tok), Missing)

    def param_default(self, name_tok, default):
        return (str(name_tok), default)

    def if_expr(self, cond, yes):
        return Call("if", [cond, yes])

    def if_else(self, cond, yes, no):
        return Call("if", [cond, yes, no])
