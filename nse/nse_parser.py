"""
Builds the lark parser for the NSE grammar and turns source text into a parse tree.
"""
from pathlib import Path
from typing import Iterator, Optional

from lark import Lark, Token
from lark.exceptions import UnexpectedInput, UnexpectedCharacters, UnexpectedEOF
from lark.lark import PostLex

GRAMMAR_PATH = Path(__file__).parent / "nse_grammar.lark"

# Token types after which a newline never ends a statement.
_CONTINUATION_TYPES = {
    "ASSIGN_OP", "OR_OP", "AND_OP", "CMP_OP", "NOT_OP", "ADD_OP",
    "MUL_OP", "SPECIAL_OP", "SEQ_OP", "POW_OP",
}
_CONTINUATION_VALUES = {",", "=", "$", "else"}
_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {")", "]", "}"}
_HEADER_KEYWORDS = {"if", "function"}


class SeparatorPostLex(PostLex):
    """Folds newlines and semicolons into `_SEP` tokens.

    Newlines are dropped inside parentheses and brackets, after binary
    operators, commas and `else`, after the `)` closing an `if (...)` or
    `function(...)` header, and before `else`. Separators are never emitted
    right after `{`, before `}` or at either end of the input.
    """
    always_accept = ("_NL", "SEMI")

    def process(self, stream: Iterator[Token]) -> Iterator[Token]:
        stack = []  # (opener, opened_by_header_keyword)
        pending: Optional[Token] = None
        prev: Optional[Token] = None
        header_closed = False

        for tok in stream:
            if tok.type in ("_NL", "SEMI"):
                if tok.type == "_NL":
                    if stack and stack[-1][0] != "{":
                        continue
                    if header_closed or (prev is not None and self._continues(prev)):
                        continue
                elif stack and stack[-1][0] != "{":
                    # ';' inside parentheses is left for the parser to reject
                    yield tok
                    prev = tok
                    continue
                if prev is None or prev.value == "{":
                    continue
                if pending is None:
                    pending = tok
                continue

            if pending is not None:
                if tok.value not in ("}", "else"):
                    yield Token.new_borrow_pos("_SEP", ";", pending)
                pending = None

            header_closed = False
            if tok.value in _OPENERS:
                opened_by_header = (
                    tok.value == "(" and prev is not None and prev.value in _HEADER_KEYWORDS
                )
                stack.append((tok.value, opened_by_header))
            elif tok.value in _CLOSERS and stack:
                _, opened_by_header = stack.pop()
                header_closed = opened_by_header

            yield tok
            prev = tok

    def _continues(self, tok: Token) -> bool:
        return tok.type in _CONTINUATION_TYPES or tok.value in _CONTINUATION_VALUES


def build_parser() -> Lark:
    """Creates an LALR parser for the NSE grammar."""
    return Lark.open(
        str(GRAMMAR_PATH),
        parser="lalr",
        lexer="basic",
        postlex=SeparatorPostLex(),
        propagate_positions=True,
    )


class NseParser:
    """Parses NSE source text into a lark tree, reporting failures as SyntaxError."""

    _lark: Optional[Lark] = None

    def __init__(self):
        if NseParser._lark is None:
            NseParser._lark = build_parser()
        self.lark = NseParser._lark

    def parse(self, source: str):
        try:
            return self.lark.parse(source)
        except UnexpectedInput as e:
            raise self._syntax_error(e, source) from None

    def _syntax_error(self, e: UnexpectedInput, source: str) -> SyntaxError:
        line = getattr(e, "line", None)
        col = getattr(e, "column", None)
        match e:
            case UnexpectedCharacters():
                ch = source[e.pos_in_stream] if 0 <= e.pos_in_stream < len(source) else ""
                msg = f"unexpected character {ch!r}"
            case UnexpectedEOF():
                msg = "unexpected end of input"
            case _:
                token = getattr(e, "token", None)
                if token is None or token.type == "$END":
                    msg = "unexpected end of input"
                elif token.type == "_SEP":
                    msg = "unexpected end of statement"
                else:
                    msg = f"unexpected {str(token)!r}"
        err = SyntaxError(msg)
        if isinstance(line, int) and line > 0:
            err.lineno = line
            err.offset = col
            lines = source.splitlines()
            if line <= len(lines):
                err.text = lines[line - 1]
        return err
