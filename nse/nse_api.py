"""
Python entry points for capture, evaluation and substitution.

Each capturing function takes source text and has a `_q` sibling that takes
an expression already captured (with `quote` or built from Symbol/Call), so
that callers can compose them without re-capturing.
"""
from typing import Any, Iterable, List, Mapping, Optional

from nse.nse_datatypes import Call
from nse.nse_parser import NseParser
from nse.nse_transformer import NseTransformer
from nse.nse_printer import render, deparse
from nse.nse_runtime import ScriptRunner, is_true
from nse import nse_substitute


def quote(source: str) -> Any:
    """Captures source text as an expression without evaluating it.

    Several statements are captured as one `{` block.
    """
    stmts = NseTransformer().transform(NseParser().parse(source))
    if not stmts:
        raise SyntaxError("empty expression")
    if len(stmts) == 1:
        return stmts[0]
    return Call("{", stmts)


def evaluate_q(expr: Any, data: Any = None, enclos: Any = None) -> Any:
    """Evaluates a captured expression.

    Free names resolve first in `data`, then in `enclos` and its parents.
    If `data` is a Scope, `enclos` is ignored.
    """
    return ScriptRunner().evaluate(expr, data, enclos)


def evaluate(source: str, data: Any = None, enclos: Any = None) -> Any:
    return evaluate_q(quote(source), data, enclos)


def substitute_q(expr: Any, env: Any = None, *, rest: Optional[Iterable[Any]] = None) -> Any:
    """Replaces the free names of `expr` bound in `env`; `rest` fills `...`."""
    return nse_substitute.substitute(expr, env, list(rest) if rest is not None else None)


def substitute(source: str, env: Any = None, *, rest: Optional[Iterable[Any]] = None) -> Any:
    return substitute_q(quote(source), env, rest=rest)


def subset_q(records: Iterable[Mapping[str, Any]], condition: Any, enclos: Any = None) -> List[Mapping[str, Any]]:
    """Keeps the records for which `condition` evaluates to TRUE.

    Each record is the primary context; `enclos` supplies any other name.
    """
    runner = ScriptRunner()
    return [row for row in records if is_true(runner.evaluate(condition, row, enclos))]


def subset(records: Iterable[Mapping[str, Any]], source: str, enclos: Any = None) -> List[Mapping[str, Any]]:
    return subset_q(records, quote(source), enclos)


def select_q(records: List[Mapping[str, Any]], exprs: Iterable[Any]) -> List[dict]:
    """Projects records onto the columns picked by `exprs`.

    Each expression is evaluated with every column name bound to its
    1-based position, so `a:c` picks a range of columns.
    """
    records = list(records)
    if not records:
        return []
    columns = list(records[0].keys())
    positions = {name: k for k, name in enumerate(columns, 1)}
    runner = ScriptRunner()
    keep: List[str] = []
    for expr in exprs:
        picked = runner.evaluate(expr, positions)
        for pos in (picked if isinstance(picked, list) else [picked]):
            if not isinstance(pos, int) or isinstance(pos, bool) or not 1 <= pos <= len(columns):
                raise IndexError(f"undefined column selected: {render(expr)}")
            keep.append(columns[pos - 1])
    return [{name: row[name] for name in keep} for row in records]


def select(records: List[Mapping[str, Any]], *sources: str) -> List[dict]:
    return select_q(records, [quote(s) for s in sources])


__all__ = [
    "quote", "render", "deparse",
    "evaluate", "evaluate_q",
    "substitute", "substitute_q",
    "subset", "subset_q",
    "select", "select_q",
]
