"""
Rewrites captured expressions: substitution of free names and partial quoting.

Both transforms are pure; they build new Call/Formals nodes and never touch
the expression they were given.
"""
import collections.abc
from typing import Any, Callable, List, Optional, Tuple

from nse.nse_datatypes import Symbol, Call, Formals, Missing, Promise, Dots, Scope

DOTS = "..."


def _replacement(value: Any) -> Any:
    """Turns a bound value into the syntax that replaces its name."""
    if isinstance(value, Promise):
        return value.expr
    return value


def _rest_entries(value: Any) -> Optional[List[Tuple[Optional[str], Any]]]:
    """Normalizes a rest-arguments binding into (name, expression) pairs."""
    if isinstance(value, Dots):
        return [(name, p.expr) for name, p in value.entries]
    if isinstance(value, collections.abc.Mapping):
        return [(str(k), _replacement(v)) for k, v in value.items()]
    if isinstance(value, (list, tuple)):
        return [(None, _replacement(v)) for v in value]
    return None


class Substituter:
    """Replaces free names in an expression using a lookup function.

    `lookup(name)` returns the replacement for `name`, or Missing when the
    name must be left as it is.
    """
    def __init__(self, lookup: Callable[[str], Any]):
        self.lookup = lookup

    @classmethod
    def from_env(cls, env: Any, rest: Any = None) -> 'Substituter':
        """Builds a substituter from a mapping or Scope; `rest` overrides `...`."""
        if env is None:
            env = {}

        def lookup(name: str) -> Any:
            if name == DOTS and rest is not None:
                return rest
            if isinstance(env, Scope):
                # Only the scope's own bindings are substituted, not its parents'.
                return env.bindings.get(name, Missing)
            if isinstance(env, collections.abc.Mapping):
                return env.get(name, Missing)
            raise TypeError(f"substitution env must be a mapping or scope, not {type(env).__name__}")

        return cls(lookup)

    def substitute(self, node: Any) -> Any:
        match node:
            case Symbol(name=name):
                value = self.lookup(name)
                if value is Missing or name == DOTS:
                    return node
                return _replacement(value)
            case Call():
                head = self.substitute(node.head)
                args, names = self._substitute_args(node.args, node.names)
                return Call(head, args, names)
            case Formals():
                return Formals(
                    (name, default if default is Missing else self.substitute(default))
                    for name, default in node.params
                )
        return node

    def _substitute_args(self, args, names):
        out_args: List[Any] = []
        out_names: List[Optional[str]] = []
        for name, arg in zip(names, args):
            if name is None and isinstance(arg, Symbol) and arg.name == DOTS:
                entries = _rest_entries(self.lookup(DOTS))
                if entries is not None:
                    for rest_name, rest_expr in entries:
                        out_names.append(rest_name)
                        out_args.append(rest_expr)
                    continue
            out_names.append(name)
            out_args.append(self.substitute(arg))
        return out_args, out_names


def substitute(expr: Any, env: Any = None, rest: Any = None) -> Any:
    """Returns `expr` with every free name bound in `env` replaced.

    Expression replacements (and promises) are inlined as syntax, other
    values are inlined as literals; names absent from `env` are untouched.
    `...` in an argument list is replaced by the rest arguments, taken from
    `rest` or from env['...'].
    """
    return Substituter.from_env(env, rest).substitute(expr)


def unquote(expr: Any, evaluate: Callable[[Any], Any]) -> Any:
    """Partial quoting: evaluates only the `.(x)` parts of `expr` and splices the results in."""
    match expr:
        case Call() if expr.fname == "." and len(expr.args) == 1 and expr.names[0] is None:
            return evaluate(expr.args[0])
        case Call():
            head = unquote(expr.head, evaluate)
            return Call(head, [unquote(a, evaluate) for a in expr.args], expr.names)
        case Formals():
            return Formals(
                (name, default if default is Missing else unquote(default, evaluate))
                for name, default in expr.params
            )
    return expr


def free_names(expr: Any) -> List[str]:
    """Names used by `expr`, in first-appearance order (heads included)."""
    seen: List[str] = []

    def walk(node):
        if isinstance(node, Symbol):
            if node.name not in seen:
                seen.append(node.name)
        elif isinstance(node, Call):
            walk(node.head)
            for a in node.args:
                walk(a)
        elif isinstance(node, Formals):
            for _, default in node.params:
                walk(default)

    walk(expr)
    return seen
