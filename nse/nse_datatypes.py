"""
Defines the core data types for the NSE runtime.

This module provides the captured-expression tree (symbols, calls, formals),
the binding contexts expressions are evaluated in, and the runtime values
(promises, closures, dots) that make capture of call-site syntax possible.
"""

from abc import ABC
from typing import List, Dict, Any, Optional, Tuple, Iterable
import collections.abc


class UnresolvedName(Exception):
    """A free name was not found in any binding context of the lookup chain."""
    def __init__(self, name: str):
        super().__init__(f"object '{name}' not found")
        self.name = name


class MissingArgument(Exception):
    """A parameter without a default was not supplied but its value was needed."""
    def __init__(self, name: str):
        super().__init__(f"argument '{name}' is missing, with no default")
        self.name = name


class EvalError(Exception):
    """An error signalled by a running program (`stop`) or by the evaluator."""
    pass


# =================================================================
# Captured expressions
# =================================================================

class Expr(ABC):
    """Abstract base class for captured expression nodes.

    Literal leaves are plain Python values (int, float, str, bool, None) and
    are not Expr instances.
    """
    pass


class _MissingType:
    """Internal helper class for the empty-expression singleton."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "Missing<>"

    def __bool__(self):
        return False

# Marks an empty default or an argument that was not supplied.
Missing = _MissingType()


class Symbol(Expr):
    """A name leaf, e.g. `x` in `x + 1`."""
    __slots__ = ("name",)

    def __init__(self, name: str):
        object.__setattr__(self, "name", name)

    def __setattr__(self, key, value):
        raise AttributeError("Symbol is immutable")

    def __repr__(self) -> str:
        return f"Symbol<{self.name!r}>"

    def __eq__(self, other):
        return isinstance(other, Symbol) and self.name == other.name

    def __hash__(self):
        return hash(("symbol", self.name))


class Call(Expr):
    """An application node: a head expression applied to arguments.

    Every compound construct is a call whose head is a symbol: `a + b` is
    `+`(a, b), `{ a; b }` is `{`(a, b), `x[i]` is `[`(x, i). `names` runs
    parallel to `args` and holds the argument name or None.
    """
    __slots__ = ("head", "args", "names", "_str_repr")

    def __init__(self, head: Any, args: Iterable[Any] = (), names: Optional[Iterable[Optional[str]]] = None):
        args = tuple(args)
        names = tuple(names) if names is not None else (None,) * len(args)
        if len(names) != len(args):
            raise ValueError("Call names must be parallel to args.")
        if isinstance(head, str):
            head = Symbol(head)
        object.__setattr__(self, "head", head)
        object.__setattr__(self, "args", args)
        object.__setattr__(self, "names", names)
        object.__setattr__(self, "_str_repr", None)

    def __setattr__(self, key, value):
        raise AttributeError("Call is immutable")

    @property
    def fname(self) -> Optional[str]:
        """The head's name when the head is a symbol."""
        return self.head.name if isinstance(self.head, Symbol) else None

    def items(self) -> List[Tuple[Optional[str], Any]]:
        return list(zip(self.names, self.args))

    def to_str_repr(self) -> str:
        from nse.nse_printer import Printer
        if self._str_repr is None:
            object.__setattr__(self, "_str_repr", Printer().pformat(self))
        return self._str_repr

    def __repr__(self) -> str:
        return f"<Call head={self.head!r} args={list(self.args)!r} names={list(self.names)!r}>"

    def __eq__(self, other):
        if not isinstance(other, Call):
            return NotImplemented
        return (
            self.head == other.head and
            self.names == other.names and
            len(self.args) == len(other.args) and
            all(_same_node(a, b) for a, b in zip(self.args, other.args))
        )

    def __hash__(self):
        return hash(("call", self.to_str_repr()))


class Formals(Expr):
    """The parameter list of a `function` node: (name, default) pairs."""
    __slots__ = ("params",)

    def __init__(self, params: Iterable[Tuple[str, Any]] = ()):
        object.__setattr__(self, "params", tuple((n, d) for n, d in params))

    def __setattr__(self, key, value):
        raise AttributeError("Formals is immutable")

    @property
    def names(self) -> List[str]:
        return [n for n, _ in self.params]

    def __iter__(self):
        return iter(self.params)

    def __len__(self):
        return len(self.params)

    def __repr__(self) -> str:
        return f"Formals({list(self.params)!r})"

    def __eq__(self, other):
        if not isinstance(other, Formals):
            return NotImplemented
        return len(self.params) == len(other.params) and all(
            n1 == n2 and _same_node(d1, d2)
            for (n1, d1), (n2, d2) in zip(self.params, other.params)
        )

    def __hash__(self):
        return hash(("formals", tuple(n for n, _ in self.params)))


def _same_node(a: Any, b: Any) -> bool:
    """Structural equality that keeps literal types apart (TRUE is not 1)."""
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    return a == b


def is_expr(obj: Any) -> bool:
    """True for language objects: symbols, calls and formals."""
    return isinstance(obj, Expr)


def is_literal(obj: Any) -> bool:
    return obj is None or isinstance(obj, (bool, int, float, str))


# =================================================================
# Binding contexts
# =================================================================

class Scope:
    """A binding context: local bindings plus an optional parent scope.

    Lookup walks the chain (self, then parent, then its parent...). Scopes
    are the environments functions close over and the frames calls run in.
    """
    def __init__(self, parent: Optional['Scope'] = None, bindings: Optional[Dict[str, Any]] = None):
        # User-visible bindings on this scope.
        self.bindings: Dict[str, Any] = dict(bindings) if bindings else {}
        # System metadata ("name" for printing, "global" for the top level).
        self.meta: Dict[str, Any] = {"parent": parent}

    @classmethod
    def from_mapping(cls, data: collections.abc.Mapping, parent: Optional['Scope'] = None) -> 'Scope':
        """Wraps a plain mapping (e.g. a record) as a scope whose parent is `parent`."""
        scope = cls(parent=parent)
        for k, v in data.items():
            scope[str(k)] = v
        return scope

    def __setitem__(self, key: str, value: Any):
        if not isinstance(key, str):
            raise TypeError(f"Scope key must be a str, not {type(key)}")
        self.bindings[key] = value

    def __getitem__(self, key: str) -> Any:
        if not isinstance(key, str):
            raise TypeError(f"Scope key must be a str, not {type(key)}")
        owner = self.find_owner(key)
        if owner:
            return owner.bindings[key]
        raise KeyError(f"'{key}'")

    def __delitem__(self, key: str):
        if key not in self.bindings:
            raise KeyError(f"'{key}'")
        del self.bindings[key]

    def __contains__(self, key: Any) -> bool:
        """Checks if a key exists in this Scope or its parents."""
        if isinstance(key, str):
            return self.find_owner(key) is not None
        return False

    def find_owner(self, key: str) -> Optional['Scope']:
        """Finds the Scope in the lookup chain that owns key."""
        scope = self
        while scope is not None:
            if key in scope.bindings:
                return scope
            scope = scope.parent
        return None

    def get(self, key: str, default: Any = None) -> Any:
        """Gets a value, returning a default if not found."""
        owner = self.find_owner(key) if isinstance(key, str) else None
        if owner:
            return owner.bindings[key]
        return default

    def chain(self) -> List['Scope']:
        """The lookup chain from this scope up to the outermost ancestor."""
        out = []
        scope = self
        while scope is not None:
            out.append(scope)
            scope = scope.parent
        return out

    @property
    def parent(self) -> Optional['Scope']:
        """Returns the parent scope."""
        return self.meta.get("parent")

    @property
    def is_global(self) -> bool:
        return bool(self.meta.get("global"))

    def keys(self) -> collections.abc.KeysView:
        """Returns a view of keys in the current scope only."""
        return self.bindings.keys()

    def __repr__(self) -> str:
        name = self.meta.get("name")
        if name:
            return f"<Scope {name}>"
        keys = ', '.join(self.bindings.keys())
        parent_id = f", parent=#{id(self.parent)}" if self.parent else ""
        return f"<Scope bindings=[{keys}]{parent_id}>"


# =================================================================
# Runtime values
# =================================================================

class Promise:
    """A lazily evaluated argument.

    Holds the expression written at the call site and the scope it must be
    evaluated in. `substitute` reads `expr` without forcing the value.
    """
    __slots__ = ("expr", "env", "value", "forced", "forcing")

    def __init__(self, expr: Any, env: Optional[Scope]):
        self.expr = expr
        self.env = env
        self.value = None
        self.forced = False
        self.forcing = False

    @classmethod
    def resolved(cls, expr: Any, value: Any) -> 'Promise':
        """A promise that already holds its value."""
        p = cls(expr, None)
        p.value = value
        p.forced = True
        return p

    def __repr__(self) -> str:
        state = "forced" if self.forced else "pending"
        return f"<Promise {state} expr={self.expr!r}>"


class Dots(collections.abc.Sequence):
    """The rest arguments bound to `...`: ordered (name, promise) pairs."""
    def __init__(self, entries: Iterable[Tuple[Optional[str], Promise]] = ()):
        self.entries: List[Tuple[Optional[str], Promise]] = list(entries)

    def __getitem__(self, index):
        return self.entries[index]

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def exprs(self) -> List[Any]:
        return [p.expr for _, p in self.entries]

    @property
    def names(self) -> List[Optional[str]]:
        return [n for n, _ in self.entries]

    def __repr__(self) -> str:
        return f"Dots({self.entries!r})"


class Closure:
    """A function defined with `function`.

    Bundles the formals, the body expression and the scope in which the
    function was defined.
    """
    def __init__(self, formals: Formals, body: Any, env: Scope):
        self.formals = formals
        self.body = body
        self.env = env
        self.meta: Dict[str, Any] = {}

    def __repr__(self) -> str:
        from nse.nse_printer import Printer
        return Printer().pformat(self)

    def __eq__(self, other):
        if not isinstance(other, Closure):
            return NotImplemented
        # NOTE: environment comparison is intentionally omitted.
        return self.formals == other.formals and _same_node(self.body, other.body)

    def __hash__(self):
        return id(self)


class ReturnValue:
    """Control-flow signal produced by `return(value)`; unwrapped at the closure boundary."""
    __slots__ = ("value",)

    def __init__(self, value: Any):
        self.value = value

    def __repr__(self) -> str:
        return f"<ReturnValue {self.value!r}>"
