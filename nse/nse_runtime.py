# nse_runtime.py

import inspect
import operator
import collections.abc
from pathlib import Path
from typing import Any, List, Optional, Literal, Dict
from dataclasses import dataclass, field

from nse.nse_parser import NseParser
from nse.nse_transformer import NseTransformer
from nse.nse_interpreter import Evaluator, is_function, is_special, is_return
from nse.nse_datatypes import (
    Symbol, Call, Formals, Missing, Scope, Promise, Dots, Closure, ReturnValue,
    UnresolvedName, MissingArgument, EvalError, _same_node,
)
from nse.nse_printer import Printer, render, deparse, DEFAULT_WIDTH_CUTOFF
from nse.nse_substitute import unquote, free_names

# ===================================================================
# 1. Helpers shared by the built-ins
# ===================================================================


def special(func):
    """Marks a built-in that receives its call unevaluated (plus the calling scope)."""
    func._nse_special = True
    return func


# Built-ins whose names keep their underscore.
_UNDERSCORED = {"_seq_len", "_seq_along"}


def builtin_name(attr: str) -> str:
    """`_is_call` -> `is.call`"""
    if attr in _UNDERSCORED:
        return attr[1:]
    return attr[1:].replace('_', '.')


# Syntax-level names bound to StdLib methods that are not reachable by a plain name.
OPERATORS = {
    "<-": "_op_assign",
    "{": "_op_block",
    "(": "_op_paren",
    "if": "_op_if",
    "function": "_op_function",
    "&&": "_op_and_and",
    "||": "_op_or_or",
    "$": "_op_dollar",
    "[": "_op_index",
    "+": "_op_add",
    "-": "_op_sub",
    "*": "_op_mul",
    "/": "_op_div",
    "^": "_op_pow",
    "%%": "_op_mod",
    "%/%": "_op_intdiv",
    "%in%": "_op_in",
    "==": "_op_eq",
    "!=": "_op_neq",
    "<": "_op_lt",
    ">": "_op_gt",
    "<=": "_op_lte",
    ">=": "_op_gte",
    "!": "_op_not",
    "&": "_op_and",
    "|": "_op_or",
    ":": "_op_colon",
}


def recycle(op, a, b):
    """Applies a binary op elementwise, recycling the shorter operand."""
    if isinstance(a, list) or isinstance(b, list):
        xs = a if isinstance(a, list) else [a]
        ys = b if isinstance(b, list) else [b]
        if not xs or not ys:
            return []
        n = max(len(xs), len(ys))
        return [op(xs[i % len(xs)], ys[i % len(ys)]) for i in range(n)]
    return op(a, b)


def as_condition(value: Any) -> bool:
    """A single TRUE/FALSE for `if`, `&&` and `||`."""
    if isinstance(value, list):
        if not value:
            raise EvalError("argument is of length zero")
        value = value[0]
    if value is None:
        raise EvalError("argument is of length zero")
    if isinstance(value, (bool, int, float)):
        return bool(value)
    raise EvalError(f"argument is not interpretable as logical: {render(value)}")


def is_true(value: Any) -> bool:
    return value is True or (isinstance(value, list) and len(value) == 1 and value[0] is True)


def as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return render(value)


def as_items(value: Any) -> List[Any]:
    match value:
        case None:
            return []
        case list() | tuple():
            return list(value)
        case collections.abc.Mapping():
            return list(value.values())
    return [value]


def same_value(a: Any, b: Any) -> bool:
    """Structural identity: literal types stay apart and containers compare item by item."""
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(same_value(x, y) for x, y in zip(a, b))
    if isinstance(a, collections.abc.Mapping) and isinstance(b, collections.abc.Mapping):
        return list(a.keys()) == list(b.keys()) and all(same_value(a[k], b[k]) for k in a)
    return _same_node(a, b)


def is_records(value: Any) -> bool:
    """A data frame: a non-empty list of mappings."""
    return (
        isinstance(value, list) and bool(value)
        and all(isinstance(row, collections.abc.Mapping) for row in value)
    )


def bind_special_args(call: Call, params: List[str]) -> Dict[str, Any]:
    """Matches a special's unevaluated arguments to its parameter names."""
    out: Dict[str, Any] = {}
    positional = []
    for name, arg in call.items():
        if name is None:
            positional.append(arg)
        elif name in params and name not in out:
            out[name] = arg
        else:
            raise EvalError(f"unused argument ({name} = {render(arg)})")
    free = iter([p for p in params if p not in out])
    for arg in positional:
        param = next(free, None)
        if param is None:
            raise EvalError(f"unused argument ({render(arg)})")
        out[param] = arg
    return out


def select_positions(items: List[Any], index: Any):
    """1-based subsetting: scalars pick one item, vectors pick a list."""
    n = len(items)
    match index:
        case bool():
            return list(items) if index else []
        case int():
            if index < 0:
                return [item for k, item in enumerate(items, 1) if k != -index]
            if index == 0:
                return []
            return items[index - 1] if index <= n else None
        case float() if index == int(index):
            return select_positions(items, int(index))
        case list() if index and all(isinstance(v, bool) for v in index):
            return [item for k, item in enumerate(items) if index[k % len(index)]]
        case list() if all(isinstance(v, int) and not isinstance(v, bool) for v in index):
            if index and all(v < 0 for v in index):
                dropped = {-v for v in index}
                return [item for k, item in enumerate(items, 1) if k not in dropped]
            if any(v < 0 for v in index):
                raise EvalError("can't mix positive and negative subscripts")
            return [items[v - 1] if v <= n else None for v in index if v != 0]
    raise EvalError(f"invalid subscript: {render(index)}")


# ===================================================================
# 2. The Standard Library
# ===================================================================

class StdLib:
    """Contains Python implementations for all NSE built-ins."""
    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    # --- Syntax ---
    @special
    def _op_assign(self, call, *, scope):
        target, value_expr = call.args
        value = self.evaluator.eval(value_expr, scope)
        self._assign(target, value, scope)
        return value

    def _assign_current(self, target, scope):
        try:
            return self.evaluator.eval(target, scope)
        except UnresolvedName:
            return None

    def _assign(self, target, value, scope):
        match target:
            case Symbol(name=name):
                scope[name] = value
            case str():
                scope[target] = value
            case Call() if target.fname == "$" and len(target.args) == 2:
                base, member = target.args
                key = member.name if isinstance(member, Symbol) else str(member)
                obj = self._assign_current(base, scope)
                if is_records(obj):
                    column = value if isinstance(value, list) else [value]
                    updated = [dict(row, **{key: column[i % len(column)]}) for i, row in enumerate(obj)]
                elif obj is None or isinstance(obj, collections.abc.Mapping):
                    updated = dict(obj or {})
                    updated[key] = value
                else:
                    raise EvalError(f"invalid $<- target: {render(base)}")
                self._assign(base, updated, scope)
            case Call() if target.fname == "[" and len(target.args) == 2:
                base, index_expr = target.args
                index = self.evaluator.eval(index_expr, scope)
                obj = self._assign_current(base, scope)
                if isinstance(index, str):
                    updated = dict(obj or {})
                    updated[index] = value
                elif isinstance(index, int) and not isinstance(index, bool) and index > 0:
                    updated = list(as_items(obj))
                    updated.extend([None] * (index - len(updated)))
                    updated[index - 1] = value
                else:
                    raise EvalError(f"invalid subscript for assignment: {render(index)}")
                self._assign(base, updated, scope)
            case _:
                raise EvalError(f"invalid assignment target: {render(target)}")

    @special
    def _op_block(self, call, *, scope):
        result = None
        for stmt in call.args:
            result = self.evaluator._eval(stmt, scope)
            if is_return(result):
                return result
        return result

    @special
    def _op_paren(self, call, *, scope):
        return self.evaluator._eval(call.args[0], scope)

    @special
    def _op_if(self, call, *, scope):
        cond = self.evaluator.eval(call.args[0], scope)
        if as_condition(cond):
            return self.evaluator._eval(call.args[1], scope)
        if len(call.args) > 2:
            return self.evaluator._eval(call.args[2], scope)
        return None

    @special
    def _op_function(self, call, *, scope):
        formals, body = call.args
        if not isinstance(formals, Formals):
            raise EvalError("invalid formal argument list for 'function'")
        return Closure(formals, body, scope)

    @special
    def _op_and_and(self, call, *, scope):
        return as_condition(self.evaluator.eval(call.args[0], scope)) and \
            as_condition(self.evaluator.eval(call.args[1], scope))

    @special
    def _op_or_or(self, call, *, scope):
        return as_condition(self.evaluator.eval(call.args[0], scope)) or \
            as_condition(self.evaluator.eval(call.args[1], scope))

    @special
    def _op_dollar(self, call, *, scope):
        target = self.evaluator.eval(call.args[0], scope)
        member = call.args[1]
        name = member.name if isinstance(member, Symbol) else str(member)
        match target:
            case Scope():
                if name not in target.bindings:
                    return None
                value = target.bindings[name]
                return self.evaluator.force(value) if isinstance(value, Promise) else value
            case collections.abc.Mapping():
                return target.get(name)
            case None:
                return None
            case list() if is_records(target):
                return [row.get(name) for row in target]
        raise EvalError("$ operator is invalid for atomic vectors")

    def _op_index(self, x, *index):
        if not index:
            return x
        if len(index) > 1:
            raise EvalError("incorrect number of dimensions")
        i = index[0]
        match x:
            case collections.abc.Mapping():
                if isinstance(i, str):
                    return x.get(i)
                if isinstance(i, list) and all(isinstance(k, str) for k in i):
                    return {k: x[k] for k in i if k in x}
                keys = select_positions(list(x.keys()), i)
                if isinstance(keys, list):
                    return {k: x[k] for k in keys}
                return None if keys is None else x[keys]
            case Call():
                parts = select_positions([x.head, *x.args], i)
                if isinstance(parts, list):
                    return Call(parts[0], parts[1:]) if parts else None
                return parts
            case Scope():
                if not isinstance(i, str):
                    raise EvalError("wrong args for environment subassignment")
                return x.get(i)
            case None:
                return None
        return select_positions(as_items(x) if isinstance(x, (list, tuple)) else [x], i)

    # --- Arithmetic, comparison and logic ---
    def _op_add(self, a, *rest):
        if not rest:
            return a
        return recycle(operator.add, a, rest[0])

    def _op_sub(self, a, *rest):
        if not rest:
            return recycle(lambda x, _: -x, a, 0)
        return recycle(operator.sub, a, rest[0])

    def _op_mul(self, a, b): return recycle(operator.mul, a, b)
    def _op_div(self, a, b): return recycle(operator.truediv, a, b)
    def _op_pow(self, a, b): return recycle(operator.pow, a, b)
    def _op_mod(self, a, b): return recycle(operator.mod, a, b)
    def _op_intdiv(self, a, b): return recycle(operator.floordiv, a, b)
    def _op_eq(self, a, b): return recycle(operator.eq, a, b)
    def _op_neq(self, a, b): return recycle(operator.ne, a, b)
    def _op_lt(self, a, b): return recycle(operator.lt, a, b)
    def _op_gt(self, a, b): return recycle(operator.gt, a, b)
    def _op_lte(self, a, b): return recycle(operator.le, a, b)
    def _op_gte(self, a, b): return recycle(operator.ge, a, b)
    def _op_and(self, a, b): return recycle(lambda x, y: bool(x) and bool(y), a, b)
    def _op_or(self, a, b): return recycle(lambda x, y: bool(x) or bool(y), a, b)

    def _op_not(self, x):
        if isinstance(x, list):
            return [not v for v in x]
        return not x

    def _op_in(self, x, table):
        pool = as_items(table)
        if isinstance(x, list):
            return [v in pool for v in x]
        return x in pool

    def _op_colon(self, start, end):
        start = start[0] if isinstance(start, list) and len(start) == 1 else start
        end = end[0] if isinstance(end, list) and len(end) == 1 else end
        if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (start, end)):
            raise TypeError(f"non-numeric argument to ':': {render(start)}:{render(end)}")
        step = 1 if end >= start else -1
        count = int(abs(end - start)) + 1
        return [start + k * step for k in range(count)]

    # --- Quoting and substitution ---
    @special
    def _quote(self, call, *, scope):
        args = bind_special_args(call, ["expr"])
        return args.get("expr", Missing)

    @special
    def _substitute(self, call, *, scope):
        args = bind_special_args(call, ["expr", "env"])
        env = self.evaluator.eval(args["env"], scope) if "env" in args else scope
        if isinstance(env, list) and not env:
            env = {}
        return self.evaluator.substitute_in(args.get("expr", Missing), env)

    @special
    def _bquote(self, call, *, scope):
        args = bind_special_args(call, ["expr", "where"])
        where = self.evaluator.eval(args["where"], scope) if "where" in args else scope
        env = self.evaluator.make_env(where, scope)
        return unquote(args.get("expr", Missing), lambda e: self.evaluator.eval(e, env))

    @special
    def _alist(self, call, *, scope):
        if all(name is None for name in call.names):
            return list(call.args)
        return {name if name is not None else str(k): arg for k, (name, arg) in enumerate(call.items(), 1)}

    @special
    def _evalq(self, call, *, scope):
        args = bind_special_args(call, ["expr", "envir", "enclos"])
        envir = self.evaluator.eval(args["envir"], scope) if "envir" in args else scope
        enclos = self.evaluator.eval(args["enclos"], scope) if "enclos" in args else scope
        return self.evaluator.eval(args.get("expr"), self.evaluator.make_env(envir, enclos))

    @special
    def _missing(self, call, *, scope):
        args = bind_special_args(call, ["x"])
        target = args.get("x")
        if not isinstance(target, Symbol):
            raise EvalError("invalid use of 'missing'")
        if target.name not in scope.bindings:
            raise EvalError(f"'missing' can only be used for arguments: {target.name}")
        if target.name in scope.meta.get("missing", ()):
            return True
        return scope.bindings[target.name] is Missing

    def _eval(self, expr, envir=None, enclos=None, *, scope):
        envir = scope if envir is None else envir
        enclos = scope if enclos is None else enclos
        return self.evaluator.eval(expr, self.evaluator.make_env(envir, enclos))

    def _deparse(self, expr, width_cutoff=DEFAULT_WIDTH_CUTOFF):
        return deparse(expr, int(width_cutoff))

    def _deparse1(self, expr, collapse=" "):
        return collapse.join(segment.strip() for segment in deparse(expr, 500))

    def _all_names(self, expr):
        return free_names(expr)

    # --- Expression builders and predicates ---
    def _as_name(self, x):
        if isinstance(x, Symbol):
            return x
        if isinstance(x, str) and x:
            return Symbol(x)
        raise EvalError(f"invalid type/length (symbol/{len(as_items(x))}) in vector allocation")

    _as_symbol = _as_name

    def _as_call(self, x):
        match x:
            case Call():
                return x
            case list() if x:
                return Call(x[0], x[1:])
            case collections.abc.Mapping() if x:
                keys = list(x.keys())
                values = list(x.values())
                names = [k if not k.isdigit() else None for k in keys[1:]]
                return Call(values[0], values[1:], names)
        raise EvalError("invalid argument list")

    def _call(self, name, *args, **named):
        if not isinstance(name, str):
            raise EvalError("first argument must be a character string")
        return Call(Symbol(name), list(args) + list(named.values()), [None] * len(args) + list(named.keys()))

    def _as_list(self, x):
        match x:
            case None:
                return []
            case Call():
                return [x.head, *x.args]
            case Scope():
                out = {}
                for k, v in x.bindings.items():
                    if v is Missing or isinstance(v, Dots):
                        continue
                    out[k] = self.evaluator.force(v) if isinstance(v, Promise) else v
                return out
            case list() | collections.abc.Mapping():
                return x
            case tuple():
                return list(x)
        return [x]

    def _is_call(self, x): return isinstance(x, Call)
    def _is_name(self, x): return isinstance(x, Symbol)
    _is_symbol = _is_name
    def _is_function(self, x): return is_function(x)
    def _is_null(self, x): return x is None

    def _typeof(self, x):
        match x:
            case None:
                return "NULL"
            case bool():
                return "logical"
            case int():
                return "integer"
            case float():
                return "double"
            case str():
                return "character"
            case Symbol():
                return "symbol"
            case Call():
                return "language"
            case Closure():
                return "closure"
            case Scope():
                return "environment"
            case list() if x:
                kinds = {self._typeof(v) for v in x}
                if len(kinds) == 1 and kinds <= {"logical", "integer", "double", "character"}:
                    return kinds.pop()
                return "list"
            case list() | collections.abc.Mapping():
                return "list"
        if is_special(x):
            return "special"
        if callable(x):
            return "builtin"
        return type(x).__name__

    # --- Vectors and lists ---
    def _c(self, *args, **named):
        out = []
        for a in args:
            out.extend(as_items(a))
        if not named:
            return out
        result = {str(k): v for k, v in enumerate(out, 1)}
        result.update(named)
        return result

    def _list(self, *args, **named):
        if not named:
            return list(args)
        result = {str(k): v for k, v in enumerate(args, 1)}
        result.update(named)
        return result

    def _length(self, x):
        match x:
            case None:
                return 0
            case Call():
                return 1 + len(x.args)
            case Scope():
                return len(x.bindings)
            case list() | tuple() | collections.abc.Mapping() | Dots():
                return len(x)
        return 1

    def _names(self, x):
        match x:
            case collections.abc.Mapping():
                return list(x.keys())
            case list() if is_records(x):
                return list(x[0].keys())
            case Call():
                if all(n is None for n in x.names):
                    return None
                return [""] + ["" if n is None else n for n in x.names]
            case Scope():
                return sorted(x.bindings.keys())
        return None

    def _setNames(self, object=None, nm=None):
        values = as_items(object)
        if nm is None:
            return values
        keys = [str(k) for k in as_items(nm)]
        if len(keys) != len(values):
            raise EvalError(f"'names' attribute [{len(keys)}] must be the same length as the vector [{len(values)}]")
        return dict(zip(keys, values))

    def _unlist(self, x):
        out = []
        for item in as_items(x):
            if isinstance(item, (list, tuple, collections.abc.Mapping)):
                out.extend(self._unlist(item))
            else:
                out.append(item)
        return out

    def _seq(self, start=1, end=None, by=None):
        if end is None:
            start, end = 1, start
        if by is None:
            return self._op_colon(start, end)
        if by == 0 or (end - start) * by < 0:
            raise EvalError("wrong sign in 'by' argument")
        count = int((end - start) / by + 1e-10) + 1
        return [start + k * by for k in range(count)]

    def _seq_len(self, length_out):
        return list(range(1, int(length_out) + 1))

    def _seq_along(self, along_with):
        return list(range(1, self._length(along_with) + 1))

    def _rev(self, x):
        return list(reversed(as_items(x)))

    def _head(self, x, n=6):
        return as_items(x)[:int(n)] if not isinstance(x, collections.abc.Mapping) else dict(list(x.items())[:int(n)])

    def _sum(self, *args):
        return sum(self._unlist(list(args)))

    # --- Functional helpers ---
    def _lapply(self, X, FUN, *args, scope, **kwargs):
        if isinstance(X, collections.abc.Mapping):
            return {k: self.evaluator.apply(FUN, [v, *args], kwargs, scope) for k, v in X.items()}
        return [self.evaluator.apply(FUN, [v, *args], kwargs, scope) for v in as_items(X)]

    def _Filter(self, f, x, *, scope):
        keep = lambda v: is_true(self.evaluator.apply(f, [v], None, scope))
        if isinstance(x, collections.abc.Mapping):
            return {k: v for k, v in x.items() if keep(v)}
        return [v for v in as_items(x) if keep(v)]

    def _Map(self, f, *xs, scope):
        columns = [as_items(x) for x in xs]
        if not columns or not all(columns):
            return []
        n = max(len(c) for c in columns)
        return [self.evaluator.apply(f, [c[i % len(c)] for c in columns], None, scope) for i in range(n)]

    def _Reduce(self, f, x, *rest, scope):
        items = as_items(x)
        if rest:
            acc = rest[0]
        elif items:
            acc, items = items[0], items[1:]
        else:
            return None
        for item in items:
            acc = self.evaluator.apply(f, [acc, item], None, scope)
        return acc

    # --- Text and output ---
    def _paste(self, *args, sep=" ", collapse=None):
        vectors = [as_items(a) for a in args]
        vectors = [v for v in vectors if v]
        if not vectors:
            return "" if collapse is not None else []
        n = max(len(v) for v in vectors)
        out = [sep.join(as_text(v[i % len(v)]) for v in vectors) for i in range(n)]
        if collapse is not None:
            return collapse.join(out)
        return out[0] if len(out) == 1 else out

    def _paste0(self, *args, collapse=None):
        return self._paste(*args, sep="", collapse=collapse)

    def _print(self, x):
        self.evaluator.side_effects.append({'topics': ['stdout'], 'message': Printer().pformat(x)})
        return x

    def _cat(self, *args, sep=" "):
        text = sep.join(as_text(v) for v in self._unlist(list(args)))
        self.evaluator.side_effects.append({'topics': ['stdout'], 'message': text})
        return None

    # --- Misc ---
    def _identity(self, x): return x
    def _force(self, x): return x
    def _isTRUE(self, x): return is_true(x)
    def _isFALSE(self, x): return x is False or (isinstance(x, list) and len(x) == 1 and x[0] is False)
    def _identical(self, x, y): return same_value(x, y)

    def _stop(self, *args):
        raise EvalError("".join(as_text(a) for a in args))

    def _return(self, value=None):
        return ReturnValue(value)

    # --- Environments and frames ---
    def _new_env(self, parent=None, *, scope):
        return Scope(parent=scope if parent is None else self.evaluator.as_scope(parent))

    def _environment(self, fun=None, *, scope):
        if fun is None:
            return scope
        if isinstance(fun, Closure):
            return fun.env
        return None

    def _globalenv(self, *, scope):
        return self.evaluator.global_scope

    def _parent_frame(self, n=1, *, scope):
        return self.evaluator.parent_frame(scope, n)

    def _sys_call(self, *, scope):
        frame = self.evaluator.frame_of(scope)
        return frame['call'] if frame else None

    def _sys_function(self, *, scope):
        frame = self.evaluator.frame_of(scope)
        return frame['function'] if frame else None

    def _match_call(self, *, scope):
        frame = self.evaluator.frame_of(scope)
        if frame is None:
            raise EvalError("match.call() was called from outside a function")
        matched = frame['matched']
        args, names = [], []
        for param in frame['function'].formals.names:
            if param not in matched:
                continue
            bound = matched[param]
            if isinstance(bound, Dots):
                for name, promise in bound.entries:
                    names.append(name)
                    args.append(promise.expr)
            else:
                names.append(param)
                args.append(bound.expr)
        return Call(frame['call'].head, args, names)

    # --- Records ---
    def _data_frame(self, **columns):
        if not columns:
            return []
        cols = {k: as_items(v) for k, v in columns.items()}
        n = max(len(v) for v in cols.values())
        for name, values in cols.items():
            if not values or n % len(values):
                raise EvalError(f"arguments imply differing number of rows: {n}, {len(values)} ({name})")
        return [{k: v[i % len(v)] for k, v in cols.items()} for i in range(n)]

    def _nrow(self, df):
        return len(as_items(df))

    def _ncol(self, df):
        return len(self._names(df) or [])


# ===================================================================
# 3. Script Execution
# ===================================================================

Token = Dict[str, Any]

# Frames for syntax (blocks, assignment...) are left out of stack traces.
_STRUCTURAL = {"{", "(", "if", "<-", "function"}
# Deep traces keep this many frames at each end.
_STACK_EDGE = 5


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


class ScriptRunner:
    """Parses, transforms, and executes NSE code."""

    _parser: Optional[NseParser] = None
    _transformer: Optional[NseTransformer] = None
    _prelude_ast: Optional[List[Any]] = None

    def __init__(self, load_prelude: bool = True):
        self._initialized = False
        self._load_prelude = load_prelude

        if ScriptRunner._parser is None:
            ScriptRunner._parser = NseParser()
        if ScriptRunner._transformer is None:
            ScriptRunner._transformer = NseTransformer()
        self.parser = ScriptRunner._parser
        self.transformer = ScriptRunner._transformer

        self.evaluator = Evaluator()  # Each runner has its own evaluator/side_effects
        self.base_scope = Scope()
        self.base_scope.meta["name"] = "base"
        self.global_scope = Scope(parent=self.base_scope)
        self.global_scope.meta.update(name="global", **{"global": True})
        self.evaluator.base_scope = self.base_scope
        self.evaluator.global_scope = self.global_scope

        # Load stdlib
        stdlib = StdLib(self.evaluator)
        for name, member in inspect.getmembers(stdlib):
            if name.startswith('_') and not name.startswith('__') and not name.startswith('_op_') and callable(member):
                self.base_scope[builtin_name(name)] = member
        for symbol, attr in OPERATORS.items():
            self.base_scope[symbol] = getattr(stdlib, attr)

    def parse(self, source: str) -> List[Any]:
        """Parses source text into a list of top-level expressions."""
        return self.transformer.transform(self.parser.parse(source))

    def _initialize(self):
        """Loads prelude.nse into the base scope if not already loaded."""
        if self._initialized or not self._load_prelude:
            self._initialized = True
            return

        # AST is parsed once and cached on the class
        if ScriptRunner._prelude_ast is None:
            prelude_path = Path(__file__).parent / "prelude.nse"
            try:
                ScriptRunner._prelude_ast = self.parse(prelude_path.read_text())
            except SyntaxError as e:
                raise RuntimeError(f"Failed to parse prelude.nse: {e}") from e

        # Evaluation happens for each instance
        self.evaluator.eval_program(ScriptRunner._prelude_ast, self.base_scope)
        self._initialized = True

    def bind(self, name: str, value: Any):
        """Binds a Python value in the global scope."""
        self.global_scope[name] = value

    def evaluate(self, expr: Any, data: Any = None, enclos: Any = None) -> Any:
        """Evaluates a captured expression with `data` as primary context.

        `enclos` defaults to the runner's global scope. Errors propagate.
        """
        self._initialize()
        return self.evaluator.evaluate_in(expr, data, self.global_scope if enclos is None else enclos)

    def handle_script(self, source_code: str) -> 'ExecutionResult':
        """The main entry point to execute a script."""
        self.evaluator.side_effects = []
        self.evaluator.call_stack.clear()
        self.evaluator.depth = 0
        self.evaluator.current_node = None
        try:
            self._initialize()
            stmts = self.parse(source_code)
            result = self.evaluator.eval_program(stmts, self.global_scope)
            return ExecutionResult(
                status='success',
                value=result,
                side_effects=self.evaluator.side_effects
            )
        except Exception as e:
            err_msg, err_token = self._format_runtime_error(e, source_code)
            # Emit consolidated stderr side-effect
            self.evaluator.side_effects.append({'topics': ['stderr'], 'message': err_msg})
            return ExecutionResult(
                status='error',
                error_message=err_msg,
                error_token=err_token,
                side_effects=self.evaluator.side_effects
            )

    def _format_runtime_error(self, e, source: str) -> tuple[str, Optional[dict]]:
        token = None
        match e:
            case SyntaxError():
                msg = f"SyntaxError: {e.msg}"
                if e.lineno:
                    token = {'line': e.lineno, 'col': e.offset}
                    msg = f"{msg} (line {e.lineno}, col {e.offset})\n{self._source_context(source, e.lineno, e.offset)}"
                return msg, token
            case UnresolvedName() as un:
                msg = f"UnresolvedName: {un.name}"
            case MissingArgument() | RecursionError():
                msg = f"{type(e).__name__}: {e}"
            case EvalError():
                msg = f"Error: {e}"
            case TypeError() | ValueError() | ZeroDivisionError() | IndexError():
                msg = f"{type(e).__name__}: {e}"
            case _:
                msg = f"InternalError: {e}"

        expr = getattr(e, 'nse_expr', None)
        if expr is None:
            expr = self.evaluator.current_node
        if expr is not None:
            msg = f"{msg}\nIn: {render(expr)}"

        st = self._format_stacktrace(getattr(e, 'nse_stack', None) or [])
        if st:
            msg += "\n" + st
        return msg, token

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            out.append(f"{prefix} {ln} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_stacktrace(self, stack: List[Dict[str, Any]]) -> str:
        def fmt(arg):
            text = render(arg)
            return text if len(text) <= 30 else text[:27] + "..."

        frames = []
        for frame in stack:
            name = frame.get('name') or '<call>'
            if name in _STRUCTURAL:
                continue
            args = frame.get('args') or []
            # Suppress noisy arguments for 'return'
            args_s = "" if name == 'return' else " ".join(fmt(a) for a in args).strip()
            frames.append(f"({name} {args_s})" if args_s else f"({name})")
        if not frames:
            return ""
        if len(frames) > 2 * _STACK_EDGE + 1:
            omitted = len(frames) - 2 * _STACK_EDGE
            frames = frames[:_STACK_EDGE] + [f"... {omitted} frames omitted ..."] + frames[-_STACK_EDGE:]
        return "NSE stacktrace: " + " ".join(frames)
