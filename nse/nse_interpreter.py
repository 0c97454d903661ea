"""
The core NSE interpreter: the Evaluator and its argument-matching helpers.
"""
import collections.abc
import inspect
import os
import sys
from typing import Any, Dict, List, Optional, Tuple

from nse.nse_datatypes import (
    Symbol, Call, Formals, Missing, Scope, Promise, Dots, Closure, ReturnValue,
    UnresolvedName, MissingArgument, EvalError,
)
from nse.nse_substitute import Substituter, DOTS


# Helper: identify and unwrap control-flow "return" values
def is_return(x) -> bool:
    return isinstance(x, ReturnValue)

def unwrap_return(x):
    return x.value if is_return(x) else x


def is_function(value: Any) -> bool:
    return isinstance(value, Closure) or (callable(value) and not isinstance(value, type))


# Upper bound on Python frames used by one closure call (call dispatch,
# specials such as `if` and `{`, promise forcing for its arguments).
FRAMES_PER_CALL = 40


def ensure_recursion_limit(max_depth: int):
    """Raises the interpreter's recursion limit so `max_depth` nested calls fit."""
    needed = max_depth * FRAMES_PER_CALL + 1000
    if sys.getrecursionlimit() < needed:
        sys.setrecursionlimit(needed)


def is_special(value: Any) -> bool:
    """Specials receive their call unevaluated, together with the calling scope."""
    return bool(getattr(value, "_nse_special", False))


class ArgumentMatcher:
    """Matches actual arguments to a closure's formals.

    Exact names first, then positional filling of the remaining formals
    before `...`; anything left over goes to `...` when the function has one.
    """
    def __init__(self, formals: Formals):
        self.formals = formals
        self.names = formals.names

    def match(self, entries: List[Tuple[Optional[str], Promise]]) -> Dict[str, Any]:
        has_dots = DOTS in self.names
        bound: Dict[str, Any] = {}
        unmatched = []
        for name, promise in entries:
            if name is not None and name != DOTS and name in self.names:
                if name in bound:
                    raise EvalError(f"formal argument '{name}' matched by multiple actual arguments")
                bound[name] = promise
            else:
                unmatched.append((name, promise))

        positional = self.names[:self.names.index(DOTS)] if has_dots else list(self.names)
        open_slots = iter([n for n in positional if n not in bound])
        rest: List[Tuple[Optional[str], Promise]] = []
        for name, promise in unmatched:
            if name is None:
                slot = next(open_slots, None)
                if slot is not None:
                    bound[slot] = promise
                    continue
            if not has_dots:
                from nse.nse_printer import render
                label = render(promise.expr)
                raise EvalError(f"unused argument ({name} = {label})" if name else f"unused argument ({label})")
            rest.append((name, promise))
        if has_dots:
            bound[DOTS] = Dots(rest)
        return bound


class Evaluator:
    """The NSE execution engine."""

    def __init__(self):
        self.base_scope: Optional[Scope] = None      # built-ins and prelude
        self.global_scope: Optional[Scope] = None    # top level of scripts
        self.side_effects: List[Dict[str, Any]] = []
        self.call_stack: List[Dict[str, Any]] = []
        self.current_node = None
        self.max_depth = int(os.environ.get("NSE_MAX_DEPTH", "500"))
        self.depth = 0                               # active closure calls
        ensure_recursion_limit(self.max_depth)
        self._scope_params: Dict[Any, Tuple[bool, bool]] = {}

    def _dbg(self, *parts):
        if os.environ.get("NSE_DEBUG"):
            try:
                print("[DBG]", *parts, file=sys.stderr)
            except Exception:
                pass

    # -----------------------------------------------------------------
    # Evaluation
    # -----------------------------------------------------------------

    def eval(self, node: Any, scope: Scope) -> Any:
        """Public entry point for evaluation. Unwraps 'return' values."""
        return unwrap_return(self._eval(node, scope))

    def eval_program(self, stmts: List[Any], scope: Scope) -> Any:
        """Evaluates top-level statements in order and returns the last value."""
        result = None
        for stmt in stmts:
            self.current_node = stmt
            result = self._eval(stmt, scope)
            if is_return(result):
                return result.value
        return result

    def _eval(self, node: Any, scope: Scope) -> Any:
        """Recursive dispatcher for evaluating any node."""
        match node:
            case Symbol(name=name):
                return self.lookup(name, scope)
            case Call():
                self.current_node = node
                return self._eval_call(node, scope)
        # Literals, formals and embedded runtime values evaluate to themselves.
        return node

    def lookup(self, name: str, scope: Scope) -> Any:
        """Resolves a variable through the scope chain, forcing promises."""
        owner = scope.find_owner(name)
        if owner is None:
            raise UnresolvedName(name)
        value = owner.bindings[name]
        if value is Missing:
            raise MissingArgument(name)
        if isinstance(value, Promise):
            return self.force(value)
        if isinstance(value, Dots):
            raise EvalError("'...' used in an incorrect context")
        return value

    def lookup_function(self, name: str, scope: Scope) -> Any:
        """Resolves a name in call position, skipping bindings that are not functions.

        Falls back to the base scope so operators work inside contexts that
        are not chained to it.
        """
        chains = [scope.chain()]
        if self.base_scope is not None and self.base_scope not in chains[0]:
            chains.append(self.base_scope.chain())
        for chain in chains:
            for s in chain:
                if name not in s.bindings:
                    continue
                value = s.bindings[name]
                if isinstance(value, Promise):
                    value = self.force(value)
                if is_function(value):
                    return value
        raise UnresolvedName(name)

    def force(self, promise: Promise) -> Any:
        """Evaluates a promise once and caches its value."""
        if promise.forced:
            return promise.value
        if promise.forcing:
            raise RecursionError("promise already under evaluation: recursive default argument reference?")
        promise.forcing = True
        try:
            value = self.eval(promise.expr, promise.env)
        finally:
            promise.forcing = False
        promise.value = value
        promise.forced = True
        promise.env = None
        return value

    def _eval_call(self, call: Call, scope: Scope) -> Any:
        head = call.head
        if isinstance(head, Symbol):
            func = self.lookup_function(head.name, scope)
        else:
            func = self.eval(head, scope)
        return self.apply_call(func, call, scope)

    def apply_call(self, func: Any, call: Call, scope: Scope) -> Any:
        """Calls `func` for `call`, evaluated from `scope`."""
        if is_special(func):
            self._dbg("special", call.fname)
            return self._invoke_builtin(func, [call], {}, call, scope)
        entries = self._promise_args(call, scope)
        match func:
            case Closure():
                return self.apply_closure(func, entries, call, scope)
            case _ if callable(func):
                args, kwargs = [], {}
                keep_names = self._builtin_params(func)[1]
                for name, promise in entries:
                    value = unwrap_return(self.force(promise))
                    if name is None:
                        args.append(value)
                    else:
                        kwargs[name if keep_names else name.replace(".", "_")] = value
                return self._invoke_builtin(func, args, kwargs, call, scope)
            case _:
                raise EvalError(f"attempt to apply non-function: {type(func).__name__}")

    def _promise_args(self, call: Call, scope: Scope) -> List[Tuple[Optional[str], Promise]]:
        """Wraps each argument in a promise, splicing `...` from the calling scope."""
        entries: List[Tuple[Optional[str], Promise]] = []
        for name, arg in zip(call.names, call.args):
            match arg:
                case Symbol(name=n) if n == DOTS and name is None:
                    owner = scope.find_owner(DOTS)
                    if owner is None:
                        raise UnresolvedName(DOTS)
                    dots = owner.bindings[DOTS]
                    if isinstance(dots, Dots):
                        entries.extend(dots.entries)
                case Symbol() | Call():
                    entries.append((name, Promise(arg, scope)))
                case _:
                    entries.append((name, Promise.resolved(arg, arg)))
        return entries

    def apply(self, func: Any, args: List[Any], kwargs: Optional[Dict[str, Any]] = None, scope: Optional[Scope] = None) -> Any:
        """Calls a function with already evaluated arguments (used by built-ins like lapply)."""
        scope = scope or self.global_scope or Scope()
        entries = [(None, Promise.resolved(a, a)) for a in args]
        entries += [(k, Promise.resolved(v, v)) for k, v in (kwargs or {}).items()]
        call = Call(Symbol("FUN"), [p.expr for _, p in entries], [n for n, _ in entries])
        match func:
            case Closure():
                return self.apply_closure(func, entries, call, scope)
            case _ if is_special(func):
                return self._invoke_builtin(func, [call], {}, call, scope)
            case _ if callable(func):
                return self._invoke_builtin(func, list(args), dict(kwargs or {}), call, scope)
        raise EvalError(f"attempt to apply non-function: {type(func).__name__}")

    def apply_closure(self, func: Closure, entries, call: Call, caller: Scope) -> Any:
        """Binds promises to formals in a fresh frame and evaluates the body."""
        if self.depth >= self.max_depth:
            raise RecursionError("evaluation nested too deeply: infinite recursion?")
        env = Scope(parent=func.env)
        matched = ArgumentMatcher(func.formals).match(entries)
        supplied_missing = set()
        for name, default in func.formals.params:
            if name in matched:
                env[name] = matched[name]
            elif default is not Missing:
                env[name] = Promise(default, env)
                supplied_missing.add(name)
            else:
                env[name] = Missing
                supplied_missing.add(name)
        env.meta["missing"] = supplied_missing
        frame = {
            'name': call.fname or '<anonymous>',
            'args': [p.expr for _, p in entries],
            'call': call,
            'function': func,
            'env': env,
            'caller': caller,
            'matched': matched,
        }
        self._dbg("call", frame['name'], "argc", len(entries))
        self.call_stack.append(frame)
        self.depth += 1
        try:
            result = self._eval(func.body, env)
        except Exception as e:
            self._note_stack(e, call)
            raise
        finally:
            self.depth -= 1
            self.call_stack.pop()
        return unwrap_return(result)

    def _builtin_params(self, func) -> Tuple[bool, bool]:
        """(accepts `scope`, accepts arbitrary keyword names) for a Python callable."""
        key = getattr(func, "__func__", func)
        cached = self._scope_params.get(key)
        if cached is None:
            try:
                params = inspect.signature(func).parameters
                cached = (
                    'scope' in params,
                    any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values()),
                )
            except (TypeError, ValueError):
                cached = (False, False)
            self._scope_params[key] = cached
        return cached

    def _invoke_builtin(self, func, args, kwargs, call: Call, scope: Scope) -> Any:
        if self._builtin_params(func)[0]:
            kwargs['scope'] = scope
        self.call_stack.append({'name': call.fname or '<builtin>', 'args': list(call.args), 'call': call, 'env': None, 'caller': scope})
        try:
            return func(*args, **kwargs)
        except Exception as e:
            self._note_stack(e, call)
            raise
        finally:
            self.call_stack.pop()

    def _note_stack(self, e: Exception, call: Call):
        """Records the innermost call and active frames on an escaping exception."""
        if getattr(e, 'nse_stack', None) is None:
            try:
                e.nse_stack = [{'name': f['name'], 'args': f['args']} for f in self.call_stack]
                e.nse_expr = call
            except AttributeError:
                pass

    # -----------------------------------------------------------------
    # Frames
    # -----------------------------------------------------------------

    def frame_of(self, scope: Scope) -> Optional[Dict[str, Any]]:
        """The active closure frame whose environment is `scope`."""
        for frame in reversed(self.call_stack):
            if frame.get('env') is scope:
                return frame
        return None

    def parent_frame(self, scope: Scope, n: int = 1) -> Scope:
        """The scope the function running in `scope` was called from."""
        current = scope
        for _ in range(max(int(n), 1)):
            frame = self.frame_of(current)
            if frame is None:
                return self.global_scope or current
            current = frame['caller']
        return current

    # -----------------------------------------------------------------
    # Capture, substitution and contextual evaluation
    # -----------------------------------------------------------------

    def capture(self, name: str, scope: Scope) -> Any:
        """Returns the call-site expression supplied for parameter `name`.

        In the global scope there is no call site; the symbol itself is
        returned (identity capture).
        """
        return self.substitute_in(Symbol(name), scope)

    def substitute_in(self, expr: Any, env: Any) -> Any:
        """Substitutes `expr` against a scope or mapping.

        Nothing is substituted in the global scope. In any other scope the
        scope's own bindings are used: promises become their expressions
        and ordinary values are inlined.
        """
        if isinstance(env, Scope) and env.is_global:
            self._dbg("substitute: no call context, returning expression unchanged")
            return expr
        return Substituter.from_env(env).substitute(expr)

    def as_scope(self, value: Any) -> Scope:
        if isinstance(value, Scope):
            return value
        if isinstance(value, collections.abc.Mapping):
            return Scope.from_mapping(value, self.base_scope)
        raise TypeError(f"invalid binding context of type {type(value).__name__}")

    def make_env(self, data: Any, enclos: Any = None) -> Scope:
        """Builds the scope an expression is evaluated in.

        A Scope is used as it is and `enclos` is ignored. A mapping becomes a
        scope whose parent is `enclos` (or the base scope).
        """
        if isinstance(data, Scope):
            return data
        parent = self.as_scope(enclos) if enclos is not None else self.base_scope
        if isinstance(data, (list, tuple)) and not data:
            data = {}
        if data is None:
            return Scope(parent=parent)
        if isinstance(data, collections.abc.Mapping):
            return Scope.from_mapping(data, parent)
        raise TypeError(f"invalid 'envir' argument of type {type(data).__name__}")

    def evaluate_in(self, expr: Any, data: Any = None, enclos: Any = None) -> Any:
        """Evaluates `expr` with `data` as primary context and `enclos` as fallback."""
        return self.eval(expr, self.make_env(data, enclos))
