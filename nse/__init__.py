from nse.nse_datatypes import (
    Symbol, Call, Formals, Missing, Scope, Promise, Closure,
    UnresolvedName, MissingArgument, EvalError,
)
from nse.nse_printer import Printer, render, deparse
from nse.nse_runtime import ScriptRunner, ExecutionResult
from nse.nse_api import (
    quote,
    evaluate, evaluate_q,
    substitute, substitute_q,
    subset, subset_q,
    select, select_q,
)
