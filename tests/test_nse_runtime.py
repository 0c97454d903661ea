import pytest

from nse.nse_runtime import ScriptRunner, select_positions, recycle, builtin_name
from nse.nse_datatypes import Symbol, Call, EvalError
from nse.nse_printer import render
from nse import quote


@pytest.fixture
def runner():
    return ScriptRunner(load_prelude=False)

def run(runner, source):
    res = runner.handle_script(source)
    assert res.status == 'success', res.error_message
    return res.value

def run_error(runner, source):
    res = runner.handle_script(source)
    assert res.status == 'error', f"expected an error, got {res.value!r}"
    return res.error_message


# Each entry: (id, source, expected value)
VALUE_CASES = [
    # arithmetic and vectorisation
    ("add", "1 + 2", 3),
    ("precedence", "1 + 2 * 3", 7),
    ("power", "2 ^ 3", 8),
    ("modulo", "5 %% 3", 2),
    ("integer_division", "7 %/% 2", 3),
    ("unary_minus", "-(1 + 2)", -3),
    ("vector_scalar", "c(1, 2, 3) * 2", [2, 4, 6]),
    ("recycling", "c(1, 2, 3, 4) + c(10, 20)", [11, 22, 13, 24]),
    ("negate_vector", "-c(1, 2)", [-1, -2]),
    ("compare_vectors", "c(1, 2) == c(1, 3)", [True, False]),
    ("not_vector", "!c(TRUE, FALSE)", [False, True]),
    ("elementwise_and", "c(TRUE, TRUE) & c(TRUE, FALSE)", [True, False]),
    ("in", "2 %in% c(1, 2)", True),
    ("in_vector", "c(1, 5) %in% c(1, 2)", [True, False]),
    ("sequence", "1:3", [1, 2, 3]),
    ("sequence_down", "3:1", [3, 2, 1]),
    # vectors and lists
    ("c_flattens", "c(1, c(2, 3))", [1, 2, 3]),
    ("list_keeps_nesting", "list(1, c(2, 3))", [1, [2, 3]]),
    ("named_list", "list(a = 1, b = 2)", {"a": 1, "b": 2}),
    ("partly_named_list", "list(1, b = 2)", {"1": 1, "b": 2}),
    ("length", "length(c(1, 2, 3))", 3),
    ("length_null", "length(NULL)", 0),
    ("length_call", "length(quote(f(a, b)))", 3),
    ("names", "names(list(a = 1, b = 2))", ["a", "b"]),
    ("names_unnamed", "names(c(1, 2))", None),
    ("setNames", "setNames(1:2, c('a', 'b'))", {"a": 1, "b": 2}),
    ("unlist", "unlist(list(1, list(2, 3)))", [1, 2, 3]),
    ("seq_by", "seq(1, 10, by = 3)", [1, 4, 7, 10]),
    ("seq_one_arg", "seq(4)", [1, 2, 3, 4]),
    ("seq_len", "seq_len(3)", [1, 2, 3]),
    ("seq_along", "seq_along(c('x', 'y'))", [1, 2]),
    ("rev", "rev(1:3)", [3, 2, 1]),
    ("head", "head(1:10, 3)", [1, 2, 3]),
    ("sum", "sum(1:4)", 10),
    # indexing
    ("index_scalar", "x <- c(10, 20, 30); x[2]", 20),
    ("index_vector", "x <- c(10, 20, 30); x[c(1, 3)]", [10, 30]),
    ("index_negative", "x <- c(10, 20, 30); x[-1]", [20, 30]),
    ("index_logical", "x <- c(10, 20, 30); x[c(TRUE, FALSE, TRUE)]", [10, 30]),
    ("index_out_of_range", "x <- c(10, 20); x[5]", None),
    ("index_by_name", "x <- list(a = 1, b = 2); x['b']", 2),
    ("index_names", "x <- list(a = 1, b = 2, c = 3); x[c('a', 'c')]", {"a": 1, "c": 3}),
    ("index_call_head", "quote(f(a, b))[1]", Symbol("f")),
    ("dollar", "x <- list(a = 1); x$a", 1),
    ("dollar_absent", "x <- list(a = 1); x$z", None),
    ("dollar_assign", "x <- list(a = 1); x$b <- 2; x", {"a": 1, "b": 2}),
    ("index_assign", "x <- c(10, 20, 30); x[2] <- 99; x", [10, 99, 30]),
    ("assign_copies", "x <- list(a = 1); y <- x; y$a <- 2; x$a", 1),
    # functional helpers
    ("lapply", "lapply(1:3, function(x) x * 2)", [2, 4, 6]),
    ("lapply_extra_args", "lapply(1:2, function(x, k) x + k, k = 10)", [11, 12]),
    ("Filter", "Filter(function(x) x > 1, c(1, 2, 3))", [2, 3]),
    ("Map", "Map(function(x, y) x + y, 1:3, 4:6)", [5, 7, 9]),
    ("Reduce", "Reduce(function(a, b) a + b, 1:4)", 10),
    ("Reduce_init", "Reduce(function(a, b) a * b, 1:3, 10)", 60),
    # text
    ("paste", "paste('a', 'b')", "a b"),
    ("paste_sep", "paste('a', 'b', sep = '-')", "a-b"),
    ("paste0_vector", "paste0('x', 1:2)", ["x1", "x2"]),
    ("paste_collapse", "paste(c('a', 'b'), collapse = '+')", "a+b"),
    # types and predicates
    ("typeof_int", "typeof(1)", "integer"),
    ("typeof_double", "typeof(1.5)", "double"),
    ("typeof_character", "typeof('a')", "character"),
    ("typeof_logical", "typeof(TRUE)", "logical"),
    ("typeof_null", "typeof(NULL)", "NULL"),
    ("typeof_vector", "typeof(c(1, 2))", "integer"),
    ("typeof_list", "typeof(list(1, 'a'))", "list"),
    ("typeof_symbol", "typeof(quote(x))", "symbol"),
    ("typeof_call", "typeof(quote(f(x)))", "language"),
    ("typeof_closure", "typeof(function(x) x)", "closure"),
    ("typeof_builtin", "typeof(sum)", "builtin"),
    ("typeof_special", "typeof(quote)", "special"),
    ("is_call", "is.call(quote(f(x)))", True),
    ("is_call_symbol", "is.call(quote(x))", False),
    ("is_name", "is.name(quote(x))", True),
    ("is_function", "is.function(function() 1)", True),
    ("is_null", "is.null(NULL)", True),
    ("identical_calls", "identical(quote(a + b), quote(a + b))", True),
    ("identical_keeps_types", "identical(1, TRUE)", False),
    ("isTRUE_vector", "isTRUE(c(TRUE, TRUE))", False),
    ("isFALSE", "isFALSE(FALSE)", True),
    # control flow
    ("if_else", "if (1 > 2) 'a' else 'b'", "b"),
    ("if_without_else", "if (FALSE) 1", None),
    ("and_and_short_circuits", "FALSE && stop('never')", False),
    ("or_or_short_circuits", "TRUE || stop('never')", True),
    ("block_value", "{ 1; 2 }", 2),
    # evaluation
    ("eval_with_list", "eval(quote(x * 2), list(x = 5))", 10),
    ("eval_literal", "eval(1)", 1),
    ("eval_falls_back_to_caller", "x <- 10; eval(quote(x + y), list(y = 1))", 11),
    ("eval_data_shadows_caller", "x <- 10; eval(quote(x), list(x = 1))", 1),
    ("evalq", "evalq(x * 2, list(x = 5))", 10),
    ("eval_function_frame",
        "f <- function() { x <- 'local'; eval(quote(x)) }; x <- 'global'; f()", "local"),
    ("deparse", "deparse(quote(x + y))", ["x + y"]),
    ("deparse_width", "deparse(quote(f(aaaaaaaa, bbbbbbbb, cccccccc)), width.cutoff = 20)",
        ["f(aaaaaaaa, bbbbbbbb,", "    cccccccc)"]),
    ("deparse1", "deparse1(quote({ a; b }))", "{ a b }"),
    ("all_names", "all.names(quote(f(x, y + x)))", ["f", "x", "+", "y"]),
    # records
    ("data_frame", "data.frame(a = 1:2, b = c('x', 'y'))",
        [{"a": 1, "b": "x"}, {"a": 2, "b": "y"}]),
    ("data_frame_recycles", "data.frame(a = 1:2, k = 0)", [{"a": 1, "k": 0}, {"a": 2, "k": 0}]),
    ("column", "df <- data.frame(a = 1:2, b = 3:4); df$b", [3, 4]),
    ("add_column", "df <- data.frame(a = 1:2); df$c <- df$a * 10; df",
        [{"a": 1, "c": 10}, {"a": 2, "c": 20}]),
    ("nrow", "nrow(data.frame(a = 1:3))", 3),
    ("ncol", "ncol(data.frame(a = 1:3, b = 1))", 2),
    ("names_of_records", "names(data.frame(a = 1, b = 2))", ["a", "b"]),
]


@pytest.mark.parametrize("test_id, source, expected", VALUE_CASES, ids=[t[0] for t in VALUE_CASES])
def test_values(runner, test_id, source, expected):
    assert run(runner, source) == expected


# Each entry: (id, source, rendering of the resulting expression)
LANGUAGE_CASES = [
    ("quote", "quote(x + y)", "x + y"),
    ("as_name", "as.name('x')", "x"),
    ("call", "call('f', 1, quote(y))", "f(1, y)"),
    ("call_named", "call('round', 10.5, digits = 1)", "round(10.5, digits = 1)"),
    ("as_call", "as.call(list(as.name('max'), 1, 2))", "max(1, 2)"),
    ("substitute_with_list", "substitute(a + b, list(a = 1))", "1 + b"),
    ("substitute_expression", "substitute(a + b, list(a = quote(x * y)))", "x * y + b"),
    ("bquote", "y <- 2; bquote(x + .(y))", "x + 2"),
    ("bquote_where", "bquote(.(a) + b, list(a = 5))", "5 + b"),
    ("alist_unnamed", "alist(x, y + 1)", "list(x, y + 1)"),
    ("sys_function", "f <- function() sys.function(); f()", "function() sys.function()"),
]


@pytest.mark.parametrize("test_id, source, expected", LANGUAGE_CASES, ids=[t[0] for t in LANGUAGE_CASES])
def test_language_objects(runner, test_id, source, expected):
    assert render(run(runner, source)) == expected


def test_alist_with_names(runner):
    assert run(runner, "alist(a = x, y)") == {"a": Symbol("x"), "2": Symbol("y")}


def test_as_list_of_call(runner):
    assert run(runner, "as.list(quote(f(a, b)))") == [Symbol("f"), Symbol("a"), Symbol("b")]


def test_as_list_of_environment(runner):
    assert run(runner, "f <- function(x) { y <- 2; as.list(environment()) }; f(1)") == {"x": 1, "y": 2}


# Each entry: (id, source, expected start of the error message)
ERROR_CASES = [
    ("stop", "stop('bad ', 'thing')", "Error: bad thing"),
    ("if_null", "if (NULL) 1", "Error: argument is of length zero"),
    ("if_text", "if ('yes') 1", "Error: argument is not interpretable as logical"),
    ("division_by_zero", "1 / 0", "ZeroDivisionError: division by zero"),
    ("non_numeric_sequence", "'a':2", "TypeError: non-numeric argument to ':'"),
    ("data_frame_rows", "data.frame(a = 1:3, b = 1:2)",
        "Error: arguments imply differing number of rows: 3, 2 (b)"),
    ("dollar_on_atomic", "x <- 1; x$a", "Error: $ operator is invalid for atomic vectors"),
    ("mixed_subscripts", "x <- 1:3; x[c(-1, 2)]", "Error: can't mix positive and negative subscripts"),
    ("quote_unused_argument", "quote(a, b)", "Error: unused argument (b)"),
    ("setNames_lengths", "setNames(1:2, 'a')", "Error: 'names' attribute [1] must be the same length"),
    ("match_call_at_top_level", "match.call()", "Error: match.call() was called from outside a function"),
    ("missing_outside_function", "missing(x)", "Error: 'missing' can only be used for arguments"),
    ("call_needs_name", "call(1)", "Error: first argument must be a character string"),
]


@pytest.mark.parametrize("test_id, source, message", ERROR_CASES, ids=[t[0] for t in ERROR_CASES])
def test_errors(runner, test_id, source, message):
    assert run_error(runner, source).startswith(message)


# --- Side effects ---

def test_print_records_stdout(runner):
    res = runner.handle_script("print('hi'); print(quote(a + b))")
    assert res.status == 'success'
    assert [e['message'] for e in res.side_effects] == ['"hi"', "a + b"]
    assert all(e['topics'] == ['stdout'] for e in res.side_effects)


def test_print_returns_its_argument(runner):
    assert run(runner, "print(5)") == 5


def test_cat_joins_with_spaces(runner):
    res = runner.handle_script("cat('a', 1, c(2, 3))")
    assert res.value is None
    assert res.side_effects[0]['message'] == "a 1 2 3"


def test_side_effects_reset_between_runs(runner):
    first = runner.handle_script("print(1)")
    second = runner.handle_script("2")
    assert len(first.side_effects) == 1
    assert second.side_effects == []


# --- Environments ---

def test_environment_of_closure(runner):
    assert run(runner, "make <- function() { k <- 1; function() k }; f <- make(); environment(f)$k") == 1


def test_globalenv(runner):
    assert run(runner, "f <- function() globalenv(); identical(f(), environment())") is True


def test_new_env_is_empty_child(runner):
    assert run(runner, "e <- new.env(); length(e)") == 0


def test_index_environment_by_name(runner):
    assert run(runner, "x <- 3; environment()['x']") == 3


def test_bind_exposes_python_value(runner):
    runner.bind("data", [{"a": 1}, {"a": 2}])
    assert run(runner, "data$a") == [1, 2]


def test_evaluate_with_data(runner):
    runner.bind("k", 10)
    assert runner.evaluate(quote("a + k"), {"a": 1}) == 11


# --- Helpers ---

def test_builtin_names():
    assert builtin_name("_is_call") == "is.call"
    assert builtin_name("_data_frame") == "data.frame"
    assert builtin_name("_seq_len") == "seq_len"
    assert builtin_name("_Filter") == "Filter"


def test_recycle():
    assert recycle(lambda a, b: a + b, 1, 2) == 3
    assert recycle(lambda a, b: a + b, [], [1, 2]) == []


def test_select_positions():
    items = ["a", "b", "c"]
    assert select_positions(items, 2) == "b"
    assert select_positions(items, 0) == []
    assert select_positions(items, [3, 1]) == ["c", "a"]
    assert select_positions(items, [-1, -3]) == ["b"]
    with pytest.raises(EvalError):
        select_positions(items, "x")


def test_runner_caches_parser():
    assert ScriptRunner(load_prelude=False).parser is ScriptRunner(load_prelude=False).parser


def test_parse_returns_statements(runner):
    assert runner.parse("a; b") == [Symbol("a"), Symbol("b")]


def test_call_values_are_calls(runner):
    assert isinstance(run(runner, "quote(f(x))"), Call)
