import pytest

import nse
from nse import (
    quote, render, deparse,
    evaluate, evaluate_q,
    substitute, substitute_q,
    subset, subset_q,
    select, select_q,
    Symbol, Call, Scope, UnresolvedName, EvalError,
)


RECORDS = [
    {"a": 1, "b": 5, "c": 5},
    {"a": 2, "b": 4, "c": 3},
    {"a": 3, "b": 3, "c": 1},
    {"a": 4, "b": 2, "c": 4},
    {"a": 5, "b": 1, "c": 1},
]


# --- quote ---

def test_quote_does_not_evaluate():
    assert quote("stop('never')") == Call("stop", ["never"])


def test_quote_is_structural():
    assert quote("f(x, y = 1)") == quote("f( x , y=1 )")
    assert hash(quote("a + b")) == hash(quote("a+b"))


def test_quote_several_statements_is_a_block():
    expr = quote("x <- 1\nx + 1")
    assert expr.fname == "{"
    assert len(expr.args) == 2


def test_quote_empty_source():
    with pytest.raises(SyntaxError):
        quote("   ")


def test_quote_bad_source():
    with pytest.raises(SyntaxError):
        quote("a +")


# --- evaluate ---

@pytest.mark.parametrize("source, bindings", [
    ("a + b * 2", {"a": 1, "b": 3}),
    ("paste(name, 'x')", {"name": "n"}),
    ("if (flag) 1 else 2", {"flag": False}),
    ("c(a, a) * 3", {"a": 2}),
])
def test_evaluate_matches_running_with_same_bindings(source, bindings):
    runner = nse.ScriptRunner()
    for name, value in bindings.items():
        runner.bind(name, value)
    direct = runner.handle_script(source)
    assert direct.status == 'success', direct.error_message
    assert evaluate_q(quote(source), bindings) == direct.value


def test_evaluate_uses_fallback_for_missing_names():
    assert evaluate_q(quote("k"), {"a": 1}, {"k": 7}) == 7


def test_evaluate_primary_wins_over_fallback():
    assert evaluate("k", {"k": 1}, {"k": 7}) == 1


def test_evaluate_unresolved_name():
    with pytest.raises(UnresolvedName) as info:
        evaluate_q(quote("k"), {"a": 1}, {"b": 2})
    assert info.value.name == "k"


def test_fallback_ignored_for_scope():
    scope = Scope(bindings={"a": 1})
    assert evaluate("a * 10", scope) == evaluate("a * 10", scope, {"a": 99})
    with pytest.raises(UnresolvedName):
        evaluate("k", scope, {"k": 1})


def test_scope_chain_as_primary_context():
    parent = Scope(bindings={"b": 2})
    child = Scope(parent=parent, bindings={"a": 1})
    assert evaluate("a + b", child) == 3


def test_evaluate_without_context_uses_library():
    assert evaluate("length(c(1, 2, 3))") == 3


def test_evaluate_propagates_errors():
    with pytest.raises(EvalError, match="boom"):
        evaluate("stop('boom')")


def test_evaluate_leaves_no_state_behind():
    evaluate("x <- 1")
    with pytest.raises(UnresolvedName):
        evaluate("x")


def test_evaluate_does_not_mutate_data():
    data = {"a": 1}
    evaluate("a <- 2", data)
    assert data == {"a": 1}


# --- substitute ---

def test_substitute_values_and_evaluate():
    expr = substitute_q(quote("a + b"), {"a": 1, "b": 2})
    assert render(expr) == "1 + 2"
    assert evaluate_q(expr, {}) == 3


@pytest.mark.parametrize("source", [
    "a + b",
    "f(x, y = 2)",
    "function(x, ...) { list(...) }",
    "if (a) b else c",
])
def test_substitute_empty_map_renders_identically(source):
    assert render(substitute_q(quote(source), {})) == render(quote(source))


def test_substitute_rest_arguments():
    expr = substitute_q(quote("f(x, ...)"), rest=[quote("y"), quote("z")])
    assert render(expr) == "f(x, y, z)"


def test_substitute_from_source():
    assert render(substitute("x * n", {"n": 3})) == "x * 3"


def test_substitute_does_not_touch_input():
    expr = quote("a + b")
    substitute_q(expr, {"a": quote("q")})
    assert render(expr) == "a + b"


# --- subset and select ---

def test_subset():
    assert [row["a"] for row in subset(RECORDS, "a >= 4")] == [4, 5]


def test_subset_with_fallback():
    assert [row["a"] for row in subset(RECORDS, "a > lim", {"lim": 3})] == [4, 5]


def test_subset_q_and_subset_agree():
    assert subset_q(RECORDS, quote("b == c")) == subset(RECORDS, "b == c")


def test_subset_unresolved_name():
    with pytest.raises(UnresolvedName):
        subset(RECORDS, "z > 1")


def test_select_by_range_and_name():
    rows = select(RECORDS, "a:b")
    assert rows[0] == {"a": 1, "b": 5}
    rows = select(RECORDS, "c", "a")
    assert list(rows[0].keys()) == ["c", "a"]


def test_select_q():
    rows = select_q(RECORDS, [Symbol("b")])
    assert rows == [{"b": row["b"]} for row in RECORDS]


def test_select_out_of_range():
    with pytest.raises(IndexError):
        select(RECORDS, "10")


def test_select_empty_records():
    assert select([], "a") == []


# --- rendering ---

def test_deparse_block_several_segments_render_one_line():
    expr = quote("{\n  x <- 1\n  x + 1\n}")
    assert len(deparse(expr)) > 1
    assert "\n" not in render(expr)
