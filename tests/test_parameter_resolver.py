"""Template rendering and value lookup."""

import pytest

from flowrunner.services.execution.conditions import (
    coerce_number,
    evaluate_operator,
    get_nested_value,
    has_nested_value,
    parse_condition_string,
)
from flowrunner.services.parameter_resolver import (
    find_template_paths,
    render_template,
    resolve_parameters,
)

DATA = {
    "price": 3100.5,
    "blocks": {"fetch": {"items": [{"name": "weth"}], "meta": {"ok": True}}},
}


def test_render_template():
    assert render_template("ETH at {{ price }}", DATA) == "ETH at 3100.5"
    assert render_template("{{blocks.fetch.items.0.name}}", DATA) == "weth"
    assert render_template("{{ blocks.fetch.meta }}", DATA) == '{"ok":true}'
    assert render_template("missing: [{{ nope }}]", DATA) == "missing: []"
    assert render_template("plain", DATA) == "plain"


def test_resolve_parameters_walks_nested_values():
    params = {"to": "{{ blocks.fetch.items.0.name }}", "list": ["{{ price }}", 7], "n": None}
    assert resolve_parameters(params, DATA) == {"to": "weth", "list": ["3100.5", 7], "n": None}


def test_find_template_paths():
    config = {"a": "{{ x.y }} and {{z}}", "b": [{"c": "{{ blocks.n1.out }}"}], "d": 3}
    assert find_template_paths(config) == ["x.y", "z", "blocks.n1.out"]


def test_nested_lookup():
    assert get_nested_value(DATA, "blocks.fetch.items.0.name") == "weth"
    assert get_nested_value(DATA, "blocks.fetch.items.5.name", "dflt") == "dflt"
    assert get_nested_value(DATA, "price.value") is None
    assert has_nested_value({"a": None}, "a")
    assert not has_nested_value({"a": None}, "b")


@pytest.mark.parametrize("raw,expected", [("42", 42), ("4.5", 4.5), ("abc", "abc"), ("nan", "nan"), (True, True)])
def test_coerce_number(raw, expected):
    assert coerce_number(raw) == expected


def test_parse_condition_string():
    assert parse_condition_string("price <= 5") == ("price", "lte", "5")
    assert parse_condition_string("name == 'weth'") == ("name", "equals", "weth")
    assert parse_condition_string("no operator") is None


@pytest.mark.parametrize("operator,actual,target,expected", [
    ("equals", "5", 5, True),
    ("notEquals", "a", "b", True),
    ("contains", ["x", "y"], "y", True),
    ("gt", "10", "9", True),
    ("gte", None, 1, False),
    ("isEmpty", [], None, True),
    ("regex", "0xabc", "[", False),
    ("between", 1, 2, False),
])
def test_evaluate_operator(operator, actual, target, expected):
    assert evaluate_operator(operator, actual, target) is expected
