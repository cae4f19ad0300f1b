"""Placeholder resolution tests."""

import pytest

from autoflow.errors import ConfigurationError
from autoflow.resolver import (
    UNRESOLVED,
    ResolutionContext,
    available_filters,
    evaluate_expression,
    require_resolved,
    resolve_path,
    resolve_structure,
    resolve_template,
    resolve_value,
)


@pytest.fixture
def ctx():
    return ResolutionContext(
        entity={
            "email": "ada@example.com",
            "tags": ["vip", "beta"],
            "address": {"city": "Oslo"},
            "name": " ada lovelace ",
        },
        entity_type="contact",
        variables={"score": 7, "items": [1, 2, 3], "ratio": 0.12345, "when": "2024-03-04T10:00:00Z"},
        step_outputs={"fetch": {"body": {"id": 9}}},
    )


def test_paths_resolve_against_each_namespace(ctx):
    assert resolve_path("contact.email", ctx) == "ada@example.com"
    assert resolve_path("entity.address.city", ctx) == "Oslo"
    assert resolve_path("contact.tags.1", ctx) == "beta"
    assert resolve_path("variables.score", ctx) == 7
    assert resolve_path("steps.fetch.body.id", ctx) == 9
    # bare paths look at the record first, then variables
    assert resolve_path("email", ctx) == "ada@example.com"
    assert resolve_path("score", ctx) == 7
    assert resolve_path("variables.nope", ctx) is UNRESOLVED
    assert resolve_path("contact.tags.5", ctx) is UNRESOLVED


def test_template_interpolates_text(ctx):
    res = resolve_template("Hi {{contact.email}}, score {{ variables.score }}", ctx)
    assert res.ok
    assert res.value == "Hi ada@example.com, score 7"
    assert resolve_template(42, ctx).value == 42


def test_lone_placeholder_keeps_raw_value(ctx):
    assert resolve_value("{{variables.items}}", ctx).value == [1, 2, 3]
    assert resolve_value("  {{steps.fetch.body.id}} ", ctx).value == 9
    assert resolve_value("id-{{steps.fetch.body.id}}", ctx).value == "id-9"


def test_unresolved_placeholders_are_reported(ctx):
    res = resolve_template("x {{variables.missing}} y", ctx)
    assert res.value == "x {{variables.missing}} y"
    assert res.unresolved == ("variables.missing",)

    with pytest.raises(ConfigurationError) as exc_info:
        require_resolved(res, "shape")
    assert exc_info.value.step_id == "shape"
    assert "variables.missing" in exc_info.value.message


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("variables.score | multiply(2)", 14),
        ("variables.score | add(3) | subtract(1)", 9),
        ("variables.score | divide(0)", 0),
        ("variables.ratio | round(2)", 0.12),
        ("variables.ratio | multiply(100) | round", 12),
        ("contact.email | split('@') | last", "example.com"),
        ("contact.tags | join(' / ')", "vip / beta"),
        ("contact.tags | length", 2),
        ("contact.tags | first | uppercase", "VIP"),
        ("contact.name | trim | capitalize", "Ada lovelace"),
        ("contact.email | substring(0, 3)", "ada"),
        ("variables.when | date_format('YYYY/MM/DD')", "2024/03/04"),
        ("variables.missing | default('n/a')", "n/a"),
        ("variables.missing | uppercase | default('none')", "none"),
    ],
)
def test_filters(ctx, expression, expected):
    assert evaluate_expression(expression, ctx) == expected


def test_to_boolean_reads_words():
    ctx = ResolutionContext(variables={"flag": "yes", "off": "no"})
    assert evaluate_expression("variables.flag | to_boolean", ctx) is True
    assert evaluate_expression("variables.off | to_boolean", ctx) is False


def test_quoted_pipe_inside_filter_argument():
    ctx = ResolutionContext(variables={"name": "a|b"})
    assert resolve_value("{{ variables.name | replace('|', '-') }}", ctx).value == "a-b"


def test_filter_errors(ctx):
    with pytest.raises(ConfigurationError):
        evaluate_expression("variables.score | explode", ctx)
    with pytest.raises(ConfigurationError):
        evaluate_expression("variables.score | bad filter", ctx)
    with pytest.raises(ConfigurationError):
        evaluate_expression("variables.score" + " | trim" * 11, ctx)


def test_structure_resolution(ctx):
    res = resolve_structure(
        {
            "to": "{{contact.email}}",
            "meta": {"items": "{{variables.items}}", "count": 3},
            "list": ["{{variables.score}}", "{{variables.gone}}"],
        },
        ctx,
    )
    assert res.value == {
        "to": "ada@example.com",
        "meta": {"items": [1, 2, 3], "count": 3},
        "list": [7, "{{variables.gone}}"],
    }
    assert res.unresolved == ("variables.gone",)


def test_available_filters_lists_builtins():
    names = available_filters()
    assert "uppercase" in names
    assert "date_format" in names
    assert names == sorted(names)


def test_unknown_filter_error_lists_the_available_ones(ctx):
    with pytest.raises(ConfigurationError) as exc_info:
        resolve_template("{{contact.email | shout}}", ctx)
    assert "Unknown filter: shout" in exc_info.value.message
    assert "uppercase" in exc_info.value.message
