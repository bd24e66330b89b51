"""Tests for {{ ... }} reference resolution."""

import pytest

from services.execution.exceptions import UnresolvedReferenceError
from services.execution.expressions import evaluate, parse_path, resolve_config, resolve_string


@pytest.fixture
def context():
    return {
        "nodes": {
            "fetch": {"status": 200, "body": {"items": [{"name": "first"}, {"name": "second"}]}},
            "flag": {"ok": True},
        },
        "node_status": {"fetch": "SUCCESS", "flag": "SUCCESS", "later": "PENDING", "broken": "FAILED"},
        "vars": {"region": "eu-west", "limits": {"max": 10}},
        "trigger": {"headers": {"x-request-id": "req-42"}, "body": "raw"},
        "execution": {"id": "exec-1"},
        "workflow": {"id": "wf-1", "version": 3},
        "now": "2026-01-01T00:00:00+00:00",
    }


class TestParsePath:

    def test_dotted_and_indexed(self):
        assert parse_path('a.b[0]["c d"][\'e\']') == ["a", "b", 0, "c d", "e"]

    def test_dollar_roots_and_dashes(self):
        assert parse_path("$trigger.headers.x-request-id") == ["$trigger", "headers", "x-request-id"]

    @pytest.mark.parametrize("expression", ["", "a..b", ".a", "a[", "a[x]"])
    def test_invalid_syntax(self, expression):
        with pytest.raises(UnresolvedReferenceError):
            parse_path(expression)


class TestEvaluate:

    def test_node_output_with_and_without_prefix(self, context):
        assert evaluate("$node.fetch.body.items[1].name", context) == "second"
        assert evaluate("fetch.status", context) == 200

    def test_variables_trigger_execution_workflow(self, context):
        assert evaluate("$vars.limits.max", context) == 10
        assert evaluate("$trigger.headers.x-request-id", context) == "req-42"
        assert evaluate("$execution.id", context) == "exec-1"
        assert evaluate("$workflow.version", context) == 3
        assert evaluate("$now", context) == context["now"]

    def test_negative_index(self, context):
        assert evaluate("fetch.body.items[-1].name", context) == "second"

    def test_unknown_node(self, context):
        with pytest.raises(UnresolvedReferenceError, match="unknown node"):
            evaluate("$node.nope.value", context)

    def test_node_not_yet_successful(self, context):
        with pytest.raises(UnresolvedReferenceError, match="has not completed"):
            evaluate("later.value", context)
        with pytest.raises(UnresolvedReferenceError, match="FAILED"):
            evaluate("broken.value", context)

    def test_missing_field(self, context):
        with pytest.raises(UnresolvedReferenceError, match="missing field 'nope'"):
            evaluate("$vars.nope", context)

    def test_index_out_of_range(self, context):
        with pytest.raises(UnresolvedReferenceError, match="out of range"):
            evaluate("fetch.body.items[5]", context)

    def test_reading_into_scalar(self, context):
        with pytest.raises(UnresolvedReferenceError, match="cannot read"):
            evaluate("fetch.status.code", context)

    def test_unknown_root(self, context):
        with pytest.raises(UnresolvedReferenceError, match="unknown root"):
            evaluate("$secrets.token", context)


class TestResolve:

    def test_whole_template_keeps_type(self, context):
        assert resolve_string("{{ fetch.body.items }}", context) == context["nodes"]["fetch"]["body"]["items"]
        assert resolve_string("{{fetch.status}}", context) == 200

    def test_embedded_templates_are_stringified(self, context):
        assert resolve_string("status={{ fetch.status }} region={{ $vars.region }}", context) == \
            "status=200 region=eu-west"
        assert resolve_string("ok: {{ flag.ok }}", context) == "ok: true"
        assert resolve_string("limits: {{ $vars.limits }}", context) == 'limits: {"max": 10}'

    def test_resolve_config_walks_nested_values(self, context):
        config = {
            "url": "https://api/{{ $vars.region }}/orders",
            "body": {"first": "{{ fetch.body.items[0].name }}", "ids": ["{{ $execution.id }}", 7]},
            "retries": 3,
        }

        resolved = resolve_config(config, context)

        assert resolved == {
            "url": "https://api/eu-west/orders",
            "body": {"first": "first", "ids": ["exec-1", 7]},
            "retries": 3,
        }
        assert config["url"].startswith("https://api/{{")

    def test_failure_is_never_silently_empty(self, context):
        with pytest.raises(UnresolvedReferenceError):
            resolve_config({"value": "prefix {{ $vars.missing }}"}, context)
