"""Tests for prompt template rendering."""

from __future__ import annotations

import pytest

from litestar_refinery.core.context import ExecutionContext
from litestar_refinery.core.template import render_template


@pytest.fixture
def context() -> ExecutionContext:
    ctx = ExecutionContext(body="Water boils at 100C", pre_prompt="Be terse.", previous_response="A")
    ctx.responses["extract"] = "claim-1"
    return ctx


@pytest.mark.unit
class TestRenderTemplate:
    """Tests for render_template."""

    def test_known_tokens_substituted(self, context: ExecutionContext) -> None:
        """Test every fixed token is replaced by its context value."""
        rendered = render_template("{{.PrePrompt}} {{.Body}} / {{.PreviousResponse}}", context)

        assert rendered == "Be terse. Water boils at 100C / A"

    def test_step_token(self, context: ExecutionContext) -> None:
        """Test {{.Step.<name>}} renders the named step output."""
        assert render_template("got {{.Step.extract}}", context) == "got claim-1"

    def test_unknown_step_renders_empty(self, context: ExecutionContext) -> None:
        """Test an unknown step name renders as an empty string."""
        assert render_template("[{{.Step.missing}}]", context) == "[]"

    def test_missing_fan_results_renders_empty(self, context: ExecutionContext) -> None:
        """Test {{.FanResults}} is empty before any fan-out."""
        assert render_template("<{{.FanResults}}>", context) == "<>"

    def test_fan_results_rendered(self, context: ExecutionContext) -> None:
        """Test {{.FanResults}} renders the joined fan-out outputs."""
        context.fan_results = '{"s2": "B", "s3": "C"}'

        assert render_template("{{.FanResults}}", context) == '{"s2": "B", "s3": "C"}'

    def test_other_text_passes_through(self, context: ExecutionContext) -> None:
        """Test braces, unknown tokens and escapes are left untouched."""
        template = "{{.Unknown}} {} {{ .Body }} \\n {{.PreviousResponse}}!"

        assert render_template(template, context) == "{{.Unknown}} {} {{ .Body }} \\n A!"

    def test_substituted_text_not_rescanned(self) -> None:
        """Test a step output containing tokens is inserted literally."""
        ctx = ExecutionContext(body="secret", previous_response="{{.Body}}")

        assert render_template("{{.PreviousResponse}}", ctx) == "{{.Body}}"

    @pytest.mark.parametrize("template", [None, ""])
    def test_empty_template(self, template: str | None, context: ExecutionContext) -> None:
        """Test a missing template renders as an empty string."""
        assert render_template(template, context) == ""
