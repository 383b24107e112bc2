"""Literal token substitution for prompt, query and URL templates.

Only a fixed set of tokens is recognized. Anything else, including braces and
escape-like sequences, passes through unchanged. Substitution happens in a
single left-to-right pass, so text coming from a step output is never scanned
for tokens again.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from litestar_refinery.core.context import ExecutionContext

__all__ = ["TOKEN_PATTERN", "render_template"]

TOKEN_PATTERN = re.compile(r"\{\{\.(Body|PrePrompt|PreviousResponse|FanResults|Step\.([^{}]+?))\}\}")


def render_template(template: str | None, context: ExecutionContext) -> str:
    """Replace the recognized tokens of ``template`` with values from ``context``.

    Recognized tokens are ``{{.Body}}``, ``{{.PrePrompt}}``,
    ``{{.PreviousResponse}}``, ``{{.FanResults}}`` and ``{{.Step.<name>}}``.
    An unknown step name and a missing fan-out result both render as an empty
    string.

    Args:
        template: The template text. ``None`` renders as an empty string.
        context: The execution context providing values.

    Returns:
        The rendered text.

    Example:
        >>> ctx = ExecutionContext(body="Claim X", previous_response="A")
        >>> render_template("{{.PreviousResponse}}! {}", ctx)
        'A! {}'
    """
    if not template:
        return ""

    def _substitute(match: re.Match[str]) -> str:
        token = match.group(1)
        if token == "Body":
            return context.body
        if token == "PrePrompt":
            return context.pre_prompt
        if token == "PreviousResponse":
            return context.previous_response
        if token == "FanResults":
            return context.fan_results or ""
        return context.step_output(match.group(2))

    return TOKEN_PATTERN.sub(_substitute, template)
