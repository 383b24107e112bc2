"""Model grant resolution order.

Grants are evaluated most specific first. User grants always outrank role
grants; within each grantee kind an exact model outranks a provider wildcard
(``<provider>/*``), which outranks the catch-all ``*``; within each model
level an exact step kind outranks ``*``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

from litestar_refinery.core.types import GranteeKind

__all__ = ["WILDCARD", "GrantCandidate", "GrantDecision", "grant_candidates", "split_model"]

WILDCARD = "*"


class GrantCandidate(NamedTuple):
    """One row shape probed during grant evaluation."""

    grantee_kind: GranteeKind
    grantee_id: str
    model_id: str
    step_type: str


@dataclass(frozen=True)
class GrantDecision:
    """Outcome of a grant evaluation.

    Attributes:
        allowed: Effect of the matching row, ``True`` when nothing matched.
        explicit: Whether any grant row matched.
    """

    allowed: bool
    explicit: bool

    @property
    def denied(self) -> bool:
        """Whether the engine must refuse the step."""
        return self.explicit and not self.allowed


def split_model(model_id: str) -> tuple[str, str]:
    """Split ``<provider>/<name>`` on the first slash.

    Returns:
        ``(provider, name)``; ``provider`` is empty when there is no slash.
    """
    provider, sep, name = model_id.partition("/")
    if not sep:
        return "", model_id
    return provider, name


def grant_candidates(user_id: str, role: str, model_id: str, step_type: str) -> list[GrantCandidate]:
    """Return the candidate rows for a grant check in strict priority order.

    Provider wildcard levels are omitted when ``model_id`` has no provider
    prefix, role levels when ``role`` is empty.

    Args:
        user_id: The principal.
        role: The principal's role.
        model_id: Model identifier, ideally ``<provider>/<name>``.
        step_type: Step kind the model would be used for.

    Returns:
        Up to twelve candidates, first match wins.
    """
    provider, _ = split_model(model_id)
    models = [model_id]
    if provider:
        models.append(f"{provider}/{WILDCARD}")
    models.append(WILDCARD)

    grantees = [(GranteeKind.USER, user_id)]
    if role:
        grantees.append((GranteeKind.ROLE, role))

    return [
        GrantCandidate(kind, grantee_id, model, step)
        for kind, grantee_id in grantees
        for model in models
        for step in (step_type, WILDCARD)
    ]
