"""Exception hierarchy for litestar-refinery."""

from __future__ import annotations

from typing import ClassVar

__all__ = (
    "CriteriaListNotFoundError",
    "FlowStepNotFoundError",
    "GrantDeniedError",
    "InvalidTransitionError",
    "ModelUnavailableError",
    "NoAPIKeyError",
    "NodeNotFoundError",
    "ProviderError",
    "ProviderNotFoundError",
    "ProviderRateLimitedError",
    "ProviderWireError",
    "RefineryError",
    "RunCancelledError",
    "RunNotFoundError",
    "SchemaMigrationError",
    "SelfVoteError",
    "SqlForbiddenError",
    "StepConfigurationError",
    "StepExecutionError",
    "StepExhaustedError",
    "StepTimeoutError",
    "WorkflowNotEditableError",
    "WorkflowNotFoundError",
)


class RefineryError(Exception):
    """Base exception for all litestar-refinery errors.

    Attributes:
        reason: Short machine-readable code recorded in audit events.
        retryable: Whether the workflow engine may start another attempt after
            a step failed with this error.
    """

    reason: ClassVar[str] = "error"
    retryable: ClassVar[bool] = False


# ---------------------------------------------------------------------------
# LLM providers
# ---------------------------------------------------------------------------


class ProviderError(RefineryError):
    """Raised when an LLM backend call fails.

    Attributes:
        provider: Name of the provider that failed.
        model: Model that was requested, if any.
        cause: Human readable description of the failure.
    """

    reason = "provider_error"
    retryable = True

    def __init__(self, provider: str, cause: str, model: str = "") -> None:
        """Initialize the exception with provider details.

        Args:
            provider: Name of the provider that failed.
            cause: Description of the failure.
            model: Model that was requested, if any.
        """
        self.provider = provider
        self.model = model
        self.cause = cause
        if model:
            msg = f"{provider}/{model}: {cause}"
        else:
            msg = f"{provider}: {cause}"
        super().__init__(msg)


class ProviderRateLimitedError(ProviderError):
    """Raised when a backend answers HTTP 429."""

    reason = "rate_limited"

    def __init__(self, provider: str, model: str = "") -> None:
        super().__init__(provider, "rate limited", model=model)


class ProviderWireError(ProviderError):
    """Raised on a non-200 answer, an undecodable body or a transport failure.

    Attributes:
        status_code: HTTP status code, when the backend answered at all.
        body: Truncated response body, when available.
    """

    reason = "provider_wire"

    def __init__(
        self,
        provider: str,
        cause: str,
        model: str = "",
        *,
        status_code: int | None = None,
        body: str = "",
    ) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(provider, cause, model=model)


class ProviderNotFoundError(ProviderError):
    """Raised when a call targets a provider that is not configured."""

    reason = "provider_not_found"
    retryable = False

    def __init__(self, provider: str) -> None:
        super().__init__(provider, "provider not found or not configured")


class NoAPIKeyError(ProviderError):
    """Raised when a provider is used without an API key."""

    reason = "no_api_key"
    retryable = False

    def __init__(self, provider: str) -> None:
        super().__init__(provider, "no API key configured")


# ---------------------------------------------------------------------------
# Workflow execution
# ---------------------------------------------------------------------------


class ModelUnavailableError(RefineryError):
    """Raised when a step references a catalogued model that is marked unavailable.

    Attributes:
        model_id: Identifier of the model, ``<provider>/<name>``.
    """

    reason = "model_unavailable"

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id
        super().__init__(f"model {model_id} is no longer available")


class GrantDeniedError(RefineryError):
    """Raised when an explicit ``deny`` grant matches a step's model.

    Attributes:
        user_id: The principal running the workflow.
        model_id: The model the step asked for.
        step_kind: The kind of the step.
    """

    reason = "model_grant_denied"

    def __init__(self, user_id: str, model_id: str, step_kind: str) -> None:
        self.user_id = user_id
        self.model_id = model_id
        self.step_kind = step_kind
        super().__init__(f"model grant denied: user {user_id} cannot use {model_id} for {step_kind} steps")


class SqlForbiddenError(RefineryError):
    """Raised when a ``sql`` step renders anything other than a ``SELECT``.

    Attributes:
        query: The rejected query text.
    """

    reason = "sql_forbidden"

    def __init__(self, query: str) -> None:
        self.query = query
        super().__init__("sql step only allows SELECT queries")


class StepConfigurationError(RefineryError):
    """Raised when a step definition cannot be executed as written.

    Attributes:
        step_name: Name of the offending step.
    """

    reason = "step_misconfigured"

    def __init__(self, step_name: str, detail: str) -> None:
        self.step_name = step_name
        super().__init__(f"{step_name}: {detail}")


class StepExecutionError(RefineryError):
    """Raised when a step attempt fails for a reason another attempt may not hit.

    Attributes:
        step_name: Name of the step.
    """

    reason = "step_failed"
    retryable = True

    def __init__(self, step_name: str, detail: str) -> None:
        self.step_name = step_name
        self.detail = detail
        super().__init__(detail)


class StepTimeoutError(RefineryError):
    """Raised when a single step attempt exceeds its ``timeout_ms``.

    Attributes:
        step_name: Name of the step.
        timeout_ms: The bound that was exceeded.
    """

    reason = "step_timeout"
    retryable = True

    def __init__(self, step_name: str, timeout_ms: int) -> None:
        self.step_name = step_name
        self.timeout_ms = timeout_ms
        super().__init__(f"step '{step_name}' timed out after {timeout_ms} ms")


class StepExhaustedError(RefineryError):
    """Raised when every attempt of a step failed.

    Attributes:
        step_name: Name of the step.
        attempts: Number of attempts that were made.
        last_error: The error of the final attempt.
    """

    def __init__(self, step_name: str, attempts: int, last_error: Exception) -> None:
        self.step_name = step_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(str(last_error))

    @property
    def reason(self) -> str:  # type: ignore[override]
        return getattr(self.last_error, "reason", "step_failed")


class RunCancelledError(RefineryError):
    """Raised when the caller's cancellation signal stopped a run between stages.

    Attributes:
        run_id: The run that was cancelled. Its final state is persisted.
    """

    reason = "cancelled"

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"run {run_id} cancelled")


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class SchemaMigrationError(RefineryError):
    """Raised when a store cannot be migrated at open time. Always fatal.

    Attributes:
        store: Path of the store being opened.
        step: The migration step that failed.
    """

    reason = "schema_migration"

    def __init__(self, store: str, step: str, cause: Exception | None = None) -> None:
        self.store = store
        self.step = step
        msg = f"migrating {store}: {step}"
        if cause:
            msg += f": {cause}"
        super().__init__(msg)


class WorkflowNotFoundError(RefineryError):
    """Raised when a workflow definition does not exist.

    Attributes:
        workflow_id: Identifier or name that was looked up.
    """

    reason = "workflow_not_found"

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id}' not found")


class RunNotFoundError(RefineryError):
    """Raised when a workflow run does not exist."""

    reason = "run_not_found"

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Workflow run '{run_id}' not found")


class CriteriaListNotFoundError(RefineryError):
    """Raised when a ``check`` step references a missing criteria list."""

    reason = "criteria_list_not_found"

    def __init__(self, list_id: str) -> None:
        self.list_id = list_id
        super().__init__(f"criteria list '{list_id}' not found")


class FlowStepNotFoundError(RefineryError):
    """Raised when a forensic flow step cannot be loaded for replay."""

    reason = "flow_step_not_found"

    def __init__(self, step_id: str) -> None:
        self.step_id = step_id
        super().__init__(f"flow step '{step_id}' not found")


class NodeNotFoundError(RefineryError):
    """Raised when a node does not exist or is soft-deleted."""

    reason = "node_not_found"

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"node '{node_id}' not found")


class WorkflowNotEditableError(RefineryError):
    """Raised when a step definition is changed on a workflow that left ``draft``.

    Attributes:
        workflow_id: The workflow being edited.
        status: Its current lifecycle state.
    """

    reason = "workflow_not_editable"

    def __init__(self, workflow_id: str, status: str) -> None:
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(f"workflow '{workflow_id}' is {status}; steps can only change while draft")


class InvalidTransitionError(RefineryError):
    """Raised when a workflow lifecycle transition is not allowed.

    Attributes:
        current: The workflow's current status.
        target: The requested status.
    """

    reason = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition from '{current}' to '{target}'")


class SelfVoteError(RefineryError):
    """Raised when a user votes on a node they authored."""

    reason = "self_vote"

    def __init__(self) -> None:
        super().__init__("cannot vote on your own node")
