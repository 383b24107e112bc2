"""Replaying recorded flow steps against other models."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from litestar_refinery.db.models import FlowStepModel
from litestar_refinery.exceptions import ProviderError
from litestar_refinery.llm.types import CompletionRequest

if TYPE_CHECKING:
    from litestar_refinery.db.forensic import ForensicStore
    from litestar_refinery.llm.client import Dispatcher

__all__ = ["ReplayBatchResult", "ReplayEngine", "ReplayResult"]

logger = logging.getLogger(__name__)


@dataclass
class ReplayResult:
    original_step_id: str
    replay_step_id: str
    provider: str
    model: str
    content: str = ""
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int = 0
    error: str | None = None


@dataclass
class ReplayBatchResult:
    batch_id: str
    total_steps: int
    completed: int = 0
    failed: int = 0
    status: str = "running"


class ReplayEngine:
    """Re-send recorded prompts to another model and keep both answers side by side.

    Replays are stored as new ``flow_steps`` rows pointing at the original
    through ``replay_of_id``; failed replays are stored too.
    """

    def __init__(self, dispatcher: Dispatcher, store: ForensicStore) -> None:
        self.dispatcher = dispatcher
        self.store = store

    async def replay_step(self, step_id: str, provider: str, model: str) -> ReplayResult:
        """Replay one recorded step with ``provider`` and ``model``.

        Raises:
            FlowStepNotFoundError: If the step does not exist.
        """
        original = await self.store.get_flow_step(step_id)
        request = CompletionRequest.from_prompt(
            original.prompt,
            original.system_prompt or "",
            model=f"{provider}/{model}" if provider else model,
        )

        start = time.perf_counter()
        try:
            response = await self.dispatcher.complete(request)
        except ProviderError as exc:
            result = ReplayResult(
                original_step_id=step_id,
                replay_step_id="",
                provider=provider,
                model=model,
                latency_ms=int((time.perf_counter() - start) * 1000),
                error=str(exc),
            )
            logger.warning("replay of step %s with %s/%s failed: %s", step_id, provider, model, exc)
        else:
            result = ReplayResult(
                original_step_id=step_id,
                replay_step_id="",
                provider=response.provider,
                model=response.model,
                content=response.content,
                tokens_in=response.tokens_in,
                tokens_out=response.tokens_out,
                latency_ms=int((time.perf_counter() - start) * 1000),
            )

        result.replay_step_id = await self.store.insert_flow_step(
            FlowStepModel(
                flow_id=original.flow_id,
                step_index=original.step_index,
                node_id=original.node_id,
                model_id=result.model,
                provider=result.provider,
                prompt=original.prompt,
                system_prompt=original.system_prompt or None,
                response_raw=result.content,
                response_parsed=result.content,
                tokens_in=result.tokens_in,
                tokens_out=result.tokens_out,
                latency_ms=result.latency_ms,
                replay_of_id=original.id,
                error=result.error,
            )
        )
        if result.error is None:
            logger.info(
                "step %s replayed as %s by %s/%s in %d ms",
                step_id,
                result.replay_step_id,
                result.provider,
                result.model,
                result.latency_ms,
            )
        return result

    async def replay_bulk(
        self, filter_model: str, provider: str, model: str, filter_tag: str = ""
    ) -> ReplayBatchResult:
        """Replay every original step, or those answered by ``filter_model``, with another model.

        The batch is recorded in ``replay_batches`` with its completed and failed counts.
        """
        steps = await self.store.list_original_flow_steps(filter_model or None)
        batch_id = await self.store.create_replay_batch(
            filter_model, f"{provider}/{model}", len(steps), filter_tag=filter_tag
        )
        result = ReplayBatchResult(batch_id=batch_id, total_steps=len(steps))
        try:
            for step in steps:
                replay = await self.replay_step(step.id, provider, model)
                if replay.error is None:
                    result.completed += 1
                else:
                    result.failed += 1
        except BaseException:
            result.status = "failed"
            await self.store.finish_replay_batch(
                batch_id, status=result.status, completed=result.completed, failed=result.failed
            )
            raise
        result.status = "completed"
        await self.store.finish_replay_batch(
            batch_id, status=result.status, completed=result.completed, failed=result.failed
        )
        logger.info("replay batch %s: %d completed, %d failed", batch_id, result.completed, result.failed)
        return result
