"""Best-effort recording of LLM calls.

The dispatcher hands one entry per provider attempt to a
:class:`MetricsRecorder`. Entries go through a bounded queue drained by a
single writer task, so recording never blocks a dispatch and never fails one.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from litestar_refinery.db.connection import Database
from litestar_refinery.db.models import LLMCallModel, MetricsBase
from litestar_refinery.db.repositories import LLMCallRepository

__all__ = ["LLMCallRecord", "MetricsRecorder", "MetricsStore"]

logger = logging.getLogger(__name__)


@dataclass
class LLMCallRecord:
    """One provider attempt."""

    provider: str
    model: str
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int = 0
    success: bool = True
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class MetricsStore(Database):
    """The metrics store: a single ``llm_calls`` table."""

    metadata = MetricsBase.metadata

    async def insert_calls(self, records: list[LLMCallRecord]) -> None:
        async with self.session() as session, session.begin():
            session.add_all(
                LLMCallModel(
                    provider=record.provider,
                    model=record.model,
                    tokens_in=record.tokens_in,
                    tokens_out=record.tokens_out,
                    latency_ms=record.latency_ms,
                    success=record.success,
                    error=record.error,
                    created_at=record.created_at,
                )
                for record in records
            )

    async def summary(self) -> list[dict[str, Any]]:
        """Per provider and model: calls, token totals, mean latency and error count."""
        async with self.session() as session:
            return await LLMCallRepository(session=session).summary()


class MetricsRecorder:
    """Queue LLM call records and write them to a :class:`MetricsStore` in the background."""

    def __init__(self, store: MetricsStore, max_pending: int = 1000) -> None:
        self.store = store
        self._queue: asyncio.Queue[LLMCallRecord] = asyncio.Queue(maxsize=max_pending)
        self._task: asyncio.Task[None] | None = None
        self._writing: asyncio.Future[None] | None = None
        self.dropped = 0

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._drain(), name="refinery-metrics-writer")

    def record(self, record: LLMCallRecord) -> None:
        """Enqueue ``record``; drop it when the queue is full."""
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("metrics queue full, dropped %s/%s call record", record.provider, record.model)

    async def flush(self) -> None:
        """Write every queued record now."""
        batch: list[LLMCallRecord] = []
        while not self._queue.empty():
            batch.append(self._queue.get_nowait())
            self._queue.task_done()
        await self._write(batch)

    async def stop(self) -> None:
        """Stop the writer task, let a batch being written finish, and flush what is still queued."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._writing is not None:
            await self._writing
            self._writing = None
        await self.flush()

    async def _drain(self) -> None:
        while True:
            batch = [await self._queue.get()]
            while not self._queue.empty():
                batch.append(self._queue.get_nowait())
            for _ in batch:
                self._queue.task_done()
            self._writing = asyncio.ensure_future(self._write(batch))
            await asyncio.shield(self._writing)
            self._writing = None

    async def _write(self, batch: list[LLMCallRecord]) -> None:
        if not batch:
            return
        try:
            await self.store.insert_calls(batch)
        except SQLAlchemyError:
            logger.warning("failed to write %d llm call records", len(batch), exc_info=True)
