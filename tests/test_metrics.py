"""Tests for LLM call metrics."""

from __future__ import annotations

import asyncio

import pytest

from litestar_refinery.db import LLMCallRecord, MetricsRecorder, MetricsStore


@pytest.mark.integration
@pytest.mark.asyncio
class TestMetrics:
    """Tests for MetricsStore and MetricsRecorder."""

    async def test_summary(self, metrics_store: MetricsStore) -> None:
        """Test calls are aggregated per provider and model."""
        await metrics_store.insert_calls(
            [
                LLMCallRecord("groq", "llama", tokens_in=10, tokens_out=2, latency_ms=100),
                LLMCallRecord("groq", "llama", tokens_in=20, tokens_out=4, latency_ms=300),
                LLMCallRecord("groq", "llama", latency_ms=5, success=False, error="HTTP 500"),
                LLMCallRecord("gemini", "flash", tokens_in=1, tokens_out=1, latency_ms=10),
            ]
        )

        gemini, groq = await metrics_store.summary()

        assert gemini["provider"] == "gemini"
        assert gemini["calls"] == 1
        assert groq["calls"] == 3
        assert groq["tokens_in"] == 30
        assert groq["tokens_out"] == 6
        assert groq["errors"] == 1
        assert groq["avg_latency_ms"] == pytest.approx(135)

    async def test_recorder_writes_in_background(self, metrics_store: MetricsStore) -> None:
        """Test a started recorder drains the queue on its own, and stop flushes the rest."""
        recorder = MetricsRecorder(metrics_store)
        recorder.start()
        recorder.record(LLMCallRecord("groq", "llama"))
        for _ in range(100):
            if await metrics_store.summary():
                break
            await asyncio.sleep(0.01)
        recorder.record(LLMCallRecord("groq", "llama"))
        await recorder.stop()

        (row,) = await metrics_store.summary()
        assert row["calls"] == 2

    async def test_full_queue_drops(self, metrics_store: MetricsStore) -> None:
        """Test records beyond the queue bound are dropped and counted, never raised."""
        recorder = MetricsRecorder(metrics_store, max_pending=2)
        for _ in range(5):
            recorder.record(LLMCallRecord("groq", "llama"))

        await recorder.flush()

        assert recorder.dropped == 3
        (row,) = await metrics_store.summary()
        assert row["calls"] == 2

    async def test_write_failure_swallowed(self, metrics_store: MetricsStore) -> None:
        """Test a failing write is logged, not raised."""
        recorder = MetricsRecorder(metrics_store)
        recorder.record(LLMCallRecord("groq", "llama"))
        async with metrics_store.engine.begin() as conn:
            await conn.exec_driver_sql("DROP TABLE llm_calls")

        await recorder.flush()

    async def test_stop_waits_for_batch_in_flight(
        self, metrics_store: MetricsStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test stopping while the writer is mid-batch keeps that batch."""
        started = asyncio.Event()
        release = asyncio.Event()
        insert_calls = metrics_store.insert_calls

        async def slow_insert(records: list[LLMCallRecord]) -> None:
            started.set()
            await release.wait()
            await insert_calls(records)

        monkeypatch.setattr(metrics_store, "insert_calls", slow_insert)
        recorder = MetricsRecorder(metrics_store)
        recorder.start()
        recorder.record(LLMCallRecord("groq", "llama"))
        await asyncio.wait_for(started.wait(), timeout=2)

        stopping = asyncio.create_task(recorder.stop())
        await asyncio.sleep(0)
        release.set()
        await asyncio.wait_for(stopping, timeout=2)

        (row,) = await metrics_store.summary()
        assert row["calls"] == 1
