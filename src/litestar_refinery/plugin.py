"""Litestar plugin for the knowledge refinery.

This module provides the RefineryPlugin, which opens the stores, builds the
LLM dispatcher and the engines at application startup and exposes them
through dependency injection.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

import httpx
from litestar.di import Provide
from litestar.plugins import InitPluginProtocol

from litestar_refinery.config import RefineryPluginConfig
from litestar_refinery.db.forensic import ForensicStore
from litestar_refinery.db.main import MainStore
from litestar_refinery.db.metrics import MetricsRecorder, MetricsStore
from litestar_refinery.engine.workflow import WorkflowEngine
from litestar_refinery.flows.challenge import ChallengeRunner
from litestar_refinery.flows.core import seed_core_workflows
from litestar_refinery.flows.engine import FlowEngine
from litestar_refinery.flows.resolution import ResolutionEngine
from litestar_refinery.llm.discovery import ModelDiscovery
from litestar_refinery.llm.factory import build_dispatcher

if TYPE_CHECKING:
    from litestar.config.app import AppConfig

    from litestar_refinery.llm.client import Dispatcher

__all__ = ["RefineryPlugin"]

logger = logging.getLogger(__name__)


class RefineryPlugin(InitPluginProtocol):
    """Litestar plugin wiring stores, dispatcher and engines into an application.

    Example:
        Basic usage::

            from litestar import Litestar, post
            from litestar_refinery import LLMSettings, RefineryPlugin, RefineryPluginConfig, WorkflowEngine

            app = Litestar(
                plugins=[
                    RefineryPlugin(
                        config=RefineryPluginConfig(
                            forensic_db_path="data/flows.db",
                            llm=LLMSettings(groq_api_key="gsk_..."),
                        )
                    )
                ]
            )

        Using in a route handler::

            @post("/workflows/{workflow_id:str}/run")
            async def run(workflow_id: str, data: dict, workflow_engine: WorkflowEngine) -> dict:
                run_id = await workflow_engine.execute_workflow(workflow_id, "u1", "operator", data["body"])
                return {"run_id": run_id}
    """

    __slots__ = (
        "_challenges",
        "_config",
        "_discovery",
        "_discovery_stop",
        "_discovery_task",
        "_dispatcher",
        "_engine",
        "_forensic_store",
        "_http_client",
        "_main_store",
        "_metrics",
        "_metrics_store",
        "_resolutions",
    )

    def __init__(self, config: RefineryPluginConfig | None = None) -> None:
        """Initialize the plugin.

        Args:
            config: Optional configuration for the plugin.
        """
        self._config = config or RefineryPluginConfig()
        self._http_client: httpx.AsyncClient | None = None
        self._forensic_store: ForensicStore | None = None
        self._main_store: MainStore | None = None
        self._metrics_store: MetricsStore | None = None
        self._metrics: MetricsRecorder | None = None
        self._dispatcher: Dispatcher | None = None
        self._engine: WorkflowEngine | None = None
        self._discovery: ModelDiscovery | None = None
        self._challenges: ChallengeRunner | None = None
        self._resolutions: ResolutionEngine | None = None
        self._discovery_stop = asyncio.Event()
        self._discovery_task: asyncio.Task[None] | None = None

    @property
    def forensic_store(self) -> ForensicStore:
        return self._require(self._forensic_store, "forensic_store")

    @property
    def main_store(self) -> MainStore:
        return self._require(self._main_store, "main_store")

    @property
    def dispatcher(self) -> Dispatcher:
        return self._require(self._dispatcher, "dispatcher")

    @property
    def engine(self) -> WorkflowEngine:
        """Get the workflow engine.

        Raises:
            RuntimeError: If accessed before application startup.
        """
        return self._require(self._engine, "engine")

    @property
    def discovery(self) -> ModelDiscovery:
        return self._require(self._discovery, "discovery")

    @property
    def challenges(self) -> ChallengeRunner:
        return self._require(self._challenges, "challenges")

    @property
    def resolutions(self) -> ResolutionEngine:
        return self._require(self._resolutions, "resolutions")

    @staticmethod
    def _require(value: Any, name: str) -> Any:
        if value is None:
            msg = f"RefineryPlugin has not been started. Access {name} after app startup."
            raise RuntimeError(msg)
        return value

    def on_app_init(self, app_config: AppConfig) -> AppConfig:
        """Register the lifecycle hooks and dependency providers.

        Args:
            app_config: The Litestar application configuration.

        Returns:
            The modified application configuration.
        """
        config = self._config
        app_config.on_startup.append(self.startup)
        app_config.on_shutdown.append(self.shutdown)

        providers = {
            config.dependency_key_forensic_store: lambda: self.forensic_store,
            config.dependency_key_main_store: lambda: self.main_store,
            config.dependency_key_dispatcher: lambda: self.dispatcher,
            config.dependency_key_engine: lambda: self.engine,
            config.dependency_key_discovery: lambda: self.discovery,
            config.dependency_key_challenges: lambda: self.challenges,
            config.dependency_key_resolutions: lambda: self.resolutions,
        }
        for key, provider in providers.items():
            app_config.dependencies[key] = Provide(provider, sync_to_thread=False)
        return app_config

    async def startup(self) -> None:
        """Open the stores and build the services.

        The stores open in the order main, forensic, metrics; a store that
        fails to migrate aborts startup.
        """
        config = self._config
        self._http_client = httpx.AsyncClient(timeout=config.llm.timeout)
        self._main_store = await MainStore.open(config.main_db_path)
        self._forensic_store = await ForensicStore.open(config.forensic_db_path)
        self._metrics_store = await MetricsStore.open(config.metrics_db_path)

        self._metrics = MetricsRecorder(self._metrics_store, max_pending=config.metrics_queue_size)
        self._metrics.start()
        self._dispatcher = build_dispatcher(config.llm, self._http_client, metrics=self._metrics)
        self._engine = WorkflowEngine(self._forensic_store, self._dispatcher, http_client=self._http_client)
        self._discovery = ModelDiscovery(self._forensic_store, config.llm, self._http_client)
        self._challenges = ChallengeRunner(
            FlowEngine(self._dispatcher, self._forensic_store),
            main_store=self._main_store,
            workflow_engine=self._engine,
        )
        self._resolutions = ResolutionEngine(self._dispatcher, self._forensic_store)

        if config.seed_core_workflows:
            await seed_core_workflows(self._forensic_store, config.bot_user_id)

        if config.discovery_interval:
            self._discovery_stop.clear()
            self._discovery_task = asyncio.create_task(
                self._discovery.run_periodic(config.discovery_interval, self._discovery_stop),
                name="refinery-model-discovery",
            )
        logger.info("refinery started with providers: %s", ", ".join(self._dispatcher.providers()) or "none")

    async def shutdown(self) -> None:
        """Stop discovery, flush metrics, close the stores and the HTTP client."""
        if self._discovery_task is not None:
            self._discovery_stop.set()
            self._discovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._discovery_task
            self._discovery_task = None
        if self._metrics is not None:
            await self._metrics.stop()
        for store in (self._main_store, self._forensic_store, self._metrics_store):
            if store is not None:
                await store.close()
        if self._http_client is not None:
            await self._http_client.aclose()
        self._main_store = self._forensic_store = self._metrics_store = None
        self._metrics = None
        self._dispatcher = self._engine = self._discovery = None
        self._challenges = self._resolutions = None
        self._http_client = None
        logger.info("refinery stopped")
