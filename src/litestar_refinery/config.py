"""Configuration for litestar-refinery.

The embedding application builds these dataclasses; nothing here reads files
or the environment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from litestar_refinery.core.types import ProviderKind

__all__ = [
    "DEFAULT_LLM_TIMEOUT",
    "LLMSettings",
    "ProviderSettings",
    "RefineryPluginConfig",
]

DEFAULT_LLM_TIMEOUT = 120.0
"""Seconds allowed for a single completion request."""


@dataclass
class ProviderSettings:
    """One LLM backend.

    Attributes:
        name: Registry name, also the ``<provider>`` prefix of model ids.
        kind: Wire family spoken by the backend.
        api_key: Credential sent with every request.
        base_url: API root; the adapter's default when empty.
        models: Model names offered by the backend; the adapter's default list when empty.
        default_model: Model used when a request names none; the first of
            ``models`` when empty.

    Example:
        >>> ProviderSettings(
        ...     name="deepseek",
        ...     kind=ProviderKind.OPENAI,
        ...     api_key="sk-...",
        ...     base_url="https://api.deepseek.com/v1",
        ...     models=["deepseek-chat"],
        ... )
    """

    name: str
    kind: ProviderKind
    api_key: str
    base_url: str = ""
    models: list[str] = field(default_factory=list)
    default_model: str = ""


@dataclass
class LLMSettings:
    """Credentials for the built-in backends plus any extra OpenAI-family ones.

    A backend is active only when its key is set.

    Attributes:
        gemini_api_key: Google Gemini key.
        mistral_api_key: Mistral key.
        groq_api_key: Groq key.
        openrouter_api_key: OpenRouter key.
        anthropic_api_key: Anthropic key.
        huggingface_api_key: Hugging Face inference key.
        extra_providers: Additional backends, appended after the built-in ones.
        timeout: Seconds allowed for a single completion request.
    """

    gemini_api_key: str = ""
    mistral_api_key: str = ""
    groq_api_key: str = ""
    openrouter_api_key: str = ""
    anthropic_api_key: str = ""
    huggingface_api_key: str = ""
    extra_providers: list[ProviderSettings] = field(default_factory=list)
    timeout: float = DEFAULT_LLM_TIMEOUT

    def provider_settings(self) -> list[ProviderSettings]:
        """Return the active backends in fallback order.

        The order is gemini, mistral, groq, openrouter, anthropic,
        huggingface, then ``extra_providers``.
        """
        providers: list[ProviderSettings] = []
        if self.gemini_api_key:
            providers.append(ProviderSettings(name="gemini", kind=ProviderKind.GEMINI, api_key=self.gemini_api_key))
        if self.mistral_api_key:
            providers.append(
                ProviderSettings(
                    name="mistral",
                    kind=ProviderKind.OPENAI,
                    api_key=self.mistral_api_key,
                    base_url="https://api.mistral.ai/v1",
                    models=["mistral-large-latest", "mistral-small-latest", "codestral-latest"],
                    default_model="mistral-small-latest",
                )
            )
        if self.groq_api_key:
            providers.append(
                ProviderSettings(
                    name="groq",
                    kind=ProviderKind.OPENAI,
                    api_key=self.groq_api_key,
                    base_url="https://api.groq.com/openai/v1",
                    models=["llama-3.3-70b-versatile", "llama-3.1-8b-instant", "mixtral-8x7b-32768"],
                    default_model="llama-3.3-70b-versatile",
                )
            )
        if self.openrouter_api_key:
            providers.append(
                ProviderSettings(
                    name="openrouter",
                    kind=ProviderKind.OPENAI,
                    api_key=self.openrouter_api_key,
                    base_url="https://openrouter.ai/api/v1",
                    models=["deepseek/deepseek-chat", "qwen/qwen-2.5-72b-instruct", "meta-llama/llama-3.3-70b-instruct"],
                    default_model="deepseek/deepseek-chat",
                )
            )
        if self.anthropic_api_key:
            providers.append(
                ProviderSettings(name="anthropic", kind=ProviderKind.ANTHROPIC, api_key=self.anthropic_api_key)
            )
        if self.huggingface_api_key:
            providers.append(
                ProviderSettings(
                    name="huggingface",
                    kind=ProviderKind.OPENAI,
                    api_key=self.huggingface_api_key,
                    base_url="https://api-inference.huggingface.co/models",
                    models=["meta-llama/Llama-3.3-70B-Instruct", "Qwen/Qwen2.5-72B-Instruct"],
                )
            )
        providers.extend(self.extra_providers)
        return providers


@dataclass
class RefineryPluginConfig:
    """Configuration for the RefineryPlugin.

    Attributes:
        main_db_path: Path of the node tree store.
        forensic_db_path: Path of the forensic store.
        metrics_db_path: Path of the LLM call metrics store.
        llm: Backend credentials.
        discovery_interval: Seconds between model discovery sweeps. ``None``
            disables periodic discovery.
        seed_core_workflows: Whether to create the reference workflows at startup.
        bot_user_id: Owner of the seeded workflows.
        metrics_queue_size: Pending metric records before new ones are dropped.
        dependency_key_forensic_store: DI key of the ForensicStore.
        dependency_key_main_store: DI key of the MainStore.
        dependency_key_dispatcher: DI key of the Dispatcher.
        dependency_key_engine: DI key of the WorkflowEngine.
        dependency_key_discovery: DI key of the ModelDiscovery.
        dependency_key_challenges: DI key of the ChallengeRunner.
        dependency_key_resolutions: DI key of the ResolutionEngine.
    """

    main_db_path: str | Path = "refinery.db"
    forensic_db_path: str | Path = "refinery_flows.db"
    metrics_db_path: str | Path = "refinery_metrics.db"
    llm: LLMSettings = field(default_factory=LLMSettings)
    discovery_interval: float | None = 3600.0
    seed_core_workflows: bool = True
    bot_user_id: str = "refinery-bot"
    metrics_queue_size: int = 1000
    dependency_key_forensic_store: str = "forensic_store"
    dependency_key_main_store: str = "main_store"
    dependency_key_dispatcher: str = "llm_dispatcher"
    dependency_key_engine: str = "workflow_engine"
    dependency_key_discovery: str = "model_discovery"
    dependency_key_challenges: str = "challenge_runner"
    dependency_key_resolutions: str = "resolution_engine"
