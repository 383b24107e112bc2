"""Resolutions: proof trees synthesized into dialogues between argumentative lines."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from litestar_refinery.core.ids import new_id
from litestar_refinery.db.models import FlowStepModel
from litestar_refinery.flows.tree import serialize_tree
from litestar_refinery.llm.types import CompletionRequest, Message

if TYPE_CHECKING:
    from litestar_refinery.db.forensic import ForensicStore
    from litestar_refinery.flows.tree import TreeNode
    from litestar_refinery.llm.client import Dispatcher
    from litestar_refinery.llm.types import CompletionResponse

__all__ = [
    "RENDER_FORMATS",
    "RESOLUTION_SYSTEM_PROMPT",
    "RenderResult",
    "ResolutionEngine",
    "ResolutionResult",
]

logger = logging.getLogger(__name__)

RESOLUTION_SYSTEM_PROMPT = """Tu es un générateur de Résolution pour une raffinerie de connaissances.

Une Résolution est un dialogue structuré entre LIGNES ARGUMENTATIVES (pas entre personnes).
Chaque ligne argumentative représente une position défendue dans l'arbre de preuves.

Format de sortie :
1. CONTEXTE : résumé de la question en 2-3 phrases
2. LIGNES ARGUMENTATIVES : identifier chaque position distincte
3. DIALOGUE : échange structuré entre les lignes, avec références aux sources
4. POINTS DE CONVERGENCE : ce sur quoi les lignes s'accordent
5. POINTS DE DIVERGENCE : ce qui reste contesté, avec nuances
6. INCERTITUDES : ce qu'on ne sait pas encore
7. VERDICT : synthèse équilibrée avec degré de confiance

Règles :
- Fidélité absolue à l'arbre source, ne rien inventer
- Chaque affirmation doit être traçable à un nœud de l'arbre
- Les sources sont citées inline [source: URL]
- Les votes et scores reflètent le poids communautaire
- La température indique le niveau de controverse"""

RENDER_SYSTEM_PROMPT = (
    "Tu transformes des Résolutions en différents formats médias. Fidélité absolue au contenu source."
)

RENDER_FORMATS: dict[str, str] = {
    "article": (
        "Transforme cette Résolution en un article clair et lisible, avec titre, chapô, et paragraphes "
        "structurés. Conserve toutes les sources et nuances."
    ),
    "faq": (
        "Transforme cette Résolution en une FAQ (questions-réponses). Chaque question couvre un aspect clé "
        "du débat. Les réponses citent les sources."
    ),
    "thread": (
        "Transforme cette Résolution en un thread X (Twitter). Maximum 15 tweets. Chaque tweet est autonome "
        "mais s'enchaîne logiquement. Utilise des emojis avec parcimonie. Le premier tweet accroche, le "
        "dernier conclut."
    ),
    "summary": "Résume cette Résolution en 3 paragraphes maximum. L'essentiel, les points clés, la conclusion.",
}


@dataclass
class ResolutionResult:
    content: str
    provider: str
    model: str
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int = 0
    flow_id: str = ""


@dataclass
class RenderResult:
    format: str
    content: str
    provider: str
    model: str


class ResolutionEngine:
    """Generate Resolutions from proof trees and render them for publication.

    Args:
        dispatcher: The LLM dispatcher.
        store: Forensic store receiving a ``flow_steps`` row per generation. Optional.
    """

    def __init__(self, dispatcher: Dispatcher, store: ForensicStore | None = None) -> None:
        self.dispatcher = dispatcher
        self.store = store

    async def generate_resolution(
        self, tree: TreeNode | None, provider: str | None = None, model: str = ""
    ) -> ResolutionResult:
        """Synthesize ``tree`` into a Resolution.

        Args:
            tree: The proof tree.
            provider: Provider to pin; routed through the dispatcher when omitted.
            model: Model to request.

        Returns:
            The generated Resolution. When a store is configured it is also
            persisted under a flow id prefixed ``res_``.

        Raises:
            ValueError: If the tree is empty.
            ProviderError: If the LLM call fails.
        """
        tree_text = serialize_tree(tree)
        if tree is None or not tree_text:
            msg = "empty tree"
            raise ValueError(msg)

        prompt = f"Génère une Résolution pour cet arbre de preuves :\n\n{tree_text}"
        request = CompletionRequest(
            model=model,
            messages=[Message("system", RESOLUTION_SYSTEM_PROMPT), Message("user", prompt)],
            temperature=0.3,
            max_tokens=4096,
        )
        response = await self._complete(request, provider)
        result = ResolutionResult(
            content=response.content,
            provider=response.provider,
            model=response.model,
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
            latency_ms=response.latency_ms,
        )
        if self.store is not None:
            result.flow_id = f"res_{new_id()}"
            record = FlowStepModel(
                flow_id=result.flow_id,
                step_index=0,
                node_id=tree.node_id,
                model_id=response.model,
                provider=response.provider,
                prompt=prompt,
                system_prompt=RESOLUTION_SYSTEM_PROMPT,
                response_raw=response.content,
                response_parsed=response.content,
                tokens_in=response.tokens_in,
                tokens_out=response.tokens_out,
                latency_ms=response.latency_ms,
                finish_reason=response.finish_reason,
            )
            try:
                await self.store.insert_flow_step(record)
            except SQLAlchemyError:
                logger.warning("could not persist resolution for node %s", tree.node_id, exc_info=True)
        logger.info("resolution generated for node %s by %s/%s", tree.node_id, response.provider, response.model)
        return result

    async def render_resolution(
        self, resolution: str, fmt: str, provider: str | None = None, model: str = ""
    ) -> RenderResult:
        """Rewrite a Resolution as an ``article``, ``faq``, ``thread`` or ``summary``.

        Raises:
            ValueError: If ``fmt`` is not supported.
            ProviderError: If the LLM call fails.
        """
        instruction = RENDER_FORMATS.get(fmt)
        if instruction is None:
            msg = f"unsupported render format: {fmt} (supported: {', '.join(RENDER_FORMATS)})"
            raise ValueError(msg)
        request = CompletionRequest(
            model=model,
            messages=[
                Message("system", RENDER_SYSTEM_PROMPT),
                Message("user", f"{instruction}\n\nRésolution source :\n\n{resolution}"),
            ],
            temperature=0.4,
            max_tokens=4096,
        )
        response = await self._complete(request, provider)
        return RenderResult(format=fmt, content=response.content, provider=response.provider, model=response.model)

    async def _complete(self, request: CompletionRequest, provider: str | None) -> CompletionResponse:
        if provider:
            return await self.dispatcher.complete_with(provider, request)
        return await self.dispatcher.complete(request)
