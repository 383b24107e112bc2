"""Built-in thinking flows and reference workflows."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from litestar_refinery.core.ids import new_id
from litestar_refinery.core.types import StepKind, WorkflowStatus
from litestar_refinery.db.models import WorkflowModel, WorkflowStepModel
from litestar_refinery.flows.engine import TARGET, FlowConfig, FlowStepConfig

if TYPE_CHECKING:
    from litestar_refinery.db.forensic import ForensicStore

__all__ = [
    "VIABILITY_CRITERIA",
    "VIABILITY_LIST_NAME",
    "core_flows",
    "flow_names",
    "get_core_flow",
    "seed_core_workflows",
]

logger = logging.getLogger(__name__)

VIABILITY_LIST_NAME = "workflow_viability_thresholds"
VIABILITY_CRITERIA = (
    "Estimated token consumption below 500k per run",
    "No circular prompt references detected",
    "No prompt injection patterns detected",
    "Step types consistent with declared workflow type",
    "Viability score above 60",
)

_GROQ = ("groq", "llama-3.3-70b-versatile")
_GEMINI = ("gemini", "gemini-2.0-flash")
_MISTRAL = ("mistral", "mistral-large-latest")


def _step(name: str, target: tuple[str, str], role: str, system: str, prompt: str) -> FlowStepConfig:
    provider, model = target
    return FlowStepConfig(name=name, provider=provider, model=model, role=role, prompt=prompt, system=system)


_AT_TARGET = (TARGET, TARGET)

_CORE_FLOWS = (
    FlowConfig(
        name="confrontation",
        description="Multi-model confrontation: respond, object, synthesize, judge",
        steps=(
            _step(
                "respond",
                _AT_TARGET,
                "defender",
                "You are an expert analyst. Provide a well-sourced, detailed answer.",
                "Answer the following question with sources and evidence:\n\n{{.Body}}",
            ),
            _step(
                "object",
                _GROQ,
                "attacker",
                "You are a critical reviewer. Find flaws, missing nuances, and counter-arguments. Cite sources.",
                "The following question was asked:\n\n{{.Body}}\n\nAn answer was provided:\n\n{{.PreviousResponse}}\n\n"
                "Provide substantive objections with sources. What is wrong, incomplete, or misleading?",
            ),
            _step(
                "synthesize",
                _GEMINI,
                "synthesizer",
                "You are a neutral synthesizer. Combine arguments fairly, noting where they agree and disagree.",
                "Original question:\n{{.Body}}\n\nInitial answer:\n{{.Step.respond}}\n\nObjections:\n{{.Step.object}}\n\n"
                "Synthesize both positions into a balanced analysis. "
                "Note areas of agreement, disagreement, and remaining uncertainty.",
            ),
            _step(
                "judge",
                _MISTRAL,
                "judge",
                "You are an impartial judge. Evaluate the quality of arguments and deliver a verdict.",
                "Question:\n{{.Body}}\n\nSynthesis of arguments:\n{{.PreviousResponse}}\n\n"
                "Deliver a verdict: which position is better supported? Rate confidence 0-100. "
                "Identify remaining open questions.",
            ),
        ),
    ),
    FlowConfig(
        name="red_team",
        description="Automated red teaming: build case, demolish, classify deception",
        steps=(
            _step(
                "build_case",
                _AT_TARGET,
                "defender",
                "You are building the strongest possible case FOR the following claim, even if it may be false. "
                "Use persuasive arguments and cite plausible sources.",
                "Build the strongest possible argument supporting this claim:\n\n{{.Body}}",
            ),
            _step(
                "demolish",
                _GROQ,
                "attacker",
                "You are a fact-checker and critical analyst. Systematically demolish the argument below. "
                "Identify every logical fallacy, unsupported claim, misused source, and deceptive technique.",
                "The following argument was constructed in favor of a claim:\n\n{{.PreviousResponse}}\n\n"
                "Original claim: {{.Body}}\n\nDemolish this argument systematically. "
                "For each point, explain why it fails.",
            ),
            _step(
                "classify",
                _GEMINI,
                "judge",
                "You are a deception classification expert. Categorize the techniques used.",
                "Original claim: {{.Body}}\n\nArgument for the claim:\n{{.Step.build_case}}\n\n"
                "Demolition:\n{{.Step.demolish}}\n\n"
                "Classify the deception mechanisms used in the original argument. Categories: "
                "citation_hors_contexte, extrapolation_abusive, appel_autorite, donnees_truquees, "
                "confusion_terminologique, accroche_emotionnelle, grain_de_verite_exploite. "
                "Rate overall deceptiveness 0-100.",
            ),
        ),
    ),
    FlowConfig(
        name="fidelity_benchmark",
        description="Fidelity benchmark: generate a Resolution and compare it with the source tree",
        steps=(
            _step(
                "generate_resolution",
                _AT_TARGET,
                "synthesizer",
                "You are a Resolution generator for a knowledge refinery. Create a structured dialogue between "
                "argumentative lines (not between people). Cover all key points, objections, and evidence from the tree.",
                "Generate a Resolution (structured living dialogue) for the following proof tree:\n\n{{.Body}}",
            ),
            _step(
                "evaluate_fidelity",
                _GEMINI,
                "judge",
                "You are a fidelity evaluator. Compare a generated Resolution against the source material.",
                "Source material (proof tree):\n{{.Body}}\n\nGenerated Resolution:\n{{.PreviousResponse}}\n\n"
                "Evaluate fidelity on these axes (0-100 each):\n"
                "1. Completeness: are all key arguments represented?\n"
                "2. Accuracy: are claims faithfully reproduced?\n"
                "3. Balance: are opposing views fairly weighted?\n"
                "4. Source attribution: are sources correctly cited?\n"
                "5. Nuance: are uncertainties and caveats preserved?\n\n"
                "Provide an overall fidelity score and specific issues found.",
            ),
        ),
    ),
    FlowConfig(
        name="adversarial_detection",
        description="Adversarial detection: fabricated source, evaluation, resistance score",
        steps=(
            _step(
                "fabricate",
                _GROQ,
                "attacker",
                "You are creating a convincing but fabricated source to test detection capabilities. "
                "Make it look real but include subtle inconsistencies that a careful reader would catch.",
                "Create a fabricated but convincing source (fake study, fake article, fake statistics) "
                "that supports the following claim:\n\n{{.Body}}\n\n"
                "Make it look professional and credible, but include 3-5 subtle red flags.",
            ),
            _step(
                "detect",
                _AT_TARGET,
                "defender",
                "You are a source verification expert. Analyze the following source for authenticity. "
                "Be thorough and skeptical.",
                "Analyze this source for authenticity. Is it real or fabricated? What red flags do you see?\n\n"
                "Source:\n{{.PreviousResponse}}\n\nContext claim: {{.Body}}",
            ),
            _step(
                "score",
                _GEMINI,
                "judge",
                "You are evaluating detection performance.",
                "A fabricated source was created with these embedded red flags:\n{{.Step.fabricate}}\n\n"
                "The detector's analysis was:\n{{.Step.detect}}\n\n"
                "Score the detection (0-100):\n1. Red flags found / total red flags\n"
                "2. False positives (things flagged that weren't red flags)\n3. Reasoning quality\n"
                "4. Overall resistance score",
            ),
        ),
    ),
    FlowConfig(
        name="deep_dive",
        description="Iterative deepening: identify weak points, investigate, consolidate",
        steps=(
            _step(
                "initial_analysis",
                _AT_TARGET,
                "defender",
                "You are a thorough analyst. Provide a complete answer and explicitly flag areas of "
                "uncertainty or weak evidence.",
                "Analyze the following question thoroughly. At the end, list the TOP 3 weakest points in your "
                "analysis that need deeper investigation:\n\n{{.Body}}",
            ),
            _step(
                "deepen",
                _GROQ,
                "attacker",
                "You specialize in investigating the weakest points of an analysis. "
                "Go deeper on each identified weakness.",
                "The following analysis was provided:\n\n{{.PreviousResponse}}\n\n"
                "Investigate each of the identified weak points. Provide additional evidence, "
                "counter-arguments, or corrections for each.",
            ),
            _step(
                "consolidate",
                _GEMINI,
                "synthesizer",
                "You consolidate research into a final comprehensive answer.",
                "Original question: {{.Body}}\n\nInitial analysis:\n{{.Step.initial_analysis}}\n\n"
                "Deep investigation of weak points:\n{{.Step.deepen}}\n\n"
                "Produce a consolidated, comprehensive answer that incorporates the deeper investigation. "
                "Clearly mark remaining uncertainties.",
            ),
        ),
    ),
    FlowConfig(
        name="safety_scoring",
        description="Safety analysis: detect harmful patterns, score content safety, suggest mitigations",
        steps=(
            _step(
                "analyze",
                _AT_TARGET,
                "defender",
                "You are a content safety analyst. Analyze the following content for potential harms, "
                "misinformation, manipulation techniques, and safety concerns.",
                "Analyze the safety of the following content. Identify any harmful patterns, misinformation, "
                "manipulation techniques, or safety concerns:\n\n{{.Body}}",
            ),
            _step(
                "score",
                _GROQ,
                "judge",
                "You are a safety scoring expert. Evaluate the analysis and provide structured safety scores.",
                "Based on the following safety analysis:\n\n{{.PreviousResponse}}\n\nOriginal content:\n{{.Body}}\n\n"
                "Provide safety scores (0-100, where 100 is perfectly safe):\n1. Factual accuracy score\n"
                "2. Manipulation resistance score\n3. Source credibility score\n4. Overall safety score\n\n"
                "List any specific safety flags found.",
            ),
            _step(
                "mitigate",
                _GEMINI,
                "synthesizer",
                "You are a safety mitigation expert. Suggest concrete improvements based on the safety analysis.",
                "Safety analysis:\n{{.Step.analyze}}\n\nSafety scores:\n{{.Step.score}}\n\n"
                "Original content:\n{{.Body}}\n\nSuggest specific mitigations to improve the safety of this "
                "content. Focus on actionable improvements while preserving the original intent.",
            ),
        ),
    ),
)


def core_flows() -> tuple[FlowConfig, ...]:
    """Return the built-in thinking flows."""
    return _CORE_FLOWS


def flow_names() -> list[str]:
    return [flow.name for flow in _CORE_FLOWS]


def get_core_flow(name: str) -> FlowConfig:
    """Return the built-in flow called ``name``.

    Raises:
        ValueError: If there is no such flow.
    """
    for flow in _CORE_FLOWS:
        if flow.name == name:
            return flow
    msg = f"unknown flow: {name}"
    raise ValueError(msg)


# ---------------------------------------------------------------------------
# Reference workflows
# ---------------------------------------------------------------------------

# (name, description, steps); a step is (name, provider, model, prompt, system)
_SEEDS: tuple[tuple[str, str, tuple[tuple[str, str, str, str, str], ...]], ...] = (
    (
        "decompose",
        "Decompose a claim into thesis/antithesis sub-claims",
        (
            (
                "decompose",
                *_GROQ,
                "Decompose the following claim into sub-claims (thesis and antithesis). List each sub-claim on a "
                "separate line prefixed with [THESIS] or [ANTITHESIS].\n\nClaim: {{.Body}}",
                "You are an analytical decomposition engine. Break claims into atomic thesis/antithesis pairs.",
            ),
        ),
    ),
    (
        "critique",
        "Multi-model critical analysis",
        (
            (
                "argue",
                "",
                "",
                "Build the strongest possible argument for this position:\n\n{{.Body}}",
                "You are an expert advocate. Build a compelling case with evidence and reasoning.",
            ),
            (
                "counter_argue",
                *_GROQ,
                "The following argument was made:\n\n{{.PreviousResponse}}\n\nOriginal claim: {{.Body}}\n\n"
                "Provide a thorough counter-argument.",
                "You are a critical analyst. Find every weakness, assumption, and counter-evidence.",
            ),
            (
                "synthesize",
                *_GEMINI,
                "Original: {{.Body}}\n\nArgument: {{.Step.argue}}\n\nCounter: {{.Step.counter_argue}}\n\n"
                "Synthesize into a balanced analysis.",
                "You are a neutral synthesizer.",
            ),
        ),
    ),
    (
        "source",
        "Source identification and evaluation",
        (
            (
                "identify_sources",
                "",
                "",
                "Identify relevant sources (academic papers, official data, reputable articles) for:\n\n{{.Body}}\n\n"
                "List each source with URL if known.",
                "You are a research librarian. Identify the most reliable sources.",
            ),
            (
                "evaluate_reliability",
                *_GEMINI,
                "Sources identified:\n{{.PreviousResponse}}\n\nOriginal topic: {{.Body}}\n\n"
                "Evaluate each source's reliability (0-100). Flag any potentially fabricated or unreliable sources.",
                "You are a source credibility evaluator.",
            ),
        ),
    ),
    (
        "factcheck",
        "Factual verification",
        (
            (
                "extract_claims",
                "",
                "",
                "Extract all verifiable factual claims from the following text:\n\n{{.Body}}\n\n"
                "List each claim separately.",
                "You are a fact extraction specialist. Identify only claims that can be verified.",
            ),
            (
                "verify_claims",
                *_GROQ,
                "Verify each of the following claims. For each, indicate TRUE, FALSE, or UNVERIFIABLE with "
                "evidence:\n\n{{.PreviousResponse}}",
                "You are a fact-checker. Be rigorous and cite your sources.",
            ),
        ),
    ),
    (
        "analyse",
        "Iterative deep analysis",
        (
            (
                "initial_analysis",
                "",
                "",
                "Provide a thorough initial analysis of:\n\n{{.Body}}\n\n"
                "Identify the top 3 areas needing deeper investigation.",
                "You are a thorough analyst. Flag uncertainties explicitly.",
            ),
            (
                "deepen",
                *_GROQ,
                "Deepen the investigation on the weak points identified:\n\n{{.PreviousResponse}}\n\n"
                "Original topic: {{.Body}}",
                "You specialize in investigating weak points of analyses.",
            ),
            (
                "consolidate",
                *_GEMINI,
                "Original: {{.Body}}\n\nInitial: {{.Step.initial_analysis}}\n\nDeepened: {{.Step.deepen}}\n\n"
                "Consolidate into a comprehensive answer. Mark remaining uncertainties.",
                "You consolidate research into comprehensive answers.",
            ),
        ),
    ),
)


async def seed_core_workflows(store: ForensicStore, bot_user_id: str) -> int:
    """Create the reference workflows and the viability criteria list.

    Workflows whose name already exists are left alone, so seeding any number
    of times yields the same set. Seeded workflows are ``active``, owned by
    ``bot_user_id`` with owner role ``operator``.

    Returns:
        The number of workflows created.
    """
    seeded = 0
    for name, description, step_specs in _SEEDS:
        if await store.get_workflow_by_name(name) is not None:
            continue
        workflow_id = new_id()
        workflow = WorkflowModel(
            workflow_id=workflow_id,
            name=name,
            description=description,
            workflow_type=name,
            owner_id=bot_user_id,
            owner_role="operator",
            status=WorkflowStatus.ACTIVE,
            version=1,
        )
        steps = [
            WorkflowStepModel(
                step_id=new_id(),
                workflow_id=workflow_id,
                step_order=order,
                step_name=step_name,
                step_type=StepKind.LLM,
                provider=provider or None,
                model=model or None,
                prompt_template=prompt,
                system_prompt=system,
                config_json={},
                timeout_ms=30000,
                retry_max=2,
            )
            for order, (step_name, provider, model, prompt, system) in enumerate(step_specs, start=1)
        ]
        try:
            await store.create_workflow(workflow, steps)
        except SQLAlchemyError:
            logger.warning("could not seed workflow %s", name, exc_info=True)
            continue
        seeded += 1

    if await store.get_criteria_list_by_name(VIABILITY_LIST_NAME) is None:
        await store.create_criteria_list(
            VIABILITY_LIST_NAME,
            list(VIABILITY_CRITERIA),
            bot_user_id,
            description="Threshold criteria for workflow validation audit",
        )

    if seeded:
        logger.info("seeded %d core workflows", seeded)
    return seeded
