"""Tests for thinking flows, challenges, Resolutions, replay and seeded workflows."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import pytest

from litestar_refinery.core.types import RunStatus, StepKind, WorkflowStatus
from litestar_refinery.db.models import FlowStepModel, NodeModel
from litestar_refinery.engine import WorkflowEngine
from litestar_refinery.exceptions import FlowStepNotFoundError, NodeNotFoundError
from litestar_refinery.flows import (
    ChallengeRunner,
    FlowConfig,
    FlowContext,
    FlowEngine,
    FlowResult,
    FlowStepConfig,
    FlowStepResult,
    ReplayEngine,
    ResolutionEngine,
    TreeNode,
    build_tree,
    core_flows,
    extract_scoring,
    flow_names,
    get_core_flow,
    seed_core_workflows,
    serialize_tree,
)
from litestar_refinery.flows.challenge import SUMMARY_LIMIT, summarize
from litestar_refinery.flows.core import VIABILITY_CRITERIA, VIABILITY_LIST_NAME
from litestar_refinery.flows.engine import TARGET
from litestar_refinery.flows.resolution import RENDER_FORMATS, RESOLUTION_SYSTEM_PROMPT
from litestar_refinery.llm.client import Dispatcher
from litestar_refinery.llm.types import CompletionResponse
from tests.conftest import ScriptedProvider, failing

if TYPE_CHECKING:
    import httpx

    from litestar_refinery.db import ForensicStore, MainStore


@pytest.fixture
def backends() -> dict[str, ScriptedProvider]:
    return {
        "target": ScriptedProvider("target", models=["t-1"]),
        "groq": ScriptedProvider("groq", models=["llama-3.3-70b-versatile"]),
        "gemini": ScriptedProvider("gemini", models=["gemini-2.0-flash"]),
        "mistral": ScriptedProvider("mistral", models=["mistral-large-latest"]),
    }


@pytest.fixture
def flow_dispatcher(backends: dict[str, ScriptedProvider]) -> Dispatcher:
    return Dispatcher(backends.values())


def _response(content: str) -> CompletionResponse:
    return CompletionResponse(provider="p", model="m", content=content)


def _tree() -> TreeNode:
    root = TreeNode("n1", "claim", "Water boils at 100C\nat sea level", score=3, temperature="warm")
    root.children.append(TreeNode("n2", "piece", "Textbook value", model_id="groq/llama"))
    return root


@pytest.mark.unit
class TestTree:
    """Tests for tree assembly and serialization."""

    def test_serialize(self) -> None:
        """Test headers carry type, score and temperature, bodies are indented under them."""
        assert serialize_tree(_tree()) == (
            "[claim] (score:3, temp:warm)\n"
            "  Water boils at 100C\n"
            "  at sea level\n"
            "  [piece] (score:0, temp:cold, model:groq/llama)\n"
            "    Textbook value\n"
        )

    def test_serialize_empty(self) -> None:
        """Test no tree serializes to nothing."""
        assert serialize_tree(None) == ""

    def test_build_tree(self) -> None:
        """Test rows attach to their parents and orphans are dropped."""
        rows = [
            NodeModel(id="r", parent_id=None, root_id="r", node_type="claim", body="root", author_id="a", score=1),
            NodeModel(id="c", parent_id="r", root_id="r", node_type="piece", body="child", author_id="a", score=0),
            NodeModel(id="o", parent_id="gone", root_id="r", node_type="claim", body="orphan", author_id="a"),
        ]

        tree = build_tree(rows, "r")

        assert tree is not None
        assert tree.node_id == "r"
        assert [child.node_id for child in tree.children] == ["c"]
        assert tree.children[0].temperature == "cold"

    def test_build_tree_empty(self) -> None:
        """Test no rows build no tree."""
        assert build_tree([]) is None


@pytest.mark.unit
class TestCoreFlows:
    """Tests for the built-in flow catalogue."""

    def test_names(self) -> None:
        """Test every built-in flow is listed once."""
        assert flow_names() == [
            "confrontation",
            "red_team",
            "fidelity_benchmark",
            "adversarial_detection",
            "deep_dive",
            "safety_scoring",
        ]

    def test_every_flow_targets_the_challenged_model(self) -> None:
        """Test each flow puts the target under test in at least one step."""
        for flow in core_flows():
            assert any(step.provider == TARGET and step.model == TARGET for step in flow.steps), flow.name

    def test_confrontation_roles(self) -> None:
        """Test the confrontation flow runs defender, attacker, synthesizer and judge in order."""
        flow = get_core_flow("confrontation")

        assert [(s.name, s.provider, s.role) for s in flow.steps] == [
            ("respond", TARGET, "defender"),
            ("object", "groq", "attacker"),
            ("synthesize", "gemini", "synthesizer"),
            ("judge", "mistral", "judge"),
        ]

    def test_unknown_flow(self) -> None:
        """Test asking for a missing flow raises."""
        with pytest.raises(ValueError, match="unknown flow: nope"):
            get_core_flow("nope")


@pytest.mark.integration
@pytest.mark.asyncio
class TestFlowEngine:
    """Tests for FlowEngine."""

    async def test_target_substitution_and_persistence(
        self,
        flow_dispatcher: Dispatcher,
        backends: dict[str, ScriptedProvider],
        forensic_store: ForensicStore,
    ) -> None:
        """Test $TARGET steps go to the caller's target and every step is recorded."""
        engine = FlowEngine(flow_dispatcher, forensic_store)
        context = FlowContext(body="Is water wet?", node_id="n1", target_provider="target", target_model="t-1")

        result = await engine.execute(get_core_flow("confrontation"), context)

        assert [(s.provider, s.model) for s in result.steps] == [
            ("target", "t-1"),
            ("groq", "llama-3.3-70b-versatile"),
            ("gemini", "gemini-2.0-flash"),
            ("mistral", "mistral-large-latest"),
        ]
        assert all(s.error is None for s in result.steps)
        assert "Is water wet?" in backends["target"].calls[0].messages[-1].content
        object_prompt = backends["groq"].calls[0].messages[-1].content
        assert context.responses["respond"] in object_prompt

        records = await forensic_store.list_flow_steps(result.flow_id)
        assert [r.step_index for r in records] == [0, 1, 2, 3]
        assert records[0].provider == "target"
        assert records[0].node_id == "n1"
        assert records[0].response_raw == context.responses["respond"]
        assert records[0].system_prompt is not None

    async def test_failed_step_recorded_and_flow_continues(
        self,
        flow_dispatcher: Dispatcher,
        backends: dict[str, ScriptedProvider],
        forensic_store: ForensicStore,
    ) -> None:
        """Test a provider failure is kept on the step and later steps still run."""
        backends["groq"].replies.append(failing("groq", "rate limited"))
        flow = FlowConfig(
            name="two",
            steps=(
                FlowStepConfig(name="first", provider="groq", prompt="{{.Body}}"),
                FlowStepConfig(name="second", provider="gemini", prompt="[{{.Step.first}}]"),
            ),
        )

        result = await FlowEngine(flow_dispatcher, forensic_store).execute(flow, FlowContext(body="b"))

        assert result.steps[0].error == "groq: rate limited"
        assert result.steps[0].response is None
        assert result.steps[1].response is not None
        assert backends["gemini"].calls[0].messages[-1].content == "[]"
        records = await forensic_store.list_flow_steps(result.flow_id)
        assert records[0].error == "groq: rate limited"
        assert records[0].response_raw == ""

    async def test_without_store(self, flow_dispatcher: Dispatcher) -> None:
        """Test a flow runs without a forensic store."""
        flow = FlowConfig(name="one", steps=(FlowStepConfig(name="only", prompt="{{.Body}}"),))

        result = await FlowEngine(flow_dispatcher).execute(flow, FlowContext(body="b"))

        assert result.last_step is not None
        assert result.last_step.response is not None
        assert result.flow_id


@pytest.mark.unit
class TestScoring:
    """Tests for scoring the final step of a challenge."""

    def test_no_steps(self) -> None:
        """Test an empty result scores zero."""
        assert extract_scoring(FlowResult(flow_id="f")) == (0.0, "no steps completed")

    def test_last_step_failed(self) -> None:
        """Test a failed final step scores zero with its error."""
        result = FlowResult(flow_id="f", steps=[FlowStepResult("judge", "p", "m", error="down")])

        assert extract_scoring(result) == (0.0, "last step failed: down")

    def test_no_response(self) -> None:
        """Test a final step without a response scores zero."""
        result = FlowResult(flow_id="f", steps=[FlowStepResult("judge", "p", "m")])

        assert extract_scoring(result) == (0.0, "no response from last step")

    def test_last_score_wins(self) -> None:
        """Test the last score mentioned in the answer is used."""
        content = "Confidence score: 40\nResistance Score: 55/100\nOverall score: 72"
        result = FlowResult(flow_id="f", steps=[FlowStepResult("judge", "p", "m", response=_response(content))])

        assert extract_scoring(result) == (72.0, content)

    def test_no_score_found(self) -> None:
        """Test an answer without a score scores zero."""
        result = FlowResult(flow_id="f", steps=[FlowStepResult("judge", "p", "m", response=_response("meh"))])

        assert extract_scoring(result) == (0.0, "meh")

    def test_summary_cut_at_sentence(self) -> None:
        """Test a long answer is cut after the last full stop of the window."""
        content = "a" * 300 + "." + "b" * 400

        assert summarize(content) == "a" * 300 + "."

    def test_summary_ellipsis(self) -> None:
        """Test a long answer without a late full stop keeps the whole window."""
        content = "a." + "b" * 600

        assert summarize(content) == content[:SUMMARY_LIMIT] + "..."


@pytest.mark.integration
@pytest.mark.asyncio
class TestChallenges:
    """Tests for ChallengeRunner."""

    async def test_run_challenge(self, flow_dispatcher: Dispatcher, backends: dict[str, ScriptedProvider]) -> None:
        """Test the serialized tree is the body and the judge's score is extracted."""
        backends["mistral"].replies.append("Verdict: defender.\nConfidence score: 81")
        runner = ChallengeRunner(FlowEngine(flow_dispatcher))

        result = await runner.run_challenge("confrontation", _tree(), "target", "t-1")

        assert result.flow_name == "confrontation"
        assert result.score == 81.0
        assert result.summary == "Verdict: defender.\nConfidence score: 81"
        assert result.flow_result.flow_id == result.challenge_id
        assert serialize_tree(_tree()) in backends["target"].calls[0].messages[-1].content

    async def test_unknown_flow(self, flow_dispatcher: Dispatcher) -> None:
        """Test challenging with a missing flow raises."""
        with pytest.raises(ValueError, match="unknown flow"):
            await ChallengeRunner(FlowEngine(flow_dispatcher)).run_challenge("nope", _tree())

    async def test_challenge_node(
        self,
        flow_dispatcher: Dispatcher,
        backends: dict[str, ScriptedProvider],
        main_store: MainStore,
        forensic_store: ForensicStore,
    ) -> None:
        """Test a node is loaded with its subtree and the challenge recorded under the node."""
        root = await main_store.create_node("Coffee is healthy", "alice")
        await main_store.create_node("Meta-analysis 2017", "bob", node_type="piece", parent_id=root.id)
        runner = ChallengeRunner(FlowEngine(flow_dispatcher, forensic_store), main_store)

        result = await runner.challenge_node("deep_dive", root.id, "target", "t-1")

        body = backends["target"].calls[0].messages[-1].content
        assert "[claim] (score:0, temp:cold)\n  Coffee is healthy\n" in body
        assert "Meta-analysis 2017" in body
        records = await forensic_store.list_flow_steps(result.challenge_id)
        assert len(records) == 3
        assert {r.node_id for r in records} == {root.id}

    async def test_challenge_missing_node(self, flow_dispatcher: Dispatcher, main_store: MainStore) -> None:
        """Test challenging a missing node raises."""
        runner = ChallengeRunner(FlowEngine(flow_dispatcher), main_store)

        with pytest.raises(NodeNotFoundError):
            await runner.challenge_node("deep_dive", "missing")

    async def test_workflow_challenge(
        self,
        flow_dispatcher: Dispatcher,
        forensic_store: ForensicStore,
        http_client: httpx.AsyncClient,
        make_workflow: Callable[..., Any],
    ) -> None:
        """Test a stored workflow runs over the serialized tree and is attached to the node."""
        workflow = await make_workflow([(1, "review", "llm", {"prompt_template": "{{.Body}}"})])
        workflow_engine = WorkflowEngine(forensic_store, flow_dispatcher, http_client=http_client)
        runner = ChallengeRunner(FlowEngine(flow_dispatcher), workflow_engine=workflow_engine)

        run_id = await runner.run_workflow_challenge(workflow.workflow_id, _tree(), "u1", "operator")

        run = await forensic_store.get_run(run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.node_id == "n1"
        assert run.result == {"review": f"target:{serialize_tree(_tree())}"}


@pytest.mark.integration
@pytest.mark.asyncio
class TestResolutions:
    """Tests for ResolutionEngine."""

    async def test_generate(
        self,
        flow_dispatcher: Dispatcher,
        backends: dict[str, ScriptedProvider],
        forensic_store: ForensicStore,
    ) -> None:
        """Test the tree is synthesized and the generation recorded under a res_ flow id."""
        backends["gemini"].replies.append("CONTEXTE : ...")
        engine = ResolutionEngine(flow_dispatcher, forensic_store)

        result = await engine.generate_resolution(_tree(), provider="gemini", model="gemini-2.0-flash")

        assert result.content == "CONTEXTE : ..."
        assert result.provider == "gemini"
        assert result.flow_id.startswith("res_")
        (request,) = backends["gemini"].calls
        assert request.messages[0].content == RESOLUTION_SYSTEM_PROMPT
        assert serialize_tree(_tree()) in request.messages[1].content
        assert request.temperature == 0.3
        (record,) = await forensic_store.list_flow_steps(result.flow_id)
        assert record.node_id == "n1"
        assert record.response_raw == "CONTEXTE : ..."

    async def test_empty_tree(self, flow_dispatcher: Dispatcher) -> None:
        """Test an empty tree is refused before any call."""
        with pytest.raises(ValueError, match="empty tree"):
            await ResolutionEngine(flow_dispatcher).generate_resolution(None)

    @pytest.mark.parametrize("fmt", sorted(RENDER_FORMATS))
    async def test_render(
        self, flow_dispatcher: Dispatcher, backends: dict[str, ScriptedProvider], fmt: str
    ) -> None:
        """Test each format sends its own instruction along with the Resolution."""
        result = await ResolutionEngine(flow_dispatcher).render_resolution("the resolution", fmt, provider="groq")

        assert result.format == fmt
        prompt = backends["groq"].calls[0].messages[-1].content
        assert prompt.startswith(RENDER_FORMATS[fmt])
        assert prompt.endswith("the resolution")

    async def test_render_unknown_format(self, flow_dispatcher: Dispatcher) -> None:
        """Test an unsupported format is refused."""
        with pytest.raises(ValueError, match="unsupported render format: podcast"):
            await ResolutionEngine(flow_dispatcher).render_resolution("r", "podcast")


@pytest.mark.integration
@pytest.mark.asyncio
class TestReplay:
    """Tests for ReplayEngine."""

    async def _original(self, store: ForensicStore, model_id: str = "target/t-1") -> str:
        return await store.insert_flow_step(
            FlowStepModel(
                flow_id="f1",
                step_index=2,
                node_id="n1",
                model_id=model_id,
                provider="target",
                prompt="Is it true?",
                system_prompt="Be strict.",
                response_raw="yes",
            )
        )

    async def test_replay_step(
        self,
        flow_dispatcher: Dispatcher,
        backends: dict[str, ScriptedProvider],
        forensic_store: ForensicStore,
    ) -> None:
        """Test the recorded prompt is re-sent to the other model and stored beside the original."""
        original_id = await self._original(forensic_store)
        backends["groq"].replies.append("no")

        result = await ReplayEngine(flow_dispatcher, forensic_store).replay_step(original_id, "groq", "llama")

        (request,) = backends["groq"].calls
        assert request.model == "llama"
        assert [(m.role, m.content) for m in request.messages] == [("system", "Be strict."), ("user", "Is it true?")]
        assert result.content == "no"
        assert result.error is None
        replay = await forensic_store.get_flow_step(result.replay_step_id)
        assert replay.replay_of_id == original_id
        assert (replay.flow_id, replay.step_index, replay.node_id) == ("f1", 2, "n1")
        assert replay.provider == "groq"

    async def test_failed_replay_still_recorded(
        self,
        flow_dispatcher: Dispatcher,
        backends: dict[str, ScriptedProvider],
        forensic_store: ForensicStore,
    ) -> None:
        """Test a failing replay is stored with its error."""
        original_id = await self._original(forensic_store)
        backends["groq"].replies.append(failing("groq", "down"))

        result = await ReplayEngine(flow_dispatcher, forensic_store).replay_step(original_id, "groq", "llama")

        assert result.error == "groq: down"
        replay = await forensic_store.get_flow_step(result.replay_step_id)
        assert replay.error == "groq: down"
        assert replay.replay_of_id == original_id

    async def test_replay_missing_step(self, flow_dispatcher: Dispatcher, forensic_store: ForensicStore) -> None:
        """Test replaying an unknown step raises."""
        with pytest.raises(FlowStepNotFoundError):
            await ReplayEngine(flow_dispatcher, forensic_store).replay_step("missing", "groq", "llama")

    async def test_replay_bulk(
        self,
        flow_dispatcher: Dispatcher,
        backends: dict[str, ScriptedProvider],
        forensic_store: ForensicStore,
    ) -> None:
        """Test every original of the filtered model is replayed and the batch counted."""
        await self._original(forensic_store)
        await self._original(forensic_store)
        await self._original(forensic_store, model_id="other/x")
        backends["gemini"].replies.extend(["ok", failing("gemini", "quota")])

        result = await ReplayEngine(flow_dispatcher, forensic_store).replay_bulk(
            "target/t-1", "gemini", "gemini-2.0-flash", filter_tag="nightly"
        )

        assert (result.total_steps, result.completed, result.failed, result.status) == (2, 1, 1, "completed")
        batch = await forensic_store.get_replay_batch(result.batch_id)
        assert batch is not None
        assert (batch.replay_model, batch.filter_tag, batch.completed, batch.failed) == (
            "gemini/gemini-2.0-flash",
            "nightly",
            1,
            1,
        )
        assert len(await forensic_store.list_original_flow_steps("target/t-1")) == 2


@pytest.mark.integration
@pytest.mark.asyncio
class TestSeeds:
    """Tests for the seeded reference workflows."""

    async def test_seed_is_idempotent(self, forensic_store: ForensicStore) -> None:
        """Test seeding twice creates the workflows once."""
        assert await seed_core_workflows(forensic_store, "bot") == 5
        assert await seed_core_workflows(forensic_store, "bot") == 0

        workflows = await forensic_store.list_workflows(status=WorkflowStatus.ACTIVE)
        assert sorted(w.name for w in workflows) == ["analyse", "critique", "decompose", "factcheck", "source"]
        assert {w.owner_id for w in workflows} == {"bot"}

    async def test_seeded_steps(self, forensic_store: ForensicStore) -> None:
        """Test seeded steps are llm steps in rank order with their pinned backends."""
        await seed_core_workflows(forensic_store, "bot")
        critique = await forensic_store.get_workflow_by_name("critique")
        assert critique is not None

        steps = await forensic_store.list_steps(critique.workflow_id)

        assert [(s.step_order, s.step_name, s.provider) for s in steps] == [
            (1, "argue", None),
            (2, "counter_argue", "groq"),
            (3, "synthesize", "gemini"),
        ]
        assert {s.step_type for s in steps} == {StepKind.LLM}
        assert {(s.timeout_ms, s.retry_max) for s in steps} == {(30000, 2)}

    async def test_viability_list(self, forensic_store: ForensicStore) -> None:
        """Test the viability criteria list is created once."""
        await seed_core_workflows(forensic_store, "bot")
        await seed_core_workflows(forensic_store, "bot")

        criteria = await forensic_store.get_criteria_list_by_name(VIABILITY_LIST_NAME)
        assert criteria is not None
        assert criteria.items_json == list(VIABILITY_CRITERIA)
        assert len(await forensic_store.list_criteria_lists()) == 1

    async def test_seeded_workflow_runs(
        self, forensic_store: ForensicStore, flow_dispatcher: Dispatcher, http_client: httpx.AsyncClient
    ) -> None:
        """Test a seeded workflow executes end to end against the pinned backends."""
        await seed_core_workflows(forensic_store, "bot")
        factcheck = await forensic_store.get_workflow_by_name("factcheck")
        assert factcheck is not None
        engine = WorkflowEngine(forensic_store, flow_dispatcher, http_client=http_client)

        run_id = await engine.execute_workflow(factcheck.workflow_id, "u1", "operator", body="Paris is in Spain")

        run = await forensic_store.get_run(run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.result is not None
        assert run.result["verify_claims"].startswith("groq:")
