"""Tests for node executors in isolation.

Each executor is handed a NodeContext and its returned signal is inspected;
no orchestrator or database is involved.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from agentflow.core.agents import CollaboratorError
from agentflow.core.executors import (
    AgentExecutor,
    ApprovalExecutor,
    ConditionExecutor,
    EndExecutor,
    LoopExecutor,
    NodeContext,
    ParallelExecutor,
    parse_agent_output,
    render_instructions,
)
from agentflow.core.graph_schema import SelectionCriteria
from agentflow.core.models import (
    ApprovalResolution,
    BranchState,
    ExecutionRecord,
    Fail,
    Proceed,
    Retry,
    Suspend,
    Token,
)
from agentflow.core.routing import AgentProfile, AgentRouter
from conftest import FakeAgentClient
from factories import agent, edge, end, graph

NOW = datetime(2025, 1, 1, tzinfo=UTC)


def _ctx(g, node_id, input_data=None, **token_fields) -> NodeContext:
    token = Token(node_id=node_id, input=input_data, **token_fields)
    record = ExecutionRecord(id="exec-1", graph_id=g.id)
    return NodeContext(node=g.get_node(node_id), graph=g, record=record, token=token, now=NOW)


class TestRendering:
    """Tests for instruction templates and output parsing."""

    def test_fields_and_nested_attributes(self):
        text = render_instructions(
            "Review {title} scored {result.score}", {"title": "PR", "result": {"score": 9}}
        )
        assert text == "Review PR scored 9"

    def test_missing_fields_get_placeholders(self):
        assert render_instructions("Use {nope}", {}) == "Use <missing:nope>"

    def test_input_placeholder_is_whole_input(self):
        assert render_instructions("Echo: {input}", "hello") == "Echo: hello"
        assert '"a": 1' in render_instructions("{input}", {"a": 1})

    def test_stray_braces_leave_template_unchanged(self):
        assert render_instructions("Return {", {}) == "Return {"

    def test_parse_json_output(self):
        assert parse_agent_output('{"ok": true}') == {"ok": True}
        assert parse_agent_output('```json\n[1, 2]\n```') == [1, 2]

    def test_parse_plain_text_untouched(self):
        assert parse_agent_output("done") == "done"
        assert parse_agent_output("{not json") == "{not json"
        assert parse_agent_output({"a": 1}) == {"a": 1}


class TestAgentExecutor:
    """Tests for agent delegation, retries and fallbacks."""

    def _graph(self, **config):
        return graph([agent("a", **config), end()], [edge("a", "end")])

    @pytest.mark.asyncio
    async def test_success_parses_output(self):
        client = FakeAgentClient({"worker": ['{"score": 3}']})
        ctx = _ctx(self._graph(instructions="Score {name}"), "a", {"name": "x"})

        signal = await AgentExecutor(client).execute(ctx)

        assert signal == Proceed({"score": 3})
        assert ctx.agent == "worker"
        assert client.calls[0]["instructions"] == "Score x"
        assert client.calls[0]["attempt_id"] == f"exec-1:{ctx.token.id}:1"

    @pytest.mark.asyncio
    async def test_collaborator_error_becomes_retry(self):
        client = FakeAgentClient({"worker": [CollaboratorError("down")]})
        g = self._graph(max_retries=1, retry_strategy="fixed_delay")
        g.error_handling.retry_delay = 2.0

        signal = await AgentExecutor(client).execute(_ctx(g, "a"))

        assert signal == Retry(delay=2.0, error="down")

    def test_retries_then_fallbacks_then_fail(self):
        g = self._graph(max_retries=1, fallback_agents=["b1", "b2"], retry_strategy="immediate")
        executor = AgentExecutor(FakeAgentClient())
        error = CollaboratorError("boom")

        assert executor.handle_error(_ctx(g, "a"), error) == Retry(0.0, "boom")
        step = executor.handle_error(_ctx(g, "a", attempt=2), error)
        assert (step.agent_override, step.fallback_index) == ("b1", 1)
        step = executor.handle_error(_ctx(g, "a", attempt=3, fallback_index=1), error)
        assert (step.agent_override, step.fallback_index) == ("b2", 2)
        assert executor.handle_error(_ctx(g, "a", attempt=4, fallback_index=2), error) == Fail(
            "boom"
        )

    def test_workflow_default_retries(self):
        g = self._graph(retry_strategy="immediate")
        g.error_handling.max_retries = 0
        signal = AgentExecutor(FakeAgentClient()).handle_error(
            _ctx(g, "a"), CollaboratorError("x")
        )
        assert isinstance(signal, Fail)

    def test_workflow_fallback_attempt_never_retries(self):
        g = self._graph(max_retries=5)
        signal = AgentExecutor(FakeAgentClient()).handle_error(
            _ctx(g, "a", workflow_fallback_used=True), CollaboratorError("x")
        )
        assert signal == Fail("x")

    @pytest.mark.asyncio
    async def test_router_selects_agent_and_tracks_outcome(self):
        router = AgentRouter([AgentProfile(name="pro", skills=["sql"], success_rate=0.9)])
        g = graph(
            [
                {
                    "id": "a",
                    "kind": "agent",
                    "agent_config": {"selection_criteria": {"required_skills": ["sql"]}},
                },
                end(),
            ],
            [edge("a", "end")],
        )
        ctx = _ctx(g, "a", "q")

        signal = await AgentExecutor(FakeAgentClient(), router).execute(ctx)

        assert signal == Proceed("q")
        assert ctx.agent == "pro"
        assert router.get_profile("pro").completed_tasks == 1
        assert router.get_profile("pro").workload == 0

    @pytest.mark.asyncio
    async def test_no_eligible_agent(self):
        g = self._graph()
        g.get_node("a").agent_config.agent_name = None
        g.get_node("a").agent_config.selection_criteria = SelectionCriteria()
        signal = await AgentExecutor(FakeAgentClient(), AgentRouter()).execute(_ctx(g, "a"))
        assert isinstance(signal, Fail)
        assert "No eligible agent" in signal.error


class TestConditionExecutor:
    """Tests for condition routing."""

    def _graph(self, edges):
        return graph(
            [
                {
                    "id": "c",
                    "kind": "condition",
                    "condition_config": {
                        "conditions": [{"field": "score", "operator": ">", "value": 50}]
                    },
                },
                end("hi"),
                end("lo"),
            ],
            edges,
            start_node_id="c",
        )

    @pytest.mark.asyncio
    async def test_routes_on_label(self):
        g = self._graph([edge("c", "hi", "true"), edge("c", "lo", "false")])
        signal = await ConditionExecutor().execute(_ctx(g, "c", {"score": 70}))
        assert [e.target for e in signal.edges] == ["hi"]
        assert signal.output == {"score": 70}

        signal = await ConditionExecutor().execute(_ctx(g, "c", {"score": 30}))
        assert [e.target for e in signal.edges] == ["lo"]

    @pytest.mark.asyncio
    async def test_default_edge(self):
        g = self._graph([edge("c", "hi", "true"), edge("c", "lo", "default")])
        signal = await ConditionExecutor().execute(_ctx(g, "c", {"score": 1}))
        assert [e.target for e in signal.edges] == ["lo"]

    @pytest.mark.asyncio
    async def test_no_matching_branch_is_structural(self):
        g = self._graph([edge("c", "hi", "true")])
        signal = await ConditionExecutor().execute(_ctx(g, "c", {"score": 1}))
        assert isinstance(signal, Fail)
        assert signal.structural
        assert "No matching branch" in signal.error


class TestParallelExecutor:
    """Tests for region opening and result collection."""

    def _graph(self, completion="all"):
        return graph(
            [
                {
                    "id": "p",
                    "kind": "parallel",
                    "parallel_config": {"branches": ["x", "y"], "completion": completion},
                },
                agent("x"),
                agent("y"),
                end("done"),
                end(),
            ],
            [
                edge("p", "x"),
                edge("p", "y"),
                edge("p", "end"),
                edge("x", "done"),
                edge("y", "done"),
            ],
        )

    @pytest.mark.asyncio
    async def test_opens_region(self):
        ctx = _ctx(self._graph(), "p", {"doc": 1})
        signal = await ParallelExecutor().execute(ctx)

        assert isinstance(signal, Suspend)
        assert signal.scope.owner_token_id == ctx.token.id
        assert set(signal.scope.branches) == {"x", "y"}
        assert [(a.edge.target, a.branch, a.input) for a in signal.activations] == [
            ("x", "x", {"doc": 1}),
            ("y", "y", {"doc": 1}),
        ]

    @pytest.mark.asyncio
    async def test_collects_results_and_exits_past_branches(self):
        g = self._graph()
        ctx = _ctx(g, "p")
        opened = await ParallelExecutor().execute(ctx)
        scope = opened.scope
        scope.branches["x"] = BranchState(status="completed", output=1)
        scope.branches["y"] = BranchState(status="completed", output=2)
        ctx.scope = scope

        signal = await ParallelExecutor().execute(ctx)

        assert signal.output == [
            {"branch": "x", "status": "completed", "output": 1},
            {"branch": "y", "status": "completed", "output": 2},
        ]
        assert [e.target for e in signal.edges] == ["end"]

    @pytest.mark.asyncio
    async def test_any_tolerates_failed_branch(self):
        ctx = _ctx(self._graph("any"), "p")
        scope = (await ParallelExecutor().execute(ctx)).scope
        scope.branches["x"] = BranchState(status="failed", error="bad")
        scope.branches["y"] = BranchState(status="completed", output="ok")
        ctx.scope = scope

        assert isinstance(await ParallelExecutor().execute(ctx), Proceed)

    @pytest.mark.asyncio
    async def test_all_fails_on_failed_branch(self):
        ctx = _ctx(self._graph("all"), "p")
        scope = (await ParallelExecutor().execute(ctx)).scope
        scope.branches["x"] = BranchState(status="failed", error="bad")
        scope.branches["y"] = BranchState(status="abandoned")
        ctx.scope = scope

        signal = await ParallelExecutor().execute(ctx)
        assert isinstance(signal, Fail)
        assert "x: bad" in signal.error


class TestLoopExecutor:
    """Tests for loop entry checks."""

    def _graph(self, **loop_config):
        return graph(
            [{"id": "loop", "kind": "loop", "loop_config": loop_config}, agent("body"), end()],
            [edge("loop", "body", "loop_body"), edge("body", "loop"), edge("loop", "end")],
            start_node_id="loop",
        )

    @pytest.mark.asyncio
    async def test_foreach_starts_with_first_item(self):
        g = self._graph(loop_type="foreach", iteration_data_path="items")
        signal = await LoopExecutor().execute(_ctx(g, "loop", {"items": ["a", "b"]}))

        assert isinstance(signal, Suspend)
        assert signal.scope.iteration == 1
        assert signal.activations[0].input == "a"
        assert signal.activations[0].edge.target == "body"

    @pytest.mark.asyncio
    async def test_foreach_requires_list(self):
        g = self._graph(loop_type="foreach", iteration_data_path="items")
        signal = await LoopExecutor().execute(_ctx(g, "loop", {"items": "abc"}))
        assert isinstance(signal, Fail)
        assert signal.structural

    @pytest.mark.asyncio
    async def test_foreach_too_many_items(self):
        g = self._graph(loop_type="foreach", max_iterations=2)
        signal = await LoopExecutor().execute(_ctx(g, "loop", [1, 2, 3]))
        assert signal.structural
        assert "exceeding max_iterations 2" in signal.error

    @pytest.mark.asyncio
    async def test_empty_foreach_finishes_immediately(self):
        g = self._graph(loop_type="foreach")
        signal = await LoopExecutor().execute(_ctx(g, "loop", []))
        assert signal == Proceed({"loop_results": [], "total_iterations": 0, "final_output": []})

    @pytest.mark.asyncio
    async def test_while_false_never_runs_body(self):
        g = self._graph(
            loop_type="while", conditions=[{"field": "more", "operator": "equals", "value": True}]
        )
        signal = await LoopExecutor().execute(_ctx(g, "loop", {"more": False}))
        assert isinstance(signal, Proceed)
        assert signal.output["total_iterations"] == 0


class TestApprovalExecutor:
    """Tests for approval outcomes."""

    def _graph(self, *guards):
        targets = {"approved": "ok", "rejected": "no", "timeout": "late"}
        edges = [edge("gate", "ok")] + [edge("gate", targets[g], g) for g in guards]
        return graph(
            [{"id": "gate", "kind": "approval"}, end("ok"), end("no"), end("late")],
            edges,
            start_node_id="gate",
        )

    @pytest.mark.asyncio
    async def test_first_visit_suspends(self):
        signal = await ApprovalExecutor().execute(_ctx(self._graph(), "gate", {"v": 1}))
        assert isinstance(signal, Suspend)
        assert signal.approval.data == {"v": 1}

    @pytest.mark.asyncio
    async def test_approved_with_edited_payload(self):
        resolution = ApprovalResolution(decision="approved", data={"v": 2})
        signal = await ApprovalExecutor().execute(
            _ctx(self._graph(), "gate", {"v": 1}, approval=resolution)
        )
        assert signal.output == {"v": 2}
        assert [e.target for e in signal.edges] == ["ok"]

    @pytest.mark.asyncio
    async def test_rejected_edge(self):
        resolution = ApprovalResolution(decision="rejected")
        signal = await ApprovalExecutor().execute(
            _ctx(self._graph("rejected"), "gate", "draft", approval=resolution)
        )
        assert [e.target for e in signal.edges] == ["no"]
        assert signal.output == "draft"

    @pytest.mark.asyncio
    async def test_rejected_without_edge_fails(self):
        resolution = ApprovalResolution(decision="rejected", approver="bob", comment="nope")
        signal = await ApprovalExecutor().execute(
            _ctx(self._graph(), "gate", approval=resolution)
        )
        assert signal == Fail("Approval 'gate' rejected by bob: nope")

    @pytest.mark.asyncio
    async def test_timeout_edge(self):
        resolution = ApprovalResolution(decision="timeout")
        signal = await ApprovalExecutor().execute(
            _ctx(self._graph("timeout"), "gate", approval=resolution)
        )
        assert [e.target for e in signal.edges] == ["late"]


@pytest.mark.asyncio
async def test_end_executor_stops_path():
    g = graph([agent("a"), end()], [edge("a", "end")])
    assert await EndExecutor().execute(_ctx(g, "end", 5)) == Proceed(5, edges=[])
