"""Node executors, one per node kind.

An executor inspects a :class:`NodeContext` and returns a signal
(Proceed, Suspend, Retry or Fail). Executors never touch the execution record;
the orchestrator applies their signals.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from agentflow.core.agents import AgentClient, CallContext, CollaboratorError
from agentflow.core.approval import ApprovalGate
from agentflow.core.conditions import evaluate_all, lookup
from agentflow.core.graph_schema import (
    GUARD_APPROVED,
    GUARD_DEFAULT,
    GUARD_LOOP_BODY,
    GUARD_REJECTED,
    GUARD_TIMEOUT,
    LoopType,
    Node,
    NodeKind,
    WorkflowGraph,
)
from agentflow.core.models import (
    Activation,
    BranchState,
    ExecutionRecord,
    Fail,
    Proceed,
    Retry,
    Scope,
    Signal,
    Suspend,
    Token,
)
from agentflow.core.retry import RetryPolicy
from agentflow.core.routing import AgentRouter

logger = logging.getLogger(__name__)


class _AttrDict:
    """Wrapper to provide attribute-style access to dict values for format strings."""

    def __init__(self, data: dict):
        self._data = data

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)
        value = self._data.get(name, f"<missing:{name}>")
        if isinstance(value, dict):
            return _AttrDict(value)
        return value

    def __str__(self):
        return str(self._data)


class _SafeFormatDict(dict):
    """
    Dict subclass that wraps nested dicts in _AttrDict for attribute-style access.

    Enables instruction templates like ``{result.score}``. Missing keys return
    a placeholder instead of raising.
    """

    def __getitem__(self, key: str):
        try:
            value = super().__getitem__(key)
            if isinstance(value, dict):
                return _AttrDict(value)
            return value
        except KeyError:
            return f"<missing:{key}>"

    def __missing__(self, key: str):
        return f"<missing:{key}>"


def render_instructions(template: str, input_data: Any) -> str:
    """Fill ``{field}`` placeholders from the node input; ``{input}`` is the whole input."""
    mapping = _SafeFormatDict(input_data if isinstance(input_data, dict) else {})
    mapping["input"] = (
        input_data
        if isinstance(input_data, str)
        else json.dumps(input_data, indent=2, default=str)
    )
    try:
        return template.format_map(mapping)
    except (ValueError, IndexError, AttributeError) as e:
        # Stray braces in free text; send the template unchanged
        logger.warning(f"Could not render instructions template: {e}")
        return template


def parse_agent_output(output: Any) -> Any:
    """Decode textual JSON results into structured data; leave anything else as is."""
    if not isinstance(output, str):
        return output
    text = output.strip()
    if text.startswith("```"):
        # Fenced block: drop the opening fence (with language tag) and the closing one
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0].strip()
    if not text or text[0] not in "{[":
        return output
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return output


@dataclass
class NodeContext:
    """Everything an executor may look at for one invocation."""

    node: Node
    graph: WorkflowGraph
    record: ExecutionRecord  # Snapshot, not the live record
    token: Token
    now: datetime
    scope: Scope | None = None  # Region that just settled, when re-invoked for it
    cancel_event: asyncio.Event | None = None
    agent: str | None = None  # Filled in by the agent executor

    @property
    def input(self) -> Any:
        return self.token.input


class NodeExecutor:
    """Base class for node kind implementations."""

    kind: NodeKind

    async def execute(self, ctx: NodeContext) -> Signal:
        raise NotImplementedError

    def handle_error(self, ctx: NodeContext, error: Exception) -> Signal:
        """Map an exception raised while executing (or a driver timeout) to a signal."""
        return Fail(f"{type(error).__name__}: {error}")

    def timeout_for(self, node: Node) -> float | None:
        """Per-invocation time limit enforced by the orchestrator."""
        return None


class AgentExecutor(NodeExecutor):
    """Delegates the node's task to an external agent."""

    kind = NodeKind.AGENT

    def __init__(self, client: AgentClient, router: AgentRouter | None = None):
        self.client = client
        self.router = router

    def timeout_for(self, node: Node) -> float | None:
        return node.agent_config.timeout_seconds

    def resolve_agent(self, ctx: NodeContext) -> str | None:
        config = ctx.node.agent_config
        if ctx.token.agent_override:
            return ctx.token.agent_override
        if config.agent_name:
            return config.agent_name
        if self.router is None:
            return None
        return self.router.select_agent(config.selection_criteria)

    async def execute(self, ctx: NodeContext) -> Signal:
        config = ctx.node.agent_config
        agent = self.resolve_agent(ctx)
        if agent is None:
            return Fail(f"No eligible agent for node '{ctx.node.id}'")
        ctx.agent = agent

        instructions = render_instructions(config.instructions, ctx.input)
        call = CallContext(
            attempt_id=f"{ctx.record.id}:{ctx.token.id}:{ctx.token.attempt}",
            execution_id=ctx.record.id,
            node_id=ctx.node.id,
            cancel_event=ctx.cancel_event,
        )

        if self.router:
            self.router.task_started(agent)
        success = False
        try:
            output = await self.client.execute(
                agent, instructions, ctx.input, config.timeout_seconds, call
            )
            success = True
        except CollaboratorError as e:
            return self.handle_error(ctx, e)
        finally:
            if self.router:
                self.router.task_finished(agent, success)

        return Proceed(parse_agent_output(output))

    def handle_error(self, ctx: NodeContext, error: Exception) -> Signal:
        """Retry the primary agent, then each fallback agent once, then fail."""
        config = ctx.node.agent_config
        token = ctx.token
        message = str(error) or type(error).__name__

        # The workflow-level fallback attempt gets exactly one shot
        if token.workflow_fallback_used:
            return Fail(message)

        max_retries = (
            config.max_retries
            if config.max_retries is not None
            else ctx.graph.error_handling.max_retries
        )
        if token.fallback_index == 0:
            policy = RetryPolicy(
                strategy=config.retry_strategy,
                max_retries=max_retries,
                initial_delay=ctx.graph.error_handling.retry_delay,
            )
            if policy.should_retry(token.attempt):
                return Retry(delay=policy.get_delay(token.attempt), error=message)

        if token.fallback_index < len(config.fallback_agents):
            fallback = config.fallback_agents[token.fallback_index]
            logger.warning(f"Node '{ctx.node.id}' falling back to agent '{fallback}'")
            return Retry(
                delay=0.0,
                error=message,
                agent_override=fallback,
                fallback_index=token.fallback_index + 1,
            )

        return Fail(message)


class ConditionExecutor(NodeExecutor):
    """Routes its input along the branch its predicates select."""

    kind = NodeKind.CONDITION

    async def execute(self, ctx: NodeContext) -> Signal:
        config = ctx.node.condition_config
        matched = evaluate_all(config.conditions, ctx.input)
        label = config.true_label if matched else config.false_label

        edges = ctx.graph.guarded_edges(ctx.node.id, label)
        if not edges:
            edges = ctx.graph.guarded_edges(ctx.node.id, GUARD_DEFAULT)
        if not edges:
            return Fail(
                f"No matching branch for '{label}' at condition node '{ctx.node.id}'",
                structural=True,
            )
        logger.debug(f"Condition '{ctx.node.id}' evaluated to '{label}'")
        return Proceed(ctx.input, edges=edges[:1])


class ParallelExecutor(NodeExecutor):
    """Opens a region with one branch per entry node, then collects it."""

    kind = NodeKind.PARALLEL

    async def execute(self, ctx: NodeContext) -> Signal:
        config = ctx.node.parallel_config
        if ctx.scope is None:
            scope = Scope(
                kind="parallel",
                node_id=ctx.node.id,
                owner_token_id=ctx.token.id,
                completion=config.completion,
                branches={branch: BranchState() for branch in config.branches},
            )
            activations = []
            for branch in config.branches:
                edge = next(e for e in ctx.graph.outgoing(ctx.node.id) if e.target == branch)
                activations.append(Activation(edge=edge, input=ctx.input, branch=branch))
            return Suspend(reason="parallel", scope=scope, activations=activations)

        results = []
        failed = []
        for branch in config.branches:
            state = ctx.scope.branches[branch]
            entry: dict[str, Any] = {"branch": branch, "status": state.status}
            if state.status == "failed":
                entry["error"] = state.error
                failed.append(f"{branch}: {state.error}")
            elif state.status == "completed":
                entry["output"] = state.output
            results.append(entry)

        completed = [r for r in results if r["status"] == "completed"]
        if config.completion == "all" and failed:
            return Fail(f"Parallel node '{ctx.node.id}' branch failed: {'; '.join(failed)}")
        if config.completion == "any" and not completed:
            return Fail(
                f"Parallel node '{ctx.node.id}': every branch failed: {'; '.join(failed)}"
            )

        exits = [
            e for e in ctx.graph.default_edges(ctx.node.id) if e.target not in config.branches
        ]
        return Proceed(results, edges=exits)


class LoopExecutor(NodeExecutor):
    """Runs its body once per iteration, never more than ``max_iterations`` times."""

    kind = NodeKind.LOOP

    async def execute(self, ctx: NodeContext) -> Signal:
        config = ctx.node.loop_config

        if ctx.scope is None:
            scope = Scope(
                kind="loop",
                node_id=ctx.node.id,
                owner_token_id=ctx.token.id,
                loop_input=ctx.input,
                current_input=ctx.input,
            )
            if config.loop_type == LoopType.FOREACH:
                if config.iteration_data_path:
                    items = lookup(ctx.input, config.iteration_data_path)
                else:
                    items = ctx.input
                if not isinstance(items, list):
                    where = config.iteration_data_path or "input"
                    return Fail(
                        f"Loop '{ctx.node.id}': data at '{where}' is not a list", structural=True
                    )
                if len(items) > config.max_iterations:
                    return Fail(
                        f"Loop '{ctx.node.id}' has {len(items)} items, exceeding "
                        f"max_iterations {config.max_iterations}",
                        structural=True,
                    )
                scope.items = list(items)
            elif config.loop_type == LoopType.FIXED_COUNT:
                total = config.count if config.count is not None else config.max_iterations
                if total > config.max_iterations:
                    return Fail(
                        f"Loop '{ctx.node.id}' count {total} exceeds "
                        f"max_iterations {config.max_iterations}",
                        structural=True,
                    )
                scope.total = total
            return self._next_iteration(ctx, scope)

        scope = ctx.scope.model_copy(deep=True)
        if scope.last_error is not None and config.break_on_error:
            return Fail(
                f"Loop '{ctx.node.id}' iteration {scope.iteration} failed: {scope.last_error}"
            )
        if config.loop_type == LoopType.UNTIL and evaluate_all(
            config.conditions, scope.current_input
        ):
            return self._finish(scope)
        return self._next_iteration(ctx, scope)

    def _next_iteration(self, ctx: NodeContext, scope: Scope) -> Signal:
        config = ctx.node.loop_config
        loop_type = config.loop_type

        if loop_type == LoopType.FOREACH:
            if scope.iteration >= len(scope.items):
                return self._finish(scope)
            body_input = scope.items[scope.iteration]
        elif loop_type == LoopType.FIXED_COUNT:
            if scope.iteration >= scope.total:
                return self._finish(scope)
            body_input = scope.loop_input
        elif loop_type == LoopType.WHILE:
            if not evaluate_all(config.conditions, scope.current_input):
                return self._finish(scope)
            body_input = scope.current_input
        else:
            body_input = scope.current_input

        if scope.iteration >= config.max_iterations:
            return Fail(
                f"Loop '{ctx.node.id}' exceeded max_iterations {config.max_iterations}",
                structural=True,
            )

        scope.iteration += 1
        scope.resolved = False
        scope.last_error = None
        body_edge = ctx.graph.guarded_edges(ctx.node.id, GUARD_LOOP_BODY)[0]
        return Suspend(
            reason="loop",
            scope=scope,
            activations=[Activation(edge=body_edge, input=body_input, branch=str(scope.iteration))],
        )

    def _finish(self, scope: Scope) -> Proceed:
        return Proceed(
            {
                "loop_results": scope.results,
                "total_iterations": scope.iteration,
                "final_output": scope.current_input,
            }
        )


class ApprovalExecutor(NodeExecutor):
    """Holds the workflow until a human decides, or the request expires."""

    kind = NodeKind.APPROVAL

    def __init__(self, gate: ApprovalGate | None = None):
        self.gate = gate or ApprovalGate()

    async def execute(self, ctx: NodeContext) -> Signal:
        resolution = ctx.token.approval
        if resolution is None:
            return Suspend(reason="approval", approval=self.gate.request(ctx.node, ctx.token, ctx.now))

        graph, node_id = ctx.graph, ctx.node.id
        if resolution.decision == "approved":
            edges = graph.guarded_edges(node_id, GUARD_APPROVED) or graph.default_edges(node_id)
            output = resolution.data if resolution.data is not None else ctx.input
            return Proceed(output, edges=edges)

        if resolution.decision == "rejected":
            edges = graph.guarded_edges(node_id, GUARD_REJECTED)
            if edges:
                return Proceed(ctx.input, edges=edges)
            reason = f": {resolution.comment}" if resolution.comment else ""
            who = resolution.approver or "approver"
            return Fail(f"Approval '{node_id}' rejected by {who}{reason}")

        edges = graph.guarded_edges(node_id, GUARD_TIMEOUT)
        if edges:
            return Proceed(ctx.input, edges=edges)
        return Fail(f"Approval '{node_id}' timed out")


class EndExecutor(NodeExecutor):
    kind = NodeKind.END

    async def execute(self, ctx: NodeContext) -> Signal:
        return Proceed(ctx.input, edges=[])


def build_executors(
    client: AgentClient,
    router: AgentRouter | None = None,
    gate: ApprovalGate | None = None,
) -> dict[NodeKind, NodeExecutor]:
    """Kind -> executor mapping used by the orchestrator."""
    executors: list[NodeExecutor] = [
        AgentExecutor(client, router),
        ConditionExecutor(),
        ParallelExecutor(),
        LoopExecutor(),
        ApprovalExecutor(gate),
        EndExecutor(),
    ]
    return {executor.kind: executor for executor in executors}
