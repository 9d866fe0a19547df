"""Resumable graph workflow execution engine.

This module implements the scheduler/driver for workflow graphs:
- All run state lives in the ExecutionRecord, persisted after every transition
- Each execute_next_batch() call is independent and reloads the record
- Ready tokens run concurrently; their signals are applied one at a time
  under a per-execution lock (single writer)
- A crash between dispatch and persist replays the unrecorded attempts only
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from agentflow.core.agents import AgentClient, CollaboratorTimeout
from agentflow.core.approval import ApprovalDecision, ApprovalError, ApprovalGate
from agentflow.core.executors import NodeContext, NodeExecutor, build_executors
from agentflow.core.graph_schema import (
    GUARD_ERROR,
    Node,
    NodeKind,
    WorkflowGraph,
    validate,
)
from agentflow.core.models import (
    ApprovalResolution,
    ExecutionRecord,
    ExecutionStatus,
    Fail,
    NodeResult,
    NodeResultStatus,
    PendingApproval,
    Proceed,
    Retry,
    Scope,
    ScopeRef,
    Signal,
    Suspend,
    SuspendedNode,
    Token,
    _utc_now,
)
from agentflow.core.retry import FallbackStrategy
from agentflow.core.routing import AgentRouter
from agentflow.core.state import Event, EventType, ExecutionStore, TerminalStateError

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Control operation not allowed in the execution's current status."""


@dataclass
class _Outcome:
    """What one dispatched token produced."""

    token: Token
    node: Node
    signal: Signal
    agent: str | None
    started_at: datetime
    completed_at: datetime


class GraphOrchestrator:
    """
    Workflow graph orchestrator.

    Key Features:
    - No long-running execution loops; a worker calls execute_next_batch()
    - Can resume after crash or restart from the persisted record
    - Pause lets in-flight nodes finish; cancel discards their results
    """

    def __init__(
        self,
        db: ExecutionStore,
        client: AgentClient,
        router: AgentRouter | None = None,
        max_parallel: int = 4,
        clock: Callable[[], datetime] | None = None,
        on_event: Callable[[Event], None] | None = None,
        executors: dict[NodeKind, NodeExecutor] | None = None,
    ):
        self.db = db
        self.router = router
        self.approval_gate = ApprovalGate()
        self.executors = executors or build_executors(client, router, self.approval_gate)
        self.semaphore = asyncio.Semaphore(max_parallel)
        self.on_event = on_event
        self._clock = clock or _utc_now
        self._graphs: dict[str, WorkflowGraph] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._in_flight: dict[str, set[str]] = {}

    # ========== Persistence Helpers ==========

    def _lock(self, execution_id: str) -> asyncio.Lock:
        return self._locks.setdefault(execution_id, asyncio.Lock())

    def _cancel_event(self, execution_id: str) -> asyncio.Event:
        return self._cancel_events.setdefault(execution_id, asyncio.Event())

    def _forget(self, execution_id: str, graph_id: str) -> None:
        """Drop in-memory state held for a run that reached a terminal status."""
        self._locks.pop(execution_id, None)
        self._cancel_events.pop(execution_id, None)
        self._in_flight.pop(execution_id, None)
        # Live runs of the same graph reload it from the store
        self._graphs.pop(graph_id, None)

    async def _load(self, execution_id: str) -> ExecutionRecord:
        return await asyncio.to_thread(self.db.load_execution, execution_id)

    async def _graph(self, graph_id: str) -> WorkflowGraph:
        graph = self._graphs.get(graph_id)
        if graph is None:
            graph = await asyncio.to_thread(self.db.load_graph, graph_id)
            self._graphs[graph_id] = graph
        return graph

    async def _persist(self, record: ExecutionRecord, events: list[Event]) -> None:
        """Save the record, then log the events describing the transition."""
        record.updated_at = self._clock()
        await asyncio.to_thread(self.db.save_execution, record)
        for event in events:
            await asyncio.to_thread(self.db.append_event, event)
            if self.on_event:
                try:
                    self.on_event(event)
                except Exception as e:
                    logger.error(f"Event callback failed for {event.event_type.value}: {e}")
        events.clear()

    def _emit(
        self,
        events: list[Event],
        record: ExecutionRecord,
        event_type: EventType,
        node_id: str | None = None,
        status: str | None = None,
        **payload: Any,
    ) -> None:
        events.append(
            Event(
                execution_id=record.id,
                event_type=event_type,
                node_id=node_id,
                status=status,
                payload=payload,
                timestamp=self._clock(),
            )
        )

    # ========== Control API ==========

    async def start(
        self,
        graph: WorkflowGraph,
        initial_input: Any = None,
        execution_id: str | None = None,
    ) -> str:
        """
        Start a new workflow execution.

        Args:
            graph: The workflow graph definition (validated here)
            initial_input: Input handed to the entry node
            execution_id: Optional explicit id; generated when omitted

        Returns:
            execution_id: Unique ID for this execution instance

        Raises:
            GraphError: if the graph is structurally invalid
        """
        validate(graph)

        now = self._clock()
        record = ExecutionRecord(
            id=execution_id or str(uuid.uuid4()),
            graph_id=graph.id,
            workflow_name=graph.name,
            initial_input=initial_input,
            created_at=now,
            updated_at=now,
        )
        record.frontier.append(Token(node_id=graph.entry_point, input=initial_input))

        await asyncio.to_thread(self.db.save_graph, graph)
        self._graphs[graph.id] = graph

        events: list[Event] = []
        self._emit(events, record, EventType.EXECUTION_STARTED, graph_id=graph.id)
        async with self._lock(record.id):
            await self._persist(record, events)

        logger.info(f"Started execution {record.id} of workflow '{graph.name}'")
        return record.id

    async def pause(self, execution_id: str) -> None:
        """Stop dispatching new nodes. In-flight nodes still record their results."""
        async with self._lock(execution_id):
            record = await self._load(execution_id)
            self._require_live(record)
            if record.status != ExecutionStatus.RUNNING:
                raise InvalidTransitionError(
                    f"Cannot pause execution {execution_id} in status '{record.status.value}'"
                )
            record.status = ExecutionStatus.PAUSED
            events: list[Event] = []
            self._emit(events, record, EventType.EXECUTION_PAUSED)
            await self._persist(record, events)
        logger.info(f"Paused execution {execution_id}")

    async def resume(self, execution_id: str) -> None:
        async with self._lock(execution_id):
            record = await self._load(execution_id)
            self._require_live(record)
            if record.status != ExecutionStatus.PAUSED:
                raise InvalidTransitionError(
                    f"Cannot resume execution {execution_id} in status '{record.status.value}'"
                )
            record.status = ExecutionStatus.RUNNING
            events: list[Event] = []
            self._emit(events, record, EventType.EXECUTION_RESUMED)
            await self._persist(record, events)
        logger.info(f"Resumed execution {execution_id}")

    async def cancel(self, execution_id: str) -> None:
        """Terminate the run. Results of calls still in flight are discarded."""
        async with self._lock(execution_id):
            record = await self._load(execution_id)
            self._require_live(record)
            record.status = ExecutionStatus.CANCELLED
            record.final_output = None
            record.completed_at = self._clock()
            self._clear_active(record)
            self._cancel_event(execution_id).set()
            events: list[Event] = []
            self._emit(events, record, EventType.EXECUTION_CANCELLED)
            await self._persist(record, events)
            self._forget(execution_id, record.graph_id)
        logger.info(f"Cancelled execution {execution_id}")

    async def resolve_approval(
        self,
        execution_id: str,
        node_id: str,
        decision: ApprovalDecision | str,
        approver: str | None = None,
        data: Any = None,
        comment: str | None = None,
    ) -> None:
        """Apply a human decision to the pending approval at ``node_id``.

        ``data`` replaces the node input on approval (edited payload).

        Raises:
            ApprovalError: no pending approval at that node, unknown decision,
                or ``approver`` is not allowed to decide
        """
        async with self._lock(execution_id):
            record = await self._load(execution_id)
            self._require_live(record)
            pending = next((p for p in record.pending_approvals if p.node_id == node_id), None)
            if pending is None:
                raise ApprovalError(f"No pending approval at node '{node_id}'")
            self.approval_gate.check_approver(pending, approver)
            resolution = self.approval_gate.resolve(decision, approver, data, comment)

            self._release_approval(record, pending, resolution)
            events: list[Event] = []
            event_type = (
                EventType.APPROVAL_GRANTED
                if resolution.decision == "approved"
                else EventType.APPROVAL_DENIED
            )
            self._emit(
                events, record, event_type, node_id=node_id, approver=approver, comment=comment
            )
            await self._persist(record, events)
        logger.info(f"Approval at '{node_id}' {resolution.decision} by {approver or 'anonymous'}")

    async def get_status(self, execution_id: str) -> ExecutionRecord:
        """Snapshot of the execution record. Mutating it has no effect."""
        record = await self._load(execution_id)
        return record.model_copy(deep=True)

    async def get_events(self, execution_id: str) -> list[Event]:
        return await asyncio.to_thread(self.db.get_events, execution_id)

    def seconds_until_ready(self, record: ExecutionRecord) -> float | None:
        """Seconds until the next frontier token may run; None if the frontier is empty."""
        if not record.frontier:
            return None
        now = self._clock()
        waits = [
            max((t.not_before - now).total_seconds(), 0.0) if t.not_before else 0.0
            for t in record.frontier
        ]
        return min(waits)

    def _require_live(self, record: ExecutionRecord) -> None:
        if record.is_terminal:
            self._forget(record.id, record.graph_id)
            raise TerminalStateError(
                f"Execution {record.id} is already '{record.status.value}'"
            )

    # ========== Scheduling ==========

    async def execute_next_batch(self, execution_id: str) -> int:
        """
        Run ready frontier tokens until nothing is left in flight.

        This is called repeatedly by a worker. Every token runs as its own
        task. Each outcome is applied as soon as it arrives and the tokens it
        makes ready are dispatched at once, so a slow branch never holds back
        its siblings. Returns the number of tokens dispatched (0 when nothing
        was ready).
        """
        lock = self._lock(execution_id)
        in_flight = self._in_flight.setdefault(execution_id, set())
        cancel_event = self._cancel_event(execution_id)
        running: dict[asyncio.Task, Token] = {}
        dispatched = 0
        record: ExecutionRecord | None = None
        cancelled = asyncio.ensure_future(cancel_event.wait())

        try:
            async with lock:
                record = await self._load(execution_id)
                if record.status != ExecutionStatus.RUNNING:
                    return 0
                graph = await self._graph(record.graph_id)

                events: list[Event] = []
                if self._expire_approvals(record, self._clock(), events):
                    await self._persist(record, events)
                if self._check_completion(record, events):
                    await self._persist(record, events)
                    return 0
                dispatched += self._launch(record, graph, running, in_flight, cancel_event)

            while running:
                done, _ = await asyncio.wait(
                    [*running, cancelled],
                    timeout=self._next_wakeup(record, in_flight),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                async with lock:
                    record = await self._load(execution_id)
                    for task in done:
                        if task is cancelled:
                            continue
                        token = running.pop(task)
                        in_flight.discard(token.id)
                        outcome = task.result()
                        if record.is_terminal:
                            logger.warning(
                                f"Discarding result of '{outcome.node.id}': execution "
                                f"{execution_id} is {record.status.value}"
                            )
                            continue
                        if self._apply(record, graph, outcome, events):
                            self._check_completion(record, events)
                            await self._persist(record, events)

                    await self._abandon_stale(record, running, in_flight)
                    if record.status == ExecutionStatus.RUNNING:
                        dispatched += self._launch(record, graph, running, in_flight, cancel_event)
        finally:
            cancelled.cancel()
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)
                in_flight.difference_update(t.id for t in running.values())
            if record is not None and record.is_terminal:
                self._forget(execution_id, record.graph_id)

        return dispatched

    def _launch(
        self,
        record: ExecutionRecord,
        graph: WorkflowGraph,
        running: dict[asyncio.Task, Token],
        in_flight: set[str],
        cancel_event: asyncio.Event,
    ) -> int:
        """Start a task for every frontier token that is due and not yet running."""
        now = self._clock()
        ready = [
            t
            for t in record.frontier
            if t.id not in in_flight and (t.not_before is None or t.not_before <= now)
        ]
        if not ready:
            return 0
        snapshot = record.model_copy(deep=True)
        for token in ready:
            in_flight.add(token.id)
            task = asyncio.create_task(self._dispatch(snapshot, graph, token, now, cancel_event))
            running[task] = token
        return len(ready)

    async def _abandon_stale(
        self,
        record: ExecutionRecord,
        running: dict[asyncio.Task, Token],
        in_flight: set[str],
    ) -> None:
        """Stop calls whose token left the frontier (settled region or ended run)."""
        stale = []
        for task, token in list(running.items()):
            if record.find_token(token.id) is None:
                logger.info(f"Stopping in-flight node '{token.node_id}' (token {token.id})")
                task.cancel()
                del running[task]
                in_flight.discard(token.id)
                stale.append(task)
        if stale:
            await asyncio.gather(*stale, return_exceptions=True)

    def _next_wakeup(self, record: ExecutionRecord, in_flight: set[str]) -> float | None:
        """Seconds until a deferred retry becomes due, or None to wait for a result."""
        if record.status != ExecutionStatus.RUNNING:
            return None
        now = self._clock()
        waits = [
            (t.not_before - now).total_seconds()
            for t in record.frontier
            if t.id not in in_flight and t.not_before is not None and t.not_before > now
        ]
        return min(waits) if waits else None

    async def _dispatch(
        self,
        snapshot: ExecutionRecord,
        graph: WorkflowGraph,
        token: Token,
        now: datetime,
        cancel_event: asyncio.Event,
    ) -> _Outcome:
        """Run one executor. Never raises; failures come back as Fail signals."""
        node = graph.get_node(token.node_id)
        executor = self.executors[node.kind]
        scope = snapshot.scopes.get(token.resume_scope) if token.resume_scope else None
        ctx = NodeContext(
            node=node,
            graph=graph,
            record=snapshot,
            token=token,
            now=now,
            scope=scope,
            cancel_event=cancel_event,
        )
        timeout = executor.timeout_for(node)
        started_at = self._clock()

        async with self.semaphore:
            try:
                if timeout:
                    signal = await asyncio.wait_for(executor.execute(ctx), timeout=timeout)
                else:
                    signal = await executor.execute(ctx)
            except TimeoutError:
                logger.warning(f"Node '{node.id}' timed out after {timeout}s")
                signal = executor.handle_error(
                    ctx, CollaboratorTimeout(f"Node '{node.id}' timed out after {timeout}s")
                )
            except Exception as e:
                logger.error(f"Executor for node '{node.id}' raised: {e}", exc_info=True)
                signal = Fail(f"{type(e).__name__}: {e}")

        return _Outcome(
            token=token,
            node=node,
            signal=signal,
            agent=ctx.agent,
            started_at=started_at,
            completed_at=self._clock(),
        )

    # ========== Signal Application ==========

    def _apply(
        self,
        record: ExecutionRecord,
        graph: WorkflowGraph,
        outcome: _Outcome,
        events: list[Event],
    ) -> bool:
        """Apply one executor signal to the live record. Returns False if dropped."""
        token = record.find_token(outcome.token.id)
        if token is None:
            # Abandoned while in flight (its parallel region already settled)
            logger.warning(
                f"Late result for node '{outcome.node.id}' (token {outcome.token.id}) ignored"
            )
            return False
        record.frontier = [t for t in record.frontier if t.id != token.id]
        node = outcome.node
        signal = outcome.signal

        if isinstance(signal, Proceed):
            self._record(record, outcome, NodeResultStatus.COMPLETED, output=signal.output)
            self._emit(events, record, EventType.NODE_COMPLETED, node.id, agent=outcome.agent)
            self._pop_scope(record, token)
            self._advance(record, graph, token, signal.output, signal.edges, events)

        elif isinstance(signal, Suspend):
            self._suspend(record, token, signal, events)

        elif isinstance(signal, Retry):
            self._record(record, outcome, NodeResultStatus.RETRYING, error=signal.error)
            update: dict[str, Any] = {"attempt": token.attempt + 1, "not_before": None}
            if signal.delay > 0:
                update["not_before"] = self._clock() + timedelta(seconds=signal.delay)
            if signal.agent_override:
                update["agent_override"] = signal.agent_override
                update["fallback_index"] = signal.fallback_index
            record.frontier.append(token.model_copy(update=update))
            self._emit(
                events,
                record,
                EventType.NODE_RETRIED,
                node.id,
                attempt=token.attempt,
                delay=signal.delay,
                error=signal.error,
                next_agent=signal.agent_override,
            )
            logger.warning(
                f"Node '{node.id}' attempt {token.attempt} failed, retrying in "
                f"{signal.delay:.1f}s: {signal.error}"
            )

        else:
            self._record(record, outcome, NodeResultStatus.FAILED, error=signal.error)
            self._emit(
                events,
                record,
                EventType.NODE_FAILED,
                node.id,
                error=signal.error,
                structural=signal.structural,
            )
            logger.error(f"Node '{node.id}' failed: {signal.error}")
            self._pop_scope(record, token)
            self._route_failure(record, graph, token, node, signal, events)

        return True

    def _record(
        self,
        record: ExecutionRecord,
        outcome: _Outcome,
        status: NodeResultStatus,
        output: Any = None,
        error: str | None = None,
    ) -> None:
        record.node_results.append(
            NodeResult(
                node_id=outcome.node.id,
                token_id=outcome.token.id,
                attempt=outcome.token.attempt,
                status=status,
                started_at=outcome.started_at,
                completed_at=outcome.completed_at,
                output=output,
                error=error,
                agent=outcome.agent,
            )
        )

    def _pop_scope(self, record: ExecutionRecord, token: Token) -> None:
        """Drop the region a PARALLEL/LOOP owner just finished with."""
        if token.resume_scope:
            record.scopes.pop(token.resume_scope, None)

    def _advance(
        self,
        record: ExecutionRecord,
        graph: WorkflowGraph,
        token: Token,
        output: Any,
        edges: list | None,
        events: list[Event],
    ) -> None:
        """Move along ``edges`` (None = unguarded edges) with ``output`` as input."""
        if edges is None:
            edges = graph.default_edges(token.node_id)
        if not edges:
            if graph.get_node(token.node_id).kind == NodeKind.END:
                self._end_path(record, token, output, events)
            else:
                self._fail_run(
                    record, f"Node '{token.node_id}' has no outgoing edge to follow", events
                )
            return

        innermost = record.scopes.get(token.scope[-1].scope_id) if token.scope else None
        for edge in edges:
            if innermost and innermost.kind == "loop" and edge.target == innermost.node_id:
                # Back-edge: this iteration of the enclosing loop is done
                self._close_branch(record, token.scope[-1], "completed", output, None, events)
                continue
            if any(
                ref.scope_id in record.scopes and record.scopes[ref.scope_id].node_id == edge.target
                for ref in token.scope
            ):
                self._fail_run(
                    record,
                    f"Edge '{edge.id}' re-enters loop '{edge.target}' from a nested region",
                    events,
                )
                return
            record.frontier.append(
                Token(node_id=edge.target, input=output, scope=list(token.scope))
            )

    def _end_path(
        self, record: ExecutionRecord, token: Token, output: Any, events: list[Event]
    ) -> None:
        if token.scope:
            self._close_branch(record, token.scope[-1], "completed", output, None, events)
        else:
            record.final_output = output

    def _suspend(
        self, record: ExecutionRecord, token: Token, signal: Suspend, events: list[Event]
    ) -> None:
        scope = signal.scope
        if scope is not None:
            record.scopes[scope.id] = scope
        parked = token.model_copy(update={"resume_scope": None, "approval": None})
        record.suspended.append(
            SuspendedNode(token=parked, reason=signal.reason, scope_id=scope.id if scope else None)
        )

        if signal.approval is not None:
            record.pending_approvals.append(signal.approval)
            self._emit(
                events,
                record,
                EventType.APPROVAL_REQUESTED,
                token.node_id,
                prompt=signal.approval.prompt,
                expires_at=signal.approval.expires_at,
            )
            logger.info(f"Approval requested at node '{token.node_id}'")

        for activation in signal.activations:
            record.frontier.append(
                Token(
                    node_id=activation.edge.target,
                    input=activation.input,
                    scope=[*token.scope, ScopeRef(scope_id=scope.id, branch=activation.branch)],
                )
            )

        if scope is not None and scope.kind == "parallel":
            self._emit(
                events,
                record,
                EventType.PARALLEL_STARTED,
                token.node_id,
                branches=list(scope.branches),
            )
        elif scope is not None:
            self._emit(
                events,
                record,
                EventType.LOOP_ITERATION,
                token.node_id,
                status="started",
                iteration=scope.iteration,
            )

    # ========== Regions ==========

    def _close_branch(
        self,
        record: ExecutionRecord,
        ref: ScopeRef,
        status: str,
        output: Any,
        error: str | None,
        events: list[Event],
    ) -> None:
        """Report that one parallel branch or one loop iteration finished."""
        scope = record.scopes.get(ref.scope_id)
        if scope is None or scope.resolved:
            logger.warning(f"Result for settled region {ref.scope_id} ignored")
            return

        if scope.kind == "parallel":
            branch = scope.branches.get(ref.branch)
            if branch is None or branch.status != "running":
                return
            branch.status = status
            branch.output = output
            branch.error = error
            if not self._region_settled(scope):
                return
        else:
            if status == "completed":
                scope.results.append(output)
                scope.current_input = output
            else:
                scope.results.append({"error": error, "iteration": scope.iteration})
                scope.last_error = error
            self._emit(
                events,
                record,
                EventType.LOOP_ITERATION,
                scope.node_id,
                status=status,
                iteration=scope.iteration,
            )

        self._settle_scope(record, scope, events)

    @staticmethod
    def _region_settled(scope: Scope) -> bool:
        states = [b.status for b in scope.branches.values()]
        if scope.completion == "all":
            return "failed" in states or "running" not in states
        return "completed" in states or "running" not in states

    def _settle_scope(self, record: ExecutionRecord, scope: Scope, events: list[Event]) -> None:
        """Abandon leftover work in the region and wake its owner."""
        scope.resolved = True
        for branch in scope.branches.values():
            if branch.status == "running":
                branch.status = "abandoned"
        self._abandon_region(record, scope.id, events)

        owner = record.find_suspended(scope.owner_token_id)
        if owner is None:
            logger.error(f"Owner of region {scope.id} ('{scope.node_id}') is missing")
            return
        record.suspended.remove(owner)
        record.frontier.append(owner.token.model_copy(update={"resume_scope": scope.id}))

    def _abandon_region(self, record: ExecutionRecord, scope_id: str, events: list[Event]) -> None:
        def inside(token: Token) -> bool:
            return any(ref.scope_id == scope_id for ref in token.scope)

        now = self._clock()
        dropped = [t for t in record.frontier if inside(t)]
        parked = [s for s in record.suspended if inside(s.token)]
        record.frontier = [t for t in record.frontier if not inside(t)]
        record.suspended = [s for s in record.suspended if not inside(s.token)]

        for entry in parked:
            if entry.scope_id:
                record.scopes.pop(entry.scope_id, None)
            record.pending_approvals = [
                p for p in record.pending_approvals if p.token_id != entry.token.id
            ]

        for token in [*dropped, *(s.token for s in parked)]:
            record.node_results.append(
                NodeResult(
                    node_id=token.node_id,
                    token_id=token.id,
                    attempt=token.attempt,
                    status=NodeResultStatus.ABANDONED,
                    completed_at=now,
                )
            )
            self._emit(events, record, EventType.NODE_ABANDONED, token.node_id)

    # ========== Failure Routing ==========

    def _route_failure(
        self,
        record: ExecutionRecord,
        graph: WorkflowGraph,
        token: Token,
        node: Node,
        signal: Fail,
        events: list[Event],
    ) -> None:
        """Apply the workflow-level error policy to a node that failed for good."""
        policy = graph.error_handling

        if signal.structural:
            self._fail_run(record, signal.error, events)
            return

        if (
            policy.fallback_strategy == FallbackStrategy.FALLBACK_AGENT
            and node.kind == NodeKind.AGENT
            and not token.workflow_fallback_used
        ):
            logger.warning(f"Node '{node.id}' retrying once with agent '{policy.fallback_agent}'")
            record.frontier.append(
                token.model_copy(
                    update={
                        "attempt": token.attempt + 1,
                        "not_before": None,
                        "agent_override": policy.fallback_agent,
                        "workflow_fallback_used": True,
                    }
                )
            )
            return

        if policy.fallback_strategy == FallbackStrategy.CONTINUE:
            error_edges = graph.guarded_edges(node.id, GUARD_ERROR)
            if error_edges:
                payload = {"error": signal.error, "failed_node": node.id, "input": token.input}
                self._advance(record, graph, token, payload, error_edges, events)
                return

        if token.scope:
            self._close_branch(record, token.scope[-1], "failed", None, signal.error, events)
            return

        self._fail_run(record, signal.error, events)

    def _fail_run(self, record: ExecutionRecord, error: str, events: list[Event]) -> None:
        record.status = ExecutionStatus.FAILED
        record.error = error
        record.completed_at = self._clock()
        self._clear_active(record)
        self._emit(events, record, EventType.EXECUTION_FAILED, error=error)
        logger.error(f"Execution {record.id} failed: {error}")

    @staticmethod
    def _clear_active(record: ExecutionRecord) -> None:
        record.frontier = []
        record.suspended = []
        record.pending_approvals = []
        record.scopes = {}

    def _check_completion(self, record: ExecutionRecord, events: list[Event]) -> bool:
        """Complete the run once nothing is active or waiting."""
        if record.is_terminal or record.frontier or record.suspended:
            return False
        record.status = ExecutionStatus.COMPLETED
        record.completed_at = self._clock()
        self._emit(events, record, EventType.EXECUTION_COMPLETED)
        logger.info(f"Execution {record.id} completed")
        return True

    # ========== Approvals ==========

    def _expire_approvals(
        self, record: ExecutionRecord, now: datetime, events: list[Event]
    ) -> bool:
        expired = [p for p in record.pending_approvals if self.approval_gate.is_expired(p, now)]
        for pending in expired:
            self._release_approval(record, pending, self.approval_gate.expire())
            self._emit(events, record, EventType.APPROVAL_EXPIRED, pending.node_id)
            logger.warning(f"Approval at '{pending.node_id}' expired")
        return bool(expired)

    def _release_approval(
        self,
        record: ExecutionRecord,
        pending: PendingApproval,
        resolution: ApprovalResolution,
    ) -> None:
        """Move the approval token back to the frontier carrying the decision."""
        record.pending_approvals = [
            p for p in record.pending_approvals if p.token_id != pending.token_id
        ]
        entry = record.find_suspended(pending.token_id)
        if entry is None:
            raise ApprovalError(f"Approval token for node '{pending.node_id}' is not suspended")
        record.suspended.remove(entry)
        record.frontier.append(entry.token.model_copy(update={"approval": resolution}))
