# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the agentflow test suite.

This module provides foundational fixtures used across all test modules:
- Test databases
- A scripted fake agent client (no subprocesses)
- A controllable clock for approval expiry
- An orchestrator wired to all of the above

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    Graph-building helpers live in ``factories.py``.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from agentflow.core.agents import CallContext
from agentflow.core.graph_engine import GraphOrchestrator
from agentflow.core.state import Database
from agentflow.core.worker import WorkflowWorker


# =============================================================================
# Fakes
# =============================================================================


class FakeAgentClient:
    """Scripted stand-in for the agent-execution service.

    ``responses`` maps an agent name to a list of results handed out in order;
    the last one repeats. A result may be a value, an exception instance (raised)
    or a callable taking the input. Agents without a script echo their input.
    ``delays`` maps an agent name to seconds slept before answering.
    """

    def __init__(
        self,
        responses: dict[str, list[Any]] | None = None,
        delays: dict[str, float] | None = None,
    ):
        self.responses = {name: list(items) for name, items in (responses or {}).items()}
        self.delays = delays or {}
        self.calls: list[dict[str, Any]] = []

    def script(self, agent: str, *results: Any) -> None:
        self.responses[agent] = list(results)

    async def execute(
        self,
        agent: str,
        instructions: str,
        input_data: Any,
        timeout: float | None,
        call: CallContext,
    ) -> Any:
        self.calls.append(
            {
                "agent": agent,
                "instructions": instructions,
                "input": input_data,
                "node_id": call.node_id,
                "attempt_id": call.attempt_id,
            }
        )
        delay = self.delays.get(agent)
        if delay:
            await asyncio.sleep(delay)

        queue = self.responses.get(agent)
        if not queue:
            return input_data
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(input_data)
        return result

    def calls_for(self, node_id: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["node_id"] == node_id]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# =============================================================================
# Database and Engine Fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a temporary test database.

    Creates a fresh SQLite database in a temporary directory.
    Database is automatically cleaned up after the test.

    Returns:
        Initialized Database instance.
    """
    db_path = tmp_path / "test.db"
    return Database(db_path)


@pytest.fixture
def client() -> FakeAgentClient:
    return FakeAgentClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def orchestrator(test_db: Database, client: FakeAgentClient) -> GraphOrchestrator:
    """Orchestrator using the fake client and the real clock."""
    return GraphOrchestrator(test_db, client, max_parallel=4)


@pytest.fixture
def clocked_orchestrator(
    test_db: Database, client: FakeAgentClient, clock: FakeClock
) -> GraphOrchestrator:
    """Orchestrator whose notion of time is ``clock``.

    Only suitable for graphs without retry delays; the worker never sees
    a delay elapse unless the test advances the clock.
    """
    return GraphOrchestrator(test_db, client, max_parallel=4, clock=clock)


@pytest.fixture
def drive():
    """Run an execution to a standstill and return its record.

    Example:
        async def test_x(orchestrator, drive):
            exec_id = await orchestrator.start(graph, {"a": 1})
            record = await drive(orchestrator, exec_id)
            assert record.status == ExecutionStatus.COMPLETED
    """

    async def _drive(orch: GraphOrchestrator, execution_id: str):
        worker = WorkflowWorker(orch, poll_interval=0.01)
        await asyncio.wait_for(worker.run_until_complete(execution_id), timeout=10)
        return await orch.get_status(execution_id)

    return _drive


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: marks integration tests")
