"""SQLite persistence for workflow graphs, execution records and events.

Execution records are stored whole as JSON, one row per run. The events table
is an append-only audit log of everything the orchestrator did.
"""

import json
import logging
import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, Field

from agentflow.core.graph_schema import WorkflowGraph
from agentflow.core.models import TERMINAL_STATUSES, ExecutionRecord, ExecutionStatus, _utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Transient "database is locked" errors are retried this many times
LOCK_RETRIES = 3


class ExecutionNotFoundError(Exception):
    """No execution record with the requested id."""


class TerminalStateError(Exception):
    """Attempt to modify an execution that already reached a terminal status."""


class EventType(str, Enum):
    """Types of events in the event log."""

    # Execution lifecycle
    EXECUTION_STARTED = "execution_started"
    EXECUTION_PAUSED = "execution_paused"
    EXECUTION_RESUMED = "execution_resumed"
    EXECUTION_CANCELLED = "execution_cancelled"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"

    # Node attempts
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_RETRIED = "node_retried"
    NODE_ABANDONED = "node_abandoned"

    # Regions
    PARALLEL_STARTED = "parallel_started"
    LOOP_ITERATION = "loop_iteration"

    # Human intervention
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_DENIED = "approval_denied"
    APPROVAL_EXPIRED = "approval_expired"


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime, Path and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json")
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


class Event(BaseModel):
    """Immutable event in the event log."""

    id: int | None = None
    execution_id: str
    event_type: EventType
    node_id: str | None = None
    status: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)


class ExecutionStore(Protocol):
    """Persistence contract used by the orchestrator."""

    def save_graph(self, graph: WorkflowGraph) -> None: ...

    def load_graph(self, graph_id: str) -> WorkflowGraph: ...

    def save_execution(self, record: ExecutionRecord) -> None: ...

    def load_execution(self, execution_id: str) -> ExecutionRecord: ...

    def append_event(self, event: Event) -> int: ...

    def get_events(self, execution_id: str) -> list[Event]: ...

    def list_executions(
        self, statuses: list[ExecutionStatus] | None = None
    ) -> list[tuple[str, str, str]]: ...


class Database:
    """SQLite implementation of :class:`ExecutionStore`."""

    SCHEMA = """
    -- Event log (append-only)
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        execution_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        node_id TEXT,
        status TEXT,
        payload JSON,
        timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Graph workflow definitions (stored as JSON)
    CREATE TABLE IF NOT EXISTS graph_workflows (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        definition JSON NOT NULL,
        version TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    );

    -- Execution records (whole record as JSON, status denormalized for queries)
    CREATE TABLE IF NOT EXISTS executions (
        id TEXT PRIMARY KEY,
        graph_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK(
            status IN ('running', 'paused', 'completed', 'failed', 'cancelled')
        ),
        record JSON NOT NULL,
        created_at TIMESTAMP,
        updated_at TIMESTAMP,
        FOREIGN KEY (graph_id) REFERENCES graph_workflows(id)
    );

    CREATE INDEX IF NOT EXISTS idx_events_execution ON events(execution_id);
    CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status);
    """

    def __init__(self, db_path: str | Path = ".agentflow/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _with_retry(self, func: Callable[[], T]) -> T:
        """Run ``func``, retrying a bounded number of times while the DB is locked."""
        for attempt in range(1, LOCK_RETRIES + 1):
            try:
                return func()
            except sqlite3.OperationalError as e:
                if "locked" not in str(e).lower() or attempt == LOCK_RETRIES:
                    raise
                logger.warning(f"Database locked (attempt {attempt}/{LOCK_RETRIES}), retrying")
                time.sleep(0.1 * attempt)
        raise AssertionError("unreachable")

    # --- Graphs ---

    def save_graph(self, graph: WorkflowGraph) -> None:
        """Insert or replace a workflow definition."""

        def _save() -> None:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO graph_workflows (id, name, definition, version)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        definition = excluded.definition,
                        version = excluded.version,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (graph.id, graph.name, graph.model_dump_json(), graph.version),
                )

        self._with_retry(_save)

    def load_graph(self, graph_id: str) -> WorkflowGraph:
        def _load() -> sqlite3.Row | None:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT definition FROM graph_workflows WHERE id = ?", (graph_id,)
                ).fetchone()

        row = self._with_retry(_load)
        if row is None:
            raise KeyError(f"Workflow graph '{graph_id}' not found")
        return WorkflowGraph.model_validate_json(row["definition"])

    # --- Executions ---

    def save_execution(self, record: ExecutionRecord) -> None:
        """Persist ``record``. Terminal records are write-once.

        Raises:
            TerminalStateError: if the stored row is already terminal.
        """
        terminal = tuple(s.value for s in TERMINAL_STATUSES)

        def _save() -> int:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"""
                    INSERT INTO executions (id, graph_id, status, record, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        record = excluded.record,
                        updated_at = excluded.updated_at
                    WHERE executions.status NOT IN ({",".join("?" * len(terminal))})
                    """,
                    (
                        record.id,
                        record.graph_id,
                        record.status.value,
                        record.model_dump_json(),
                        record.created_at.isoformat(),
                        record.updated_at.isoformat(),
                        *terminal,
                    ),
                )
                return cursor.rowcount

        if self._with_retry(_save) == 0:
            raise TerminalStateError(
                f"Execution '{record.id}' is already terminal and cannot be overwritten"
            )

    def load_execution(self, execution_id: str) -> ExecutionRecord:
        def _load() -> sqlite3.Row | None:
            with self._connect() as conn:
                return conn.execute(
                    "SELECT record FROM executions WHERE id = ?", (execution_id,)
                ).fetchone()

        row = self._with_retry(_load)
        if row is None:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' not found")
        return ExecutionRecord.model_validate_json(row["record"])

    def list_executions(
        self, statuses: list[ExecutionStatus] | None = None
    ) -> list[tuple[str, str, str]]:
        """Return ``(execution_id, graph_id, status)`` rows, oldest first."""
        with self._connect() as conn:
            if statuses:
                placeholders = ",".join("?" * len(statuses))
                rows = conn.execute(
                    f"""
                    SELECT id, graph_id, status FROM executions
                    WHERE status IN ({placeholders})
                    ORDER BY created_at
                    """,
                    [s.value for s in statuses],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT id, graph_id, status FROM executions ORDER BY created_at"
                ).fetchall()
            return [(row["id"], row["graph_id"], row["status"]) for row in rows]

    # --- Events ---

    def append_event(self, event: Event) -> int:
        """Append an event to the log and return its id."""

        def _append() -> int:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO events (execution_id, event_type, node_id, status,
                                        payload, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.execution_id,
                        event.event_type.value,
                        event.node_id,
                        event.status,
                        _safe_json_dumps(event.payload),
                        event.timestamp.isoformat(),
                    ),
                )
                return cursor.lastrowid  # type: ignore

        return self._with_retry(_append)

    def get_events(
        self, execution_id: str, event_types: list[EventType] | None = None
    ) -> list[Event]:
        """Get events for an execution, optionally filtered by type."""
        with self._connect() as conn:
            if event_types:
                placeholders = ",".join("?" * len(event_types))
                rows = conn.execute(
                    f"""
                    SELECT * FROM events
                    WHERE execution_id = ? AND event_type IN ({placeholders})
                    ORDER BY id
                    """,
                    [execution_id] + [et.value for et in event_types],
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE execution_id = ? ORDER BY id",
                    (execution_id,),
                ).fetchall()

            return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        """Convert database row to Event."""
        return Event(
            id=row["id"],
            execution_id=row["execution_id"],
            event_type=EventType(row["event_type"]),
            node_id=row["node_id"],
            status=row["status"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            timestamp=datetime.fromisoformat(row["timestamp"]),
        )
