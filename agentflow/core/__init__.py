"""Core modules for the agentflow engine."""

from agentflow.core.graph_engine import GraphOrchestrator, InvalidTransitionError
from agentflow.core.graph_schema import GraphError, NodeKind, WorkflowGraph, validate
from agentflow.core.models import ExecutionRecord, ExecutionStatus, NodeResultStatus
from agentflow.core.state import Database, Event, EventType
from agentflow.core.worker import WorkflowWorker

__all__ = [
    "Database",
    "Event",
    "EventType",
    "ExecutionRecord",
    "ExecutionStatus",
    "GraphError",
    "GraphOrchestrator",
    "InvalidTransitionError",
    "NodeKind",
    "NodeResultStatus",
    "WorkflowGraph",
    "WorkflowWorker",
    "validate",
]
