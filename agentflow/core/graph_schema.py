"""Graph workflow schema definitions using Pydantic models.

Workflows are directed graphs of typed nodes (AGENT, CONDITION, PARALLEL, LOOP,
APPROVAL, END) connected by edges that may carry a guard label.

Design notes:
- No arbitrary code execution in conditions (structured operators only)
- Cycles are only allowed through LOOP bodies, and every loop has max_iterations
- Validation runs before any execution attempt; a graph that fails it never starts
"""

import re
from enum import Enum
from typing import Any, Literal

import networkx as nx
from pydantic import BaseModel, Field, field_validator, model_validator

from agentflow.core.retry import FallbackStrategy, RetryStrategy


class GraphError(Exception):
    """Structural defect in a workflow graph."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Invalid workflow graph: " + "; ".join(errors))


class NodeKind(str, Enum):
    """Supported node kinds in workflow graphs"""

    AGENT = "agent"  # Delegate a task to an external agent
    CONDITION = "condition"  # Route on predicates over upstream output
    PARALLEL = "parallel"  # Fan out into concurrent branches
    LOOP = "loop"  # Bounded iteration over a body subgraph
    APPROVAL = "approval"  # Human approval gate
    END = "end"  # Terminal node


# Reserved edge guards
GUARD_DEFAULT = "default"
GUARD_ERROR = "error"
GUARD_LOOP_BODY = "loop_body"
GUARD_APPROVED = "approved"
GUARD_REJECTED = "rejected"
GUARD_TIMEOUT = "timeout"

# Guards each node kind may put on its outgoing edges (None = unguarded).
# CONDITION guards depend on the node's labels and are checked separately.
_ALLOWED_GUARDS: dict[NodeKind, set[str | None]] = {
    NodeKind.AGENT: {None, GUARD_ERROR},
    NodeKind.PARALLEL: {None, GUARD_ERROR},
    NodeKind.LOOP: {None, GUARD_LOOP_BODY, GUARD_ERROR},
    NodeKind.APPROVAL: {None, GUARD_APPROVED, GUARD_REJECTED, GUARD_TIMEOUT, GUARD_ERROR},
}

# Edges a node may follow when it succeeds; at least one is required
_SUCCESS_GUARDS: dict[NodeKind, set[str | None]] = {
    NodeKind.AGENT: {None},
    NodeKind.APPROVAL: {None, GUARD_APPROVED},
}

_OPERATOR_ALIASES: dict[str, str] = {
    "equals": "equals",
    "==": "equals",
    "not_equals": "not_equals",
    "notEquals": "not_equals",
    "!=": "not_equals",
    "contains": "contains",
    "greater_than": "greater_than",
    "greaterThan": "greater_than",
    ">": "greater_than",
    "less_than": "less_than",
    "lessThan": "less_than",
    "<": "less_than",
    "is_empty": "is_empty",
    "isEmpty": "is_empty",
    "is_not_empty": "is_not_empty",
    "isNotEmpty": "is_not_empty",
}


class Predicate(BaseModel):
    """
    Declarative predicate over a node's input.
    NO arbitrary code execution - only structured operators.
    """

    field: str  # Key path: "score", "result.items.0.name"
    operator: Literal[
        "equals",
        "not_equals",
        "contains",
        "greater_than",
        "less_than",
        "is_empty",
        "is_not_empty",
    ]
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def normalize_operator(cls, v):
        """Accept camelCase and symbolic spellings used by graph authors."""
        if isinstance(v, str) and v in _OPERATOR_ALIASES:
            return _OPERATOR_ALIASES[v]
        return v

    @field_validator("field")
    @classmethod
    def validate_field(cls, v):
        """Ensure key paths are dot-separated segments.

        Valid: "status", "result.score", "items.0.name"
        Invalid: "", "a..b", ".foo", "foo."
        """
        pattern = r"^[A-Za-z0-9_\-]+(\.[A-Za-z0-9_\-]+)*$"
        if not re.match(pattern, v):
            raise ValueError(f"Invalid field path: {v!r}")
        return v


class Edge(BaseModel):
    """Directed edge between nodes with an optional guard label"""

    id: str
    source: str  # Source node ID
    target: str  # Target node ID
    guard: str | None = None  # Branch label, or a reserved guard (loop_body, error, ...)


class SelectionCriteria(BaseModel):
    """Criteria for picking an agent at run time"""

    required_skills: list[str] = Field(default_factory=list)
    workload_threshold: int = 10
    min_success_rate: float = 0.7
    candidates: list[str] = Field(default_factory=list)  # Empty = every known agent


class AgentNodeConfig(BaseModel):
    """Configuration for AGENT nodes - delegate a task"""

    agent_name: str | None = None
    selection_criteria: SelectionCriteria | None = None
    instructions: str = ""
    max_retries: int | None = Field(default=None, ge=0)  # None = workflow default
    retry_strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    timeout_seconds: float | None = Field(default=300.0, gt=0)
    fallback_agents: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_agent_selector(self) -> "AgentNodeConfig":
        if not self.agent_name and self.selection_criteria is None:
            raise ValueError("Agent node requires 'agent_name' or 'selection_criteria'")
        return self


class ConditionNodeConfig(BaseModel):
    """Configuration for CONDITION nodes. All predicates combine with AND."""

    conditions: list[Predicate] = Field(default_factory=list)
    true_label: str = "true"
    false_label: str = "false"

    @property
    def branch_labels(self) -> list[str]:
        return [self.true_label, self.false_label]


class ParallelNodeConfig(BaseModel):
    """
    Configuration for PARALLEL nodes - fan-out execution.

    Every entry in ``branches`` must be the target of an outgoing edge of the
    parallel node. Outgoing edges to other nodes are followed once the region
    satisfies ``completion``.
    """

    branches: list[str] = Field(min_length=1)
    completion: Literal["all", "any"] = "all"


class LoopType(str, Enum):
    FOREACH = "foreach"
    WHILE = "while"
    UNTIL = "until"
    FIXED_COUNT = "fixed_count"


class LoopNodeConfig(BaseModel):
    """
    Configuration for LOOP nodes.

    The body is entered through the single ``loop_body`` edge. A body path ends
    an iteration by reaching an END node or by taking an edge back to the loop node.
    """

    loop_type: LoopType = LoopType.FOREACH
    max_iterations: int = Field(default=100, ge=1)  # CRITICAL: Prevent infinite loops
    iteration_data_path: str | None = None  # foreach: key path of the collection
    conditions: list[Predicate] = Field(default_factory=list)  # while / until
    count: int | None = Field(default=None, ge=0)  # fixed_count (defaults to max_iterations)
    break_on_error: bool = True

    @model_validator(mode="after")
    def check_loop_condition(self) -> "LoopNodeConfig":
        if self.loop_type in (LoopType.WHILE, LoopType.UNTIL) and not self.conditions:
            raise ValueError(f"'{self.loop_type.value}' loops require at least one condition")
        return self


class ApprovalNodeConfig(BaseModel):
    """Configuration for APPROVAL nodes - human gates"""

    prompt: str = ""
    approvers: list[str] = Field(default_factory=list)  # Empty = anyone may decide
    timeout_hours: float = Field(default=24.0, gt=0)


class Node(BaseModel):
    """Generic graph node with kind-specific configuration"""

    id: str
    kind: NodeKind

    @field_validator("id")
    @classmethod
    def validate_node_id(cls, v):
        if not re.match(r"^[A-Za-z0-9_\-]+$", v):
            raise ValueError(
                f"Invalid node ID: '{v}'. Use letters, digits, '_' or '-' only."
            )
        return v

    label: str | None = None

    # Kind-specific configuration (only the one matching ``kind`` may be set)
    agent_config: AgentNodeConfig | None = None
    condition_config: ConditionNodeConfig | None = None
    parallel_config: ParallelNodeConfig | None = None
    loop_config: LoopNodeConfig | None = None
    approval_config: ApprovalNodeConfig | None = None

    # UI metadata (position, styling) for visual editors
    ui_metadata: dict | None = None

    @model_validator(mode="after")
    def validate_config_for_kind(self) -> "Node":
        """Ensure the correct config is present for the node kind."""
        # Condition and approval nodes have usable defaults
        if self.kind == NodeKind.CONDITION and self.condition_config is None:
            self.condition_config = ConditionNodeConfig()
        if self.kind == NodeKind.APPROVAL and self.approval_config is None:
            self.approval_config = ApprovalNodeConfig()

        config_map = {
            NodeKind.AGENT: ("agent_config", self.agent_config),
            NodeKind.CONDITION: ("condition_config", self.condition_config),
            NodeKind.PARALLEL: ("parallel_config", self.parallel_config),
            NodeKind.LOOP: ("loop_config", self.loop_config),
            NodeKind.APPROVAL: ("approval_config", self.approval_config),
        }

        expected_config_name, expected_config = config_map.get(self.kind, (None, None))
        if expected_config_name and expected_config is None:
            raise ValueError(
                f"Node '{self.id}' of kind '{self.kind.value}' requires '{expected_config_name}'"
            )

        for node_kind, (config_name, config_value) in config_map.items():
            if node_kind != self.kind and config_value is not None:
                raise ValueError(
                    f"Node '{self.id}' of kind '{self.kind.value}' has unexpected "
                    f"'{config_name}'"
                )

        return self

    @property
    def display_name(self) -> str:
        return self.label or self.id


class ErrorHandlingConfig(BaseModel):
    """Workflow-level policy applied once a node has exhausted its own retries"""

    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=5.0, ge=0)  # Base delay (seconds) for retry strategies
    fallback_strategy: FallbackStrategy = FallbackStrategy.STOP
    fallback_agent: str | None = None

    @model_validator(mode="after")
    def check_fallback_agent(self) -> "ErrorHandlingConfig":
        if self.fallback_strategy == FallbackStrategy.FALLBACK_AGENT and not self.fallback_agent:
            raise ValueError("fallback_strategy 'fallback_agent' requires 'fallback_agent'")
        return self


class WorkflowGraph(BaseModel):
    """Complete workflow definition"""

    id: str
    name: str
    description: str | None = None
    version: str = "1.0.0"

    nodes: list[Node]
    edges: list[Edge] = Field(default_factory=list)

    start_node_id: str | None = None  # Auto-detected when omitted
    error_handling: ErrorHandlingConfig = Field(default_factory=ErrorHandlingConfig)

    @classmethod
    def from_steps(
        cls,
        workflow_id: str,
        name: str,
        steps: list[dict[str, Any]],
        error_handling: ErrorHandlingConfig | None = None,
    ) -> "WorkflowGraph":
        """Build the single-branch graph equivalent of a linear step list.

        Each step is a dict with ``agent_name`` and optional ``instructions``,
        ``max_retries``, ``timeout_seconds`` and ``label``.
        """
        if not steps:
            raise GraphError(["A linear workflow needs at least one step"])

        nodes: list[Node] = []
        edges: list[Edge] = []
        for index, step in enumerate(steps, start=1):
            config = {k: v for k, v in step.items() if k != "label"}
            nodes.append(
                Node(
                    id=f"step_{index}",
                    kind=NodeKind.AGENT,
                    label=step.get("label"),
                    agent_config=AgentNodeConfig(**config),
                )
            )
        nodes.append(Node(id="end", kind=NodeKind.END))
        for source, target in zip(nodes, nodes[1:]):
            edges.append(Edge(id=f"{source.id}_to_{target.id}", source=source.id, target=target.id))

        return cls(
            id=workflow_id,
            name=name,
            nodes=nodes,
            edges=edges,
            start_node_id=nodes[0].id,
            error_handling=error_handling or ErrorHandlingConfig(),
        )

    # ========== Lookups ==========

    def get_node(self, node_id: str) -> Node:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    def outgoing(self, node_id: str) -> list[Edge]:
        """Outgoing edges in declaration order."""
        return [e for e in self.edges if e.source == node_id]

    def incoming(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def default_edges(self, node_id: str) -> list[Edge]:
        """Outgoing edges followed on a plain Proceed (no guard)."""
        return [e for e in self.outgoing(node_id) if e.guard is None]

    def guarded_edges(self, node_id: str, guard: str) -> list[Edge]:
        return [e for e in self.outgoing(node_id) if e.guard == guard]

    @property
    def entry_point(self) -> str | None:
        """Explicit start node, or the unique node without incoming edges."""
        if self.start_node_id:
            return self.start_node_id
        targets = {e.target for e in self.edges}
        roots = [n.id for n in self.nodes if n.id not in targets]
        return roots[0] if len(roots) == 1 else None

    # ========== Validation ==========

    def validate_graph(self) -> list[str]:
        """
        Validate graph structure using NetworkX.
        Returns list of validation errors.
        """
        errors = []

        # Duplicate ids would corrupt execution state
        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids

        seen_edge_ids = set()
        for edge in self.edges:
            if edge.id in seen_edge_ids:
                errors.append(f"Duplicate edge ID: '{edge.id}'")
            seen_edge_ids.add(edge.id)

        for edge in self.edges:
            if edge.source not in node_ids:
                errors.append(f"Edge {edge.id}: source '{edge.source}' not found")
            if edge.target not in node_ids:
                errors.append(f"Edge {edge.id}: target '{edge.target}' not found")

        if errors:
            # Remaining checks assume a well-formed node/edge set
            return errors

        # Entry point
        targets = {e.target for e in self.edges}
        roots = [n.id for n in self.nodes if n.id not in targets]
        if self.start_node_id:
            if self.start_node_id not in node_ids:
                errors.append(f"Start node '{self.start_node_id}' not found")
                return errors
            entry = self.start_node_id
        elif len(roots) == 1:
            entry = roots[0]
        else:
            if not roots:
                errors.append("No entry node found (every node has incoming edges)")
            else:
                errors.append(
                    f"Ambiguous entry: {len(roots)} nodes have no incoming edges "
                    f"({', '.join(sorted(roots))}); set start_node_id"
                )
            return errors

        G = self._to_networkx()

        # Reachability from entry
        reachable = nx.descendants(G, entry) | {entry}
        for node in self.nodes:
            if node.id not in reachable:
                errors.append(f"Node '{node.id}' is unreachable from entry '{entry}'")

        end_nodes = {n.id for n in self.nodes if n.kind == NodeKind.END}
        if not end_nodes & reachable:
            errors.append("No END node is reachable from the entry node")

        for node in self.nodes:
            outgoing = self.outgoing(node.id)
            if node.kind == NodeKind.END:
                if outgoing:
                    errors.append(f"END node '{node.id}' must not have outgoing edges")
                continue
            if not outgoing:
                errors.append(f"Node '{node.id}' has no outgoing edges and is not an END node")
            elif node.kind in _SUCCESS_GUARDS and not any(
                e.guard in _SUCCESS_GUARDS[node.kind] for e in outgoing
            ):
                errors.append(f"Node '{node.id}' has no edge to follow when it succeeds")

        for node in self.nodes:
            if node.kind == NodeKind.CONDITION:
                errors.extend(self._validate_condition(node))
            elif node.kind == NodeKind.PARALLEL:
                errors.extend(self._validate_parallel(node))
            elif node.kind == NodeKind.LOOP:
                errors.extend(self._validate_loop(node))
            if node.kind in _ALLOWED_GUARDS:
                errors.extend(self._validate_guards(node))

        errors.extend(self._validate_cycles(G))

        strategy = self.error_handling.fallback_strategy
        if strategy == FallbackStrategy.FALLBACK_AGENT and not self.error_handling.fallback_agent:
            errors.append("fallback_strategy 'fallback_agent' requires 'fallback_agent'")

        return errors

    def _validate_condition(self, node: Node) -> list[str]:
        errors = []
        config = node.condition_config
        outgoing = self.outgoing(node.id)
        guards = [e.guard for e in outgoing]
        has_default = GUARD_DEFAULT in guards

        if config.true_label == config.false_label:
            errors.append(f"CONDITION node '{node.id}': branch labels must differ")
        for label in config.branch_labels:
            count = guards.count(label)
            if count > 1:
                errors.append(f"CONDITION node '{node.id}': multiple edges for branch '{label}'")
            elif count == 0 and not has_default:
                errors.append(
                    f"CONDITION node '{node.id}': no edge for branch '{label}' and no default edge"
                )
        if guards.count(GUARD_DEFAULT) > 1:
            errors.append(f"CONDITION node '{node.id}': multiple default edges")
        known = set(config.branch_labels) | {GUARD_DEFAULT, GUARD_ERROR}
        for edge in outgoing:
            if edge.guard not in known:
                errors.append(
                    f"CONDITION node '{node.id}': edge {edge.id} guard {edge.guard!r} "
                    f"is not a declared branch"
                )
        return errors

    def _validate_parallel(self, node: Node) -> list[str]:
        errors = []
        outgoing_targets = {e.target for e in self.outgoing(node.id)}
        branches = node.parallel_config.branches
        if len(set(branches)) != len(branches):
            errors.append(f"PARALLEL node '{node.id}': duplicate branch entries")
        for branch in branches:
            if branch not in outgoing_targets:
                errors.append(
                    f"PARALLEL node '{node.id}': missing edge to branch entry '{branch}'"
                )
        if not [e for e in self.default_edges(node.id) if e.target not in branches]:
            errors.append(f"PARALLEL node '{node.id}': missing exit edge")
        return errors

    def _validate_loop(self, node: Node) -> list[str]:
        errors = []
        body_edges = self.guarded_edges(node.id, GUARD_LOOP_BODY)
        if len(body_edges) != 1:
            errors.append(
                f"LOOP node '{node.id}': expected exactly one '{GUARD_LOOP_BODY}' edge, "
                f"found {len(body_edges)}"
            )
        if not self.default_edges(node.id):
            errors.append(f"LOOP node '{node.id}': missing exit edge")
        config = node.loop_config
        if (
            config.loop_type == LoopType.FIXED_COUNT
            and config.count is not None
            and config.count > config.max_iterations
        ):
            errors.append(
                f"LOOP node '{node.id}': count {config.count} exceeds "
                f"max_iterations {config.max_iterations}"
            )
        return errors

    def _validate_guards(self, node: Node) -> list[str]:
        """Reserved guards only, one edge per guard, fan-out only from PARALLEL."""
        errors = []
        allowed = _ALLOWED_GUARDS[node.kind]
        guards = [e.guard for e in self.outgoing(node.id)]
        for guard in sorted(set(guards), key=str):
            if guard not in allowed:
                errors.append(
                    f"{node.kind.value.upper()} node '{node.id}': guard {guard!r} is not allowed"
                )
            elif guards.count(guard) > 1 and guard != GUARD_LOOP_BODY and not (
                guard is None and node.kind == NodeKind.PARALLEL
            ):
                if guard is None:
                    errors.append(
                        f"Node '{node.id}' has {guards.count(None)} unguarded edges; "
                        f"fan out through a PARALLEL node"
                    )
                else:
                    errors.append(f"Node '{node.id}' has multiple '{guard}' edges")
        return errors

    def _validate_cycles(self, G: nx.DiGraph) -> list[str]:
        """Every cycle must close through a loop body back into its LOOP node.

        Back-edges into a LOOP node from nodes reachable through its body edge are
        removed; whatever remains must be acyclic.
        """
        errors = []
        H = G.copy()
        for node in self.nodes:
            if node.kind != NodeKind.LOOP:
                continue
            body_edges = self.guarded_edges(node.id, GUARD_LOOP_BODY)
            if not body_edges:
                continue
            body_entry = body_edges[0].target
            body = nx.descendants(G, body_entry) | {body_entry}
            for edge in self.incoming(node.id):
                if edge.source in body and H.has_edge(edge.source, node.id):
                    H.remove_edge(edge.source, node.id)

        try:
            cycle = nx.find_cycle(H)
            cycle_path = " -> ".join(edge[0] for edge in cycle)
            errors.append(f"Cycle without loop control: {cycle_path}")
        except nx.NetworkXNoCycle:
            pass
        return errors

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for edge in self.edges:
            G.add_edge(edge.source, edge.target)
        return G

    def get_terminal_nodes(self) -> set[str]:
        """END nodes of the graph"""
        return {n.id for n in self.nodes if n.kind == NodeKind.END}


def validate(graph: WorkflowGraph) -> None:
    """Raise GraphError if ``graph`` is structurally invalid."""
    errors = graph.validate_graph()
    if errors:
        raise GraphError(errors)
