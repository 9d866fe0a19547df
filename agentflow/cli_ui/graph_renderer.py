"""Terminal graph rendering for workflow visualization.

Provides tree-based visualization of workflow graphs and execution status
tables using Rich.
"""

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from agentflow.core.graph_schema import Edge, Node, NodeKind, WorkflowGraph
from agentflow.core.models import ExecutionRecord, NodeResultStatus


def node_statuses(record: ExecutionRecord) -> dict[str, str]:
    """Current display status per node id.

    The latest attempt wins; tokens still queued show as "ready" and parked
    tokens as "waiting".
    """
    statuses: dict[str, str] = {}
    for result in record.node_results:
        if result.status == NodeResultStatus.RETRYING:
            statuses[result.node_id] = "retrying"
        else:
            statuses[result.node_id] = result.status.value
    for token in record.frontier:
        statuses[token.node_id] = "ready"
    for entry in record.suspended:
        statuses[entry.token.node_id] = "waiting"
    return statuses


def _short(value: Any, limit: int = 40) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    text = escape(text)
    return text if len(text) <= limit else text[: limit - 3] + "..."


class TerminalGraphRenderer:
    """
    Renders workflow graphs as a Rich tree in the terminal.

    Features:
    - Color-coded node kinds
    - Status indicators
    - Edge guard labels (branch labels, loop_body, error, ...)
    """

    # Node kind symbols and colors
    NODE_STYLES = {
        NodeKind.AGENT: ("[A]", "cyan"),
        NodeKind.CONDITION: ("[?]", "magenta"),
        NodeKind.PARALLEL: ("[P]", "green"),
        NodeKind.LOOP: ("[L]", "blue"),
        NodeKind.APPROVAL: ("[H]", "red"),
        NodeKind.END: ("[E]", "white"),
    }

    STATUS_COLORS = {
        "ready": "yellow",
        "waiting": "yellow bold",
        "retrying": "yellow",
        "completed": "green",
        "failed": "red bold",
        "abandoned": "dim strikethrough",
    }

    STATUS_INDICATORS = {
        "completed": " ✓",
        "failed": " ✗",
        "waiting": " ⏸",
        "retrying": " ⟳",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def _build_edge_map(self, workflow: WorkflowGraph) -> dict[str, list[Edge]]:
        """Outgoing edges by source node id, in declaration order."""
        edge_map: dict[str, list[Edge]] = {n.id: [] for n in workflow.nodes}
        for edge in workflow.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)
        return edge_map

    def render_as_tree(
        self,
        workflow: WorkflowGraph,
        statuses: dict[str, str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """
        Render workflow as a Rich Tree (hierarchical view).

        Returns a tree with an error entry if the entry point cannot be found.
        """
        # SECURITY: Escape workflow name and version to prevent Rich markup injection
        tree = Tree(f"[bold]{escape(workflow.name)}[/] (v{escape(workflow.version)})")

        node_map = {n.id: n for n in workflow.nodes}
        edge_map = self._build_edge_map(workflow)

        entry = node_map.get(workflow.entry_point or "")
        if not entry:
            tree.add("[red]Error: Entry point node not found[/]")
            return tree

        self._add_node_to_tree(
            tree, entry, statuses, node_map, edge_map, visited=set(), depth=0, max_depth=max_depth
        )
        return tree

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: Node,
        statuses: dict[str, str] | None,
        node_map: dict[str, Node],
        edge_map: dict[str, list[Edge]],
        visited: set,
        depth: int = 0,
        max_depth: int = 50,
    ):
        """Recursively add nodes to tree with depth limiting."""
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        safe_label = escape(node.display_name)

        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (loop)[/]")
            return
        visited.add(node.id)

        symbol, color = self.NODE_STYLES.get(node.kind, ("[ ]", "white"))
        status = statuses.get(node.id) if statuses else None
        if status:
            status_color = self.STATUS_COLORS.get(status, "white")
            indicator = self.STATUS_INDICATORS.get(status, "")
            node_text = f"[{status_color}]{escape(symbol)} {safe_label}{indicator}[/]"
        else:
            node_text = f"[{color}]{escape(symbol)} {safe_label}[/]"

        branch = parent.add(node_text)

        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if not child:
                continue
            target = branch
            if edge.guard:
                target = branch.add(f"[dim]({escape(edge.guard)})[/]")
            self._add_node_to_tree(
                target,
                child,
                statuses,
                node_map,
                edge_map,
                visited.copy(),
                depth + 1,
                max_depth,
            )


class StatusTableRenderer:
    """Renders node execution status as a Rich table.

    SECURITY: All user-controlled strings (node labels, outputs, execution_id)
    are escaped to prevent Rich markup injection.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_status_table(self, workflow: WorkflowGraph, record: ExecutionRecord) -> Table:
        table = Table(title=f"Execution: {escape(record.id[:8])}...")

        table.add_column("Node", style="cyan")
        table.add_column("Kind", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Attempts", justify="right")
        table.add_column("Output / Error", max_width=40)

        statuses = node_statuses(record)
        for node in workflow.nodes:
            status = statuses.get(node.id, "pending")
            results = record.results_for(node.id)
            attempts = str(len(results)) if results else "-"
            last = results[-1] if results else None
            detail = ""
            if last is not None:
                detail = _short(last.error) if last.error else _short(last.output)

            if status == "completed":
                status_text = "[green]✓ Completed[/]"
            elif status == "failed":
                status_text = "[red]✗ Failed[/]"
            elif status == "retrying":
                status_text = "[yellow]⟳ Retrying[/]"
            elif status == "ready":
                status_text = "[yellow]○ Ready[/]"
            elif status == "waiting":
                status_text = "[yellow]⏸ Waiting[/]"
            elif status == "abandoned":
                status_text = "[dim]⊘ Abandoned[/]"
            else:
                status_text = "[dim]○ Pending[/]"

            table.add_row(escape(node.display_name), node.kind.value, status_text, attempts, detail)

        return table

    def render_approvals_table(self, record: ExecutionRecord) -> Table:
        table = Table(title="Pending approvals")
        table.add_column("Node", style="cyan")
        table.add_column("Prompt")
        table.add_column("Approvers")
        table.add_column("Expires")
        for pending in record.pending_approvals:
            table.add_row(
                escape(pending.node_id),
                escape(pending.prompt),
                escape(", ".join(pending.approvers) or "anyone"),
                pending.expires_at.isoformat(timespec="seconds"),
            )
        return table
