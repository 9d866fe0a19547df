"""CLI UI components for terminal-based workflow visualization.

This package provides rich terminal UI capabilities for:
- Visualizing workflow graphs as trees
- Execution status tables
"""

from agentflow.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
]
