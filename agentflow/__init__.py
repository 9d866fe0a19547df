"""agentflow - workflow graph execution engine.

Runs declarative graphs of agent tasks with branching, loops, parallel
fan-out, human approval gates and retries.
"""

__version__ = "0.1.0"
