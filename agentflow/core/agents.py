"""Agent-execution collaborator interface.

The engine never talks to an LLM directly. AGENT nodes hand their rendered
instructions and input to an :class:`AgentClient`, await one typed result, and
let the orchestrator decide about retries.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

# Agent output larger than this is truncated before it reaches the record
MAX_OUTPUT_BYTES = 1_000_000


class CollaboratorError(Exception):
    """The agent-execution service failed to produce a result."""


class CollaboratorTimeout(CollaboratorError):
    """The agent-execution service did not answer in time."""


class CollaboratorCancelled(CollaboratorError):
    """The call was abandoned because the execution was cancelled."""


@dataclass
class CallContext:
    """Per-attempt call metadata.

    ``attempt_id`` is stable for a given token attempt so a collaborator can
    de-duplicate a call replayed after a crash. ``cancel_event`` is set when
    the execution is cancelled.
    """

    attempt_id: str
    execution_id: str = ""
    node_id: str = ""
    cancel_event: asyncio.Event | None = None


class AgentClient(Protocol):
    """Anything that can run a task on a named agent."""

    async def execute(
        self,
        agent: str,
        instructions: str,
        input_data: Any,
        timeout: float | None,
        call: CallContext,
    ) -> Any: ...


def _truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed."""
    encoded = output.encode("utf-8", errors="replace")
    if len(encoded) <= max_bytes:
        return output
    truncated = encoded[:max_bytes].decode("utf-8", errors="ignore")
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass


@dataclass
class SubprocessAgentClient:
    """Runs each agent as a local command.

    ``commands`` maps agent names to argv lists. The task is written to the
    command's stdin as a JSON document ``{"agent", "instructions", "input",
    "attempt_id"}``; whatever the command prints on stdout is the result.
    A non-zero exit status is a :class:`CollaboratorError`.
    """

    commands: dict[str, list[str]]
    env: dict[str, str] = field(default_factory=dict)
    max_output_bytes: int = MAX_OUTPUT_BYTES

    async def execute(
        self,
        agent: str,
        instructions: str,
        input_data: Any,
        timeout: float | None,
        call: CallContext,
    ) -> Any:
        command = self.commands.get(agent)
        if not command:
            raise CollaboratorError(f"No command configured for agent '{agent}'")

        payload = json.dumps(
            {
                "agent": agent,
                "instructions": instructions,
                "input": input_data,
                "attempt_id": call.attempt_id,
            },
            default=str,
        ).encode("utf-8")

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env},
            )
        except (FileNotFoundError, PermissionError) as e:
            raise CollaboratorError(f"Cannot start agent '{agent}': {e}") from e

        communicate = asyncio.ensure_future(proc.communicate(payload))
        waiters: set[asyncio.Future] = {communicate}
        cancel_wait = None
        if call.cancel_event is not None:
            cancel_wait = asyncio.ensure_future(call.cancel_event.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()
            if not communicate.done():
                # Timed out, cancelled, or the surrounding task was cancelled
                _kill(proc)
                communicate.cancel()

        if communicate not in done:
            if cancel_wait is not None and cancel_wait in done:
                raise CollaboratorCancelled(f"Agent '{agent}' call cancelled")
            raise CollaboratorTimeout(f"Agent '{agent}' timed out after {timeout}s")

        stdout, stderr = communicate.result()
        out = stdout.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace").strip() or out
            raise CollaboratorError(
                f"Agent '{agent}' exited with status {proc.returncode}: {err[:500]}"
            )
        logger.debug(f"Agent '{agent}' returned {len(out)} characters ({call.attempt_id})")
        return _truncate_output(out, self.max_output_bytes)
