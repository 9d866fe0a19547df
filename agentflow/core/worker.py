"""Background worker for graph workflow execution.

This module implements workers that drive executions by calling
``GraphOrchestrator.execute_next_batch`` repeatedly. Supports both
single-execution and daemon modes.
"""

import asyncio
import logging

from agentflow.core.graph_engine import GraphOrchestrator
from agentflow.core.models import ExecutionStatus

logger = logging.getLogger(__name__)


class WorkflowWorker:
    """
    Background worker that executes workflows.

    Design:
    - Each batch runs until the execution has nothing in flight
    - Daemon mode drives every running execution side by side
    - Sleeps only when nothing was ready (retry delays, approval waits)
    """

    def __init__(self, orchestrator: GraphOrchestrator, poll_interval: float = 1.0):
        self.orchestrator = orchestrator
        self.poll_interval = poll_interval
        self.running = False

    async def run_until_complete(
        self, execution_id: str, wait_for_approvals: bool = False
    ) -> ExecutionStatus:
        """
        Drive a single execution until it stops making progress.

        Returns the final status when the run is terminal or paused. A run that
        only waits for approvals returns RUNNING unless ``wait_for_approvals``
        is set, in which case the worker keeps polling until a decision arrives
        or the approval expires.
        """
        while True:
            record = await self.orchestrator.get_status(execution_id)
            if record.status != ExecutionStatus.RUNNING:
                return record.status

            executed = await self.orchestrator.execute_next_batch(execution_id)
            if executed:
                continue

            record = await self.orchestrator.get_status(execution_id)
            if record.status != ExecutionStatus.RUNNING:
                return record.status

            wait = self.orchestrator.seconds_until_ready(record)
            if wait is None and not wait_for_approvals:
                logger.info(
                    f"Execution {execution_id} is waiting on "
                    f"{len(record.pending_approvals)} approval(s)"
                )
                return record.status

            # Only sleep when no work was done
            if wait is None or wait <= 0:
                wait = self.poll_interval
            await asyncio.sleep(min(wait, self.poll_interval))

    async def start_daemon(self):
        """
        Start daemon mode - process all running executions.
        """
        self.running = True

        while self.running:
            try:
                active = await asyncio.to_thread(
                    self.orchestrator.db.list_executions, [ExecutionStatus.RUNNING]
                )
                await asyncio.gather(
                    *(self.orchestrator.execute_next_batch(eid) for eid, _, _ in active)
                )

            except Exception as e:
                logger.error(f"Worker error: {e}")

            await asyncio.sleep(self.poll_interval)

    def stop(self):
        """Stop the worker daemon"""
        self.running = False
