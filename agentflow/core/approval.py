"""Approval gate integration for human-in-the-loop workflows."""

import json
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from agentflow.core.graph_schema import Node
from agentflow.core.models import ApprovalResolution, PendingApproval, Token

logger = logging.getLogger(__name__)


class ApprovalError(Exception):
    """An approval decision could not be applied."""


class ApprovalDecision(str, Enum):
    """User decision for an approval gate."""

    APPROVE = "approve"
    REJECT = "reject"

    @classmethod
    def parse(cls, value: "ApprovalDecision | str") -> "ApprovalDecision":
        """Accept the enum, its value, or the past-tense spelling."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        aliases = {"approved": cls.APPROVE, "rejected": cls.REJECT}
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError:
            raise ApprovalError(f"Unknown approval decision: {value!r}") from None


class ApprovalGate:
    """Builds pending approvals and validates decisions against them.

    USAGE:
        gate = ApprovalGate()
        pending = gate.request(node, token, now)
        ...
        gate.check_approver(pending, "alice")
        resolution = gate.resolve(ApprovalDecision.APPROVE, approver="alice")
    """

    def request(self, node: Node, token: Token, now: datetime) -> PendingApproval:
        config = node.approval_config
        prompt = config.prompt or f"Approve output of '{node.display_name}'?"
        return PendingApproval(
            node_id=node.id,
            token_id=token.id,
            prompt=prompt,
            approvers=list(config.approvers),
            requested_at=now,
            expires_at=now + timedelta(hours=config.timeout_hours),
            data=token.input,
        )

    def check_approver(self, pending: PendingApproval, approver: str | None) -> None:
        """Raise ApprovalError if ``approver`` may not decide ``pending``."""
        if not pending.approvers:
            return
        if approver is None or approver not in pending.approvers:
            raise ApprovalError(
                f"'{approver}' is not an approver for node '{pending.node_id}' "
                f"(allowed: {', '.join(pending.approvers)})"
            )

    def is_expired(self, pending: PendingApproval, now: datetime) -> bool:
        return now >= pending.expires_at

    def resolve(
        self,
        decision: ApprovalDecision | str,
        approver: str | None = None,
        data: Any = None,
        comment: str | None = None,
    ) -> ApprovalResolution:
        decision = ApprovalDecision.parse(decision)
        return ApprovalResolution(
            decision="approved" if decision == ApprovalDecision.APPROVE else "rejected",
            approver=approver,
            data=data,
            comment=comment,
        )

    def expire(self) -> ApprovalResolution:
        return ApprovalResolution(decision="timeout")

    def prompt_cli(self, pending: PendingApproval) -> ApprovalDecision:
        """Interactive terminal approval. SYNCHRONOUS."""
        from rich.console import Console
        from rich.prompt import Confirm

        console = Console()
        console.print(f"\n[bold red]Approval Required[/bold red]: {pending.prompt}")
        console.print(f"Node: {pending.node_id}")
        console.print(f"Expires: {pending.expires_at.isoformat(timespec='seconds')}")
        if pending.data is not None:
            preview = json.dumps(pending.data, indent=2, default=str)
            lines = preview.splitlines()
            for line in lines[:10]:
                console.print(f"  {line}", markup=False)
            if len(lines) > 10:
                console.print(f"  ... and {len(lines) - 10} more lines")

        approved = Confirm.ask("Approve?", default=True)
        return ApprovalDecision.APPROVE if approved else ApprovalDecision.REJECT
