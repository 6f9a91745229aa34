"""Human approval gate for run_command calls."""

import asyncio
import uuid
from dataclasses import dataclass, field

from watch_ai.exceptions import ApprovalCancelledError, ApprovalNotFoundError
from watch_ai.logging import get_logger

log = get_logger(__name__)


@dataclass
class PendingApproval:
    """A command waiting for a yes/no decision."""

    id: str
    command: str
    cwd: str
    tool_call_id: str = ""
    tool_name: str = "run_command"
    future: asyncio.Future = field(default=None, repr=False)

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "tool_call_id": self.tool_call_id,
            "command": self.command,
            "cwd": self.cwd,
        }


def _consume_exception(future: asyncio.Future) -> None:
    # Keeps asyncio from warning about cancelled approvals nobody awaited.
    if not future.cancelled():
        future.exception()


class ApprovalGate:
    """Table of pending approvals, each resolved exactly once.

    ``request`` registers an entry; ``resolve`` completes it with the decision
    and removes it; ``cancel_all`` fails every open entry with
    ``ApprovalCancelledError``.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingApproval] = {}

    def request(self, command: str, cwd: str, tool_call_id: str = "") -> PendingApproval:
        loop = asyncio.get_running_loop()
        approval = PendingApproval(
            id=f"appr_{uuid.uuid4().hex[:12]}",
            command=command,
            cwd=cwd,
            tool_call_id=tool_call_id,
            future=loop.create_future(),
        )
        approval.future.add_done_callback(_consume_exception)
        self._pending[approval.id] = approval
        log.info("Approval requested", approval_id=approval.id, command=command, cwd=cwd)
        return approval

    def get(self, approval_id: str) -> PendingApproval:
        try:
            return self._pending[approval_id]
        except KeyError:
            raise ApprovalNotFoundError(approval_id)

    def pending(self) -> list[PendingApproval]:
        return list(self._pending.values())

    def has_pending(self) -> bool:
        return bool(self._pending)

    def resolve(self, approval_id: str, approved: bool) -> PendingApproval:
        """Deliver a decision and drop the entry.

        Raises:
            ApprovalNotFoundError: unknown or already decided id
        """
        approval = self._pending.pop(approval_id, None)
        if approval is None:
            raise ApprovalNotFoundError(approval_id)
        if not approval.future.done():
            approval.future.set_result(bool(approved))
        log.info("Approval resolved", approval_id=approval_id, approved=bool(approved))
        return approval

    async def wait(self, approval_id: str) -> bool:
        """Block until a decision arrives for ``approval_id``."""
        approval = self.get(approval_id)
        return await approval.future

    def cancel_all(self, reason: str = "cancelled") -> list[PendingApproval]:
        """Fail every open entry and return them."""
        cancelled = list(self._pending.values())
        self._pending.clear()
        for approval in cancelled:
            if not approval.future.done():
                approval.future.set_exception(ApprovalCancelledError(approval.id, reason))
            log.info("Approval cancelled", approval_id=approval.id, reason=reason)
        return cancelled
