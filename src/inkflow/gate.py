from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from inkflow.backends.base import AuditLog, DocumentStore
from inkflow.errors import InkflowError
from inkflow.models import AuditStatus, ModifyFileAction
from inkflow.patches import DiffPart, diff_lines, reconcile, render_unified

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]
ProposalState = Literal[
    "proposed",
    "auto_applying",
    "pending_review",
    "approved",
    "rejected",
    "applied",
    "discarded",
]
RESOLVED_STATES = frozenset({"applied", "discarded"})
AUDIT_FAILED_REASON = "audit write failed"


@dataclass(slots=True)
class Proposal:
    action: ModifyFileAction
    document_ref: str
    state: ProposalState = "proposed"
    reason: str = ""
    audit_status: AuditStatus | None = None

    @property
    def resolved(self) -> bool:
        return self.state in RESOLVED_STATES


@dataclass(slots=True, frozen=True)
class GateOutcome:
    state: ProposalState | None
    applied: bool = False
    busy: bool = False
    reason: str = ""


class ConfirmationGate:
    """Decides whether a proposed file modification is applied now or after review.

    Apply, approve and reject share one in-flight guard; while it is held every
    other action is refused locally and reported as busy.
    """

    def __init__(
        self,
        documents: DocumentStore,
        audit: AuditLog | None = None,
        *,
        auto_accept: bool = False,
        event_hook: EventHook | None = None,
    ) -> None:
        self.documents = documents
        self.audit = audit
        self.auto_accept = auto_accept
        self.event_hook = event_hook
        self.proposal: Proposal | None = None
        self._applying = False

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @property
    def is_applying(self) -> bool:
        return self._applying

    def _outcome(self, *, applied: bool = False, busy: bool = False) -> GateOutcome:
        if self.proposal is None:
            return GateOutcome(state=None, busy=busy)
        return GateOutcome(
            state=self.proposal.state,
            applied=applied,
            busy=busy,
            reason=self.proposal.reason,
        )

    def _busy(self, action: str) -> GateOutcome:
        logger.info("%s refused: another apply is in flight", action)
        self._emit({"event": "gate_busy", "action": action})
        return self._outcome(busy=True)

    def diff(self) -> list[DiffPart]:
        if self.proposal is None:
            return []
        return diff_lines(self.proposal.action.original_content, self.proposal.action.new_content)

    def unified_diff(self) -> str:
        if self.proposal is None:
            return ""
        action = self.proposal.action
        return render_unified(action.original_content, action.new_content, action.file_path)

    def _hold_for_review(self, reason: str = "") -> None:
        if self.proposal is None:
            return
        self.proposal.state = "pending_review"
        self.proposal.reason = reason
        self._emit(
            {
                "event": "proposal_pending_review",
                "file_path": self.proposal.action.file_path,
                "log_id": self.proposal.action.log_id,
                "reason": reason,
            }
        )

    async def propose(self, action: ModifyFileAction, document_ref: str) -> GateOutcome:
        if self._applying:
            return self._busy("propose")
        if self.proposal is not None and not self.proposal.resolved:
            self._emit(
                {
                    "event": "proposal_superseded",
                    "file_path": self.proposal.action.file_path,
                    "log_id": self.proposal.action.log_id,
                }
            )
        self.proposal = Proposal(action=action, document_ref=document_ref)
        if not self.auto_accept:
            self._hold_for_review()
            return self._outcome()

        self.proposal.state = "auto_applying"
        return await self._guarded_apply("auto_approved")

    async def approve(self) -> GateOutcome:
        if self._applying:
            return self._busy("approve")
        if self.proposal is None or self.proposal.state != "pending_review":
            return self._outcome()
        self.proposal.state = "approved"
        return await self._guarded_apply("approved")

    async def reject(self) -> GateOutcome:
        if self._applying:
            return self._busy("reject")
        proposal = self.proposal
        if proposal is None or proposal.state != "pending_review":
            return self._outcome()

        self._applying = True
        proposal.state = "rejected"
        try:
            if proposal.action.log_id and self.audit is not None:
                await self.audit.update_audit_status(proposal.action.log_id, "rejected")
                proposal.audit_status = "rejected"
        except Exception:
            proposal.state = "pending_review"
            raise
        finally:
            self._applying = False

        proposal.state = "discarded"
        self._emit(
            {
                "event": "proposal_rejected",
                "file_path": proposal.action.file_path,
                "log_id": proposal.action.log_id,
            }
        )
        return self._outcome()

    async def _guarded_apply(self, status: AuditStatus) -> GateOutcome:
        self._applying = True
        try:
            return await self._apply(status)
        finally:
            self._applying = False

    async def _apply(self, status: AuditStatus) -> GateOutcome:
        proposal = self.proposal
        if proposal is None:
            return self._outcome()
        action = proposal.action

        try:
            current = await self.documents.read_document(proposal.document_ref)
            result = reconcile(current, action.original_content, action.new_content)
            if not result.applied:
                logger.info("could not locate original text in %s", proposal.document_ref)
                self._hold_for_review(result.reason)
                return self._outcome()
            await self.documents.apply_document_content(proposal.document_ref, result.content)
        except Exception:
            self._hold_for_review("apply failed")
            raise

        # The document has changed; from here on the proposal must never be re-applied.
        proposal.state = "applied"
        proposal.reason = ""
        if action.log_id and self.audit is not None:
            try:
                await self.audit.update_audit_status(action.log_id, status)
            except InkflowError as exc:
                logger.warning("audit write for %s failed: %s", action.log_id, exc)
                proposal.reason = f"{AUDIT_FAILED_REASON}: {exc}"
                self._emit(
                    {"event": "audit_write_failed", "log_id": action.log_id, "error": str(exc)}
                )
            else:
                proposal.audit_status = status
        self._emit(
            {
                "event": "proposal_applied",
                "file_path": action.file_path,
                "log_id": action.log_id,
                "status": status,
            }
        )
        return self._outcome(applied=True)
