"""Ticket workflow state machine.

Every legal move lives in TRANSITIONS. A record is classified into one
lifecycle state, the requested action is looked up, and the resulting
field patch is built here so that numbering, rejection and trash
metadata are cleared consistently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from errors import IllegalTransitionError, ValidationError
from models import HeaderOverrides, RowOverride, TicketRecord, WorkflowStatus

log = logging.getLogger("service_tickets.workflow")


# Invoicing pipeline, only meaningful once a ticket number exists
INVOICING_STEPS = [
    WorkflowStatus.APPROVED,
    WorkflowStatus.PDF_EXPORTED,
    WorkflowStatus.QBO_CREATED,
    WorkflowStatus.SENT_TO_CNRL,
    WorkflowStatus.CNRL_APPROVED,
    WorkflowStatus.SUBMITTED_TO_CNRL,
]

STEP_TIMESTAMPS = {
    WorkflowStatus.PDF_EXPORTED: "pdf_exported_at",
    WorkflowStatus.SENT_TO_CNRL: "sent_to_cnrl_at",
    WorkflowStatus.CNRL_APPROVED: "cnrl_approved_at",
    WorkflowStatus.SUBMITTED_TO_CNRL: "submitted_to_cnrl_at",
}

STATUS_LABELS = {
    WorkflowStatus.DRAFT: "Draft",
    WorkflowStatus.REJECTED: "Rejected",
    WorkflowStatus.APPROVED: "Approved",
    WorkflowStatus.PDF_EXPORTED: "PDF Exported",
    WorkflowStatus.QBO_CREATED: "QBO Invoice",
    WorkflowStatus.SENT_TO_CNRL: "Sent to CNRL",
    WorkflowStatus.CNRL_APPROVED: "CNRL Approved",
    WorkflowStatus.SUBMITTED_TO_CNRL: "Submitted",
}

UNLOCKED_STATUSES = {WorkflowStatus.DRAFT, WorkflowStatus.REJECTED}


class TicketState(str, Enum):
    DRAFT = "draft"
    REJECTED = "rejected"
    SUBMITTED = "submitted"
    NUMBERED = "numbered"
    DISCARDED = "discarded"


class Action(str, Enum):
    SUBMIT = "submit"
    WITHDRAW = "withdraw"
    REJECT = "reject"
    APPROVE = "approve"
    UNAPPROVE = "unapprove"
    TRASH = "trash"
    RESTORE = "restore"
    ADVANCE = "advance"
    REVERT = "revert"


class EditPermission(str, Enum):
    NONE = "none"
    HEADER_ONLY = "header_only"
    FULL = "full"


@dataclass(frozen=True)
class Actor:
    id: str
    is_admin: bool = False


@dataclass(frozen=True)
class Transition:
    target: TicketState
    admin_only: bool = False


TRANSITIONS: dict[tuple[TicketState, Action], Transition] = {
    (TicketState.DRAFT, Action.SUBMIT): Transition(TicketState.SUBMITTED),
    (TicketState.REJECTED, Action.SUBMIT): Transition(TicketState.SUBMITTED),
    (TicketState.SUBMITTED, Action.WITHDRAW): Transition(TicketState.DRAFT),
    (TicketState.SUBMITTED, Action.REJECT): Transition(TicketState.REJECTED, admin_only=True),
    (TicketState.SUBMITTED, Action.APPROVE): Transition(TicketState.NUMBERED, admin_only=True),
    (TicketState.NUMBERED, Action.UNAPPROVE): Transition(TicketState.SUBMITTED, admin_only=True),
    (TicketState.NUMBERED, Action.ADVANCE): Transition(TicketState.NUMBERED, admin_only=True),
    (TicketState.NUMBERED, Action.REVERT): Transition(TicketState.NUMBERED, admin_only=True),
    (TicketState.DRAFT, Action.TRASH): Transition(TicketState.DISCARDED),
    (TicketState.REJECTED, Action.TRASH): Transition(TicketState.DISCARDED),
    (TicketState.SUBMITTED, Action.TRASH): Transition(TicketState.DISCARDED, admin_only=True),
    (TicketState.NUMBERED, Action.TRASH): Transition(TicketState.DISCARDED, admin_only=True),
    (TicketState.DISCARDED, Action.RESTORE): Transition(TicketState.DRAFT),
}

_CLEAR_NUMBER = {
    "ticket_number": None,
    "sequence_number": None,
    "year": None,
    "approved_by_admin_id": None,
}


def _unlocked(patch: dict[str, Any], header_overrides: HeaderOverrides | None) -> dict[str, Any]:
    """Patch for a ticket going back to draft: the row snapshot is dropped."""
    patch["row_snapshot"] = {}
    if header_overrides is not None:
        patch["header_overrides"] = header_overrides
    return patch


def is_locked(record: TicketRecord | None) -> bool:
    """Submitted or numbered, and not in the trash."""
    if record is None or record.is_discarded:
        return False
    status = WorkflowStatus.parse(record.workflow_status)
    return status not in UNLOCKED_STATUSES or bool(record.ticket_number)


def classify(record: TicketRecord | None) -> TicketState:
    """Lifecycle bucket of a record; a ticket with no record yet is a draft."""
    if record is None:
        return TicketState.DRAFT
    if record.is_discarded:
        return TicketState.DISCARDED
    if record.ticket_number:
        return TicketState.NUMBERED
    status = WorkflowStatus.parse(record.workflow_status)
    if status == WorkflowStatus.DRAFT:
        return TicketState.DRAFT
    if status == WorkflowStatus.REJECTED:
        return TicketState.REJECTED
    return TicketState.SUBMITTED


def is_resubmitted(record: TicketRecord | None) -> bool:
    return classify(record) == TicketState.SUBMITTED and record is not None and record.rejected_at is not None


def display_label(record: TicketRecord | None) -> str:
    if record is None:
        return "Draft"
    state = classify(record)
    if state == TicketState.DISCARDED:
        return "Trashed"
    if state == TicketState.NUMBERED:
        return STATUS_LABELS[WorkflowStatus.parse(record.workflow_status)]
    if state == TicketState.SUBMITTED:
        return "Resubmitted" if is_resubmitted(record) else "Submitted"
    if state == TicketState.REJECTED:
        return "Rejected"
    return "Restored" if record.restored_at is not None else "Draft"


def edit_permission(record: TicketRecord | None, actor: Actor) -> EditPermission:
    state = classify(record)
    if state == TicketState.DISCARDED:
        return EditPermission.NONE
    if state in (TicketState.DRAFT, TicketState.REJECTED):
        return EditPermission.FULL
    if not actor.is_admin:
        return EditPermission.NONE
    if state == TicketState.SUBMITTED:
        return EditPermission.FULL
    # Numbered: header corrections only, source rows stay as approved
    return EditPermission.HEADER_ONLY


def invoicing_step(record: TicketRecord) -> int:
    status = WorkflowStatus.parse(record.workflow_status)
    return INVOICING_STEPS.index(status) if status in INVOICING_STEPS else 0


class WorkflowStateMachine:
    """Validates workflow actions and builds the record patch for each."""

    def __init__(self, now=datetime.now):
        self._now = now

    def lookup(self, record: TicketRecord | None, action: Action, actor: Actor) -> Transition:
        state = classify(record)
        transition = TRANSITIONS.get((state, action))
        if transition is None:
            raise IllegalTransitionError(state.value, action.value)
        if transition.admin_only and not actor.is_admin:
            raise IllegalTransitionError(state.value, action.value, "administrator only")
        return transition

    def legal_actions(self, record: TicketRecord | None, actor: Actor) -> list[Action]:
        actions = []
        for action in Action:
            try:
                self.lookup(record, action, actor)
            except IllegalTransitionError:
                continue
            if action == Action.ADVANCE and invoicing_step(record) >= len(INVOICING_STEPS) - 1:
                continue
            if action == Action.REVERT and invoicing_step(record) == 0:
                continue
            actions.append(action)
        return actions

    def transition(self, record: TicketRecord, action: Action, actor: Actor, **details: Any) -> dict[str, Any]:
        """Validate ``action`` against ``record`` and return the field patch."""
        self.lookup(record, action, actor)
        builder = getattr(self, f"_{action.value}")
        patch = builder(record, actor, **details)
        log.info("Ticket %s: %s by %s", record.id, action.value, actor.id)
        return patch

    def _submit(
        self,
        record: TicketRecord,
        actor: Actor,
        header_overrides: HeaderOverrides | None = None,
        row_snapshot: dict[str, RowOverride] | None = None,
        total_hours: Decimal | None = None,
        total_amount: Decimal | None = None,
    ) -> dict[str, Any]:
        # rejected_at stays so the ticket shows as resubmitted
        patch: dict[str, Any] = {
            "workflow_status": WorkflowStatus.APPROVED,
            "rejection_notes": None,
            "restored_at": None,
        }
        if header_overrides is not None:
            patch["header_overrides"] = header_overrides
        if row_snapshot is not None:
            patch["row_snapshot"] = row_snapshot
        if total_hours is not None:
            patch["total_hours"] = total_hours
        if total_amount is not None:
            patch["total_amount"] = total_amount
        return patch

    def _withdraw(
        self, record: TicketRecord, actor: Actor, header_overrides: HeaderOverrides | None = None
    ) -> dict[str, Any]:
        return _unlocked({"workflow_status": WorkflowStatus.DRAFT}, header_overrides)

    def _reject(
        self,
        record: TicketRecord,
        actor: Actor,
        notes: str | None = None,
        header_overrides: HeaderOverrides | None = None,
    ) -> dict[str, Any]:
        return _unlocked({
            **_CLEAR_NUMBER,
            "workflow_status": WorkflowStatus.REJECTED,
            "rejected_at": self._now(),
            "rejection_notes": (notes or "").strip() or None,
        }, header_overrides)

    def _approve(
        self,
        record: TicketRecord,
        actor: Actor,
        ticket_number: str | None = None,
        sequence_number: int | None = None,
        year: int | None = None,
        employee_initials: str | None = None,
        header_overrides: HeaderOverrides | None = None,
        row_snapshot: dict[str, RowOverride] | None = None,
        total_hours: Decimal | None = None,
        total_amount: Decimal | None = None,
    ) -> dict[str, Any]:
        if not ticket_number:
            raise ValidationError("Approval requires an allocated ticket number")
        patch: dict[str, Any] = {
            "ticket_number": ticket_number,
            "sequence_number": sequence_number,
            "year": year,
            "workflow_status": WorkflowStatus.APPROVED,
            "approved_by_admin_id": actor.id,
            "rejected_at": None,
            "rejection_notes": None,
        }
        if employee_initials:
            patch["employee_initials"] = employee_initials
        if header_overrides is not None:
            patch["header_overrides"] = header_overrides
        if row_snapshot is not None:
            patch["row_snapshot"] = row_snapshot
        if total_hours is not None:
            patch["total_hours"] = total_hours
        if total_amount is not None:
            patch["total_amount"] = total_amount
        return patch

    def _unapprove(self, record: TicketRecord, actor: Actor) -> dict[str, Any]:
        return {**_CLEAR_NUMBER, "workflow_status": WorkflowStatus.APPROVED}

    def _trash(self, record: TicketRecord, actor: Actor) -> dict[str, Any]:
        return {**_CLEAR_NUMBER, "is_discarded": True}

    def _restore(
        self, record: TicketRecord, actor: Actor, header_overrides: HeaderOverrides | None = None
    ) -> dict[str, Any]:
        return _unlocked({
            **_CLEAR_NUMBER,
            "is_discarded": False,
            "restored_at": self._now(),
            "workflow_status": WorkflowStatus.DRAFT,
            "rejected_at": None,
            "rejection_notes": None,
        }, header_overrides)

    def _advance(self, record: TicketRecord, actor: Actor, **details: Any) -> dict[str, Any]:
        step = invoicing_step(record)
        if step >= len(INVOICING_STEPS) - 1:
            raise IllegalTransitionError("fully invoiced", Action.ADVANCE.value)
        target = INVOICING_STEPS[step + 1]
        patch: dict[str, Any] = {"workflow_status": target}
        if target in STEP_TIMESTAMPS:
            patch[STEP_TIMESTAMPS[target]] = self._now()
        if target == WorkflowStatus.QBO_CREATED:
            patch["qbo_invoice_id"] = details.get("qbo_invoice_id")
            patch["qbo_invoice_number"] = details.get("qbo_invoice_number")
        if target == WorkflowStatus.SUBMITTED_TO_CNRL:
            patch["cnrl_notes"] = details.get("notes")
        return patch

    def _revert(self, record: TicketRecord, actor: Actor) -> dict[str, Any]:
        step = invoicing_step(record)
        if step == 0:
            raise IllegalTransitionError("approved", Action.REVERT.value, "no earlier invoicing step")
        return {"workflow_status": INVOICING_STEPS[step - 1]}


def apply_patch(record: TicketRecord, patch: dict[str, Any]) -> TicketRecord:
    """Return a copy of ``record`` with ``patch`` applied."""
    return replace(record, **patch)
