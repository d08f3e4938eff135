"""Service ticket board: reconciliation plus the actions users take on tickets.

TicketBoard wires the pure pieces together over the sqlite store. It loads
entries and records for a date range, matches and merges them into display
tickets, and runs workflow actions, saves and exports. Every action either
completes or raises a ServiceTicketError; in-memory editor state is only
touched after the store call succeeds.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import date
from pathlib import Path
from typing import Any

import storage
from aggregator import aggregate_entries, entries_to_service_rows, entry_key, resolve_rates
from batch import BatchResult, run_batch
from editor import EditorSession, EditTracker
from errors import NotFoundError, ValidationError
from exporter import ExcelExporter
from matcher import RecordMatcher
from models import (
    UNASSIGNED,
    Config,
    Customer,
    DisplayTicket,
    HeaderFields,
    HeaderOverrides,
    Rates,
    RowOverride,
    ServiceRow,
    TicketAggregate,
    TicketKey,
    TicketRecord,
    TimeEntry,
    WorkflowStatus,
)
from numbering import Allocation, allocate
from overrides import (
    aggregate_header,
    build_display_ticket,
    build_standalone_ticket,
    compute_entry_overrides,
    compute_totals,
    live_header,
    merge_rates,
    rows_equal,
    snapshot_rows,
    unlocked_header_overrides,
)
from utils import norm_str
from workflow import (
    Action,
    Actor,
    EditPermission,
    TicketState,
    WorkflowStateMachine,
    classify,
    edit_permission,
    is_locked,
    is_resubmitted,
)

log = logging.getLogger("service_tickets.tickets")

CUSTOMER_HEADER_FIELDS = {
    "customer_name": lambda c: c.name,
    "address": lambda c: c.address,
    "city_state": lambda c: c.city_state,
    "zip_code": lambda c: c.zip_code,
    "phone": lambda c: c.phone,
    "email": lambda c: c.email,
    "contact_name": lambda c: c.contact_name,
    "location_code": lambda c: c.location_code,
    "po_number": lambda c: c.po_number,
}


@dataclass
class Board:
    """Result of one reconciliation pass."""

    tickets: list[DisplayTicket] = field(default_factory=list)
    trashed: list[DisplayTicket] = field(default_factory=list)
    records: dict[str, TicketRecord] = field(default_factory=dict)

    def record_for(self, ticket: DisplayTicket) -> TicketRecord | None:
        return self.records.get(ticket.record_id) if ticket.record_id else None

    def state_of(self, ticket: DisplayTicket) -> TicketState:
        return classify(self.record_for(ticket))

    def in_state(self, *states: TicketState) -> list[DisplayTicket]:
        return [t for t in self.tickets if self.state_of(t) in states]


class TicketBoard:
    def __init__(
        self,
        actor: Actor,
        config: Config | None = None,
        matcher: RecordMatcher | None = None,
        workflow: WorkflowStateMachine | None = None,
        exporter: ExcelExporter | None = None,
    ):
        self.actor = actor
        self.config = config or storage.get_config()
        self.matcher = matcher or RecordMatcher()
        self.workflow = workflow or WorkflowStateMachine()
        self.exporter = exporter or ExcelExporter(storage.DB_PATH.parent / "exports")
        self.tracker: EditTracker | None = None
        self.board = Board()
        # Board, matcher and editor state are shared by bulk workers
        self._lock = threading.Lock()
        self._aggregates: dict[TicketKey, TicketAggregate] = {}
        self.technicians = {}
        self.customers = {}
        self.projects = {}

    # -- loading --

    def refresh_lookups(self) -> None:
        self.technicians = {t.id: t for t in storage.list_technicians()}
        self.customers = {c.id: c for c in storage.list_customers()}
        self.projects = {p.id: p for p in storage.list_projects()}

    def _scope(self) -> str | None:
        """Technician filter: admins see everyone, others only themselves."""
        return None if self.actor.is_admin else self.actor.id

    def load(self, start: date, end: date) -> Board:
        """Reconcile entries and records in [start, end] into a Board."""
        self.refresh_lookups()
        demo = self.config.demo_mode
        entries = storage.list_time_entries(start, end, technician_id=self._scope(), is_demo=demo)
        records = storage.query_ticket_records(start, end, technician_id=self._scope(), is_demo=demo)
        aggregates = aggregate_entries(entries, self.technicians, self.customers, self.projects, self.config)
        self._aggregates = {a.key: a for a in aggregates}

        open_id = self.tracker.session.record_id if self.tracker else None
        result = self.matcher.match(aggregates, records, open_record_id=open_id)

        board = Board(records={r.id: r for r in records})
        for aggregate in aggregates:
            ticket = build_display_ticket(aggregate, result.record_for(aggregate))
            (board.trashed if ticket.is_discarded else board.tickets).append(ticket)
        for record in result.standalone:
            board.tickets.append(self._standalone(record))
        for record in result.trashed:
            board.trashed.append(self._standalone(record))
        self.board = board
        log.info("Loaded %d tickets (%d trashed) for %s..%s", len(board.tickets), len(board.trashed), start, end)
        return board

    def _standalone(self, record: TicketRecord) -> DisplayTicket:
        return build_standalone_ticket(
            record,
            technician=self.technicians.get(record.technician_id),
            customer=self.customers.get(record.customer_id) if record.customer_id else None,
            project=self.projects.get(record.project_id) if record.project_id else None,
            default_rates=self.config.default_rates,
        )

    def _live(self, key: TicketKey) -> tuple[HeaderFields, list[ServiceRow], Rates]:
        """Live header, rows and rates for a ticket key."""
        aggregate = self._aggregates.get(key)
        if aggregate is not None:
            return aggregate_header(aggregate), entries_to_service_rows(aggregate.entries), aggregate.rates
        technician = self.technicians.get(key.technician_id)
        customer = self.customers.get(key.customer_id)
        project = self.projects.get(key.project_id) if key.project_id else None
        header = live_header(key.date, key.location, key.billing_key, technician, customer, project)
        return header, [], resolve_rates(technician, project, self.config.default_rates)

    def _record(self, record_id: str) -> TicketRecord:
        record = storage.get_ticket_record(record_id)
        if record is None:
            raise NotFoundError(f"Ticket record {record_id} not found")
        return record

    def _ensure_record(self, ticket: DisplayTicket) -> TicketRecord:
        """Existing record for the ticket, or a new draft one."""
        if ticket.record_id:
            return self._record(ticket.record_id)
        key = ticket.key
        if not key.customer_id or key.customer_id == UNASSIGNED:
            raise ValidationError("Assign a customer to this ticket before saving it")
        record = storage.create_ticket_record(TicketRecord(
            id="",
            date=key.date,
            technician_id=key.technician_id,
            customer_id=key.customer_id,
            project_id=key.project_id,
            location=key.location,
            employee_initials=ticket.technician_initials,
            is_demo=ticket.is_demo or self.config.demo_mode,
        ))
        ticket.record_id = record.id
        with self._lock:
            self.matcher.link(key, record.id)
            if self.tracker is not None and self.tracker.session.key == key:
                self.tracker.session.record_id = record.id
        return record

    # -- editor --

    def open_ticket(self, ticket: DisplayTicket) -> EditTracker:
        record = storage.get_ticket_record(ticket.record_id) if ticket.record_id else None
        permission = edit_permission(record, self.actor)
        if record is not None and record.restored_at is not None and permission != EditPermission.NONE:
            # "Restored" only shows until the ticket is next opened
            record = storage.update_ticket_record(record.id, {"restored_at": None})
            self.board.records[record.id] = record
        expenses = storage.list_expenses(record.id) if record else []
        self.tracker = EditTracker(EditorSession.open(ticket, permission, expenses))
        log.debug("Opened ticket %s (%s)", ticket.key, permission.value)
        return self.tracker

    def _require_open(self) -> EditTracker:
        if self.tracker is None:
            raise ValidationError("No ticket is open")
        return self.tracker

    def _header_overrides(self, tracker: EditTracker, live: HeaderFields, record: TicketRecord) -> HeaderOverrides:
        """Overrides for fields that differ from live values; rate snapshot kept.

        Locked records keep their whole snapshot and only take the fields
        edited in this session.
        """
        header = tracker.session.header
        previous = record.header_overrides
        if is_locked(record):
            overrides = replace(previous)
            for name in tracker.dirty_fields():
                setattr(overrides, name, getattr(header, name))
            return overrides
        overrides = HeaderOverrides(
            rate_rt=previous.rate_rt,
            rate_tt=previous.rate_tt,
            rate_ft=previous.rate_ft,
            rate_shop_ot=previous.rate_shop_ot,
            rate_field_ot=previous.rate_field_ot,
        )
        for name, value in header.as_dict().items():
            if norm_str(value) != norm_str(getattr(live, name)):
                setattr(overrides, name, value)
        return overrides

    def _row_overrides(
        self, tracker: EditTracker, live_rows: list[ServiceRow], record: TicketRecord
    ) -> dict[str, RowOverride]:
        """Row overrides after a save, only rows that differ from their live entry.

        On a locked ticket the open rows come from the submitted snapshot, so
        only rows changed in this session are compared with live values.
        """
        rows = tracker.session.rows
        if not is_locked(record):
            return compute_entry_overrides(rows, live_rows)
        initial = {row.id: row for row in tracker.session.initial_rows}
        changed = [row for row in rows if row.id not in initial or not rows_equal(row, initial[row.id])]
        changed_ids = {row.id for row in changed}
        current_ids = {row.id for row in rows}
        overrides = {
            row_id: override
            for row_id, override in record.edited_entry_overrides.items()
            if row_id in current_ids and row_id not in changed_ids
        }
        overrides.update(compute_entry_overrides(changed, live_rows))
        return overrides

    def save(self) -> TicketRecord | None:
        """Persist the open ticket's edits. Returns None if nothing changed."""
        tracker = self._require_open()
        session = tracker.session
        if not tracker.has_pending_changes:
            return None
        if session.permission == EditPermission.NONE:
            raise ValidationError("This ticket is read-only")

        technician = self.technicians.get(session.key.technician_id)
        ticket = DisplayTicket(
            session.key, session.header, session.rows, Rates(),
            technician.initials if technician else "XX",
            record_id=session.record_id,
        )
        aggregate = self._aggregates.get(session.key)
        if aggregate is not None:
            ticket.is_demo = aggregate.is_demo
        record = self._ensure_record(ticket)
        live_header_fields, live_rows, live_rates = self._live(session.key)

        patch: dict[str, Any] = {
            "header_overrides": self._header_overrides(tracker, live_header_fields, record),
        }
        if session.permission == EditPermission.FULL:
            rates = merge_rates(live_rates, record)
            hours, amount = compute_totals(session.rows, rates)
            patch["edited_entry_overrides"] = self._row_overrides(tracker, live_rows, record)
            if is_locked(record):
                patch["row_snapshot"] = snapshot_rows(session.rows)
            patch["total_hours"] = hours
            patch["total_amount"] = amount
            if record.has_legacy_edits:
                # Rows now carry the legacy edits as entry overrides
                patch.update(is_edited=False, edited_hours={}, edited_descriptions={})

        updated = storage.update_ticket_record(record.id, patch)
        for expense_id in session.pending_expense_deletes:
            storage.delete_expense(expense_id)
        for expense in session.pending_expense_adds:
            expense.ticket_id = updated.id
            storage.create_expense(expense)
        session.expenses = storage.list_expenses(updated.id)
        tracker.mark_saved(updated.id)
        log.info("Saved ticket %s", updated.id)
        return updated

    def close(self, save: bool = False) -> None:
        """Close the editor, optionally saving first. Unsaved edits are dropped."""
        if self.tracker is None:
            return
        if save:
            self.save()
        else:
            self.tracker.discard()
        record_id = self.tracker.session.record_id
        self.tracker = None
        if record_id:
            self.discard_orphaned_draft(record_id)

    # -- workflow --

    def _checked_record(self, ticket: DisplayTicket, action: Action) -> TicketRecord:
        """Validate the action, then fetch or lazily create the record."""
        existing = self._record(ticket.record_id) if ticket.record_id else None
        self.workflow.lookup(existing, action, self.actor)
        return existing or self._ensure_record(ticket)

    def _transition(self, ticket: DisplayTicket, action: Action, **details: Any) -> TicketRecord:
        record = self._checked_record(ticket, action)
        patch = self.workflow.transition(record, action, self.actor, **details)
        return storage.update_ticket_record(record.id, patch)

    def _current(self, ticket: DisplayTicket) -> tuple[HeaderFields, list[ServiceRow]]:
        """Header and rows as shown, including unsaved edits in the open editor."""
        tracker = self.tracker
        if tracker is not None and tracker.session.key == ticket.key:
            return tracker.session.header, tracker.session.rows
        return ticket.header, ticket.rows

    def _snapshot(self, ticket: DisplayTicket, with_rates: bool) -> dict[str, Any]:
        """Header, rows and totals frozen into the record at submit/approve."""
        header, rows = self._current(ticket)
        hours, amount = compute_totals(rows, ticket.rates)
        return {
            "header_overrides": HeaderOverrides.from_header(header, ticket.rates if with_rates else None),
            "row_snapshot": snapshot_rows(rows),
            "total_hours": hours,
            "total_amount": amount,
        }

    def submit(self, ticket: DisplayTicket) -> TicketRecord:
        record = self._checked_record(ticket, Action.SUBMIT)
        snapshot = self._snapshot(ticket, with_rates=False)
        patch = self.workflow.transition(record, Action.SUBMIT, self.actor, **snapshot)
        # Unsaved row edits are kept as overrides so they survive a withdraw
        _, rows = self._current(ticket)
        patch["edited_entry_overrides"] = compute_entry_overrides(rows, self._live(ticket.key)[1])
        updated = storage.update_ticket_record(record.id, patch)
        self._after_transition(updated)
        return updated

    def _back_to_draft(self, ticket: DisplayTicket, action: Action, **details: Any) -> TicketRecord:
        """Run an unlocking transition, thawing the submitted header and rows."""
        record = self._checked_record(ticket, action)
        live_header_fields = self._live(ticket.key)[0]
        patch = self.workflow.transition(
            record,
            action,
            self.actor,
            header_overrides=unlocked_header_overrides(record.header_overrides, live_header_fields),
            **details,
        )
        return self._after_transition(storage.update_ticket_record(record.id, patch))

    def withdraw(self, ticket: DisplayTicket) -> TicketRecord:
        return self._back_to_draft(ticket, Action.WITHDRAW)

    def reject(self, ticket: DisplayTicket, notes: str | None = None) -> TicketRecord:
        return self._back_to_draft(ticket, Action.REJECT, notes=notes)

    def unapprove(self, ticket: DisplayTicket) -> TicketRecord:
        return self._after_transition(self._transition(ticket, Action.UNAPPROVE))

    def trash(self, ticket: DisplayTicket) -> TicketRecord:
        return self._after_transition(self._transition(ticket, Action.TRASH))

    def restore(self, ticket: DisplayTicket) -> TicketRecord:
        return self._back_to_draft(ticket, Action.RESTORE)

    def advance(self, ticket: DisplayTicket, **details: Any) -> TicketRecord:
        return self._after_transition(self._transition(ticket, Action.ADVANCE, **details))

    def revert(self, ticket: DisplayTicket) -> TicketRecord:
        return self._after_transition(self._transition(ticket, Action.REVERT))

    def approve(self, ticket: DisplayTicket) -> TicketRecord:
        """Allocate a ticket number and freeze header, rates, rows and totals."""
        record = self._checked_record(ticket, Action.APPROVE)
        technician = self.technicians.get(record.technician_id)
        initials = technician.initials if technician else record.employee_initials
        year = record.date.year
        snapshot = self._snapshot(ticket, with_rates=True)

        def assign(allocation: Allocation) -> None:
            patch = self.workflow.transition(
                record,
                Action.APPROVE,
                self.actor,
                ticket_number=allocation.ticket_number,
                sequence_number=allocation.sequence_number,
                year=allocation.year,
                employee_initials=allocation.employee_initials,
                **snapshot,
            )
            storage.update_ticket_record(record.id, patch)

        def existing_number() -> str | None:
            return self._record(record.id).ticket_number

        allocate(
            initials,
            year,
            current_max=lambda: storage.max_sequence_number(initials, year, record.is_demo),
            assign=assign,
            existing_number=existing_number,
        )
        return self._after_transition(self._record(record.id))

    def _after_transition(self, record: TicketRecord) -> TicketRecord:
        """Re-derive the open editor's permission after a state change."""
        with self._lock:
            tracker = self.tracker
            if tracker is not None and tracker.session.record_id == record.id:
                tracker.session.permission = edit_permission(record, self.actor)
            self.board.records[record.id] = record
        return record

    def delete_permanently(self, ticket: DisplayTicket) -> None:
        """Remove a trashed record and its expenses for good."""
        if not self.actor.is_admin:
            raise ValidationError("Only administrators can permanently delete tickets")
        if not ticket.record_id:
            raise ValidationError("Ticket has no saved record")
        record = self._record(ticket.record_id)
        if not record.is_discarded:
            raise ValidationError("Move the ticket to the trash before deleting it")
        storage.delete_ticket_record(record.id)
        self.matcher.forget(record.id)
        self.board.records.pop(record.id, None)
        log.info("Permanently deleted ticket record %s", record.id)

    # -- creation and sync --

    def create_ticket(
        self,
        ticket_date: date,
        technician_id: str,
        customer_id: str | None,
        project_id: str | None = None,
        location: str = "",
        header: HeaderFields | None = None,
        rows: Iterable[ServiceRow] = (),
    ) -> TicketRecord:
        """Create a ticket that is not backed by any time entry."""
        if not customer_id:
            raise ValidationError("Select a customer for the new ticket")
        self.refresh_lookups()
        technician = self.technicians.get(technician_id)
        project = self.projects.get(project_id) if project_id else None
        rates = resolve_rates(technician, project, self.config.default_rates)
        rows = list(rows)
        hours, amount = compute_totals(rows, rates)
        record = TicketRecord(
            id="",
            date=ticket_date,
            technician_id=technician_id,
            customer_id=customer_id,
            project_id=project_id,
            location=norm_str(location),
            employee_initials=technician.initials if technician else "XX",
            header_overrides=HeaderOverrides(**header.as_dict()) if header else HeaderOverrides(),
            edited_entry_overrides=snapshot_rows(rows),
            total_hours=hours,
            total_amount=amount,
            is_demo=self.config.demo_mode,
        )
        return storage.create_ticket_record(record)

    def discard_orphaned_draft(self, record_id: str) -> bool:
        """Delete a draft record left with no entries and no edits."""
        record = storage.get_ticket_record(record_id)
        if record is None or classify(record) not in (TicketState.DRAFT, TicketState.REJECTED):
            return False
        if record.edited_entry_overrides or record.has_legacy_edits or not record.header_overrides.is_empty():
            return False
        if storage.list_expenses(record.id):
            return False
        entries = storage.list_time_entries(record.date, record.date, technician_id=record.technician_id)
        for entry in entries:
            project = self.projects.get(entry.project_id) if entry.project_id else None
            key = entry_key(entry, project)
            if key.customer_id == record.customer_id and (not record.project_id or key.project_id == record.project_id):
                return False
        storage.delete_ticket_record(record.id)
        self.matcher.forget(record.id)
        log.info("Removed orphaned draft record %s", record.id)
        return True

    def delete_time_entry(self, entry_id: str) -> None:
        """Delete an entry and any draft record it leaves empty."""
        entry = storage.get_time_entry(entry_id)
        if entry is None:
            return
        storage.delete_time_entry(entry_id)
        project = self.projects.get(entry.project_id) if entry.project_id else None
        key = entry_key(entry, project)
        record_id = self.matcher.linked_record_id(key)
        if record_id:
            self.discard_orphaned_draft(record_id)

    def sync_customer_to_open_tickets(self, customer: Customer) -> int:
        """Save a customer and copy its details into unlocked, unnumbered tickets.

        Only fields the record already overrides are rewritten; the rest
        follow the customer live.
        """
        storage.save_customer(customer)
        self.customers[customer.id] = customer
        count = 0
        for record in storage.query_ticket_records(customer_id=customer.id, include_discarded=False, numbered=False):
            if classify(record) not in (TicketState.DRAFT, TicketState.REJECTED):
                continue
            overrides = record.header_overrides
            changed = False
            for name, getter in CUSTOMER_HEADER_FIELDS.items():
                if getattr(overrides, name) is not None and getattr(overrides, name) != getter(customer):
                    setattr(overrides, name, getter(customer))
                    changed = True
            if changed:
                storage.update_ticket_record(record.id, {"header_overrides": overrides})
                count += 1
        log.info("Updated %d open tickets for customer %s", count, customer.id)
        return count

    def sync_header_from_time_entry(self, entry: TimeEntry) -> TicketRecord | None:
        """Copy an entry's billing fields into its draft ticket's header overrides."""
        project = self.projects.get(entry.project_id) if entry.project_id else None
        record_id = self.matcher.linked_record_id(entry_key(entry, project))
        if not record_id:
            return None
        record = self._record(record_id)
        if classify(record) not in (TicketState.DRAFT, TicketState.REJECTED):
            return None
        overrides = record.header_overrides
        if overrides.is_empty():
            return None
        for name in ("approver", "po_afe", "cc", "other"):
            value = norm_str(getattr(entry, name))
            if value:
                setattr(overrides, name, value)
        return storage.update_ticket_record(record.id, {"header_overrides": overrides})

    # -- queries --

    def rejected_count(self, technician_id: str | None = None) -> int:
        records = storage.query_ticket_records(
            technician_id=technician_id or self._scope(),
            is_demo=self.config.demo_mode,
            include_discarded=False,
        )
        return sum(1 for r in records if classify(r) == TicketState.REJECTED)

    def resubmitted_count(self) -> int:
        records = storage.query_ticket_records(is_demo=self.config.demo_mode, include_discarded=False)
        return sum(1 for r in records if is_resubmitted(r))

    def ready_for_export(self) -> list[TicketRecord]:
        records = storage.query_ticket_records(
            is_demo=self.config.demo_mode, include_discarded=False, numbered=True
        )
        return [r for r in records if r.workflow_status == WorkflowStatus.APPROVED]

    # -- export and bulk --

    def export(self, ticket: DisplayTicket) -> Path:
        if not ticket.ticket_number:
            raise ValidationError("Approve the ticket before exporting it")
        expenses = storage.list_expenses(ticket.record_id) if ticket.record_id else []
        path = self.exporter.export(ticket, expenses)
        record = self._record(ticket.record_id)
        if self.actor.is_admin and record.workflow_status == WorkflowStatus.APPROVED:
            self._after_transition(storage.update_ticket_record(
                record.id, self.workflow.transition(record, Action.ADVANCE, self.actor)
            ))
        return path

    def _bulk(self, tickets: Iterable[DisplayTicket], operation, delay: float = 0.0) -> BatchResult:
        return run_batch(
            tickets,
            operation,
            key=lambda t: t.record_id or t.display_ticket_number,
            max_workers=self.config.bulk_max_workers,
            delay=delay,
        )

    def bulk_approve(self, tickets: Iterable[DisplayTicket]) -> BatchResult:
        return self._bulk(tickets, self.approve)

    def bulk_trash(self, tickets: Iterable[DisplayTicket]) -> BatchResult:
        return self._bulk(tickets, self.trash)

    def bulk_export(self, tickets: Iterable[DisplayTicket]) -> BatchResult:
        return self._bulk(tickets, self.export, delay=float(self.config.bulk_delay_seconds))
