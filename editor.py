"""Editor session state and dirty tracking for an open ticket."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from uuid import uuid4

from errors import ValidationError
from models import RATE_COLUMNS, DisplayTicket, Expense, HeaderFields, RateType, ServiceRow, TicketKey
from overrides import rows_equal
from utils import norm_str, to_decimal
from workflow import EditPermission

MANUAL_ROW_PREFIX = "manual-"


@dataclass
class EditorSession:
    """Snapshot taken when a ticket is opened plus the edits made since."""

    key: TicketKey
    record_id: str | None
    permission: EditPermission
    initial_header: HeaderFields
    initial_rows: list[ServiceRow]
    header: HeaderFields
    rows: list[ServiceRow]
    expenses: list[Expense] = field(default_factory=list)
    pending_expense_adds: list[Expense] = field(default_factory=list)
    pending_expense_deletes: list[str] = field(default_factory=list)

    @classmethod
    def open(cls, ticket: DisplayTicket, permission: EditPermission, expenses: list[Expense] | None = None) -> EditorSession:
        return cls(
            key=ticket.key,
            record_id=ticket.record_id,
            permission=permission,
            initial_header=ticket.header.copy(),
            initial_rows=[replace(row) for row in ticket.rows],
            header=ticket.header.copy(),
            rows=[replace(row) for row in ticket.rows],
            expenses=list(expenses or []),
        )


class EditTracker:
    """Applies edits to an EditorSession and reports what changed."""

    def __init__(self, session: EditorSession):
        self.session = session

    # -- edits --

    def _require(self, needed: EditPermission) -> None:
        allowed = self.session.permission
        if allowed == EditPermission.NONE:
            raise ValidationError("This ticket is read-only")
        if needed == EditPermission.FULL and allowed != EditPermission.FULL:
            raise ValidationError("Only header fields can be changed on a numbered ticket")

    def set_header(self, name: str, value: str) -> None:
        self._require(EditPermission.HEADER_ONLY)
        if name not in HeaderFields.field_names():
            raise ValidationError(f"Unknown header field: {name}")
        setattr(self.session.header, name, value)

    def set_description(self, row_id: str, description: str) -> None:
        self._require(EditPermission.FULL)
        self._row(row_id).description = description

    def set_hours(self, row_id: str, rate_type: RateType, hours) -> None:
        self._require(EditPermission.FULL)
        value = to_decimal(hours)
        if value < 0:
            raise ValidationError("Hours cannot be negative")
        row = self._row(row_id)
        setattr(row, RATE_COLUMNS[rate_type], value)

    def add_row(self, description: str = "") -> ServiceRow:
        self._require(EditPermission.FULL)
        row = ServiceRow(id=f"{MANUAL_ROW_PREFIX}{uuid4()}", description=description, is_synthetic=True)
        self.session.rows.append(row)
        return row

    def remove_row(self, row_id: str) -> None:
        self._require(EditPermission.FULL)
        row = self._row(row_id)
        if not row.is_synthetic:
            raise ValidationError("Rows backed by time entries cannot be removed; edit the time entry instead")
        self.session.rows.remove(row)

    def add_expense(self, expense: Expense) -> None:
        self._require(EditPermission.FULL)
        if expense.id is None:
            expense.id = str(uuid4())
        self.session.pending_expense_adds.append(expense)

    def delete_expense(self, expense_id: str) -> None:
        self._require(EditPermission.FULL)
        pending = [e for e in self.session.pending_expense_adds if e.id == expense_id]
        if pending:
            self.session.pending_expense_adds.remove(pending[0])
            return
        if expense_id not in self.session.pending_expense_deletes:
            self.session.pending_expense_deletes.append(expense_id)

    def _row(self, row_id: str) -> ServiceRow:
        for row in self.session.rows:
            if row.id == row_id:
                return row
        raise ValidationError(f"No such row: {row_id}")

    # -- dirty state --

    def dirty_fields(self) -> list[str]:
        initial = self.session.initial_header
        current = self.session.header
        return [
            name for name in HeaderFields.field_names()
            if norm_str(getattr(current, name)) != norm_str(getattr(initial, name))
        ]

    @property
    def header_dirty(self) -> bool:
        return bool(self.dirty_fields())

    def dirty_rows(self) -> list[str]:
        """Ids of rows that differ from the snapshot row at the same position."""
        initial = self.session.initial_rows
        dirty = []
        for index, row in enumerate(self.session.rows):
            if index >= len(initial) or not rows_equal(row, initial[index]):
                dirty.append(row.id)
        return dirty

    @property
    def rows_dirty(self) -> bool:
        if len(self.session.rows) != len(self.session.initial_rows):
            return True
        return bool(self.dirty_rows())

    @property
    def has_pending_changes(self) -> bool:
        return (
            self.header_dirty
            or self.rows_dirty
            or bool(self.session.pending_expense_adds)
            or bool(self.session.pending_expense_deletes)
        )

    def mark_saved(self, record_id: str | None = None) -> None:
        """Make the current state the new snapshot."""
        session = self.session
        if record_id:
            session.record_id = record_id
        session.initial_header = session.header.copy()
        session.initial_rows = [replace(row) for row in session.rows]
        session.pending_expense_adds.clear()
        session.pending_expense_deletes.clear()

    def discard(self) -> None:
        """Drop unsaved edits, back to the snapshot."""
        session = self.session
        session.header = session.initial_header.copy()
        session.rows = [replace(row) for row in session.initial_rows]
        session.pending_expense_adds.clear()
        session.pending_expense_deletes.clear()
