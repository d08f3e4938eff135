"""Modal screens for the service ticket application."""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal, InvalidOperation

from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical, VerticalScroll
from textual.widgets import Button, DataTable, Input, Label
from textual.screen import ModalScreen

from editor import EditTracker
from errors import ServiceTicketError
from models import RATE_COLUMNS, HeaderFields, RateType, ServiceRow
from widgets import RATE_SHORT

HEADER_FIELD_LABELS = {
    "customer_name": "Customer",
    "contact_name": "Contact",
    "address": "Address",
    "city_state": "City / State",
    "zip_code": "Zip",
    "phone": "Phone",
    "email": "Email",
    "service_location": "Service location",
    "location_code": "Location code",
    "po_number": "PO number",
    "approver": "Approver",
    "po_afe": "PO / AFE",
    "cc": "Cost center",
    "other": "Other",
    "tech_name": "Technician",
    "project_number": "Project #",
    "date": "Date",
}


class ConfirmScreen(ModalScreen[bool]):
    """Yes/no dialog."""

    CSS = """
    ConfirmScreen {
        align: center middle;
    }

    #confirm-dialog {
        width: 56;
        height: auto;
        padding: 1 2;
        background: $surface;
        border: thick $warning;
    }

    #confirm-buttons {
        width: 100%;
        height: auto;
        margin-top: 1;
    }

    #confirm-buttons Button {
        width: 1fr;
        margin: 0 1;
    }
    """

    BINDINGS = [
        Binding("escape", "cancel", "Cancel"),
        Binding("y", "confirm", "Yes"),
        Binding("n", "cancel", "No"),
    ]

    def __init__(self, message: str):
        super().__init__()
        self.message = message

    def compose(self) -> ComposeResult:
        with Vertical(id="confirm-dialog"):
            yield Label(self.message)
            with Horizontal(id="confirm-buttons"):
                yield Button("Yes (Y)", variant="warning", id="yes")
                yield Button("No (N)", variant="default", id="no")

    def on_button_pressed(self, event: Button.Pressed) -> None:
        self.dismiss(event.button.id == "yes")

    def action_confirm(self) -> None:
        self.dismiss(True)

    def action_cancel(self) -> None:
        self.dismiss(False)


class RejectNoteScreen(ModalScreen[str | None]):
    """Asks for an optional rejection note. Dismisses None on cancel."""

    CSS = """
    RejectNoteScreen {
        align: center middle;
    }

    #reject-dialog {
        width: 64;
        height: auto;
        padding: 1 2;
        background: $surface;
        border: thick $error;
    }

    #reject-dialog Input {
        margin-top: 1;
    }
    """

    BINDINGS = [
        Binding("escape", "cancel", "Cancel"),
    ]

    def __init__(self, ticket_label: str):
        super().__init__()
        self.ticket_label = ticket_label

    def compose(self) -> ComposeResult:
        with Vertical(id="reject-dialog"):
            yield Label(f"Reject {self.ticket_label}")
            yield Input(placeholder="Note for the technician (optional)", id="reject-note")
            with Horizontal():
                yield Button("Reject", variant="error", id="reject")
                yield Button("Cancel", id="cancel")

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self.dismiss(event.value.strip())

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "reject":
            self.dismiss(self.query_one("#reject-note", Input).value.strip())
        else:
            self.dismiss(None)

    def action_cancel(self) -> None:
        self.dismiss(None)


class EditRowScreen(ModalScreen[ServiceRow | None]):
    """Edit one service row: description and hours per rate type."""

    CSS = """
    EditRowScreen {
        align: center middle;
    }

    #row-dialog {
        width: 72;
        height: auto;
        padding: 1 2;
        background: $surface;
        border: thick $primary;
    }

    .hours-row {
        height: auto;
    }

    .hours-row Input {
        width: 1fr;
    }

    #row-error {
        color: $error;
        height: auto;
    }
    """

    BINDINGS = [
        Binding("escape", "cancel", "Cancel"),
    ]

    def __init__(self, row: ServiceRow):
        super().__init__()
        self.row = row

    def compose(self) -> ComposeResult:
        with Vertical(id="row-dialog"):
            yield Label("Description")
            yield Input(self.row.description, id="row-description")
            with Horizontal(classes="hours-row"):
                for rate_type in RateType:
                    hours = self.row.hours_for(rate_type)
                    yield Input(
                        f"{hours:g}" if hours else "",
                        placeholder=RATE_SHORT[rate_type],
                        id=f"row-{RATE_COLUMNS[rate_type]}",
                    )
            yield Label("", id="row-error")
            with Horizontal():
                yield Button("Save", variant="primary", id="save")
                yield Button("Cancel", id="cancel")

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self._save()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "save":
            self._save()
        else:
            self.dismiss(None)

    def action_cancel(self) -> None:
        self.dismiss(None)

    def _save(self) -> None:
        changes: dict = {"description": self.query_one("#row-description", Input).value}
        for column in RATE_COLUMNS.values():
            raw = self.query_one(f"#row-{column}", Input).value.strip()
            try:
                value = Decimal(raw) if raw else Decimal("0")
            except InvalidOperation:
                self.query_one("#row-error", Label).update(f"Not a number: {raw}")
                return
            if value < 0:
                self.query_one("#row-error", Label).update("Hours cannot be negative")
                return
            changes[column] = value
        self.dismiss(replace(self.row, **changes))


class TicketEditorScreen(ModalScreen[bool]):
    """Header fields and service rows of one ticket.

    Dismisses True when something was saved.
    """

    CSS = """
    TicketEditorScreen {
        align: center middle;
    }

    #editor-dialog {
        width: 110;
        height: 90%;
        padding: 1 2;
        background: $surface;
        border: thick $primary;
    }

    #editor-title {
        width: 100%;
        text-style: bold;
        margin-bottom: 1;
    }

    #editor-fields {
        height: 1fr;
    }

    .field-row {
        height: auto;
    }

    .field-row Label {
        width: 18;
        color: $text-muted;
    }

    .field-row Input {
        width: 1fr;
    }

    .field-row Input.dirty {
        border: tall $warning;
    }

    #editor-rows {
        height: 12;
    }
    """

    BINDINGS = [
        Binding("escape", "close", "Close"),
        Binding("ctrl+s", "save", "Save"),
        Binding("a", "add_row", "Add row"),
        Binding("d", "remove_row", "Remove row"),
        Binding("e", "edit_row", "Edit row"),
    ]

    def __init__(self, tracker: EditTracker, title: str, save_callback):
        super().__init__()
        self.tracker = tracker
        self.title_text = title
        self.save_callback = save_callback
        self.saved = False

    def compose(self) -> ComposeResult:
        header = self.tracker.session.header
        with Vertical(id="editor-dialog"):
            yield Label(self.title_text, id="editor-title")
            with VerticalScroll(id="editor-fields"):
                for name, label in HEADER_FIELD_LABELS.items():
                    with Horizontal(classes="field-row"):
                        yield Label(label)
                        yield Input(getattr(header, name), id=f"field-{name}")
            yield DataTable(id="editor-rows")

    def on_mount(self) -> None:
        table = self.query_one("#editor-rows", DataTable)
        table.cursor_type = "row"
        table.add_column("Description", width=50)
        for rate_type in RateType:
            table.add_column(RATE_SHORT[rate_type], width=6)
        self._refresh_rows()

    def _refresh_rows(self) -> None:
        table = self.query_one("#editor-rows", DataTable)
        table.clear()
        dirty = set(self.tracker.dirty_rows())
        for row in self.tracker.session.rows:
            marker = "* " if row.id in dirty else ""
            table.add_row(
                f"{marker}{row.description}",
                *(f"{row.hours_for(rt):g}" if row.hours_for(rt) else "" for rt in RateType),
                key=row.id,
            )

    def _selected_row(self) -> ServiceRow | None:
        table = self.query_one("#editor-rows", DataTable)
        rows = self.tracker.session.rows
        if not rows or table.cursor_row is None or table.cursor_row >= len(rows):
            return None
        return rows[table.cursor_row]

    def on_input_changed(self, event: Input.Changed) -> None:
        name = (event.input.id or "").removeprefix("field-")
        if name not in HeaderFields.field_names():
            return
        try:
            self.tracker.set_header(name, event.value)
        except ServiceTicketError as e:
            self.app.notify(str(e), severity="error")
            return
        event.input.set_class(name in self.tracker.dirty_fields(), "dirty")

    def action_add_row(self) -> None:
        try:
            self.tracker.add_row()
        except ServiceTicketError as e:
            self.app.notify(str(e), severity="error")
            return
        self._refresh_rows()

    def action_remove_row(self) -> None:
        row = self._selected_row()
        if row is None:
            return
        try:
            self.tracker.remove_row(row.id)
        except ServiceTicketError as e:
            self.app.notify(str(e), severity="warning")
            return
        self._refresh_rows()

    def action_edit_row(self) -> None:
        row = self._selected_row()
        if row is None:
            return

        def apply(result: ServiceRow | None) -> None:
            if result is None:
                return
            try:
                self.tracker.set_description(row.id, result.description)
                for rate_type in RateType:
                    self.tracker.set_hours(row.id, rate_type, result.hours_for(rate_type))
            except ServiceTicketError as e:
                self.app.notify(str(e), severity="error")
            self._refresh_rows()

        self.app.push_screen(EditRowScreen(row), apply)

    def action_save(self) -> None:
        try:
            record = self.save_callback()
        except ServiceTicketError as e:
            self.app.notify(getattr(e, "user_message", str(e)), severity="error")
            return
        if record is None:
            self.app.notify("No changes to save")
            return
        self.saved = True
        for input_widget in self.query(Input):
            input_widget.remove_class("dirty")
        self._refresh_rows()
        self.app.notify("Ticket saved")

    def action_close(self) -> None:
        if not self.tracker.has_pending_changes:
            self.dismiss(self.saved)
            return

        def handle(confirmed: bool | None) -> None:
            if confirmed:
                self.dismiss(self.saved)

        self.app.push_screen(ConfirmScreen("Discard unsaved changes?"), handle)
