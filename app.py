#!/usr/bin/env python3
"""Service ticket TUI application."""

from __future__ import annotations

import argparse
import getpass
import logging
from datetime import date

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container
from textual.widgets import DataTable, Footer

import storage
from errors import PersistenceError, ServiceTicketError
from models import DisplayTicket
from screens import ConfirmScreen, RejectNoteScreen, TicketEditorScreen
from tickets import TicketBoard
from utils import get_month_range, shift_month
from widgets import BoardHeader, TicketSummary, status_text
from workflow import Actor, TicketState, display_label

log = logging.getLogger("service_tickets.app")


class ServiceTicketsApp(App):
    """Monthly board of service tickets."""

    CSS = """
    Screen {
        background: $surface;
    }

    #board-header {
        height: auto;
        background: $primary;
        color: $text;
        padding: 0 1;
        text-style: bold;
    }

    #ticket-summary {
        height: auto;
        padding: 1 2;
        color: $text;
    }
    DataTable > .datatable--cursor {
        background: $secondary;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("left", "prev_month", "◄", show=False),
        Binding("right", "next_month", "►", show=False),
        Binding("e", "open_ticket", "Edit"),
        Binding("s", "submit", "Submit"),
        Binding("w", "withdraw", "Withdraw", show=False),
        Binding("a", "approve", "Approve"),
        Binding("A", "bulk_approve", "Approve all", show=False),
        Binding("r", "reject", "Reject"),
        Binding("u", "unapprove", "Unapprove", show=False),
        Binding("n", "advance", "Next step", show=False),
        Binding("p", "revert", "Prev step", show=False),
        Binding("x", "trash", "Trash"),
        Binding("R", "restore", "Restore", show=False),
        Binding("D", "delete_permanently", "Delete", show=False),
        Binding("E", "export", "Export"),
        Binding("B", "bulk_export", "Export all", show=False),
        Binding("t", "toggle_trash", "Trash view"),
    ]

    def __init__(self, actor: Actor | None = None):
        super().__init__()
        storage.init_db()
        self.actor = actor or Actor(getpass.getuser(), is_admin=False)
        self.service = TicketBoard(self.actor)

        today = date.today()
        self.current_year = today.year
        self.current_month = today.month
        self.show_trash = False
        self.shown_tickets: list[DisplayTicket] = []

    def compose(self) -> ComposeResult:
        yield BoardHeader(id="board-header")
        yield Container(DataTable(id="ticket-table"), id="ticket-table-container")
        yield TicketSummary(id="ticket-summary")
        yield Footer()

    def on_mount(self):
        table = self.query_one("#ticket-table", DataTable)
        table.cursor_type = "row"
        table.add_column("Ticket", width=12)
        table.add_column("Date", width=10)
        table.add_column("Tech", width=5)
        table.add_column("Customer", width=28)
        table.add_column("Location", width=16)
        table.add_column("Hours", width=6)
        table.add_column("Status", width=14)
        self.reload()
        table.focus()

    # -- data --

    def reload(self) -> None:
        start, end = get_month_range(self.current_year, self.current_month)
        try:
            board = self.service.load(start, end)
        except PersistenceError as e:
            self.notify(e.user_message, severity="error")
            return
        self.shown_tickets = board.trashed if self.show_trash else board.tickets
        self._refresh_table()

        counts = {
            "draft": len(board.in_state(TicketState.DRAFT)),
            "rejected": len(board.in_state(TicketState.REJECTED)),
            "submitted": len(board.in_state(TicketState.SUBMITTED)),
            "approved": len(board.in_state(TicketState.NUMBERED)),
            "trashed": len(board.trashed),
        }
        self.query_one("#board-header", BoardHeader).update_display(start, end, counts, self.show_trash)

    def _refresh_table(self) -> None:
        table = self.query_one("#ticket-table", DataTable)
        table.clear()
        for ticket in self.shown_tickets:
            label = display_label(self.service.board.record_for(ticket))
            table.add_row(
                ticket.display_ticket_number,
                ticket.key.date.isoformat(),
                ticket.technician_initials,
                ticket.header.customer_name,
                ticket.key.location,
                f"{float(ticket.total_hours):g}",
                status_text(label),
            )
        self._update_summary()

    def _selected(self) -> DisplayTicket | None:
        table = self.query_one("#ticket-table", DataTable)
        if not self.shown_tickets or table.cursor_row is None or table.cursor_row >= len(self.shown_tickets):
            return None
        return self.shown_tickets[table.cursor_row]

    def _update_summary(self) -> None:
        summary = self.query_one("#ticket-summary", TicketSummary)
        summary.update_display(self._selected(), self.service.config.currency)

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        self._update_summary()

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        self.action_open_ticket()

    def _run(self, operation, success: str) -> bool:
        """Run a ticket action, report the outcome and reload."""
        ticket = self._selected()
        if ticket is None:
            self.notify("No ticket selected", severity="warning")
            return False
        try:
            operation(ticket)
        except PersistenceError as e:
            self.notify(e.user_message, severity="error")
            return False
        except ServiceTicketError as e:
            self.notify(str(e), severity="error")
            return False
        self.notify(success)
        self.reload()
        return True

    # -- navigation --

    def action_prev_month(self):
        self.current_year, self.current_month = shift_month(self.current_year, self.current_month, -1)
        self.reload()

    def action_next_month(self):
        self.current_year, self.current_month = shift_month(self.current_year, self.current_month, 1)
        self.reload()

    def action_toggle_trash(self):
        self.show_trash = not self.show_trash
        self.reload()

    # -- actions --

    def action_open_ticket(self):
        ticket = self._selected()
        if ticket is None:
            return
        try:
            tracker = self.service.open_ticket(ticket)
        except ServiceTicketError as e:
            self.notify(str(e), severity="error")
            return

        def closed(saved: bool | None) -> None:
            self.service.close()
            if saved:
                self.reload()

        title = f"{ticket.display_ticket_number}  {display_label(self.service.board.record_for(ticket))}"
        self.push_screen(TicketEditorScreen(tracker, title, self.service.save), closed)

    def action_submit(self):
        self._run(self.service.submit, "Ticket submitted")

    def action_withdraw(self):
        self._run(self.service.withdraw, "Ticket withdrawn")

    def action_approve(self):
        self._run(self.service.approve, "Ticket approved")

    def action_unapprove(self):
        self._run(self.service.unapprove, "Ticket unapproved")

    def action_advance(self):
        self._run(self.service.advance, "Moved to next invoicing step")

    def action_revert(self):
        self._run(self.service.revert, "Moved to previous invoicing step")

    def action_restore(self):
        self._run(self.service.restore, "Ticket restored")

    def action_export(self):
        self._run(self.service.export, "Ticket exported")

    def action_reject(self):
        ticket = self._selected()
        if ticket is None:
            return

        def handle(note: str | None) -> None:
            if note is not None:
                self._run(lambda t: self.service.reject(t, note), "Ticket rejected")

        self.push_screen(RejectNoteScreen(ticket.display_ticket_number), handle)

    def action_trash(self):
        ticket = self._selected()
        if ticket is None:
            return

        def handle(confirmed: bool | None) -> None:
            if confirmed:
                self._run(self.service.trash, "Ticket moved to trash")

        self.push_screen(ConfirmScreen(f"Move {ticket.display_ticket_number} to the trash?"), handle)

    def action_delete_permanently(self):
        ticket = self._selected()
        if ticket is None:
            return

        def handle(confirmed: bool | None) -> None:
            if confirmed:
                self._run(self.service.delete_permanently, "Ticket deleted")

        self.push_screen(ConfirmScreen(f"Permanently delete {ticket.display_ticket_number}?"), handle)

    def action_bulk_approve(self):
        submitted = self.service.board.in_state(TicketState.SUBMITTED)
        if not submitted:
            self.notify("Nothing to approve", severity="warning")
            return
        result = self.service.bulk_approve(submitted)
        self.notify(f"Approve: {result.summary()}", severity="warning" if result.failed else "information")
        self.reload()

    def action_bulk_export(self):
        ready = [t for t in self.service.board.tickets if t.ticket_number and not t.is_discarded]
        if not ready:
            self.notify("Nothing to export", severity="warning")
            return
        result = self.service.bulk_export(ready)
        self.notify(f"Export: {result.summary()}", severity="warning" if result.failed else "information")
        self.reload()


def main():
    parser = argparse.ArgumentParser(description="Service ticket reconciliation")
    parser.add_argument("--db-info", action="store_true", help="show database location and exit")
    parser.add_argument("--user", default=getpass.getuser(), help="acting user id")
    parser.add_argument("--admin", action="store_true", help="act as an administrator")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = parser.parse_args()

    if args.db_info:
        from datetime import datetime
        db_path = storage.DB_PATH
        print(f"Database: {db_path}")
        if db_path.exists():
            mtime = datetime.fromtimestamp(db_path.stat().st_mtime)
            size = db_path.stat().st_size
            print(f"Modified: {mtime.strftime('%Y-%m-%d %H:%M:%S')}")
            print(f"Size: {size:,} bytes")
        else:
            print("Status: Does not exist (will be created on first run)")
        return

    # The TUI owns the terminal, so logs go next to the database
    storage.DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=storage.DB_PATH.parent / "service_tickets.log",
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = ServiceTicketsApp(Actor(args.user, is_admin=args.admin))
    app.run()


if __name__ == "__main__":
    main()
