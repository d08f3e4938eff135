"""Custom widgets for the service ticket application."""

from __future__ import annotations

from datetime import date

from textual.widgets import Static
from rich.text import Text

from models import DisplayTicket, RateType

LABEL_STYLES = {
    "Draft": "",
    "Restored": "cyan",
    "Rejected": "bold red",
    "Submitted": "yellow",
    "Resubmitted": "bold yellow",
    "Trashed": "dim",
}

RATE_SHORT = {
    RateType.SHOP_TIME: "ST",
    RateType.TRAVEL_TIME: "TT",
    RateType.FIELD_TIME: "FT",
    RateType.SHOP_OVERTIME: "SO",
    RateType.FIELD_OVERTIME: "FO",
}


def status_text(label: str) -> Text:
    """Workflow label styled for the ticket table. Numbered steps are green."""
    return Text(label, style=LABEL_STYLES.get(label, "green"))


class BoardHeader(Static):
    """Month title on the left, ticket counts on the right."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.title_text = ""

    def update_display(self, start: date, end: date, counts: dict[str, int], showing_trash: bool = False):
        self.title_text = start.strftime("%B %Y")
        if showing_trash:
            self.title_text += "  [TRASH]"
        text = Text()
        text.append(self.title_text, style="bold")
        text.append("   ")
        parts = [f"{name} {count}" for name, count in counts.items() if count]
        text.append("  ".join(parts) if parts else "no tickets", style="bold")
        self.update(text)


class TicketSummary(Static):
    """Hours by rate type and totals for the highlighted ticket."""

    def update_display(self, ticket: DisplayTicket | None, currency: str = "CAD"):
        if ticket is None:
            self.update(Text("No ticket selected", style="dim"))
            return

        text = Text()
        text.append(f"{ticket.display_ticket_number}  {ticket.header.customer_name}\n", style="bold")
        for rate_type, hours in ticket.hours_by_rate_type.items():
            line = f"  {RATE_SHORT[rate_type]}  {float(hours):>6g}h @ {float(ticket.rates.for_rate_type(rate_type)):g}\n"
            text.append(line, style="dim" if not hours else "")
        text.append(f"  Total {float(ticket.total_hours):>6g}h   {ticket.total_amount:,.2f} {currency}")
        if ticket.is_locked:
            text.append("   (locked)", style="yellow")
        self.update(text)
