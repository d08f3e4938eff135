"""Excel export of approved service tickets."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal
from pathlib import Path

from openpyxl import Workbook
from openpyxl.styles import Font

from errors import ValidationError
from models import ZERO, DisplayTicket, Expense, RateType

log = logging.getLogger("service_tickets.exporter")

HEADER_LABELS = [
    ("customer_name", "Customer"),
    ("address", "Address"),
    ("city_state", "City / State"),
    ("zip_code", "Zip"),
    ("contact_name", "Contact"),
    ("phone", "Phone"),
    ("email", "Email"),
    ("service_location", "Service Location"),
    ("location_code", "Location Code"),
    ("po_number", "PO Number"),
    ("approver", "Approver"),
    ("po_afe", "PO / AFE"),
    ("cc", "Cost Center"),
    ("other", "Other"),
    ("tech_name", "Technician"),
    ("project_number", "Project"),
    ("date", "Date"),
]

RATE_HEADINGS = {
    RateType.SHOP_TIME: "ST",
    RateType.TRAVEL_TIME: "TT",
    RateType.FIELD_TIME: "FT",
    RateType.SHOP_OVERTIME: "SO",
    RateType.FIELD_OVERTIME: "FO",
}


class ExcelExporter:
    """Renders a numbered ticket and its expenses to a workbook."""

    def __init__(self, output_dir: Path | str = "."):
        self.output_dir = Path(output_dir)

    def render(self, ticket: DisplayTicket, expenses: Iterable[Expense] = ()) -> Workbook:
        if not ticket.ticket_number:
            raise ValidationError("Only numbered tickets can be exported")
        bold = Font(bold=True)
        wb = Workbook()
        ws = wb.active
        ws.title = "Service Ticket"

        ws.append(["Ticket", ticket.ticket_number])
        ws["A1"].font = bold
        for name, label in HEADER_LABELS:
            ws.append([label, getattr(ticket.header, name)])
        ws.append([])

        ws.append(["Description", *RATE_HEADINGS.values(), "Total"])
        for cell in ws[ws.max_row]:
            cell.font = bold
        for row in ticket.rows:
            hours = [float(row.hours_for(rt)) for rt in RateType]
            ws.append([row.description, *hours, float(row.total_hours)])

        by_type = ticket.hours_by_rate_type
        ws.append(["Hours", *(float(by_type[rt]) for rt in RateType), float(ticket.total_hours)])
        ws.append(["Rate", *(float(ticket.rates.for_rate_type(rt)) for rt in RateType)])
        ws.append(["Labour", *(float(by_type[rt] * ticket.rates.for_rate_type(rt)) for rt in RateType),
                   float(ticket.total_amount)])

        expenses = list(expenses)
        if expenses:
            ws.append([])
            ws.append(["Expense", "Description", "Quantity", "Rate", "Amount"])
            for cell in ws[ws.max_row]:
                cell.font = bold
            for expense in expenses:
                ws.append([
                    expense.type.value,
                    expense.description,
                    float(expense.quantity),
                    float(expense.rate),
                    float(expense.amount),
                ])

        ws.append([])
        ws.append(["Grand Total", float(grand_total(ticket, expenses))])
        ws[f"A{ws.max_row}"].font = bold
        ws.column_dimensions["A"].width = 40
        return wb

    def export(
        self,
        ticket: DisplayTicket,
        expenses: Iterable[Expense] = (),
        directory: Path | str | None = None,
    ) -> Path:
        """Write ``<ticket_number>.xlsx`` and return its path."""
        wb = self.render(ticket, expenses)
        output_dir = Path(directory) if directory is not None else self.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / f"{ticket.ticket_number}.xlsx"
        wb.save(path)
        log.info("Exported %s to %s", ticket.ticket_number, path)
        return path


def grand_total(ticket: DisplayTicket, expenses: Iterable[Expense]) -> Decimal:
    return ticket.total_amount + sum((e.amount for e in expenses), ZERO)
