"""Merge saved overrides on top of live aggregates.

The header, the rates and the service rows are merged separately. Header
and rates prefer the record's saved values once the ticket is locked or
has been edited. Rows of a locked ticket come from its submitted snapshot;
otherwise they are rebuilt from the live entries and patched by entry id,
so edits survive while source entries change.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal

from aggregator import entries_to_service_rows, resolve_rates
from models import (
    RATE_COLUMNS,
    UNASSIGNED,
    UNASSIGNED_NAME,
    ZERO,
    Customer,
    DisplayTicket,
    HeaderFields,
    HeaderOverrides,
    Project,
    Rates,
    RateType,
    RowOverride,
    ServiceRow,
    Technician,
    TicketAggregate,
    TicketKey,
    TicketRecord,
)
from utils import build_billing_key, hours_eq, is_placeholder, norm_str, parse_billing_key, round_to_half_hour
from workflow import is_locked

log = logging.getLogger("service_tickets.overrides")


def live_header(
    date,
    location: str,
    billing_key: str,
    technician: Technician | None = None,
    customer: Customer | None = None,
    project: Project | None = None,
    other: str = "",
) -> HeaderFields:
    """Header values as the lookups currently describe the ticket."""
    approver, po_afe, cc = parse_billing_key(billing_key)
    header = HeaderFields(
        approver=approver,
        po_afe=po_afe,
        cc=cc,
        other=norm_str(other) or (project.other if project else ""),
        tech_name=technician.display_name if technician else "",
        project_number=project.project_number if project else "",
        date=date.isoformat(),
        service_location=location or (customer.service_location if customer else ""),
    )
    if customer is None:
        header.customer_name = UNASSIGNED_NAME
        return header
    header.customer_name = customer.name
    header.address = customer.address
    header.city_state = customer.city_state
    header.zip_code = customer.zip_code
    header.phone = customer.phone
    header.email = customer.email
    header.contact_name = customer.contact_name
    header.location_code = customer.location_code
    header.po_number = customer.po_number
    return header


def aggregate_header(aggregate: TicketAggregate) -> HeaderFields:
    other = next((e.other for e in aggregate.entries if norm_str(e.other)), "")
    return live_header(
        aggregate.date,
        aggregate.location,
        aggregate.billing_key,
        technician=aggregate.technician,
        customer=aggregate.customer,
        project=aggregate.project,
        other=other,
    )


def is_stale(record: TicketRecord, latest_entry_update: datetime | None) -> bool:
    """Live entries changed after the record was last written."""
    if latest_entry_update is None or record.updated_at is None:
        return False
    return latest_entry_update > record.updated_at


def merge_header(
    live: HeaderFields,
    record: TicketRecord | None,
    latest_entry_update: datetime | None = None,
) -> HeaderFields:
    if record is None:
        return live
    overrides = record.header_overrides
    locked = is_locked(record)
    if not locked:
        if overrides.is_empty():
            return live
        # Numbered tickets are frozen; unlocked ones follow fresher live data
        if not record.ticket_number and is_stale(record, latest_entry_update):
            log.debug("Record %s is older than its entries, using live header", record.id)
            return live

    merged = {}
    for name, live_value in live.as_dict().items():
        value = getattr(overrides, name)
        merged[name] = live_value if is_placeholder(value) else value
    return HeaderFields(**merged)


def merge_rates(live: Rates, record: TicketRecord | None) -> Rates:
    """Locked tickets bill at the rates they were approved with."""
    if record is not None and is_locked(record):
        snapshot = record.header_overrides.snapshot_rates()
        if snapshot is not None:
            return snapshot
    return live


def unlocked_header_overrides(overrides: HeaderOverrides, live: HeaderFields) -> HeaderOverrides:
    """The fields of a submitted header that still differ from live values.

    Used when a ticket goes back to draft: the header snapshot and rate
    snapshot are dropped, genuine edits stay.
    """
    result = HeaderOverrides()
    for name, live_value in live.as_dict().items():
        value = getattr(overrides, name)
        if not is_placeholder(value) and norm_str(value) != norm_str(live_value):
            setattr(result, name, value)
    return result


def legacy_rows(record: TicketRecord) -> list[ServiceRow]:
    """Rows from the old per-rate-type edited_hours/edited_descriptions arrays."""
    rows = []
    for key, hours_list in record.edited_hours.items():
        rate_type = RateType.parse(key)
        descriptions = record.edited_descriptions.get(key, [])
        for index, hours in enumerate(hours_list):
            row = ServiceRow(
                id=f"legacy-{RATE_COLUMNS[rate_type]}-{index}",
                description=descriptions[index] if index < len(descriptions) else "",
                is_synthetic=True,
            )
            setattr(row, RATE_COLUMNS[rate_type], hours or ZERO)
            rows.append(row)
    return rows


def merge_rows(live_rows: Iterable[ServiceRow], record: TicketRecord | None) -> list[ServiceRow]:
    rows = list(live_rows)
    if record is None:
        return rows
    if is_locked(record) and record.row_snapshot:
        live = {row.id: row for row in rows}
        return [
            live[row_id].with_override(override) if row_id in live
            else ServiceRow(id=row_id, is_synthetic=True).with_override(override)
            for row_id, override in record.row_snapshot.items()
        ]
    if record.edited_entry_overrides:
        index = {row.id: i for i, row in enumerate(rows)}
        for entry_id, override in record.edited_entry_overrides.items():
            if entry_id in index:
                rows[index[entry_id]] = rows[index[entry_id]].with_override(override)
            else:
                rows.append(ServiceRow(id=entry_id, is_synthetic=True).with_override(override))
        return rows
    if record.has_legacy_edits:
        return legacy_rows(record)
    return rows


def rows_equal(a: ServiceRow, b: ServiceRow) -> bool:
    if norm_str(a.description) != norm_str(b.description):
        return False
    return all(hours_eq(a.hours_for(rt), b.hours_for(rt)) for rt in RateType)


def is_blank_row(row: ServiceRow) -> bool:
    return not norm_str(row.description) and row.total_hours == ZERO


def compute_entry_overrides(
    current_rows: Iterable[ServiceRow],
    original_rows: Iterable[ServiceRow],
) -> dict[str, RowOverride]:
    """Overrides for rows that differ from their live originals.

    Rows equal to their original are left out, as are blank manually added
    rows.
    """
    originals = {row.id: row for row in original_rows}
    result = {}
    for row in current_rows:
        original = originals.get(row.id)
        if original is None:
            if is_blank_row(row):
                continue
            result[row.id] = row.to_override()
        elif not rows_equal(row, original):
            result[row.id] = row.to_override()
    return result


def snapshot_rows(rows: Iterable[ServiceRow]) -> dict[str, RowOverride]:
    """Every non-blank row by id, frozen when a ticket is submitted or approved."""
    return {row.id: row.to_override() for row in rows if not (row.is_synthetic and is_blank_row(row))}


def compute_totals(rows: Iterable[ServiceRow], rates: Rates) -> tuple[Decimal, Decimal]:
    """(hours rounded up to the half hour, amount at the given rates)."""
    rows = list(rows)
    hours = sum((row.total_hours for row in rows), ZERO)
    amount = sum((row.amount(rates) for row in rows), ZERO)
    return round_to_half_hour(hours), amount


def _display(
    key: TicketKey,
    header: HeaderFields,
    rows: list[ServiceRow],
    rates: Rates,
    initials: str,
    record: TicketRecord | None,
    is_demo: bool,
    is_standalone: bool = False,
) -> DisplayTicket:
    ticket = DisplayTicket(
        key=key,
        header=header,
        rows=rows,
        rates=rates,
        technician_initials=initials,
        is_standalone=is_standalone,
        is_demo=is_demo,
    )
    if record is None:
        return ticket
    ticket.record_id = record.id
    ticket.ticket_number = record.ticket_number
    ticket.workflow_status = record.workflow_status
    ticket.is_discarded = record.is_discarded
    ticket.is_locked = is_locked(record)
    if ticket.is_locked and record.total_hours > ZERO:
        ticket.snapshot_total_hours = record.total_hours
        ticket.snapshot_total_amount = record.total_amount
    return ticket


def build_display_ticket(aggregate: TicketAggregate, record: TicketRecord | None = None) -> DisplayTicket:
    """Merged view of one aggregate and its matched record, if any."""
    header = merge_header(aggregate_header(aggregate), record, aggregate.latest_entry_update)
    rows = merge_rows(entries_to_service_rows(aggregate.entries), record)
    rates = merge_rates(aggregate.rates, record)
    initials = record.employee_initials if record and record.ticket_number else aggregate.technician_initials
    return _display(aggregate.key, header, rows, rates, initials, record, aggregate.is_demo)


def build_standalone_ticket(
    record: TicketRecord,
    technician: Technician | None = None,
    customer: Customer | None = None,
    project: Project | None = None,
    default_rates: Rates | None = None,
) -> DisplayTicket:
    """View of a record whose source entries are gone."""
    overrides = record.header_overrides
    billing_key = build_billing_key(overrides.approver, overrides.po_afe, overrides.cc)
    key = TicketKey(
        record.date,
        record.technician_id,
        record.customer_id or UNASSIGNED,
        record.project_id,
        norm_str(record.location),
        billing_key,
    )
    live = live_header(record.date, key.location, billing_key, technician, customer, project)
    header = merge_header(live, record)
    rows = merge_rows([], record)
    rates = merge_rates(resolve_rates(technician, project, default_rates or Rates()), record)
    initials = record.employee_initials or (technician.initials if technician else "XX")
    return _display(key, header, rows, rates, initials, record, record.is_demo, is_standalone=True)
