"""Group live time entries into ticket aggregates."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from models import (
    RATE_COLUMNS,
    UNASSIGNED,
    ZERO,
    Config,
    Customer,
    Project,
    Rates,
    RateType,
    ServiceRow,
    Technician,
    TicketAggregate,
    TicketKey,
    TimeEntry,
)
from utils import build_billing_key, norm_str

log = logging.getLogger("service_tickets.aggregator")

_OVERTIME_FOLD = {
    RateType.SHOP_OVERTIME: RateType.SHOP_TIME,
    RateType.FIELD_OVERTIME: RateType.FIELD_TIME,
}


def resolve_rates(technician: Technician | None, project: Project | None, defaults: Rates) -> Rates:
    """Technician rates (or defaults), then project overrides by seniority."""
    base = technician.rates if technician and technician.rates else defaults
    rates = Rates(rt=base.rt, tt=base.tt, ft=base.ft, shop_ot=base.shop_ot, field_ot=base.field_ot)
    if project is None:
        return rates

    senior = technician.is_senior if technician else False
    shop = project.shop_senior_rate if senior else project.shop_junior_rate
    field_rate = project.ft_senior_rate if senior else project.ft_junior_rate
    if shop is not None:
        rates.rt = shop
    if field_rate is not None:
        rates.ft = field_rate
    if project.travel_rate is not None:
        rates.tt = project.travel_rate
    return rates


def resolve_billing_fields(entry: TimeEntry, project: Project | None) -> tuple[str, str, str]:
    """Approver, PO/AFE and cost center from the entry, else from its project."""
    own = (norm_str(entry.approver), norm_str(entry.po_afe), norm_str(entry.cc))
    if any(own) or project is None:
        return own
    return norm_str(project.approver), norm_str(project.po_afe), norm_str(project.cc)


def entry_key(entry: TimeEntry, project: Project | None) -> TicketKey:
    customer_id = entry.customer_id or (project.customer_id if project else None) or UNASSIGNED
    return TicketKey(
        date=entry.date,
        technician_id=entry.technician_id,
        customer_id=customer_id,
        project_id=entry.project_id,
        location=norm_str(entry.location),
        billing_key=build_billing_key(*resolve_billing_fields(entry, project)),
    )


def aggregate_entries(
    entries: Iterable[TimeEntry],
    technicians: Mapping[str, Technician] | None = None,
    customers: Mapping[str, Customer] | None = None,
    projects: Mapping[str, Project] | None = None,
    config: Config | None = None,
) -> list[TicketAggregate]:
    """Group entries by composite key and total their hours per rate type.

    Pure and deterministic: entries keep their input order inside a group and
    the result is ordered by date, most recent first.
    """
    technicians = technicians or {}
    customers = customers or {}
    projects = projects or {}
    config = config or Config()

    groups: dict[TicketKey, TicketAggregate] = {}
    for entry in entries:
        technician = technicians.get(entry.technician_id)
        if technician and technician.department in config.excluded_departments:
            continue

        project = projects.get(entry.project_id) if entry.project_id else None
        key = entry_key(entry, project)
        aggregate = groups.get(key)
        if aggregate is None:
            aggregate = TicketAggregate(
                date=key.date,
                technician_id=key.technician_id,
                customer_id=key.customer_id,
                project_id=key.project_id,
                location=key.location,
                billing_key=key.billing_key,
                rates=resolve_rates(technician, project, config.default_rates),
                technician=technician,
                customer=customers.get(key.customer_id),
                project=project,
            )
            groups[key] = aggregate

        rate_type = entry.rate_type
        if config.fold_overtime:
            rate_type = _OVERTIME_FOLD.get(rate_type, rate_type)

        aggregate.entries.append(entry)
        aggregate.hours_by_rate_type[rate_type] += entry.hours
        aggregate.total_hours += entry.hours

    log.debug("Aggregated entries into %d tickets", len(groups))
    return sorted(groups.values(), key=lambda a: a.date, reverse=True)


def entries_to_service_rows(entries: Iterable[TimeEntry]) -> list[ServiceRow]:
    """One row per entry with its hours in the column of its rate type."""
    rows = []
    for index, entry in enumerate(entries):
        row = ServiceRow(id=entry.id or f"entry-{index}", description=entry.description or "")
        setattr(row, RATE_COLUMNS[entry.rate_type], entry.hours or ZERO)
        rows.append(row)
    return rows
