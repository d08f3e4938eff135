"""Correlate derived ticket aggregates with persisted ticket records."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from models import UNASSIGNED, ZERO, TicketAggregate, TicketKey, TicketRecord
from utils import billing_po_afe, is_placeholder, norm_str
from workflow import is_locked

log = logging.getLogger("service_tickets.matcher")


@dataclass
class MatchResult:
    matches: dict[TicketKey, TicketRecord] = field(default_factory=dict)
    standalone: list[TicketRecord] = field(default_factory=list)
    trashed: list[TicketRecord] = field(default_factory=list)

    def record_for(self, aggregate: TicketAggregate) -> TicketRecord | None:
        return self.matches.get(aggregate.key)


def record_po_afe(record: TicketRecord) -> str:
    return norm_str(record.header_overrides.po_afe)


def core_match(aggregate: TicketAggregate, record: TicketRecord) -> bool:
    """Identity fields agree, ignoring location and billing detail."""
    if record.date != aggregate.date or record.technician_id != aggregate.technician_id:
        return False
    if (record.customer_id or UNASSIGNED) != aggregate.customer_id:
        return False
    if record.project_id and record.project_id != aggregate.project_id:
        return False
    return True


def po_afe_compatible(aggregate: TicketAggregate, record: TicketRecord) -> bool:
    ours = billing_po_afe(aggregate.billing_key)
    theirs = record_po_afe(record)
    if is_placeholder(ours) or is_placeholder(theirs):
        return True
    return norm_str(ours) == theirs


def location_exact(aggregate: TicketAggregate, record: TicketRecord) -> bool:
    return norm_str(aggregate.location) == norm_str(record.location)


def location_loose(aggregate: TicketAggregate, record: TicketRecord) -> bool:
    return not norm_str(aggregate.location) or not norm_str(record.location)


def _tier(record: TicketRecord) -> int:
    if record.is_discarded:
        return 2
    return 0 if is_locked(record) else 1


def has_unsaved_work(record: TicketRecord) -> bool:
    return (
        bool(record.edited_entry_overrides)
        or bool(record.row_snapshot)
        or record.has_legacy_edits
        or record.total_hours > ZERO
    )


class RecordMatcher:
    """Binds each aggregate to at most one record.

    Links made in one pass are remembered and preferred in the next, so a
    ticket keeps its record while its entries are being edited in the same
    session. Call ``reset`` when the session ends.
    """

    def __init__(self):
        self._links: dict[TicketKey, str] = {}

    def link(self, key: TicketKey, record_id: str) -> None:
        self._links[key] = record_id

    def forget(self, record_id: str) -> None:
        self._links = {k: v for k, v in self._links.items() if v != record_id}

    def reset(self) -> None:
        self._links.clear()

    def linked_record_id(self, key: TicketKey) -> str | None:
        return self._links.get(key)

    def match(
        self,
        aggregates: Iterable[TicketAggregate],
        records: Iterable[TicketRecord],
        open_record_id: str | None = None,
    ) -> MatchResult:
        aggregates = list(aggregates)
        pool: dict[str, TicketRecord] = {r.id: r for r in records}
        # Lock-first claim order, stable within a tier
        ordered = sorted(pool.values(), key=_tier)
        result = MatchResult()

        def claim(aggregate: TicketAggregate, record: TicketRecord) -> None:
            result.matches[aggregate.key] = record
            del pool[record.id]

        for aggregate in aggregates:
            linked = self._links.get(aggregate.key)
            if linked and linked in pool:
                claim(aggregate, pool[linked])

        for require_po_afe in (True, False):
            for aggregate in aggregates:
                if aggregate.key in result.matches:
                    continue
                record = self._find(aggregate, [r for r in ordered if r.id in pool], require_po_afe)
                if record is not None:
                    claim(aggregate, record)

        for key, record in result.matches.items():
            self._links[key] = record.id

        for record in ordered:
            if record.id not in pool:
                continue
            if record.is_discarded:
                result.trashed.append(record)
            elif record.customer_id and (has_unsaved_work(record) or record.id == open_record_id):
                result.standalone.append(record)

        log.debug(
            "Matched %d of %d aggregates; %d standalone, %d trashed",
            len(result.matches), len(aggregates), len(result.standalone), len(result.trashed),
        )
        return result

    def _find(
        self,
        aggregate: TicketAggregate,
        candidates: list[TicketRecord],
        require_po_afe: bool,
    ) -> TicketRecord | None:
        eligible = [
            r for r in candidates
            if core_match(aggregate, r) and (not require_po_afe or po_afe_compatible(aggregate, r))
        ]
        for tier in (0, 1, 2):
            in_tier = [r for r in eligible if _tier(r) == tier]
            for record in in_tier:
                if location_exact(aggregate, record):
                    return record
            for record in in_tier:
                if location_loose(aggregate, record):
                    # Can bind two real tickets to one record on odd data
                    log.debug(
                        "Ticket %s matched record %s without location (%r vs %r)",
                        aggregate.key, record.id, aggregate.location, record.location,
                    )
                    return record
        return None
