"""Ticket number formatting and allocation."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass

from errors import ConflictError, PersistenceError

log = logging.getLogger("service_tickets.numbering")

TICKET_NUMBER_RE = re.compile(r"^(?P<initials>[A-Z]+)_(?P<yy>\d{2})(?P<seq>\d{3,})$")

MAX_ATTEMPTS = 5


def format_ticket_number(initials: str, year: int, sequence: int) -> str:
    """INITIALS_YYnnn, e.g. AB_24001."""
    return f"{(initials or 'XX').upper()}_{year % 100:02d}{sequence:03d}"


def placeholder_ticket_number(initials: str, year: int) -> str:
    return f"{(initials or 'XX').upper()}_{year % 100:02d}XXX"


def parse_ticket_number(value: str) -> tuple[str, int, int] | None:
    """Split into (initials, two-digit year, sequence), or None if malformed."""
    match = TICKET_NUMBER_RE.match(value or "")
    if not match:
        return None
    return match["initials"], int(match["yy"]), int(match["seq"])


@dataclass
class Allocation:
    ticket_number: str
    sequence_number: int
    year: int
    employee_initials: str
    already_assigned: bool = False


def allocate(
    initials: str,
    year: int,
    current_max: Callable[[], int],
    assign: Callable[[Allocation], None],
    existing_number: Callable[[], str | None],
    attempts: int = MAX_ATTEMPTS,
) -> Allocation:
    """Read the partition's max sequence, then try to claim max + 1.

    ``assign`` must persist the number under the unique
    (initials, year, sequence, demo) constraint and raise ConflictError on
    collision. After a collision the record is re-read: if it already holds
    a number (another approval won), that number is returned as already
    assigned; otherwise the next sequence is tried.
    """
    initials = (initials or "XX").upper()
    for attempt in range(1, attempts + 1):
        sequence = current_max() + 1
        allocation = Allocation(format_ticket_number(initials, year, sequence), sequence, year, initials)
        try:
            assign(allocation)
        except ConflictError:
            number = existing_number()
            if number:
                log.info("Ticket already numbered %s, keeping it", number)
                parsed = parse_ticket_number(number)
                seq = parsed[2] if parsed else 0
                return Allocation(number, seq, year, initials, already_assigned=True)
            log.warning("Ticket number %s taken, retrying (%d/%d)", allocation.ticket_number, attempt, attempts)
            continue
        log.info("Allocated ticket number %s", allocation.ticket_number)
        return allocation
    raise PersistenceError(f"Could not allocate a ticket number for {initials} after {attempts} attempts")
