from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, NamedTuple

UNASSIGNED = "unassigned"
UNASSIGNED_NAME = "Unassigned Client"
ZERO = Decimal("0")


class RateType(str, Enum):
    SHOP_TIME = "Shop Time"
    TRAVEL_TIME = "Travel Time"
    FIELD_TIME = "Field Time"
    SHOP_OVERTIME = "Shop Overtime"
    FIELD_OVERTIME = "Field Overtime"

    @classmethod
    def parse(cls, value: str | None) -> RateType:
        """Unknown or missing rate types bill as shop time."""
        for member in cls:
            if member.value == value or member.name == value:
                return member
        return cls.SHOP_TIME


# Row column attribute per rate type, in display order
RATE_COLUMNS: dict[RateType, str] = {
    RateType.SHOP_TIME: "shop_time",
    RateType.TRAVEL_TIME: "travel_time",
    RateType.FIELD_TIME: "field_time",
    RateType.SHOP_OVERTIME: "shop_overtime",
    RateType.FIELD_OVERTIME: "field_overtime",
}


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    REJECTED = "rejected"
    APPROVED = "approved"
    PDF_EXPORTED = "pdf_exported"
    QBO_CREATED = "qbo_created"
    SENT_TO_CNRL = "sent_to_cnrl"
    CNRL_APPROVED = "cnrl_approved"
    SUBMITTED_TO_CNRL = "submitted_to_cnrl"

    @classmethod
    def parse(cls, value: str | None) -> WorkflowStatus:
        """Missing or unknown statuses read as draft."""
        if not value:
            return cls.DRAFT
        try:
            return cls(value)
        except ValueError:
            return cls.DRAFT


class ExpenseType(str, Enum):
    TRAVEL = "Travel"
    SUBSISTENCE = "Subsistence"
    EXPENSES = "Expenses"
    EQUIPMENT = "Equipment"


@dataclass
class Rates:
    rt: Decimal = Decimal("110")
    tt: Decimal = Decimal("85")
    ft: Decimal = Decimal("140")
    shop_ot: Decimal = Decimal("165")
    field_ot: Decimal = Decimal("165")

    def for_rate_type(self, rate_type: RateType) -> Decimal:
        return {
            RateType.SHOP_TIME: self.rt,
            RateType.TRAVEL_TIME: self.tt,
            RateType.FIELD_TIME: self.ft,
            RateType.SHOP_OVERTIME: self.shop_ot,
            RateType.FIELD_OVERTIME: self.field_ot,
        }[rate_type]


@dataclass
class Technician:
    id: str
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    department: str = ""
    position: str = "Junior"
    rates: Rates | None = None

    @property
    def initials(self) -> str:
        initials = (self.first_name[:1] + self.last_name[:1]).upper()
        return initials or "XX"

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.email or "Unknown"

    @property
    def is_senior(self) -> bool:
        return (self.position or "").strip().lower() == "senior"


@dataclass
class Customer:
    id: str
    name: str
    contact_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    service_location: str = ""
    location_code: str = ""
    po_number: str = ""
    approver_name: str = ""

    @property
    def city_state(self) -> str:
        return ", ".join(part for part in (self.city, self.state) if part)


@dataclass
class Project:
    id: str
    name: str
    customer_id: str | None = None
    project_number: str = ""
    location: str = ""
    approver: str = ""
    po_afe: str = ""
    cc: str = ""
    other: str = ""
    shop_junior_rate: Decimal | None = None
    shop_senior_rate: Decimal | None = None
    ft_junior_rate: Decimal | None = None
    ft_senior_rate: Decimal | None = None
    travel_rate: Decimal | None = None


@dataclass
class TimeEntry:
    id: str
    date: date
    technician_id: str
    customer_id: str | None = None
    project_id: str | None = None
    location: str = ""
    rate_type: RateType = RateType.SHOP_TIME
    hours: Decimal = ZERO
    description: str = ""
    approver: str = ""
    po_afe: str = ""
    cc: str = ""
    other: str = ""
    is_demo: bool = False
    updated_at: datetime | None = None


class TicketKey(NamedTuple):
    """Composite identity of a ticket."""

    date: date
    technician_id: str
    customer_id: str
    project_id: str | None
    location: str
    billing_key: str


@dataclass
class TicketAggregate:
    date: date
    technician_id: str
    customer_id: str
    project_id: str | None
    location: str
    billing_key: str
    entries: list[TimeEntry] = field(default_factory=list)
    hours_by_rate_type: dict[RateType, Decimal] = field(
        default_factory=lambda: {rt: ZERO for rt in RateType}
    )
    total_hours: Decimal = ZERO
    rates: Rates = field(default_factory=Rates)
    technician: Technician | None = None
    customer: Customer | None = None
    project: Project | None = None

    @property
    def key(self) -> TicketKey:
        return TicketKey(
            self.date, self.technician_id, self.customer_id,
            self.project_id, self.location, self.billing_key,
        )

    @property
    def is_demo(self) -> bool:
        return bool(self.entries) and all(e.is_demo for e in self.entries)

    @property
    def latest_entry_update(self) -> datetime | None:
        stamps = [e.updated_at for e in self.entries if e.updated_at]
        return max(stamps) if stamps else None

    @property
    def technician_initials(self) -> str:
        return self.technician.initials if self.technician else "XX"


@dataclass
class HeaderFields:
    """Display values of a ticket header. Every field is a plain string."""

    customer_name: str = ""
    address: str = ""
    city_state: str = ""
    zip_code: str = ""
    phone: str = ""
    email: str = ""
    contact_name: str = ""
    service_location: str = ""
    location_code: str = ""
    po_number: str = ""
    approver: str = ""
    po_afe: str = ""
    cc: str = ""
    other: str = ""
    tech_name: str = ""
    project_number: str = ""
    date: str = ""

    @classmethod
    def field_names(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    def as_dict(self) -> dict[str, str]:
        return {name: getattr(self, name) for name in self.field_names()}

    def copy(self, **changes: str) -> HeaderFields:
        return replace(self, **changes)


RATE_OVERRIDE_FIELDS = ("rate_rt", "rate_tt", "rate_ft", "rate_shop_ot", "rate_field_ot")


@dataclass
class HeaderOverrides:
    """Saved replacement values for header fields plus an optional rate snapshot.

    A field left as None has no override. The field set is closed, so a
    misspelled keyword fails at construction instead of being ignored.
    """

    customer_name: str | None = None
    address: str | None = None
    city_state: str | None = None
    zip_code: str | None = None
    phone: str | None = None
    email: str | None = None
    contact_name: str | None = None
    service_location: str | None = None
    location_code: str | None = None
    po_number: str | None = None
    approver: str | None = None
    po_afe: str | None = None
    cc: str | None = None
    other: str | None = None
    tech_name: str | None = None
    project_number: str | None = None
    date: str | None = None
    rate_rt: Decimal | None = None
    rate_tt: Decimal | None = None
    rate_ft: Decimal | None = None
    rate_shop_ot: Decimal | None = None
    rate_field_ot: Decimal | None = None

    @classmethod
    def field_names(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in self.field_names())

    def has_rate_snapshot(self) -> bool:
        return any(getattr(self, name) is not None for name in RATE_OVERRIDE_FIELDS)

    def snapshot_rates(self) -> Rates | None:
        if not self.has_rate_snapshot():
            return None
        defaults = Rates()
        return Rates(
            rt=self.rate_rt if self.rate_rt is not None else defaults.rt,
            tt=self.rate_tt if self.rate_tt is not None else defaults.tt,
            ft=self.rate_ft if self.rate_ft is not None else defaults.ft,
            shop_ot=self.rate_shop_ot if self.rate_shop_ot is not None else defaults.shop_ot,
            field_ot=self.rate_field_ot if self.rate_field_ot is not None else defaults.field_ot,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for name in self.field_names():
            value = getattr(self, name)
            if value is None:
                continue
            data[name] = float(value) if isinstance(value, Decimal) else value
        return data

    @classmethod
    def from_header(cls, header: HeaderFields, rates: Rates | None = None) -> HeaderOverrides:
        overrides = cls(**header.as_dict())
        if rates is not None:
            overrides.rate_rt = rates.rt
            overrides.rate_tt = rates.tt
            overrides.rate_ft = rates.ft
            overrides.rate_shop_ot = rates.shop_ot
            overrides.rate_field_ot = rates.field_ot
        return overrides


@dataclass
class RowOverride:
    description: str = ""
    shop_time: Decimal = ZERO
    travel_time: Decimal = ZERO
    field_time: Decimal = ZERO
    shop_overtime: Decimal = ZERO
    field_overtime: Decimal = ZERO

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "st": float(self.shop_time),
            "tt": float(self.travel_time),
            "ft": float(self.field_time),
            "so": float(self.shop_overtime),
            "fo": float(self.field_overtime),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RowOverride:
        def hours(key: str) -> Decimal:
            return Decimal(str(data.get(key) or 0))

        return cls(
            description=str(data.get("description") or ""),
            shop_time=hours("st"),
            travel_time=hours("tt"),
            field_time=hours("ft"),
            shop_overtime=hours("so"),
            field_overtime=hours("fo"),
        )


@dataclass
class ServiceRow:
    """One service line: a description and hours in each rate column."""

    id: str
    description: str = ""
    shop_time: Decimal = ZERO
    travel_time: Decimal = ZERO
    field_time: Decimal = ZERO
    shop_overtime: Decimal = ZERO
    field_overtime: Decimal = ZERO
    is_synthetic: bool = False

    @property
    def total_hours(self) -> Decimal:
        return sum((self.hours_for(rt) for rt in RateType), ZERO)

    def hours_for(self, rate_type: RateType) -> Decimal:
        return getattr(self, RATE_COLUMNS[rate_type])

    def amount(self, rates: Rates) -> Decimal:
        return sum((self.hours_for(rt) * rates.for_rate_type(rt) for rt in RateType), ZERO)

    def to_override(self) -> RowOverride:
        return RowOverride(
            description=self.description,
            shop_time=self.shop_time,
            travel_time=self.travel_time,
            field_time=self.field_time,
            shop_overtime=self.shop_overtime,
            field_overtime=self.field_overtime,
        )

    def with_override(self, override: RowOverride) -> ServiceRow:
        return replace(
            self,
            description=override.description,
            shop_time=override.shop_time,
            travel_time=override.travel_time,
            field_time=override.field_time,
            shop_overtime=override.shop_overtime,
            field_overtime=override.field_overtime,
        )


@dataclass
class TicketRecord:
    id: str
    date: date
    technician_id: str
    customer_id: str | None = None
    project_id: str | None = None
    location: str = ""
    employee_initials: str = "XX"
    ticket_number: str | None = None
    sequence_number: int | None = None
    year: int | None = None
    workflow_status: WorkflowStatus = WorkflowStatus.DRAFT
    header_overrides: HeaderOverrides = field(default_factory=HeaderOverrides)
    edited_entry_overrides: dict[str, RowOverride] = field(default_factory=dict)
    # Every row as it was submitted or approved, authoritative while locked
    row_snapshot: dict[str, RowOverride] = field(default_factory=dict)
    is_edited: bool = False
    edited_descriptions: dict[str, list[str]] = field(default_factory=dict)
    edited_hours: dict[str, list[Decimal]] = field(default_factory=dict)
    total_hours: Decimal = ZERO
    total_amount: Decimal = ZERO
    is_discarded: bool = False
    is_demo: bool = False
    restored_at: datetime | None = None
    rejected_at: datetime | None = None
    rejection_notes: str | None = None
    approved_by_admin_id: str | None = None
    pdf_exported_at: datetime | None = None
    qbo_invoice_id: str | None = None
    qbo_invoice_number: str | None = None
    sent_to_cnrl_at: datetime | None = None
    cnrl_approved_at: datetime | None = None
    submitted_to_cnrl_at: datetime | None = None
    cnrl_notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_legacy_edits(self) -> bool:
        return self.is_edited and any(self.edited_hours.values())


@dataclass
class Expense:
    type: ExpenseType
    description: str
    quantity: Decimal = Decimal("1")
    rate: Decimal = ZERO
    unit: str | None = None
    id: str | None = None
    ticket_id: str | None = None

    @property
    def amount(self) -> Decimal:
        return self.quantity * self.rate


@dataclass
class DisplayTicket:
    """Merged view of a ticket: live aggregate plus saved overrides."""

    key: TicketKey
    header: HeaderFields
    rows: list[ServiceRow]
    rates: Rates
    technician_initials: str
    record_id: str | None = None
    ticket_number: str | None = None
    workflow_status: WorkflowStatus = WorkflowStatus.DRAFT
    is_locked: bool = False
    is_discarded: bool = False
    is_standalone: bool = False
    is_demo: bool = False
    snapshot_total_hours: Decimal | None = None
    snapshot_total_amount: Decimal | None = None

    @property
    def hours_by_rate_type(self) -> dict[RateType, Decimal]:
        return {rt: sum((row.hours_for(rt) for row in self.rows), ZERO) for rt in RateType}

    @property
    def total_hours(self) -> Decimal:
        if self.snapshot_total_hours is not None:
            return self.snapshot_total_hours
        return sum((row.total_hours for row in self.rows), ZERO)

    @property
    def total_amount(self) -> Decimal:
        if self.snapshot_total_amount is not None:
            return self.snapshot_total_amount
        return sum((row.amount(self.rates) for row in self.rows), ZERO)

    @property
    def display_ticket_number(self) -> str:
        if self.ticket_number:
            return self.ticket_number
        return f"{self.technician_initials}_{self.key.date.year % 100:02d}XXX"


@dataclass
class Config:
    default_rates: Rates = field(default_factory=Rates)
    currency: str = "CAD"
    demo_mode: bool = False
    bulk_delay_seconds: Decimal = Decimal("0.5")
    bulk_max_workers: int = 1
    fold_overtime: bool = False
    excluded_departments: tuple[str, ...] = ("Panel Shop",)
