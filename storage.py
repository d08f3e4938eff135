from __future__ import annotations

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import fields
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any
from uuid import uuid4

from errors import ConflictError, NotFoundError, PersistenceError
from models import (
    Config,
    Customer,
    Expense,
    ExpenseType,
    HeaderOverrides,
    Project,
    Rates,
    RateType,
    RowOverride,
    Technician,
    TicketRecord,
    TimeEntry,
    WorkflowStatus,
)
from utils import parse_approver_po_afe, to_decimal

log = logging.getLogger("service_tickets.storage")


def _get_db_path() -> Path:
    """Get database path from environment variable or default location."""
    if env_path := os.environ.get("SERVICE_TICKETS_DB"):
        return Path(env_path)
    return Path(__file__).parent / "data" / "service_tickets.db"


DB_PATH = _get_db_path()


def get_connection() -> sqlite3.Connection:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def _persistence_error(error: sqlite3.Error) -> PersistenceError:
    message = str(error)
    lowered = message.lower()
    if "no such table" in lowered or "no such column" in lowered or "has no column" in lowered:
        return PersistenceError(message, PersistenceError.SCHEMA)
    if any(word in lowered for word in ("readonly", "permission", "authorization", "locked")):
        return PersistenceError(message, PersistenceError.PERMISSION)
    return PersistenceError(message)


@contextmanager
def _transaction():
    """Connection that commits on success and maps sqlite errors."""
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except sqlite3.IntegrityError as e:
        conn.rollback()
        raise ConflictError(str(e)) from e
    except sqlite3.Error as e:
        conn.rollback()
        log.error("Database error: %s", e)
        raise _persistence_error(e) from e
    finally:
        conn.close()


def init_db():
    """Create tables if they don't exist."""
    conn = get_connection()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS technicians (
            id TEXT PRIMARY KEY,
            first_name TEXT NOT NULL DEFAULT '',
            last_name TEXT NOT NULL DEFAULT '',
            email TEXT NOT NULL DEFAULT '',
            department TEXT NOT NULL DEFAULT '',
            position TEXT NOT NULL DEFAULT 'Junior',
            rt TEXT,
            tt TEXT,
            ft TEXT,
            shop_ot TEXT,
            field_ot TEXT
        );

        CREATE TABLE IF NOT EXISTS customers (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            contact_name TEXT NOT NULL DEFAULT '',
            email TEXT NOT NULL DEFAULT '',
            phone TEXT NOT NULL DEFAULT '',
            address TEXT NOT NULL DEFAULT '',
            city TEXT NOT NULL DEFAULT '',
            state TEXT NOT NULL DEFAULT '',
            zip_code TEXT NOT NULL DEFAULT '',
            service_location TEXT NOT NULL DEFAULT '',
            location_code TEXT NOT NULL DEFAULT '',
            po_number TEXT NOT NULL DEFAULT '',
            approver_name TEXT NOT NULL DEFAULT ''
        );

        CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            customer_id TEXT,
            project_number TEXT NOT NULL DEFAULT '',
            location TEXT NOT NULL DEFAULT '',
            approver TEXT NOT NULL DEFAULT '',
            po_afe TEXT NOT NULL DEFAULT '',
            cc TEXT NOT NULL DEFAULT '',
            other TEXT NOT NULL DEFAULT '',
            shop_junior_rate TEXT,
            shop_senior_rate TEXT,
            ft_junior_rate TEXT,
            ft_senior_rate TEXT,
            travel_rate TEXT
        );

        CREATE TABLE IF NOT EXISTS time_entries (
            id TEXT PRIMARY KEY,
            date TEXT NOT NULL,
            user_id TEXT NOT NULL,
            customer_id TEXT,
            project_id TEXT,
            location TEXT NOT NULL DEFAULT '',
            rate_type TEXT NOT NULL DEFAULT 'Shop Time',
            hours TEXT NOT NULL DEFAULT '0',
            description TEXT NOT NULL DEFAULT '',
            approver TEXT NOT NULL DEFAULT '',
            po_afe TEXT NOT NULL DEFAULT '',
            cc TEXT NOT NULL DEFAULT '',
            other TEXT NOT NULL DEFAULT '',
            is_demo INTEGER DEFAULT 0,
            updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS ticket_records (
            id TEXT PRIMARY KEY,
            date TEXT NOT NULL,
            user_id TEXT NOT NULL,
            customer_id TEXT,
            project_id TEXT,
            location TEXT NOT NULL DEFAULT '',
            employee_initials TEXT NOT NULL DEFAULT 'XX',
            ticket_number TEXT,
            sequence_number INTEGER,
            year INTEGER,
            workflow_status TEXT NOT NULL DEFAULT 'draft',
            header_overrides TEXT NOT NULL DEFAULT '{}',
            edited_entry_overrides TEXT NOT NULL DEFAULT '{}',
            row_snapshot TEXT NOT NULL DEFAULT '{}',
            is_edited INTEGER DEFAULT 0,
            edited_descriptions TEXT NOT NULL DEFAULT '{}',
            edited_hours TEXT NOT NULL DEFAULT '{}',
            total_hours TEXT NOT NULL DEFAULT '0',
            total_amount TEXT NOT NULL DEFAULT '0',
            is_discarded INTEGER DEFAULT 0,
            is_demo INTEGER DEFAULT 0,
            restored_at TEXT,
            rejected_at TEXT,
            rejection_notes TEXT,
            approved_by_admin_id TEXT,
            created_at TEXT,
            updated_at TEXT,
            UNIQUE(employee_initials, year, sequence_number, is_demo)
        );

        CREATE TABLE IF NOT EXISTS expenses (
            id TEXT PRIMARY KEY,
            ticket_id TEXT NOT NULL,
            type TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            quantity TEXT NOT NULL DEFAULT '1',
            rate TEXT NOT NULL DEFAULT '0',
            unit TEXT,
            FOREIGN KEY (ticket_id) REFERENCES ticket_records(id)
        );

        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_entries_date ON time_entries(date);
        CREATE INDEX IF NOT EXISTS idx_records_date ON ticket_records(date);
        CREATE INDEX IF NOT EXISTS idx_records_user ON ticket_records(user_id);
        CREATE INDEX IF NOT EXISTS idx_expenses_ticket ON expenses(ticket_id);
    """)

    # Migration: invoicing and row snapshot columns were added after the first release
    cursor = conn.execute("PRAGMA table_info(ticket_records)")
    columns = [row[1] for row in cursor.fetchall()]
    for column in _INVOICING_COLUMNS:
        if column not in columns:
            conn.execute(f"ALTER TABLE ticket_records ADD COLUMN {column} TEXT")
    if "row_snapshot" not in columns:
        conn.execute("ALTER TABLE ticket_records ADD COLUMN row_snapshot TEXT NOT NULL DEFAULT '{}'")
    conn.commit()
    conn.close()


_INVOICING_COLUMNS = (
    "pdf_exported_at",
    "qbo_invoice_id",
    "qbo_invoice_number",
    "sent_to_cnrl_at",
    "cnrl_approved_at",
    "submitted_to_cnrl_at",
    "cnrl_notes",
)


def _parse_datetime(val: str | None) -> datetime | None:
    return datetime.fromisoformat(val) if val else None


def _format_datetime(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


def _optional_decimal(val: str | None) -> Decimal | None:
    return Decimal(val) if val not in (None, "") else None


def _optional_str(val: Decimal | None) -> str | None:
    return str(val) if val is not None else None


def _load_json(val: str | None) -> dict[str, Any]:
    if not val:
        return {}
    data = json.loads(val)
    return data if isinstance(data, dict) else {}


# --- Technicians, customers and projects ---


def _row_to_technician(row: sqlite3.Row) -> Technician:
    rates = None
    if row["rt"] is not None:
        defaults = Rates()
        rates = Rates(
            rt=Decimal(row["rt"]),
            tt=_optional_decimal(row["tt"]) or defaults.tt,
            ft=_optional_decimal(row["ft"]) or defaults.ft,
            shop_ot=_optional_decimal(row["shop_ot"]) or defaults.shop_ot,
            field_ot=_optional_decimal(row["field_ot"]) or defaults.field_ot,
        )
    return Technician(
        id=row["id"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        email=row["email"],
        department=row["department"],
        position=row["position"],
        rates=rates,
    )


def save_technician(technician: Technician) -> None:
    rates = technician.rates
    with _transaction() as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO technicians
            (id, first_name, last_name, email, department, position, rt, tt, ft, shop_ot, field_ot)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                technician.id,
                technician.first_name,
                technician.last_name,
                technician.email,
                technician.department,
                technician.position,
                str(rates.rt) if rates else None,
                str(rates.tt) if rates else None,
                str(rates.ft) if rates else None,
                str(rates.shop_ot) if rates else None,
                str(rates.field_ot) if rates else None,
            ),
        )


def get_technician(technician_id: str) -> Technician | None:
    with _transaction() as conn:
        row = conn.execute("SELECT * FROM technicians WHERE id = ?", (technician_id,)).fetchone()
    return _row_to_technician(row) if row else None


def list_technicians() -> list[Technician]:
    with _transaction() as conn:
        rows = conn.execute("SELECT * FROM technicians ORDER BY last_name, first_name").fetchall()
    return [_row_to_technician(row) for row in rows]


_CUSTOMER_COLUMNS = [f.name for f in fields(Customer)]


def save_customer(customer: Customer) -> None:
    placeholders = ", ".join("?" for _ in _CUSTOMER_COLUMNS)
    with _transaction() as conn:
        conn.execute(
            f"INSERT OR REPLACE INTO customers ({', '.join(_CUSTOMER_COLUMNS)}) VALUES ({placeholders})",
            tuple(getattr(customer, name) for name in _CUSTOMER_COLUMNS),
        )


def get_customer(customer_id: str) -> Customer | None:
    with _transaction() as conn:
        row = conn.execute("SELECT * FROM customers WHERE id = ?", (customer_id,)).fetchone()
    return Customer(**{name: row[name] for name in _CUSTOMER_COLUMNS}) if row else None


def list_customers() -> list[Customer]:
    with _transaction() as conn:
        rows = conn.execute("SELECT * FROM customers ORDER BY name").fetchall()
    return [Customer(**{name: row[name] for name in _CUSTOMER_COLUMNS}) for row in rows]


_PROJECT_RATE_COLUMNS = ("shop_junior_rate", "shop_senior_rate", "ft_junior_rate", "ft_senior_rate", "travel_rate")
_PROJECT_COLUMNS = [f.name for f in fields(Project)]


def _row_to_project(row: sqlite3.Row) -> Project:
    values = {name: row[name] for name in _PROJECT_COLUMNS}
    for name in _PROJECT_RATE_COLUMNS:
        values[name] = _optional_decimal(values[name])
    return Project(**values)


def save_project(project: Project) -> None:
    values = []
    for name in _PROJECT_COLUMNS:
        value = getattr(project, name)
        values.append(_optional_str(value) if name in _PROJECT_RATE_COLUMNS else value)
    placeholders = ", ".join("?" for _ in _PROJECT_COLUMNS)
    with _transaction() as conn:
        conn.execute(
            f"INSERT OR REPLACE INTO projects ({', '.join(_PROJECT_COLUMNS)}) VALUES ({placeholders})",
            tuple(values),
        )


def get_project(project_id: str) -> Project | None:
    with _transaction() as conn:
        row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    return _row_to_project(row) if row else None


def list_projects() -> list[Project]:
    with _transaction() as conn:
        rows = conn.execute("SELECT * FROM projects ORDER BY name").fetchall()
    return [_row_to_project(row) for row in rows]


# --- Time entries ---


def _row_to_entry(row: sqlite3.Row) -> TimeEntry:
    return TimeEntry(
        id=row["id"],
        date=date.fromisoformat(row["date"]),
        technician_id=row["user_id"],
        customer_id=row["customer_id"],
        project_id=row["project_id"],
        location=row["location"],
        rate_type=RateType.parse(row["rate_type"]),
        hours=Decimal(row["hours"]),
        description=row["description"],
        approver=row["approver"],
        po_afe=row["po_afe"],
        cc=row["cc"],
        other=row["other"],
        is_demo=bool(row["is_demo"]),
        updated_at=_parse_datetime(row["updated_at"]),
    )


def save_time_entry(entry: TimeEntry) -> TimeEntry:
    """Insert or update a time entry, stamping updated_at."""
    if not entry.id:
        entry.id = str(uuid4())
    entry.updated_at = datetime.now()
    with _transaction() as conn:
        conn.execute(
            """
            INSERT OR REPLACE INTO time_entries
            (id, date, user_id, customer_id, project_id, location, rate_type, hours,
             description, approver, po_afe, cc, other, is_demo, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.date.isoformat(),
                entry.technician_id,
                entry.customer_id,
                entry.project_id,
                entry.location,
                entry.rate_type.value,
                str(entry.hours),
                entry.description,
                entry.approver,
                entry.po_afe,
                entry.cc,
                entry.other,
                int(entry.is_demo),
                _format_datetime(entry.updated_at),
            ),
        )
    return entry


def get_time_entry(entry_id: str) -> TimeEntry | None:
    with _transaction() as conn:
        row = conn.execute("SELECT * FROM time_entries WHERE id = ?", (entry_id,)).fetchone()
    return _row_to_entry(row) if row else None


def list_time_entries(
    start: date,
    end: date,
    technician_id: str | None = None,
    customer_id: str | None = None,
    is_demo: bool | None = None,
) -> list[TimeEntry]:
    """Entries between two dates (inclusive), oldest first."""
    clauses = ["date >= ?", "date <= ?"]
    params: list[Any] = [start.isoformat(), end.isoformat()]
    if technician_id is not None:
        clauses.append("user_id = ?")
        params.append(technician_id)
    if customer_id is not None:
        clauses.append("customer_id = ?")
        params.append(customer_id)
    if is_demo is not None:
        clauses.append("is_demo = ?")
        params.append(int(is_demo))
    with _transaction() as conn:
        rows = conn.execute(
            f"SELECT * FROM time_entries WHERE {' AND '.join(clauses)} ORDER BY date, rowid",
            params,
        ).fetchall()
    return [_row_to_entry(row) for row in rows]


def delete_time_entry(entry_id: str) -> None:
    with _transaction() as conn:
        conn.execute("DELETE FROM time_entries WHERE id = ?", (entry_id,))


# --- Ticket records ---


def _header_overrides_from_json(data: dict[str, Any]) -> HeaderOverrides:
    known = set(HeaderOverrides.field_names())
    values: dict[str, Any] = {}
    for key, value in data.items():
        if key == "approver_po_afe":
            continue
        if key not in known:
            log.warning("Dropping unknown header override %r", key)
            continue
        if value is None:
            continue
        values[key] = to_decimal(value) if key.startswith("rate_") else str(value)

    # Older records stored approver, PO/AFE and cost center as one value
    combined = data.get("approver_po_afe")
    if combined and not any(values.get(k) for k in ("approver", "po_afe", "cc")):
        approver, po_afe, cc = parse_approver_po_afe(combined)
        values.update(approver=approver, po_afe=po_afe, cc=cc)
    return HeaderOverrides(**values)


def _row_overrides_from_json(val: str | None) -> dict[str, RowOverride]:
    return {
        row_id: RowOverride.from_dict(value)
        for row_id, value in _load_json(val).items()
        if isinstance(value, dict)
    }


def _row_to_record(row: sqlite3.Row) -> TicketRecord:
    edited_hours = {
        key: [to_decimal(h) for h in values]
        for key, values in _load_json(row["edited_hours"]).items()
    }
    return TicketRecord(
        id=row["id"],
        date=date.fromisoformat(row["date"]),
        technician_id=row["user_id"],
        customer_id=row["customer_id"],
        project_id=row["project_id"],
        location=row["location"],
        employee_initials=row["employee_initials"],
        ticket_number=row["ticket_number"],
        sequence_number=row["sequence_number"],
        year=row["year"],
        workflow_status=WorkflowStatus.parse(row["workflow_status"]),
        header_overrides=_header_overrides_from_json(_load_json(row["header_overrides"])),
        edited_entry_overrides=_row_overrides_from_json(row["edited_entry_overrides"]),
        row_snapshot=_row_overrides_from_json(row["row_snapshot"]),
        is_edited=bool(row["is_edited"]),
        edited_descriptions=_load_json(row["edited_descriptions"]),
        edited_hours=edited_hours,
        total_hours=Decimal(row["total_hours"]),
        total_amount=Decimal(row["total_amount"]),
        is_discarded=bool(row["is_discarded"]),
        is_demo=bool(row["is_demo"]),
        restored_at=_parse_datetime(row["restored_at"]),
        rejected_at=_parse_datetime(row["rejected_at"]),
        rejection_notes=row["rejection_notes"],
        approved_by_admin_id=row["approved_by_admin_id"],
        pdf_exported_at=_parse_datetime(row["pdf_exported_at"]),
        qbo_invoice_id=row["qbo_invoice_id"],
        qbo_invoice_number=row["qbo_invoice_number"],
        sent_to_cnrl_at=_parse_datetime(row["sent_to_cnrl_at"]),
        cnrl_approved_at=_parse_datetime(row["cnrl_approved_at"]),
        submitted_to_cnrl_at=_parse_datetime(row["submitted_to_cnrl_at"]),
        cnrl_notes=row["cnrl_notes"],
        created_at=_parse_datetime(row["created_at"]),
        updated_at=_parse_datetime(row["updated_at"]),
    )


# Record attribute -> column, where they differ
_RENAMED = {"technician_id": "user_id"}
_RECORD_FIELDS = {f.name for f in fields(TicketRecord)}


def _to_column_value(value: Any) -> Any:
    if isinstance(value, HeaderOverrides):
        return json.dumps(value.to_dict())
    if isinstance(value, WorkflowStatus):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, dict):
        return json.dumps(_jsonable(value))
    return value


def _jsonable(value: Any) -> Any:
    if isinstance(value, RowOverride):
        return value.to_dict()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def _record_columns(values: dict[str, Any]) -> dict[str, Any]:
    unknown = set(values) - _RECORD_FIELDS
    if unknown:
        raise ValueError(f"Unknown ticket record fields: {sorted(unknown)}")
    return {_RENAMED.get(name, name): _to_column_value(value) for name, value in values.items()}


def create_ticket_record(record: TicketRecord) -> TicketRecord:
    """Insert a new record. Raises ConflictError if its number is taken."""
    now = datetime.now()
    if not record.id:
        record.id = str(uuid4())
    record.created_at = record.created_at or now
    record.updated_at = now
    columns = _record_columns({f: getattr(record, f) for f in _RECORD_FIELDS})
    names = list(columns)
    with _transaction() as conn:
        conn.execute(
            f"INSERT INTO ticket_records ({', '.join(names)}) VALUES ({', '.join('?' for _ in names)})",
            [columns[n] for n in names],
        )
    log.debug("Created ticket record %s", record.id)
    return record


def get_ticket_record(record_id: str) -> TicketRecord | None:
    with _transaction() as conn:
        row = conn.execute("SELECT * FROM ticket_records WHERE id = ?", (record_id,)).fetchone()
    return _row_to_record(row) if row else None


def update_ticket_record(record_id: str, patch: dict[str, Any]) -> TicketRecord:
    """Apply a partial update and return the stored record."""
    columns = _record_columns({**patch, "updated_at": datetime.now()})
    assignments = ", ".join(f"{name} = ?" for name in columns)
    with _transaction() as conn:
        cursor = conn.execute(
            f"UPDATE ticket_records SET {assignments} WHERE id = ?",
            [*columns.values(), record_id],
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Ticket record {record_id} not found")
    record = get_ticket_record(record_id)
    if record is None:
        raise NotFoundError(f"Ticket record {record_id} not found")
    return record


def delete_ticket_record(record_id: str) -> None:
    """Hard delete a record and its expenses."""
    with _transaction() as conn:
        conn.execute("DELETE FROM expenses WHERE ticket_id = ?", (record_id,))
        conn.execute("DELETE FROM ticket_records WHERE id = ?", (record_id,))


def query_ticket_records(
    start: date | None = None,
    end: date | None = None,
    technician_id: str | None = None,
    customer_id: str | None = None,
    is_demo: bool | None = None,
    include_discarded: bool = True,
    numbered: bool | None = None,
) -> list[TicketRecord]:
    clauses: list[str] = []
    params: list[Any] = []
    if start is not None:
        clauses.append("date >= ?")
        params.append(start.isoformat())
    if end is not None:
        clauses.append("date <= ?")
        params.append(end.isoformat())
    if technician_id is not None:
        clauses.append("user_id = ?")
        params.append(technician_id)
    if customer_id is not None:
        clauses.append("customer_id = ?")
        params.append(customer_id)
    if is_demo is not None:
        clauses.append("is_demo = ?")
        params.append(int(is_demo))
    if not include_discarded:
        clauses.append("is_discarded = 0")
    if numbered is True:
        clauses.append("ticket_number IS NOT NULL")
    elif numbered is False:
        clauses.append("ticket_number IS NULL")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with _transaction() as conn:
        rows = conn.execute(
            f"SELECT * FROM ticket_records {where} ORDER BY date DESC, created_at",
            params,
        ).fetchall()
    return [_row_to_record(row) for row in rows]


def max_sequence_number(initials: str, year: int, is_demo: bool = False) -> int:
    """Highest sequence used in the (initials, year, demo) partition, or 0."""
    with _transaction() as conn:
        row = conn.execute(
            """
            SELECT COALESCE(MAX(sequence_number), 0) AS max_seq FROM ticket_records
            WHERE employee_initials = ? AND year = ? AND is_demo = ?
            """,
            (initials, year, int(is_demo)),
        ).fetchone()
    return int(row["max_seq"])


# --- Expenses ---


def _row_to_expense(row: sqlite3.Row) -> Expense:
    return Expense(
        id=row["id"],
        ticket_id=row["ticket_id"],
        type=ExpenseType(row["type"]),
        description=row["description"],
        quantity=Decimal(row["quantity"]),
        rate=Decimal(row["rate"]),
        unit=row["unit"],
    )


def list_expenses(ticket_id: str) -> list[Expense]:
    with _transaction() as conn:
        rows = conn.execute(
            "SELECT * FROM expenses WHERE ticket_id = ? ORDER BY rowid", (ticket_id,)
        ).fetchall()
    return [_row_to_expense(row) for row in rows]


def create_expense(expense: Expense) -> Expense:
    if not expense.ticket_id:
        raise ValueError("Expense needs a ticket_id")
    if not expense.id:
        expense.id = str(uuid4())
    with _transaction() as conn:
        conn.execute(
            """
            INSERT INTO expenses (id, ticket_id, type, description, quantity, rate, unit)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                expense.id,
                expense.ticket_id,
                expense.type.value,
                expense.description,
                str(expense.quantity),
                str(expense.rate),
                expense.unit,
            ),
        )
    return expense


def update_expense(expense: Expense) -> None:
    with _transaction() as conn:
        cursor = conn.execute(
            """
            UPDATE expenses SET type = ?, description = ?, quantity = ?, rate = ?, unit = ?
            WHERE id = ?
            """,
            (expense.type.value, expense.description, str(expense.quantity), str(expense.rate), expense.unit, expense.id),
        )
        if cursor.rowcount == 0:
            raise NotFoundError(f"Expense {expense.id} not found")


def delete_expense(expense_id: str) -> None:
    with _transaction() as conn:
        conn.execute("DELETE FROM expenses WHERE id = ?", (expense_id,))


# --- Config ---


def get_config() -> Config:
    """Load config from database."""
    with _transaction() as conn:
        rows = conn.execute("SELECT key, value FROM config").fetchall()

    config = Config()
    rates = config.default_rates
    for row in rows:
        key, value = row["key"], row["value"]
        try:
            if key.startswith("rate_") and hasattr(rates, key[5:]):
                setattr(rates, key[5:], Decimal(value))
            elif key == "currency":
                config.currency = value
            elif key == "demo_mode":
                config.demo_mode = value == "1"
            elif key == "bulk_delay_seconds":
                config.bulk_delay_seconds = Decimal(value)
            elif key == "bulk_max_workers":
                config.bulk_max_workers = max(1, int(value))
            elif key == "fold_overtime":
                config.fold_overtime = value == "1"
            elif key == "excluded_departments":
                config.excluded_departments = tuple(d.strip() for d in value.split(",") if d.strip())
        except (InvalidOperation, ValueError):
            log.warning("Ignoring malformed config value %s=%r", key, value)

    return config


def save_config(config: Config):
    """Save config to database."""
    rates = config.default_rates
    values = {
        "rate_rt": str(rates.rt),
        "rate_tt": str(rates.tt),
        "rate_ft": str(rates.ft),
        "rate_shop_ot": str(rates.shop_ot),
        "rate_field_ot": str(rates.field_ot),
        "currency": config.currency,
        "demo_mode": "1" if config.demo_mode else "0",
        "bulk_delay_seconds": str(config.bulk_delay_seconds),
        "bulk_max_workers": str(config.bulk_max_workers),
        "fold_overtime": "1" if config.fold_overtime else "0",
        "excluded_departments": ",".join(config.excluded_departments),
    }
    with _transaction() as conn:
        for key, value in values.items():
            conn.execute("INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)", (key, value))
