"""Shared fixtures for tests."""

from __future__ import annotations

import importlib
import os
import tempfile
from datetime import date, datetime
from decimal import Decimal

import pytest

# Set up test database before importing storage
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.environ["SERVICE_TICKETS_DB"] = _test_db_path


@pytest.fixture(scope="session", autouse=True)
def cleanup_session_db():
    """Remove the import-time database once the session ends."""
    yield
    os.close(_test_db_fd)
    os.unlink(_test_db_path)


@pytest.fixture
def temp_database(tmp_path, monkeypatch):
    """Point storage at a fresh database for one test."""
    db_path = tmp_path / "test_service_tickets.db"
    monkeypatch.setenv("SERVICE_TICKETS_DB", str(db_path))

    # Re-import storage to pick up new DB_PATH
    import storage
    importlib.reload(storage)
    storage.init_db()

    yield storage

    if db_path.exists():
        db_path.unlink()


@pytest.fixture
def technician():
    """Junior technician Alice Brown (initials AB)."""
    from models import Technician

    return Technician(id="T1", first_name="Alice", last_name="Brown", email="alice@example.com")


@pytest.fixture
def customer():
    """Create a sample Customer for testing."""
    from models import Customer

    return Customer(
        id="C1",
        name="Acme Oil",
        contact_name="Dana Fox",
        address="1 Main St",
        city="Calgary",
        state="AB",
        zip_code="T2P 1A1",
        phone="403-555-0100",
    )


@pytest.fixture
def project():
    """Create a sample Project for testing."""
    from models import Project

    return Project(id="P1", name="Compressor rebuild", customer_id="C1", project_number="PR-100")


@pytest.fixture
def make_entry():
    """Factory for TimeEntry objects with sensible defaults."""
    from models import RateType, TimeEntry

    counter = {"n": 0}

    def make(hours="4", rate_type=RateType.SHOP_TIME, **kwargs):
        counter["n"] += 1
        values = dict(
            id=f"E{counter['n']}",
            date=date(2024, 3, 1),
            technician_id="T1",
            customer_id="C1",
            description=f"Work item {counter['n']}",
            updated_at=datetime(2024, 3, 1, 8, 0),
        )
        values.update(kwargs)
        return TimeEntry(rate_type=rate_type, hours=Decimal(hours), **values)

    return make


@pytest.fixture
def make_record():
    """Factory for TicketRecord objects matching the default entry key."""
    from models import TicketRecord

    def make(record_id="R1", **kwargs):
        values = dict(date=date(2024, 3, 1), technician_id="T1", customer_id="C1", employee_initials="AB")
        values.update(kwargs)
        return TicketRecord(id=record_id, **values)

    return make


@pytest.fixture
def admin():
    from workflow import Actor

    return Actor("admin-1", is_admin=True)


@pytest.fixture
def tech_actor():
    from workflow import Actor

    return Actor("T1", is_admin=False)
