"""Tests for the tickets module - the board over a real database."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from errors import IllegalTransitionError, ValidationError
from models import Config, Customer, HeaderOverrides, RateType, ServiceRow, Technician, TimeEntry, WorkflowStatus
from tickets import TicketBoard
from workflow import Actor, EditPermission, TicketState, display_label

MARCH = (date(2024, 3, 1), date(2024, 3, 31))


@pytest.fixture
def db(temp_database, technician, customer):
    temp_database.save_technician(technician)
    temp_database.save_technician(Technician(id="T2", first_name="Carl", last_name="Diaz"))
    temp_database.save_customer(customer)
    temp_database.save_customer(Customer(id="C2", name="Beta Gas", address="9 Side Rd"))
    return temp_database


def _entry(db, entry_id, hours, rate_type=RateType.SHOP_TIME, **kwargs):
    values = dict(date=date(2024, 3, 1), technician_id="T1", customer_id="C1", description=f"Work {entry_id}")
    values.update(kwargs)
    return db.save_time_entry(TimeEntry(id=entry_id, rate_type=rate_type, hours=Decimal(hours), **values))


def _board(actor):
    board = TicketBoard(actor, config=Config(bulk_delay_seconds=Decimal("0")))
    board.load(*MARCH)
    return board


def _only(board):
    assert len(board.board.tickets) == 1
    return board.board.tickets[0]


@pytest.fixture
def tech(db, tech_actor):
    return _board(tech_actor)


@pytest.fixture
def office(db, admin):
    return _board(admin)


def _submitted(db, tech_actor, admin):
    """Submit the single ticket as the technician and reload it as admin."""
    tech = _board(tech_actor)
    tech.submit(_only(tech))
    office = _board(admin)
    return office, _only(office)


class TestLoad:
    """Tests for TicketBoard.load."""

    def test_aggregates_entries(self, db, tech_actor):
        """Test 4h shop and 2h travel show as one 6h ticket."""
        _entry(db, "E1", "4")
        _entry(db, "E2", "2", RateType.TRAVEL_TIME)
        ticket = _only(_board(tech_actor))
        assert ticket.total_hours == Decimal("6")
        assert ticket.header.customer_name == "Acme Oil"
        assert ticket.display_ticket_number == "AB_24XXX"
        assert ticket.record_id is None

    def test_technician_sees_own_tickets(self, db, tech_actor, admin):
        """Test technicians only see their own entries, admins see all."""
        _entry(db, "E1", "4")
        _entry(db, "E2", "3", technician_id="T2")
        assert len(_board(tech_actor).board.tickets) == 1
        assert len(_board(admin).board.tickets) == 2

    def test_demo_mode_partition(self, db, admin):
        """Test demo entries are hidden outside demo mode."""
        _entry(db, "E1", "4", is_demo=True)
        board = TicketBoard(admin, config=Config())
        board.load(*MARCH)
        assert board.board.tickets == []
        demo = TicketBoard(admin, config=Config(demo_mode=True))
        demo.load(*MARCH)
        assert len(demo.board.tickets) == 1

    def test_standalone_ticket(self, db, admin):
        """Test a record whose entries were deleted is still shown."""
        board = _board(admin)
        row = ServiceRow(id="manual-1", description="Inspection", field_time=Decimal("2"))
        record = board.create_ticket(date(2024, 3, 4), "T1", "C1", location="Yard", rows=[row])
        assert record.total_hours == Decimal("2")
        board.load(*MARCH)
        ticket = _only(board)
        assert ticket.is_standalone
        assert ticket.key.location == "Yard"
        assert ticket.rows[0].description == "Inspection"

    def test_create_ticket_needs_customer(self, db, admin):
        """Test a new ticket must name a customer."""
        with pytest.raises(ValidationError):
            _board(admin).create_ticket(date(2024, 3, 4), "T1", None)


class TestLockedSnapshot:
    """A locked ticket keeps the hours and header it was approved with."""

    def test_approved_ticket_ignores_later_entry_edits(self, db, tech_actor, admin):
        """Test approving freezes 6h even after the entry is edited to 5h."""
        _entry(db, "E1", "4")
        _entry(db, "E2", "2", RateType.TRAVEL_TIME)
        office, ticket = _submitted(db, tech_actor, admin)
        assert ticket.total_hours == Decimal("6")

        record = office.approve(ticket)
        assert record.ticket_number == "AB_24001"
        assert record.workflow_status == WorkflowStatus.APPROVED
        assert record.approved_by_admin_id == "admin-1"
        assert record.header_overrides.address == "1 Main St"
        assert record.header_overrides.rate_rt == Decimal("110")

        _entry(db, "E1", "5")
        db.save_customer(Customer(id="C1", name="Acme Oil", address="77 Moved Ave"))
        office.load(*MARCH)
        ticket = _only(office)
        assert ticket.is_locked
        assert ticket.ticket_number == "AB_24001"
        assert ticket.total_hours == Decimal("6")
        assert {row.id: row.total_hours for row in ticket.rows} == {"E1": Decimal("4"), "E2": Decimal("2")}
        assert ticket.header.address == "1 Main St"

    def test_draft_follows_entry_edits(self, db, tech_actor):
        """Test an unlocked ticket shows the latest entry hours."""
        _entry(db, "E1", "4")
        _entry(db, "E1", "5")
        assert _only(_board(tech_actor)).total_hours == Decimal("5")

    def test_numbers_increment(self, db, tech_actor, admin):
        """Test the next approval in the partition gets the next number."""
        _entry(db, "E1", "4")
        _entry(db, "E2", "4", date=date(2024, 3, 2))
        tech = _board(tech_actor)
        for ticket in list(tech.board.tickets):
            tech.submit(ticket)
        office = _board(admin)
        numbers = sorted(office.approve(t).ticket_number for t in office.board.tickets)
        assert numbers == ["AB_24001", "AB_24002"]


class TestSnapshotThaw:
    """Frozen rows apply only while a ticket is locked."""

    def test_unedited_submit_stores_no_row_overrides(self, db, tech):
        """Test submitting an untouched ticket records its rows only as a snapshot."""
        _entry(db, "E1", "4")
        _entry(db, "E2", "2", RateType.TRAVEL_TIME)
        tech.load(*MARCH)
        record = tech.submit(_only(tech))
        assert record.edited_entry_overrides == {}
        assert set(record.row_snapshot) == {"E1", "E2"}
        assert record.total_hours == Decimal("6")

    def test_rejected_draft_follows_fixed_entry(self, db, tech_actor, admin):
        """Test fixing an entry after a rejection shows on the draft and resubmission."""
        _entry(db, "E1", "4")
        _entry(db, "E2", "2", RateType.TRAVEL_TIME)
        office, ticket = _submitted(db, tech_actor, admin)
        record = office.reject(ticket, notes="E1 is 5 hours")
        assert record.row_snapshot == {}
        assert record.header_overrides.is_empty()

        _entry(db, "E1", "5")
        tech = _board(tech_actor)
        ticket = _only(tech)
        assert {row.id: row.total_hours for row in ticket.rows} == {"E1": Decimal("5"), "E2": Decimal("2")}
        assert tech.submit(ticket).total_hours == Decimal("7")

    def test_withdraw_keeps_unsaved_row_edit(self, db, tech):
        """Test a row edited before submitting survives a withdraw as an override."""
        _entry(db, "E1", "3")
        tech.load(*MARCH)
        ticket = _only(tech)
        tracker = tech.open_ticket(ticket)
        tracker.set_hours("E1", RateType.SHOP_TIME, "3.5")
        record = tech.submit(ticket)
        tech.close()
        assert record.edited_entry_overrides["E1"].shop_time == Decimal("3.5")

        tech.withdraw(ticket)
        tech.load(*MARCH)
        row = _only(tech).rows[0]
        assert row.shop_time == Decimal("3.5")

    def test_restore_thaws_submitted_ticket(self, db, tech_actor, admin):
        """Test restoring a trashed submitted ticket drops its frozen rows."""
        _entry(db, "E1", "4")
        office, ticket = _submitted(db, tech_actor, admin)
        office.trash(ticket)
        office.load(*MARCH)
        record = office.restore(office.board.trashed[0])
        assert record.row_snapshot == {}
        assert record.header_overrides.is_empty()

        _entry(db, "E1", "6")
        assert _only(_board(tech_actor)).total_hours == Decimal("6")

    def test_admin_row_edit_keeps_other_rows_frozen(self, db, tech_actor, admin):
        """Test an admin correction on a submitted ticket leaves untouched rows as submitted."""
        _entry(db, "E1", "4")
        _entry(db, "E2", "2", RateType.TRAVEL_TIME)
        office, ticket = _submitted(db, tech_actor, admin)
        tracker = office.open_ticket(ticket)
        assert tracker.session.permission == EditPermission.FULL
        tracker.set_hours("E1", RateType.SHOP_TIME, "4.5")
        record = office.save()
        office.close()
        assert list(record.edited_entry_overrides) == ["E1"]
        assert set(record.row_snapshot) == {"E1", "E2"}
        assert record.total_hours == Decimal("6.5")

        _entry(db, "E2", "7", RateType.TRAVEL_TIME)
        office.load(*MARCH)
        ticket = _only(office)
        assert ticket.is_locked
        assert {row.id: row.total_hours for row in ticket.rows} == {"E1": Decimal("4.5"), "E2": Decimal("2")}
        assert ticket.total_hours == Decimal("6.5")


class TestEditing:
    """Tests for the editor round trip."""

    def test_row_edit_saved_as_single_override(self, db):
        """Test editing 3h to 4.5h stores exactly one entry override."""
        _entry(db, "E1", "3", date=date(2024, 3, 2), technician_id="T2", customer_id="C2")
        _entry(db, "E2", "1", date=date(2024, 3, 2), technician_id="T2", customer_id="C2")
        board = _board(Actor("T2"))
        ticket = _only(board)
        assert ticket.record_id is None

        tracker = board.open_ticket(ticket)
        tracker.set_hours("E1", RateType.SHOP_TIME, "4.5")
        record = board.save()
        board.close()

        assert list(record.edited_entry_overrides) == ["E1"]
        assert record.edited_entry_overrides["E1"].shop_time == Decimal("4.5")
        assert record.header_overrides.is_empty()

        board.load(*MARCH)
        ticket = _only(board)
        assert ticket.record_id == record.id
        assert ticket.rows[0].shop_time == Decimal("4.5")
        assert db.get_time_entry("E1").hours == Decimal("3")

    def test_save_without_changes(self, db, tech):
        """Test saving an unchanged ticket writes nothing."""
        _entry(db, "E1", "3")
        tech.load(*MARCH)
        tech.open_ticket(_only(tech))
        assert tech.save() is None
        assert db.query_ticket_records() == []

    def test_header_edit(self, db, tech):
        """Test only the changed header field is stored."""
        _entry(db, "E1", "3")
        tech.load(*MARCH)
        tracker = tech.open_ticket(_only(tech))
        tracker.set_header("contact_name", "Sam")
        record = tech.save()
        assert record.header_overrides.to_dict() == {"contact_name": "Sam"}

    def test_manual_row_and_expense(self, db, tech):
        """Test a manual row and an expense are saved with the ticket."""
        from models import Expense, ExpenseType

        _entry(db, "E1", "3")
        tech.load(*MARCH)
        tracker = tech.open_ticket(_only(tech))
        row = tracker.add_row("Parts run")
        tracker.set_hours(row.id, RateType.TRAVEL_TIME, 1)
        tracker.add_expense(Expense(type=ExpenseType.SUBSISTENCE, description="Per diem", rate=Decimal("75")))
        record = tech.save()

        assert row.id in record.edited_entry_overrides
        assert record.total_hours == Decimal("4")
        assert [e.description for e in db.list_expenses(record.id)] == ["Per diem"]

    def test_unassigned_ticket_cannot_be_saved(self, db, tech):
        """Test a ticket without a customer is refused before any write."""
        _entry(db, "E1", "3", customer_id=None)
        tech.load(*MARCH)
        tracker = tech.open_ticket(_only(tech))
        tracker.set_header("other", "x")
        with pytest.raises(ValidationError):
            tech.save()
        with pytest.raises(ValidationError):
            tech.submit(_only(tech))
        assert db.query_ticket_records() == []

    def test_close_discards_unsaved(self, db, tech):
        """Test closing without saving drops edits."""
        _entry(db, "E1", "3")
        tech.load(*MARCH)
        tracker = tech.open_ticket(_only(tech))
        tracker.set_header("phone", "1")
        tech.close()
        assert tech.tracker is None
        assert db.query_ticket_records() == []

    def test_numbered_ticket_header_only(self, db, tech_actor, admin):
        """Test an admin opening a numbered ticket may only edit the header."""
        _entry(db, "E1", "3")
        office, ticket = _submitted(db, tech_actor, admin)
        office.approve(ticket)
        office.load(*MARCH)
        tracker = office.open_ticket(_only(office))
        assert tracker.session.permission == EditPermission.HEADER_ONLY
        tracker.set_header("po_number", "PO-55")
        record = office.save()
        assert record.header_overrides.po_number == "PO-55"
        assert record.header_overrides.address == "1 Main St"
        assert record.header_overrides.rate_rt == Decimal("110")
        assert record.ticket_number == "AB_24001"

    def test_submit_updates_open_permission(self, db, tech):
        """Test submitting the open ticket makes the editor read-only."""
        _entry(db, "E1", "3")
        tech.load(*MARCH)
        ticket = _only(tech)
        tracker = tech.open_ticket(ticket)
        tech.submit(ticket)
        assert tracker.session.permission == EditPermission.NONE


class TestWorkflow:
    """Tests for workflow actions through the board."""

    def test_reject_and_resubmit(self, db, tech_actor, admin):
        """Test a rejected ticket counts for the technician and resubmits."""
        _entry(db, "E1", "3")
        office, ticket = _submitted(db, tech_actor, admin)
        record = office.reject(ticket, notes="Wrong site")
        assert record.rejection_notes == "Wrong site"

        tech = _board(tech_actor)
        assert tech.rejected_count() == 1
        tech.submit(_only(tech))
        assert tech.rejected_count() == 0

        office = _board(admin)
        assert office.resubmitted_count() == 1
        assert display_label(office.board.record_for(_only(office))) == "Resubmitted"

    def test_technician_cannot_approve(self, db, tech_actor):
        """Test approving is for admins only."""
        _entry(db, "E1", "3")
        tech = _board(tech_actor)
        ticket = _only(tech)
        tech.submit(ticket)
        with pytest.raises(IllegalTransitionError):
            tech.approve(ticket)

    def test_withdraw(self, db, tech):
        """Test a technician can pull back a submitted ticket."""
        _entry(db, "E1", "3")
        tech.load(*MARCH)
        ticket = _only(tech)
        tech.submit(ticket)
        record = tech.withdraw(ticket)
        assert record.workflow_status == WorkflowStatus.DRAFT

    def test_unapprove_releases_number(self, db, tech_actor, admin):
        """Test unapproving clears the number so it can be reissued."""
        _entry(db, "E1", "3")
        office, ticket = _submitted(db, tech_actor, admin)
        office.approve(ticket)
        record = office.unapprove(ticket)
        assert record.ticket_number is None
        assert office.board.state_of(ticket) == TicketState.SUBMITTED
        assert office.approve(ticket).ticket_number == "AB_24001"

    def test_trash_restore_delete(self, db, tech_actor, admin):
        """Test the trash lifecycle."""
        _entry(db, "E1", "3")
        tech = _board(tech_actor)
        tech.trash(_only(tech))
        tech.load(*MARCH)
        assert tech.board.tickets == []
        trashed = tech.board.trashed[0]

        record = tech.restore(trashed)
        assert record.restored_at is not None
        assert not record.is_discarded
        tech.load(*MARCH)
        assert display_label(tech.board.record_for(_only(tech))) == "Restored"

        tech.open_ticket(_only(tech))
        tech.close()
        assert db.get_ticket_record(record.id).restored_at is None

        tech.load(*MARCH)
        tech.trash(_only(tech))
        with pytest.raises(ValidationError):
            tech.delete_permanently(trashed)
        office = _board(admin)
        office.delete_permanently(office.board.trashed[0])
        assert db.get_ticket_record(record.id) is None

    def test_delete_requires_trash(self, db, admin):
        """Test only trashed tickets can be permanently deleted."""
        _entry(db, "E1", "3")
        office = _board(admin)
        office.submit(_only(office))
        with pytest.raises(ValidationError):
            office.delete_permanently(_only(office))

    def test_ready_for_export(self, db, tech_actor, admin):
        """Test approved, numbered tickets are ready for export."""
        _entry(db, "E1", "3")
        office, ticket = _submitted(db, tech_actor, admin)
        assert office.ready_for_export() == []
        office.approve(ticket)
        assert [r.ticket_number for r in office.ready_for_export()] == ["AB_24001"]


class TestSync:
    """Tests for keeping saved headers in step with lookups."""

    def test_customer_sync_updates_overridden_fields(self, db, tech):
        """Test customer changes rewrite fields the draft already overrides."""
        record = tech.create_ticket(date(2024, 3, 4), "T1", "C1")
        db.update_ticket_record(record.id, {"header_overrides": HeaderOverrides(address="1 Main St")})
        numbered = tech.create_ticket(date(2024, 3, 5), "T1", "C1")
        db.update_ticket_record(numbered.id, {
            "header_overrides": HeaderOverrides(address="1 Main St"),
            "ticket_number": "AB_24009", "sequence_number": 9, "year": 2024,
            "workflow_status": WorkflowStatus.APPROVED,
        })

        count = tech.sync_customer_to_open_tickets(Customer(id="C1", name="Acme Oil", address="5 New St"))
        assert count == 1
        assert db.get_ticket_record(record.id).header_overrides.address == "5 New St"
        assert db.get_ticket_record(numbered.id).header_overrides.address == "1 Main St"

    def test_delete_entry_removes_empty_draft(self, db, tech):
        """Test deleting the last entry of an untouched draft removes its record."""
        _entry(db, "E1", "3")
        tech.load(*MARCH)
        ticket = _only(tech)
        tech.trash(ticket)
        record = tech.restore(ticket)
        tech.delete_time_entry("E1")
        assert db.get_ticket_record(record.id) is None

    def test_delete_entry_keeps_edited_draft(self, db, tech):
        """Test a draft with saved edits survives losing its entries."""
        _entry(db, "E1", "3")
        tech.load(*MARCH)
        tracker = tech.open_ticket(_only(tech))
        tracker.set_description("E1", "Edited")
        record = tech.save()
        tech.close()
        tech.delete_time_entry("E1")
        assert db.get_ticket_record(record.id) is not None
        tech.load(*MARCH)
        assert _only(tech).is_standalone


class TestBulk:
    """Tests for bulk operations."""

    def test_bulk_approve_reports_failures(self, db, tech_actor, admin):
        """Test one illegal approval does not stop the others."""
        _entry(db, "E1", "3")
        _entry(db, "E2", "3", date=date(2024, 3, 2))
        _entry(db, "E3", "3", date=date(2024, 3, 3))
        tech = _board(tech_actor)
        for ticket in tech.board.tickets[:2]:
            tech.submit(ticket)

        office = _board(admin)
        result = office.bulk_approve(office.board.tickets)
        assert result.success_count == 2
        assert len(result.failed) == 1
        assert result.summary() == "2 of 3 succeeded, 1 failed"

    def test_bulk_trash_on_worker_pool(self, db, admin):
        """Test parallel workers each create and trash their own record."""
        for day in (1, 2, 3):
            _entry(db, f"E{day}", "2", date=date(2024, 3, day))
        board = TicketBoard(admin, config=Config(bulk_max_workers=3, bulk_delay_seconds=Decimal("0")))
        board.load(*MARCH)
        result = board.bulk_trash(board.board.tickets)
        assert result.success_count == 3
        assert len(board.board.records) == 3
        assert all(record.is_discarded for record in board.board.records.values())
        board.load(*MARCH)
        assert board.board.tickets == []
        assert len(board.board.trashed) == 3

    def test_bulk_export(self, db, tech_actor, admin, tmp_path):
        """Test exporting writes a workbook and advances the ticket."""
        from exporter import ExcelExporter

        _entry(db, "E1", "3")
        tech = _board(tech_actor)
        tech.submit(_only(tech))
        office = TicketBoard(admin, config=Config(bulk_delay_seconds=Decimal("0")), exporter=ExcelExporter(tmp_path))
        office.load(*MARCH)
        office.approve(_only(office))
        office.load(*MARCH)

        result = office.bulk_export(office.board.tickets)
        assert result.success_count == 1
        assert (tmp_path / "AB_24001.xlsx").exists()
        assert db.query_ticket_records()[0].workflow_status == WorkflowStatus.PDF_EXPORTED

    def test_export_requires_number(self, db, tech):
        """Test unnumbered tickets cannot be exported."""
        _entry(db, "E1", "3")
        tech.load(*MARCH)
        with pytest.raises(ValidationError):
            tech.export(_only(tech))
