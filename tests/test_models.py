"""Tests for the models module."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from models import (
    DisplayTicket,
    Expense,
    ExpenseType,
    HeaderFields,
    HeaderOverrides,
    Rates,
    RateType,
    RowOverride,
    ServiceRow,
    Technician,
    TicketKey,
    WorkflowStatus,
)


class TestRateType:
    """Tests for RateType parsing."""

    def test_parse_value(self):
        """Test parsing the stored display value."""
        assert RateType.parse("Travel Time") == RateType.TRAVEL_TIME

    def test_parse_name(self):
        """Test parsing the enum member name."""
        assert RateType.parse("FIELD_OVERTIME") == RateType.FIELD_OVERTIME

    def test_parse_unknown_defaults_to_shop_time(self):
        """Test unknown rate types bill as shop time."""
        assert RateType.parse("Holiday") == RateType.SHOP_TIME
        assert RateType.parse(None) == RateType.SHOP_TIME


class TestWorkflowStatus:
    def test_parse_unknown_is_draft(self):
        """Test unknown and missing statuses read as draft."""
        assert WorkflowStatus.parse("bogus") == WorkflowStatus.DRAFT
        assert WorkflowStatus.parse(None) == WorkflowStatus.DRAFT

    def test_compares_with_string(self):
        """Test status members compare equal to their stored string."""
        assert WorkflowStatus.parse("qbo_created") == "qbo_created"


class TestTechnician:
    """Tests for Technician."""

    def test_initials(self):
        """Test initials from first and last name."""
        assert Technician(id="T", first_name="alice", last_name="brown").initials == "AB"

    def test_initials_fallback(self):
        """Test initials fall back to XX without a name."""
        assert Technician(id="T").initials == "XX"

    def test_is_senior(self):
        """Test seniority is read from position, ignoring case."""
        assert Technician(id="T", position=" Senior ").is_senior
        assert not Technician(id="T").is_senior


class TestHeaderOverrides:
    """Tests for HeaderOverrides."""

    def test_empty_by_default(self):
        """Test a new overrides object has nothing set."""
        assert HeaderOverrides().is_empty()

    def test_unknown_field_rejected(self):
        """Test a misspelled field fails at construction."""
        with pytest.raises(TypeError):
            HeaderOverrides(custmer_name="Acme")  # type: ignore[call-arg]

    def test_to_dict_omits_unset(self):
        """Test serialisation keeps only set fields and floats rates."""
        overrides = HeaderOverrides(customer_name="Acme", rate_rt=Decimal("120"))
        assert overrides.to_dict() == {"customer_name": "Acme", "rate_rt": 120.0}

    def test_snapshot_rates(self):
        """Test the rate snapshot fills missing rates from defaults."""
        overrides = HeaderOverrides(rate_rt=Decimal("120"))
        rates = overrides.snapshot_rates()
        assert rates is not None
        assert rates.rt == Decimal("120")
        assert rates.tt == Rates().tt

    def test_no_snapshot_rates(self):
        """Test no snapshot without any rate field."""
        assert HeaderOverrides(customer_name="Acme").snapshot_rates() is None

    def test_from_header(self):
        """Test building a full snapshot from header values and rates."""
        header = HeaderFields(customer_name="Acme", po_afe="PO-1")
        overrides = HeaderOverrides.from_header(header, Rates())
        assert overrides.customer_name == "Acme"
        assert overrides.po_afe == "PO-1"
        assert overrides.address == ""
        assert overrides.rate_ft == Decimal("140")


class TestRowOverride:
    """Tests for RowOverride."""

    def test_to_dict_keys(self):
        """Test the persisted short keys."""
        override = RowOverride(description="Pump", shop_time=Decimal("4.5"))
        assert override.to_dict() == {"description": "Pump", "st": 4.5, "tt": 0.0, "ft": 0.0, "so": 0.0, "fo": 0.0}

    def test_from_dict_missing_keys(self):
        """Test missing hour keys read as zero."""
        override = RowOverride.from_dict({"description": "x", "ft": 2})
        assert override.field_time == Decimal("2")
        assert override.shop_time == Decimal("0")


class TestServiceRow:
    """Tests for ServiceRow."""

    def test_total_and_amount(self):
        """Test totals across columns and amount at rates."""
        row = ServiceRow(id="r", shop_time=Decimal("2"), travel_time=Decimal("1"))
        assert row.total_hours == Decimal("3")
        assert row.amount(Rates()) == Decimal("305")

    def test_with_override_keeps_identity(self):
        """Test applying an override keeps id and synthetic flag."""
        row = ServiceRow(id="r", is_synthetic=True)
        updated = row.with_override(RowOverride(description="New", field_time=Decimal("1")))
        assert updated.id == "r"
        assert updated.is_synthetic
        assert updated.field_time == Decimal("1")


class TestDisplayTicket:
    """Tests for DisplayTicket."""

    def _ticket(self, **kwargs):
        key = TicketKey(date(2024, 3, 1), "T1", "C1", None, "", "_::_::_")
        rows = [ServiceRow(id="a", shop_time=Decimal("4")), ServiceRow(id="b", travel_time=Decimal("2"))]
        return DisplayTicket(key=key, header=HeaderFields(), rows=rows, rates=Rates(), technician_initials="AB", **kwargs)

    def test_totals_from_rows(self):
        """Test totals are computed from rows when no snapshot exists."""
        ticket = self._ticket()
        assert ticket.total_hours == Decimal("6")
        assert ticket.total_amount == Decimal("610")

    def test_snapshot_totals_win(self):
        """Test snapshot totals override row totals."""
        ticket = self._ticket(snapshot_total_hours=Decimal("5"), snapshot_total_amount=Decimal("1"))
        assert ticket.total_hours == Decimal("5")
        assert ticket.total_amount == Decimal("1")

    def test_placeholder_number(self):
        """Test unnumbered tickets show an XXX placeholder."""
        assert self._ticket().display_ticket_number == "AB_24XXX"

    def test_hours_by_rate_type(self):
        """Test hours are summed per rate column."""
        by_type = self._ticket().hours_by_rate_type
        assert by_type[RateType.SHOP_TIME] == Decimal("4")
        assert by_type[RateType.TRAVEL_TIME] == Decimal("2")


class TestExpense:
    def test_amount(self):
        """Test amount is quantity times rate."""
        expense = Expense(type=ExpenseType.SUBSISTENCE, description="Per diem", quantity=Decimal("2"), rate=Decimal("75"))
        assert expense.amount == Decimal("150")
