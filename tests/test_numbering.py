"""Tests for the numbering module."""

from __future__ import annotations

import pytest

from errors import ConflictError, PersistenceError
from numbering import allocate, format_ticket_number, parse_ticket_number, placeholder_ticket_number


class TestFormat:
    """Tests for ticket number formatting."""

    def test_format(self):
        """Test the INITIALS_YYnnn shape."""
        assert format_ticket_number("AB", 2024, 1) == "AB_24001"
        assert format_ticket_number("ab", 2025, 123) == "AB_25123"

    def test_large_sequence(self):
        """Test sequences above 999 are not truncated."""
        assert format_ticket_number("AB", 2024, 1000) == "AB_241000"

    def test_placeholder(self):
        """Test unnumbered tickets show XXX."""
        assert placeholder_ticket_number("AB", 2024) == "AB_24XXX"
        assert placeholder_ticket_number("", 2024) == "XX_24XXX"

    def test_parse(self):
        """Test parsing a number back into its parts."""
        assert parse_ticket_number("AB_24007") == ("AB", 24, 7)

    def test_parse_invalid(self):
        """Test malformed numbers parse to None."""
        assert parse_ticket_number("AB_24XXX") is None
        assert parse_ticket_number("") is None


class TestAllocate:
    """Tests for allocate."""

    def test_first_number(self):
        """Test an empty partition starts at 1."""
        assigned = []
        allocation = allocate("AB", 2024, lambda: 0, assigned.append, lambda: None)
        assert allocation.ticket_number == "AB_24001"
        assert allocation.sequence_number == 1
        assert not allocation.already_assigned
        assert assigned == [allocation]

    def test_max_plus_one(self):
        """Test numbering continues from the partition maximum."""
        allocation = allocate("AB", 2024, lambda: 41, lambda a: None, lambda: None)
        assert allocation.ticket_number == "AB_24042"

    def test_retry_on_conflict(self):
        """Test a collision re-reads the maximum and tries again."""
        maxima = iter([1, 2])
        attempts = []

        def assign(allocation):
            attempts.append(allocation.sequence_number)
            if allocation.sequence_number == 2:
                raise ConflictError("taken")

        allocation = allocate("AB", 2024, lambda: next(maxima), assign, lambda: None)
        assert attempts == [2, 3]
        assert allocation.ticket_number == "AB_24003"

    def test_already_assigned(self):
        """Test a concurrent approval's number is returned instead of a new one."""
        def assign(allocation):
            raise ConflictError("taken")

        allocation = allocate("AB", 2024, lambda: 0, assign, lambda: "AB_24005")
        assert allocation.already_assigned
        assert allocation.ticket_number == "AB_24005"
        assert allocation.sequence_number == 5

    def test_gives_up(self):
        """Test allocation fails after the attempt limit."""
        def assign(allocation):
            raise ConflictError("taken")

        with pytest.raises(PersistenceError):
            allocate("AB", 2024, lambda: 0, assign, lambda: None, attempts=3)
