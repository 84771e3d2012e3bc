"""
Unit Tests for annual leave and the due-date countdown
"""

from datetime import date, datetime, timezone

import pytest

import config
from conftest import ALICE
from leave import (
    INVALID_DATE,
    NO_DATE,
    NO_DUE_DATE,
    ON_LEAVE,
    OVERDUE,
    LeaveSelection,
    calculate_time_remaining,
    check_user_on_leave,
    format_date,
    get_user_annual_leave,
    marked_dates,
    parse_timestamp,
    save_annual_leave,
)

NOW = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)


class TestDates:
    """Tests for timestamp parsing and display."""

    def test_parse_when_zulu_then_utc_aware(self):
        dt = parse_timestamp("2024-05-01T09:00:00Z")
        assert dt == datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def test_parse_when_date_only_then_midnight_utc(self):
        assert parse_timestamp("2024-05-01") == datetime(2024, 5, 1, tzinfo=timezone.utc)

    def test_parse_when_short_fraction_and_offset_then_parsed(self):
        dt = parse_timestamp("2024-05-01T09:00:00.12+02:00")
        assert dt.microsecond == 120000
        assert dt.utcoffset().total_seconds() == 7200

    def test_parse_when_garbage_then_raises(self):
        with pytest.raises(ValueError, match="Invalid date"):
            parse_timestamp("next tuesday")

    def test_parse_when_empty_then_none(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("  ") is None

    def test_format_when_values_then_day_month_year(self):
        assert format_date("2024-05-01T09:00:00Z") == "01/05/2024"
        assert format_date(None) == NO_DATE
        assert format_date("garbage") == INVALID_DATE


class TestCountdown:
    """Tests for calculate_time_remaining()."""

    def test_countdown_when_days_left_then_days_hours_minutes(self):
        assert calculate_time_remaining("2024-01-03T05:30:00Z", now=NOW) == "2d 5h 30m"

    def test_countdown_when_under_a_day_then_hours_minutes(self):
        assert calculate_time_remaining("2024-01-01T03:15:00Z", now=NOW) == "3h 15m"

    def test_countdown_when_under_an_hour_then_minutes(self):
        assert calculate_time_remaining("2024-01-01T00:45:30Z", now=NOW) == "45m"

    def test_countdown_when_no_due_or_invalid_then_labels(self):
        assert calculate_time_remaining(None, now=NOW) == NO_DUE_DATE
        assert calculate_time_remaining("", now=NOW) == NO_DUE_DATE
        assert calculate_time_remaining("soon", now=NOW) == INVALID_DATE

    def test_countdown_when_past_without_user_then_overdue(self):
        assert calculate_time_remaining("2023-12-31T00:00:00Z", now=NOW) == OVERDUE

    def test_countdown_when_past_and_on_approved_leave_then_on_leave(self, backend):
        backend.add_rows("annual_leave", {
            "id": "l-1", "employee_id": ALICE, "start_date": "2023-12-30", "end_date": "2024-01-02", "status": "approved",
        })
        due = "2024-01-01T09:00:00Z"
        assert calculate_time_remaining(due, ALICE, now=datetime(2024, 1, 5, tzinfo=timezone.utc)) == ON_LEAVE

    def test_countdown_when_due_has_offset_then_leave_checked_on_utc_day(self, backend):
        backend.add_rows("annual_leave", {
            "id": "l-1", "employee_id": ALICE, "start_date": "2024-01-03", "end_date": "2024-01-03", "status": "approved",
        })
        due = "2024-01-02T23:30:00-05:00"
        assert calculate_time_remaining(due, ALICE, now=datetime(2024, 1, 5, tzinfo=timezone.utc)) == ON_LEAVE
        call = backend.calls_to("GET", "/rest/v1/annual_leave")[0]
        assert ("start_date", "lte.2024-01-03") in call.params

    def test_countdown_when_leave_is_pending_then_overdue(self, backend):
        backend.add_rows("annual_leave", {
            "id": "l-1", "employee_id": ALICE, "start_date": "2023-12-30", "end_date": "2024-01-02", "status": "pending",
        })
        due = "2024-01-01T09:00:00Z"
        assert calculate_time_remaining(due, ALICE, now=datetime(2024, 1, 5, tzinfo=timezone.utc)) == OVERDUE

    def test_countdown_when_leave_lookup_fails_then_overdue(self, backend):
        backend.fail("GET", "/rest/v1/annual_leave", status=500)
        due = "2024-01-01T09:00:00Z"
        assert calculate_time_remaining(due, ALICE, now=datetime(2024, 1, 5, tzinfo=timezone.utc)) == OVERDUE

    def test_countdown_when_not_yet_due_then_leave_not_checked(self, backend):
        calculate_time_remaining("2024-01-03T00:00:00Z", ALICE, now=NOW)
        assert backend.calls_to("GET", "/rest/v1/annual_leave") == []


class TestLeaveRecords:
    """Tests for saving and listing annual leave."""

    def test_check_when_day_inside_range_then_true(self, backend):
        backend.add_rows("annual_leave", {
            "id": "l-1", "employee_id": ALICE, "start_date": "2024-07-01", "end_date": "2024-07-03", "status": "approved",
        })
        assert check_user_on_leave(ALICE, "2024-07-03") is True
        assert check_user_on_leave(ALICE, "2024-07-04") is False
        assert check_user_on_leave(ALICE, "not a date") is False

    def test_save_when_range_reversed_then_swapped_and_approved(self, backend):
        row = save_annual_leave(ALICE, "2024-07-10", "2024-07-05", "  Holiday ")
        assert row["start_date"] == "2024-07-05"
        assert row["end_date"] == "2024-07-10"
        assert row["status"] == "approved"
        assert row["reason"] == "Holiday"
        assert backend.rows("annual_leave", employee_id=ALICE)[0]["id"] == row["id"]

    def test_save_when_no_end_then_single_day(self, backend):
        row = save_annual_leave(ALICE, "2024-07-10")
        assert row["end_date"] == "2024-07-10"
        assert row["reason"] is None

    def test_save_when_auto_approve_disabled_then_pending(self, backend, monkeypatch):
        monkeypatch.setattr(config, "LEAVE_AUTO_APPROVE", False)
        assert save_annual_leave(ALICE, "2024-07-10")["status"] == "pending"

    def test_save_when_no_start_then_raises(self, backend):
        with pytest.raises(ValueError, match="start date"):
            save_annual_leave(ALICE, "")

    def test_list_when_several_then_ordered_by_start(self, backend):
        save_annual_leave(ALICE, "2024-09-01")
        save_annual_leave(ALICE, "2024-03-01")
        assert [r["start_date"] for r in get_user_annual_leave(ALICE)] == ["2024-03-01", "2024-09-01"]


class TestLeaveSelection:
    """Tests for the two-tap range picker."""

    def test_pick_when_second_day_earlier_then_range_reordered(self):
        sel = LeaveSelection()
        assert sel.instructions == "Select start date for your annual leave"
        sel.pick("2024-07-10")
        assert sel.instructions.startswith("Select end date")
        sel.pick("2024-07-05")
        assert (sel.start, sel.end) == ("2024-07-05", "2024-07-10")
        assert sel.instructions == "Selected: 2024-07-05 to 2024-07-10"

    def test_pick_when_range_complete_then_starts_over(self):
        sel = LeaveSelection("2024-07-05", "2024-07-10").pick("2024-07-20")
        assert (sel.start, sel.end) == ("2024-07-20", None)

    def test_save_range_when_only_start_then_single_day(self):
        assert LeaveSelection("2024-07-05").save_range() == ("2024-07-05", "2024-07-05")

    def test_save_range_when_empty_then_raises(self):
        sel = LeaveSelection("2024-07-05", "2024-07-06")
        sel.reset()
        with pytest.raises(ValueError):
            sel.save_range()

    def test_marked_dates_when_overlap_then_selection_wins(self):
        existing = [{"start_date": "2024-07-01", "end_date": "2024-07-03"}, {"start_date": "bad", "end_date": "bad"}]
        marks = marked_dates(LeaveSelection("2024-07-03", "2024-07-04"), existing)
        assert list(marks) == ["2024-07-01", "2024-07-02", "2024-07-03", "2024-07-04"]
        assert marks["2024-07-01"].kind == "existing" and marks["2024-07-01"].starting_day
        assert not marks["2024-07-02"].starting_day and not marks["2024-07-02"].ending_day
        assert marks["2024-07-03"].kind == "selected" and marks["2024-07-03"].starting_day
        assert marks["2024-07-04"].ending_day

    def test_marked_dates_when_window_then_only_days_inside(self):
        marks = marked_dates(
            LeaveSelection("1900-01-01", "2100-12-31"), [],
            window=(date(2024, 7, 1), date(2024, 7, 31)),
        )
        assert len(marks) == 31
        assert not marks["2024-07-01"].starting_day
        assert not marks["2024-07-31"].ending_day

    def test_marked_dates_when_leave_ends_on_last_date_then_no_overflow(self):
        existing = [{"start_date": "9999-12-30", "end_date": "9999-12-31"}]
        marks = marked_dates(None, existing)
        assert list(marks) == ["9999-12-30", "9999-12-31"]
        assert marks["9999-12-31"].ending_day

    def test_from_values_when_reversed_then_ordered(self):
        sel = LeaveSelection.from_values("2024-07-10", "2024-07-05")
        assert (sel.start, sel.end) == ("2024-07-05", "2024-07-10")
        assert LeaveSelection.from_values(None, "2024-07-05").start == "2024-07-05"

    def test_from_values_when_bad_date_then_raises(self):
        with pytest.raises(ValueError, match="Invalid date"):
            LeaveSelection.from_values("2025-01-01", "nope")
