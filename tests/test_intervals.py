"""Tests for the half-open interval helpers, the business-hours window and
how windows are described to the user."""

from __future__ import annotations

import pytest

from calendar_assistant.intervals import (
    minutes_between,
    overlaps,
    step_forward,
    within_business_hours,
)
from calendar_assistant.utils import format_time_range

from .conftest import at


class TestOverlaps:

    def test_partial_overlap(self):
        assert overlaps(at(15, 30), at(16), at(15, 45), at(16, 15))

    def test_adjacent_intervals_do_not_overlap(self):
        assert not overlaps(at(15, 30), at(16), at(16), at(16, 30))
        assert not overlaps(at(16), at(16, 30), at(15, 30), at(16))

    def test_containment_overlaps(self):
        assert overlaps(at(9), at(17), at(12), at(13))
        assert overlaps(at(12), at(13), at(9), at(17))


class TestStepForward:

    def test_advances_by_step(self):
        assert step_forward(at(9), 30) == at(9, 30)

    @pytest.mark.parametrize("step", [0, -15])
    def test_rejects_non_positive_step(self, step):
        with pytest.raises(ValueError):
            step_forward(at(9), step)


class TestBusinessHours:

    def test_inside_window(self):
        assert within_business_hours(at(16, 30), at(17), 9, 17, "UTC")

    def test_ending_after_close_is_outside(self):
        assert not within_business_hours(at(16, 45), at(17, 15), 9, 17, "UTC")

    def test_starting_before_open_is_outside(self):
        assert not within_business_hours(at(8, 30), at(9, 30), 9, 17, "UTC")

    def test_window_is_local_to_timezone(self):
        # 14:00 UTC is 09:00 in New York during EST.
        assert within_business_hours(at(14), at(14, 30), 9, 17, "America/New_York")
        assert not within_business_hours(at(9), at(9, 30), 9, 17, "America/New_York")

    def test_working_days_filter(self):
        # 2025-03-08 is a Saturday.
        weekdays = {0, 1, 2, 3, 4}
        assert within_business_hours(at(10, day=7), at(11, day=7), 9, 17, "UTC", weekdays)
        assert not within_business_hours(at(10, day=8), at(11, day=8), 9, 17, "UTC", weekdays)

    def test_empty_interval_is_outside(self):
        assert not within_business_hours(at(10), at(10), 9, 17, "UTC")


def test_minutes_between():
    assert minutes_between(at(15, 30), at(16, 15)) == 45


class TestFormatTimeRange:

    def test_whole_day_ends_at_next_midnight(self):
        assert format_time_range(at(0, day=7), at(0, day=8)) == "on Friday, March 7"

    def test_rest_of_today_runs_to_midnight(self):
        assert format_time_range(at(10), at(0, day=7)) == (
            "on Thursday, March 6 from 10:00 AM to midnight")

    def test_multi_day_names_the_last_included_day(self):
        assert format_time_range(at(0, day=10), at(0, day=17)) == (
            "from Monday, March 10 to Sunday, March 16")

    def test_same_day_span(self):
        assert format_time_range(at(12), at(18)) == (
            "on Thursday, March 6 from 12:00 PM to 6:00 PM")
