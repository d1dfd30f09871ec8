"""
Tests for calendar-date parsing of spreadsheet cells.
"""

import pytest

from app.core.config import settings
from app.utils.date import is_parseable_date, parse_calendar_date


class TestParseCalendarDate:
    def test_iso_dates(self):
        assert parse_calendar_date("2021-04-03") == "2021-04-03"
        assert parse_calendar_date("2021-04-03 00:00:00") == "2021-04-03"

    def test_ambiguous_dates_follow_setting(self, monkeypatch):
        assert parse_calendar_date("03/04/2021") == "2021-03-04"
        monkeypatch.setattr(settings, "date_default_dayfirst", True)
        assert parse_calendar_date("03/04/2021") == "2021-04-03"

    def test_unambiguous_day_first(self):
        assert parse_calendar_date("25/12/2020") == "2020-12-25"
        assert parse_calendar_date("12/25/2020") == "2020-12-25"

    @pytest.mark.parametrize("value", [None, "", "  ", "N/A", "null", "nan"])
    def test_blank_tokens(self, value):
        assert parse_calendar_date(value) is None

    def test_garbage_is_none(self):
        assert parse_calendar_date("definitely not a date", log_failures=False) is None
        assert not is_parseable_date("definitely not a date")
        assert is_parseable_date("1980-01-15")
