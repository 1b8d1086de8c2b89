from datetime import date

import pytest

from csv_utils import sanitize_csv_value
from periods import parse_month, shift_month


def test_parse_month_covers_whole_month():
    period = parse_month("2024-02")
    assert period.slug == "2024-02"
    assert period.start == date(2024, 2, 1)
    assert period.end == date(2024, 2, 29)
    assert period.contains(date(2024, 2, 29))
    assert not period.contains(date(2024, 3, 1))


def test_parse_month_defaults_to_current_month():
    assert parse_month(None, today=date(2024, 7, 15)).slug == "2024-07"


def test_parse_month_rejects_bad_input():
    with pytest.raises(ValueError, match="YYYY-MM"):
        parse_month("July 2024")


def test_shift_month_across_year():
    assert shift_month(parse_month("2024-12"), 1).slug == "2025-01"
    assert shift_month(parse_month("2024-01"), -1).end == date(2023, 12, 31)


def test_sanitize_csv_value():
    assert sanitize_csv_value("=1+1") == "\t=1+1"
    assert sanitize_csv_value("https://example.com") == "\thttps://example.com"
    assert sanitize_csv_value("  Groceries ") == "Groceries"
    assert sanitize_csv_value("") == ""
