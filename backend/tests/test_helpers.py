import datetime as dt

from receiptscan.utils.helpers import (
    clamp_confidence,
    largest_amount,
    parse_amount,
    parse_receipt_date,
    strip_code_fences,
)


def test_parse_receipt_date_reiwa_era():
    assert parse_receipt_date("令和7年3月4日") == dt.date(2025, 3, 4)


def test_parse_receipt_date_heisei_first_year():
    assert parse_receipt_date("平成元年1月8日") == dt.date(1989, 1, 8)


def test_parse_receipt_date_showa_and_abbreviation():
    assert parse_receipt_date("昭和64年1月7日") == dt.date(1989, 1, 7)
    assert parse_receipt_date("R7.3.4") == dt.date(2025, 3, 4)
    assert parse_receipt_date("h31/4/30") == dt.date(2019, 4, 30)


def test_parse_receipt_date_western_and_full_width():
    assert parse_receipt_date("2025/03/04") == dt.date(2025, 3, 4)
    assert parse_receipt_date("２０２５年３月４日 14:02") == dt.date(2025, 3, 4)
    assert parse_receipt_date("2025-03-04") == dt.date(2025, 3, 4)


def test_parse_receipt_date_invalid_returns_none():
    assert parse_receipt_date("not-a-date") is None
    assert parse_receipt_date("2025/02/30") is None
    assert parse_receipt_date("") is None
    assert parse_receipt_date(None) is None


def test_parse_receipt_date_passes_dates_through():
    assert parse_receipt_date(dt.datetime(2024, 1, 2, 3, 4)) == dt.date(2024, 1, 2)


def test_parse_amount_strips_currency_marks():
    assert parse_amount("¥1,200") == 1200
    assert parse_amount("１，２００円") == 1200
    assert parse_amount("350.9") == 350
    assert parse_amount(800) == 800


def test_parse_amount_ignores_trailing_dash_and_tax_suffix():
    assert parse_amount("¥1,200-") == 1200
    assert parse_amount("１，２００－") == 1200
    assert parse_amount("1,200円（税込）") == 1200
    assert parse_amount("-") is None


def test_parse_amount_rejects_garbage():
    assert parse_amount("abc") is None
    assert parse_amount("") is None
    assert parse_amount(True) is None


def test_largest_amount_picks_max():
    assert largest_amount(["1,200", 350, None, "x"]) == 1200
    assert largest_amount([]) is None


def test_clamp_confidence_bounds():
    assert clamp_confidence(1.7) == 1.0
    assert clamp_confidence(-2) == 0.0
    assert clamp_confidence("0.42") == 0.42
    assert clamp_confidence(float("nan"), default=0.3) == 0.3
    assert clamp_confidence(None) == 0.0


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
