import datetime as dt
import types

from receiptscan.models.enums import InvoiceFlag
from receiptscan.services.review import (
    UNKNOWN_STORE,
    UNSET_DATE,
    apply_review,
    evaluate_review_reasons,
    is_valid_invoice_number,
)


def _reasons(**overrides):
    values = dict(
        final_date=dt.date(2025, 3, 4),
        final_store_name="サンプル商店",
        final_total_amount=1200,
        invoice_flag=InvoiceFlag.YES,
        invoice_number="T1234567890123",
        ocr_confidence=0.9,
        account_confidence=0.9,
    )
    values.update(overrides)
    return evaluate_review_reasons(**values)


def test_clean_receipt_has_no_reasons():
    assert _reasons() == []


def test_low_ocr_confidence_and_unknown_invoice():
    reasons = _reasons(ocr_confidence=0.55, invoice_flag=InvoiceFlag.UNKNOWN, invoice_number=None)
    assert reasons == ["invoice_unknown", "low_confidence"]


def test_every_reason_in_canonical_order():
    reasons = _reasons(
        final_date=UNSET_DATE,
        final_store_name=UNKNOWN_STORE,
        final_total_amount=0,
        invoice_flag="unknown",
        invoice_number="T123",
        ocr_confidence=0.1,
        account_confidence=0.3,
    )
    assert reasons == [
        "date_missing",
        "store_missing",
        "amount_missing",
        "invoice_unknown",
        "low_confidence",
        "debit_account_low_confidence",
        "invalid_invoice_number",
    ]


def test_account_confidence_only_checked_when_given():
    assert _reasons(account_confidence=None) == []
    assert _reasons(account_confidence=0.69) == ["debit_account_low_confidence"]
    assert _reasons(account_confidence=0.7) == []


def test_blank_store_counts_as_missing():
    assert _reasons(final_store_name="   ") == ["store_missing"]


def test_invoice_number_format():
    assert is_valid_invoice_number("T1234567890123")
    assert not is_valid_invoice_number("T123456789012")
    assert not is_valid_invoice_number("T12345678901234")
    assert not is_valid_invoice_number("t1234567890123")
    assert not is_valid_invoice_number(None)


def test_apply_review_replaces_and_is_idempotent():
    receipt = types.SimpleNamespace(
        final_date=dt.date(2025, 3, 4),
        final_store_name="サンプル商店",
        final_total_amount=0,
        invoice_flag=InvoiceFlag.YES,
        invoice_number=None,
        ocr_confidence=0.9,
        review_reasons=["low_confidence"],
        needs_review=True,
    )
    first = apply_review(receipt)
    second = apply_review(receipt)
    assert first == second == ["amount_missing"]
    assert receipt.review_reasons == ["amount_missing"]
    assert receipt.needs_review is True

    receipt.final_total_amount = 500
    assert apply_review(receipt) == []
    assert receipt.needs_review is False
