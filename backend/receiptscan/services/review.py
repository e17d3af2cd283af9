"""Review flag evaluation for receipts.

``evaluate_review_reasons`` is a pure function from a receipt's
current field values to the reasons it needs human confirmation. Each
check is independent and every applicable reason is reported, in the
order of :class:`ReviewReason`. Running it twice on the same values
gives the same list.

The account-confidence check only exists while the pipeline is
creating a receipt; a user edit passes no confidence and so can never
raise ``debit_account_low_confidence``.
"""

from __future__ import annotations

import datetime as dt
import re
from typing import Any, List, Optional

from receiptscan.models.enums import InvoiceFlag, ReviewReason

UNSET_DATE = dt.date(1900, 1, 1)
UNKNOWN_STORE = "不明"

OCR_CONFIDENCE_THRESHOLD = 0.6
ACCOUNT_CONFIDENCE_THRESHOLD = 0.7

INVOICE_NUMBER_RE = re.compile(r"T[0-9]{13}")


def is_valid_invoice_number(value: Optional[str]) -> bool:
    """Qualified invoice registration numbers are ``T`` plus 13 digits."""
    return bool(value) and INVOICE_NUMBER_RE.fullmatch(value) is not None


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def evaluate_review_reasons(
    *,
    final_date: Optional[dt.date],
    final_store_name: Optional[str],
    final_total_amount: Optional[int],
    invoice_flag: Any,
    invoice_number: Optional[str],
    ocr_confidence: Optional[float],
    account_confidence: Optional[float] = None,
    ocr_threshold: float = OCR_CONFIDENCE_THRESHOLD,
    account_threshold: float = ACCOUNT_CONFIDENCE_THRESHOLD,
) -> List[str]:
    """Return the ordered, de-duplicated review reasons for a receipt."""
    found = set()
    if final_date is None or final_date == UNSET_DATE:
        found.add(ReviewReason.DATE_MISSING)
    if not final_store_name or not final_store_name.strip() or final_store_name.strip() == UNKNOWN_STORE:
        found.add(ReviewReason.STORE_MISSING)
    if final_total_amount is None or final_total_amount <= 0:
        found.add(ReviewReason.AMOUNT_MISSING)
    if _enum_value(invoice_flag) == InvoiceFlag.UNKNOWN.value:
        found.add(ReviewReason.INVOICE_UNKNOWN)
    if (ocr_confidence or 0.0) < ocr_threshold:
        found.add(ReviewReason.LOW_CONFIDENCE)
    if account_confidence is not None and account_confidence < account_threshold:
        found.add(ReviewReason.DEBIT_ACCOUNT_LOW_CONFIDENCE)
    if invoice_number and not is_valid_invoice_number(invoice_number):
        found.add(ReviewReason.INVALID_INVOICE_NUMBER)
    return [reason.value for reason in ReviewReason if reason in found]


def apply_review(
    receipt,
    account_confidence: Optional[float] = None,
    ocr_threshold: float = OCR_CONFIDENCE_THRESHOLD,
    account_threshold: float = ACCOUNT_CONFIDENCE_THRESHOLD,
) -> List[str]:
    """Recompute ``review_reasons`` and ``needs_review`` on ``receipt``.

    The reason list is replaced, never appended to.
    """
    reasons = evaluate_review_reasons(
        final_date=receipt.final_date,
        final_store_name=receipt.final_store_name,
        final_total_amount=receipt.final_total_amount,
        invoice_flag=receipt.invoice_flag,
        invoice_number=receipt.invoice_number,
        ocr_confidence=receipt.ocr_confidence,
        account_confidence=account_confidence,
        ocr_threshold=ocr_threshold,
        account_threshold=account_threshold,
    )
    receipt.review_reasons = reasons
    receipt.needs_review = bool(reasons)
    return reasons
