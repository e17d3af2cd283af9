"""Reading, editing and deleting receipts.

An edit only touches the fields the user supplied, then recomputes the
review reasons from the resulting values, marks the receipt as
``edited_by_user`` and re-aggregates the job, all in one transaction.
Account confidence is a pipeline-time signal and is not re-evaluated
on edits. With ``save_rule`` the edited store name and debit account
(and tax category) are also learned as a rule for future jobs.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from receiptscan.core.config import settings
from receiptscan.core.exceptions import InvalidPayloadError, NotFoundError
from receiptscan.models.enums import InvoiceFlag
from receiptscan.models.schemas import ReceiptUpdate
from receiptscan.models.tables import Receipt
from receiptscan.services import rule_engine
from receiptscan.services.aggregator import recompute_job_summary
from receiptscan.services.job_service import get_job
from receiptscan.services.review import UNKNOWN_STORE, apply_review

logger = logging.getLogger(__name__)

SORT_ORDERS = {
    "date_desc": (Receipt.final_date.desc(), Receipt.receipt_index.asc()),
    "amount_desc": (Receipt.final_total_amount.desc(), Receipt.receipt_index.asc()),
    "needs_review_first": (Receipt.needs_review.desc(), Receipt.receipt_index.asc()),
    "index": (Receipt.receipt_index.asc(),),
}

# Columns stored as the enum itself; every other enum is stored as its label
_ENUM_COLUMNS = {"invoice_flag", "payment_method"}


def list_receipts(
    session: Session,
    owner_id: str,
    job_id: str,
    needs_review: Optional[bool] = None,
    invoice_flag: Optional[Union[InvoiceFlag, str]] = None,
    debit_account: Optional[str] = None,
    sort: str = "date_desc",
) -> List[Receipt]:
    """Return a job's receipts, optionally filtered, in the requested order."""
    get_job(session, owner_id, job_id)
    if sort not in SORT_ORDERS:
        raise InvalidPayloadError(f"Unknown sort order: {sort}", errors=[{"loc": ["sort"], "msg": sort}])

    stmt = select(Receipt).where(Receipt.job_id == job_id, Receipt.owner_id == owner_id)
    if needs_review is not None:
        stmt = stmt.where(Receipt.needs_review.is_(bool(needs_review)))
    if invoice_flag:
        try:
            stmt = stmt.where(Receipt.invoice_flag == InvoiceFlag(invoice_flag))
        except ValueError as exc:
            raise InvalidPayloadError(f"Unknown invoice flag: {invoice_flag}") from exc
    if debit_account:
        stmt = stmt.where(Receipt.debit_account == debit_account)
    return list(session.execute(stmt.order_by(*SORT_ORDERS[sort])).scalars())


def get_receipt(session: Session, owner_id: str, receipt_id: str) -> Receipt:
    receipt = session.execute(
        select(Receipt).where(Receipt.id == receipt_id, Receipt.owner_id == owner_id)
    ).scalar_one_or_none()
    if receipt is None:
        raise NotFoundError("Receipt", receipt_id)
    return receipt


def update_receipt(session: Session, owner_id: str, receipt_id: str, payload: Union[ReceiptUpdate, dict]) -> Receipt:
    """Apply a user edit and return the updated receipt.

    Raises :class:`InvalidPayloadError` for unknown fields or invalid
    values, and when ``save_rule`` is requested without a usable store
    name.
    """
    if not isinstance(payload, ReceiptUpdate):
        try:
            payload = ReceiptUpdate.model_validate(payload)
        except ValidationError as exc:
            raise InvalidPayloadError("Invalid receipt edit", errors=exc.errors()) from exc

    receipt = get_receipt(session, owner_id, receipt_id)
    changes = payload.changes()
    for field, value in changes.items():
        if isinstance(value, Enum) and field not in _ENUM_COLUMNS:
            value = value.value
        setattr(receipt, field, value)

    if payload.save_rule:
        store = (receipt.final_store_name or "").strip()
        if not store or store == UNKNOWN_STORE or not rule_engine.normalize_store_name(store):
            session.rollback()
            raise InvalidPayloadError(
                "A store name is required to save a rule",
                errors=[{"loc": ["final_store_name"], "msg": "store name is unknown"}],
            )

    apply_review(
        receipt,
        ocr_threshold=settings.OCR_CONFIDENCE_THRESHOLD,
        account_threshold=settings.ACCOUNT_CONFIDENCE_THRESHOLD,
    )
    receipt.edited_by_user = True
    session.flush()
    recompute_job_summary(session, receipt.job_id, commit=False)
    session.commit()
    logger.info("receipt %s edited fields=%s reasons=%s", receipt.id, sorted(changes), receipt.review_reasons)

    if payload.save_rule:
        rule_engine.upsert_rule(
            session,
            owner_id,
            receipt.final_store_name,
            receipt.debit_account,
            receipt.tax_category,
        )
    return receipt


def delete_receipt(session: Session, owner_id: str, receipt_id: str) -> None:
    """Delete a receipt and re-aggregate its job."""
    receipt = get_receipt(session, owner_id, receipt_id)
    job_id = receipt.job_id
    session.delete(receipt)
    session.flush()
    recompute_job_summary(session, job_id, commit=False)
    session.commit()
    logger.info("receipt %s deleted from job %s", receipt_id, job_id)
