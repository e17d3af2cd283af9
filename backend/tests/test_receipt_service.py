from __future__ import annotations

import datetime as dt

import pytest

from receiptscan.core.exceptions import InvalidPayloadError, NotFoundError
from receiptscan.models.enums import InvoiceFlag, JobStatus
from receiptscan.models.tables import Job
from receiptscan.services import receipt_service, rule_engine


@pytest.fixture()
def job_with_receipts(make_job, make_receipt):
    job = make_job(status=JobStatus.COMPLETED)
    make_receipt(job, 1, final_date=dt.date(2025, 3, 1), final_total_amount=1000)
    make_receipt(
        job,
        2,
        final_date=dt.date(2025, 3, 5),
        final_total_amount=300,
        final_store_name="不明",
        invoice_flag=InvoiceFlag.UNKNOWN,
        invoice_number=None,
        needs_review=True,
        review_reasons=["store_missing", "invoice_unknown"],
    )
    make_receipt(job, 3, final_date=dt.date(2025, 2, 20), final_total_amount=5000, debit_account="旅費交通費")
    return job


def _ids(receipts):
    return [r.receipt_index for r in receipts]


def test_list_receipts_sorting(session, job_with_receipts):
    job = job_with_receipts
    assert _ids(receipt_service.list_receipts(session, job.owner_id, job.id)) == [2, 1, 3]
    assert _ids(receipt_service.list_receipts(session, job.owner_id, job.id, sort="amount_desc")) == [3, 1, 2]
    assert _ids(receipt_service.list_receipts(session, job.owner_id, job.id, sort="needs_review_first")) == [2, 1, 3]
    assert _ids(receipt_service.list_receipts(session, job.owner_id, job.id, sort="index")) == [1, 2, 3]


def test_list_receipts_filters(session, job_with_receipts):
    job = job_with_receipts
    flagged = receipt_service.list_receipts(session, job.owner_id, job.id, needs_review=True)
    assert _ids(flagged) == [2]
    unknown = receipt_service.list_receipts(session, job.owner_id, job.id, invoice_flag="unknown")
    assert _ids(unknown) == [2]
    travel = receipt_service.list_receipts(session, job.owner_id, job.id, debit_account="旅費交通費")
    assert _ids(travel) == [3]


def test_list_receipts_rejects_unknown_sort(session, job_with_receipts):
    job = job_with_receipts
    with pytest.raises(InvalidPayloadError):
        receipt_service.list_receipts(session, job.owner_id, job.id, sort="random")


@pytest.mark.parametrize(
    "field", ["final_store_name", "final_date", "final_total_amount", "debit_account", "invoice_flag", "tax_category"]
)
def test_update_receipt_rejects_null_for_required_field(session, job_with_receipts, field):
    job = job_with_receipts
    target = receipt_service.list_receipts(session, job.owner_id, job.id, sort="index")[0]
    with pytest.raises(InvalidPayloadError):
        receipt_service.update_receipt(session, job.owner_id, target.id, {field: None})

    stored = receipt_service.get_receipt(session, job.owner_id, target.id)
    assert getattr(stored, field) is not None
    assert stored.edited_by_user is False


def test_list_receipts_other_owner_job_not_found(session, job_with_receipts):
    with pytest.raises(NotFoundError):
        receipt_service.list_receipts(session, "user-2", job_with_receipts.id)


def _receipt(session, job, index):
    return next(r for r in receipt_service.list_receipts(session, job.owner_id, job.id) if r.receipt_index == index)


def test_update_receipt_recomputes_review_and_job_summary(session, job_with_receipts):
    job = job_with_receipts
    target = _receipt(session, job, 2)

    updated = receipt_service.update_receipt(
        session,
        job.owner_id,
        target.id,
        {"final_store_name": "サンプル商店", "invoice_flag": "yes", "invoice_number": "T1234567890123", "final_total_amount": 800},
    )

    assert updated.review_reasons == []
    assert updated.needs_review is False
    assert updated.edited_by_user is True
    assert updated.invoice_flag == InvoiceFlag.YES

    stored = session.get(Job, job.id, populate_existing=True)
    assert stored.needs_review_count == 0
    assert stored.total_amount_sum == 1000 + 800 + 5000


def test_update_receipt_flags_invalid_invoice_number(session, job_with_receipts):
    job = job_with_receipts
    target = _receipt(session, job, 1)
    updated = receipt_service.update_receipt(session, job.owner_id, target.id, {"invoice_number": "T12"})
    assert updated.review_reasons == ["invalid_invoice_number"]
    assert session.get(Job, job.id, populate_existing=True).needs_review_count == 2


def test_update_receipt_never_flags_account_confidence(session, job_with_receipts):
    job = job_with_receipts
    target = _receipt(session, job, 1)
    target.account_confidence = 0.2
    session.commit()
    updated = receipt_service.update_receipt(session, job.owner_id, target.id, {"debit_account": "会議費"})
    assert "debit_account_low_confidence" not in updated.review_reasons
    assert updated.debit_account == "会議費"


def test_update_receipt_rejects_unknown_field(session, job_with_receipts):
    job = job_with_receipts
    target = _receipt(session, job, 1)
    with pytest.raises(InvalidPayloadError):
        receipt_service.update_receipt(session, job.owner_id, target.id, {"needs_review": False})


def test_update_receipt_save_rule_learns_store(session, job_with_receipts):
    job = job_with_receipts
    target = _receipt(session, job, 1)
    receipt_service.update_receipt(
        session,
        job.owner_id,
        target.id,
        {"final_store_name": "株式会社サンプル", "debit_account": "会議費", "tax_category": "課税8%（軽減）", "save_rule": True},
    )
    rule = rule_engine.lookup_rule(session, job.owner_id, "サンプル")
    assert rule is not None
    assert rule.debit_account == "会議費"
    assert rule.tax_category == "課税8%（軽減）"


def test_update_receipt_save_rule_requires_store(session, job_with_receipts):
    job = job_with_receipts
    target = _receipt(session, job, 2)
    with pytest.raises(InvalidPayloadError):
        receipt_service.update_receipt(
            session, job.owner_id, target.id, {"debit_account": "会議費", "save_rule": True}
        )
    assert rule_engine.list_rules(session, job.owner_id) == []
    assert _receipt(session, job, 2).debit_account == "消耗品費"


def test_delete_receipt_reaggregates(session, job_with_receipts):
    job = job_with_receipts
    target = _receipt(session, job, 2)
    receipt_service.delete_receipt(session, job.owner_id, target.id)

    assert _ids(receipt_service.list_receipts(session, job.owner_id, job.id, sort="index")) == [1, 3]
    stored = session.get(Job, job.id, populate_existing=True)
    assert stored.needs_review_count == 0
    assert stored.total_amount_sum == 6000
    with pytest.raises(NotFoundError):
        receipt_service.get_receipt(session, job.owner_id, target.id)
