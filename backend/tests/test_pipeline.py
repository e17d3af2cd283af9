from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from fakes import FakeFrameSampler, FakeInference
from receiptscan.core.exceptions import ExtractionError
from receiptscan.models.enums import InvoiceFlag, JobStatus, ProgressStep
from receiptscan.models.schemas import AccountResult, DetectionResult, OcrResult
from receiptscan.models.tables import Job, Receipt, Rule
from receiptscan.services import rule_engine
from receiptscan.services.aggregator import recompute_job_summary
from receiptscan.services.job_service import cancel_job
from receiptscan.services.pipeline import PARTIAL_INGEST, JobPipeline, build_description, evidence_id_for

VIDEO_KEY = "videos/user-1/receipts.mp4"

RECEIPT = DetectionResult(verdict="receipt", confidence=0.9)
NOTHING = DetectionResult(verdict="none", confidence=0.95)

CLEAN_OCR = OcrResult(
    date=dt.date(2025, 3, 4),
    store_name="サンプル商店",
    total_amount=1200,
    invoice_number="T1234567890123",
    tax_hint="10%",
    raw_text="サンプル商店 合計 1,200",
    confidence=0.9,
)
BLURRY_OCR = OcrResult(store_name="カフェ", total_amount=500, confidence=0.55)


@pytest.fixture()
def run_pipeline(session_factory, fake_storage, events, make_job):
    fake_storage.objects[VIDEO_KEY] = b"video-bytes"

    def _run(inference, sampler, job=None):
        job = job or make_job()
        pipeline = JobPipeline(
            session_factory=session_factory,
            storage=fake_storage,
            inference=inference,
            frame_sampler=sampler,
            publisher=events,
        )
        outcome = pipeline.run(job.id, job.owner_id, job.video_storage_key)
        return job, outcome

    return _run


def _receipts(session, job_id):
    return list(
        session.execute(select(Receipt).where(Receipt.job_id == job_id).order_by(Receipt.receipt_index)).scalars()
    )


def _job(session, job_id):
    return session.get(Job, job_id, populate_existing=True)


def test_pipeline_happy_path(session, run_pipeline, fake_storage, events):
    inference = FakeInference(
        detections={b"f1": RECEIPT, b"f2": NOTHING, b"f3": RECEIPT, b"f4": RuntimeError("vision down")},
        ocr={b"f1": CLEAN_OCR, b"f3": BLURRY_OCR},
    )
    sampler = FakeFrameSampler([b"f1", b"f2", b"f3", b"f4"])
    job, outcome = run_pipeline(inference, sampler)

    assert outcome.status == JobStatus.COMPLETED
    assert outcome.detected_receipt_count == 2
    assert outcome.persisted_receipt_count == 2
    assert outcome.error_code is None

    stored = _job(session, job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.progress_step == ProgressStep.EXPORT_READY
    assert stored.progress_pct == 100
    assert stored.detected_receipt_count == 2
    assert stored.needs_review_count == 1
    assert stored.total_amount_sum == 1700
    assert stored.completed_at is not None

    first, second = _receipts(session, job.id)
    assert first.evidence_id == evidence_id_for(job.id, 1) == f"{job.id}_F0001"
    assert first.invoice_flag == InvoiceFlag.YES
    assert first.final_total_amount == 1200
    assert first.credit_account == "普通預金"
    assert first.tax_category == "課税10%"
    assert first.review_reasons == []
    assert first.needs_review is False
    assert first.description == build_description(dt.date(2025, 3, 4), "サンプル商店", "消耗品費")
    assert first.image_storage_key == f"receipt-images/user-1/{job.id}/1.jpg"
    assert fake_storage.objects[first.image_storage_key] == b"f1"

    assert second.receipt_index == 2
    assert second.invoice_flag == InvoiceFlag.UNKNOWN
    assert second.review_reasons == ["date_missing", "invoice_unknown", "low_confidence"]

    assert sampler.kwargs["video_suffix"] == ".mp4"
    assert not sampler.work_dirs[0].exists()

    pcts = [data["progress_pct"] for kind, data in events.events if "progress_pct" in data]
    assert pcts == sorted(pcts)
    assert pcts[0] == 10 and pcts[-1] == 100
    assert events.events[-1][0] == "job.completed"


def test_pipeline_soft_failures_fall_back_to_defaults(session, run_pipeline, fake_storage):
    fake_storage.fail_uploads = True
    inference = FakeInference(
        detections={b"f1": RECEIPT},
        ocr={b"f1": RuntimeError("ocr down")},
        accounts={None: RuntimeError("llm down")},
    )
    job, outcome = run_pipeline(inference, FakeFrameSampler([b"f1"]))

    assert outcome.status == JobStatus.COMPLETED
    (receipt,) = _receipts(session, job.id)
    assert receipt.image_storage_key is None
    assert receipt.final_date == dt.date(1900, 1, 1)
    assert receipt.final_store_name == "不明"
    assert receipt.final_total_amount == 0
    assert receipt.debit_account == "その他"
    assert receipt.account_confidence == 0.3
    assert receipt.review_reasons == [
        "date_missing",
        "store_missing",
        "amount_missing",
        "invoice_unknown",
        "low_confidence",
        "debit_account_low_confidence",
    ]
    assert _job(session, job.id).needs_review_count == 1


def test_pipeline_rule_match_skips_classifier(session, owner, run_pipeline):
    rule = rule_engine.upsert_rule(session, owner.id, "株式会社サンプル商店", "会議費", "課税8%（軽減）")
    inference = FakeInference(detections={b"f1": RECEIPT}, ocr={b"f1": CLEAN_OCR})
    job, outcome = run_pipeline(inference, FakeFrameSampler([b"f1"]))

    assert outcome.status == JobStatus.COMPLETED
    assert not [c for c in inference.calls if c[0] == "classify"]
    (receipt,) = _receipts(session, job.id)
    assert receipt.debit_account == "会議費"
    assert receipt.tax_category == "課税8%（軽減）"
    assert receipt.account_confidence == 1.0
    assert session.get(Rule, rule.id, populate_existing=True).hit_count == 1


def test_pipeline_no_receipts_detected_completes_empty(session, run_pipeline):
    job, outcome = run_pipeline(FakeInference(), FakeFrameSampler([b"f1", b"f2"]))
    assert outcome.status == JobStatus.COMPLETED
    stored = _job(session, job.id)
    assert stored.detected_receipt_count == 0
    assert stored.total_amount_sum == 0
    assert _receipts(session, job.id) == []


def test_pipeline_download_failure_fails_job(session, run_pipeline, make_job, events):
    job = make_job(video_storage_key="videos/user-1/missing.mp4")
    sampler = FakeFrameSampler([b"f1"])
    _, outcome = run_pipeline(FakeInference(), sampler, job=job)

    assert outcome.status == JobStatus.FAILED
    stored = _job(session, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_code == "VIDEO_DOWNLOAD_FAILED"
    assert stored.error_message
    assert sampler.work_dirs == []
    assert events.events[-1][0] == "job.failed"


def test_pipeline_extraction_failure_fails_job_and_cleans_up(session, run_pipeline):
    sampler = FakeFrameSampler([], error=ExtractionError("ffmpeg failed: corrupt"))
    job, outcome = run_pipeline(FakeInference(), sampler)

    assert outcome.status == JobStatus.FAILED
    assert outcome.error_code == "FRAME_EXTRACTION_FAILED"
    stored = _job(session, job.id)
    assert stored.error_code == "FRAME_EXTRACTION_FAILED"
    assert stored.progress_pct == 10
    assert not sampler.work_dirs[0].exists()


def test_pipeline_unexpected_error_fails_job(session, run_pipeline):
    sampler = FakeFrameSampler([], error=KeyError("surprise"))
    job, outcome = run_pipeline(FakeInference(), sampler)
    assert outcome.status == JobStatus.FAILED
    assert _job(session, job.id).error_code == "PIPELINE_ERROR"


def test_pipeline_stops_when_canceled_mid_run(session, session_factory, owner, run_pipeline, make_job):
    job = make_job()

    class CancelingInference(FakeInference):
        def detect(self, image):
            if image == b"f2":
                with session_factory() as other:
                    cancel_job(other, owner.id, job.id)
            return super().detect(image)

    inference = CancelingInference(detections={b"f1": RECEIPT, b"f2": RECEIPT, b"f3": RECEIPT})
    sampler = FakeFrameSampler([b"f1", b"f2", b"f3"])
    _, outcome = run_pipeline(inference, sampler, job=job)

    assert outcome.status == JobStatus.CANCELED
    stored = _job(session, job.id)
    assert stored.status == JobStatus.CANCELED
    assert stored.progress_pct == 30
    assert b"f3" not in [c[1] for c in inference.calls]
    assert _receipts(session, job.id) == []
    assert not sampler.work_dirs[0].exists()


def test_pipeline_does_not_start_canceled_job(session, run_pipeline, make_job):
    job = make_job(status=JobStatus.CANCELED)
    sampler = FakeFrameSampler([b"f1"])
    _, outcome = run_pipeline(FakeInference(), sampler, job=job)
    assert outcome.status == JobStatus.CANCELED
    assert sampler.work_dirs == []
    assert _job(session, job.id).status == JobStatus.CANCELED


def test_pipeline_partial_ingest(session, run_pipeline, monkeypatch):
    original = JobPipeline._ingest_receipt

    def flaky_ingest(self, job_id, owner_id, receipt_index, frame, credit_account):
        if receipt_index == 2:
            raise SQLAlchemyError("constraint violated")
        return original(self, job_id, owner_id, receipt_index, frame, credit_account)

    monkeypatch.setattr(JobPipeline, "_ingest_receipt", flaky_ingest)
    inference = FakeInference(
        detections={b"f1": RECEIPT, b"f2": RECEIPT},
        ocr={b"f1": CLEAN_OCR, b"f2": CLEAN_OCR},
    )
    job, outcome = run_pipeline(inference, FakeFrameSampler([b"f1", b"f2"]))

    assert outcome.status == JobStatus.COMPLETED
    assert outcome.failed_receipt_count == 1
    stored = _job(session, job.id)
    assert stored.error_code == PARTIAL_INGEST
    assert stored.detected_receipt_count == 2
    assert stored.total_amount_sum == 1200
    assert len(_receipts(session, job.id)) == 1


def test_pipeline_all_receipts_unsaved_fails_job(session, run_pipeline, monkeypatch):
    def broken_ingest(self, *args, **kwargs):
        raise SQLAlchemyError("database unavailable")

    monkeypatch.setattr(JobPipeline, "_ingest_receipt", broken_ingest)
    inference = FakeInference(detections={b"f1": RECEIPT})
    job, outcome = run_pipeline(inference, FakeFrameSampler([b"f1"]))

    assert outcome.status == JobStatus.FAILED
    assert _job(session, job.id).error_code == "PERSISTENCE_ERROR"


def test_classifier_reply_with_low_confidence_flags_receipt(session, run_pipeline):
    inference = FakeInference(
        detections={b"f1": RECEIPT},
        ocr={b"f1": CLEAN_OCR},
        accounts={"サンプル商店": AccountResult(debit_account="交際費", debit_account_candidate2="会議費", confidence=0.5)},
    )
    job, _ = run_pipeline(inference, FakeFrameSampler([b"f1"]))
    (receipt,) = _receipts(session, job.id)
    assert receipt.debit_account == "交際費"
    assert receipt.debit_account_candidate2 == "会議費"
    assert receipt.review_reasons == ["debit_account_low_confidence"]


def test_rule_hit_rolled_back_with_unsaved_receipt(session, owner, run_pipeline, monkeypatch):
    import receiptscan.services.pipeline as pipeline_mod

    rule = rule_engine.upsert_rule(session, owner.id, "サンプル商店", "会議費")
    calls = []

    def flaky_summary(session, job_id, commit=True):
        calls.append(job_id)
        if len(calls) == 2:
            raise SQLAlchemyError("insert failed")
        return recompute_job_summary(session, job_id, commit=commit)

    monkeypatch.setattr(pipeline_mod, "recompute_job_summary", flaky_summary)
    inference = FakeInference(
        detections={b"f1": RECEIPT, b"f2": RECEIPT},
        ocr={b"f1": CLEAN_OCR, b"f2": CLEAN_OCR},
    )
    job, outcome = run_pipeline(inference, FakeFrameSampler([b"f1", b"f2"]))

    assert outcome.failed_receipt_count == 1
    assert len(_receipts(session, job.id)) == 1
    assert session.get(Rule, rule.id, populate_existing=True).hit_count == 1
