"""Job orchestrator: one uploaded video in, classified receipts out.

``JobPipeline.run`` drives a single job through its states::

    queued -> processing -> completed | failed | canceled

While ``processing`` the job advances through ``frame_extract`` (10%),
``detect`` (30%), ``ocr`` (60%), ``classify`` (80%) and
``export_ready`` (100%). Each advance is one UPDATE that only applies
while the job is still ``processing`` and only moves the percentage
forward, so a poller never sees progress regress or a half-written
set of counters.

Failure policy:

* Downloading the video and sampling frames are fatal; so is any
  exception the orchestrator does not expect. The job becomes
  ``failed`` with ``error_code``/``error_message``. Receipts already
  written are kept.
* Detection, extraction and classification never fail the job; they
  fall back to their soft defaults and the review evaluator flags the
  result. A failed image upload only leaves ``image_storage_key`` empty.
* A database error while saving one receipt skips that frame. The job
  still completes with ``error_code = PARTIAL_INGEST``, or fails with
  ``PERSISTENCE_ERROR`` if no receipt could be saved.

Cancellation is checked before every step and at every frame boundary.
Once a job is ``canceled`` the run stops and never overwrites that
status. Scratch files are removed however the run ends.
"""

from __future__ import annotations

import datetime as dt
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from receiptscan.core.config import settings as default_settings
from receiptscan.core.database import SessionLocal
from receiptscan.core.events import publish_job_event
from receiptscan.core.exceptions import (
    JobCanceled,
    PersistenceError,
    PipelineError,
    StorageError,
    VideoDownloadError,
)
from receiptscan.core.observability import capture_exception, sentry_breadcrumb, sentry_metric_inc
from receiptscan.models.enums import InvoiceFlag, JobStatus, PaymentMethod, ProgressStep
from receiptscan.models.schemas import AccountResult, DetectionResult, OcrResult
from receiptscan.models.tables import Job, Receipt, User
from receiptscan.services import rule_engine
from receiptscan.services.aggregator import load_job_summary, recompute_job_summary
from receiptscan.services.frame_extractor import Frame, extract_frames
from receiptscan.services.inference_service import (
    InferenceService,
    default_account,
    default_detection,
    default_ocr,
    is_receipt_frame,
)
from receiptscan.services.review import UNKNOWN_STORE, UNSET_DATE, apply_review, is_valid_invoice_number
from receiptscan.services.storage_service import StorageService, split_storage_key

logger = logging.getLogger(__name__)

PARTIAL_INGEST = "PARTIAL_INGEST"


def evidence_id_for(job_id: str, receipt_index: int) -> str:
    return f"{job_id}_F{receipt_index:04d}"


def receipt_image_key(owner_id: str, job_id: str, receipt_index: int) -> str:
    return f"{owner_id}/{job_id}/{receipt_index}.jpg"


def build_description(date: Optional[dt.date], store_name: Optional[str], debit_account: str) -> str:
    date_label = date.isoformat() if date else "日付不明"
    return f"{date_label} {store_name or '店名不明'} {debit_account}"


@dataclass
class PipelineOutcome:
    """What happened to one run; mirrors the final job row."""

    job_id: str
    status: JobStatus
    detected_receipt_count: int = 0
    persisted_receipt_count: int = 0
    failed_receipt_count: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class JobPipeline:
    """Sequential per-frame orchestrator.

    Every collaborator can be injected; by default the module session
    factory, a storage service for the configured backend, the OpenAI
    backed inference service and the ffmpeg frame sampler are used.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]] = None,
        storage: Optional[StorageService] = None,
        inference: Optional[InferenceService] = None,
        frame_sampler: Optional[Callable[..., List[Frame]]] = None,
        publisher: Optional[Callable[..., Any]] = None,
        settings: Any = None,
    ) -> None:
        self.settings = settings or default_settings
        self.session_factory = session_factory or SessionLocal
        self.storage = storage or StorageService()
        self.inference = inference or InferenceService()
        self.frame_sampler = frame_sampler or extract_frames
        self.publisher = publisher or publish_job_event

    # ------------------------------------------------------------------
    # Job row transitions

    def _publish(self, owner_id: str, job_id: str, event_type: str, **data: Any) -> None:
        try:
            self.publisher(owner_id, job_id, event_type, data)
        except Exception as exc:  # events are best-effort
            logger.debug("progress event dropped job=%s: %s", job_id, exc)

    def _current_status(self, job_id: str) -> Optional[JobStatus]:
        with self.session_factory() as session:
            return session.execute(select(Job.status).where(Job.id == job_id)).scalar_one_or_none()

    def _check_canceled(self, job_id: str) -> None:
        """Raise :class:`JobCanceled` once the job has left ``processing``."""
        status = self._current_status(job_id)
        if status != JobStatus.PROCESSING:
            raise JobCanceled(job_id)

    def _start(self, job_id: str, owner_id: str) -> bool:
        step = ProgressStep.FRAME_EXTRACT
        with self.session_factory() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status.in_([JobStatus.QUEUED, JobStatus.PROCESSING]),
                    Job.progress_pct <= step.progress_pct,
                )
                .values(
                    status=JobStatus.PROCESSING,
                    progress_step=step,
                    progress_pct=step.progress_pct,
                    started_at=dt.datetime.now(dt.timezone.utc),
                )
            )
            session.commit()
        if result.rowcount == 0:
            return False
        self._publish(owner_id, job_id, "job.progress", status=JobStatus.PROCESSING.value,
                      progress_step=step.value, progress_pct=step.progress_pct)
        return True

    def _advance(self, job_id: str, owner_id: str, step: ProgressStep, **counters: int) -> None:
        """Move to ``step`` and write ``counters`` in the same UPDATE."""
        with self.session_factory() as session:
            result = session.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.PROCESSING,
                    Job.progress_pct <= step.progress_pct,
                )
                .values(progress_step=step, progress_pct=step.progress_pct, **counters)
            )
            session.commit()
        if result.rowcount == 0:
            self._check_canceled(job_id)
            return
        sentry_breadcrumb("job", f"step {step.value}", data={"job_id": job_id, **counters})
        self._publish(owner_id, job_id, "job.progress", status=JobStatus.PROCESSING.value,
                      progress_step=step.value, progress_pct=step.progress_pct, **counters)

    def _complete(self, job_id: str, owner_id: str, error_code: Optional[str], error_message: Optional[str]) -> bool:
        step = ProgressStep.EXPORT_READY
        with self.session_factory() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PROCESSING)
                .values(
                    status=JobStatus.COMPLETED,
                    progress_step=step,
                    progress_pct=step.progress_pct,
                    error_code=error_code,
                    error_message=error_message,
                    completed_at=dt.datetime.now(dt.timezone.utc),
                )
            )
            session.commit()
        if result.rowcount == 0:
            return False
        self._publish(owner_id, job_id, "job.completed", status=JobStatus.COMPLETED.value,
                      progress_step=step.value, progress_pct=step.progress_pct, error_code=error_code)
        return True

    def mark_failed(self, job_id: str, owner_id: str, code: str, message: str) -> bool:
        """Move an active job to ``failed``; ``False`` if it was already terminal."""
        try:
            with self.session_factory() as session:
                result = session.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status.in_([JobStatus.QUEUED, JobStatus.PROCESSING]))
                    .values(
                        status=JobStatus.FAILED,
                        error_code=code,
                        error_message=message[:2000],
                        completed_at=dt.datetime.now(dt.timezone.utc),
                    )
                )
                session.commit()
        except SQLAlchemyError:
            logger.exception("could not record failure for job %s (%s)", job_id, code)
            return False
        if result.rowcount == 0:
            return False
        self._publish(owner_id, job_id, "job.failed", status=JobStatus.FAILED.value, error_code=code)
        return True

    # ------------------------------------------------------------------
    # Stage boundaries: nothing raises past these

    def _detect(self, frame: Frame) -> DetectionResult:
        try:
            return self.inference.detect(frame.read())
        except Exception as exc:
            logger.warning("detection failed for frame %d: %s", frame.index, exc)
            return default_detection()

    def _extract(self, image: bytes, receipt_index: int) -> OcrResult:
        try:
            return self.inference.extract_fields(image)
        except Exception as exc:
            logger.warning("extraction failed for receipt %d: %s", receipt_index, exc)
            return default_ocr()

    def _classify(self, ocr: OcrResult) -> AccountResult:
        try:
            return self.inference.classify_account(ocr.store_name, ocr.total_amount, ocr.tax_hint, ocr.raw_text)
        except Exception as exc:
            logger.warning("classification failed: %s", exc)
            return default_account("API呼び出し失敗")

    def _upload_image(self, owner_id: str, job_id: str, receipt_index: int, image: bytes) -> Optional[str]:
        try:
            return self.storage.upload(
                self.settings.RECEIPT_IMAGE_BUCKET,
                receipt_image_key(owner_id, job_id, receipt_index),
                image,
                content_type="image/jpeg",
            )
        except Exception as exc:
            logger.warning("image upload failed job=%s receipt=%d: %s", job_id, receipt_index, exc)
            return None

    # ------------------------------------------------------------------
    # Steps

    def _download_video(self, storage_key: str) -> bytes:
        try:
            bucket, key = split_storage_key(storage_key, default_bucket=self.settings.VIDEO_BUCKET)
            data = self.storage.download(bucket, key)
        except StorageError as exc:
            raise VideoDownloadError(f"Video download failed: {exc}") from exc
        if not data:
            raise VideoDownloadError(f"Video is empty: {storage_key}")
        return data

    def _detect_receipts(self, job_id: str, frames: List[Frame]) -> List[Frame]:
        threshold = self.settings.DETECTION_CONFIDENCE_THRESHOLD
        accepted: List[Frame] = []
        for frame in frames:
            self._check_canceled(job_id)
            if is_receipt_frame(self._detect(frame), threshold):
                accepted.append(frame)
        logger.info("job %s: %d of %d frames accepted", job_id, len(accepted), len(frames))
        return accepted

    def _credit_account_for(self, owner_id: str) -> str:
        with self.session_factory() as session:
            credit = session.execute(
                select(User.default_credit_account).where(User.id == owner_id)
            ).scalar_one_or_none()
        return credit or self.settings.DEFAULT_CREDIT_ACCOUNT

    def _resolve_account(self, session, owner_id: str, ocr: OcrResult):
        """Rule first, model second. Returns ``(account, tax_category)``."""
        rule = rule_engine.lookup_rule(session, owner_id, ocr.store_name)
        if rule is not None:
            rule_engine.record_hit(session, rule.id, commit=False)
            account = AccountResult(debit_account=rule.debit_account, confidence=1.0,
                                    reason=f"学習ルール: {rule.store_name_key}")
            return account, rule.tax_category or self.settings.DEFAULT_TAX_CATEGORY
        return self._classify(ocr), self.settings.DEFAULT_TAX_CATEGORY

    def _ingest_receipt(self, job_id: str, owner_id: str, receipt_index: int, frame: Frame, credit_account: str) -> None:
        image = frame.read()
        ocr = self._extract(image, receipt_index)
        with self.session_factory() as session:
            account, tax_category = self._resolve_account(session, owner_id, ocr)
            image_key = self._upload_image(owner_id, job_id, receipt_index, image)
            invoice_flag = InvoiceFlag.YES if is_valid_invoice_number(ocr.invoice_number) else InvoiceFlag.UNKNOWN
            receipt = Receipt(
                job_id=job_id,
                owner_id=owner_id,
                receipt_index=receipt_index,
                evidence_id=evidence_id_for(job_id, receipt_index),
                image_storage_key=image_key,
                ocr_text_raw=ocr.raw_text,
                ocr_confidence=ocr.confidence,
                extracted_date=ocr.date,
                extracted_store_name=ocr.store_name,
                extracted_total_amount=ocr.total_amount,
                extracted_invoice_number=ocr.invoice_number,
                extracted_tax_hint=ocr.tax_hint,
                final_date=ocr.date or UNSET_DATE,
                final_store_name=ocr.store_name or UNKNOWN_STORE,
                final_total_amount=ocr.total_amount or 0,
                invoice_number=ocr.invoice_number,
                invoice_flag=invoice_flag,
                payment_method=PaymentMethod.UNKNOWN,
                debit_account=account.debit_account.value,
                debit_account_candidate2=(
                    account.debit_account_candidate2.value if account.debit_account_candidate2 else None
                ),
                account_confidence=account.confidence,
                account_reason=account.reason,
                credit_account=credit_account,
                tax_category=tax_category,
                partner_name=ocr.store_name or UNKNOWN_STORE,
                description=build_description(ocr.date, ocr.store_name, account.debit_account.value),
            )
            apply_review(
                receipt,
                account_confidence=account.confidence,
                ocr_threshold=self.settings.OCR_CONFIDENCE_THRESHOLD,
                account_threshold=self.settings.ACCOUNT_CONFIDENCE_THRESHOLD,
            )
            session.add(receipt)
            session.flush()
            recompute_job_summary(session, job_id, commit=False)
            session.commit()

    # ------------------------------------------------------------------
    # Entry point

    def run(self, job_id: str, owner_id: str, storage_key: str) -> PipelineOutcome:
        """Process one job to a terminal state; never raises for job errors."""
        outcome = PipelineOutcome(job_id=job_id, status=JobStatus.PROCESSING)
        if not self._start(job_id, owner_id):
            status = self._current_status(job_id)
            logger.info("job %s not started (status=%s)", job_id, status)
            outcome.status = status or JobStatus.FAILED
            return outcome

        sentry_breadcrumb("job", "pipeline started", data={"job_id": job_id})
        sentry_metric_inc("jobs.started")
        try:
            with tempfile.TemporaryDirectory(prefix=f"job-{job_id}-") as tmp:
                self._execute(job_id, owner_id, storage_key, Path(tmp), outcome)
        except JobCanceled:
            logger.info("job %s canceled; stopping", job_id)
            outcome.status = JobStatus.CANCELED
            sentry_metric_inc("jobs.canceled")
        except PipelineError as exc:
            logger.warning("job %s failed: %s %s", job_id, exc.code, exc.message)
            self._finish_failed(outcome, owner_id, exc.code, exc.message)
        except Exception as exc:
            logger.exception("job %s crashed", job_id)
            capture_exception(exc)
            self._finish_failed(outcome, owner_id, PipelineError.code, str(exc) or exc.__class__.__name__)
        return outcome

    def _finish_failed(self, outcome: PipelineOutcome, owner_id: str, code: str, message: str) -> None:
        if self.mark_failed(outcome.job_id, owner_id, code, message):
            outcome.status = JobStatus.FAILED
            outcome.error_code = code
            outcome.error_message = message
            sentry_metric_inc("jobs.failed", tags={"code": code})
        else:
            outcome.status = self._current_status(outcome.job_id) or JobStatus.FAILED

    def _execute(self, job_id: str, owner_id: str, storage_key: str, work_dir: Path, outcome: PipelineOutcome) -> None:
        video = self._download_video(storage_key)
        frames = self.frame_sampler(
            video,
            work_dir,
            fps=self.settings.FRAME_SAMPLE_FPS,
            max_width=self.settings.FRAME_MAX_WIDTH,
            video_suffix=PurePosixPath(storage_key).suffix or ".mp4",
        )
        self._advance(job_id, owner_id, ProgressStep.DETECT)

        accepted = self._detect_receipts(job_id, frames)
        outcome.detected_receipt_count = len(accepted)
        self._advance(job_id, owner_id, ProgressStep.OCR, detected_receipt_count=len(accepted))

        credit_account = self._credit_account_for(owner_id)
        for receipt_index, frame in enumerate(accepted, start=1):
            self._check_canceled(job_id)
            try:
                self._ingest_receipt(job_id, owner_id, receipt_index, frame, credit_account)
            except SQLAlchemyError as exc:
                outcome.failed_receipt_count += 1
                logger.error("job %s: could not save receipt %d: %s", job_id, receipt_index, exc)
                continue
            outcome.persisted_receipt_count += 1

        if accepted and outcome.persisted_receipt_count == 0:
            raise PersistenceError(f"None of the {len(accepted)} detected receipts could be saved")

        self._check_canceled(job_id)
        with self.session_factory() as session:
            summary = load_job_summary(session, job_id)
        self._advance(
            job_id,
            owner_id,
            ProgressStep.CLASSIFY,
            detected_receipt_count=len(accepted),
            needs_review_count=summary.needs_review_count,
            total_amount_sum=summary.total_amount_sum,
        )

        if outcome.failed_receipt_count:
            outcome.error_code = PARTIAL_INGEST
            outcome.error_message = (
                f"{outcome.failed_receipt_count} of {len(accepted)} detected receipts could not be saved"
            )
        if self._complete(job_id, owner_id, outcome.error_code, outcome.error_message):
            outcome.status = JobStatus.COMPLETED
            sentry_metric_inc("jobs.completed")
            logger.info(
                "job %s completed: receipts=%d needs_review=%d total=%d",
                job_id,
                outcome.persisted_receipt_count,
                summary.needs_review_count,
                summary.total_amount_sum,
            )
        else:
            raise JobCanceled(job_id)
