"""Job lifecycle operations outside the pipeline.

Creating a job records the already uploaded video and hands the work to
the background actor; the caller gets the ``queued`` job back at once
and follows progress by polling :func:`get_job_progress` (or by
subscribing to the Redis channels in :mod:`receiptscan.core.events`).

Every lookup is scoped by ``owner_id``: a job owned by someone else is
reported as not found.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Callable, List, Optional, Tuple, Union

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from receiptscan.core.events import publish_job_event
from receiptscan.core.exceptions import InvalidPayloadError, JobNotCancelableError, NotFoundError
from receiptscan.core.observability import sentry_metric_inc
from receiptscan.models.enums import ACTIVE_JOB_STATUSES, JobStatus
from receiptscan.models.schemas import JobCreate, JobProgress
from receiptscan.models.tables import Job

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _default_enqueue(job_id: str, owner_id: str, storage_key: str) -> None:
    from receiptscan.core.tasks import process_video_job

    process_video_job.send(job_id, owner_id, storage_key)


def create_job(
    session: Session,
    owner_id: str,
    payload: Union[JobCreate, dict],
    enqueue: Optional[Callable[[str, str, str], Any]] = None,
) -> Job:
    """Create a ``queued`` job for an uploaded video and enqueue it.

    If the message cannot be enqueued the job is marked ``failed`` with
    ``ENQUEUE_FAILED`` and returned; nothing is raised.
    """
    if not isinstance(payload, JobCreate):
        try:
            payload = JobCreate.model_validate(payload)
        except ValidationError as exc:
            raise InvalidPayloadError("Invalid job payload", errors=exc.errors()) from exc

    job = Job(
        owner_id=owner_id,
        status=JobStatus.QUEUED,
        progress_pct=0,
        video_filename=payload.video_filename,
        video_mime=payload.video_mime,
        video_size_bytes=payload.video_size_bytes,
        video_storage_key=payload.video_storage_key,
    )
    session.add(job)
    session.commit()
    logger.info("job %s created owner=%s key=%s", job.id, owner_id, job.video_storage_key)

    try:
        (enqueue or _default_enqueue)(job.id, owner_id, job.video_storage_key)
    except Exception as exc:
        logger.exception("could not enqueue job %s", job.id)
        job.status = JobStatus.FAILED
        job.error_code = "ENQUEUE_FAILED"
        job.error_message = str(exc)[:2000]
        session.commit()
        sentry_metric_inc("jobs.enqueue_failed")
        return job

    sentry_metric_inc("jobs.created")
    publish_job_event(owner_id, job.id, "job.queued", {"status": JobStatus.QUEUED.value})
    return job


def get_job(session: Session, owner_id: str, job_id: str) -> Job:
    job = session.execute(select(Job).where(Job.id == job_id, Job.owner_id == owner_id)).scalar_one_or_none()
    if job is None:
        raise NotFoundError("Job", job_id)
    return job


def get_job_progress(session: Session, owner_id: str, job_id: str) -> JobProgress:
    """Read the poller-facing fields of a job from the database."""
    job = get_job(session, owner_id, job_id)
    session.refresh(job)
    return JobProgress.model_validate(job)


def list_jobs(
    session: Session,
    owner_id: str,
    status: Optional[Union[JobStatus, str]] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Job], int]:
    """Return ``(jobs, total)`` newest first; ``limit`` is capped at 100."""
    filters = [Job.owner_id == owner_id]
    if status is not None:
        try:
            filters.append(Job.status == JobStatus(status))
        except ValueError as exc:
            raise InvalidPayloadError(f"Unknown job status: {status}") from exc
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    offset = max(0, int(offset))

    total = session.execute(select(func.count()).select_from(Job).where(*filters)).scalar_one()
    jobs = session.execute(
        select(Job).where(*filters).order_by(Job.created_at.desc(), Job.id).limit(limit).offset(offset)
    ).scalars()
    return list(jobs), total


def cancel_job(session: Session, owner_id: str, job_id: str) -> Job:
    """Cancel a ``queued`` or ``processing`` job.

    The status flip is one conditional UPDATE, so it cannot race the
    pipeline's own completion. A running pipeline notices the change at
    its next frame or step boundary and stops.
    """
    result = session.execute(
        update(Job)
        .where(Job.id == job_id, Job.owner_id == owner_id, Job.status.in_(list(ACTIVE_JOB_STATUSES)))
        .values(status=JobStatus.CANCELED, completed_at=dt.datetime.now(dt.timezone.utc))
        .execution_options(synchronize_session=False)
    )
    session.commit()
    job = get_job(session, owner_id, job_id)
    session.refresh(job)
    if result.rowcount == 0:
        raise JobNotCancelableError(job_id, job.status.value)
    logger.info("job %s canceled by owner", job_id)
    sentry_metric_inc("jobs.cancel_requested")
    publish_job_event(owner_id, job_id, "job.canceled", {"status": JobStatus.CANCELED.value})
    return job
