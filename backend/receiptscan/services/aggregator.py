"""Job level summaries derived from receipts.

``needs_review_count`` and ``total_amount_sum`` on a job are always
recomputed from the full current receipt set, never adjusted
incrementally. Call :func:`recompute_job_summary` after every receipt
create, edit or delete.
"""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from receiptscan.models.schemas import JobSummary
from receiptscan.models.tables import Job, Receipt

logger = logging.getLogger(__name__)


def summarize_receipts(rows: Iterable) -> JobSummary:
    """Aggregate ``(needs_review, final_total_amount)`` pairs or receipt objects."""
    count = 0
    needs_review = 0
    total = 0
    for row in rows:
        if isinstance(row, tuple):
            flag, amount = row
        else:
            flag, amount = row.needs_review, row.final_total_amount
        count += 1
        if flag:
            needs_review += 1
        total += amount or 0
    return JobSummary(receipt_count=count, needs_review_count=needs_review, total_amount_sum=total)


def load_job_summary(session: Session, job_id: str) -> JobSummary:
    """Aggregate the job's current receipts without writing anything."""
    rows = session.execute(
        select(Receipt.needs_review, Receipt.final_total_amount).where(Receipt.job_id == job_id)
    ).all()
    return summarize_receipts(tuple(row) for row in rows)


def recompute_job_summary(session: Session, job_id: str, commit: bool = True) -> JobSummary:
    """Re-read the job's receipts and write the aggregates in one UPDATE."""
    summary = load_job_summary(session, job_id)
    session.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(needs_review_count=summary.needs_review_count, total_amount_sum=summary.total_amount_sum)
        .execution_options(synchronize_session="fetch")
    )
    if commit:
        session.commit()
    logger.debug(
        "job %s summary: receipts=%d needs_review=%d total=%d",
        job_id,
        summary.receipt_count,
        summary.needs_review_count,
        summary.total_amount_sum,
    )
    return summary
