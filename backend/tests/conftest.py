from __future__ import annotations

import os
import sys
from pathlib import Path

# Test configuration must be in place before receiptscan.core.config is imported
os.environ["ENVIRONMENT"] = "test"
os.environ["EVENTS_ENABLED"] = "false"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STORAGE_BACKEND"] = "filesystem"
os.environ["SENTRY_DSN"] = ""

# Add backend folder to sys.path so `import receiptscan...` works when running from the repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import datetime as dt  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from receiptscan.core.database import Base  # noqa: E402
from receiptscan.models import tables  # noqa: E402,F401
from receiptscan.models.enums import InvoiceFlag, JobStatus, PaymentMethod  # noqa: E402
from receiptscan.models.tables import Job, Receipt, User  # noqa: E402

from fakes import EventRecorder, FakeStorage  # noqa: E402


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def owner(session):
    user = User(id="user-1", email="owner@example.com", default_credit_account="普通預金")
    session.add(user)
    session.commit()
    return user


@pytest.fixture()
def make_job(session, owner):
    def _make(status: JobStatus = JobStatus.QUEUED, owner_id: Optional[str] = None, **kwargs) -> Job:
        job = Job(
            owner_id=owner_id or owner.id,
            status=status,
            progress_pct=kwargs.pop("progress_pct", 0),
            video_filename=kwargs.pop("video_filename", "receipts.mp4"),
            video_storage_key=kwargs.pop("video_storage_key", "videos/user-1/receipts.mp4"),
            **kwargs,
        )
        session.add(job)
        session.commit()
        return job

    return _make


@pytest.fixture()
def make_receipt(session):
    def _make(job: Job, index: int, **kwargs) -> Receipt:
        values = dict(
            job_id=job.id,
            owner_id=job.owner_id,
            receipt_index=index,
            evidence_id=f"{job.id}_F{index:04d}",
            ocr_confidence=0.9,
            final_date=dt.date(2025, 3, 4),
            final_store_name="サンプル商店",
            final_total_amount=1000,
            invoice_flag=InvoiceFlag.YES,
            invoice_number="T1234567890123",
            payment_method=PaymentMethod.CASH,
            debit_account="消耗品費",
            credit_account="現金",
            tax_category="課税10%",
            needs_review=False,
            review_reasons=[],
        )
        values.update(kwargs)
        receipt = Receipt(**values)
        session.add(receipt)
        session.commit()
        return receipt

    return _make


@pytest.fixture()
def fake_storage():
    return FakeStorage()


@pytest.fixture()
def events():
    return EventRecorder()
