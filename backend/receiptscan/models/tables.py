"""SQLAlchemy ORM models for the receipt pipeline.

These models define the relational schema shared by the worker and
anything polling job progress. Enumerated fields are stored as their
string values (not member names) so that pollers and exports read the
same tokens the pipeline writes. JSON columns hold ordered lists such
as ``review_reasons``.

Call ``init_db`` during development to create the tables.
"""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from receiptscan.core.database import Base
from .enums import (
    ExportFormat,
    InvoiceFlag,
    JobStatus,
    PaymentMethod,
    ProgressStep,
)


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        validate_strings=True,
        values_callable=lambda members: [m.value for m in members],
    )


class User(Base):
    """Account owning jobs, receipts and learned rules."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String, unique=True, nullable=True)
    # Credit side copied onto every new receipt
    default_credit_account = Column(String, nullable=True)
    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)

    jobs = relationship("Job", back_populates="owner")
    rules = relationship("Rule", back_populates="owner")


class Job(Base):
    """One video processing run.

    ``needs_review_count`` and ``total_amount_sum`` are maintained by the
    aggregator only; nothing else writes them.
    """

    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    status = Column(_enum(JobStatus), nullable=False, default=JobStatus.QUEUED)
    progress_step = Column(_enum(ProgressStep), nullable=True)
    progress_pct = Column(Integer, nullable=False, default=0)

    video_filename = Column(String, nullable=False)
    video_mime = Column(String, nullable=False, default="video/mp4")
    video_size_bytes = Column(BigInteger, nullable=False, default=0)
    video_storage_key = Column(String, nullable=False)

    detected_receipt_count = Column(Integer, nullable=False, default=0)
    needs_review_count = Column(Integer, nullable=False, default=0)
    total_amount_sum = Column(BigInteger, nullable=False, default=0)

    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    owner = relationship("User", back_populates="jobs")
    receipts = relationship(
        "Receipt",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="Receipt.receipt_index",
    )
    exports = relationship("Export", back_populates="job", cascade="all, delete-orphan")


class Receipt(Base):
    """A detected, classified receipt extracted from one video frame.

    ``extracted_*`` columns hold the raw inference output; ``final_*``
    columns start as copies and are the values used downstream.
    """

    __tablename__ = "receipts"
    __table_args__ = (UniqueConstraint("job_id", "receipt_index", name="uq_receipts_job_index"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    job_id = Column(String(36), ForeignKey("jobs.id"), nullable=False, index=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    receipt_index = Column(Integer, nullable=False)
    evidence_id = Column(String, unique=True, nullable=False)
    image_storage_key = Column(String, nullable=True)

    ocr_text_raw = Column(Text, nullable=True)
    ocr_confidence = Column(Float, nullable=False, default=0.0)

    extracted_date = Column(Date, nullable=True)
    extracted_store_name = Column(String, nullable=True)
    extracted_total_amount = Column(BigInteger, nullable=True)
    extracted_invoice_number = Column(String, nullable=True)
    extracted_tax_hint = Column(String, nullable=True)

    final_date = Column(Date, nullable=False)
    final_store_name = Column(String, nullable=False)
    final_total_amount = Column(BigInteger, nullable=False, default=0)
    invoice_number = Column(String, nullable=True)

    invoice_flag = Column(_enum(InvoiceFlag), nullable=False, default=InvoiceFlag.UNKNOWN)
    payment_method = Column(_enum(PaymentMethod), nullable=False, default=PaymentMethod.UNKNOWN)
    debit_account = Column(String, nullable=False)
    debit_account_candidate2 = Column(String, nullable=True)
    account_confidence = Column(Float, nullable=True)
    account_reason = Column(Text, nullable=True)
    credit_account = Column(String, nullable=False)
    tax_category = Column(String, nullable=False)
    partner_name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    memo = Column(Text, nullable=True)

    needs_review = Column(Boolean, nullable=False, default=False)
    review_reasons = Column(JSON, nullable=False, default=list)
    edited_by_user = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False)

    job = relationship("Job", back_populates="receipts")


class Rule(Base):
    """Learned mapping from a normalised store name to an account."""

    __tablename__ = "rules"
    __table_args__ = (UniqueConstraint("owner_id", "store_name_key", name="uq_rules_owner_store"),)

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    store_name_key = Column(String, nullable=False)
    debit_account = Column(String, nullable=False)
    tax_category = Column(String, nullable=True)
    hit_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False)

    owner = relationship("User", back_populates="rules")


class Export(Base):
    """Generated spreadsheet artifact for a job."""

    __tablename__ = "exports"

    id = Column(String(36), primary_key=True, default=_uuid)
    job_id = Column(String(36), ForeignKey("jobs.id"), nullable=False, index=True)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    format = Column(_enum(ExportFormat), nullable=False)
    file_storage_key = Column(String, nullable=False)
    row_count = Column(Integer, nullable=False, default=0)
    credit_account_default = Column(String, nullable=True)
    created_at = Column(DateTime, default=dt.datetime.utcnow, nullable=False)

    job = relationship("Job", back_populates="exports")
