"""Pydantic schemas for stage results and service payloads.

Pydantic models are used for validating and serialising data that
crosses a boundary of the pipeline: JSON returned by the inference
model, edit and rule payloads supplied by users, and the progress
surface read by pollers. They keep malformed data out of the business
logic. This module defines both the stage schemas (``DetectionResult``,
``OcrResult``, ``AccountResult``) and the service facing schemas.

Whenever you modify the underlying SQLAlchemy models be sure to
update these Pydantic models accordingly.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from receiptscan.utils.helpers import clamp_confidence, largest_amount, parse_amount, parse_receipt_date
from receiptscan.utils.sanitization import sanitize_optional, sanitize_string
from .enums import (
    DebitAccount,
    DetectionVerdict,
    ExportFormat,
    InvoiceFlag,
    JobStatus,
    PaymentMethod,
    ProgressStep,
    TaxCategory,
)


# ---------------------------------------------------------------------------
# Stage schemas parsed from model output


class DetectionResult(BaseModel):
    """Verdict of the detection stage for one frame."""

    model_config = ConfigDict(populate_by_name=True)

    verdict: DetectionVerdict = Field(
        default=DetectionVerdict.NONE,
        validation_alias=AliasChoices("verdict", "result"),
    )
    confidence: float = 0.0

    @field_validator("verdict", mode="before")
    @classmethod
    def _coerce_verdict(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in {item.value for item in DetectionVerdict}:
                return DetectionVerdict.NONE
        return v

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        return clamp_confidence(v)


class OcrResult(BaseModel):
    """Structured fields read off one receipt image.

    Accepts the keys the extraction prompt asks for (``tax_info``,
    ``ocr_raw_text``) as well as the attribute names. Amounts are parsed
    into integers and the largest of ``total_amount`` and
    ``total_amount_candidates`` wins. Era dates are converted.
    """

    model_config = ConfigDict(populate_by_name=True)

    date: Optional[dt.date] = None
    store_name: Optional[str] = None
    total_amount: Optional[int] = None
    tax_hint: Optional[str] = Field(default=None, validation_alias=AliasChoices("tax_hint", "tax_info"))
    invoice_number: Optional[str] = None
    raw_text: Optional[str] = Field(default=None, validation_alias=AliasChoices("raw_text", "ocr_raw_text"))
    confidence: float = 0.0

    @model_validator(mode="before")
    @classmethod
    def _pick_largest_total(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        raw = data.pop("total_amount_candidates", None)
        if raw is None:
            candidates = []
        elif isinstance(raw, (list, tuple)):
            candidates = list(raw)
        else:
            candidates = [raw]
        if data.get("total_amount") is not None:
            candidates.append(data["total_amount"])
        data["total_amount"] = largest_amount(candidates)
        return data

    @field_validator("date", mode="before")
    @classmethod
    def _parse_date(cls, v: Any) -> Optional[dt.date]:
        return parse_receipt_date(v)

    @field_validator("total_amount", mode="before")
    @classmethod
    def _parse_amount(cls, v: Any) -> Optional[int]:
        return parse_amount(v)

    @field_validator("store_name", "tax_hint", "invoice_number", "raw_text", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        return clamp_confidence(v)


class AccountResult(BaseModel):
    """Debit account chosen for a receipt, by rule or by the model."""

    debit_account: DebitAccount = DebitAccount.OTHER
    debit_account_candidate2: Optional[DebitAccount] = None
    confidence: float = 0.3
    reason: str = ""

    @model_validator(mode="before")
    @classmethod
    def _coerce_accounts(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        known = {item.value for item in DebitAccount}
        confidence = clamp_confidence(data.get("confidence"), default=0.3)
        account = getattr(data.get("debit_account"), "value", data.get("debit_account"))
        if account not in known:
            # Out-of-set answer: keep the job moving but force a review
            account = DebitAccount.OTHER.value
            confidence = min(confidence, 0.3)
        data["debit_account"] = account
        candidate2 = getattr(data.get("debit_account_candidate2"), "value", data.get("debit_account_candidate2"))
        data["debit_account_candidate2"] = candidate2 if candidate2 in known else None
        data["confidence"] = confidence
        data["reason"] = str(data.get("reason") or "")
        return data


# ---------------------------------------------------------------------------
# Service schemas


class JobCreate(BaseModel):
    """Metadata of an already uploaded video."""

    video_filename: str = Field(min_length=1)
    video_storage_key: str = Field(min_length=1)
    video_mime: str = "video/mp4"
    video_size_bytes: int = Field(default=0, ge=0)


class JobProgress(BaseModel):
    """Everything a poller may read about a job."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    status: JobStatus
    progress_step: Optional[ProgressStep] = None
    progress_pct: int = 0
    detected_receipt_count: int = 0
    needs_review_count: int = 0
    total_amount_sum: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class JobRead(JobProgress):
    owner_id: str
    video_filename: str
    video_mime: str
    video_size_bytes: int
    created_at: Optional[dt.datetime] = None
    started_at: Optional[dt.datetime] = None
    completed_at: Optional[dt.datetime] = None


class ReceiptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    receipt_index: int
    evidence_id: str
    image_storage_key: Optional[str] = None
    ocr_confidence: float
    final_date: dt.date
    final_store_name: str
    final_total_amount: int
    invoice_number: Optional[str] = None
    invoice_flag: InvoiceFlag
    payment_method: PaymentMethod
    debit_account: str
    debit_account_candidate2: Optional[str] = None
    account_confidence: Optional[float] = None
    credit_account: str
    tax_category: str
    partner_name: Optional[str] = None
    description: Optional[str] = None
    memo: Optional[str] = None
    needs_review: bool
    review_reasons: List[str] = Field(default_factory=list)
    edited_by_user: bool = False


_REQUIRED_RECEIPT_FIELDS = frozenset(
    {
        "final_date",
        "final_store_name",
        "final_total_amount",
        "invoice_flag",
        "payment_method",
        "debit_account",
        "credit_account",
        "tax_category",
    }
)


class ReceiptUpdate(BaseModel):
    """User edit of a receipt; only supplied fields are applied.

    ``save_rule`` additionally learns a rule from the edited store name
    and debit account.
    """

    model_config = ConfigDict(extra="forbid")

    final_date: Optional[dt.date] = None
    final_store_name: Optional[str] = Field(default=None, max_length=200)
    final_total_amount: Optional[int] = Field(default=None, ge=0)
    invoice_number: Optional[str] = Field(default=None, max_length=32)
    invoice_flag: Optional[InvoiceFlag] = None
    payment_method: Optional[PaymentMethod] = None
    debit_account: Optional[DebitAccount] = None
    debit_account_candidate2: Optional[DebitAccount] = None
    credit_account: Optional[str] = Field(default=None, max_length=50)
    tax_category: Optional[TaxCategory] = None
    partner_name: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)
    memo: Optional[str] = Field(default=None, max_length=1000)
    save_rule: bool = False

    @field_validator("final_date", mode="before")
    @classmethod
    def _parse_date(cls, v: Any) -> Any:
        if v is None or isinstance(v, dt.date):
            return v
        parsed = parse_receipt_date(v)
        if parsed is None:
            raise ValueError("final_date must be a calendar date")
        return parsed

    @field_validator("final_store_name", "credit_account", "partner_name", "description", "memo")
    @classmethod
    def _sanitize(cls, v: Optional[str]) -> Optional[str]:
        return sanitize_string(v)

    @field_validator("invoice_number")
    @classmethod
    def _sanitize_invoice(cls, v: Optional[str]) -> Optional[str]:
        v = sanitize_optional(v)
        return v.upper() if v else v

    @model_validator(mode="after")
    def _reject_null_required(self) -> "ReceiptUpdate":
        nulled = sorted(f for f in self.model_fields_set & _REQUIRED_RECEIPT_FIELDS if getattr(self, f) is None)
        if nulled:
            raise ValueError(f"{', '.join(nulled)} cannot be cleared")
        return self

    def changes(self) -> dict:
        """Return the explicitly supplied receipt fields."""
        return self.model_dump(exclude_unset=True, exclude={"save_rule"})


class RuleUpsert(BaseModel):
    """Explicit rule save: map a store name to an account."""

    model_config = ConfigDict(extra="forbid")

    store_name: str = Field(min_length=1, max_length=200)
    debit_account: DebitAccount
    tax_category: Optional[TaxCategory] = None

    @field_validator("store_name")
    @classmethod
    def _non_blank(cls, v: str) -> str:
        v = sanitize_string(v) or ""
        if not v:
            raise ValueError("store_name must not be blank")
        return v


class RuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    store_name_key: str
    debit_account: str
    tax_category: Optional[str] = None
    hit_count: int
    last_used_at: Optional[dt.datetime] = None


class JobSummary(BaseModel):
    """Aggregate over a job's current receipts."""

    receipt_count: int = 0
    needs_review_count: int = 0
    total_amount_sum: int = 0


class ExportResult(BaseModel):
    export_id: str
    format: ExportFormat
    file_storage_key: str
    row_count: int
    download_url: str
    expires_at: dt.datetime
