"""Enumeration types used throughout the receipt pipeline.

Enumerations constrain the values that can be stored in the database
or returned by the inference service. Member order is meaningful for
``ProgressStep`` (pipeline order) and ``ReviewReason`` (the canonical
order review reasons are reported in).

Account and tax labels are the Japanese bookkeeping terms written to
exports verbatim, so the enum *values* are the labels themselves.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Lifecycle states for a video processing job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED})
ACTIVE_JOB_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})


class ProgressStep(str, Enum):
    """Sub-state of a ``processing`` job, in pipeline order."""

    FRAME_EXTRACT = "frame_extract"
    DETECT = "detect"
    OCR = "ocr"
    CLASSIFY = "classify"
    EXPORT_READY = "export_ready"

    @property
    def progress_pct(self) -> int:
        return STEP_PROGRESS[self]


STEP_PROGRESS = {
    ProgressStep.FRAME_EXTRACT: 10,
    ProgressStep.DETECT: 30,
    ProgressStep.OCR: 60,
    ProgressStep.CLASSIFY: 80,
    ProgressStep.EXPORT_READY: 100,
}


class DetectionVerdict(str, Enum):
    RECEIPT = "receipt"
    PARTIAL = "partial"
    NONE = "none"


class ReviewReason(str, Enum):
    """Reasons a receipt needs human confirmation."""

    DATE_MISSING = "date_missing"
    STORE_MISSING = "store_missing"
    AMOUNT_MISSING = "amount_missing"
    INVOICE_UNKNOWN = "invoice_unknown"
    LOW_CONFIDENCE = "low_confidence"
    DEBIT_ACCOUNT_LOW_CONFIDENCE = "debit_account_low_confidence"
    INVALID_INVOICE_NUMBER = "invalid_invoice_number"


class InvoiceFlag(str, Enum):
    """Whether the receipt is a qualified invoice."""

    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    TRANSIT = "transit"
    TRANSFER = "transfer"
    UNKNOWN = "unknown"


class DebitAccount(str, Enum):
    """Bookkeeping categories the classifier may choose from."""

    SUPPLIES = "消耗品費"
    ENTERTAINMENT = "交際費"
    MEETING = "会議費"
    TRAVEL = "旅費交通費"
    COMMUNICATION = "通信費"
    VEHICLE = "車両費"
    UTILITIES = "水道光熱費"
    RENT = "地代家賃"
    ADVERTISING = "広告宣伝費"
    BOOKS = "新聞図書費"
    OFFICE_SUPPLIES = "事務用品費"
    REPAIRS = "修繕費"
    OUTSOURCING = "外注費"
    OTHER = "その他"


class TaxCategory(str, Enum):
    TAXABLE_10 = "課税10%"
    TAXABLE_8_REDUCED = "課税8%（軽減）"
    NON_TAXABLE = "非課税"
    OUT_OF_SCOPE = "不課税"
    EXEMPT = "免税"


class ExportFormat(str, Enum):
    XLSX = "xlsx"
    CSV = "csv"
