"""Exception types shared by the pipeline and the services.

Three families live here:

* ``PipelineError`` and subclasses are job-fatal. The orchestrator
  catches them and records ``code``/``message`` on the job row.
* ``JobCanceled`` stops a running pipeline without touching the job.
* User-input errors (``InvalidPayloadError``, ``NotFoundError``,
  ``JobNotCancelableError``) are raised back to the caller of a
  service function and never reach the pipeline.
"""

from __future__ import annotations

from typing import Any, List, Optional


class ReceiptScanError(Exception):
    """Base class for all errors raised by this package."""


class PipelineError(ReceiptScanError):
    """Fatal error that fails the current job."""

    code = "PIPELINE_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code:
            self.code = code

    @property
    def message(self) -> str:
        return str(self)


class VideoDownloadError(PipelineError):
    code = "VIDEO_DOWNLOAD_FAILED"


class ExtractionError(PipelineError):
    """The video could not be decoded into frames."""

    code = "FRAME_EXTRACTION_FAILED"


class PersistenceError(PipelineError):
    code = "PERSISTENCE_ERROR"


class JobCanceled(ReceiptScanError):
    """The job left the ``processing`` state while the pipeline was running."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} is no longer processing")
        self.job_id = job_id


class StorageError(ReceiptScanError):
    """Blob store read or write failed."""


class NotFoundError(ReceiptScanError):
    def __init__(self, resource: str, resource_id: Any) -> None:
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class JobNotCancelableError(ReceiptScanError):
    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"Job {job_id} cannot be canceled from status {status}")
        self.job_id = job_id
        self.status = status


class InvalidPayloadError(ReceiptScanError, ValueError):
    """Malformed edit or rule payload supplied by a user."""

    def __init__(self, message: str, errors: Optional[List[dict]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []
