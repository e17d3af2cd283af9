"""In-memory stand-ins for the pipeline's collaborators."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from receiptscan.core.exceptions import StorageError
from receiptscan.models.schemas import AccountResult, DetectionResult, OcrResult
from receiptscan.services.frame_extractor import Frame


class FakeStorage:
    """Dict backed blob store; ``fail_uploads`` makes every upload raise."""

    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.fail_uploads = False

    def download(self, bucket: str, key: str) -> bytes:
        try:
            return self.objects[f"{bucket}/{key}"]
        except KeyError as exc:
            raise StorageError(f"Object not found: {bucket}/{key}") from exc

    def upload(self, bucket: str, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        if self.fail_uploads:
            raise StorageError("upload refused")
        self.objects[f"{bucket}/{key}"] = data
        return f"{bucket}/{key}"

    def signed_url(self, bucket: str, key: str, ttl_seconds: Optional[int] = None) -> str:
        return f"https://blobs.test/{bucket}/{key}?ttl={ttl_seconds}"

    def delete(self, bucket: str, key: str) -> None:
        self.objects.pop(f"{bucket}/{key}", None)


class FakeInference:
    """Scripted stage results keyed by frame bytes (store name for classify).

    A value that is an exception instance is raised instead of returned.
    """

    def __init__(self, detections=None, ocr=None, accounts=None) -> None:
        self.detections: Dict[bytes, object] = detections or {}
        self.ocr: Dict[bytes, object] = ocr or {}
        self.accounts: Dict[Optional[str], object] = accounts or {}
        self.calls: List[tuple] = []

    @staticmethod
    def _resolve(value):
        if isinstance(value, BaseException):
            raise value
        return value

    def detect(self, image: bytes) -> DetectionResult:
        self.calls.append(("detect", image))
        return self._resolve(self.detections.get(image, DetectionResult(verdict="none", confidence=0.0)))

    def extract_fields(self, image: bytes) -> OcrResult:
        self.calls.append(("ocr", image))
        return self._resolve(self.ocr.get(image, OcrResult()))

    def classify_account(self, store_name=None, total_amount=None, tax_hint=None, raw_text=None) -> AccountResult:
        self.calls.append(("classify", store_name))
        return self._resolve(
            self.accounts.get(store_name, AccountResult(debit_account="消耗品費", confidence=0.9, reason="test"))
        )


class FakeFrameSampler:
    """Writes ``frames`` into the work dir and returns them as Frame handles."""

    def __init__(self, frames: List[bytes], error: Optional[BaseException] = None) -> None:
        self.frames = frames
        self.error = error
        self.work_dirs: List[Path] = []
        self.kwargs: dict = {}

    def __call__(self, video_bytes: bytes, work_dir: Path, **kwargs) -> List[Frame]:
        self.work_dirs.append(Path(work_dir))
        self.kwargs = kwargs
        if self.error is not None:
            raise self.error
        result = []
        for i, data in enumerate(self.frames, start=1):
            path = Path(work_dir) / f"frame_{i:06d}.jpg"
            path.write_bytes(data)
            result.append(Frame(index=i, path=path))
        return result


class EventRecorder:
    """Publisher that keeps ``(event_type, data)`` pairs in order."""

    def __init__(self) -> None:
        self.events: List[tuple] = []

    def __call__(self, owner_id, job_id, event_type, data=None):
        self.events.append((event_type, dict(data or {})))
        return True
