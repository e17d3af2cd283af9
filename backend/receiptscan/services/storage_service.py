"""Blob store abstraction.

Supports two backends selected via ``settings.STORAGE_BACKEND``:

1. **minio** (default): Uses the MinIO S3-compatible object storage.
2. **filesystem**: Stores objects under ``settings.STORAGE_DIRECTORY``
   as ``<bucket>/<key>`` on disk.

Uploads return a *storage key* of the form ``bucket/key`` which is what
gets persisted on job, receipt and export rows. ``split_storage_key``
turns such a value (or an ``s3://bucket/key`` URI) back into its parts.

Signed URLs come from MinIO's presigner. The filesystem backend has no
server of its own, so it returns a relative URL carrying an expiry and
an HMAC signature over ``bucket/key:exp`` made with
``settings.SECRET_KEY``; whoever serves the files checks it with
:func:`verify_signature`.
"""

from __future__ import annotations

import base64
import datetime as dt
import hashlib
import hmac
import logging
import time
from io import BytesIO
from pathlib import Path
from typing import Optional, Set, Tuple
from urllib.parse import quote, urlencode

from minio import Minio
from minio.error import S3Error

from receiptscan.core.config import settings
from receiptscan.core.exceptions import StorageError

logger = logging.getLogger(__name__)


def split_storage_key(value: str, default_bucket: Optional[str] = None) -> Tuple[str, str]:
    """Split ``s3://bucket/key`` or ``bucket/key`` into ``(bucket, key)``.

    When ``default_bucket`` is given and ``value`` does not start with
    it, ``value`` is taken to be a bare key inside that bucket.
    """
    raw = (value or "").strip()
    has_scheme = raw.startswith("s3://")
    if has_scheme:
        raw = raw[len("s3://"):]
    raw = raw.lstrip("/")
    if default_bucket and not has_scheme and not raw.startswith(f"{default_bucket}/"):
        if not raw:
            raise StorageError(f"Invalid storage key: {value!r}")
        return default_bucket, raw
    bucket, sep, key = raw.partition("/")
    if not bucket or not sep or not key:
        raise StorageError(f"Invalid storage key: {value!r}")
    return bucket, key


def _sign(bucket: str, key: str, exp_ts: int, secret: str) -> str:
    msg = f"{bucket}/{key}:{exp_ts}".encode()
    digest = hmac.new(secret.encode(), msg, hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def verify_signature(bucket: str, key: str, exp_ts: int, sig: str, now: Optional[float] = None) -> bool:
    """Check a filesystem download signature and its expiry."""
    if (now if now is not None else time.time()) > exp_ts:
        return False
    expected = _sign(bucket, key, int(exp_ts), settings.SECRET_KEY)
    return hmac.compare_digest(expected, sig or "")


class StorageService:
    """Unified blob store (MinIO or filesystem)."""

    def __init__(self, backend: Optional[str] = None, base_dir: Optional[str] = None) -> None:
        self.backend = (backend or settings.STORAGE_BACKEND or "minio").lower()
        self._known_buckets: Set[str] = set()
        if self.backend == "minio":
            self._client = Minio(
                settings.MINIO_ENDPOINT,
                access_key=settings.MINIO_ACCESS_KEY,
                secret_key=settings.MINIO_SECRET_KEY,
                secure=bool(settings.MINIO_USE_SSL),
            )
        elif self.backend == "filesystem":
            base_path = Path(base_dir or settings.STORAGE_DIRECTORY)
            if not base_path.is_absolute():
                repo_root = Path(__file__).resolve().parents[3]
                base_path = (repo_root / base_path).resolve()
            self.base_dir = base_path
            self.base_dir.mkdir(parents=True, exist_ok=True)
            logger.info("[storage] filesystem base_dir=%s", self.base_dir)
        else:
            raise ValueError(f"Unknown storage backend: {self.backend}")

    # ------------------------------------------------------------------
    # Filesystem helpers

    def _path_for(self, bucket: str, key: str) -> Path:
        path = (self.base_dir / bucket / key).resolve()
        root = (self.base_dir / bucket).resolve()
        if root not in path.parents:
            raise StorageError(f"Key escapes bucket: {bucket}/{key}")
        return path

    def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._known_buckets:
            return
        try:
            if not self._client.bucket_exists(bucket):
                self._client.make_bucket(bucket)
        except S3Error as exc:
            raise StorageError(f"Bucket check failed for {bucket}: {exc}") from exc
        self._known_buckets.add(bucket)

    # ------------------------------------------------------------------
    # Public API

    def download(self, bucket: str, key: str) -> bytes:
        """Return the object's bytes; raise :class:`StorageError` if unavailable."""
        logger.debug("[storage] download %s/%s backend=%s", bucket, key, self.backend)
        if self.backend == "minio":
            resp = None
            try:
                resp = self._client.get_object(bucket, key)
                return resp.read()
            except S3Error as exc:
                raise StorageError(f"Object not found: {bucket}/{key}") from exc
            except Exception as exc:  # urllib3 / network errors
                raise StorageError(f"MinIO download failed for {bucket}/{key}: {exc}") from exc
            finally:
                if resp is not None:
                    resp.close()
                    resp.release_conn()

        path = self._path_for(bucket, key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise StorageError(f"Object not found: {bucket}/{key}") from exc
        except OSError as exc:
            raise StorageError(f"Read failed for {bucket}/{key}: {exc}") from exc

    def upload(self, bucket: str, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Store ``data`` and return its storage key ``bucket/key``."""
        if self.backend == "minio":
            try:
                self._ensure_bucket(bucket)
                self._client.put_object(bucket, key, BytesIO(data), len(data), content_type=content_type)
            except StorageError:
                raise
            except Exception as exc:
                raise StorageError(f"MinIO upload failed for {bucket}/{key}: {exc}") from exc
        else:
            path = self._path_for(bucket, key)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(data)
            except OSError as exc:
                raise StorageError(f"Write failed for {bucket}/{key}: {exc}") from exc
        logger.debug("[storage] put %s/%s bytes=%d", bucket, key, len(data))
        return f"{bucket}/{key}"

    def signed_url(self, bucket: str, key: str, ttl_seconds: Optional[int] = None) -> str:
        """Return a time-limited download URL for the object."""
        ttl = int(ttl_seconds or settings.SIGNED_URL_TTL_SECONDS)
        if self.backend == "minio":
            try:
                return self._client.presigned_get_object(bucket, key, expires=dt.timedelta(seconds=ttl))
            except Exception as exc:
                raise StorageError(f"Presign failed for {bucket}/{key}: {exc}") from exc
        exp_ts = int(time.time()) + ttl
        sig = _sign(bucket, key, exp_ts, settings.SECRET_KEY)
        return f"/files/{quote(bucket)}/{quote(key)}?{urlencode({'exp': exp_ts, 'sig': sig})}"

    def delete(self, bucket: str, key: str) -> None:
        if self.backend == "minio":
            try:
                self._client.remove_object(bucket, key)
            except S3Error as exc:
                raise StorageError(f"Delete failed for {bucket}/{key}: {exc}") from exc
            return
        self._path_for(bucket, key).unlink(missing_ok=True)
