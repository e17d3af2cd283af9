"""Simple configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  Files are
# loaded in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    PROJECT_NAME: str = "receiptscan"
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # Database
    DATABASE_URL: str = Field(default="sqlite:///./receiptscan.db")

    # Redis / Dramatiq
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)
    # Publish progress events on Redis pub/sub channels
    EVENTS_ENABLED: bool = Field(default=True)
    JOB_TIME_LIMIT_MS: int = Field(default=60 * 60 * 1000)

    # Inference (OpenAI)
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    INFERENCE_MODEL: str = Field(default="gpt-4o-mini")
    # Comma separated list tried in order after INFERENCE_MODEL
    INFERENCE_MODEL_FALLBACKS: str = Field(default="")
    INFERENCE_TIMEOUT_SECONDS: float = Field(default=30.0)
    INFERENCE_IMAGE_MAX_SIZE: int = Field(default=1280)
    CLASSIFY_TEXT_PREFIX_CHARS: int = Field(default=200)

    # Storage
    STORAGE_BACKEND: str = Field(default="minio")
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_USE_SSL: bool = Field(default=False)
    STORAGE_DIRECTORY: str = Field(default="./storage")
    VIDEO_BUCKET: str = Field(default="videos")
    RECEIPT_IMAGE_BUCKET: str = Field(default="receipt-images")
    EXPORT_BUCKET: str = Field(default="exports")
    SIGNED_URL_TTL_SECONDS: int = Field(default=3600)

    # Frame sampling
    FFMPEG_BINARY: str = Field(default="ffmpeg")
    FFMPEG_TIMEOUT_SECONDS: int = Field(default=600)
    FRAME_SAMPLE_FPS: float = Field(default=1.0)
    FRAME_MAX_WIDTH: int = Field(default=1280)

    # Review / acceptance thresholds
    DETECTION_CONFIDENCE_THRESHOLD: float = Field(default=0.6)
    OCR_CONFIDENCE_THRESHOLD: float = Field(default=0.6)
    ACCOUNT_CONFIDENCE_THRESHOLD: float = Field(default=0.7)

    # Bookkeeping defaults applied to new receipts
    DEFAULT_CREDIT_ACCOUNT: str = Field(default="現金")
    DEFAULT_TAX_CATEGORY: str = Field(default="課税10%")

    SECRET_KEY: str = Field(default="changeme")

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)

    @property
    def inference_fallback_models(self) -> list[str]:
        return [m.strip() for m in (self.INFERENCE_MODEL_FALLBACKS or "").split(",") if m.strip()]


# Instantiate global settings
settings = Settings()

# Propagate key env vars for libraries reading directly from os.environ
if settings.OPENAI_API_KEY:
    os.environ.setdefault("OPENAI_API_KEY", settings.OPENAI_API_KEY)
