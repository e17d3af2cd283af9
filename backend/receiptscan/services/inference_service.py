"""Vision/text inference for the detection, extraction and classification stages.

This service wraps the OpenAI chat completions API. Each stage sends a
prompt (plus an image for detection and extraction), asks for a JSON
object, and validates the reply with the matching Pydantic schema.
Requests go through a small model cascade: ``settings.INFERENCE_MODEL``
first, then ``settings.INFERENCE_MODEL_FALLBACKS`` in order, moving on
when a call errors, times out or returns unusable JSON.

No stage ever raises. When every model in the cascade fails the stage
returns its safe default:

* detection: ``{none, 0.0}`` so the frame is skipped,
* extraction: every field unknown with confidence ``0.0``,
* classification: ``その他`` with confidence ``0.3``.

The defaults are then surfaced to users through review reasons rather
than by failing the job.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI
from pydantic import BaseModel, ValidationError

from receiptscan.core.config import settings
from receiptscan.models.enums import DebitAccount, DetectionVerdict
from receiptscan.models.schemas import AccountResult, DetectionResult, OcrResult
from receiptscan.utils.helpers import strip_code_fences
from receiptscan.utils.image_processing import preprocess_image
from receiptscan.utils.prompts import get_classification_prompt, get_detection_prompt, get_extraction_prompt

logger = logging.getLogger(__name__)


def is_receipt_frame(result: DetectionResult, threshold: Optional[float] = None) -> bool:
    """A frame is a candidate receipt iff the verdict is ``receipt`` with enough confidence."""
    if threshold is None:
        threshold = settings.DETECTION_CONFIDENCE_THRESHOLD
    return result.verdict == DetectionVerdict.RECEIPT and result.confidence >= threshold


def default_detection() -> DetectionResult:
    return DetectionResult(verdict=DetectionVerdict.NONE, confidence=0.0)


def default_ocr() -> OcrResult:
    return OcrResult()


def default_account(reason: str = "AI判定失敗") -> AccountResult:
    return AccountResult(debit_account=DebitAccount.OTHER, confidence=0.3, reason=reason)


class InferenceService:
    """Stage adapters over an OpenAI compatible client.

    ``client`` may be injected (tests pass a fake exposing
    ``chat.completions.create``); otherwise one is built from settings
    with the configured timeout.
    """

    def __init__(
        self,
        client: Any = None,
        model: Optional[str] = None,
        fallback_models: Optional[List[str]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.timeout = float(timeout or settings.INFERENCE_TIMEOUT_SECONDS)
        self.client = client or OpenAI(api_key=settings.OPENAI_API_KEY, timeout=self.timeout, max_retries=1)
        primary = (model or settings.INFERENCE_MODEL).strip()
        fallbacks = settings.inference_fallback_models if fallback_models is None else fallback_models
        # Primary first, duplicates dropped
        self.cascade: List[str] = []
        seen = set()
        for name in [primary] + list(fallbacks):
            if name and name.lower() not in seen:
                self.cascade.append(name)
                seen.add(name.lower())

    # ------------------------------------------------------------------
    # Transport

    def _image_to_base64(self, data: bytes) -> str:
        processed = preprocess_image(data, max_size=settings.INFERENCE_IMAGE_MAX_SIZE)
        return base64.b64encode(processed).decode("utf-8")

    def _request_json(self, model: str, prompt: str, image_b64: Optional[str]) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        if image_b64:
            content.append({"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{image_b64}"}})
        response = self.client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": content}],
            response_format={"type": "json_object"},
            temperature=0,
            timeout=self.timeout,
        )
        text = response.choices[0].message.content or ""
        data = json.loads(strip_code_fences(text))
        if not isinstance(data, dict):
            raise ValueError("model did not return a JSON object")
        return data

    def _run_stage(self, stage: str, prompt: str, schema: type[BaseModel], image_b64: Optional[str] = None):
        """Try each model in the cascade; ``None`` when all of them fail."""
        for model in self.cascade:
            try:
                data = self._request_json(model, prompt, image_b64)
                return schema.model_validate(data)
            except (ValidationError, ValueError) as exc:
                logger.warning("[inference:%s] unusable reply model=%s err=%s", stage, model, exc)
            except Exception as exc:  # transport, timeout, rate limit
                logger.warning("[inference:%s] call failed model=%s err=%s", stage, model, exc)
        return None

    # ------------------------------------------------------------------
    # Stages

    def detect(self, image: bytes) -> DetectionResult:
        """Decide whether ``image`` shows a receipt."""
        try:
            image_b64 = self._image_to_base64(image)
        except Exception as exc:
            logger.warning("[inference:detect] could not encode image: %s", exc)
            return default_detection()
        result = self._run_stage("detect", get_detection_prompt(), DetectionResult, image_b64)
        return result or default_detection()

    def extract_fields(self, image: bytes) -> OcrResult:
        """Read date, store, amount, tax hint and invoice number off ``image``."""
        try:
            image_b64 = self._image_to_base64(image)
        except Exception as exc:
            logger.warning("[inference:ocr] could not encode image: %s", exc)
            return default_ocr()
        result = self._run_stage("ocr", get_extraction_prompt(), OcrResult, image_b64)
        return result or default_ocr()

    def classify_account(
        self,
        store_name: Optional[str] = None,
        total_amount: Optional[int] = None,
        tax_hint: Optional[str] = None,
        raw_text: Optional[str] = None,
    ) -> AccountResult:
        """Pick a debit account; only a bounded prefix of ``raw_text`` is sent."""
        prefix = raw_text[: settings.CLASSIFY_TEXT_PREFIX_CHARS] if raw_text else None
        prompt = get_classification_prompt(store_name, total_amount, tax_hint, prefix)
        result = self._run_stage("classify", prompt, AccountResult)
        return result or default_account()
