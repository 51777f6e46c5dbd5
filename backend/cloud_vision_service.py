"""
Cloud Vision fallback using Gemini.

Used when on-device confidence is not enough or the user asks for a broader
scene description. Every request goes through the guard first (consent,
task allowlist, content filters), then the per-client rate limit. Only
then is a task prompt plus the camera image sent to Gemini, and the reply
is sanitized before it can be spoken.

Remote failures are mapped to a fixed set of error codes; the remote error
text is logged and never returned to the client.
"""

import base64
import binascii
import hashlib
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from cachetools import TTLCache
from google import genai
from google.genai import errors
from google.genai.types import GenerateContentConfig, Part

from cloud_guard import (
    SYSTEM_RULES,
    create_safe_error_message,
    sanitize_input,
    sanitize_tts_output,
    validate_cloud_request,
)
from config import CloudConfig
from models import CloudRequest, CloudTask
from rate_limiter import RATE_LIMITS, RateLimiter

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")

TASK_PROMPTS = {
    CloudTask.DESCRIBE_SCENE.value: (
        "Describe the scene for a visually impaired person. What's around them? "
        "Key objects, people, overall environment. Brief and clear (2-3 sentences)."
    ),
    CloudTask.ANSWER_QUESTION.value: (
        "Answer the user's question about this image briefly and clearly, "
        "using spatial language (left, right, ahead, close, far)."
    ),
    CloudTask.SUMMARIZE_USAGE.value: (
        "Summarize the following app usage information in one or two short, friendly sentences."
    ),
}

FALLBACK_REPLY = "Unable to analyze image."


class CloudErrorCode(Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    RATE_LIMITED = "RATE_LIMITED"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    SERVICE_ERROR = "SERVICE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_MESSAGES = {
    CloudErrorCode.RATE_LIMITED: "Too many requests. Please try again in a moment.",
    CloudErrorCode.PAYMENT_REQUIRED: "AI usage credits depleted. Please add credits to continue.",
    CloudErrorCode.SERVICE_ERROR: "AI service temporarily unavailable.",
}


@dataclass
class CloudResponse:
    """Outcome of a cloud vision request."""
    ok: bool
    text: Optional[str] = None
    code: Optional[CloudErrorCode] = None
    message: Optional[str] = None
    cached: bool = False
    total_ms: float = 0.0

    @classmethod
    def error(cls, code: CloudErrorCode, message: Optional[str] = None) -> "CloudResponse":
        if message is None:
            message = ERROR_MESSAGES.get(code) or create_safe_error_message()
        return cls(ok=False, code=code, message=message)

    def to_payload(self) -> dict:
        if self.ok:
            return {"text": self.text, "cached": self.cached}
        return {"error": self.message, "code": self.code.value if self.code else None}


def decode_image(image_data: str) -> Tuple[bytes, str]:
    """
    Decode base64 image, handling a data URL prefix.

    Returns:
        (image_bytes, mime_type)

    Raises:
        ValueError: If the data is not valid base64 image data
    """
    mime_type = "image/jpeg"
    if image_data.startswith("data:"):
        header, _, image_data = image_data.partition(",")
        declared = header[5:].split(";", 1)[0]
        if not declared.startswith("image/"):
            raise ValueError("Data URL is not an image")
        mime_type = declared
    try:
        image_bytes = base64.b64decode(image_data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("Invalid base64 image data") from e
    if not image_bytes:
        raise ValueError("Empty image data")
    return image_bytes, mime_type


def build_client(config: CloudConfig) -> genai.Client:
    """Vertex AI client when a project is configured, API key client otherwise."""
    if config.project:
        return genai.Client(vertexai=True, project=config.project, location=config.location)

    api_key = os.environ.get("GEMINI_API_KEY")
    if api_key:
        return genai.Client(api_key=api_key)

    raise ValueError("Neither GOOGLE_CLOUD_PROJECT nor GEMINI_API_KEY found in environment")


class CloudVisionService:
    """Guarded, rate-limited, cached Gemini vision calls."""

    def __init__(
        self,
        config: Optional[CloudConfig] = None,
        client=None,
        limiter: Optional[RateLimiter] = None,
    ):
        self.config = config or CloudConfig.from_env()
        self.client = client if client is not None else build_client(self.config)

        limit = RATE_LIMITS["cloud_request"]
        self.limiter = limiter or RateLimiter(limit.max_calls, limit.window_seconds)
        self.cache = TTLCache(maxsize=self.config.cache_maxsize, ttl=self.config.cache_ttl)

    def _audit(self, event_type: str, severity: str, client_key: str, **data):
        details = " ".join(f"{k}={v}" for k, v in data.items())
        message = f"event={event_type} severity={severity} client={client_key} {details}".rstrip()
        if severity == "warning":
            audit_logger.warning(message)
        else:
            audit_logger.info(message)

    def _cache_key(self, task: str, text: str, image_bytes: Optional[bytes]) -> str:
        key_str = f"{task}_{text}"
        if image_bytes:
            key_str += f"_{hashlib.md5(image_bytes).hexdigest()[:16]}"
        return hashlib.md5(key_str.encode()).hexdigest()

    def _build_prompt(self, task: str, sanitized_input: str) -> str:
        prompt = TASK_PROMPTS[task]
        if not sanitized_input:
            return prompt
        if task == CloudTask.ANSWER_QUESTION.value:
            return f"{prompt}\nThe user asks: \"{sanitized_input}\""
        if task == CloudTask.SUMMARIZE_USAGE.value:
            return f"{prompt}\n{sanitized_input}"
        return f"{prompt}\nContext from the user: {sanitized_input}"

    def _map_api_error(self, error: errors.APIError) -> CloudResponse:
        if error.code == 429:
            return CloudResponse.error(CloudErrorCode.RATE_LIMITED)
        if error.code == 402:
            return CloudResponse.error(CloudErrorCode.PAYMENT_REQUIRED)
        return CloudResponse.error(CloudErrorCode.SERVICE_ERROR)

    async def process(self, request: CloudRequest, client_key: str = "default") -> CloudResponse:
        """
        Validate, rate limit and dispatch a cloud request.

        Never raises; failures come back as CloudResponse errors.
        """
        start_time = time.perf_counter()

        validation = validate_cloud_request(request)
        if not validation.valid:
            self._audit("cloud_request_rejected", "warning", client_key, task=request.task, reason=validation.reason)
            return CloudResponse.error(CloudErrorCode.INVALID_REQUEST, validation.reason)

        image_bytes, mime_type = None, "image/jpeg"
        if request.image_base64:
            try:
                image_bytes, mime_type = decode_image(request.image_base64)
            except ValueError as e:
                logger.warning(f"Rejected cloud image: {e}")
                return CloudResponse.error(CloudErrorCode.INVALID_REQUEST, "Invalid image data")
        elif request.task == CloudTask.DESCRIBE_SCENE.value:
            return CloudResponse.error(CloudErrorCode.INVALID_REQUEST, "Scene description requires an image")

        sanitized_input = sanitize_input(request.input)

        # Cache hits don't count against the rate limit
        cache_key = self._cache_key(request.task, sanitized_input, image_bytes)
        if cache_key in self.cache:
            elapsed = (time.perf_counter() - start_time) * 1000
            return CloudResponse(ok=True, text=self.cache[cache_key], cached=True, total_ms=elapsed)

        if not self.limiter.is_allowed(client_key):
            wait = self.limiter.wait_time(client_key)
            logger.warning(f"Cloud request rate limited for {client_key} (retry in {wait:.1f}s)")
            self._audit("rate_limit_exceeded", "warning", client_key, endpoint="cloud_vision")
            return CloudResponse.error(CloudErrorCode.RATE_LIMITED)

        parts = []
        if image_bytes:
            parts.append(Part.from_bytes(data=image_bytes, mime_type=mime_type))
        parts.append({"text": self._build_prompt(request.task, sanitized_input)})

        config = GenerateContentConfig(
            system_instruction=SYSTEM_RULES,
            temperature=self.config.temperature,
            max_output_tokens=self.config.max_output_tokens,
        )

        try:
            response = await self.client.aio.models.generate_content(
                model=self.config.model,
                contents=[{"role": "user", "parts": parts}],
                config=config,
            )
        except errors.APIError as e:
            logger.error(f"❌ Gemini error {e.code}: {e.message}")
            self._audit("cloud_request_failed", "warning", client_key, status=e.code)
            return self._map_api_error(e)
        except Exception as e:
            logger.error(f"❌ Cloud vision error: {e}", exc_info=True)
            self._audit("cloud_request_failed", "warning", client_key, status="internal")
            return CloudResponse.error(CloudErrorCode.INTERNAL_ERROR)

        text = sanitize_tts_output(response.text or "") or FALLBACK_REPLY
        self.cache[cache_key] = text

        elapsed = (time.perf_counter() - start_time) * 1000
        self._audit("vision_analysis_success", "info", client_key, task=request.task, response_time_ms=f"{elapsed:.0f}")
        logger.info(f"✅ Cloud {request.task} completed in {elapsed:.0f}ms")
        return CloudResponse(ok=True, text=text, total_ms=elapsed)
