import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any

import litellm

from app.core.config import settings

logger = logging.getLogger(__name__)

# Suppress litellm's verbose logging
litellm.suppress_debug_info = True

# Provider error text that means "quota or rate exhausted" rather than a real failure
_QUOTA_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"resource[_\s-]?exhausted",
        r"\bquota\b",
        r"rate[\s-]?limit",
        r"too many requests",
        r"limit exceeded",
        r"insufficient\s+quota",
        r"billing",
    )
]

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class LLMConfigurationError(Exception):
    """Raised when no provider key is configured."""


class LLMQuotaExceededError(Exception):
    """Raised when the provider rejects a call for quota or rate reasons."""


class LLMResponseError(Exception):
    """Raised when the provider returns something that is not a JSON object."""


@dataclass
class LLMResult:
    data: dict[str, Any]
    model: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def usage(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


def setup_langfuse() -> None:
    """Configure litellm to send traces to Langfuse when enabled."""
    if not settings.langfuse_enabled:
        logger.debug("Langfuse observability is disabled")
        return

    os.environ["LANGFUSE_PUBLIC_KEY"] = settings.langfuse_public_key
    os.environ["LANGFUSE_SECRET_KEY"] = settings.langfuse_secret_key
    os.environ["LANGFUSE_HOST"] = settings.langfuse_host

    litellm.success_callback = ["langfuse"]
    litellm.failure_callback = ["langfuse"]
    logger.info("Langfuse observability enabled (host=%s)", settings.langfuse_host)


def is_quota_error(exc: BaseException) -> bool:
    if isinstance(exc, litellm.RateLimitError):
        return True
    text = " | ".join(
        str(part)
        for part in (exc, getattr(exc, "message", None), getattr(exc, "code", None))
        if part
    )
    return any(p.search(text) for p in _QUOTA_PATTERNS)


def parse_json_object(text: str | None) -> dict[str, Any]:
    """Parse a model reply into a dict, tolerating markdown code fences."""
    if not text:
        raise LLMResponseError("Empty model response")
    cleaned = _FENCE_RE.sub("", text.strip()).strip()
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise LLMResponseError(f"Model response is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise LLMResponseError("Model response is not a JSON object")
    return data


def _extract_usage(response) -> tuple[int, int]:
    """Extract input/output token counts from a litellm response."""
    usage = getattr(response, "usage", None)
    if usage is None:
        return 0, 0
    return getattr(usage, "prompt_tokens", 0) or 0, getattr(usage, "completion_tokens", 0) or 0


async def llm_completion_json(
    prompt: str,
    system: str = "",
    model: str | None = None,
    api_key: str | None = None,
) -> LLMResult:
    """LLM completion with JSON response format, parsed into a dict."""
    model = model or settings.default_llm_model
    api_key = api_key or settings.gemini_api_key
    if not api_key:
        raise LLMConfigurationError("Gemini API key is not configured")

    messages: list[dict] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    try:
        response = await litellm.acompletion(
            model=model,
            messages=messages,
            response_format={"type": "json_object"},
            api_key=api_key,
        )
    except Exception as exc:
        if is_quota_error(exc):
            logger.warning("LLM provider quota exhausted: model=%s error=%s", model, exc)
            raise LLMQuotaExceededError(str(exc)) from exc
        raise

    input_tokens, output_tokens = _extract_usage(response)
    data = parse_json_object(response.choices[0].message.content)
    return LLMResult(data=data, model=model, input_tokens=input_tokens, output_tokens=output_tokens)
