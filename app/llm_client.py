"""OpenAI client factory and JSON/text completion helpers for the LLM passes."""
from __future__ import annotations

import json
import time
from typing import Any

from app.config import settings
from app.errors import ErrorCategory, ResearchError
from app.services import logger as log_service


def get_client():
    """Get an AsyncOpenAI client, honouring an optional gateway base URL."""
    from openai import AsyncOpenAI

    kwargs: dict[str, Any] = {"api_key": settings.openai_api_key or "missing"}
    if settings.openai_base_url.strip():
        kwargs["base_url"] = settings.openai_base_url.strip()
    return AsyncOpenAI(**kwargs)


def get_model() -> str:
    """Model used for extraction, conflict, analysis, summary and notes passes."""
    return settings.extraction_model or "gpt-4o"


_client = None


def client():
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client


def _usage(response: Any) -> tuple[int, int]:
    usage = getattr(response, "usage", None)
    if not usage:
        return 0, 0
    return (
        getattr(usage, "prompt_tokens", 0) or 0,
        getattr(usage, "completion_tokens", 0) or 0,
    )


async def complete_text(
    prompt: str,
    *,
    caller: str,
    temperature: float | None = None,
    model: str | None = None,
) -> str:
    """Single-turn completion returning the message text.

    SDK failures surface as retryable API_ERROR.
    """
    used_model = model or get_model()
    kwargs: dict[str, Any] = {
        "model": used_model,
        "messages": [{"role": "user", "content": prompt}],
    }
    if temperature is not None:
        kwargs["temperature"] = temperature

    start = time.monotonic()
    try:
        response = await client().chat.completions.create(**kwargs)
    except Exception as exc:
        log_service.log_llm_call(
            model=used_model,
            caller=caller,
            duration_ms=int((time.monotonic() - start) * 1000),
            status="error",
            error=str(exc),
        )
        raise ResearchError(
            ErrorCategory.API_ERROR,
            "AI processing service temporarily unavailable. Please try again in a moment.",
            original_error=str(exc),
            retryable=True,
        ) from exc

    input_tokens, output_tokens = _usage(response)
    log_service.log_llm_call(
        model=used_model,
        caller=caller,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        duration_ms=int((time.monotonic() - start) * 1000),
    )
    return response.choices[0].message.content or ""


async def complete_json(
    prompt: str,
    *,
    caller: str,
    temperature: float | None = None,
    model: str | None = None,
) -> dict[str, Any]:
    """JSON-object completion. Unparseable output raises VALIDATION_ERROR."""
    used_model = model or get_model()
    kwargs: dict[str, Any] = {
        "model": used_model,
        "messages": [{"role": "user", "content": prompt}],
        "response_format": {"type": "json_object"},
    }
    if temperature is not None:
        kwargs["temperature"] = temperature

    start = time.monotonic()
    try:
        response = await client().chat.completions.create(**kwargs)
    except Exception as exc:
        log_service.log_llm_call(
            model=used_model,
            caller=caller,
            duration_ms=int((time.monotonic() - start) * 1000),
            status="error",
            error=str(exc),
        )
        raise ResearchError(
            ErrorCategory.API_ERROR,
            "AI processing service temporarily unavailable. Please try again in a moment.",
            original_error=str(exc),
            retryable=True,
        ) from exc

    input_tokens, output_tokens = _usage(response)
    log_service.log_llm_call(
        model=used_model,
        caller=caller,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        duration_ms=int((time.monotonic() - start) * 1000),
    )

    text = response.choices[0].message.content or "{}"
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ResearchError(
            ErrorCategory.VALIDATION_ERROR,
            "Received unexpected data format. Please try again.",
            original_error="Failed to parse AI response as JSON",
            retryable=False,
        ) from exc
    if not isinstance(parsed, dict):
        raise ResearchError(
            ErrorCategory.VALIDATION_ERROR,
            "Received unexpected data format. Please try again.",
            original_error=f"Expected JSON object, got {type(parsed).__name__}",
            retryable=False,
        )
    return parsed
