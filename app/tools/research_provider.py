"""Research backends (Perplexity, OpenAI) behind one query call.

Each backend walks an ordered model chain, skipping models the provider reports
as unavailable (HTTP 404/400) and stopping at the first auth failure or abort.
Every attempt is bounded by a timeout and by the caller's optional cancel event.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable

import httpx
import openai
from loguru import logger

from app import llm_client
from app.config import settings
from app.errors import ErrorCategory, QueryTimeout, ResearchAborted, ResearchError

PERPLEXITY_MODELS = ("sonar", "sonar-pro", "sonar-deep-research")
DEEP_RESEARCH_MODEL = "sonar-deep-research"
OPENAI_MODELS = ("o3-deep-research", "gpt-4o")

DEEP_RESEARCH_TIMEOUT_S = 6 * 60
STANDARD_TIMEOUT_S = 4 * 60

DEFAULT_SYSTEM_PROMPT = (
    "You are a maritime and port research assistant. Always cite your sources. "
    "Provide accurate, specific and current information."
)

_OPTIMAL_MODELS = {
    "governance": "sonar-pro",
    "isps_risk": "sonar-pro",
    "identity_location": "sonar-pro",
    "capacity_operations": "sonar-pro",
    "strategic_intelligence": "sonar-deep-research",
}

_CITATION_RE = re.compile(r"\[(\d+)\]")
_MARKDOWN_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")


@dataclass(slots=True)
class ResearchResult:
    content: str
    sources: list[str] = field(default_factory=list)


def get_research_provider() -> str:
    provider = (settings.research_provider or "perplexity").lower().strip()
    if provider not in ("perplexity", "openai"):
        raise ResearchError(
            ErrorCategory.VALIDATION_ERROR,
            f"Invalid RESEARCH_PROVIDER: {provider}. Must be 'perplexity' or 'openai'",
        )
    return provider


def validate_api_keys(provider: str) -> None:
    if provider == "perplexity" and not settings.pplx_api_key.strip():
        raise ResearchError(
            ErrorCategory.AUTH_ERROR,
            "PPLX_API_KEY is required when RESEARCH_PROVIDER=perplexity",
        )
    if provider == "openai" and not settings.openai_api_key.strip():
        raise ResearchError(
            ErrorCategory.AUTH_ERROR,
            "OPENAI_API_KEY is required when RESEARCH_PROVIDER=openai",
        )


def get_optimal_model(query_type: str) -> str:
    return _OPTIMAL_MODELS.get(query_type, "sonar-pro")


def citation_sources(content: str) -> list[str]:
    return [f"Source {i + 1}" for i, _ in enumerate(_CITATION_RE.findall(content))]


def link_sources(content: str) -> list[str]:
    """Markdown link targets, falling back to citation markers."""
    urls = [m.group(2) for m in _MARKDOWN_LINK_RE.finditer(content)]
    return urls or citation_sources(content)


async def run_bounded(
    awaitable: Awaitable[Any],
    timeout_s: float,
    cancel_event: asyncio.Event | None = None,
) -> Any:
    """Await ``awaitable`` unless the timeout elapses or ``cancel_event`` fires first."""
    task = asyncio.ensure_future(awaitable)
    waiters: set[asyncio.Future] = {task}
    cancel_waiter: asyncio.Future | None = None
    if cancel_event is not None:
        if cancel_event.is_set():
            task.cancel()
            raise ResearchAborted()
        cancel_waiter = asyncio.ensure_future(cancel_event.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            if not waiter.done():
                waiter.cancel()

    if task in done:
        return task.result()
    if cancel_waiter is not None and cancel_waiter in done:
        raise ResearchAborted()
    raise QueryTimeout(timeout_s)


async def _perplexity_call(model: str, query: str, system_prompt: str) -> httpx.Response:
    async with httpx.AsyncClient(timeout=None) as http:
        return await http.post(
            f"{settings.perplexity_base_url.rstrip('/')}/chat/completions",
            headers={
                "Authorization": f"Bearer {settings.pplx_api_key.strip()}",
                "Content-Type": "application/json",
            },
            json={
                "model": model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": query},
                ],
                "temperature": 0.1,
            },
        )


async def execute_perplexity_query(
    query: str,
    system_prompt: str,
    cancel_event: asyncio.Event | None = None,
    model: str | None = None,
) -> ResearchResult:
    if cancel_event is not None and cancel_event.is_set():
        raise ResearchAborted()

    selected = model or DEEP_RESEARCH_MODEL
    if selected not in PERPLEXITY_MODELS:
        raise ResearchError(
            ErrorCategory.VALIDATION_ERROR,
            f"Invalid Perplexity model: {selected}. Must be one of: {', '.join(PERPLEXITY_MODELS)}",
        )

    chain = list(dict.fromkeys([selected, DEEP_RESEARCH_MODEL]))
    last_error: ResearchError | None = None

    for model_to_try in chain:
        deep = DEEP_RESEARCH_MODEL in (model_to_try, selected)
        timeout_s = DEEP_RESEARCH_TIMEOUT_S if deep else STANDARD_TIMEOUT_S
        try:
            response = await run_bounded(
                _perplexity_call(model_to_try, query, system_prompt), timeout_s, cancel_event
            )
        except (ResearchAborted, ResearchError):
            raise
        except httpx.HTTPError as exc:
            last_error = ResearchError(
                ErrorCategory.NETWORK_ERROR,
                "Failed to connect to Perplexity API. Please check your network connection.",
                original_error=str(exc) or type(exc).__name__,
                retryable=True,
            )
            logger.warning(f"Perplexity transport error on {model_to_try}: {exc!r}")
            continue

        if response.status_code >= 400:
            status = response.status_code
            body = response.text[:200]
            if status in (400, 404):
                logger.info(f"Perplexity model {model_to_try} unavailable ({status}), trying next model")
                last_error = ResearchError(
                    ErrorCategory.NETWORK_ERROR,
                    "Research service temporarily unavailable. Please try again in a moment.",
                    original_error=f"Perplexity API error: {status} {body}",
                    retryable=False,
                    status=status,
                )
                continue
            if status == 401:
                raise ResearchError(
                    ErrorCategory.AUTH_ERROR,
                    "Perplexity API authentication failed. Please verify your PPLX_API_KEY is "
                    f"valid and has access to the '{model_to_try}' model.",
                    original_error=f"Perplexity API error: {status}",
                    retryable=False,
                    status=status,
                )
            raise ResearchError(
                ErrorCategory.API_ERROR if status >= 500 else ErrorCategory.NETWORK_ERROR,
                "Research service temporarily unavailable. Please try again in a moment.",
                original_error=f"Perplexity API error: {status} {body}",
                retryable=True,
                status=status,
            )

        try:
            payload = response.json()
            content = payload["choices"][0]["message"].get("content") or ""
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise ResearchError(
                ErrorCategory.API_ERROR,
                "Invalid response format from Perplexity API",
                original_error=str(exc),
                retryable=False,
            ) from exc

        if model_to_try != selected:
            logger.info(f"Using {model_to_try} ({selected} unavailable)")
        return ResearchResult(content=content, sources=citation_sources(content))

    raise last_error or ResearchError(
        ErrorCategory.API_ERROR,
        "Perplexity research models are not available. Please check your API access.",
        original_error="All Perplexity models failed",
        retryable=False,
    )


def _openai_error(exc: Exception) -> ResearchError:
    status = getattr(exc, "status_code", None)
    if isinstance(exc, openai.AuthenticationError) or status == 401:
        return ResearchError(
            ErrorCategory.AUTH_ERROR,
            "OpenAI API authentication failed. Please verify your OPENAI_API_KEY.",
            original_error=str(exc),
            retryable=False,
            status=401,
        )
    if isinstance(exc, (openai.APIConnectionError, openai.APITimeoutError)):
        return ResearchError(
            ErrorCategory.NETWORK_ERROR,
            "Failed to connect to OpenAI API. Please check your network connection.",
            original_error=str(exc),
            retryable=True,
        )
    return ResearchError(
        ErrorCategory.API_ERROR,
        "Research service temporarily unavailable. Please try again in a moment.",
        original_error=str(exc),
        retryable=status not in (400, 404),
        status=status,
    )


async def execute_openai_query(
    query: str,
    system_prompt: str,
    cancel_event: asyncio.Event | None = None,
) -> ResearchResult:
    if cancel_event is not None and cancel_event.is_set():
        raise ResearchAborted()

    last_error: ResearchError | None = None
    for model in OPENAI_MODELS:
        timeout_s = DEEP_RESEARCH_TIMEOUT_S if "deep-research" in model else STANDARD_TIMEOUT_S
        try:
            completion = await run_bounded(
                llm_client.client().chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": query},
                    ],
                    temperature=0.1,
                ),
                timeout_s,
                cancel_event,
            )
        except (ResearchAborted, ResearchError):
            raise
        except Exception as exc:
            error = _openai_error(exc)
            if error.status not in (400, 404):
                raise error from exc
            logger.warning(f"OpenAI research call failed on {model}: {exc!r}")
            last_error = error
            continue

        content = completion.choices[0].message.content or ""
        if model != OPENAI_MODELS[0]:
            logger.info(f"Using {model} ({OPENAI_MODELS[0]} unavailable)")
        return ResearchResult(content=content, sources=link_sources(content))

    raise last_error or ResearchError(
        ErrorCategory.API_ERROR,
        "OpenAI research models are not available. Please check your API access.",
        original_error="All OpenAI models failed",
        retryable=False,
    )


async def execute_research_query(
    query: str,
    query_name: str,
    cancel_event: asyncio.Event | None = None,
    system_prompt: str | None = None,
    model: str | None = None,
) -> ResearchResult:
    """Run one research query against the configured provider."""
    provider = get_research_provider()
    validate_api_keys(provider)
    prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
    logger.info(f"Research query '{query_name}' via {provider} (model={model or 'default'})")

    if provider == "openai":
        return await execute_openai_query(query, prompt, cancel_event)
    return await execute_perplexity_query(query, prompt, cancel_event, model=model)
