"""Thin blocking wrapper over the OpenAI Responses API for meal generation and photo estimates."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

import openai
from fastapi import HTTPException, status
from openai import OpenAI

from ..config import get_settings

logger = logging.getLogger(__name__)

TIMEOUT_DETAIL = "Timed out while waiting for the meal model. Please retry."


def openai_configured() -> bool:
    return bool(get_settings().openai_api_key)


def _upstream_error(detail: str, code: int = status.HTTP_502_BAD_GATEWAY) -> HTTPException:
    return HTTPException(status_code=code, detail=detail)


def build_request(
    *,
    model: str,
    system_prompt: str,
    user_prompt: str,
    max_output_tokens: int,
    top_p: Optional[float] = None,
    reasoning_effort: Optional[str] = None,
) -> Dict[str, Any]:
    request: Dict[str, Any] = {
        "model": model,
        "input": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "max_output_tokens": max_output_tokens,
    }
    if top_p is not None:
        request["top_p"] = top_p
    if reasoning_effort:
        request["reasoning"] = {"effort": reasoning_effort}
    return request


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_text(response: Any) -> str:
    """Concatenate every text part of every output block."""
    parts = []
    blocks: Iterable[Any] = _field(response, "output") or []
    for block in blocks:
        for content in _field(block, "content") or []:
            text = _field(content, "text")
            if text:
                parts.append(text)
    return "".join(parts).strip()


def call_openai_responses(
    *,
    model: str,
    system_prompt: str,
    user_prompt: str,
    max_output_tokens: int,
    top_p: Optional[float] = None,
    reasoning_effort: Optional[str] = None,
) -> str:
    """Return the model's text output, mapping upstream failures to 502/503/504.

    Blocking; async callers run it through ``asyncio.to_thread``.
    """
    settings = get_settings()
    if not settings.openai_api_key:
        raise _upstream_error("OpenAI not configured", status.HTTP_503_SERVICE_UNAVAILABLE)
    if settings.openai_allowed_models and model not in settings.openai_allowed_models:
        logger.error("Model %s is not in OPENAI_ALLOWED_MODELS", model)
        raise _upstream_error("Requested model is not enabled", status.HTTP_503_SERVICE_UNAVAILABLE)

    client = OpenAI(api_key=settings.openai_api_key, timeout=settings.openai_request_timeout_seconds)
    request = build_request(
        model=model,
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        max_output_tokens=max_output_tokens,
        top_p=top_p,
        reasoning_effort=reasoning_effort,
    )
    try:
        response = client.responses.create(**request)
    except openai.APITimeoutError as exc:
        logger.error("Meal model %s timed out after %ss", model, settings.openai_request_timeout_seconds)
        raise _upstream_error(TIMEOUT_DETAIL, status.HTTP_504_GATEWAY_TIMEOUT) from exc
    except openai.APIError as exc:
        logger.error("Meal model %s call failed: %s", model, exc)
        raise _upstream_error("Meal model call failed") from exc

    if (_field(response, "status") or "completed") != "completed":
        reason = _field(_field(response, "incomplete_details"), "reason") or "unknown"
        logger.error("Meal model %s returned incomplete output: %s", model, reason)
        raise _upstream_error("Meal model did not complete successfully")
    text = extract_text(response)
    if not text:
        raise _upstream_error("Meal model returned empty output")
    return text
