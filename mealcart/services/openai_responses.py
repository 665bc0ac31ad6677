from __future__ import annotations

import logging
from typing import Any, Dict

import httpx
from openai import OpenAI

from ..config import get_settings
from ..errors import ClassifierError

logger = logging.getLogger(__name__)

RESPONSES_URL = "https://api.openai.com/v1/responses"


def call_openai_responses(
    *,
    model: str,
    system_prompt: str,
    user_prompt: str,
    max_output_tokens: int,
    top_p: float | None = None,
    reasoning_effort: str | None = None,
) -> str:
    """Call the OpenAI Responses API and return the combined text output.

    Blocking; callers on the event loop run it through `asyncio.to_thread`.
    Every failure surfaces as ClassifierError so callers can degrade per batch.
    """
    settings = get_settings()
    if not settings.openai_api_key:
        raise ClassifierError("OpenAI not configured")
    response_payload: Dict[str, Any] = {
        "model": model,
        "input": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "max_output_tokens": max_output_tokens,
    }
    if top_p is not None:
        response_payload["top_p"] = top_p
    if reasoning_effort:
        response_payload["reasoning"] = {"effort": reasoning_effort}

    client = OpenAI(
        api_key=settings.openai_api_key,
        timeout=settings.openai_request_timeout_seconds,
    )
    responses_client = getattr(client, "responses", None)
    if responses_client and hasattr(responses_client, "create"):
        try:
            response = responses_client.create(**response_payload)
        except Exception as exc:
            logger.error("OpenAI Responses API call failed: %s", exc)
            raise ClassifierError("Ingredient classifier call failed") from exc
        if getattr(response, "status", "completed") != "completed":
            reason = getattr(getattr(response, "incomplete_details", None), "reason", "unknown")
            logger.error("OpenAI Responses API returned incomplete status: %s", reason)
            raise ClassifierError(f"Ingredient classifier did not complete ({reason})")
        text = _extract_response_text(response)
        if not text:
            raise ClassifierError("Ingredient classifier returned empty output")
        return text

    logger.warning("OpenAI client missing Responses API; falling back to HTTP call")
    try:
        resp = httpx.post(
            RESPONSES_URL,
            json=response_payload,
            headers={
                "Authorization": f"Bearer {settings.openai_api_key}",
                "Content-Type": "application/json",
            },
            timeout=settings.openai_request_timeout_seconds,
        )
    except httpx.TimeoutException as exc:
        logger.error("HTTP timeout calling OpenAI Responses API after %ss", settings.openai_request_timeout_seconds)
        raise ClassifierError("Timed out waiting for the ingredient classifier") from exc
    except httpx.HTTPError as exc:  # pragma: no cover - network failure path
        logger.error("HTTP error calling OpenAI Responses API: %s", exc)
        raise ClassifierError("Unable to reach OpenAI") from exc

    if resp.status_code >= 400:
        logger.error("OpenAI Responses REST API returned %s: %s", resp.status_code, resp.text)
        raise ClassifierError(f"Ingredient classifier call failed with HTTP {resp.status_code}")

    text = _extract_response_text(resp.json())
    if not text:
        raise ClassifierError("Ingredient classifier returned empty output")
    return text


def _extract_response_text(response: Any) -> str:
    chunks: list[str] = []
    output = getattr(response, "output", None)
    if output is None and isinstance(response, dict):
        output = response.get("output")
    for block in output or []:
        block_content = getattr(block, "content", None)
        if block_content is None and isinstance(block, dict):
            block_content = block.get("content")
        for content in block_content or []:
            part_text = getattr(content, "text", None)
            if part_text is None and isinstance(content, dict):
                part_text = content.get("text")
            if part_text:
                chunks.append(part_text)
    return "".join(chunks).strip()
