from __future__ import annotations

"""
Gemini text-generation adapter with JSON output parsing.

Design intent:
- One call path (`generate_text`) for every analysis module.
- Tolerate markdown code fences and leading chatter around JSON objects.
- Fail closed with GeminiAdapterError so callers choose their own fallback.
"""

import json
import logging
import re
import time
from typing import Any

import google.generativeai as genai

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", flags=re.IGNORECASE)


class GeminiAdapterError(RuntimeError):
    """Raised when Gemini is not configured, fails, or returns unusable output."""


def generate_text(
    prompt: str,
    *,
    api_key: str,
    model_name: str,
    system_instruction: str | None = None,
    temperature: float | None = None,
    json_output: bool = True,
) -> str:
    if not str(api_key or "").strip():
        raise GeminiAdapterError("Gemini API key is not configured.")

    generation_config: dict[str, Any] = {}
    if temperature is not None:
        generation_config["temperature"] = temperature
    if json_output:
        generation_config["response_mime_type"] = "application/json"

    started = time.perf_counter()
    try:
        genai.configure(api_key=api_key)
        model = genai.GenerativeModel(
            model_name,
            system_instruction=system_instruction,
            generation_config=generation_config or None,
        )
        response = model.generate_content(prompt)
        text = response.text
    except Exception as exc:
        raise GeminiAdapterError(f"Gemini request failed: {exc}") from exc

    logger.info(
        "gemini_generate_ok model=%s chars=%s latency_ms=%.1f",
        model_name,
        len(text or ""),
        (time.perf_counter() - started) * 1000.0,
    )
    return text or ""


def strip_code_fences(text: str) -> str:
    raw = (text or "").strip()
    match = _FENCE_RE.search(raw)
    if match:
        return match.group(1).strip()
    return raw


def parse_json_object(raw: str) -> dict[str, Any] | None:
    cleaned = strip_code_fences(raw)
    if not cleaned:
        return None
    try:
        data = json.loads(cleaned)
        if isinstance(data, dict):
            return data
    except ValueError:
        pass

    extracted = _extract_first_json_object(cleaned)
    if not extracted:
        return None
    try:
        data = json.loads(extracted)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _extract_first_json_object(text: str) -> str:
    start = text.find("{")
    if start < 0:
        return ""
    depth = 0
    in_str = False
    escape = False
    for i, ch in enumerate(text[start:], start=start):
        if in_str:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return ""


def generate_json(prompt: str, **kwargs: Any) -> dict[str, Any]:
    raw = generate_text(prompt, **kwargs)
    data = parse_json_object(raw)
    if data is None:
        raise GeminiAdapterError("Gemini output is not valid JSON.")
    return data
