"""
Robust JSON extraction for LLM output.

LLM replies often wrap JSON in markdown fences, add commentary, or emit
trailing commas and unescaped quotes. Parsing order:
1. Pull the payload out of a ```json fence, or the outermost {...} / [...]
2. json.loads
3. json_repair.repair_json, then json.loads again

Anything that still fails raises MalformedOutput, which the retry loop treats
as its own retryable class.
"""

from __future__ import annotations

import json
import re
from typing import Any

from json_repair import repair_json
from loguru import logger

from deckforge.errors import MalformedOutput

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")
_ARRAY_PATTERN = re.compile(r"\[\s*\{[\s\S]*\}\s*\]")


def extract_json_payload(response: str) -> str | None:
    """Find the JSON text inside an LLM reply."""
    fenced = _FENCE_PATTERN.search(response)
    if fenced:
        return fenced.group(1).strip()

    match = _OBJECT_PATTERN.search(response) or _ARRAY_PATTERN.search(response)
    if match:
        return match.group(0)
    return None


def parse_llm_json(response: str, label: str = "llm") -> Any:
    """
    Parse an LLM reply into Python data.

    Args:
        response: Raw text returned by the model
        label: Context for log messages (stage name, module id)

    Returns:
        Parsed JSON value (dict or list)

    Raises:
        MalformedOutput: If no JSON can be recovered
    """
    if not response or not response.strip():
        raise MalformedOutput(f"{label}: empty response from LLM")

    payload = extract_json_payload(response)
    if payload is None:
        logger.warning(f"Could not find JSON in {label} response. Preview: {response[:200]}...")
        raise MalformedOutput(f"{label}: no JSON object found in LLM response")

    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        logger.debug(f"Standard JSON parse failed for {label}: {e}")
        original_error = e

    repaired = repair_json(payload)
    try:
        data = json.loads(repaired) if isinstance(repaired, str) else repaired
    except json.JSONDecodeError as repair_error:
        logger.error(
            f"JSON parse FAILED for {label} even after repair. "
            f"Original error: {original_error}. Repair error: {repair_error}. "
            f"JSON preview: {payload[:300]}..."
        )
        raise MalformedOutput(f"{label}: invalid JSON from LLM") from repair_error

    if not isinstance(data, (dict, list)) or not data:
        raise MalformedOutput(f"{label}: invalid JSON from LLM")

    logger.info(f"json_repair salvaged response for {label} (original error: {original_error})")
    return data
