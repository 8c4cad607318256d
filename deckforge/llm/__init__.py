"""LLM capability: provider clients and JSON recovery for model output."""

from __future__ import annotations

from deckforge.llm.client import (
    BoundedLLMClient,
    GeminiClient,
    LLMClient,
    LLMResponse,
    OpenRouterClient,
    ScriptedLLMClient,
    estimate_tokens,
    get_llm_client,
)
from deckforge.llm.json_parsing import extract_json_payload, parse_llm_json

__all__ = [
    "BoundedLLMClient",
    "GeminiClient",
    "LLMClient",
    "LLMResponse",
    "OpenRouterClient",
    "ScriptedLLMClient",
    "estimate_tokens",
    "get_llm_client",
    "extract_json_payload",
    "parse_llm_json",
]
