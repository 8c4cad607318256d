"""
Unit tests for the LLM client wrappers.
"""

import asyncio

import pytest

from deckforge.llm.client import BoundedLLMClient, LLMClient, LLMResponse, ScriptedLLMClient


class GatedLLMClient(LLMClient):
    """Holds every call until the gate opens and records peak concurrency."""

    name = "gated"
    model = "gated-1"

    def __init__(self):
        self.gate = asyncio.Event()
        self.active = 0
        self.peak = 0
        self.started = 0

    async def complete(self, prompt, **kwargs):
        self.active += 1
        self.started += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.gate.wait()
            return LLMResponse(text=f"echo {prompt}", model=self.model)
        finally:
            self.active -= 1


class TestBoundedLLMClient:
    @pytest.mark.asyncio
    async def test_caps_concurrent_calls(self):
        inner = GatedLLMClient()
        client = BoundedLLMClient(inner, max_in_flight=2)

        calls = [asyncio.create_task(client.complete(f"p{i}")) for i in range(6)]
        for _ in range(5):
            await asyncio.sleep(0)

        assert inner.started == 2
        assert client.in_flight == 2

        inner.gate.set()
        responses = await asyncio.gather(*calls)

        assert inner.peak == 2
        assert inner.started == 6
        assert client.in_flight == 0
        assert sorted(r.text for r in responses) == [f"echo p{i}" for i in range(6)]

    @pytest.mark.asyncio
    async def test_releases_slot_on_error(self):
        inner = ScriptedLLMClient([RuntimeError("upstream down"), "ok"])
        client = BoundedLLMClient(inner, max_in_flight=1)

        with pytest.raises(RuntimeError):
            await client.complete("first")
        response = await client.complete("second")

        assert response.text == "ok"
        assert client.in_flight == 0

    def test_mirrors_inner_identity(self):
        client = BoundedLLMClient(GatedLLMClient(), max_in_flight=3)
        assert (client.name, client.model) == ("gated", "gated-1")
