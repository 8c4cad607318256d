"""Cooperative cancellation token polled at defined yield points."""

from __future__ import annotations

import asyncio

from deckforge.errors import CancellationError


class CancellationToken:
    """
    Cooperative cancellation flag.

    Work is never interrupted mid-call. Holders poll the token between module
    admissions and while sleeping between retries.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self.reason or "cancelled")

    async def sleep(self, seconds: float) -> None:
        """
        Sleep for `seconds`, waking early if the token fires.

        Raises:
            CancellationError: If the token is (or becomes) cancelled.
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise CancellationError(self.reason or "cancelled")
