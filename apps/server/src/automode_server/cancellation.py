from __future__ import annotations

import asyncio


class RunCancelledError(Exception):
    def __init__(self, reason: str = "run cancelled") -> None:
        super().__init__(reason)
        self.reason = reason


class CancellationToken:
    """One-shot cancellation flag shared by a run and everything it awaits."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "run cancelled") -> bool:
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self._reason or "run cancelled")
