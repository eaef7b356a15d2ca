from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable

import httpx


logger = logging.getLogger("automode.events")

AUTO_MODE_CHANNEL = "auto-mode:event"

EventCallback = Callable[[str, dict[str, Any]], Any]


class AutoModeEventType(str, Enum):
    STARTED = "auto_mode_started"
    STOPPED = "auto_mode_stopped"
    IDLE = "auto_mode_idle"
    FEATURE_START = "auto_mode_feature_start"
    FEATURE_COMPLETE = "auto_mode_feature_complete"
    FEATURE_CANCELLED = "auto_mode_feature_cancelled"
    PROGRESS = "auto_mode_progress"
    TOOL = "auto_mode_tool"
    ERROR = "auto_mode_error"
    TASK_STARTED = "auto_mode_task_started"
    TASK_COMPLETE = "auto_mode_task_complete"
    TASK_FAILED = "auto_mode_task_failed"
    PHASE_COMPLETE = "auto_mode_phase_complete"
    PLANNING_STARTED = "planning_started"
    PLAN_APPROVAL_REQUIRED = "plan_approval_required"
    PLAN_APPROVED = "plan_approved"
    PLAN_REJECTED = "plan_rejected"
    PLAN_AUTO_APPROVED = "plan_auto_approved"
    PLAN_REVISION_REQUESTED = "plan_revision_requested"


class EventEmitter:
    """Fire-and-forget fan-out; a failing subscriber never reaches the emitter."""

    def __init__(self) -> None:
        self._subscribers: list[EventCallback] = []
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, channel: str, payload: dict[str, Any]) -> None:
        for callback in list(self._subscribers):
            try:
                outcome = callback(channel, payload)
            except Exception:  # noqa: BLE001
                logger.exception("event subscriber failed for %s", payload.get("type"))
                continue
            if inspect.isawaitable(outcome):
                self._schedule(outcome, payload)

    def emit_auto_mode(self, event_type: AutoModeEventType, feature_id: str | None = None, **data: Any) -> None:
        payload: dict[str, Any] = {"type": event_type.value}
        if feature_id is not None:
            payload["feature_id"] = feature_id
        payload.update(data)
        self.emit(AUTO_MODE_CHANNEL, payload)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, awaitable: Any, payload: dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("no running loop for async subscriber, dropping %s", payload.get("type"))
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("async event subscriber failed: %s", error)


class WebhookEventForwarder:
    def __init__(
        self,
        url: str,
        token: str | None = None,
        *,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._timeout_seconds = timeout_seconds
        self._client = client

    async def __call__(self, channel: str, payload: dict[str, Any]) -> None:
        headers: dict[str, str] = {}
        if self._token:
            headers["X-Automode-Token"] = self._token
        body = {"channel": channel, "payload": payload}
        try:
            if self._client is not None:
                response = await self._client.post(self._url, json=body, headers=headers, timeout=self._timeout_seconds)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self._url, json=body, headers=headers, timeout=self._timeout_seconds)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("event webhook delivery failed for %s: %s", payload.get("type"), exc)
