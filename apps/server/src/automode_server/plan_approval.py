from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from automode_server.events import AUTO_MODE_CHANNEL, AutoModeEventType, EventEmitter
from automode_server.schemas import ApprovalResolution, ApprovalResult, PlanningMode


logger = logging.getLogger("automode.approval")


class PlanApprovalCancelledError(Exception):
    def __init__(self, feature_id: str, reason: str = "feature was stopped") -> None:
        super().__init__(f"plan approval cancelled for feature {feature_id}: {reason}")
        self.feature_id = feature_id
        self.reason = reason


class ApprovalConflictError(Exception):
    pass


@dataclass
class _PendingApproval:
    feature_id: str
    project_path: str
    future: asyncio.Future[ApprovalResult]


class PlanApprovalGate:
    """Parks a run until a human approves or rejects its generated plan.

    Each pending entry is a single-assignment future. ``resolve`` and ``cancel``
    pop the entry before settling it, so a decision is delivered at most once.
    """

    def __init__(self, events: EventEmitter) -> None:
        self._events = events
        self._pending: dict[str, _PendingApproval] = {}

    async def wait_for_approval(self, feature_id: str, project_path: str) -> ApprovalResult:
        if feature_id in self._pending:
            raise ApprovalConflictError(f"feature {feature_id} is already waiting for plan approval")

        future: asyncio.Future[ApprovalResult] = asyncio.get_running_loop().create_future()
        entry = _PendingApproval(feature_id=feature_id, project_path=project_path, future=future)
        self._pending[feature_id] = entry
        logger.debug("registered pending approval for %s (pending: %s)", feature_id, self.get_all_pending())
        try:
            return await future
        finally:
            if self._pending.get(feature_id) is entry:
                del self._pending[feature_id]

    def resolve(
        self,
        feature_id: str,
        approved: bool,
        edited_plan: str | None = None,
        feedback: str | None = None,
    ) -> ApprovalResolution:
        entry = self._pending.pop(feature_id, None)
        if entry is None or entry.future.done():
            logger.warning("no pending approval for feature %s", feature_id)
            return ApprovalResolution(success=False, error=f"No pending approval for feature {feature_id}")

        entry.future.set_result(ApprovalResult(approved=approved, edited_plan=edited_plan, feedback=feedback))
        logger.info(
            "plan %s for feature %s",
            "approved" if approved else "rejected",
            feature_id,
            extra={"extra_fields": {"feature_id": feature_id, "approved": approved}},
        )
        return ApprovalResolution(success=True, project_path=entry.project_path)

    def cancel(self, feature_id: str, reason: str = "feature was stopped") -> None:
        entry = self._pending.pop(feature_id, None)
        if entry is None:
            return
        if not entry.future.done():
            entry.future.set_exception(PlanApprovalCancelledError(feature_id, reason))
        logger.info("cancelled pending approval for feature %s: %s", feature_id, reason)

    def has_pending(self, feature_id: str) -> bool:
        return feature_id in self._pending

    def get_project_path(self, feature_id: str) -> str | None:
        entry = self._pending.get(feature_id)
        return entry.project_path if entry is not None else None

    def get_all_pending(self) -> list[str]:
        return list(self._pending)

    def emit_plan_event(
        self,
        event_type: AutoModeEventType,
        feature_id: str,
        project_path: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "type": event_type.value,
            "feature_id": feature_id,
            "project_path": project_path,
        }
        payload.update(data or {})
        self._events.emit(AUTO_MODE_CHANNEL, payload)

    def emit_approval_required(
        self,
        feature_id: str,
        project_path: str,
        plan_content: str,
        planning_mode: PlanningMode,
        plan_version: int,
    ) -> None:
        self.emit_plan_event(
            AutoModeEventType.PLAN_APPROVAL_REQUIRED,
            feature_id,
            project_path,
            {"plan_content": plan_content, "planning_mode": planning_mode.value, "plan_version": plan_version},
        )

    def emit_approved(self, feature_id: str, project_path: str, has_edits: bool, plan_version: int) -> None:
        self.emit_plan_event(
            AutoModeEventType.PLAN_APPROVED,
            feature_id,
            project_path,
            {"has_edits": has_edits, "plan_version": plan_version},
        )

    def emit_rejected(self, feature_id: str, project_path: str, feedback: str | None = None) -> None:
        self.emit_plan_event(AutoModeEventType.PLAN_REJECTED, feature_id, project_path, {"feedback": feedback})

    def emit_auto_approved(
        self,
        feature_id: str,
        project_path: str,
        plan_content: str,
        planning_mode: PlanningMode,
    ) -> None:
        self.emit_plan_event(
            AutoModeEventType.PLAN_AUTO_APPROVED,
            feature_id,
            project_path,
            {"plan_content": plan_content, "planning_mode": planning_mode.value},
        )

    def emit_revision_requested(
        self,
        feature_id: str,
        project_path: str,
        feedback: str | None,
        has_edits: bool,
        plan_version: int,
    ) -> None:
        self.emit_plan_event(
            AutoModeEventType.PLAN_REVISION_REQUESTED,
            feature_id,
            project_path,
            {"feedback": feedback, "has_edits": has_edits, "plan_version": plan_version},
        )
