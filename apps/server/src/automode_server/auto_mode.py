from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from automode_server.cancellation import CancellationToken, RunCancelledError
from automode_server.config import AutoModeSettings
from automode_server.error_classifier import classify_error, get_user_friendly_error_message
from automode_server.events import AutoModeEventType, EventEmitter
from automode_server.git_commit import commit_all, short_hash
from automode_server.plan_approval import PlanApprovalCancelledError, PlanApprovalGate
from automode_server.planning import (
    build_continuation_prompt,
    build_feature_prompt,
    build_revision_prompt,
    extract_plan_content,
    extract_summary,
    extract_title_from_description,
    get_planning_mode_display_name,
    get_planning_prompt_prefix,
    parse_tasks_from_spec,
    requires_plan_phase,
)
from automode_server.provider import ExecuteOptions, Provider
from automode_server.schemas import (
    ApprovalResolution,
    AutoModeStatus,
    ErrorInfo,
    Feature,
    FeatureStatus,
    PlanSpec,
    PlanSpecStatus,
    RunningFeatureRead,
    TaskProgress,
    TaskProgressStatus,
    TaskStatus,
    normalize_project_path,
)
from automode_server.store import ConflictError, InMemoryFeatureStore, NotFoundError, ValidationError
from automode_server.stream_processor import StreamHandlers, process_stream
from automode_server.task_executor import (
    TaskExecutionContext,
    TaskExecutionOutcome,
    TaskExecutor,
    summarize_task_output,
)
from automode_server.worktree import CommandRunner, SubprocessCommandRunner, WorktreeResolver


logger = logging.getLogger("automode.scheduler")


class _TaskRunFailedError(Exception):
    def __init__(self, info: ErrorInfo) -> None:
        super().__init__(info.message)
        self.info = info


@dataclass
class RunningFeature:
    feature_id: str
    project_path: str
    cancellation_token: CancellationToken
    is_auto_mode: bool
    start_time: float
    worktree_path: str | None = None
    branch_name: str | None = None
    requeue_on_cancel: bool = False
    finalized: bool = False
    stopping: bool = False
    task: asyncio.Task[None] | None = None

    def to_read(self) -> RunningFeatureRead:
        return RunningFeatureRead(
            feature_id=self.feature_id,
            project_path=self.project_path,
            worktree_path=self.worktree_path,
            branch_name=self.branch_name,
            is_auto_mode=self.is_auto_mode,
            start_time=self.start_time,
            stopping=self.stopping,
        )


@dataclass
class AutoLoopState:
    project_path: str
    max_concurrency: int
    slot_freed: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    idle_emitted: bool = False


class AutoModeService:
    """Schedules feature runs per project and drives each run through plan, approval and execution.

    All state lives on one event loop. Admission into ``_running`` happens
    synchronously, without an ``await`` between the ceiling check and the
    insert, so concurrent callers can never push a project over its limit.
    """

    def __init__(
        self,
        events: EventEmitter,
        store: InMemoryFeatureStore,
        provider: Provider,
        approvals: PlanApprovalGate | None = None,
        worktrees: WorktreeResolver | None = None,
        settings: AutoModeSettings | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self._events = events
        self._store = store
        self._provider = provider
        self._settings = settings or AutoModeSettings()
        self._runner = runner or SubprocessCommandRunner(self._settings.command_timeout_seconds)
        self._approvals = approvals or PlanApprovalGate(events)
        self._worktrees = worktrees or WorktreeResolver(self._runner)
        self._executor = TaskExecutor(provider, events)
        self._running: dict[str, RunningFeature] = {}
        self._loops: dict[str, AutoLoopState] = {}
        self._queued_feedback: dict[str, str | None] = {}

    @property
    def approvals(self) -> PlanApprovalGate:
        return self._approvals

    async def start_auto_loop(self, project_path: str, max_concurrency: int | None = None) -> AutoModeStatus:
        root = normalize_project_path(project_path)
        existing = self._loops.get(root)
        if existing is not None and existing.task is not None and not existing.task.done():
            raise ConflictError(f"auto mode is already running for {root}")

        limit = max_concurrency if max_concurrency is not None else self._settings.max_concurrency
        if limit < 1:
            raise ValidationError("max_concurrency must be at least 1")

        state = AutoLoopState(project_path=root, max_concurrency=limit)
        self._loops[root] = state
        self._events.emit_auto_mode(
            AutoModeEventType.STARTED,
            project_path=root,
            max_concurrency=limit,
            message=f"Auto mode started with max concurrency {limit}",
        )
        logger.info("auto loop started for %s (max concurrency %s)", root, limit)
        state.task = asyncio.create_task(self._run_loop(state))
        return self.get_status(root)

    async def stop_auto_loop(self, project_path: str | None = None) -> int:
        root = normalize_project_path(project_path) if project_path else None
        loops = [state for key, state in self._loops.items() if root is None or key == root]
        for state in loops:
            if state.task is not None:
                state.task.cancel()
        loop_tasks = [state.task for state in loops if state.task is not None]
        if loop_tasks:
            await asyncio.gather(*loop_tasks, return_exceptions=True)

        runs = [run for run in self._running.values() if root is None or run.project_path == root]
        for run in runs:
            self._cancel_run(run, "auto mode stopped", requeue=True)
        await self._await_runs(runs)

        for state in loops:
            if self._loops.get(state.project_path) is state:
                del self._loops[state.project_path]
            cancelled = sum(1 for run in runs if run.project_path == state.project_path)
            self._events.emit_auto_mode(
                AutoModeEventType.STOPPED,
                project_path=state.project_path,
                running_count=cancelled,
                message="Auto mode stopped",
            )
            logger.info("auto loop stopped for %s, cancelled %s runs", state.project_path, cancelled)
        return len(runs)

    def get_status(self, project_path: str | None = None) -> AutoModeStatus:
        root = normalize_project_path(project_path) if project_path else None
        runs = [run for run in self._running.values() if root is None or run.project_path == root]
        loops = [state for key, state in self._loops.items() if root is None or key == root]
        return AutoModeStatus(
            running_features=[run.feature_id for run in runs],
            is_running=any(state.task is not None and not state.task.done() for state in loops),
            running_count=len(runs),
            runs=[run.to_read() for run in runs],
        )

    async def execute_feature(
        self,
        project_path: str,
        feature_id: str,
        use_worktrees: bool | None = None,
        is_auto_mode: bool = False,
    ) -> RunningFeature:
        """Start one feature outside the auto loop; the run continues in the background."""
        feature = self._store.get_feature(feature_id)
        if feature.project_path != normalize_project_path(project_path):
            raise ValidationError(f"feature {feature_id} does not belong to {project_path}")
        if feature_id in self._running:
            raise ConflictError(f"feature {feature_id} is already running")
        return self._start_run(feature, is_auto_mode=is_auto_mode, use_worktrees=use_worktrees)

    async def stop_feature(self, feature_id: str) -> bool:
        run = self._running.get(feature_id)
        if run is None:
            self._approvals.cancel(feature_id, "feature was stopped")
            return False
        self._cancel_run(run, "feature was stopped", requeue=False)
        await self._await_runs([run])
        return True

    async def resolve_plan_approval(
        self,
        feature_id: str,
        approved: bool,
        edited_plan: str | None = None,
        feedback: str | None = None,
        project_path: str | None = None,
    ) -> ApprovalResolution:
        resolution = self._approvals.resolve(feature_id, approved, edited_plan, feedback)
        if resolution.success:
            return resolution
        return self._recover_plan_approval(feature_id, approved, edited_plan, feedback, project_path, resolution)

    def cancel_plan_approval(self, feature_id: str) -> None:
        self._approvals.cancel(feature_id, "plan approval cancelled")

    def has_pending_approval(self, feature_id: str) -> bool:
        return self._approvals.has_pending(feature_id)

    def get_pending_approvals(self) -> list[str]:
        return self._approvals.get_all_pending()

    async def wait_for_idle(self) -> None:
        while True:
            tasks = [run.task for run in self._running.values() if run.task is not None and not run.task.done()]
            if not tasks:
                break
            await asyncio.wait(tasks)
        await self._events.drain()

    async def shutdown(self) -> None:
        await self.stop_auto_loop()
        await self._events.drain()

    async def _run_loop(self, state: AutoLoopState) -> None:
        while True:
            state.slot_freed.clear()
            admitted = self._admit_pending(state)
            if admitted:
                state.idle_emitted = False
            elif self._running_count(state.project_path) == 0 and not state.idle_emitted:
                state.idle_emitted = True
                self._events.emit_auto_mode(
                    AutoModeEventType.IDLE,
                    project_path=state.project_path,
                    message="No pending features - auto mode idle",
                )
            try:
                await asyncio.wait_for(state.slot_freed.wait(), timeout=self._settings.poll_interval_seconds)
            except asyncio.TimeoutError:
                continue

    def _admit_pending(self, state: AutoLoopState) -> int:
        admitted = 0
        for feature in self._store.load_pending_features(state.project_path):
            if self._running_count(state.project_path) >= state.max_concurrency:
                break
            if feature.id in self._running:
                continue
            plan = feature.plan_spec
            if plan is not None and plan.status == PlanSpecStatus.APPROVED:
                self._start_run(
                    feature,
                    is_auto_mode=True,
                    approved_plan=plan,
                    feedback=self._queued_feedback.pop(feature.id, None),
                )
            else:
                self._start_run(feature, is_auto_mode=True)
            admitted += 1
        return admitted

    def _start_run(
        self,
        feature: Feature,
        *,
        is_auto_mode: bool,
        use_worktrees: bool | None = None,
        approved_plan: PlanSpec | None = None,
        feedback: str | None = None,
    ) -> RunningFeature:
        run = RunningFeature(
            feature_id=feature.id,
            project_path=feature.project_path,
            cancellation_token=CancellationToken(),
            is_auto_mode=is_auto_mode,
            start_time=time.time(),
            branch_name=feature.branch_name,
        )
        self._register_run(run)
        self._store.update_status(feature.id, FeatureStatus.IN_PROGRESS)
        worktrees = self._settings.use_worktrees if use_worktrees is None else use_worktrees
        run.task = asyncio.create_task(self._run_feature(run, feature, worktrees, approved_plan, feedback))
        return run

    def _register_run(self, run: RunningFeature) -> None:
        if run.feature_id in self._running:
            raise ConflictError(f"feature {run.feature_id} is already running")
        self._running[run.feature_id] = run

    def _release_run(self, run: RunningFeature) -> None:
        if self._running.get(run.feature_id) is not run:
            return
        del self._running[run.feature_id]
        state = self._loops.get(run.project_path)
        if state is not None:
            state.slot_freed.set()

    def _running_count(self, project_path: str) -> int:
        return sum(1 for run in self._running.values() if run.project_path == project_path)

    def _at_capacity(self, project_path: str) -> bool:
        state = self._loops.get(project_path)
        if state is None or state.task is None or state.task.done():
            return False
        return self._running_count(project_path) >= state.max_concurrency

    def _cancel_run(self, run: RunningFeature, reason: str, *, requeue: bool) -> None:
        run.requeue_on_cancel = requeue
        self._approvals.cancel(run.feature_id, reason)
        run.cancellation_token.cancel(reason)
        if run.task is not None and not run.task.done():
            run.task.cancel()

    async def _await_runs(self, runs: list[RunningFeature]) -> None:
        tasks = [run.task for run in runs if run.task is not None and not run.task.done()]
        if tasks:
            _, still_running = await asyncio.wait(tasks, timeout=self._settings.shutdown_grace_seconds)
            if still_running:
                logger.warning("%s runs did not finish within the shutdown grace period", len(still_running))
        for run in runs:
            if run.task is not None and not run.task.done():
                # still unwinding; its own finally releases and finalizes it
                run.stopping = True
                continue
            if not run.finalized:
                # cancelled before its first step
                run.finalized = True
                event_type, data = self._on_cancelled(run, run.cancellation_token.reason or "run cancelled")
                self._release_run(run)
                self._emit(event_type, run, **data)
            else:
                self._release_run(run)

    async def _run_feature(
        self,
        run: RunningFeature,
        feature: Feature,
        use_worktrees: bool,
        approved_plan: PlanSpec | None,
        feedback: str | None,
    ) -> None:
        token = run.cancellation_token
        final_event: tuple[AutoModeEventType, dict[str, Any]] | None = None
        try:
            self._emit(
                AutoModeEventType.FEATURE_START,
                run,
                feature={
                    "id": feature.id,
                    "title": feature.title or extract_title_from_description(feature.description),
                    "description": feature.description,
                },
                is_auto_mode=run.is_auto_mode,
            )
            work = await self._worktrees.resolve_work_dir(run.project_path, feature.branch_name, use_worktrees)
            run.worktree_path = work.worktree_path
            token.raise_if_cancelled()
            model = feature.model or self._settings.default_model

            if approved_plan is not None:
                output = await self._execute_plan(run, feature, approved_plan, feedback, work.work_dir, model)
            elif requires_plan_phase(feature.planning_mode, feature.require_plan_approval):
                planned = await self._plan_phase(run, feature, work.work_dir, model)
                if planned is None:
                    final_event = (
                        AutoModeEventType.FEATURE_COMPLETE,
                        {"passes": False, "message": "Plan rejected, feature moved to backlog"},
                    )
                    return
                plan, plan_feedback = planned
                output = await self._execute_plan(run, feature, plan, plan_feedback, work.work_dir, model)
            else:
                prefix = get_planning_prompt_prefix(feature.planning_mode, feature.require_plan_approval)
                output = await self._run_prompt(run, prefix + build_feature_prompt(feature), work.work_dir, model, feature)

            commit_hash = None
            if self._settings.auto_commit:
                title = feature.title or extract_title_from_description(feature.description)
                commit_hash = await commit_all(self._runner, work.work_dir, f"feat: {title}")
            summary = extract_summary(output) or summarize_task_output(output) or None
            self._store.update_status(feature.id, FeatureStatus.VERIFIED, summary=summary)
            message = "Feature implemented"
            if commit_hash:
                message += f" (commit {short_hash(commit_hash)})"
            final_event = (
                AutoModeEventType.FEATURE_COMPLETE,
                {"passes": True, "message": message, "commit_hash": commit_hash},
            )
        except (RunCancelledError, PlanApprovalCancelledError) as exc:
            final_event = self._on_cancelled(run, str(exc))
        except asyncio.CancelledError:
            final_event = self._on_cancelled(run, token.reason or "run cancelled")
            raise
        except Exception as exc:
            info = exc.info if isinstance(exc, _TaskRunFailedError) else classify_error(exc)
            logger.error(
                "feature %s failed: %s",
                feature.id,
                info.message,
                extra={"extra_fields": {"feature_id": feature.id, "error_type": info.type.value}},
            )
            self._store.update_status(feature.id, FeatureStatus.FAILED, error=info.message)
            final_event = (
                AutoModeEventType.ERROR,
                {
                    "error": get_user_friendly_error_message(info),
                    "error_type": info.type.value,
                    "is_rate_limit": info.is_rate_limit,
                    "retry_after": info.retry_after,
                },
            )
        finally:
            self._approvals.cancel(feature.id, "run finished")
            self._release_run(run)
            if final_event is not None and not run.finalized:
                run.finalized = True
                event_type, data = final_event
                self._emit(event_type, run, **data)

    def _on_cancelled(self, run: RunningFeature, reason: str) -> tuple[AutoModeEventType, dict[str, Any]]:
        status = FeatureStatus.PENDING if run.requeue_on_cancel else FeatureStatus.BACKLOG
        self._store.update_status(run.feature_id, status)
        logger.info("feature %s cancelled: %s", run.feature_id, reason)
        return AutoModeEventType.FEATURE_CANCELLED, {"reason": reason, "message": "Feature execution cancelled"}

    async def _plan_phase(
        self,
        run: RunningFeature,
        feature: Feature,
        work_dir: str,
        model: str,
    ) -> tuple[PlanSpec, str | None] | None:
        """Generate a plan and, when required, loop through approval and revisions.

        Returns the approved plan with any reviewer feedback, or None when the
        reviewer rejected it outright.
        """
        self._emit(
            AutoModeEventType.PLANNING_STARTED,
            run,
            mode=feature.planning_mode.value,
            message=f"Starting {get_planning_mode_display_name(feature.planning_mode)}",
        )
        prefix = get_planning_prompt_prefix(feature.planning_mode, feature.require_plan_approval)
        prompt = prefix + build_feature_prompt(feature)
        version = feature.plan_spec.version if feature.plan_spec is not None else 0

        while True:
            self._store.save_plan_spec(feature.id, PlanSpec(status=PlanSpecStatus.GENERATING, version=version))
            output = await self._run_prompt(run, prompt, work_dir, model, feature)
            content = extract_plan_content(output)
            version += 1
            tasks = parse_tasks_from_spec(content)
            plan = PlanSpec(
                status=PlanSpecStatus.GENERATED,
                content=content,
                version=version,
                generated_at=_utc_now(),
                tasks=tasks,
                tasks_total=len(tasks),
            )
            self._store.save_plan_spec(feature.id, plan)

            if not feature.require_plan_approval:
                plan = plan.model_copy(update={"status": PlanSpecStatus.APPROVED, "approved_at": _utc_now()})
                self._store.save_plan_spec(feature.id, plan)
                self._approvals.emit_auto_approved(feature.id, run.project_path, content, feature.planning_mode)
                return plan, None

            self._store.update_status(feature.id, FeatureStatus.WAITING_APPROVAL)
            self._approvals.emit_approval_required(feature.id, run.project_path, content, feature.planning_mode, version)
            decision = await self._approvals.wait_for_approval(feature.id, run.project_path)
            self._store.update_feature(feature.id, status=FeatureStatus.IN_PROGRESS)

            if decision.approved:
                plan = _approve_plan(plan, decision.edited_plan)
                self._store.save_plan_spec(feature.id, plan)
                self._approvals.emit_approved(feature.id, run.project_path, bool(decision.edited_plan), version)
                return plan, decision.feedback

            if not decision.feedback and not decision.edited_plan:
                rejected = plan.model_copy(update={"status": PlanSpecStatus.REJECTED, "reviewed_by_user": True})
                self._store.save_plan_spec(feature.id, rejected)
                self._store.update_status(feature.id, FeatureStatus.BACKLOG)
                self._approvals.emit_rejected(feature.id, run.project_path)
                return None

            self._approvals.emit_revision_requested(
                feature.id,
                run.project_path,
                decision.feedback,
                bool(decision.edited_plan),
                version,
            )
            prompt = build_revision_prompt(feature, content, decision.feedback, decision.edited_plan)

    async def _execute_plan(
        self,
        run: RunningFeature,
        feature: Feature,
        plan: PlanSpec,
        feedback: str | None,
        work_dir: str,
        model: str,
    ) -> str:
        plan_content = plan.content or ""
        if not plan.tasks:
            return await self._run_prompt(
                run,
                build_continuation_prompt(feature, plan_content, feedback),
                work_dir,
                model,
                feature,
            )

        def on_progress(progress: TaskProgress) -> None:
            if progress.status == TaskProgressStatus.STARTED:
                plan.current_task_id = progress.task_id
            plan.tasks_completed = sum(1 for task in plan.tasks if task.status == TaskStatus.COMPLETED)
            self._store.save_plan_spec(feature.id, plan)

        result = await self._executor.execute_tasks(
            plan.tasks,
            TaskExecutionContext(
                feature_id=feature.id,
                project_path=run.project_path,
                work_dir=work_dir,
                model=model,
                plan_content=plan_content,
                cancellation_token=run.cancellation_token,
                user_feedback=feedback,
                max_turns=self._settings.max_turns,
                thinking_level=feature.thinking_level,
            ),
            on_progress,
        )
        plan.current_task_id = None
        self._store.save_plan_spec(feature.id, plan)
        if result.outcome == TaskExecutionOutcome.CANCELLED:
            raise RunCancelledError(result.error or "run cancelled")
        if result.outcome == TaskExecutionOutcome.FAILED:
            info = result.error_info or classify_error(RuntimeError(result.error or "task failed"))
            raise _TaskRunFailedError(info)
        return result.output

    async def _run_prompt(self, run: RunningFeature, prompt: str, work_dir: str, model: str, feature: Feature) -> str:
        token = run.cancellation_token
        result = await process_stream(
            self._provider.execute_query(
                ExecuteOptions(
                    prompt=prompt,
                    model=model,
                    cwd=work_dir,
                    max_turns=self._settings.max_turns,
                    cancellation_token=token,
                    thinking_level=feature.thinking_level,
                )
            ),
            StreamHandlers(
                on_text=lambda text: self._emit(AutoModeEventType.PROGRESS, run, content=text),
                on_tool_use=lambda name, tool_input: self._emit(AutoModeEventType.TOOL, run, tool=name, input=tool_input),
            ),
            cancellation_token=token,
        )
        return result.text

    def _recover_plan_approval(
        self,
        feature_id: str,
        approved: bool,
        edited_plan: str | None,
        feedback: str | None,
        project_path: str | None,
        failure: ApprovalResolution,
    ) -> ApprovalResolution:
        try:
            feature = self._store.get_feature(feature_id)
        except NotFoundError:
            return failure
        if project_path and normalize_project_path(project_path) != feature.project_path:
            return failure
        plan = feature.plan_spec
        if feature.status != FeatureStatus.WAITING_APPROVAL or feature_id in self._running:
            return failure
        if plan is None or plan.status != PlanSpecStatus.GENERATED:
            return failure

        logger.info("recovering plan approval for %s from stored plan", feature_id)
        if approved:
            plan = _approve_plan(plan, edited_plan)
            self._store.save_plan_spec(feature_id, plan)
            self._approvals.emit_approved(feature_id, feature.project_path, bool(edited_plan), plan.version)
            if self._at_capacity(feature.project_path):
                # the loop admits it with the approved plan once a slot frees
                self._queued_feedback[feature_id] = feedback
                self._store.update_status(feature_id, FeatureStatus.PENDING)
            else:
                self._start_run(feature, is_auto_mode=False, approved_plan=plan, feedback=feedback)
        else:
            rejected = plan.model_copy(update={"status": PlanSpecStatus.REJECTED, "reviewed_by_user": True})
            self._store.save_plan_spec(feature_id, rejected)
            self._store.update_status(feature_id, FeatureStatus.BACKLOG)
            self._approvals.emit_rejected(feature_id, feature.project_path, feedback)
        return ApprovalResolution(success=True, project_path=feature.project_path)

    def _emit(self, event_type: AutoModeEventType, run: RunningFeature, **data: Any) -> None:
        self._events.emit_auto_mode(event_type, run.feature_id, project_path=run.project_path, **data)


def _approve_plan(plan: PlanSpec, edited_plan: str | None) -> PlanSpec:
    content = edited_plan or plan.content
    tasks = parse_tasks_from_spec(edited_plan) if edited_plan else plan.tasks
    return plan.model_copy(
        update={
            "status": PlanSpecStatus.APPROVED,
            "content": content,
            "approved_at": _utc_now(),
            "reviewed_by_user": True,
            "tasks": tasks,
            "tasks_total": len(tasks),
        },
        deep=True,
    )


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
