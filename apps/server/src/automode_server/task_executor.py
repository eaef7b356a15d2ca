from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from automode_server.cancellation import CancellationToken, RunCancelledError
from automode_server.error_classifier import classify_error
from automode_server.events import AutoModeEventType, EventEmitter
from automode_server.planning import TASK_COMPLETE_MARKER, build_task_prompt, get_phase_number
from automode_server.provider import ExecuteOptions, Provider
from automode_server.schemas import ErrorInfo, ParsedTask, TaskProgress, TaskProgressStatus, TaskStatus
from automode_server.stream_processor import StreamHandlers, process_stream


logger = logging.getLogger("automode.executor")

_SUMMARY_LIMIT = 500

ProgressCallback = Callable[[TaskProgress], Awaitable[None] | None]


class TaskExecutionOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TaskExecutionContext:
    feature_id: str
    project_path: str
    work_dir: str
    model: str
    plan_content: str
    cancellation_token: CancellationToken
    user_feedback: str | None = None
    max_turns: int = 50
    thinking_level: str | None = None


@dataclass
class TaskExecutionResult:
    outcome: TaskExecutionOutcome
    tasks_completed: int
    failed_task_id: str | None = None
    error: str | None = None
    error_info: ErrorInfo | None = None
    output: str = ""


class TaskExecutor:
    def __init__(self, provider: Provider, events: EventEmitter) -> None:
        self._provider = provider
        self._events = events

    async def execute_tasks(
        self,
        tasks: list[ParsedTask],
        context: TaskExecutionContext,
        on_progress: ProgressCallback | None = None,
    ) -> TaskExecutionResult:
        """Run parsed plan tasks one after another, stopping at the first failure.

        Task statuses are updated in place so the caller can persist them from
        ``on_progress``.
        """
        outputs: list[str] = []
        completed = 0
        total = len(tasks)
        phase_ordinal = 0

        for index, task in enumerate(tasks):
            if context.cancellation_token.is_cancelled:
                return TaskExecutionResult(
                    outcome=TaskExecutionOutcome.CANCELLED,
                    tasks_completed=completed,
                    error=context.cancellation_token.reason,
                    output="".join(outputs),
                )

            task.status = TaskStatus.IN_PROGRESS
            await self._report(
                on_progress,
                TaskProgress(task_id=task.id, task_index=index, tasks_total=total, status=TaskProgressStatus.STARTED),
            )
            self._emit(
                AutoModeEventType.TASK_STARTED,
                context,
                task_id=task.id,
                task_description=task.description,
                task_index=index,
                tasks_total=total,
            )

            prompt = build_task_prompt(task, tasks, index, context.plan_content, context.user_feedback)
            try:
                result = await process_stream(
                    self._provider.execute_query(
                        ExecuteOptions(
                            prompt=prompt,
                            model=context.model,
                            cwd=context.work_dir,
                            max_turns=context.max_turns,
                            cancellation_token=context.cancellation_token,
                            thinking_level=context.thinking_level,
                        )
                    ),
                    self._stream_handlers(context),
                    cancellation_token=context.cancellation_token,
                )
            except RunCancelledError as exc:
                task.status = TaskStatus.PENDING
                logger.info("task %s of %s cancelled", task.id, context.feature_id)
                return TaskExecutionResult(
                    outcome=TaskExecutionOutcome.CANCELLED,
                    tasks_completed=completed,
                    error=exc.reason,
                    output="".join(outputs),
                )
            except asyncio.CancelledError:
                task.status = TaskStatus.PENDING
                raise
            except Exception as exc:
                task.status = TaskStatus.FAILED
                info = classify_error(exc)
                logger.warning(
                    "task %s of %s failed: %s",
                    task.id,
                    context.feature_id,
                    info.message,
                    extra={"extra_fields": {"feature_id": context.feature_id, "task_id": task.id}},
                )
                await self._report(
                    on_progress,
                    TaskProgress(
                        task_id=task.id,
                        task_index=index,
                        tasks_total=total,
                        status=TaskProgressStatus.FAILED,
                        output=info.message,
                    ),
                )
                self._emit(AutoModeEventType.TASK_FAILED, context, task_id=task.id, task_index=index, error=info.message)
                return TaskExecutionResult(
                    outcome=TaskExecutionOutcome.FAILED,
                    tasks_completed=completed,
                    failed_task_id=task.id,
                    error=info.message,
                    error_info=info,
                    output="".join(outputs),
                )

            outputs.append(result.text)
            task.status = TaskStatus.COMPLETED
            completed += 1

            phase_complete: int | None = None
            next_task = tasks[index + 1] if index + 1 < total else None
            if task.phase and (next_task is None or next_task.phase != task.phase):
                phase_ordinal += 1
                phase_complete = get_phase_number(task.phase) or phase_ordinal

            summary = summarize_task_output(result.text)
            await self._report(
                on_progress,
                TaskProgress(
                    task_id=task.id,
                    task_index=index,
                    tasks_total=total,
                    status=TaskProgressStatus.COMPLETED,
                    output=summary,
                    phase_complete=phase_complete,
                ),
            )
            self._emit(
                AutoModeEventType.TASK_COMPLETE,
                context,
                task_id=task.id,
                task_index=index,
                tasks_completed=completed,
                tasks_total=total,
                summary=summary,
            )
            if phase_complete is not None:
                self._emit(AutoModeEventType.PHASE_COMPLETE, context, phase_number=phase_complete, phase=task.phase)

        return TaskExecutionResult(
            outcome=TaskExecutionOutcome.COMPLETED,
            tasks_completed=completed,
            output="".join(outputs),
        )

    def _stream_handlers(self, context: TaskExecutionContext) -> StreamHandlers:
        def on_text(text: str) -> None:
            self._emit(AutoModeEventType.PROGRESS, context, content=text)

        def on_tool_use(name: str, tool_input: Any) -> None:
            self._emit(AutoModeEventType.TOOL, context, tool=name, input=tool_input)

        return StreamHandlers(on_text=on_text, on_tool_use=on_tool_use)

    def _emit(self, event_type: AutoModeEventType, context: TaskExecutionContext, **data: Any) -> None:
        self._events.emit_auto_mode(event_type, context.feature_id, project_path=context.project_path, **data)

    @staticmethod
    async def _report(on_progress: ProgressCallback | None, progress: TaskProgress) -> None:
        if on_progress is None:
            return
        outcome = on_progress(progress)
        if inspect.isawaitable(outcome):
            await outcome


def summarize_task_output(text: str) -> str:
    index = text.rfind(TASK_COMPLETE_MARKER)
    if index != -1:
        summary = text[index + len(TASK_COMPLETE_MARKER):].strip()
    else:
        summary = text.strip()[-_SUMMARY_LIMIT:]
    return summary[:_SUMMARY_LIMIT]
