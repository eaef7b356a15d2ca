from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, model_validator


TASK_ID_PATTERN = r"^T\d{3}$"


class PlanningMode(str, Enum):
    SKIP = "skip"
    LITE = "lite"
    SPEC = "spec"
    FULL = "full"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PlanSpecStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskProgressStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class FeatureStatus(str, Enum):
    PENDING = "pending"
    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    VERIFIED = "verified"
    FAILED = "failed"


class ErrorType(str, Enum):
    ABORT = "abort"
    CANCELLATION = "cancellation"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    EXECUTION = "execution"
    UNKNOWN = "unknown"


class ParsedTask(BaseModel):
    id: str = Field(pattern=TASK_ID_PATTERN)
    description: str
    file_path: str | None = None
    phase: str | None = None
    status: TaskStatus = TaskStatus.PENDING


class PlanSpec(BaseModel):
    status: PlanSpecStatus = PlanSpecStatus.PENDING
    content: str | None = None
    version: int = Field(default=0, ge=0)
    generated_at: str | None = None
    approved_at: str | None = None
    reviewed_by_user: bool = False
    tasks_completed: int = 0
    tasks_total: int = 0
    current_task_id: str | None = None
    tasks: list[ParsedTask] = Field(default_factory=list)


class ApprovalResult(BaseModel):
    approved: bool
    edited_plan: str | None = None
    feedback: str | None = None


class ApprovalResolution(BaseModel):
    success: bool
    error: str | None = None
    project_path: str | None = None


class TaskProgress(BaseModel):
    task_id: str
    task_index: int = Field(ge=0)
    tasks_total: int = Field(ge=0)
    status: TaskProgressStatus
    output: str | None = None
    phase_complete: int | None = None


class ErrorInfo(BaseModel):
    type: ErrorType
    message: str
    is_rate_limit: bool = False
    is_abort: bool = False
    retry_after: int | None = None


class FeatureCreate(BaseModel):
    id: str = Field(min_length=1)
    project_path: str = Field(min_length=1)
    description: str = Field(min_length=1)
    title: str | None = None
    spec: str | None = None
    model: str | None = None
    branch_name: str | None = Field(default=None, min_length=1)
    skip_tests: bool = False
    thinking_level: str | None = None
    planning_mode: PlanningMode = PlanningMode.SKIP
    require_plan_approval: bool = False
    priority: int = 0
    dependencies: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_fields(self) -> "FeatureCreate":
        root = Path(self.project_path)
        if not root.is_absolute():
            raise ValueError("project_path must be an absolute path")
        self.project_path = normalize_project_path(self.project_path)
        if self.require_plan_approval and self.planning_mode == PlanningMode.SKIP:
            raise ValueError("require_plan_approval needs a planning_mode other than skip")
        self.dependencies = _normalize_string_list(self.dependencies)
        if self.id in self.dependencies:
            raise ValueError("feature cannot depend on itself")
        return self


class Feature(BaseModel):
    id: str
    project_path: str
    description: str
    title: str | None = None
    spec: str | None = None
    model: str | None = None
    branch_name: str | None = None
    skip_tests: bool = False
    thinking_level: str | None = None
    planning_mode: PlanningMode = PlanningMode.SKIP
    require_plan_approval: bool = False
    plan_spec: PlanSpec | None = None
    status: FeatureStatus = FeatureStatus.PENDING
    error: str | None = None
    summary: str | None = None
    started_at: str | None = None
    priority: int = 0
    dependencies: list[str] = Field(default_factory=list)


class RunningFeatureRead(BaseModel):
    feature_id: str
    project_path: str
    worktree_path: str | None = None
    branch_name: str | None = None
    is_auto_mode: bool
    start_time: float
    stopping: bool = False


class AutoModeStatus(BaseModel):
    running_features: list[str] = Field(default_factory=list)
    is_running: bool
    running_count: int
    runs: list[RunningFeatureRead] = Field(default_factory=list)


class AutoModeStartRequest(BaseModel):
    project_path: str = Field(min_length=1)
    max_concurrency: int | None = Field(default=None, ge=1, le=64)

    @model_validator(mode="after")
    def validate_path(self) -> "AutoModeStartRequest":
        if not Path(self.project_path).is_absolute():
            raise ValueError("project_path must be an absolute path")
        self.project_path = normalize_project_path(self.project_path)
        return self


class AutoModeStopResponse(BaseModel):
    stopped: int


class FeatureRunRequest(BaseModel):
    project_path: str = Field(min_length=1)
    use_worktrees: bool | None = None


class FeatureStopResponse(BaseModel):
    feature_id: str
    stopped: bool


class PlanApprovalRequest(BaseModel):
    approved: bool
    edited_plan: str | None = None
    feedback: str | None = None
    project_path: str | None = None


class PendingApprovalsRead(BaseModel):
    feature_ids: list[str] = Field(default_factory=list)


def _normalize_string_list(values: list[str]) -> list[str]:
    normalized: list[str] = []
    for value in values:
        trimmed = value.strip()
        if not trimmed:
            continue
        if trimmed in normalized:
            continue
        normalized.append(trimmed)
    return normalized


def normalize_project_path(path: str) -> str:
    return str(Path(path).expanduser().resolve())
