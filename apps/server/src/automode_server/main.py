from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from automode_server.auto_mode import AutoModeService
from automode_server.config import AutoModeSettings
from automode_server.events import EventEmitter, WebhookEventForwarder
from automode_server.logging_setup import log_auto_mode_event, setup_logging
from automode_server.provider import Provider, build_provider
from automode_server.schemas import (
    AutoModeStartRequest,
    AutoModeStatus,
    AutoModeStopResponse,
    ApprovalResolution,
    Feature,
    FeatureCreate,
    FeatureRunRequest,
    FeatureStopResponse,
    PendingApprovalsRead,
    PlanApprovalRequest,
    RunningFeatureRead,
)
from automode_server.store import ConflictError, InMemoryFeatureStore, NotFoundError, ValidationError
from automode_server.worktree import SubprocessCommandRunner


def create_app(settings: AutoModeSettings | None = None, provider: Provider | None = None) -> FastAPI:
    resolved = settings or AutoModeSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(resolved.log_level, resolved.log_file)
        events = EventEmitter()
        events.subscribe(log_auto_mode_event)
        if resolved.event_webhook_url:
            events.subscribe(WebhookEventForwarder(resolved.event_webhook_url, resolved.event_webhook_token))

        store = InMemoryFeatureStore(state_file=resolved.state_file)
        service = AutoModeService(
            events,
            store,
            provider or build_provider(resolved),
            settings=resolved,
            runner=SubprocessCommandRunner(resolved.command_timeout_seconds),
        )
        app.state.settings = resolved
        app.state.events = events
        app.state.store = store
        app.state.service = service
        try:
            yield
        finally:
            await service.shutdown()

    app = FastAPI(title="automode server", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(resolved.cors_allow_origins),
        allow_origin_regex=resolved.cors_allow_origin_regex,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/features", response_model=Feature)
    async def create_feature(payload: FeatureCreate, request: Request) -> Feature:
        try:
            return _store(request).create_feature(payload)
        except ConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.get("/features", response_model=list[Feature])
    async def list_features(request: Request, project_path: str | None = None) -> list[Feature]:
        return _store(request).list_features(project_path)

    @app.get("/features/{feature_id}", response_model=Feature)
    async def get_feature(feature_id: str, request: Request) -> Feature:
        try:
            return _store(request).get_feature(feature_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/auto-mode/start", response_model=AutoModeStatus)
    async def start_auto_mode(payload: AutoModeStartRequest, request: Request) -> AutoModeStatus:
        try:
            return await _service(request).start_auto_loop(payload.project_path, payload.max_concurrency)
        except ConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.post("/auto-mode/stop", response_model=AutoModeStopResponse)
    async def stop_auto_mode(request: Request, project_path: str | None = None) -> AutoModeStopResponse:
        stopped = await _service(request).stop_auto_loop(project_path)
        return AutoModeStopResponse(stopped=stopped)

    @app.get("/auto-mode/status", response_model=AutoModeStatus)
    async def get_auto_mode_status(request: Request, project_path: str | None = None) -> AutoModeStatus:
        return _service(request).get_status(project_path)

    @app.post("/auto-mode/features/{feature_id}/run", response_model=RunningFeatureRead)
    async def run_feature(feature_id: str, payload: FeatureRunRequest, request: Request) -> RunningFeatureRead:
        try:
            run = await _service(request).execute_feature(
                payload.project_path,
                feature_id,
                use_worktrees=payload.use_worktrees,
            )
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return run.to_read()

    @app.post("/auto-mode/features/{feature_id}/stop", response_model=FeatureStopResponse)
    async def stop_feature(feature_id: str, request: Request) -> FeatureStopResponse:
        stopped = await _service(request).stop_feature(feature_id)
        return FeatureStopResponse(feature_id=feature_id, stopped=stopped)

    @app.post("/auto-mode/features/{feature_id}/plan-approval", response_model=ApprovalResolution)
    async def resolve_plan_approval(
        feature_id: str,
        payload: PlanApprovalRequest,
        request: Request,
    ) -> ApprovalResolution:
        resolution = await _service(request).resolve_plan_approval(
            feature_id,
            payload.approved,
            edited_plan=payload.edited_plan,
            feedback=payload.feedback,
            project_path=payload.project_path,
        )
        if not resolution.success:
            raise HTTPException(status_code=404, detail=resolution.error)
        return resolution

    @app.delete("/auto-mode/features/{feature_id}/plan-approval", status_code=204)
    async def cancel_plan_approval(feature_id: str, request: Request) -> None:
        _service(request).cancel_plan_approval(feature_id)

    @app.get("/auto-mode/approvals", response_model=PendingApprovalsRead)
    async def list_pending_approvals(request: Request) -> PendingApprovalsRead:
        return PendingApprovalsRead(feature_ids=_service(request).get_pending_approvals())

    return app


def _service(request: Request) -> AutoModeService:
    return request.app.state.service


def _store(request: Request) -> InMemoryFeatureStore:
    return request.app.state.store


app = create_app()
