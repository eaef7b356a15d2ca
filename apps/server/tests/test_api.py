import time
from typing import Any, Callable

from fastapi.testclient import TestClient

from automode_server.config import AutoModeSettings
from automode_server.main import create_app
from automode_server.provider import MockProvider
from fakes import ScriptedProvider, reply


REPO = "/repo"

SPEC_OUTPUT = """```tasks
- [ ] T001: Add export endpoint | File: api.py
```
[SPEC_GENERATED] Please review."""


def _settings(**overrides) -> AutoModeSettings:
    values = {
        "use_worktrees": False,
        "poll_interval_seconds": 0.01,
        "shutdown_grace_seconds": 1.0,
        "log_level": "WARNING",
    }
    values.update(overrides)
    return AutoModeSettings(**values)


def _client(provider=None, **overrides) -> TestClient:
    app = create_app(settings=_settings(**overrides), provider=provider or MockProvider(steps=1, delay_seconds=0))
    return TestClient(app)


def _create_feature(client: TestClient, feature_id: str, **fields: Any) -> dict[str, Any]:
    payload = {"id": feature_id, "project_path": REPO, "description": f"Implement {feature_id}"}
    payload.update(fields)
    response = client.post("/features", json=payload)
    assert response.status_code == 200
    return response.json()


def _wait_for(client: TestClient, path: str, predicate: Callable[[Any], bool], timeout_seconds: float = 3.0) -> Any:
    deadline = time.monotonic() + timeout_seconds
    while True:
        body = client.get(path).json()
        if predicate(body):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"{path} never matched, last body: {body}")
        time.sleep(0.01)


def test_health_and_cors_preflight() -> None:
    with _client() as client:
        assert client.get("/health").json() == {"status": "ok"}

        origin = "http://localhost:45173"
        allowed = client.options(
            "/health",
            headers={"Origin": origin, "Access-Control-Request-Method": "GET"},
        )
        rejected = client.options(
            "/health",
            headers={"Origin": "https://evil.example.com", "Access-Control-Request-Method": "GET"},
        )

    assert allowed.status_code == 200
    assert allowed.headers["access-control-allow-origin"] == origin
    assert rejected.status_code == 400


def test_feature_crud_and_validation() -> None:
    with _client() as client:
        created = _create_feature(client, "feat-1", planning_mode="spec", priority=2)
        assert created["status"] == "pending"
        assert created["planning_mode"] == "spec"

        duplicate = client.post("/features", json={"id": "feat-1", "project_path": REPO, "description": "again"})
        relative = client.post("/features", json={"id": "feat-2", "project_path": "repo", "description": "x"})
        bad_approval = client.post(
            "/features",
            json={"id": "feat-3", "project_path": REPO, "description": "x", "require_plan_approval": True},
        )
        missing = client.get("/features/ghost")

        _create_feature(client, "other", project_path="/elsewhere")
        listed = client.get("/features", params={"project_path": REPO}).json()
        everything = client.get("/features").json()

    assert duplicate.status_code == 409
    assert relative.status_code == 422
    assert bad_approval.status_code == 422
    assert missing.status_code == 404
    assert [feature["id"] for feature in listed] == ["feat-1"]
    assert [feature["id"] for feature in everything] == ["feat-1", "other"]


def test_run_single_feature_until_verified() -> None:
    with _client() as client:
        _create_feature(client, "feat-1")

        started = client.post("/auto-mode/features/feat-1/run", json={"project_path": REPO})
        assert started.status_code == 200
        assert started.json()["feature_id"] == "feat-1"
        assert started.json()["is_auto_mode"] is False

        feature = _wait_for(client, "/features/feat-1", lambda body: body["status"] == "verified")
        unknown = client.post("/auto-mode/features/ghost/run", json={"project_path": REPO})
        wrong_project = client.post("/auto-mode/features/feat-1/run", json={"project_path": "/elsewhere"})
        status = client.get("/auto-mode/status").json()

    assert feature["summary"]
    assert unknown.status_code == 404
    assert wrong_project.status_code == 422
    assert status["running_count"] == 0


def test_auto_mode_start_status_stop() -> None:
    with _client() as client:
        _create_feature(client, "feat-1")
        _create_feature(client, "feat-2")

        started = client.post("/auto-mode/start", json={"project_path": REPO, "max_concurrency": 2})
        assert started.status_code == 200
        assert started.json()["is_running"] is True

        again = client.post("/auto-mode/start", json={"project_path": REPO})
        invalid = client.post("/auto-mode/start", json={"project_path": REPO, "max_concurrency": 0})

        features = _wait_for(
            client,
            "/features",
            lambda body: all(feature["status"] == "verified" for feature in body),
        )
        status = client.get("/auto-mode/status", params={"project_path": REPO}).json()
        stopped = client.post("/auto-mode/stop", params={"project_path": REPO})
        after = client.get("/auto-mode/status", params={"project_path": REPO}).json()

    assert again.status_code == 409
    assert invalid.status_code == 422
    assert len(features) == 2
    assert status["is_running"] is True
    assert stopped.json() == {"stopped": 0}
    assert after["is_running"] is False


def test_stop_auto_mode_requeues_running_features() -> None:
    with _client(MockProvider(steps=200, delay_seconds=0.05)) as client:
        _create_feature(client, "slow")
        client.post("/auto-mode/start", json={"project_path": REPO, "max_concurrency": 1})
        _wait_for(client, "/auto-mode/status", lambda body: body["running_features"] == ["slow"])

        stopped = client.post("/auto-mode/stop")
        feature = client.get("/features/slow").json()

    assert stopped.json() == {"stopped": 1}
    assert feature["status"] == "pending"


def test_plan_approval_over_http() -> None:
    provider = ScriptedProvider([reply(SPEC_OUTPUT), reply("endpoint added")])
    with _client(provider) as client:
        _create_feature(client, "feat-1", planning_mode="spec", require_plan_approval=True)
        client.post("/auto-mode/features/feat-1/run", json={"project_path": REPO})

        _wait_for(client, "/auto-mode/approvals", lambda body: body["feature_ids"] == ["feat-1"])
        waiting = client.get("/features/feat-1").json()

        approved = client.post(
            "/auto-mode/features/feat-1/plan-approval",
            json={"approved": True, "feedback": "ship it", "project_path": REPO},
        )
        feature = _wait_for(client, "/features/feat-1", lambda body: body["status"] == "verified")

    assert waiting["status"] == "waiting_approval"
    assert waiting["plan_spec"]["status"] == "generated"
    assert approved.status_code == 200
    assert approved.json()["success"] is True
    assert feature["plan_spec"]["status"] == "approved"
    assert feature["plan_spec"]["tasks_completed"] == 1


def test_plan_approval_errors_and_cancel() -> None:
    provider = ScriptedProvider([reply(SPEC_OUTPUT)])
    with _client(provider) as client:
        unknown = client.post("/auto-mode/features/ghost/plan-approval", json={"approved": True})

        _create_feature(client, "feat-1", planning_mode="spec", require_plan_approval=True)
        client.post("/auto-mode/features/feat-1/run", json={"project_path": REPO})
        _wait_for(client, "/auto-mode/approvals", lambda body: body["feature_ids"] == ["feat-1"])

        cancelled = client.delete("/auto-mode/features/feat-1/plan-approval")
        feature = _wait_for(client, "/features/feat-1", lambda body: body["status"] == "backlog")
        approvals = client.get("/auto-mode/approvals").json()
        stop_idle = client.post("/auto-mode/features/feat-1/stop")

    assert unknown.status_code == 404
    assert unknown.json()["detail"] == "No pending approval for feature ghost"
    assert cancelled.status_code == 204
    assert feature["plan_spec"]["status"] == "generated"
    assert approvals == {"feature_ids": []}
    assert stop_idle.json() == {"feature_id": "feat-1", "stopped": False}


def test_state_file_survives_app_restart(tmp_path) -> None:
    state_file = str(tmp_path / "state.json")

    with _client(state_file=state_file) as client:
        _create_feature(client, "feat-1", title="Persisted")

    with _client(state_file=state_file) as client:
        restored = client.get("/features/feat-1")

    assert restored.status_code == 200
    assert restored.json()["title"] == "Persisted"
