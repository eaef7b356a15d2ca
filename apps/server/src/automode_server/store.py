from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from automode_server.schemas import Feature, FeatureCreate, FeatureStatus, PlanSpec, normalize_project_path


class NotFoundError(Exception):
    pass


class ConflictError(Exception):
    pass


class ValidationError(Exception):
    pass


@dataclass
class _FeatureRecord:
    seq: int
    feature: Feature


class InMemoryFeatureStore:
    """Feature records keyed by id, optionally mirrored to a JSON state file.

    Every mutation rewrites the state file, so a restarted server sees the last
    persisted plan and status of each feature.
    """

    def __init__(self, state_file: str | None = None) -> None:
        self._state_file = Path(state_file).expanduser() if state_file else None
        self._features: dict[str, _FeatureRecord] = {}
        self._feature_seq = 1
        self._load_state()

    def create_feature(self, feature: FeatureCreate) -> Feature:
        if feature.id in self._features:
            raise ConflictError(f"feature '{feature.id}' already exists")

        record = _FeatureRecord(
            seq=self._feature_seq,
            feature=Feature(**feature.model_dump()),
        )
        self._feature_seq += 1
        self._features[feature.id] = record
        self._persist_state()
        return record.feature.model_copy(deep=True)

    def get_feature(self, feature_id: str) -> Feature:
        return self._get_record(feature_id).feature.model_copy(deep=True)

    def list_features(self, project_path: str | None = None) -> list[Feature]:
        root = normalize_project_path(project_path) if project_path else None
        return [
            record.feature.model_copy(deep=True)
            for record in self._ordered_records()
            if root is None or record.feature.project_path == root
        ]

    def update_feature(self, feature_id: str, **changes: Any) -> Feature:
        record = self._get_record(feature_id)
        unknown = set(changes) - set(Feature.model_fields)
        if unknown:
            raise ValidationError(f"unknown feature fields: {', '.join(sorted(unknown))}")

        record.feature = record.feature.model_copy(update=changes, deep=True)
        self._persist_state()
        return record.feature.model_copy(deep=True)

    def update_status(
        self,
        feature_id: str,
        status: FeatureStatus,
        *,
        error: str | None = None,
        summary: str | None = None,
    ) -> Feature:
        changes: dict[str, Any] = {"status": status, "error": error}
        if summary is not None:
            changes["summary"] = summary
        if status == FeatureStatus.IN_PROGRESS:
            changes["started_at"] = self._utc_now()
        return self.update_feature(feature_id, **changes)

    def save_plan_spec(self, feature_id: str, plan_spec: PlanSpec) -> Feature:
        return self.update_feature(feature_id, plan_spec=plan_spec.model_copy(deep=True))

    def load_pending_features(self, project_path: str) -> list[Feature]:
        """Pending features of a project whose dependencies are all verified.

        Ordered by priority (lower runs first), then by creation order.
        """
        root = normalize_project_path(project_path)
        verified = {
            feature_id
            for feature_id, record in self._features.items()
            if record.feature.status == FeatureStatus.VERIFIED
        }
        candidates = [
            record
            for record in self._ordered_records()
            if record.feature.project_path == root
            and record.feature.status == FeatureStatus.PENDING
            and all(dependency in verified for dependency in record.feature.dependencies)
        ]
        candidates.sort(key=lambda record: (record.feature.priority, record.seq))
        return [record.feature.model_copy(deep=True) for record in candidates]

    def _get_record(self, feature_id: str) -> _FeatureRecord:
        record = self._features.get(feature_id)
        if record is None:
            raise NotFoundError(f"feature {feature_id} not found")
        return record

    def _ordered_records(self) -> list[_FeatureRecord]:
        return sorted(self._features.values(), key=lambda record: record.seq)

    def _persist_state(self) -> None:
        if self._state_file is None:
            return

        snapshot = self._snapshot()
        self._state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self._state_file.with_name(f"{self._state_file.name}.tmp")
        tmp_file.write_text(json.dumps(snapshot, ensure_ascii=True, sort_keys=True), encoding="utf-8")
        tmp_file.replace(self._state_file)

    def _load_state(self) -> None:
        if self._state_file is None or not self._state_file.exists():
            return

        raw = self._state_file.read_text(encoding="utf-8")
        data = json.loads(raw)
        self._features = {
            str(key): _FeatureRecord(seq=int(value["seq"]), feature=Feature.model_validate(value["feature"]))
            for key, value in data.get("features", {}).items()
        }
        sequences = data.get("sequences", {})
        self._feature_seq = int(sequences.get("feature_seq", len(self._features) + 1))
        self._recover_interrupted_runs()

    def _recover_interrupted_runs(self) -> None:
        # runs do not survive a restart; plans waiting for approval keep their state
        for record in self._features.values():
            if record.feature.status == FeatureStatus.IN_PROGRESS:
                record.feature = record.feature.model_copy(update={"status": FeatureStatus.PENDING})

    def _snapshot(self) -> dict[str, Any]:
        return {
            "features": {
                key: {"seq": value.seq, "feature": value.feature.model_dump(mode="json")}
                for key, value in self._features.items()
            },
            "sequences": {
                "feature_seq": self._feature_seq,
            },
        }

    @staticmethod
    def _utc_now() -> str:
        return datetime.now(timezone.utc).isoformat()
