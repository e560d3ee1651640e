"""File-backed feature store under ``.automaker/features/<id>/feature.json``."""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, Union

from automode.domain.feature import Feature
from automode.errors import FeatureNotFoundError, InvalidFeatureIdError
from automode.logging import get_logger
from automode.pipeline.service import atomic_write_json

__all__ = [
    "FeatureLoader",
    "FileFeatureLoader",
    "feature_dir",
    "features_root",
    "validate_feature_id",
]

logger = get_logger(__name__)

PathLike = Union[str, Path]


class FeatureLoader(Protocol):
    def load_features(self, project_path: PathLike) -> list[Feature]: ...

    def get_feature(self, project_path: PathLike, feature_id: str) -> Feature: ...

    def update_feature_status(
        self,
        project_path: PathLike,
        feature_id: str,
        status: str,
        summary: Optional[str] = None,
    ) -> Feature: ...

    def update_feature(self, project_path: PathLike, feature_id: str, **changes: Any) -> Feature: ...


def features_root(project_path: PathLike) -> Path:
    return Path(project_path) / ".automaker" / "features"


def validate_feature_id(feature_id: str) -> str:
    """Reject ids that would resolve outside the features root."""

    if (
        not feature_id
        or feature_id in (".", "..")
        or "/" in feature_id
        or "\\" in feature_id
        or "\0" in feature_id
    ):
        raise InvalidFeatureIdError(feature_id)
    return feature_id


def feature_dir(project_path: PathLike, feature_id: str) -> Path:
    return features_root(project_path) / validate_feature_id(feature_id)


def _sort_key(feature: Feature) -> tuple[float, str]:
    order = feature.extra.get("order")
    if isinstance(order, (int, float)) and not isinstance(order, bool):
        return (float(order), feature.id)
    return (float("inf"), feature.id)


class FileFeatureLoader:
    """Reads and writes one JSON document per feature.

    Features load in backlog order: an explicit numeric ``order`` key first,
    then by id. Unreadable documents are logged and skipped.
    """

    def __init__(self) -> None:
        self._write_lock = threading.Lock()

    def feature_path(self, project_path: PathLike, feature_id: str) -> Path:
        return feature_dir(project_path, feature_id) / "feature.json"

    def load_features(self, project_path: PathLike) -> list[Feature]:
        root = features_root(project_path)
        if not root.is_dir():
            return []

        features: list[Feature] = []
        for entry in sorted(root.iterdir()):
            path = entry / "feature.json"
            if not path.is_file():
                continue
            try:
                features.append(self._read(path))
            except (OSError, ValueError) as exc:
                logger.warning(
                    "Skipping unreadable feature file %s: %s",
                    path,
                    exc,
                    extra={"metadata": {"feature_id": entry.name}},
                )
        features.sort(key=_sort_key)
        return features

    def get_feature(self, project_path: PathLike, feature_id: str) -> Feature:
        path = self.feature_path(project_path, feature_id)
        try:
            return self._read(path)
        except FileNotFoundError as exc:
            raise FeatureNotFoundError(feature_id) from exc

    def save_feature(self, project_path: PathLike, feature: Feature) -> Feature:
        path = self.feature_path(project_path, feature.id)
        with self._write_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_json(path, feature.to_dict())
        return feature

    def update_feature(self, project_path: PathLike, feature_id: str, **changes: Any) -> Feature:
        with self._write_lock:
            feature = self.get_feature(project_path, feature_id).with_changes(**changes)
            feature.extra["updatedAt"] = _now_iso()
            atomic_write_json(self.feature_path(project_path, feature_id), feature.to_dict())
        logger.debug(
            "Updated feature %s",
            feature_id,
            extra={"metadata": {"feature_id": feature_id, "fields": sorted(changes)}},
        )
        return feature

    def update_feature_status(
        self,
        project_path: PathLike,
        feature_id: str,
        status: str,
        summary: Optional[str] = None,
    ) -> Feature:
        changes: dict[str, Any] = {"status": status}
        if summary is not None:
            changes["summary"] = summary
        feature = self.update_feature(project_path, feature_id, **changes)
        logger.info(
            "Feature %s moved to %s",
            feature_id,
            status,
            extra={"metadata": {"feature_id": feature_id, "status": status}},
        )
        return feature

    @staticmethod
    def _read(path: Path) -> Feature:
        with path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        if not isinstance(payload, dict):
            raise ValueError("feature document must be a JSON object")
        return Feature.from_mapping(payload)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
