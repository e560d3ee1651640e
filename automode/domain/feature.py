"""Feature records as persisted by the project and consumed by the executor."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping, MutableMapping, Optional, Sequence

__all__ = [
    "PIPELINE_STATUS_PREFIX",
    "THINKING_LEVELS",
    "Feature",
    "FeatureStatus",
    "pipeline_status",
]

PIPELINE_STATUS_PREFIX = "pipeline_"
THINKING_LEVELS = ("none", "low", "medium", "high", "ultrathink")


class FeatureStatus(str, Enum):
    """Fixed feature statuses. Pipeline statuses are built with :func:`pipeline_status`."""

    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    VERIFIED = "verified"
    COMPLETED = "completed"

    @classmethod
    def terminal(cls, skip_tests: bool) -> "FeatureStatus":
        """Status a feature lands in once every pipeline step is behind it."""

        return cls.WAITING_APPROVAL if skip_tests else cls.VERIFIED


def pipeline_status(step_id: str) -> str:
    return f"{PIPELINE_STATUS_PREFIX}{step_id}"


def _coerce_text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _coerce_optional_text(value: object) -> Optional[str]:
    text = _coerce_text(value)
    return text or None


def _coerce_list(value: object) -> list[str]:
    if isinstance(value, str):
        text = value.strip()
        return [text] if text else []
    if isinstance(value, Sequence):
        results: list[str] = []
        for item in value:
            if item is None:
                continue
            rendered = str(item).strip()
            if rendered:
                results.append(rendered)
        return results
    return []


_TRUE_WORDS = frozenset({"true", "1", "yes", "on"})


def _coerce_flag(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_WORDS
    return bool(value)


def _coerce_status(value: object) -> str:
    text = _coerce_text(value)
    return text or FeatureStatus.BACKLOG.value


def _coerce_thinking_level(value: object) -> str:
    text = _coerce_text(value).lower()
    return text if text in THINKING_LEVELS else "none"


@dataclass
class Feature:
    """A unit of work dispatched to an agent backend.

    ``status`` is kept as a plain string because pipeline statuses are
    parameterised by a step id (``pipeline_<stepId>``).
    """

    id: str
    description: str = ""
    category: str = ""
    steps: list[str] = field(default_factory=list)
    status: str = FeatureStatus.BACKLOG.value
    model: Optional[str] = None
    thinking_level: str = "none"
    skip_tests: bool = False
    excluded_pipeline_steps: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    error: Optional[str] = None
    summary: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = frozenset(
        {
            "id",
            "description",
            "category",
            "steps",
            "status",
            "model",
            "thinkingLevel",
            "skipTests",
            "excludedPipelineSteps",
            "dependencies",
            "error",
            "summary",
        }
    )

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "Feature":
        identifier = _coerce_text(data.get("id"))
        if not identifier:
            raise ValueError("Feature records require a non-empty 'id'.")
        extra = {
            key: value for key, value in data.items() if key not in Feature._KNOWN_KEYS
        }
        return Feature(
            id=identifier,
            description=_coerce_text(data.get("description")),
            category=_coerce_text(data.get("category")),
            steps=_coerce_list(data.get("steps")),
            status=_coerce_status(data.get("status")),
            model=_coerce_optional_text(data.get("model")),
            thinking_level=_coerce_thinking_level(data.get("thinkingLevel")),
            skip_tests=_coerce_flag(data.get("skipTests")),
            excluded_pipeline_steps=_coerce_list(data.get("excludedPipelineSteps")),
            dependencies=_coerce_list(data.get("dependencies")),
            error=_coerce_optional_text(data.get("error")),
            summary=_coerce_optional_text(data.get("summary")),
            extra=extra,
        )

    def to_dict(self) -> MutableMapping[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "description": self.description,
                "category": self.category,
                "steps": list(self.steps),
                "status": self.status,
                "thinkingLevel": self.thinking_level,
                "skipTests": self.skip_tests,
                "excludedPipelineSteps": list(self.excluded_pipeline_steps),
                "dependencies": list(self.dependencies),
            }
        )
        if self.model:
            payload["model"] = self.model
        if self.error:
            payload["error"] = self.error
        if self.summary:
            payload["summary"] = self.summary
        return payload

    def with_changes(self, **changes: Any) -> "Feature":
        return replace(self, **changes)

    @property
    def in_pipeline(self) -> bool:
        return self.status.startswith(PIPELINE_STATUS_PREFIX)

    def is_done(self) -> bool:
        return self.status in {FeatureStatus.VERIFIED.value, FeatureStatus.COMPLETED.value}

    def passed(self) -> bool:
        """Whether the persisted status counts as a successful run."""

        if self.status == FeatureStatus.VERIFIED.value:
            return True
        return self.skip_tests and self.status == FeatureStatus.WAITING_APPROVAL.value
