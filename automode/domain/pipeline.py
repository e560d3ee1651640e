"""Pipeline step configuration stored per project."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, MutableMapping, Optional

__all__ = ["PipelineConfig", "PipelineStep"]


@dataclass
class PipelineStep:
    id: str
    name: str
    order: int
    instructions: str = ""
    created_at: str = ""
    updated_at: str = ""
    color: Optional[str] = None

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "PipelineStep":
        try:
            order = int(data.get("order", 0))
        except (TypeError, ValueError):
            order = 0
        color = data.get("colorClass") or data.get("color")
        return PipelineStep(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            order=order,
            instructions=str(data.get("instructions", "") or ""),
            created_at=str(data.get("createdAt", "") or ""),
            updated_at=str(data.get("updatedAt", "") or ""),
            color=str(color) if color else None,
        )

    def to_dict(self) -> MutableMapping[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "order": self.order,
            "instructions": self.instructions,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.color:
            payload["colorClass"] = self.color
        return payload


@dataclass
class PipelineConfig:
    """Versioned, ordered list of post-implementation steps."""

    version: int = 1
    steps: list[PipelineStep] = field(default_factory=list)

    @staticmethod
    def from_mapping(data: Mapping[str, Any]) -> "PipelineConfig":
        raw_steps = data.get("steps") or []
        steps = [
            PipelineStep.from_mapping(item)
            for item in raw_steps
            if isinstance(item, Mapping)
        ]
        try:
            version = int(data.get("version", 1))
        except (TypeError, ValueError):
            version = 1
        return PipelineConfig(version=version, steps=steps)

    def to_dict(self) -> MutableMapping[str, Any]:
        return {
            "version": self.version,
            "steps": [step.to_dict() for step in self.steps],
        }

    def sorted_steps(self) -> list[PipelineStep]:
        return sorted(self.steps, key=lambda step: step.order)

    def normalize(self) -> None:
        """Sort by ``order`` and renumber densely from zero."""

        self.steps = self.sorted_steps()
        for index, step in enumerate(self.steps):
            step.order = index

    def find(self, step_id: str) -> Optional[PipelineStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None
