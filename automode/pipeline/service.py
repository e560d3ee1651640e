"""Per-project pipeline step storage and the feature status state machine."""

from __future__ import annotations

import json
import os
import secrets
import string
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from automode.domain.feature import PIPELINE_STATUS_PREFIX, FeatureStatus, pipeline_status
from automode.domain.pipeline import PipelineConfig, PipelineStep
from automode.errors import PipelineStepNotFoundError
from automode.logging import get_logger


logger = get_logger(__name__)

_BASE36_ALPHABET = string.digits + string.ascii_lowercase
_PROTECTED_FIELDS = frozenset({"id", "created_at"})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_step_id() -> str:
    stamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(6))
    return f"step_{stamp}_{suffix}"


def pipeline_config_path(project_path: Path | str) -> Path:
    return Path(project_path) / ".automaker" / "pipeline.json"


def atomic_write_json(target: Path, payload: Any) -> None:
    """Write ``payload`` as JSON next to ``target`` then rename it into place.

    The temporary file is removed before the original error propagates.
    """

    temp_path = target.with_name(f"{target.name}.tmp.{int(time.time() * 1000)}")
    content = json.dumps(payload, indent=2)
    try:
        temp_path.write_text(content, encoding="utf-8")
        os.replace(temp_path, target)
    except BaseException:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            logger.debug("Could not remove temporary file %s", temp_path)
        raise


class PipelineService:
    """Owns ``.automaker/pipeline.json`` and computes feature status transitions."""

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def get_pipeline_config(self, project_path: Path | str) -> PipelineConfig:
        config_path = pipeline_config_path(project_path)
        try:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return PipelineConfig()
        except (OSError, json.JSONDecodeError) as exc:
            logger.error(
                "Error reading %s: %s",
                config_path,
                exc,
                extra={"metadata": {"project": str(project_path)}},
            )
            return PipelineConfig()
        if not isinstance(raw, Mapping):
            return PipelineConfig()
        return PipelineConfig.from_mapping(raw)

    def save_pipeline_config(self, project_path: Path | str, config: PipelineConfig) -> None:
        config_path = pipeline_config_path(project_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_json(config_path, config.to_dict())
        logger.info(
            "Pipeline config saved",
            extra={"metadata": {"project": str(project_path), "steps": len(config.steps)}},
        )

    # ------------------------------------------------------------------
    # Step CRUD
    # ------------------------------------------------------------------
    def add_step(
        self,
        project_path: Path | str,
        *,
        name: str,
        order: Optional[int] = None,
        instructions: str = "",
        color: Optional[str] = None,
    ) -> PipelineStep:
        config = self.get_pipeline_config(project_path)
        now = _now_iso()
        step = PipelineStep(
            id=generate_step_id(),
            name=name,
            order=len(config.steps) if order is None else int(order),
            instructions=instructions,
            created_at=now,
            updated_at=now,
            color=color,
        )
        config.steps.append(step)
        config.normalize()

        self.save_pipeline_config(project_path, config)
        logger.info("Pipeline step added: %s (%s)", step.name, step.id)
        return step

    def update_step(
        self,
        project_path: Path | str,
        step_id: str,
        updates: Mapping[str, Any],
    ) -> PipelineStep:
        config = self.get_pipeline_config(project_path)
        step = config.find(step_id)
        if step is None:
            raise PipelineStepNotFoundError(step_id)

        for key, value in updates.items():
            if key in _PROTECTED_FIELDS or not hasattr(step, key):
                continue
            setattr(step, key, int(value) if key == "order" else value)
        step.updated_at = _now_iso()
        config.normalize()

        self.save_pipeline_config(project_path, config)
        logger.info("Pipeline step updated: %s", step_id)
        return step

    def delete_step(self, project_path: Path | str, step_id: str) -> None:
        config = self.get_pipeline_config(project_path)
        step = config.find(step_id)
        if step is None:
            raise PipelineStepNotFoundError(step_id)

        config.steps.remove(step)
        config.normalize()

        self.save_pipeline_config(project_path, config)
        logger.info("Pipeline step deleted: %s", step_id)

    def reorder_steps(self, project_path: Path | str, step_ids: Iterable[str]) -> None:
        """Store exactly ``step_ids`` in the given order; omitted steps are dropped."""

        config = self.get_pipeline_config(project_path)
        by_id = {step.id: step for step in config.steps}
        ordered_ids = list(step_ids)
        for step_id in ordered_ids:
            if step_id not in by_id:
                raise PipelineStepNotFoundError(step_id)

        now = _now_iso()
        reordered: list[PipelineStep] = []
        for index, step_id in enumerate(ordered_ids):
            step = by_id[step_id]
            step.order = index
            step.updated_at = now
            reordered.append(step)
        config.steps = reordered

        self.save_pipeline_config(project_path, config)
        logger.info(
            "Pipeline steps reordered",
            extra={"metadata": {"project": str(project_path), "order": ordered_ids}},
        )

    def get_step(self, project_path: Path | str, step_id: str) -> Optional[PipelineStep]:
        return self.get_pipeline_config(project_path).find(step_id)

    # ------------------------------------------------------------------
    # Status state machine
    # ------------------------------------------------------------------
    def get_next_status(
        self,
        current_status: str,
        config: Optional[PipelineConfig],
        skip_tests: bool,
        excluded_step_ids: Optional[Iterable[str]] = None,
    ) -> str:
        """Return the status that follows ``current_status``.

        ``in_progress`` moves to the first non-excluded step. A pipeline status
        moves to the next non-excluded step after its own position, even when
        its own step has since been excluded. A pipeline status whose step no
        longer exists in ``config`` goes straight to the terminal status. Any
        other status is returned unchanged.
        """

        terminal = FeatureStatus.terminal(skip_tests).value
        all_steps = config.sorted_steps() if config is not None else []
        exclusions = set(excluded_step_ids or ())

        if current_status == FeatureStatus.IN_PROGRESS.value:
            for step in all_steps:
                if step.id not in exclusions:
                    return pipeline_status(step.id)
            return terminal

        step_id = self.get_step_id_from_status(current_status)
        if step_id is None:
            return current_status

        position = next(
            (index for index, step in enumerate(all_steps) if step.id == step_id),
            None,
        )
        if position is None:
            return terminal

        for step in all_steps[position + 1 :]:
            if step.id not in exclusions:
                return pipeline_status(step.id)
        return terminal

    @staticmethod
    def is_pipeline_status(status: str) -> bool:
        return status.startswith(PIPELINE_STATUS_PREFIX)

    @classmethod
    def get_step_id_from_status(cls, status: str) -> Optional[str]:
        if not cls.is_pipeline_status(status):
            return None
        return status[len(PIPELINE_STATUS_PREFIX) :]


pipeline_service = PipelineService()

__all__ = [
    "PipelineService",
    "atomic_write_json",
    "generate_step_id",
    "pipeline_config_path",
    "pipeline_service",
]
