"""In-process ``UpdateFeatureStatus`` tool exposed to agent backends."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Mapping, Optional, Union

from claude_agent_sdk import create_sdk_mcp_server, tool

from automode.domain.feature import FeatureStatus
from automode.errors import FeatureNotFoundError
from automode.logging import get_logger
from automode.pipeline.service import PipelineService
from automode.services.feature_loader import FeatureLoader, validate_feature_id

__all__ = [
    "AGENT_SETTABLE_STATUSES",
    "FeatureStatusTool",
    "TOOL_SERVER_NAME",
    "UPDATE_STATUS_TOOL",
    "create_feature_tools_server",
]

logger = get_logger(__name__)

TOOL_SERVER_NAME = "automaker-tools"
UPDATE_STATUS_TOOL = "UpdateFeatureStatus"

AGENT_SETTABLE_STATUSES = frozenset(
    {
        FeatureStatus.BACKLOG.value,
        FeatureStatus.IN_PROGRESS.value,
        FeatureStatus.WAITING_APPROVAL.value,
        FeatureStatus.VERIFIED.value,
    }
)
_COMPLETION_CLAIMS = frozenset(
    {FeatureStatus.VERIFIED.value, FeatureStatus.WAITING_APPROVAL.value}
)


class FeatureStatusTool:
    """Applies status updates requested by the agent mid-run.

    A completion claim (``verified`` or ``waiting_approval``) does not land
    directly: it is routed through the pipeline so a feature with pipeline
    steps enters its first non-excluded step instead.
    """

    def __init__(
        self,
        loader: FeatureLoader,
        pipeline: PipelineService,
        project_path: Union[str, Path],
    ) -> None:
        self.loader = loader
        self.pipeline = pipeline
        self.project_path = project_path

    async def update_status(
        self, feature_id: str, status: str, summary: Optional[str] = None
    ) -> str:
        if status not in AGENT_SETTABLE_STATUSES:
            raise ValueError(
                f"Status '{status}' cannot be set by the agent. "
                f"Use one of: {', '.join(sorted(AGENT_SETTABLE_STATUSES))}"
            )
        validate_feature_id(feature_id)

        feature = await asyncio.to_thread(self.loader.get_feature, self.project_path, feature_id)
        target = status
        if status in _COMPLETION_CLAIMS:
            config = await asyncio.to_thread(self.pipeline.get_pipeline_config, self.project_path)
            target = self.pipeline.get_next_status(
                FeatureStatus.IN_PROGRESS.value,
                config,
                feature.skip_tests,
                feature.excluded_pipeline_steps,
            )

        await asyncio.to_thread(
            self.loader.update_feature_status,
            self.project_path,
            feature_id,
            target,
            summary,
        )
        logger.info(
            "Agent set feature %s to %s",
            feature_id,
            target,
            extra={"metadata": {"feature_id": feature_id, "requested": status}},
        )
        return f"Successfully updated feature {feature_id} to status: {target}"

    async def handle(self, args: Mapping[str, Any]) -> dict[str, Any]:
        """MCP tool handler; failures come back as an error result."""

        feature_id = str(args.get("featureId") or args.get("feature_id") or "")
        status = str(args.get("status") or "")
        summary = args.get("summary") or None
        try:
            message = await self.update_status(feature_id, status, summary)
        except (FeatureNotFoundError, ValueError) as exc:
            logger.warning("UpdateFeatureStatus rejected: %s", exc)
            return {"content": [{"type": "text", "text": str(exc)}], "is_error": True}
        return {"content": [{"type": "text", "text": message}]}


def create_feature_tools_server(status_tool: FeatureStatusTool) -> Any:
    """Build the SDK MCP server that carries ``UpdateFeatureStatus``."""

    @tool(
        UPDATE_STATUS_TOOL,
        "Update the status of a feature. Use 'verified' once the feature is "
        "implemented and its tests pass. Include a short summary of the changes.",
        {"featureId": str, "status": str, "summary": str},
    )
    async def update_feature_status(args: dict[str, Any]) -> dict[str, Any]:
        return await status_tool.handle(args)

    return create_sdk_mcp_server(
        name=TOOL_SERVER_NAME,
        version="1.0.0",
        tools=[update_feature_status],
    )
