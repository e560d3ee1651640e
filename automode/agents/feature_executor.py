"""Drives a single feature through planning, action and verification."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from automode.abort import AbortHandle
from automode.agents import prompts
from automode.agents.scheduler import RunningTask
from automode.domain.feature import Feature, FeatureStatus
from automode.errors import OperationAborted, ProviderError
from automode.logging import get_logger
from automode.pipeline.service import PipelineService, pipeline_service
from automode.providers.base import AgentProvider
from automode.providers.factory import ProviderFactory
from automode.providers.messages import ExecuteOptions, ProviderMessage
from automode.providers.models import (
    DEFAULT_MODEL_KEY,
    model_supports_thinking,
    resolve_model_string,
    thinking_budget,
)
from automode.services.context_manager import ContextManager
from automode.services.feature_loader import FeatureLoader
from automode.services.feature_tools import (
    TOOL_SERVER_NAME,
    UPDATE_STATUS_TOOL,
    FeatureStatusTool,
    create_feature_tools_server,
)


logger = get_logger(__name__)

SendToRenderer = Callable[[dict[str, Any]], Any]
PathLike = Union[str, Path]

DEFAULT_MAX_TURNS = 1000
COMMIT_MODEL = "sonnet"
COMMIT_MAX_TURNS = 15
IMPLEMENT_PERMISSION_MODE = "acceptEdits"
STATUS_TOOL_NAME = f"mcp__{TOOL_SERVER_NAME}__{UPDATE_STATUS_TOOL}"
# Backends tagged with this capability can host the in-process tool server.
STATUS_TOOL_CAPABILITY = "mcp"
CODING_TOOLS = (
    "Read",
    "Write",
    "Edit",
    "Glob",
    "Grep",
    "Bash",
    "WebSearch",
    "WebFetch",
)
IMPLEMENT_TOOLS = CODING_TOOLS + (STATUS_TOOL_NAME,)
COMMIT_TOOLS = ("Bash", STATUS_TOOL_NAME)

ULTRATHINK_RECOMMENDED_BUDGET = 32000
ULTRATHINK_COST_PER_1K_TOKENS = 0.015
ULTRATHINK_ESTIMATED_TIME = "45-180 seconds"

THINKING_PREVIEW_CHARS = 200
RESULT_MESSAGE_CHARS = 500


@dataclass
class ExecutionResult:
    passes: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"passes": self.passes, "message": self.message}


@dataclass(frozen=True)
class ModelPlan:
    """Backend selection for one run."""

    model_key: str
    model: str
    provider: AgentProvider
    thinking_level: Optional[str] = None
    max_thinking_tokens: Optional[int] = None


def ultrathink_preparation(budget: Optional[int]) -> dict[str, Any]:
    """Warnings and estimates reported before an ``ultrathink`` run."""

    budget = budget or 0
    warnings: list[str] = []
    recommendations: list[str] = []
    if budget > ULTRATHINK_RECOMMENDED_BUDGET:
        warnings.append(
            f"Ultrathink budget ({budget} tokens) exceeds recommended 32K - "
            "may cause long-running requests"
        )
        recommendations.append("Consider using batch processing for budgets above 32K")
    estimated_cost = budget / 1000 * ULTRATHINK_COST_PER_1K_TOKENS
    if estimated_cost > 1.0:
        warnings.append(f"Estimated cost: ~${estimated_cost:.2f} per execution")
    warnings.append(f"Ultrathink tasks typically take {ULTRATHINK_ESTIMATED_TIME}")
    return {
        "warnings": warnings,
        "recommendations": recommendations,
        "estimatedCost": estimated_cost,
        "estimatedTime": ULTRATHINK_ESTIMATED_TIME,
    }


@dataclass
class _Run:
    """Per-call state shared by the phase helpers."""

    feature: Feature
    project_path: PathLike
    send: SendToRenderer
    execution: RunningTask
    context: ContextManager
    started_tools: bool = False
    error_reported: bool = False
    plan: Optional[ModelPlan] = None
    response: list[str] = field(default_factory=list)

    @property
    def feature_id(self) -> str:
        return self.feature.id

    def emit(self, event_type: str, **payload: Any) -> None:
        self.send({"type": event_type, "featureId": self.feature.id, **payload})

    async def write(self, text: str) -> None:
        await self.context.write_to_context_file(self.project_path, self.feature.id, text)

    async def progress(self, text: str) -> None:
        await self.write(text)
        self.emit("auto_mode_progress", content=text)

    async def phase(self, phase: str, line: str, message: str) -> None:
        await self.write(line)
        self.emit("auto_mode_phase", phase=phase, message=message)

    async def report_error(self, error: str) -> None:
        if self.error_reported:
            return
        self.error_reported = True
        await self.write(f"\n❌ Error: {error}\n")
        self.emit("auto_mode_error", error=error)


class FeatureExecutor:
    """Runs features against whichever backend serves their model."""

    def __init__(
        self,
        factory: ProviderFactory,
        loader: FeatureLoader,
        context: ContextManager,
        pipeline: Optional[PipelineService] = None,
        *,
        max_turns: int = DEFAULT_MAX_TURNS,
        default_model: str = DEFAULT_MODEL_KEY,
        claude_profile: Any = None,
    ) -> None:
        self.factory = factory
        self.loader = loader
        self.context = context
        self.pipeline = pipeline or pipeline_service
        self.max_turns = max_turns
        self.default_model = default_model
        self.claude_profile = claude_profile

    # ------------------------------------------------------------------
    # Model resolution
    # ------------------------------------------------------------------
    def resolve_model(self, feature: Feature, model_key: Optional[str] = None) -> ModelPlan:
        key = model_key or feature.model or self.default_model
        provider = self.factory.get_provider_for_model(key)
        level: Optional[str] = None
        budget: Optional[int] = None
        if (
            feature.thinking_level != "none"
            and provider.supports_feature("thinking")
            and model_supports_thinking(key)
        ):
            level = feature.thinking_level
            budget = thinking_budget(level)
        return ModelPlan(
            model_key=key,
            model=resolve_model_string(key),
            provider=provider,
            thinking_level=level,
            max_thinking_tokens=budget,
        )

    def _status_tool(self, project_path: PathLike) -> FeatureStatusTool:
        return FeatureStatusTool(self.loader, self.pipeline, project_path)

    @staticmethod
    def exposes_status_tool(plan: ModelPlan) -> bool:
        return plan.provider.supports_feature(STATUS_TOOL_CAPABILITY)

    def _options(
        self,
        run: _Run,
        plan: ModelPlan,
        *,
        prompt: str,
        system_prompt: str,
        allowed_tools: tuple[str, ...],
        max_turns: int,
        permission_mode: Optional[str] = IMPLEMENT_PERMISSION_MODE,
    ) -> ExecuteOptions:
        mcp_servers: Optional[dict[str, Any]] = None
        if self.exposes_status_tool(plan):
            mcp_servers = {
                TOOL_SERVER_NAME: create_feature_tools_server(self._status_tool(run.project_path))
            }
        else:
            allowed_tools = tuple(name for name in allowed_tools if name != STATUS_TOOL_NAME)
        return ExecuteOptions(
            prompt=prompt,
            model=plan.model,
            cwd=str(run.project_path),
            system_prompt=system_prompt,
            max_turns=max_turns,
            allowed_tools=allowed_tools,
            permission_mode=permission_mode,
            thinking_level=plan.thinking_level,
            max_thinking_tokens=plan.max_thinking_tokens,
            abort=run.execution.abort,
            mcp_servers=mcp_servers,
            claude_profile=self.claude_profile,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    async def _stream(self, run: _Run, plan: ModelPlan, options: ExecuteOptions) -> str:
        """Forward every normalized message in order; return the streamed text."""

        abort = run.execution.abort
        start = len(run.response)
        stream = plan.provider.execute_query(options)
        run.execution.stream = stream
        try:
            async for message in stream:
                if abort is not None and abort.aborted:
                    break
                await self._forward(run, plan, message)
        finally:
            run.execution.stream = None
            await stream.aclose()
        if abort is not None:
            abort.raise_if_aborted()
        return "".join(run.response[start:])

    async def _forward(self, run: _Run, plan: ModelPlan, message: ProviderMessage) -> None:
        if message.type == "error":
            error = message.error or "Unknown error"
            await run.report_error(error)
            raise plan.provider.classify_error(error)

        if message.type == "result":
            logger.debug(
                "Run finished with %s",
                message.subtype,
                extra={"metadata": {"feature_id": run.feature_id, "session_id": message.session_id}},
            )
            return

        for block in message.content:
            if block.type == "text" and block.text:
                run.response.append(block.text)
                await run.progress(block.text)
            elif block.type == "thinking":
                preview = (block.thinking or "")[:THINKING_PREVIEW_CHARS]
                await run.progress(f"\n💭 Thinking: {preview}...\n")
            elif block.type == "tool_use":
                if not run.started_tools:
                    run.started_tools = True
                    await run.progress("Starting code implementation...\n")
                await run.write(f"\n🔧 Tool: {block.name}\n")
                run.emit("auto_mode_tool", tool=block.name, input=block.input)

    # ------------------------------------------------------------------
    # Shared run scaffolding
    # ------------------------------------------------------------------
    def _begin(
        self,
        feature: Feature,
        project_path: PathLike,
        send: SendToRenderer,
        execution: Optional[RunningTask],
    ) -> _Run:
        record = execution or RunningTask(feature_id=feature.id)
        return _Run(feature, project_path, send, record, self.context)

    def _aborted(self, run: _Run, operation: str) -> ExecutionResult:
        logger.info(
            "%s for feature %s",
            operation,
            run.feature_id,
            extra={"metadata": {"feature_id": run.feature_id}},
        )
        return ExecutionResult(passes=False, message=operation)

    def _is_aborted(self, run: _Run) -> bool:
        handle = run.execution.abort
        return handle is not None and handle.aborted

    async def _fail(self, run: _Run, exc: Exception) -> None:
        plan = run.plan
        metadata: dict[str, Any] = {
            "feature_id": run.feature_id,
            "error_type": type(exc).__name__,
            "model": plan.model if plan else "not initialized",
            "provider": plan.provider.name if plan else "unknown",
        }
        if isinstance(exc, ProviderError):
            metadata["code"] = exc.code.value
        logger.error(
            "Feature %s failed: %s",
            run.feature_id,
            exc,
            extra={"metadata": metadata},
        )
        await run.report_error(str(exc))

    async def _verify(self, run: _Run) -> Feature:
        refreshed = await asyncio.to_thread(
            self.loader.get_feature, run.project_path, run.feature_id
        )
        run.feature = refreshed
        return refreshed

    async def _run_operation(
        self,
        run: _Run,
        operation: str,
        body: Callable[[], Awaitable[ExecutionResult]],
    ) -> ExecutionResult:
        """Run ``body`` with the abort and cleanup rules every entry point shares."""

        try:
            return await body()
        except (OperationAborted, asyncio.CancelledError):
            return self._aborted(run, operation)
        except Exception as exc:
            if self._is_aborted(run):
                return self._aborted(run, operation)
            await self._fail(run, exc)
            raise
        finally:
            run.execution.abort = None
            run.execution.stream = None

    def _plan(self, run: _Run, model_key: Optional[str] = None) -> ModelPlan:
        run.execution.abort = AbortHandle()
        plan = self.resolve_model(run.feature, model_key)
        run.plan = plan
        logger.info(
            "Using provider %s, model %s, thinking %s",
            plan.provider.name,
            plan.model,
            plan.thinking_level or "none",
            extra={"metadata": {"feature_id": run.feature_id, "model": plan.model}},
        )
        if run.feature.thinking_level == "ultrathink" and plan.thinking_level:
            preparation = ultrathink_preparation(plan.max_thinking_tokens)
            for warning in preparation["warnings"]:
                logger.warning(warning, extra={"metadata": {"feature_id": run.feature_id}})
            run.emit("auto_mode_ultrathink_preparation", **preparation)
        return plan

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    async def implement_feature(
        self,
        feature: Feature,
        project_path: PathLike,
        send_to_renderer: SendToRenderer,
        execution: Optional[RunningTask] = None,
    ) -> ExecutionResult:
        run = self._begin(feature, project_path, send_to_renderer, execution)
        description = feature.description

        async def body() -> ExecutionResult:
            await run.phase(
                "planning",
                f"📋 Planning implementation for: {description}\n",
                f"Planning implementation for: {description}",
            )
            plan = self._plan(run)
            status_tool = self.exposes_status_tool(plan)
            options = self._options(
                run,
                plan,
                prompt=prompts.build_feature_prompt(feature, status_tool=status_tool),
                system_prompt=prompts.coding_system_prompt(status_tool=status_tool),
                allowed_tools=IMPLEMENT_TOOLS,
                max_turns=self.max_turns,
            )
            run.emit(
                "auto_mode_progress",
                content="Analyzing codebase structure and creating implementation plan...",
            )

            await run.phase(
                "action",
                f"⚡ Executing implementation for: {description}\n",
                f"Executing implementation for: {description}",
            )
            response = await self._stream(run, plan, options)
            await self._claim_completion(run, plan, response)
            return await self._verification(run, plan)

        return await self._run_operation(run, "Auto mode aborted", body)

    async def resume_feature_with_context(
        self,
        feature: Feature,
        project_path: PathLike,
        send_to_renderer: SendToRenderer,
        previous_context: str,
        execution: Optional[RunningTask] = None,
    ) -> ExecutionResult:
        run = self._begin(feature, project_path, send_to_renderer, execution)
        description = feature.description

        async def body() -> ExecutionResult:
            await run.phase(
                "action",
                f"\n🔄 Resuming implementation for: {description}\n",
                f"Resuming implementation for: {description}",
            )
            plan = self._plan(run)
            status_tool = self.exposes_status_tool(plan)
            options = self._options(
                run,
                plan,
                prompt=prompts.build_resume_prompt(
                    feature, previous_context, status_tool=status_tool
                ),
                system_prompt=prompts.verification_system_prompt(status_tool=status_tool),
                allowed_tools=IMPLEMENT_TOOLS,
                max_turns=self.max_turns,
            )
            response = await self._stream(run, plan, options)
            await self._claim_completion(run, plan, response)

            result = await self._verification(run, plan, announce=False)
            await run.progress(
                "✓ Feature successfully verified and completed\n"
                if result.passes
                else "⚠ Feature still in progress - may need additional work\n"
            )
            return result

        return await self._run_operation(run, "Resume aborted", body)

    async def commit_changes_only(
        self,
        feature: Feature,
        project_path: PathLike,
        send_to_renderer: SendToRenderer,
        execution: Optional[RunningTask] = None,
    ) -> ExecutionResult:
        run = self._begin(feature, project_path, send_to_renderer, execution)

        async def body() -> ExecutionResult:
            await run.phase(
                "action",
                f"\n📝 Committing changes for: {feature.description}\n",
                "Committing changes",
            )
            run.emit("auto_mode_progress", content="Analyzing changes and creating commit...")
            plan = self._plan(run, COMMIT_MODEL)
            options = self._options(
                run,
                plan,
                prompt=prompts.build_commit_prompt(feature),
                system_prompt=prompts.COMMIT_SYSTEM_PROMPT,
                allowed_tools=COMMIT_TOOLS,
                max_turns=COMMIT_MAX_TURNS,
            )
            response = await self._stream(run, plan, options)
            await run.progress("✓ Changes committed successfully\n")
            return ExecutionResult(passes=True, message=response[:RESULT_MESSAGE_CHARS])

        return await self._run_operation(run, "Commit aborted", body)

    async def run_pipeline_steps(
        self,
        feature: Feature,
        project_path: PathLike,
        send_to_renderer: SendToRenderer,
        execution: Optional[RunningTask] = None,
    ) -> ExecutionResult:
        """Work through the pipeline steps ahead of a ``pipeline_*`` feature."""

        run = self._begin(feature, project_path, send_to_renderer, execution)

        async def body() -> ExecutionResult:
            plan = self._plan(run)
            await self._advance_pipeline(run, plan)
            refreshed = await self._verify(run)
            return ExecutionResult(
                passes=refreshed.passed(),
                message="".join(run.response)[:RESULT_MESSAGE_CHARS],
            )

        return await self._run_operation(run, "Pipeline aborted", body)

    # ------------------------------------------------------------------
    # Verification and pipeline
    # ------------------------------------------------------------------
    async def _claim_completion(self, run: _Run, plan: ModelPlan, response: str) -> None:
        """Stand in for the status tool on backends that cannot host it.

        A run that streamed to the end without an error counts as the agent
        claiming ``verified``; the claim goes through the same pipeline routing
        the tool applies.
        """

        if self.exposes_status_tool(plan):
            return
        feature = await self._verify(run)
        if feature.passed() or self.pipeline.is_pipeline_status(feature.status):
            return
        summary = response.strip()[:RESULT_MESSAGE_CHARS] or None
        await self._status_tool(run.project_path).update_status(
            feature.id, FeatureStatus.VERIFIED.value, summary
        )

    async def _verification(
        self, run: _Run, plan: ModelPlan, *, announce: bool = True
    ) -> ExecutionResult:
        description = run.feature.description
        if announce:
            await run.phase(
                "verification",
                f"✅ Verifying implementation for: {description}\n",
                f"Verifying implementation for: {description}",
            )
            await run.progress("Verifying implementation and checking test results...\n")

        refreshed = await self._verify(run)
        if self.pipeline.is_pipeline_status(refreshed.status):
            await self._advance_pipeline(run, plan)
            refreshed = await self._verify(run)

        passes = refreshed.passed()
        if announce:
            await run.progress(
                "✓ Verification successful: All tests passed\n"
                if passes
                else "✗ Verification: Tests need attention\n"
            )
        return ExecutionResult(
            passes=passes,
            message="".join(run.response)[:RESULT_MESSAGE_CHARS],
        )

    async def _advance_pipeline(self, run: _Run, plan: ModelPlan) -> None:
        config = await asyncio.to_thread(self.pipeline.get_pipeline_config, run.project_path)
        feature = await self._verify(run)
        status = feature.status
        excluded = set(feature.excluded_pipeline_steps)

        while self.pipeline.is_pipeline_status(status):
            step_id = self.pipeline.get_step_id_from_status(status)
            step = config.find(step_id) if step_id else None
            if step is None:
                logger.warning(
                    "Pipeline step %s no longer exists; finishing feature %s",
                    step_id,
                    feature.id,
                    extra={"metadata": {"feature_id": feature.id, "step_id": step_id}},
                )
            elif step.id not in excluded:
                await run.phase(
                    "pipeline",
                    f"\n🔀 Pipeline step: {step.name}\n",
                    f"Running pipeline step: {step.name}",
                )
                options = self._options(
                    run,
                    plan,
                    prompt=prompts.build_pipeline_step_prompt(feature, step),
                    system_prompt=prompts.coding_system_prompt(),
                    allowed_tools=CODING_TOOLS,
                    max_turns=self.max_turns,
                )
                await self._stream(run, plan, options)

            next_status = self.pipeline.get_next_status(
                status, config, feature.skip_tests, excluded
            )
            await asyncio.to_thread(
                self.loader.update_feature_status, run.project_path, feature.id, next_status
            )
            run.emit("auto_mode_pipeline_advanced", fromStatus=status, toStatus=next_status)
            status = next_status


__all__ = [
    "COMMIT_MODEL",
    "COMMIT_TOOLS",
    "DEFAULT_MAX_TURNS",
    "ExecutionResult",
    "FeatureExecutor",
    "IMPLEMENT_TOOLS",
    "ModelPlan",
    "STATUS_TOOL_CAPABILITY",
    "STATUS_TOOL_NAME",
    "ultrathink_preparation",
]
