"""Prompt text handed to agent backends for each kind of run."""

from __future__ import annotations

import textwrap

from automode.domain.feature import Feature
from automode.domain.pipeline import PipelineStep
from automode.services.feature_tools import UPDATE_STATUS_TOOL

__all__ = [
    "COMMIT_SYSTEM_PROMPT",
    "build_commit_prompt",
    "build_feature_prompt",
    "build_pipeline_step_prompt",
    "build_resume_prompt",
    "coding_system_prompt",
    "verification_system_prompt",
]


def _completion_instruction(status_tool: bool) -> str:
    if status_tool:
        return (
            f'When the feature works and its tests pass, call the {UPDATE_STATUS_TOOL} tool '
            'with status "verified" and a one-paragraph summary of what changed.'
        )
    return (
        "When the feature works and its tests pass, end with a one-paragraph summary of "
        "what changed. Finishing without an error marks the feature complete."
    )


def coding_system_prompt(*, status_tool: bool = True) -> str:
    give_up = (
        "If you cannot finish, explain what is left instead of calling the tool."
        if status_tool
        else "If you cannot finish, describe what is left in your summary."
    )
    return "\n".join(
        [
            "You are an autonomous senior software engineer working inside an existing repository.",
            "Implement exactly one feature per session, following the conventions already present in the codebase.",
            "",
            "Work in this order:",
            "1. Read the relevant code before changing anything.",
            "2. Implement the feature with focused, minimal changes.",
            "3. Write or update tests that cover the new behaviour and run them.",
            f"4. {_completion_instruction(status_tool)}",
            "",
            f"Never mark a feature verified while tests are failing. {give_up}",
        ]
    )


def verification_system_prompt(*, status_tool: bool = True) -> str:
    return "\n".join(
        [
            "You are continuing work on a feature that was started in an earlier session.",
            "Review what was already done, finish anything incomplete, and run the tests.",
            _completion_instruction(status_tool),
        ]
    )


COMMIT_SYSTEM_PROMPT = textwrap.dedent(
    """
    You are a git commit assistant that creates professional conventional commit messages.

    IMPORTANT RULES:
    - DO NOT modify any code
    - DO NOT write tests
    - DO NOT do anything except analyzing changes and committing them
    - Use the git command line tools via Bash
    - Create proper conventional commit messages based on what was actually changed
    """
).strip()


def _feature_header(feature: Feature) -> str:
    lines = [
        f"Feature ID: {feature.id}",
        f"Category: {feature.category or 'uncategorized'}",
        f"Description: {feature.description or '(no description)'}",
    ]
    if feature.steps:
        lines.append("")
        lines.append("Steps to verify:")
        lines.extend(f"{index}. {step}" for index, step in enumerate(feature.steps, start=1))
    return "\n".join(lines)


def _done_line(feature: Feature, status_tool: bool) -> str:
    if status_tool:
        return (
            f'When you are done, call {UPDATE_STATUS_TOOL} with featureId "{feature.id}" '
            'and status "verified".'
        )
    return "When you are done, finish with a short summary of the changes."


def build_feature_prompt(feature: Feature, *, status_tool: bool = True) -> str:
    testing = (
        "Tests are skipped for this feature; mark it complete once the implementation is done."
        if feature.skip_tests
        else "Write tests for this feature and make sure the whole suite passes."
    )
    return "\n\n".join(
        [
            "Implement the following feature.",
            _feature_header(feature),
            testing,
            _done_line(feature, status_tool),
        ]
    )


def build_resume_prompt(
    feature: Feature, previous_context: str, *, status_tool: bool = True
) -> str:
    context = previous_context.strip() or "(no previous output was recorded)"
    return "\n\n".join(
        [
            "Resume work on the following feature.",
            _feature_header(feature),
            "Output from the previous session:",
            context,
            "Continue from where it stopped. Do not redo finished work.",
            _done_line(feature, status_tool),
        ]
    )


def build_pipeline_step_prompt(feature: Feature, step: PipelineStep) -> str:
    instructions = step.instructions.strip() or f"Carry out the '{step.name}' step."
    return "\n\n".join(
        [
            f"Pipeline step: {step.name}",
            _feature_header(feature),
            "Instructions:",
            instructions,
            "Only do what this step asks. Report what you did when finished.",
        ]
    )


_COMMIT_PROMPT_TEMPLATE = textwrap.dedent(
    """
    Please commit the current changes with a proper conventional commit message.

    **Feature Context:**
    Category: {category}
    Description: {description}

    **Your Task:**

    1. Run `git status` to see all untracked and modified files
    2. Run `git diff` to see the actual changes (both staged and unstaged)
    3. Run `git log --oneline -5` to see recent commit message styles in this repo
    4. Draft a conventional commit message from the changes:
       - Format: `type(scope): description`
       - Types: feat, fix, refactor, style, docs, test, chore
       - Keep the description under 72 characters and focus on what was done
    5. Run `git add .` to stage all changes
    6. Create the commit, using a HEREDOC so the message keeps its formatting:
       git commit -m "$(cat <<'EOF'
       type(scope): Short description here

       Optional longer description if needed.
       EOF
       )"

    **IMPORTANT:**
    - DO NOT use the feature description verbatim as the commit message
    - DO NOT modify any code or run tests; ONLY commit the existing changes
    """
).strip()


def build_commit_prompt(feature: Feature) -> str:
    return _COMMIT_PROMPT_TEMPLATE.format(
        category=feature.category, description=feature.description
    )
