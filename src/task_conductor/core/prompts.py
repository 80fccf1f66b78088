"""Prompt templates for the agent phases, change requests and conflict repair."""

from pathlib import Path

THINK_SUFFIXES = {
    "level1": "Think hard",
    "level2": "Think harder",
    "planning": "Ultrathink",
}

MAX_DIFF_CHARS = 10000


def phase_plan(mode: str) -> list[str]:
    """Ordered phases a task runs for the given mode."""
    if mode == "planning":
        return ["planner", "editor", "reviewer"]
    if mode == "no_review":
        return ["editor"]
    return ["editor", "reviewer"]


def with_think(prompt: str, mode: str) -> str:
    suffix = THINK_SUFFIXES.get(mode)
    return f"{prompt}. {suffix}" if suffix else prompt


def with_image(prompt: str, image_path: str | None) -> str:
    return f"{prompt}. See image: {image_path}" if image_path else prompt


def truncate(text: str, limit: int = MAX_DIFF_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... (truncated, {len(text) - limit} more characters)"


# ── Phase prompts ────────────────────────────────────────────────────────────


def planner_prompt(prompt: str, plan_path: str | Path) -> str:
    return (
        f"{with_think(prompt, 'planning')}\n\n"
        "Task: Deeply analyze this task and create a detailed implementation plan.\n\n"
        "1. Carefully read and understand the task description\n"
        "2. Explore the codebase: project structure, existing conventions, "
        "dependencies and the test setup\n"
        "3. Identify every component that needs to be created, modified or tested\n"
        "4. Consider edge cases and potential challenges\n"
        f"5. Write the plan as a markdown file at {plan_path}\n\n"
        "The plan should include:\n"
        "- Task summary and objectives\n"
        "- Files to be created or modified, with the specific changes\n"
        "- Implementation steps in order\n"
        "- Testing strategy\n"
        "- Risks and the harder parts in more detail\n\n"
        "Be thorough but concise. Focus on actionable steps."
    )


def editor_prompt(prompt: str, mode: str, plan_path: str | Path | None = None) -> str:
    if plan_path is None:
        return with_think(prompt, mode)
    return (
        f"{with_think(prompt, mode)}\n\n"
        f"IMPORTANT: A detailed plan has been created at {plan_path}\n\n"
        f"1. First, read the plan: cat {plan_path}\n"
        "2. Follow the plan to implement the task\n"
        "3. Adjust the plan if you find a better approach\n"
        "4. Make sure every requirement from the original prompt is met\n\n"
        f'Original task: "{prompt}"'
    )


def reviewer_prompt(prompt: str, plan_path: str | Path | None = None) -> str:
    parts = [f'Task: "{prompt}"', ""]
    if plan_path is not None:
        parts.append(f"A plan was created at {plan_path} and implementation was done based on it.")
        parts.append("")
    parts.append("Review the implementation:")
    steps = ["Run 'git diff' to see changes"]
    if plan_path is not None:
        steps.append(f"Read the plan: cat {plan_path}")
    steps += [
        "Verify requirements are met",
        "Check for bugs, security issues and code quality",
        "Fix any issues found",
        "Run tests if available",
    ]
    parts += [f"{i}. {step}" for i, step in enumerate(steps, 1)]
    parts += ["", "Begin with 'git diff'."]
    return "\n".join(parts)


def build_phase_prompts(prompt: str, mode: str, plan_path: str | Path | None) -> dict[str, str]:
    """Prompts for every phase of ``mode``. ``plan_path`` is only used in planning mode."""
    if mode == "planning":
        return {
            "planner": planner_prompt(prompt, plan_path),
            "editor": editor_prompt(prompt, mode, plan_path),
            "reviewer": reviewer_prompt(prompt, plan_path),
        }
    prompts = {"editor": editor_prompt(prompt, mode)}
    if "reviewer" in phase_plan(mode):
        prompts["reviewer"] = reviewer_prompt(prompt)
    return prompts


# ── Change requests ──────────────────────────────────────────────────────────


def change_request_prompt(previous_prompts: list[str], request: str, diff: str) -> str:
    """Prompt for a follow-up task that continues from a predecessor's branch."""
    parts = []
    if len(previous_prompts) == 1:
        parts.append(
            f'The first prompt was "{previous_prompts[0]}" (don\'t work on this), and you can '
            "see what we built in response to that prompt in the diff below."
        )
    else:
        parts.append(f"The first {len(previous_prompts)} prompts were:")
        parts += [f'{i}. "{p}"' for i, p in enumerate(previous_prompts, 1)]
        parts.append("")
        parts.append("You can see what we built in response to these prompts in the diff below.")
    parts.append(
        f'Now you are being asked to make changes to this work. The new request is "{request}" '
        "(work on this). Make those changes."
    )
    parts.append("")
    parts.append("Read the existing diff first before changing anything.")
    if diff:
        parts.append(f"\n## Existing diff\n```diff\n{truncate(diff)}\n```")
    return "\n".join(parts)


# ── Conflict resolution ──────────────────────────────────────────────────────


def conflict_resolution_prompt(
    task_prompt: str,
    task_id: str,
    branch: str,
    conflicted: list[str],
    task_diff: str,
    created_at: str | None = None,
) -> str:
    parts = [
        "# Resolve merge conflicts",
        "",
        "A merge of a finished task branch into the main branch produced conflicts.",
        "",
        "## Task",
        f"Task ID: {task_id}",
        f"Branch: {branch}",
    ]
    if created_at:
        parts.append(f"Created: {created_at}")
    parts.append(f"Original task: {task_prompt}")
    parts.append("")
    parts.append("## Conflicted files")
    parts += [f"- {path}" for path in conflicted]
    parts.append("")
    parts.append("## Changes made by the task")
    parts.append(f"```diff\n{truncate(task_diff)}\n```")
    parts.append("")
    parts.append(
        "## Instructions\n"
        "1. Open every conflicted file and resolve each conflict.\n"
        "2. Keep the behaviour the task intended to add.\n"
        "3. Preserve unrelated changes that landed on the main branch.\n"
        "4. Remove every conflict marker (<<<<<<<, =======, >>>>>>>).\n"
        "5. Do not commit; only edit the files."
    )
    return "\n".join(parts)
