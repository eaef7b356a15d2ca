from __future__ import annotations

import re

from automode_server.schemas import Feature, ParsedTask, PlanningMode


SPEC_GENERATED_MARKER = "[SPEC_GENERATED]"
PLAN_GENERATED_MARKER = "[PLAN_GENERATED]"
TASK_START_MARKER = "[TASK_START]"
TASK_COMPLETE_MARKER = "[TASK_COMPLETE]"
PHASE_COMPLETE_MARKER = "[PHASE_COMPLETE]"

_TASKS_BLOCK_RE = re.compile(r"```tasks\s*([\s\S]*?)```")
_LOOSE_TASK_LINE_RE = re.compile(r"- \[ \] T\d{3}:.*$", re.MULTILINE)
_PHASE_HEADER_RE = re.compile(r"^##\s*(.+)$")
_TASK_WITH_FILE_RE = re.compile(r"- \[ \] (T\d{3}):\s*([^|]+)(?:\|\s*File:\s*(.+))?$")
_TASK_SIMPLE_RE = re.compile(r"- \[ \] (T\d{3}):\s*(.+)$")
_PHASE_NUMBER_RE = re.compile(r"(?i)\bphase\s+(\d+)")
_SUMMARY_RE = re.compile(r"<summary>([\s\S]*?)</summary>")

_PLAN_FIRST = (
    "Do not narrate exploration, tool calls or reasoning before the plan. Study the "
    "codebase quietly, then reply with the structured plan and nothing else."
)

_LITE_OUTLINE = """Write a short planning outline:

1. **Goal**: the outcome, in one sentence
2. **Approach**: how you will get there, in two or three sentences
3. **Files to Touch**: each file and the change it needs
4. **Tasks**: a numbered list of 3 to 7 steps
5. **Risks**: anything likely to go wrong"""

_TASK_TRACKING = f"""Once approved, work through the tasks one at a time, in order. For every task:
1. Before starting, print "{TASK_START_MARKER} T###: Description"
2. Do the work
3. When finished, print "{TASK_COMPLETE_MARKER} T###: short summary\""""

PLANNING_PROMPTS: dict[str, str] = {
    "lite": f"""## Planning Phase (Lite)

{_PLAN_FIRST}

{_LITE_OUTLINE}

When the outline is written, print:
"{PLAN_GENERATED_MARKER} Planning outline complete."

Then continue straight into the implementation.""",
    "lite_with_approval": f"""## Planning Phase (Lite)

{_PLAN_FIRST}

{_LITE_OUTLINE}

When the outline is written, print:
"{SPEC_GENERATED_MARKER} Review the outline above. Reply 'approved' to continue or send feedback for a revision."

Do not start implementing until the outline is explicitly approved.""",
    "spec": f"""## Specification Phase

{_PLAN_FIRST}

Produce a specification with a task breakdown the system can execute. Wait for approval before changing any code.

### Specification Format

1. **Problem**: what is wrong or missing, from the user's point of view
2. **Solution**: the approach in one or two sentences
3. **Acceptance Criteria**: 3 to 5 GIVEN / WHEN / THEN statements
4. **Files to Modify**: a table of file, purpose and action (create, modify or delete)
5. **Implementation Tasks**: list every task in exactly this form, inside a tasks block:
   ```tasks
   - [ ] T001: [Description] | File: [path/to/file]
   - [ ] T002: [Description] | File: [path/to/file]
   ```
   Number tasks T001, T002, ... in dependency order. Start each description with a verb and name the main file it touches.
6. **Verification**: how to confirm the feature works

When the specification is written, print on its own line:
"{SPEC_GENERATED_MARKER} Review the specification above. Reply 'approved' to continue or send feedback for a revision."

Do not start implementing until the specification is explicitly approved.

{_TASK_TRACKING}""",
    "full": f"""## Full Specification Phase

{_PLAN_FIRST}

Produce a complete specification with tasks grouped into phases. Wait for approval before changing any code.

### Specification Format

1. **Problem Statement**: two or three sentences from the user's point of view
2. **User Story**: As a [user], I want [goal], so that [benefit]
3. **Acceptance Criteria**: GIVEN / WHEN / THEN scenarios for the happy path, edge cases and error handling
4. **Technical Context**: affected files, dependencies, constraints and patterns to follow
5. **Non-Goals**: what this feature deliberately leaves out
6. **Implementation Tasks**: list every task in exactly this form, inside a tasks block:
   ```tasks
   ## Phase 1: Foundation
   - [ ] T001: [Description] | File: [path/to/file]
   - [ ] T002: [Description] | File: [path/to/file]

   ## Phase 2: Core Implementation
   - [ ] T003: [Description] | File: [path/to/file]

   ## Phase 3: Integration and Testing
   - [ ] T004: [Description] | File: [path/to/file]
   ```
   Task numbers run on across phases. Order tasks by dependency inside each phase.
7. **Success Metrics**: measurable signs that the work is done
8. **Risks and Mitigations**: a table of risk and mitigation

When the specification is written, print on its own line:
"{SPEC_GENERATED_MARKER} Review the specification above. Reply 'approved' to continue or send feedback for a revision."

Do not start implementing until the specification is explicitly approved.

{_TASK_TRACKING}

After the last task of a phase, print:
"{PHASE_COMPLETE_MARKER} Phase N complete\"""",
}

_MODE_DISPLAY_NAMES = {
    PlanningMode.SKIP: "Skip Planning",
    PlanningMode.LITE: "Lite Planning",
    PlanningMode.SPEC: "Specification",
    PlanningMode.FULL: "Full SDD",
}


def get_planning_prompt(mode: PlanningMode, require_approval: bool = False) -> str:
    if mode == PlanningMode.SKIP:
        return ""
    if mode == PlanningMode.LITE and require_approval:
        return PLANNING_PROMPTS["lite_with_approval"]
    return PLANNING_PROMPTS.get(mode.value, "")


def get_planning_prompt_prefix(mode: PlanningMode, require_approval: bool = False) -> str:
    prompt = get_planning_prompt(mode, require_approval)
    if not prompt:
        return ""
    return prompt + "\n\n---\n\n## Feature Request\n\n"


def is_spec_generating_mode(mode: PlanningMode) -> bool:
    return mode in (PlanningMode.LITE, PlanningMode.SPEC, PlanningMode.FULL)


def can_require_approval(mode: PlanningMode) -> bool:
    return mode != PlanningMode.SKIP


def get_planning_mode_display_name(mode: PlanningMode) -> str:
    return _MODE_DISPLAY_NAMES.get(mode, mode.value)


def requires_plan_phase(mode: PlanningMode, require_approval: bool) -> bool:
    """Whether the run stops after planning to parse, persist and possibly gate the plan.

    Lite planning without approval plans and implements in a single prompt.
    """
    if mode in (PlanningMode.SPEC, PlanningMode.FULL):
        return True
    return mode == PlanningMode.LITE and require_approval


def parse_tasks_from_spec(content: str) -> list[ParsedTask]:
    block = _TASKS_BLOCK_RE.search(content)
    if block is None:
        return [
            task
            for task in (parse_task_line(line) for line in _LOOSE_TASK_LINE_RE.findall(content))
            if task is not None
        ]

    tasks: list[ParsedTask] = []
    phase: str | None = None
    for raw_line in block.group(1).split("\n"):
        line = raw_line.strip()
        header = _PHASE_HEADER_RE.match(line)
        if header:
            phase = header.group(1).strip()
            continue
        if line.startswith("- [ ]"):
            task = parse_task_line(line, phase)
            if task is not None:
                tasks.append(task)
    return tasks


def parse_task_line(line: str, phase: str | None = None) -> ParsedTask | None:
    match = _TASK_WITH_FILE_RE.search(line)
    if match is not None:
        file_path = match.group(3).strip() if match.group(3) else None
        return ParsedTask(id=match.group(1), description=match.group(2).strip(), file_path=file_path or None, phase=phase)

    simple = _TASK_SIMPLE_RE.search(line)
    if simple is not None:
        return ParsedTask(id=simple.group(1), description=simple.group(2).strip(), phase=phase)
    return None


def get_phase_number(phase: str | None) -> int | None:
    if not phase:
        return None
    match = _PHASE_NUMBER_RE.search(phase)
    return int(match.group(1)) if match else None


def extract_plan_content(text: str) -> str:
    """Return the plan the agent wrote ahead of its generated marker."""
    for marker in (SPEC_GENERATED_MARKER, PLAN_GENERATED_MARKER):
        index = text.find(marker)
        if index != -1:
            return text[:index].strip()
    return text.strip()


def extract_summary(text: str) -> str | None:
    matches = _SUMMARY_RE.findall(text)
    if not matches:
        return None
    return matches[-1].strip() or None


def extract_title_from_description(description: str) -> str:
    if not description or not description.strip():
        return "Untitled Feature"
    first_line = description.strip().split("\n")[0].strip()
    if len(first_line) <= 60:
        return first_line
    return first_line[:57] + "..."


def build_feature_prompt(feature: Feature) -> str:
    title = feature.title or extract_title_from_description(feature.description)
    prompt = (
        "## Feature Implementation Task\n\n"
        f"**Feature ID:** {feature.id}\n"
        f"**Title:** {title}\n"
        f"**Description:** {feature.description}\n"
    )
    if feature.spec:
        prompt += f"\n**Specification:**\n{feature.spec}\n"

    if feature.skip_tests:
        steps = (
            "1. Explore the codebase to learn its structure\n"
            "2. Decide how to implement the change\n"
            "3. Make the code changes\n"
            "4. Follow the patterns already in the codebase"
        )
    else:
        steps = (
            "1. Explore the codebase\n"
            "2. Decide how to implement the change\n"
            "3. Make the code changes\n"
            "4. Verify the change with the project's tests"
        )
    prompt += f"\n## Instructions\n\nImplement this feature:\n{steps}\n\nWrap your final summary in <summary> tags."
    return prompt


def build_task_prompt(
    task: ParsedTask,
    all_tasks: list[ParsedTask],
    task_index: int,
    plan_content: str,
    user_feedback: str | None = None,
) -> str:
    completed = all_tasks[:task_index]
    remaining = all_tasks[task_index + 1:]

    lines = [
        f"# Task Execution: {task.id}",
        "",
        "You are carrying out one task of a larger feature implementation.",
        "",
        "## Your Current Task",
        "",
        f"**Task ID:** {task.id}",
        f"**Description:** {task.description}",
    ]
    if task.file_path:
        lines.append(f"**Primary File:** {task.file_path}")
    if task.phase:
        lines.append(f"**Phase:** {task.phase}")
    lines.extend(["", "## Context", ""])

    if completed:
        lines.append(f"### Already Completed ({len(completed)} tasks)")
        lines.extend(f"- [x] {done.id}: {done.description}" for done in completed)
        lines.append("")

    if remaining:
        lines.append(f"### Coming Up Next ({len(remaining)} tasks remaining)")
        lines.extend(f"- [ ] {upcoming.id}: {upcoming.description}" for upcoming in remaining[:3])
        if len(remaining) > 3:
            lines.append(f"... and {len(remaining) - 3} more tasks")
        lines.append("")

    if user_feedback:
        lines.extend(["### User Feedback", user_feedback, ""])

    lines.extend(
        [
            "### Reference: Full Plan",
            "<details>",
            plan_content,
            "</details>",
            "",
            "## Instructions",
            "",
            f'1. Complete task {task.id} only: "{task.description}"',
            "2. Leave the other tasks alone",
            "3. Follow the existing codebase patterns",
            f"4. When done, print {TASK_COMPLETE_MARKER} {task.id}: followed by a summary of what you implemented",
            "",
            f"Start on task {task.id} now.",
        ]
    )
    return "\n".join(lines)


def build_revision_prompt(
    feature: Feature,
    previous_plan: str,
    feedback: str | None,
    edited_plan: str | None = None,
) -> str:
    prefix = get_planning_prompt_prefix(feature.planning_mode, feature.require_plan_approval)
    sections = [
        prefix + build_feature_prompt(feature),
        "## Previous Plan",
        edited_plan or previous_plan,
    ]
    if edited_plan:
        sections.append("The reviewer edited the plan above. Use their edits as the starting point.")
    if feedback:
        sections.extend(["## Reviewer Feedback", feedback])
    sections.append("## Task\nRevise the plan to address the review, then print the generated marker again.")
    return "\n\n".join(sections)


def build_continuation_prompt(feature: Feature, approved_plan: str, feedback: str | None = None) -> str:
    prompt = (
        "## Continuing Feature Implementation\n\n"
        f"{build_feature_prompt(feature)}\n\n"
        "## Approved Plan\n"
        f"{approved_plan}\n"
    )
    if feedback:
        prompt += f"\n## Reviewer Notes\n{feedback}\n"
    prompt += "\n## Instructions\nThe plan above is approved. Implement it now."
    return prompt
