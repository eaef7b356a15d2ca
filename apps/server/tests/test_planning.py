from automode_server.planning import (
    PLANNING_PROMPTS,
    build_continuation_prompt,
    build_feature_prompt,
    build_revision_prompt,
    build_task_prompt,
    can_require_approval,
    extract_plan_content,
    extract_summary,
    extract_title_from_description,
    get_phase_number,
    get_planning_mode_display_name,
    get_planning_prompt,
    get_planning_prompt_prefix,
    is_spec_generating_mode,
    parse_task_line,
    parse_tasks_from_spec,
    requires_plan_phase,
)
from automode_server.schemas import Feature, ParsedTask, PlanningMode, TaskStatus


PHASED_SPEC = """## Problem
Users cannot export reports.

```tasks
## Phase 1: Foundation
- [ ] T001: Create export model | File: src/models/export.py
- [ ] T002: Add serializer | File: src/serializers.py

## Phase 2: Core Implementation
- [ ] T003: Add export endpoint
- [ ] not a task
- [ ] T004: Wire up the UI button | File: web/export.tsx
```

[SPEC_GENERATED] Please review.
"""


def _feature(**overrides) -> Feature:
    data = {
        "id": "feat-1",
        "project_path": "/repo",
        "description": "Add CSV export\nUsers want to export reports as CSV.",
    }
    data.update(overrides)
    return Feature(**data)


def test_parse_tasks_from_block_keeps_order_and_phases() -> None:
    tasks = parse_tasks_from_spec(PHASED_SPEC)

    assert [task.id for task in tasks] == ["T001", "T002", "T003", "T004"]
    assert tasks[0].description == "Create export model"
    assert tasks[0].file_path == "src/models/export.py"
    assert tasks[0].phase == "Phase 1: Foundation"
    assert tasks[1].phase == "Phase 1: Foundation"
    assert tasks[2].file_path is None
    assert tasks[2].phase == "Phase 2: Core Implementation"
    assert tasks[3].phase == "Phase 2: Core Implementation"
    assert all(task.status == TaskStatus.PENDING for task in tasks)


def test_parse_tasks_uses_only_first_tasks_block() -> None:
    content = "```tasks\n- [ ] T001: First\n```\n\n```tasks\n- [ ] T002: Second\n```\n"

    tasks = parse_tasks_from_spec(content)

    assert [task.id for task in tasks] == ["T001"]


def test_parse_tasks_falls_back_to_loose_lines_without_phases() -> None:
    content = "## Phase 1\n- [ ] T001: Loose task | File: a.py\nnoise\n  - [ ] T002: Indented task\n- [x] T003: Done already\n"

    tasks = parse_tasks_from_spec(content)

    assert [task.id for task in tasks] == ["T001", "T002"]
    assert tasks[0].file_path == "a.py"
    assert all(task.phase is None for task in tasks)


def test_parse_tasks_returns_empty_list_without_tasks() -> None:
    assert parse_tasks_from_spec("# Plan\n\nJust prose, no tasks.") == []
    assert parse_tasks_from_spec("```tasks\n- [ ] TX01: bad id\n```") == []


def test_parse_task_line_variants() -> None:
    with_file = parse_task_line("- [ ] T010: Add route | File: api/routes.py", "Phase 2")
    assert with_file is not None
    assert with_file.id == "T010"
    assert with_file.description == "Add route"
    assert with_file.file_path == "api/routes.py"
    assert with_file.phase == "Phase 2"

    without_file = parse_task_line("- [ ] T011: Refactor helpers")
    assert without_file is not None
    assert without_file.file_path is None

    assert parse_task_line("- [ ] Refactor helpers") is None
    assert parse_task_line("T012: missing checkbox") is None


def test_planning_prompt_selection() -> None:
    assert get_planning_prompt(PlanningMode.SKIP) == ""
    assert get_planning_prompt(PlanningMode.LITE) == PLANNING_PROMPTS["lite"]
    assert get_planning_prompt(PlanningMode.LITE, True) == PLANNING_PROMPTS["lite_with_approval"]
    assert get_planning_prompt(PlanningMode.SPEC, True) == PLANNING_PROMPTS["spec"]
    assert get_planning_prompt(PlanningMode.FULL) == PLANNING_PROMPTS["full"]

    assert "[PLAN_GENERATED]" in PLANNING_PROMPTS["lite"]
    assert "[SPEC_GENERATED]" in PLANNING_PROMPTS["lite_with_approval"]
    assert "```tasks" in PLANNING_PROMPTS["spec"]
    assert "## Phase 1" in PLANNING_PROMPTS["full"]
    assert "[PHASE_COMPLETE]" in PLANNING_PROMPTS["full"]


def test_planning_prompt_prefix_adds_feature_request_header() -> None:
    assert get_planning_prompt_prefix(PlanningMode.SKIP) == ""

    prefix = get_planning_prompt_prefix(PlanningMode.SPEC)
    assert prefix.startswith(PLANNING_PROMPTS["spec"])
    assert prefix.endswith("\n\n---\n\n## Feature Request\n\n")


def test_planning_mode_helpers() -> None:
    assert is_spec_generating_mode(PlanningMode.LITE)
    assert not is_spec_generating_mode(PlanningMode.SKIP)
    assert can_require_approval(PlanningMode.FULL)
    assert not can_require_approval(PlanningMode.SKIP)
    assert get_planning_mode_display_name(PlanningMode.FULL) == "Full SDD"

    assert requires_plan_phase(PlanningMode.SPEC, False)
    assert requires_plan_phase(PlanningMode.FULL, True)
    assert requires_plan_phase(PlanningMode.LITE, True)
    assert not requires_plan_phase(PlanningMode.LITE, False)
    assert not requires_plan_phase(PlanningMode.SKIP, False)


def test_build_task_prompt_lists_completed_and_upcoming_tasks() -> None:
    tasks = [ParsedTask(id=f"T00{index}", description=f"Step {index}") for index in range(1, 8)]
    tasks[1].file_path = "src/step2.py"
    tasks[1].phase = "Phase 1"

    prompt = build_task_prompt(tasks[1], tasks, 1, "THE PLAN", "use snake_case")

    assert prompt.startswith("# Task Execution: T002")
    assert "**Primary File:** src/step2.py" in prompt
    assert "**Phase:** Phase 1" in prompt
    assert "- [x] T001: Step 1" in prompt
    assert "- [ ] T003: Step 3" in prompt
    assert "- [ ] T005: Step 5" in prompt
    assert "T006: Step 6" not in prompt
    assert "... and 2 more tasks" in prompt
    assert "### User Feedback\nuse snake_case" in prompt
    assert "THE PLAN" in prompt


def test_build_task_prompt_for_last_task_has_no_upcoming_section() -> None:
    tasks = [ParsedTask(id="T001", description="Only step")]

    prompt = build_task_prompt(tasks[0], tasks, 0, "plan")

    assert "Already Completed" not in prompt
    assert "Coming Up Next" not in prompt
    assert "User Feedback" not in prompt


def test_extract_title_from_description() -> None:
    assert extract_title_from_description("") == "Untitled Feature"
    assert extract_title_from_description("   ") == "Untitled Feature"
    assert extract_title_from_description("Short title\nmore") == "Short title"

    long_title = "x" * 80
    title = extract_title_from_description(long_title)
    assert len(title) == 60
    assert title.endswith("...")


def test_build_feature_prompt_includes_spec_and_test_instructions() -> None:
    prompt = build_feature_prompt(_feature(spec="Must stream rows."))

    assert "**Feature ID:** feat-1" in prompt
    assert "**Title:** Add CSV export" in prompt
    assert "**Specification:**\nMust stream rows." in prompt
    assert "project's tests" in prompt
    assert "<summary>" in prompt

    skipped = build_feature_prompt(_feature(skip_tests=True, title="Export"))
    assert "**Title:** Export" in skipped
    assert "project's tests" not in skipped


def test_revision_and_continuation_prompts() -> None:
    feature = _feature(planning_mode=PlanningMode.SPEC, require_plan_approval=True)

    revision = build_revision_prompt(feature, "old plan", "split T002")
    assert revision.startswith(PLANNING_PROMPTS["spec"])
    assert "## Previous Plan\n\nold plan" in revision
    assert "## Reviewer Feedback\n\nsplit T002" in revision

    edited = build_revision_prompt(feature, "old plan", None, edited_plan="edited plan")
    assert "edited plan" in edited
    assert "old plan" not in edited

    continuation = build_continuation_prompt(feature, "approved plan", "keep it small")
    assert "## Approved Plan\napproved plan" in continuation
    assert "keep it small" in continuation


def test_extract_plan_summary_and_phase_helpers() -> None:
    assert extract_plan_content("the plan\n[SPEC_GENERATED] review it") == "the plan"
    assert extract_plan_content("outline\n[PLAN_GENERATED] done\nimplementation") == "outline"
    assert extract_plan_content("  no marker  ") == "no marker"

    assert extract_summary("work <summary>first</summary> more <summary> last </summary>") == "last"
    assert extract_summary("no tags") is None

    assert get_phase_number("Phase 2: Core") == 2
    assert get_phase_number("Cleanup") is None
    assert get_phase_number(None) is None
