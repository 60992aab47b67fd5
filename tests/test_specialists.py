import pytest

from quartet.context import WorkflowContext
from quartet.errors import UnknownStageError
from quartet.specialists import (
    BuilderAgent,
    PlannerAgent,
    QAAgent,
    build_chat_prompt,
    build_prompt,
    excerpt,
    get_agent,
)
from quartet.specialists.base import NO_FILES, NO_REQUIREMENTS, StageAgent
from quartet.stages import Stage


class EchoAgent(StageAgent):
    stage = Stage.QA
    title = "Echo"
    mission = "Repeat things."
    fallback_template = "[$title] $requirements | $previous_stage: $previous_output"
    chat_prompt_file = None


def _context(**overrides) -> WorkflowContext:
    values = {
        "session_id": "s1",
        "workspace": "/tmp/ws",
        "request": "Build a CLI that reverses strings",
    }
    values.update(overrides)
    return WorkflowContext(**values)


def test_prompts_are_deterministic() -> None:
    context = _context(requirements="1. reverse input", stage_outputs={"planner": "spec"})

    for stage in Stage:
        assert build_prompt(stage, context) == build_prompt(stage, context)


def test_planner_prompt_carries_request() -> None:
    prompt = build_prompt("planner", _context())

    assert prompt.startswith("# Role: Planner")
    assert "Build a CLI that reverses strings" in prompt
    assert "$request" not in prompt


def test_builder_prompt_includes_requirements_and_planner_output() -> None:
    context = _context(
        requirements="1. reverse input",
        stage_outputs={"planner": "1. reverse input"},
    )

    prompt = build_prompt(Stage.BUILDER, context)

    assert prompt.startswith("# Role: Builder")
    assert "1. reverse input" in prompt
    assert "planner" in prompt


def test_template_substitution_is_exact() -> None:
    context = _context(requirements="R", stage_outputs={"builder": "built it"})

    assert EchoAgent().build_prompt(context) == "[Echo] R | builder: built it"


def test_missing_requirements_use_placeholder() -> None:
    prompt = EchoAgent().build_prompt(_context())

    assert NO_REQUIREMENTS in prompt


def test_long_previous_output_keeps_head() -> None:
    output = "HEAD-" + "x" * 500
    context = _context(requirements="R", stage_outputs={"builder": output})

    prompt = EchoAgent().build_prompt(context, excerpt_chars=50)

    assert "HEAD-" in prompt
    assert "[... 455 characters truncated]" in prompt
    assert "x" * 100 not in prompt


def test_excerpt_leaves_short_text_untouched() -> None:
    assert excerpt("short", 10) == "short"
    assert excerpt("anything", 0) == ""


def test_unknown_stage_is_rejected() -> None:
    with pytest.raises(UnknownStageError):
        build_prompt("deployer", _context())


def test_stage_aliases_resolve() -> None:
    assert isinstance(get_agent("plan"), PlannerAgent)
    assert isinstance(get_agent("verify"), QAAgent)
    assert get_agent("prod-ready").stage is Stage.PROD_READY


def test_chat_prompt_lists_files_and_message() -> None:
    context = _context(requirements="1. reverse input")

    prompt = build_chat_prompt(
        Stage.BUILDER,
        "Add a --upper flag",
        context,
        files=["a.py", "b.py", "c.py"],
        file_limit=2,
    )

    assert prompt.startswith("# Role: Builder (direct chat)")
    assert "- a.py\n- b.py\n- ... 1 more" in prompt
    assert "Add a --upper flag" in prompt
    assert "1. reverse input" in prompt


def test_chat_prompt_without_files() -> None:
    prompt = EchoAgent().build_chat_prompt("hi", _context())

    assert NO_FILES in prompt
    assert prompt.startswith("# Role: Echo (direct chat)")


def test_only_planner_may_write_requirements() -> None:
    assert PlannerAgent().allows("write_requirements") is True
    assert BuilderAgent().allows("write_requirements") is False
    assert QAAgent().allows("run_tool") is True
