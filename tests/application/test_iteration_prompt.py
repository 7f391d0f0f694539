import pytest

from iterbuild.application.services.iteration_prompt import (
    DEFAULT_OBJECTIVE,
    read_iteration_prompt_text,
    render_iteration_spec,
    render_prompt,
    write_text,
)
from iterbuild.domain.guardrails import GuardrailPolicy
from iterbuild.domain.models import BuildJob, Session


def test_iteration_spec_lists_signal_and_scope():
    text = render_iteration_spec(
        session_id="s1", iteration_number=3, validated_text="Shorter signup", policy=GuardrailPolicy()
    )
    assert text.startswith("# Iteration 3 Build Spec")
    assert "- Shorter signup" in text
    assert "## Allowed Paths\n- src/app/demo" in text
    assert "- package.json" in text


def test_prompt_falls_back_to_default_objective():
    text = render_prompt(
        validated_text="",
        product_spec_path=None,
        tech_spec_path="/specs/tech.md",
        iteration_spec_path="/rt/specs/s1/iteration-1-build-spec.md",
        policy=GuardrailPolicy(),
    )
    assert DEFAULT_OBJECTIVE in text
    assert "Product spec path: (missing)" in text
    assert "Tech spec path: /specs/tech.md" in text
    assert "- Change only UI-facing files." in text


@pytest.mark.asyncio
async def test_read_prompt_prefers_active_job(paths):
    older = await write_text(paths.prompt("s1", 1), "first prompt")
    newer = await write_text(paths.prompt("s1", 2), "second prompt")
    session = Session(
        id="s1",
        build_jobs=[
            BuildJob(id="j1", session_id="s1", iteration_number=1, created_at="t", prompt_path=str(older)),
            BuildJob(id="j2", session_id="s1", iteration_number=2, created_at="t", prompt_path=str(newer)),
        ],
        active_build_job_id="j1",
    )
    assert await read_iteration_prompt_text(session, paths) == "first prompt"

    session.active_build_job_id = None
    assert await read_iteration_prompt_text(session, paths) == "second prompt"


@pytest.mark.asyncio
async def test_read_prompt_refuses_paths_outside_runtime(paths, tmp_path):
    outside = await write_text(tmp_path / "elsewhere" / "prompt.txt", "secret")
    session = Session(
        id="s1",
        build_jobs=[BuildJob(id="j1", session_id="s1", iteration_number=1, created_at="t", prompt_path=str(outside))],
    )
    assert await read_iteration_prompt_text(session, paths) is None
    assert await read_iteration_prompt_text(Session(id="s2"), paths) is None
