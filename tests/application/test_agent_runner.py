import pytest

from iterbuild.application.services.agent_runner import AgentRunner, is_model_unavailable
from iterbuild.exceptions import AgentFailed, MockBuildFailed
from iterbuild.infrastructure.command_runner import CommandResult

from conftest import PAGE_SOURCE, FakeRunner

UNAVAILABLE = CommandResult(returncode=1, stdout="", stderr="error: model_not_found: gpt-5-codex")


def _live_runner(fake, tmp_path, models=("gpt-5-codex", "o3")):
    return AgentRunner(command_runner=fake, model_candidates=models, log_dir=tmp_path / "logs")


def test_model_unavailable_patterns():
    assert is_model_unavailable("The requested model 'x' is not available")
    assert is_model_unavailable("Model gpt-9 DOES NOT EXIST")
    assert not is_model_unavailable("rate limited")


def test_agent_command_shape(tmp_path):
    cmd = AgentRunner().build_command("o3", tmp_path)
    assert cmd[:5] == ["codex", "-a", "never", "-s", "workspace-write"]
    assert cmd[cmd.index("-m") + 1] == "o3"
    assert cmd[cmd.index("-C") + 1] == str(tmp_path)
    assert cmd[-2:] == ["--json", "-"]


@pytest.mark.asyncio
async def test_falls_back_only_on_model_unavailable(tmp_path):
    fake = FakeRunner({"codex": [UNAVAILABLE, CommandResult(0, '{"event":"done"}', "")]})
    output = tmp_path / "logs" / "agent.jsonl"

    result = await _live_runner(fake, tmp_path).run(
        job_id="j", worktree_path=tmp_path, prompt="do the thing", output_path=output
    )

    assert result.model == "o3"
    assert result.attempts == 2
    models = [call["cmd"][call["cmd"].index("-m") + 1] for call in fake.calls_to("codex")]
    assert models == ["gpt-5-codex", "o3"]
    assert all(call["stdin"] == "do the thing" for call in fake.calls_to("codex"))
    assert output.read_text(encoding="utf-8").startswith('{"event":"done"}')


@pytest.mark.asyncio
async def test_other_failures_stop_immediately(tmp_path):
    fake = FakeRunner({"codex": [CommandResult(2, "", "sandbox denied write"), CommandResult(0, "", "")]})
    output = tmp_path / "agent.jsonl"

    with pytest.raises(AgentFailed) as exc:
        await _live_runner(fake, tmp_path).run(job_id="j", worktree_path=tmp_path, prompt="p", output_path=output)

    assert len(fake.calls_to("codex")) == 1
    assert "sandbox denied write" in exc.value.message
    assert "sandbox denied write" in output.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_all_models_unavailable_fails(tmp_path):
    fake = FakeRunner({"codex": [UNAVAILABLE, UNAVAILABLE]})
    with pytest.raises(AgentFailed):
        await _live_runner(fake, tmp_path).run(
            job_id="j", worktree_path=tmp_path, prompt="p", output_path=tmp_path / "a.jsonl"
        )
    assert len(fake.calls_to("codex")) == 2


@pytest.mark.asyncio
async def test_no_candidates_fails(tmp_path):
    runner = _live_runner(FakeRunner(), tmp_path, models=("", None))
    with pytest.raises(AgentFailed, match="no agent model candidates"):
        await runner.run(job_id="j", worktree_path=tmp_path, prompt="p", output_path=tmp_path / "a.jsonl")


@pytest.mark.asyncio
async def test_mock_mode_appends_marker_once(tmp_path):
    page = tmp_path / "src" / "app" / "demo" / "page.tsx"
    page.parent.mkdir(parents=True)
    page.write_text(PAGE_SOURCE, encoding="utf-8")
    fake = FakeRunner()
    runner = AgentRunner(command_runner=fake, fake_mode=True)
    output = tmp_path / "agent.jsonl"

    result = await runner.run(job_id="job-7", worktree_path=tmp_path, prompt="p", output_path=output)
    await runner.run(job_id="job-8", worktree_path=tmp_path, prompt="p", output_path=output)

    content = page.read_text(encoding="utf-8")
    assert content.count("Iteration marker") == 1
    assert "// Iteration marker: build job-7" in content
    assert output.read_text(encoding="utf-8") == '{"event":"mock-build-applied"}\n'
    assert result.model is None
    assert fake.calls == []


@pytest.mark.asyncio
async def test_mock_mode_without_target_fails(tmp_path):
    runner = AgentRunner(fake_mode=True)
    with pytest.raises(MockBuildFailed):
        await runner.run(job_id="j", worktree_path=tmp_path, prompt="p", output_path=tmp_path / "a.jsonl")
