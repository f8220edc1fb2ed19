from __future__ import annotations

import asyncio
import json

from typer.testing import CliRunner

from browser_qa import factory
from browser_qa.cli import _handle_line, app
from browser_qa.config import AppConfig
from browser_qa.notifications.base import CollectingSink

from fakes import FakeLauncher

PASSING_JUDGE = '{"passed": true, "actual": "Saved banner shown", "evidence": "mock"}'


def _install_fakes(monkeypatch):
    launcher = FakeLauncher()
    sink = CollectingSink()
    runtimes: list[factory.Runtime] = []

    def fake_build_runtime(config, sink=None, **kwargs):  # type: ignore[no-untyped-def]
        runtime = factory.build_runtime(config, sink, launcher=launcher)
        runtimes.append(runtime)
        return runtime

    monkeypatch.setattr("browser_qa.cli.build_runtime", fake_build_runtime)
    monkeypatch.setattr("browser_qa.cli.build_sink", lambda config: sink)
    return launcher, sink, runtimes


def test_run_command_success(monkeypatch, tmp_path):
    launcher, sink, runtimes = _install_fakes(monkeypatch)
    runner = CliRunner()

    result = runner.invoke(
        app,
        [
            "run",
            "e: read the title",
            "--llm-provider",
            "mock",
            "--model",
            "openai/gpt-4o",
            "--headless",
            "--url",
            "https://app.test/",
            "--data-dir",
            str(tmp_path),
        ],
    )

    assert result.exit_code == 0, result.output
    name, profile_dir, headless = launcher.launches[0]
    assert name == "main"
    assert profile_dir == (tmp_path / ".browser-profile").resolve()
    assert headless is True
    assert launcher.launched["main"].context.pages[0].url == "https://app.test/"
    assert "[extract] read the title" in sink.messages("info")
    assert launcher.closed
    assert runtimes[0].config.llm.model == "openai/gpt-4o"


def test_run_command_failure_exit_code(monkeypatch, tmp_path):
    _, sink, _ = _install_fakes(monkeypatch)

    result = CliRunner().invoke(
        app,
        ["run", "@ghost e: read the title", "--llm-provider", "mock", "--data-dir", str(tmp_path)],
    )

    assert result.exit_code == 1
    assert sink.messages("error") == ['Command failed: Browser "ghost" not found']


def test_test_command_reports_pass(monkeypatch, tmp_path):
    _install_fakes(monkeypatch)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "llm:\n"
        "  provider: mock\n"
        "  parameters:\n"
        f"    reply: '{PASSING_JUDGE}'\n"
        "store:\n"
        "  backend: memory\n"
    )
    plan = {"title": "Save works", "steps": [{"action": "Click Save", "expected": "Saved banner"}]}

    result = CliRunner().invoke(
        app,
        ["test", json.dumps(plan), "--config", str(config_path), "--data-dir", str(tmp_path)],
    )

    assert result.exit_code == 0, result.output
    assert "Report: " in result.output


def test_test_command_failing_verdict_exits_nonzero(monkeypatch, tmp_path):
    _, sink, _ = _install_fakes(monkeypatch)
    plan = {"title": "Save works", "steps": [{"action": "Click Save", "expected": "Saved banner"}]}

    result = CliRunner().invoke(
        app,
        ["test", json.dumps(plan), "--llm-provider", "mock", "--data-dir", str(tmp_path)],
    )

    assert result.exit_code == 1
    assert "Report: " not in result.output
    assert any(message.startswith("Report saved: ") for message in sink.messages("info"))
    assert (tmp_path / "reports").is_dir()


def test_cli_overrides_reach_load_config(monkeypatch, tmp_path):
    captured: dict[str, object] = {}

    def fake_load_config(path, *, env_file=None, **overrides):  # type: ignore[no-untyped-def]
        captured["path"] = path
        captured["env_file"] = env_file
        captured["overrides"] = overrides
        return AppConfig.model_validate({"llm": {"provider": "mock"}, "data_dir": str(tmp_path)})

    _install_fakes(monkeypatch)
    monkeypatch.setattr("browser_qa.cli.load_config", fake_load_config)
    env_file = tmp_path / "vars.env"
    env_file.write_text("BROWSER_QA_TARGET_URL=https://env.test/\n")

    result = CliRunner().invoke(
        app,
        [
            "run",
            "o: what is here",
            "--env-file",
            str(env_file),
            "--llm-provider",
            "mock",
            "--api-key",
            "secret",
            "--headed",
            "--url",
            "https://app.test/",
        ],
    )

    assert result.exit_code == 0, result.output
    assert captured["path"] is None
    assert captured["env_file"] == env_file
    assert captured["overrides"] == {
        "llm": {"provider": "mock", "api_key": "secret"},
        "browser": {"headless": False},
        "target_url": "https://app.test/",
    }


def test_version_command():
    result = CliRunner().invoke(app, ["version"])
    assert result.exit_code == 0
    assert result.output.strip()


def test_shell_line_errors_keep_the_session_alive(tmp_path):
    config = AppConfig.model_validate(
        {"llm": {"provider": "mock"}, "store": {"backend": "memory"}, "data_dir": str(tmp_path)}
    )
    sink = CollectingSink()
    runtime = factory.build_runtime(config, sink, launcher=FakeLauncher())

    async def scenario():
        await runtime.start()
        try:
            await _handle_line(runtime, "browser:kill main", sink)
            await _handle_line(runtime, "knowledge", sink)
            await _handle_line(runtime, "e: read the title", sink)
            await _handle_line(runtime, "browser:spawn main", sink)
            await _handle_line(runtime, "knowledge", sink)
        finally:
            await runtime.aclose()

    asyncio.run(scenario())

    assert sink.messages("error") == [
        "Command failed: No active browser. Spawn one first.",
        "Command failed: No active browser. Spawn one first.",
    ]
    assert sink.messages("log")[-1].startswith("Nothing learned about ")
