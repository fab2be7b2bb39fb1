from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from foreman.agent import (
    AgentLauncher,
    CommandResult,
    CommandRunner,
    FakeCommandRunner,
    identity_environment,
    sanitize_environment,
)
from foreman.errors import AgentNotFoundError


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


def test_command_runner_captures_output(tmp_path: Path) -> None:
    script = write_script(tmp_path / "tool", "echo out\necho err >&2\nexit 3\n")

    result = asyncio.run(CommandRunner().run(str(script), cwd=tmp_path))

    assert result.returncode == 3
    assert not result.ok
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"
    assert result.output == "out\n\nerr\n"


def test_command_runner_missing_executable(tmp_path: Path) -> None:
    result = asyncio.run(CommandRunner().run(str(tmp_path / "missing")))
    assert result.returncode == 127
    assert not result.ok


def test_command_runner_timeout(tmp_path: Path) -> None:
    script = write_script(tmp_path / "slow", "sleep 5\n")

    result = asyncio.run(CommandRunner(timeout=0.2).run(str(script)))

    assert result.returncode == -1
    assert "timed out" in result.stderr


def test_fake_runner_prefers_longest_prefix() -> None:
    fake = FakeCommandRunner(
        {
            ("git",): CommandResult(args=(), returncode=0, stdout="generic", stderr=""),
            ("git", "status"): CommandResult(args=(), returncode=0, stdout="status", stderr=""),
        }
    )

    assert asyncio.run(fake.run("git", "status", "--porcelain")).stdout == "status"
    assert asyncio.run(fake.run("git", "fetch")).stdout == "generic"
    assert asyncio.run(fake.run("bd", "list")).stdout == ""
    assert fake.invocations == [("git", "status", "--porcelain"), ("git", "fetch"), ("bd", "list")]
    assert fake.called("git", "fetch")


def test_fake_runner_consumes_sequences() -> None:
    fake = FakeCommandRunner()
    fake.on(
        ["bd", "list"],
        [
            CommandResult(args=(), returncode=1, stdout="", stderr="no db"),
            CommandResult(args=(), returncode=0, stdout="[]", stderr=""),
        ],
    )

    codes = [asyncio.run(fake.run("bd", "list")).returncode for _ in range(3)]

    assert codes == [1, 0, 0]


def test_launcher_builds_stream_json_args(tmp_path: Path) -> None:
    script = write_script(tmp_path / "gemini", "exit 0\n")
    launcher = AgentLauncher(script, flags=["--yolo", "--sandbox"])

    args = launcher.build_args("do the task", model="gemini-3-pro-preview")

    assert args == [
        str(script),
        "--yolo",
        "--sandbox",
        "--model",
        "gemini-3-pro-preview",
        "--output-format",
        "stream-json",
        "do the task",
    ]
    assert launcher.quota_args() == [str(script), "--dump-quota"]


def test_launcher_not_found(tmp_path: Path) -> None:
    with pytest.raises(AgentNotFoundError):
        AgentLauncher(tmp_path / "missing")


def test_launcher_spawn_streams_merged_output(tmp_path: Path) -> None:
    script = write_script(
        tmp_path / "gemini",
        'echo \'{"type": "init", "model": "flash"}\'\necho "warning on stderr" >&2\necho "$HOME"\n',
    )
    launcher = AgentLauncher(script)

    async def scenario() -> tuple[list[str], int]:
        process = await launcher.spawn("directive", cwd=tmp_path, env={"HOME": "/tmp/identity"})
        lines = [line async for line in process.lines()]
        return lines, await process.wait()

    lines, returncode = asyncio.run(scenario())

    assert returncode == 0
    assert lines[0] == '{"type": "init", "model": "flash"}'
    assert "warning on stderr" in lines
    assert lines[-1] == "/tmp/identity"


def test_terminate_kills_worker(tmp_path: Path) -> None:
    script = write_script(tmp_path / "gemini", "sleep 30\n")
    launcher = AgentLauncher(script)

    async def scenario() -> int:
        process = await launcher.spawn("directive", cwd=tmp_path)
        process.terminate()
        process.terminate()
        return await asyncio.wait_for(process.wait(), timeout=5)

    assert asyncio.run(scenario()) != 0


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    monkeypatch.setenv("VIRTUAL_ENV", "/venv")
    env = sanitize_environment({"EXTRA": "1"})
    assert "PYTHONPATH" not in env
    assert "VIRTUAL_ENV" not in env
    assert env["EXTRA"] == "1"


def test_identity_environment() -> None:
    assert identity_environment("/home/id") == {
        "GEMINI_FORCE_FILE_STORAGE": "true",
        "HOME": "/home/id",
        "GEMINI_CLI_HOME": "/home/id",
    }
    assert identity_environment(None) == {"GEMINI_FORCE_FILE_STORAGE": "true"}
