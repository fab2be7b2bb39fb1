"""Async runners for external commands and worker processes."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Mapping, NamedTuple, Protocol, Sequence

from ..errors import AgentNotFoundError, ProcessSpawnError
from .utils import sanitize_environment

logger = logging.getLogger(__name__)

# Worker stream-json lines can carry whole file contents.
_STREAM_LIMIT = 16 * 1024 * 1024


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of an external command invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, the way a terminal would show them."""

        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


class CommandRunner:
    """Execute short-lived tracker and VCS commands asynchronously."""

    def __init__(self, *, timeout: float | None = None) -> None:
        self._timeout = timeout

    async def run(
        self,
        *args: str,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> CommandResult:
        return await self._invoke(tuple(args), cwd=cwd, env=env)

    async def _invoke(
        self,
        args: tuple[str, ...],
        *,
        cwd: Path | str | None,
        env: Mapping[str, str] | None,
    ) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=sanitize_environment(env),
            )
        except OSError as exc:
            return CommandResult(args=args, returncode=127, stdout="", stderr=str(exc))

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            _kill_quietly(process)
            await process.wait()
            logger.warning(
                "Command timed out",
                extra={"args": list(args), "timeout": self._timeout},
            )
            return CommandResult(
                args=args,
                returncode=-1,
                stdout="",
                stderr=f"timed out after {self._timeout}s",
            )

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return CommandResult(args=args, returncode=process.returncode, stdout=stdout, stderr=stderr)


class CommandCall(NamedTuple):
    args: tuple[str, ...]
    cwd: str | None


class FakeCommandRunner(CommandRunner):
    """Test double that answers commands by longest matching argument prefix."""

    def __init__(
        self,
        rules: Mapping[Sequence[str], CommandResult | Sequence[CommandResult]] | None = None,
    ) -> None:
        super().__init__()
        self._rules: dict[tuple[str, ...], list[CommandResult]] = {}
        for prefix, response in (rules or {}).items():
            self.on(prefix, response)
        self._calls: list[CommandCall] = []

    def on(
        self,
        prefix: Sequence[str],
        response: CommandResult | Sequence[CommandResult],
    ) -> None:
        """Register a response; a sequence is consumed in order, the last one repeating."""

        if isinstance(response, CommandResult):
            responses = [response]
        else:
            responses = list(response)
        self._rules[tuple(prefix)] = responses

    async def _invoke(  # type: ignore[override]
        self,
        args: tuple[str, ...],
        *,
        cwd: Path | str | None,
        env: Mapping[str, str] | None,
    ) -> CommandResult:
        self._calls.append(CommandCall(args=args, cwd=str(cwd) if cwd is not None else None))
        best: tuple[str, ...] | None = None
        for prefix in self._rules:
            if args[: len(prefix)] == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return CommandResult(args=args, returncode=0, stdout="", stderr="")
        responses = self._rules[best]
        template = responses.pop(0) if len(responses) > 1 else responses[0]
        return CommandResult(
            args=args,
            returncode=template.returncode,
            stdout=template.stdout,
            stderr=template.stderr,
        )

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return [call.args for call in self._calls]

    @property
    def calls(self) -> list[CommandCall]:
        return list(self._calls)

    def called(self, *prefix: str) -> bool:
        return any(call.args[: len(prefix)] == prefix for call in self._calls)


class ProcessHandle(Protocol):
    """Opaque handle for a running worker; the scheduler only spawns, kills and waits."""

    pid: int | None

    def lines(self) -> AsyncIterator[str]:
        ...

    async def wait(self) -> int:
        ...

    def terminate(self) -> None:
        ...


class WorkerProcess:
    """Wraps an asyncio subprocess running one worker."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self._terminated = False

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def terminated(self) -> bool:
        return self._terminated

    async def lines(self) -> AsyncIterator[str]:
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.warning("Worker output line exceeded stream limit", extra={"pid": self.pid})
                continue
            if not raw:
                return
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def wait(self) -> int:
        return await self._process.wait()

    def terminate(self) -> None:
        """Hard-kill the worker. There is no graceful shutdown signal."""

        self._terminated = True
        _kill_quietly(self._process)


class AgentLauncher:
    """Spawn worker CLI processes in stream-json mode."""

    def __init__(
        self,
        executable: Path | str | None = None,
        *,
        flags: Sequence[str] | None = None,
        quota_flags: Sequence[str] | None = None,
    ) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._flags = list(flags or [])
        self._quota_flags = list(quota_flags or ["--dump-quota"])

    @staticmethod
    def _resolve_executable(explicit: Path | str | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            if candidate.parent == Path("."):
                found = shutil.which(str(explicit))
                if found is not None:
                    return Path(found)
            raise AgentNotFoundError(f"Worker executable not found at {candidate}")

        binary = shutil.which("gemini")
        if binary is None:
            raise AgentNotFoundError("Worker executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    def build_args(self, directive: str, *, model: str | None = None) -> list[str]:
        args: list[str] = [str(self._executable_path), *self._flags]
        if model:
            args.extend(["--model", model])
        args.extend(["--output-format", "stream-json", directive])
        return args

    def quota_args(self) -> list[str]:
        return [str(self._executable_path), *self._quota_flags]

    async def spawn(
        self,
        directive: str,
        *,
        cwd: Path,
        model: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessHandle:
        # The directive is a positional argument; the worker CLI rejects piped stdin.
        args = self.build_args(directive, model=model)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(cwd),
                env=sanitize_environment(env),
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise ProcessSpawnError(f"Failed to start worker: {exc}") from exc
        return WorkerProcess(process)


def _kill_quietly(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass


__all__ = [
    "AgentLauncher",
    "CommandCall",
    "CommandResult",
    "CommandRunner",
    "FakeCommandRunner",
    "ProcessHandle",
    "WorkerProcess",
]
