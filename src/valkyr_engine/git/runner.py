"""Async runner for the git CLI."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from ..env import sanitize_environment


class GitRunnerError(RuntimeError):
    """Base class for git runner errors."""


class GitNotFoundError(GitRunnerError):
    """Raised when the git executable cannot be located."""


@dataclass(slots=True)
class GitResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitCommandError(GitRunnerError):
    """Raised by :meth:`GitRunner.check` when git exits non-zero."""

    def __init__(self, result: GitResult) -> None:
        detail = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        super().__init__(f"git {' '.join(result.args[1:])} failed: {detail}")
        self.result = result


class GitRunner:
    """Execute git commands asynchronously in a given working directory."""

    def __init__(self, executable: Path | str | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | str | None) -> Path:
        if explicit:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(self, *args: str, cwd: str | Path) -> GitResult:
        """Run ``git <args>`` in ``cwd`` and capture its output."""

        return await self._invoke(str(cwd), *args)

    async def check(self, *args: str, cwd: str | Path) -> GitResult:
        """Like :meth:`run` but raise :class:`GitCommandError` on failure."""

        result = await self.run(*args, cwd=cwd)
        if not result.ok:
            raise GitCommandError(result)
        return result

    async def _invoke(self, cwd: str, *args: str) -> GitResult:
        cmd = [str(self._executable_path), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment({"GIT_TERMINAL_PROMPT": "0"}),
            )
        except OSError as exc:
            # Missing cwd and similar spawn failures behave like a failed command.
            return GitResult(args=tuple(cmd), returncode=-1, stdout="", stderr=str(exc))
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return GitResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeGitRunner(GitRunner):
    """Test double that replays scripted git responses in call order."""

    def __init__(self, responses: Iterable[GitResult | str | int] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, tuple[str, ...]]] = []
        self._executable_path = Path("/usr/bin/git")

    def queue(self, *responses: GitResult | str | int) -> None:
        """Append responses: a ``str`` is a successful stdout, an ``int`` a bare exit code."""

        self._responses.extend(responses)

    async def _invoke(self, cwd: str, *args: str) -> GitResult:  # type: ignore[override]
        self._invocations.append((cwd, tuple(args)))
        if not self._responses:
            return GitResult(args=("git", *args), returncode=0, stdout="", stderr="")
        response = self._responses.pop(0)
        if isinstance(response, GitResult):
            return response
        if isinstance(response, int):
            return GitResult(args=("git", *args), returncode=response, stdout="", stderr="error")
        return GitResult(args=("git", *args), returncode=0, stdout=response, stderr="")

    @property
    def invocations(self) -> list[tuple[str, tuple[str, ...]]]:
        return self._invocations

    @property
    def commands(self) -> list[tuple[str, ...]]:
        return [args for _, args in self._invocations]


__all__ = [
    "FakeGitRunner",
    "GitCommandError",
    "GitNotFoundError",
    "GitResult",
    "GitRunner",
    "GitRunnerError",
]
