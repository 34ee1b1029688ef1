"""Working-tree status, diffs and staging for a single repository.

Every public coroutine runs inside the repository's slot of a
:class:`~valkyr_engine.git.queue.RepoOperationQueue`, so UI polling, agent tool
calls and manual actions against one worktree never interleave git commands.
None of them raise: status and diff degrade to empty results, mutations report
``GitActionResult(success=False, error=...)``.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Awaitable, Callable

from ..config import EngineSettings, get_settings
from ..events import EventBus, GitStatusChanged
from .diff import added_file_diff, deleted_file_diff, parse_unified_diff
from .models import ChangeEntry, ChangeStatus, FileDiff, GitActionResult
from .queue import RepoOperationQueue
from .runner import GitRunner, GitRunnerError

logger = logging.getLogger(__name__)

_ESCAPE = re.compile(rb"\\([0-7]{3}|.)", re.DOTALL)
_NAMED_ESCAPES = {
    b"a": b"\a",
    b"b": b"\b",
    b"f": b"\f",
    b"n": b"\n",
    b"r": b"\r",
    b"t": b"\t",
    b"v": b"\v",
}
_READ_CHUNK = 64 * 1024


def _unescape(match: re.Match[bytes]) -> bytes:
    token = match.group(1)
    if len(token) == 3:
        return bytes([int(token, 8) & 0xFF])
    return _NAMED_ESCAPES.get(token, token)


def unquote_path(path: str) -> str:
    """Undo git's C-style quoting of paths with special characters."""

    if len(path) < 2 or not (path.startswith('"') and path.endswith('"')):
        return path
    raw = _ESCAPE.sub(_unescape, path[1:-1].encode("utf-8"))
    return raw.decode("utf-8", errors="replace")


def classify_status(code: str) -> ChangeStatus:
    if code == "??":
        return "untracked"
    if "A" in code:
        return "added"
    if "D" in code:
        return "deleted"
    if "R" in code:
        return "renamed"
    return "modified"


def parse_porcelain_line(line: str) -> tuple[str, str]:
    """Split a ``git status --porcelain`` line into (code, displayed path)."""

    code = line[:2]
    path = line[3:]
    if "R" in code and " -> " in path:
        path = path.split(" -> ")[-1]
    return code, unquote_path(path.strip())


def sum_numstat(output: str) -> tuple[int, int]:
    additions = deletions = 0
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 2:
            continue
        additions += int(parts[0]) if parts[0].isdigit() else 0
        deletions += int(parts[1]) if parts[1].isdigit() else 0
    return additions, deletions


def count_newlines_capped(path: Path, max_bytes: int) -> int | None:
    """Count ``\\n`` bytes in ``path``; ``None`` when unreadable or over budget.

    A final line without a trailing newline is not counted.
    """

    try:
        if not path.is_file() or path.stat().st_size > max_bytes:
            return None
        count = 0
        with path.open("rb") as handle:
            for chunk in iter(lambda: handle.read(_READ_CHUNK), b""):
                count += chunk.count(b"\n")
        return count
    except OSError:
        return None


def read_text_capped(path: Path, max_bytes: int) -> str | None:
    try:
        if not path.is_file() or path.stat().st_size > max_bytes:
            return None
        return path.read_bytes().decode("utf-8", errors="replace")
    except OSError:
        return None


class GitStatusEngine:
    """Compute changes and apply staging actions for repository working trees."""

    def __init__(
        self,
        runner: GitRunner | None = None,
        *,
        queue: RepoOperationQueue | None = None,
        events: EventBus | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._runner = runner or GitRunner(settings.git_path)
        self._queue = queue or RepoOperationQueue()
        self._events = events
        self._linecount_budget = settings.untracked_linecount_max_bytes
        self._diff_budget = settings.untracked_diff_max_bytes
        self._context_lines = settings.diff_context_lines

    @property
    def queue(self) -> RepoOperationQueue:
        return self._queue

    @property
    def runner(self) -> GitRunner:
        return self._runner

    async def get_status(self, repo_path: str) -> list[ChangeEntry]:
        try:
            return await self._queue.run(repo_path, lambda: self._read_status(repo_path))
        except GitRunnerError as exc:
            logger.warning("git status failed", extra={"repo_path": repo_path, "error": str(exc)})
            return []

    async def _is_work_tree(self, repo_path: str) -> bool:
        result = await self._runner.run("rev-parse", "--is-inside-work-tree", cwd=repo_path)
        return result.ok and result.stdout.strip() == "true"

    async def _read_status(self, repo_path: str) -> list[ChangeEntry]:
        if not await self._is_work_tree(repo_path):
            return []

        result = await self._runner.check(
            "status", "--porcelain", "--untracked-files=all", cwd=repo_path
        )
        changes: list[ChangeEntry] = []
        for line in result.stdout.splitlines():
            line = line.rstrip("\r")
            if len(line) < 4:
                continue
            code, file_path = parse_porcelain_line(line)
            status = classify_status(code)

            additions = deletions = 0
            staged = await self._runner.run(
                "diff", "--numstat", "--cached", "--", file_path, cwd=repo_path
            )
            if staged.ok:
                added, deleted = sum_numstat(staged.stdout)
                additions += added
                deletions += deleted
            unstaged = await self._runner.run("diff", "--numstat", "--", file_path, cwd=repo_path)
            if unstaged.ok:
                added, deleted = sum_numstat(unstaged.stdout)
                additions += added
                deletions += deleted

            if additions == 0 and deletions == 0 and status == "untracked":
                count = count_newlines_capped(Path(repo_path) / file_path, self._linecount_budget)
                if count is not None:
                    additions = count

            changes.append(
                ChangeEntry(
                    path=file_path,
                    status=status,
                    additions=additions,
                    deletions=deletions,
                    is_staged=code[0] not in (" ", "?") and code[1] == " ",
                )
            )
        return changes

    async def stage_file(self, repo_path: str, file_path: str) -> GitActionResult:
        async def operation() -> GitActionResult:
            await self._runner.check("add", "--", file_path, cwd=repo_path)
            return GitActionResult(success=True)

        return await self._mutate(repo_path, "stage", operation)

    async def stage_all_files(self, repo_path: str) -> GitActionResult:
        async def operation() -> GitActionResult:
            await self._runner.check("add", "-A", cwd=repo_path)
            return GitActionResult(success=True)

        return await self._mutate(repo_path, "stage_all", operation)

    async def unstage_file(self, repo_path: str, file_path: str) -> GitActionResult:
        async def operation() -> GitActionResult:
            await self._runner.check("reset", "HEAD", "--", file_path, cwd=repo_path)
            return GitActionResult(success=True)

        return await self._mutate(repo_path, "unstage", operation)

    async def revert_file(self, repo_path: str, file_path: str) -> GitActionResult:
        """Undo one step of change for ``file_path``.

        A staged file is only unstaged, so a single call never destroys data
        that was staged. Otherwise a file known to HEAD is checked out from
        HEAD and an untracked file is deleted.
        """

        root = Path(repo_path).resolve()
        if not (root / file_path).resolve().is_relative_to(root):
            logger.warning(
                "Refusing to revert path outside repository",
                extra={"repo_path": repo_path, "file_path": file_path},
            )
            return GitActionResult(success=False, error=f"Path is outside the repository: {file_path}")

        async def operation() -> GitActionResult:
            staged = await self._runner.run(
                "diff", "--cached", "--name-only", "--", file_path, cwd=repo_path
            )
            if staged.ok and staged.stdout.strip():
                await self._runner.check("reset", "HEAD", "--", file_path, cwd=repo_path)
                return GitActionResult(success=True, action="unstaged")

            if await self._exists_in_head(repo_path, file_path):
                await self._runner.check("checkout", "HEAD", "--", file_path, cwd=repo_path)
                return GitActionResult(success=True, action="reverted")

            target = Path(repo_path) / file_path
            if target.is_file() or target.is_symlink():
                target.unlink()
            return GitActionResult(success=True, action="reverted")

        return await self._mutate(repo_path, "revert", operation)

    async def get_file_diff(self, repo_path: str, file_path: str) -> FileDiff:
        try:
            return await self._queue.run(repo_path, lambda: self._read_diff(repo_path, file_path))
        except GitRunnerError as exc:
            logger.warning(
                "git diff failed",
                extra={"repo_path": repo_path, "file_path": file_path, "error": str(exc)},
            )
            return FileDiff()

    async def _read_diff(self, repo_path: str, file_path: str) -> FileDiff:
        result = await self._runner.run(
            "diff",
            "--no-color",
            f"--unified={self._context_lines}",
            "HEAD",
            "--",
            file_path,
            cwd=repo_path,
        )
        if result.ok:
            lines = parse_unified_diff(result.stdout)
            if lines:
                return FileDiff(lines=lines, raw_patch=result.stdout)

        in_head = await self._exists_in_head(repo_path, file_path)
        target = Path(repo_path) / file_path
        if not in_head:
            content = read_text_capped(target, self._diff_budget)
            if content is not None:
                return added_file_diff(file_path, content)
        elif not target.exists():
            previous = await self._runner.run("show", f"HEAD:{file_path}", cwd=repo_path)
            if previous.ok:
                return deleted_file_diff(file_path, previous.stdout)
        return FileDiff(lines=[], raw_patch=result.stdout if result.ok and result.stdout else None)

    async def _exists_in_head(self, repo_path: str, file_path: str) -> bool:
        result = await self._runner.run("cat-file", "-e", f"HEAD:{file_path}", cwd=repo_path)
        return result.ok

    async def _mutate(
        self,
        repo_path: str,
        action: str,
        operation: Callable[[], Awaitable[GitActionResult]],
    ) -> GitActionResult:
        try:
            outcome = await self._queue.run(repo_path, operation)
        except (GitRunnerError, OSError) as exc:
            logger.warning(
                "git action failed",
                extra={"repo_path": repo_path, "action": action, "error": str(exc)},
            )
            return GitActionResult(success=False, error=str(exc))

        if self._events is not None:
            self._events.emit(GitStatusChanged(repo_path=repo_path))
        return outcome


__all__ = [
    "GitStatusEngine",
    "classify_status",
    "count_newlines_capped",
    "parse_porcelain_line",
    "read_text_capped",
    "sum_numstat",
    "unquote_path",
]
