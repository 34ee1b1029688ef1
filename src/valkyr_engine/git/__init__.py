"""Git status, diff and staging with per-repository serialization."""

from .models import ChangeEntry, DiffLine, FileDiff, GitActionResult, RepoMapping
from .multi_repo import get_multi_repo_status
from .queue import RepoOperationQueue
from .runner import FakeGitRunner, GitCommandError, GitNotFoundError, GitResult, GitRunner
from .status import GitStatusEngine
from .watcher import GitStatusWatcher, WatchResult

__all__ = [
    "ChangeEntry",
    "DiffLine",
    "FakeGitRunner",
    "FileDiff",
    "GitActionResult",
    "GitCommandError",
    "GitNotFoundError",
    "GitResult",
    "GitRunner",
    "GitStatusEngine",
    "GitStatusWatcher",
    "RepoMapping",
    "RepoOperationQueue",
    "WatchResult",
    "get_multi_repo_status",
]
