"""Value types returned by the git status engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

ChangeStatus = Literal["modified", "added", "deleted", "renamed", "untracked"]
DiffLineType = Literal["context", "add", "del"]
RevertAction = Literal["unstaged", "reverted"]


@dataclass(slots=True)
class ChangeEntry:
    path: str
    status: ChangeStatus
    additions: int
    deletions: int
    is_staged: bool
    diff: str | None = None
    repo_name: str | None = None
    repo_cwd: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(slots=True)
class DiffLine:
    type: DiffLineType
    left: str | None = None
    right: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        if self.left is not None:
            payload["left"] = self.left
        if self.right is not None:
            payload["right"] = self.right
        return payload


@dataclass(slots=True)
class FileDiff:
    lines: list[DiffLine] = field(default_factory=list)
    raw_patch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lines": [line.to_dict() for line in self.lines],
            "raw_patch": self.raw_patch,
        }


@dataclass(slots=True)
class RepoMapping:
    """A repository nested inside a task's working tree."""

    relative_path: str
    target_path: str


@dataclass(slots=True)
class GitActionResult:
    """Outcome of a working-tree mutation; failures never raise."""

    success: bool
    action: RevertAction | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


__all__ = [
    "ChangeEntry",
    "ChangeStatus",
    "DiffLine",
    "DiffLineType",
    "FileDiff",
    "GitActionResult",
    "RepoMapping",
    "RevertAction",
]
