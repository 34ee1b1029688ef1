"""Unified diff parsing and synthetic patches for files git cannot diff."""

from __future__ import annotations

from typing import Iterable

from .models import DiffLine, FileDiff

_HEADER_PREFIXES = ("diff ", "index ", "--- ", "+++ ", "@@")


def parse_unified_diff(patch: str) -> list[DiffLine]:
    """Reconstruct side-by-side lines from a unified diff.

    Header lines are dropped. Lines that carry no ``' '``, ``-`` or ``+``
    prefix (such as ``\\ No newline at end of file``) are dropped as well.
    """

    lines: list[DiffLine] = []
    for raw in patch.split("\n"):
        line = raw.rstrip("\r")
        if not line or line.startswith(_HEADER_PREFIXES):
            continue
        prefix, content = line[0], line[1:]
        if prefix == " ":
            lines.append(DiffLine(type="context", left=content, right=content))
        elif prefix == "-":
            lines.append(DiffLine(type="del", left=content))
        elif prefix == "+":
            lines.append(DiffLine(type="add", right=content))
    return lines


def added_file_diff(path: str, content: str) -> FileDiff:
    """Diff for a file with no baseline: every line is an addition."""

    lines = content.split("\n")
    body = _prefixed("+", lines)
    patch = f"--- /dev/null\n+++ b/{path}\n@@ -0,0 +1,{len(lines)} @@\n{body}"
    return FileDiff(lines=[DiffLine(type="add", right=line) for line in lines], raw_patch=patch)


def deleted_file_diff(path: str, content: str) -> FileDiff:
    """Diff for a file removed from the working tree: every line is a deletion."""

    lines = content.split("\n")
    body = _prefixed("-", lines)
    patch = f"--- a/{path}\n+++ /dev/null\n@@ -1,{len(lines)} +0,0 @@\n{body}"
    return FileDiff(lines=[DiffLine(type="del", left=line) for line in lines], raw_patch=patch)


def _prefixed(prefix: str, lines: Iterable[str]) -> str:
    return "\n".join(f"{prefix}{line}" for line in lines)


__all__ = ["added_file_diff", "deleted_file_diff", "parse_unified_diff"]
