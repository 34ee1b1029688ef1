"""Per-repository serialization of git operations."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


def normalize_repo_path(repo_path: str | Path) -> str:
    return str(Path(repo_path).expanduser().resolve())


class RepoOperationQueue:
    """Run git operations one at a time per repository path.

    Each path maps to the tail of a chain of pending operations. A new call
    waits for the current tail, runs, then releases its own slot. Operations on
    different paths never wait on each other.

    Operations must not call :meth:`run` for the same path before returning:
    the inner call would queue behind its own caller and deadlock.
    """

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Future[None]] = {}

    async def run(self, repo_path: str | Path, operation: Callable[[], Awaitable[T]]) -> T:
        key = normalize_repo_path(repo_path)
        previous = self._tails.get(key)
        slot: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._tails[key] = slot
        try:
            if previous is not None and not previous.done():
                await asyncio.shield(previous)
            return await operation()
        finally:
            self._release(key, previous, slot)

    def _release(
        self,
        key: str,
        previous: asyncio.Future[None] | None,
        slot: asyncio.Future[None],
    ) -> None:
        # A caller cancelled while still waiting keeps its slot held until the
        # predecessor settles, so later callers never overtake a running operation.
        if previous is not None and not previous.done():
            previous.add_done_callback(lambda _: self._settle(key, slot))
        else:
            self._settle(key, slot)

    def _settle(self, key: str, slot: asyncio.Future[None]) -> None:
        if not slot.done():
            slot.set_result(None)
        if self._tails.get(key) is slot:
            del self._tails[key]

    def is_busy(self, repo_path: str | Path) -> bool:
        return normalize_repo_path(repo_path) in self._tails

    @property
    def active_paths(self) -> list[str]:
        return sorted(self._tails)


__all__ = ["RepoOperationQueue", "normalize_repo_path"]
