"""Filesystem watcher that turns worktree edits into git-status-changed events."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..events import EventBus, GitStatusChanged

logger = logging.getLogger(__name__)

# Inside .git only these entries reflect status-relevant changes; the rest is
# churn from git's own object and lock files.
_GIT_DIR_SIGNALS = {"index", "HEAD"}
_READ_ONLY_EVENTS = {"opened", "closed_no_write"}


@dataclass(slots=True)
class WatchResult:
    success: bool
    watch_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.watch_id is not None:
            payload["watch_id"] = self.watch_id
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class _WatchEntry:
    watch: Any
    watch_ids: set[str] = field(default_factory=set)
    debounce: asyncio.TimerHandle | None = None


def is_status_relevant(root: Path, changed: str) -> bool:
    try:
        parts = Path(changed).relative_to(root).parts
    except ValueError:
        return True
    if ".git" not in parts:
        return True
    inner = parts[parts.index(".git") + 1 :]
    return len(inner) == 1 and inner[0] in _GIT_DIR_SIGNALS


class _StatusEventHandler(FileSystemEventHandler):
    """Forward relevant watchdog events from the observer thread to the loop."""

    def __init__(self, watcher: GitStatusWatcher, key: str) -> None:
        super().__init__()
        self._watcher = watcher
        self._key = key
        self._root = Path(key)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _READ_ONLY_EVENTS:
            return
        if event.event_type == "deleted" and Path(str(event.src_path)) == self._root:
            self._watcher.fail_threadsafe(self._key)
            return
        paths = [event.src_path, getattr(event, "dest_path", "") or ""]
        if not any(path and is_status_relevant(self._root, str(path)) for path in paths):
            return
        self._watcher.notify_threadsafe(self._key)


class GitStatusWatcher:
    """Reference-counted recursive watches with debounced change notifications."""

    def __init__(
        self,
        events: EventBus,
        *,
        debounce_seconds: float = 0.5,
        loop: asyncio.AbstractEventLoop | None = None,
        observer_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._events = events
        self._debounce_seconds = debounce_seconds
        self._loop = loop
        self._observer_factory = observer_factory or Observer
        self._observer: Any | None = None
        self._entries: dict[str, _WatchEntry] = {}

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _ensure_observer(self) -> Any:
        if self._observer is None:
            observer = self._observer_factory()
            observer.start()
            self._observer = observer
        return self._observer

    def watch(self, repo_path: str) -> WatchResult:
        """Start (or join) a watch on ``repo_path``; must run on the event loop."""

        key = str(Path(repo_path).expanduser().resolve())
        if not repo_path or not Path(key).is_dir():
            return WatchResult(success=False, error="workspace-unavailable")

        watch_id = uuid4().hex
        existing = self._entries.get(key)
        if existing is not None:
            existing.watch_ids.add(watch_id)
            return WatchResult(success=True, watch_id=watch_id)

        self._get_loop()
        try:
            observer = self._ensure_observer()
            handle = observer.schedule(_StatusEventHandler(self, key), key, recursive=True)
        except (OSError, RuntimeError) as exc:
            logger.warning("Failed to watch workspace", extra={"repo_path": key, "error": str(exc)})
            return WatchResult(success=False, error=str(exc) or "Failed to watch workspace")

        self._entries[key] = _WatchEntry(watch=handle, watch_ids={watch_id})
        logger.debug("Watching workspace", extra={"repo_path": key})
        return WatchResult(success=True, watch_id=watch_id)

    def release(self, repo_path: str, watch_id: str | None = None) -> WatchResult:
        key = str(Path(repo_path).expanduser().resolve())
        entry = self._entries.get(key)
        if entry is None:
            return WatchResult(success=True)
        if watch_id:
            entry.watch_ids.discard(watch_id)
        if not entry.watch_ids:
            self._drop(key)
        return WatchResult(success=True)

    def notify_threadsafe(self, key: str) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._schedule_emit, key)

    def fail_threadsafe(self, key: str) -> None:
        """Report that the watch on ``key`` can no longer deliver events."""

        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._on_watch_error, key)

    def _schedule_emit(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        if entry.debounce is not None:
            entry.debounce.cancel()
        entry.debounce = self._get_loop().call_later(self._debounce_seconds, self._emit, key)

    def _emit(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.debounce = None
        self._events.emit(GitStatusChanged(repo_path=key))

    def _on_watch_error(self, key: str) -> None:
        if key not in self._entries:
            return
        logger.warning("Workspace watcher error", extra={"repo_path": key})
        self._drop(key)
        self._events.emit(GitStatusChanged(repo_path=key, error="watcher-error"))

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        if entry.debounce is not None:
            entry.debounce.cancel()
        if self._observer is not None:
            try:
                self._observer.unschedule(entry.watch)
            except (KeyError, OSError, RuntimeError) as exc:
                logger.debug("Unschedule failed", extra={"repo_path": key, "error": str(exc)})

    @property
    def watched_paths(self) -> list[str]:
        return sorted(self._entries)

    def close(self) -> None:
        for key in list(self._entries):
            self._drop(key)
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None


__all__ = ["GitStatusWatcher", "WatchResult", "is_status_relevant"]
