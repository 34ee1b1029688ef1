from __future__ import annotations

import asyncio
from pathlib import Path

from watchdog.events import DirDeletedEvent, FileModifiedEvent, FileOpenedEvent

from valkyr_engine.events import EventBus, GitStatusChanged
from valkyr_engine.git.watcher import GitStatusWatcher, is_status_relevant


class FakeObserver:
    def __init__(self) -> None:
        self.scheduled: list[tuple[object, str, bool]] = []
        self.unscheduled: list[object] = []
        self.started = False
        self.stopped = False

    def start(self) -> None:
        self.started = True

    def schedule(self, handler, path: str, recursive: bool = False):
        handle = (handler, path, recursive)
        self.scheduled.append(handle)
        return handle

    def unschedule(self, handle) -> None:
        self.unscheduled.append(handle)

    def stop(self) -> None:
        self.stopped = True

    def join(self, timeout: float | None = None) -> None:
        return None


def _make_watcher(debounce: float = 0.01) -> tuple[GitStatusWatcher, FakeObserver, list[GitStatusChanged]]:
    observer = FakeObserver()
    bus = EventBus()
    received: list[GitStatusChanged] = []
    bus.subscribe(received.append)
    watcher = GitStatusWatcher(bus, debounce_seconds=debounce, observer_factory=lambda: observer)
    return watcher, observer, received


def test_is_status_relevant(tmp_path: Path) -> None:
    assert is_status_relevant(tmp_path, str(tmp_path / "src" / "app.py"))
    assert is_status_relevant(tmp_path, str(tmp_path / ".git" / "index"))
    assert is_status_relevant(tmp_path, str(tmp_path / ".git" / "HEAD"))
    assert not is_status_relevant(tmp_path, str(tmp_path / ".git" / "objects" / "ab" / "cdef"))
    assert not is_status_relevant(tmp_path, str(tmp_path / ".git" / "index.lock"))


def test_missing_workspace_is_rejected(tmp_path: Path) -> None:
    watcher, observer, _ = _make_watcher()

    result = watcher.watch(str(tmp_path / "missing"))

    assert result.to_dict() == {"success": False, "error": "workspace-unavailable"}
    assert observer.scheduled == []


def test_watches_are_reference_counted(tmp_path: Path) -> None:
    watcher, observer, _ = _make_watcher()

    async def scenario() -> None:
        first = watcher.watch(str(tmp_path))
        second = watcher.watch(str(tmp_path))
        assert first.success and second.success
        assert first.watch_id != second.watch_id
        assert len(observer.scheduled) == 1
        assert observer.started

        watcher.release(str(tmp_path), first.watch_id)
        assert watcher.watched_paths == [str(tmp_path.resolve())]
        watcher.release(str(tmp_path), second.watch_id)
        assert watcher.watched_paths == []
        assert observer.unscheduled == observer.scheduled

        watcher.close()
        assert observer.stopped

    asyncio.run(scenario())


def test_bursts_are_debounced_into_one_event(tmp_path: Path) -> None:
    watcher, observer, received = _make_watcher()

    async def scenario() -> None:
        watcher.watch(str(tmp_path))
        handler = observer.scheduled[0][0]
        for name in ("a.txt", "b.txt", "c.txt"):
            handler.on_any_event(FileModifiedEvent(str(tmp_path.resolve() / name)))
        await asyncio.sleep(0.1)
        watcher.close()

    asyncio.run(scenario())

    assert len(received) == 1
    assert received[0].repo_path == str(tmp_path.resolve())
    assert received[0].error is None


def test_git_internals_and_reads_are_ignored(tmp_path: Path) -> None:
    watcher, observer, received = _make_watcher()
    root = tmp_path.resolve()

    async def scenario() -> None:
        watcher.watch(str(tmp_path))
        handler = observer.scheduled[0][0]
        handler.on_any_event(FileModifiedEvent(str(root / ".git" / "objects" / "12" / "3456")))
        handler.on_any_event(FileOpenedEvent(str(root / "README.md")))
        await asyncio.sleep(0.05)
        assert received == []

        handler.on_any_event(FileModifiedEvent(str(root / ".git" / "index")))
        await asyncio.sleep(0.05)
        watcher.close()

    asyncio.run(scenario())
    assert len(received) == 1


def test_deleted_workspace_reports_watcher_error(tmp_path: Path) -> None:
    watcher, observer, received = _make_watcher()

    async def scenario() -> None:
        watcher.watch(str(tmp_path))
        handler = observer.scheduled[0][0]
        handler.on_any_event(DirDeletedEvent(str(tmp_path.resolve())))
        await asyncio.sleep(0.05)
        assert watcher.watched_paths == []
        watcher.close()

    asyncio.run(scenario())

    assert [event.error for event in received] == ["watcher-error"]
