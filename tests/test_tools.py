from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from valkyr_engine.config import EngineSettings
from valkyr_engine.events import EventBus, EventLog
from valkyr_engine.git import FakeGitRunner, GitStatusEngine, GitStatusWatcher
from valkyr_engine.lifecycle import TaskLifecycleEngine
from valkyr_engine.tools import GIT_UNAVAILABLE, register_tools


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = None
        if args and isinstance(args[0], str):
            provided_name = args[0]
        provided_name = kwargs.get("name", provided_name)

        def decorator(fn):
            tool_name = provided_name or fn.__name__
            tool = StubTool(fn, tool_name)
            self._tools[tool_name] = tool
            return tool

        return decorator


class StubProcess:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.stdout = None
        self.stderr = None
        self.terminated = False
        self.killed = False
        self._done: asyncio.Future[int] | None = None

    def _future(self) -> asyncio.Future[int]:
        if self._done is None:
            self._done = asyncio.get_running_loop().create_future()
        return self._done

    async def wait(self) -> int:
        return await asyncio.shield(self._future())

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        self.killed = True
        if not self._future().done():
            self._future().set_result(-9)


class StubSpawner:
    def __init__(self) -> None:
        self.processes: list[StubProcess] = []

    async def spawn(self, command: str, *, cwd: str, env) -> StubProcess:
        process = StubProcess(pid=9000 + len(self.processes))
        self.processes.append(process)
        return process


class StubScripts:
    def __init__(self, scripts: dict[str, str]) -> None:
        self._scripts = scripts

    def get_script(self, project_path: str, phase: str) -> str | None:
        return self._scripts.get(phase)


class StubObserver:
    def start(self) -> None:
        pass

    def schedule(self, handler, path, recursive=False):
        return (handler, path)

    def unschedule(self, handle) -> None:
        pass

    def stop(self) -> None:
        pass

    def join(self, timeout=None) -> None:
        pass


class StubLogger:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any]]] = []

    def info(self, message: str, extra: dict[str, Any] | None = None) -> None:
        self.records.append(("info", message, extra or {}))

    def debug(self, message: str, extra: dict[str, Any] | None = None) -> None:
        self.records.append(("debug", message, extra or {}))


class StubContext:
    def __init__(self) -> None:
        self.logger = StubLogger()


def _register(
    *,
    scripts: dict[str, str] | None = None,
    git_runner: FakeGitRunner | None = None,
    with_git: bool = True,
):
    settings = EngineSettings()
    bus = EventBus()
    event_log = EventLog(bus, maxlen=50)
    spawner = StubSpawner()
    lifecycle = TaskLifecycleEngine(
        StubScripts(scripts if scripts is not None else {"run": "npm run dev"}),
        spawner=spawner,
        events=bus,
        git_runner=FakeGitRunner(),
        settings=settings,
    )
    git = GitStatusEngine(git_runner or FakeGitRunner(), events=bus, settings=settings) if with_git else None
    watcher = GitStatusWatcher(bus, observer_factory=StubObserver)
    server = StubServer()
    handles = register_tools(server, lifecycle=lifecycle, git=git, watcher=watcher, event_log=event_log)
    return server, handles, lifecycle, spawner


def test_registers_every_tool() -> None:
    server, handles, _, _ = _register()

    assert set(server._tools) == {
        "lifecycle_get_script",
        "lifecycle_setup",
        "lifecycle_run_start",
        "lifecycle_run_stop",
        "lifecycle_teardown",
        "lifecycle_get_state",
        "lifecycle_clear_task",
        "lifecycle_events",
        "git_status",
        "git_multi_repo_status",
        "git_file_diff",
        "git_stage_file",
        "git_stage_all",
        "git_unstage_file",
        "git_revert_file",
        "git_watch_status",
        "git_unwatch_status",
    }
    assert handles.git_status.name == "git_status"


def test_get_script_validates_phase() -> None:
    _, handles, _, _ = _register()

    assert handles.lifecycle_get_script.fn("/p", "deploy") == {
        "success": False,
        "error": "Unknown lifecycle phase 'deploy'",
    }
    assert handles.lifecycle_get_script.fn("/p", "run") == {"success": True, "script": "npm run dev"}
    assert handles.lifecycle_get_script.fn("/p", "setup") == {"success": True, "script": None}


def test_lifecycle_round_trip_through_tools() -> None:
    _, handles, _, spawner = _register()
    context = StubContext()

    async def scenario() -> None:
        started = await handles.lifecycle_run_start.fn("t1", "/w/t1", "/p", context=context)
        assert started == {"success": True}

        state = handles.lifecycle_get_state.fn("t1")
        assert state["success"] is True
        assert state["state"]["run"]["status"] == "running"
        assert state["state"]["run"]["pid"] == spawner.processes[0].pid

        assert handles.lifecycle_run_stop.fn("t1") == {"success": True}
        assert spawner.processes[0].terminated

        skipped = await handles.lifecycle_setup.fn("t1", "/w/t1", "/p")
        assert skipped == {"success": True, "skipped": True}

        events = handles.lifecycle_events.fn(task_id="t1")
        assert events["success"] is True
        assert [event["status"] for event in events["events"]] == ["starting"]

        assert handles.lifecycle_clear_task.fn("t1") == {"success": True}
        assert spawner.processes[0].killed

    asyncio.run(scenario())

    assert ("info", "Run start requested", {"task_id": "t1", "success": True}) in context.logger.records


def test_git_status_tool_serializes_changes(tmp_path: Path) -> None:
    runner = FakeGitRunner(["true\n", " M app.py\n", "", "2\t1\tapp.py\n"])
    _, handles, _, _ = _register(git_runner=runner)

    payload = asyncio.run(handles.git_status.fn(str(tmp_path)))

    assert payload == {
        "success": True,
        "changes": [
            {"path": "app.py", "status": "modified", "additions": 2, "deletions": 1, "is_staged": False}
        ],
    }


def test_git_revert_tool_reports_action(tmp_path: Path) -> None:
    _, handles, _, _ = _register(git_runner=FakeGitRunner(["app.py\n", ""]))

    payload = asyncio.run(handles.git_revert_file.fn(str(tmp_path), "app.py"))

    assert payload == {"success": True, "action": "unstaged"}


def test_multi_repo_tool_rejects_bad_mapping() -> None:
    _, handles, _, _ = _register()

    payload = asyncio.run(handles.git_multi_repo_status.fn([{"relative_path": "sub"}]))

    assert payload == {"success": False, "error": "Each mapping needs a target_path"}


def test_git_tools_report_missing_git(tmp_path: Path) -> None:
    _, handles, _, _ = _register(with_git=False)

    async def scenario() -> list[dict[str, Any]]:
        return [
            await handles.git_status.fn(str(tmp_path)),
            await handles.git_file_diff.fn(str(tmp_path), "a.py"),
            await handles.git_stage_all.fn(str(tmp_path)),
        ]

    for payload in asyncio.run(scenario()):
        assert payload == {"success": False, "error": GIT_UNAVAILABLE}


def test_watch_tools(tmp_path: Path) -> None:
    _, handles, _, _ = _register()

    async def scenario() -> None:
        watched = handles.git_watch_status.fn(str(tmp_path))
        assert watched["success"] is True
        assert watched["watch_id"]
        assert handles.git_unwatch_status.fn(str(tmp_path), watched["watch_id"]) == {"success": True}
        assert handles.git_watch_status.fn(str(tmp_path / "gone")) == {
            "success": False,
            "error": "workspace-unavailable",
        }

    asyncio.run(scenario())
