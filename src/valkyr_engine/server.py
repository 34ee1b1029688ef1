"""FastMCP server bootstrap for the Valkyr engine."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import EngineSettings, get_settings
from .events import EventBus, EventLog
from .git import GitNotFoundError, GitRunner, GitStatusEngine, GitStatusWatcher
from .lifecycle import LifecycleScriptsService, ProcessSpawner, TaskLifecycleEngine
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the engine server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def create_server(
    settings: Optional[EngineSettings] = None,
    git_runner: GitRunner | None = None,
    spawner: ProcessSpawner | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with lifecycle and git tools."""

    settings = settings or get_settings()

    git_metadata = {
        "available": False,
        "path": settings.git_path,
        "version": None,
        "error": None,
    }
    if git_runner is None:
        try:
            git_runner = GitRunner(settings.git_path)
        except GitNotFoundError as exc:
            git_metadata["error"] = str(exc)
    if git_runner is not None:
        git_metadata["available"] = True
        version_result = _run_sync(git_runner.run("--version", cwd=Path.cwd()))
        if version_result.ok:
            git_metadata["version"] = version_result.stdout.strip()
        else:
            git_metadata["error"] = version_result.stderr.strip() or "git --version failed"

    events = EventBus()
    event_log = EventLog(events, maxlen=settings.event_history_size)
    scripts = LifecycleScriptsService(settings.config_filenames)
    lifecycle = TaskLifecycleEngine(
        scripts,
        spawner=spawner,
        events=events,
        git_runner=git_runner,
        settings=settings,
    )
    git_engine = (
        GitStatusEngine(git_runner, events=events, settings=settings)
        if git_runner is not None
        else None
    )
    watcher = GitStatusWatcher(events, debounce_seconds=settings.status_debounce_seconds)

    server = FastMCP(
        name="Valkyr Engine",
        version=__version__,
        instructions=(
            "Valkyr runs per-task setup/run/teardown scripts and reports git working-tree "
            "status for task worktrees. Use lifecycle_* tools to drive scripts and git_* "
            "tools to inspect, stage and revert changes."
        ),
    )

    handles = register_tools(
        server,
        lifecycle=lifecycle,
        git=git_engine,
        watcher=watcher,
        event_log=event_log,
    )

    @server.resource(
        "resource://valkyr/status",
        name="valkyr_status",
        title="Valkyr Engine Status",
        description="Provides the current runtime status for the Valkyr engine.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        task_ids = lifecycle.tracked_tasks
        phase_counts: dict[str, dict[str, int]] = {}
        for task_id in task_ids:
            record = lifecycle.get_state(task_id)
            for phase in ("setup", "run", "teardown"):
                status = record.phase(phase).status
                counts = phase_counts.setdefault(phase, {})
                counts[status] = counts.get(status, 0) + 1

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "git": git_metadata,
            "config_filenames": list(settings.config_filenames),
            "lifecycle": {
                "task_count": len(task_ids),
                "task_ids": task_ids,
                "phase_counts": phase_counts,
            },
            "git_queue": {
                "active_paths": git_engine.queue.active_paths if git_engine is not None else [],
            },
            "watcher": {"watched_paths": watcher.watched_paths},
            "events": {
                "listeners": events.listener_count,
                "recent": [event.to_dict() for event in event_log.recent(limit=5)],
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "git_metadata", git_metadata)
    setattr(server, "lifecycle_engine", lifecycle)
    setattr(server, "git_engine", git_engine)
    setattr(server, "status_watcher", watcher)
    setattr(server, "event_log", event_log)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Valkyr engine MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logger = logging.getLogger(__name__)
    logger.info(
        "Launching Valkyr engine server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "git_available": getattr(server, "git_metadata", {}).get("available"),
        },
    )
    try:
        server.run()
    finally:
        getattr(server, "lifecycle_engine").shutdown()
        getattr(server, "status_watcher").close()
        logger.info("Valkyr engine server stopped")


if __name__ == "__main__":
    main()
