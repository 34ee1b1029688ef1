"""Tool registration for the Valkyr engine MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..events import EventLog
from ..git import GitStatusEngine, GitStatusWatcher, RepoMapping, get_multi_repo_status
from ..lifecycle import PHASES, TaskLifecycleEngine

logger = logging.getLogger(__name__)

GIT_UNAVAILABLE = "git executable is unavailable"


@dataclass(slots=True)
class ToolHandles:
    lifecycle_get_script: Any
    lifecycle_setup: Any
    lifecycle_run_start: Any
    lifecycle_run_stop: Any
    lifecycle_teardown: Any
    lifecycle_get_state: Any
    lifecycle_clear_task: Any
    lifecycle_events: Any
    git_status: Any
    git_multi_repo_status: Any
    git_file_diff: Any
    git_stage_file: Any
    git_stage_all: Any
    git_unstage_file: Any
    git_revert_file: Any
    git_watch_status: Any
    git_unwatch_status: Any


def _parse_mappings(raw: list[dict[str, str]]) -> list[RepoMapping]:
    mappings: list[RepoMapping] = []
    for item in raw:
        target = item.get("target_path") or item.get("targetPath")
        if not target:
            raise ValueError("Each mapping needs a target_path")
        relative = item.get("relative_path", item.get("relativePath", ""))
        mappings.append(RepoMapping(relative_path=relative or "", target_path=target))
    return mappings


def register_tools(
    server: FastMCP,
    *,
    lifecycle: TaskLifecycleEngine,
    git: GitStatusEngine | None,
    watcher: GitStatusWatcher,
    event_log: EventLog,
) -> ToolHandles:
    """Register lifecycle and git tools on the server."""

    # -- lifecycle ------------------------------------------------------------------

    def _lifecycle_get_script(
        project_path: str, phase: str, context: Context | None = None
    ) -> dict[str, Any]:
        """Return the configured command for one lifecycle phase, if any."""

        if phase not in PHASES:
            return {"success": False, "error": f"Unknown lifecycle phase '{phase}'"}
        script = lifecycle.get_script(project_path, phase)  # type: ignore[arg-type]
        _emit_log(
            context,
            "debug",
            "Resolved lifecycle script",
            extra={"project_path": project_path, "phase": phase, "configured": script is not None},
        )
        return {"success": True, "script": script}

    async def _lifecycle_setup(
        task_id: str, task_path: str, project_path: str, context: Context | None = None
    ) -> dict[str, Any]:
        result = await lifecycle.run_setup(task_id, task_path, project_path)
        _emit_log(context, "info", "Setup finished", extra={"task_id": task_id, **result.to_dict()})
        return result.to_dict()

    async def _lifecycle_run_start(
        task_id: str, task_path: str, project_path: str, context: Context | None = None
    ) -> dict[str, Any]:
        result = await lifecycle.start_run(task_id, task_path, project_path)
        _emit_log(context, "info", "Run start requested", extra={"task_id": task_id, **result.to_dict()})
        return result.to_dict()

    def _lifecycle_run_stop(task_id: str, context: Context | None = None) -> dict[str, Any]:
        result = lifecycle.stop_run(task_id)
        _emit_log(context, "info", "Run stop requested", extra={"task_id": task_id, **result.to_dict()})
        return result.to_dict()

    async def _lifecycle_teardown(
        task_id: str, task_path: str, project_path: str, context: Context | None = None
    ) -> dict[str, Any]:
        result = await lifecycle.run_teardown(task_id, task_path, project_path)
        _emit_log(context, "info", "Teardown finished", extra={"task_id": task_id, **result.to_dict()})
        return result.to_dict()

    def _lifecycle_get_state(task_id: str, context: Context | None = None) -> dict[str, Any]:
        return {"success": True, "state": lifecycle.get_state(task_id).to_dict()}

    def _lifecycle_clear_task(task_id: str, context: Context | None = None) -> dict[str, Any]:
        lifecycle.clear_task(task_id)
        _emit_log(context, "info", "Cleared task", extra={"task_id": task_id})
        return {"success": True}

    def _lifecycle_events(
        task_id: str | None = None, limit: int = 100, context: Context | None = None
    ) -> dict[str, Any]:
        """Return recent engine events, optionally only one task's lifecycle events."""

        events = event_log.recent(task_id=task_id, limit=limit)
        return {"success": True, "events": [event.to_dict() for event in events]}

    tool_get_script = server.tool(
        name="lifecycle_get_script",
        description="Return the shell command configured for a phase (setup, run, teardown).",
    )(_lifecycle_get_script)

    tool_setup = server.tool(
        name="lifecycle_setup",
        description="Run the project's setup script for a task and wait for it to finish.",
    )(_lifecycle_setup)

    tool_run_start = server.tool(
        name="lifecycle_run_start",
        description="Start the project's long-lived run script for a task.",
        annotations={"safety": {"level": "caution", "notes": "Executes project-defined shell commands"}},
    )(_lifecycle_run_start)

    tool_run_stop = server.tool(
        name="lifecycle_run_stop",
        description="Signal a task's run process to stop.",
    )(_lifecycle_run_stop)

    tool_teardown = server.tool(
        name="lifecycle_teardown",
        description="Stop the run process if needed, then run the teardown script.",
    )(_lifecycle_teardown)

    tool_get_state = server.tool(
        name="lifecycle_get_state",
        description="Fetch per-phase status, timestamps, exit codes and errors for a task.",
    )(_lifecycle_get_state)

    tool_clear_task = server.tool(
        name="lifecycle_clear_task",
        description="Kill every process for a task and forget its lifecycle state.",
    )(_lifecycle_clear_task)

    tool_events = server.tool(
        name="lifecycle_events",
        description="List recent lifecycle and git-status events.",
    )(_lifecycle_events)

    # -- git --------------------------------------------------------------------------

    async def _git_status(repo_path: str, context: Context | None = None) -> dict[str, Any]:
        """List working-tree changes with line counts and staging state."""

        if git is None:
            return {"success": False, "error": GIT_UNAVAILABLE}
        changes = await git.get_status(repo_path)
        _emit_log(context, "debug", "Computed git status", extra={"repo_path": repo_path, "count": len(changes)})
        return {"success": True, "changes": [change.to_dict() for change in changes]}

    async def _git_multi_repo_status(
        mappings: list[dict[str, str]], context: Context | None = None
    ) -> dict[str, Any]:
        """Merge status across nested repositories, tagging each change with its repo."""

        if git is None:
            return {"success": False, "error": GIT_UNAVAILABLE}
        try:
            parsed = _parse_mappings(mappings)
        except ValueError as exc:
            return {"success": False, "error": str(exc)}
        changes = await get_multi_repo_status(git, parsed)
        return {"success": True, "changes": [change.to_dict() for change in changes]}

    async def _git_file_diff(
        repo_path: str, file_path: str, context: Context | None = None
    ) -> dict[str, Any]:
        if git is None:
            return {"success": False, "error": GIT_UNAVAILABLE}
        diff = await git.get_file_diff(repo_path, file_path)
        return {"success": True, "diff": diff.to_dict()}

    async def _git_stage_file(
        repo_path: str, file_path: str, context: Context | None = None
    ) -> dict[str, Any]:
        if git is None:
            return {"success": False, "error": GIT_UNAVAILABLE}
        return (await git.stage_file(repo_path, file_path)).to_dict()

    async def _git_stage_all(repo_path: str, context: Context | None = None) -> dict[str, Any]:
        if git is None:
            return {"success": False, "error": GIT_UNAVAILABLE}
        return (await git.stage_all_files(repo_path)).to_dict()

    async def _git_unstage_file(
        repo_path: str, file_path: str, context: Context | None = None
    ) -> dict[str, Any]:
        if git is None:
            return {"success": False, "error": GIT_UNAVAILABLE}
        return (await git.unstage_file(repo_path, file_path)).to_dict()

    async def _git_revert_file(
        repo_path: str, file_path: str, context: Context | None = None
    ) -> dict[str, Any]:
        """Undo changes to one file: unstage, restore from HEAD, or delete if untracked."""

        if git is None:
            return {"success": False, "error": GIT_UNAVAILABLE}
        result = await git.revert_file(repo_path, file_path)
        _emit_log(
            context,
            "info",
            "Reverted file",
            extra={"repo_path": repo_path, "file_path": file_path, **result.to_dict()},
        )
        return result.to_dict()

    def _git_watch_status(repo_path: str, context: Context | None = None) -> dict[str, Any]:
        return watcher.watch(repo_path).to_dict()

    def _git_unwatch_status(
        repo_path: str, watch_id: str | None = None, context: Context | None = None
    ) -> dict[str, Any]:
        return watcher.release(repo_path, watch_id).to_dict()

    tool_status = server.tool(
        name="git_status",
        description="List changed files in a working tree with additions, deletions and staging state.",
    )(_git_status)

    tool_multi_status = server.tool(
        name="git_multi_repo_status",
        description=(
            "Aggregate git status across repositories nested in a task. Provide a list of "
            "{relative_path, target_path} mappings."
        ),
    )(_git_multi_repo_status)

    tool_file_diff = server.tool(
        name="git_file_diff",
        description="Return the classified diff lines and raw patch for one file against HEAD.",
    )(_git_file_diff)

    tool_stage_file = server.tool(
        name="git_stage_file",
        description="Stage one file.",
    )(_git_stage_file)

    tool_stage_all = server.tool(
        name="git_stage_all",
        description="Stage every change in the working tree, including untracked files.",
    )(_git_stage_all)

    tool_unstage_file = server.tool(
        name="git_unstage_file",
        description="Remove one file from the index, keeping working-tree edits.",
    )(_git_unstage_file)

    tool_revert_file = server.tool(
        name="git_revert_file",
        description="Revert one file. Reports whether it was unstaged, restored from HEAD or deleted.",
        annotations={"safety": {"level": "caution", "notes": "Discards working-tree changes"}},
    )(_git_revert_file)

    tool_watch = server.tool(
        name="git_watch_status",
        description="Watch a working tree and emit debounced git-status-changed events.",
    )(_git_watch_status)

    tool_unwatch = server.tool(
        name="git_unwatch_status",
        description="Release a watch obtained from git_watch_status.",
    )(_git_unwatch_status)

    return ToolHandles(
        lifecycle_get_script=tool_get_script,
        lifecycle_setup=tool_setup,
        lifecycle_run_start=tool_run_start,
        lifecycle_run_stop=tool_run_stop,
        lifecycle_teardown=tool_teardown,
        lifecycle_get_state=tool_get_state,
        lifecycle_clear_task=tool_clear_task,
        lifecycle_events=tool_events,
        git_status=tool_status,
        git_multi_repo_status=tool_multi_status,
        git_file_diff=tool_file_diff,
        git_stage_file=tool_stage_file,
        git_stage_all=tool_stage_all,
        git_unstage_file=tool_unstage_file,
        git_revert_file=tool_revert_file,
        git_watch_status=tool_watch,
        git_unwatch_status=tool_unwatch,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when one is attached, else the module logger."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        log_method = getattr(ctx_logger, level, None) if ctx_logger is not None else None
        if callable(log_method):
            log_method(message, extra=payload)
            return

    getattr(logger, level, logger.info)(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
