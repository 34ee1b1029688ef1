"""Per-task setup/run/teardown state machine.

Each task moves through three phases. ``setup`` and ``teardown`` run to
completion; ``run`` is a long-lived process stopped explicitly. All bookkeeping
happens on one event loop, and the child processes provide the parallelism.

Every spawn takes a fresh generation from a single monotonic counter and
records it per ``(task_id, phase)``. Completion handlers compare the generation
they captured with the recorded one and drop the event when a newer spawn, or a
``clear_task``, has superseded them.

Concurrent ``start_run``/``run_setup``/``run_teardown`` calls for one task are
coalesced: the first caller installs a shared future before yielding, later
callers await that same future.
"""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Coroutine, Protocol

from ..config import EngineSettings, get_settings
from ..env import sanitize_environment, task_env_vars
from ..events import EventBus, LifecycleEvent
from ..git.runner import GitNotFoundError, GitRunner
from .models import LifecyclePhase, LifecycleResult, TaskLifecycleRecord
from .process import ChildProcess, ProcessSpawner, ShellProcessSpawner
from .scripts import LifecycleScriptsService

logger = logging.getLogger(__name__)

PhaseKey = tuple[str, LifecyclePhase]

OUTPUT_CHUNK_BYTES = 64 * 1024


class ScriptLookup(Protocol):
    def get_script(self, project_path: str, phase: LifecyclePhase) -> str | None:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TaskLifecycleEngine:
    """Drive tasks through ``setup -> run -> teardown`` as child processes."""

    def __init__(
        self,
        scripts: ScriptLookup | None = None,
        *,
        spawner: ProcessSpawner | None = None,
        events: EventBus | None = None,
        git_runner: GitRunner | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._scripts = scripts or LifecycleScriptsService(settings.config_filenames)
        self._spawner = spawner or ShellProcessSpawner()
        self._events = events or EventBus()
        self._stop_grace = settings.stop_grace_seconds
        if git_runner is None:
            try:
                git_runner = GitRunner(settings.git_path)
            except GitNotFoundError as exc:
                logger.warning("git unavailable; default branch falls back to main", extra={"error": str(exc)})
        self._git_runner = git_runner

        self._states: dict[str, TaskLifecycleRecord] = {}
        self._run_processes: dict[str, ChildProcess] = {}
        self._exiting_runs: dict[str, list[ChildProcess]] = {}
        self._finite_processes: dict[PhaseKey, ChildProcess] = {}
        self._generations: dict[PhaseKey, int] = {}
        self._stop_intents: dict[str, int] = {}
        self._inflight: dict[PhaseKey, asyncio.Future[LifecycleResult]] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._sequence = itertools.count(1)

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def tracked_tasks(self) -> list[str]:
        return sorted(self._states)

    def get_script(self, project_path: str, phase: LifecyclePhase) -> str | None:
        return self._scripts.get_script(project_path, phase)

    def get_state(self, task_id: str) -> TaskLifecycleRecord:
        """Snapshot of the task's phases; unknown tasks get an idle record."""

        return self._record(task_id).snapshot()

    async def run_setup(self, task_id: str, task_path: str, project_path: str) -> LifecycleResult:
        return await self._coalesce(
            (task_id, "setup"),
            lambda: self._run_finite(task_id, task_path, project_path, "setup"),
        )

    async def start_run(self, task_id: str, task_path: str, project_path: str) -> LifecycleResult:
        if task_id in self._run_processes:
            return LifecycleResult(ok=True)
        return await self._coalesce(
            (task_id, "run"),
            lambda: self._start_run(task_id, task_path, project_path),
        )

    def stop_run(self, task_id: str) -> LifecycleResult:
        """Signal the run process; stop intent is kept only if the signal landed."""

        process = self._run_processes.get(task_id)
        if process is None:
            return LifecycleResult(ok=True, skipped=True)

        generation = self._generations.get((task_id, "run"))
        try:
            process.terminate()
        except OSError as exc:
            logger.warning(
                "Failed to stop run process",
                extra={"task_id": task_id, "pid": process.pid, "error": str(exc)},
            )
            return LifecycleResult(ok=False, error=str(exc) or type(exc).__name__)

        if generation is not None:
            self._stop_intents[task_id] = generation
        del self._run_processes[task_id]
        self._exiting_runs.setdefault(task_id, []).append(process)
        logger.info("Stop signal sent to run process", extra={"task_id": task_id, "pid": process.pid})
        return LifecycleResult(ok=True)

    async def run_teardown(self, task_id: str, task_path: str, project_path: str) -> LifecycleResult:
        return await self._coalesce(
            (task_id, "teardown"),
            lambda: self._teardown(task_id, task_path, project_path),
        )

    def clear_task(self, task_id: str) -> None:
        """Kill every process tracked for the task and forget all of its state."""

        processes: list[ChildProcess] = []
        run_process = self._run_processes.pop(task_id, None)
        if run_process is not None:
            processes.append(run_process)
        processes.extend(self._exiting_runs.pop(task_id, []))
        for key in [key for key in self._finite_processes if key[0] == task_id]:
            processes.append(self._finite_processes.pop(key))

        for table in (self._generations, self._inflight):
            for key in [key for key in table if key[0] == task_id]:
                del table[key]
        self._stop_intents.pop(task_id, None)
        self._states.pop(task_id, None)

        for process in processes:
            self._force_kill(task_id, process)
        logger.info("Cleared task lifecycle state", extra={"task_id": task_id, "killed": len(processes)})

    def shutdown(self) -> None:
        task_ids = set(self._states) | set(self._run_processes) | set(self._exiting_runs)
        task_ids.update(task_id for task_id, _ in self._finite_processes)
        task_ids.update(task_id for task_id, _ in self._inflight)
        for task_id in task_ids:
            self.clear_task(task_id)

    # -- coalescing -----------------------------------------------------------

    async def _coalesce(
        self,
        key: PhaseKey,
        factory: Callable[[], Awaitable[LifecycleResult]],
    ) -> LifecycleResult:
        pending = self._inflight.get(key)
        if pending is None or pending.done():
            pending = asyncio.ensure_future(self._guarded(key, factory))
            self._inflight[key] = pending
            pending.add_done_callback(functools.partial(self._forget_inflight, key))
        return await asyncio.shield(pending)

    async def _guarded(
        self,
        key: PhaseKey,
        factory: Callable[[], Awaitable[LifecycleResult]],
    ) -> LifecycleResult:
        try:
            return await factory()
        except Exception as exc:
            logger.exception("Lifecycle operation failed", extra={"task_id": key[0], "phase": key[1]})
            return LifecycleResult(ok=False, error=str(exc) or type(exc).__name__)

    def _forget_inflight(self, key: PhaseKey, future: asyncio.Future[LifecycleResult]) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]

    # -- run phase --------------------------------------------------------------

    async def _start_run(self, task_id: str, task_path: str, project_path: str) -> LifecycleResult:
        script = self.get_script(project_path, "run")
        if script is None:
            return LifecycleResult(ok=True, skipped=True)

        generation = self._begin_phase(task_id, "run")
        self._stop_intents.pop(task_id, None)
        env = await self._task_env(task_id, task_path, project_path)
        if not self._is_current(task_id, "run", generation):
            return LifecycleResult(ok=False, error="Run start was cancelled")

        try:
            process = await self._spawner.spawn(script, cwd=task_path, env=env)
        except OSError as exc:
            message = str(exc) or type(exc).__name__
            if self._is_current(task_id, "run", generation):
                self._mark_failed(task_id, "run", message)
            return LifecycleResult(ok=False, error=message)

        if not self._is_current(task_id, "run", generation):
            self._force_kill(task_id, process)
            return LifecycleResult(ok=False, error="Run start was cancelled")

        self._run_processes[task_id] = process
        self._record(task_id).run.pid = process.pid
        self._pump_output(task_id, "run", generation, process)
        self._spawn_background(self._watch_run(task_id, generation, process))
        logger.info(
            "Run process started",
            extra={"task_id": task_id, "pid": process.pid, "generation": generation},
        )
        return LifecycleResult(ok=True)

    async def _watch_run(self, task_id: str, generation: int, process: ChildProcess) -> None:
        try:
            code = await process.wait()
        except Exception as exc:
            self._on_run_error(task_id, generation, process, exc)
            return
        self._on_run_exit(task_id, generation, process, code)

    def _on_run_exit(self, task_id: str, generation: int, process: ChildProcess, code: int) -> None:
        self._discard_exiting(task_id, process)
        if not self._is_current(task_id, "run", generation):
            logger.debug(
                "Ignoring exit from superseded run process",
                extra={"task_id": task_id, "generation": generation, "exit_code": code},
            )
            return

        if self._run_processes.get(task_id) is process:
            del self._run_processes[task_id]
        intended = self._stop_intents.get(task_id) == generation
        if intended:
            del self._stop_intents[task_id]

        state = self._record(task_id).run
        state.finished_at = _now()
        state.exit_code = code
        state.pid = None
        if intended:
            state.status = "idle"
            state.error = None
        elif code == 0:
            state.status = "succeeded"
            state.error = None
        else:
            state.status = "failed"
            state.error = f"Exited with code {code}"
        self._events.emit(LifecycleEvent(task_id=task_id, phase="run", status="exit", exit_code=code))
        if state.status == "failed":
            self._events.emit(
                LifecycleEvent(
                    task_id=task_id, phase="run", status="error", exit_code=code, error=state.error
                )
            )

    def _on_run_error(
        self, task_id: str, generation: int, process: ChildProcess, exc: BaseException
    ) -> None:
        self._discard_exiting(task_id, process)
        if not self._is_current(task_id, "run", generation):
            logger.debug(
                "Ignoring error from superseded run process",
                extra={"task_id": task_id, "generation": generation, "error": str(exc)},
            )
            return

        if self._run_processes.get(task_id) is process:
            del self._run_processes[task_id]
        if self._stop_intents.get(task_id) == generation:
            del self._stop_intents[task_id]
        self._mark_failed(task_id, "run", str(exc) or type(exc).__name__)

    def _discard_exiting(self, task_id: str, process: ChildProcess) -> None:
        exiting = self._exiting_runs.get(task_id)
        if not exiting:
            return
        self._exiting_runs[task_id] = [item for item in exiting if item is not process]
        if not self._exiting_runs[task_id]:
            del self._exiting_runs[task_id]

    # -- finite phases ------------------------------------------------------------

    async def _teardown(self, task_id: str, task_path: str, project_path: str) -> LifecycleResult:
        claim = self._claim(task_id, "teardown")
        await self._await_run_exit(task_id)
        if not self._is_current(task_id, "teardown", claim):
            logger.info("Teardown cancelled while waiting for run exit", extra={"task_id": task_id})
            return LifecycleResult(ok=False, error="teardown was cancelled")
        return await self._run_finite(task_id, task_path, project_path, "teardown")

    async def _await_run_exit(self, task_id: str) -> None:
        starting = self._inflight.get((task_id, "run"))
        if starting is not None and not starting.done():
            await asyncio.shield(starting)

        if task_id in self._run_processes:
            stopped = self.stop_run(task_id)
            if not stopped.ok:
                logger.warning(
                    "Run process rejected stop before teardown",
                    extra={"task_id": task_id, "error": stopped.error},
                )

        pending = list(self._exiting_runs.get(task_id, []))
        active = self._run_processes.get(task_id)
        if active is not None:
            pending.append(active)
        for process in pending:
            await self._wait_for_exit(task_id, process)

    async def _wait_for_exit(self, task_id: str, process: ChildProcess) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(process.wait()), timeout=self._stop_grace)
            return
        except asyncio.TimeoutError:
            logger.warning(
                "Run process still alive after stop grace period; killing",
                extra={"task_id": task_id, "pid": process.pid},
            )
        except Exception as exc:
            logger.debug("Run process wait failed", extra={"task_id": task_id, "error": str(exc)})
            return

        self._force_kill(task_id, process)
        try:
            await process.wait()
        except Exception as exc:
            logger.debug("Run process wait failed", extra={"task_id": task_id, "error": str(exc)})

    async def _run_finite(
        self,
        task_id: str,
        task_path: str,
        project_path: str,
        phase: LifecyclePhase,
    ) -> LifecycleResult:
        script = self.get_script(project_path, phase)
        if script is None:
            return LifecycleResult(ok=True, skipped=True)

        generation = self._begin_phase(task_id, phase)
        env = await self._task_env(task_id, task_path, project_path)
        if not self._is_current(task_id, phase, generation):
            return LifecycleResult(ok=False, error=f"{phase} was cancelled")

        try:
            process = await self._spawner.spawn(script, cwd=task_path, env=env)
        except OSError as exc:
            return self._finish_finite(
                task_id, phase, generation, None, error=str(exc) or type(exc).__name__
            )

        if not self._is_current(task_id, phase, generation):
            self._force_kill(task_id, process)
            return LifecycleResult(ok=False, error=f"{phase} was cancelled")

        self._finite_processes[(task_id, phase)] = process
        self._pump_output(task_id, phase, generation, process)
        logger.info(
            "Lifecycle script started",
            extra={"task_id": task_id, "phase": phase, "pid": process.pid},
        )
        try:
            code = await process.wait()
        except Exception as exc:
            return self._finish_finite(
                task_id, phase, generation, process, error=str(exc) or type(exc).__name__
            )
        return self._finish_finite(task_id, phase, generation, process, exit_code=code)

    def _finish_finite(
        self,
        task_id: str,
        phase: LifecyclePhase,
        generation: int,
        process: ChildProcess | None,
        *,
        exit_code: int | None = None,
        error: str | None = None,
    ) -> LifecycleResult:
        key = (task_id, phase)
        if process is not None and self._finite_processes.get(key) is process:
            del self._finite_processes[key]
        if not self._is_current(task_id, phase, generation):
            logger.debug(
                "Ignoring completion of superseded lifecycle script",
                extra={"task_id": task_id, "phase": phase, "generation": generation},
            )
            return LifecycleResult(ok=False, error=f"{phase} was cancelled")

        if error is None and exit_code == 0:
            state = self._record(task_id).phase(phase)
            state.status = "succeeded"
            state.finished_at = _now()
            state.exit_code = 0
            state.error = None
            self._events.emit(LifecycleEvent(task_id=task_id, phase=phase, status="done", exit_code=0))
            return LifecycleResult(ok=True)

        message = error or f"Exited with code {exit_code}"
        self._mark_failed(task_id, phase, message, exit_code=exit_code)
        return LifecycleResult(ok=False, error=message)

    # -- shared helpers ----------------------------------------------------------

    def _record(self, task_id: str) -> TaskLifecycleRecord:
        record = self._states.get(task_id)
        if record is None:
            record = TaskLifecycleRecord(task_id=task_id)
            self._states[task_id] = record
        return record

    def _claim(self, task_id: str, phase: LifecyclePhase) -> int:
        generation = next(self._sequence)
        self._generations[(task_id, phase)] = generation
        return generation

    def _begin_phase(self, task_id: str, phase: LifecyclePhase) -> int:
        generation = self._claim(task_id, phase)
        state = self._record(task_id).phase(phase)
        state.status = "running"
        state.started_at = _now()
        state.finished_at = None
        state.exit_code = None
        state.error = None
        state.pid = None
        self._events.emit(LifecycleEvent(task_id=task_id, phase=phase, status="starting"))
        return generation

    def _is_current(self, task_id: str, phase: LifecyclePhase, generation: int) -> bool:
        return self._generations.get((task_id, phase)) == generation

    def _mark_failed(
        self,
        task_id: str,
        phase: LifecyclePhase,
        message: str,
        *,
        exit_code: int | None = None,
    ) -> None:
        state = self._record(task_id).phase(phase)
        state.status = "failed"
        state.finished_at = _now()
        state.exit_code = exit_code
        state.error = message
        state.pid = None
        logger.warning(
            "Lifecycle phase failed",
            extra={"task_id": task_id, "phase": phase, "error": message},
        )
        self._events.emit(
            LifecycleEvent(
                task_id=task_id, phase=phase, status="error", exit_code=exit_code, error=message
            )
        )

    def _force_kill(self, task_id: str, process: ChildProcess) -> None:
        try:
            process.kill()
        except OSError as exc:
            logger.debug(
                "Kill failed; process likely gone",
                extra={"task_id": task_id, "pid": process.pid, "error": str(exc)},
            )

    async def _task_env(self, task_id: str, task_path: str, project_path: str) -> dict[str, str]:
        default_branch = await self._default_branch(project_path)
        return sanitize_environment(
            task_env_vars(
                task_id=task_id,
                task_path=task_path,
                project_path=project_path,
                default_branch=default_branch,
            )
        )

    async def _default_branch(self, project_path: str) -> str | None:
        if self._git_runner is None:
            return None
        result = await self._git_runner.run("rev-parse", "--abbrev-ref", "origin/HEAD", cwd=project_path)
        ref = result.stdout.strip() if result.ok else ""
        if ref.startswith("origin/"):
            ref = ref[len("origin/") :]
        return ref or None

    def _pump_output(
        self,
        task_id: str,
        phase: LifecyclePhase,
        generation: int,
        process: ChildProcess,
    ) -> None:
        for stream in (process.stdout, process.stderr):
            if stream is not None:
                self._spawn_background(self._forward_lines(task_id, phase, generation, stream))

    async def _forward_lines(
        self,
        task_id: str,
        phase: LifecyclePhase,
        generation: int,
        stream: asyncio.StreamReader,
    ) -> None:
        """Emit output line by line, draining the pipe until EOF.

        Lines longer than one read chunk are emitted in chunk-sized pieces so a
        child that never prints a newline cannot stall on a full pipe.
        """

        pending = b""
        try:
            while True:
                chunk = await stream.read(OUTPUT_CHUNK_BYTES)
                if not chunk:
                    break
                pending += chunk
                lines = pending.split(b"\n")
                pending = lines.pop()
                for raw in lines:
                    self._emit_line(task_id, phase, generation, raw + b"\n")
                while len(pending) >= OUTPUT_CHUNK_BYTES:
                    self._emit_line(task_id, phase, generation, pending[:OUTPUT_CHUNK_BYTES])
                    pending = pending[OUTPUT_CHUNK_BYTES:]
        except OSError as exc:
            logger.debug(
                "Stopped reading process output",
                extra={"task_id": task_id, "phase": phase, "error": str(exc)},
            )
        if pending:
            self._emit_line(task_id, phase, generation, pending)

    def _emit_line(self, task_id: str, phase: LifecyclePhase, generation: int, raw: bytes) -> None:
        if self._is_current(task_id, phase, generation):
            line = raw.decode("utf-8", errors="replace")
            self._events.emit(LifecycleEvent(task_id=task_id, phase=phase, status="line", line=line))

    def _spawn_background(self, coro: Coroutine[object, object, None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


__all__ = ["ScriptLookup", "TaskLifecycleEngine"]
