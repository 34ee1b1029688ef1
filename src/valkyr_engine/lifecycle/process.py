"""Child-process boundary used by the lifecycle engine."""

from __future__ import annotations

import asyncio
import os
import signal
from typing import Mapping, Protocol


class ChildProcess(Protocol):
    """The subset of a spawned process the engine relies on."""

    pid: int | None
    stdout: asyncio.StreamReader | None
    stderr: asyncio.StreamReader | None

    async def wait(self) -> int:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


class ProcessSpawner(Protocol):
    async def spawn(self, command: str, *, cwd: str, env: Mapping[str, str]) -> ChildProcess:
        ...


class ManagedProcess:
    """Shell process running in its own session so signals reach its children.

    ``terminate`` and ``kill`` raise :class:`ProcessLookupError` (or
    :class:`PermissionError`) when the signal cannot be delivered.
    """

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self.pid: int | None = process.pid
        self.stdout = process.stdout
        self.stderr = process.stderr

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    async def wait(self) -> int:
        return await self._process.wait()

    def terminate(self) -> None:
        self._signal(signal.SIGTERM)

    def kill(self) -> None:
        self._signal(getattr(signal, "SIGKILL", signal.SIGTERM))

    def _signal(self, signum: int) -> None:
        if self._process.returncode is not None:
            raise ProcessLookupError(f"process {self.pid} already exited")
        if os.name == "posix":
            os.killpg(os.getpgid(self._process.pid), signum)
        else:
            self._process.send_signal(signum)


class ShellProcessSpawner:
    """Spawn lifecycle commands through the platform shell."""

    async def spawn(self, command: str, *, cwd: str, env: Mapping[str, str]) -> ManagedProcess:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            env=dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=os.name == "posix",
        )
        return ManagedProcess(process)


__all__ = ["ChildProcess", "ManagedProcess", "ProcessSpawner", "ShellProcessSpawner"]
