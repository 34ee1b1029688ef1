from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from valkyr_engine.git.queue import RepoOperationQueue, normalize_repo_path


def test_operations_on_same_repo_run_one_at_a_time(tmp_path: Path) -> None:
    queue = RepoOperationQueue()
    log: list[str] = []

    async def scenario() -> None:
        release_first = asyncio.Event()

        async def first() -> str:
            log.append("first:start")
            await release_first.wait()
            log.append("first:end")
            return "first"

        async def second() -> str:
            log.append("second:start")
            return "second"

        task_a = asyncio.create_task(queue.run(tmp_path, first))
        await asyncio.sleep(0)
        task_b = asyncio.create_task(queue.run(tmp_path, second))
        await asyncio.sleep(0.01)
        assert log == ["first:start"]
        assert queue.is_busy(tmp_path)

        release_first.set()
        assert await task_a == "first"
        assert await task_b == "second"

    asyncio.run(scenario())

    assert log == ["first:start", "first:end", "second:start"]
    assert queue.active_paths == []


def test_different_repos_do_not_wait_on_each_other(tmp_path: Path) -> None:
    queue = RepoOperationQueue()
    repo_a = tmp_path / "a"
    repo_b = tmp_path / "b"

    async def scenario() -> list[str]:
        order: list[str] = []
        blocker = asyncio.Event()

        async def slow() -> None:
            await blocker.wait()
            order.append("a")

        async def fast() -> None:
            order.append("b")
            blocker.set()

        await asyncio.gather(queue.run(repo_a, slow), queue.run(repo_b, fast))
        return order

    assert asyncio.run(scenario()) == ["b", "a"]


def test_failed_operation_releases_slot(tmp_path: Path) -> None:
    queue = RepoOperationQueue()

    async def boom() -> None:
        raise RuntimeError("boom")

    async def ok() -> str:
        return "ok"

    async def scenario() -> str:
        with pytest.raises(RuntimeError):
            await queue.run(tmp_path, boom)
        return await queue.run(tmp_path, ok)

    assert asyncio.run(scenario()) == "ok"
    assert queue.active_paths == []


def test_equivalent_paths_share_one_slot(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    alias = repo / ".." / "repo"

    assert normalize_repo_path(alias) == normalize_repo_path(repo)

    queue = RepoOperationQueue()
    log: list[str] = []

    async def scenario() -> None:
        gate = asyncio.Event()

        async def first() -> None:
            log.append("first")
            await gate.wait()

        async def second() -> None:
            log.append("second")

        task_a = asyncio.create_task(queue.run(str(repo), first))
        await asyncio.sleep(0)
        task_b = asyncio.create_task(queue.run(str(alias), second))
        await asyncio.sleep(0.01)
        assert log == ["first"]
        gate.set()
        await asyncio.gather(task_a, task_b)

    asyncio.run(scenario())
    assert log == ["first", "second"]


def test_cancelled_waiter_does_not_let_later_calls_overtake(tmp_path: Path) -> None:
    queue = RepoOperationQueue()
    log: list[str] = []

    async def scenario() -> None:
        gate = asyncio.Event()

        async def first() -> None:
            log.append("first:start")
            await gate.wait()
            log.append("first:end")

        async def never() -> None:
            log.append("cancelled-ran")

        async def third() -> None:
            log.append("third")

        task_a = asyncio.create_task(queue.run(tmp_path, first))
        await asyncio.sleep(0)
        task_b = asyncio.create_task(queue.run(tmp_path, never))
        await asyncio.sleep(0)
        task_c = asyncio.create_task(queue.run(tmp_path, third))
        await asyncio.sleep(0)

        task_b.cancel()
        await asyncio.sleep(0.01)
        assert log == ["first:start"]

        gate.set()
        await task_a
        await task_c
        with pytest.raises(asyncio.CancelledError):
            await task_b

    asyncio.run(scenario())
    assert log == ["first:start", "first:end", "third"]
