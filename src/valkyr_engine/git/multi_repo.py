"""Status aggregation across the repositories nested in one task."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Iterable

from .models import ChangeEntry, RepoMapping
from .status import GitStatusEngine

logger = logging.getLogger(__name__)


async def get_multi_repo_status(
    engine: GitStatusEngine,
    mappings: Iterable[RepoMapping],
) -> list[ChangeEntry]:
    """Merge the status of every mapped repository into one list.

    Repositories are queried concurrently; each one is still serialized by its
    own queue slot. A mapping that is not a repository, or whose status fails,
    contributes nothing.
    """

    mappings = list(mappings)
    results = await asyncio.gather(
        *(engine.get_status(mapping.target_path) for mapping in mappings),
        return_exceptions=True,
    )

    merged: list[ChangeEntry] = []
    for mapping, result in zip(mappings, results):
        if isinstance(result, BaseException):
            logger.warning(
                "Skipping repository in multi-repo status",
                extra={"target_path": mapping.target_path, "error": str(result)},
            )
            continue
        repo_name = mapping.relative_path.strip("/") or Path(mapping.target_path).name
        for change in result:
            merged.append(
                replace(
                    change,
                    path=f"{repo_name}/{change.path}" if repo_name else change.path,
                    repo_name=repo_name,
                    repo_cwd=mapping.target_path,
                )
            )
    return merged


__all__ = ["get_multi_repo_status"]
