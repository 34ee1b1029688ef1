"""Valkyr engine diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from valkyr_engine.config import EngineSettings
from valkyr_engine.git import GitNotFoundError, GitStatusEngine
from valkyr_engine.lifecycle import PHASES, LifecycleScriptsService


def load_engine(settings: EngineSettings) -> GitStatusEngine:
    try:
        return GitStatusEngine(settings=settings)
    except GitNotFoundError as exc:
        print(f"git unavailable: {exc}")
        raise SystemExit(1)


def cmd_status(args: argparse.Namespace) -> None:
    settings = EngineSettings()
    engine = load_engine(settings)
    changes = asyncio.run(engine.get_status(args.path))
    if args.json:
        print(json.dumps([change.to_dict() for change in changes], indent=2))
        return
    if not changes:
        print("No changes")
        return
    for change in changes:
        marker = "S" if change.is_staged else " "
        print(f"{marker} {change.status:<9} +{change.additions} -{change.deletions} {change.path}")


def cmd_diff(args: argparse.Namespace) -> None:
    settings = EngineSettings()
    engine = load_engine(settings)
    diff = asyncio.run(engine.get_file_diff(args.path, args.file))
    prefixes = {"context": " ", "add": "+", "del": "-"}
    for line in diff.lines:
        text = line.right if line.type == "add" else line.left
        print(f"{prefixes[line.type]}{text or ''}")


def cmd_scripts(args: argparse.Namespace) -> None:
    settings = EngineSettings()
    service = LifecycleScriptsService(settings.config_filenames)
    config_path = service.config_path(args.project)
    payload = {
        "config_path": str(config_path) if config_path else None,
        "scripts": {phase: service.get_script(args.project, phase) for phase in PHASES},
    }
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Valkyr engine diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_status = sub.add_parser("status", help="Show working-tree changes for a repository")
    p_status.add_argument("path")
    p_status.add_argument("--json", action="store_true", help="Output JSON")
    p_status.set_defaults(func=cmd_status)

    p_diff = sub.add_parser("diff", help="Show the classified diff for one file")
    p_diff.add_argument("path")
    p_diff.add_argument("file")
    p_diff.set_defaults(func=cmd_diff)

    p_scripts = sub.add_parser("scripts", help="Show configured lifecycle scripts for a project")
    p_scripts.add_argument("project")
    p_scripts.set_defaults(func=cmd_scripts)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
