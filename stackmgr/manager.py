#!/usr/bin/env python3
"""
n8n Stack Manager - command line interface.

Subcommands:
  backup    Back up services into backups/<service>/<service>_backup_<ts>/
  restore   Restore services from the newest backup source
  start     Start services in dependency order
  list      Show available backups and the restore source
  supabase  Switch Supabase between db-only and full mode
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from stackmgr.config import APP_DESCRIPTION, APP_NAME, APP_VERSION, PROJECT_ROOT_ENV
from stackmgr.docker import DockerEngine
from stackmgr.errors import StackError
from stackmgr.operations import SUPABASE_MODES, OperationReport, OperationRunner
from stackmgr.project import Project
from stackmgr.registry import Selection, ServiceRegistry
from stackmgr.ui import error, say


EXAMPLES = """\
examples:
  stack.py backup                     choose services interactively
  stack.py backup n8n supabase --stop --archive
  stack.py restore n8n --yes --start
  stack.py start
  stack.py supabase db-only
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stack.py",
        description=f"{APP_NAME}: {APP_DESCRIPTION}",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument("--root", type=Path, help="Project root (default: search upward for start-stack.sh)")
    parser.add_argument(
        "-y", "--yes", action="store_true",
        help="Non-interactive: confirm restores, use defaults for every other prompt",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    backup = sub.add_parser("backup", help="Back up services")
    backup.add_argument("services", nargs="*", help="Services to back up (default: ask)")
    backup.add_argument("--stop", action=argparse.BooleanOptionalAction, default=None,
                        help="Stop affected services while copying")
    backup.add_argument("--archive", action=argparse.BooleanOptionalAction, default=None,
                        help="Bundle the backup folders into one tar.gz")
    backup.add_argument("--no-restart", dest="restart", action="store_false",
                        help="Leave stopped services down afterwards")

    restore = sub.add_parser("restore", help="Restore services from backups")
    restore.add_argument("services", nargs="*", help="Services to restore (default: ask)")
    restore.add_argument("--start", action=argparse.BooleanOptionalAction, default=None,
                         help="Start the stack after restoring")

    start = sub.add_parser("start", help="Start services in dependency order")
    start.add_argument("services", nargs="*", help="Services to start (default: ask)")

    sub.add_parser("list", help="List available backups")

    supabase = sub.add_parser("supabase", help="Switch Supabase mode")
    supabase.add_argument("mode", choices=SUPABASE_MODES)
    return parser


def _defaults_only(prompt: str, default: bool = False) -> bool:
    say(f"{prompt} -> {'yes' if default else 'no'}")
    return default


def build_runner(args: argparse.Namespace, engine: Optional[DockerEngine] = None) -> OperationRunner:
    environ = dict(os.environ)
    if args.root is not None:
        environ[PROJECT_ROOT_ENV] = str(args.root)
    project = Project.discover(environ=environ)
    if args.yes:
        return OperationRunner(project, engine=engine, interactive=False, confirm=_defaults_only)
    return OperationRunner(project, engine=engine)


def dispatch(args: argparse.Namespace, runner: OperationRunner) -> OperationReport:
    registry: ServiceRegistry = runner.registry
    selection = Selection.of(args.services, registry) if getattr(args, "services", None) else None

    if args.command == "backup":
        return runner.backup(selection, stop_first=args.stop, bundle=args.archive, restart=args.restart)
    if args.command == "restore":
        return runner.restore(
            selection,
            confirmation="yes" if args.yes else None,
            start_after=args.start,
        )
    if args.command == "start":
        return runner.start(selection)
    if args.command == "list":
        return runner.list_backups()
    return runner.supabase_mode(args.mode)


def main(argv: Optional[Sequence[str]] = None, engine: Optional[DockerEngine] = None) -> int:
    """Main entry point; returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        runner = build_runner(args, engine)
        report = dispatch(args, runner)
    except KeyboardInterrupt:
        print("\n\nInterrupted by user\n")
        return 130
    except StackError as e:
        error(str(e))
        return 1
    except Exception as e:
        error(f"Unexpected error: {e}")
        return 1
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
