#!/usr/bin/env python3
"""
Dead-letter maintenance from the shell

Usage (from the project root):
    python -m scripts.dead_letter list [--limit 50]
    python -m scripts.dead_letter replay <entry_id>
    python -m scripts.dead_letter purge <entry_id>
    python -m scripts.dead_letter purge --all --yes
    python -m scripts.dead_letter stats [--days 7] [--top 10]
"""
import argparse
import asyncio
import json
import sys
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import AppException
from app.core.logging import setup_logging
from app.db.database import get_task_session
from app.domain.job_queue import JobQueue
from app.domain.services.dead_letter_service import DeadLetterService
from app.workers.tasks import CeleryJobQueue


class Colors:
    """Terminal colors"""
    GREEN = "\033[92m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m scripts.dead_letter",
        description="Inspect, replay and purge dead-lettered messages",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    list_cmd = commands.add_parser("list", help="Newest entries first")
    list_cmd.add_argument("--limit", type=int, default=50)

    replay_cmd = commands.add_parser("replay", help="Re-enqueue an entry's message")
    replay_cmd.add_argument("entry_id")

    purge_cmd = commands.add_parser("purge", help="Delete one entry or all of them")
    purge_cmd.add_argument("entry_id", nargs="?")
    purge_cmd.add_argument("--all", action="store_true", help="Delete every entry")
    purge_cmd.add_argument("--yes", action="store_true", help="Skip the confirmation for --all")

    stats_cmd = commands.add_parser("stats", help="Aggregates for the last days")
    stats_cmd.add_argument("--days", type=int, default=7)
    stats_cmd.add_argument("--top", type=int, default=10)

    return parser


async def run_command(args: argparse.Namespace, db: AsyncSession, queue: JobQueue | None) -> int:
    """Execute one parsed command; returns the process exit code"""
    service = DeadLetterService(db, queue)

    if args.command == "list":
        entries = await service.list(limit=args.limit)
        if not entries:
            print("No dead letters.")
            return 0
        for entry in entries:
            created = entry.created_at.strftime("%Y-%m-%d %H:%M:%S") if entry.created_at else "-"
            print(
                f"{entry.id}  {created}  {entry.channel:<8}  attempts={entry.attempts}  "
                f"{entry.error_code or '-'}  message={entry.message_id}"
            )
        return 0

    if args.command == "replay":
        result = await service.replay(args.entry_id)
        suffix = " (message recreated)" if result.recreated else ""
        print(f"{Colors.GREEN}Replayed{Colors.RESET} {result.entry_id} -> message {result.message_id}{suffix}")
        return 0

    if args.command == "purge":
        if args.all:
            if args.entry_id:
                print(f"{Colors.RED}Pass either an entry id or --all, not both{Colors.RESET}")
                return 2
            if not args.yes:
                print(f"{Colors.YELLOW}Refusing to delete every entry without --yes{Colors.RESET}")
                return 2
            removed = await service.purge()
        elif args.entry_id:
            removed = await service.purge(args.entry_id)
            if not removed:
                print(f"{Colors.RED}Dead letter not found: {args.entry_id}{Colors.RESET}")
                return 1
        else:
            print(f"{Colors.RED}Pass an entry id or --all{Colors.RESET}")
            return 2
        print(f"Removed {removed} dead letter(s).")
        return 0

    if args.command == "stats":
        stats = await service.stats(days=args.days, top=args.top)
        print(json.dumps(stats, indent=2))
        return 0

    return 2


async def _main(args: argparse.Namespace) -> int:
    async with get_task_session() as db:
        try:
            return await run_command(args, db, CeleryJobQueue())
        except AppException as e:
            print(f"{Colors.RED}{e.message}{Colors.RESET}")
            return 1


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level="WARNING", json_format=False, app_name=settings.APP_NAME)
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
