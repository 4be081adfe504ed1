"""Entry point: python -m chime"""

from __future__ import annotations

import asyncio
import signal
import sys
from datetime import date
from pathlib import Path

from chime.infrastructure.logger import install_exception_hooks, logger
from chime.scheduling.errors import SchedulingError


async def main() -> None:
    from chime.app import Orchestrator

    orchestrator = Orchestrator()

    # Handle graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await orchestrator.start()

        # Wait for shutdown signal
        await shutdown_event.wait()
    except KeyboardInterrupt:
        pass
    finally:
        await orchestrator.shutdown()


def run_plan() -> None:
    """Run one planning cycle and print the resulting plan and diagnostics."""
    import argparse

    from chime.app import Orchestrator
    from chime.infrastructure.config import local_now
    from chime.infrastructure.database import database

    parser = argparse.ArgumentParser(description="Build the execution plan for one date")
    parser.add_argument("--date", type=date.fromisoformat, default=None, help="Plan date (YYYY-MM-DD), default today")
    args = parser.parse_args(sys.argv[2:])  # skip "plan" subcommand

    database.init()
    orchestrator = Orchestrator(database)
    orchestrator.wire()
    result = asyncio.run(orchestrator.plan(args.date or local_now().date()))
    if result is None:
        sys.exit(1)

    for entry in result.entries:
        print(f"{entry.scheduled_time}  {entry.task_id:<24} {entry.status:<10} {entry.message_content.splitlines()[0]}")
    for diag in result.diagnostics:
        print(f"# {diag.task_id}: {diag.stage}/{diag.reason_code} {diag.detail}", file=sys.stderr)


def run_load() -> None:
    """Load tasks from a YAML seed file."""
    import argparse

    from chime.infrastructure.database import database
    from chime.tasks.loader import load_seed_file
    from chime.tasks.task_service import TaskManager

    parser = argparse.ArgumentParser(description="Load tasks from a YAML file")
    parser.add_argument("path", type=Path)
    args = parser.parse_args(sys.argv[2:])  # skip "load" subcommand

    database.init()
    manager = TaskManager(database.task_repo, database.suspension_repo, database.plan_repo)
    try:
        task_ids = load_seed_file(args.path, manager, database.task_repo)
    except SchedulingError as err:
        print(f"{err.message}: {err.details}", file=sys.stderr)
        sys.exit(1)
    print(f"Loaded {len(task_ids)} task(s)")


def run() -> None:
    install_exception_hooks()
    if len(sys.argv) > 1 and sys.argv[1] == "plan":
        run_plan()
        return
    if len(sys.argv) > 1 and sys.argv[1] == "load":
        run_load()
        return

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
