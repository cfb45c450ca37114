#!/usr/bin/env python3
"""
AaronOS Scheduler Worker

A dedicated process that runs the maintenance scheduler (backups, cleanup,
health checks, subscription sync) separately from the API.

Usage:
    python worker.py                   # run the scheduler until SIGINT/SIGTERM
    python worker.py --list-tasks      # print registered tasks and exit
    python worker.py --run-task NAME   # run one task immediately and exit

Features:
- Registers every maintenance task with its cron trigger
- Records each run in the task run history
- Graceful shutdown on signals
"""

import argparse
import asyncio
import logging
import signal
import sys

from aaronos.services import AppServices

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("aaronos.worker")


class SchedulerWorker:
    """
    Worker that owns an AppServices instance and keeps its scheduler running.
    """

    def __init__(self, services: AppServices):
        self.services = services
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start the scheduler and block until a shutdown signal arrives."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass

        await self.services.startup(start_scheduler=True)
        logger.info("Worker started")

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("Worker cancelled")
        finally:
            await self.services.shutdown()

    def _handle_shutdown(self):
        logger.info("Worker received shutdown signal")
        self._shutdown_event.set()


def list_tasks(services: AppServices):
    for status in services.scheduler.get_all_statuses():
        task = status.task
        last = task.last_status.value if task.last_status else "never run"
        state = "enabled" if task.enabled else "disabled"
        print(f"{task.name:<26} {task.trigger:<14} {state:<9} {last}")


async def run_task(services: AppServices, name: str) -> bool:
    try:
        run = await services.scheduler.run_now(name)
    finally:
        await services.shutdown()

    if run is None:
        logger.warning(f"Task {name} is already running")
        return False

    if run.error:
        logger.error(f"Task {name} failed: {run.error}")
    else:
        logger.info(f"Task {name} finished with status {run.status.value} in {run.duration_ms}ms")
    return run.error is None


def main():
    """Main entry point for the worker."""
    parser = argparse.ArgumentParser(description="AaronOS Scheduler Worker")
    parser.add_argument(
        "--list-tasks",
        action="store_true",
        help="List registered scheduled tasks and exit"
    )
    parser.add_argument(
        "--run-task",
        type=str,
        metavar="NAME",
        help="Run a single scheduled task immediately and exit"
    )

    args = parser.parse_args()
    services = AppServices.from_env()

    if args.list_tasks:
        list_tasks(services)
        return

    if args.run_task:
        if args.run_task not in {s.task.name for s in services.scheduler.get_all_statuses()}:
            logger.error(f"Unknown task: {args.run_task}")
            sys.exit(1)
        ok = asyncio.run(run_task(services, args.run_task))
        sys.exit(0 if ok else 1)

    worker = SchedulerWorker(services)
    try:
        asyncio.run(worker.start())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")

    logger.info("Worker stopped")


if __name__ == "__main__":
    main()
