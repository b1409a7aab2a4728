"""
Management command to run the message queue worker

Drains the gateway authorization, deferred payment poll and payment
callback queues.

Usage:
    python manage.py run_queue_worker

    # For production (run as a service):
    python manage.py run_queue_worker --interval 2

Options:
    --interval: Sleep between passes in seconds (default: 5)
    --once: Run a single pass and exit (for cron-like usage)
    --queue: Only drain the named queue
"""

import signal
import time

from django.core.management.base import BaseCommand, CommandError

from billing.tasks import QUEUE_TASKS


class Command(BaseCommand):
    help = "Deliver queued gateway authorization commands and payment follow-ups"

    def add_arguments(self, parser):
        parser.add_argument(
            "--interval",
            type=float,
            default=5,
            help="Sleep between passes in seconds (default: 5)",
        )
        parser.add_argument(
            "--once",
            action="store_true",
            help="Run one pass and exit (useful for cron)",
        )
        parser.add_argument(
            "--queue",
            choices=sorted(QUEUE_TASKS),
            help="Only drain this queue",
        )
        parser.add_argument(
            "--limit",
            type=int,
            default=None,
            help="Maximum messages per queue per pass",
        )

    def handle(self, *args, **options):
        interval = options["interval"]
        if interval < 0:
            raise CommandError("--interval must not be negative")

        tasks = (
            {options["queue"]: QUEUE_TASKS[options["queue"]]}
            if options["queue"]
            else QUEUE_TASKS
        )

        if options["once"]:
            self._run_pass(tasks, options["limit"])
            return

        self._running = True

        def signal_handler(signum, frame):
            self.stdout.write(self.style.WARNING("Shutdown signal received, stopping worker..."))
            self._running = False

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        self.stdout.write(
            self.style.SUCCESS(
                f"Queue worker started on {', '.join(tasks)} "
                f"(interval {interval}s). Press Ctrl+C to stop"
            )
        )
        while self._running:
            self._run_pass(tasks, options["limit"])
            time.sleep(interval)

        self.stdout.write(self.style.SUCCESS("Queue worker stopped"))

    def _run_pass(self, tasks, limit):
        for name, task in tasks.items():
            stats = task(limit=limit)
            if any(stats.values()):
                self.stdout.write(
                    f"{name}: {stats['processed']} processed, "
                    f"{stats['retried']} retried, {stats['dead']} dead"
                )
