"""
Background tasks for the Wi-Fi billing system
Drains the message queues: gateway authorization commands, deferred
payment polls and replayed payment callbacks.

Run from cron (see CRONJOBS in settings) or continuously with
``python manage.py run_queue_worker``.
"""

import logging

from .gateways import dispatch_authorization
from .payments import process_callback, run_deferred_poll
from .queue import (
    COA_QUEUE,
    PAYMENT_CALLBACK_QUEUE,
    PAYMENT_POLL_QUEUE,
    process_queue,
)

logger = logging.getLogger(__name__)


def process_authorization_queue(limit=None):
    """Send pending authorization commands to their gateways"""
    stats = process_queue(COA_QUEUE, dispatch_authorization, limit=limit)
    _log_stats(COA_QUEUE, stats)
    return stats


def process_payment_poll_queue(limit=None):
    """Run deferred provider status polls for still-pending payments"""
    stats = process_queue(PAYMENT_POLL_QUEUE, run_deferred_poll, limit=limit)
    _log_stats(PAYMENT_POLL_QUEUE, stats)
    return stats


def process_payment_callback_queue(limit=None):
    """Re-apply provider callbacks; finalize makes repeats harmless"""
    stats = process_queue(PAYMENT_CALLBACK_QUEUE, process_callback, limit=limit)
    _log_stats(PAYMENT_CALLBACK_QUEUE, stats)
    return stats


QUEUE_TASKS = {
    COA_QUEUE: process_authorization_queue,
    PAYMENT_POLL_QUEUE: process_payment_poll_queue,
    PAYMENT_CALLBACK_QUEUE: process_payment_callback_queue,
}


def _log_stats(queue, stats):
    if any(stats.values()):
        logger.info(
            f"Queue '{queue}': {stats['processed']} processed, "
            f"{stats['retried']} retried, {stats['dead']} dead-lettered"
        )
