"""
Database-backed at-least-once message queue.

Producers call ``send_to_queue``; workers drain a queue with
``process_queue(queue, handler)``. A handler that raises leaves the message
for redelivery, so every handler must tolerate seeing the same body twice.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db.models import F, Q
from django.utils import timezone

from .models import QueueMessage

logger = logging.getLogger(__name__)

COA_QUEUE = "coa"
PAYMENT_POLL_QUEUE = "payment-poll"
PAYMENT_CALLBACK_QUEUE = "payment-callback"


def send_to_queue(queue, body, delay_seconds=0):
    """Persist a message, deliverable after ``delay_seconds``."""
    message = QueueMessage.objects.create(
        queue=queue,
        body=body,
        max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        available_at=timezone.now() + timedelta(seconds=delay_seconds),
    )
    logger.info(f"Queued message {message.pk} on '{queue}'")
    return message


def _claimable(now):
    return Q(status="pending") | Q(status="processing", locked_until__lt=now)


def claim_message(queue):
    """
    Claim the oldest deliverable message on ``queue``.

    The claim is a conditional update; if another worker moved the row
    first the update matches nothing and the next candidate is tried.
    """
    now = timezone.now()
    visibility = timedelta(seconds=settings.QUEUE_VISIBILITY_TIMEOUT)

    candidate_ids = list(
        QueueMessage.objects.filter(queue=queue, available_at__lte=now)
        .filter(_claimable(now))
        .order_by("available_at", "id")
        .values_list("id", flat=True)[:10]
    )

    for message_id in candidate_ids:
        claimed = (
            QueueMessage.objects.filter(pk=message_id)
            .filter(_claimable(now))
            .update(
                status="processing",
                locked_until=now + visibility,
                attempts=F("attempts") + 1,
            )
        )
        if claimed:
            return QueueMessage.objects.get(pk=message_id)

    return None


def process_queue(queue, handler, limit=None):
    """
    Deliver up to ``limit`` messages from ``queue`` to ``handler(body)``.

    Returns counts of delivered, retried and dead-lettered messages.
    """
    limit = limit or settings.QUEUE_BATCH_SIZE
    stats = {"processed": 0, "retried": 0, "dead": 0}

    for _ in range(limit):
        message = claim_message(queue)
        if message is None:
            break

        try:
            handler(message.body)
        except Exception as e:
            message.schedule_retry(str(e), settings.QUEUE_RETRY_DELAYS)
            if message.status == "dead":
                logger.error(
                    f"Message {message.pk} on '{queue}' dead-lettered after "
                    f"{message.attempts} attempts: {e}"
                )
                stats["dead"] += 1
            else:
                logger.warning(
                    f"Message {message.pk} on '{queue}' failed (attempt "
                    f"{message.attempts}/{message.max_attempts}), retry at "
                    f"{message.available_at}: {e}"
                )
                stats["retried"] += 1
            continue

        QueueMessage.objects.filter(pk=message.pk).update(
            status="done", processed_at=timezone.now(), locked_until=None
        )
        stats["processed"] += 1

    return stats
