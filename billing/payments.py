"""
Payment orchestration for M-Pesa STK push purchases.

A transaction goes pending -> completed | failed | cancelled exactly once.
Four triggers race to confirm it: the inline window inside ``initiate``,
the deferred poller, the provider callback and the client's manual query.
They all end in ``finalize_transaction``, whose conditional update on
``status='pending'`` lets only one of them apply the outcome and grant
access.
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import transaction as db_transaction
from django.utils import timezone

from .access import ensure_not_suspended, get_or_create_user
from .exceptions import DeviceConflict, InvalidRequest, NotFound, UpstreamError
from .models import Package, Transaction
from .mpesa import (
    OUTCOME_CANCELLED,
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_PENDING,
    MpesaAPI,
    outcome_from_result_code,
    parse_stk_callback,
)
from .queue import PAYMENT_POLL_QUEUE, send_to_queue
from .session_manager import get_active_session_for_device, grant_package

logger = logging.getLogger(__name__)

SOURCE_INITIATE = "initiate"
SOURCE_INLINE = "inline_poll"
SOURCE_DEFERRED = "deferred_poll"
SOURCE_CALLBACK = "callback"
SOURCE_MANUAL = "manual_query"


@dataclass
class PaymentInitiation:
    transaction: Transaction
    customer_message: str


def _account_reference(transaction_id):
    # Daraja caps AccountReference at 12 characters
    return ("WIFI" + transaction_id.rsplit("_", 1)[-1]).upper()[:12]


def get_transaction(transaction_id):
    txn = Transaction.objects.filter(pk=transaction_id).first()
    if txn is None:
        raise NotFound("Transaction not found")
    return txn


def find_transaction(checkout_request_id=None, account_reference=None):
    """Locate a transaction by provider correlation id, then by our reference."""
    txn = None
    if checkout_request_id:
        txn = Transaction.objects.filter(
            checkout_request_id=checkout_request_id
        ).first()
    if txn is None and account_reference:
        txn = Transaction.objects.filter(
            account_reference=str(account_reference).upper()
        ).first()
    return txn


# ---------------------------------------------------------------------------
# Finalize
# ---------------------------------------------------------------------------


def _reconcile(txn, provider_result, metadata):
    """Record disagreements between what we asked for and what was paid."""
    paid = provider_result.get("amount")
    if paid is not None:
        try:
            paid_amount = Decimal(str(paid))
        except (InvalidOperation, ValueError):
            paid_amount = None
        if paid_amount is not None and paid_amount != txn.amount:
            logger.warning(
                f"Amount mismatch on {txn.transaction_id}: expected {txn.amount}, "
                f"provider reported {paid_amount}"
            )
            metadata["amount_mismatch"] = {
                "expected": str(txn.amount),
                "paid": str(paid_amount),
            }

    payer = provider_result.get("phone_number")
    if payer and str(payer) != txn.phone_number:
        logger.warning(
            f"Payer phone {payer} differs from {txn.phone_number} on {txn.transaction_id}"
        )
        metadata["payer_phone"] = str(payer)


def finalize_transaction(transaction_id, outcome, provider_result=None, source=SOURCE_CALLBACK):
    """
    Move a pending transaction to its terminal state and grant access.

    Already-terminal transactions are returned unchanged, so every trigger
    may call this as often as it likes. A ``pending`` outcome is a no-op.
    """
    provider_result = provider_result or {}

    with db_transaction.atomic():
        txn = (
            Transaction.objects.select_for_update()
            .filter(pk=transaction_id)
            .first()
        )
        if txn is None:
            raise NotFound("Transaction not found")

        if txn.status != "pending":
            logger.info(
                f"Transaction {transaction_id} already {txn.status}, "
                f"ignoring {outcome} from {source}"
            )
            return txn

        if outcome == OUTCOME_PENDING:
            return txn

        now = timezone.now()
        updates = {"status": outcome, "updated_at": now}
        if outcome == OUTCOME_COMPLETED:
            updates["mpesa_receipt_number"] = provider_result.get("receipt_number") or ""
            updates["completed_at"] = now
        else:
            updates["failure_reason"] = (
                provider_result.get("result_desc")
                or provider_result.get("message")
                or outcome
            )

        claimed = Transaction.objects.filter(pk=transaction_id, status="pending").update(
            **updates
        )
        txn.refresh_from_db()
        if not claimed:
            logger.info(f"Transaction {transaction_id} finalized concurrently as {txn.status}")
            return txn

        metadata = dict(txn.metadata or {})
        metadata["finalized_by"] = source
        if provider_result.get("result_code") is not None:
            metadata["result_code"] = str(provider_result["result_code"])

        if outcome == OUTCOME_COMPLETED:
            _reconcile(txn, provider_result, metadata)
            session, extended = grant_package(
                txn.user,
                txn.mac_address,
                txn.package,
                ip_address=metadata.get("ip_address", ""),
                gateway_id=metadata.get("gateway_id", ""),
            )
            txn.session = session
            metadata["session_action"] = "extended" if extended else "created"

        txn.metadata = metadata
        txn.save(update_fields=["metadata", "session", "updated_at"])

    logger.info(
        f"Transaction {transaction_id} -> {txn.status} via {source}"
        + (f" (receipt {txn.mpesa_receipt_number})" if txn.mpesa_receipt_number else "")
    )
    return txn


# ---------------------------------------------------------------------------
# Provider polling
# ---------------------------------------------------------------------------


def confirm_with_provider(transaction_id, attempts, interval, source):
    """
    Query the provider up to ``attempts`` times, ``interval`` seconds apart,
    finalizing as soon as it reports success or cancellation.
    """
    client = MpesaAPI()
    txn = get_transaction(transaction_id)

    for attempt in range(1, attempts + 1):
        if txn.status != "pending" or not txn.checkout_request_id:
            return txn

        result = client.query_stk_status(
            txn.checkout_request_id, timeout=settings.MPESA_QUERY_TIMEOUT
        )
        if result["success"]:
            outcome = outcome_from_result_code(result.get("result_code"), final=False)
        else:
            outcome = OUTCOME_PENDING
        logger.info(
            f"{source} attempt {attempt}/{attempts} for {transaction_id}: "
            f"code={result.get('result_code')} -> {outcome}"
        )

        if outcome != OUTCOME_PENDING:
            return finalize_transaction(transaction_id, outcome, result, source=source)

        if attempt < attempts:
            time.sleep(interval)
        txn.refresh_from_db()

    return txn


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def initiate_payment(phone_number, package_id, mac_address, ip_address="", gateway_id=""):
    """
    Start an STK push for a package and give it a short inline window to
    confirm before returning.
    """
    if get_active_session_for_device(mac_address) is not None:
        raise DeviceConflict()

    package = Package.objects.filter(pk=package_id).first()
    if package is None:
        raise NotFound("Package not found")
    if not package.is_active:
        raise InvalidRequest("Package is not available")

    user = get_or_create_user(phone_number)
    ensure_not_suspended(user)

    txn = Transaction(
        user=user,
        phone_number=phone_number,
        amount=package.price_kes,
        package=package,
        package_name=package.name,
        mac_address=mac_address,
        metadata={
            "ip_address": ip_address or "",
            "gateway_id": gateway_id or "",
            "duration_hours": package.duration_hours,
            "bandwidth_mbps": package.bandwidth_mbps,
        },
    )
    txn.account_reference = _account_reference(txn.transaction_id)
    txn.save()
    logger.info(
        f"Payment {txn.transaction_id} initiated: {phone_number} {package.name} "
        f"KES {package.price_kes} on {mac_address}"
    )

    result = MpesaAPI().stk_push(
        phone_number,
        package.price_kes,
        account_reference=txn.account_reference,
        description=package.name,
    )
    if not result["success"]:
        finalize_transaction(txn.transaction_id, OUTCOME_FAILED, result, source=SOURCE_INITIATE)
        raise UpstreamError(f"Payment request failed: {result.get('message', 'unknown error')}")

    txn.checkout_request_id = result["checkout_request_id"]
    txn.merchant_request_id = result["merchant_request_id"]
    txn.save(update_fields=["checkout_request_id", "merchant_request_id", "updated_at"])

    try:
        txn = confirm_with_provider(
            txn.transaction_id,
            attempts=settings.PAYMENT_INLINE_POLL_ATTEMPTS,
            interval=settings.PAYMENT_INLINE_POLL_INTERVAL,
            source=SOURCE_INLINE,
        )
    except Exception:
        # Webhook and deferred poller still cover this transaction
        logger.exception(f"Inline confirmation failed for {txn.transaction_id}")
        txn.refresh_from_db()

    if txn.status == "pending":
        send_to_queue(
            PAYMENT_POLL_QUEUE,
            {
                "transaction_id": txn.transaction_id,
                "checkout_request_id": txn.checkout_request_id,
            },
            delay_seconds=settings.PAYMENT_DEFERRED_POLL_INTERVAL,
        )

    return PaymentInitiation(
        transaction=txn, customer_message=result.get("customer_message", "")
    )


def run_deferred_poll(body):
    """Queue consumer for the deferred safety-net poller."""
    return confirm_with_provider(
        body["transaction_id"],
        attempts=settings.PAYMENT_DEFERRED_POLL_ATTEMPTS,
        interval=settings.PAYMENT_DEFERRED_POLL_INTERVAL,
        source=SOURCE_DEFERRED,
    )


def manual_query(transaction_id=None, checkout_request_id=None):
    """
    Client-triggered, last-resort status check against the provider.

    Returns ``(transaction, provider_result)``; provider_result is None when
    the transaction was already terminal.
    """
    if transaction_id:
        txn = get_transaction(transaction_id)
    else:
        txn = find_transaction(checkout_request_id=checkout_request_id)
        if txn is None:
            raise NotFound("Transaction not found")

    if txn.is_terminal:
        return txn, None
    if not txn.checkout_request_id:
        raise InvalidRequest("Transaction has no payment request to query")

    result = MpesaAPI().query_stk_status(txn.checkout_request_id)
    if not result["success"]:
        raise UpstreamError(f"Status query failed: {result.get('message', 'unknown error')}")

    outcome = outcome_from_result_code(result.get("result_code"), final=False)
    if outcome != OUTCOME_PENDING:
        txn = finalize_transaction(txn.transaction_id, outcome, result, source=SOURCE_MANUAL)
    return txn, result


def process_callback(payload):
    """
    Apply an STK callback. Returns the transaction, or None when the
    payload is unusable or matches nothing.
    """
    try:
        data = parse_stk_callback(payload)
    except ValueError as e:
        logger.error(f"Ignoring malformed payment callback: {e}")
        return None

    txn = find_transaction(
        checkout_request_id=data["checkout_request_id"],
        account_reference=data["account_reference"],
    )
    if txn is None:
        logger.error(
            f"Payment callback for unknown checkout {data['checkout_request_id']}"
        )
        return None

    outcome = outcome_from_result_code(data["result_code"], final=True)
    if outcome == OUTCOME_CANCELLED:
        logger.info(f"Customer cancelled payment {txn.transaction_id}")
    return finalize_transaction(txn.transaction_id, outcome, data, source=SOURCE_CALLBACK)
