"""
Public API views for the captive portal: access, vouchers and payments
"""

import logging

from django.conf import settings
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from . import access, payments
from .exception_handler import describe_errors, error_body
from .models import Package
from .queue import PAYMENT_CALLBACK_QUEUE, send_to_queue
from .serializers import (
    InitiatePaymentSerializer,
    LoginSerializer,
    PaymentQuerySerializer,
    PublicPackageSerializer,
    RedeemVoucherSerializer,
    SessionIdSerializer,
    SessionSerializer,
    StatusQuerySerializer,
    TransactionStatusSerializer,
    UserSerializer,
)
from .session_manager import validate_session
from .utils import get_client_ip
from .vouchers import redeem_voucher

logger = logging.getLogger(__name__)


def invalid_request(serializer):
    return Response(
        error_body(describe_errors(serializer.errors), serializer.errors),
        status=status.HTTP_400_BAD_REQUEST,
    )


def _session_payload(session, now=None):
    now = now or timezone.now()
    return SessionSerializer(session, context={"now": now}).data


@api_view(["GET"])
@permission_classes([AllowAny])
def health_check(request):
    return Response({"success": True, "status": "ok", "time": timezone.now().isoformat()})


# =============================================================================
# ACCESS
# =============================================================================


@api_view(["POST"])
@permission_classes([AllowAny])
def auth_login(request):
    """
    Re-attach a device to its running session.
    Returns 402 when the device has no live session and must pay first.
    """
    serializer = LoginSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)
    data = serializer.validated_data

    result = access.login(
        data["phone_number"], data["mac_address"], password=data.get("password")
    )
    now = timezone.now()
    session = result.session

    return Response(
        {
            "success": True,
            "message": "Login successful",
            "token": result.token,
            "user": UserSerializer(result.user).data,
            "session_id": session.session_id,
            "time_remaining": session.time_remaining(now),
            "session": _session_payload(session, now),
        }
    )


@api_view(["POST"])
@permission_classes([AllowAny])
def auth_voucher(request):
    """Redeem a voucher code into a session for the calling device"""
    serializer = RedeemVoucherSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)
    data = serializer.validated_data

    session = redeem_voucher(
        data["voucher_code"],
        data["mac_address"],
        phone_number=data.get("phone_number"),
        ip_address=data.get("ip_address") or get_client_ip(request),
        gateway_id=data.get("gateway_id", ""),
    )
    now = timezone.now()

    return Response(
        {
            "success": True,
            "message": f"Voucher redeemed: {session.package_name}",
            "session_id": session.session_id,
            "time_remaining": session.time_remaining(now),
            "session": _session_payload(session, now),
        }
    )


@api_view(["POST"])
@permission_classes([AllowAny])
def auth_validate(request):
    serializer = SessionIdSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)

    session = validate_session(serializer.validated_data["session_id"])
    return Response(
        {"success": True, "valid": True, "session": _session_payload(session)}
    )


@api_view(["GET"])
@permission_classes([AllowAny])
def auth_status(request):
    """
    Access status by mac_address (fast path after a payment), phone_number
    or user_id
    """
    serializer = StatusQuerySerializer(data=request.query_params)
    if not serializer.is_valid():
        return invalid_request(serializer)
    data = serializer.validated_data

    user, sessions = access.lookup_status(
        phone_number=data.get("phone_number"),
        user_id=data.get("user_id"),
        mac_address=data.get("mac_address"),
    )
    now = timezone.now()
    session_data = [_session_payload(s, now) for s in sessions]

    return Response(
        {
            "success": True,
            "has_active_session": bool(sessions),
            "user": UserSerializer(user).data if user else None,
            "session": session_data[0] if session_data else None,
            "sessions": session_data,
        }
    )


@api_view(["POST"])
@permission_classes([AllowAny])
def auth_logout(request):
    serializer = SessionIdSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)

    session = access.logout(serializer.validated_data["session_id"])
    return Response(
        {
            "success": True,
            "message": "Logged out",
            "session": _session_payload(session),
        }
    )


# =============================================================================
# PAYMENTS
# =============================================================================


@api_view(["GET"])
@permission_classes([AllowAny])
def payment_packages(request):
    packages = Package.objects.filter(status="active").order_by("price_kes")
    return Response(
        {
            "success": True,
            "packages": PublicPackageSerializer(packages, many=True).data,
        }
    )


@api_view(["POST"])
@permission_classes([AllowAny])
def payment_initiate(request):
    """
    Send an STK push for a package. The response may already report
    ``completed`` if the customer confirmed within the inline window.
    """
    serializer = InitiatePaymentSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)
    data = serializer.validated_data

    initiation = payments.initiate_payment(
        data["phone_number"],
        data["package_id"],
        data["mac_address"],
        ip_address=data.get("ip_address") or get_client_ip(request),
        gateway_id=data.get("gateway_id", ""),
    )
    txn = initiation.transaction

    response = {
        "success": True,
        "message": initiation.customer_message
        or "Check your phone to complete the payment",
        "transaction_id": txn.transaction_id,
        "checkout_request_id": txn.checkout_request_id,
        "status": txn.status,
        "transaction": TransactionStatusSerializer(txn).data,
        "poll_interval_seconds": settings.PAYMENT_CLIENT_POLL_INTERVAL,
        "max_poll_attempts": settings.PAYMENT_CLIENT_MAX_POLLS,
    }
    if txn.session_id:
        response["session"] = _session_payload(txn.session)
    return Response(response)


@api_view(["GET"])
@permission_classes([AllowAny])
def payment_status(request):
    transaction_id = request.query_params.get("transaction_id", "").strip()
    if not transaction_id:
        return Response(
            {"success": False, "error": "transaction_id is required"},
            status=status.HTTP_400_BAD_REQUEST,
        )

    txn = payments.get_transaction(transaction_id)
    response = {
        "success": True,
        "status": txn.status,
        "transaction": TransactionStatusSerializer(txn).data,
    }
    if txn.session_id:
        response["session"] = _session_payload(txn.session)
    return Response(response)


@api_view(["POST"])
@permission_classes([AllowAny])
def payment_query(request):
    """
    Ask the provider directly; used by the portal after its own status
    polls came back pending too many times.
    """
    serializer = PaymentQuerySerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)
    data = serializer.validated_data

    txn, result = payments.manual_query(
        transaction_id=data.get("transaction_id"),
        checkout_request_id=data.get("checkout_request_id"),
    )
    response = {
        "success": True,
        "status": txn.status,
        "result_code": result.get("result_code") if result else None,
        "result_desc": result.get("result_desc") if result else "",
        "transaction": TransactionStatusSerializer(txn).data,
    }
    if txn.session_id:
        response["session"] = _session_payload(txn.session)
    return Response(response)


@api_view(["POST"])
@permission_classes([AllowAny])
def payment_callback(request):
    """
    M-Pesa STK callback.

    Always acknowledged so the provider does not retry; failures are logged
    and the queued copy, deferred poller or manual query pick them up.
    """
    try:
        payload = request.data
    except Exception:
        logger.exception("Unreadable payment callback body")
        return Response({"ResultCode": 0, "ResultDesc": "Accepted"})

    try:
        send_to_queue(PAYMENT_CALLBACK_QUEUE, payload)
    except Exception:
        logger.exception("Could not queue payment callback")

    try:
        payments.process_callback(payload)
    except Exception:
        logger.exception("Payment callback processing failed")

    return Response({"ResultCode": 0, "ResultDesc": "Accepted"})
