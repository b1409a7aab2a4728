"""
Domain errors for the billing API.

All of them are DRF ``APIException`` subclasses so the project exception
handler renders them as ``{"success": false, "error": "..."}``.
"""

from rest_framework import status
from rest_framework.exceptions import APIException


class InvalidRequest(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request"
    default_code = "invalid_request"


class DeviceConflict(APIException):
    """The device is already bound to an active session, voucher or account."""

    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "This device already has an active session"
    default_code = "device_conflict"


class PaymentRequired(APIException):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_detail = "No active package found. Payment required"
    default_code = "payment_required"


class NotFound(APIException):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"
    default_code = "not_found"


class VoucherUnavailable(APIException):
    """Voucher already used or past its expiry."""

    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Voucher is no longer valid"
    default_code = "voucher_unavailable"


class SessionInactive(APIException):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Session is not active"
    default_code = "session_inactive"


class AccountSuspended(APIException):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Account suspended"
    default_code = "account_suspended"


class UpstreamError(APIException):
    """Payment provider or gateway unreachable or rejecting the call."""

    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = "Upstream service unavailable"
    default_code = "upstream_error"


class GatewayDispatchError(UpstreamError):
    default_detail = "Gateway authorization call failed"
    default_code = "gateway_dispatch_error"


class InvalidCredentials(APIException):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Invalid credentials"
    default_code = "invalid_credentials"
