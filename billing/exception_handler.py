"""
Project-wide DRF exception handler.

Portal and admin clients get one error shape from every endpoint:

    {"success": false, "error": "<message>", "errors": {...}}

``errors`` is only present for request validation failures and keeps the
per-field messages. Errors DRF does not know about are logged and turned
into a 500 with the same shape instead of Django's HTML error page.
"""

import logging

from rest_framework import status
from rest_framework.exceptions import ValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler
from rest_framework.views import set_rollback

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Something went wrong, please try again"


def _flatten(errors, prefix=""):
    """Yield ``field: message`` lines from DRF's nested error structure."""
    if isinstance(errors, dict):
        for field, value in errors.items():
            key = "" if field == "non_field_errors" else str(field)
            yield from _flatten(value, ".".join(part for part in (prefix, key) if part))
    elif isinstance(errors, (list, tuple)):
        for value in errors:
            yield from _flatten(value, prefix)
    else:
        yield f"{prefix}: {errors}" if prefix else str(errors)


def describe_errors(errors):
    return "; ".join(_flatten(errors)) or "Invalid request"


def error_body(message, errors=None):
    body = {"success": False, "error": message}
    if errors is not None:
        body["errors"] = errors
    return body


def custom_exception_handler(exc, context):
    response = drf_exception_handler(exc, context)
    request = context.get("request")
    where = f"{request.method} {request.path}" if request is not None else "unknown view"

    if response is None:
        logger.error(f"Unhandled error in {where}: {exc}", exc_info=exc)
        set_rollback()
        return Response(
            error_body(INTERNAL_ERROR_MESSAGE),
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    if isinstance(exc, ValidationError):
        errors = response.data if isinstance(response.data, dict) else {"non_field_errors": response.data}
        response.data = error_body(describe_errors(errors), errors)
        return response

    detail = response.data.get("detail") if isinstance(response.data, dict) else None
    response.data = error_body(str(detail) if detail is not None else str(exc))

    if response.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.warning(f"{where} answered {response.status_code}: {response.data['error']}")
    return response
