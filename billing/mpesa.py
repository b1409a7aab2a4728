"""
M-Pesa Daraja API Integration (https://developer.safaricom.co.ke)
Handles Lipa Na M-Pesa Online (STK push) payments for Kenya.

Supports:
  - OAuth client-credentials access tokens (cached per process)
  - STK push initiation
  - STK push status query
  - Parsing of the asynchronous STK callback
"""

import base64
import logging
import threading
import time
from datetime import datetime

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MPESA_SANDBOX_URL = "https://sandbox.safaricom.co.ke"
MPESA_PRODUCTION_URL = "https://api.safaricom.co.ke"

RESULT_SUCCESS = "0"
RESULT_CANCELLED = "1032"

# Query error while the customer has not yet answered the prompt
QUERY_STILL_PROCESSING = "500.001.1001"

TOKEN_REFRESH_BUFFER = 60  # seconds
DEFAULT_TOKEN_LIFETIME = 3599  # seconds

OUTCOME_COMPLETED = "completed"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_FAILED = "failed"
OUTCOME_PENDING = "pending"

# Process-wide token cache; losing it only costs an extra OAuth call
_token_cache = {"token": None, "expires_at": 0.0}
_token_lock = threading.Lock()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def clear_token_cache():
    with _token_lock:
        _token_cache["token"] = None
        _token_cache["expires_at"] = 0.0


def outcome_from_result_code(result_code, final=False):
    """
    Map a provider result code to a transaction outcome.

    0 is success and 1032 is a cancelled prompt. Anything else is still
    pending for the polling paths and a failure only when ``final`` (the
    provider's own callback).
    """
    if result_code is None:
        return OUTCOME_PENDING
    code = str(result_code)
    if code == RESULT_SUCCESS:
        return OUTCOME_COMPLETED
    if code == RESULT_CANCELLED:
        return OUTCOME_CANCELLED
    return OUTCOME_FAILED if final else OUTCOME_PENDING


def parse_stk_callback(payload):
    """
    Flatten an STK callback body into a dict.

    Raises ValueError if the payload is not an STK callback.
    """
    try:
        callback = payload["Body"]["stkCallback"]
    except (KeyError, TypeError):
        raise ValueError("Payload is not an STK callback")

    items = {}
    for item in (callback.get("CallbackMetadata") or {}).get("Item", []) or []:
        if isinstance(item, dict) and "Name" in item:
            items[item["Name"]] = item.get("Value")

    return {
        "merchant_request_id": callback.get("MerchantRequestID", ""),
        "checkout_request_id": callback.get("CheckoutRequestID", ""),
        "result_code": callback.get("ResultCode"),
        "result_desc": callback.get("ResultDesc", ""),
        "amount": items.get("Amount"),
        "receipt_number": items.get("MpesaReceiptNumber", ""),
        "transaction_date": items.get("TransactionDate"),
        "phone_number": items.get("PhoneNumber"),
        "account_reference": items.get("AccountReference", ""),
    }


# ---------------------------------------------------------------------------
# MpesaAPI Client
# ---------------------------------------------------------------------------


class MpesaAPI:
    """
    Daraja API client.

    Can be constructed with explicit credentials or will fall back to
    Django settings.
    """

    def __init__(
        self,
        consumer_key: str | None = None,
        consumer_secret: str | None = None,
        shortcode: str | None = None,
        passkey: str | None = None,
    ):
        self.consumer_key = consumer_key or settings.MPESA_CONSUMER_KEY
        self.consumer_secret = consumer_secret or settings.MPESA_CONSUMER_SECRET
        self.shortcode = shortcode or settings.MPESA_SHORTCODE
        self.passkey = passkey or settings.MPESA_PASSKEY
        self.callback_url = settings.MPESA_CALLBACK_URL
        self.transaction_type = settings.MPESA_TRANSACTION_TYPE
        self.base_url = (
            MPESA_PRODUCTION_URL
            if settings.MPESA_ENVIRONMENT == "production"
            else MPESA_SANDBOX_URL
        )
        self.timeout = settings.MPESA_TIMEOUT

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def get_access_token(self, timeout: float | None = None) -> str | None:
        """Cached OAuth token, refreshed when under a minute remains."""
        with _token_lock:
            if _token_cache["token"] and time.time() < _token_cache["expires_at"]:
                return _token_cache["token"]

        try:
            response = requests.get(
                f"{self.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
                timeout=timeout or self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as exc:
            logger.error("M-Pesa OAuth request failed: %s", exc)
            return None
        except ValueError:
            logger.error("M-Pesa OAuth returned non-JSON response")
            return None

        token = body.get("access_token")
        if not token:
            logger.error("M-Pesa OAuth response had no access_token")
            return None

        lifetime = int(body.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
        with _token_lock:
            _token_cache["token"] = token
            _token_cache["expires_at"] = time.time() + lifetime - TOKEN_REFRESH_BUFFER
        return token

    def _password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    def _request(self, path: str, json_data: dict, timeout: float | None = None) -> dict:
        """
        POST to the Daraja API.

        Returns a dict with at least ``success`` (bool).
        """
        token = self.get_access_token(timeout)
        if not token:
            return {
                "success": False,
                "message": "Could not authenticate with payment provider.",
            }

        try:
            response = requests.post(
                f"{self.base_url}{path}",
                json=json_data,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
                timeout=timeout or self.timeout,
            )

            body = response.json()

            if response.status_code == 200:
                return {"success": True, "data": body}

            logger.error(
                "M-Pesa API error %s → %s %s: %s",
                path,
                response.status_code,
                body.get("errorCode", ""),
                body.get("errorMessage", ""),
            )
            return {
                "success": False,
                "status_code": response.status_code,
                "error_code": body.get("errorCode", "unknown"),
                "message": body.get("errorMessage", "Unknown error"),
                "raw": body,
            }

        except requests.exceptions.Timeout:
            logger.error("M-Pesa API timeout: %s", path)
            return {
                "success": False,
                "message": "Request timed out. Please try again.",
            }
        except requests.exceptions.ConnectionError:
            logger.error("M-Pesa API connection error: %s", path)
            return {
                "success": False,
                "message": "Could not connect to payment provider.",
            }
        except requests.exceptions.RequestException as exc:
            logger.error("M-Pesa API request error: %s", exc)
            return {"success": False, "message": str(exc)}
        except ValueError:
            logger.error("M-Pesa API returned non-JSON response for %s", path)
            return {
                "success": False,
                "message": "Invalid response from payment provider.",
            }

    # ======================================================================
    # STK PUSH
    # ======================================================================

    def stk_push(
        self,
        phone_number: str,
        amount,
        account_reference: str,
        description: str = "WiFi access",
    ) -> dict:
        """
        Prompt the customer's phone to approve a payment.

        Args:
            phone_number:      Customer phone (254XXXXXXXXX)
            amount:            Whole KES amount
            account_reference: Our reference, echoed back in the callback
            description:       Text shown on the prompt
        """
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.transaction_type,
            "Amount": int(amount),
            "PartyA": phone_number,
            "PartyB": self.shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference[:12],
            "TransactionDesc": description[:13],
        }

        logger.info(
            "M-Pesa: STK push phone=%s amount=%s ref=%s",
            phone_number,
            amount,
            account_reference,
        )
        result = self._request("/mpesa/stkpush/v1/processrequest", payload)

        if not result["success"]:
            return result

        data = result["data"]
        if str(data.get("ResponseCode")) != RESULT_SUCCESS:
            logger.error(
                "M-Pesa STK push rejected: %s %s",
                data.get("ResponseCode"),
                data.get("ResponseDescription"),
            )
            return {
                "success": False,
                "error_code": data.get("ResponseCode"),
                "message": data.get("ResponseDescription", "STK push rejected"),
                "raw": data,
            }

        return {
            "success": True,
            "merchant_request_id": data.get("MerchantRequestID", ""),
            "checkout_request_id": data.get("CheckoutRequestID", ""),
            "customer_message": data.get(
                "CustomerMessage", "Check your phone to complete the payment"
            ),
            "raw": data,
        }

    def query_stk_status(self, checkout_request_id: str, timeout: float | None = None) -> dict:
        """
        Ask the provider how an STK push ended.

        ``result_code`` is None while the customer has not answered yet.
        """
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        result = self._request("/mpesa/stkpushquery/v1/query", payload, timeout=timeout)

        if not result["success"]:
            if result.get("error_code") == QUERY_STILL_PROCESSING:
                return {
                    "success": True,
                    "result_code": None,
                    "result_desc": result.get("message", "Transaction is being processed"),
                }
            return result

        data = result["data"]
        result_code = data.get("ResultCode")
        return {
            "success": True,
            "result_code": None if result_code is None else str(result_code),
            "result_desc": data.get("ResultDesc", ""),
            "receipt_number": data.get("MpesaReceiptNumber", ""),
            "amount": data.get("Amount"),
            "phone_number": data.get("PhoneNumber"),
            "raw": data,
        }
