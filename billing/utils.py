"""
Utility functions for billing system
"""

import re
import secrets
import time
import logging

logger = logging.getLogger(__name__)

KENYA_MOBILE_RE = re.compile(r"^254[17]\d{8}$")

# No 0/O or 1/I so codes survive being read aloud or handwritten
VOUCHER_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
VOUCHER_PREFIX = "WIFI"


def generate_id(prefix):
    """
    Generate a record id of the form ``<prefix>_<epoch-millis>_<random>``
    """
    millis = int(time.time() * 1000)
    return f"{prefix}_{millis}_{secrets.token_hex(4)}"


def generate_batch_id():
    return f"BATCH-{int(time.time() * 1000)}"


def generate_voucher_code(blocks=3, block_size=4):
    """
    Generate a human-typeable voucher code, e.g. WIFI-7KQ2-M9XD-4HPA
    """
    parts = [
        "".join(secrets.choice(VOUCHER_ALPHABET) for _ in range(block_size))
        for _ in range(blocks)
    ]
    return "-".join([VOUCHER_PREFIX] + parts)


def normalize_voucher_code(code):
    return str(code or "").strip().upper()


def normalize_phone_number(phone_number):
    """
    Normalize phone number to standard Kenya format (254XXXXXXXXX)

    Handles formats like:
    - +254712345678 -> 254712345678
    - 254712345678 -> 254712345678
    - 0712345678 -> 254712345678
    - 712345678 -> 254712345678

    Returns:
        str: Normalized phone number in format 254XXXXXXXXX

    Raises:
        ValueError: If phone number is invalid
    """
    if not phone_number:
        raise ValueError("Phone number cannot be empty")

    phone = "".join(c for c in str(phone_number) if c.isdigit())

    if phone.startswith("0"):
        phone = "254" + phone[1:]
    elif not phone.startswith("254"):
        phone = "254" + phone

    if not KENYA_MOBILE_RE.match(phone):
        raise ValueError(f"Invalid phone number format: {phone_number}")

    return phone


def normalize_mac_address(mac_address):
    """Uppercase and colon-separate a device MAC address"""
    if not mac_address:
        raise ValueError("MAC address cannot be empty")
    mac = str(mac_address).strip().upper().replace("-", ":")
    if not mac or len(mac) > 32:
        raise ValueError(f"Invalid MAC address: {mac_address}")
    return mac


def get_client_ip(request):
    """Best-effort client IP, honouring a reverse proxy header"""
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR", "")
