"""
Voucher engine: batch issuance and single-use redemption.

A voucher moves unused -> used exactly once. The transition is a
conditional update on ``status='unused'`` performed in the same database
transaction as the session it grants, so two devices racing on one code
cannot both win.
"""

import logging
from datetime import timedelta

from django.db import IntegrityError, transaction as db_transaction
from django.db.models import Q
from django.utils import timezone

from .access import create_anonymous_user, ensure_not_suspended, get_or_create_user
from .exceptions import DeviceConflict, InvalidRequest, NotFound, VoucherUnavailable
from .models import Package, Voucher
from .session_manager import create_session, get_active_session_for_device
from .utils import generate_batch_id, generate_voucher_code, normalize_voucher_code

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 10


def _create_unique_voucher(package, batch_id, expires_at, created_by):
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_voucher_code()
        try:
            with db_transaction.atomic():
                return Voucher.objects.create(
                    code=code,
                    package=package,
                    batch_id=batch_id,
                    expires_at=expires_at,
                    created_by=created_by,
                )
        except IntegrityError:
            logger.info(f"Voucher code collision on {code}, regenerating")
    raise RuntimeError("Could not generate a unique voucher code")


def generate_batch(package_id, quantity, expiry_days=None, created_by=""):
    """
    Issue ``quantity`` unused vouchers for an active package.

    Returns ``(batch_id, vouchers)``.
    """
    package = Package.objects.filter(pk=package_id).first()
    if package is None:
        raise NotFound("Package not found")
    if not package.is_active:
        raise InvalidRequest("Package is not active")

    batch_id = generate_batch_id()
    expires_at = (
        timezone.now() + timedelta(days=expiry_days) if expiry_days else None
    )

    vouchers = [
        _create_unique_voucher(package, batch_id, expires_at, created_by)
        for _ in range(quantity)
    ]

    logger.info(
        f"Generated {len(vouchers)} vouchers for {package.name} in {batch_id}"
        + (f", expiring {expires_at}" if expires_at else "")
    )
    return batch_id, vouchers


def _load_voucher(code):
    return Voucher.objects.select_related("package").filter(pk=code).first()


def _reuse_bound_session(voucher, mac_address):
    """The still-live session this voucher granted to this device, if any."""
    return voucher.sessions.filter(
        active_mac=mac_address, status="active", expires_at__gt=timezone.now()
    ).first()


def redeem_voucher(code, mac_address, phone_number=None, ip_address="", gateway_id=""):
    """
    Redeem a voucher into a new session for ``mac_address``.

    Re-redeeming a used code from the device it is bound to returns that
    device's session from the voucher while it lasts.
    """
    code = normalize_voucher_code(code)
    voucher = _load_voucher(code)
    if voucher is None:
        raise NotFound("Invalid voucher code")

    if voucher.used_by_mac and voucher.used_by_mac != mac_address:
        raise DeviceConflict("Voucher is already bound to another device")

    if voucher.status == "used":
        session = _reuse_bound_session(voucher, mac_address)
        if session is not None:
            logger.info(f"Voucher {code} re-presented by {mac_address}, reusing session")
            return session
        raise VoucherUnavailable("Voucher has already been used")

    if voucher.status == "expired":
        raise VoucherUnavailable("Voucher has expired")

    if voucher.is_past_expiry():
        Voucher.objects.filter(pk=code, status="unused").update(status="expired")
        logger.info(f"Voucher {code} expired on redemption attempt")
        raise VoucherUnavailable("Voucher has expired")

    if get_active_session_for_device(mac_address) is not None:
        raise DeviceConflict()

    with db_transaction.atomic():
        user = get_or_create_user(phone_number) if phone_number else create_anonymous_user()
        ensure_not_suspended(user)

        claimed = (
            Voucher.objects.filter(pk=code, status="unused")
            .filter(Q(used_by_mac="") | Q(used_by_mac=mac_address))
            .update(
                status="used",
                used_at=timezone.now(),
                used_by=user,
                used_by_mac=mac_address,
            )
        )
        if not claimed:
            raise VoucherUnavailable("Voucher has already been used")

        session = create_session(
            user,
            mac_address,
            voucher.package,
            ip_address=ip_address,
            gateway_id=gateway_id,
            voucher=voucher,
        )

    logger.info(f"Voucher {code} redeemed by {user.phone_number} on {mac_address}")
    return session
