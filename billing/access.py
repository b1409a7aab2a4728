"""
Access controller: login, status lookup and logout for WiFi users.
"""

import logging
from dataclasses import dataclass

from django.contrib.auth.hashers import check_password
from django.utils import timezone

from .exceptions import (
    AccountSuspended,
    DeviceConflict,
    InvalidCredentials,
    NotFound,
    PaymentRequired,
)
from .models import Session, User, default_roles
from .session_manager import (
    get_active_session_for_device,
    get_active_sessions_for_user,
    terminate_session,
)
from .tokens import issue_access_token
from .utils import generate_id

logger = logging.getLogger(__name__)


@dataclass
class LoginResult:
    user: User
    session: Session
    token: str


def get_or_create_user(phone_number):
    """Fetch the WiFi user for a normalized phone number, creating on first use."""
    user, created = User.objects.get_or_create(phone_number=phone_number)
    if created:
        logger.info(f"Created user {user.user_id} for {phone_number}")
    return user


def create_anonymous_user():
    """User record for a voucher redeemed without a phone number."""
    user = User.objects.create(phone_number=f"anonymous_{generate_id('anon')}")
    logger.info(f"Created anonymous user {user.user_id}")
    return user


def ensure_not_suspended(user):
    if user.status == "suspended":
        raise AccountSuspended()


def login(phone_number, mac_address, password=None):
    """
    Re-attach a device to its running session.

    A device whose live session belongs to someone else is rejected, and
    with no live session the caller is told to pay.
    """
    user = get_or_create_user(phone_number)
    ensure_not_suspended(user)

    password_verified = False
    if user.password_hash:
        if not password or not check_password(password, user.password_hash):
            logger.warning(f"Failed password login for {phone_number}")
            raise InvalidCredentials()
        password_verified = True

    user.last_login_at = timezone.now()
    user.save(update_fields=["last_login_at"])

    session = get_active_session_for_device(mac_address)
    if session and session.user_id != user.user_id:
        raise DeviceConflict("This device is already in use by another account")
    if session is None:
        raise PaymentRequired()

    # Elevated roles need a password, never just phone + MAC
    roles = None if password_verified else default_roles()
    if user.is_admin and not password_verified:
        logger.warning(f"Admin {phone_number} logged in without a password, token limited")

    logger.info(f"Login {phone_number} on {mac_address} -> {session.session_id}")
    return LoginResult(
        user=user, session=session, token=issue_access_token(user, roles=roles)
    )


def lookup_status(phone_number=None, user_id=None, mac_address=None):
    """
    Access status by device (fast path) or by user.

    Returns ``(user, sessions)``; ``user`` is None for a device lookup with
    no live session.
    """
    if mac_address:
        session = get_active_session_for_device(mac_address)
        if session is None:
            return None, []
        return session.user, [session]

    if user_id:
        user = User.objects.filter(pk=user_id).first()
    elif phone_number:
        user = User.objects.filter(phone_number=phone_number).first()
    else:
        user = None

    if user is None:
        raise NotFound("User not found")

    return user, get_active_sessions_for_user(user)


def logout(session_id):
    return terminate_session(session_id)
