"""
Session lifecycle for granted internet access.

A device (MAC address) has at most one active session. The guarantee comes
from the unique ``Session.active_mac`` column rather than from the
read-before-write checks callers also perform, so concurrent login, voucher
and payment paths cannot both create a session for the same device.

Expiry is lazy: a session past ``expires_at`` is treated as inactive by
every reader and only moved to ``expired`` by the path that discovers it.
"""

import logging
from datetime import timedelta

from django.db import IntegrityError, transaction as db_transaction
from django.utils import timezone

from .exceptions import DeviceConflict, NotFound, SessionInactive
from .models import Session
from .queue import COA_QUEUE, send_to_queue

logger = logging.getLogger(__name__)

ACTION_AUTHORIZE = "authorize"
ACTION_UPDATE = "update"
ACTION_DISCONNECT = "disconnect"


# ---------------------------------------------------------------------------
# Authorization commands
# ---------------------------------------------------------------------------


def build_authorization_command(action, session, now=None):
    """CoA message body for the gateway dispatcher."""
    now = now or timezone.now()
    timeout = 0 if action == ACTION_DISCONNECT else session.time_remaining(now)
    return {
        "action": action,
        "sessionId": session.session_id,
        "userId": session.user_id,
        "macAddress": session.mac_address,
        "ipAddress": session.ip_address,
        "gatewayId": session.gateway_id,
        "bandwidthMbps": session.bandwidth_mbps,
        "sessionTimeout": timeout,
        "timestamp": now.isoformat(),
    }


def enqueue_authorization(action, session):
    message = send_to_queue(COA_QUEUE, build_authorization_command(action, session))
    logger.info(
        f"Enqueued {action} for session {session.session_id} "
        f"(mac={session.mac_address}, gateway={session.gateway_id or '-'})"
    )
    return message


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def get_active_session_for_device(mac_address, now=None):
    """
    The live session for a device, or None.
    A session past its expiry is ignored even if still marked active.
    """
    now = now or timezone.now()
    return (
        Session.objects.select_related("user")
        .filter(active_mac=mac_address, status="active", expires_at__gt=now)
        .first()
    )


def get_active_sessions_for_user(user, now=None):
    now = now or timezone.now()
    return list(
        Session.objects.filter(user=user, status="active", expires_at__gt=now)
        .order_by("-expires_at")
    )


def get_session(session_id):
    session = Session.objects.select_related("user").filter(pk=session_id).first()
    if session is None:
        raise NotFound("Session not found")
    return session


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def _release_stale_device_slot(mac_address, now):
    """Expire an active-but-lapsed session still holding the device slot."""
    released = Session.objects.filter(
        active_mac=mac_address, status="active", expires_at__lte=now
    ).update(status="expired", active_mac=None, end_time=now)
    if released:
        logger.info(f"Expired lapsed session for device {mac_address}")


def create_session(
    user, mac_address, package, ip_address="", gateway_id="", voucher=None
):
    """
    Create an active session for a device and enqueue its authorize command.

    Raises DeviceConflict if the device already holds an active session;
    the unique device slot makes this hold even when two callers race.
    """
    now = timezone.now()
    _release_stale_device_slot(mac_address, now)

    try:
        with db_transaction.atomic():
            session = Session.objects.create(
                user=user,
                phone_number=user.phone_number,
                package=package,
                package_name=package.name,
                mac_address=mac_address,
                active_mac=mac_address,
                ip_address=ip_address or "",
                gateway_id=gateway_id or "",
                voucher=voucher,
                start_time=now,
                expires_at=now + timedelta(hours=package.duration_hours),
                duration_hours=package.duration_hours,
                bandwidth_mbps=package.bandwidth_mbps,
            )
            enqueue_authorization(ACTION_AUTHORIZE, session)
    except IntegrityError:
        logger.warning(f"Device {mac_address} already holds an active session")
        raise DeviceConflict()

    logger.info(
        f"Session {session.session_id} created for {user.phone_number} on "
        f"{mac_address}: {package.name}, expires {session.expires_at}"
    )
    return session


def extend_session(session, package, ip_address="", gateway_id=""):
    """
    Top up a live session with another package.

    New expiry = max(now, expires_at) + package duration, bandwidth is raised
    to the larger tier and purchased hours accumulate.
    """
    with db_transaction.atomic():
        locked = Session.objects.select_for_update().get(pk=session.pk)
        now = timezone.now()
        if not locked.is_live(now):
            raise SessionInactive("Session is no longer active")

        base = max(now, locked.expires_at)
        locked.expires_at = base + timedelta(hours=package.duration_hours)
        locked.bandwidth_mbps = max(locked.bandwidth_mbps, package.bandwidth_mbps)
        locked.duration_hours = locked.duration_hours + package.duration_hours
        locked.package = package
        locked.package_name = package.name
        if ip_address:
            locked.ip_address = ip_address
        if gateway_id:
            locked.gateway_id = gateway_id
        locked.save()

        enqueue_authorization(ACTION_UPDATE, locked)

    logger.info(
        f"Session {locked.session_id} extended with {package.name}: "
        f"expires {locked.expires_at}, {locked.bandwidth_mbps} Mbps"
    )
    return locked


def grant_package(user, mac_address, package, ip_address="", gateway_id=""):
    """
    Apply a paid package to a device: extend its live session or start one.

    Returns ``(session, extended)``. Losing a race for the device slot to
    another grant turns the create into an extension of the winner, and an
    extension whose target lapsed meanwhile turns into a create.
    """
    for _ in range(2):
        existing = get_active_session_for_device(mac_address)
        if existing is None:
            try:
                session = create_session(
                    user,
                    mac_address,
                    package,
                    ip_address=ip_address,
                    gateway_id=gateway_id,
                )
                return session, False
            except DeviceConflict:
                continue

        if existing.user_id != user.user_id:
            logger.warning(
                f"Paid package for {user.phone_number} extends session "
                f"{existing.session_id} owned by {existing.phone_number} "
                f"on {mac_address}"
            )
        try:
            session = extend_session(
                existing, package, ip_address=ip_address, gateway_id=gateway_id
            )
            return session, True
        except SessionInactive:
            continue

    raise DeviceConflict("Could not settle access for this device, try again")


def _end_session(session, status, end_time):
    with db_transaction.atomic():
        changed = Session.objects.filter(pk=session.pk, status="active").update(
            status=status, active_mac=None, end_time=end_time
        )
        session.refresh_from_db()
        if changed:
            enqueue_authorization(ACTION_DISCONNECT, session)
    return bool(changed)


def terminate_session(session_id):
    """
    End a session and enqueue a disconnect. Terminating twice is a no-op.
    """
    session = get_session(session_id)
    if _end_session(session, "terminated", timezone.now()):
        logger.info(f"Session {session_id} terminated ({session.mac_address})")
    else:
        logger.info(f"Session {session_id} already {session.status}, nothing to do")
    return session


def expire_session(session):
    """Move a lapsed active session to ``expired``."""
    if _end_session(session, "expired", session.expires_at):
        logger.info(f"Session {session.session_id} expired ({session.mac_address})")
    return session


def validate_session(session_id):
    """
    Return the session if it is live, otherwise raise.
    A lapsed session is transitioned to ``expired`` here.
    """
    session = get_session(session_id)
    if session.status != "active":
        raise SessionInactive(f"Session is {session.status}")
    if not session.is_live():
        expire_session(session)
        raise SessionInactive("Session expired")
    return session
