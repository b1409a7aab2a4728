"""
Tests for the session lifecycle: device exclusivity, extension, expiry
"""

from datetime import timedelta
from unittest import mock

from django.test import TestCase
from django.utils import timezone

from billing.exceptions import DeviceConflict, NotFound, SessionInactive
from billing.models import QueueMessage, Session
from billing.queue import COA_QUEUE
from billing.session_manager import (
    build_authorization_command,
    create_session,
    extend_session,
    get_active_session_for_device,
    grant_package,
    terminate_session,
    validate_session,
)

from .helpers import MAC, OTHER_PHONE, lapse, make_package, make_user


def coa_actions():
    return [
        message.body["action"]
        for message in QueueMessage.objects.filter(queue=COA_QUEUE).order_by("id")
    ]


class CreateSessionTest(TestCase):
    """Test session creation and the one-session-per-device rule"""

    def setUp(self):
        self.user = make_user()
        self.package = make_package(hours=2, mbps=10)

    def test_create_session(self):
        """Test a new session copies the package terms and holds the device slot"""
        before = timezone.now()
        session = create_session(
            self.user, MAC, self.package, ip_address="10.0.0.20", gateway_id="gw-1"
        )

        self.assertEqual(session.status, "active")
        self.assertEqual(session.active_mac, MAC)
        self.assertEqual(session.bandwidth_mbps, 10)
        self.assertEqual(session.package_name, self.package.name)
        self.assertGreaterEqual(session.expires_at, before + timedelta(hours=2))
        self.assertEqual(session.ttl, int(session.expires_at.timestamp()))

    def test_create_session_enqueues_authorize(self):
        """Test the authorize command carries the camelCase CoA fields"""
        session = create_session(
            self.user, MAC, self.package, ip_address="10.0.0.20", gateway_id="gw-1"
        )

        message = QueueMessage.objects.get(queue=COA_QUEUE)
        body = message.body
        self.assertEqual(body["action"], "authorize")
        self.assertEqual(body["sessionId"], session.session_id)
        self.assertEqual(body["userId"], self.user.user_id)
        self.assertEqual(body["macAddress"], MAC)
        self.assertEqual(body["ipAddress"], "10.0.0.20")
        self.assertEqual(body["gatewayId"], "gw-1")
        self.assertEqual(body["bandwidthMbps"], 10)
        self.assertGreater(body["sessionTimeout"], 7000)
        self.assertIn("timestamp", body)

    def test_second_session_for_device_rejected(self):
        """Test a device cannot hold two active sessions"""
        create_session(self.user, MAC, self.package)
        other = make_user(phone=OTHER_PHONE)

        with self.assertRaises(DeviceConflict):
            create_session(other, MAC, self.package)

        self.assertEqual(Session.objects.filter(status="active").count(), 1)
        self.assertEqual(coa_actions(), ["authorize"])

    def test_lapsed_session_releases_device(self):
        """Test a lapsed session does not block a new one"""
        old = lapse(create_session(self.user, MAC, self.package))

        new = create_session(self.user, MAC, self.package)

        old.refresh_from_db()
        self.assertEqual(old.status, "expired")
        self.assertIsNone(old.active_mac)
        self.assertEqual(get_active_session_for_device(MAC), new)

    def test_lapsed_session_is_not_active(self):
        """Test readers ignore a session past its expiry"""
        lapse(create_session(self.user, MAC, self.package))
        self.assertIsNone(get_active_session_for_device(MAC))


class ExtendSessionTest(TestCase):
    """Test topping up a live session"""

    def setUp(self):
        self.user = make_user()
        self.small = make_package(name="Hourly", hours=1, mbps=5)
        self.large = make_package(name="Daily", hours=24, mbps=20, price="200.00")

    def test_extend_session(self):
        """Test expiry accumulates and bandwidth rises to the larger tier"""
        session = create_session(self.user, MAC, self.small)
        original_expiry = session.expires_at

        extended = extend_session(session, self.large)

        self.assertEqual(extended.session_id, session.session_id)
        self.assertEqual(extended.expires_at, original_expiry + timedelta(hours=24))
        self.assertEqual(extended.bandwidth_mbps, 20)
        self.assertEqual(extended.duration_hours, 25)
        self.assertEqual(extended.package_name, "Daily")
        self.assertEqual(coa_actions(), ["authorize", "update"])

    def test_extend_keeps_higher_bandwidth(self):
        """Test a cheaper top-up never lowers bandwidth"""
        session = create_session(self.user, MAC, self.large)
        extended = extend_session(session, self.small)
        self.assertEqual(extended.bandwidth_mbps, 20)

    def test_extend_lapsed_session_rejected(self):
        """Test a lapsed session cannot be extended"""
        session = lapse(create_session(self.user, MAC, self.small))
        with self.assertRaises(SessionInactive):
            extend_session(session, self.large)

    def test_grant_package_creates_then_extends(self):
        """Test grant_package starts a session, then tops it up"""
        session, extended = grant_package(self.user, MAC, self.small)
        self.assertFalse(extended)

        again, extended = grant_package(self.user, MAC, self.large)
        self.assertTrue(extended)
        self.assertEqual(again.session_id, session.session_id)
        self.assertEqual(Session.objects.count(), 1)

    def test_grant_package_lost_create_extends_winner(self):
        """Test a grant that loses the device slot tops up the winning session"""
        winner = create_session(make_user(phone=OTHER_PHONE), MAC, self.small)

        # The first lookup predates the winner's insert
        with mock.patch(
            "billing.session_manager.get_active_session_for_device",
            side_effect=[None, winner],
        ):
            session, extended = grant_package(self.user, MAC, self.large)

        self.assertTrue(extended)
        self.assertEqual(session.session_id, winner.session_id)
        self.assertEqual(session.bandwidth_mbps, 20)
        self.assertEqual(Session.objects.count(), 1)
        self.assertEqual(coa_actions(), ["authorize", "update"])

    def test_grant_package_target_ended_creates(self):
        """Test a grant whose target session ends mid-flight starts a new one"""
        target = create_session(self.user, MAC, self.small)
        terminate_session(target.session_id)

        with mock.patch(
            "billing.session_manager.get_active_session_for_device",
            side_effect=[target, None],
        ):
            session, extended = grant_package(self.user, MAC, self.large)

        self.assertFalse(extended)
        self.assertNotEqual(session.session_id, target.session_id)
        self.assertEqual(Session.objects.get(active_mac=MAC).session_id, session.session_id)

    def test_grant_package_gives_up_after_repeated_races(self):
        target = create_session(self.user, MAC, self.small)
        terminate_session(target.session_id)

        with mock.patch(
            "billing.session_manager.get_active_session_for_device",
            return_value=target,
        ):
            with self.assertRaises(DeviceConflict):
                grant_package(self.user, MAC, self.large)

    def test_grant_package_after_lapse_creates(self):
        """Test a grant on a lapsed device starts a fresh session"""
        old = lapse(create_session(self.user, MAC, self.small))

        session, extended = grant_package(self.user, MAC, self.large)

        self.assertFalse(extended)
        self.assertNotEqual(session.session_id, old.session_id)


class EndSessionTest(TestCase):
    """Test termination, validation and lazy expiry"""

    def setUp(self):
        self.user = make_user()
        self.package = make_package()
        self.session = create_session(self.user, MAC, self.package, gateway_id="gw-1")

    def test_terminate_session(self):
        """Test termination frees the device and enqueues a disconnect"""
        session = terminate_session(self.session.session_id)

        self.assertEqual(session.status, "terminated")
        self.assertIsNone(session.active_mac)
        self.assertIsNotNone(session.end_time)
        self.assertEqual(coa_actions(), ["authorize", "disconnect"])

        disconnect = QueueMessage.objects.filter(queue=COA_QUEUE).order_by("id").last()
        self.assertEqual(disconnect.body["sessionTimeout"], 0)

    def test_terminate_twice_is_noop(self):
        """Test a second terminate neither fails nor enqueues again"""
        terminate_session(self.session.session_id)
        terminate_session(self.session.session_id)
        self.assertEqual(coa_actions(), ["authorize", "disconnect"])

    def test_terminate_unknown_session(self):
        """Test terminating an unknown id raises NotFound"""
        with self.assertRaises(NotFound):
            terminate_session("session_missing")

    def test_validate_live_session(self):
        """Test a live session validates"""
        session = validate_session(self.session.session_id)
        self.assertEqual(session.session_id, self.session.session_id)

    def test_validate_lapsed_session_expires_it(self):
        """Test validating a lapsed session moves it to expired"""
        lapse(self.session)

        with self.assertRaisesMessage(SessionInactive, "Session expired"):
            validate_session(self.session.session_id)

        self.session.refresh_from_db()
        self.assertEqual(self.session.status, "expired")
        self.assertIsNone(self.session.active_mac)
        self.assertEqual(self.session.end_time, self.session.expires_at)
        self.assertEqual(coa_actions(), ["authorize", "disconnect"])

    def test_validate_terminated_session(self):
        """Test a terminated session reports its status"""
        terminate_session(self.session.session_id)
        with self.assertRaisesMessage(SessionInactive, "Session is terminated"):
            validate_session(self.session.session_id)

    def test_disconnect_command_has_zero_timeout(self):
        """Test disconnect commands never carry a timeout"""
        command = build_authorization_command("disconnect", self.session)
        self.assertEqual(command["sessionTimeout"], 0)
        self.assertEqual(command["action"], "disconnect")
