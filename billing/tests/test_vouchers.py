"""
Tests for voucher issuance and redemption
"""

import re
from datetime import timedelta
from unittest import mock

from django.test import TestCase
from django.utils import timezone

from billing.exceptions import (
    AccountSuspended,
    DeviceConflict,
    InvalidRequest,
    NotFound,
    VoucherUnavailable,
)
from billing.models import Session, User, Voucher
from billing.session_manager import create_session
from billing.vouchers import generate_batch, redeem_voucher

from .helpers import MAC, OTHER_MAC, PHONE, make_package, make_user

CODE_RE = re.compile(r"^WIFI-[A-HJ-NP-Z2-9]{4}-[A-HJ-NP-Z2-9]{4}-[A-HJ-NP-Z2-9]{4}$")


class GenerateBatchTest(TestCase):
    """Test voucher batch generation"""

    def setUp(self):
        self.package = make_package()

    def test_generate_batch(self):
        """Test a batch of unused vouchers shares one batch id"""
        batch_id, vouchers = generate_batch(self.package.package_id, 5, created_by="admin")

        self.assertEqual(len(vouchers), 5)
        self.assertTrue(batch_id.startswith("BATCH-"))
        self.assertEqual(len({v.code for v in vouchers}), 5)
        for voucher in vouchers:
            self.assertRegex(voucher.code, CODE_RE)
            self.assertEqual(voucher.status, "unused")
            self.assertEqual(voucher.batch_id, batch_id)
            self.assertIsNone(voucher.expires_at)
        self.assertEqual(Voucher.objects.filter(batch_id=batch_id).count(), 5)

    def test_generate_batch_with_expiry(self):
        """Test expiry_days sets an absolute expiry and a ttl"""
        _, vouchers = generate_batch(self.package.package_id, 1, expiry_days=7)
        voucher = vouchers[0]

        expected = timezone.now() + timedelta(days=7)
        self.assertAlmostEqual(
            voucher.expires_at.timestamp(), expected.timestamp(), delta=60
        )
        self.assertEqual(voucher.ttl, int(voucher.expires_at.timestamp()))

    def test_generate_for_inactive_package(self):
        """Test inactive packages cannot get new vouchers"""
        self.package.status = "inactive"
        self.package.save()
        with self.assertRaises(InvalidRequest):
            generate_batch(self.package.package_id, 1)

    def test_generate_for_unknown_package(self):
        with self.assertRaises(NotFound):
            generate_batch("pkg_missing", 1)


class RedeemVoucherTest(TestCase):
    """Test single-use redemption"""

    def setUp(self):
        self.package = make_package(hours=3, mbps=8)
        _, vouchers = generate_batch(self.package.package_id, 1)
        self.voucher = vouchers[0]

    def test_redeem_voucher(self):
        """Test redemption marks the voucher used and starts a session"""
        session = redeem_voucher(self.voucher.code, MAC, phone_number=PHONE)

        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.status, "used")
        self.assertEqual(self.voucher.used_by_mac, MAC)
        self.assertEqual(self.voucher.used_by.phone_number, PHONE)
        self.assertIsNotNone(self.voucher.used_at)

        self.assertEqual(session.status, "active")
        self.assertEqual(session.voucher_id, self.voucher.code)
        self.assertEqual(session.bandwidth_mbps, 8)
        self.assertEqual(session.phone_number, PHONE)

    def test_redeem_normalizes_code(self):
        """Test codes are matched case-insensitively"""
        session = redeem_voucher(f"  {self.voucher.code.lower()} ", MAC, phone_number=PHONE)
        self.assertEqual(session.voucher_id, self.voucher.code)

    def test_redeem_without_phone_creates_anonymous_user(self):
        """Test a voucher can be redeemed with no phone number"""
        session = redeem_voucher(self.voucher.code, MAC)
        self.assertTrue(session.user.phone_number.startswith("anonymous_"))

    def test_redeem_again_from_same_device(self):
        """Test re-presenting a used code on its device returns the same session"""
        first = redeem_voucher(self.voucher.code, MAC, phone_number=PHONE)
        second = redeem_voucher(self.voucher.code, MAC, phone_number=PHONE)

        self.assertEqual(first.session_id, second.session_id)
        self.assertEqual(Session.objects.count(), 1)

    def test_redeem_used_voucher_from_other_device(self):
        """Test a used voucher is bound to its first device"""
        redeem_voucher(self.voucher.code, MAC, phone_number=PHONE)
        with self.assertRaises(DeviceConflict):
            redeem_voucher(self.voucher.code, OTHER_MAC)

    def test_redeem_used_voucher_after_session_ended(self):
        """Test a used voucher cannot grant a second session"""
        session = redeem_voucher(self.voucher.code, MAC, phone_number=PHONE)
        Session.objects.filter(pk=session.pk).update(status="terminated", active_mac=None)

        with self.assertRaises(VoucherUnavailable):
            redeem_voucher(self.voucher.code, MAC, phone_number=PHONE)

    def test_redeem_unknown_code(self):
        with self.assertRaises(NotFound):
            redeem_voucher("WIFI-AAAA-BBBB-CCCC", MAC)

    def test_redeem_expired_voucher(self):
        """Test a voucher past its expiry is flipped to expired"""
        Voucher.objects.filter(pk=self.voucher.code).update(
            expires_at=timezone.now() - timedelta(hours=1)
        )

        with self.assertRaises(VoucherUnavailable):
            redeem_voucher(self.voucher.code, MAC)

        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.status, "expired")
        self.assertFalse(Session.objects.exists())

    def test_redeem_on_device_with_active_session(self):
        """Test the voucher stays unused when the device is already online"""
        create_session(make_user(), MAC, self.package)

        with self.assertRaises(DeviceConflict):
            redeem_voucher(self.voucher.code, MAC)

        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.status, "unused")

    def test_redeem_suspended_user(self):
        """Test a suspended account cannot consume a voucher"""
        make_user(status="suspended")

        with self.assertRaises(AccountSuspended):
            redeem_voucher(self.voucher.code, MAC, phone_number=PHONE)

        self.voucher.refresh_from_db()
        self.assertEqual(self.voucher.status, "unused")

    def test_lost_claim_race(self):
        """Test a redemption that read the voucher before another claim fails cleanly"""
        stale = Voucher.objects.select_related("package").get(pk=self.voucher.code)
        Voucher.objects.filter(pk=self.voucher.code).update(
            status="used", used_by_mac=OTHER_MAC, used_at=timezone.now()
        )
        users_before = User.objects.count()

        with mock.patch("billing.vouchers._load_voucher", return_value=stale):
            with self.assertRaises(VoucherUnavailable):
                redeem_voucher(self.voucher.code, MAC)

        self.assertFalse(Session.objects.exists())
        self.assertEqual(User.objects.count(), users_before)

    def test_inactive_package_voucher_still_redeemable(self):
        """Test vouchers issued before a package was retired keep working"""
        self.package.status = "inactive"
        self.package.save()

        session = redeem_voucher(self.voucher.code, MAC)
        self.assertEqual(session.package_id, self.package.package_id)
