"""
Tests for M-Pesa payment orchestration: initiation, polling, callbacks
"""

from unittest import mock

from django.test import TestCase, override_settings

from billing.exceptions import (
    AccountSuspended,
    DeviceConflict,
    InvalidRequest,
    NotFound,
    UpstreamError,
)
from billing.models import QueueMessage, Session, Transaction
from billing.mpesa import MpesaAPI
from billing.payments import (
    finalize_transaction,
    initiate_payment,
    manual_query,
    process_callback,
    run_deferred_poll,
)
from billing.queue import COA_QUEUE, PAYMENT_POLL_QUEUE
from billing.session_manager import create_session

from .helpers import (
    MAC,
    OTHER_PHONE,
    PHONE,
    make_package,
    make_pending_transaction,
    make_user,
    stk_callback,
)

STK_ACCEPTED = {
    "success": True,
    "merchant_request_id": "29115-34620561-1",
    "checkout_request_id": "ws_CO_191220191020363925",
    "customer_message": "Success. Request accepted for processing",
}

QUERY_PENDING = {"success": True, "result_code": None, "result_desc": "Transaction is being processed"}
QUERY_PAID = {
    "success": True,
    "result_code": "0",
    "result_desc": "The service request is processed successfully.",
    "receipt_number": "",
    "amount": None,
    "phone_number": None,
}
QUERY_CANCELLED = {"success": True, "result_code": "1032", "result_desc": "Request cancelled by user"}


@override_settings(
    PAYMENT_INLINE_POLL_INTERVAL=0, PAYMENT_DEFERRED_POLL_INTERVAL=0, MPESA_QUERY_TIMEOUT=3
)
class InitiatePaymentTest(TestCase):
    """Test STK push initiation and the inline confirmation window"""

    def setUp(self):
        self.package = make_package(hours=2, mbps=10, price="50.00")

    def initiate(self):
        return initiate_payment(
            PHONE, self.package.package_id, MAC, ip_address="10.0.0.50", gateway_id="gw-1"
        )

    @mock.patch.object(MpesaAPI, "query_stk_status", return_value=QUERY_PAID)
    @mock.patch.object(MpesaAPI, "stk_push", return_value=STK_ACCEPTED)
    def test_confirmed_inline(self, mock_push, mock_query):
        """Test a payment confirmed within the inline window grants access"""
        initiation = self.initiate()
        txn = initiation.transaction

        self.assertEqual(txn.status, "completed")
        self.assertEqual(txn.checkout_request_id, STK_ACCEPTED["checkout_request_id"])
        self.assertIsNotNone(txn.completed_at)
        self.assertEqual(txn.metadata["finalized_by"], "inline_poll")
        self.assertEqual(txn.metadata["session_action"], "created")
        self.assertEqual(initiation.customer_message, STK_ACCEPTED["customer_message"])

        session = txn.session
        self.assertEqual(session.active_mac, MAC)
        self.assertEqual(session.ip_address, "10.0.0.50")
        self.assertEqual(session.gateway_id, "gw-1")
        self.assertFalse(QueueMessage.objects.filter(queue=PAYMENT_POLL_QUEUE).exists())

        args, kwargs = mock_push.call_args
        self.assertEqual(args[0], PHONE)
        self.assertEqual(kwargs["account_reference"], txn.account_reference)
        self.assertLessEqual(len(txn.account_reference), 12)
        mock_query.assert_called_once_with(txn.checkout_request_id, timeout=3)

    @mock.patch.object(MpesaAPI, "query_stk_status", return_value=QUERY_PENDING)
    @mock.patch.object(MpesaAPI, "stk_push", return_value=STK_ACCEPTED)
    @override_settings(PAYMENT_INLINE_POLL_ATTEMPTS=2)
    def test_unconfirmed_inline_schedules_deferred_poll(self, mock_push, mock_query):
        """Test a still-pending payment is handed to the deferred poller"""
        txn = self.initiate().transaction

        self.assertEqual(txn.status, "pending")
        self.assertEqual(mock_query.call_count, 2)
        self.assertFalse(Session.objects.exists())

        message = QueueMessage.objects.get(queue=PAYMENT_POLL_QUEUE)
        self.assertEqual(
            message.body,
            {
                "transaction_id": txn.transaction_id,
                "checkout_request_id": txn.checkout_request_id,
            },
        )

    @mock.patch.object(MpesaAPI, "query_stk_status", return_value=QUERY_CANCELLED)
    @mock.patch.object(MpesaAPI, "stk_push", return_value=STK_ACCEPTED)
    def test_cancelled_inline(self, mock_push, mock_query):
        """Test a cancelled prompt ends the transaction without access"""
        txn = self.initiate().transaction

        self.assertEqual(txn.status, "cancelled")
        self.assertEqual(txn.failure_reason, "Request cancelled by user")
        self.assertFalse(Session.objects.exists())

    @mock.patch.object(MpesaAPI, "query_stk_status", side_effect=RuntimeError("boom"))
    @mock.patch.object(MpesaAPI, "stk_push", return_value=STK_ACCEPTED)
    def test_inline_poll_error_falls_back_to_deferred(self, mock_push, mock_query):
        """Test an inline query crash still leaves the deferred poll queued"""
        txn = self.initiate().transaction

        self.assertEqual(txn.status, "pending")
        self.assertTrue(QueueMessage.objects.filter(queue=PAYMENT_POLL_QUEUE).exists())

    @mock.patch.object(
        MpesaAPI,
        "stk_push",
        return_value={"success": False, "message": "Invalid PhoneNumber"},
    )
    def test_stk_push_rejected(self, mock_push):
        """Test a rejected STK push fails the transaction and raises"""
        with self.assertRaises(UpstreamError):
            self.initiate()

        txn = Transaction.objects.get()
        self.assertEqual(txn.status, "failed")
        self.assertEqual(txn.failure_reason, "Invalid PhoneNumber")

    @mock.patch.object(MpesaAPI, "stk_push")
    def test_device_with_active_session(self, mock_push):
        """Test an online device is told to wait for its session instead of paying"""
        create_session(make_user(), MAC, self.package)

        with self.assertRaises(DeviceConflict):
            self.initiate()

        mock_push.assert_not_called()
        self.assertFalse(Transaction.objects.exists())

    @mock.patch.object(MpesaAPI, "stk_push")
    def test_inactive_package(self, mock_push):
        self.package.status = "inactive"
        self.package.save()

        with self.assertRaises(InvalidRequest):
            self.initiate()
        mock_push.assert_not_called()

    @mock.patch.object(MpesaAPI, "stk_push")
    def test_unknown_package(self, mock_push):
        with self.assertRaises(NotFound):
            initiate_payment(PHONE, "pkg_missing", MAC)
        mock_push.assert_not_called()

    @mock.patch.object(MpesaAPI, "stk_push")
    def test_suspended_user(self, mock_push):
        make_user(status="suspended")
        with self.assertRaises(AccountSuspended):
            self.initiate()
        mock_push.assert_not_called()


class FinalizeTransactionTest(TestCase):
    """Test the single pending -> terminal transition"""

    def setUp(self):
        self.user = make_user()
        self.package = make_package(hours=1, mbps=5)
        self.txn = make_pending_transaction(self.user, self.package)

    def test_finalize_completed(self):
        txn = finalize_transaction(
            self.txn.transaction_id, "completed", {"receipt_number": "QKT1ABC2DE"}
        )

        self.assertEqual(txn.status, "completed")
        self.assertEqual(txn.mpesa_receipt_number, "QKT1ABC2DE")
        self.assertEqual(txn.session.ip_address, "10.0.0.50")

    def test_finalize_twice_grants_once(self):
        """Test repeated completions grant exactly one session"""
        finalize_transaction(self.txn.transaction_id, "completed", source="callback")
        txn = finalize_transaction(self.txn.transaction_id, "completed", source="manual_query")

        self.assertEqual(txn.metadata["finalized_by"], "callback")
        self.assertEqual(Session.objects.count(), 1)
        self.assertEqual(QueueMessage.objects.filter(queue=COA_QUEUE).count(), 1)

    def test_terminal_state_is_final(self):
        """Test a failed transaction cannot later complete"""
        finalize_transaction(self.txn.transaction_id, "failed", {"result_desc": "Insufficient funds"})
        txn = finalize_transaction(self.txn.transaction_id, "completed")

        self.assertEqual(txn.status, "failed")
        self.assertEqual(txn.failure_reason, "Insufficient funds")
        self.assertFalse(Session.objects.exists())

    def test_pending_outcome_is_noop(self):
        txn = finalize_transaction(self.txn.transaction_id, "pending")
        self.assertEqual(txn.status, "pending")

    def test_completion_extends_live_session(self):
        """Test paying on an online device tops up its session"""
        session = create_session(self.user, MAC, self.package)

        txn = finalize_transaction(self.txn.transaction_id, "completed")

        self.assertEqual(txn.session_id, session.session_id)
        self.assertEqual(txn.metadata["session_action"], "extended")
        self.assertEqual(Session.objects.count(), 1)

    def test_amount_mismatch_recorded(self):
        """Test a short payment is still honoured but flagged"""
        txn = finalize_transaction(self.txn.transaction_id, "completed", {"amount": 10})

        self.assertEqual(txn.status, "completed")
        self.assertEqual(txn.metadata["amount_mismatch"], {"expected": "50.00", "paid": "10"})

    def test_unknown_transaction(self):
        with self.assertRaises(NotFound):
            finalize_transaction("txn_missing", "completed")


class CallbackTest(TestCase):
    """Test provider callback handling"""

    def setUp(self):
        self.user = make_user()
        self.package = make_package(hours=1, mbps=5, price="50.00")
        self.txn = make_pending_transaction(self.user, self.package)

    def test_successful_callback(self):
        txn = process_callback(stk_callback())

        self.assertEqual(txn.status, "completed")
        self.assertEqual(txn.mpesa_receipt_number, "QKT1ABC2DE")
        self.assertEqual(txn.metadata["finalized_by"], "callback")
        self.assertNotIn("amount_mismatch", txn.metadata)
        self.assertNotIn("payer_phone", txn.metadata)
        self.assertTrue(Session.objects.filter(active_mac=MAC).exists())

    def test_duplicate_callback(self):
        """Test a redelivered callback changes nothing"""
        process_callback(stk_callback())
        txn = process_callback(stk_callback())

        self.assertEqual(txn.status, "completed")
        self.assertEqual(Session.objects.count(), 1)
        self.assertEqual(QueueMessage.objects.filter(queue=COA_QUEUE).count(), 1)

    def test_failed_callback(self):
        """Test a non-zero, non-cancel code from the callback is a failure"""
        txn = process_callback(stk_callback(result_code=2001, result_desc="Wrong PIN"))

        self.assertEqual(txn.status, "failed")
        self.assertEqual(txn.failure_reason, "Wrong PIN")
        self.assertFalse(Session.objects.exists())

    def test_cancelled_callback(self):
        txn = process_callback(stk_callback(result_code=1032, result_desc="Request cancelled by user"))
        self.assertEqual(txn.status, "cancelled")

    def test_success_after_cancel_stays_cancelled(self):
        """Test a late success webhook cannot revive a cancelled payment"""
        process_callback(stk_callback(result_code=1032, result_desc="Request cancelled by user"))
        txn = process_callback(stk_callback())

        self.assertEqual(txn.status, "cancelled")
        self.assertEqual(txn.mpesa_receipt_number, "")
        self.assertFalse(Session.objects.exists())
        self.assertFalse(QueueMessage.objects.filter(queue=COA_QUEUE).exists())

    def test_payer_phone_recorded(self):
        txn = process_callback(stk_callback(phone=OTHER_PHONE))
        self.assertEqual(txn.metadata["payer_phone"], OTHER_PHONE)

    def test_unknown_checkout(self):
        self.assertIsNone(process_callback(stk_callback(checkout_request_id="ws_CO_unknown")))
        self.txn.refresh_from_db()
        self.assertEqual(self.txn.status, "pending")

    def test_malformed_callback(self):
        self.assertIsNone(process_callback({"unexpected": True}))
        self.assertIsNone(process_callback(None))


@override_settings(PAYMENT_DEFERRED_POLL_INTERVAL=0)
class ProviderQueryTest(TestCase):
    """Test the deferred poller and the client-triggered query"""

    def setUp(self):
        self.user = make_user()
        self.package = make_package()
        self.txn = make_pending_transaction(self.user, self.package)

    @mock.patch.object(MpesaAPI, "query_stk_status", return_value=QUERY_PAID)
    def test_deferred_poll_completes(self, mock_query):
        txn = run_deferred_poll(
            {"transaction_id": self.txn.transaction_id, "checkout_request_id": "ws_CO_001"}
        )
        self.assertEqual(txn.status, "completed")
        self.assertEqual(txn.metadata["finalized_by"], "deferred_poll")

    @mock.patch.object(MpesaAPI, "query_stk_status", return_value=QUERY_PENDING)
    @override_settings(PAYMENT_DEFERRED_POLL_ATTEMPTS=3)
    def test_deferred_poll_gives_up_pending(self, mock_query):
        """Test the poller leaves an unanswered prompt pending"""
        txn = run_deferred_poll({"transaction_id": self.txn.transaction_id})

        self.assertEqual(txn.status, "pending")
        self.assertEqual(mock_query.call_count, 3)

    @mock.patch.object(MpesaAPI, "query_stk_status", return_value=QUERY_PAID)
    def test_manual_query_completes(self, mock_query):
        txn, result = manual_query(checkout_request_id="ws_CO_001")

        self.assertEqual(txn.status, "completed")
        self.assertEqual(result["result_code"], "0")
        self.assertEqual(txn.metadata["finalized_by"], "manual_query")

    @mock.patch.object(MpesaAPI, "query_stk_status")
    def test_manual_query_terminal_skips_provider(self, mock_query):
        finalize_transaction(self.txn.transaction_id, "failed")

        txn, result = manual_query(transaction_id=self.txn.transaction_id)

        self.assertEqual(txn.status, "failed")
        self.assertIsNone(result)
        mock_query.assert_not_called()

    @mock.patch.object(
        MpesaAPI,
        "query_stk_status",
        return_value={"success": False, "message": "Could not connect to payment provider."},
    )
    def test_manual_query_provider_down(self, mock_query):
        with self.assertRaises(UpstreamError):
            manual_query(transaction_id=self.txn.transaction_id)

    def test_manual_query_unknown(self):
        with self.assertRaises(NotFound):
            manual_query(checkout_request_id="ws_CO_unknown")
