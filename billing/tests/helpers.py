"""
Shared fixtures for billing tests
"""

from datetime import timedelta
from decimal import Decimal

from django.utils import timezone

from billing.models import Gateway, Package, Session, Transaction, User

PHONE = "254712345678"
OTHER_PHONE = "254722000111"
MAC = "AA:BB:CC:DD:EE:01"
OTHER_MAC = "AA:BB:CC:DD:EE:02"


def make_package(name="1 Hour", hours=1, mbps=5, price="50.00", status="active"):
    return Package.objects.create(
        name=name,
        duration_hours=hours,
        bandwidth_mbps=mbps,
        price_kes=Decimal(price),
        status=status,
    )


def make_user(phone=PHONE, **kwargs):
    return User.objects.create(phone_number=phone, **kwargs)


def make_gateway(vendor="mikrotik", gateway_id="gw-1", **kwargs):
    kwargs.setdefault("name", f"{vendor} gateway")
    kwargs.setdefault("api_endpoint", "https://10.0.0.1/")
    return Gateway.objects.create(gateway_id=gateway_id, vendor=vendor, **kwargs)


def make_pending_transaction(user, package, mac=MAC, checkout_request_id="ws_CO_001", **kwargs):
    kwargs.setdefault("metadata", {"ip_address": "10.0.0.50", "gateway_id": ""})
    return Transaction.objects.create(
        user=user,
        phone_number=user.phone_number,
        amount=package.price_kes,
        package=package,
        package_name=package.name,
        mac_address=mac,
        checkout_request_id=checkout_request_id,
        account_reference="WIFITEST0001",
        **kwargs,
    )


def lapse(session):
    """Push a session's expiry into the past without touching its status"""
    Session.objects.filter(pk=session.pk).update(
        expires_at=timezone.now() - timedelta(minutes=5)
    )
    session.refresh_from_db()
    return session


def stk_callback(checkout_request_id="ws_CO_001", result_code=0, amount=50,
                 receipt="QKT1ABC2DE", phone=PHONE, result_desc=None):
    body = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc
        or ("The service request is processed successfully." if result_code == 0 else "Failed"),
    }
    if result_code == 0:
        body["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20240101120000},
                {"Name": "PhoneNumber", "Value": int(phone)},
            ]
        }
    return {"Body": {"stkCallback": body}}
