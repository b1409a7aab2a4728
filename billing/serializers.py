"""
Serializers for API requests and responses
"""

from decimal import Decimal

from django.utils import timezone
from rest_framework import serializers

from .models import Gateway, Package, Session, Transaction, User, Voucher
from .utils import normalize_mac_address, normalize_phone_number


def validate_phone_number_field(phone_number):
    """
    Validator for phone number fields in serializers
    """
    if not phone_number:
        raise serializers.ValidationError("Phone number is required")
    try:
        return normalize_phone_number(phone_number)
    except ValueError as e:
        raise serializers.ValidationError(f"Invalid phone number format: {e}")


def validate_mac_address_field(mac_address):
    try:
        return normalize_mac_address(mac_address)
    except ValueError as e:
        raise serializers.ValidationError(str(e))


# =============================================================================
# RESPONSE SERIALIZERS
# =============================================================================


class PackageSerializer(serializers.ModelSerializer):
    duration_display = serializers.CharField(read_only=True)
    bandwidth_display = serializers.CharField(read_only=True)
    price_display = serializers.CharField(read_only=True)
    name = serializers.CharField(min_length=3, max_length=50)
    duration_hours = serializers.FloatField(min_value=0, max_value=168)
    bandwidth_mbps = serializers.IntegerField(min_value=1, max_value=100)
    price_kes = serializers.DecimalField(
        max_digits=10,
        decimal_places=2,
        min_value=Decimal("1"),
        max_value=Decimal("10000"),
    )

    class Meta:
        model = Package
        fields = [
            "package_id",
            "name",
            "description",
            "duration_hours",
            "duration_display",
            "bandwidth_mbps",
            "bandwidth_display",
            "price_kes",
            "price_display",
            "status",
            "created_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["package_id", "created_by", "created_at", "updated_at"]

    def validate_duration_hours(self, value):
        if value <= 0:
            raise serializers.ValidationError("Duration must be greater than 0 hours")
        return value

    def validate(self, attrs):
        instance = self.instance
        if instance is not None and instance.is_referenced:
            changed = [
                field
                for field in Package.PRICED_FIELDS
                if field in attrs and attrs[field] != getattr(instance, field)
            ]
            if changed:
                raise serializers.ValidationError(
                    {
                        field: ["Cannot change once the package has been sold"]
                        for field in changed
                    }
                )
        return attrs


class PublicPackageSerializer(serializers.ModelSerializer):
    """Package as shown on the captive portal"""

    duration_display = serializers.CharField(read_only=True)
    bandwidth_display = serializers.CharField(read_only=True)
    price_display = serializers.CharField(read_only=True)

    class Meta:
        model = Package
        fields = [
            "package_id",
            "name",
            "description",
            "duration_hours",
            "duration_display",
            "bandwidth_mbps",
            "bandwidth_display",
            "price_kes",
            "price_display",
        ]
        read_only_fields = fields


class SessionSerializer(serializers.ModelSerializer):
    time_remaining = serializers.SerializerMethodField()
    user_id = serializers.CharField(read_only=True)
    package_id = serializers.CharField(read_only=True)

    class Meta:
        model = Session
        fields = [
            "session_id",
            "user_id",
            "phone_number",
            "package_id",
            "package_name",
            "mac_address",
            "ip_address",
            "gateway_id",
            "start_time",
            "expires_at",
            "end_time",
            "duration_hours",
            "bandwidth_mbps",
            "status",
            "time_remaining",
        ]
        read_only_fields = fields

    def get_time_remaining(self, obj):
        if obj.status != "active":
            return 0
        return obj.time_remaining(self.context.get("now") or timezone.now())


class TransactionSerializer(serializers.ModelSerializer):
    user_id = serializers.CharField(read_only=True)
    package_id = serializers.CharField(read_only=True)
    session_id = serializers.CharField(read_only=True)

    class Meta:
        model = Transaction
        fields = [
            "transaction_id",
            "user_id",
            "phone_number",
            "amount",
            "package_id",
            "package_name",
            "mac_address",
            "checkout_request_id",
            "merchant_request_id",
            "mpesa_receipt_number",
            "status",
            "failure_reason",
            "session_id",
            "metadata",
            "created_at",
            "updated_at",
            "completed_at",
        ]
        read_only_fields = fields


class TransactionStatusSerializer(serializers.ModelSerializer):
    """Client-facing projection polled by the captive portal"""

    package_id = serializers.CharField(read_only=True)
    session_id = serializers.CharField(read_only=True)

    class Meta:
        model = Transaction
        fields = [
            "transaction_id",
            "status",
            "amount",
            "package_id",
            "package_name",
            "mac_address",
            "checkout_request_id",
            "mpesa_receipt_number",
            "failure_reason",
            "session_id",
            "created_at",
            "completed_at",
        ]
        read_only_fields = fields


class VoucherSerializer(serializers.ModelSerializer):
    package_id = serializers.CharField(read_only=True)
    package_name = serializers.CharField(source="package.name", read_only=True)
    used_by_phone = serializers.CharField(
        source="used_by.phone_number", read_only=True, default=None
    )

    class Meta:
        model = Voucher
        fields = [
            "code",
            "package_id",
            "package_name",
            "status",
            "batch_id",
            "created_by",
            "created_at",
            "expires_at",
            "used_at",
            "used_by_phone",
            "used_by_mac",
        ]
        read_only_fields = fields


class UserSerializer(serializers.ModelSerializer):
    class Meta:
        model = User
        fields = [
            "user_id",
            "phone_number",
            "roles",
            "status",
            "created_at",
            "last_login_at",
        ]
        read_only_fields = ["user_id", "phone_number", "created_at", "last_login_at"]


class GatewaySerializer(serializers.ModelSerializer):
    shared_secret = serializers.CharField(
        write_only=True, required=False, allow_blank=True
    )
    has_shared_secret = serializers.SerializerMethodField()

    class Meta:
        model = Gateway
        fields = [
            "gateway_id",
            "name",
            "vendor",
            "ip_address",
            "api_endpoint",
            "api_username",
            "shared_secret",
            "has_shared_secret",
            "coa_port",
            "status",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["created_at", "updated_at"]
        extra_kwargs = {"gateway_id": {"required": False}}

    def get_has_shared_secret(self, obj):
        return bool(obj.shared_secret)

    def validate_gateway_id(self, value):
        if self.instance is not None and value != self.instance.gateway_id:
            raise serializers.ValidationError("Gateway id cannot be changed")
        return value


# =============================================================================
# REQUEST SERIALIZERS
# =============================================================================


class DeviceRequestSerializer(serializers.Serializer):
    mac_address = serializers.CharField(max_length=32)
    ip_address = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")
    gateway_id = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")

    def validate_mac_address(self, value):
        return validate_mac_address_field(value)


class LoginSerializer(DeviceRequestSerializer):
    phone_number = serializers.CharField(max_length=20)
    password = serializers.CharField(required=False, allow_blank=True, write_only=True)

    def validate_phone_number(self, value):
        """Validate and normalize phone number"""
        return validate_phone_number_field(value)


class RedeemVoucherSerializer(DeviceRequestSerializer):
    voucher_code = serializers.CharField(max_length=32)
    phone_number = serializers.CharField(max_length=20, required=False, allow_blank=True)

    def validate_voucher_code(self, value):
        return value.strip().upper()

    def validate_phone_number(self, value):
        if not value:
            return None
        return validate_phone_number_field(value)


class SessionIdSerializer(serializers.Serializer):
    session_id = serializers.CharField(max_length=64)


class StatusQuerySerializer(serializers.Serializer):
    phone_number = serializers.CharField(max_length=20, required=False)
    user_id = serializers.CharField(max_length=64, required=False)
    mac_address = serializers.CharField(max_length=32, required=False)

    def validate_phone_number(self, value):
        return validate_phone_number_field(value)

    def validate_mac_address(self, value):
        return validate_mac_address_field(value)

    def validate(self, attrs):
        if not any(attrs.get(key) for key in ("phone_number", "user_id", "mac_address")):
            raise serializers.ValidationError(
                "One of phone_number, user_id or mac_address is required"
            )
        return attrs


class InitiatePaymentSerializer(DeviceRequestSerializer):
    phone_number = serializers.CharField(max_length=20)
    package_id = serializers.CharField(max_length=64)

    def validate_phone_number(self, value):
        """Validate and normalize phone number"""
        return validate_phone_number_field(value)


class PaymentQuerySerializer(serializers.Serializer):
    transaction_id = serializers.CharField(max_length=64, required=False)
    checkout_request_id = serializers.CharField(max_length=100, required=False)

    def validate(self, attrs):
        if not attrs.get("transaction_id") and not attrs.get("checkout_request_id"):
            raise serializers.ValidationError(
                "transaction_id or checkout_request_id is required"
            )
        return attrs


class GenerateVouchersSerializer(serializers.Serializer):
    package_id = serializers.CharField(max_length=64)
    quantity = serializers.IntegerField(min_value=1, max_value=1000, default=10)
    expiry_days = serializers.IntegerField(min_value=1, max_value=365, required=False, allow_null=True)
