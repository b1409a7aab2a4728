"""
Database models for the Wi-Fi access billing system

One table per entity: users, packages, sessions, transactions, vouchers,
gateways, plus the message table backing the at-least-once queue.
"""

from django.db import models
from django.utils import timezone
from datetime import timedelta

from .utils import generate_id


def new_user_id():
    return generate_id("user")


def new_package_id():
    return generate_id("pkg")


def new_session_id():
    return generate_id("session")


def new_transaction_id():
    return generate_id("txn")


def new_gateway_id():
    return generate_id("gateway")


def default_roles():
    return ["user"]


# =============================================================================
# WIFI BILLING MODELS
# =============================================================================


class User(models.Model):
    """
    WiFi end-user, identified by phone number.
    Created on first login, payment or voucher redemption.
    """

    STATUS_CHOICES = [
        ("active", "Active"),
        ("suspended", "Suspended"),
        ("inactive", "Inactive"),
    ]

    user_id = models.CharField(
        max_length=64, primary_key=True, default=new_user_id, editable=False
    )
    phone_number = models.CharField(max_length=64, unique=True)
    roles = models.JSONField(default=default_roles)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")
    password_hash = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    last_login_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.phone_number} ({self.status})"

    @property
    def is_admin(self):
        return "admin" in (self.roles or [])

    def grant_role(self, role):
        """Add a role to the user (idempotent)."""
        roles = list(self.roles or [])
        if role not in roles:
            roles.append(role)
            self.roles = roles
            self.save(update_fields=["roles"])
        return self.roles


class Package(models.Model):
    """
    Priced (duration, bandwidth) tier.
    Price, duration and bandwidth are frozen once a transaction or session
    references the package; status only controls visibility.
    """

    STATUS_CHOICES = [
        ("active", "Active"),
        ("inactive", "Inactive"),
    ]

    PRICED_FIELDS = ("price_kes", "duration_hours", "bandwidth_mbps")

    package_id = models.CharField(
        max_length=64, primary_key=True, default=new_package_id, editable=False
    )
    name = models.CharField(max_length=50)
    description = models.TextField(blank=True)
    duration_hours = models.FloatField()
    bandwidth_mbps = models.IntegerField()
    price_kes = models.DecimalField(max_digits=10, decimal_places=2)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")
    created_by = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["price_kes"]

    def __str__(self):
        return f"{self.name} - {self.duration_hours}h - {self.bandwidth_mbps}Mbps - KES {self.price_kes}"

    @property
    def is_active(self):
        return self.status == "active"

    @property
    def is_referenced(self):
        """True once any transaction or session points at this package."""
        return self.transactions.exists() or self.sessions.exists()

    @property
    def duration_display(self):
        hours = self.duration_hours
        if float(hours).is_integer():
            hours = int(hours)
        return f"{hours} hour{'s' if hours != 1 else ''}"

    @property
    def bandwidth_display(self):
        return f"{self.bandwidth_mbps} Mbps"

    @property
    def price_display(self):
        return f"KES {self.price_kes:.0f}"


class Gateway(models.Model):
    """
    Network access gateway (router) that enforces per-device access.
    The vendor decides which wire protocol the dispatcher speaks.
    """

    VENDOR_CHOICES = [
        ("mikrotik", "MikroTik Hotspot"),
        ("unifi", "UniFi Controller"),
        ("pfsense", "pfSense Captive Portal"),
        ("openwrt", "OpenWrt / Nodogsplash"),
    ]

    STATUS_CHOICES = [
        ("active", "Active"),
        ("inactive", "Inactive"),
    ]

    gateway_id = models.CharField(
        max_length=64, primary_key=True, default=new_gateway_id
    )
    name = models.CharField(max_length=100)
    vendor = models.CharField(max_length=20, choices=VENDOR_CHOICES)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    api_endpoint = models.URLField(max_length=255)
    api_username = models.CharField(max_length=100, default="admin", blank=True)
    shared_secret = models.CharField(max_length=255, blank=True)
    coa_port = models.IntegerField(default=3799)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return f"{self.name} ({self.vendor}) - {self.api_endpoint}"

    @property
    def is_active(self):
        return self.status == "active"


class Session(models.Model):
    """
    Granted internet access for one device.

    ``active_mac`` holds the device MAC only while the session is active and
    is NULL otherwise. Its unique constraint is what guarantees a device
    never has two active sessions at once.
    """

    STATUS_CHOICES = [
        ("active", "Active"),
        ("expired", "Expired"),
        ("terminated", "Terminated"),
    ]

    session_id = models.CharField(
        max_length=64, primary_key=True, default=new_session_id, editable=False
    )
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="sessions")
    phone_number = models.CharField(max_length=64)
    package = models.ForeignKey(
        Package,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="sessions",
    )
    package_name = models.CharField(max_length=100, blank=True)
    mac_address = models.CharField(max_length=32, db_index=True)
    active_mac = models.CharField(max_length=32, null=True, blank=True, unique=True)
    ip_address = models.CharField(max_length=64, blank=True)
    gateway_id = models.CharField(max_length=64, blank=True)
    voucher = models.ForeignKey(
        "Voucher",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="sessions",
    )
    start_time = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField()
    end_time = models.DateTimeField(null=True, blank=True)
    duration_hours = models.FloatField()
    bandwidth_mbps = models.IntegerField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="active")
    # Epoch seconds after which the row may be purged
    ttl = models.BigIntegerField(null=True, blank=True)

    class Meta:
        ordering = ["-start_time"]
        indexes = [
            models.Index(fields=["user", "status"], name="session_user_status_idx"),
            models.Index(fields=["status", "expires_at"], name="session_status_expiry_idx"),
        ]

    def __str__(self):
        return f"{self.session_id} - {self.mac_address} ({self.status})"

    def save(self, *args, **kwargs):
        if self.expires_at:
            self.ttl = int(self.expires_at.timestamp())
        super().save(*args, **kwargs)

    def is_live(self, now=None):
        """Active and not yet past its expiry."""
        now = now or timezone.now()
        return self.status == "active" and self.expires_at > now

    def time_remaining(self, now=None):
        """Seconds left on the session, never negative."""
        now = now or timezone.now()
        return max(0, int((self.expires_at - now).total_seconds()))


class Transaction(models.Model):
    """
    One mobile-money payment attempt.
    pending -> completed | failed | cancelled; terminal states are final.
    """

    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("completed", "Completed"),
        ("failed", "Failed"),
        ("cancelled", "Cancelled"),
    ]

    TERMINAL_STATUSES = ("completed", "failed", "cancelled")

    transaction_id = models.CharField(
        max_length=64, primary_key=True, default=new_transaction_id, editable=False
    )
    user = models.ForeignKey(
        User, on_delete=models.CASCADE, related_name="transactions"
    )
    phone_number = models.CharField(max_length=64)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    package = models.ForeignKey(
        Package, on_delete=models.PROTECT, related_name="transactions"
    )
    package_name = models.CharField(max_length=100, blank=True)
    mac_address = models.CharField(max_length=32, db_index=True)
    account_reference = models.CharField(max_length=12, blank=True, db_index=True)
    checkout_request_id = models.CharField(
        max_length=100, blank=True, null=True, unique=True
    )
    merchant_request_id = models.CharField(max_length=100, blank=True)
    mpesa_receipt_number = models.CharField(max_length=50, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    failure_reason = models.TextField(blank=True)
    session = models.ForeignKey(
        Session,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="transactions",
    )
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="txn_status_created_idx"),
        ]

    def __str__(self):
        return f"{self.phone_number} - KES {self.amount} - {self.status}"

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES


class Voucher(models.Model):
    """
    Single-use access code for a package.
    Moves unused -> used exactly once and binds to the first redeeming device.
    """

    STATUS_CHOICES = [
        ("unused", "Unused"),
        ("used", "Used"),
        ("expired", "Expired"),
    ]

    code = models.CharField(max_length=32, primary_key=True)
    package = models.ForeignKey(
        Package, on_delete=models.PROTECT, related_name="vouchers"
    )
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="unused")
    batch_id = models.CharField(max_length=50, blank=True, db_index=True)
    created_by = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    used_at = models.DateTimeField(null=True, blank=True)
    used_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="vouchers_used",
    )
    used_by_mac = models.CharField(max_length=32, blank=True)
    ttl = models.BigIntegerField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status"], name="voucher_status_idx"),
        ]

    def __str__(self):
        return f"{self.code} ({self.status})"

    def save(self, *args, **kwargs):
        if self.expires_at:
            self.ttl = int(self.expires_at.timestamp())
        super().save(*args, **kwargs)

    def is_past_expiry(self, now=None):
        now = now or timezone.now()
        return self.expires_at is not None and self.expires_at <= now


# =============================================================================
# MESSAGE QUEUE
# =============================================================================


class QueueMessage(models.Model):
    """
    At-least-once message on a named queue.

    Workers claim a message by conditionally moving it to ``processing``;
    a claim whose ``locked_until`` has passed can be taken over by another
    worker. Failed messages are retried with backoff and dead-lettered
    after ``max_attempts``.
    """

    STATUS_CHOICES = [
        ("pending", "Pending"),
        ("processing", "Processing"),
        ("done", "Done"),
        ("dead", "Dead letter"),
    ]

    queue = models.CharField(max_length=50, db_index=True)
    body = models.JSONField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")
    attempts = models.IntegerField(default=0)
    max_attempts = models.IntegerField(default=5)
    available_at = models.DateTimeField(default=timezone.now)
    locked_until = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["available_at", "id"]
        indexes = [
            models.Index(
                fields=["queue", "status", "available_at"], name="queue_ready_idx"
            ),
        ]

    def __str__(self):
        return f"{self.queue}#{self.pk} ({self.status})"

    def schedule_retry(self, error_message, delays):
        """Record a failed attempt and schedule redelivery with backoff"""
        self.last_error = error_message
        self.locked_until = None
        if self.attempts >= self.max_attempts:
            self.status = "dead"
            self.save(update_fields=["status", "last_error", "locked_until"])
            return

        delay = delays[min(self.attempts - 1, len(delays) - 1)] if delays else 0
        self.status = "pending"
        self.available_at = timezone.now() + timedelta(seconds=delay)
        self.save(
            update_fields=["status", "last_error", "locked_until", "available_at"]
        )
