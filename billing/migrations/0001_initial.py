# Generated migration file for initial database schema

import billing.models
import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="User",
            fields=[
                ("user_id", models.CharField(default=billing.models.new_user_id, editable=False, max_length=64, primary_key=True, serialize=False)),
                ("phone_number", models.CharField(max_length=64, unique=True)),
                ("roles", models.JSONField(default=billing.models.default_roles)),
                ("status", models.CharField(choices=[("active", "Active"), ("suspended", "Suspended"), ("inactive", "Inactive")], default="active", max_length=20)),
                ("password_hash", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("last_login_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="Package",
            fields=[
                ("package_id", models.CharField(default=billing.models.new_package_id, editable=False, max_length=64, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=50)),
                ("description", models.TextField(blank=True)),
                ("duration_hours", models.FloatField()),
                ("bandwidth_mbps", models.IntegerField()),
                ("price_kes", models.DecimalField(decimal_places=2, max_digits=10)),
                ("status", models.CharField(choices=[("active", "Active"), ("inactive", "Inactive")], default="active", max_length=20)),
                ("created_by", models.CharField(blank=True, max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["price_kes"],
            },
        ),
        migrations.CreateModel(
            name="Gateway",
            fields=[
                ("gateway_id", models.CharField(default=billing.models.new_gateway_id, max_length=64, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=100)),
                ("vendor", models.CharField(choices=[("mikrotik", "MikroTik Hotspot"), ("unifi", "UniFi Controller"), ("pfsense", "pfSense Captive Portal"), ("openwrt", "OpenWrt / Nodogsplash")], max_length=20)),
                ("ip_address", models.GenericIPAddressField(blank=True, null=True)),
                ("api_endpoint", models.URLField(max_length=255)),
                ("api_username", models.CharField(blank=True, default="admin", max_length=100)),
                ("shared_secret", models.CharField(blank=True, max_length=255)),
                ("coa_port", models.IntegerField(default=3799)),
                ("status", models.CharField(choices=[("active", "Active"), ("inactive", "Inactive")], default="active", max_length=20)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="QueueMessage",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("queue", models.CharField(db_index=True, max_length=50)),
                ("body", models.JSONField()),
                ("status", models.CharField(choices=[("pending", "Pending"), ("processing", "Processing"), ("done", "Done"), ("dead", "Dead letter")], default="pending", max_length=20)),
                ("attempts", models.IntegerField(default=0)),
                ("max_attempts", models.IntegerField(default=5)),
                ("available_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("locked_until", models.DateTimeField(blank=True, null=True)),
                ("last_error", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "ordering": ["available_at", "id"],
                "indexes": [models.Index(fields=["queue", "status", "available_at"], name="queue_ready_idx")],
            },
        ),
        migrations.CreateModel(
            name="Voucher",
            fields=[
                ("code", models.CharField(max_length=32, primary_key=True, serialize=False)),
                ("status", models.CharField(choices=[("unused", "Unused"), ("used", "Used"), ("expired", "Expired")], default="unused", max_length=20)),
                ("batch_id", models.CharField(blank=True, db_index=True, max_length=50)),
                ("created_by", models.CharField(blank=True, max_length=64)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                ("used_at", models.DateTimeField(blank=True, null=True)),
                ("used_by_mac", models.CharField(blank=True, max_length=32)),
                ("ttl", models.BigIntegerField(blank=True, null=True)),
                ("package", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="vouchers", to="billing.package")),
                ("used_by", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="vouchers_used", to="billing.user")),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["status"], name="voucher_status_idx")],
            },
        ),
        migrations.CreateModel(
            name="Session",
            fields=[
                ("session_id", models.CharField(default=billing.models.new_session_id, editable=False, max_length=64, primary_key=True, serialize=False)),
                ("phone_number", models.CharField(max_length=64)),
                ("package_name", models.CharField(blank=True, max_length=100)),
                ("mac_address", models.CharField(db_index=True, max_length=32)),
                ("active_mac", models.CharField(blank=True, max_length=32, null=True, unique=True)),
                ("ip_address", models.CharField(blank=True, max_length=64)),
                ("gateway_id", models.CharField(blank=True, max_length=64)),
                ("start_time", models.DateTimeField(default=django.utils.timezone.now)),
                ("expires_at", models.DateTimeField()),
                ("end_time", models.DateTimeField(blank=True, null=True)),
                ("duration_hours", models.FloatField()),
                ("bandwidth_mbps", models.IntegerField()),
                ("status", models.CharField(choices=[("active", "Active"), ("expired", "Expired"), ("terminated", "Terminated")], default="active", max_length=20)),
                ("ttl", models.BigIntegerField(blank=True, null=True)),
                ("package", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="sessions", to="billing.package")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="sessions", to="billing.user")),
                ("voucher", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="sessions", to="billing.voucher")),
            ],
            options={
                "ordering": ["-start_time"],
                "indexes": [
                    models.Index(fields=["user", "status"], name="session_user_status_idx"),
                    models.Index(fields=["status", "expires_at"], name="session_status_expiry_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Transaction",
            fields=[
                ("transaction_id", models.CharField(default=billing.models.new_transaction_id, editable=False, max_length=64, primary_key=True, serialize=False)),
                ("phone_number", models.CharField(max_length=64)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=10)),
                ("package_name", models.CharField(blank=True, max_length=100)),
                ("mac_address", models.CharField(db_index=True, max_length=32)),
                ("account_reference", models.CharField(blank=True, db_index=True, max_length=12)),
                ("checkout_request_id", models.CharField(blank=True, max_length=100, null=True, unique=True)),
                ("merchant_request_id", models.CharField(blank=True, max_length=100)),
                ("mpesa_receipt_number", models.CharField(blank=True, max_length=50)),
                ("status", models.CharField(choices=[("pending", "Pending"), ("completed", "Completed"), ("failed", "Failed"), ("cancelled", "Cancelled")], default="pending", max_length=20)),
                ("failure_reason", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("package", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="transactions", to="billing.package")),
                ("session", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="transactions", to="billing.session")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="transactions", to="billing.user")),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["status", "created_at"], name="txn_status_created_idx")],
            },
        ),
    ]
