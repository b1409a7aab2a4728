"""
Django admin configuration for the Wi-Fi billing system with Jazzmin
"""

import csv

from django.contrib import admin
from django.http import HttpResponse
from django.utils import timezone
from django.utils.html import format_html

from .models import Gateway, Package, QueueMessage, Session, Transaction, User, Voucher
from .session_manager import terminate_session

BADGE = '<span style="background: {}; color: white; padding: 2px 8px; border-radius: 4px;">{}</span>'

STATUS_COLOURS = {
    "active": "green",
    "unused": "green",
    "completed": "green",
    "done": "green",
    "pending": "orange",
    "processing": "orange",
    "used": "gray",
    "expired": "gray",
    "inactive": "gray",
    "terminated": "gray",
    "suspended": "red",
    "failed": "red",
    "cancelled": "red",
    "dead": "red",
}


def status_badge(obj):
    return format_html(
        BADGE, STATUS_COLOURS.get(obj.status, "gray"), obj.get_status_display().upper()
    )


status_badge.short_description = "Status"


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ["phone_number", "user_id", "roles", status_badge, "created_at", "last_login_at"]
    list_filter = ["status", "created_at"]
    search_fields = ["phone_number", "user_id"]
    readonly_fields = ["user_id", "created_at", "last_login_at", "password_hash"]
    ordering = ["-created_at"]


@admin.register(Package)
class PackageAdmin(admin.ModelAdmin):
    list_display = ["name", "duration_display", "bandwidth_display", "price_display", status_badge, "created_at"]
    list_filter = ["status"]
    search_fields = ["name", "package_id"]
    readonly_fields = ["package_id", "created_at", "updated_at"]

    def get_readonly_fields(self, request, obj=None):
        fields = list(super().get_readonly_fields(request, obj))
        if obj is not None and obj.is_referenced:
            fields.extend(Package.PRICED_FIELDS)
        return fields

    def has_delete_permission(self, request, obj=None):
        return obj is None or not obj.is_referenced


@admin.register(Gateway)
class GatewayAdmin(admin.ModelAdmin):
    list_display = ["name", "gateway_id", "vendor", "api_endpoint", status_badge, "updated_at"]
    list_filter = ["vendor", "status"]
    search_fields = ["name", "gateway_id", "api_endpoint"]
    readonly_fields = ["created_at", "updated_at"]


@admin.register(Session)
class SessionAdmin(admin.ModelAdmin):
    list_display = [
        "session_id",
        "phone_number",
        "mac_address",
        "package_name",
        "bandwidth_mbps",
        "expires_at",
        "time_left",
        status_badge,
    ]
    list_filter = ["status", "gateway_id", "start_time"]
    search_fields = ["session_id", "phone_number", "mac_address"]
    readonly_fields = [field.name for field in Session._meta.fields]
    ordering = ["-start_time"]
    actions = ["terminate_sessions"]

    def time_left(self, obj):
        if obj.status != "active":
            return "-"
        seconds = obj.time_remaining()
        return f"{seconds // 3600}h {(seconds % 3600) // 60}m" if seconds else "lapsed"

    time_left.short_description = "Remaining"

    @admin.action(description="Terminate selected sessions")
    def terminate_sessions(self, request, queryset):
        count = 0
        for session in queryset.filter(status="active"):
            terminate_session(session.session_id)
            count += 1
        self.message_user(request, f"Terminated {count} sessions")

    def has_add_permission(self, request):
        return False


@admin.register(Transaction)
class TransactionAdmin(admin.ModelAdmin):
    list_display = [
        "transaction_id",
        "phone_number",
        "amount",
        "package_name",
        "mpesa_receipt_number",
        status_badge,
        "created_at",
    ]
    list_filter = ["status", "created_at"]
    search_fields = [
        "transaction_id",
        "phone_number",
        "checkout_request_id",
        "mpesa_receipt_number",
    ]
    readonly_fields = [field.name for field in Transaction._meta.fields]
    ordering = ["-created_at"]

    def has_add_permission(self, request):
        return False


@admin.register(Voucher)
class VoucherAdmin(admin.ModelAdmin):
    list_display = ["code", "package", status_badge, "batch_id", "created_at", "used_at", "used_by_mac"]
    list_filter = ["status", "batch_id", "created_at"]
    search_fields = ["code", "batch_id", "used_by__phone_number", "used_by_mac"]
    readonly_fields = ["code", "created_at", "used_at", "used_by", "used_by_mac", "ttl"]
    ordering = ["-created_at"]
    actions = ["export_vouchers_csv"]

    @admin.action(description="Export selected vouchers to CSV")
    def export_vouchers_csv(self, request, queryset):  # noqa: ARG002
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = (
            f'attachment; filename="vouchers-{timezone.now():%Y%m%d%H%M}.csv"'
        )
        writer = csv.writer(response)
        writer.writerow(["Code", "Package", "Status", "Batch", "Expires At", "Used By MAC"])
        for voucher in queryset.select_related("package"):
            writer.writerow(
                [
                    voucher.code,
                    voucher.package.name,
                    voucher.status,
                    voucher.batch_id,
                    voucher.expires_at.isoformat() if voucher.expires_at else "",
                    voucher.used_by_mac,
                ]
            )
        return response


@admin.register(QueueMessage)
class QueueMessageAdmin(admin.ModelAdmin):
    list_display = ["id", "queue", status_badge, "attempts", "available_at", "created_at"]
    list_filter = ["queue", "status"]
    readonly_fields = [field.name for field in QueueMessage._meta.fields]
    actions = ["requeue_messages"]

    @admin.action(description="Requeue selected messages")
    def requeue_messages(self, request, queryset):
        count = queryset.exclude(status="done").update(
            status="pending", attempts=0, available_at=timezone.now(), locked_until=None
        )
        self.message_user(request, f"Requeued {count} messages")

    def has_add_permission(self, request):
        return False
