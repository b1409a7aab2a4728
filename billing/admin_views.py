"""
Admin API views (role-gated): dashboard, packages, gateways, vouchers,
users, sessions and transactions
"""

import logging

from django.db.models import Count, Q, Sum
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response

from .exceptions import NotFound
from .models import Gateway, Package, Session, Transaction, User, Voucher
from .permissions import IsAdminRole
from .serializers import (
    GatewaySerializer,
    GenerateVouchersSerializer,
    PackageSerializer,
    SessionSerializer,
    TransactionSerializer,
    UserSerializer,
    VoucherSerializer,
)
from .session_manager import terminate_session
from .views import invalid_request
from .vouchers import generate_batch

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 500


def _limit(request):
    try:
        limit = int(request.query_params.get("limit", DEFAULT_LIMIT))
    except (TypeError, ValueError):
        limit = DEFAULT_LIMIT
    return max(1, min(limit, MAX_LIMIT))


def _actor(request):
    """Who is making an admin change, for created_by fields"""
    wifi_user = getattr(request, "wifi_user", None)
    if wifi_user is not None:
        return wifi_user.user_id
    if request.user and request.user.is_authenticated:
        return request.user.get_username()
    return ""


def _revenue(queryset):
    return float(queryset.aggregate(total=Sum("amount"))["total"] or 0)


# =============================================================================
# DASHBOARD
# =============================================================================


@api_view(["GET"])
@permission_classes([IsAdminRole])
def dashboard_stats(request):
    now = timezone.now()
    local_now = timezone.localtime(now)
    start_of_day = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_month = start_of_day.replace(day=1)

    completed = Transaction.objects.filter(status="completed")
    live_sessions = Session.objects.filter(status="active", expires_at__gt=now)

    tx_counts = Transaction.objects.aggregate(
        total=Count("transaction_id"),
        completed=Count("transaction_id", filter=Q(status="completed")),
        pending=Count("transaction_id", filter=Q(status="pending")),
        failed=Count("transaction_id", filter=Q(status="failed")),
        cancelled=Count("transaction_id", filter=Q(status="cancelled")),
    )

    recent = completed.order_by("-completed_at")[:10]

    return Response(
        {
            "success": True,
            "revenue": {
                "total": _revenue(completed),
                "today": _revenue(completed.filter(completed_at__gte=start_of_day)),
                "this_month": _revenue(
                    completed.filter(completed_at__gte=start_of_month)
                ),
            },
            "users": {
                "total": User.objects.count(),
                "active": live_sessions.values("user").distinct().count(),
            },
            "sessions": {
                "active": live_sessions.count(),
                "total": Session.objects.count(),
            },
            "gateways": {
                "total": Gateway.objects.count(),
                "active": Gateway.objects.filter(status="active").count(),
            },
            "transactions": tx_counts,
            "recent_transactions": TransactionSerializer(recent, many=True).data,
        }
    )


# =============================================================================
# PACKAGES
# =============================================================================


@api_view(["GET", "POST"])
@permission_classes([IsAdminRole])
def packages_list_create(request):
    if request.method == "GET":
        packages = Package.objects.all()
        package_status = request.query_params.get("status")
        if package_status:
            packages = packages.filter(status=package_status)
        return Response(
            {"success": True, "packages": PackageSerializer(packages, many=True).data}
        )

    serializer = PackageSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)
    package = serializer.save(created_by=_actor(request))
    logger.info(f"Package {package.package_id} ({package.name}) created")
    return Response(
        {"success": True, "package": PackageSerializer(package).data},
        status=status.HTTP_201_CREATED,
    )


@api_view(["GET", "PUT", "PATCH", "DELETE"])
@permission_classes([IsAdminRole])
def package_detail(request, package_id):
    package = Package.objects.filter(pk=package_id).first()
    if package is None:
        raise NotFound("Package not found")

    if request.method == "GET":
        return Response({"success": True, "package": PackageSerializer(package).data})

    if request.method == "DELETE":
        # Sold packages stay referenced, so deletion only hides them
        package.status = "inactive"
        package.save(update_fields=["status", "updated_at"])
        logger.info(f"Package {package_id} deactivated")
        return Response({"success": True, "message": "Package deactivated"})

    serializer = PackageSerializer(
        package, data=request.data, partial=request.method == "PATCH"
    )
    if not serializer.is_valid():
        return invalid_request(serializer)
    package = serializer.save()
    logger.info(f"Package {package_id} updated")
    return Response({"success": True, "package": PackageSerializer(package).data})


# =============================================================================
# GATEWAYS
# =============================================================================


@api_view(["GET", "POST"])
@permission_classes([IsAdminRole])
def gateways_list_create(request):
    if request.method == "GET":
        gateways = Gateway.objects.all()
        return Response(
            {"success": True, "gateways": GatewaySerializer(gateways, many=True).data}
        )

    serializer = GatewaySerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)
    gateway = serializer.save()
    logger.info(f"Gateway {gateway.gateway_id} ({gateway.vendor}) created")
    return Response(
        {"success": True, "gateway": GatewaySerializer(gateway).data},
        status=status.HTTP_201_CREATED,
    )


@api_view(["GET", "PUT", "PATCH", "DELETE"])
@permission_classes([IsAdminRole])
def gateway_detail(request, gateway_id):
    gateway = Gateway.objects.filter(pk=gateway_id).first()
    if gateway is None:
        raise NotFound("Gateway not found")

    if request.method == "GET":
        return Response({"success": True, "gateway": GatewaySerializer(gateway).data})

    if request.method == "DELETE":
        gateway.delete()
        logger.info(f"Gateway {gateway_id} deleted")
        return Response({"success": True, "message": "Gateway deleted"})

    serializer = GatewaySerializer(
        gateway, data=request.data, partial=request.method == "PATCH"
    )
    if not serializer.is_valid():
        return invalid_request(serializer)
    gateway = serializer.save()
    logger.info(f"Gateway {gateway_id} updated")
    return Response({"success": True, "gateway": GatewaySerializer(gateway).data})


# =============================================================================
# VOUCHERS
# =============================================================================


@api_view(["POST"])
@permission_classes([IsAdminRole])
def vouchers_generate(request):
    serializer = GenerateVouchersSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_request(serializer)
    data = serializer.validated_data

    batch_id, vouchers = generate_batch(
        data["package_id"],
        data["quantity"],
        expiry_days=data.get("expiry_days"),
        created_by=_actor(request),
    )
    return Response(
        {
            "success": True,
            "message": f"Generated {len(vouchers)} vouchers",
            "batch_id": batch_id,
            "vouchers": VoucherSerializer(vouchers, many=True).data,
        },
        status=status.HTTP_201_CREATED,
    )


@api_view(["GET"])
@permission_classes([IsAdminRole])
def vouchers_list(request):
    vouchers = Voucher.objects.select_related("package", "used_by")
    voucher_status = request.query_params.get("status")
    if voucher_status:
        vouchers = vouchers.filter(status=voucher_status)
    batch_id = request.query_params.get("batch_id")
    if batch_id:
        vouchers = vouchers.filter(batch_id=batch_id)

    total = vouchers.count()
    vouchers = vouchers[: _limit(request)]
    return Response(
        {
            "success": True,
            "count": total,
            "vouchers": VoucherSerializer(vouchers, many=True).data,
        }
    )


# =============================================================================
# USERS / SESSIONS / TRANSACTIONS
# =============================================================================


@api_view(["GET"])
@permission_classes([IsAdminRole])
def users_list(request):
    users = User.objects.all()
    search = request.query_params.get("search")
    if search:
        users = users.filter(phone_number__icontains=search.strip())
    user_status = request.query_params.get("status")
    if user_status:
        users = users.filter(status=user_status)

    total = users.count()
    users = users[: _limit(request)]
    return Response(
        {"success": True, "count": total, "users": UserSerializer(users, many=True).data}
    )


@api_view(["GET"])
@permission_classes([IsAdminRole])
def user_detail(request, user_id):
    user = User.objects.filter(pk=user_id).first()
    if user is None:
        raise NotFound("User not found")

    now = timezone.now()
    sessions = user.sessions.all()[:20]
    transactions = user.transactions.all()[:20]
    return Response(
        {
            "success": True,
            "user": UserSerializer(user).data,
            "sessions": SessionSerializer(sessions, many=True, context={"now": now}).data,
            "transactions": TransactionSerializer(transactions, many=True).data,
        }
    )


@api_view(["GET"])
@permission_classes([IsAdminRole])
def sessions_list(request):
    sessions = Session.objects.all()
    session_status = request.query_params.get("status")
    if session_status:
        sessions = sessions.filter(status=session_status)
    mac_address = request.query_params.get("mac_address")
    if mac_address:
        sessions = sessions.filter(mac_address=mac_address.strip().upper())

    total = sessions.count()
    sessions = sessions[: _limit(request)]
    return Response(
        {
            "success": True,
            "count": total,
            "sessions": SessionSerializer(
                sessions, many=True, context={"now": timezone.now()}
            ).data,
        }
    )


@api_view(["POST"])
@permission_classes([IsAdminRole])
def session_terminate(request, session_id):
    session = terminate_session(session_id)
    return Response(
        {
            "success": True,
            "message": "Session terminated",
            "session": SessionSerializer(session).data,
        }
    )


@api_view(["GET"])
@permission_classes([IsAdminRole])
def transactions_list(request):
    transactions = Transaction.objects.all()
    tx_status = request.query_params.get("status")
    if tx_status:
        transactions = transactions.filter(status=tx_status)
    phone = request.query_params.get("phone_number")
    if phone:
        transactions = transactions.filter(phone_number__icontains=phone.strip())

    total = transactions.count()
    transactions = transactions[: _limit(request)]
    return Response(
        {
            "success": True,
            "count": total,
            "transactions": TransactionSerializer(transactions, many=True).data,
        }
    )
