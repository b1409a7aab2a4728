"""
URL patterns for the billing API
"""

from django.urls import path

from . import admin_views, views

urlpatterns = [
    path("health/", views.health_check, name="health_check"),
    # Access
    path("auth/login/", views.auth_login, name="auth_login"),
    path("auth/voucher/", views.auth_voucher, name="auth_voucher"),
    path("auth/validate/", views.auth_validate, name="auth_validate"),
    path("auth/status/", views.auth_status, name="auth_status"),
    path("auth/logout/", views.auth_logout, name="auth_logout"),
    # Payments
    path("payment/packages/", views.payment_packages, name="payment_packages"),
    path("payment/initiate/", views.payment_initiate, name="payment_initiate"),
    path("payment/status/", views.payment_status, name="payment_status"),
    path("payment/query/", views.payment_query, name="payment_query"),
    path("payment/callback/", views.payment_callback, name="payment_callback"),
    # Admin
    path("admin/dashboard/", admin_views.dashboard_stats, name="admin_dashboard"),
    path("admin/packages/", admin_views.packages_list_create, name="admin_packages"),
    path(
        "admin/packages/<str:package_id>/",
        admin_views.package_detail,
        name="admin_package_detail",
    ),
    path("admin/gateways/", admin_views.gateways_list_create, name="admin_gateways"),
    path(
        "admin/gateways/<str:gateway_id>/",
        admin_views.gateway_detail,
        name="admin_gateway_detail",
    ),
    path("admin/vouchers/", admin_views.vouchers_list, name="admin_vouchers"),
    path(
        "admin/vouchers/generate/",
        admin_views.vouchers_generate,
        name="admin_vouchers_generate",
    ),
    path("admin/users/", admin_views.users_list, name="admin_users"),
    path("admin/users/<str:user_id>/", admin_views.user_detail, name="admin_user_detail"),
    path("admin/sessions/", admin_views.sessions_list, name="admin_sessions"),
    path(
        "admin/sessions/<str:session_id>/terminate/",
        admin_views.session_terminate,
        name="admin_session_terminate",
    ),
    path(
        "admin/transactions/",
        admin_views.transactions_list,
        name="admin_transactions",
    ),
]
