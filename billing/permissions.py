"""
Custom permissions for the Wi-Fi billing admin API
"""

from rest_framework import permissions

from .models import User
from .tokens import read_access_token, token_from_request


class IsAdminRole(permissions.BasePermission):
    """
    Allow Django staff (session, DRF token or basic auth) or a WiFi user
    presenting a login access token with the admin role.
    """

    message = "Admin access required"

    def has_permission(self, request, view):
        # Check if user is authenticated Django admin
        if request.user and request.user.is_authenticated and request.user.is_staff:
            return True

        token = token_from_request(request)
        if not token:
            return False

        payload = read_access_token(token)
        if not payload or "admin" not in payload.get("roles", []):
            return False

        # Roles may have been revoked since the token was issued
        user = User.objects.filter(pk=payload.get("sub")).first()
        if user is None or user.status != "active" or not user.is_admin:
            return False

        request.wifi_user = user
        return True
