"""
URL configuration for the Wi-Fi billing project
"""

from django.contrib import admin
from django.contrib.auth import logout as auth_logout
from django.http import HttpResponse
from django.shortcuts import redirect
from django.urls import path, include


def empty_favicon(_request):
    return HttpResponse(status=204)


def admin_logout_view(request):
    """
    Admin logout that accepts both GET and POST.
    Django 5.x restricted /admin/logout/ to POST only.
    """
    auth_logout(request)
    return redirect("/admin/login/")


urlpatterns = [
    path("admin/logout/", admin_logout_view, name="admin_logout_override"),
    path("admin/", admin.site.urls),
    path("api/", include("billing.urls")),
    path("favicon.ico", empty_favicon),
]
