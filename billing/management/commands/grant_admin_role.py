"""
Management command to give a WiFi user the admin role

Usage:
    python manage.py grant_admin_role 0712345678
"""

from django.core.management.base import BaseCommand, CommandError

from billing.models import User
from billing.utils import normalize_phone_number


class Command(BaseCommand):
    help = "Add the admin role to a user, creating the user if needed"

    def add_arguments(self, parser):
        parser.add_argument("phone_number", type=str)
        parser.add_argument(
            "--password",
            type=str,
            default="",
            help="Set a login password for the user",
        )

    def handle(self, *args, **options):
        from django.contrib.auth.hashers import make_password

        try:
            phone = normalize_phone_number(options["phone_number"])
        except ValueError as e:
            raise CommandError(str(e))

        user, created = User.objects.get_or_create(phone_number=phone)
        roles = user.grant_role("admin")
        if options["password"]:
            user.password_hash = make_password(options["password"])
            user.save(update_fields=["password_hash"])

        self.stdout.write(
            self.style.SUCCESS(
                f"{'Created' if created else 'Updated'} {phone}: roles={roles}"
            )
        )
        if not user.password_hash:
            self.stdout.write(
                self.style.WARNING(
                    "No password set: portal logins for this user will not carry the admin role"
                )
            )
