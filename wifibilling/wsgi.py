"""
WSGI config for the Wi-Fi billing project.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "wifibilling.settings")

application = get_wsgi_application()
