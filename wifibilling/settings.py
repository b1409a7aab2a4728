"""
Django settings for the Wi-Fi access billing backend
"""

from pathlib import Path
from decouple import config, Csv

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = config(
    "SECRET_KEY", default="django-insecure-wifibilling-dev-key-change-in-production"
)

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = config("DEBUG", default=False, cast=bool)

ALLOWED_HOSTS = config(
    "ALLOWED_HOSTS",
    default="localhost,127.0.0.1,testserver",
    cast=Csv(),
)

# Application definition
INSTALLED_APPS = [
    "jazzmin",
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "rest_framework.authtoken",
    "corsheaders",
    "django_crontab",  # For scheduled tasks
    "billing",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "corsheaders.middleware.CorsMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "wifibilling.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "wifibilling.wsgi.application"

# Database
# SQLite for development and tests, MySQL in production (DB_ENGINE=mysql)
DB_ENGINE = config("DB_ENGINE", default="sqlite")

if DB_ENGINE == "mysql":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.mysql",
            "NAME": config("DB_NAME", default="wifibilling"),
            "USER": config("DB_USER", default="root"),
            "PASSWORD": config("DB_PASSWORD", default=""),
            "HOST": config("DB_HOST", default="localhost"),
            "PORT": config("DB_PORT", default="3306"),
            "OPTIONS": {
                "charset": "utf8mb4",
                "init_command": "SET sql_mode='STRICT_TRANS_TABLES'",
            },
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": config("DB_NAME", default=str(BASE_DIR / "db.sqlite3")),
        }
    }


# Password validation
AUTH_PASSWORD_VALIDATORS = [
    {
        "NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.MinimumLengthValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.CommonPasswordValidator",
    },
    {
        "NAME": "django.contrib.auth.password_validation.NumericPasswordValidator",
    },
]

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = "Africa/Nairobi"
USE_I18N = True
USE_TZ = True

# Static files (CSS, JavaScript, Images)
STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

STORAGES = {
    "default": {
        "BACKEND": "django.core.files.storage.FileSystemStorage",
    },
    "staticfiles": {
        # Development: simple storage for faster reloads
        "BACKEND": (
            "django.contrib.staticfiles.storage.StaticFilesStorage"
            if DEBUG
            else "whitenoise.storage.CompressedStaticFilesStorage"
        ),
    },
}

# WhiteNoise settings
WHITENOISE_USE_FINDERS = DEBUG  # Only use finders in development
WHITENOISE_AUTOREFRESH = DEBUG  # Only in development
WHITENOISE_MAX_AGE = 31536000 if not DEBUG else 0  # 1 year cache in production

# Security Settings - Environment Aware Configuration
if not DEBUG:
    SECURE_CONTENT_TYPE_NOSNIFF = True
    SECURE_HSTS_INCLUDE_SUBDOMAINS = True
    SECURE_HSTS_SECONDS = config("SECURE_HSTS_SECONDS", default=0, cast=int)
    # TLS is usually terminated by the reverse proxy in front of the captive portal
    SECURE_SSL_REDIRECT = config("SECURE_SSL_REDIRECT", default=False, cast=bool)
    SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")
    SESSION_COOKIE_SECURE = SECURE_SSL_REDIRECT
    CSRF_COOKIE_SECURE = SECURE_SSL_REDIRECT
    X_FRAME_OPTIONS = "DENY"
    SECURE_REFERRER_POLICY = "same-origin"
else:
    SECURE_SSL_REDIRECT = False
    SECURE_HSTS_SECONDS = 0
    SESSION_COOKIE_SECURE = False
    CSRF_COOKIE_SECURE = False
    X_FRAME_OPTIONS = "SAMEORIGIN"

# Logging
LOG_TO_FILE = config("LOG_TO_FILE", default=False, cast=bool)
LOG_LEVEL = config("LOG_LEVEL", default="INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO" if DEBUG else "WARNING",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "billing": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
    },
}

if LOG_TO_FILE:
    (BASE_DIR / "logs").mkdir(exist_ok=True)
    LOGGING["handlers"]["file"] = {
        "class": "logging.FileHandler",
        "filename": BASE_DIR / "logs" / "django.log",
        "formatter": "verbose",
    }
    for _name in ("django", "billing"):
        LOGGING["loggers"][_name]["handlers"].append("file")

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# REST Framework Configuration
REST_FRAMEWORK = {
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.AllowAny",
    ],
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.TokenAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
    "DEFAULT_PARSER_CLASSES": [
        "rest_framework.parsers.JSONParser",
        "rest_framework.parsers.FormParser",
    ],
    "COERCE_DECIMAL_TO_STRING": False,
    "EXCEPTION_HANDLER": "billing.exception_handler.custom_exception_handler",
}

# CORS settings - Environment Aware
if DEBUG:
    # Development: Allow all origins for testing
    CORS_ALLOW_ALL_ORIGINS = True
    CORS_ALLOWED_ORIGINS = []
else:
    CORS_ALLOW_ALL_ORIGINS = False
    CORS_ALLOWED_ORIGINS = config(
        "CORS_ALLOWED_ORIGINS",
        default="http://localhost:3000",
        cast=Csv(),
    )

CORS_PREFLIGHT_MAX_AGE = 86400  # 24 hours
CORS_ALLOW_CREDENTIALS = True

CSRF_TRUSTED_ORIGINS = config(
    "CSRF_TRUSTED_ORIGINS",
    default="http://localhost:8000,http://127.0.0.1:8000,http://localhost:3000",
    cast=Csv(),
)

CORS_ALLOW_HEADERS = [
    "accept",
    "accept-encoding",
    "authorization",
    "content-type",
    "dnt",
    "origin",
    "user-agent",
    "x-csrftoken",
    "x-requested-with",
]

CORS_ALLOW_METHODS = [
    "DELETE",
    "GET",
    "OPTIONS",
    "PATCH",
    "POST",
    "PUT",
]

# M-Pesa Daraja (STK push) Configuration
MPESA_ENVIRONMENT = config("MPESA_ENVIRONMENT", default="sandbox")
MPESA_CONSUMER_KEY = config("MPESA_CONSUMER_KEY", default="")
MPESA_CONSUMER_SECRET = config("MPESA_CONSUMER_SECRET", default="")
MPESA_SHORTCODE = config("MPESA_SHORTCODE", default="174379")
MPESA_PASSKEY = config("MPESA_PASSKEY", default="")
MPESA_CALLBACK_URL = config(
    "MPESA_CALLBACK_URL", default="http://localhost:8000/api/payment/callback/"
)
# CustomerPayBillOnline for paybill numbers, CustomerBuyGoodsOnline for tills
MPESA_TRANSACTION_TYPE = config(
    "MPESA_TRANSACTION_TYPE", default="CustomerPayBillOnline"
)
MPESA_TIMEOUT = config("MPESA_TIMEOUT", default=30, cast=int)
# Status queries inside a confirmation window stay short
MPESA_QUERY_TIMEOUT = config("MPESA_QUERY_TIMEOUT", default=3, cast=float)

# Payment confirmation windows
PAYMENT_INLINE_POLL_ATTEMPTS = config(
    "PAYMENT_INLINE_POLL_ATTEMPTS", default=2, cast=int
)
PAYMENT_INLINE_POLL_INTERVAL = config(
    "PAYMENT_INLINE_POLL_INTERVAL", default=3, cast=float
)
PAYMENT_DEFERRED_POLL_ATTEMPTS = config(
    "PAYMENT_DEFERRED_POLL_ATTEMPTS", default=2, cast=int
)
PAYMENT_DEFERRED_POLL_INTERVAL = config(
    "PAYMENT_DEFERRED_POLL_INTERVAL", default=3, cast=float
)
# Advertised to the captive portal, which polls /payment/status/ itself
PAYMENT_CLIENT_POLL_INTERVAL = config(
    "PAYMENT_CLIENT_POLL_INTERVAL", default=3, cast=int
)
PAYMENT_CLIENT_MAX_POLLS = config("PAYMENT_CLIENT_MAX_POLLS", default=60, cast=int)

# Gateway (router) authorization calls
GATEWAY_HTTP_TIMEOUT = config("GATEWAY_HTTP_TIMEOUT", default=5, cast=float)
GATEWAY_VERIFY_SSL = config("GATEWAY_VERIFY_SSL", default=False, cast=bool)

# Message queue
QUEUE_MAX_ATTEMPTS = config("QUEUE_MAX_ATTEMPTS", default=5, cast=int)
QUEUE_RETRY_DELAYS = config(
    "QUEUE_RETRY_DELAYS", default="5,30,120,600,1800", cast=Csv(int)
)
QUEUE_VISIBILITY_TIMEOUT = config("QUEUE_VISIBILITY_TIMEOUT", default=60, cast=int)
QUEUE_BATCH_SIZE = config("QUEUE_BATCH_SIZE", default=50, cast=int)

# Access tokens issued at login (seconds)
ACCESS_TOKEN_MAX_AGE = config("ACCESS_TOKEN_MAX_AGE", default=24 * 3600, cast=int)

# Jazzmin Configuration
JAZZMIN_SETTINGS = {
    "site_title": "Wi-Fi Billing Admin",
    "site_header": "Wi-Fi Billing",
    "site_brand": "Wi-Fi Billing",
    "welcome_sign": "Wi-Fi access billing administration",
    "copyright": "Wi-Fi Billing",
    "search_model": [
        "billing.User",
        "billing.Session",
        "billing.Transaction",
        "billing.Voucher",
    ],
    "topmenu_links": [
        {"name": "Home", "url": "admin:index", "permissions": ["auth.view_user"]},
        {"app": "billing"},
    ],
    "show_sidebar": True,
    "navigation_expanded": True,
    "order_with_respect_to": ["billing", "auth"],
    "icons": {
        "auth": "fas fa-users-cog",
        "auth.user": "fas fa-user",
        "auth.Group": "fas fa-users",
        "billing.User": "fas fa-wifi",
        "billing.Package": "fas fa-boxes",
        "billing.Session": "fas fa-signal",
        "billing.Transaction": "fas fa-credit-card",
        "billing.Voucher": "fas fa-ticket-alt",
        "billing.Gateway": "fas fa-network-wired",
        "billing.QueueMessage": "fas fa-stream",
    },
    "default_icon_parents": "fas fa-chevron-circle-right",
    "default_icon_children": "fas fa-circle",
    "related_modal_active": False,
    "use_google_fonts_cdn": True,
    "show_ui_builder": False,
    "changeform_format": "horizontal_tabs",
    "language_chooser": False,
}

JAZZMIN_UI_TWEAKS = {
    "navbar": "navbar-white navbar-light",
    "sidebar": "sidebar-dark-primary",
    "brand_colour": "navbar-primary",
    "accent": "accent-primary",
    "theme": "default",
}


# CRONTAB CONFIGURATION FOR SCHEDULED TASKS
# ============================================
# Run 'python manage.py crontab add' to install cron jobs
# Run 'python manage.py crontab show' to list active cron jobs
# Run 'python manage.py crontab remove' to uninstall cron jobs
# For a long-running worker use 'python manage.py run_queue_worker' instead.

CRONJOBS = [
    # Push pending gateway authorization commands every minute
    (
        "* * * * *",
        "billing.tasks.process_authorization_queue",
        ">> /var/log/wifibilling_cron.log 2>&1",
    ),
    # Deferred payment status polls
    (
        "* * * * *",
        "billing.tasks.process_payment_poll_queue",
        ">> /var/log/wifibilling_cron.log 2>&1",
    ),
    # Replay provider callbacks that failed inline processing
    (
        "* * * * *",
        "billing.tasks.process_payment_callback_queue",
        ">> /var/log/wifibilling_cron.log 2>&1",
    ),
]
