"""Django settings for the token redemption service.


The service runs the redemption core:
- Redemption orders with an append-only fulfillment history
- Token burns driven stage by stage against a ledger client (stubbed by default)
- Variant-combination stock for physical items


Authentication is Django's own; wallet connect and address validation live upstream.
"""

import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent
SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = os.getenv("DEBUG", "1") in ("1", "true", "True", "yes")
ALLOWED_HOSTS = os.getenv("ALLOWED_HOSTS", "*").split(",")
CSRF_TRUSTED_ORIGINS = os.getenv("CSRF_TRUSTED_ORIGINS", "").split(",") if os.getenv("CSRF_TRUSTED_ORIGINS") else []

def env_bool(name, default=""):
    v = os.getenv(name, default)
    return v.lower() in ("1", "true", "yes", "on")

def env_float(name, default=None):
    v = os.getenv(name)
    if v in (None, ""):
        return default
    return float(v)

#######################
# Ledger client used by the burn orchestrator (dotted path to a LedgerClient subclass)
LEDGER_CLIENT = os.getenv("LEDGER_CLIENT", "core.adapters.ledger_adapter.StubLedgerClient")
LEDGER_NETWORK = os.getenv("LEDGER_NETWORK", "testnet")

# Each external burn stage (sign, broadcast, confirm) is bounded by this timeout.
# Expiry during broadcast/confirm leaves the attempt "unknown", never "failed".
BURN_STAGE_TIMEOUT_SECONDS = env_float("BURN_STAGE_TIMEOUT_SECONDS", 30.0)

# A transaction the ledger has not seen is only treated as failed after this long
# (the ledger may still accept it inside its valid-start window).
BURN_RECONCILE_GRACE_SECONDS = env_float("BURN_RECONCILE_GRACE_SECONDS", 180.0)

# Random suffix length of order ids (ORD-xxxxxxxxxxxx); the id doubles as a lookup capability
ORDER_ID_LENGTH = int(os.getenv("ORDER_ID_LENGTH", "12"))

# Demo seed endpoint is only wired when this is on
ENABLE_DEMO_ENDPOINTS = env_bool("ENABLE_DEMO_ENDPOINTS", "1" if DEBUG else "0")
DEMO_ACCOUNT_ID = os.getenv("DEMO_ACCOUNT_ID", "0.0.1001")
DEMO_TOKEN_ID = os.getenv("DEMO_TOKEN_ID", "0.0.5005")
#######################


INSTALLED_APPS = [
	"django.contrib.admin",
	"django.contrib.auth",
	"django.contrib.contenttypes",
	"django.contrib.sessions",
	"django.contrib.messages",
	"django.contrib.staticfiles",
	# local apps
	"core",
	"api",
	"ledger_stub",
]


MIDDLEWARE = [
	"django.middleware.security.SecurityMiddleware",
	"django.contrib.sessions.middleware.SessionMiddleware",
	"django.middleware.common.CommonMiddleware",
	"django.middleware.csrf.CsrfViewMiddleware",
	"django.contrib.auth.middleware.AuthenticationMiddleware",
	"django.contrib.messages.middleware.MessageMiddleware",
]


ROOT_URLCONF = "token_redemption.urls"
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


WSGI_APPLICATION = "token_redemption.wsgi.application"


DB_ENGINE = os.getenv("DB_ENGINE", "sqlite")
if DB_ENGINE == "postgres":
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB", "token_redemption"),
            "USER": os.getenv("POSTGRES_USER", "token_redemption"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", "token_redemption"),
            "HOST": os.getenv("POSTGRES_HOST", "localhost"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOGGING = {
	"version": 1,
	"disable_existing_loggers": False,
	"formatters": {
		"plain": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
	},
	"handlers": {
		"console": {"class": "logging.StreamHandler", "formatter": "plain"},
	},
	"loggers": {
		"core": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
		"api": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
		"ledger_stub": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
	},
}


AUTH_PASSWORD_VALIDATORS = []


LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True


STATIC_URL = "static/"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
