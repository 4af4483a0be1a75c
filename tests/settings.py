"""Django settings for the redemption test suite."""

from token_redemption.settings import *  # noqa: F401,F403

SECRET_KEY = 'test-secret-key-for-token-redemption'

DEBUG = True

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

# Stage calls run inline; the in-memory sqlite database is not shared with worker threads
BURN_STAGE_TIMEOUT_SECONDS = None
BURN_RECONCILE_GRACE_SECONDS = 180.0

LEDGER_CLIENT = 'core.adapters.ledger_adapter.StubLedgerClient'
ENABLE_DEMO_ENDPOINTS = True

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']
