"""WSGI entrypoint for the redemption service."""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "token_redemption.settings")

application = get_wsgi_application()
