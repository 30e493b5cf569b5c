import os

os.environ.setdefault("DJANGO_DEBUG", "True")
os.environ.setdefault("DJANGO_SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("XENDIT_WEBHOOK_TOKEN", "test-webhook-token")
os.environ.setdefault("XENDIT_SECRET_KEY", "xnd_test_key")
os.environ.setdefault("EVENTS_DISPATCH_ON_COMMIT", "False")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from config.settings import *  # noqa: E402,F401,F403

PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]
