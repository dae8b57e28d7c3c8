"""
Settings for local development, with or without Docker.
"""

from .base import *  # noqa: F403
from .base import env

DEBUG = True
SECRET_KEY = env(
    "DJANGO_SECRET_KEY",
    default="Yy4Jc0Qm1pJd6Gq8kL2vR9sT3wX5zA7bN0eH4uF6iK8oP1rS3tV5xZ7cE9gJ2mQ",
)
ALLOWED_HOSTS = ["localhost", "127.0.0.1", "messenger-backend"]

# CACHES
# ------------------------------------------------------------------------------
# Redis when running under Docker compose, in-process cache otherwise
if env.bool("USE_DOCKER", default=False):
    CACHES = {
        "default": {
            "BACKEND": "django_redis.cache.RedisCache",
            "LOCATION": env("REDIS_URL", default="redis://redis:6379/0"),
            "OPTIONS": {"CLIENT_CLASS": "django_redis.client.DefaultClient"},
        },
    }
else:
    CACHES = {"default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"}}

# Chat clients authenticate with the session cookie
SESSION_ENGINE = "django.contrib.sessions.backends.cache"
SESSION_COOKIE_AGE = env.int("SESSION_COOKIE_AGE", default=60 * 60 * 24 * 7)
CSRF_TRUSTED_ORIGINS = env.list(
    "CSRF_TRUSTED_ORIGINS",
    default=["http://localhost:5173", "http://localhost:3000"],
)
# The web client reads the token to send it with API writes
CSRF_COOKIE_HTTPONLY = False

LOGGING["loggers"]["messenger"]["level"] = "DEBUG"  # noqa: F405
