"""Celery configuration for the Messenger backend."""

import os

from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings.local")

app = Celery("messenger")

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
# - namespace='CELERY' means all celery-related configuration keys
#   should have a `CELERY_` prefix.
app.config_from_object("django.conf:settings", namespace="CELERY")

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Per-conversation mutes with an expiry are lifted by a periodic sweep
app.conf.beat_schedule = {
    "expire-conversation-mutes": {
        "task": "messenger.chat.tasks.expire_conversation_mutes",
        "schedule": crontab(minute="*/15"),
    },
}
