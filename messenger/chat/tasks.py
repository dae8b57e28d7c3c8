"""
Celery tasks for the chat app.
"""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3, ignore_result=True)
def expire_conversation_mutes(self) -> int:
    """
    Unmute participants whose ``mute_until`` has passed.

    Scheduled by Celery beat (see ``config.celery``).

    Returns:
        Number of participants unmuted
    """
    from messenger.chat.services import ParticipantRoster

    count = ParticipantRoster.expire_mutes()
    logger.debug("Mute sweep done: %d participants unmuted", count)
    return count
