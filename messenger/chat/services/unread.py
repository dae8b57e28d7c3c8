"""
Unread counts, derived from messages and read receipts on every call.
"""

from uuid import UUID

from django.db.models import Count
from django.db.models import QuerySet

from messenger.chat.models import Message


def _unread(user_id: UUID) -> QuerySet[Message]:
    return Message.objects.filter(is_deleted=False).exclude(sender_id=user_id).exclude(reads__user_id=user_id)


class UnreadCounter:
    """Per-user unread counts. Never stored."""

    @staticmethod
    def unread_count(conversation_id: UUID, user_id: UUID) -> int:
        """Messages not sent by the user, not read by them and not deleted."""
        return _unread(user_id).filter(conversation_id=conversation_id).count()

    @staticmethod
    def unread_counts(conversation_ids: list[UUID], user_id: UUID) -> dict[UUID, int]:
        """Unread count of each conversation in one query. Missing ids count 0."""
        rows = (
            _unread(user_id)
            .filter(conversation_id__in=conversation_ids)
            .values("conversation_id")
            .annotate(count=Count("id"))
            .order_by()
        )
        counts = {conversation_id: 0 for conversation_id in conversation_ids}
        counts.update({row["conversation_id"]: row["count"] for row in rows})
        return counts
