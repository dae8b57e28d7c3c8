"""
Persistence layer for the chat app.

Services never mutate chat rows by saving model instances they read earlier;
they go through these repositories, which expose the atomic primitives the
engine relies on:

- atomic_increment: ``F()`` update evaluated by the database
- atomic_set_add / atomic_set_remove: insert or delete of a unique child row
- compare_and_swap: update filtered on the row's ``version``
"""

import logging
from collections.abc import Callable
from collections.abc import Iterable
from uuid import UUID

from django.db import IntegrityError
from django.db import models
from django.db import transaction
from django.db.models import F
from django.db.models import Prefetch
from django.db.models import Q
from django.utils import timezone

from messenger.chat.models import DIRECT_CONVERSATION_NAME
from messenger.chat.models import Conversation
from messenger.chat.models import ConversationType
from messenger.chat.models import Message
from messenger.chat.models import MessageAttachment
from messenger.chat.models import MessageReaction
from messenger.chat.models import MessageRead
from messenger.chat.models import Participant
from messenger.chat.models import ParticipantRole
from messenger.chat.models import PinnedMessage
from messenger.core.exceptions import ConflictError
from messenger.core.exceptions import NotFoundError

logger = logging.getLogger(__name__)

# Compare-and-swap attempts before giving up with ConflictError
MAX_CAS_ATTEMPTS = 5


def atomic_set_add(model: type[models.Model], **lookup) -> bool:
    """
    Insert the unique child row described by ``lookup`` if it is missing.

    ``get_or_create`` recovers from the IntegrityError raised when a
    concurrent writer inserted the same row first.
    Returns True when this call inserted the row.
    """
    _, created = model.objects.get_or_create(**lookup)
    return created


def atomic_set_remove(model: type[models.Model], **lookup) -> bool:
    """Delete the child row described by ``lookup``. Returns True if one existed."""
    deleted, _ = model.objects.filter(**lookup).delete()
    return deleted > 0


class ConversationRepository:
    """Conversation rows and their cached aggregates."""

    @staticmethod
    def get(conversation_id: UUID) -> Conversation:
        conversation = Conversation.objects.filter(id=conversation_id).first()
        if conversation is None:
            raise NotFoundError(
                "Conversation introuvable.",
                details={"conversation_id": str(conversation_id)},
            )
        return conversation

    @staticmethod
    def lock(conversation_id: UUID) -> Conversation:
        """
        Re-read the conversation with a row lock.

        Must be called inside ``transaction.atomic()``. Serializes membership
        changes on backends that support ``SELECT ... FOR UPDATE``.
        """
        return Conversation.objects.select_for_update().get(id=conversation_id)

    @staticmethod
    def find_direct(direct_key: str) -> Conversation | None:
        return Conversation.objects.filter(direct_key=direct_key).first()

    @staticmethod
    def create_direct(direct_key: str, user_ids: Iterable[UUID]) -> Conversation:
        """
        Create a direct conversation and its two member participants.

        Raises:
            ConflictError: if another writer created the conversation for
                this key first (unique constraint on ``direct_key``)
        """
        try:
            with transaction.atomic():
                conversation = Conversation.objects.create(
                    type=ConversationType.DIRECT,
                    name=DIRECT_CONVERSATION_NAME,
                    direct_key=direct_key,
                )
                for user_id in user_ids:
                    Participant.objects.create(
                        conversation=conversation,
                        user_id=user_id,
                        role=ParticipantRole.MEMBER,
                    )
        except IntegrityError as exc:
            raise ConflictError(
                "Cette conversation privée existe déjà.",
                details={"direct_key": direct_key},
            ) from exc
        return conversation

    @staticmethod
    def create_group(
        creator_id: UUID,
        member_ids: Iterable[UUID],
        name: str,
        description: str = "",
        photo_url: str = "",
        photo_thumbnail_url: str = "",
        **settings,
    ) -> Conversation:
        """Create a group with ``creator_id`` as owner and the others as members."""
        with transaction.atomic():
            conversation = Conversation.objects.create(
                type=ConversationType.GROUP,
                name=name,
                description=description,
                photo_url=photo_url,
                photo_thumbnail_url=photo_thumbnail_url,
                **settings,
            )
            Participant.objects.create(
                conversation=conversation,
                user_id=creator_id,
                role=ParticipantRole.OWNER,
            )
            for user_id in member_ids:
                Participant.objects.create(
                    conversation=conversation,
                    user_id=user_id,
                    role=ParticipantRole.MEMBER,
                )
        return conversation

    @staticmethod
    def atomic_increment(conversation_id: UUID, field: str, amount: int = 1) -> int:
        """Add ``amount`` to ``field`` in a single UPDATE. Returns rows updated."""
        return Conversation.objects.filter(id=conversation_id).update(
            **{field: F(field) + amount},
            modified=timezone.now(),
        )

    @staticmethod
    def record_last_message(conversation_id: UUID, message: Message) -> bool:
        """
        Point the cached last message at ``message``.

        Only applies when ``message`` is at least as recent as the cached one,
        so a slower writer never overwrites a newer message.
        """
        updated = (
            Conversation.objects.filter(id=conversation_id)
            .filter(Q(last_message_at__isnull=True) | Q(last_message_at__lte=message.created))
            .update(
                last_message=message,
                last_message_content=message.preview,
                last_message_at=message.created,
                modified=timezone.now(),
            )
        )
        return updated > 0

    @staticmethod
    def refresh_last_message_content(conversation_id: UUID, message: Message) -> bool:
        """Rewrite the cached text if ``message`` is still the cached last message."""
        updated = Conversation.objects.filter(id=conversation_id, last_message_id=message.id).update(
            last_message_content=message.preview,
            modified=timezone.now(),
        )
        return updated > 0

    @staticmethod
    def archive(conversation_id: UUID, user_id: UUID) -> bool:
        return atomic_set_add(
            Conversation.archived_by.through,
            conversation_id=conversation_id,
            user_id=user_id,
        )

    @staticmethod
    def unarchive(conversation_id: UUID, user_id: UUID) -> bool:
        return atomic_set_remove(
            Conversation.archived_by.through,
            conversation_id=conversation_id,
            user_id=user_id,
        )

    @staticmethod
    def is_archived_by(conversation_id: UUID, user_id: UUID) -> bool:
        return Conversation.archived_by.through.objects.filter(
            conversation_id=conversation_id,
            user_id=user_id,
        ).exists()

    @staticmethod
    def pin(conversation_id: UUID, message_id: UUID, pinned_by_id: UUID) -> bool:
        _, created = PinnedMessage.objects.get_or_create(
            conversation_id=conversation_id,
            message_id=message_id,
            defaults={"pinned_by_id": pinned_by_id},
        )
        return created

    @staticmethod
    def unpin(conversation_id: UUID, message_id: UUID) -> bool:
        return atomic_set_remove(PinnedMessage, conversation_id=conversation_id, message_id=message_id)

    @staticmethod
    def pinned_message_ids(conversation_id: UUID) -> list[UUID]:
        return list(
            PinnedMessage.objects.filter(conversation_id=conversation_id)
            .order_by("created", "id")
            .values_list("message_id", flat=True)
        )

    @staticmethod
    def for_user(user_id: UUID, include_archived: bool = False) -> models.QuerySet[Conversation]:
        """Conversations the user actively participates in, most recent activity first."""
        queryset = Conversation.objects.filter(
            participants__user_id=user_id,
            participants__is_active=True,
        )
        if not include_archived:
            queryset = queryset.exclude(archived_by=user_id)
        return queryset.prefetch_related(
            Prefetch("participants", queryset=Participant.objects.select_related("user")),
            "pins",
            "archived_by",
        ).order_by(
            F("last_message_at").desc(nulls_last=True),
            "-created",
        )


class ParticipantRepository:
    """Participant rows. Inactive rows are kept and ignored by every lookup here."""

    @staticmethod
    def active(conversation_id: UUID) -> models.QuerySet[Participant]:
        return Participant.objects.filter(conversation_id=conversation_id, is_active=True)

    @classmethod
    def get_active(cls, conversation_id: UUID, user_id: UUID) -> Participant | None:
        return cls.active(conversation_id).filter(user_id=user_id).first()

    @staticmethod
    def get_any(conversation_id: UUID, user_id: UUID) -> Participant | None:
        return Participant.objects.filter(conversation_id=conversation_id, user_id=user_id).first()

    @classmethod
    def active_count(cls, conversation_id: UUID) -> int:
        return cls.active(conversation_id).count()

    @staticmethod
    def create(conversation_id: UUID, user_id: UUID, role: str) -> Participant:
        return Participant.objects.create(conversation_id=conversation_id, user_id=user_id, role=role)

    @staticmethod
    def reactivate(participant: Participant, role: str) -> bool:
        """Bring back a participant who left. Returns False if already active."""
        now = timezone.now()
        updated = Participant.objects.filter(id=participant.id, is_active=False).update(
            is_active=True,
            left_at=None,
            joined_at=now,
            role=role,
            modified=now,
        )
        if updated:
            participant.is_active = True
            participant.left_at = None
            participant.joined_at = now
            participant.role = role
        return updated > 0

    @staticmethod
    def deactivate(participant: Participant) -> bool:
        """
        Mark an active participant as departed.

        Returns False, leaving ``left_at`` untouched, when the participant
        was already inactive.
        """
        now = timezone.now()
        updated = Participant.objects.filter(id=participant.id, is_active=True).update(
            is_active=False,
            left_at=now,
            modified=now,
        )
        if updated:
            participant.is_active = False
            participant.left_at = now
        return updated > 0

    @staticmethod
    def set_role(participant: Participant, role: str) -> None:
        Participant.objects.filter(id=participant.id).update(role=role, modified=timezone.now())
        participant.role = role

    @classmethod
    def successor(cls, conversation_id: UUID) -> Participant | None:
        """Longest-standing active admin, else longest-standing active member."""
        candidates = cls.active(conversation_id).exclude(role=ParticipantRole.OWNER)
        admin = candidates.filter(role=ParticipantRole.ADMIN).order_by("joined_at", "created").first()
        if admin is not None:
            return admin
        return candidates.order_by("joined_at", "created").first()

    @staticmethod
    def expire_mutes(now) -> int:
        return Participant.objects.filter(
            muted=True,
            mute_until__isnull=False,
            mute_until__lte=now,
        ).update(muted=False, mute_until=None, modified=now)


class MessageRepository:
    """Messages and their child rows (attachments, receipts, reactions)."""

    @staticmethod
    def get(message_id: UUID) -> Message:
        message = Message.objects.filter(id=message_id).first()
        if message is None:
            raise NotFoundError(
                "Message introuvable.",
                details={"message_id": str(message_id)},
            )
        return message

    @staticmethod
    def find(message_id: UUID) -> Message | None:
        return Message.objects.filter(id=message_id).first()

    @staticmethod
    def with_relations(queryset: models.QuerySet[Message]) -> models.QuerySet[Message]:
        """Eager-load everything a message needs for display."""
        return queryset.select_related("sender", "reply_to", "reply_to__sender").prefetch_related(
            "attachments",
            "reads",
            "reactions",
        )

    @staticmethod
    def create(
        conversation_id: UUID,
        sender_id: UUID,
        type: str,
        content: str,
        attachments: Iterable[dict] = (),
        reply_to_id: UUID | None = None,
        system_type: str = "",
        system_target_id: UUID | None = None,
        system_value: str = "",
    ) -> Message:
        with transaction.atomic():
            message = Message.objects.create(
                conversation_id=conversation_id,
                sender_id=sender_id,
                type=type,
                content=content,
                reply_to_id=reply_to_id,
                system_type=system_type,
                system_target_id=system_target_id,
                system_value=system_value,
            )
            MessageAttachment.objects.bulk_create(
                [
                    MessageAttachment(message=message, position=position, **attachment)
                    for position, attachment in enumerate(attachments)
                ]
            )
        return message

    @staticmethod
    def page(conversation_id: UUID, cursor: Message | None, limit: int) -> list[Message]:
        """
        Messages newest first, strictly older than ``cursor``.

        Fetches one extra row so the caller can tell whether more remain.
        """
        queryset = Message.objects.filter(conversation_id=conversation_id)
        if cursor is not None:
            queryset = queryset.filter(
                Q(created__lt=cursor.created) | Q(created=cursor.created, id__lt=cursor.id)
            )
        queryset = MessageRepository.with_relations(queryset.order_by("-created", "-id"))
        return list(queryset[: limit + 1])

    @staticmethod
    def unread_ids(conversation_id: UUID, user_id: UUID, up_to: Message | None = None) -> list[UUID]:
        """Ids of messages not sent by ``user_id`` and not yet read by them, oldest first."""
        queryset = (
            Message.objects.filter(conversation_id=conversation_id)
            .exclude(sender_id=user_id)
            .exclude(reads__user_id=user_id)
        )
        if up_to is not None:
            queryset = queryset.filter(created__lte=up_to.created)
        return list(queryset.order_by("created", "id").values_list("id", flat=True))

    @staticmethod
    def add_reader(message_id: UUID, user_id: UUID) -> bool:
        return atomic_set_add(MessageRead, message_id=message_id, user_id=user_id)

    @staticmethod
    def reader_count(message_id: UUID) -> int:
        return MessageRead.objects.filter(message_id=message_id).count()

    @staticmethod
    def add_reaction(message_id: UUID, user_id: UUID, emoji: str) -> bool:
        return atomic_set_add(MessageReaction, message_id=message_id, user_id=user_id, emoji=emoji)

    @staticmethod
    def remove_reaction(message_id: UUID, user_id: UUID, emoji: str) -> bool:
        return atomic_set_remove(MessageReaction, message_id=message_id, user_id=user_id, emoji=emoji)

    @staticmethod
    def compare_and_swap(message: Message, **changes) -> bool:
        """
        Apply ``changes`` only if the row still has ``message.version``.

        On success the instance is updated in place, version included.
        """
        now = timezone.now()
        updated = Message.objects.filter(id=message.id, version=message.version).update(
            **changes,
            version=message.version + 1,
            modified=now,
        )
        if not updated:
            return False
        for field, value in changes.items():
            setattr(message, field, value)
        message.version += 1
        message.modified = now
        return True

    @classmethod
    def update_with_retry(
        cls,
        message_id: UUID,
        mutate: Callable[[Message], dict | None],
    ) -> tuple[Message, bool]:
        """
        Read-modify-write a message under compare-and-swap.

        ``mutate`` receives a fresh copy and returns the field changes to
        apply, or None when there is nothing to do. Retried on version
        conflicts up to MAX_CAS_ATTEMPTS times.

        Returns the message and whether changes were applied.

        Raises:
            ConflictError: if every attempt lost the race
        """
        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            message = cls.get(message_id)
            changes = mutate(message)
            if not changes:
                return message, False
            if cls.compare_and_swap(message, **changes):
                return message, True
            logger.info("Version conflict on message %s (attempt %d)", message_id, attempt)
        raise ConflictError(details={"message_id": str(message_id)})
