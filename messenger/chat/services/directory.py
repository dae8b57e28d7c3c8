"""
Conversation directory.

Owns conversations: resolve-or-create of direct conversations, group
lifecycle and membership, per-user archive, pins and the cached
last-message aggregate updated on every send.
"""

import logging
from uuid import UUID

from django.conf import settings as django_settings
from django.db import transaction

from messenger.chat.models import Conversation
from messenger.chat.models import Message
from messenger.chat.models import Participant
from messenger.chat.models import ParticipantRole
from messenger.chat.models import SystemEvent
from messenger.chat.models import direct_key_for
from messenger.chat.repositories import ConversationRepository
from messenger.chat.repositories import MessageRepository
from messenger.chat.repositories import ParticipantRepository
from messenger.chat.services.roster import ParticipantRoster
from messenger.core.exceptions import ConflictError
from messenger.core.exceptions import InvalidOperationError
from messenger.core.exceptions import NotFoundError
from messenger.core.exceptions import PermissionDeniedError
from messenger.core.exceptions import ValidationError
from messenger.users import identity

logger = logging.getLogger(__name__)

SETTING_FIELDS = ("is_public", "allow_invites", "admin_only_messages", "max_participants")
NAME_MAX_LENGTH = 255
DESCRIPTION_MAX_LENGTH = 500


def _max_participants_limit() -> int:
    return getattr(django_settings, "CHAT_MAX_PARTICIPANTS", 1000)


def _clean_settings(settings: dict | None) -> dict:
    """Validate a partial group settings mapping."""
    settings = {key: value for key, value in (settings or {}).items() if value is not None}
    unknown = set(settings) - set(SETTING_FIELDS)
    if unknown:
        raise ValidationError(
            "Paramètres de groupe inconnus.",
            details={"fields": sorted(unknown)},
        )
    if "max_participants" in settings:
        limit = _max_participants_limit()
        if not 2 <= settings["max_participants"] <= limit:
            raise ValidationError(
                "Nombre maximal de participants invalide.",
                details={"min": 2, "max": limit},
            )
    return settings


def _clean_name(name: str | None) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Le nom du groupe est obligatoire.")
    if len(name) > NAME_MAX_LENGTH:
        raise ValidationError(
            "Le nom du groupe est trop long.",
            details={"max_length": NAME_MAX_LENGTH},
        )
    return name


def _clean_description(description: str | None) -> str:
    description = (description or "").strip()
    if len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(
            "La description est trop longue.",
            details={"max_length": DESCRIPTION_MAX_LENGTH},
        )
    return description


def _post_event(conversation_id: UUID, actor_id: UUID, system_type: str, content: str, **extra) -> Message:
    # Imported here: the message store depends on this module for aggregates
    from messenger.chat.services.messages import MessageStore

    return MessageStore.post_system_event(conversation_id, actor_id, system_type, content, **extra)


class ConversationDirectory:
    """
    Service for conversation lifecycle operations.

    Methods:
        resolve_or_create_direct: the unique direct conversation of a pair
        create_group / update_group: group lifecycle
        add_participant / remove_participant: group membership
        update_aggregate_on_send: counter and last-message cache
        archive / unarchive, pin_message / unpin_message: per-conversation sets
        get / get_for_user / list_for_user: reads
    """

    @staticmethod
    def get(conversation_id: UUID) -> Conversation:
        return ConversationRepository.get(conversation_id)

    @classmethod
    def get_for_user(cls, conversation_id: UUID, user_id: UUID) -> Conversation:
        """
        Raises:
            NotFoundError: unknown conversation
            PermissionDeniedError: the user is not an active participant
        """
        conversation = cls.get(conversation_id)
        ParticipantRoster.require_participant(conversation.id, user_id)
        return conversation

    @staticmethod
    def list_for_user(user_id: UUID, include_archived: bool = False) -> list[Conversation]:
        """
        Conversations of the user, most recent activity first.

        Conversations without messages come last, newest first.
        """
        return list(ConversationRepository.for_user(user_id, include_archived=include_archived))

    @classmethod
    def resolve_or_create_direct(cls, user_a_id: UUID, user_b_id: UUID) -> Conversation:
        """
        Return the direct conversation between two users, creating it once.

        Concurrent callers for the same pair all get the same conversation:
        the unique ``direct_key`` rejects every creator but one, and the
        losers read back the winner's row.

        Raises:
            ValidationError: if both ids are the same user
            NotFoundError: if either user does not exist
        """
        if str(user_a_id) == str(user_b_id):
            raise ValidationError("Impossible de démarrer une conversation avec soi-même.")
        identity.get_users([user_a_id, user_b_id])

        direct_key = direct_key_for(user_a_id, user_b_id)
        conversation = ConversationRepository.find_direct(direct_key)
        if conversation is not None:
            return conversation

        try:
            conversation = ConversationRepository.create_direct(direct_key, [user_a_id, user_b_id])
        except ConflictError:
            logger.info("Direct conversation %s created concurrently, reading it back", direct_key)
            conversation = ConversationRepository.find_direct(direct_key)
            if conversation is None:
                raise
            return conversation

        logger.info("Created direct conversation %s (%s)", conversation.id, direct_key)
        return conversation

    @classmethod
    def create_group(
        cls,
        creator_id: UUID,
        participant_ids: list[UUID],
        name: str,
        settings: dict | None = None,
        description: str = "",
        photo_url: str = "",
        photo_thumbnail_url: str = "",
    ) -> Conversation:
        """
        Create a group owned by ``creator_id``.

        The creator and duplicates are dropped from ``participant_ids``; the
        rest join as members. A ``group_created`` system message is posted.

        Raises:
            ValidationError: empty name, invalid settings, or more initial
                participants than ``max_participants``
            NotFoundError: unknown creator or participant
        """
        name = _clean_name(name)
        description = _clean_description(description)
        settings = _clean_settings(settings)

        member_ids = [
            user_id
            for user_id in dict.fromkeys(str(uid) for uid in participant_ids)
            if user_id != str(creator_id)
        ]
        max_participants = settings.setdefault("max_participants", _max_participants_limit())
        if len(member_ids) + 1 > max_participants:
            raise ValidationError(
                "Trop de participants pour ce groupe.",
                details={"max_participants": max_participants},
            )

        creator, *_ = identity.get_users([creator_id, *member_ids])

        with transaction.atomic():
            conversation = ConversationRepository.create_group(
                creator_id=creator.id,
                member_ids=member_ids,
                name=name,
                description=description,
                photo_url=photo_url,
                photo_thumbnail_url=photo_thumbnail_url,
                **settings,
            )
            _post_event(
                conversation.id,
                creator.id,
                SystemEvent.GROUP_CREATED,
                f"{identity.display_name(creator)} a créé le groupe « {name} »",
                value=name,
            )

        logger.info(
            "Group %s created by %s with %d members",
            conversation.id,
            creator.id,
            len(member_ids),
        )
        conversation.refresh_from_db()
        return conversation

    @classmethod
    def update_group(
        cls,
        conversation_id: UUID,
        actor_id: UUID,
        name: str | None = None,
        description: str | None = None,
        photo_url: str | None = None,
        photo_thumbnail_url: str | None = None,
        settings: dict | None = None,
    ) -> Conversation:
        """
        Change a group's presentation fields and settings. Admins only.

        Posts ``name_changed`` / ``photo_changed`` system messages when those
        fields actually change.
        """
        conversation = cls.get(conversation_id)
        if conversation.is_direct:
            raise InvalidOperationError("Une conversation privée ne peut pas être modifiée.")
        actor = ParticipantRoster.require_admin(conversation.id, actor_id)

        settings = _clean_settings(settings)
        events = []
        update_fields = []

        if name is not None:
            name = _clean_name(name)
            if name != conversation.name:
                conversation.name = name
                update_fields.append("name")
                events.append((SystemEvent.NAME_CHANGED, f"a renommé le groupe en « {name} »", name))

        if description is not None:
            conversation.description = _clean_description(description)
            update_fields.append("description")

        if photo_url is not None and photo_url != conversation.photo_url:
            conversation.photo_url = photo_url
            update_fields.append("photo_url")
            events.append((SystemEvent.PHOTO_CHANGED, "a changé la photo du groupe", photo_url))

        if photo_thumbnail_url is not None:
            conversation.photo_thumbnail_url = photo_thumbnail_url
            update_fields.append("photo_thumbnail_url")

        if "max_participants" in settings:
            active = ParticipantRoster.active_count(conversation.id)
            if settings["max_participants"] < active:
                raise ValidationError(
                    "Le groupe compte déjà plus de participants que cette limite.",
                    details={"active_participants": active},
                )
        for field, value in settings.items():
            setattr(conversation, field, value)
            update_fields.append(field)

        if not update_fields:
            return conversation

        with transaction.atomic():
            conversation.save(update_fields=[*update_fields, "modified"])
            actor_name = identity.display_name(actor.user)
            for system_type, text, value in events:
                _post_event(conversation.id, actor_id, system_type, f"{actor_name} {text}", value=value)

        logger.info("Group %s updated by %s: %s", conversation.id, actor_id, ", ".join(update_fields))
        conversation.refresh_from_db()
        return conversation

    @classmethod
    def add_participant(
        cls,
        conversation_id: UUID,
        user_id: UUID,
        role: str = ParticipantRole.MEMBER,
        actor_id: UUID | None = None,
    ) -> Participant:
        """
        Add ``user_id`` to a group, or bring them back if they had left.

        No-op for a user who is already active. When ``actor_id`` is given
        the actor must be an admin, or a member of a group that allows
        invites adding someone as a plain member.

        Raises:
            InvalidOperationError: direct conversation, or group already full
            ValidationError: role is owner
            PermissionDeniedError: actor not allowed to add
            NotFoundError: unknown conversation or user
        """
        conversation = cls.get(conversation_id)
        if conversation.is_direct:
            raise InvalidOperationError("Impossible d'ajouter un participant à une conversation privée.")
        if role not in (ParticipantRole.MEMBER, ParticipantRole.ADMIN):
            raise ValidationError("Rôle invalide.", details={"role": role})

        if actor_id is not None:
            actor = ParticipantRoster.require_participant(conversation.id, actor_id)
            if not actor.is_admin and (not conversation.allow_invites or role != ParticipantRole.MEMBER):
                raise PermissionDeniedError("Vous ne pouvez pas ajouter de participant à ce groupe.")

        user = identity.get_user(user_id)

        with transaction.atomic():
            conversation = ConversationRepository.lock(conversation.id)
            participant = ParticipantRepository.get_any(conversation.id, user.id)
            if participant is not None and participant.is_active:
                return participant

            if ParticipantRepository.active_count(conversation.id) >= conversation.max_participants:
                raise InvalidOperationError(
                    "Le groupe a atteint son nombre maximal de participants.",
                    details={"max_participants": conversation.max_participants},
                )

            if participant is not None:
                ParticipantRepository.reactivate(participant, role)
            else:
                participant = ParticipantRepository.create(conversation.id, user.id, role)

            _post_event(
                conversation.id,
                actor_id or user.id,
                SystemEvent.USER_JOINED,
                f"{identity.display_name(user)} a rejoint le groupe",
                target_id=user.id,
            )

        logger.info("User %s joined conversation %s as %s", user.id, conversation.id, role)
        return participant

    @classmethod
    def remove_participant(
        cls,
        conversation_id: UUID,
        user_id: UUID,
        actor_id: UUID | None = None,
    ) -> Participant | None:
        """
        Mark ``user_id`` as having left a group.

        No-op (returns None) when the user is not an active participant.
        When the owner leaves, the longest-standing admin, or failing that
        member, becomes owner. Anyone may remove themselves; removing
        someone else requires an admin actor and never targets the owner.

        Raises:
            InvalidOperationError: direct conversation, or last participant
            PermissionDeniedError: actor not allowed to remove the user
        """
        conversation = cls.get(conversation_id)
        if conversation.is_direct:
            raise InvalidOperationError("Impossible de quitter une conversation privée.")

        if actor_id is not None and str(actor_id) != str(user_id):
            ParticipantRoster.require_admin(conversation.id, actor_id)
            if ParticipantRoster.role_of(conversation.id, user_id) == ParticipantRole.OWNER:
                raise PermissionDeniedError("Le propriétaire du groupe ne peut pas être retiré.")

        with transaction.atomic():
            ConversationRepository.lock(conversation.id)
            participant = ParticipantRepository.get_active(conversation.id, user_id)
            if participant is None:
                return None

            if ParticipantRepository.active_count(conversation.id) <= 1:
                raise InvalidOperationError("Le dernier participant ne peut pas quitter le groupe.")

            ParticipantRepository.deactivate(participant)

            if participant.role == ParticipantRole.OWNER:
                successor = ParticipantRepository.successor(conversation.id)
                ParticipantRepository.set_role(successor, ParticipantRole.OWNER)
                ParticipantRepository.set_role(participant, ParticipantRole.MEMBER)
                logger.info(
                    "Ownership of conversation %s moved from %s to %s",
                    conversation.id,
                    user_id,
                    successor.user_id,
                )

            user = participant.user
            _post_event(
                conversation.id,
                actor_id or user.id,
                SystemEvent.USER_LEFT,
                f"{identity.display_name(user)} a quitté le groupe",
                target_id=user.id,
            )

        logger.info("User %s left conversation %s", user_id, conversation.id)
        return participant

    @staticmethod
    def update_aggregate_on_send(conversation_id: UUID, message: Message) -> None:
        """
        Count ``message`` and cache it as the last message if it is the newest.

        The counter is incremented by the database, so concurrent senders
        never lose an increment.
        """
        with transaction.atomic():
            ConversationRepository.atomic_increment(conversation_id, "message_count")
            ConversationRepository.record_last_message(conversation_id, message)

    @staticmethod
    def archive(conversation_id: UUID, user_id: UUID) -> bool:
        """Hide the conversation for ``user_id``. Returns False if already hidden."""
        ParticipantRoster.require_participant(ConversationRepository.get(conversation_id).id, user_id)
        return ConversationRepository.archive(conversation_id, user_id)

    @staticmethod
    def unarchive(conversation_id: UUID, user_id: UUID) -> bool:
        ParticipantRoster.require_participant(ConversationRepository.get(conversation_id).id, user_id)
        return ConversationRepository.unarchive(conversation_id, user_id)

    @staticmethod
    def is_archived_by(conversation_id: UUID, user_id: UUID) -> bool:
        return ConversationRepository.is_archived_by(conversation_id, user_id)

    @staticmethod
    def pinned_message_ids(conversation_id: UUID) -> list[UUID]:
        return ConversationRepository.pinned_message_ids(conversation_id)

    @classmethod
    def _pin_target(cls, conversation_id: UUID, message_id: UUID, actor_id: UUID) -> Message:
        conversation = cls.get(conversation_id)
        if conversation.is_group:
            ParticipantRoster.require_admin(conversation.id, actor_id)
        else:
            ParticipantRoster.require_participant(conversation.id, actor_id)

        message = MessageRepository.find(message_id)
        if message is None or message.conversation_id != conversation.id:
            raise NotFoundError(
                "Message introuvable dans cette conversation.",
                details={"message_id": str(message_id)},
            )
        return message

    @classmethod
    def pin_message(cls, conversation_id: UUID, message_id: UUID, actor_id: UUID) -> list[UUID]:
        """
        Pin a message. Idempotent. Returns the pinned ids in pin order.

        Raises:
            PermissionDeniedError: non-participant, or non-admin in a group
            NotFoundError: message not in this conversation
            InvalidOperationError: message was deleted
        """
        message = cls._pin_target(conversation_id, message_id, actor_id)
        if message.is_deleted:
            raise InvalidOperationError("Un message supprimé ne peut pas être épinglé.")
        if ConversationRepository.pin(message.conversation_id, message.id, actor_id):
            logger.info("Message %s pinned in %s by %s", message.id, message.conversation_id, actor_id)
        return cls.pinned_message_ids(message.conversation_id)

    @classmethod
    def unpin_message(cls, conversation_id: UUID, message_id: UUID, actor_id: UUID) -> list[UUID]:
        """Unpin a message. Idempotent. Returns the remaining pinned ids."""
        message = cls._pin_target(conversation_id, message_id, actor_id)
        ConversationRepository.unpin(message.conversation_id, message.id)
        return cls.pinned_message_ids(message.conversation_id)
