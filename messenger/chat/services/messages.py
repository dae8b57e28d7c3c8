"""
Message store.

Owns messages: sending, system events, read receipts with the delivery
status state machine, reactions, edits and soft deletion, and paging.

Status, edits and deletion go through ``MessageRepository.update_with_retry``
so that concurrent writers never overwrite each other's changes.
"""

import logging
from dataclasses import dataclass
from uuid import UUID

from django.conf import settings
from django.db import transaction
from django.utils import timezone
from django_fsm import can_proceed

from messenger.chat.models import Message
from messenger.chat.models import MessageStatus
from messenger.chat.models import MessageType
from messenger.chat.models import SystemEvent
from messenger.chat.models import status_for_reader_count
from messenger.chat.repositories import ConversationRepository
from messenger.chat.repositories import MessageRepository
from messenger.chat.services.directory import ConversationDirectory
from messenger.chat.services.roster import ParticipantRoster
from messenger.core.exceptions import InvalidOperationError
from messenger.core.exceptions import NotFoundError
from messenger.core.exceptions import NotOwnerError
from messenger.core.exceptions import PermissionDeniedError
from messenger.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

EMOJI_MAX_LENGTH = 32
ATTACHMENT_FIELDS = ("url", "name", "size", "mime_type", "thumbnail_url", "duration")


@dataclass
class MessagePage:
    """One page of history, newest first."""

    messages: list[Message]
    next_cursor: UUID | None
    has_more: bool


def _clean_content(message_type: str, content: str | None) -> str:
    content = (content or "").strip()
    if message_type == MessageType.TEXT and not content:
        raise ValidationError("Le message ne peut pas être vide.")
    return content


def _clean_attachments(attachments: list[dict] | None) -> list[dict]:
    cleaned = []
    for index, attachment in enumerate(attachments or []):
        unknown = set(attachment) - set(ATTACHMENT_FIELDS)
        if unknown or not attachment.get("url") or not attachment.get("name"):
            raise ValidationError(
                "Pièce jointe invalide.",
                details={"index": index, "required": ["url", "name"]},
            )
        cleaned.append({key: value for key, value in attachment.items() if value is not None})
    return cleaned


def _clean_emoji(emoji: str | None) -> str:
    emoji = (emoji or "").strip()
    if not emoji or len(emoji) > EMOJI_MAX_LENGTH:
        raise ValidationError(
            "Réaction invalide.",
            details={"max_length": EMOJI_MAX_LENGTH},
        )
    return emoji


def _advance_status(message: Message) -> dict | None:
    """FSM step implied by the current number of readers, if any."""
    target = status_for_reader_count(MessageRepository.reader_count(message.id))
    if target == MessageStatus.READ and can_proceed(message.mark_read):
        message.mark_read()
    elif target == MessageStatus.DELIVERED and can_proceed(message.mark_delivered):
        message.mark_delivered()
    else:
        return None
    return {"status": message.status}


class MessageStore:
    """
    Service for message operations.

    Methods:
        send / post_system_event: create messages and update the aggregate
        mark_read: read receipts and status advance
        add_reaction / remove_reaction / toggle_reaction: reaction sets
        edit / soft_delete / mark_failed: compare-and-swap mutations
        list_messages: cursor pagination
    """

    @staticmethod
    def get(message_id: UUID) -> Message:
        return MessageRepository.get(message_id)

    @classmethod
    def send(
        cls,
        conversation_id: UUID,
        sender_id: UUID,
        type: str = MessageType.TEXT,
        content: str = "",
        attachments: list[dict] | None = None,
        reply_to_id: UUID | None = None,
    ) -> Message:
        """
        Store a new message with status ``sent`` and update the conversation.

        Raises:
            NotFoundError: unknown conversation
            PermissionDeniedError: sender not an active participant, or plain
                member of a group restricted to admins
            ValidationError: empty text, system type, bad attachment, or
                ``reply_to_id`` not in this conversation
        """
        if type not in MessageType.values:
            raise ValidationError("Type de message invalide.", details={"type": type})
        if type == MessageType.SYSTEM:
            raise ValidationError("Les messages système ne peuvent pas être envoyés.")
        content = _clean_content(type, content)
        attachments = _clean_attachments(attachments)

        conversation = ConversationDirectory.get(conversation_id)
        participant = ParticipantRoster.require_participant(conversation.id, sender_id)
        if conversation.is_group and conversation.admin_only_messages and not participant.is_admin:
            raise PermissionDeniedError("Seuls les administrateurs peuvent écrire dans ce groupe.")

        if reply_to_id is not None:
            reply_to = MessageRepository.find(reply_to_id)
            if reply_to is None or reply_to.conversation_id != conversation.id:
                raise ValidationError(
                    "Le message cité n'appartient pas à cette conversation.",
                    details={"reply_to": str(reply_to_id)},
                )

        with transaction.atomic():
            message = MessageRepository.create(
                conversation_id=conversation.id,
                sender_id=sender_id,
                type=type,
                content=content,
                attachments=attachments,
                reply_to_id=reply_to_id,
            )
            ConversationDirectory.update_aggregate_on_send(conversation.id, message)

        logger.debug("Message %s sent in %s by %s", message.id, conversation.id, sender_id)
        return message

    @staticmethod
    def post_system_event(
        conversation_id: UUID,
        actor_id: UUID,
        system_type: str,
        content: str,
        target_id: UUID | None = None,
        value: str = "",
    ) -> Message:
        """Record a membership or presentation event as a system message."""
        if system_type not in SystemEvent.values:
            raise ValidationError("Évènement système inconnu.", details={"system_type": system_type})

        with transaction.atomic():
            message = MessageRepository.create(
                conversation_id=conversation_id,
                sender_id=actor_id,
                type=MessageType.SYSTEM,
                content=content,
                system_type=system_type,
                system_target_id=target_id,
                system_value=value,
            )
            ConversationDirectory.update_aggregate_on_send(conversation_id, message)
        return message

    @classmethod
    def mark_read(
        cls,
        conversation_id: UUID,
        user_id: UUID,
        through_message_id: UUID | None = None,
    ) -> int:
        """
        Record ``user_id`` as reader of every message up to ``through_message_id``.

        The user's own messages are skipped. Each new receipt moves the
        message forward: ``delivered`` at the first reader, ``read`` at
        READ_THRESHOLD readers. Calling again is a no-op.

        Returns the number of receipts recorded by this call.
        """
        conversation = ConversationDirectory.get(conversation_id)
        ParticipantRoster.require_participant(conversation.id, user_id)

        through = None
        if through_message_id is not None:
            through = MessageRepository.find(through_message_id)
            if through is None:
                raise NotFoundError("Message introuvable.", details={"message_id": str(through_message_id)})
            if through.conversation_id != conversation.id:
                raise ValidationError(
                    "Le message n'appartient pas à cette conversation.",
                    details={"message_id": str(through_message_id)},
                )

        recorded = 0
        for message_id in MessageRepository.unread_ids(conversation.id, user_id, up_to=through):
            if not MessageRepository.add_reader(message_id, user_id):
                continue
            recorded += 1
            MessageRepository.update_with_retry(message_id, _advance_status)

        if recorded:
            logger.debug("User %s read %d messages in %s", user_id, recorded, conversation.id)
        return recorded

    @staticmethod
    def _reaction_target(message_id: UUID, user_id: UUID) -> Message:
        message = MessageRepository.get(message_id)
        ParticipantRoster.require_participant(message.conversation_id, user_id)
        return message

    @classmethod
    def add_reaction(cls, message_id: UUID, user_id: UUID, emoji: str) -> bool:
        """
        Add the user's ``emoji`` reaction. Idempotent.

        Returns True if the reaction was added by this call.
        """
        emoji = _clean_emoji(emoji)
        message = cls._reaction_target(message_id, user_id)
        if message.is_deleted:
            raise InvalidOperationError("Impossible de réagir à un message supprimé.")
        return MessageRepository.add_reaction(message.id, user_id, emoji)

    @classmethod
    def remove_reaction(cls, message_id: UUID, user_id: UUID, emoji: str) -> bool:
        """Remove the user's ``emoji`` reaction. Returns True if one was removed."""
        emoji = _clean_emoji(emoji)
        message = cls._reaction_target(message_id, user_id)
        return MessageRepository.remove_reaction(message.id, user_id, emoji)

    @classmethod
    def toggle_reaction(cls, message_id: UUID, user_id: UUID, emoji: str) -> bool:
        """Add the reaction if absent, remove it if present. Returns True if added."""
        if cls.remove_reaction(message_id, user_id, emoji):
            return False
        return cls.add_reaction(message_id, user_id, emoji)

    @classmethod
    def edit(cls, message_id: UUID, editor_id: UUID, new_content: str) -> Message:
        """
        Replace a message's content. Sender only.

        ``is_edited`` and ``edited_at`` are only set when the content changes.

        Raises:
            NotOwnerError: editor is not the sender
            InvalidOperationError: deleted or system message
            ValidationError: empty content on a text message
        """
        message = MessageRepository.get(message_id)
        if str(message.sender_id) != str(editor_id):
            raise NotOwnerError("Seul l'auteur du message peut le modifier.")
        if message.is_system:
            raise InvalidOperationError("Un message système ne peut pas être modifié.")
        if message.is_deleted:
            raise InvalidOperationError("Un message supprimé ne peut pas être modifié.")
        content = _clean_content(message.type, new_content)

        def apply_edit(current: Message) -> dict | None:
            if current.is_deleted:
                raise InvalidOperationError("Un message supprimé ne peut pas être modifié.")
            if current.content == content:
                return None
            return {"content": content, "is_edited": True, "edited_at": timezone.now()}

        message, changed = MessageRepository.update_with_retry(message.id, apply_edit)
        if changed:
            ConversationRepository.refresh_last_message_content(message.conversation_id, message)
            logger.debug("Message %s edited by %s", message.id, editor_id)
        return message

    @classmethod
    def soft_delete(cls, message_id: UUID, actor_id: UUID) -> Message:
        """
        Soft-delete a message. Repeat deletes are no-ops.

        Allowed for the sender and for active admins of the conversation.
        If it was the conversation's last message, the cached text becomes
        the deletion placeholder.
        """
        message = MessageRepository.get(message_id)
        if str(message.sender_id) != str(actor_id):
            ParticipantRoster.require_admin(message.conversation_id, actor_id)

        def apply_delete(current: Message) -> dict | None:
            if current.is_deleted:
                return None
            return {"is_deleted": True, "deleted_at": timezone.now(), "deleted_by_id": actor_id}

        message, changed = MessageRepository.update_with_retry(message.id, apply_delete)
        if changed:
            ConversationRepository.refresh_last_message_content(message.conversation_id, message)
            logger.info("Message %s deleted by %s", message.id, actor_id)
        return message

    @staticmethod
    def mark_failed(message_id: UUID) -> Message:
        """
        Flag a stored message whose transport failed.

        Raises:
            InvalidOperationError: the message already moved past ``sent``
        """

        def apply_failure(current: Message) -> dict | None:
            if current.status == MessageStatus.FAILED:
                return None
            if not can_proceed(current.mark_failed):
                raise InvalidOperationError(
                    "Seul un message envoyé peut être marqué en échec.",
                    details={"status": current.status},
                )
            current.mark_failed()
            return {"status": current.status}

        message, changed = MessageRepository.update_with_retry(message_id, apply_failure)
        if changed:
            logger.warning("Message %s marked as failed", message.id)
        return message

    @staticmethod
    def list_messages(
        conversation_id: UUID,
        user_id: UUID,
        cursor: UUID | None = None,
        limit: int | None = None,
    ) -> MessagePage:
        """
        Reverse-chronological page of a conversation's messages.

        ``cursor`` is the id of the last message of the previous page.
        """
        if limit is None:
            limit = settings.CHAT_MESSAGE_PAGE_SIZE
        max_limit = settings.CHAT_MESSAGE_PAGE_SIZE_MAX
        if not 1 <= limit <= max_limit:
            raise ValidationError(
                "Taille de page invalide.",
                details={"min": 1, "max": max_limit},
            )

        conversation = ConversationDirectory.get(conversation_id)
        ParticipantRoster.require_participant(conversation.id, user_id)

        cursor_message = None
        if cursor is not None:
            cursor_message = MessageRepository.find(cursor)
            if cursor_message is None or cursor_message.conversation_id != conversation.id:
                raise ValidationError("Curseur invalide.", details={"cursor": str(cursor)})

        messages = MessageRepository.page(conversation.id, cursor_message, limit)
        has_more = len(messages) > limit
        messages = messages[:limit]
        return MessagePage(
            messages=messages,
            next_cursor=messages[-1].id if has_more else None,
            has_more=has_more,
        )

    @staticmethod
    def reactions_of(message: Message) -> dict[str, list[UUID]]:
        """Emoji to reacting user ids. Emojis nobody uses any more are absent."""
        reactions: dict[str, list[UUID]] = {}
        for reaction in sorted(message.reactions.all(), key=lambda r: (r.created, str(r.id))):
            reactions.setdefault(reaction.emoji, []).append(reaction.user_id)
        return reactions

    @staticmethod
    def readers_of(message: Message) -> list[UUID]:
        return [read.user_id for read in sorted(message.reads.all(), key=lambda r: (r.created, str(r.id)))]
