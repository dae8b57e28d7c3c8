"""
Conversation API controller.
"""

from uuid import UUID

from django.http import HttpRequest
from ninja_extra import api_controller
from ninja_extra import http_delete
from ninja_extra import http_get
from ninja_extra import http_patch
from ninja_extra import http_post
from ninja_extra import http_put

from messenger.chat.api.messages import ERROR_RESPONSES
from messenger.chat.api.messages import load_message
from messenger.chat.api.messages import message_to_schema
from messenger.chat.api.messages import user_to_summary
from messenger.chat.models import Conversation
from messenger.chat.models import Participant
from messenger.chat.schemas import ArchiveStateSchema
from messenger.chat.schemas import ConversationSchema
from messenger.chat.schemas import DirectConversationCreateSchema
from messenger.chat.schemas import GroupCreateSchema
from messenger.chat.schemas import GroupUpdateSchema
from messenger.chat.schemas import MarkReadSchema
from messenger.chat.schemas import MessagePageSchema
from messenger.chat.schemas import MessageSchema
from messenger.chat.schemas import ParticipantAddSchema
from messenger.chat.schemas import ParticipantSchema
from messenger.chat.schemas import PinCreateSchema
from messenger.chat.schemas import PinnedMessagesSchema
from messenger.chat.schemas import PreferencesUpdateSchema
from messenger.chat.schemas import RoleUpdateSchema
from messenger.chat.schemas import SendMessageSchema
from messenger.chat.schemas import SettingsSchema
from messenger.chat.services import ConversationDirectory
from messenger.chat.services import MessageStore
from messenger.chat.services import ParticipantRoster
from messenger.chat.services import UnreadCounter
from messenger.core.api import BaseAPI
from messenger.core.api import IsAuthenticated
from messenger.core.schemas import CountSchema


def participant_to_schema(participant: Participant) -> ParticipantSchema:
    """Convert a Participant to ParticipantSchema."""
    return ParticipantSchema(
        user=user_to_summary(participant.user),
        role=participant.role,
        joined_at=participant.joined_at,
        nickname=participant.nickname,
        muted=participant.muted,
        mute_until=participant.mute_until,
    )


def conversation_to_schema(
    conversation: Conversation,
    user_id: UUID,
    unread_count: int | None = None,
) -> ConversationSchema:
    """Convert a Conversation to ConversationSchema for ``user_id``."""
    participants = sorted(
        (p for p in conversation.participants.all() if p.is_active),
        key=lambda p: (p.joined_at, p.created),
    )
    pins = sorted(conversation.pins.all(), key=lambda pin: (pin.created, str(pin.id)))
    if unread_count is None:
        unread_count = UnreadCounter.unread_count(conversation.id, user_id)

    return ConversationSchema(
        id=conversation.id,
        created=conversation.created,
        modified=conversation.modified,
        type=conversation.type,
        name=conversation.name,
        description=conversation.description,
        photo_url=conversation.photo_url,
        photo_thumbnail_url=conversation.photo_thumbnail_url,
        settings=SettingsSchema(
            is_public=conversation.is_public,
            allow_invites=conversation.allow_invites,
            admin_only_messages=conversation.admin_only_messages,
            max_participants=conversation.max_participants,
        ),
        participants=[participant_to_schema(p) for p in participants],
        last_message_id=conversation.last_message_id,
        last_message_content=conversation.last_message_content,
        last_message_at=conversation.last_message_at,
        message_count=conversation.message_count,
        unread_count=unread_count,
        is_archived=any(user.id == user_id for user in conversation.archived_by.all()),
        pinned_message_ids=[pin.message_id for pin in pins],
    )


@api_controller("/chat/conversations", tags=["Conversations"], permissions=[IsAuthenticated])
class ConversationController(BaseAPI):
    """API endpoints for conversations, their participants and messages."""

    # Conversations

    @http_get(
        "",
        response={200: list[ConversationSchema], **ERROR_RESPONSES},
        url_name="chat_conversations_list",
    )
    def list_conversations(self, request: HttpRequest, include_archived: bool = False):
        """List the current user's conversations, most recent activity first."""
        conversations = ConversationDirectory.list_for_user(request.user.id, include_archived=include_archived)
        counts = UnreadCounter.unread_counts([c.id for c in conversations], request.user.id)
        return 200, [conversation_to_schema(c, request.user.id, counts[c.id]) for c in conversations]

    @http_post(
        "/direct",
        response={200: ConversationSchema, **ERROR_RESPONSES},
        url_name="chat_conversations_direct",
    )
    def resolve_direct(self, request: HttpRequest, data: DirectConversationCreateSchema):
        """Return the direct conversation with another user, creating it if needed."""
        conversation = ConversationDirectory.resolve_or_create_direct(request.user.id, data.user_id)
        return 200, conversation_to_schema(conversation, request.user.id)

    @http_post(
        "/groups",
        response={201: ConversationSchema, **ERROR_RESPONSES},
        url_name="chat_conversations_group_create",
    )
    def create_group(self, request: HttpRequest, data: GroupCreateSchema):
        """Create a group owned by the current user."""
        conversation = ConversationDirectory.create_group(
            creator_id=request.user.id,
            participant_ids=data.participant_ids,
            name=data.name,
            settings=data.settings.model_dump() if data.settings else None,
            description=data.description,
            photo_url=data.photo_url,
            photo_thumbnail_url=data.photo_thumbnail_url,
        )
        return 201, conversation_to_schema(conversation, request.user.id)

    @http_get(
        "/{uuid:conversation_id}",
        response={200: ConversationSchema, **ERROR_RESPONSES},
        url_name="chat_conversation_detail",
    )
    def get_conversation(self, request: HttpRequest, conversation_id: UUID):
        """Get one of the current user's conversations."""
        conversation = ConversationDirectory.get_for_user(conversation_id, request.user.id)
        return 200, conversation_to_schema(conversation, request.user.id)

    @http_patch(
        "/{uuid:conversation_id}",
        response={200: ConversationSchema, **ERROR_RESPONSES},
        url_name="chat_conversation_update",
    )
    def update_group(self, request: HttpRequest, conversation_id: UUID, data: GroupUpdateSchema):
        """Rename a group, change its presentation or its settings (admins)."""
        conversation = ConversationDirectory.update_group(
            conversation_id,
            request.user.id,
            name=data.name,
            description=data.description,
            photo_url=data.photo_url,
            photo_thumbnail_url=data.photo_thumbnail_url,
            settings=data.settings.model_dump() if data.settings else None,
        )
        return 200, conversation_to_schema(conversation, request.user.id)

    # Participants

    @http_post(
        "/{uuid:conversation_id}/participants",
        response={201: ParticipantSchema, **ERROR_RESPONSES},
        url_name="chat_participants_add",
    )
    def add_participant(self, request: HttpRequest, conversation_id: UUID, data: ParticipantAddSchema):
        """Add a user to a group."""
        participant = ConversationDirectory.add_participant(
            conversation_id,
            data.user_id,
            role=data.role,
            actor_id=request.user.id,
        )
        return 201, participant_to_schema(participant)

    @http_delete(
        "/{uuid:conversation_id}/participants/{uuid:user_id}",
        response={204: None, **ERROR_RESPONSES},
        url_name="chat_participants_remove",
    )
    def remove_participant(self, request: HttpRequest, conversation_id: UUID, user_id: UUID):
        """Remove a user from a group, or leave it when ``user_id`` is the caller."""
        ConversationDirectory.remove_participant(conversation_id, user_id, actor_id=request.user.id)
        return 204, None

    @http_put(
        "/{uuid:conversation_id}/participants/{uuid:user_id}/role",
        response={200: ParticipantSchema, **ERROR_RESPONSES},
        url_name="chat_participants_role",
    )
    def set_role(self, request: HttpRequest, conversation_id: UUID, user_id: UUID, data: RoleUpdateSchema):
        """Promote or demote a participant (owner only)."""
        participant = ParticipantRoster.set_role(conversation_id, request.user.id, user_id, data.role)
        return 200, participant_to_schema(participant)

    @http_put(
        "/{uuid:conversation_id}/preferences",
        response={200: ParticipantSchema, **ERROR_RESPONSES},
        url_name="chat_preferences_update",
    )
    def update_preferences(self, request: HttpRequest, conversation_id: UUID, data: PreferencesUpdateSchema):
        """Update the caller's nickname and notification settings."""
        participant = ParticipantRoster.update_preferences(
            conversation_id,
            request.user.id,
            nickname=data.nickname,
            muted=data.muted,
            mute_until=data.mute_until,
        )
        return 200, participant_to_schema(participant)

    # Archive & pins

    @http_post(
        "/{uuid:conversation_id}/archive",
        response={200: ArchiveStateSchema, **ERROR_RESPONSES},
        url_name="chat_conversation_archive",
    )
    def archive(self, request: HttpRequest, conversation_id: UUID):
        """Hide the conversation for the caller."""
        ConversationDirectory.archive(conversation_id, request.user.id)
        return 200, ArchiveStateSchema(is_archived=True)

    @http_delete(
        "/{uuid:conversation_id}/archive",
        response={200: ArchiveStateSchema, **ERROR_RESPONSES},
        url_name="chat_conversation_unarchive",
    )
    def unarchive(self, request: HttpRequest, conversation_id: UUID):
        """Show the conversation again for the caller."""
        ConversationDirectory.unarchive(conversation_id, request.user.id)
        return 200, ArchiveStateSchema(is_archived=False)

    @http_post(
        "/{uuid:conversation_id}/pins",
        response={200: PinnedMessagesSchema, **ERROR_RESPONSES},
        url_name="chat_pins_add",
    )
    def pin_message(self, request: HttpRequest, conversation_id: UUID, data: PinCreateSchema):
        """Pin a message of the conversation."""
        pinned = ConversationDirectory.pin_message(conversation_id, data.message_id, request.user.id)
        return 200, PinnedMessagesSchema(pinned_message_ids=pinned)

    @http_delete(
        "/{uuid:conversation_id}/pins/{uuid:message_id}",
        response={200: PinnedMessagesSchema, **ERROR_RESPONSES},
        url_name="chat_pins_remove",
    )
    def unpin_message(self, request: HttpRequest, conversation_id: UUID, message_id: UUID):
        """Unpin a message."""
        pinned = ConversationDirectory.unpin_message(conversation_id, message_id, request.user.id)
        return 200, PinnedMessagesSchema(pinned_message_ids=pinned)

    # Messages

    @http_get(
        "/{uuid:conversation_id}/unread-count",
        response={200: CountSchema, **ERROR_RESPONSES},
        url_name="chat_unread_count",
    )
    def unread_count(self, request: HttpRequest, conversation_id: UUID):
        """Number of messages the caller has not read yet."""
        conversation = ConversationDirectory.get_for_user(conversation_id, request.user.id)
        return 200, CountSchema(count=UnreadCounter.unread_count(conversation.id, request.user.id))

    @http_post(
        "/{uuid:conversation_id}/read",
        response={200: CountSchema, **ERROR_RESPONSES},
        url_name="chat_mark_read",
    )
    def mark_read(self, request: HttpRequest, conversation_id: UUID, data: MarkReadSchema | None = None):
        """
        Mark messages as read; returns how many receipts were recorded.
        Without a body, every unread message of the conversation is marked.
        """
        up_to_message_id = data.up_to_message_id if data is not None else None
        count = MessageStore.mark_read(conversation_id, request.user.id, up_to_message_id)
        return 200, CountSchema(count=count)

    @http_get(
        "/{uuid:conversation_id}/messages",
        response={200: MessagePageSchema, **ERROR_RESPONSES},
        url_name="chat_messages_list",
    )
    def list_messages(
        self,
        request: HttpRequest,
        conversation_id: UUID,
        cursor: UUID | None = None,
        limit: int | None = None,
    ):
        """
        List messages, newest first.
        Pass the previous page's ``next_cursor`` as ``cursor`` to go further back.
        """
        page = MessageStore.list_messages(conversation_id, request.user.id, cursor=cursor, limit=limit)
        return 200, MessagePageSchema(
            messages=[message_to_schema(m) for m in page.messages],
            next_cursor=page.next_cursor,
            has_more=page.has_more,
        )

    @http_post(
        "/{uuid:conversation_id}/messages",
        response={201: MessageSchema, **ERROR_RESPONSES},
        url_name="chat_messages_send",
    )
    def send_message(self, request: HttpRequest, conversation_id: UUID, data: SendMessageSchema):
        """Send a message to a conversation."""
        message = MessageStore.send(
            conversation_id,
            request.user.id,
            type=data.type,
            content=data.content,
            attachments=[attachment.model_dump() for attachment in data.attachments],
            reply_to_id=data.reply_to,
        )
        return 201, message_to_schema(load_message(message.id))
