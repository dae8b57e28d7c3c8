"""
Message API controller: reactions, edits and deletion of a single message.

Sending and listing live under the conversation routes.
"""

from uuid import UUID

from django.http import HttpRequest
from ninja_extra import api_controller
from ninja_extra import http_delete
from ninja_extra import http_patch
from ninja_extra import http_put

from messenger.chat.models import Message
from messenger.chat.repositories import MessageRepository
from messenger.chat.schemas import AttachmentSchema
from messenger.chat.schemas import EditMessageSchema
from messenger.chat.schemas import MessageSchema
from messenger.chat.schemas import ReactionToggleSchema
from messenger.chat.schemas import ReplyPreviewSchema
from messenger.chat.schemas import UserSummarySchema
from messenger.chat.services import MessageStore
from messenger.core.api import BaseAPI
from messenger.core.api import IsAuthenticated
from messenger.core.exceptions import ErrorSchema
from messenger.users import identity
from messenger.users.models import User

ERROR_RESPONSES = {
    400: ErrorSchema,
    401: ErrorSchema,
    403: ErrorSchema,
    404: ErrorSchema,
    409: ErrorSchema,
}


def user_to_summary(user: User) -> UserSummarySchema:
    """Convert a User to UserSummarySchema."""
    return UserSummarySchema(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        display_name=identity.display_name(user),
        avatar_url=user.avatar_url,
    )


def message_to_schema(message: Message) -> MessageSchema:
    """Convert a Message to MessageSchema, redacting deleted messages."""
    reply_to = None
    if message.reply_to is not None:
        reply_to = ReplyPreviewSchema(
            id=message.reply_to.id,
            sender_id=message.reply_to.sender_id,
            content=message.reply_to.preview,
            is_deleted=message.reply_to.is_deleted,
        )

    if message.is_deleted:
        attachments = []
        reactions = {}
    else:
        attachments = [
            AttachmentSchema(
                url=attachment.url,
                name=attachment.name,
                size=attachment.size,
                mime_type=attachment.mime_type,
                thumbnail_url=attachment.thumbnail_url,
                duration=attachment.duration,
            )
            for attachment in message.attachments.all()
        ]
        reactions = MessageStore.reactions_of(message)

    return MessageSchema(
        id=message.id,
        created=message.created,
        conversation_id=message.conversation_id,
        sender=user_to_summary(message.sender),
        type=message.type,
        content=message.display_content,
        attachments=attachments,
        reply_to=reply_to,
        status=message.status,
        is_edited=message.is_edited,
        edited_at=message.edited_at,
        is_deleted=message.is_deleted,
        deleted_at=message.deleted_at,
        system_type=message.system_type,
        system_target_id=message.system_target_id,
        system_value=message.system_value,
        is_read_by=MessageStore.readers_of(message),
        reactions=reactions,
    )


def load_message(message_id: UUID) -> Message:
    """Re-read a message with everything needed to render it."""
    return MessageRepository.with_relations(Message.objects.filter(id=message_id)).get()


@api_controller("/chat/messages", tags=["Messages"], permissions=[IsAuthenticated])
class MessageController(BaseAPI):
    """API endpoints acting on a single message."""

    @http_put(
        "/{uuid:message_id}/reactions",
        response={200: MessageSchema, **ERROR_RESPONSES},
        url_name="chat_message_reaction_toggle",
    )
    def toggle_reaction(self, request: HttpRequest, message_id: UUID, data: ReactionToggleSchema):
        """Add the caller's reaction, or remove it if already present. Returns the message."""
        MessageStore.toggle_reaction(message_id, request.user.id, data.emoji)
        return 200, message_to_schema(load_message(message_id))

    @http_patch(
        "/{uuid:message_id}",
        response={200: MessageSchema, **ERROR_RESPONSES},
        url_name="chat_message_edit",
    )
    def edit_message(self, request: HttpRequest, message_id: UUID, data: EditMessageSchema):
        """Edit one of the caller's messages."""
        MessageStore.edit(message_id, request.user.id, data.content)
        return 200, message_to_schema(load_message(message_id))

    @http_delete(
        "/{uuid:message_id}",
        response={204: None, **ERROR_RESPONSES},
        url_name="chat_message_delete",
    )
    def delete_message(self, request: HttpRequest, message_id: UUID):
        """Soft-delete a message (sender or conversation admin)."""
        MessageStore.soft_delete(message_id, request.user.id)
        return 204, None
