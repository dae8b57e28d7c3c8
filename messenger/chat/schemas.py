"""
Chat API schemas.
"""

from datetime import datetime
from uuid import UUID

from ninja import Field
from ninja import Schema

from messenger.chat.models import MessageType
from messenger.chat.models import ParticipantRole
from messenger.core.schemas import BaseSchema
from messenger.core.schemas import CursorPageSchema


class UserSummarySchema(Schema):
    """Identity fields shown next to participants and senders."""

    id: UUID
    email: str
    first_name: str
    last_name: str
    display_name: str
    avatar_url: str = ""


class ParticipantSchema(Schema):
    """Schema for an active conversation participant."""

    user: UserSummarySchema
    role: str
    joined_at: datetime
    nickname: str = ""
    muted: bool = False
    mute_until: datetime | None = None


class SettingsSchema(Schema):
    """Group settings."""

    is_public: bool
    allow_invites: bool
    admin_only_messages: bool
    max_participants: int


class SettingsUpdateSchema(Schema):
    """Partial group settings. Omitted fields keep their value."""

    is_public: bool | None = None
    allow_invites: bool | None = None
    admin_only_messages: bool | None = None
    max_participants: int | None = None


class ConversationSchema(BaseSchema):
    """Schema for a conversation, as seen by the requesting user."""

    type: str
    name: str
    description: str = ""
    photo_url: str = ""
    photo_thumbnail_url: str = ""
    settings: SettingsSchema
    participants: list[ParticipantSchema]
    last_message_id: UUID | None = None
    last_message_content: str = ""
    last_message_at: datetime | None = None
    message_count: int = 0
    unread_count: int = 0
    is_archived: bool = False
    pinned_message_ids: list[UUID] = []
    modified: datetime


class AttachmentSchema(Schema):
    """Media reference. URLs are opaque strings from the media store."""

    url: str = Field(..., min_length=1, max_length=500)
    name: str = Field(..., min_length=1, max_length=255)
    size: int | None = Field(None, ge=0)
    mime_type: str = ""
    thumbnail_url: str = ""
    duration: float | None = Field(None, ge=0)


class ReplyPreviewSchema(Schema):
    """The message being replied to, reduced to a preview."""

    id: UUID
    sender_id: UUID
    content: str
    is_deleted: bool


class MessageSchema(BaseSchema):
    """Schema for a chat message. Deleted messages come back redacted."""

    conversation_id: UUID
    sender: UserSummarySchema
    type: str
    content: str
    attachments: list[AttachmentSchema] = []
    reply_to: ReplyPreviewSchema | None = None
    status: str
    is_edited: bool = False
    edited_at: datetime | None = None
    is_deleted: bool = False
    deleted_at: datetime | None = None
    system_type: str = ""
    system_target_id: UUID | None = None
    system_value: str = ""
    is_read_by: list[UUID] = []
    reactions: dict[str, list[UUID]] = {}


class MessagePageSchema(CursorPageSchema):
    """One page of messages, newest first."""

    messages: list[MessageSchema]


class DirectConversationCreateSchema(Schema):
    """Schema for resolving the direct conversation with another user."""

    user_id: UUID


class GroupCreateSchema(Schema):
    """Schema for creating a group."""

    name: str
    participant_ids: list[UUID] = []
    description: str = ""
    photo_url: str = ""
    photo_thumbnail_url: str = ""
    settings: SettingsUpdateSchema | None = None


class GroupUpdateSchema(Schema):
    """Schema for updating a group. Omitted fields are left unchanged."""

    name: str | None = None
    description: str | None = None
    photo_url: str | None = None
    photo_thumbnail_url: str | None = None
    settings: SettingsUpdateSchema | None = None


class ParticipantAddSchema(Schema):
    """Schema for adding a participant to a group."""

    user_id: UUID
    role: str = ParticipantRole.MEMBER


class RoleUpdateSchema(Schema):
    """Schema for promoting or demoting a participant."""

    role: str


class PreferencesUpdateSchema(Schema):
    """Schema for the caller's per-conversation preferences."""

    nickname: str | None = None
    muted: bool | None = None
    mute_until: datetime | None = None


class ArchiveStateSchema(Schema):
    """Whether the conversation is hidden for the caller."""

    is_archived: bool


class PinCreateSchema(Schema):
    """Schema for pinning a message."""

    message_id: UUID


class PinnedMessagesSchema(Schema):
    """Pinned message ids in pin order."""

    pinned_message_ids: list[UUID]


class MarkReadSchema(Schema):
    """Schema for marking messages as read, up to and including a message."""

    up_to_message_id: UUID | None = None


class SendMessageSchema(Schema):
    """Schema for sending a message."""

    type: str = MessageType.TEXT
    content: str = ""
    attachments: list[AttachmentSchema] = []
    reply_to: UUID | None = None


class EditMessageSchema(Schema):
    """Schema for editing a message."""

    content: str


class ReactionToggleSchema(Schema):
    """Schema for toggling a reaction."""

    emoji: str

