"""
Chat models for conversations and messages.

Contains:
- Conversation: direct (one per user pair) or group conversation, with cached
  last-message aggregate
- Participant: a user's membership record in a conversation
- Message: a message with its delivery status state machine
- MessageAttachment, MessageRead, MessageReaction, PinnedMessage: child
  records, each written through its own atomic operation
"""

from django.conf import settings
from django.db import models
from django.utils import timezone
from django.utils.translation import gettext_lazy as _
from django_fsm import FSMField
from django_fsm import transition

from messenger.core.models import BaseModel

DIRECT_CONVERSATION_NAME = "Direct Message"
DELETED_MESSAGE_PLACEHOLDER = "Ce message a été supprimé"

# Number of distinct readers after which a message counts as "read".
# Applies to groups of any size.
READ_THRESHOLD = 2


class ConversationType(models.TextChoices):
    """Kinds of conversation. Immutable once created."""

    DIRECT = "direct", _("Direct")
    GROUP = "group", _("Groupe")


class ParticipantRole(models.TextChoices):
    """Roles of a participant inside a conversation."""

    MEMBER = "member", _("Membre")
    ADMIN = "admin", _("Administrateur")
    OWNER = "owner", _("Propriétaire")


class MessageType(models.TextChoices):
    """Content types of a message."""

    TEXT = "text", _("Texte")
    IMAGE = "image", _("Image")
    FILE = "file", _("Fichier")
    AUDIO = "audio", _("Audio")
    VIDEO = "video", _("Vidéo")
    SYSTEM = "system", _("Système")


class MessageStatus(models.TextChoices):
    """Delivery status choices for messages (FSM states)."""

    SENDING = "sending", _("Envoi")  # Client-side only, never stored
    SENT = "sent", _("Envoyé")
    DELIVERED = "delivered", _("Distribué")
    READ = "read", _("Lu")
    FAILED = "failed", _("Échec")


class SystemEvent(models.TextChoices):
    """Membership and presentation events reported as system messages."""

    USER_JOINED = "user_joined", _("Arrivée")
    USER_LEFT = "user_left", _("Départ")
    GROUP_CREATED = "group_created", _("Création du groupe")
    NAME_CHANGED = "name_changed", _("Changement de nom")
    PHOTO_CHANGED = "photo_changed", _("Changement de photo")


# Cached last-message text for messages without meaningful text content
MEDIA_PREVIEWS = {
    MessageType.IMAGE: "📷 Photo",
    MessageType.FILE: "📎 Fichier",
    MessageType.AUDIO: "🎤 Audio",
    MessageType.VIDEO: "🎬 Vidéo",
}


def direct_key_for(user_a_id, user_b_id) -> str:
    """Canonical key of the direct conversation between two users."""
    return "_".join(sorted([str(user_a_id), str(user_b_id)]))


def status_for_reader_count(reader_count: int) -> str | None:
    """
    Status a message should reach given how many users have read it.

    Returns None while nobody has read it.
    """
    if reader_count >= READ_THRESHOLD:
        return MessageStatus.READ
    if reader_count >= 1:
        return MessageStatus.DELIVERED
    return None


class Conversation(BaseModel):
    """
    A conversation between two or more users.

    Direct conversations are unique per pair of users through ``direct_key``;
    group conversations carry a name, presentation fields and settings.
    ``message_count`` and the ``last_message*`` fields are aggregates kept up
    to date by atomic updates on every send, never by saving the instance.
    """

    type = models.CharField(
        max_length=10,
        choices=ConversationType.choices,
        default=ConversationType.DIRECT,
    )
    name = models.CharField(max_length=255, blank=True, default="")
    description = models.CharField(max_length=500, blank=True, default="")
    photo_url = models.CharField(max_length=500, blank=True, default="")
    photo_thumbnail_url = models.CharField(max_length=500, blank=True, default="")

    # Settings
    is_public = models.BooleanField(default=False)
    allow_invites = models.BooleanField(default=True)
    admin_only_messages = models.BooleanField(default=False)
    max_participants = models.PositiveIntegerField(default=1000)

    # Aggregates
    last_message = models.ForeignKey(
        "Message",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    last_message_content = models.TextField(blank=True, default="")
    last_message_at = models.DateTimeField(null=True, blank=True, db_index=True)
    message_count = models.PositiveIntegerField(default=0)

    # Only set for direct conversations
    direct_key = models.CharField(max_length=80, unique=True, null=True, blank=True)

    archived_by = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        related_name="archived_conversations",
        blank=True,
    )
    pinned_messages = models.ManyToManyField(
        "Message",
        through="PinnedMessage",
        through_fields=("conversation", "message"),
        related_name="+",
        blank=True,
    )

    class Meta:
        ordering = ["-created"]
        constraints = [
            # direct_key is defined for direct conversations only
            models.CheckConstraint(
                condition=(
                    models.Q(type="direct", direct_key__isnull=False)
                    | models.Q(type="group", direct_key__isnull=True)
                ),
                name="conversation_direct_key_matches_type",
            ),
        ]

    def __str__(self):
        if self.is_group:
            return self.name
        return f"{self.name} ({self.direct_key})"

    @property
    def is_direct(self) -> bool:
        return self.type == ConversationType.DIRECT

    @property
    def is_group(self) -> bool:
        return self.type == ConversationType.GROUP


class Participant(BaseModel):
    """
    A user's membership in a conversation.

    Leaving does not delete the row: ``is_active`` goes False and ``left_at``
    is stamped, so that history and roles survive a later re-join.
    """

    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name="participants",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="conversation_participations",
    )
    role = models.CharField(
        max_length=10,
        choices=ParticipantRole.choices,
        default=ParticipantRole.MEMBER,
    )
    joined_at = models.DateTimeField(default=timezone.now)
    left_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    nickname = models.CharField(max_length=100, blank=True, default="")

    # Notification settings for this conversation
    muted = models.BooleanField(default=False)
    mute_until = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["joined_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["conversation", "user"],
                name="unique_participant_per_conversation",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "is_active"], name="chat_partic_user_id_5e1a9c_idx"),
        ]

    def __str__(self):
        state = "active" if self.is_active else "left"
        return f"{self.user_id} in {self.conversation_id} ({self.role}, {state})"

    @property
    def is_admin(self) -> bool:
        """Admins and the owner can moderate the conversation."""
        return self.role in (ParticipantRole.ADMIN, ParticipantRole.OWNER)


class Message(BaseModel):
    """
    A message in a conversation.

    Uses django-fsm for the delivery status with forward-only transitions:
    - sent: stored by the server (``sending`` only exists client-side)
    - delivered: at least one recipient has read it
    - read: at least READ_THRESHOLD recipients have read it
    - failed: transport failure after the message was stored

    Status, edits and deletion are persisted with compare-and-swap on
    ``version`` by the repository, never with a plain ``save()``.
    """

    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name="messages",
    )
    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="sent_messages",
    )
    type = models.CharField(
        max_length=10,
        choices=MessageType.choices,
        default=MessageType.TEXT,
    )
    content = models.TextField(blank=True, default="")
    reply_to = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="replies",
    )

    # Edit state
    is_edited = models.BooleanField(default=False)
    edited_at = models.DateTimeField(null=True, blank=True)

    # Soft delete
    is_deleted = models.BooleanField(default=False)
    deleted_at = models.DateTimeField(null=True, blank=True)
    deleted_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    # System messages (type=system only)
    system_type = models.CharField(max_length=20, choices=SystemEvent.choices, blank=True, default="")
    system_target = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    system_value = models.CharField(max_length=255, blank=True, default="")

    status = FSMField(
        max_length=20,
        default=MessageStatus.SENT,
        choices=MessageStatus.choices,
    )
    version = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["created"]
        indexes = [
            models.Index(fields=["conversation", "-created"], name="chat_messag_convers_3a7c1e_idx"),
            models.Index(fields=["sender", "-created"], name="chat_messag_sender__8d2f4b_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(status="sending"),
                name="message_status_not_sending",
            ),
            models.CheckConstraint(
                condition=~models.Q(type="text", content=""),
                name="message_text_content_required",
            ),
            models.CheckConstraint(
                condition=~models.Q(reply_to=models.F("id")),
                name="message_reply_not_self",
            ),
        ]

    def __str__(self):
        return f"{self.sender_id}: {self.content[:50]}"

    # FSM Transitions

    @transition(field=status, source=MessageStatus.SENT, target=MessageStatus.DELIVERED)
    def mark_delivered(self):
        """First recipient has read the message."""

    @transition(
        field=status,
        source=[MessageStatus.SENT, MessageStatus.DELIVERED],
        target=MessageStatus.READ,
    )
    def mark_read(self):
        """
        READ_THRESHOLD recipients have read the message.

        Reachable straight from ``sent`` when two receipts land before the
        first status write.
        """

    @transition(field=status, source=MessageStatus.SENT, target=MessageStatus.FAILED)
    def mark_failed(self):
        """Transport reported a delivery failure."""

    # Helper methods

    @property
    def is_system(self) -> bool:
        return self.type == MessageType.SYSTEM

    @property
    def preview(self) -> str:
        """Text cached on the conversation as its last message."""
        if self.is_deleted:
            return DELETED_MESSAGE_PLACEHOLDER
        if self.type in MEDIA_PREVIEWS:
            return MEDIA_PREVIEWS[self.type]
        return self.content

    @property
    def display_content(self) -> str:
        """Content as shown to clients: deleted messages are redacted."""
        return "" if self.is_deleted else self.content


class MessageAttachment(BaseModel):
    """Media reference attached to a message. URLs are opaque strings."""

    message = models.ForeignKey(
        Message,
        on_delete=models.CASCADE,
        related_name="attachments",
    )
    position = models.PositiveSmallIntegerField(default=0)
    url = models.CharField(max_length=500)
    name = models.CharField(max_length=255)
    size = models.PositiveBigIntegerField(null=True, blank=True)
    mime_type = models.CharField(max_length=100, blank=True, default="")
    thumbnail_url = models.CharField(max_length=500, blank=True, default="")
    duration = models.FloatField(null=True, blank=True)  # seconds, audio/video

    class Meta:
        ordering = ["position"]
        constraints = [
            models.UniqueConstraint(
                fields=["message", "position"],
                name="unique_attachment_position",
            ),
        ]

    def __str__(self):
        return f"{self.name} ({self.mime_type})"


class MessageRead(BaseModel):
    """Read receipt: ``user`` has read ``message``. ``created`` is the read time."""

    message = models.ForeignKey(
        Message,
        on_delete=models.CASCADE,
        related_name="reads",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="message_reads",
    )

    class Meta:
        ordering = ["created"]
        constraints = [
            models.UniqueConstraint(
                fields=["message", "user"],
                name="unique_read_receipt",
            ),
        ]

    def __str__(self):
        return f"{self.user_id} read {self.message_id}"


class MessageReaction(BaseModel):
    """One user's use of one emoji on a message."""

    message = models.ForeignKey(
        Message,
        on_delete=models.CASCADE,
        related_name="reactions",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="message_reactions",
    )
    emoji = models.CharField(max_length=32)

    class Meta:
        ordering = ["created"]
        constraints = [
            models.UniqueConstraint(
                fields=["message", "user", "emoji"],
                name="unique_reaction_per_user_emoji",
            ),
        ]

    def __str__(self):
        return f"{self.user_id} reacted {self.emoji} to {self.message_id}"


class PinnedMessage(BaseModel):
    """A message pinned in its conversation. Pins are ordered by ``created``."""

    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name="pins",
    )
    message = models.ForeignKey(
        Message,
        on_delete=models.CASCADE,
        related_name="pins",
    )
    pinned_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    class Meta:
        ordering = ["created"]
        constraints = [
            models.UniqueConstraint(
                fields=["conversation", "message"],
                name="unique_pinned_message",
            ),
        ]

    def __str__(self):
        return f"{self.message_id} pinned in {self.conversation_id}"
