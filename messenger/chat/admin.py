from django.contrib import admin

from .models import Conversation
from .models import Message
from .models import MessageAttachment
from .models import Participant


class ParticipantInline(admin.TabularInline):
    model = Participant
    extra = 0
    fields = ["user", "role", "is_active", "joined_at", "left_at", "muted", "mute_until"]
    readonly_fields = ["joined_at", "left_at"]
    raw_id_fields = ["user"]


class MessageAttachmentInline(admin.TabularInline):
    model = MessageAttachment
    extra = 0
    fields = ["position", "name", "url", "mime_type", "size"]


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = ["id", "name", "type", "message_count", "last_message_at", "created"]
    list_filter = ["type", "is_public", "created"]
    search_fields = ["name", "direct_key", "participants__user__email"]
    readonly_fields = [
        "id",
        "direct_key",
        "message_count",
        "last_message",
        "last_message_content",
        "last_message_at",
        "created",
        "modified",
    ]
    inlines = [ParticipantInline]


@admin.register(Participant)
class ParticipantAdmin(admin.ModelAdmin):
    list_display = ["id", "conversation", "user", "role", "is_active", "joined_at"]
    list_filter = ["role", "is_active"]
    search_fields = ["user__email", "nickname"]
    raw_id_fields = ["conversation", "user"]
    readonly_fields = ["id", "created", "modified"]


@admin.register(Message)
class MessageAdmin(admin.ModelAdmin):
    list_display = ["id", "conversation", "sender", "type", "status", "content_preview", "is_deleted", "created"]
    list_filter = ["type", "status", "is_deleted", "created"]
    search_fields = ["content", "sender__email"]
    raw_id_fields = ["conversation", "sender", "reply_to", "deleted_by", "system_target"]
    readonly_fields = ["id", "status", "version", "created", "modified"]
    inlines = [MessageAttachmentInline]

    @admin.display(description="Content")
    def content_preview(self, obj):
        return obj.content[:50] + "..." if len(obj.content) > 50 else obj.content
