"""
Chat service layer.

Usage:
    from messenger.chat.services import ConversationDirectory, MessageStore

    conversation = ConversationDirectory.resolve_or_create_direct(alice.id, bob.id)
    MessageStore.send(conversation.id, alice.id, content="hi")
"""

from messenger.chat.services.directory import ConversationDirectory
from messenger.chat.services.messages import MessagePage
from messenger.chat.services.messages import MessageStore
from messenger.chat.services.roster import ParticipantRoster
from messenger.chat.services.unread import UnreadCounter

__all__ = [
    "ConversationDirectory",
    "MessagePage",
    "MessageStore",
    "ParticipantRoster",
    "UnreadCounter",
]
