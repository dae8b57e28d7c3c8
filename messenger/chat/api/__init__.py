"""
Chat API controllers.

- ConversationController: conversations, participants, pins, receipts and
  message history (/api/chat/conversations/)
- MessageController: reactions, edits and deletion (/api/chat/messages/)
"""

from messenger.chat.api.conversations import ConversationController
from messenger.chat.api.messages import MessageController

__all__ = [
    "ConversationController",
    "MessageController",
]
