from .base import ContactRecord, ConversationRecord, MessageRecord, MessagingBackend
from .http import HttpMessagingBackend
from .memory import InMemoryMessagingBackend

__all__ = [
    "ContactRecord",
    "ConversationRecord",
    "HttpMessagingBackend",
    "InMemoryMessagingBackend",
    "MessageRecord",
    "MessagingBackend",
]
