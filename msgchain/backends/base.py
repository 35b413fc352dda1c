from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def _pick(payload: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return default


@dataclass(frozen=True)
class ContactRecord:
    id: str
    display_name: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    is_recent: bool = False
    last_contact: Optional[datetime] = None

    @property
    def has_complete_profile(self) -> bool:
        return bool(self.display_name and self.email and self.phone_number)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ContactRecord":
        last_contact = _pick(payload, "last_contact", "lastContact")
        return cls(
            id=str(_pick(payload, "id", "uid")),
            display_name=_pick(payload, "display_name", "displayName", "name", default=""),
            email=_pick(payload, "email"),
            phone_number=_pick(payload, "phone_number", "phoneNumber"),
            is_recent=bool(_pick(payload, "is_recent", "isRecent", default=False)),
            last_contact=parse_timestamp(last_contact) if last_contact else None,
        )


@dataclass(frozen=True)
class MessageRecord:
    id: str
    conversation_id: str
    sender_id: str
    content: str
    created_at: datetime
    message_type: str = "text"
    media_url: Optional[str] = None
    caption: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], conversation_id: Optional[str] = None) -> "MessageRecord":
        return cls(
            id=str(_pick(payload, "id")),
            conversation_id=str(_pick(payload, "conversation_id", "conversationId", default=conversation_id)),
            sender_id=str(_pick(payload, "sender_id", "senderId")),
            content=_pick(payload, "content", "text", default=""),
            created_at=parse_timestamp(_pick(payload, "created_at", "createdAt", "timestamp")),
            message_type=_pick(payload, "message_type", "messageType", "type", default="text"),
            media_url=_pick(payload, "media_url", "mediaUrl"),
            caption=_pick(payload, "caption"),
        )


@dataclass(frozen=True)
class ConversationRecord:
    id: str
    type: str
    participant_ids: List[str]
    title: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    unread_count: int = 0
    last_message: Optional[MessageRecord] = None
    topics: List[str] = field(default_factory=list)

    def is_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids

    def display_title(self, names: Dict[str, str], viewer_id: Optional[str] = None) -> str:
        if self.title:
            return self.title
        others = [names.get(pid, pid) for pid in self.participant_ids if pid != viewer_id]
        return ", ".join(others) or "Conversation"

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ConversationRecord":
        created = _pick(payload, "created_at", "createdAt")
        updated = _pick(payload, "updated_at", "updatedAt")
        last_message = _pick(payload, "last_message", "lastMessage")
        conversation_id = str(_pick(payload, "id"))
        return cls(
            id=conversation_id,
            type=_pick(payload, "type", default="direct"),
            participant_ids=[str(pid) for pid in _pick(payload, "participant_ids", "participants", default=[])],
            title=_pick(payload, "title", "name"),
            created_at=parse_timestamp(created) if created else None,
            updated_at=parse_timestamp(updated) if updated else None,
            unread_count=int(_pick(payload, "unread_count", "unreadCount", default=0)),
            last_message=MessageRecord.from_dict(last_message, conversation_id) if last_message else None,
            topics=list(_pick(payload, "topics", default=[])),
        )


class MessagingBackend(Protocol):
    async def get_user(self, user_id: str) -> Optional[ContactRecord]:
        ...

    async def list_contacts(self, user_id: str) -> List[ContactRecord]:
        ...

    async def list_conversations(self, user_id: str) -> List[ConversationRecord]:
        ...

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        ...

    async def find_direct_conversation(self, user_id: str, other_id: str) -> Optional[ConversationRecord]:
        ...

    async def create_conversation(
        self,
        creator_id: str,
        participant_ids: List[str],
        conversation_type: str = "direct",
        title: Optional[str] = None,
    ) -> ConversationRecord:
        ...

    async def list_messages(self, conversation_id: str, limit: int = 50) -> List[MessageRecord]:
        ...

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str = "text",
        media_url: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> MessageRecord:
        ...

    async def aclose(self) -> None:
        ...
