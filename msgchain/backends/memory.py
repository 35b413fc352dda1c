from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .base import ContactRecord, ConversationRecord, MessageRecord


class InMemoryMessagingBackend:
    """Process-local data layer used by the demo CLI and the test-suite."""

    def __init__(
        self,
        users: Optional[List[ContactRecord]] = None,
        conversations: Optional[List[ConversationRecord]] = None,
        messages: Optional[List[MessageRecord]] = None,
    ) -> None:
        self._users: Dict[str, ContactRecord] = {user.id: user for user in users or []}
        self._conversations: Dict[str, ConversationRecord] = {
            conversation.id: conversation for conversation in conversations or []
        }
        self._messages: Dict[str, List[MessageRecord]] = {}
        for message in sorted(messages or [], key=lambda item: item.created_at):
            self._messages.setdefault(message.conversation_id, []).append(message)
        self._lock = asyncio.Lock()

    @classmethod
    def from_seed(cls, seed: Dict[str, Any]) -> "InMemoryMessagingBackend":
        users = [ContactRecord.from_dict(item) for item in seed.get("users", [])]
        conversations: List[ConversationRecord] = []
        messages: List[MessageRecord] = []
        for item in seed.get("conversations", []):
            conversation = ConversationRecord.from_dict(item)
            conversations.append(conversation)
            messages.extend(
                MessageRecord.from_dict(message, conversation.id) for message in item.get("messages", [])
            )
        return cls(users=users, conversations=conversations, messages=messages)

    @classmethod
    def from_json_file(cls, path: str) -> "InMemoryMessagingBackend":
        with open(path, "r", encoding="utf-8") as handle:
            return cls.from_seed(json.load(handle))

    @property
    def all_messages(self) -> List[MessageRecord]:
        return [message for history in self._messages.values() for message in history]

    async def get_user(self, user_id: str) -> Optional[ContactRecord]:
        return self._users.get(user_id)

    async def list_contacts(self, user_id: str) -> List[ContactRecord]:
        last_seen: Dict[str, datetime] = {}
        for conversation in self._conversations.values():
            if not conversation.is_participant(user_id):
                continue
            history = self._messages.get(conversation.id, [])
            if not history:
                continue
            latest = history[-1].created_at
            for participant in conversation.participant_ids:
                if participant != user_id and latest > last_seen.get(participant, datetime.min.replace(tzinfo=timezone.utc)):
                    last_seen[participant] = latest
        contacts = []
        for user in self._users.values():
            if user.id == user_id:
                continue
            seen = last_seen.get(user.id)
            contacts.append(replace(user, is_recent=seen is not None, last_contact=seen))
        return contacts

    async def list_conversations(self, user_id: str) -> List[ConversationRecord]:
        conversations = [
            self._with_summary(conversation)
            for conversation in self._conversations.values()
            if conversation.is_participant(user_id)
        ]
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(conversations, key=lambda item: item.updated_at or epoch, reverse=True)

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        conversation = self._conversations.get(conversation_id)
        return self._with_summary(conversation) if conversation else None

    async def find_direct_conversation(self, user_id: str, other_id: str) -> Optional[ConversationRecord]:
        wanted = {user_id, other_id}
        for conversation in self._conversations.values():
            if conversation.type == "direct" and set(conversation.participant_ids) == wanted:
                return self._with_summary(conversation)
        return None

    async def create_conversation(
        self,
        creator_id: str,
        participant_ids: List[str],
        conversation_type: str = "direct",
        title: Optional[str] = None,
    ) -> ConversationRecord:
        participants = list(dict.fromkeys([creator_id, *participant_ids]))
        now = datetime.now(timezone.utc)
        conversation = ConversationRecord(
            id=f"conv_{uuid.uuid4().hex[:12]}",
            type=conversation_type,
            participant_ids=participants,
            title=title,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages.setdefault(conversation.id, [])
        return conversation

    async def list_messages(self, conversation_id: str, limit: int = 50) -> List[MessageRecord]:
        history = self._messages.get(conversation_id, [])
        return list(history[-limit:]) if limit > 0 else []

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str = "text",
        media_url: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> MessageRecord:
        if conversation_id not in self._conversations:
            raise KeyError(f"Conversation {conversation_id} not found")
        message = MessageRecord(
            id=f"msg_{uuid.uuid4().hex[:12]}",
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            created_at=datetime.now(timezone.utc),
            message_type=message_type,
            media_url=media_url,
            caption=caption,
        )
        async with self._lock:
            self._messages.setdefault(conversation_id, []).append(message)
            conversation = self._conversations[conversation_id]
            self._conversations[conversation_id] = replace(conversation, updated_at=message.created_at)
        return message

    async def aclose(self) -> None:
        return None

    def _with_summary(self, conversation: ConversationRecord) -> ConversationRecord:
        history = self._messages.get(conversation.id, [])
        if not history:
            return conversation
        last = history[-1]
        return replace(conversation, last_message=last, updated_at=max(conversation.updated_at or last.created_at, last.created_at))
