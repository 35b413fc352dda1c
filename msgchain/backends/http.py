from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .base import ContactRecord, ConversationRecord, MessageRecord


logger = logging.getLogger(__name__)


class HttpMessagingBackend:
    """Talks to the messaging app's REST data layer."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers=headers,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        allow_missing: bool = False,
    ) -> Any:
        response = await self._client.request(method, path, params=params, json=payload)
        if allow_missing and response.status_code == 404:
            return None
        response.raise_for_status()
        if not response.content:
            return None
        body = response.json()
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    async def get_user(self, user_id: str) -> Optional[ContactRecord]:
        payload = await self._request("GET", f"/users/{user_id}", allow_missing=True)
        return ContactRecord.from_dict(payload) if payload else None

    async def list_contacts(self, user_id: str) -> List[ContactRecord]:
        payload = await self._request("GET", f"/users/{user_id}/contacts")
        return [ContactRecord.from_dict(item) for item in payload or []]

    async def list_conversations(self, user_id: str) -> List[ConversationRecord]:
        payload = await self._request("GET", f"/users/{user_id}/conversations")
        return [ConversationRecord.from_dict(item) for item in payload or []]

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        payload = await self._request("GET", f"/conversations/{conversation_id}", allow_missing=True)
        return ConversationRecord.from_dict(payload) if payload else None

    async def find_direct_conversation(self, user_id: str, other_id: str) -> Optional[ConversationRecord]:
        payload = await self._request(
            "GET",
            "/conversations/direct",
            params={"userId": user_id, "otherUserId": other_id},
            allow_missing=True,
        )
        return ConversationRecord.from_dict(payload) if payload else None

    async def create_conversation(
        self,
        creator_id: str,
        participant_ids: List[str],
        conversation_type: str = "direct",
        title: Optional[str] = None,
    ) -> ConversationRecord:
        body: Dict[str, Any] = {
            "createdBy": creator_id,
            "participants": list(dict.fromkeys([creator_id, *participant_ids])),
            "type": conversation_type,
        }
        if title:
            body["title"] = title
        payload = await self._request("POST", "/conversations", payload=body)
        logger.info("Created %s conversation %s", conversation_type, payload.get("id"))
        return ConversationRecord.from_dict(payload)

    async def list_messages(self, conversation_id: str, limit: int = 50) -> List[MessageRecord]:
        payload = await self._request(
            "GET", f"/conversations/{conversation_id}/messages", params={"limit": limit}
        )
        messages = [MessageRecord.from_dict(item, conversation_id) for item in payload or []]
        return sorted(messages, key=lambda item: item.created_at)

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: str = "text",
        media_url: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> MessageRecord:
        body: Dict[str, Any] = {"senderId": sender_id, "content": content, "type": message_type}
        if media_url:
            body["mediaUrl"] = media_url
        if caption:
            body["caption"] = caption
        payload = await self._request("POST", f"/conversations/{conversation_id}/messages", payload=body)
        return MessageRecord.from_dict(payload, conversation_id)
