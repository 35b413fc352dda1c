from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from difflib import SequenceMatcher
from typing import Any, Dict, List, Optional, Tuple

from ..analysis import ConversationAnalyst
from ..backends.base import ContactRecord, ConversationRecord, MessageRecord, MessagingBackend, parse_timestamp
from ..utils.schemas import ClarificationOption, ClarificationRequest, ToolContext, ToolOutcome
from .base import MessagingTool
from .schema_registry import (
    AnalyzeConversationArgs,
    GetConversationInfoArgs,
    GetConversationsArgs,
    GetMessagesArgs,
    LookupContactsArgs,
    ResolveConversationArgs,
    SearchConversationsArgs,
    SendMessageArgs,
    SummarizeConversationArgs,
)


logger = logging.getLogger(__name__)

EXACT_MATCH = 0.95
PREFIX_MATCH = 0.8
CONTAINS_MATCH = 0.6
FUZZY_MATCH = 0.4
FUZZY_SIMILARITY = 0.6
RECENT_BONUS = 0.1
COMPLETE_PROFILE_BONUS = 0.05
AMBIGUITY_GAP = 0.2
LOW_CONFIDENCE = 0.6
MAX_OPTIONS = 5

_FIELD_ATTRS = {"displayName": "display_name", "email": "email", "phoneNumber": "phone_number"}
_TIME_FILTERS = {"1day": timedelta(days=1), "1week": timedelta(weeks=1), "1month": timedelta(days=30)}
_WORD = re.compile(r"[a-z0-9']+")


def _words(text: str) -> List[str]:
    return _WORD.findall(text.lower())


def similarity(left: str, right: str) -> float:
    return SequenceMatcher(None, left, right).ratio()


def match_score(value: Optional[str], query: str) -> Tuple[float, Optional[str]]:
    if not value:
        return 0.0, None
    text = value.strip().lower()
    needle = query.strip().lower()
    if not needle:
        return 0.0, None
    if text == needle:
        return EXACT_MATCH, "exact"
    if text.startswith(needle):
        return PREFIX_MATCH, "prefix"
    if needle in text:
        return CONTAINS_MATCH, "contains"
    for word in _words(text):
        if len(word) < 3:
            continue
        if any(similarity(word, part) > FUZZY_SIMILARITY for part in _words(needle)):
            return FUZZY_MATCH, "fuzzy"
    return 0.0, None


def score_contact(
    contact: ContactRecord, query: str, fields: List[str], include_recent: bool = True
) -> Tuple[float, Optional[str]]:
    best, best_type = 0.0, None
    for field in fields:
        score, match_type = match_score(getattr(contact, _FIELD_ATTRS[field]), query)
        if score > best:
            best, best_type = score, match_type
    if best <= 0:
        return 0.0, None
    if include_recent and contact.is_recent:
        best += RECENT_BONUS
    if contact.has_complete_profile:
        best += COMPLETE_PROFILE_BONUS
    return round(min(best, 1.0), 4), best_type


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _preview(text: str, size: int = 80) -> str:
    return text if len(text) <= size else text[: size - 3] + "..."


def needs_clarification(scores: List[float]) -> Optional[str]:
    if not scores:
        return None
    if len(scores) > 1 and scores[0] - scores[1] < AMBIGUITY_GAP:
        return "ambiguous"
    if len(scores) == 1 and scores[0] < LOW_CONFIDENCE:
        return "low_confidence"
    return None


class ConversationAccessMixin:
    backend: MessagingBackend

    async def load_conversation(
        self, conversation_id: str, user_id: str
    ) -> Tuple[Optional[ConversationRecord], Optional[ToolOutcome]]:
        conversation = await self.backend.get_conversation(conversation_id)
        if conversation is None:
            return None, ToolOutcome.fail(f"Conversation {conversation_id} not found")
        if not conversation.is_participant(user_id):
            return None, ToolOutcome.fail("You don't have access to that conversation")
        return conversation, None


class LookupContactsTool(MessagingTool):
    name = "lookup_contacts"
    description = (
        "Find contacts by name, email or phone number. Use before send_message or "
        "resolve_conversation when the user names a person. May ask the user to pick "
        "between several similar contacts."
    )
    may_require_clarification = True
    clarification_kind = "contact_selection"

    async def run(self, args: LookupContactsArgs, context: ToolContext) -> ToolOutcome:
        contacts = await self.backend.list_contacts(args.user_id)
        matches: List[Tuple[float, str, ContactRecord]] = []
        for contact in contacts:
            if args.exclude_self and contact.id == args.user_id:
                continue
            score, match_type = score_contact(contact, args.query, args.search_fields, args.include_recent)
            if score >= args.min_confidence and match_type:
                matches.append((score, match_type, contact))
        if not matches:
            return ToolOutcome.fail(f'No contacts found matching "{args.query}"')

        matches.sort(key=lambda item: (-item[0], not item[2].is_recent, item[2].display_name.lower()))
        matches = matches[: args.limit]
        reason = needs_clarification([score for score, _, _ in matches])
        if reason:
            return ToolOutcome.clarify(self._clarification(args.query, matches, reason))

        score, match_type, best = matches[0]
        data = self.output(
            {
                "contact_id": best.id,
                "contact_name": best.display_name,
                "count": len(matches),
                "contacts": [
                    {
                        "id": contact.id,
                        "display_name": contact.display_name,
                        "email": contact.email,
                        "phone_number": contact.phone_number,
                        "confidence": contact_score,
                        "match_type": contact_type,
                        "is_recent": contact.is_recent,
                    }
                    for contact_score, contact_type, contact in matches
                ],
            }
        )
        return ToolOutcome.proceed(data, confidence=score)

    def _clarification(
        self, query: str, matches: List[Tuple[float, str, ContactRecord]], reason: str
    ) -> ClarificationRequest:
        options = [
            ClarificationOption(
                id=contact.id,
                title=contact.display_name,
                subtitle=contact.email or contact.phone_number or "",
                confidence=score,
                metadata={
                    "is_recent": contact.is_recent,
                    "last_contact": _isoformat(contact.last_contact),
                    "match_type": match_type,
                },
            )
            for score, match_type, contact in matches[:MAX_OPTIONS]
        ]
        if reason == "ambiguous":
            question = f'I found {len(matches)} contacts named "{query}". Which one did you mean?'
        else:
            question = f'I\'m not sure who "{query}" is. Did you mean {options[0].title}?'
        return ClarificationRequest(
            kind=self.clarification_kind,
            question=question,
            options=options,
            operation=self.name,
            reason=reason,
        )


class ResolveConversationTool(MessagingTool):
    name = "resolve_conversation"
    description = (
        "Find the direct conversation between the user and a contact, optionally creating it. "
        "Use to open a chat with someone."
    )

    async def run(self, args: ResolveConversationArgs, context: ToolContext) -> ToolOutcome:
        contact = await self._find_contact(args.user_id, args.contact_identifier)
        if contact is None:
            return ToolOutcome.fail(f'No contact found for "{args.contact_identifier}"')
        if contact.id == args.user_id:
            return ToolOutcome.fail("You can't open a conversation with yourself")

        created = False
        conversation = await self.backend.find_direct_conversation(args.user_id, contact.id)
        if conversation is None:
            if not args.create_if_missing:
                return ToolOutcome.fail(f"You don't have a conversation with {contact.display_name} yet")
            conversation = await self.backend.create_conversation(
                args.user_id, [contact.id], conversation_type=args.conversation_type
            )
            created = True
            logger.info("Created conversation %s with %s", conversation.id, contact.id)

        data = self.output(
            {
                "conversation_id": conversation.id,
                "contact_id": contact.id,
                "contact_name": contact.display_name,
                "created": created,
                "participants": conversation.participant_ids,
            }
        )
        return ToolOutcome.proceed(data, confidence=1.0)

    async def _find_contact(self, user_id: str, identifier: str) -> Optional[ContactRecord]:
        direct = await self.backend.get_user(identifier)
        if direct is not None:
            return direct
        needle = identifier.strip().lower()
        contacts = await self.backend.list_contacts(user_id)
        for attr in ("email", "phone_number"):
            for contact in contacts:
                value = getattr(contact, attr)
                if value and value.lower() == needle:
                    return contact
        named = [contact for contact in contacts if contact.display_name.lower() == needle]
        return named[0] if len(named) == 1 else None


class SendMessageTool(MessagingTool, ConversationAccessMixin):
    name = "send_message"
    description = (
        "Send a message. Requires conversation_id or recipient_id; when the user names a person, "
        "call lookup_contacts first and the recipient will be filled in."
    )

    async def run(self, args: SendMessageArgs, context: ToolContext) -> ToolOutcome:
        if args.message_type != "text" and not args.media_url:
            return ToolOutcome.fail(f"{args.message_type} messages need a media_url")

        created = False
        recipient: Optional[ContactRecord] = None
        if args.conversation_id:
            conversation, failure = await self.load_conversation(args.conversation_id, args.sender_id)
            if failure:
                return failure
        elif args.recipient_id:
            if args.recipient_id == args.sender_id and not args.allow_self_message:
                return ToolOutcome.fail("You can't send a message to yourself")
            recipient = await self.backend.get_user(args.recipient_id)
            if recipient is None:
                return ToolOutcome.fail(f"Recipient {args.recipient_id} not found")
            conversation = await self.backend.find_direct_conversation(args.sender_id, recipient.id)
            if conversation is None:
                if not args.create_conversation_if_missing:
                    return ToolOutcome.fail(f"No conversation with {recipient.display_name}")
                conversation = await self.backend.create_conversation(args.sender_id, [recipient.id])
                created = True
        else:
            return ToolOutcome.fail("send_message needs a conversation_id or a recipient_id")

        message = await self.backend.send_message(
            conversation.id,
            args.sender_id,
            args.content,
            message_type=args.message_type,
            media_url=args.media_url,
            caption=args.caption,
        )
        if recipient is None:
            others = [pid for pid in conversation.participant_ids if pid != args.sender_id]
            if len(others) == 1:
                recipient = await self.backend.get_user(others[0])
        logger.info("Sent message %s to conversation %s", message.id, conversation.id)
        data = self.output(
            {
                "message_id": message.id,
                "conversation_id": conversation.id,
                "recipient_id": recipient.id if recipient else None,
                "recipient_name": recipient.display_name if recipient else conversation.title,
                "content": message.content,
                "status": "sent",
                "created_conversation": created,
                "sent_at": message.created_at.isoformat(),
            }
        )
        return ToolOutcome.complete(data, confidence=1.0)


class GetConversationsTool(MessagingTool):
    name = "get_conversations"
    description = "List the user's conversations, most recent first. Use to find recent chats."

    async def run(self, args: GetConversationsArgs, context: ToolContext) -> ToolOutcome:
        conversations = await self.backend.list_conversations(args.user_id)
        if args.conversation_type != "all":
            conversations = [item for item in conversations if item.type == args.conversation_type]
        if args.unread_only:
            conversations = [item for item in conversations if item.unread_count > 0]

        participant_ids = [pid for item in conversations for pid in item.participant_ids]
        names = await self.display_names(participant_ids)
        if args.sort_by == "unread":
            conversations = sorted(conversations, key=lambda item: item.unread_count, reverse=True)
        elif args.sort_by == "name":
            conversations = sorted(
                conversations, key=lambda item: item.display_title(names, args.user_id).lower()
            )
        conversations = conversations[: args.limit]

        items = []
        for conversation in conversations:
            preview = None
            if args.include_preview and conversation.last_message:
                preview = _preview(conversation.last_message.content)
            items.append(
                {
                    "id": conversation.id,
                    "title": conversation.display_title(names, args.user_id),
                    "type": conversation.type,
                    "participants": [names.get(pid, pid) for pid in conversation.participant_ids],
                    "unread_count": conversation.unread_count,
                    "last_message_preview": preview,
                    "updated_at": _isoformat(conversation.updated_at),
                }
            )
        return ToolOutcome.proceed(self.output({"count": len(items), "conversations": items}))


class GetMessagesTool(MessagingTool, ConversationAccessMixin):
    name = "get_messages"
    description = "Read recent messages from a conversation, with optional filters."

    async def run(self, args: GetMessagesArgs, context: ToolContext) -> ToolOutcome:
        conversation, failure = await self.load_conversation(args.conversation_id, args.user_id)
        if failure:
            return failure
        messages = await self.backend.list_messages(conversation.id, limit=500)
        if args.from_user_id:
            messages = [m for m in messages if m.sender_id == args.from_user_id]
        if args.message_type:
            messages = [m for m in messages if m.message_type == args.message_type]
        if args.search_text:
            needle = args.search_text.lower()
            messages = [m for m in messages if needle in m.content.lower()]
        if args.since:
            since = parse_timestamp(args.since)
            messages = [m for m in messages if m.created_at >= since]
        messages = messages[-args.limit:]

        names = await self.display_names(m.sender_id for m in messages)
        data = self.output(
            {
                "conversation_id": conversation.id,
                "count": len(messages),
                "messages": [
                    {
                        "id": m.id,
                        "sender_id": m.sender_id,
                        "sender_name": names.get(m.sender_id, m.sender_id),
                        "content": m.content,
                        "message_type": m.message_type,
                        "created_at": m.created_at.isoformat(),
                    }
                    for m in messages
                ],
            }
        )
        return ToolOutcome.proceed(data)


class GetConversationInfoTool(MessagingTool, ConversationAccessMixin):
    name = "get_conversation_info"
    description = "Describe a conversation: title, participants and message statistics."

    async def run(self, args: GetConversationInfoArgs, context: ToolContext) -> ToolOutcome:
        conversation, failure = await self.load_conversation(args.conversation_id, args.user_id)
        if failure:
            return failure
        names = await self.display_names(conversation.participant_ids)
        payload: Dict[str, Any] = {
            "conversation_id": conversation.id,
            "title": conversation.display_title(names, args.user_id),
            "type": conversation.type,
            "created_at": _isoformat(conversation.created_at),
            "last_activity": _isoformat(conversation.updated_at),
        }
        if args.include_participants:
            payload["participants"] = [
                {"id": pid, "display_name": names.get(pid, pid)} for pid in conversation.participant_ids
            ]
        if args.include_stats:
            messages = await self.backend.list_messages(conversation.id, limit=1000)
            counts: Dict[str, int] = {}
            for message in messages:
                speaker = names.get(message.sender_id, message.sender_id)
                counts[speaker] = counts.get(speaker, 0) + 1
            payload["message_count"] = len(messages)
            payload["messages_by_participant"] = counts
        return ToolOutcome.proceed(self.output(payload))


class _AnalystTool(MessagingTool, ConversationAccessMixin):
    def __init__(self, backend: MessagingBackend, analyst: ConversationAnalyst) -> None:
        super().__init__(backend)
        self.analyst = analyst


class SummarizeConversationTool(_AnalystTool):
    name = "summarize_conversation"
    description = (
        "Summarize a conversation. Use the current conversation id when the user is inside one; "
        "otherwise find the conversation first with get_conversations or search_conversations."
    )

    async def run(self, args: SummarizeConversationArgs, context: ToolContext) -> ToolOutcome:
        conversation, failure = await self.load_conversation(args.conversation_id, args.current_user_id)
        if failure:
            return failure
        messages = await self.backend.list_messages(conversation.id, limit=1000)
        window = _TIME_FILTERS.get(args.time_filter)
        if window is not None:
            cutoff = datetime.now(timezone.utc) - window
            messages = [m for m in messages if m.created_at >= cutoff]
        messages = messages[-args.max_messages:]

        names = await self.display_names([*conversation.participant_ids, *(m.sender_id for m in messages)])
        title = conversation.display_title(names, args.current_user_id)
        if messages:
            summary = await self.analyst.summarize(messages, names, args.summary_length)
            text, topics = summary.summary, summary.key_topics
        else:
            text, topics = "There are no messages to summarize for that period.", []
        data = self.output(
            {
                "conversation_id": conversation.id,
                "conversation_title": title,
                "summary": text,
                "message_count": len(messages),
                "participants": sorted({names.get(m.sender_id, m.sender_id) for m in messages}),
                "key_topics": topics,
                "time_filter": args.time_filter,
            }
        )
        return ToolOutcome.complete(data)


class AnalyzeConversationTool(_AnalystTool):
    name = "analyze_conversation"
    description = (
        "Answer a specific question about a conversation, such as what someone said or what "
        "was decided. Use the current conversation id when the user is inside one."
    )

    async def run(self, args: AnalyzeConversationArgs, context: ToolContext) -> ToolOutcome:
        conversation, failure = await self.load_conversation(args.conversation_id, args.current_user_id)
        if failure:
            return failure
        messages = await self.backend.list_messages(conversation.id, limit=args.max_messages)
        names = await self.display_names([*conversation.participant_ids, *(m.sender_id for m in messages)])
        answer = await self.analyst.answer(messages, names, args.query)
        data = self.output(
            {
                "conversation_id": conversation.id,
                "query": args.query,
                "answer": answer.answer,
                "confidence": answer.confidence,
                "relevant_messages": answer.relevant_message_ids,
            }
        )
        return ToolOutcome.complete(data, confidence=answer.confidence)


class SearchConversationsTool(MessagingTool):
    name = "search_conversations"
    description = (
        "Find conversations by topic, title or participant when the user describes a chat "
        "without naming it exactly. May ask the user to pick between similar conversations."
    )
    may_require_clarification = True
    clarification_kind = "conversation_selection"

    async def run(self, args: SearchConversationsArgs, context: ToolContext) -> ToolOutcome:
        conversations = await self.backend.list_conversations(args.user_id)
        names = await self.display_names(pid for item in conversations for pid in item.participant_ids)
        scored: List[Tuple[float, str, Optional[str], ConversationRecord]] = []
        for conversation in conversations:
            messages = await self.backend.list_messages(conversation.id, limit=100)
            title = conversation.display_title(names, args.user_id)
            score, snippet = self._score(conversation, title, messages, names, args.query, args.user_id)
            if score >= args.min_confidence:
                scored.append((score, title, snippet, conversation))
        if not scored:
            return ToolOutcome.fail(f'No conversations matched "{args.query}"')

        scored.sort(key=lambda item: item[0], reverse=True)
        scored = scored[: args.max_results]
        reason = needs_clarification([score for score, _, _, _ in scored])
        if reason == "ambiguous":
            options = [
                ClarificationOption(
                    id=conversation.id,
                    title=title,
                    subtitle=snippet or "",
                    confidence=score,
                    metadata={"type": conversation.type, "updated_at": _isoformat(conversation.updated_at)},
                )
                for score, title, snippet, conversation in scored[:MAX_OPTIONS]
            ]
            return ToolOutcome.clarify(
                ClarificationRequest(
                    kind=self.clarification_kind,
                    question=f'I found {len(scored)} conversations about "{args.query}". Which one did you mean?',
                    options=options,
                    operation=self.name,
                    reason=reason,
                )
            )

        score, title, _, best = scored[0]
        data = self.output(
            {
                "conversation_id": best.id,
                "conversation_title": title,
                "count": len(scored),
                "conversations": [
                    {"id": conversation.id, "title": item_title, "confidence": item_score, "snippet": snippet}
                    for item_score, item_title, snippet, conversation in scored
                ],
            }
        )
        return ToolOutcome.proceed(data, confidence=score)

    @staticmethod
    def _score(
        conversation: ConversationRecord,
        title: str,
        messages: List[MessageRecord],
        names: Dict[str, str],
        query: str,
        viewer_id: str,
    ) -> Tuple[float, Optional[str]]:
        best, _ = match_score(title, query)
        for pid in conversation.participant_ids:
            if pid == viewer_id:
                continue
            score, _ = match_score(names.get(pid), query)
            best = max(best, score)
        for topic in conversation.topics:
            score, _ = match_score(topic, query)
            best = max(best, score)

        wanted = {word for word in _words(query) if len(word) >= 3}
        snippet = None
        if wanted:
            top_overlap = 0.0
            for message in messages:
                overlap = len(wanted & set(_words(message.content))) / len(wanted)
                if overlap > top_overlap:
                    top_overlap, snippet = overlap, _preview(message.content)
            best = max(best, round(0.7 * top_overlap, 4))
        return round(min(best, 1.0), 4), snippet


def build_messaging_tools(backend: MessagingBackend, analyst: ConversationAnalyst) -> List[MessagingTool]:
    return [
        LookupContactsTool(backend),
        ResolveConversationTool(backend),
        SendMessageTool(backend),
        GetConversationsTool(backend),
        GetMessagesTool(backend),
        GetConversationInfoTool(backend),
        SummarizeConversationTool(backend, analyst),
        AnalyzeConversationTool(backend, analyst),
        SearchConversationsTool(backend),
    ]
