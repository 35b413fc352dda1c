from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Dict, List, Protocol

from langchain_core.prompts import ChatPromptTemplate
from pydantic import BaseModel, ConfigDict, Field

from .backends.base import MessageRecord
from .llm import ChatModel


logger = logging.getLogger(__name__)

_WORD = re.compile(r"[a-zA-Z][a-zA-Z']+")
_STOPWORDS = {
    "about", "after", "again", "also", "been", "before", "could", "does", "from", "have",
    "here", "just", "know", "like", "more", "really", "should", "some", "that", "their",
    "them", "then", "there", "they", "this", "what", "when", "where", "which", "will",
    "with", "would", "your", "yeah", "okay", "thanks", "today", "tomorrow",
}
_SUMMARY_LINES = {"short": 2, "medium": 4, "long": 8}


class ConversationSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    summary: str
    key_topics: List[str] = Field(default_factory=list)


class ConversationAnswer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    answer: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    relevant_message_ids: List[str] = Field(default_factory=list)


class ConversationAnalyst(Protocol):
    async def summarize(
        self, messages: List[MessageRecord], names: Dict[str, str], length: str = "medium"
    ) -> ConversationSummary:
        ...

    async def answer(
        self, messages: List[MessageRecord], names: Dict[str, str], query: str
    ) -> ConversationAnswer:
        ...


def format_transcript(messages: List[MessageRecord], names: Dict[str, str]) -> str:
    lines = []
    for message in messages:
        speaker = names.get(message.sender_id, message.sender_id)
        stamp = message.created_at.strftime("%Y-%m-%d %H:%M")
        lines.append(f"[{message.id}] {stamp} {speaker}: {message.content}")
    return "\n".join(lines)


def _keywords(text: str) -> List[str]:
    return [word.lower() for word in _WORD.findall(text) if len(word) >= 4 and word.lower() not in _STOPWORDS]


class LLMConversationAnalyst:
    def __init__(self, llm: ChatModel) -> None:
        self.llm = llm
        self.summary_prompt = ChatPromptTemplate.from_messages(
            [
                (
                    "system",
                    "You summarize chat conversations for a messaging app user. "
                    "Write a {length} summary in plain sentences and list the main topics.",
                ),
                ("human", "Participants: {participants}\n\nConversation:\n{transcript}"),
            ]
        )
        self.answer_prompt = ChatPromptTemplate.from_messages(
            [
                (
                    "system",
                    "You answer questions about a chat conversation using only the messages shown. "
                    "Cite the ids of the messages you relied on. If the conversation does not "
                    "contain the answer, say so and use a low confidence.",
                ),
                ("human", "Question: {query}\n\nConversation:\n{transcript}"),
            ]
        )

    async def summarize(
        self, messages: List[MessageRecord], names: Dict[str, str], length: str = "medium"
    ) -> ConversationSummary:
        participants = sorted({names.get(message.sender_id, message.sender_id) for message in messages})
        prompt_messages = self.summary_prompt.format_messages(
            length=length,
            participants=", ".join(participants),
            transcript=format_transcript(messages, names),
        )
        result = await self.llm.with_structured_output(ConversationSummary).ainvoke(prompt_messages)
        if isinstance(result, dict):
            result = ConversationSummary.model_validate(result)
        return result

    async def answer(
        self, messages: List[MessageRecord], names: Dict[str, str], query: str
    ) -> ConversationAnswer:
        prompt_messages = self.answer_prompt.format_messages(
            query=query,
            transcript=format_transcript(messages, names),
        )
        result = await self.llm.with_structured_output(ConversationAnswer).ainvoke(prompt_messages)
        if isinstance(result, dict):
            result = ConversationAnswer.model_validate(result)
        return result


class ExtractiveConversationAnalyst:
    """Offline analyst that quotes the most relevant messages instead of generating text."""

    async def summarize(
        self, messages: List[MessageRecord], names: Dict[str, str], length: str = "medium"
    ) -> ConversationSummary:
        if not messages:
            return ConversationSummary(summary="No messages to summarize.")
        counts = Counter(word for message in messages for word in _keywords(message.content))
        topics = [word for word, _ in counts.most_common(5)]
        recent = messages[-_SUMMARY_LINES.get(length, 4):]
        lines = [f"{names.get(m.sender_id, m.sender_id)}: {m.content}" for m in recent]
        speakers = sorted({names.get(m.sender_id, m.sender_id) for m in messages})
        summary = f"{len(messages)} messages between {', '.join(speakers)}. Latest: " + " | ".join(lines)
        return ConversationSummary(summary=summary, key_topics=topics)

    async def answer(
        self, messages: List[MessageRecord], names: Dict[str, str], query: str
    ) -> ConversationAnswer:
        wanted = set(_keywords(query))
        if not wanted or not messages:
            return ConversationAnswer(answer="I couldn't find that in this conversation.", confidence=0.1)
        scored = []
        for message in messages:
            overlap = wanted & set(_keywords(message.content))
            if overlap:
                scored.append((len(overlap) / len(wanted), message))
        if not scored:
            return ConversationAnswer(answer="I couldn't find that in this conversation.", confidence=0.1)
        scored.sort(key=lambda item: (item[0], item[1].created_at), reverse=True)
        best_score, best = scored[0]
        speaker = names.get(best.sender_id, best.sender_id)
        return ConversationAnswer(
            answer=f'{speaker} said: "{best.content}"',
            confidence=round(min(0.9, 0.3 + best_score * 0.6), 2),
            relevant_message_ids=[message.id for _, message in scored[:3]],
        )
