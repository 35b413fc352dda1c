from datetime import datetime, timezone

import pytest

from msgchain.analysis import ExtractiveConversationAnalyst, LLMConversationAnalyst, format_transcript
from msgchain.backends.base import MessageRecord
from msgchain.llm import MockChatModel

NAMES = {"u_jane": "Jane Cooper", "u_alex": "Alex Morgan"}
MESSAGES = [
    MessageRecord("m1", "c1", "u_jane", "Dinner at 7 tonight?", datetime(2026, 8, 20, 18, 1, tzinfo=timezone.utc)),
    MessageRecord("m2", "c1", "u_alex", "Sounds good, see you there", datetime(2026, 8, 20, 18, 3, tzinfo=timezone.utc)),
]


def test_format_transcript_names_speakers():
    transcript = format_transcript(MESSAGES, NAMES)
    assert transcript.splitlines()[0] == "[m1] 2026-08-20 18:01 Jane Cooper: Dinner at 7 tonight?"


@pytest.mark.asyncio
async def test_llm_analyst_uses_structured_output():
    model = MockChatModel(
        structured={
            "ConversationSummary": {"summary": "Jane and Alex agreed on dinner at 7.", "key_topics": ["dinner"]},
            "ConversationAnswer": {"answer": "At 7.", "confidence": 0.9, "relevant_message_ids": ["m1"]},
        }
    )
    analyst = LLMConversationAnalyst(model)

    summary = await analyst.summarize(MESSAGES, NAMES, "short")
    assert summary.key_topics == ["dinner"]
    answer = await analyst.answer(MESSAGES, NAMES, "When is dinner?")
    assert answer.relevant_message_ids == ["m1"]
    assert "Jane Cooper: Dinner at 7 tonight?" in model.calls[0][-1].content


@pytest.mark.asyncio
async def test_extractive_answer_without_match():
    answer = await ExtractiveConversationAnalyst().answer(MESSAGES, NAMES, "Who booked flights?")
    assert answer.answer == "I couldn't find that in this conversation."
    assert answer.confidence == 0.1


@pytest.mark.asyncio
async def test_extractive_summary_respects_length():
    summary = await ExtractiveConversationAnalyst().summarize(MESSAGES, NAMES, "short")
    assert summary.summary.startswith("2 messages between Alex Morgan, Jane Cooper.")
    assert "dinner" in summary.key_topics
