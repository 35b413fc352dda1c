from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from .errors import CommandError
from .executor import ChainExecution
from .utils.schemas import ChainInfo, CommandResponse, NextAction, ResponseAction


logger = logging.getLogger(__name__)

RESPONSE_TEMPLATES: Dict[str, Tuple[str, str]] = {
    "send_message": ("Message sent to {recipient_name}.", "Message sent."),
    "resolve_conversation": ("Opened your conversation with {contact_name}.", "Conversation opened."),
    "lookup_contacts": ("Found {contact_name}.", "Contact found."),
    "get_conversations": ("You have {count} conversations.", "Here are your conversations."),
    "get_messages": ("Here are the last {count} messages.", "Here are the messages."),
    "get_conversation_info": (
        "{title} has {message_count} messages.",
        "Here are the conversation details.",
    ),
    "summarize_conversation": ("{summary}", "Here is the summary."),
    "analyze_conversation": ("{answer}", "Here is what I found."),
    "search_conversations": ("Found the conversation {conversation_title}.", "Found the conversation."),
}
DEFAULT_TEXT = "Done."

ACTION_BY_OPERATION: Dict[str, ResponseAction] = {
    "send_message": ResponseAction.NAVIGATE_TO_CONVERSATION,
    "resolve_conversation": ResponseAction.NAVIGATE_TO_CONVERSATION,
    "lookup_contacts": ResponseAction.SHOW_SUMMARY,
    "get_conversations": ResponseAction.SHOW_SUMMARY,
    "get_messages": ResponseAction.SHOW_SUMMARY,
    "get_conversation_info": ResponseAction.SHOW_SUMMARY,
    "summarize_conversation": ResponseAction.SHOW_SUMMARY,
    "analyze_conversation": ResponseAction.SHOW_SUMMARY,
    "search_conversations": ResponseAction.SHOW_SUMMARY,
}


def render_template(operation: str, data: Any) -> str:
    template, fallback = RESPONSE_TEMPLATES.get(operation, (DEFAULT_TEXT, DEFAULT_TEXT))
    if not isinstance(data, dict):
        return fallback
    values = {key: value for key, value in data.items() if value is not None}
    try:
        return template.format_map(values)
    except (KeyError, IndexError, ValueError):
        return fallback


def failure_text(reason: str) -> str:
    return f"Sorry, I couldn't complete that: {reason}"


class ResponseSynthesizer:
    def synthesize(
        self,
        execution: ChainExecution,
        trace_id: Optional[str] = None,
        instruction: Optional[str] = None,
    ) -> CommandResponse:
        chain_info = ChainInfo(
            operations_used=execution.operations(),
            outcomes=list(execution.outcomes),
            total_execution_time_ms=execution.total_execution_time_ms,
        )
        if not execution.outcomes:
            return CommandResponse(
                success=False,
                response_text=failure_text("nothing was executed"),
                action=ResponseAction.SHOW_ERROR,
                error="No operations were executed",
                trace_id=trace_id,
                chain_info=chain_info,
            )

        for outcome in execution.outcomes:
            if outcome.next_action == NextAction.ERROR:
                return CommandResponse(
                    success=False,
                    result=outcome.data,
                    response_text=failure_text(outcome.error or "unknown error"),
                    action=ResponseAction.SHOW_ERROR,
                    error=outcome.error,
                    trace_id=trace_id,
                    chain_info=chain_info,
                )

        for outcome in execution.outcomes:
            if outcome.next_action == NextAction.CLARIFICATION_NEEDED:
                request = outcome.clarification
                return CommandResponse(
                    success=True,
                    result=outcome.data,
                    response_text=request.question,
                    action=ResponseAction.REQUEST_CLARIFICATION,
                    trace_id=trace_id,
                    chain_info=chain_info,
                    requires_clarification=True,
                    clarification_data=request,
                    original_instruction=instruction,
                )

        final_call = execution.calls[-1]
        final = execution.outcomes[-1]
        return CommandResponse(
            success=True,
            result=final.data,
            response_text=render_template(final_call.operation, final.data),
            action=ACTION_BY_OPERATION.get(final_call.operation, ResponseAction.NO_ACTION),
            trace_id=trace_id,
            chain_info=chain_info,
        )

    def failure(
        self,
        error: Exception,
        trace_id: Optional[str] = None,
        chain_info: Optional[ChainInfo] = None,
    ) -> CommandResponse:
        if isinstance(error, CommandError):
            reason = error.message
        else:
            logger.error("Unexpected failure: %s", error)
            reason = "an unexpected error occurred"
        return CommandResponse(
            success=False,
            response_text=failure_text(reason),
            action=ResponseAction.SHOW_ERROR,
            error=reason,
            trace_id=trace_id,
            chain_info=chain_info,
        )
