from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from ..utils.schemas import ItemSpec, ParameterSpec


@dataclass(frozen=True)
class ToolSchema:
    args_model: Type[BaseModel]
    output_model: Optional[Type[BaseModel]]


SearchField = Literal["displayName", "email", "phoneNumber"]


class LookupContactsArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(description="Id of the user performing the lookup.")
    query: str = Field(min_length=1, description="Name, email or phone number to search for.")
    limit: int = Field(default=10, ge=1, le=50, description="Maximum number of contacts to return.")
    include_recent: bool = Field(default=True, description="Boost contacts the user talked to recently.")
    search_fields: List[SearchField] = Field(
        default_factory=lambda: ["displayName", "email", "phoneNumber"],
        description="Contact fields to match against.",
    )
    min_confidence: float = Field(default=0.3, ge=0.0, le=1.0, description="Drop matches below this score.")
    exclude_self: bool = Field(default=True, description="Leave the acting user out of the results.")


class ContactMatch(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    display_name: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    confidence: float
    match_type: str
    is_recent: bool = False


class LookupContactsOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    contact_id: str
    contact_name: str
    count: int
    contacts: List[ContactMatch]


class ResolveConversationArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(description="Id of the user who owns the conversation.")
    contact_identifier: str = Field(
        min_length=1, description="Contact id, email, phone number or exact display name."
    )
    create_if_missing: bool = Field(default=False, description="Create a direct conversation if none exists.")
    conversation_type: Literal["direct", "group"] = Field(default="direct", description="Conversation type.")


class ResolveConversationOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    contact_id: str
    contact_name: str
    created: bool
    participants: List[str]


class SendMessageArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sender_id: str = Field(description="Id of the user sending the message.")
    content: str = Field(min_length=1, description="Message text.")
    conversation_id: Optional[str] = Field(default=None, description="Target conversation id.")
    recipient_id: Optional[str] = Field(default=None, description="Target user id for a direct message.")
    message_type: Literal["text", "image", "file"] = Field(default="text", description="Kind of message.")
    media_url: Optional[str] = Field(default=None, description="Attachment URL for image or file messages.")
    caption: Optional[str] = Field(default=None, description="Attachment caption.")
    create_conversation_if_missing: bool = Field(
        default=True, description="Open a direct conversation with the recipient when none exists."
    )
    priority: Literal["normal", "high"] = Field(default="normal", description="Delivery priority.")
    allow_self_message: bool = Field(default=False, description="Permit sending a message to yourself.")


class SendMessageOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: str
    conversation_id: str
    recipient_id: Optional[str] = None
    recipient_name: Optional[str] = None
    content: str
    status: str
    created_conversation: bool
    sent_at: str


class GetConversationsArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(description="Id of the user whose conversations are listed.")
    limit: int = Field(default=20, ge=1, le=100, description="Maximum number of conversations.")
    include_preview: bool = Field(default=True, description="Include the last message preview.")
    conversation_type: Literal["all", "direct", "group"] = Field(default="all", description="Type filter.")
    unread_only: bool = Field(default=False, description="Only conversations with unread messages.")
    sort_by: Literal["recent", "unread", "name"] = Field(default="recent", description="Sort order.")


class ConversationItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    type: str
    participants: List[str]
    unread_count: int = 0
    last_message_preview: Optional[str] = None
    updated_at: Optional[str] = None


class GetConversationsOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    count: int
    conversations: List[ConversationItem]


class GetMessagesArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str = Field(description="Conversation to read.")
    user_id: str = Field(description="Id of the user reading the conversation.")
    limit: int = Field(default=20, ge=1, le=100, description="Maximum number of messages.")
    from_user_id: Optional[str] = Field(default=None, description="Only messages from this participant.")
    message_type: Optional[Literal["text", "image", "file"]] = Field(default=None, description="Type filter.")
    search_text: Optional[str] = Field(default=None, description="Only messages containing this text.")
    since: Optional[str] = Field(default=None, description="ISO timestamp lower bound.")


class MessageItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    sender_id: str
    sender_name: str
    content: str
    message_type: str
    created_at: str


class GetMessagesOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    count: int
    messages: List[MessageItem]


class GetConversationInfoArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str = Field(description="Conversation to describe.")
    user_id: str = Field(description="Id of the user asking.")
    include_participants: bool = Field(default=True, description="Include participant details.")
    include_stats: bool = Field(default=True, description="Include message statistics.")


class Participant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    display_name: str


class ConversationInfoOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    title: str
    type: str
    participants: List[Participant] = Field(default_factory=list)
    message_count: Optional[int] = None
    messages_by_participant: Dict[str, int] = Field(default_factory=dict)
    created_at: Optional[str] = None
    last_activity: Optional[str] = None


class SummarizeConversationArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str = Field(description="Conversation to summarize.")
    current_user_id: str = Field(description="Id of the user asking for the summary.")
    time_filter: Literal["1day", "1week", "1month", "all"] = Field(default="all", description="Time window.")
    max_messages: int = Field(default=50, ge=1, le=200, description="Maximum messages to read.")
    summary_length: Literal["short", "medium", "long"] = Field(default="medium", description="Summary size.")


class SummarizeConversationOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    conversation_title: str
    summary: str
    message_count: int
    participants: List[str]
    key_topics: List[str]
    time_filter: str


class AnalyzeConversationArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str = Field(description="Conversation to inspect.")
    current_user_id: str = Field(description="Id of the user asking.")
    query: str = Field(min_length=1, description="Question about the conversation.")
    max_messages: int = Field(default=100, ge=1, le=500, description="Maximum messages to read.")


class AnalyzeConversationOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    query: str
    answer: str
    confidence: float
    relevant_messages: List[str]


class SearchConversationsArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str = Field(description="Id of the user whose conversations are searched.")
    query: str = Field(min_length=1, description="Topic, participant or title to look for.")
    max_results: int = Field(default=5, ge=1, le=20, description="Maximum conversations to return.")
    min_confidence: float = Field(default=0.3, ge=0.0, le=1.0, description="Drop matches below this score.")


class ConversationMatch(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    confidence: float
    snippet: Optional[str] = None


class SearchConversationsOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    conversation_title: str
    count: int
    conversations: List[ConversationMatch]


TOOL_SCHEMAS: Dict[str, ToolSchema] = {
    "lookup_contacts": ToolSchema(LookupContactsArgs, LookupContactsOutput),
    "resolve_conversation": ToolSchema(ResolveConversationArgs, ResolveConversationOutput),
    "send_message": ToolSchema(SendMessageArgs, SendMessageOutput),
    "get_conversations": ToolSchema(GetConversationsArgs, GetConversationsOutput),
    "get_messages": ToolSchema(GetMessagesArgs, GetMessagesOutput),
    "get_conversation_info": ToolSchema(GetConversationInfoArgs, ConversationInfoOutput),
    "summarize_conversation": ToolSchema(SummarizeConversationArgs, SummarizeConversationOutput),
    "analyze_conversation": ToolSchema(AnalyzeConversationArgs, AnalyzeConversationOutput),
    "search_conversations": ToolSchema(SearchConversationsArgs, SearchConversationsOutput),
}


def _resolve(schema: Dict[str, Any]) -> Dict[str, Any]:
    options = schema.get("anyOf")
    if options:
        for option in options:
            if option.get("type") != "null":
                return {**schema, **option}
    return schema


def parameters_from_model(model: Type[BaseModel]) -> List[ParameterSpec]:
    """Derive advertised parameter specs from a pydantic args model."""
    schema = model.model_json_schema()
    required = set(schema.get("required", []))
    specs: List[ParameterSpec] = []
    for name, raw in schema.get("properties", {}).items():
        prop = _resolve(raw)
        items = None
        if prop.get("type") == "array":
            item_schema = _resolve(prop.get("items", {}))
            items = ItemSpec(type=item_schema.get("type", "string"), enum=item_schema.get("enum"))
        specs.append(
            ParameterSpec(
                name=name,
                type=prop.get("type", "string"),
                description=prop.get("description", ""),
                required=name in required,
                default=prop.get("default"),
                enum=prop.get("enum"),
                items=items,
            )
        )
    return specs
