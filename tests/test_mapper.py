from msgchain.utils.schemas import ClarificationOption, ToolOutcome

LOOKUP_DATA = {
    "contact_id": "u_jane",
    "contact_name": "Jane Cooper",
    "count": 1,
    "contacts": [{"id": "u_jane", "display_name": "Jane Cooper"}],
}


def test_lookup_fills_recipient(mapper):
    mapped = mapper.auto_map_parameters(
        "lookup_contacts", ToolOutcome.proceed(LOOKUP_DATA), "send_message", {"content": "hi"}
    )
    assert mapped == {"content": "hi", "recipient_id": "u_jane"}


def test_placeholder_is_replaced_but_concrete_value_kept(mapper):
    outcome = ToolOutcome.proceed(LOOKUP_DATA)
    mapped = mapper.auto_map_parameters(
        "lookup_contacts", outcome, "send_message", {"recipient_id": "[recipient from step 1]"}
    )
    assert mapped["recipient_id"] == "u_jane"
    kept = mapper.auto_map_parameters("lookup_contacts", outcome, "send_message", {"recipient_id": "u_priya"})
    assert kept["recipient_id"] == "u_priya"


def test_nothing_mapped_from_failed_or_halting_outcome(mapper):
    params = {"content": "hi"}
    assert mapper.auto_map_parameters("lookup_contacts", ToolOutcome.fail("no match"), "send_message", params) == params
    assert mapper.auto_map_parameters("lookup_contacts", None, "send_message", params) == params


def test_unmapped_pair_is_left_alone(mapper):
    outcome = ToolOutcome.proceed({"conversation_id": "c42"})
    params = {"query": "trip"}
    assert mapper.auto_map_parameters("summarize_conversation", outcome, "search_conversations", params) == params
    assert mapper.mappable_fields("summarize_conversation", "search_conversations") == set()


def test_list_outputs_map_first_item(mapper):
    outcome = ToolOutcome.proceed({"count": 2, "conversations": [{"id": "c_priya"}, {"id": "c42"}]})
    mapped = mapper.auto_map_parameters("get_conversations", outcome, "summarize_conversation", {})
    assert mapped["conversation_id"] == "c_priya"


def test_input_parameters_are_not_mutated(mapper):
    params = {"content": "hi"}
    mapper.auto_map_parameters("lookup_contacts", ToolOutcome.proceed(LOOKUP_DATA), "send_message", params)
    assert params == {"content": "hi"}


def test_resolution_sources(mapper):
    assert "lookup_contacts" in mapper.resolution_sources("send_message", "recipient_id")
    assert "resolve_conversation" in mapper.resolution_sources("send_message", "conversation_id")


def test_selection_binds_by_kind(mapper):
    option = ClarificationOption(id="u_johnny", title="Johnny Park", confidence=0.85)
    mapped = mapper.apply_selection("contact_selection", option, "send_message", {"content": "hi"})
    assert mapped["recipient_id"] == "u_johnny"
    mapped = mapper.apply_selection("contact_selection", option, "get_conversations", {})
    assert mapped == {}


def test_bind_acting_user_only_fills_declared_fields(registry, mapper):
    definition = registry.definition("send_message")
    bound = mapper.bind_acting_user(definition, {"content": "hi"}, "u_alex")
    assert bound == {"content": "hi", "sender_id": "u_alex"}
