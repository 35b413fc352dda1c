from msgchain.utils.schemas import AppContext, Plan, ToolCall


def _plan(*calls):
    return Plan(calls=[ToolCall(operation=name, parameters=params) for name, params in calls])


def _context(**overrides):
    values = {"acting_user_id": "u_alex"}
    values.update(overrides)
    return AppContext(**values)


def test_pre_flight_rejects_empty_text_and_missing_user(validator):
    verdict = validator.validate_pre_flight("   ", AppContext())
    assert verdict.valid is False
    assert "Instruction text is empty" in verdict.errors
    assert "Acting user id is missing" in verdict.errors


def test_pre_flight_rejects_long_instruction(registry, mapper):
    from msgchain.validator import ChainValidator

    validator = ChainValidator(registry, mapper, max_instruction_chars=10)
    verdict = validator.validate_pre_flight("x" * 11, _context())
    assert verdict.valid is False
    assert "longer than 10" in verdict.errors[0]


def test_pre_flight_flags_context_hints(validator):
    verdict = validator.validate_pre_flight("Summarize this conversation", _context(current_screen="conversation"))
    assert verdict.valid is True
    assert verdict.warnings
    assert verdict.suggestions


def test_chain_accepts_lookup_then_send(validator):
    plan = _plan(("lookup_contacts", {"query": "Jane"}), ("send_message", {"content": "hi"}))
    verdict = validator.validate_chain(plan, max_chain_length=5)
    assert verdict.valid is True
    assert "Recognised pattern: Send message to contact by name" in verdict.warnings


def test_chain_rejects_empty_and_too_long(validator):
    assert validator.validate_chain(Plan(), 5).errors == ("Plan is empty",)
    plan = _plan(
        ("get_conversations", {}),
        ("get_messages", {"conversation_id": "c1"}),
        ("summarize_conversation", {"conversation_id": "c1"}),
    )
    verdict = validator.validate_chain(plan, max_chain_length=2)
    assert verdict.valid is False
    assert "the limit is 2" in verdict.errors[0]


def test_chain_rejects_consecutive_repeats(validator):
    plan = _plan(("get_conversations", {}), ("get_conversations", {"limit": 1}))
    verdict = validator.validate_chain(plan, 5)
    assert any("consecutively" in error for error in verdict.errors)


def test_chain_rejects_unknown_and_excluded_operations(validator):
    plan = _plan(("delete_everything", {}), ("lookup_contacts", {"query": "John"}))
    verdict = validator.validate_chain(plan, 5, excluded_operations=["lookup_contacts"])
    assert any("unknown operation delete_everything" in error for error in verdict.errors)
    assert any("already asked for clarification" in error for error in verdict.errors)


def test_chain_rejects_second_disambiguating_call(validator):
    plan = _plan(
        ("lookup_contacts", {"query": "John"}),
        ("resolve_conversation", {}),
        ("lookup_contacts", {"query": "Jane"}),
    )
    verdict = validator.validate_chain(plan, 5)
    assert "lookup_contacts may only appear once per plan" in verdict.errors


def test_chain_requires_send_target(validator):
    verdict = validator.validate_chain(_plan(("send_message", {"content": "hi"})), 5)
    assert verdict.valid is False
    assert "no recipient_id or conversation_id" in verdict.errors[0]


def test_tool_parameters_missing_and_placeholder(validator):
    verdict = validator.validate_tool_parameters(
        "send_message", {"content": "hi", "recipient_id": "[contact_id]", "sender_id": "u_alex"}, _context()
    )
    assert verdict.valid is True
    assert any("placeholder" in warning for warning in verdict.warnings)

    verdict = validator.validate_tool_parameters("lookup_contacts", {"user_id": "u_alex"}, _context())
    assert verdict.errors == ("Missing required parameter query",)


def test_tool_parameters_deferred_fields_are_skipped(validator):
    verdict = validator.validate_tool_parameters(
        "resolve_conversation",
        {"user_id": "u_alex", "contact_identifier": "<from lookup>"},
        _context(),
        deferred_fields={"contact_identifier"},
    )
    assert verdict.valid is True


def test_tool_parameters_type_and_enum(validator):
    verdict = validator.validate_tool_parameters(
        "get_conversations", {"user_id": "u_alex", "limit": "ten", "sort_by": "oldest"}, _context()
    )
    assert "Parameter limit should be integer, got str" in verdict.errors
    assert any("sort_by must be one of" in error for error in verdict.errors)


def test_tool_parameters_identity_must_match_acting_user(validator):
    verdict = validator.validate_tool_parameters(
        "get_conversations", {"user_id": "u_jane"}, _context()
    )
    assert "Parameter user_id must be the acting user" in verdict.errors


def test_tool_parameters_block_self_messages(validator):
    verdict = validator.validate_tool_parameters(
        "send_message", {"sender_id": "u_alex", "recipient_id": "u_alex", "content": "note"}, _context()
    )
    assert "Sender and recipient are the same user" in verdict.errors
    verdict = validator.validate_tool_parameters(
        "send_message",
        {"sender_id": "u_alex", "recipient_id": "u_alex", "content": "note", "allow_self_message": True},
        _context(),
    )
    assert verdict.valid is True


def test_tool_parameters_warn_on_unexpected(validator):
    verdict = validator.validate_tool_parameters(
        "get_conversations", {"user_id": "u_alex", "colour": "blue"}, _context()
    )
    assert verdict.valid is True
    assert "Unexpected parameter colour for get_conversations" in verdict.warnings


def test_parameter_check_is_repeatable_and_leaves_input_alone(validator):
    parameters = {"sender_id": "u_alex", "recipient_id": "[contact_id]", "extra": 1}
    snapshot = dict(parameters)
    first = validator.validate_tool_parameters("send_message", parameters, _context())
    second = validator.validate_tool_parameters("send_message", parameters, _context())
    assert first == second
    assert first.valid is False
    assert parameters == snapshot
