from aiflow.context import (
    detect_entity_key,
    evaluate_condition,
    extract_entity_info,
    merge_context,
    render_template,
    resolve_mapping,
    resolve_params,
)

CONTEXT = {
    "step_results": {"0": {"success": True, "data": {"id": "c-1", "full_name": "Anna Smith"}}},
    "invoice": {"amount": 250, "currency": "EUR"},
    "contact_name": "Anna",
}


def test_resolve_mapping_forms():
    assert resolve_mapping("{{steps.0.data.id}}", CONTEXT) == "c-1"
    assert resolve_mapping("{{ context.invoice.amount }}", CONTEXT) == 250
    assert resolve_mapping("{{contact_name}}", CONTEXT) == "Anna"
    assert resolve_mapping("{{steps.0}}", CONTEXT)["success"] is True
    assert resolve_mapping("{{steps.4.data.id}}", CONTEXT) is None
    assert resolve_mapping("plain text", CONTEXT) == "plain text"
    assert resolve_mapping(42, CONTEXT) == 42


def test_resolve_params_overlays_resolved_mappings():
    params = resolve_params(
        {"amount": 0, "note": "x"},
        {"amount": "{{invoice.amount}}", "contact_id": "{{steps.0.data.id}}", "gone": "{{nope}}"},
        CONTEXT,
    )
    assert params == {"amount": 250, "note": "x", "contact_id": "c-1"}


def test_render_template_inline():
    text = render_template("Invoice {{invoice.amount}} {{invoice.currency}} for {{missing}}", CONTEXT)
    assert text == "Invoice 250 EUR for "


def test_merge_context_merges_dicts_one_level():
    merged = merge_context(CONTEXT, {"step_results": {"1": {"success": True}}, "contact_name": "Bob"})
    assert set(merged["step_results"]) == {"0", "1"}
    assert merged["contact_name"] == "Bob"
    assert set(CONTEXT["step_results"]) == {"0"}


def test_evaluate_condition_operators():
    assert evaluate_condition({}, CONTEXT)
    assert evaluate_condition({"if": "{{invoice.amount}}", "gt": 100}, CONTEXT)
    assert not evaluate_condition({"if": "{{invoice.amount}}", "lte": 100}, CONTEXT)
    assert evaluate_condition({"if": "{{invoice.currency}}", "eq": "EUR"}, CONTEXT)
    assert evaluate_condition({"if": "{{invoice.currency}}", "neq": "USD"}, CONTEXT)
    assert evaluate_condition({"if": "{{invoice.discount}}", "exists": False}, CONTEXT)
    assert not evaluate_condition({"if": "{{invoice.discount}}", "gt": 1}, CONTEXT)
    assert not evaluate_condition({"if": "{{invoice.currency}}", "gt": 1}, CONTEXT)
    assert evaluate_condition({"if": "{{contact_name}}"}, CONTEXT)


def test_entity_helpers():
    assert detect_entity_key("create_contact") == "contact_id"
    assert detect_entity_key("update_task_status") == "task_id"
    assert detect_entity_key("send_email") is None
    assert detect_entity_key(None) is None

    contact = extract_entity_info({"id": "c-1", "full_name": "Anna", "email": "a@x.io"})
    assert contact == {"contact_id": "c-1", "contact_name": "Anna", "contact_email": "a@x.io"}

    task = extract_entity_info({"id": "t-1", "title": "Call", "status": "open", "topic_id": 3, "project_id": "p-1"})
    assert task["task_id"] == "t-1"
    assert task["project_id"] == "p-1"

    project = extract_entity_info({"id": "p-9", "name": "Launch", "members_count": 4})
    assert project == {"project_id": "p-9", "project_name": "Launch"}

    assert extract_entity_info({"id": "x-1"}) == {"entity_id": "x-1"}
