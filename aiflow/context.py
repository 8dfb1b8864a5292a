"""Helpers for reading and updating the flow context document."""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional

from .persistence.models import get_path

_TEMPLATE = re.compile(r"^\{\{\s*(.+?)\s*\}\}$")
_INLINE_TEMPLATE = re.compile(r"\{\{\s*(.+?)\s*\}\}")

ENTITY_KEYWORDS = ("contact", "project", "task", "deal", "invoice", "contract")


def resolve_mapping(mapping: Any, context: Mapping[str, Any]) -> Any:
    """Resolve a ``{{path}}`` expression against the flow context.

    ``{{steps.N.path}}`` reads from the result of the step at position N,
    ``{{context.path}}`` and ``{{path}}`` read from the context itself.
    Anything that is not a template is returned unchanged.
    """
    if not isinstance(mapping, str):
        return mapping
    match = _TEMPLATE.match(mapping)
    if not match:
        return mapping
    return _lookup(match.group(1), context)


def _lookup(path: str, context: Mapping[str, Any]) -> Any:
    if path.startswith("steps."):
        parts = path.split(".")
        index = parts[1] if len(parts) > 1 else "0"
        step_result = (context.get("step_results") or {}).get(str(index)) or {}
        rest = ".".join(parts[2:])
        return get_path(step_result, rest) if rest else step_result
    if path.startswith("context."):
        return get_path(context, path[len("context."):])
    return get_path(context, path)


def resolve_params(
    params: Mapping[str, Any], mappings: Mapping[str, Any], context: Mapping[str, Any]
) -> Dict[str, Any]:
    """Overlay resolved ``mappings`` onto ``params``; unresolved values are skipped."""
    resolved = dict(params)
    for key, mapping in mappings.items():
        value = resolve_mapping(mapping, context)
        if value is not None:
            resolved[key] = value
    return resolved


def render_template(text: str, context: Mapping[str, Any]) -> str:
    """Substitute every ``{{path}}`` occurring inside ``text``."""

    def _replace(match: re.Match) -> str:
        value = _lookup(match.group(1), context)
        return "" if value is None else str(value)

    return _INLINE_TEMPLATE.sub(_replace, text)


def merge_context(context: Mapping[str, Any], data: Mapping[str, Any]) -> Dict[str, Any]:
    """Return ``context`` updated with ``data``; nested dicts are merged one level deep."""
    merged = dict(context)
    for key, value in data.items():
        existing = merged.get(key)
        if isinstance(value, dict) and isinstance(existing, dict):
            merged[key] = {**existing, **value}
        else:
            merged[key] = value
    return merged


def evaluate_condition(condition: Mapping[str, Any], context: Mapping[str, Any]) -> bool:
    """Evaluate ``{"if": "{{path}}", <op>: operand}`` against the context.

    Supported operators are ``eq``, ``neq``, ``gt``, ``lt``, ``gte``, ``lte``
    and ``exists``. Without an operator the value's truthiness decides; an
    empty condition is always true.
    """
    if not condition or not condition.get("if"):
        return True

    value = resolve_mapping(condition["if"], context)

    try:
        if "eq" in condition:
            return value == condition["eq"]
        if "neq" in condition:
            return value != condition["neq"]
        if "gt" in condition:
            return value is not None and value > condition["gt"]
        if "lt" in condition:
            return value is not None and value < condition["lt"]
        if "gte" in condition:
            return value is not None and value >= condition["gte"]
        if "lte" in condition:
            return value is not None and value <= condition["lte"]
    except TypeError:
        return False
    if "exists" in condition:
        return (value is not None) if condition["exists"] else (value is None)

    return bool(value)


def detect_entity_key(tool_name: Optional[str]) -> Optional[str]:
    """Map a tool name such as ``create_contact`` to the context key ``contact_id``."""
    if not tool_name:
        return None
    for keyword in ENTITY_KEYWORDS:
        if keyword in tool_name:
            return f"{keyword}_id"
    return None


def extract_entity_info(match: Mapping[str, Any]) -> Dict[str, Any]:
    """Pull identifiers out of a search hit, whatever kind of record it is."""
    entities: Dict[str, Any] = {}

    if "task_id" in match or {"title", "status", "topic_id"} <= match.keys():
        entities["task_id"] = match.get("id", match.get("task_id"))
        entities["task_title"] = match.get("title")
        entities["task_status"] = match.get("status")
        entities["project_id"] = match.get("project_id")

    if "contact_id" in match or "full_name" in match or "email" in match:
        entities["contact_id"] = match.get("id", match.get("contact_id"))
        entities["contact_name"] = match.get("full_name", match.get("name"))
        entities["contact_email"] = match.get("email")

    is_task = "task_id" in entities
    if ("project_id" in match and not is_task) or {"name", "members_count"} <= match.keys():
        entities["project_id"] = match.get("id", match.get("project_id"))
        entities["project_name"] = match.get("name", match.get("title"))

    if "deal_id" in match or "deal_value" in match:
        entities["deal_id"] = match.get("id", match.get("deal_id"))
        entities["deal_title"] = match.get("title", match.get("name"))
        entities["deal_value"] = match.get("value", match.get("deal_value"))

    if not entities and "id" in match:
        entities["entity_id"] = match["id"]

    return entities
