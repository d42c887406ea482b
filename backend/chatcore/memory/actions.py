from __future__ import annotations

from typing import Any, Optional

from chatcore.memory.types import MemoryAction

_VALID_TYPES = {"create", "update", "delete"}
_REFERENCE_KEYS = ("match", "memory", "target", "existing")


def normalize_memory_actions(payload: Any) -> list[MemoryAction]:
    """Normalize editor output into ``MemoryAction`` values.

    Accepts ``{"actions": [...]}`` or ``{"create": [...], "update": [...],
    "delete": [...]}``. Anything else yields an empty list.
    """

    actions: list[MemoryAction] = []
    if not isinstance(payload, dict):
        return actions

    raw_actions = payload.get("actions")
    if isinstance(raw_actions, list):
        for item in raw_actions:
            action = _coerce_action(item)
            if action is not None:
                actions.append(action)
        return actions

    for item in _as_list(payload.get("create")):
        text = item.get("text") if isinstance(item, dict) else item
        action = _coerce_action({"type": "create", "text": text})
        if action is not None:
            actions.append(action)

    for item in _as_list(payload.get("update")):
        if not isinstance(item, dict):
            continue
        action = _coerce_action({"type": "update", **item})
        if action is not None:
            actions.append(action)

    for item in _as_list(payload.get("delete")):
        if isinstance(item, str):
            action = _coerce_action({"type": "delete", "match": item})
        elif isinstance(item, dict):
            action = _coerce_action({"type": "delete", **item})
        else:
            action = None
        if action is not None:
            actions.append(action)
    return actions


def _coerce_action(item: Any) -> Optional[MemoryAction]:
    if not isinstance(item, dict):
        return None
    action_type = str(item.get("type") or item.get("action") or "").strip().lower()
    if action_type not in _VALID_TYPES:
        return None

    memory_id = _text_or_none(item.get("id"))
    text = _text_or_none(item.get("text"))
    reference = next(
        (value for value in (_text_or_none(item.get(key)) for key in _REFERENCE_KEYS) if value),
        None,
    )

    if action_type == "create":
        return MemoryAction(type="create", text=text)
    if action_type == "update":
        return MemoryAction(type="update", id=memory_id, text=text, match=reference)
    return MemoryAction(type="delete", id=memory_id, match=reference or text)


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _text_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None
