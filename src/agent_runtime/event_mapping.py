"""Translate finished response items into host notifications.

Only items that are purely informational are mapped here. Items that need
a side effect (function calls, tool outputs, shell calls) map to nothing:
the turn executor handles them itself.
"""

from typing import Any

from agent_runtime.schemas.notifications import Notification, NotificationType

_USER_TEXT_PART_TYPES = ("text", "input_text")


def _message_kind(text: str) -> str:
    trimmed = text.lstrip()
    if trimmed.startswith("<environment_context>"):
        return "environment_context"
    if trimmed.startswith("<user_instructions>"):
        return "user_instructions"
    return "plain"


def _map_message(item: dict[str, Any]) -> list[Notification]:
    if item.get("role") == "system":
        return []

    notifications: list[Notification] = []
    text_parts: list[str] = []
    images: list[str] = []
    # Decided by the first user text part only.
    kind: str | None = None

    for part in item.get("content") or []:
        part_type = part.get("type")
        if part_type in _USER_TEXT_PART_TYPES:
            text = part.get("text", "")
            if kind is None:
                kind = _message_kind(text)
            text_parts.append(text)
        elif part_type == "input_image":
            images.append(part.get("image_url", ""))
        elif part_type == "output_text":
            notifications.append(
                Notification(
                    type=NotificationType.AGENT_MESSAGE,
                    data={"message": part.get("text", "")},
                )
            )

    if text_parts or images:
        notifications.append(
            Notification(
                type=NotificationType.USER_MESSAGE,
                data={
                    "message": "".join(text_parts),
                    "kind": kind,
                    "images": images or None,
                },
            )
        )
    return notifications


def _map_reasoning(item: dict[str, Any], show_raw_reasoning: bool) -> list[Notification]:
    notifications = [
        Notification(
            type=NotificationType.AGENT_REASONING,
            data={"content": summary.get("text", "")},
        )
        for summary in item.get("summary") or []
        if summary.get("type") == "summary_text"
    ]
    if show_raw_reasoning:
        for content in item.get("content") or []:
            text = content.get("text", "") if content.get("type") in ("reasoning_text", "text") else ""
            notifications.append(
                Notification(
                    type=NotificationType.AGENT_REASONING_RAW_CONTENT,
                    data={"content": text},
                )
            )
    return notifications


def _map_web_search_call(item: dict[str, Any]) -> list[Notification]:
    action = item.get("action") or {}
    if action.get("type") != "search":
        return []
    return [
        Notification(
            type=NotificationType.WEB_SEARCH_END,
            data={"call_id": item.get("id") or "", "query": action.get("query", "")},
        )
    ]


def map_response_item(item: dict[str, Any], show_raw_reasoning: bool = False) -> list[Notification]:
    """Notifications describing one finished item, in display order."""
    item_type = item.get("type")
    if item_type == "message":
        return _map_message(item)
    if item_type == "reasoning":
        return _map_reasoning(item, show_raw_reasoning)
    if item_type == "web_search_call":
        return _map_web_search_call(item)
    return []
