"""
Conversation transcript size control.

Screenshots dominate request size, so older turns lose their image blocks
while keeping their text and tool_result structure intact.
"""

import json
from typing import Any, Dict, List

from uitest_agent.logging import get_logger

logger = get_logger(__name__)

Message = Dict[str, Any]

IMAGE_REMOVED_PLACEHOLDER = "[screenshot removed to save tokens]"

# Rough sizing used for logging and purge decisions
CHARS_PER_TOKEN = 4
TOKENS_PER_IMAGE = 1000


def _is_image(block: Any) -> bool:
    return isinstance(block, dict) and block.get("type") == "image"


def message_has_images(message: Message) -> bool:
    """Check whether a message carries image blocks (directly or in tool results)."""
    content = message.get("content")
    if not isinstance(content, list):
        return False
    for block in content:
        if _is_image(block):
            return True
        if isinstance(block, dict) and block.get("type") == "tool_result":
            inner = block.get("content")
            if isinstance(inner, list) and any(_is_image(b) for b in inner):
                return True
    return False


def _strip_images(blocks: List[Any]) -> List[Any]:
    kept = [b for b in blocks if not _is_image(b)]
    if len(kept) != len(blocks):
        kept.append({"type": "text", "text": IMAGE_REMOVED_PLACEHOLDER})
    return kept


def _strip_message(message: Message) -> Message:
    stripped = dict(message)
    content = []
    removed_top_level = False
    for block in message["content"]:
        if _is_image(block):
            removed_top_level = True
            continue
        if isinstance(block, dict) and block.get("type") == "tool_result":
            inner = block.get("content")
            if isinstance(inner, list):
                block = dict(block, content=_strip_images(inner))
        content.append(block)
    if removed_top_level:
        content.append({"type": "text", "text": IMAGE_REMOVED_PLACEHOLDER})
    stripped["content"] = content
    return stripped


def purge_old_images(
    messages: List[Message],
    keep_recent_turns: int = 20,
    pin_first_turn: bool = True,
) -> List[Message]:
    """
    Strip image payloads from all but the most recent image-bearing turns.

    Args:
        messages: Transcript in API message format (not modified)
        keep_recent_turns: Number of newest image-bearing user turns kept intact
        pin_first_turn: Keep the opening turn (scenario text and hint images) intact

    Returns:
        New transcript with the same length and ordering
    """
    image_turns = [
        i for i, m in enumerate(messages)
        if m.get("role") == "user" and message_has_images(m)
    ]
    if pin_first_turn and image_turns and image_turns[0] == 0:
        image_turns = image_turns[1:]

    to_strip = set(image_turns[:-keep_recent_turns] if keep_recent_turns > 0 else image_turns)
    if not to_strip:
        return list(messages)

    result = [
        _strip_message(m) if i in to_strip else m
        for i, m in enumerate(messages)
    ]

    logger.debug(
        "Purged old screenshots",
        stripped_turns=len(to_strip),
        kept_turns=len(image_turns) - len(to_strip),
    )
    return result


def should_purge(messages: List[Message], purge_after_messages: int = 40) -> bool:
    return len(messages) > purge_after_messages


def estimate_token_count(messages: List[Message]) -> int:
    """
    Rough token estimate for a transcript.

    Text counts ~4 characters per token, each image a flat 1000 tokens.
    """
    total = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            total += len(content) // CHARS_PER_TOKEN
            continue
        for block in content or []:
            total += _estimate_block(block)
    return total


def _estimate_block(block: Any) -> int:
    if not isinstance(block, dict):
        return len(str(block)) // CHARS_PER_TOKEN
    kind = block.get("type")
    if kind == "image":
        return TOKENS_PER_IMAGE
    if kind == "text":
        return len(block.get("text", "")) // CHARS_PER_TOKEN
    if kind == "tool_result":
        inner = block.get("content")
        if isinstance(inner, list):
            return sum(_estimate_block(b) for b in inner)
        return len(str(inner or "")) // CHARS_PER_TOKEN
    if kind == "tool_use":
        return len(json.dumps(block.get("input", {}))) // CHARS_PER_TOKEN
    return len(json.dumps(block, default=str)) // CHARS_PER_TOKEN

