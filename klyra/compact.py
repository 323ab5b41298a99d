"""Conversation messages, token estimates and history compaction."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

_SUMMARY_PREFIX = "Context summary:"
_SUMMARY_MAX_LINES = 12
_SUMMARY_MAX_CONTENT = 220
_DEFAULT_KEEP_TAIL = 12


class Role(str, Enum):
    """Author of a conversation message."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ToolCall:
    """A tool invocation requested by the assistant."""

    name: str = ""
    id: str = ""
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class Message:
    """One entry of a conversation."""

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""
    reasoning: str = ""


@dataclass
class PackStats:
    """Figures describing what packing did to a conversation."""

    original_messages: int = 0
    packed_messages: int = 0
    original_tokens: int = 0
    packed_tokens: int = 0
    summarized: int = 0


def _role_name(role: Role | str) -> str:
    return role.value if isinstance(role, Role) else str(role)


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    return str(value)


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters, rounded up."""
    if not text:
        return 0
    return (len(text) + 3) // 4


def estimate_message_tokens(message: Message) -> int:
    """Estimated tokens for a message, including its tool calls."""
    total = 6 + estimate_tokens(_role_name(message.role)) + estimate_tokens(message.content)
    for call in message.tool_calls:
        total += 8 + estimate_tokens(call.name)
        for key, value in call.arguments.items():
            total += estimate_tokens(key) + estimate_tokens(_format_value(value))
    return total


def estimate_messages_tokens(messages: Sequence[Message]) -> int:
    """Estimated tokens for a whole conversation."""
    return sum(estimate_message_tokens(message) for message in messages)


def pack_messages(
    messages: Sequence[Message], max_tokens: int = 0, max_messages: int = 0
) -> tuple[list[Message], PackStats]:
    """Shrink a conversation to the given limits, summarising what is dropped."""
    stats = PackStats(
        original_messages=len(messages),
        original_tokens=estimate_messages_tokens(messages),
    )
    if not messages:
        return [], stats

    packed = list(messages)
    if max_messages > 0 and len(packed) > max_messages:
        packed = _pack_by_message_count(packed, max_messages)
    if max_tokens > 0 and estimate_messages_tokens(packed) > max_tokens:
        packed = _pack_by_token_budget(packed, max_tokens)
    packed = drop_orphan_tool_messages(packed)

    stats.packed_messages = len(packed)
    stats.packed_tokens = estimate_messages_tokens(packed)
    stats.summarized = stats.original_messages - stats.packed_messages
    if any(message.content.startswith(_SUMMARY_PREFIX) for message in packed):
        stats.summarized += 1
    return packed, stats


def compact_messages(
    messages: Sequence[Message], max_tokens: int = 0, keep_tail: int = 0
) -> tuple[list[Message], PackStats]:
    """Pack a conversation keeping roughly ``keep_tail`` recent messages."""
    if keep_tail <= 0:
        keep_tail = _DEFAULT_KEEP_TAIL
    return pack_messages(messages, max_tokens, keep_tail + 2)


def drop_orphan_tool_messages(messages: Sequence[Message]) -> list[Message]:
    """Remove tool results whose originating call is not in the conversation."""
    seen_calls: set[str] = set()
    out: list[Message] = []
    for message in messages:
        if message.role == Role.TOOL:
            if message.tool_call_id in seen_calls:
                out.append(message)
            continue
        seen_calls.update(call.id for call in message.tool_calls)
        out.append(message)
    return out


def _split_system(messages: list[Message]) -> tuple[list[Message], list[Message]]:
    if messages and messages[0].role == Role.SYSTEM:
        return [messages[0]], messages[1:]
    return [], messages


def _pack_by_message_count(messages: list[Message], max_messages: int) -> list[Message]:
    if len(messages) <= max_messages:
        return messages
    system, rest = _split_system(messages)
    tail_size = max(1, max_messages - len(system))
    tail_size = min(tail_size, len(rest))
    cut = len(rest) - tail_size
    return _append_summary(system, rest[:cut], rest[cut:])


def _pack_by_token_budget(messages: list[Message], max_tokens: int) -> list[Message]:
    system, rest = _split_system(messages)
    tail: list[Message] = []
    used = estimate_messages_tokens(system)
    for message in reversed(rest):
        cost = estimate_message_tokens(message)
        if used + cost > max_tokens and tail:
            break
        tail.insert(0, message)
        used += cost
    removed_count = len(rest) - len(tail)
    if removed_count <= 0:
        return messages
    return _append_summary(system, rest[:removed_count], tail)


def _append_summary(
    system: list[Message], removed: list[Message], tail: list[Message]
) -> list[Message]:
    out = list(system)
    if removed:
        out.append(Message(role=Role.ASSISTANT, content=_summarize_removed(removed)))
    out.extend(tail)
    return out


def _summarize_removed(messages: list[Message]) -> str:
    lines = [
        f"{_SUMMARY_PREFIX} {len(messages)} older messages were compacted to reduce token use."
    ]
    for message in messages:
        content = message.content.strip()
        if not content and message.tool_calls:
            content = "tool calls: " + ", ".join(call.name for call in message.tool_calls)
        content = " ".join(content.split())
        if not content:
            continue
        if len(content) > _SUMMARY_MAX_CONTENT:
            content = content[:_SUMMARY_MAX_CONTENT] + "..."
        lines.append(f"- {_role_name(message.role)}: {content}")
        if len(lines) >= _SUMMARY_MAX_LINES:
            lines.append("- ...")
            break
    return "\n".join(lines)