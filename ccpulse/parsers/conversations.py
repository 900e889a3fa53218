"""Parse append-only JSONL conversation logs into ordered Message sequences."""
from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ccpulse.date_utils import parse_timestamp
from ccpulse.errors import ParseWarning
from ccpulse.models import ConversationSummary, Message, ToolInvocation

logger = logging.getLogger("ccpulse.parser")

_MESSAGE_ROLES = {"user", "assistant"}
_SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]+$")
_PROJECT_CONVERSATION_FILENAME = "conversation.jsonl"
_EXCERPT_CHARS = 120
# Rough chars-per-token ratio for English prose and code.
_CHARS_PER_TOKEN = 4


@dataclass
class ParseResult:
    messages: list[Message] = field(default_factory=list)
    summary: ConversationSummary = field(default_factory=ConversationSummary)
    warnings: list[ParseWarning] = field(default_factory=list)


def _normalize_conversation_id(raw_id: str) -> str:
    cleaned = raw_id.strip()
    if not cleaned:
        return ""
    if _SAFE_ID_PATTERN.match(cleaned):
        return cleaned
    return hashlib.sha1(cleaned.encode("utf-8")).hexdigest()[:20]


def conversation_id_for_path(path: str | Path) -> str:
    """Derive a stable conversation ID from the source file path.

    Per-project `conversation.jsonl` files are identified by their directory;
    every other transcript by its file stem.
    """
    candidate = Path(path)
    raw = candidate.parent.name if candidate.name == _PROJECT_CONVERSATION_FILENAME else candidate.stem
    return _normalize_conversation_id(raw) or hashlib.sha1(str(candidate).encode("utf-8")).hexdigest()[:20]


def project_path_for(path: str | Path, root: str | Path) -> str:
    """Return the project directory (first level below the watch root) for a transcript."""
    candidate = Path(path)
    try:
        relative = candidate.relative_to(Path(root))
    except ValueError:
        return candidate.parent.name
    if len(relative.parts) > 1:
        return relative.parts[0]
    return ""


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def _content_blocks(content: Any) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, dict):
        return [content]
    if isinstance(content, list):
        blocks: list[dict[str, Any]] = []
        for block in content:
            if isinstance(block, str):
                blocks.append({"type": "text", "text": block})
            elif isinstance(block, dict):
                blocks.append(block)
        return blocks
    return []


def _usage_tokens(usage: Any) -> int:
    if not isinstance(usage, dict):
        return 0
    total = 0
    for key in ("input_tokens", "output_tokens"):
        try:
            total += max(0, int(usage.get(key) or 0))
        except (TypeError, ValueError):
            continue
    return total


def _extract_record(entry: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Normalize one log entry into a message record, or None for non-message entries.

    Accepts both the nested transcript shape (`{"type", "message": {...}}`)
    and a flat `{"role", "content", "timestamp"}` record. A role that is present
    but not a string raises ValueError.
    """
    entry_type = entry.get("type")
    if isinstance(entry_type, str) and entry_type and entry_type not in _MESSAGE_ROLES:
        return None
    if entry.get("isMeta") is True:
        return None

    message = entry.get("message")
    if isinstance(message, dict):
        role = message.get("role") or entry_type
        content = message.get("content")
        model = message.get("model")
        usage = message.get("usage")
        message_id = message.get("id")
    else:
        role = entry.get("role") or entry_type
        content = entry.get("content")
        model = entry.get("model")
        usage = entry.get("usage")
        message_id = None

    if role is not None and not isinstance(role, str):
        raise ValueError(f"role is a {type(role).__name__}, expected a string")
    if role not in _MESSAGE_ROLES:
        return None

    return {
        "id": entry.get("uuid") or entry.get("id") or message_id,
        "role": role,
        "timestamp": parse_timestamp(entry.get("timestamp")),
        "blocks": _content_blocks(content),
        "parentId": entry.get("parentUuid") or entry.get("parentId"),
        "model": model if isinstance(model, str) and model else None,
        "usageTokens": _usage_tokens(usage),
    }


def _collect_blocks(
    blocks: list[dict[str, Any]],
) -> tuple[list[str], list[dict[str, Any]], list[tuple[str, bool]]]:
    """Split content blocks into text, tool invocations and (tool_use_id, is_error) results."""
    texts: list[str] = []
    tools: list[dict[str, Any]] = []
    results: list[tuple[str, bool]] = []
    for block in blocks:
        block_type = block.get("type")
        if block_type == "text":
            text = block.get("text")
            if isinstance(text, str) and text.strip():
                texts.append(text)
        elif block_type == "tool_use":
            tools.append({
                "id": block.get("id") if isinstance(block.get("id"), str) else None,
                "toolName": str(block.get("name") or ""),
                "hasResult": False,
                "isError": False,
            })
        elif block_type == "tool_result":
            results.append((str(block.get("tool_use_id") or ""), bool(block.get("is_error"))))
    return texts, tools, results


def parse_conversation(raw_content: str) -> ParseResult:
    """Parse raw JSONL content into messages (file order), a summary and per-line warnings.

    Each line is parsed independently; malformed lines (including a truncated
    final line from a write in progress) are skipped and recorded as warnings.
    Tool results are attached to the invocation they answer, and user entries
    carrying only tool results are not emitted as messages.
    """
    warnings: list[ParseWarning] = []
    pending: list[dict[str, Any]] = []
    tool_index: dict[str, tuple[int, int]] = {}
    reported_tokens = 0

    for line_number, line in enumerate(raw_content.splitlines(), start=1):
        stripped = line.strip()
        if not stripped:
            continue
        try:
            entry = json.loads(stripped)
        except json.JSONDecodeError as exc:
            warnings.append(ParseWarning(line_number, f"invalid JSON: {exc.msg}", stripped[:_EXCERPT_CHARS]))
            continue
        if not isinstance(entry, dict):
            warnings.append(ParseWarning(line_number, "record is not a JSON object", stripped[:_EXCERPT_CHARS]))
            continue

        try:
            record = _extract_record(entry)
            if record is None:
                continue
            texts, tools, results = _collect_blocks(record["blocks"])
        except (TypeError, ValueError) as exc:
            warnings.append(ParseWarning(line_number, f"unrecognized record: {exc}", stripped[:_EXCERPT_CHARS]))
            continue
        reported_tokens += record["usageTokens"]

        for tool_use_id, is_error in results:
            location = tool_index.get(tool_use_id)
            if location is not None:
                owner, position = location
                invocation = pending[owner]["tools"][position]
                invocation["hasResult"] = True
                invocation["isError"] = is_error

        if record["role"] == "user" and results and not texts and not tools:
            continue

        index = len(pending)
        for position, tool in enumerate(tools):
            if tool["id"]:
                tool_index[tool["id"]] = (index, position)
        pending.append({
            "id": str(record["id"] or f"line-{line_number}"),
            "role": record["role"],
            "timestamp": record["timestamp"],
            "textContent": "\n".join(texts) if texts else None,
            "tools": tools,
            "parentId": str(record["parentId"]) if record["parentId"] else None,
            "model": record["model"],
        })

    messages = [
        Message(
            id=item["id"],
            role=item["role"],
            timestamp=item["timestamp"],
            textContent=item["textContent"],
            toolInvocations=tuple(ToolInvocation(**tool) for tool in item["tools"]),
            parentId=item["parentId"],
            model=item["model"],
        )
        for item in pending
    ]

    timestamps = [message.timestamp for message in messages if message.timestamp is not None]
    summary = ConversationSummary(
        messageCount=len(messages),
        estimatedTokens=estimate_tokens(raw_content),
        reportedTokens=reported_tokens,
        toolInvocationCount=sum(len(message.toolInvocations) for message in messages),
        lastActivity=max(timestamps) if timestamps else None,
        warningCount=len(warnings),
    )
    if warnings:
        logger.debug("Skipped %d malformed line(s) while parsing conversation", len(warnings))
    return ParseResult(messages=messages, summary=summary, warnings=warnings)


def thread_for(messages: list[Message], leaf_id: str) -> list[Message]:
    """Reconstruct the parent chain ending at `leaf_id`, oldest first."""
    by_id = {message.id: message for message in messages}
    chain: list[Message] = []
    seen: set[str] = set()
    current = by_id.get(leaf_id)
    while current is not None and current.id not in seen:
        seen.add(current.id)
        chain.append(current)
        current = by_id.get(current.parentId) if current.parentId else None
    chain.reverse()
    return chain
