"""
Transcript parsing: pull plain text out of JSONL session transcripts.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

#: Wrapper ``type`` values whose ``message`` field carries the actual message.
WRAPPED_MESSAGE_TYPES = frozenset({"message", "user", "assistant"})


@dataclass(frozen=True)
class TranscriptMessage:
    role: str
    content: str
    timestamp: datetime | None = None


def extract_text_content(content: Any) -> str:
    """
    Return the plain text carried by a message ``content`` field.

    A string is returned unchanged.  A list contributes the ``text`` of each
    part that has one (bare strings count as text), joined by newlines.
    Tool calls, images and other non-text parts are dropped.
    """
    if isinstance(content, str):
        return content

    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                parts.append(item["text"])
        return "\n".join(parts)

    return ""


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime, or ``None``."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_message(record: Any) -> TranscriptMessage | None:
    """Turn one decoded transcript line into a message, if it is one."""
    if not isinstance(record, dict):
        return None

    if record.get("role") and record.get("content"):
        role = record["role"]
        content = record["content"]
    elif record.get("type") in WRAPPED_MESSAGE_TYPES and isinstance(record.get("message"), dict):
        role = record["message"].get("role")
        content = record["message"].get("content")
    else:
        return None

    text = extract_text_content(content)
    if not text or not isinstance(role, str):
        return None
    return TranscriptMessage(
        role=role,
        content=text,
        timestamp=parse_timestamp(record.get("timestamp")),
    )


def parse_transcript(path: str | Path) -> list[TranscriptMessage]:
    """
    Read a JSONL transcript and return its messages in file order.

    Lines that are blank, not JSON, or not a recognised message shape are
    skipped.  A missing or unreadable file yields an empty list.
    """
    messages: list[TranscriptMessage] = []
    try:
        with open(path, encoding="utf-8", errors="replace") as fh:
            for lineno, line in enumerate(fh, 1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed transcript line %d in %s", lineno, path)
                    continue
                message = parse_message(record)
                if message is not None:
                    messages.append(message)
    except OSError as exc:
        logger.info("Transcript %s not readable: %s", path, exc)
        return []
    return messages


def session_id_from_path(path: str | Path) -> str:
    """Derive the session identifier from a transcript filename."""
    name = Path(path).name
    stem, dot, _ext = name.rpartition(".")
    return stem if dot and stem else name
