"""Token estimation for messages and artifacts.

The estimator is a character heuristic (~4 chars per token). It is pure and
monotonic in text length; no tokenizer is loaded.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import TYPE_CHECKING

from chatcompress.messages import ChatMessage

if TYPE_CHECKING:
    from chatcompress.models import CompressionArtifact

AVG_CHARS_PER_TOKEN = 4
COMPRESSED_LINES_PLACEHOLDER = "... [compressed] ..."


def estimate_tokens(text: str | None, avg_chars_per_token: int = AVG_CHARS_PER_TOKEN) -> int:
    """Estimate the token count of a string.

    Args:
        text: Text to measure.
        avg_chars_per_token: Characters per token for the heuristic.

    Returns:
        ``ceil(len(text) / avg_chars_per_token)``, or 0 for empty text.
    """
    if not text:
        return 0
    return math.ceil(len(text) / avg_chars_per_token)


def estimate_tokens_for_lines(lines: Iterable[str]) -> int:
    """Estimate tokens for lines joined by newlines."""
    return estimate_tokens("\n".join(lines))


def compress_lines(
    lines: list[str],
    keep_head: int = 8,
    keep_tail: int = 4,
    placeholder: str = COMPRESSED_LINES_PLACEHOLDER,
) -> list[str]:
    """Keep the head and tail of a long list of lines, eliding the middle.

    Lists short enough to fit are returned as a copy.
    """
    if len(lines) <= keep_head + keep_tail:
        return list(lines)
    tail = lines[-keep_tail:] if keep_tail > 0 else []
    return [*lines[:keep_head], placeholder, *tail]


def extract_message_text(message: ChatMessage) -> str:
    """Flatten a message into the text its token count is based on.

    Each part contributes its own text; parts are joined by newlines. A
    message without countable parts falls back to its ``content`` string.
    """
    segments = [segment for segment in (part.token_text() for part in message.parts) if segment]
    if segments:
        return "\n".join(segments)
    return message.content if isinstance(message.content, str) else ""


def calculate_tokens_for_messages(messages: Iterable[ChatMessage]) -> int:
    """Sum the token estimates of a list of messages."""
    return sum(estimate_tokens(extract_message_text(message)) for message in messages)


def artifact_text(artifact: CompressionArtifact) -> str:
    """Text an artifact contributes: title and summary joined by a newline."""
    return "\n".join(segment for segment in (artifact.title, artifact.summary) if segment is not None)


def calculate_tokens_for_artifacts(artifacts: Iterable[CompressionArtifact]) -> int:
    """Sum the token estimates of a list of artifacts."""
    return sum(estimate_tokens(artifact_text(artifact)) for artifact in artifacts)


def estimate_token_length(value: str | ChatMessage | CompressionArtifact | None) -> int:
    """Estimate tokens for a string, a message or an artifact."""
    if value is None:
        return 0
    if isinstance(value, str):
        return estimate_tokens(value)
    if isinstance(value, ChatMessage):
        return estimate_tokens(extract_message_text(value))
    return estimate_tokens(artifact_text(value))
