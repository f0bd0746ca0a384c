"""Per-message compaction metadata.

Two independent facts are embedded in a message's metadata bag under a single
reserved key: whether the message is pinned, and how the latest snapshot
treated it. Every writer compares the normalized old and new values and hands
back the same message object when nothing changed; callers rely on identity to
skip redundant re-renders and re-persists.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any, Literal, NamedTuple

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from chatcompress.messages import ChatMessage, TextPart
from chatcompress.models import (
    CompressionArtifact,
    CompressionPinnedMessage,
    CompressionSnapshot,
    CompressionUsage,
)

COMPRESSION_MESSAGE_METADATA_KEY = "chatcompress"
COMPRESSION_EVENT_ID_PREFIX = "compression-event"
MAX_EVENT_ARTIFACTS = 5
MAX_EVENT_SUMMARY_CHARS = 240

_STATE_CONFIG = {"alias_generator": to_camel, "populate_by_name": True}


class MessagePinnedState(BaseModel):
    """Pinned fact stored on a message."""

    model_config = _STATE_CONFIG

    pinned_at: int
    pinned_by: Literal["user", "system"] | None = None
    reason: str | None = None


class MessageCompressionState(BaseModel):
    """Compression fact stored on a message."""

    model_config = _STATE_CONFIG

    snapshot_id: str
    compressed_at: int
    surviving: bool
    kind: Literal["message", "event"] = "message"
    reason: str | None = None
    artifact_ids: list[str] | None = Field(None, description="Artifacts covering this message")


class MetadataApplyResult(NamedTuple):
    """Transcript after a metadata pass and whether anything changed."""

    messages: list[ChatMessage]
    changed: bool


def _finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _field(value: Any, camel: str, snake: str) -> Any:
    if isinstance(value, dict):
        return value.get(camel, value.get(snake))
    return getattr(value, snake, None)


def normalize_pinned_state(pinned: MessagePinnedState | dict[str, Any] | None) -> MessagePinnedState | None:
    """Validate a pinned state; None when it lacks a finite ``pinnedAt``."""
    if not pinned:
        return None
    pinned_at = _field(pinned, "pinnedAt", "pinned_at")
    if not _finite_number(pinned_at):
        return None
    pinned_by = _field(pinned, "pinnedBy", "pinned_by")
    reason = _field(pinned, "reason", "reason")
    return MessagePinnedState(
        pinned_at=int(pinned_at),
        pinned_by=pinned_by if pinned_by in ("user", "system") else None,
        reason=reason if isinstance(reason, str) else None,
    )


def normalize_compression_state(
    compression: MessageCompressionState | dict[str, Any] | None,
) -> MessageCompressionState | None:
    """Validate a compression state.

    Requires a non-empty ``snapshotId`` and a finite ``compressedAt``.
    ``kind`` defaults to ``"message"``; artifact ids are de-duplicated and
    dropped when empty.
    """
    if not compression:
        return None
    snapshot_id = _field(compression, "snapshotId", "snapshot_id")
    compressed_at = _field(compression, "compressedAt", "compressed_at")
    if not isinstance(snapshot_id, str) or not snapshot_id:
        return None
    if not _finite_number(compressed_at):
        return None

    reason = _field(compression, "reason", "reason")
    raw_ids = _field(compression, "artifactIds", "artifact_ids")
    artifact_ids = None
    if isinstance(raw_ids, (list, tuple)):
        deduped = list(dict.fromkeys(i for i in raw_ids if isinstance(i, str) and i))
        artifact_ids = deduped or None

    return MessageCompressionState(
        snapshot_id=snapshot_id,
        compressed_at=int(compressed_at),
        surviving=bool(_field(compression, "surviving", "surviving")),
        kind="event" if _field(compression, "kind", "kind") == "event" else "message",
        reason=reason if isinstance(reason, str) else None,
        artifact_ids=artifact_ids,
    )


def _dump(state: BaseModel | None) -> dict[str, Any] | None:
    if state is None:
        return None
    return state.model_dump(by_alias=True, exclude_none=True)


def _normalized_bag(bag: dict[str, Any] | None) -> dict[str, Any] | None:
    """Comparable form of a metadata bag: normalized facts plus foreign keys."""
    if bag is None:
        return None
    result = {key: value for key, value in bag.items() if key not in ("pinned", "compression")}
    result["pinned"] = _dump(normalize_pinned_state(bag.get("pinned")))
    result["compression"] = _dump(normalize_compression_state(bag.get("compression")))
    return result


def get_compression_metadata(message: ChatMessage) -> dict[str, Any] | None:
    """Return the reserved metadata bag of a message, if present."""
    metadata = message.metadata
    if not isinstance(metadata, dict):
        return None
    value = metadata.get(COMPRESSION_MESSAGE_METADATA_KEY)
    return value if isinstance(value, dict) else None


def get_pinned_state(message: ChatMessage) -> MessagePinnedState | None:
    bag = get_compression_metadata(message)
    return normalize_pinned_state(bag.get("pinned")) if bag else None


def get_compression_state(message: ChatMessage) -> MessageCompressionState | None:
    bag = get_compression_metadata(message)
    return normalize_compression_state(bag.get("compression")) if bag else None


def _write_bag(message: ChatMessage, bag: dict[str, Any] | None) -> ChatMessage:
    metadata = dict(message.metadata) if isinstance(message.metadata, dict) else {}
    if bag:
        metadata[COMPRESSION_MESSAGE_METADATA_KEY] = bag
    else:
        metadata.pop(COMPRESSION_MESSAGE_METADATA_KEY, None)

    if not metadata:
        if not message.metadata:
            return message
        return message.model_copy(update={"metadata": None})
    return message.model_copy(update={"metadata": metadata})


def _with_fact(message: ChatMessage, key: str, value: dict[str, Any] | None) -> ChatMessage:
    previous = get_compression_metadata(message)
    if value is not None:
        next_bag = dict(previous or {})
        next_bag[key] = value
    elif previous is None:
        next_bag = None
    else:
        next_bag = {k: v for k, v in previous.items() if k != key} or None

    if _normalized_bag(previous) == _normalized_bag(next_bag):
        return message
    return _write_bag(message, next_bag)


def with_pinned_state(
    message: ChatMessage,
    pinned: MessagePinnedState | CompressionPinnedMessage | dict[str, Any] | None,
) -> ChatMessage:
    """Set or clear the pinned fact of a message.

    Args:
        message: Message to update.
        pinned: Pinned state (a ``CompressionPinnedMessage`` is accepted too),
            or None to clear it.

    Returns:
        The same message object if the stored state is unchanged, otherwise
        an updated copy.
    """
    return _with_fact(message, "pinned", _dump(normalize_pinned_state(pinned)))


def with_compression_state(
    message: ChatMessage,
    compression: MessageCompressionState | dict[str, Any] | None,
) -> ChatMessage:
    """Set or clear the compression fact of a message.

    Returns:
        The same message object if the stored state is unchanged, otherwise
        an updated copy.
    """
    return _with_fact(message, "compression", _dump(normalize_compression_state(compression)))


def extract_pinned_messages(messages: Sequence[ChatMessage]) -> list[CompressionPinnedMessage]:
    """Rebuild pins from the pinned facts embedded in a transcript."""
    result = []
    for message in messages:
        if not message.id:
            continue
        pinned = get_pinned_state(message)
        if pinned is None:
            continue
        result.append(
            CompressionPinnedMessage(
                id=message.id,
                message=message,
                pinned_at=pinned.pinned_at,
                pinned_by=pinned.pinned_by,
                reason=pinned.reason,
            )
        )
    return result


def apply_compression_metadata(
    messages: list[ChatMessage],
    snapshot: CompressionSnapshot | None,
) -> MetadataApplyResult:
    """Stamp every message with how ``snapshot`` treated it.

    Excluded messages are marked non-surviving, survivors surviving, and any
    other message is cleared. The event message of the same snapshot is left
    alone. Without a snapshot every compression fact is removed.
    """
    if not messages:
        return MetadataApplyResult(messages, False)

    surviving = set(snapshot.surviving_message_ids) if snapshot else set()
    excluded = set(snapshot.excluded_message_ids or []) if snapshot else set()

    changed = False
    updated = []
    for message in messages:
        target = None
        if snapshot is not None and message.id:
            current = get_compression_state(message)
            if current is not None and current.kind == "event" and current.snapshot_id == snapshot.id:
                updated.append(message)
                continue
            if message.id in excluded:
                target = MessageCompressionState(
                    snapshot_id=snapshot.id,
                    compressed_at=snapshot.created_at,
                    surviving=False,
                    reason="excluded",
                )
            elif message.id in surviving:
                target = MessageCompressionState(
                    snapshot_id=snapshot.id,
                    compressed_at=snapshot.created_at,
                    surviving=True,
                    reason="survivor",
                )
        next_message = with_compression_state(message, target)
        if next_message is not message:
            changed = True
        updated.append(next_message)

    return MetadataApplyResult(updated if changed else messages, changed)


def _truncate(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return f"{value[: max(0, max_length - 1)]}…"


def format_timestamp(timestamp_ms: int) -> str:
    """Format epoch milliseconds as an ISO-8601 UTC string with millisecond precision."""
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_event_text(
    snapshot: CompressionSnapshot,
    artifacts: Sequence[CompressionArtifact],
    usage: CompressionUsage | None,
) -> str:
    """Human-readable digest of a compaction run."""
    reason = f" ({snapshot.reason})" if snapshot.reason else ""
    lines = [f"Context compression applied{reason} at {format_timestamp(snapshot.created_at)}."]

    before = snapshot.tokens_before
    after = snapshot.tokens_after
    saved = snapshot.tokens_saved
    if saved is None and before is not None and after is not None:
        saved = max(before - after, 0)
    token_parts = []
    if before is not None:
        token_parts.append(f"before {before}")
    if after is not None:
        token_parts.append(f"after {after}")
    if saved is not None:
        token_parts.append(f"saved {saved}")
    if token_parts:
        lines.append(f"Tokens: {', '.join(token_parts)}.")

    if usage is not None and usage.budget is not None:
        remaining = f", remaining {usage.remaining_tokens}" if usage.remaining_tokens is not None else ""
        lines.append(f"Budget: {usage.budget}{remaining}.")

    if artifacts:
        lines.append("Artifacts:")
        for artifact in list(artifacts)[:MAX_EVENT_ARTIFACTS]:
            title = f"{artifact.title}: " if artifact.title else ""
            summary = _truncate(artifact.summary, MAX_EVENT_SUMMARY_CHARS) if artifact.summary else ""
            lines.append(f" • {title}{summary}".strip())

    return "\n".join(lines)


def build_compression_event_message(
    snapshot: CompressionSnapshot,
    artifacts: Sequence[CompressionArtifact],
    usage: CompressionUsage | None,
) -> ChatMessage:
    """Create the synthetic system message announcing a snapshot."""
    message = ChatMessage(
        id=f"{COMPRESSION_EVENT_ID_PREFIX}-{snapshot.id}",
        role="system",
        parts=[TextPart(text=build_event_text(snapshot, artifacts, usage))],
    )
    return with_compression_state(
        message,
        MessageCompressionState(
            snapshot_id=snapshot.id,
            compressed_at=snapshot.created_at,
            surviving=True,
            kind="event",
            reason="compression-event",
        ),
    )


def _first_text(message: ChatMessage) -> str:
    if message.parts and isinstance(message.parts[0], TextPart):
        return message.parts[0].text
    return ""


def ensure_compression_event_message(
    messages: list[ChatMessage],
    snapshot: CompressionSnapshot,
    artifacts: Sequence[CompressionArtifact],
    usage: CompressionUsage | None,
) -> MetadataApplyResult:
    """Insert the event message for ``snapshot`` or refresh it in place."""
    event = build_compression_event_message(snapshot, artifacts, usage)
    for index, existing in enumerate(messages):
        if existing.id != event.id:
            continue
        unchanged = _first_text(existing) == _first_text(event) and _normalized_bag(
            get_compression_metadata(existing)
        ) == _normalized_bag(get_compression_metadata(event))
        if unchanged:
            return MetadataApplyResult(messages, False)
        updated = list(messages)
        updated[index] = event
        return MetadataApplyResult(updated, True)
    return MetadataApplyResult([*messages, event], True)
