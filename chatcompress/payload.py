"""Payload builder: the exact message list sent to the model plus usage.

``build_compression_payload`` is a pure function. It performs no I/O, never
mutates its inputs and never raises on malformed input, so it can be re-run
for previews and for the second pass of a compaction cycle.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from chatcompress.config import NormalizedCompressionConfig, clamp_threshold
from chatcompress.messages import ChatMessage, TextPart
from chatcompress.metadata import get_compression_state
from chatcompress.models import (
    CompressionArtifact,
    CompressionPayloadResult,
    CompressionPinnedMessage,
    CompressionSnapshot,
    CompressionUsage,
    now_ms,
)
from chatcompress.tokens import calculate_tokens_for_artifacts, calculate_tokens_for_messages

ARTIFACT_MESSAGE_PREFIX = "artifact"


def resolve_pinned_messages(
    base_messages: Sequence[ChatMessage],
    pins: Sequence[CompressionPinnedMessage],
) -> tuple[list[ChatMessage], list[str]]:
    """Order pinned messages by transcript position.

    Pins missing from the transcript sort after the rest by ``pinned_at`` and
    id. The transcript copy of a message wins over the copy held by the pin.

    Returns:
        Tuple of (ordered messages, pinned ids).
    """
    if not pins:
        return [], []

    by_id: dict[str, ChatMessage] = {}
    index_of: dict[str, int] = {}
    for index, message in enumerate(base_messages):
        if message.id and message.id not in index_of:
            index_of[message.id] = index
            by_id[message.id] = message

    def sort_key(pin: CompressionPinnedMessage) -> tuple[int, int, int, str]:
        index = index_of.get(pin.message.id)
        if index is not None:
            return (0, index, 0, "")
        return (1, 0, pin.pinned_at, pin.message.id)

    ordered: list[ChatMessage] = []
    pinned_ids: list[str] = []
    for pin in sorted(pins, key=sort_key):
        candidate = by_id.get(pin.message.id, pin.message)
        if not candidate.id or candidate.id in pinned_ids:
            continue
        ordered.append(candidate)
        pinned_ids.append(candidate.id)
    return ordered, pinned_ids


def build_artifact_messages(artifacts: Sequence[CompressionArtifact]) -> list[ChatMessage]:
    """Turn each artifact into a synthetic system message carrying its summary."""
    return [
        ChatMessage(
            id=f"{ARTIFACT_MESSAGE_PREFIX}-{artifact.id}",
            role="system",
            parts=[TextPart(text=artifact.summary)],
        )
        for artifact in artifacts
    ]


def is_surviving(message: ChatMessage, snapshot: CompressionSnapshot | None) -> bool:
    """Decide whether a transcript message survives a snapshot.

    Excluded ids never survive. Otherwise the snapshot's survivor list only
    applies to messages stamped with that snapshot; everything else survives.
    """
    if snapshot is None:
        return True
    if snapshot.excluded_message_ids and message.id in snapshot.excluded_message_ids:
        return False
    if not snapshot.surviving_message_ids:
        return True
    state = get_compression_state(message)
    if state is None or state.snapshot_id != snapshot.id:
        return True
    return message.id in snapshot.surviving_message_ids


def _resolve_budget(value: object) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def build_compression_payload(
    base_messages: Sequence[ChatMessage],
    pinned_messages: Sequence[CompressionPinnedMessage],
    artifacts: Sequence[CompressionArtifact],
    snapshot: CompressionSnapshot | None,
    config: NormalizedCompressionConfig,
    *,
    now: int | None = None,
) -> CompressionPayloadResult:
    """Assemble the model payload and evaluate the budget.

    Args:
        base_messages: Full transcript, oldest first.
        pinned_messages: Pins from the store.
        artifacts: Summary artifacts standing in for trimmed messages.
        snapshot: Latest compaction decision, if any.
        config: Normalized compaction policy.
        now: Timestamp for ``usage.updated_at``. Defaults to the current time.

    Returns:
        Payload messages (pins, survivors, artifact stand-ins), ids, usage
        and the over-budget / compress-now flags.
    """
    pinned_ordered, pinned_ids = resolve_pinned_messages(base_messages, pinned_messages)
    pinned_set = set(pinned_ids)
    artifact_messages = build_artifact_messages(artifacts)

    surviving: list[ChatMessage] = []
    seen: set[str] = set()
    for message in base_messages:
        if not message.id or message.id in pinned_set or message.id in seen:
            continue
        if is_surviving(message, snapshot):
            surviving.append(message)
            seen.add(message.id)

    pinned_tokens = calculate_tokens_for_messages(pinned_ordered)
    surviving_tokens = calculate_tokens_for_messages(surviving)
    artifact_tokens = calculate_tokens_for_artifacts(artifacts)
    total_tokens = pinned_tokens + surviving_tokens + artifact_tokens

    budget = _resolve_budget(config.max_token_budget)
    remaining_tokens = None
    over_budget = False
    if budget is not None:
        remaining_tokens = max(budget - total_tokens, 0)
        if budget > 0:
            over_budget = total_tokens > budget
        elif budget == 0:
            over_budget = total_tokens > 0
        else:
            over_budget = True

    should_compress = False
    if config.enabled and budget is not None:
        if budget <= 0:
            should_compress = total_tokens > 0
        else:
            threshold = clamp_threshold(config.compression_threshold)
            should_compress = total_tokens / budget >= threshold
        if over_budget:
            should_compress = True

    usage = CompressionUsage(
        total_tokens=total_tokens,
        pinned_tokens=pinned_tokens,
        artifact_tokens=artifact_tokens,
        surviving_tokens=surviving_tokens,
        budget=budget,
        remaining_tokens=remaining_tokens,
        updated_at=now if now is not None else now_ms(),
    )

    return CompressionPayloadResult(
        messages=[*pinned_ordered, *surviving, *artifact_messages],
        pinned_message_ids=pinned_ids,
        artifact_ids=[artifact.id for artifact in artifacts],
        surviving_message_ids=[*pinned_ids, *(message.id for message in surviving)],
        usage=usage,
        should_compress=should_compress,
        over_budget=over_budget,
    )
