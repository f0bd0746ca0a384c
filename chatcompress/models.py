"""Data models for the conversation compaction engine.

All models use Pydantic for validation and serialization. Attribute names are
snake_case; the wire format (HTTP, persisted thread metadata) is camelCase.
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel

from chatcompress.messages import ChatMessage

CAMEL_MODEL_CONFIG = {"alias_generator": to_camel, "populate_by_name": True}

CompressionEventType = Literal[
    "pin",
    "unpin",
    "run",
    "artifact-created",
    "artifact-updated",
    "artifact-removed",
    "error",
    "info",
]
CompressionEventLevel = Literal["info", "warning", "error"]
CompressionTriggerReason = Literal["threshold", "over-budget", "manual"]
CompressionErrorPhase = Literal["budget-check", "summarizer", "payload", "unknown"]

_snapshot_sequence = itertools.count(1)


def now_ms() -> int:
    """Current time as integer milliseconds since the epoch."""
    return int(time.time() * 1000)


def next_snapshot_id(now: int) -> str:
    """Snapshot id unique within the process."""
    return f"snapshot-{now}-{next(_snapshot_sequence)}"


class WireModel(BaseModel):
    """Base for models serialized with camelCase keys."""

    model_config = CAMEL_MODEL_CONFIG

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CompressionPinnedMessage(WireModel):
    """A message protected from trimming."""

    id: str = Field(..., description="Id of the pinned message")
    message: ChatMessage = Field(..., description="Copy of the pinned message")
    pinned_at: int = Field(..., description="Pin time in epoch milliseconds")
    pinned_by: Literal["user", "system"] | None = Field(None, description="Who pinned it")
    reason: str | None = Field(None, description="Why it was pinned")


class CompressionArtifact(WireModel):
    """A generated summary standing in for trimmed messages."""

    id: str = Field(..., description="Unique artifact identifier")
    title: str | None = None
    summary: str = Field(..., description="Summary text sent to the model")
    category: str | None = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int | None = None
    tokens_saved: int | None = None
    source_message_ids: list[str] | None = Field(
        None, description="Ids of the messages this artifact replaces"
    )
    author: Literal["user", "system", "assistant"] | None = None
    editable: bool | None = None
    pinned: bool | None = None


class CompressionEvent(WireModel):
    """Append-only audit log entry."""

    id: str
    type: CompressionEventType
    timestamp: int = Field(default_factory=now_ms)
    level: CompressionEventLevel | None = None
    message: str | None = None
    payload: dict[str, Any] | None = None


class CompressionUsage(WireModel):
    """Point-in-time token accounting for a payload.

    ``total_tokens`` is always the sum of the three group counts.
    """

    total_tokens: int = 0
    pinned_tokens: int = 0
    artifact_tokens: int = 0
    surviving_tokens: int = 0
    estimated_response_tokens: int | None = None
    remaining_tokens: int | float | None = None
    budget: int | float | None = None
    updated_at: int = Field(default_factory=now_ms)


class CompressionModelMetadata(WireModel):
    """Budget parameters of the active model."""

    model_id: str | None = None
    model_label: str | None = None
    context_window_tokens: int | None = None
    max_output_tokens: int | None = None
    last_updated_at: int | None = None


class CompressionSnapshot(WireModel):
    """Record of one compaction decision."""

    id: str
    created_at: int = Field(default_factory=now_ms)
    surviving_message_ids: list[str] = Field(default_factory=list)
    artifact_ids: list[str] = Field(default_factory=list)
    excluded_message_ids: list[str] | None = None
    tokens_before: int | None = None
    tokens_after: int | None = None
    tokens_saved: int | None = None
    reason: str | None = None

    @model_validator(mode="after")
    def _excluded_wins(self) -> CompressionSnapshot:
        if self.excluded_message_ids:
            excluded = set(self.excluded_message_ids)
            if any(message_id in excluded for message_id in self.surviving_message_ids):
                self.surviving_message_ids = [
                    message_id
                    for message_id in self.surviving_message_ids
                    if message_id not in excluded
                ]
        return self


class PersistedCompressionState(WireModel):
    """Durable projection of the compression store for one thread."""

    snapshot: CompressionSnapshot | None = None
    artifacts: list[CompressionArtifact] = Field(default_factory=list)
    usage: CompressionUsage | None = None
    metadata: CompressionModelMetadata | None = None
    should_compress: bool | None = None
    over_budget: bool | None = None
    updated_at: int = Field(default_factory=now_ms)


class CompressionPayloadResult(WireModel):
    """Output of the payload builder."""

    messages: list[ChatMessage]
    pinned_message_ids: list[str]
    artifact_ids: list[str]
    surviving_message_ids: list[str]
    usage: CompressionUsage
    should_compress: bool
    over_budget: bool


class SummarizerResult(WireModel):
    """Artifacts and survivors proposed by a summarizer."""

    artifacts: list[CompressionArtifact] = Field(default_factory=list)
    surviving_message_ids: list[str] = Field(default_factory=list)
    usage: CompressionUsage | None = None


class CompressionRequestConfig(WireModel):
    """Budget settings forwarded to the remote summarizer."""

    max_token_budget: int | None = None
    compression_threshold: float | None = None
    pinned_message_limit: int | None = None
    model: str | None = None


class CompressionServiceRequest(WireModel):
    """Body of a compaction HTTP request."""

    messages: list[ChatMessage]
    pinned_messages: list[CompressionPinnedMessage] = Field(default_factory=list)
    artifacts: list[CompressionArtifact] = Field(default_factory=list)
    snapshot: CompressionSnapshot | None = None
    usage: CompressionUsage | None = None
    config: CompressionRequestConfig = Field(default_factory=CompressionRequestConfig)
    metadata: dict[str, Any] | None = None
    reason: str | None = None


class CompressionServiceResponse(WireModel):
    """Body of a successful compaction HTTP response."""

    snapshot: CompressionSnapshot
    artifacts: list[CompressionArtifact] = Field(default_factory=list)
    usage: CompressionUsage | None = None
    pinned_messages: list[CompressionPinnedMessage] | None = None


class CompressionResultPayload(WireModel):
    """Finalized outcome of a compaction run, passed to ``on_compression``."""

    snapshot: CompressionSnapshot
    artifacts: list[CompressionArtifact]
    usage: CompressionUsage
    pinned_messages: list[CompressionPinnedMessage]


@dataclass
class SummarizerContext:
    """Everything a summarizer needs to propose a compaction."""

    messages: list[ChatMessage]
    pinned_messages: list[CompressionPinnedMessage]
    artifacts: list[CompressionArtifact]
    snapshot: CompressionSnapshot | None
    usage: CompressionUsage
    budget: int | None
    config: CompressionRequestConfig
    reason: str | None = None


@dataclass
class CompressionErrorEvent:
    """A failure surfaced to the ``on_error`` callback."""

    error: BaseException
    phase: CompressionErrorPhase
    timestamp: int
    context: dict[str, Any] = field(default_factory=dict)
