"""Compression state store.

The store is the single mutable source of truth for pins, artifacts, events,
usage and the latest snapshot. Mutators are narrow and independent; callers
re-run the payload builder after mutating to keep usage consistent.

Exactly one store exists per active chat session. Use
``get_compression_store()`` for the process-wide instance and
``reset_compression_store()`` when switching sessions.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from chatcompress.config import NormalizedCompressionConfig
from chatcompress.messages import ChatMessage
from chatcompress.models import (
    CompressionArtifact,
    CompressionEvent,
    CompressionEventLevel,
    CompressionEventType,
    CompressionModelMetadata,
    CompressionPinnedMessage,
    CompressionSnapshot,
    CompressionUsage,
    now_ms,
)

logger = logging.getLogger(__name__)

MAX_EVENT_HISTORY = 100

StoreListener = Callable[["CompressionStateStore"], None]

_event_sequence = itertools.count(1)


def make_event(
    event_type: CompressionEventType,
    message: str | None = None,
    *,
    level: CompressionEventLevel | None = None,
    payload: dict[str, Any] | None = None,
) -> CompressionEvent:
    """Create an event with a unique id."""
    timestamp = now_ms()
    return CompressionEvent(
        id=f"{event_type}-{timestamp}-{next(_event_sequence)}",
        type=event_type,
        timestamp=timestamp,
        level=level,
        message=message,
        payload=payload,
    )


@dataclass(frozen=True)
class CompressionStoreSnapshot:
    """Read-only view of the store at one point in time."""

    pinned_messages: tuple[CompressionPinnedMessage, ...] = ()
    artifacts: tuple[CompressionArtifact, ...] = ()
    events: tuple[CompressionEvent, ...] = ()
    model_metadata: CompressionModelMetadata | None = None
    usage: CompressionUsage | None = None
    snapshot: CompressionSnapshot | None = None
    should_compress: bool = False
    over_budget: bool = False


@dataclass
class _StoreState:
    config: NormalizedCompressionConfig = field(default_factory=NormalizedCompressionConfig)
    pinned_messages: dict[str, CompressionPinnedMessage] = field(default_factory=dict)
    artifacts: dict[str, CompressionArtifact] = field(default_factory=dict)
    events: list[CompressionEvent] = field(default_factory=list)
    model_metadata: CompressionModelMetadata | None = None
    usage: CompressionUsage | None = None
    last_snapshot: CompressionSnapshot | None = None
    should_compress: bool = False
    over_budget: bool = False


def _pin_sort_key(pin: CompressionPinnedMessage) -> tuple[int, str]:
    return (pin.pinned_at, pin.message.id)


def _artifact_sort_key(artifact: CompressionArtifact) -> tuple[int, str]:
    timestamp = artifact.updated_at if artifact.updated_at is not None else artifact.created_at
    return (timestamp, artifact.id)


class CompressionStateStore:
    """Mutable container for compaction state with a pub/sub adapter."""

    def __init__(self):
        self._state = _StoreState()
        self._listeners: list[StoreListener] = []

    # Subscription

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a listener called after every mutation.

        Returns:
            A function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    # Read accessors

    @property
    def config(self) -> NormalizedCompressionConfig:
        return self._state.config

    @property
    def events(self) -> list[CompressionEvent]:
        return list(self._state.events)

    @property
    def model_metadata(self) -> CompressionModelMetadata | None:
        return self._state.model_metadata

    @property
    def usage(self) -> CompressionUsage | None:
        return self._state.usage

    @property
    def last_snapshot(self) -> CompressionSnapshot | None:
        return self._state.last_snapshot

    @property
    def should_compress(self) -> bool:
        return self._state.should_compress

    @property
    def over_budget(self) -> bool:
        return self._state.over_budget

    def list_pinned_messages(self) -> list[CompressionPinnedMessage]:
        """Pins ordered by ``pinned_at`` then message id."""
        return sorted(self._state.pinned_messages.values(), key=_pin_sort_key)

    def list_artifacts(self) -> list[CompressionArtifact]:
        """Artifacts ordered by last update (or creation) then id."""
        return sorted(self._state.artifacts.values(), key=_artifact_sort_key)

    def get_pinned_message(self, message_id: str) -> CompressionPinnedMessage | None:
        return self._state.pinned_messages.get(message_id)

    def get_artifact(self, artifact_id: str) -> CompressionArtifact | None:
        return self._state.artifacts.get(artifact_id)

    def get_snapshot(self) -> CompressionStoreSnapshot:
        """Return an immutable view of the whole store."""
        state = self._state
        return CompressionStoreSnapshot(
            pinned_messages=tuple(self.list_pinned_messages()),
            artifacts=tuple(self.list_artifacts()),
            events=tuple(state.events),
            model_metadata=state.model_metadata,
            usage=state.usage,
            snapshot=state.last_snapshot,
            should_compress=state.should_compress,
            over_budget=state.over_budget,
        )

    # Configuration

    def set_config(self, config: NormalizedCompressionConfig) -> None:
        self._state.config = config
        self._notify()

    # Pins

    def pin_message(
        self,
        message: ChatMessage,
        *,
        reason: str | None = None,
        pinned_by: str | None = None,
        pinned_at: int | None = None,
    ) -> CompressionPinnedMessage | None:
        """Pin a message, keeping an existing pin's author and reason by default.

        Returns:
            The stored pin, or None if the message has no id.
        """
        if not message.id:
            return None
        existing = self._state.pinned_messages.get(message.id)
        pin = CompressionPinnedMessage(
            id=message.id,
            message=message,
            pinned_at=pinned_at if pinned_at is not None else now_ms(),
            pinned_by=pinned_by or (existing.pinned_by if existing else None) or "user",
            reason=reason if reason is not None else (existing.reason if existing else None),
        )
        self._state.pinned_messages = {**self._state.pinned_messages, message.id: pin}
        self._append_event(
            make_event("pin", f"Pinned message {message.id}", payload={"messageId": message.id})
        )
        self._notify()
        return pin

    def set_pinned_messages(self, pins: Sequence[CompressionPinnedMessage]) -> None:
        """Replace every pin. Pins without an id are ignored."""
        self._state.pinned_messages = {
            pin.id: pin for pin in pins if pin.id and pin.message.id
        }
        self._notify()

    def unpin_message(self, message_id: str) -> bool:
        """Remove a pin.

        Returns:
            True if a pin was removed.
        """
        if not message_id or message_id not in self._state.pinned_messages:
            return False
        self._state.pinned_messages = {
            key: pin for key, pin in self._state.pinned_messages.items() if key != message_id
        }
        self._append_event(
            make_event("unpin", f"Unpinned message {message_id}", payload={"messageId": message_id})
        )
        self._notify()
        return True

    def clear_pinned_messages(self) -> None:
        self._state.pinned_messages = {}
        self._notify()

    # Artifacts

    def add_artifact(self, artifact: CompressionArtifact) -> None:
        if not artifact.id:
            return
        self._state.artifacts = {**self._state.artifacts, artifact.id: artifact.model_copy(deep=True)}
        self._append_event(
            make_event("artifact-created", artifact.title, payload={"artifactId": artifact.id})
        )
        self._notify()

    def update_artifact(self, artifact_id: str, patch: dict[str, Any]) -> CompressionArtifact | None:
        """Apply a partial update to an artifact.

        Args:
            artifact_id: Artifact to update.
            patch: Field values keyed by attribute name.

        Returns:
            The updated artifact, or None if it does not exist.
        """
        current = self._state.artifacts.get(artifact_id)
        if current is None:
            return None
        updated = CompressionArtifact.model_validate({**current.model_dump(), **patch, "id": artifact_id})
        self._state.artifacts = {**self._state.artifacts, artifact_id: updated}
        self._append_event(
            make_event("artifact-updated", updated.title, payload={"artifactId": artifact_id})
        )
        self._notify()
        return updated

    def remove_artifact(self, artifact_id: str) -> bool:
        if artifact_id not in self._state.artifacts:
            return False
        self._state.artifacts = {
            key: artifact for key, artifact in self._state.artifacts.items() if key != artifact_id
        }
        self._append_event(
            make_event("artifact-removed", payload={"artifactId": artifact_id})
        )
        self._notify()
        return True

    def set_artifacts(self, artifacts: Sequence[CompressionArtifact]) -> None:
        self._state.artifacts = {
            artifact.id: artifact.model_copy(deep=True) for artifact in artifacts if artifact.id
        }
        self._notify()

    def clear_artifacts(self) -> None:
        self._state.artifacts = {}
        self._notify()

    # Events

    def _append_event(self, event: CompressionEvent) -> None:
        events = [*self._state.events, event]
        if len(events) > MAX_EVENT_HISTORY:
            events = events[-MAX_EVENT_HISTORY:]
        self._state.events = events

    def record_event(self, event: CompressionEvent) -> None:
        """Append an event, dropping the oldest beyond the history cap."""
        self._append_event(event)
        self._notify()

    def clear_events(self) -> None:
        self._state.events = []
        self._notify()

    # Usage, metadata and snapshot

    def set_model_metadata(self, metadata: CompressionModelMetadata | None) -> None:
        self._state.model_metadata = metadata.model_copy() if metadata else None
        self._notify()

    def set_usage(
        self,
        usage: CompressionUsage | None,
        *,
        append_event: bool = False,
        event_message: str | None = None,
        should_compress: bool | None = None,
        over_budget: bool | None = None,
    ) -> None:
        """Replace the usage record.

        Flags not given keep their value while usage is set and reset to
        False when usage is cleared.
        """
        state = self._state
        if should_compress is None:
            should_compress = state.should_compress if usage is not None else False
        if over_budget is None:
            over_budget = state.over_budget if usage is not None else False

        state.usage = usage.model_copy() if usage is not None else None
        state.should_compress = should_compress
        state.over_budget = over_budget

        if append_event and usage is not None:
            self._append_event(
                make_event(
                    "info",
                    event_message or "Compression usage updated",
                    payload={"usage": usage.to_dict()},
                )
            )
        self._notify()

    def set_snapshot(self, snapshot: CompressionSnapshot | None) -> None:
        self._state.last_snapshot = snapshot.model_copy(deep=True) if snapshot else None
        self._notify()

    def reset(self) -> None:
        """Restore every field to its default."""
        self._state = _StoreState()
        logger.debug("Compression store reset")
        self._notify()


_store: CompressionStateStore | None = None


def get_compression_store() -> CompressionStateStore:
    """Return the process-wide store, creating it on first use."""
    global _store
    if _store is None:
        _store = CompressionStateStore()
    return _store


def reset_compression_store() -> CompressionStateStore:
    """Reset the process-wide store and return it."""
    store = get_compression_store()
    store.reset()
    return store
