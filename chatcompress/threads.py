"""Thread store collaborator.

The engine reads and writes conversation threads only through the narrow
``ThreadStore`` protocol. ``InMemoryThreadStore`` is a reference
implementation for embedding and tests.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from pydantic import Field

from chatcompress.messages import ChatMessage
from chatcompress.models import WireModel, now_ms

logger = logging.getLogger(__name__)

SIGNATURE_TAIL_SIZE = 5


class ChatThreadRecord(WireModel):
    """Thread metadata stored separately from the message timeline."""

    id: str
    parent_id: str | None = None
    scope_key: str | None = None
    title: str | None = None
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    message_count: int = 0
    message_signature: str | None = None
    metadata: dict[str, Any] | None = None


def _fingerprint(message: ChatMessage) -> str:
    payload = json.dumps(message.to_dict(), sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:12]


def compute_messages_signature(messages: Sequence[ChatMessage]) -> str:
    """Cheap signature of a transcript.

    Combines the message count with content fingerprints of the last few
    messages, so edits that keep ids stable still change the signature.
    """
    tail = "|".join(
        f"{message.id}:{_fingerprint(message)}" for message in messages[-SIGNATURE_TAIL_SIZE:]
    )
    return f"{len(messages)}:{tail}"


@runtime_checkable
class ThreadStore(Protocol):
    """Get/set access to persisted conversation threads."""

    def get_record(self, thread_id: str) -> ChatThreadRecord | None:
        """Return the thread record, or None if the thread is unknown."""
        ...

    def get_messages(self, thread_id: str) -> list[ChatMessage]:
        """Return the thread's messages, oldest first."""
        ...

    def update_thread_messages(self, thread_id: str, messages: Sequence[ChatMessage]) -> None:
        """Replace the thread's messages."""
        ...

    def update_thread_metadata(self, thread_id: str, patch: dict[str, Any]) -> None:
        """Merge ``patch`` into the thread metadata; None values delete keys."""
        ...


class InMemoryThreadStore:
    """Dictionary-backed ``ThreadStore``.

    Writes are idempotent: storing the same value twice leaves the record
    unchanged apart from ``updated_at``.
    """

    def __init__(self):
        self._records: dict[str, ChatThreadRecord] = {}
        self._messages: dict[str, list[ChatMessage]] = {}
        self.write_count = 0

    def create_thread(
        self,
        thread_id: str,
        *,
        title: str | None = None,
        messages: Sequence[ChatMessage] = (),
        metadata: dict[str, Any] | None = None,
        scope_key: str | None = None,
        parent_id: str | None = None,
    ) -> ChatThreadRecord:
        """Create (or overwrite) a thread."""
        record = ChatThreadRecord(
            id=thread_id,
            parent_id=parent_id,
            scope_key=scope_key,
            title=title,
            message_count=len(messages),
            message_signature=compute_messages_signature(messages),
            metadata=dict(metadata) if metadata else None,
        )
        self._records[thread_id] = record
        self._messages[thread_id] = list(messages)
        logger.debug(f"Created thread {thread_id} with {len(messages)} messages")
        return record

    def delete_thread(self, thread_id: str) -> None:
        self._records.pop(thread_id, None)
        self._messages.pop(thread_id, None)

    def list_records(self, scope_key: str | None = None) -> list[ChatThreadRecord]:
        """Records for a scope, most recently updated first."""
        records = [
            record
            for record in self._records.values()
            if scope_key is None or record.scope_key == scope_key
        ]
        return sorted(records, key=lambda record: record.updated_at, reverse=True)

    def get_record(self, thread_id: str) -> ChatThreadRecord | None:
        record = self._records.get(thread_id)
        return record.model_copy(deep=True) if record is not None else None

    def get_messages(self, thread_id: str) -> list[ChatMessage]:
        return list(self._messages.get(thread_id, []))

    def update_thread_messages(self, thread_id: str, messages: Sequence[ChatMessage]) -> None:
        record = self._require(thread_id)
        self._messages[thread_id] = list(messages)
        self._records[thread_id] = record.model_copy(
            update={
                "message_count": len(messages),
                "message_signature": compute_messages_signature(messages),
                "updated_at": now_ms(),
            }
        )
        self.write_count += 1

    def update_thread_metadata(self, thread_id: str, patch: dict[str, Any]) -> None:
        record = self._require(thread_id)
        metadata = dict(record.metadata or {})
        for key, value in patch.items():
            if value is None:
                metadata.pop(key, None)
            else:
                metadata[key] = value
        self._records[thread_id] = record.model_copy(
            update={"metadata": metadata or None, "updated_at": now_ms()}
        )
        self.write_count += 1

    def _require(self, thread_id: str) -> ChatThreadRecord:
        record = self._records.get(thread_id)
        if record is None:
            msg = f"Unknown thread: {thread_id}"
            raise KeyError(msg)
        return record
