"""Durable projection of the compression store.

Persisted state crosses the boundary to the thread store as deep copies only,
so a stored value never aliases live store state.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from chatcompress.models import PersistedCompressionState, now_ms
from chatcompress.store import CompressionStoreSnapshot

logger = logging.getLogger(__name__)

COMPRESSION_THREAD_METADATA_KEY = "chatcompress"


def clone_persisted_state(state: PersistedCompressionState | None) -> PersistedCompressionState | None:
    """Deep-copy a persisted state."""
    return state.model_copy(deep=True) if state is not None else None


def build_persisted_state(snapshot: CompressionStoreSnapshot) -> PersistedCompressionState | None:
    """Project a store snapshot into its persisted form.

    Returns:
        None when there is nothing worth persisting (no snapshot, artifacts
        or usage).
    """
    if snapshot.snapshot is None and not snapshot.artifacts and snapshot.usage is None:
        return None

    if snapshot.usage is not None:
        updated_at = snapshot.usage.updated_at
    elif snapshot.snapshot is not None:
        updated_at = snapshot.snapshot.created_at
    else:
        updated_at = now_ms()

    return PersistedCompressionState(
        snapshot=snapshot.snapshot.model_copy(deep=True) if snapshot.snapshot else None,
        artifacts=[artifact.model_copy(deep=True) for artifact in snapshot.artifacts],
        usage=snapshot.usage.model_copy() if snapshot.usage else None,
        metadata=snapshot.model_metadata.model_copy() if snapshot.model_metadata else None,
        should_compress=snapshot.should_compress,
        over_budget=snapshot.over_budget,
        updated_at=updated_at,
    )


def read_persisted_state(metadata: dict[str, Any] | None) -> PersistedCompressionState | None:
    """Read the persisted state from a thread's metadata bag.

    Malformed values are logged and treated as absent.
    """
    if not metadata:
        return None
    raw = metadata.get(COMPRESSION_THREAD_METADATA_KEY)
    if raw is None:
        return None
    try:
        return PersistedCompressionState.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Ignoring malformed persisted compression state: {e}")
        return None


def dump_persisted_state(state: PersistedCompressionState | None) -> dict[str, Any] | None:
    """Serialize a persisted state to JSON-ready camelCase data."""
    return state.to_dict() if state is not None else None
