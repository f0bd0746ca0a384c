"""Unit tests for the persisted compression state."""

from __future__ import annotations

import logging

from chatcompress.models import CompressionArtifact, CompressionSnapshot, CompressionUsage
from chatcompress.persistence import (
    COMPRESSION_THREAD_METADATA_KEY,
    build_persisted_state,
    clone_persisted_state,
    dump_persisted_state,
    read_persisted_state,
)
from chatcompress.store import CompressionStoreSnapshot


class TestBuildPersistedState:
    """Tests for build_persisted_state."""

    def test_empty_store_persists_nothing(self):
        assert build_persisted_state(CompressionStoreSnapshot()) is None

    def test_timestamp_follows_usage(self):
        view = CompressionStoreSnapshot(
            usage=CompressionUsage(total_tokens=3, updated_at=42),
            snapshot=CompressionSnapshot(id="s1", created_at=7),
            should_compress=True,
        )
        state = build_persisted_state(view)

        assert state.updated_at == 42
        assert state.should_compress is True
        assert state.over_budget is False

    def test_timestamp_falls_back_to_snapshot(self):
        view = CompressionStoreSnapshot(snapshot=CompressionSnapshot(id="s1", created_at=7))

        assert build_persisted_state(view).updated_at == 7

    def test_values_are_copied(self):
        artifact = CompressionArtifact(id="a1", summary="x", source_message_ids=["m1"])
        state = build_persisted_state(CompressionStoreSnapshot(artifacts=(artifact,)))
        state.artifacts[0].source_message_ids.append("m2")

        assert artifact.source_message_ids == ["m1"]

    def test_clone_is_deep(self):
        state = build_persisted_state(
            CompressionStoreSnapshot(snapshot=CompressionSnapshot(id="s1", surviving_message_ids=["m1"]))
        )
        clone = clone_persisted_state(state)
        clone.snapshot.surviving_message_ids.append("m2")

        assert clone == clone_persisted_state(clone)
        assert state.snapshot.surviving_message_ids == ["m1"]
        assert clone_persisted_state(None) is None


class TestReadPersistedState:
    """Tests for reading persisted state from thread metadata."""

    def test_round_trip_through_json(self):
        state = build_persisted_state(
            CompressionStoreSnapshot(
                usage=CompressionUsage(total_tokens=3, budget=10, remaining_tokens=7, updated_at=5),
                snapshot=CompressionSnapshot(id="s1", created_at=4, excluded_message_ids=["m1"]),
            )
        )
        metadata = {COMPRESSION_THREAD_METADATA_KEY: dump_persisted_state(state)}

        assert metadata[COMPRESSION_THREAD_METADATA_KEY]["snapshot"]["excludedMessageIds"] == ["m1"]
        assert read_persisted_state(metadata) == state

    def test_missing(self):
        assert read_persisted_state(None) is None
        assert read_persisted_state({"other": 1}) is None
        assert dump_persisted_state(None) is None

    def test_malformed_is_ignored(self, caplog):
        with caplog.at_level(logging.WARNING, logger="chatcompress.persistence"):
            state = read_persisted_state({COMPRESSION_THREAD_METADATA_KEY: {"artifacts": "nope"}})

        assert state is None
        assert "malformed" in caplog.text
