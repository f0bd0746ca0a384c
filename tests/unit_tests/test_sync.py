"""Unit tests for thread synchronization of compaction state."""

from __future__ import annotations

import logging

import pytest

from chatcompress.config import CompressionConfig, CompressionConfigurationError
from chatcompress.messages import ChatMessage
from chatcompress.metadata import get_compression_state
from chatcompress.model_catalog import ChatModelOption
from chatcompress.models import CompressionArtifact, CompressionUsage, SummarizerResult
from chatcompress.persistence import COMPRESSION_THREAD_METADATA_KEY
from chatcompress.store import CompressionStateStore
from chatcompress.sync import (
    EMPTY_USAGE_SIGNATURE,
    ModelCompressionSync,
    SyncPhase,
    compute_usage_signature,
    has_meaningful_usage_change,
)
from chatcompress.threads import InMemoryThreadStore

SMALL_MODEL = ChatModelOption(id="small", label="Small", context_window_tokens=120)


@pytest.fixture
def threads(transcript) -> InMemoryThreadStore:
    threads = InMemoryThreadStore()
    threads.create_thread("t1", title="First", messages=transcript)
    threads.create_thread("t2", title="Second")
    return threads


def _sync(threads, store, models=(SMALL_MODEL,), **config) -> ModelCompressionSync:
    config.setdefault("enabled", True)
    return ModelCompressionSync(
        threads,
        models=list(models),
        compression=CompressionConfig(**config),
        store=store,
    )


class FailingThreadStore(InMemoryThreadStore):
    """Thread store whose metadata writes always fail."""

    def update_thread_metadata(self, thread_id, patch):
        raise OSError("disk full")


class TestConfiguration:
    """Tests for model validation and the effective configuration."""

    def test_model_without_window_is_rejected(self, threads, store):
        with pytest.raises(CompressionConfigurationError, match="no-window"):
            _sync(threads, store, models=[ChatModelOption(id="no-window")])

    def test_model_without_window_allowed_when_disabled(self, threads, store):
        sync = _sync(threads, store, models=[ChatModelOption(id="no-window")], enabled=False)

        assert sync.active_model.id == "no-window"
        assert sync.effective_config.max_token_budget is None

    def test_budget_and_threshold_from_model(self, threads, store):
        model = ChatModelOption(id="big", context_window_tokens=1000, context_compression_threshold=0.6)
        config = _sync(threads, store, models=[model]).effective_config

        assert config.max_token_budget == 1000
        assert config.compression_threshold == 0.6

    def test_explicit_settings_win(self, threads, store):
        model = ChatModelOption(id="big", context_window_tokens=1000, context_compression_threshold=0.6)
        config = _sync(
            threads, store, models=[model], max_token_budget=500, compression_threshold=0.9
        ).effective_config

        assert config.max_token_budget == 500
        assert config.compression_threshold == 0.9

    def test_model_threshold_is_clamped(self, threads, store):
        model = ChatModelOption(id="big", context_window_tokens=1000, context_compression_threshold=1.7)

        assert _sync(threads, store, models=[model]).effective_config.compression_threshold == 1.0

    def test_model_switch_changes_budget(self, threads, store):
        big = ChatModelOption(id="big", context_window_tokens=1000)
        sync = _sync(threads, store, models=[SMALL_MODEL, big])

        assert sync.set_model("big") is True
        assert sync.set_model("missing") is False
        assert sync.effective_config.max_token_budget == 1000


class TestSync:
    """Tests for ModelCompressionSync.sync."""

    def test_first_sync_publishes_and_persists(self, threads, store, transcript):
        sync = _sync(threads, store)
        result = sync.sync("t1", transcript)

        assert result.messages is transcript
        assert result.usage_updated is True
        assert result.persisted is True
        assert store.usage.total_tokens == 81
        assert store.usage.budget == 120
        assert store.model_metadata.model_id == "small"

        persisted = threads.get_record("t1").metadata[COMPRESSION_THREAD_METADATA_KEY]
        assert persisted["usage"]["totalTokens"] == 81
        assert persisted["metadata"]["contextWindowTokens"] == 120

    def test_identical_sync_writes_nothing(self, threads, store, transcript):
        sync = _sync(threads, store)
        sync.sync("t1", transcript)
        writes = threads.write_count

        result = sync.sync("t1", transcript)

        assert result.usage_updated is False
        assert result.persisted is False
        assert threads.write_count == writes

    def test_content_edit_recomputes_usage(self, threads, store, transcript):
        sync = _sync(threads, store)
        sync.sync("t1", transcript)
        edited = [*transcript[:-1], ChatMessage.from_text("m9", "A much longer replacement for the last message")]

        result = sync.sync("t1", edited)

        assert result.usage_updated is True
        assert store.usage.total_tokens > 81

    def test_pins_follow_message_metadata(self, threads, store, transcript):
        pinned = transcript[1].model_copy(
            update={"metadata": {"chatcompress": {"pinned": {"pinnedAt": 5, "pinnedBy": "user"}}}}
        )
        messages = [transcript[0], pinned, *transcript[2:]]
        sync = _sync(threads, store)
        sync.sync("t1", messages)

        assert [pin.id for pin in store.list_pinned_messages()] == ["m2"]
        assert store.usage.pinned_tokens == 9

        sync.sync("t1", transcript)
        assert store.list_pinned_messages() == []

    def test_switching_threads_bumps_generation(self, threads, store, transcript):
        sync = _sync(threads, store)
        sync.sync("t1", transcript)
        generation = sync.generation

        sync.sync("t2", [])

        assert sync.thread_id == "t2"
        assert sync.generation == generation + 1

    def test_failing_thread_store_is_logged(self, store, transcript, caplog):
        threads = FailingThreadStore()
        threads.create_thread("t1", messages=transcript)
        sync = _sync(threads, store)

        with caplog.at_level(logging.WARNING, logger="chatcompress.sync"):
            result = sync.sync("t1", transcript)

        assert result.persisted is False
        assert "Failed to persist compression metadata for thread t1" in caplog.text
        assert store.usage.total_tokens == 81

    def test_disabled_sync_clears_state(self, threads, store, transcript):
        """Turning compaction off strips message facts and the persisted record."""
        enabled = _sync(threads, store)
        enabled.sync("t1", transcript)
        threads.update_thread_metadata("t1", {"other": 1})

        stamped = [
            message.model_copy(
                update={
                    "metadata": {
                        "chatcompress": {
                            "compression": {"snapshotId": "s1", "compressedAt": 1, "surviving": True}
                        }
                    }
                }
            )
            for message in transcript
        ]
        disabled = _sync(threads, CompressionStateStore(), enabled=False)
        result = disabled.sync("t1", stamped)

        assert result.messages_changed is True
        assert all(message.metadata is None for message in result.messages)
        assert result.persisted is True
        assert threads.get_record("t1").metadata == {"other": 1}
        assert threads.get_messages("t1") == result.messages


class TestCompress:
    """Tests for ModelCompressionSync.compress."""

    @pytest.mark.asyncio
    async def test_compress_stamps_and_persists(self, threads, store, transcript):
        sync = _sync(threads, store)
        result = await sync.compress("t1", transcript, force=True)

        snapshot = store.last_snapshot
        assert snapshot.excluded_message_ids == ["m1", "m2", "m3"]
        assert result.messages_changed is True
        assert result.persisted is True
        assert [m.id for m in result.payload.messages][:6] == ["m4", "m5", "m6", "m7", "m8", "m9"]

        assert get_compression_state(result.messages[0]).surviving is False
        assert get_compression_state(result.messages[5]).surviving is True
        event = result.messages[-1]
        assert event.id == f"compression-event-{snapshot.id}"
        assert get_compression_state(event).kind == "event"

        assert threads.get_messages("t1") == result.messages
        persisted = threads.get_record("t1").metadata[COMPRESSION_THREAD_METADATA_KEY]
        assert persisted["snapshot"]["id"] == snapshot.id

    @pytest.mark.asyncio
    async def test_state_is_stable_after_compress(self, threads, store, transcript):
        sync = _sync(threads, store)
        result = await sync.compress("t1", transcript, force=True)
        writes = threads.write_count
        usage = store.usage

        again = sync.sync("t1", result.messages)

        assert again.messages is result.messages
        assert again.persisted is False
        assert again.usage_updated is False
        assert threads.write_count == writes
        assert store.usage == usage

    @pytest.mark.asyncio
    async def test_stale_compress_is_discarded(self, threads, store, transcript):
        sync = _sync(threads, store)

        async def switching_summarizer(context):
            sync.switch_thread("t2")
            return SummarizerResult(surviving_message_ids=["m9"])

        sync.compression.summarizer = switching_summarizer
        result = await sync.compress("t1", transcript, force=True)

        assert store.last_snapshot is None
        assert [m.id for m in result.payload.messages] == [m.id for m in transcript]
        assert sync.thread_id == "t2"


    @pytest.mark.asyncio
    async def test_failed_compress_persists_baseline_flags(self, threads, store, transcript):
        big = ChatModelOption(id="big", context_window_tokens=100_000)
        sync = _sync(threads, store, models=[big])

        async def failing_summarizer(context):
            raise RuntimeError("summarizer exploded")

        sync.compression.summarizer = failing_summarizer
        await sync.compress("t1", transcript, force=True)
        sync.sync("t1", transcript)

        assert store.should_compress is False
        assert store.last_snapshot is None
        persisted = threads.get_record("t1").metadata[COMPRESSION_THREAD_METADATA_KEY]
        assert persisted["shouldCompress"] is False


class TestHydration:
    """Tests for loading persisted state into a fresh store."""

    @pytest.mark.asyncio
    async def test_sync_hydrates_fresh_store(self, threads, store, transcript):
        await _sync(threads, store).compress("t1", transcript, force=True)
        snapshot_id = store.last_snapshot.id
        writes = threads.write_count

        fresh = CompressionStateStore()
        result = _sync(threads, fresh).sync("t1", threads.get_messages("t1"))

        assert result.hydrated is True
        assert result.persisted is False
        assert fresh.last_snapshot.id == snapshot_id
        assert [a.id for a in fresh.list_artifacts()] == [a.id for a in store.list_artifacts()]
        assert threads.write_count == writes

    def test_missing_record_skips_hydration(self, threads, store):
        result = _sync(threads, store).sync("unknown", [])

        assert result.hydrated is False
        assert result.persisted is False

    @pytest.mark.asyncio
    async def test_ahydrate(self, threads, store, transcript):
        await _sync(threads, store).compress("t1", transcript, force=True)

        async def load(thread_id):
            return threads.get_record(thread_id)

        fresh = CompressionStateStore()
        result = await _sync(threads, fresh).ahydrate("t1", load)

        assert result.hydrated is True
        assert result.messages == threads.get_messages("t1")
        assert fresh.last_snapshot is not None

    @pytest.mark.asyncio
    async def test_superseded_ahydrate_returns_none(self, threads, store):
        sync = _sync(threads, store)

        async def load(thread_id):
            sync.switch_thread("t2")
            return threads.get_record(thread_id)

        assert await sync.ahydrate("t1", load) is None
        assert store.usage is None

    @pytest.mark.asyncio
    async def test_failed_load_returns_none(self, threads, store):
        sync = _sync(threads, store)

        async def load(thread_id):
            raise ConnectionError("offline")

        assert await sync.ahydrate("t1", load) is None
        assert sync.phase("t1") is SyncPhase.UNLOADED


class TestPhase:
    """Tests for per-thread synchronization phases."""

    def test_transitions(self, threads, store, transcript):
        sync = _sync(threads, store)
        assert sync.phase("t1") is SyncPhase.UNLOADED

        sync.sync("t1", transcript)
        assert sync.phase("t1") is SyncPhase.SYNCED

        store.add_artifact(CompressionArtifact(id="a1", summary="manual note", created_at=1))
        assert sync.phase("t1") is SyncPhase.DIRTY

        sync.sync("t1", transcript)
        assert sync.phase("t1") is SyncPhase.SYNCED


class TestHelpers:
    """Tests for usage comparison helpers."""

    def test_meaningful_usage_change(self):
        usage = CompressionUsage(total_tokens=10, budget=100, updated_at=1)

        assert has_meaningful_usage_change(None, usage) is True
        assert has_meaningful_usage_change(usage, usage.model_copy(update={"updated_at": 2})) is False
        assert has_meaningful_usage_change(usage, usage.model_copy(update={"total_tokens": 11})) is True

    def test_usage_signature(self):
        messages = [ChatMessage.from_text("a", "x"), ChatMessage(id="", role="assistant")]

        assert compute_usage_signature([]) == EMPTY_USAGE_SIGNATURE
        assert compute_usage_signature(messages) == "a:user:1|idx-1:assistant:0"
