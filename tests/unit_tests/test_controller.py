"""Unit tests for the compaction cycle."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from chatcompress.config import CompressionConfig, normalize_compression_config
from chatcompress.controller import CompressionController
from chatcompress.metadata import get_pinned_state
from chatcompress.models import (
    CompressionArtifact,
    CompressionErrorEvent,
    CompressionPinnedMessage,
    CompressionResultPayload,
    CompressionServiceResponse,
    CompressionSnapshot,
    SummarizerResult,
)
from chatcompress.service import CompressionServiceError
from chatcompress.store import get_compression_store


def _controller(store, **config) -> CompressionController:
    config.setdefault("enabled", True)
    config.setdefault("max_token_budget", 120)
    return CompressionController(CompressionConfig(**config), store)


def _ids(messages) -> list[str]:
    return [message.id for message in messages]


class TestPreview:
    """Tests for CompressionController.preview."""

    def test_preview_has_no_side_effects(self, store, transcript):
        controller = _controller(store)
        result = controller.preview(transcript)

        assert result.usage.total_tokens == 81
        assert store.usage is None
        assert store.events == []

    def test_uses_store_state(self, store, transcript):
        controller = _controller(store)
        store.pin_message(transcript[4])

        assert controller.preview(transcript).pinned_message_ids == ["m5"]

    def test_defaults_to_global_store(self):
        controller = CompressionController()

        assert controller.store is get_compression_store()
        assert controller.config.enabled is False


class TestRunCompression:
    """Tests for CompressionController.run_compression."""

    @pytest.mark.asyncio
    async def test_disabled_returns_baseline(self, store, transcript):
        controller = _controller(store, enabled=False)
        result = await controller.run_compression(transcript, force=True)

        assert _ids(result.messages) == _ids(transcript)
        assert store.usage.total_tokens == 81
        assert store.last_snapshot is None

    @pytest.mark.asyncio
    async def test_below_threshold_is_skipped(self, store, transcript):
        summarizer = AsyncMock()
        controller = _controller(store, max_token_budget=10_000, summarizer=summarizer)
        result = await controller.run_compression(transcript)

        assert result.should_compress is False
        assert store.should_compress is False
        summarizer.assert_not_awaited()
        assert store.events == []

    @pytest.mark.asyncio
    async def test_default_summarizer_cycle(self, store, transcript):
        """Without a remote endpoint the local summarizer compacts the transcript."""
        on_compression = MagicMock()
        controller = _controller(store, on_compression=on_compression)
        result = await controller.run_compression(transcript, force=True)

        snapshot = store.last_snapshot
        [artifact] = store.list_artifacts()
        assert _ids(result.messages) == ["m4", "m5", "m6", "m7", "m8", "m9", f"artifact-{artifact.id}"]
        assert snapshot.reason == "manual"
        assert snapshot.excluded_message_ids == ["m1", "m2", "m3"]
        assert snapshot.surviving_message_ids == ["m4", "m5", "m6", "m7", "m8", "m9"]
        assert snapshot.artifact_ids == [artifact.id]
        assert snapshot.tokens_before == 81
        assert snapshot.tokens_after == result.usage.total_tokens
        assert snapshot.tokens_saved == max(81 - result.usage.total_tokens, 0)
        assert artifact.source_message_ids == ["m1", "m2", "m3"]
        assert store.usage == result.usage
        assert [event.type for event in store.events] == ["run", "info", "artifact-created"]

        [payload] = on_compression.call_args.args
        assert isinstance(payload, CompressionResultPayload)
        assert payload.snapshot == snapshot

    @pytest.mark.asyncio
    async def test_threshold_reason(self, store, transcript):
        summarizer = AsyncMock(return_value=SummarizerResult())
        controller = _controller(store, max_token_budget=100, compression_threshold=0.5, summarizer=summarizer)
        await controller.run_compression(transcript)

        [context] = summarizer.call_args.args
        assert context.reason == "threshold"
        assert context.budget == 100
        assert context.usage.total_tokens == 81

    @pytest.mark.asyncio
    async def test_over_budget_reason(self, store, transcript):
        summarizer = AsyncMock(return_value=SummarizerResult())
        controller = _controller(store, max_token_budget=50, summarizer=summarizer)
        await controller.run_compression(transcript)

        assert summarizer.call_args.args[0].reason == "over-budget"
        assert store.last_snapshot.reason == "over-budget"

    @pytest.mark.asyncio
    async def test_custom_summarizer_wins_over_fetcher(self, store, transcript):
        summarizer = AsyncMock(return_value=SummarizerResult(surviving_message_ids=["m9"]))
        fetcher = AsyncMock()
        controller = _controller(store, summarizer=summarizer, fetcher=fetcher)
        result = await controller.run_compression(transcript, force=True, reason="manual")

        fetcher.assert_not_awaited()
        assert _ids(result.messages) == ["m9"]

    @pytest.mark.asyncio
    async def test_existing_artifacts_are_merged(self, store, transcript):
        store.set_artifacts(
            [
                CompressionArtifact(id="keep", summary="unrelated", created_at=1, source_message_ids=["x"]),
                CompressionArtifact(id="replace", summary="stale", created_at=2, source_message_ids=["m1"]),
            ]
        )
        new = CompressionArtifact(id="new", summary="fresh", created_at=3, source_message_ids=["m1", "m2"])
        summarizer = AsyncMock(return_value=SummarizerResult(artifacts=[new], surviving_message_ids=["m3"]))
        controller = _controller(store, summarizer=summarizer)
        await controller.run_compression(transcript, force=True)

        assert [artifact.id for artifact in store.list_artifacts()] == ["keep", "new"]

    @pytest.mark.asyncio
    async def test_fetcher_response_is_applied(self, store, transcript):
        response = CompressionServiceResponse(
            snapshot=CompressionSnapshot(id="remote-1", surviving_message_ids=["m8", "m9"]),
            artifacts=[CompressionArtifact(id="a1", summary="Earlier turns", created_at=1)],
        )
        fetcher = AsyncMock(return_value=response)
        controller = _controller(store, fetcher=fetcher, model="openai/gpt-4o-mini")
        result = await controller.run_compression(transcript, force=True)

        [request] = fetcher.call_args.args
        assert request.config.model == "openai/gpt-4o-mini"
        assert request.reason == "manual"
        assert store.last_snapshot.id == "remote-1"
        assert store.last_snapshot.excluded_message_ids == ["m1", "m2", "m3", "m4", "m5", "m6", "m7"]
        assert _ids(result.messages) == ["m8", "m9", "artifact-a1"]

    @pytest.mark.asyncio
    async def test_remote_pins_replace_store_pins(self, store, transcript):
        pin = CompressionPinnedMessage(id="m2", message=transcript[1], pinned_at=1)
        response = CompressionServiceResponse(
            snapshot=CompressionSnapshot(id="remote-1", surviving_message_ids=["m9"]),
            pinned_messages=[pin],
        )
        controller = _controller(store, fetcher=AsyncMock(return_value=response))
        result = await controller.run_compression(transcript, force=True)

        assert [p.id for p in store.list_pinned_messages()] == ["m2"]
        assert _ids(result.messages) == ["m2", "m9"]

    @pytest.mark.asyncio
    async def test_summarizer_failure_falls_back_to_baseline(self, store, transcript):
        on_error = MagicMock()
        summarizer = AsyncMock(side_effect=RuntimeError("summarizer exploded"))
        controller = _controller(store, summarizer=summarizer, on_error=on_error)
        result = await controller.run_compression(transcript, force=True)

        assert _ids(result.messages) == _ids(transcript)
        assert store.last_snapshot is None
        error_event = store.events[-1]
        assert error_event.type == "error"
        assert error_event.level == "error"
        assert error_event.message == "summarizer exploded"

        [event] = on_error.call_args.args
        assert isinstance(event, CompressionErrorEvent)
        assert event.phase == "summarizer"
        assert event.context["totalTokens"] == 81
        assert event.context["reason"] == "manual"

    @pytest.mark.asyncio
    async def test_service_failure_is_payload_phase(self, store, transcript):
        on_error = MagicMock()
        fetcher = AsyncMock(side_effect=CompressionServiceError("Compression request failed: 502", 502))
        controller = _controller(store, fetcher=fetcher, on_error=on_error)
        await controller.run_compression(transcript, force=True)

        [event] = on_error.call_args.args
        assert event.phase == "payload"
        assert event.context["status"] == 502

    @pytest.mark.asyncio
    async def test_failed_forced_run_restores_baseline_flags(self, store, transcript):
        summarizer = AsyncMock(side_effect=RuntimeError("summarizer exploded"))
        controller = _controller(store, max_token_budget=100_000, summarizer=summarizer)
        await controller.run_compression(transcript, force=True)

        assert store.should_compress is False
        assert store.over_budget is False
        assert store.usage.total_tokens == 81

    @pytest.mark.asyncio
    async def test_stale_result_is_discarded(self, store, transcript):
        summarizer = AsyncMock(return_value=SummarizerResult(surviving_message_ids=["m9"]))
        on_compression = MagicMock()
        controller = _controller(store, summarizer=summarizer, on_compression=on_compression)
        result = await controller.run_compression(transcript, force=True, is_current=lambda: False)

        assert _ids(result.messages) == _ids(transcript)
        assert store.last_snapshot is None
        on_compression.assert_not_called()

    def test_config_setter_updates_store(self, store):
        controller = _controller(store)
        controller.config = CompressionConfig(enabled=True, compression_threshold=3)

        assert store.config.compression_threshold == 1.0

    @pytest.mark.asyncio
    async def test_policy_is_read_from_store(self, store, transcript):
        summarizer = AsyncMock()
        controller = _controller(store, summarizer=summarizer)
        store.set_config(normalize_compression_config(CompressionConfig(enabled=False)))

        assert controller.config.enabled is False
        result = await controller.run_compression(transcript, force=True)

        summarizer.assert_not_awaited()
        assert result.usage.budget is None
        assert store.events == []


class TestPinActions:
    """Tests for pin actions that keep the transcript and store consistent."""

    def test_pin_stamps_message_and_store(self, store, transcript):
        controller = _controller(store)
        updated = controller.pin_message(transcript, "m3", reason="important", pinned_at=50)

        assert updated is not transcript
        assert get_pinned_state(updated[2]).pinned_at == 50
        assert get_pinned_state(updated[2]).reason == "important"
        assert transcript[2].metadata is None
        pin = store.get_pinned_message("m3")
        assert pin.pinned_at == 50
        assert pin.message is updated[2]

    def test_repin_with_same_state_returns_same_list(self, store, transcript):
        controller = _controller(store)
        pinned = controller.pin_message(transcript, "m3", pinned_at=50)

        assert controller.pin_message(pinned, "m3", pinned_at=50) is pinned

    def test_pin_unknown_message(self, store, transcript):
        controller = _controller(store)

        assert controller.pin_message(transcript, "nope") is transcript
        assert store.list_pinned_messages() == []

    def test_unpin(self, store, transcript):
        controller = _controller(store)
        pinned = controller.pin_message(transcript, "m3", pinned_at=50)
        unpinned = controller.unpin_message(pinned, "m3")

        assert get_pinned_state(unpinned[2]) is None
        assert store.list_pinned_messages() == []

    def test_set_and_clear_pins(self, store, transcript):
        controller = _controller(store)
        pins = [
            CompressionPinnedMessage(id="m1", message=transcript[0], pinned_at=1, pinned_by="system"),
            CompressionPinnedMessage(id="m4", message=transcript[3], pinned_at=2),
        ]
        updated = controller.set_pinned_messages(transcript, pins)

        assert [m.id for m in updated if get_pinned_state(m)] == ["m1", "m4"]
        assert [pin.id for pin in store.list_pinned_messages()] == ["m1", "m4"]
        assert store.get_pinned_message("m1").message is updated[0]

        cleared = controller.clear_pinned_messages(updated)
        assert all(get_pinned_state(m) is None for m in cleared)
        assert store.list_pinned_messages() == []
