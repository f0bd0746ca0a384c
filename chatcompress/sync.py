"""Synchronization of compaction state with a conversation thread.

``ModelCompressionSync`` is driven explicitly: the host calls ``sync()`` after
every transcript change and ``switch_thread()`` (or ``ahydrate()``) when the
active conversation changes. Each call runs the same ordered steps:

1. resolve the effective budget from the config and the active model,
2. derive the store's pins from the transcript metadata,
3. hydrate the store from the thread record when the persisted value changed,
4. recompute usage when the transcript content changed,
5. persist the store back to the thread when the projection changed.

A generation counter, bumped on every thread switch, discards results of
hydrations and compaction runs that were started for a previous thread.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from chatcompress.config import (
    CompressionConfig,
    CompressionFetcher,
    CompressionSummarizerFn,
    NormalizedCompressionConfig,
    clamp_threshold,
    normalize_compression_config,
)
from chatcompress.controller import CompressionController
from chatcompress.messages import ChatMessage
from chatcompress.metadata import (
    apply_compression_metadata,
    ensure_compression_event_message,
    extract_pinned_messages,
)
from chatcompress.model_catalog import ChatModelOption, ModelCatalog, validate_compression_models
from chatcompress.models import (
    CompressionModelMetadata,
    CompressionPayloadResult,
    CompressionPinnedMessage,
    CompressionUsage,
    PersistedCompressionState,
    now_ms,
)
from chatcompress.payload import build_compression_payload
from chatcompress.persistence import (
    COMPRESSION_THREAD_METADATA_KEY,
    build_persisted_state,
    clone_persisted_state,
    dump_persisted_state,
    read_persisted_state,
)
from chatcompress.store import CompressionStateStore, get_compression_store
from chatcompress.threads import ChatThreadRecord, ThreadStore, compute_messages_signature

logger = logging.getLogger(__name__)

EMPTY_USAGE_SIGNATURE = "__empty__"

RecordLoader = Callable[[str], Awaitable[ChatThreadRecord | None]]

_NOT_HYDRATED: Any = object()


class SyncPhase(str, Enum):
    """Per-thread synchronization state."""

    UNLOADED = "unloaded"
    HYDRATING = "hydrating"
    SYNCED = "synced"
    DIRTY = "dirty"
    PERSISTING = "persisting"


@dataclass
class SyncResult:
    """Outcome of one synchronization pass.

    Attributes:
        messages: The transcript after metadata stamping. The same list object
            as the input when nothing changed.
        messages_changed: Whether the transcript was rewritten.
        hydrated: Whether the store was loaded from the thread record.
        usage_updated: Whether a new usage record was published.
        persisted: Whether the thread record was written.
        payload: Payload of a compaction run, set by ``compress()``.
    """

    messages: list[ChatMessage]
    messages_changed: bool = False
    hydrated: bool = False
    usage_updated: bool = False
    persisted: bool = False
    payload: CompressionPayloadResult | None = None


def has_meaningful_usage_change(previous: CompressionUsage | None, next_usage: CompressionUsage) -> bool:
    """Whether ``next_usage`` differs from ``previous`` in anything but its timestamp."""
    if previous is None:
        return True
    return any(
        getattr(previous, name) != getattr(next_usage, name)
        for name in (
            "total_tokens",
            "pinned_tokens",
            "artifact_tokens",
            "surviving_tokens",
            "estimated_response_tokens",
            "remaining_tokens",
            "budget",
        )
    )


def compute_usage_signature(messages: Sequence[ChatMessage]) -> str:
    """Structural signature of a transcript: id, role and part count per message."""
    if not messages:
        return EMPTY_USAGE_SIGNATURE
    return "|".join(
        f"{message.id or f'idx-{index}'}:{message.role or 'unknown'}:{len(message.parts or [])}"
        for index, message in enumerate(messages)
    )


def _same_pins(existing: Sequence[CompressionPinnedMessage], derived: Sequence[CompressionPinnedMessage]) -> bool:
    if len(existing) != len(derived):
        return False
    by_id = {pin.id: pin for pin in derived}
    for pin in existing:
        candidate = by_id.get(pin.id)
        if candidate is None:
            return False
        if (candidate.pinned_at, candidate.pinned_by, candidate.reason) != (
            pin.pinned_at,
            pin.pinned_by,
            pin.reason,
        ):
            return False
    return True


class ModelCompressionSync:
    """Keeps the compression store, the live transcript and a thread store in step.

    Args:
        thread_store: Durable thread storage.
        models: Selectable models. Each needs a context window when
            compaction is enabled.
        model: Preferred model id.
        compression: User compaction settings.
        store: State store. Defaults to the process-wide store.
        summarizer: Custom summarizer overriding ``compression.summarizer``.
        fetcher: Custom fetcher overriding ``compression.fetcher``.
        show_error_messages: Attach tracebacks to logged thread-store failures.

    Raises:
        CompressionConfigurationError: If compaction is enabled and a model
            lacks a positive context window.
    """

    def __init__(
        self,
        thread_store: ThreadStore,
        *,
        models: Sequence[ChatModelOption] = (),
        model: str | None = None,
        compression: CompressionConfig | None = None,
        store: CompressionStateStore | None = None,
        summarizer: CompressionSummarizerFn | None = None,
        fetcher: CompressionFetcher | None = None,
        show_error_messages: bool = False,
    ):
        compression = compression or CompressionConfig()
        if summarizer is not None:
            compression = replace(compression, summarizer=summarizer)
        if fetcher is not None:
            compression = replace(compression, fetcher=fetcher)

        self.thread_store = thread_store
        self.compression = compression
        self.store = store or get_compression_store()
        self.show_error_messages = show_error_messages
        self.catalog = ModelCatalog()
        self.set_models(models, model)
        self.controller = CompressionController(self.effective_config, self.store)

        self._generation = 0
        self._thread_id: str | None = None
        self._phases: dict[str, SyncPhase] = {}
        self._last_hydrated: PersistedCompressionState | None = _NOT_HYDRATED
        self._last_persisted: PersistedCompressionState | None = None
        self._usage_key: tuple | None = None

    # Models and configuration

    @property
    def enabled(self) -> bool:
        return bool(self.compression.enabled)

    @property
    def active_model(self) -> ChatModelOption | None:
        return self.catalog.active_model

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def thread_id(self) -> str | None:
        return self._thread_id

    def set_models(self, models: Sequence[ChatModelOption], preferred_id: str | None = None) -> None:
        """Replace the model catalog, validating context windows when enabled."""
        if self.enabled:
            validate_compression_models(models)
        self.catalog.set_models(models, preferred_id)

    def set_model(self, model_id: str) -> bool:
        """Select the active model. Unknown ids are ignored."""
        return self.catalog.set_selected_model_id(model_id)

    @property
    def effective_config(self) -> NormalizedCompressionConfig:
        """Normalized config with budget and threshold defaulted from the active model."""
        config = normalize_compression_config(self.compression)
        model = self.catalog.active_model
        if not config.enabled or model is None:
            return config

        updates: dict[str, Any] = {}
        if config.max_token_budget is None and model.context_window_tokens is not None:
            updates["max_token_budget"] = model.context_window_tokens
        threshold = model.context_compression_threshold
        if (
            self.compression.compression_threshold is None
            and isinstance(threshold, (int, float))
            and math.isfinite(threshold)
        ):
            updates["compression_threshold"] = clamp_threshold(threshold)
        return replace(config, **updates) if updates else config

    def _refresh_config(self) -> NormalizedCompressionConfig:
        config = self.effective_config
        if config != self.controller.config:
            self.controller.config = config
        return config

    def _sync_model_metadata(self, config: NormalizedCompressionConfig) -> None:
        model = self.catalog.active_model
        current = self.store.model_metadata
        if not config.enabled or model is None:
            if current is not None:
                self.store.set_model_metadata(None)
            return

        if current is not None and (
            current.model_id,
            current.model_label,
            current.context_window_tokens,
        ) == (model.id, model.label, model.context_window_tokens):
            return
        self.store.set_model_metadata(
            CompressionModelMetadata(
                model_id=model.id,
                model_label=model.label,
                context_window_tokens=model.context_window_tokens,
                max_output_tokens=model.max_output_tokens,
                last_updated_at=now_ms(),
            )
        )

    # Thread lifecycle

    def switch_thread(self, thread_id: str | None) -> int:
        """Make ``thread_id`` the active thread.

        Returns:
            The new generation. Work started under an older generation is
            discarded when it completes.
        """
        self._generation += 1
        self._thread_id = thread_id
        self._last_hydrated = _NOT_HYDRATED
        self._last_persisted = None
        self._usage_key = None
        if thread_id is not None:
            self._phases[thread_id] = SyncPhase.UNLOADED
        logger.debug(f"Switched to thread {thread_id} (generation {self._generation})")
        return self._generation

    def phase(self, thread_id: str) -> SyncPhase:
        """Current synchronization phase of a thread."""
        phase = self._phases.get(thread_id, SyncPhase.UNLOADED)
        if phase is SyncPhase.SYNCED and thread_id == self._thread_id and self.enabled:
            if build_persisted_state(self.store.get_snapshot()) != self._last_persisted:
                return SyncPhase.DIRTY
        return phase

    def _is_current(self, thread_id: str, generation: int) -> bool:
        return generation == self._generation and thread_id == self._thread_id

    def sync(self, thread_id: str, messages: Sequence[ChatMessage]) -> SyncResult:
        """Run one synchronization pass for the active thread.

        Args:
            thread_id: Thread the transcript belongs to. A new id switches
                threads first.
            messages: Live transcript, oldest first.

        Returns:
            The possibly re-stamped transcript and what was done.
        """
        if thread_id != self._thread_id:
            self.switch_thread(thread_id)
        return self._sync(thread_id, messages, self._read_record(thread_id))

    def _sync(
        self,
        thread_id: str,
        messages: Sequence[ChatMessage],
        record: ChatThreadRecord | None,
    ) -> SyncResult:
        config = self._refresh_config()
        messages = messages if isinstance(messages, list) else list(messages)

        if not config.enabled:
            return self._sync_disabled(thread_id, messages)

        result = SyncResult(messages=messages)
        self._sync_pins(messages)

        if self._phases.get(thread_id) is SyncPhase.UNLOADED:
            self._phases[thread_id] = SyncPhase.HYDRATING
        self._hydrate(record, result)
        self._phases[thread_id] = SyncPhase.SYNCED

        self._sync_model_metadata(config)
        self._recompute_usage(config, result.messages, result)
        self._persist(thread_id, result)
        return result

    async def ahydrate(self, thread_id: str, load_record: RecordLoader) -> SyncResult | None:
        """Hydrate the store from an asynchronously loaded thread record.

        Args:
            thread_id: Thread to activate.
            load_record: Coroutine function returning the thread record.

        Returns:
            The hydrated transcript, or None if another thread was activated
            while loading or the load failed.
        """
        generation = self.switch_thread(thread_id) if thread_id != self._thread_id else self._generation
        self._phases[thread_id] = SyncPhase.HYDRATING
        try:
            record = await load_record(thread_id)
        except Exception as e:
            logger.warning(
                f"Failed to load thread {thread_id} for hydration: {e}",
                exc_info=self.show_error_messages,
            )
            self._phases[thread_id] = SyncPhase.UNLOADED
            return None

        if not self._is_current(thread_id, generation):
            logger.debug(f"Discarding stale hydration of thread {thread_id}")
            return None

        messages = self._read_messages(thread_id)
        return self._sync(thread_id, messages, record)

    async def compress(
        self,
        thread_id: str,
        messages: Sequence[ChatMessage],
        *,
        force: bool = False,
        reason: str | None = None,
    ) -> SyncResult:
        """Run a compaction cycle for the active thread, then persist it.

        The run is discarded if the thread is switched while the summarizer
        is working.
        """
        synced = self.sync(thread_id, messages)
        generation = self._generation

        payload = await self.controller.run_compression(
            synced.messages,
            force=force,
            reason=reason,
            is_current=lambda: self._is_current(thread_id, generation),
        )
        if not self._is_current(thread_id, generation):
            synced.payload = payload
            return synced

        result = self.sync(thread_id, synced.messages)
        result.messages_changed = result.messages_changed or synced.messages_changed
        result.payload = payload
        return result

    # Steps

    def _sync_pins(self, messages: list[ChatMessage]) -> None:
        derived = extract_pinned_messages(messages)
        if _same_pins(self.store.list_pinned_messages(), derived):
            return
        self.store.set_pinned_messages(derived)

    def _hydrate(self, record: ChatThreadRecord | None, result: SyncResult) -> None:
        if record is None:
            return
        persisted = clone_persisted_state(read_persisted_state(record.metadata))
        if self._last_hydrated is not _NOT_HYDRATED and self._last_hydrated == persisted:
            return
        self._last_hydrated = clone_persisted_state(persisted)
        self._last_persisted = clone_persisted_state(persisted)
        result.hydrated = True

        if persisted is None:
            self.store.set_snapshot(None)
            self.store.set_artifacts([])
            self.store.set_usage(None, should_compress=False, over_budget=False)
            self.store.set_model_metadata(None)
            cleared = apply_compression_metadata(result.messages, None)
            if cleared.changed:
                result.messages = cleared.messages
                result.messages_changed = True
            return

        self.store.set_snapshot(persisted.snapshot)
        self.store.set_artifacts(persisted.artifacts)
        self.store.set_usage(
            persisted.usage,
            should_compress=bool(persisted.should_compress),
            over_budget=bool(persisted.over_budget),
        )
        self.store.set_model_metadata(persisted.metadata)
        self._usage_key = None
        self._stamp(result, persisted)
        logger.debug(f"Hydrated compression state for thread {record.id}")

    def _stamp(self, result: SyncResult, persisted: PersistedCompressionState | None) -> None:
        snapshot = persisted.snapshot if persisted is not None else None
        applied = apply_compression_metadata(result.messages, snapshot)
        messages = applied.messages
        changed = applied.changed
        if snapshot is not None:
            ensured = ensure_compression_event_message(messages, snapshot, persisted.artifacts, persisted.usage)
            if ensured.changed:
                messages = ensured.messages
                changed = True
        if changed:
            result.messages = messages
            result.messages_changed = True

    def _recompute_usage(
        self,
        config: NormalizedCompressionConfig,
        messages: list[ChatMessage],
        result: SyncResult,
    ) -> None:
        state = self.store.get_snapshot()
        key = (
            compute_usage_signature(messages),
            compute_messages_signature(messages),
            tuple((pin.id, pin.pinned_at) for pin in state.pinned_messages),
            tuple((artifact.id, artifact.updated_at, artifact.summary) for artifact in state.artifacts),
            state.snapshot.id if state.snapshot else None,
            config.max_token_budget,
            config.compression_threshold,
        )
        if key == self._usage_key:
            return
        self._usage_key = key

        payload = build_compression_payload(
            messages, state.pinned_messages, state.artifacts, state.snapshot, config
        )
        if (
            not has_meaningful_usage_change(state.usage, payload.usage)
            and state.should_compress == payload.should_compress
            and state.over_budget == payload.over_budget
        ):
            return
        self.store.set_usage(
            payload.usage,
            should_compress=payload.should_compress,
            over_budget=payload.over_budget,
        )
        result.usage_updated = True

    def _persist(self, thread_id: str, result: SyncResult) -> None:
        persisted = build_persisted_state(self.store.get_snapshot())
        if persisted == self._last_persisted:
            logger.debug(f"Compression state of thread {thread_id} unchanged; skipping persist")
            return

        self._phases[thread_id] = SyncPhase.PERSISTING
        persisted = clone_persisted_state(persisted)
        self._last_persisted = clone_persisted_state(persisted)
        self._stamp(result, persisted)

        if result.messages_changed:
            self._write_messages(thread_id, result.messages)
        if self._write_metadata(thread_id, {COMPRESSION_THREAD_METADATA_KEY: dump_persisted_state(persisted)}):
            self._last_hydrated = clone_persisted_state(persisted)
            result.persisted = True
        self._phases[thread_id] = SyncPhase.SYNCED

    def _sync_disabled(self, thread_id: str, messages: list[ChatMessage]) -> SyncResult:
        result = SyncResult(messages=messages)
        if self.store.list_pinned_messages():
            self.store.clear_pinned_messages()
        if self.store.usage is not None or self.store.should_compress or self.store.over_budget:
            self.store.set_usage(None, should_compress=False, over_budget=False)
        self._sync_model_metadata(self.controller.config)

        cleared = apply_compression_metadata(messages, None)
        if cleared.changed:
            result.messages = cleared.messages
            result.messages_changed = True
            self._write_messages(thread_id, cleared.messages)

        record = self._read_record(thread_id)
        if record is not None and (record.metadata or {}).get(COMPRESSION_THREAD_METADATA_KEY) is not None:
            result.persisted = self._write_metadata(thread_id, {COMPRESSION_THREAD_METADATA_KEY: None})

        self._last_persisted = None
        self._last_hydrated = _NOT_HYDRATED
        self._phases[thread_id] = SyncPhase.SYNCED
        return result

    # Thread store access

    def _read_record(self, thread_id: str) -> ChatThreadRecord | None:
        try:
            return self.thread_store.get_record(thread_id)
        except Exception as e:
            logger.warning(f"Failed to read thread {thread_id}: {e}", exc_info=self.show_error_messages)
            return None

    def _read_messages(self, thread_id: str) -> list[ChatMessage]:
        try:
            return self.thread_store.get_messages(thread_id)
        except Exception as e:
            logger.warning(
                f"Failed to read messages of thread {thread_id}: {e}",
                exc_info=self.show_error_messages,
            )
            return []

    def _write_messages(self, thread_id: str, messages: list[ChatMessage]) -> bool:
        try:
            self.thread_store.update_thread_messages(thread_id, messages)
        except Exception as e:
            logger.warning(
                f"Failed to persist compression-updated messages for thread {thread_id}: {e}",
                exc_info=self.show_error_messages,
            )
            return False
        return True

    def _write_metadata(self, thread_id: str, patch: dict[str, Any]) -> bool:
        try:
            self.thread_store.update_thread_metadata(thread_id, patch)
        except Exception as e:
            logger.warning(
                f"Failed to persist compression metadata for thread {thread_id}: {e}",
                exc_info=self.show_error_messages,
            )
            return False
        return True
