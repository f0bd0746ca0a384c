"""Compaction cycle and pin actions.

A cycle always computes and publishes a baseline payload first, then runs the
summarizer, then rebuilds the payload against the proposed snapshot. Failures
leave the store on the baseline; results that arrive after the caller moved on
are discarded.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

from chatcompress.config import (
    CompressionConfig,
    NormalizedCompressionConfig,
    normalize_compression_config,
)
from chatcompress.messages import ChatMessage
from chatcompress.metadata import MessagePinnedState, with_pinned_state
from chatcompress.models import (
    CompressionArtifact,
    CompressionErrorEvent,
    CompressionPayloadResult,
    CompressionPinnedMessage,
    CompressionRequestConfig,
    CompressionResultPayload,
    CompressionServiceRequest,
    CompressionServiceResponse,
    CompressionSnapshot,
    SummarizerContext,
    next_snapshot_id,
    now_ms,
)
from chatcompress.payload import build_compression_payload
from chatcompress.service import CompressionServiceError, fetch_compression_service
from chatcompress.store import CompressionStateStore, CompressionStoreSnapshot, get_compression_store, make_event
from chatcompress.summarizer import DefaultSummarizer

logger = logging.getLogger(__name__)


def _replace_at(messages: list[ChatMessage], index: int, message: ChatMessage) -> list[ChatMessage]:
    if messages[index] is message:
        return messages
    updated = list(messages)
    updated[index] = message
    return updated


def _find_index(messages: Sequence[ChatMessage], message_id: str) -> int | None:
    return next((i for i, message in enumerate(messages) if message.id == message_id), None)


class CompressionController:
    """Runs compaction against the store and keeps pins in sync with the transcript.

    Args:
        config: Compaction settings; normalized on assignment.
        store: State store. Defaults to the process-wide store.
    """

    def __init__(
        self,
        config: CompressionConfig | NormalizedCompressionConfig | None = None,
        store: CompressionStateStore | None = None,
    ):
        self.store = store or get_compression_store()
        self.store.set_config(normalize_compression_config(config))

    @property
    def config(self) -> NormalizedCompressionConfig:
        return self.store.config

    @config.setter
    def config(self, config: CompressionConfig | NormalizedCompressionConfig | None) -> None:
        self.store.set_config(normalize_compression_config(config))

    def preview(self, messages: Sequence[ChatMessage], now: int | None = None) -> CompressionPayloadResult:
        """Build the payload for ``messages`` against the current store, without side effects."""
        state = self.store.get_snapshot()
        return build_compression_payload(
            messages, state.pinned_messages, state.artifacts, state.snapshot, self.store.config, now=now
        )

    async def run_compression(
        self,
        messages: Sequence[ChatMessage],
        *,
        force: bool = False,
        reason: str | None = None,
        is_current: Callable[[], bool] | None = None,
    ) -> CompressionPayloadResult:
        """Run one compaction cycle.

        Args:
            messages: Full transcript, oldest first.
            force: Compact even below the threshold.
            reason: Trigger reason recorded on the snapshot.
            is_current: Checked after the summarizer returns; a False result
                discards the outcome.

        Returns:
            The final payload, or the baseline payload when compaction was not
            needed, failed or was superseded.
        """
        config = self.store.config
        messages = list(messages)
        state = self.store.get_snapshot()
        baseline = build_compression_payload(
            messages, state.pinned_messages, state.artifacts, state.snapshot, config
        )
        self.store.set_usage(
            baseline.usage,
            should_compress=force or baseline.should_compress,
            over_budget=baseline.over_budget,
        )

        if not config.enabled or not (baseline.should_compress or force):
            return baseline

        if reason is None:
            reason = "manual" if force else "over-budget" if baseline.over_budget else "threshold"
        self.store.record_event(
            make_event(
                "run",
                f"Compression triggered ({reason})",
                payload={"totalTokens": baseline.usage.total_tokens, "budget": config.max_token_budget},
            )
        )

        try:
            response = await self._summarize(messages, state, baseline, reason)
        except Exception as e:
            self._record_failure(e, baseline, reason)
            return baseline

        if is_current is not None and not is_current():
            logger.debug("Discarding compression result for a superseded transcript")
            return baseline

        final, payload = self._finalize(messages, state, baseline, response, reason)
        logger.info(
            f"Compression applied ({reason}): {payload.snapshot.tokens_before} -> "
            f"{payload.snapshot.tokens_after} tokens"
        )
        if config.on_compression is not None:
            config.on_compression(payload)
        return final

    def _request(
        self,
        messages: list[ChatMessage],
        state: CompressionStoreSnapshot,
        baseline: CompressionPayloadResult,
        reason: str,
    ) -> CompressionServiceRequest:
        config = self.store.config
        return CompressionServiceRequest(
            messages=messages,
            pinned_messages=list(state.pinned_messages),
            artifacts=list(state.artifacts),
            snapshot=state.snapshot,
            usage=baseline.usage,
            config=CompressionRequestConfig(
                max_token_budget=config.max_token_budget,
                compression_threshold=config.compression_threshold,
                pinned_message_limit=config.pinned_message_limit,
                model=config.model,
            ),
            metadata=state.model_metadata.to_dict() if state.model_metadata else None,
            reason=reason,
        )

    async def _summarize(
        self,
        messages: list[ChatMessage],
        state: CompressionStoreSnapshot,
        baseline: CompressionPayloadResult,
        reason: str,
    ) -> CompressionServiceResponse:
        config = self.store.config
        request = self._request(messages, state, baseline, reason)

        if config.summarizer is None:
            if config.fetcher is not None:
                return await config.fetcher(request)
            if config.api is not None:
                return await fetch_compression_service(request, api=config.api)

        context = SummarizerContext(
            messages=messages,
            pinned_messages=list(state.pinned_messages),
            artifacts=list(state.artifacts),
            snapshot=state.snapshot,
            usage=baseline.usage,
            budget=config.max_token_budget,
            config=request.config,
            reason=reason,
        )
        summarizer = config.summarizer or DefaultSummarizer()
        result = await summarizer(context)

        summarized = {i for artifact in result.artifacts for i in artifact.source_message_ids or []}
        kept = [
            artifact
            for artifact in state.artifacts
            if not summarized.intersection(artifact.source_message_ids or [])
        ]
        now = now_ms()
        return CompressionServiceResponse(
            snapshot=CompressionSnapshot(
                id=next_snapshot_id(now),
                created_at=now,
                surviving_message_ids=result.surviving_message_ids,
                artifact_ids=[a.id for a in [*kept, *result.artifacts]],
                reason=reason,
            ),
            artifacts=[*kept, *result.artifacts],
        )

    def _finalize(
        self,
        messages: list[ChatMessage],
        state: CompressionStoreSnapshot,
        baseline: CompressionPayloadResult,
        response: CompressionServiceResponse,
        reason: str,
    ) -> tuple[CompressionPayloadResult, CompressionResultPayload]:
        config = self.store.config
        artifacts = list(response.artifacts)
        pins = list(response.pinned_messages) if response.pinned_messages is not None else list(state.pinned_messages)
        pinned_ids = {pin.message.id for pin in pins}
        base_ids = [message.id for message in messages if message.id]

        snapshot = response.snapshot
        excluded = set(snapshot.excluded_message_ids or [])
        if snapshot.surviving_message_ids:
            surviving = set(snapshot.surviving_message_ids)
            excluded.update(i for i in base_ids if i not in surviving and i not in pinned_ids)
        snapshot = CompressionSnapshot.model_validate(
            {
                **snapshot.model_dump(),
                "artifact_ids": snapshot.artifact_ids or [a.id for a in artifacts],
                "tokens_before": (
                    snapshot.tokens_before
                    if snapshot.tokens_before is not None
                    else baseline.usage.total_tokens
                ),
                "reason": snapshot.reason or reason,
                "excluded_message_ids": [i for i in base_ids if i in excluded] or None,
            }
        )

        final = build_compression_payload(messages, pins, artifacts, snapshot, config)
        final_surviving = set(final.surviving_message_ids)
        snapshot = snapshot.model_copy(
            update={
                "tokens_after": final.usage.total_tokens,
                "tokens_saved": max(snapshot.tokens_before - final.usage.total_tokens, 0),
                "excluded_message_ids": [i for i in base_ids if i not in final_surviving] or None,
            }
        )

        usage = final.usage
        if response.usage is not None and response.usage.estimated_response_tokens is not None:
            usage = usage.model_copy(
                update={"estimated_response_tokens": response.usage.estimated_response_tokens}
            )

        if response.pinned_messages is not None:
            self.store.set_pinned_messages(pins)
        previous = {artifact.id: artifact for artifact in state.artifacts}
        self.store.set_artifacts(artifacts)
        self.store.set_snapshot(snapshot)
        self.store.set_usage(
            usage,
            append_event=True,
            event_message=f"Compression applied, saved {snapshot.tokens_saved} tokens",
            should_compress=final.should_compress,
            over_budget=final.over_budget,
        )
        for artifact in artifacts:
            self._record_artifact_event(artifact, previous.get(artifact.id))

        payload = CompressionResultPayload(
            snapshot=snapshot,
            artifacts=artifacts,
            usage=usage,
            pinned_messages=self.store.list_pinned_messages(),
        )
        return final, payload

    def _record_artifact_event(
        self, artifact: CompressionArtifact, previous: CompressionArtifact | None
    ) -> None:
        if previous is not None:
            if previous == artifact:
                return
            event_type, label = "artifact-updated", "Artifact updated"
        else:
            event_type, label = "artifact-created", "Artifact created"
        self.store.record_event(
            make_event(
                event_type,
                f"{label}: {artifact.title or artifact.id}",
                payload={"artifactId": artifact.id, "tokensSaved": artifact.tokens_saved},
            )
        )

    def _record_failure(self, error: Exception, baseline: CompressionPayloadResult, reason: str) -> None:
        config = self.store.config
        phase = "payload" if isinstance(error, CompressionServiceError) else "summarizer"
        context: dict[str, Any] = {
            "budget": config.max_token_budget,
            "totalTokens": baseline.usage.total_tokens,
            "reason": reason,
            "endpoint": config.api,
        }
        if isinstance(error, CompressionServiceError) and error.status_code is not None:
            context["status"] = error.status_code

        logger.warning(f"Compression failed during {phase}: {error}")
        self.store.set_usage(
            baseline.usage,
            should_compress=baseline.should_compress,
            over_budget=baseline.over_budget,
        )
        self.store.record_event(
            make_event("error", str(error) or type(error).__name__, level="error", payload={"phase": phase, **context})
        )
        if config.on_error is not None:
            config.on_error(
                CompressionErrorEvent(error=error, phase=phase, timestamp=now_ms(), context=context)
            )

    # Pin actions

    def pin_message(
        self,
        messages: list[ChatMessage],
        message_id: str,
        *,
        reason: str | None = None,
        pinned_by: str | None = None,
        pinned_at: int | None = None,
    ) -> list[ChatMessage]:
        """Pin a transcript message in both the store and its metadata.

        Returns:
            The transcript with the message stamped; the same list if nothing
            changed or the id is unknown.
        """
        index = _find_index(messages, message_id)
        if index is None:
            logger.debug(f"Cannot pin unknown message {message_id}")
            return messages

        existing = self.store.get_pinned_message(message_id)
        state = MessagePinnedState(
            pinned_at=pinned_at if pinned_at is not None else now_ms(),
            pinned_by=pinned_by or (existing.pinned_by if existing else None) or "user",
            reason=reason if reason is not None else (existing.reason if existing else None),
        )
        stamped = with_pinned_state(messages[index], state)
        self.store.pin_message(
            stamped, reason=state.reason, pinned_by=state.pinned_by, pinned_at=state.pinned_at
        )
        return _replace_at(messages, index, stamped)

    def unpin_message(self, messages: list[ChatMessage], message_id: str) -> list[ChatMessage]:
        """Remove a pin from the store and from the message metadata."""
        self.store.unpin_message(message_id)
        index = _find_index(messages, message_id)
        if index is None:
            return messages
        return _replace_at(messages, index, with_pinned_state(messages[index], None))

    def set_pinned_messages(
        self,
        messages: list[ChatMessage],
        pins: Sequence[CompressionPinnedMessage],
    ) -> list[ChatMessage]:
        """Replace every pin, re-stamping the transcript to match."""
        by_id = {pin.message.id: pin for pin in pins}
        updated = messages
        for index, message in enumerate(messages):
            updated = _replace_at(updated, index, with_pinned_state(message, by_id.get(message.id)))
        self.store.set_pinned_messages(
            [
                pin.model_copy(update={"message": updated[index]})
                if (index := _find_index(updated, pin.message.id)) is not None
                else pin
                for pin in pins
            ]
        )
        return updated

    def clear_pinned_messages(self, messages: list[ChatMessage]) -> list[ChatMessage]:
        """Remove every pin from the store and the transcript."""
        return self.set_pinned_messages(messages, [])
