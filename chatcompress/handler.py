"""LLM-backed compaction handler.

Builds a prompt describing the transcript, pins, artifacts and budget, asks a
chat model for structured output, and turns the answer into a snapshot plus
artifacts. Failures are reported as error responses; the handler never falls
back to the local summarizer.
"""

from __future__ import annotations

import inspect
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Union

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from pydantic import BaseModel, Field, ValidationError

from chatcompress.config import CompressionConfig, normalize_compression_config
from chatcompress.messages import ChatMessage
from chatcompress.models import (
    CompressionArtifact,
    CompressionPayloadResult,
    CompressionServiceRequest,
    CompressionServiceResponse,
    CompressionSnapshot,
    next_snapshot_id,
    now_ms,
)
from chatcompress.payload import build_compression_payload
from chatcompress.tokens import (
    calculate_tokens_for_messages,
    estimate_token_length,
    extract_message_text,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You compress chat transcripts so future LLM calls stay within token limits. "
    "Summaries must be precise, retain action items, decisions, and user preferences, "
    "and never omit pinned messages. Always preserve the latest important turns so "
    "the assistant keeps context."
)
MAX_RECENT_MESSAGES_DEFAULT = 6
MAX_ARTIFACTS_DEFAULT = 3
MESSAGE_SNIPPET_LENGTH = 640

_WHITESPACE = re.compile(r"\s+")


class SummarizationArtifact(BaseModel):
    """One summary proposed by the model."""

    title: str | None = Field(None, min_length=1, max_length=160)
    summary: str = Field(..., min_length=1, description="Summary replacing older turns")
    category: str | None = Field(None, min_length=1, max_length=64)
    source_message_ids: list[str] | None = Field(
        None, description="Ids of the transcript messages this summary replaces"
    )


class SummarizationSchema(BaseModel):
    """Structured output requested from the compaction model."""

    surviving_message_ids: list[str] | None = Field(
        None, description="Ids of messages to keep verbatim"
    )
    artifacts: list[SummarizationArtifact] | None = Field(
        None, description="Summaries that replace older context"
    )
    notes: str | None = None


@dataclass
class ModelResolverContext:
    """Passed to a model resolver for each request."""

    request: CompressionServiceRequest
    requested_model: str | None


ModelResolver = Union[
    BaseChatModel,
    Callable[[ModelResolverContext], Union[BaseChatModel, None, Awaitable[Union[BaseChatModel, None]]]],
]


@dataclass
class HandlerResponse:
    """Status code and JSON body of a handler call."""

    status_code: int
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def _error(status_code: int, message: str) -> HandlerResponse:
    return HandlerResponse(status_code=status_code, payload={"error": message})


def _normalize_whitespace(value: str) -> str:
    return _WHITESPACE.sub(" ", value).strip()


def _truncate(value: str, max_length: int) -> str:
    if len(value) <= max_length:
        return value
    return f"{value[: max(0, max_length - 1)]}…"


def _unique(ids: list[str | None]) -> list[str]:
    return list(dict.fromkeys(i for i in ids if i))


def _snippet(text: str) -> str:
    return _truncate(_normalize_whitespace(text), MESSAGE_SNIPPET_LENGTH)


def compose_prompt(
    request: CompressionServiceRequest,
    baseline: CompressionPayloadResult,
    pinned_ids: set[str],
    max_recent_messages: int,
) -> str:
    """Describe the compaction task for the model."""
    budget = baseline.usage.budget
    lines = [
        f"Compression trigger: {request.reason or 'unknown'}. "
        f"Current transcript tokens (approx): {baseline.usage.total_tokens}.",
    ]
    if budget is not None:
        lines.append(f"Token budget: {budget}. Maintain safe headroom for upcoming replies.")
    else:
        lines.append(
            "Token budget: unknown. Focus on keeping the transcript concise "
            "without losing critical context."
        )
    lines.append(
        "Pinned messages must remain verbatim. The most recent "
        f"{max_recent_messages} turns are preserved automatically; note in the "
        "summary if anything else critical should stay verbatim."
    )

    pinned = [m for m in request.messages if m.id in pinned_ids]
    if pinned:
        lines.append("Pinned message details:")
        for message in pinned:
            lines.append(f"  - [{message.id}] {message.role}: {_snippet(extract_message_text(message))}")
    else:
        lines.append("Pinned message details: none")

    if request.artifacts:
        lines.append("Existing artifacts:")
        for artifact in request.artifacts:
            bits = [f"id={artifact.id}"]
            if artifact.title:
                bits.append(f'title="{artifact.title}"')
            if artifact.category:
                bits.append(f"category={artifact.category}")
            if artifact.summary:
                bits.append(f'summary="{_snippet(artifact.summary)}"')
            lines.append(f"  - {' '.join(bits)}")
    else:
        lines.append("Existing artifacts: none")

    lines.append("Conversation transcript (oldest to newest):")
    for index, message in enumerate(request.messages, start=1):
        pinned_flag = " (pinned)" if message.id in pinned_ids else ""
        text = _snippet(extract_message_text(message)) or "(no text)"
        lines.append(f"  #{index} [{message.id}] {message.role}{pinned_flag}: {text}")

    lines.append(
        "Respond with JSON that matches the provided schema. Focus on emitting "
        "concise artifacts that replace older context."
    )
    lines.append("Artifacts should cite source_message_ids for the turns they replace.")
    lines.append("Summaries must remain factual and omit speculation.")
    return "\n".join(lines)


class CompressionHandler:
    """Server-side summarizer backed by a langchain chat model.

    Args:
        model: A chat model, or a resolver (sync or async) returning one for
            a request. A resolver returning None yields a 400 response.
        system_prompt: System message for the model.
        max_recent_messages: Number of most recent non-pinned messages always
            kept verbatim.
        max_artifacts: Maximum number of new artifacts accepted per run.
        invoke_config: Static runnable config passed to ``ainvoke``.
        build_invoke_config: Per-request runnable config factory.
        on_error: Called with the exception and the request (when parsed).
    """

    def __init__(
        self,
        model: ModelResolver | None = None,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_recent_messages: int = MAX_RECENT_MESSAGES_DEFAULT,
        max_artifacts: int = MAX_ARTIFACTS_DEFAULT,
        invoke_config: RunnableConfig | None = None,
        build_invoke_config: Callable[[CompressionServiceRequest], Any] | None = None,
        on_error: Callable[[Exception, CompressionServiceRequest | None], None] | None = None,
    ):
        self.model = model
        self.system_prompt = system_prompt
        self.max_recent_messages = max(0, max_recent_messages)
        self.max_artifacts = max(0, max_artifacts)
        self.invoke_config = invoke_config
        self.build_invoke_config = build_invoke_config
        self.on_error = on_error

    async def handle(self, body: bytes | str | dict[str, Any]) -> HandlerResponse:
        """Process one compaction request.

        Args:
            body: Raw JSON bytes or text, or an already-decoded mapping.

        Returns:
            200 with snapshot, artifacts, usage and pins; 400 for malformed
            requests or a missing model; 500 for model or processing failures.
        """
        if isinstance(body, (bytes, str)):
            try:
                body = json.loads(body)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                self._report(e, None)
                return _error(400, "Invalid JSON body")

        if not isinstance(body, dict) or not isinstance(body.get("messages"), list):
            return _error(400, "Missing messages for compression")

        try:
            request = CompressionServiceRequest.model_validate(body)
        except ValidationError as e:
            self._report(e, None)
            return _error(400, f"Invalid compression request: {e.error_count()} validation error(s)")

        try:
            return await self._compress(request)
        except Exception as e:
            logger.exception("Compression handler failed")
            self._report(e, request)
            return _error(500, str(e) or "Failed to run compression")

    def _report(self, error: Exception, request: CompressionServiceRequest | None) -> None:
        if self.on_error is not None:
            self.on_error(error, request)

    async def _resolve_model(self, context: ModelResolverContext) -> BaseChatModel | None:
        resolver = self.model
        if resolver is None or isinstance(resolver, BaseChatModel):
            return resolver
        if callable(resolver):
            result = resolver(context)
            if inspect.isawaitable(result):
                result = await result
            return result
        return resolver

    async def _invoke_config(self, request: CompressionServiceRequest) -> RunnableConfig | None:
        config: dict[str, Any] = dict(self.invoke_config or {})
        if self.build_invoke_config is not None:
            dynamic = self.build_invoke_config(request)
            if inspect.isawaitable(dynamic):
                dynamic = await dynamic
            config.update(dynamic or {})
        return config or None

    async def _compress(self, request: CompressionServiceRequest) -> HandlerResponse:
        config = normalize_compression_config(
            CompressionConfig(
                enabled=True,
                max_token_budget=request.config.max_token_budget,
                compression_threshold=request.config.compression_threshold,
                pinned_message_limit=request.config.pinned_message_limit,
                model=request.config.model,
            )
        )
        pinned_ids = {pin.message.id or pin.id for pin in request.pinned_messages}
        baseline = build_compression_payload(
            request.messages, request.pinned_messages, request.artifacts, request.snapshot, config
        )

        model = await self._resolve_model(ModelResolverContext(request, config.model))
        if model is None:
            return _error(400, "Compression model not configured")

        prompt = compose_prompt(request, baseline, pinned_ids, self.max_recent_messages)
        structured = model.with_structured_output(SummarizationSchema)
        raw = await structured.ainvoke(
            [SystemMessage(content=self.system_prompt), HumanMessage(content=prompt)],
            config=await self._invoke_config(request),
        )
        result = raw if isinstance(raw, SummarizationSchema) else SummarizationSchema.model_validate(raw or {})

        now = now_ms()
        by_id = {message.id: message for message in request.messages if message.id}
        new_artifacts = self._build_artifacts(result, by_id, now)

        merged: dict[str, CompressionArtifact] = {a.id: a for a in request.artifacts if a.id}
        for artifact in new_artifacts:
            merged[artifact.id] = artifact
        artifacts = list(merged.values())

        survivors = self._select_survivors(request, result, new_artifacts, pinned_ids)
        snapshot = CompressionSnapshot(
            id=next_snapshot_id(now),
            created_at=now,
            surviving_message_ids=survivors,
            artifact_ids=[artifact.id for artifact in artifacts],
            excluded_message_ids=[i for i in by_id if i not in set(survivors)],
            tokens_before=(
                request.usage.total_tokens if request.usage is not None else baseline.usage.total_tokens
            ),
            reason=request.reason,
        )

        final = build_compression_payload(
            request.messages, request.pinned_messages, artifacts, snapshot, config, now=now
        )
        snapshot = finalize_snapshot(baseline, snapshot, final)
        logger.info(
            f"Compressed {len(request.messages)} messages into {len(final.messages)} "
            f"({snapshot.tokens_before} -> {snapshot.tokens_after} tokens)"
        )

        response = CompressionServiceResponse(
            snapshot=snapshot,
            artifacts=artifacts,
            usage=final.usage,
            pinned_messages=list(request.pinned_messages),
        )
        return HandlerResponse(status_code=200, payload=response.to_dict())

    def _build_artifacts(
        self,
        result: SummarizationSchema,
        by_id: dict[str, ChatMessage],
        now: int,
    ) -> list[CompressionArtifact]:
        artifacts = []
        for index, blueprint in enumerate((result.artifacts or [])[: self.max_artifacts]):
            summary = _normalize_whitespace(blueprint.summary or "")
            if not summary:
                continue
            title = _normalize_whitespace(blueprint.title) if blueprint.title else None
            category = _normalize_whitespace(blueprint.category) if blueprint.category else None
            source_ids = _unique([i for i in blueprint.source_message_ids or [] if i in by_id])

            trimmed_tokens = calculate_tokens_for_messages(by_id[i] for i in source_ids)
            summary_tokens = estimate_token_length(f"{title}\n{summary}" if title else summary)
            tokens_saved = trimmed_tokens - summary_tokens

            artifacts.append(
                CompressionArtifact(
                    id=f"artifact-{now}-{index}",
                    title=title,
                    summary=summary,
                    category=category,
                    created_at=now,
                    updated_at=now,
                    tokens_saved=tokens_saved if tokens_saved > 0 else None,
                    source_message_ids=source_ids or None,
                    author="assistant",
                    editable=True,
                )
            )
        return artifacts

    def _select_survivors(
        self,
        request: CompressionServiceRequest,
        result: SummarizationSchema,
        new_artifacts: list[CompressionArtifact],
        pinned_ids: set[str],
    ) -> list[str]:
        """Model-chosen survivors, plus every pin, plus the recent floor."""
        known = [message.id for message in request.messages if message.id]
        summarized = {i for artifact in new_artifacts for i in artifact.source_message_ids or []}

        chosen = {
            i for i in result.surviving_message_ids or [] if i in known and i not in summarized
        }
        chosen |= pinned_ids

        if self.max_recent_messages > 0:
            recent = [i for i in known if i not in pinned_ids][-self.max_recent_messages :]
            chosen.update(recent)

        ordered = _unique([i for i in known if i in chosen])
        missing_pins = [
            pin.message.id or pin.id
            for pin in request.pinned_messages
            if (pin.message.id or pin.id) not in ordered
        ]
        return _unique([*missing_pins, *ordered])


def finalize_snapshot(
    baseline: CompressionPayloadResult,
    snapshot: CompressionSnapshot,
    final: CompressionPayloadResult,
) -> CompressionSnapshot:
    """Fill token deltas and defaulted id lists from the final payload."""
    tokens_before = (
        snapshot.tokens_before if snapshot.tokens_before is not None else baseline.usage.total_tokens
    )
    tokens_after = final.usage.total_tokens
    return snapshot.model_copy(
        update={
            "tokens_before": tokens_before,
            "tokens_after": tokens_after,
            "tokens_saved": max(tokens_before - tokens_after, 0),
            "artifact_ids": snapshot.artifact_ids or list(final.artifact_ids),
            "surviving_message_ids": snapshot.surviving_message_ids or list(final.surviving_message_ids),
        }
    )
