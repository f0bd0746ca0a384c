"""Local greedy summarizer.

Keeps the most recent messages (and every pinned one) verbatim and folds the
rest into a single digest artifact. No network access, no model call.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from chatcompress.messages import ChatMessage
from chatcompress.models import (
    CompressionArtifact,
    CompressionPinnedMessage,
    CompressionUsage,
    SummarizerContext,
    SummarizerResult,
    now_ms,
)
from chatcompress.tokens import (
    calculate_tokens_for_artifacts,
    calculate_tokens_for_messages,
    estimate_tokens,
    extract_message_text,
)

logger = logging.getLogger(__name__)

SUMMARY_TITLE = "Conversation Summary"
SUMMARY_CATEGORY = "summary"
SUMMARY_HEADER = "Earlier conversation condensed:"
MIN_SURVIVOR_MESSAGES = 6
RESERVED_COMPLETION_TOKENS = 512
SUMMARY_TOKEN_BUDGET = 256
MAX_SUMMARY_LINES = 12
MAX_LINE_CHARS = 280

_WHITESPACE = re.compile(r"\s+")


class CompressionSummarizer(Protocol):
    """Anything that can propose artifacts and survivors for a conversation."""

    async def __call__(self, context: SummarizerContext) -> SummarizerResult: ...


@dataclass
class _Entry:
    message: ChatMessage
    text: str
    tokens: int


def _dedupe(ids: Iterable[str | None]) -> list[str]:
    return list(dict.fromkeys(i for i in ids if i))


class DefaultSummarizer:
    """Greedy newest-first trimmer producing one digest artifact.

    Walking the transcript from newest to oldest, a message is kept when it
    is pinned, when fewer than ``min_survivors`` messages have been kept so
    far, or when it still fits the survivor token budget
    (``budget - pinned - reserved_completion_tokens - summary_token_budget``).
    Everything else is summarized oldest first.
    """

    def __init__(
        self,
        min_survivors: int = MIN_SURVIVOR_MESSAGES,
        reserved_completion_tokens: int = RESERVED_COMPLETION_TOKENS,
        summary_token_budget: int = SUMMARY_TOKEN_BUDGET,
        max_summary_lines: int = MAX_SUMMARY_LINES,
    ):
        self.min_survivors = min_survivors
        self.reserved_completion_tokens = reserved_completion_tokens
        self.summary_token_budget = summary_token_budget
        self.max_summary_lines = max_summary_lines

    async def __call__(self, context: SummarizerContext) -> SummarizerResult:
        return self.summarize(context.messages, context.pinned_messages, context.budget)

    def summarize(
        self,
        messages: list[ChatMessage],
        pinned_messages: list[CompressionPinnedMessage],
        budget: int | float | None,
        now: int | None = None,
    ) -> SummarizerResult:
        """Split a transcript into survivors and a digest artifact.

        Args:
            messages: Transcript, oldest first.
            pinned_messages: Pins; these always survive.
            budget: Token budget, or None for unlimited.
            now: Timestamp used for the artifact id and usage.

        Returns:
            Survivor ids (pins first), zero or one artifact, and usage.
        """
        now = now if now is not None else now_ms()
        entries = [self._entry(message) for message in messages]
        pinned_ids = {pin.message.id for pin in pinned_messages if pin.message.id}
        pinned_tokens = calculate_tokens_for_messages(
            {pin.message.id: pin.message for pin in pinned_messages}.values()
        )

        numeric_budget = None
        if isinstance(budget, (int, float)) and not isinstance(budget, bool) and math.isfinite(budget):
            numeric_budget = max(budget, 0)
        survivor_budget = (
            math.inf
            if numeric_budget is None
            else max(
                numeric_budget
                - pinned_tokens
                - self.reserved_completion_tokens
                - self.summary_token_budget,
                0,
            )
        )

        survivors, trimmed = self._collect(entries, pinned_ids, survivor_budget)
        artifact = self._build_artifact(trimmed, now)
        artifacts = [artifact] if artifact else []

        surviving_tokens = calculate_tokens_for_messages(
            message for message in survivors if message.id not in pinned_ids
        )
        artifact_tokens = calculate_tokens_for_artifacts(artifacts)
        total_tokens = pinned_tokens + surviving_tokens + artifact_tokens

        usage = CompressionUsage(
            total_tokens=total_tokens,
            pinned_tokens=pinned_tokens,
            artifact_tokens=artifact_tokens,
            surviving_tokens=surviving_tokens,
            budget=numeric_budget,
            remaining_tokens=max(numeric_budget - total_tokens, 0) if numeric_budget is not None else None,
            updated_at=now,
        )
        logger.debug(
            f"Default summarizer kept {len(survivors)} messages and trimmed {len(trimmed)}"
        )
        return SummarizerResult(
            artifacts=artifacts,
            surviving_message_ids=_dedupe(
                [*(pin.message.id for pin in pinned_messages), *(m.id for m in survivors)]
            ),
            usage=usage,
        )

    @staticmethod
    def _entry(message: ChatMessage) -> _Entry:
        text = _WHITESPACE.sub(" ", extract_message_text(message).strip())
        return _Entry(message=message, text=text, tokens=estimate_tokens(text))

    def _collect(
        self,
        entries: list[_Entry],
        pinned_ids: set[str],
        survivor_budget: float,
    ) -> tuple[list[ChatMessage], list[_Entry]]:
        survivors: list[ChatMessage] = []
        trimmed: list[_Entry] = []
        allocated = 0

        for entry in reversed(entries):
            if entry.message.id in pinned_ids:
                survivors.append(entry.message)
                continue
            keep_for_quota = len(survivors) < self.min_survivors
            fits_budget = entry.tokens == 0 or allocated + entry.tokens <= survivor_budget
            if keep_for_quota or fits_budget:
                survivors.append(entry.message)
                allocated += entry.tokens
            else:
                trimmed.append(entry)

        survivors.reverse()
        trimmed.reverse()
        return survivors, trimmed

    def _summary_text(self, entries: list[_Entry]) -> str:
        lines = []
        for entry in entries:
            if not entry.text:
                continue
            text = entry.text
            if len(text) > MAX_LINE_CHARS:
                text = f"{text[: MAX_LINE_CHARS - 3]}…"
            lines.append(f"• {entry.message.role or 'message'}: {text}")
        if not lines:
            return ""
        return "\n".join([SUMMARY_HEADER, *lines[: self.max_summary_lines]])

    def _build_artifact(self, trimmed: list[_Entry], now: int) -> CompressionArtifact | None:
        if not trimmed:
            return None
        summary = self._summary_text(trimmed)
        if not summary:
            return None

        trimmed_tokens = sum(entry.tokens for entry in trimmed)
        return CompressionArtifact(
            id=f"artifact-{now}",
            title=SUMMARY_TITLE,
            summary=summary,
            category=SUMMARY_CATEGORY,
            created_at=now,
            updated_at=now,
            tokens_saved=max(trimmed_tokens - estimate_tokens(summary), 0),
            source_message_ids=_dedupe(entry.message.id for entry in trimmed),
            author="system",
            editable=True,
        )


async def summarize_with_default(
    context: SummarizerContext,
    override: CompressionSummarizer | None = None,
) -> SummarizerResult:
    """Run ``override`` if given, otherwise the default summarizer."""
    summarizer = override or DefaultSummarizer()
    return await summarizer(context)
