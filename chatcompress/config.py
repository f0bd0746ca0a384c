"""Configuration for the conversation compaction engine."""

from __future__ import annotations

import math
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from dotenv import load_dotenv

if TYPE_CHECKING:
    from chatcompress.models import (
        CompressionErrorEvent,
        CompressionResultPayload,
        CompressionServiceRequest,
        CompressionServiceResponse,
        SummarizerContext,
        SummarizerResult,
    )

DEFAULT_COMPRESSION_THRESHOLD = 0.85
DEFAULT_COMPRESSION_API = "/api/compression"

CompressionFetcher = Callable[["CompressionServiceRequest"], Awaitable["CompressionServiceResponse"]]
CompressionSummarizerFn = Callable[["SummarizerContext"], Awaitable["SummarizerResult"]]


class CompressionConfigurationError(ValueError):
    """Raised when compaction is enabled with an unusable configuration."""


@dataclass
class CompressionConfig:
    """User-facing compaction settings.

    Unset values are resolved later from the active model or from defaults.

    Attributes:
        enabled: Turn compaction on. Defaults to off.
        max_token_budget: Maximum tokens allowed in a payload. When None the
            active model's context window is used.
        compression_threshold: Fraction of the budget at which compaction
            triggers before the budget is actually exceeded.
        pinned_message_limit: Advisory cap on pinned messages, forwarded to
            the remote summarizer.
        model: Model id requested from the remote summarizer.
        api: Absolute URL of a remote compaction endpoint. When None the local
            summarizer is used.
        on_compression: Called with the finalized result of each run.
        on_error: Called when a run fails.
        fetcher: Custom coroutine replacing the HTTP call to ``api``.
        summarizer: Custom coroutine replacing the summarizer entirely.
    """

    enabled: bool | None = None
    max_token_budget: int | None = None
    compression_threshold: float | None = None
    pinned_message_limit: int | None = None
    model: str | None = None
    api: str | None = None
    on_compression: Callable[[CompressionResultPayload], Any] | None = None
    on_error: Callable[[CompressionErrorEvent], Any] | None = None
    fetcher: CompressionFetcher | None = None
    summarizer: CompressionSummarizerFn | None = None

    @classmethod
    def from_env(cls, prefix: str = "CHATCOMPRESS_") -> CompressionConfig:
        """Build a configuration from environment variables.

        A ``.env`` file is loaded first if one exists.

        Args:
            prefix: Prefix of the variable names.

        Returns:
            Configuration with every variable that was set applied.

        Raises:
            CompressionConfigurationError: If a numeric variable cannot be parsed.
        """
        load_dotenv()

        def read(name: str) -> str | None:
            value = os.getenv(f"{prefix}{name}")
            return value.strip() if value and value.strip() else None

        def read_number(name: str, kind: type) -> Any:
            raw = read(name)
            if raw is None:
                return None
            try:
                return kind(raw)
            except ValueError as e:
                msg = f"{prefix}{name} must be a number, got {raw!r}"
                raise CompressionConfigurationError(msg) from e

        enabled = read("ENABLED")
        return cls(
            enabled=enabled.lower() in ("1", "true", "yes", "on") if enabled else None,
            max_token_budget=read_number("MAX_TOKEN_BUDGET", int),
            compression_threshold=read_number("THRESHOLD", float),
            pinned_message_limit=read_number("PINNED_LIMIT", int),
            model=read("MODEL"),
            api=read("API"),
        )


@dataclass(frozen=True)
class NormalizedCompressionConfig:
    """Fully defaulted compaction policy."""

    enabled: bool = False
    max_token_budget: int | None = None
    compression_threshold: float = DEFAULT_COMPRESSION_THRESHOLD
    pinned_message_limit: int | None = None
    model: str | None = None
    api: str | None = None
    on_compression: Callable[[CompressionResultPayload], Any] | None = None
    on_error: Callable[[CompressionErrorEvent], Any] | None = None
    fetcher: CompressionFetcher | None = None
    summarizer: CompressionSummarizerFn | None = None


def clamp_threshold(value: float | None) -> float:
    """Clamp a threshold into [0, 1], falling back to the default."""
    if value is None or not isinstance(value, (int, float)) or math.isnan(value):
        return DEFAULT_COMPRESSION_THRESHOLD
    return min(max(float(value), 0.0), 1.0)


def normalize_compression_config(
    config: CompressionConfig | NormalizedCompressionConfig | None = None,
) -> NormalizedCompressionConfig:
    """Resolve a user configuration into a normalized policy.

    Args:
        config: User configuration, an already normalized one, or None.

    Returns:
        Normalized configuration with every default applied.
    """
    if isinstance(config, NormalizedCompressionConfig):
        return config
    if config is None:
        return NormalizedCompressionConfig()

    return NormalizedCompressionConfig(
        enabled=bool(config.enabled),
        max_token_budget=config.max_token_budget,
        compression_threshold=clamp_threshold(config.compression_threshold),
        pinned_message_limit=config.pinned_message_limit,
        model=config.model or None,
        api=config.api.strip() if config.api and config.api.strip() else None,
        on_compression=config.on_compression,
        on_error=config.on_error,
        fetcher=config.fetcher,
        summarizer=config.summarizer,
    )
