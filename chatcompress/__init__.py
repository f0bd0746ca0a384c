"""Conversation compaction and token-budget engine.

This package decides which chat messages are sent to a model verbatim, which
are replaced by generated summary artifacts, and which are pinned, and keeps
that decision in sync with a durable thread store:
- Estimates token usage of the outgoing payload against a budget
- Triggers compaction at a threshold or when the budget is exceeded
- Summarizes older messages locally or through an LLM-backed endpoint
- Embeds pin and compression facts in message metadata
- Persists and rehydrates compaction state per thread

Core components:
- build_compression_payload: Pure payload assembly and budget evaluation
- CompressionStateStore: Pins, artifacts, events, usage and snapshot
- CompressionController: Compaction cycle and pin actions
- ModelCompressionSync: Hydration, usage tracking and persistence per thread
- CompressionHandler: LLM-backed summarizer behind ``chatcompress.api``

Usage:
    from chatcompress import CompressionConfig, InMemoryThreadStore, ModelCompressionSync

    sync = ModelCompressionSync(
        InMemoryThreadStore(),
        models=[ChatModelOption(id="gpt-4o", context_window_tokens=128000)],
        compression=CompressionConfig(enabled=True),
    )
    result = sync.sync("thread-1", messages)
    result = await sync.compress("thread-1", result.messages, force=True)
"""

from chatcompress.config import (
    DEFAULT_COMPRESSION_THRESHOLD,
    CompressionConfig,
    CompressionConfigurationError,
    NormalizedCompressionConfig,
    normalize_compression_config,
)
from chatcompress.controller import CompressionController
from chatcompress.handler import CompressionHandler, HandlerResponse, SummarizationSchema
from chatcompress.messages import (
    ChatMessage,
    FilePart,
    MessagePart,
    ReasoningPart,
    SourceDocumentPart,
    SourceUrlPart,
    TextPart,
    ToolPart,
    UnknownPart,
)
from chatcompress.metadata import (
    COMPRESSION_MESSAGE_METADATA_KEY,
    apply_compression_metadata,
    build_compression_event_message,
    ensure_compression_event_message,
    extract_pinned_messages,
    with_compression_state,
    with_pinned_state,
)
from chatcompress.model_catalog import ChatModelOption, ModelCatalog, load_model_options
from chatcompress.models import (
    CompressionArtifact,
    CompressionErrorEvent,
    CompressionEvent,
    CompressionModelMetadata,
    CompressionPayloadResult,
    CompressionPinnedMessage,
    CompressionResultPayload,
    CompressionServiceRequest,
    CompressionServiceResponse,
    CompressionSnapshot,
    CompressionUsage,
    PersistedCompressionState,
    SummarizerContext,
    SummarizerResult,
)
from chatcompress.payload import build_compression_payload
from chatcompress.persistence import COMPRESSION_THREAD_METADATA_KEY, build_persisted_state
from chatcompress.service import CompressionServiceError, fetch_compression_service
from chatcompress.store import CompressionStateStore, get_compression_store, reset_compression_store
from chatcompress.summarizer import CompressionSummarizer, DefaultSummarizer, summarize_with_default
from chatcompress.sync import ModelCompressionSync, SyncPhase, SyncResult
from chatcompress.threads import ChatThreadRecord, InMemoryThreadStore, ThreadStore
from chatcompress.tokens import (
    calculate_tokens_for_artifacts,
    calculate_tokens_for_messages,
    estimate_token_length,
    estimate_tokens,
)

__all__ = [
    # Config
    "CompressionConfig",
    "CompressionConfigurationError",
    "DEFAULT_COMPRESSION_THRESHOLD",
    "NormalizedCompressionConfig",
    "normalize_compression_config",
    # Messages
    "ChatMessage",
    "MessagePart",
    "TextPart",
    "ReasoningPart",
    "ToolPart",
    "SourceUrlPart",
    "SourceDocumentPart",
    "FilePart",
    "UnknownPart",
    # Models
    "CompressionArtifact",
    "CompressionErrorEvent",
    "CompressionEvent",
    "CompressionModelMetadata",
    "CompressionPayloadResult",
    "CompressionPinnedMessage",
    "CompressionResultPayload",
    "CompressionServiceRequest",
    "CompressionServiceResponse",
    "CompressionSnapshot",
    "CompressionUsage",
    "PersistedCompressionState",
    "SummarizerContext",
    "SummarizerResult",
    # Tokens and payload
    "estimate_tokens",
    "estimate_token_length",
    "calculate_tokens_for_messages",
    "calculate_tokens_for_artifacts",
    "build_compression_payload",
    # Metadata and persistence
    "COMPRESSION_MESSAGE_METADATA_KEY",
    "COMPRESSION_THREAD_METADATA_KEY",
    "apply_compression_metadata",
    "build_compression_event_message",
    "ensure_compression_event_message",
    "extract_pinned_messages",
    "with_compression_state",
    "with_pinned_state",
    "build_persisted_state",
    # Summarizers
    "CompressionSummarizer",
    "DefaultSummarizer",
    "summarize_with_default",
    "CompressionHandler",
    "HandlerResponse",
    "SummarizationSchema",
    "CompressionServiceError",
    "fetch_compression_service",
    # State and orchestration
    "CompressionStateStore",
    "get_compression_store",
    "reset_compression_store",
    "CompressionController",
    "ModelCompressionSync",
    "SyncPhase",
    "SyncResult",
    # Models and threads
    "ChatModelOption",
    "ModelCatalog",
    "load_model_options",
    "ChatThreadRecord",
    "InMemoryThreadStore",
    "ThreadStore",
]
