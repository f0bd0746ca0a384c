"""Shared fixtures for chatcompress unit tests."""

from __future__ import annotations

import pytest

from chatcompress.messages import ChatMessage
from chatcompress.store import CompressionStateStore, reset_compression_store


@pytest.fixture(autouse=True)
def _reset_global_store():
    """Each test starts from an empty process-wide store."""
    reset_compression_store()
    yield
    reset_compression_store()


@pytest.fixture
def store() -> CompressionStateStore:
    return CompressionStateStore()


@pytest.fixture
def transcript() -> list[ChatMessage]:
    """Nine alternating user/assistant turns, m1 oldest."""
    return [
        ChatMessage.from_text(f"m{i}", f"Message number {i} with some detail", "user" if i % 2 else "assistant")
        for i in range(1, 10)
    ]
