"""OpenRouter model resolution for the compaction handler.

Uses the OpenAI-compatible endpoint provided by OpenRouter through
``langchain_openai.ChatOpenAI``. Configuration comes from the environment
(``OPENROUTER_API_KEY``, ``OPENROUTER_MODEL``), optionally via a ``.env`` file.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any

from dotenv import load_dotenv
from langchain_core.language_models import BaseChatModel
from langchain_openai import ChatOpenAI

if TYPE_CHECKING:
    from chatcompress.handler import ModelResolverContext

logger = logging.getLogger(__name__)

OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"
DEFAULT_OPENROUTER_MODEL = "anthropic/claude-sonnet-4.5"


def load_env() -> None:
    """Load environment variables from .env file if it exists."""
    load_dotenv()


def is_openrouter_configured() -> bool:
    """Check if OpenRouter is configured via environment variables.

    Returns:
        True if OPENROUTER_API_KEY is set, False otherwise.
    """
    return bool(os.getenv("OPENROUTER_API_KEY"))


def get_openrouter_model(model_name: str | None = None, **kwargs: Any) -> BaseChatModel:
    """Create a ChatOpenAI instance configured for OpenRouter.

    Compaction is a deterministic summarization task, so temperature defaults
    to 0.

    Args:
        model_name: OpenRouter model id. Falls back to OPENROUTER_MODEL, then
            to ``DEFAULT_OPENROUTER_MODEL``.
        **kwargs: Additional arguments to pass to ChatOpenAI.

    Returns:
        ChatOpenAI instance configured for OpenRouter.

    Raises:
        ValueError: If OPENROUTER_API_KEY is not set.
    """
    api_key = os.getenv("OPENROUTER_API_KEY")
    if not api_key:
        msg = (
            "OPENROUTER_API_KEY environment variable is not set. "
            "Set it in your .env file or environment."
        )
        raise ValueError(msg)

    if model_name is None:
        model_name = os.getenv("OPENROUTER_MODEL", DEFAULT_OPENROUTER_MODEL)

    openrouter_kwargs: dict[str, Any] = {
        "model": model_name,
        "openai_api_key": api_key,
        "openai_api_base": OPENROUTER_API_BASE,
        "temperature": 0,
        "default_headers": {"X-Title": "chatcompress"},
    }
    openrouter_kwargs.update(kwargs)

    return ChatOpenAI(**openrouter_kwargs)


def openrouter_model_resolver(context: ModelResolverContext) -> BaseChatModel | None:
    """Resolve the requested compaction model through OpenRouter.

    Returns None when OpenRouter is not configured, which the handler reports
    as "Compression model not configured".
    """
    load_env()
    if not is_openrouter_configured():
        logger.warning("OpenRouter is not configured; compaction model unavailable")
        return None
    return get_openrouter_model(context.requested_model)
