"""Selectable chat models and their context budgets."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from pathlib import Path

import yaml
from pydantic import Field, ValidationError

from chatcompress.config import CompressionConfigurationError
from chatcompress.models import WireModel

logger = logging.getLogger(__name__)


class ChatModelOption(WireModel):
    """A model the user can pick, with its context window."""

    id: str = Field(..., description="Provider model id")
    label: str | None = None
    description: str | None = None
    context_window_tokens: int | None = Field(None, description="Maximum context tokens")
    context_compression_threshold: float | None = Field(
        None, description="Compaction threshold override for this model"
    )
    max_output_tokens: int | None = None


def has_valid_context_window(model: ChatModelOption) -> bool:
    tokens = model.context_window_tokens
    return isinstance(tokens, (int, float)) and math.isfinite(tokens) and tokens > 0


def validate_compression_models(models: Iterable[ChatModelOption]) -> None:
    """Require a positive context window on every model.

    Raises:
        CompressionConfigurationError: Listing the ids of offending models.
    """
    invalid = [model.id for model in models if not has_valid_context_window(model)]
    if invalid:
        msg = (
            "Compression is enabled but these models do not declare a positive "
            f"context_window_tokens: {', '.join(invalid)}"
        )
        raise CompressionConfigurationError(msg)


def load_model_options(path: str | Path) -> list[ChatModelOption]:
    """Load model options from a YAML file.

    The file holds either a list of model mappings or a mapping with a
    ``models`` list.

    Raises:
        CompressionConfigurationError: If the file is not a valid catalog.
    """
    path = Path(path)
    with path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if isinstance(data, dict):
        data = data.get("models")
    if not isinstance(data, list):
        msg = f"Model catalog {path} must contain a list of models"
        raise CompressionConfigurationError(msg)

    try:
        return [ChatModelOption.model_validate(entry) for entry in data]
    except ValidationError as e:
        msg = f"Invalid model catalog {path}: {e}"
        raise CompressionConfigurationError(msg) from e


class ModelCatalog:
    """Ordered, de-duplicated list of models with a current selection."""

    def __init__(self, models: Sequence[ChatModelOption] = (), selected_model_id: str | None = None):
        self.models: list[ChatModelOption] = []
        self.selected_model_id: str | None = None
        self.set_models(models, selected_model_id)

    def set_models(self, models: Sequence[ChatModelOption], preferred_id: str | None = None) -> None:
        """Replace the catalog.

        The first occurrence of a duplicate id wins. Selection falls back from
        ``preferred_id`` to the current selection to the first model.
        """
        unique: dict[str, ChatModelOption] = {}
        for model in models:
            if model.id and model.id not in unique:
                unique[model.id] = model
        self.models = list(unique.values())

        for candidate in (preferred_id, self.selected_model_id):
            if candidate and candidate in unique:
                self.selected_model_id = candidate
                return
        self.selected_model_id = self.models[0].id if self.models else None

    def set_selected_model_id(self, model_id: str | None) -> bool:
        """Select a model. Unknown ids are ignored.

        Returns:
            True if the selection was applied.
        """
        if model_id is None:
            self.selected_model_id = None
            return True
        if self.get(model_id) is None:
            logger.debug(f"Ignoring selection of unknown model {model_id}")
            return False
        self.selected_model_id = model_id
        return True

    def get(self, model_id: str) -> ChatModelOption | None:
        return next((model for model in self.models if model.id == model_id), None)

    @property
    def active_model(self) -> ChatModelOption | None:
        """The selected model, else the first one."""
        if self.selected_model_id:
            selected = self.get(self.selected_model_id)
            if selected is not None:
                return selected
        return self.models[0] if self.models else None
