"""Chat message model used by the compaction engine.

Messages are made of parts. The part kinds form a closed union discriminated
on the ``type`` field; anything the engine does not recognise is kept as an
``UnknownPart`` so that transports round-trip it verbatim.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Discriminator, Field, Tag
from pydantic.alias_generators import to_camel

MESSAGE_MODEL_CONFIG = {
    "alias_generator": to_camel,
    "populate_by_name": True,
    "extra": "allow",
}


def stringify(value: Any) -> str | None:
    """Serialize a value to compact JSON, or None if it cannot be serialized."""
    if value is None:
        return None
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return None


class TextPart(BaseModel):
    """Plain text content."""

    model_config = MESSAGE_MODEL_CONFIG

    type: Literal["text"] = "text"
    text: str = ""

    def token_text(self) -> str:
        return self.text


class ReasoningPart(BaseModel):
    """Model reasoning content."""

    model_config = MESSAGE_MODEL_CONFIG

    type: Literal["reasoning"] = "reasoning"
    text: str = ""

    def token_text(self) -> str:
        return self.text


class ToolPart(BaseModel):
    """A tool invocation, either ``tool-<name>`` or ``dynamic-tool``."""

    model_config = MESSAGE_MODEL_CONFIG

    type: str = Field(..., description="tool-<name> or dynamic-tool")
    tool_call_id: str | None = None
    tool_name: str | None = None
    state: str | None = None
    input: Any = None
    output: Any = None
    error_text: str | None = None

    def token_text(self) -> str:
        segments = [stringify(self.input), stringify(self.output), self.error_text]
        return "\n".join(segment for segment in segments if segment)


class SourceUrlPart(BaseModel):
    """A cited URL."""

    model_config = MESSAGE_MODEL_CONFIG

    type: Literal["source-url"] = "source-url"
    source_id: str | None = None
    url: str | None = None
    title: str | None = None

    def token_text(self) -> str:
        return " ".join(value for value in (self.title, self.url) if value)


class SourceDocumentPart(BaseModel):
    """A cited document."""

    model_config = MESSAGE_MODEL_CONFIG

    type: Literal["source-document"] = "source-document"
    source_id: str | None = None
    media_type: str | None = None
    title: str | None = None
    filename: str | None = None

    def token_text(self) -> str:
        return self.title or ""


class FilePart(BaseModel):
    """An attached file. Only its name and media type are counted."""

    model_config = MESSAGE_MODEL_CONFIG

    type: Literal["file"] = "file"
    url: str | None = None
    media_type: str | None = None
    filename: str | None = None

    def token_text(self) -> str:
        return " ".join(value for value in (self.filename, self.media_type) if value)


class UnknownPart(BaseModel):
    """Any part kind the engine does not model explicitly."""

    model_config = MESSAGE_MODEL_CONFIG

    type: str | None = None

    def token_text(self) -> str:
        extra = self.model_extra or {}
        for key in ("text", "content"):
            value = extra.get(key)
            if isinstance(value, str):
                return value
        return ""


_SIMPLE_PART_TYPES = {"text", "reasoning", "source-url", "source-document", "file"}


def _part_kind(value: Any) -> str:
    part_type = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    if part_type in _SIMPLE_PART_TYPES:
        return part_type
    if isinstance(part_type, str) and (part_type.startswith("tool-") or part_type == "dynamic-tool"):
        return "tool"
    return "unknown"


MessagePart = Annotated[
    Union[
        Annotated[TextPart, Tag("text")],
        Annotated[ReasoningPart, Tag("reasoning")],
        Annotated[ToolPart, Tag("tool")],
        Annotated[SourceUrlPart, Tag("source-url")],
        Annotated[SourceDocumentPart, Tag("source-document")],
        Annotated[FilePart, Tag("file")],
        Annotated[UnknownPart, Tag("unknown")],
    ],
    Discriminator(_part_kind),
]


class ChatMessage(BaseModel):
    """A single transcript message.

    Instances are treated as immutable by the engine: every transform returns
    a copy and leaves the original untouched.
    """

    model_config = MESSAGE_MODEL_CONFIG

    id: str = Field(..., description="Stable message identifier")
    role: str = Field("user", description="system, user or assistant")
    parts: list[MessagePart] = Field(default_factory=list)
    content: str | None = Field(None, description="Legacy flat text content")
    metadata: dict[str, Any] | None = Field(None, description="Opaque metadata bag")

    @classmethod
    def from_text(
        cls,
        message_id: str,
        text: str,
        role: str = "user",
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessage:
        """Build a message with a single text part."""
        return cls(id=message_id, role=role, parts=[TextPart(text=text)], metadata=metadata)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase wire format."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
