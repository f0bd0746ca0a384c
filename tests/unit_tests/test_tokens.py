"""Unit tests for token estimation."""

from __future__ import annotations

from chatcompress.messages import ChatMessage, FilePart, ReasoningPart, TextPart, ToolPart, UnknownPart
from chatcompress.models import CompressionArtifact
from chatcompress.tokens import (
    COMPRESSED_LINES_PLACEHOLDER,
    artifact_text,
    calculate_tokens_for_artifacts,
    calculate_tokens_for_messages,
    compress_lines,
    estimate_token_length,
    estimate_tokens,
    estimate_tokens_for_lines,
    extract_message_text,
)


class TestEstimateTokens:
    """Tests for the character heuristic."""

    def test_empty_text_is_zero(self):
        """Empty or missing text counts as zero tokens."""
        assert estimate_tokens("") == 0
        assert estimate_tokens(None) == 0

    def test_rounds_up(self):
        """Partial tokens round up."""
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("hello there") == 3

    def test_monotonic_in_length(self):
        """Longer text never estimates fewer tokens."""
        counts = [estimate_tokens("x" * n) for n in range(0, 50)]
        assert counts == sorted(counts)

    def test_lines(self):
        """Lines are measured joined by newlines."""
        assert estimate_tokens_for_lines(["ab", "cd"]) == estimate_tokens("ab\ncd")


class TestCompressLines:
    """Tests for head/tail line elision."""

    def test_short_list_is_copied(self):
        lines = ["a", "b"]
        result = compress_lines(lines)
        assert result == lines
        assert result is not lines

    def test_long_list_keeps_head_and_tail(self):
        lines = [f"line {i}" for i in range(20)]
        result = compress_lines(lines)
        assert len(result) == 13
        assert result[:8] == lines[:8]
        assert result[8] == COMPRESSED_LINES_PLACEHOLDER
        assert result[-4:] == lines[-4:]


class TestMessageText:
    """Tests for flattening message parts."""

    def test_joins_parts_with_newlines(self):
        message = ChatMessage(
            id="m1",
            parts=[TextPart(text="hello"), ReasoningPart(text="thinking")],
        )
        assert extract_message_text(message) == "hello\nthinking"

    def test_tool_part_counts_input_and_output(self):
        message = ChatMessage(
            id="m1",
            role="assistant",
            parts=[ToolPart(type="tool-search", input={"q": "x"}, output="found")],
        )
        assert extract_message_text(message) == '{"q":"x"}\n"found"'

    def test_parts_parsed_from_wire_format(self):
        """Part dicts are routed to their kind by the type tag."""
        message = ChatMessage.model_validate(
            {
                "id": "m1",
                "role": "assistant",
                "parts": [
                    {"type": "text", "text": "hi"},
                    {"type": "dynamic-tool", "toolName": "calc", "input": [1, 2]},
                    {"type": "file", "filename": "a.png", "mediaType": "image/png"},
                    {"type": "step-start"},
                    {"type": "data-custom", "text": "extra"},
                ],
            }
        )
        kinds = [type(part) for part in message.parts]
        assert kinds == [TextPart, ToolPart, FilePart, UnknownPart, UnknownPart]
        assert extract_message_text(message) == "hi\n[1,2]\na.png image/png\nextra"

    def test_unknown_part_round_trips(self):
        """Unrecognized part fields survive serialization."""
        message = ChatMessage.model_validate(
            {"id": "m1", "parts": [{"type": "data-weather", "payload": {"temp": 20}}]}
        )
        assert message.to_dict()["parts"] == [{"type": "data-weather", "payload": {"temp": 20}}]

    def test_falls_back_to_content(self):
        message = ChatMessage(id="m1", content="legacy text")
        assert extract_message_text(message) == "legacy text"

    def test_message_without_text(self):
        assert extract_message_text(ChatMessage(id="m1")) == ""
        assert calculate_tokens_for_messages([ChatMessage(id="m1")]) == 0


class TestArtifactTokens:
    """Tests for artifact token counting."""

    def test_title_is_optional(self):
        artifact = CompressionArtifact(id="a1", summary="Latest summary")
        assert artifact_text(artifact) == "Latest summary"
        assert calculate_tokens_for_artifacts([artifact]) == 4

    def test_title_and_summary(self):
        artifact = CompressionArtifact(id="a1", title="Plan", summary="Ship it")
        assert artifact_text(artifact) == "Plan\nShip it"
        assert calculate_tokens_for_artifacts([artifact]) == 3

    def test_estimate_token_length_dispatch(self):
        message = ChatMessage.from_text("m1", "hello there")
        artifact = CompressionArtifact(id="a1", summary="Latest summary")
        assert estimate_token_length(None) == 0
        assert estimate_token_length("abcd") == 1
        assert estimate_token_length(message) == 3
        assert estimate_token_length(artifact) == 4
