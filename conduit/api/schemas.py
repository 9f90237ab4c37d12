"""Pydantic models for the Chat Completions wire format.

Covers both directions: the request body (messages, tools) and the
streamed chunk objects the provider sends back.  Providers add fields
freely, so the streamed models accept unknown keys.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "tool"]


# ---------------------------------------------------------------------------
# Message content
# ---------------------------------------------------------------------------


class ImageUrl(BaseModel):
    url: str
    detail: Literal["auto", "low", "high"] | None = None


class ContentPart(BaseModel):
    type: Literal["text", "image_url"]
    text: str | None = None
    image_url: ImageUrl | None = None


class GeneratedImage(BaseModel):
    """An image produced by the model. Arrives complete, never as a delta."""

    model_config = ConfigDict(extra="allow")

    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


class ReasoningDetail(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str  # reasoning.text, reasoning.encrypted, reasoning.summary
    id: str | None = None
    format: str | None = None
    index: int | None = None
    text: str | None = None
    data: str | None = None
    signature: str | None = None


class ToolCallFunction(BaseModel):
    name: str
    arguments: str = ""


class ToolCall(BaseModel):
    id: str
    index: int | None = None
    type: Literal["function"] = "function"
    function: ToolCallFunction


class ChatMessage(BaseModel):
    """A single message in a conversation context."""

    role: Role
    content: str | list[ContentPart] | None = None
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None
    refusal: str | None = None
    reasoning: str | None = None
    reasoning_details: list[ReasoningDetail] | None = None
    images: list[GeneratedImage] | None = None

    def to_api(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


class PromptTokensDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    cached_tokens: int | None = None


class CompletionTokensDetails(BaseModel):
    model_config = ConfigDict(extra="allow")

    reasoning_tokens: int | None = None


class Usage(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float | None = None
    is_byok: bool | None = None
    prompt_tokens_details: PromptTokensDetails | None = None
    completion_tokens_details: CompletionTokensDetails | None = None


# ---------------------------------------------------------------------------
# Streamed chunks
# ---------------------------------------------------------------------------


class DeltaFunction(BaseModel):
    name: str | None = None
    arguments: str | None = None


class DeltaToolCall(BaseModel):
    """One fragment of a tool call. Only ``index`` is guaranteed."""

    model_config = ConfigDict(extra="allow")

    index: int = 0
    id: str | None = None
    type: Literal["function"] | None = None
    function: DeltaFunction | None = None


class StreamDelta(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str | None = None
    content: str | None = None
    reasoning: str | None = None
    reasoning_details: list[ReasoningDetail] | None = None
    tool_calls: list[DeltaToolCall] | None = None
    images: list[GeneratedImage] | None = None


class StreamChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    delta: StreamDelta = Field(default_factory=StreamDelta)
    finish_reason: str | None = None


class StreamChunk(BaseModel):
    """One decoded server-sent-event frame."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    model: str | None = None
    provider: str | None = None
    choices: list[StreamChoice] = Field(default_factory=list)
    usage: Usage | None = None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class FunctionDefinition(BaseModel):
    name: str
    description: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class ToolSchema(BaseModel):
    type: Literal["function"] = "function"
    function: FunctionDefinition


class ChatCompletionRequest(BaseModel):
    model: str
    messages: list[ChatMessage]
    tools: list[ToolSchema] | None = None
    tool_choice: str | None = None
    reasoning: dict[str, str] | None = None
    stream: bool = True

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def build_content_parts(
    text: str,
    images: list[dict[str, str]] | None = None,
) -> list[ContentPart]:
    """Build user message content parts from text and image data URLs.

    Each image is a ``{"id": ..., "dataUrl": ...}`` mapping as sent by
    the UI. Blank text is omitted.
    """
    parts: list[ContentPart] = []
    if text.strip():
        parts.append(ContentPart(type="text", text=text))
    for image in images or []:
        parts.append(
            ContentPart(
                type="image_url",
                image_url=ImageUrl(url=image["dataUrl"], detail="auto"),
            )
        )
    return parts
