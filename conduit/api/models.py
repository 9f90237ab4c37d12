"""Shared data models for the API layer.

Internal mutable state lives in dataclasses; the wire format is in
schemas.py.  Kept separate so runner, session and rest can import them
without importing each other.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Awaitable, Callable

from conduit.api.schemas import (
    ChatMessage,
    GeneratedImage,
    ReasoningDetail,
    ToolCall,
    ToolCallFunction,
    Usage,
)


class RunState(StrEnum):
    RUNNING = "running"
    TOOLS_PENDING = "tools_pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED)


@dataclass
class ToolCallState:
    """Cumulative state of one streamed tool call.

    ``id`` and ``name`` stick once set; ``arguments`` only grows.
    """

    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""

    def as_event(self, status: str) -> dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "status": status,
        }

    def to_tool_call(self, index: int | None = None) -> ToolCall:
        return ToolCall(
            id=self.id,
            index=self.index if index is None else index,
            function=ToolCallFunction(name=self.name, arguments=self.arguments),
        )


@dataclass
class IterationResult:
    """Materialized outcome of one request/response cycle."""

    content: str = ""
    reasoning: str = ""
    reasoning_details: list[ReasoningDetail] | None = None
    tool_calls: list[ToolCallState] = field(default_factory=list)
    images: list[GeneratedImage] = field(default_factory=list)
    usage: Usage | None = None
    finish_reason: str | None = None
    model: str | None = None
    provider: str | None = None
    time_to_first_event_ms: int | None = None
    total_duration_ms: int = 0

    def to_message(self) -> ChatMessage:
        """Render as an assistant message, tool calls re-indexed from 0."""
        return ChatMessage(
            role="assistant",
            content=self.content or None,
            reasoning=self.reasoning or None,
            reasoning_details=self.reasoning_details,
            tool_calls=[tc.to_tool_call(i) for i, tc in enumerate(self.tool_calls)] or None,
            images=self.images or None,
        )

    def summary(self) -> dict[str, Any]:
        """Terminal payload for observers."""
        return {
            "content": self.content,
            "reasoning": self.reasoning,
            "reasoning_details": (
                [d.model_dump(exclude_none=True) for d in self.reasoning_details]
                if self.reasoning_details
                else None
            ),
            "images": [i.model_dump(exclude_none=True) for i in self.images],
            "usage": self.usage.model_dump(exclude_none=True) if self.usage else None,
            "model": self.model,
            "finish_reason": self.finish_reason,
        }


@dataclass
class StreamEvent:
    """A single observer event from a run.

    Types: content, reasoning, tool_call, image (incremental) and one
    terminal event per run: done, error or cancelled.
    """

    type: str
    text: str = ""
    tool_call: dict[str, str] | None = None
    image: GeneratedImage | None = None
    result: IterationResult | None = None
    error: str = ""

    @property
    def terminal(self) -> bool:
        return self.type in ("done", "error", "cancelled")


EventSink = Callable[[StreamEvent], Awaitable[None]]


@dataclass
class RunOutcome:
    run_id: str
    state: RunState
    result: IterationResult | None = None
    error: str | None = None
    iterations: int = 0


@dataclass
class Conversation:
    """Committed history for one session. Never holds a system message."""

    session_id: str
    agent_id: str
    messages: list[ChatMessage] = field(default_factory=list)
