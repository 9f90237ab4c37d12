"""Folds streamed chunks into the state of one iteration.

apply() mutates the running state and returns the observer events the
chunk produced, in application order.  finish() marks tool calls ready
and materializes the IterationResult.
"""

from __future__ import annotations

import time

from conduit.api.models import IterationResult, StreamEvent, ToolCallState
from conduit.api.schemas import GeneratedImage, ReasoningDetail, StreamChunk, Usage


def merge_reasoning_details(
    details: list[ReasoningDetail],
    reasoning_text: str,
) -> list[ReasoningDetail] | None:
    """Combine streamed reasoning_details with the accumulated reasoning text.

    Streaming delivers the structure (signature, format) without the text,
    so an empty ``reasoning.text`` entry gets the text filled in.  With no
    streamed details, a plain text entry is synthesized.
    """
    if details:
        return [
            d.model_copy(update={"text": reasoning_text})
            if d.type == "reasoning.text" and not d.text and reasoning_text
            else d
            for d in details
        ]
    if reasoning_text:
        return [ReasoningDetail(type="reasoning.text", text=reasoning_text)]
    return None


class DeltaAccumulator:
    """Per-iteration accumulator. One instance per request/response cycle."""

    def __init__(self, started_at: float | None = None) -> None:
        self._started_at = time.monotonic() if started_at is None else started_at
        self._content: list[str] = []
        self._reasoning: list[str] = []
        self._reasoning_details: list[ReasoningDetail] = []
        self._tool_calls: dict[int, ToolCallState] = {}
        self._images: list[GeneratedImage] = []
        self._usage: Usage | None = None
        self._finish_reason: str | None = None
        self._model: str | None = None
        self._provider: str | None = None
        self._first_event_at: float | None = None
        self._finished_at: float | None = None

    @property
    def tool_calls(self) -> list[ToolCallState]:
        return [self._tool_calls[i] for i in sorted(self._tool_calls)]

    def apply(self, chunk: StreamChunk) -> list[StreamEvent]:
        events: list[StreamEvent] = []

        if chunk.model:
            self._model = chunk.model
        if chunk.provider:
            self._provider = chunk.provider

        for choice in chunk.choices:
            if choice.finish_reason:
                self._finish_reason = choice.finish_reason

            delta = choice.delta

            if delta.content:
                self._content.append(delta.content)
                events.append(StreamEvent(type="content", text=delta.content))

            if delta.reasoning:
                self._reasoning.append(delta.reasoning)
                events.append(StreamEvent(type="reasoning", text=delta.reasoning))

            # Sent complete each time, not as a diff
            if delta.reasoning_details:
                self._reasoning_details = list(delta.reasoning_details)

            for fragment in delta.tool_calls or []:
                state = self._tool_calls.get(fragment.index)
                if state is None:
                    state = ToolCallState(index=fragment.index)
                    self._tool_calls[fragment.index] = state
                if fragment.id:
                    state.id = fragment.id
                if fragment.function is not None:
                    if fragment.function.name:
                        state.name = fragment.function.name
                    if fragment.function.arguments:
                        state.arguments += fragment.function.arguments
                events.append(StreamEvent(type="tool_call", tool_call=state.as_event("streaming")))

            for image in delta.images or []:
                self._images.append(image)
                events.append(StreamEvent(type="image", image=image))

        if chunk.usage is not None:
            self._usage = chunk.usage

        if events and self._first_event_at is None:
            self._first_event_at = time.monotonic()

        return events

    def finish(self) -> list[StreamEvent]:
        """Mark the chunk sequence exhausted. Returns the ``ready`` events."""
        self._finished_at = time.monotonic()
        return [
            StreamEvent(type="tool_call", tool_call=tc.as_event("ready"))
            for tc in self.tool_calls
        ]

    def result(self) -> IterationResult:
        finished_at = self._finished_at if self._finished_at is not None else time.monotonic()
        reasoning = "".join(self._reasoning)
        return IterationResult(
            content="".join(self._content),
            reasoning=reasoning,
            reasoning_details=merge_reasoning_details(self._reasoning_details, reasoning),
            tool_calls=self.tool_calls,
            images=list(self._images),
            usage=self._usage,
            finish_reason=self._finish_reason,
            model=self._model,
            provider=self._provider,
            time_to_first_event_ms=(
                int((self._first_event_at - self._started_at) * 1000)
                if self._first_event_at is not None
                else None
            ),
            total_duration_ms=int((finished_at - self._started_at) * 1000),
        )
