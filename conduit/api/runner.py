"""Chat runner -- drives one run of the streaming tool-calling loop.

Each iteration snapshots the agent's capabilities, rebuilds the system
message, sends the context to the provider and folds the streamed
chunks into an IterationResult.  Tool calls are executed in index order
and their results appended before the next iteration.  A run ends in
exactly one terminal event: done, error or cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence
from contextlib import aclosing
from dataclasses import dataclass

from conduit.api.accumulator import DeltaAccumulator
from conduit.api.cancellation import CancelToken
from conduit.api.capabilities import Capabilities, CapabilitySource
from conduit.api.frames import iter_chunks
from conduit.api.models import (
    Conversation,
    EventSink,
    IterationResult,
    RunOutcome,
    RunState,
    StreamEvent,
)
from conduit.api.schemas import ChatCompletionRequest, ChatMessage, FunctionDefinition
from conduit.api.tools import ToolDispatcher, tool_catalog_section
from conduit.api.transport import OpenRouterClient
from conduit.config import Settings
from conduit.errors import ConduitError, IterationLimitExceeded, RunCancelled
from conduit.storage.recorder import (
    InMemoryRunRecorder,
    IterationRecord,
    RunRecorder,
    sanitize_request,
)

logger = logging.getLogger(__name__)


def build_system_message(
    capabilities: Capabilities,
    definitions: Sequence[FunctionDefinition] = (),
) -> ChatMessage:
    """Agent instructions plus the tool catalog when tools are enabled."""
    content = capabilities.system_instructions
    if capabilities.tools_enabled:
        content += tool_catalog_section(list(definitions))
    return ChatMessage(role="system", content=content)


class ConversationContext:
    """Messages sent to the provider for one run.

    Index 0 always holds the single system message; system messages in
    the source history are discarded.
    """

    def __init__(self, history: Sequence[ChatMessage]) -> None:
        self.messages: list[ChatMessage] = [ChatMessage(role="system", content="")]
        self.messages.extend(m for m in history if m.role != "system")
        self._base = len(self.messages)

    def set_system(self, message: ChatMessage) -> None:
        self.messages[0] = message

    def append(self, message: ChatMessage) -> None:
        self.messages.append(message)

    def added(self) -> list[ChatMessage]:
        """Messages appended since construction."""
        return self.messages[self._base:]


@dataclass
class _RunProgress:
    run_id: str
    state: RunState = RunState.RUNNING
    iterations: int = 0

    def transition(self, state: RunState) -> None:
        logger.debug("Run %s: %s -> %s", self.run_id, self.state, state)
        self.state = state


class ChatRunner:
    """Executes runs against the provider with an internal tool loop.

    One runner is shared by every session; all per-run state lives in
    locals of run().
    """

    def __init__(
        self,
        settings: Settings,
        transport: OpenRouterClient,
        dispatcher: ToolDispatcher,
        capabilities: CapabilitySource,
        recorder: RunRecorder | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._dispatcher = dispatcher
        self._capabilities = capabilities
        self._recorder = recorder or InMemoryRunRecorder()

    @property
    def recorder(self) -> RunRecorder:
        return self._recorder

    async def run(
        self,
        conversation: Conversation,
        user_turn: ChatMessage,
        *,
        agent_id: str | None = None,
        emit: EventSink,
        token: CancelToken | None = None,
        run_id: str | None = None,
    ) -> RunOutcome:
        """Run one user turn to a terminal state.

        The user turn is committed to the conversation immediately; the
        rest of the run's messages only when it completes.  Once the last
        iteration has finished the run completes even if cancel is requested
        while the result is being committed.  Failures and
        cancellation are reported through ``emit`` and the returned
        outcome, never raised.  Task cancellation not requested through
        ``token`` is re-raised.
        """
        run_id = run_id or uuid.uuid4().hex
        token = token or CancelToken(run_id)
        agent_id = agent_id or conversation.agent_id
        progress = _RunProgress(run_id)

        conversation.messages.append(user_turn)
        context = ConversationContext(conversation.messages)
        logger.info(
            "Run %s started (session=%s, agent=%s)",
            run_id,
            conversation.session_id,
            agent_id,
        )

        try:
            result = await self._loop(context, agent_id, emit, token, progress)
        except (RunCancelled, asyncio.CancelledError) as e:
            if isinstance(e, asyncio.CancelledError):
                if not token.cancelled:
                    raise
                task = asyncio.current_task()
                if task is not None:
                    task.uncancel()
            progress.transition(RunState.CANCELLED)
            logger.info("Run %s cancelled after %d iteration(s)", run_id, progress.iterations)
            await self._safe_record("cancellation", self._recorder.record_cancelled(run_id))
            await emit(StreamEvent(type="cancelled"))
            return RunOutcome(run_id, RunState.CANCELLED, iterations=progress.iterations)
        except Exception as e:
            if isinstance(e, ConduitError):
                logger.error("Run %s failed: %s", run_id, e)
            else:
                logger.exception("Run %s failed unexpectedly", run_id)
            error = str(e) or type(e).__name__
            progress.transition(RunState.FAILED)
            await self._safe_record("failure", self._recorder.record_failure(run_id, error))
            await emit(StreamEvent(type="error", error=error))
            return RunOutcome(run_id, RunState.FAILED, error=error, iterations=progress.iterations)

        # The run is complete from here on; a late cancel must not interrupt
        # the commit, so the token stops cancelling the task.
        token.release()
        progress.transition(RunState.COMPLETED)
        conversation.messages.extend(context.added())
        await self._safe_record("final message", self._recorder.record_final(run_id, result.to_message()))
        logger.info(
            "Run %s completed in %d iteration(s) (finish_reason=%s)",
            run_id,
            progress.iterations,
            result.finish_reason,
        )
        await emit(StreamEvent(type="done", result=result))
        return RunOutcome(run_id, RunState.COMPLETED, result=result, iterations=progress.iterations)

    async def _loop(
        self,
        context: ConversationContext,
        agent_id: str,
        emit: EventSink,
        token: CancelToken,
        progress: _RunProgress,
    ) -> IterationResult:
        max_iterations = self._settings.max_iterations

        for iteration in range(1, max_iterations + 1):
            token.raise_if_cancelled()
            progress.iterations = iteration
            if progress.state is not RunState.RUNNING:
                progress.transition(RunState.RUNNING)

            capabilities = await self._capabilities.get_capabilities(agent_id)
            context.set_system(
                build_system_message(capabilities, self._dispatcher.definitions(capabilities))
            )
            payload = self._build_payload(context, capabilities)

            accumulator = DeltaAccumulator(time.monotonic())
            source = self._transport.stream_completion(payload, token)
            async with aclosing(iter_chunks(source, token)) as chunks:
                async for chunk in chunks:
                    for event in accumulator.apply(chunk):
                        await emit(event)
            for event in accumulator.finish():
                await emit(event)

            result = accumulator.result()
            message = result.to_message()
            await self._record_iteration(progress.run_id, iteration, payload, message, result)

            if not result.tool_calls:
                context.append(message)
                return result

            if iteration == max_iterations:
                logger.warning(
                    "Run %s reached max_iterations=%d with %d tool call(s) pending",
                    progress.run_id,
                    max_iterations,
                    len(result.tool_calls),
                )
                break

            progress.transition(RunState.TOOLS_PENDING)
            context.append(message)
            for tool_call in message.tool_calls or []:
                token.raise_if_cancelled()
                start_time = time.monotonic()
                context.append(await self._dispatcher.execute(tool_call, capabilities))
                logger.debug(
                    "Tool %s (%s) finished in %dms",
                    tool_call.function.name,
                    tool_call.id,
                    int((time.monotonic() - start_time) * 1000),
                )

        raise IterationLimitExceeded(max_iterations)

    def _build_payload(
        self,
        context: ConversationContext,
        capabilities: Capabilities,
    ) -> dict:
        tools = self._dispatcher.tool_schemas(capabilities)
        effort = capabilities.reasoning_effort or self._settings.reasoning_effort
        request = ChatCompletionRequest(
            model=capabilities.model or self._settings.model,
            messages=list(context.messages),
            tools=tools or None,
            tool_choice="auto" if tools else None,
            reasoning={"effort": effort} if effort else None,
        )
        return request.to_payload()

    async def _record_iteration(
        self,
        run_id: str,
        iteration: int,
        payload: dict,
        message: ChatMessage,
        result: IterationResult,
    ) -> None:
        record = IterationRecord(
            run_id=run_id,
            iteration=iteration,
            request=sanitize_request(payload),
            response=message.to_api(),
            model=result.model,
            provider=result.provider,
            usage=result.usage,
            latency_ms=result.time_to_first_event_ms,
            duration_ms=result.total_duration_ms,
            finish_reason=result.finish_reason,
            tool_calls=[tc.as_event("ready") for tc in result.tool_calls],
        )
        await self._safe_record("iteration", self._recorder.record_iteration(record))

    async def _safe_record(self, what: str, call) -> None:
        # Recorder problems never change the outcome of a run
        try:
            await call
        except Exception as e:
            logger.warning("Failed to record %s: %s", what, e)
