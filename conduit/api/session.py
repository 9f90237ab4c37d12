"""Session multiplexing -- many conversations over one process.

A SessionChannel is the long-lived handle of one conversation surface
(a browser tab, a socket).  It runs at most one run at a time, keyed by
the caller's request id, and tags every event it emits with that id so
a consumer can drop events from a request it no longer cares about.

SessionMultiplexer owns the channels and the conversations behind
them.  Conversations outlive channels: a reconnecting surface gets a
fresh channel over the same history.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from collections import OrderedDict
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from conduit.api.cancellation import CancelToken
from conduit.api.models import Conversation, RunOutcome, StreamEvent
from conduit.api.runner import ChatRunner
from conduit.api.schemas import ChatMessage
from conduit.config import Settings
from conduit.errors import SessionBusyError, SessionClosedError

logger = logging.getLogger(__name__)

MAX_CONVERSATIONS = 100


@dataclass
class SessionEvent:
    """A StreamEvent tagged with the request id of the run that produced it."""

    request_id: str
    event: StreamEvent

    def to_message(self) -> dict[str, Any]:
        """Outbound wire message for this event."""
        event = self.event
        msg: dict[str, Any] = {"requestId": self.request_id}
        if event.type == "content":
            msg.update(type="stream:chunk", content=event.text)
        elif event.type == "reasoning":
            msg.update(type="stream:reasoning", reasoning=event.text)
        elif event.type == "tool_call":
            msg.update(type="stream:tool_call", toolCall=event.tool_call)
        elif event.type == "image":
            image = event.image.model_dump(exclude_none=True) if event.image else None
            msg.update(type="stream:image", image=image)
        elif event.type == "done":
            msg.update(type="stream:done", result=event.result.summary() if event.result else {})
        elif event.type == "error":
            msg.update(type="stream:error", error=event.error)
        elif event.type == "cancelled":
            msg.update(type="stream:cancelled")
        else:
            msg.update(type=f"stream:{event.type}")
        return msg


class SessionChannel:
    def __init__(
        self,
        session_id: str,
        runner: ChatRunner,
        conversation: Conversation,
        queue_size: int = 1000,
    ) -> None:
        self.session_id = session_id
        self.conversation = conversation
        self._runner = runner
        self._queue: asyncio.Queue[SessionEvent | None] = asyncio.Queue(maxsize=queue_size)
        self._request_id: str | None = None
        self._token: CancelToken | None = None
        self._task: asyncio.Task[RunOutcome] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active_request_id(self) -> str | None:
        if self._task is not None and not self._task.done():
            return self._request_id
        return None

    def start(self, request_id: str, user_turn: ChatMessage) -> asyncio.Task[RunOutcome]:
        """Start a run for ``request_id``.

        Starting the request that is already active returns its task.
        Starting a different one while a run is active raises
        SessionBusyError.
        """
        if self._closed:
            raise SessionClosedError(self.session_id)

        active = self.active_request_id
        if active is not None:
            if active == request_id:
                return self._task
            raise SessionBusyError(active)

        token = CancelToken(request_id)
        # Request ids come from the client and may repeat; run ids never do
        run_id = uuid.uuid4().hex

        async def emit(event: StreamEvent) -> None:
            if self._closed:
                return
            await self._queue.put(SessionEvent(request_id, event))

        task = asyncio.create_task(
            self._runner.run(
                self.conversation,
                user_turn,
                emit=emit,
                token=token,
                run_id=run_id,
            ),
            name=f"run:{self.session_id}:{request_id}",
        )
        token.bind(task)
        task.add_done_callback(functools.partial(self._on_run_done, request_id, token))

        self._request_id = request_id
        self._token = token
        self._task = task
        logger.debug("Session %s started request %s as run %s", self.session_id, request_id, run_id)
        return task

    def cancel(self, request_id: str) -> bool:
        """Cancel the active run if it belongs to ``request_id``."""
        if self.active_request_id != request_id or self._token is None:
            return False
        return self._token.cancel()

    async def events(self) -> AsyncIterator[SessionEvent]:
        """Tagged events, in emission order, until the channel closes."""
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item

    async def close(self) -> None:
        """Cancel the active run, wait for it to settle, end events()."""
        if self._closed:
            return
        self._closed = True

        task, token = self._task, self._token
        if task is not None and not task.done():
            if token is not None:
                token.cancel()
            # A run past its last iteration is not interrupted by the cancel
            # and may be blocked on a full queue
            self._make_room()
            await asyncio.gather(task, return_exceptions=True)
        if token is not None:
            token.release()

        self._make_room()
        self._queue.put_nowait(None)
        logger.debug("Session %s closed", self.session_id)

    def _make_room(self) -> None:
        """Drop the oldest queued events until one more fits."""
        while self._queue.full():
            dropped = self._queue.get_nowait()
            logger.debug("Session %s dropped queued event %s", self.session_id, dropped)

    def _on_run_done(
        self,
        request_id: str,
        token: CancelToken,
        task: asyncio.Task[RunOutcome],
    ) -> None:
        token.release()
        if task.cancelled():
            if not token.cancelled:
                logger.warning("Run task for session %s was cancelled externally", self.session_id)
            elif not self._closed:
                # Cancelled before the run started, so it never emitted a terminal event
                self._make_room()
                self._queue.put_nowait(SessionEvent(request_id, StreamEvent(type="cancelled")))
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Run task for session %s crashed: %s", self.session_id, exc)


class SessionMultiplexer:
    """Registry of session channels sharing one runner and transport."""

    def __init__(self, runner: ChatRunner, settings: Settings) -> None:
        self._runner = runner
        self._settings = settings
        self._channels: dict[str, SessionChannel] = {}
        self._conversations: OrderedDict[str, Conversation] = OrderedDict()

    @property
    def session_count(self) -> int:
        return len(self._channels)

    def active_runs(self) -> int:
        return sum(1 for c in self._channels.values() if c.active_request_id is not None)

    async def connect(self, session_id: str, agent_id: str | None = None) -> SessionChannel:
        """Open a channel for ``session_id``, closing any previous one."""
        existing = self._channels.pop(session_id, None)
        if existing is not None:
            logger.info("Session %s reconnected, closing previous channel", session_id)
            await existing.close()

        conversation = self._get_or_create_conversation(session_id, agent_id)
        channel = SessionChannel(
            session_id,
            self._runner,
            conversation,
            queue_size=self._settings.session_queue_size,
        )
        self._channels[session_id] = channel
        logger.info("Session %s connected (agent=%s)", session_id, conversation.agent_id)
        return channel

    def get(self, session_id: str) -> SessionChannel | None:
        return self._channels.get(session_id)

    async def disconnect(self, session_id: str, channel: SessionChannel | None = None) -> bool:
        """Close a session's channel.

        With ``channel`` given, only that exact channel is closed; a stale
        handle from before a reconnect leaves the new channel alone.
        """
        current = self._channels.get(session_id)
        if current is None or (channel is not None and current is not channel):
            return False
        del self._channels[session_id]
        await current.close()
        logger.info("Session %s disconnected", session_id)
        return True

    async def close_all(self) -> None:
        channels = list(self._channels.values())
        self._channels.clear()
        await asyncio.gather(*(c.close() for c in channels), return_exceptions=True)
        if channels:
            logger.info("Closed %d session(s)", len(channels))

    def _get_or_create_conversation(self, session_id: str, agent_id: str | None) -> Conversation:
        """Get existing or create new conversation with LRU eviction."""
        conversation = self._conversations.get(session_id)
        if conversation is not None:
            self._conversations.move_to_end(session_id)
            if agent_id:
                conversation.agent_id = agent_id
            return conversation

        while len(self._conversations) >= MAX_CONVERSATIONS:
            self._conversations.popitem(last=False)

        conversation = Conversation(
            session_id=session_id,
            agent_id=agent_id or self._settings.default_agent_id,
        )
        self._conversations[session_id] = conversation
        return conversation
