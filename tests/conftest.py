"""Shared fixtures: SSE byte builders and a scripted transport.

No network access: every test drives the runner through FakeTransport,
which replays canned response bodies in call order.
"""

import asyncio
import json
from typing import Any

import pytest

from conduit.api.capabilities import AgentProfile, AgentRegistry
from conduit.api.schemas import FunctionDefinition
from conduit.api.tools import ToolDispatcher
from conduit.config import Settings

# ---------------------------------------------------------------------------
# SSE builders
# ---------------------------------------------------------------------------

# Marker inside a FakeTransport script: block forever at this point
HANG = object()


def sse(*payloads: Any, done: bool = True) -> bytes:
    """Encode payloads as ``data:`` frames, optionally ending with [DONE]."""
    frames = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


def chunk(delta: dict | None = None, finish_reason: str | None = None, **extra: Any) -> dict:
    return {
        "id": "gen-1",
        "model": "test/model",
        "choices": [{"index": 0, "delta": delta or {}, "finish_reason": finish_reason}],
        **extra,
    }


def content_chunk(text: str) -> dict:
    return chunk({"content": text})


def tool_chunk(
    index: int = 0,
    id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict:
    fragment: dict[str, Any] = {"index": index}
    if id is not None:
        fragment["id"] = id
        fragment["type"] = "function"
    function = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    if function:
        fragment["function"] = function
    return chunk({"tool_calls": [fragment]})


def usage_chunk(prompt: int = 10, completion: int = 5) -> dict:
    return {
        "id": "gen-1",
        "choices": [],
        "usage": {
            "prompt_tokens": prompt,
            "completion_tokens": completion,
            "total_tokens": prompt + completion,
        },
    }


def answer(text: str) -> list[bytes]:
    """Script for a plain text answer."""
    return [sse(content_chunk(text), chunk(finish_reason="stop"), usage_chunk())]


def tool_round(call_id: str, name: str, arguments: str) -> list[bytes]:
    """Script for one iteration requesting a single tool call."""
    return [
        sse(
            tool_chunk(0, id=call_id, name=name),
            tool_chunk(0, arguments=arguments),
            chunk(finish_reason="tool_calls"),
        )
    ]


# ---------------------------------------------------------------------------
# Fake transport
# ---------------------------------------------------------------------------


class FakeTransport:
    """Replays one script per stream_completion() call.

    A script is a list of byte fragments (HANG blocks until cancelled)
    or an exception raised when reading starts.
    """

    def __init__(self, *scripts: list | Exception) -> None:
        self.scripts = list(scripts)
        self.payloads: list[dict] = []
        self.hanging = asyncio.Event()
        self.closed = 0

    async def stream_completion(self, payload: dict, token=None):
        self.payloads.append(payload)
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        try:
            for part in script:
                if part is HANG:
                    self.hanging.set()
                    await asyncio.Event().wait()
                yield part
        finally:
            self.closed += 1


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        model="test/model",
        max_iterations=10,
        tool_timeout=5,
        code_run_timeout=5,
        workspace_dir=str(tmp_path),
    )


@pytest.fixture
def agents():
    registry = AgentRegistry()
    registry.register(
        AgentProfile(
            agent_id="default",
            prompt="You are a test agent.",
            enabled_tools=frozenset({"echo"}),
        )
    )
    return registry


@pytest.fixture
def dispatcher():
    d = ToolDispatcher(timeout=5)

    async def echo(args, ctx):
        return f"echo: {args.get('text', '')}"

    d.register(
        FunctionDefinition(
            name="echo",
            description="Echo text back.",
            parameters={
                "type": "object",
                "properties": {"text": {"type": "string"}},
                "required": ["text"],
            },
        ),
        echo,
    )
    return d
