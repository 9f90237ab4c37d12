"""Run recording: the persistence boundary of the orchestrator.

The runner reports each finished iteration, the final assistant
message, failures and cancellations through the RunRecorder protocol.
InMemoryRunRecorder is the default implementation; a database-backed
one plugs in behind the same four methods.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from conduit.api.schemas import ChatMessage, Usage

logger = logging.getLogger(__name__)

_DATA_URL = re.compile(r"^data:(image/[^;]+);base64,(.+)$", re.DOTALL)


def sanitize_request(obj: Any) -> Any:
    """Replace base64 image payloads with a size placeholder for storage."""
    if isinstance(obj, str):
        match = _DATA_URL.match(obj)
        if match:
            return f"data:{match.group(1)};base64,<{len(match.group(2))} chars>"
        return obj
    if isinstance(obj, list):
        return [sanitize_request(item) for item in obj]
    if isinstance(obj, dict):
        return {key: sanitize_request(value) for key, value in obj.items()}
    return obj


@dataclass
class IterationRecord:
    """Append-only snapshot of one request/response cycle."""

    run_id: str
    iteration: int
    request: dict[str, Any]
    response: dict[str, Any]
    model: str | None = None
    provider: str | None = None
    usage: Usage | None = None
    latency_ms: int | None = None
    duration_ms: int = 0
    finish_reason: str | None = None
    tool_calls: list[dict[str, str]] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class RunRecorder(Protocol):
    async def record_iteration(self, record: IterationRecord) -> None: ...

    async def record_final(self, run_id: str, message: ChatMessage) -> None: ...

    async def record_failure(self, run_id: str, error: str) -> None: ...

    async def record_cancelled(self, run_id: str) -> None: ...


@dataclass
class RunLog:
    run_id: str
    status: str = "running"  # running, completed, failed, cancelled
    iterations: list[IterationRecord] = field(default_factory=list)
    final_message: ChatMessage | None = None
    error: str | None = None
    completed_at: datetime | None = None


class InMemoryRunRecorder:
    """Keeps run logs in memory, oldest evicted past ``max_runs``."""

    def __init__(self, max_runs: int = 500) -> None:
        self._runs: dict[str, RunLog] = {}
        self._max_runs = max_runs

    def _log(self, run_id: str) -> RunLog:
        log = self._runs.get(run_id)
        if log is None:
            while len(self._runs) >= self._max_runs:
                self._runs.pop(next(iter(self._runs)))
            log = RunLog(run_id=run_id)
            self._runs[run_id] = log
        return log

    def get(self, run_id: str) -> RunLog | None:
        return self._runs.get(run_id)

    async def record_iteration(self, record: IterationRecord) -> None:
        self._log(record.run_id).iterations.append(record)

    async def record_final(self, run_id: str, message: ChatMessage) -> None:
        log = self._log(run_id)
        log.final_message = message
        log.status = "completed"
        log.completed_at = datetime.now(UTC)

    async def record_failure(self, run_id: str, error: str) -> None:
        log = self._log(run_id)
        log.status = "failed"
        log.error = error
        log.completed_at = datetime.now(UTC)

    async def record_cancelled(self, run_id: str) -> None:
        log = self._log(run_id)
        log.status = "cancelled"
        log.error = "Cancelled by user"
        log.completed_at = datetime.now(UTC)
