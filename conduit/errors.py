"""Error hierarchy for the orchestrator.

Decode-level problems never reach this tree; they are absorbed by the
frame decoder. Everything else that can end a run is one of these.
"""

from __future__ import annotations


class ConduitError(Exception):
    def __init__(self, code: str, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.cause = cause


class TransportError(ConduitError):
    """Connection failure or non-2xx response from the completion endpoint."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str = "",
        cause: Exception | None = None,
    ) -> None:
        super().__init__("TRANSPORT_ERROR", message, cause)
        self.status_code = status_code
        self.body = body


class ProviderStreamError(TransportError):
    """Error object sent inside an otherwise successful (HTTP 200) stream."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, status_code=status_code)
        self.code = "PROVIDER_STREAM_ERROR"


class RunCancelled(ConduitError):
    def __init__(self, message: str = "Request cancelled") -> None:
        super().__init__("CANCELLED", message)


class IterationLimitExceeded(ConduitError):
    def __init__(self, max_iterations: int) -> None:
        super().__init__(
            "iteration_limit_exceeded",
            f"iteration_limit_exceeded: tool calls still pending after {max_iterations} iterations",
        )
        self.max_iterations = max_iterations


class ToolExecutionError(ConduitError):
    def __init__(self, tool_name: str, message: str, cause: Exception | None = None) -> None:
        super().__init__("TOOL_ERROR", message, cause)
        self.tool_name = tool_name


class AgentNotFoundError(ConduitError):
    def __init__(self, agent_id: str) -> None:
        super().__init__("AGENT_NOT_FOUND", f"Agent not found: {agent_id}")
        self.agent_id = agent_id


class SessionBusyError(ConduitError):
    def __init__(self, active_request_id: str) -> None:
        super().__init__(
            "SESSION_BUSY",
            f"Session already has an active run (request {active_request_id})",
        )
        self.active_request_id = active_request_id


class SessionClosedError(ConduitError):
    def __init__(self, session_id: str) -> None:
        super().__init__("SESSION_CLOSED", f"Session is closed: {session_id}")
        self.session_id = session_id
