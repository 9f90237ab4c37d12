"""Tool dispatcher for Chat Completions function tools.

A tool is a JSON-schema definition sent to the model plus a local async
handler run when the model emits a call.  Handlers always produce text;
the dispatcher wraps it into a role="tool" message.

Failures never raise out of execute(): unknown tools, malformed
arguments, disabled tools and handler exceptions all become an
``{"error": ...}`` result so the model can react to them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from conduit.api.capabilities import Capabilities
from conduit.api.schemas import ChatMessage, FunctionDefinition, ToolCall, ToolSchema
from conduit.errors import ToolExecutionError

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any], "ToolContext"], Awaitable[str]]


@dataclass(frozen=True)
class ToolContext:
    """Per-call context handed to tool handlers."""

    agent_id: str
    tool_call_id: str
    permissions: tuple[str, ...] = ()


@dataclass
class RegisteredTool:
    definition: FunctionDefinition
    handler: ToolHandler
    privileged: bool = False


def error_result(message: str) -> str:
    return json.dumps({"error": message})


class ToolDispatcher:
    """Registers tools and executes tool calls from the model.

    A non-empty ``enabled_tools`` turns tool use on for an agent, and every
    ordinary tool is then offered whether it is listed or not.  Privileged
    tools are only offered to, and only run for, agents whose capability
    snapshot lists them by name.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._tools: dict[str, RegisteredTool] = {}
        self._timeout = timeout

    def register(
        self,
        definition: FunctionDefinition,
        handler: ToolHandler,
        privileged: bool = False,
    ) -> None:
        self._tools[definition.name] = RegisteredTool(definition, handler, privileged)
        logger.debug("Registered tool '%s' (privileged=%s)", definition.name, privileged)

    def definitions(self, capabilities: Capabilities) -> list[FunctionDefinition]:
        return [t.definition for t in self._tools.values() if self._allowed(t, capabilities)]

    def tool_schemas(self, capabilities: Capabilities) -> list[ToolSchema]:
        """Tool list for the request; empty when tools are disabled."""
        if not capabilities.tools_enabled:
            return []
        return [ToolSchema(function=d) for d in self.definitions(capabilities)]

    def _allowed(self, tool: RegisteredTool, capabilities: Capabilities) -> bool:
        if not capabilities.tools_enabled:
            return False
        return not tool.privileged or tool.definition.name in capabilities.enabled_tools

    async def execute(self, tool_call: ToolCall, capabilities: Capabilities) -> ChatMessage:
        """Run one tool call and return its role="tool" result message."""
        content = await self._execute_text(tool_call, capabilities)
        return ChatMessage(role="tool", tool_call_id=tool_call.id, content=content)

    async def _execute_text(self, tool_call: ToolCall, capabilities: Capabilities) -> str:
        name = tool_call.function.name
        tool = self._tools.get(name)
        if tool is None:
            return error_result(f"Unknown tool: {name}")

        try:
            args = json.loads(tool_call.function.arguments or "{}")
        except json.JSONDecodeError as e:
            return error_result(f"Invalid arguments for {name}: {e}")
        if not isinstance(args, dict):
            return error_result(f"Invalid arguments for {name}: expected a JSON object")

        if not self._allowed(tool, capabilities):
            logger.warning("Refused disabled tool %s for agent %s", name, capabilities.agent_id)
            return error_result(f"{name} is disabled for this agent")

        ctx = ToolContext(
            agent_id=capabilities.agent_id,
            tool_call_id=tool_call.id,
            permissions=capabilities.permissions,
        )
        try:
            if self._timeout:
                return await asyncio.wait_for(tool.handler(args, ctx), timeout=self._timeout)
            return await tool.handler(args, ctx)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ss", name, self._timeout)
            return error_result(f"Tool '{name}' timed out after {self._timeout}s")
        except ToolExecutionError as e:
            logger.info("Tool %s failed: %s", name, e)
            return error_result(str(e))
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            return error_result(str(e) or "Tool execution failed")


def tool_catalog_section(definitions: list[FunctionDefinition]) -> str:
    """Describe enabled tools for the system prompt."""
    if not definitions:
        return ""
    lines = ["", "<tools>"]
    for d in definitions:
        lines.append(f'<tool name="{d.name}">')
        if d.description:
            lines.append(f"<description>{d.description.strip()}</description>")
        lines.append("<tool_input_schema_json>")
        lines.append(json.dumps(d.parameters, indent=2))
        lines.append("</tool_input_schema_json>")
        lines.append("</tool>")
    lines.append("</tools>")
    return "\n".join(lines)
