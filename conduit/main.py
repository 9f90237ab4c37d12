"""Conduit entry point.

Initializes all components and starts the server:
  Settings -> Transport -> Tools -> Agents -> Runner -> Sessions -> App -> Uvicorn

Uses Starlette lifespan to open and close the transport on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from conduit.api.builtin_tools import RUN_CODE_DEFINITION, register_builtin_tools
from conduit.api.capabilities import AgentProfile, AgentRegistry
from conduit.api.runner import ChatRunner
from conduit.api.session import SessionMultiplexer
from conduit.api.tools import ToolDispatcher
from conduit.api.transport import OpenRouterClient
from conduit.config import Settings
from conduit.storage.recorder import InMemoryRunRecorder

logger = logging.getLogger(__name__)


def create_components(settings: Settings) -> dict:
    """Build all components in dependency order.

    Nothing here touches the network; the transport is started in the
    lifespan.
    """
    transport = OpenRouterClient(settings)

    dispatcher = ToolDispatcher(timeout=settings.tool_timeout)
    register_builtin_tools(dispatcher, settings)

    agents = AgentRegistry()
    enabled_tools = {RUN_CODE_DEFINITION.name} if settings.default_agent_can_run_code else set()
    agents.register(
        AgentProfile(
            agent_id=settings.default_agent_id,
            prompt=settings.default_agent_prompt,
            enabled_tools=frozenset(enabled_tools),
            reasoning_effort=settings.reasoning_effort,
        )
    )

    recorder = InMemoryRunRecorder()
    runner = ChatRunner(settings, transport, dispatcher, agents, recorder)
    multiplexer = SessionMultiplexer(runner, settings)

    return {
        "transport": transport,
        "dispatcher": dispatcher,
        "agents": agents,
        "recorder": recorder,
        "runner": runner,
        "multiplexer": multiplexer,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Conduit...")

    multiplexer = components.get("multiplexer")
    if multiplexer:
        await multiplexer.close_all()

    transport = components.get("transport")
    if transport:
        await transport.close()

    logger.info("Conduit shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app with the component lifecycle attached."""
    components = create_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await components["transport"].start()

        # Store on app.state for access in tests
        app.state.components = components

        logger.info(
            "Conduit started: model=%s, max_iterations=%d, workspace=%s",
            settings.model,
            settings.max_iterations,
            settings.workspace_dir,
        )
        yield

        await shutdown_components(components)

    from conduit.api.rest import create_app

    return create_app(
        multiplexer=components["multiplexer"],
        settings=settings,
        lifespan=lifespan,
    )


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Conduit (model: %s)", settings.model)
    logger.info(
        "Default agent: %s (run_code %s)",
        settings.default_agent_id,
        "enabled" if settings.default_agent_can_run_code else "disabled",
    )

    if not settings.openrouter_api_key:
        logger.warning("OPENROUTER_API_KEY is not set -- sessions will fail to stream")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
