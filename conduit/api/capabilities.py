"""Agent capabilities, read by the runner once per iteration.

Agent settings can change while a run is in flight (a user toggles code
execution, edits the prompt).  Runs never hold a reference to the live
profile: each iteration takes a frozen Capabilities snapshot, so a
change lands cleanly at the next iteration boundary.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from conduit.errors import AgentNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capabilities:
    """Read-only snapshot of what an agent may do in one iteration."""

    agent_id: str
    system_instructions: str
    # Empty disables tools; privileged tools must also be named here
    enabled_tools: frozenset[str] = frozenset()
    model: str | None = None
    reasoning_effort: str = ""
    permissions: tuple[str, ...] = ()

    @property
    def tools_enabled(self) -> bool:
        return bool(self.enabled_tools)


class CapabilitySource(Protocol):
    async def get_capabilities(self, agent_id: str) -> Capabilities: ...


@dataclass(frozen=True)
class AgentProfile:
    agent_id: str
    prompt: str
    enabled_tools: frozenset[str] = field(default_factory=frozenset)
    model: str | None = None
    reasoning_effort: str = ""
    permissions: tuple[str, ...] = ()


class AgentRegistry:
    """In-memory agent profiles implementing CapabilitySource.

    Profiles are immutable; update() swaps in a new one under a lock so
    a concurrent reader sees either the old or the new profile, never a
    mix.
    """

    def __init__(self) -> None:
        self._profiles: dict[str, AgentProfile] = {}
        self._lock = asyncio.Lock()

    def register(self, profile: AgentProfile) -> None:
        self._profiles[profile.agent_id] = profile
        logger.debug("Registered agent '%s'", profile.agent_id)

    async def update(self, agent_id: str, **changes: Any) -> AgentProfile:
        async with self._lock:
            current = self._profiles.get(agent_id)
            if current is None:
                raise AgentNotFoundError(agent_id)
            if "enabled_tools" in changes:
                changes["enabled_tools"] = frozenset(changes["enabled_tools"])
            updated = replace(current, **changes)
            self._profiles[agent_id] = updated
        logger.info("Agent '%s' updated: %s", agent_id, ", ".join(sorted(changes)))
        return updated

    def get(self, agent_id: str) -> AgentProfile | None:
        return self._profiles.get(agent_id)

    async def get_capabilities(self, agent_id: str) -> Capabilities:
        profile = self._profiles.get(agent_id)
        if profile is None:
            raise AgentNotFoundError(agent_id)
        return Capabilities(
            agent_id=profile.agent_id,
            system_instructions=profile.prompt.strip(),
            enabled_tools=profile.enabled_tools,
            model=profile.model,
            reasoning_effort=profile.reasoning_effort,
            permissions=profile.permissions,
        )
