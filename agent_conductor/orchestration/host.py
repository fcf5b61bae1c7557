"""
Boundary between the orchestration strategies and the host agent.

The host runs its own tool-calling loop; strategies only register one
capability on it, adjust which of its tools stay active, and supply the
instructions for each turn.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..models.core import CapabilityResult
from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Capability:
    """A function exposed to the host agent."""
    name: str
    description: str
    parameters: Dict[str, Any]
    handler: Callable[..., Awaitable[CapabilityResult]]

    async def invoke(self, **kwargs) -> CapabilityResult:
        return await self.handler(**kwargs)

    def schema(self) -> Dict[str, Any]:
        """Function-calling schema for the host's model."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class AgentHost(ABC):
    """The parent agent session a strategy attaches to."""

    @property
    @abstractmethod
    def default_instructions(self) -> str:
        """The host's own instruction text before any strategy changes it."""

    @abstractmethod
    def all_tool_names(self) -> List[str]:
        """Every tool the host knows about, active or not."""

    @abstractmethod
    def active_tool_names(self) -> List[str]:
        """Tools currently available to the host's model."""

    @abstractmethod
    def set_active_tools(self, names: List[str]) -> None:
        """Replace the set of active tools."""

    @abstractmethod
    def register_capability(self, capability: Capability) -> None:
        """Add a strategy capability as a host tool (active by default)."""


@dataclass
class SimpleHost(AgentHost):
    """In-memory host used by the command line and by tests."""
    instructions: str = "You are a helpful coding agent."
    tools: List[str] = field(default_factory=lambda: ["read", "bash", "edit", "write"])
    capabilities: Dict[str, Capability] = field(default_factory=dict)
    _active: Optional[List[str]] = field(default=None, init=False, repr=False)

    @property
    def default_instructions(self) -> str:
        return self.instructions

    def all_tool_names(self) -> List[str]:
        return list(self.tools) + [name for name in self.capabilities if name not in self.tools]

    def active_tool_names(self) -> List[str]:
        if self._active is None:
            return self.all_tool_names()
        return list(self._active)

    def set_active_tools(self, names: List[str]) -> None:
        known = set(self.all_tool_names())
        unknown = [name for name in names if name not in known]
        if unknown:
            raise ValueError(f"Unknown tools: {', '.join(unknown)}")
        self._active = list(names)

    def register_capability(self, capability: Capability) -> None:
        self.capabilities[capability.name] = capability
        if self._active is not None and capability.name not in self._active:
            self._active.append(capability.name)

    async def call(self, name: str, **kwargs) -> CapabilityResult:
        """Invoke an active capability the way the host's tool loop would."""
        if name not in self.active_tool_names() or name not in self.capabilities:
            raise KeyError(f"Capability not available: {name}")
        return await self.capabilities[name].invoke(**kwargs)


class OrchestrationStrategy(ABC):
    """One of the two coordination modes attached to a host."""

    @abstractmethod
    def capability(self) -> Capability:
        """The single capability this strategy exposes."""

    @abstractmethod
    def on_session_start(self, host: AgentHost) -> None:
        """Reset tracked state and attach to the host."""

    @abstractmethod
    def build_instructions(self, default_instructions: str) -> str:
        """Instructions for the host's next turn."""

    @abstractmethod
    def unit_ids(self) -> List[str]:
        """Ids of the units this strategy tracks, in display order."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Terminate in-flight children."""
