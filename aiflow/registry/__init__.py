"""Registries of the tools and agents that flow steps call into."""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional, Union

from pydantic_ai import Agent

if TYPE_CHECKING:
    from ..persistence.models import FlowRecord

ToolResult = Dict[str, Any]
ToolFunc = Callable[
    [Dict[str, Any], "FlowRecord"], Union[ToolResult, Awaitable[ToolResult]]
]


class ToolRegistry:
    """Named callables executed by ``tool_call`` steps.

    A tool receives the resolved parameters and the flow record and returns
    a result dict. ``{"success": True, "data": ...}`` completes the step;
    ``{"success": False, "status": "multiple_matches", "matches": [...]}``
    or ``{"success": False, "status": "not_found"}`` asks the user; any
    other unsuccessful result fails the step with ``result["error"]``.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, ToolFunc] = {}

    def register(self, name: str, func: Optional[ToolFunc] = None):
        """Register ``func`` under ``name``; usable as a decorator."""

        def decorator(f: ToolFunc) -> ToolFunc:
            self._tools[name] = f
            return f

        if func is not None:
            return decorator(func)
        return decorator

    def get(self, name: str) -> Optional[ToolFunc]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    async def call(
        self, name: str, params: Dict[str, Any], flow: "FlowRecord"
    ) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            raise KeyError(f"Tool {name!r} is not registered")
        result = tool(params, flow)
        if inspect.isawaitable(result):
            result = await result
        return result or {}


class AgentRegistry:
    """pydantic-ai agents addressable by name from ``agent`` steps."""

    def __init__(self) -> None:
        self._agents: Dict[str, Agent] = {}

    def register(
        self, name: str, agent: Union[Agent, str], system_prompt: str = ""
    ) -> Agent:
        """Register an agent, or build one from a model name such as ``"openai:gpt-4o"``.

        Agents built here take the flow context dict as their deps.
        """
        if isinstance(agent, str):
            agent = Agent(agent, deps_type=dict, system_prompt=system_prompt, name=name)
        self._agents[name] = agent
        return agent

    def get(self, name: str) -> Optional[Agent]:
        return self._agents.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._agents


__all__ = ["AgentRegistry", "ToolRegistry", "ToolFunc", "ToolResult"]
