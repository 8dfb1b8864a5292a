"""Wiring of the aiflow runtime from configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import AiflowConfig, load_config
from .dispatch import FlowDispatcher
from .driver import FlowDriver
from .persistence import FlowRepository, get_repository
from .registry import AgentRegistry, ToolRegistry
from .service import FlowService
from .steps import CompletionHook, StepExecutor
from .transports import BaseTransport, get_transport
from .worker import FlowWorker


@dataclass
class FlowRuntime:
    """Holds the constructed engine components."""

    config: AiflowConfig
    repository: FlowRepository
    transport: BaseTransport
    dispatcher: FlowDispatcher
    executor: StepExecutor
    driver: FlowDriver
    worker: FlowWorker
    service: FlowService


def build_runtime(
    config: Optional[AiflowConfig] = None,
    repository: Optional[FlowRepository] = None,
    transport: Optional[BaseTransport] = None,
    tools: Optional[ToolRegistry] = None,
    agents: Optional[AgentRegistry] = None,
    on_complete: Optional[CompletionHook] = None,
) -> FlowRuntime:
    """Build every engine component, using configured backends unless given."""
    config = config or load_config()
    repository = repository or get_repository(config=config)
    transport = transport or get_transport(config=config)
    dispatcher = FlowDispatcher(transport, queue=config.transport.queue)
    executor = StepExecutor(repository, tools=tools, agents=agents, on_complete=on_complete)
    driver = FlowDriver(repository, executor, dispatcher, config=config.job)
    return FlowRuntime(
        config=config,
        repository=repository,
        transport=transport,
        dispatcher=dispatcher,
        executor=executor,
        driver=driver,
        worker=FlowWorker(driver, dispatcher, config=config.job),
        service=FlowService(repository, dispatcher, config=config.flow),
    )
