"""aiflow: durable, resumable multi-step AI flow execution."""

from .container import FlowRuntime, build_runtime
from .contracts import FlowJob, FlowStatusView, StepOutcome
from .dispatch import FlowDispatcher
from .driver import DriverResult, FlowDriver
from .errors import (
    AiflowError,
    FlowConflictError,
    FlowNotFoundError,
    InvalidFlowStateError,
    StepExecutionError,
)
from .persistence import FlowRecord, FlowStatus, FlowStep, get_repository
from .registry import AgentRegistry, ToolRegistry
from .service import FlowService
from .steps import StepExecutor
from .transports import get_transport
from .worker import FlowWorker

__version__ = "0.1.0"
__all__ = [
    "AgentRegistry",
    "AiflowError",
    "DriverResult",
    "FlowConflictError",
    "FlowDispatcher",
    "FlowDriver",
    "FlowJob",
    "FlowNotFoundError",
    "FlowRecord",
    "FlowRuntime",
    "FlowService",
    "FlowStatus",
    "FlowStatusView",
    "FlowStep",
    "FlowWorker",
    "InvalidFlowStateError",
    "StepExecutionError",
    "StepExecutor",
    "StepOutcome",
    "ToolRegistry",
    "build_runtime",
    "get_repository",
    "get_transport",
]
