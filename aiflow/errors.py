"""Exception hierarchy for flow execution."""

from __future__ import annotations

from typing import Optional


class AiflowError(Exception):
    """Base class for all aiflow errors."""


class FlowNotFoundError(AiflowError):
    """Raised when a flow id does not resolve to a record."""

    def __init__(self, flow_id: str) -> None:
        super().__init__(f"Flow {flow_id} not found")
        self.flow_id = flow_id


class InvalidFlowStateError(AiflowError):
    """Raised when an operation is not allowed in the flow's current status."""

    def __init__(self, flow_id: str, status: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Flow {flow_id} is {status}")
        self.flow_id = flow_id
        self.status = status


class StepExecutionError(AiflowError):
    """Raised when a step's action fails.

    Propagates through the driver to the worker, which retries the job.
    """

    def __init__(
        self, message: str, flow_id: Optional[str] = None, step_id: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.flow_id = flow_id
        self.step_id = step_id


class FlowConflictError(AiflowError):
    """Raised when a compare-and-set update on a flow record loses."""

    def __init__(self, flow_id: str) -> None:
        super().__init__(f"Flow {flow_id} was modified concurrently")
        self.flow_id = flow_id
