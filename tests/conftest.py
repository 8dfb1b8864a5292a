"""Shared fixtures: an in-process runtime with a few CRM-style tools."""

from datetime import datetime, timedelta, timezone

import pytest

import aiflow.persistence as persistence
from aiflow.config import AiflowConfig, JobConfig
from aiflow.container import build_runtime
from aiflow.persistence import InMemoryFlowRepository
from aiflow.persistence.models import FlowStatus
from aiflow.registry import ToolRegistry
from aiflow.transports.inmemory import InMemoryTransport

CONTACTS = [
    {"id": "c-1", "full_name": "Anna Smith", "email": "anna@example.com"},
    {"id": "c-2", "full_name": "Bob Smith", "email": "bob@example.com"},
    {"id": "c-3", "full_name": "Jane Doe", "email": "jane@example.com"},
]


def make_tools() -> ToolRegistry:
    tools = ToolRegistry()
    tools.calls = []

    @tools.register("search_contacts")
    def search_contacts(params, flow):
        tools.calls.append(("search_contacts", params))
        term = (params.get("search") or "").lower()
        hits = [c for c in CONTACTS if term and term in c["full_name"].lower()]
        if not hits:
            return {"success": False, "status": "not_found"}
        if len(hits) > 1:
            return {"success": False, "status": "multiple_matches", "matches": hits}
        return {"success": True, "data": hits[0]}

    @tools.register("create_contact")
    async def create_contact(params, flow):
        tools.calls.append(("create_contact", params))
        return {"success": True, "data": {"id": "c-new", "full_name": params.get("name")}}

    @tools.register("create_invoice")
    def create_invoice(params, flow):
        tools.calls.append(("create_invoice", params))
        return {
            "success": True,
            "data": {"id": "inv-1", "amount": params.get("amount"), "contact": params.get("contact_id")},
        }

    @tools.register("broken")
    def broken(params, flow):
        tools.calls.append(("broken", params))
        raise RuntimeError("CRM unavailable")

    @tools.register("rejects")
    def rejects(params, flow):
        return {"success": False, "error": "Amount must be positive"}

    return tools


def fast_config(**job_overrides) -> AiflowConfig:
    job = {"continue_delay": 0.0, "finalize_delay": 0.0, "backoff": 0.0, "timeout": 5.0}
    job.update(job_overrides)
    return AiflowConfig(job=JobConfig(**job))


def tool_step(tool, title="", **kwargs):
    return {"step_type": "tool_call", "tool": tool, "title": title or tool, **kwargs}


async def pop_job(runtime):
    """Take the next queued job regardless of its delay."""
    far_future = datetime.now(timezone.utc) + timedelta(days=1)
    raw = await runtime.transport.pop_due(runtime.dispatcher.queue, now=far_future)
    return raw[1] if raw else None


async def assert_can_progress(runtime, flow_id):
    """A live flow must hold a queued job carrying its current dispatch id."""
    flow = await runtime.repository.get_flow(flow_id)
    if flow.is_terminal or flow.status == FlowStatus.AWAITING_USER:
        return
    queued = [
        job.dispatch_id
        for job in runtime.transport.pending(runtime.dispatcher.queue)
        if job.flow_id == flow_id
    ]
    assert flow.dispatch_id in queued, f"flow {flow_id} is {flow.status.value} with no job queued"


@pytest.fixture(autouse=True)
def reset_repository_singleton():
    persistence.reset_repository()
    yield
    persistence.reset_repository()


@pytest.fixture
def tools():
    return make_tools()


@pytest.fixture
def runtime(tools):
    """Runtime whose re-enqueued jobs are due immediately."""
    return build_runtime(
        fast_config(),
        repository=InMemoryFlowRepository(),
        transport=InMemoryTransport(),
        tools=tools,
    )


@pytest.fixture
def slow_runtime(tools):
    """Runtime with the default scheduling delays, for invocation-by-invocation tests."""
    return build_runtime(
        AiflowConfig(),
        repository=InMemoryFlowRepository(),
        transport=InMemoryTransport(),
        tools=tools,
    )


# importable as "conftest:CLI_TOOLS" by the CLI's --tools option
CLI_TOOLS = make_tools()
