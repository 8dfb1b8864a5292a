import asyncio

import pytest
from typer.testing import CliRunner

import aiflow.persistence as persistence
from aiflow.cli import app
from aiflow.container import build_runtime
from aiflow.persistence import FlowStatus, InMemoryFlowRepository
from aiflow.transports.inmemory import InMemoryTransport

from conftest import fast_config, make_tools, tool_step

PLAN = """
original_request: Add Anna and bill her
context:
  source: cli
steps:
  - step_type: tool_call
    tool: create_contact
    title: Create contact
    input_params:
      name: Anna
  - step_type: user_prompt
    title: Confirm
    prompt_type: confirm
    prompt_message: Confirm amount?
"""


@pytest.fixture(autouse=True)
def _no_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("AIFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("AIFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("AIFLOW_TRANSPORT", raising=False)


def _setup_repo() -> InMemoryFlowRepository:
    repo = InMemoryFlowRepository()
    persistence._repository_instance = repo
    return repo


def _parked_flow(repo):
    """Run a flow until it waits on the confirm prompt."""
    runtime = build_runtime(
        fast_config(), repository=repo, transport=InMemoryTransport(), tools=make_tools()
    )

    async def _run():
        flow = await runtime.service.start_flow(
            [
                tool_step("create_contact", "Create contact"),
                {"step_type": "user_prompt", "prompt_type": "confirm", "prompt_message": "Confirm amount?"},
            ]
        )
        await runtime.worker.run_once()
        return flow

    return asyncio.run(_run())


def test_flow_list_empty_and_populated():
    repo = _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["flow", "list"])
    assert result.exit_code == 0, result.stdout
    assert "No flows found" in result.stdout

    flow = _parked_flow(repo)
    result = runner.invoke(app, ["flow", "list", "--status", "awaiting_user"])
    assert result.exit_code == 0, result.stdout
    assert f"{flow.id}\tawaiting_user\t1/2" in result.stdout

    result = runner.invoke(app, ["flow", "list", "--status", "completed"])
    assert "No flows found" in result.stdout


def test_flow_start_from_plan(tmp_path):
    repo = _setup_repo()
    plan = tmp_path / "plan.yaml"
    plan.write_text(PLAN)

    runner = CliRunner()
    result = runner.invoke(app, ["flow", "start", str(plan), "--user-id", "u-7"])
    assert result.exit_code == 0, result.stdout
    assert "Flow started successfully!" in result.stdout

    flows = asyncio.run(repo.list_flows())
    assert len(flows) == 1
    flow = flows[0]
    assert f"Flow ID: {flow.id}" in result.stdout
    assert flow.user_id == "u-7"
    assert flow.context == {"source": "cli"}
    assert [s.title for s in flow.steps] == ["Create contact", "Confirm"]


def test_flow_start_rejects_bad_plans(tmp_path):
    _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["flow", "start", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "Plan file does not exist" in result.stdout

    empty = tmp_path / "empty.yaml"
    empty.write_text("steps: []\n")
    result = runner.invoke(app, ["flow", "start", str(empty)])
    assert result.exit_code == 1
    assert "Plan has no steps" in result.stdout


def test_flow_show_details_and_missing():
    repo = _setup_repo()
    flow = _parked_flow(repo)

    runner = CliRunner()
    result = runner.invoke(app, ["flow", "show", flow.id])
    assert result.exit_code == 0, result.stdout
    assert f"Flow {flow.id}: awaiting_user (1/2, 50.0%)" in result.stdout
    assert "Waiting for confirm: Confirm amount?" in result.stdout
    assert "- 0. Create contact: completed" in result.stdout
    assert "- 1. user_prompt: awaiting_user" in result.stdout

    missing = runner.invoke(app, ["flow", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Flow not found" in missing.stdout


def test_flow_respond_resumes_flow():
    repo = _setup_repo()
    flow = _parked_flow(repo)

    runner = CliRunner()
    result = runner.invoke(app, ["flow", "respond", flow.id, "yes"])
    assert result.exit_code == 0, result.stdout
    assert f"Flow {flow.id}: running" in result.stdout

    stored = asyncio.run(repo.get_flow(flow.id))
    assert stored.context["last_user_response"] == "yes"

    again = runner.invoke(app, ["flow", "respond", flow.id, "yes"])
    assert again.exit_code == 1
    assert "not awaiting user input" in again.stdout


def test_flow_respond_decodes_json():
    repo = _setup_repo()
    flow = _parked_flow(repo)

    result = CliRunner().invoke(app, ["flow", "respond", flow.id, '{"value": "no"}'])
    assert result.exit_code == 0, result.stdout
    assert f"Flow {flow.id}: cancelled" in result.stdout


def test_flow_cancel_retry_and_logs():
    repo = _setup_repo()
    flow = _parked_flow(repo)
    runner = CliRunner()

    result = runner.invoke(app, ["flow", "retry", flow.id])
    assert result.exit_code == 1
    assert "Only failed flows can be retried" in result.stdout

    result = runner.invoke(app, ["flow", "cancel", flow.id])
    assert result.exit_code == 0, result.stdout
    assert f"Flow {flow.id}: cancelled" in result.stdout
    assert asyncio.run(repo.get_flow(flow.id)).status == FlowStatus.CANCELLED

    result = runner.invoke(app, ["flow", "cancel", flow.id])
    assert result.exit_code == 1
    assert "Flow already finished" in result.stdout

    result = runner.invoke(app, ["flow", "logs", flow.id])
    assert result.exit_code == 0, result.stdout
    assert "flow_created" in result.stdout
    assert "user_input_requested" in result.stdout
    assert "flow_cancelled" in result.stdout

    missing = runner.invoke(app, ["flow", "logs", "missing-id"])
    assert missing.exit_code == 1


def test_worker_run_once_loads_tool_registry():
    _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["worker", "run", "--once", "--tools", "conftest:CLI_TOOLS"])
    assert result.exit_code == 0, result.stdout
    assert "Processed 0 job(s)" in result.stdout

    bad = runner.invoke(app, ["worker", "run", "--once", "--tools", "conftest:CONTACTS"])
    assert bad.exit_code != 0
