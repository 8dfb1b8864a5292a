import asyncio

import pytest

from aiflow.persistence import (
    FlowRecord,
    FlowStatus,
    FlowStep,
    InMemoryFlowRepository,
    SQLiteFlowRepository,
)
from aiflow.persistence.models import FlowLogEntry, LogEventType


def _repositories(tmp_path):
    return [InMemoryFlowRepository(), SQLiteFlowRepository(tmp_path / "flows.db")]


def _record(**kwargs) -> FlowRecord:
    steps = [FlowStep(position=0, title="lookup"), FlowStep(position=1, title="create")]
    return FlowRecord(total_steps=2, steps=steps, **kwargs)


@pytest.mark.asyncio
async def test_repository_crud(tmp_path):
    for repo in _repositories(tmp_path):
        record = _record(user_id="u-1", context={"foo": "bar"})
        await repo.create_flow(record)

        loaded = await repo.get_flow(record.id)
        assert loaded is not None
        assert loaded.context == {"foo": "bar"}
        assert [s.title for s in loaded.steps] == ["lookup", "create"]
        assert await repo.get_flow("missing") is None

        updated = await repo.update_flow(
            record.id, {"status": FlowStatus.RUNNING, "completed_steps": 1}
        )
        assert updated.status == FlowStatus.RUNNING
        assert updated.version == 1

        running = await repo.list_flows(status=[FlowStatus.RUNNING])
        assert [f.id for f in running] == [record.id]
        assert await repo.list_flows(status=[FlowStatus.COMPLETED]) == []
        assert len(await repo.list_flows(user_id="u-1")) == 1
        assert await repo.list_flows(user_id="someone-else") == []


@pytest.mark.asyncio
async def test_update_is_compare_and_set(tmp_path):
    for repo in _repositories(tmp_path):
        record = _record()
        await repo.create_flow(record)

        first = await repo.update_flow(record.id, {"completed_steps": 1}, expected_version=0)
        assert first is not None and first.version == 1

        # a writer still holding version 0 loses
        stale = await repo.update_flow(record.id, {"completed_steps": 2}, expected_version=0)
        assert stale is None

        wrong_status = await repo.update_flow(
            record.id, {"completed_steps": 2}, expected_status=[FlowStatus.AWAITING_USER]
        )
        assert wrong_status is None

        current = await repo.get_flow(record.id)
        assert current.completed_steps == 1
        assert current.version == 1
        assert await repo.update_flow("missing", {"completed_steps": 1}) is None


@pytest.mark.asyncio
async def test_update_rejects_counter_violation(tmp_path):
    for repo in _repositories(tmp_path):
        record = _record()
        await repo.create_flow(record)
        with pytest.raises(ValueError):
            await repo.update_flow(record.id, {"completed_steps": 3})
        assert (await repo.get_flow(record.id)).completed_steps == 0


@pytest.mark.asyncio
async def test_concurrent_updates_only_one_wins(tmp_path):
    for repo in _repositories(tmp_path):
        record = _record()
        await repo.create_flow(record)

        results = await asyncio.gather(
            *[
                repo.update_flow(record.id, {"completed_steps": 1}, expected_version=0)
                for _ in range(5)
            ]
        )
        assert sum(r is not None for r in results) == 1
        assert (await repo.get_flow(record.id)).version == 1


@pytest.mark.asyncio
async def test_logs_are_kept_in_order(tmp_path):
    for repo in _repositories(tmp_path):
        record = _record()
        await repo.create_flow(record)
        for event in (LogEventType.FLOW_CREATED, LogEventType.FLOW_STARTED):
            await repo.append_log(
                FlowLogEntry(flow_id=record.id, event_type=event, message=event.value)
            )

        logs = await repo.list_logs(record.id)
        assert [entry.event_type for entry in logs] == [
            LogEventType.FLOW_CREATED,
            LogEventType.FLOW_STARTED,
        ]
        assert logs[0].id < logs[1].id
        assert await repo.list_logs("other") == []


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    db_path = tmp_path / "flows.db"
    repo = SQLiteFlowRepository(db_path)
    record = _record()
    await repo.create_flow(record)
    await repo.update_flow(record.id, {"status": FlowStatus.AWAITING_USER})

    reopened = SQLiteFlowRepository(db_path)
    loaded = await reopened.get_flow(record.id)
    assert loaded.status == FlowStatus.AWAITING_USER
    assert loaded.created_at == record.created_at


@pytest.mark.asyncio
async def test_inmemory_returns_snapshots():
    repo = InMemoryFlowRepository()
    record = _record()
    await repo.create_flow(record)

    loaded = await repo.get_flow(record.id)
    loaded.context["leak"] = True
    assert "leak" not in (await repo.get_flow(record.id)).context

    with pytest.raises(ValueError):
        await repo.create_flow(record)
