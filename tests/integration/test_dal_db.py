"""Repository behaviour against a real PostgreSQL instance."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from matchday.dal import ExecutionRepository, TraceRepository
from matchday.storage.entities import Execution, ExecutionStatus, UsedTopic
from matchday.workflows.dedup import DedupLedger, hash_headline

pytestmark = [pytest.mark.integration, pytest.mark.asyncio(loop_scope="session")]


class TestExecutionStatus:
    async def test_first_terminal_write_wins(self, integration_session: AsyncSession):
        repo = ExecutionRepository(integration_session)
        execution = await repo.create(workflow_id="efd", trigger_trace_id="trace_a")

        assert await repo.apply_status(execution.id, ExecutionStatus.COMPLETED, final_output={"ok": True})
        assert not await repo.apply_status(execution.id, ExecutionStatus.FAILED)
        assert not await repo.apply_status(execution.id, ExecutionStatus.RUNNING)

        await integration_session.refresh(execution)
        assert execution.status == "completed"
        assert execution.final_output == {"ok": True}
        assert execution.completed_at is not None

    async def test_running_update_keeps_run_open(self, integration_session: AsyncSession):
        repo = ExecutionRepository(integration_session)
        execution = await repo.create(workflow_id="efd", trigger_trace_id="trace_b")

        assert await repo.apply_status(execution.id, ExecutionStatus.RUNNING)

        await integration_session.refresh(execution)
        assert execution.status == "running"
        assert execution.completed_at is None

    async def test_concurrent_terminal_writes_converge(self, committing_sessions):
        async with committing_sessions() as session:
            execution = await ExecutionRepository(session).create(workflow_id="efd", trigger_trace_id="trace_c")
            await session.commit()

        async def write(status: ExecutionStatus) -> bool:
            async with committing_sessions() as session:
                applied = await ExecutionRepository(session).apply_status(execution.id, status)
                await session.commit()
                return applied

        results = await asyncio.gather(write(ExecutionStatus.COMPLETED), write(ExecutionStatus.FAILED))

        assert sorted(results) == [False, True]
        async with committing_sessions() as session:
            stored = await ExecutionRepository(session).get(execution.id)
        assert stored.status == ("completed" if results[0] else "failed")

    async def test_external_id_set_once(self, integration_session: AsyncSession):
        repo = ExecutionRepository(integration_session)
        execution = await repo.create(workflow_id="efd", trigger_trace_id="trace_d")

        assert await repo.set_external_execution_id(execution.id, "501")
        assert not await repo.set_external_execution_id(execution.id, "502")

        await integration_session.refresh(execution)
        assert execution.external_execution_id == "501"


class TestGetOrCreate:
    async def test_returns_existing_row(self, integration_session: AsyncSession):
        repo = ExecutionRepository(integration_session)
        created = await repo.create(workflow_id="efd", trigger_trace_id="trace_e")

        found = await repo.get_or_create_for_trace("trace_e", "efd")

        assert found.id == created.id

    async def test_concurrent_callers_share_one_row(self, committing_sessions):
        async def resolve() -> str:
            async with committing_sessions() as session:
                execution = await ExecutionRepository(session).get_or_create_for_trace("trace_f", "efd")
                await session.commit()
                return execution.id

        first, second = await asyncio.gather(resolve(), resolve())

        assert first == second

    async def test_list_for_workflow_newest_first(self, integration_session: AsyncSession):
        now = datetime.now(UTC)
        for offset, trace_id in enumerate(["trace_old", "trace_mid", "trace_new"]):
            integration_session.add(
                Execution(
                    workflow_id="efd-list",
                    trigger_trace_id=trace_id,
                    status="running",
                    started_at=now + timedelta(minutes=offset),
                )
            )
        await integration_session.flush()

        executions = await ExecutionRepository(integration_session).list_for_workflow("efd-list", limit=2)

        assert [e.trigger_trace_id for e in executions] == ["trace_new", "trace_mid"]


class TestTraces:
    async def test_timeline_in_attempt_order(self, integration_session: AsyncSession):
        repo = TraceRepository(integration_session)
        for attempt, action in [(3, "final"), (1, "generate"), (2, "research-complete")]:
            await repo.create(
                trace_id="trace_g",
                workflow_id="efd",
                action=action,
                source_service="engine",
                destination_service="orchestrator",
                attempt_number=attempt,
            )

        traces = await repo.list_for_trace("trace_g")

        assert [t.action for t in traces] == ["generate", "research-complete", "final"]
        assert await repo.next_attempt_number("trace_g") == 4
        assert await repo.next_attempt_number("trace_unknown") == 1

    async def test_trigger_finalized_once(self, integration_session: AsyncSession):
        repo = TraceRepository(integration_session)
        trace = await repo.create(
            trace_id="trace_h",
            workflow_id="efd",
            action="generate",
            source_service="api",
            destination_service="engine",
        )

        assert await repo.finalize_trigger(trace.id, overall_status="success", duration_ms=120)
        assert not await repo.finalize_trigger(trace.id, overall_status="failed", duration_ms=5)

        await integration_session.refresh(trace)
        assert trace.overall_status == "success"
        assert trace.duration_ms == 120


class TestUsedTopics:
    async def test_freshness_window(self, integration_session: AsyncSession):
        ledger = DedupLedger(integration_session)
        await ledger.record("efd", "  Salah signs new deal  ")
        integration_session.add(
            UsedTopic(
                workflow_id="efd",
                headline="Old transfer saga",
                headline_hash=hash_headline("Old transfer saga"),
                used_at=datetime.now(UTC) - timedelta(hours=30),
            )
        )
        await integration_session.flush()

        assert await ledger.is_recent("efd", "Salah signs new deal", 24)
        assert not await ledger.is_recent("efd", "Old transfer saga", 24)
        assert await ledger.is_recent("efd", "Old transfer saga", 48)
        assert not await ledger.is_recent("other-workflow", "Salah signs new deal", 24)
        assert await ledger.recent_headlines("efd", 24) == ["Salah signs new deal"]

    async def test_cleanup_removes_only_expired(self, integration_session: AsyncSession):
        ledger = DedupLedger(integration_session)
        await ledger.record("efd-cleanup", "Fresh headline")
        integration_session.add(
            UsedTopic(
                workflow_id="efd-cleanup",
                headline="Stale headline",
                headline_hash=hash_headline("Stale headline"),
                used_at=datetime.now(UTC) - timedelta(hours=100),
            )
        )
        await integration_session.flush()

        assert await ledger.cleanup(48) == 1
        assert await ledger.recent_headlines("efd-cleanup", 200) == ["Fresh headline"]
