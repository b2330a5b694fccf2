# tests/test_scheduler.py
"""
Tests for MLMScheduler jobs and their error wrappers.
"""
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from models.commission import CommissionEntry
from background.mlm_scheduler import MLMScheduler
from mlm_system.utils.time_machine import timeMachine


@pytest.fixture
def scheduler(session):
    @contextmanager
    def session_ctx():
        yield session

    return MLMScheduler(sessionContext=session_ctx)


class TestJobs:

    async def test_execute_run_uses_last_closed_period(self, scheduler, make_chain, add_sale):
        top, sponsor, seller = make_chain("gold", "silver", "starter")
        add_sale(seller, "200")

        summary = await scheduler.executeRun("monthly")

        # FROZEN_NOW is 2024-11-01 01:00, October has just closed
        assert summary["periodKey"] == "2024-10"
        assert summary["status"] == "completed"
        assert summary["totalCommissions"] != "0.00"
        assert scheduler.stats["tasksExecuted"] == 1

    async def test_weekly_run_after_close_includes_weekend_sales(
            self, session, scheduler, make_chain, add_sale):
        top, sponsor, seller = make_chain("gold", "silver", "starter")
        saturday = add_sale(seller, "300", occurredAt=datetime(2024, 10, 19, 18, 0))
        sunday = add_sale(seller, "100", occurredAt=datetime(2024, 10, 20, 23, 59))
        timeMachine.setTime(datetime(2024, 10, 21, 0, 5))

        summary = await scheduler.executeRun("weekly")

        assert summary["periodKey"] == "2024-W42"
        credited = {e.saleID for e in session.query(CommissionEntry).filter_by(commissionType="direct")}
        assert credited == {saturday.saleID, sunday.saleID}

    async def test_repeated_run_is_skipped(self, scheduler, make_chain, add_sale):
        top, sponsor, seller = make_chain("gold", "silver", "starter")
        add_sale(seller, "200")

        first = await scheduler.executeRun("weekly", "2024-W42")
        second = await scheduler.executeRun("weekly", "2024-W42")

        assert first["totalCommissions"] != "0.00"
        assert second is None
        assert scheduler.stats["skippedRuns"] == 1

    async def test_execute_payouts(self, session, scheduler, make_participant):
        participant = make_participant()
        session.add(CommissionEntry(
            recipientID=participant.participantID,
            commissionType="direct",
            level=0,
            calculatedAmount=Decimal("75"),
            amount=Decimal("75"),
            status="pending",
            releaseAt=timeMachine.now - timedelta(hours=1),
        ))
        session.flush()

        result = await scheduler.executePayouts()

        assert result["payouts"] == 1
        assert result["totalPaid"] == Decimal("75")
        assert scheduler.stats["lastPayouts"]["payouts"] == 1

    async def test_wrapper_swallows_and_counts_errors(self, scheduler, monkeypatch):
        async def boom(runType, periodKey=None):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(scheduler, "executeRun", boom)

        await scheduler._safe_weekly_run_wrapper()

        assert scheduler.stats["errors"] == 1
        assert scheduler.stats["lastError"] == "database unavailable"


class TestLifecycle:

    async def test_start_registers_jobs_and_stop(self, scheduler):
        await scheduler.start()
        try:
            status = scheduler.getStatus()
            assert status["isRunning"]
            assert {job["id"] for job in status["jobs"]} == {"weekly_run", "monthly_run", "payouts"}
            for jobId in ("weekly_run", "monthly_run"):
                assert str(scheduler.scheduler.get_job(jobId).trigger.timezone) == "UTC"
        finally:
            await scheduler.stop()

        assert not scheduler.isRunning
