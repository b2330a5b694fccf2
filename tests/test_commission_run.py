# tests/test_commission_run.py
"""
Tests for CommissionRunService.

Covers idempotency, per-participant failure isolation, the majority-failure
rollback, forced re-runs, cooling-off handling and the run report.
"""
from datetime import datetime
from decimal import Decimal

import pytest

from models.commission import CommissionEntry
from models.participant import Participant
from models.mlm.commission_run import CommissionRun
from models.mlm.rank_history import RankHistory
from mlm_system.errors import IdempotencyConflict, ValidationError
from mlm_system.events.event_bus import MLMEvents
from mlm_system.services.commission_run_service import CommissionRunService

WEEK = "2024-W42"  # Oct 14-20, 2024
MONTH = "2024-10"


def entries(session, **filters):
    return session.query(CommissionEntry).filter_by(**filters).all()


@pytest.fixture
def network(make_chain, add_sale):
    """diamond → gold → silver → seller, one 1000 sale inside week 42."""
    top, middle, sponsor, seller = make_chain("diamond", "gold", "silver", "starter")
    add_sale(seller, "1000")
    return top, middle, sponsor, seller


class TestRunBasics:

    async def test_weekly_run_credits_sale_commissions(self, session, network):
        top, middle, sponsor, seller = network

        run = await CommissionRunService(session).runPeriod("weekly", WEEK)

        assert run.status == "completed"
        assert run.completionMarker == f"weekly:{WEEK}"
        assert run.participantsTotal == 4
        assert run.participantsProcessed == 4

        direct = entries(session, commissionType="direct")
        assert [(e.recipientID, e.amount) for e in direct] == [(sponsor.participantID, Decimal("100.00"))]

        overrides = {e.level: e.amount for e in entries(session, commissionType="override")}
        assert overrides == {1: Decimal("50.00"), 2: Decimal("30.00"), 3: Decimal("20.00")}

        matching = entries(session, commissionType="matching")
        assert [(e.recipientID, e.amount) for e in matching] == [(middle.participantID, Decimal("30.00"))]

        assert run.breakdown["direct"] == "100.00"
        assert run.breakdown["override"] == "100.00"
        assert run.breakdown["matching"] == "30.00"
        # weekly runs pay no rank bonus
        assert run.breakdown["bonus"] == "0.00"

    async def test_total_equals_sum_of_entries(self, session, network):
        run = await CommissionRunService(session).runPeriod("weekly", WEEK)

        credited = sum((e.amount for e in entries(session, runID=run.runID)), Decimal("0"))
        breakdown = sum((Decimal(v) for v in run.breakdown.values()), Decimal("0"))

        assert run.totalCommissions == credited == breakdown

    async def test_entries_pending_with_hold(self, session, network):
        await CommissionRunService(session).runPeriod("weekly", WEEK)

        for entry in entries(session):
            assert entry.status == "pending"
            assert entry.releaseAt == datetime(2024, 12, 1, 1, 0)
            assert entry.periodKey == WEEK

    async def test_monthly_run_adds_leadership_and_bonus(self, session, network):
        top, middle, sponsor, seller = network

        run = await CommissionRunService(session).runPeriod("monthly", "2024-10")

        leadership = {e.recipientID: e.amount for e in entries(session, commissionType="leadership")}
        # team volume 1000 for each ancestor of the seller
        assert leadership == {
            top.participantID: Decimal("50.00"),
            middle.participantID: Decimal("20.00"),
            sponsor.participantID: Decimal("10.00"),
        }
        bonus = {e.recipientID: e.amount for e in entries(session, commissionType="bonus")}
        assert bonus == {
            top.participantID: Decimal("1500.00"),
            middle.participantID: Decimal("150.00"),
            sponsor.participantID: Decimal("50.00"),
        }
        assert run.breakdown["leadership"] == "80.00"

    async def test_rank_decisions_use_period_metrics(self, session, network):
        top, middle, sponsor, seller = network

        run = await CommissionRunService(session).runPeriod("monthly", "2024-10")

        session.refresh(top)
        # diamond misses every requirement but has protections left
        assert top.rank == "diamond"
        assert top.protectionPeriodsUsed == 1
        assert run.rankChanges["protected"] == 3
        assert session.query(RankHistory).filter_by(runID=run.runID).count() == 3

    async def test_invalid_period(self, session):
        with pytest.raises(ValidationError):
            await CommissionRunService(session).runPeriod("weekly", "2024-10")

    async def test_events_emitted_after_commit(self, session, network, captured_events):
        events = captured_events(MLMEvents.RUN_COMPLETED, MLMEvents.RANK_PROTECTED)

        run = await CommissionRunService(session).runPeriod("monthly", MONTH)

        names = [name for name, _ in events]
        assert names.count(MLMEvents.RANK_PROTECTED) == 3
        assert names[-1] == MLMEvents.RUN_COMPLETED
        assert events[-1][1]["runId"] == run.runID


class TestIdempotency:

    async def test_second_run_conflicts(self, session, network):
        service = CommissionRunService(session)
        first = await service.runPeriod("weekly", WEEK)

        with pytest.raises(IdempotencyConflict) as exc:
            await service.runPeriod("weekly", WEEK)

        assert exc.value.runId == first.runID
        assert len(entries(session, commissionType="direct")) == 1

    async def test_same_week_as_month_week_key_conflicts(self, session, network):
        service = CommissionRunService(session)
        await service.runPeriod("weekly", WEEK)

        with pytest.raises(IdempotencyConflict):
            await service.runPeriod("weekly", "2024-10-W2")

    async def test_weekly_then_monthly_credits_each_sale_once(self, session, network):
        top, middle, sponsor, seller = network
        service = CommissionRunService(session)
        weekly = await service.runPeriod("weekly", WEEK)

        monthly = await service.runPeriod("monthly", MONTH)

        assert monthly.status == "completed"
        direct = entries(session, commissionType="direct")
        assert [(e.runID, e.amount) for e in direct] == [(weekly.runID, Decimal("100.00"))]
        sale_lines = [
            e for e in entries(session, runID=monthly.runID)
            if e.commissionType in ("direct", "override", "matching")
        ]
        assert sale_lines == []
        # the monthly run still pays its period bonuses
        assert monthly.breakdown["leadership"] == "80.00"

    async def test_monthly_credits_sale_left_over_by_weekly_runs(self, session, network, add_sale):
        top, middle, sponsor, seller = network
        service = CommissionRunService(session)
        await service.runPeriod("weekly", WEEK)
        # Oct 31 belongs to a week that has not closed yet
        late = add_sale(seller, "500", occurredAt=datetime(2024, 10, 31, 12, 0))

        monthly = await service.runPeriod("monthly", MONTH)

        late_direct = entries(session, saleID=late.saleID, commissionType="direct")
        assert [(e.runID, e.amount) for e in late_direct] == [(monthly.runID, Decimal("50.00"))]
        assert len(entries(session, commissionType="direct")) == 2

    async def test_weekly_run_leaves_ranks_and_period_bonuses_alone(self, session, network):
        top, middle, sponsor, seller = network

        run = await CommissionRunService(session).runPeriod("weekly", WEEK)

        session.refresh(top)
        assert top.protectionPeriodsUsed == 0
        assert session.query(RankHistory).count() == 0
        assert run.breakdown["leadership"] == "0.00"
        assert sum(run.rankChanges.values()) == 0

    async def test_forced_rerun_supersedes(self, session, network):
        top, middle, sponsor, seller = network
        service = CommissionRunService(session)
        first = await service.runPeriod("monthly", MONTH)

        second = await service.runPeriod("monthly", MONTH, force=True)

        session.refresh(first)
        assert first.status == "superseded"
        assert first.completionMarker is None
        assert second.completionMarker == f"monthly:{MONTH}"
        assert second.forced

        assert all(e.status == "cancelled" for e in entries(session, runID=first.runID))
        live = entries(session, runID=second.runID, commissionType="direct")
        assert [e.amount for e in live] == [Decimal("100.00")]

        # protection counters were restored before re-evaluating
        session.refresh(top)
        assert top.protectionPeriodsUsed == 1

    async def test_forced_rerun_refused_after_payout(self, session, network):
        service = CommissionRunService(session)
        first = await service.runPeriod("weekly", WEEK)
        entry = entries(session, runID=first.runID)[0]
        entry.status = "paid"
        session.commit()

        with pytest.raises(IdempotencyConflict):
            await service.runPeriod("weekly", WEEK, force=True)

        session.refresh(first)
        assert first.status == "completed"


class TestFailureIsolation:

    async def test_three_of_hundred_integrity_errors(self, session, make_participant, add_sale):
        root = make_participant(rank="gold")
        members = [make_participant(sponsor=root) for _ in range(96)]
        # case variants of one referral code
        broken = [make_participant(sponsor=root, code=code) for code in ("DUP01", "dup01", "Dup01")]
        add_sale(members[0], "500")

        run = await CommissionRunService(session).runPeriod("weekly", WEEK)

        assert run.participantsTotal == 100
        assert run.participantsProcessed == 97
        assert run.status == "completed_with_errors"
        assert run.completionMarker is not None
        assert sorted(e["participantID"] for e in run.errors) == sorted(p.participantID for p in broken)
        assert {e["errorType"] for e in run.errors} == {"DataIntegrityError"}

        assert entries(session, recipientID=root.participantID, commissionType="direct")

    async def test_majority_failure_commits_nothing(self, session, make_participant, add_sale, captured_events):
        events = captured_events(MLMEvents.RUN_FAILED, MLMEvents.RUN_COMPLETED)
        root = make_participant(code="ROOT")
        healthy = make_participant(sponsor=root)
        for code in ("AA", "aa", "BB", "bb", "CC", "cc"):
            make_participant(sponsor=root, code=code)
        add_sale(healthy, "1000")
        session.commit()

        run = await CommissionRunService(session).runPeriod("weekly", WEEK)

        assert run.status == "failed"
        assert run.completionMarker is None
        assert len(run.errors) == 6
        assert session.query(CommissionEntry).count() == 0
        assert session.query(CommissionRun).count() == 1
        assert [name for name, _ in events] == [MLMEvents.RUN_FAILED]

    async def test_failed_run_can_be_retried(self, session, make_participant):
        root = make_participant()
        for code in ("AA", "aa"):
            make_participant(sponsor=root, code=code)
        session.commit()

        service = CommissionRunService(session)
        assert (await service.runPeriod("weekly", WEEK)).status == "failed"

        fix = session.query(Participant).filter_by(referralCode="aa").one()
        fix.referralCode = "AB"
        session.commit()

        retried = await service.runPeriod("weekly", WEEK)
        assert retried.status == "completed"

    async def test_cycle_members_skipped(self, session, make_participant):
        root = make_participant()
        healthy = [make_participant(sponsor=root) for _ in range(5)]
        a = make_participant(sponsor=root)
        b = make_participant(sponsor=a)
        a.sponsorID = b.participantID
        session.flush()

        run = await CommissionRunService(session).runPeriod("weekly", WEEK)

        assert run.status == "completed_with_errors"
        assert sorted(e["participantID"] for e in run.errors) == sorted([a.participantID, b.participantID])
        assert run.participantsProcessed == len(healthy) + 1

    async def test_corrupt_ancestor_rank_spares_healthy_recipients(self, session, network):
        top, middle, sponsor, seller = network
        top.rank = "emperor"
        session.flush()

        run = await CommissionRunService(session).runPeriod("weekly", WEEK)

        assert run.status == "completed_with_errors"
        assert [e["participantID"] for e in run.errors] == [top.participantID]
        assert run.participantsProcessed == 3

        direct = entries(session, commissionType="direct")
        assert [(e.recipientID, e.amount) for e in direct] == [(sponsor.participantID, Decimal("100.00"))]
        overrides = {e.level: e.recipientID for e in entries(session, commissionType="override")}
        assert overrides == {1: sponsor.participantID, 2: middle.participantID}
        assert entries(session, commissionType="matching")[0].recipientID == middle.participantID
        assert entries(session, recipientID=top.participantID) == []

    async def test_cancel_stops_remaining_participants(self, session, network, monkeypatch):
        top, middle, sponsor, seller = network
        service = CommissionRunService(session, workers=1)
        apply_decision = service.rankService.applyDecision

        async def apply_then_cancel(*args, **kwargs):
            result = await apply_decision(*args, **kwargs)
            service.cancel()
            return result

        monkeypatch.setattr(service.rankService, "applyDecision", apply_then_cancel)

        run = await service.runPeriod("monthly", MONTH)

        assert run.status == "completed_with_errors"
        assert run.participantsProcessed == 1
        assert [e["participantID"] for e in run.errors] == [
            middle.participantID, sponsor.participantID, seller.participantID
        ]
        assert {e["errorType"] for e in run.errors} == {"RunCancelled"}
        assert {e.recipientID for e in entries(session)} == {top.participantID}

    async def test_deadline_marks_remaining_as_cancelled(self, session, network):
        run = await CommissionRunService(session, timeoutSeconds=0).runPeriod("weekly", WEEK)

        assert run.status == "completed_with_errors"
        assert run.participantsProcessed == 0
        assert {e["errorType"] for e in run.errors} == {"RunCancelled"}
        assert session.query(CommissionEntry).count() == 0


class TestCoolingOffAndCaps:

    async def test_cooling_off_recipient_gets_cancelled_zero_entries(self, session, make_participant, add_sale):
        root = make_participant(rank="gold")
        newcomer = make_participant(sponsor=root, joinedAt=datetime(2024, 10, 25))
        buyer = make_participant(sponsor=newcomer)
        add_sale(buyer, "1000")

        run = await CommissionRunService(session).runPeriod("weekly", WEEK)

        direct = entries(session, commissionType="direct")[0]
        assert direct.recipientID == newcomer.participantID
        assert direct.status == "cancelled"
        assert direct.amount == Decimal("0")
        assert direct.calculatedAmount == Decimal("100.00")
        assert direct.notes == "Recipient in cooling-off period"

        session.refresh(newcomer)
        assert newcomer.currentPlanEarnings == Decimal("0")
        assert run.breakdown["direct"] == "0.00"

    async def test_cap_clamps_and_warns_once(self, session, make_participant, make_plan, add_sale, captured_events):
        events = captured_events(MLMEvents.EARNINGS_CAP_REACHED)
        plan = make_plan(price="100")  # cap 150
        sponsor = make_participant(plan=plan, currentPlanEarnings=Decimal("120"))
        seller = make_participant(sponsor=sponsor)
        add_sale(seller, "1000")

        run = await CommissionRunService(session).runPeriod("weekly", WEEK)

        credited = entries(session, recipientID=sponsor.participantID)
        assert sum((e.amount for e in credited), Decimal("0")) == Decimal("30.00")
        assert any(e.capClamped for e in credited)

        session.refresh(sponsor)
        assert sponsor.currentPlanEarnings == Decimal("150.00")
        assert sponsor.earningsCapReached
        assert sponsor.capWarningSent
        assert len(events) == 1
        assert run.totalCommissions == Decimal("30.00")


class TestConcurrency:

    @staticmethod
    def credited_lines(session, runId):
        return sorted(
            (e.recipientID, e.commissionType, e.level, e.saleID or 0, e.amount, e.capClamped)
            for e in entries(session, runID=runId)
        )

    async def test_result_does_not_depend_on_worker_count(
            self, session, make_participant, make_plan, add_sale):
        plan = make_plan(price="100")  # cap 150
        root = make_participant(rank="gold")
        for _ in range(3):
            sponsor = make_participant(sponsor=root, rank="silver", plan=plan)
            for amount in ("600", "700", "800"):
                add_sale(make_participant(sponsor=sponsor), amount)

        single = await CommissionRunService(session, workers=1).runPeriod("monthly", MONTH)
        single_lines = self.credited_lines(session, single.runID)

        parallel = await CommissionRunService(session, workers=8).runPeriod("monthly", MONTH, force=True)

        assert self.credited_lines(session, parallel.runID) == single_lines
        assert parallel.totalCommissions == single.totalCommissions
        assert parallel.breakdown == single.breakdown
        assert any(line[-1] for line in single_lines)
