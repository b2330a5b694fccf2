# tests/test_ranks.py
"""
Tests for RankService: qualification, promotion, protection windows,
demotion and reverting a run's rank changes.
"""
import json
from decimal import Decimal

import pytest

from models.mlm.rank_history import RankHistory
from mlm_system.config.ranks import DEFAULT_PLAN, Rank, build_compensation_plan
from mlm_system.services.rank_service import (
    RankService,
    RankMetrics,
    RankState,
    PROMOTED,
    PROTECTED,
    DEMOTED,
    BLOCKED,
    UNCHANGED,
)
from mlm_system.utils.periods import parse_period

OCTOBER = parse_period("monthly", "2024-10")
NOVEMBER = parse_period("monthly", "2024-11")
JANUARY = parse_period("monthly", "2025-01")

NOTHING = RankMetrics(directReferrals=0, personalVolume=Decimal("0"), teamVolume=Decimal("0"))
SILVER_METRICS = RankMetrics(directReferrals=3, personalVolume=Decimal("500"), teamVolume=Decimal("1500"))
GOLD_METRICS = RankMetrics(directReferrals=6, personalVolume=Decimal("2000"), teamVolume=Decimal("5000"))


@pytest.fixture
def service(session):
    return RankService(session)


class TestQualification:

    def test_highest_rank_with_all_requirements(self, service):
        assert service.qualifiedRank(GOLD_METRICS) == Rank.GOLD
        assert service.qualifiedRank(NOTHING) == Rank.STARTER

    def test_every_requirement_must_hold(self, service):
        # gold volumes but only 5 referrals
        metrics = RankMetrics(directReferrals=5, personalVolume=Decimal("2000"), teamVolume=Decimal("5000"))

        assert service.qualifiedRank(metrics) == Rank.SILVER

    def test_requirements_come_from_plan(self, session):
        requirements = dict(DEFAULT_PLAN["rankRequirements"])
        requirements["bronze"] = {"directReferrals": 0, "personalVolume": "1", "teamVolume": "0"}
        plan = build_compensation_plan({"rankRequirements": requirements})

        metrics = RankMetrics(directReferrals=0, personalVolume=Decimal("1"), teamVolume=Decimal("0"))

        assert RankService(session, plan).qualifiedRank(metrics) == Rank.BRONZE


class TestEvaluate:

    def test_promotion_resets_counter(self, service):
        state = RankState(rank=Rank.BRONZE, protectionPeriodsUsed=0, protectionWindowYear=2024)

        decision = service.evaluate(1, state, GOLD_METRICS, OCTOBER)

        assert decision.action == PROMOTED
        assert decision.newRank == Rank.GOLD
        assert decision.newProtectionUsed == 0

    def test_promotion_skips_intermediate_ranks(self, service):
        decision = service.evaluate(1, RankState(rank=Rank.STARTER), GOLD_METRICS, OCTOBER)

        assert decision.previousRank == Rank.STARTER
        assert decision.newRank == Rank.GOLD

    def test_blocked_during_cooling_off(self, service):
        decision = service.evaluate(1, RankState(rank=Rank.STARTER), GOLD_METRICS, OCTOBER, promotionBlocked=True)

        assert decision.action == BLOCKED
        assert decision.newRank == Rank.STARTER
        assert not decision.changesState

    def test_gold_protected_twice_then_demoted(self, service):
        state = RankState(rank=Rank.GOLD, protectionPeriodsUsed=0, protectionWindowYear=2024)

        first = service.evaluate(1, state, SILVER_METRICS, OCTOBER)
        assert (first.action, first.newRank, first.newProtectionUsed) == (PROTECTED, Rank.GOLD, 1)

        state = RankState(rank=Rank.GOLD, protectionPeriodsUsed=1, protectionWindowYear=2024)
        second = service.evaluate(1, state, SILVER_METRICS, NOVEMBER)
        assert (second.action, second.newProtectionUsed) == (PROTECTED, 2)

        state = RankState(rank=Rank.GOLD, protectionPeriodsUsed=2, protectionWindowYear=2024)
        third = service.evaluate(1, state, SILVER_METRICS, NOVEMBER)
        assert (third.action, third.newRank, third.newProtectionUsed) == (DEMOTED, Rank.SILVER, 0)

    def test_demotion_goes_to_qualified_rank(self, service):
        state = RankState(rank=Rank.PLATINUM, protectionPeriodsUsed=3, protectionWindowYear=2024)

        decision = service.evaluate(1, state, NOTHING, OCTOBER)

        assert decision.action == DEMOTED
        assert decision.newRank == Rank.STARTER

    def test_bronze_has_no_protection(self, service):
        decision = service.evaluate(1, RankState(rank=Rank.BRONZE), NOTHING, OCTOBER)

        assert decision.action == DEMOTED

    def test_new_year_restarts_window(self, service):
        state = RankState(rank=Rank.GOLD, protectionPeriodsUsed=2, protectionWindowYear=2024)

        decision = service.evaluate(1, state, SILVER_METRICS, JANUARY)

        assert decision.action == PROTECTED
        assert decision.newProtectionUsed == 1
        assert decision.protectionWindowYear == 2025
        assert decision.previousProtectionUsed == 2

    def test_unchanged(self, service):
        state = RankState(rank=Rank.SILVER, protectionPeriodsUsed=1, protectionWindowYear=2024)

        decision = service.evaluate(1, state, SILVER_METRICS, OCTOBER)

        assert decision.action == UNCHANGED
        assert decision.newProtectionUsed == 1


class TestPersistence:

    async def test_apply_demotion_writes_history(self, session, service, make_participant):
        participant = make_participant(rank="gold", protectionPeriodsUsed=2, protectionWindowYear=2024)
        decision = service.evaluate(
            participant.participantID, service.loadRankState(participant), SILVER_METRICS, OCTOBER
        )

        history = await service.applyDecision(participant, decision, OCTOBER)
        session.flush()

        assert participant.rank == "silver"
        assert participant.protectionPeriodsUsed == 0
        assert history.action == DEMOTED
        assert history.previousRank == "gold"
        assert "gracePeriodEnd" in json.loads(history.notes)

    async def test_apply_protection_records_period(self, session, service, make_participant):
        participant = make_participant(rank="gold")
        decision = service.evaluate(
            participant.participantID, service.loadRankState(participant), SILVER_METRICS, OCTOBER
        )

        history = await service.applyDecision(participant, decision, OCTOBER)

        assert participant.rank == "gold"
        assert participant.protectionPeriodsUsed == 1
        assert participant.protectionWindowYear == 2024
        assert participant.lastProtectionPeriod == "2024-10"
        assert json.loads(history.notes) == {"protectionsRemaining": 1}

    async def test_unchanged_writes_nothing(self, session, service, make_participant):
        participant = make_participant(rank="starter")
        decision = service.evaluate(
            participant.participantID, service.loadRankState(participant), NOTHING, OCTOBER
        )

        assert await service.applyDecision(participant, decision, OCTOBER) is None
        assert session.query(RankHistory).count() == 0

    async def test_revert_run_restores_previous_state(self, session, service, make_participant):
        participant = make_participant(rank="gold", protectionPeriodsUsed=2, protectionWindowYear=2023)
        decision = service.evaluate(
            participant.participantID, service.loadRankState(participant), NOTHING, OCTOBER
        )
        await service.applyDecision(participant, decision, OCTOBER, runId=None)
        session.flush()
        history = session.query(RankHistory).one()
        history.runID = 77
        session.flush()

        reverted = await service.revertRun(77)

        assert reverted == 1
        assert participant.rank == "gold"
        assert participant.protectionPeriodsUsed == 2
        assert participant.protectionWindowYear == 2023
        # audit trail is kept
        assert session.query(RankHistory).count() == 1

    def test_protections_remaining(self, service, make_participant):
        participant = make_participant(rank="platinum", protectionPeriodsUsed=1, protectionWindowYear=2024)

        assert service.protectionsRemaining(participant, OCTOBER) == 2
        assert service.protectionsRemaining(participant, JANUARY) == 3

    def test_next_rank(self, service):
        assert service.nextRank(Rank.GOLD) == Rank.PLATINUM
        assert service.nextRank(Rank.DIAMOND) is None
