# mlm_system/services/rank_service.py
"""
Rank qualification engine.

Once per run period every active participant is evaluated against the
static requirement tables:
- qualified > current: promote, protection counter restarts at 0
- qualified < current: protect while protections remain, else demote
  (counter restarts at 0 at the lower rank)
- qualified == current: no change

Protection counters belong to a calendar-year window and restart when a
period from a new year is evaluated.

evaluate() is pure and thread-safe; applyDecision() writes through the session.
"""
import json
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional, List
from sqlalchemy.orm import Session
import logging

from models.participant import Participant
from models.mlm.rank_history import RankHistory
from mlm_system.config.ranks import (
    CompensationPlan,
    Rank,
    RANK_ORDER,
    get_compensation_plan,
    parse_rank,
)
from mlm_system.utils.periods import Period
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

DEMOTION_GRACE_DAYS = 30

PROMOTED = "promoted"
PROTECTED = "protected"
DEMOTED = "demoted"
BLOCKED = "blocked"
UNCHANGED = "unchanged"


@dataclass(frozen=True)
class RankMetrics:
    """Qualification inputs, computed before any rank is mutated."""
    directReferrals: int
    personalVolume: Decimal
    teamVolume: Decimal


@dataclass(frozen=True)
class RankState:
    rank: Rank
    protectionPeriodsUsed: int = 0
    protectionWindowYear: Optional[int] = None


@dataclass(frozen=True)
class RankDecision:
    participantID: int
    action: str
    previousRank: Rank
    newRank: Rank
    qualifiedRank: Rank
    previousProtectionUsed: int
    newProtectionUsed: int
    previousProtectionYear: Optional[int]
    protectionWindowYear: int
    metrics: RankMetrics

    @property
    def changesState(self) -> bool:
        return self.action in (PROMOTED, PROTECTED, DEMOTED)


class RankService:
    """Service for rank qualification, promotion, protection and demotion."""

    def __init__(self, session: Session, plan: Optional[CompensationPlan] = None):
        self.session = session
        self.plan = plan or get_compensation_plan()

    # ═══════════════════════════════════════════════════════════════════
    # QUALIFICATION (pure)
    # ═══════════════════════════════════════════════════════════════════

    def qualifiedRank(self, metrics: RankMetrics) -> Rank:
        """Highest rank whose requirements are all met."""
        for rank in reversed(RANK_ORDER):
            if self.meetsRequirements(rank, metrics):
                return rank
        return Rank.STARTER

    def meetsRequirements(self, rank: Rank, metrics: RankMetrics) -> bool:
        requirement = self.plan.requirement(rank)
        return (
            metrics.directReferrals >= requirement.directReferrals
            and metrics.personalVolume >= requirement.personalVolume
            and metrics.teamVolume >= requirement.teamVolume
        )

    def evaluate(
            self,
            participantId: int,
            state: RankState,
            metrics: RankMetrics,
            period: Period,
            promotionBlocked: bool = False
    ) -> RankDecision:
        """
        Decide the period's rank transition without touching the database.

        Args:
            participantId: Participant ID
            state: Rank state as of the start of the run
            metrics: Period qualification metrics
            period: Period being evaluated
            promotionBlocked: True while the participant is in cooling-off
        """
        qualified = self.qualifiedRank(metrics)
        current = state.rank

        used = state.protectionPeriodsUsed or 0
        if state.protectionWindowYear != period.year:
            used = 0

        action = UNCHANGED
        newRank = current
        newUsed = used

        if qualified > current:
            if promotionBlocked:
                action = BLOCKED
            else:
                action = PROMOTED
                newRank = qualified
                newUsed = 0
        elif qualified < current:
            if used < self.plan.protectionLimit(current):
                action = PROTECTED
                newUsed = used + 1
            else:
                action = DEMOTED
                newRank = qualified
                newUsed = 0

        return RankDecision(
            participantID=participantId,
            action=action,
            previousRank=current,
            newRank=newRank,
            qualifiedRank=qualified,
            previousProtectionUsed=state.protectionPeriodsUsed or 0,
            newProtectionUsed=newUsed,
            previousProtectionYear=state.protectionWindowYear,
            protectionWindowYear=period.year,
            metrics=metrics,
        )

    # ═══════════════════════════════════════════════════════════════════
    # PERSISTENCE
    # ═══════════════════════════════════════════════════════════════════

    @staticmethod
    def loadRankState(participant: Participant) -> RankState:
        return RankState(
            rank=parse_rank(participant.rank),
            protectionPeriodsUsed=participant.protectionPeriodsUsed or 0,
            protectionWindowYear=participant.protectionWindowYear,
        )

    async def applyDecision(
            self,
            participant: Participant,
            decision: RankDecision,
            period: Period,
            runId: Optional[int] = None
    ) -> Optional[RankHistory]:
        """
        Write a state-changing decision to the participant and rank history.
        Caller owns the transaction.

        Returns:
            RankHistory row, or None if the decision changes nothing
        """
        if not decision.changesState:
            if decision.action == BLOCKED:
                logger.info(
                    f"Participant {participant.participantID} qualified for "
                    f"{decision.qualifiedRank.value} but promotion is blocked during cooling-off"
                )
            return None

        now = timeMachine.now
        participant.rank = decision.newRank.value
        participant.protectionPeriodsUsed = decision.newProtectionUsed
        participant.protectionWindowYear = decision.protectionWindowYear

        notes = {}
        if decision.action == PROTECTED:
            participant.lastProtectionPeriod = period.key
            notes["protectionsRemaining"] = (
                self.plan.protectionLimit(decision.newRank) - decision.newProtectionUsed
            )
        else:
            participant.rankChangedAt = now

        if decision.action == DEMOTED:
            notes["gracePeriodEnd"] = (now + timedelta(days=DEMOTION_GRACE_DAYS)).isoformat()

        history = RankHistory(
            participantID=participant.participantID,
            runID=runId,
            periodKey=period.key,
            action=decision.action,
            previousRank=decision.previousRank.value,
            newRank=decision.newRank.value,
            qualifiedRank=decision.qualifiedRank.value,
            previousProtectionUsed=decision.previousProtectionUsed,
            newProtectionUsed=decision.newProtectionUsed,
            previousProtectionYear=decision.previousProtectionYear,
            personalVolume=decision.metrics.personalVolume,
            teamVolume=decision.metrics.teamVolume,
            directReferrals=decision.metrics.directReferrals,
            notes=json.dumps(notes) if notes else None,
        )
        self.session.add(history)

        logger.info(
            f"Participant {participant.participantID} {decision.action}: "
            f"{decision.previousRank.value} → {decision.newRank.value} "
            f"(qualified {decision.qualifiedRank.value}, "
            f"protections used {decision.newProtectionUsed})"
        )

        return history

    async def revertRun(self, runId: int) -> int:
        """
        Restore rank state recorded before a run, newest change first.
        Used when a period is forcibly re-run. Caller owns the transaction.

        Returns:
            Number of history rows reverted
        """
        rows: List[RankHistory] = self.session.query(RankHistory).filter_by(
            runID=runId
        ).order_by(RankHistory.historyID.desc()).all()

        for row in rows:
            participant = self.session.query(Participant).filter_by(
                participantID=row.participantID
            ).first()
            if not participant:
                logger.warning(f"Rank history {row.historyID} references missing participant")
                continue

            participant.rank = row.previousRank
            participant.protectionPeriodsUsed = row.previousProtectionUsed
            participant.protectionWindowYear = row.previousProtectionYear

        if rows:
            logger.info(f"Reverted {len(rows)} rank changes from run {runId}")

        return len(rows)

    def protectionsRemaining(self, participant: Participant, period: Period) -> int:
        """Protections still available in the period's window."""
        state = self.loadRankState(participant)
        used = state.protectionPeriodsUsed if state.protectionWindowYear == period.year else 0
        return max(0, self.plan.protectionLimit(state.rank) - used)

    def nextRank(self, rank: Rank) -> Optional[Rank]:
        if rank.level + 1 >= len(RANK_ORDER):
            return None
        return RANK_ORDER[rank.level + 1]
