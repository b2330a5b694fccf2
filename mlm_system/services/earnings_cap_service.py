# mlm_system/services/earnings_cap_service.py
"""
Earnings cap guard.

Each membership plan has a ceiling on total commissions (explicit earningsCap,
or price × EARNINGS_CAP_MULTIPLIER). Entries crossing it are clamped to the
remaining headroom; clamped-to-zero entries are still recorded.
"""
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import List, Optional, Tuple, Dict
from sqlalchemy.orm import Session
import logging

from config import Config
from models.participant import Participant
from mlm_system.errors import ValidationError
from mlm_system.services.commission_service import CommissionLine
from mlm_system.utils.money import ZERO, to_decimal, money_str

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EarningsState:
    """Cap-related participant fields, copied out of the session."""
    participantID: int
    cap: Optional[Decimal]
    earned: Decimal
    capReached: bool = False
    warningSent: bool = False

    @property
    def headroom(self) -> Optional[Decimal]:
        """Remaining amount before the cap; None when uncapped."""
        if self.cap is None:
            return None
        return max(ZERO, self.cap - self.earned)


@dataclass(frozen=True)
class CappedLine:
    """A commission line after the cap guard."""
    line: CommissionLine
    amount: Decimal

    @property
    def clamped(self) -> bool:
        return self.amount < self.line.amount


class EarningsCapService:
    """Service for membership plan earnings caps."""

    def __init__(self, session: Session, multiplier: Optional[Decimal] = None):
        self.session = session
        self.multiplier = multiplier if multiplier is not None else to_decimal(
            Config.get(Config.EARNINGS_CAP_MULTIPLIER, "1.5"), "EARNINGS_CAP_MULTIPLIER"
        )

    def capFor(self, participant: Participant) -> Optional[Decimal]:
        """Effective cap for the participant's plan, None without a plan."""
        if participant.plan is None:
            return None
        return participant.plan.capAmount(self.multiplier)

    def releaseEarnings(self, participant: Participant, amount: Decimal) -> Decimal:
        """Take cancelled commission back out of plan earnings and re-check the cap flag."""
        earned = max(ZERO, to_decimal(participant.currentPlanEarnings) - amount)
        participant.currentPlanEarnings = earned
        cap = self.capFor(participant)
        participant.earningsCapReached = cap is not None and earned >= cap
        return earned

    def loadEarningsState(self, participant: Participant) -> EarningsState:
        return EarningsState(
            participantID=participant.participantID,
            cap=self.capFor(participant),
            earned=to_decimal(participant.currentPlanEarnings),
            capReached=bool(participant.earningsCapReached),
            warningSent=bool(participant.capWarningSent),
        )

    def applyCap(
            self,
            state: EarningsState,
            lines: List[CommissionLine]
    ) -> Tuple[List[CappedLine], EarningsState, bool]:
        """
        Clamp lines in order against the remaining headroom.

        Returns:
            (capped lines, new state, True if the one-time cap warning fires now)
        """
        capped: List[CappedLine] = []
        earned = state.earned
        capReached = state.capReached

        for line in lines:
            amount = line.amount
            if state.cap is not None:
                headroom = max(ZERO, state.cap - earned)
                if amount >= headroom:
                    if amount > headroom:
                        logger.debug(
                            f"Participant {state.participantID}: {line.commissionType} "
                            f"{line.amount} clamped to {headroom}"
                        )
                    amount = headroom
                    capReached = True

            earned += amount
            capped.append(CappedLine(line=line, amount=amount))

        warningNow = capReached and not state.warningSent
        newState = replace(
            state,
            earned=earned,
            capReached=capReached,
            warningSent=state.warningSent or warningNow,
        )

        if warningNow:
            logger.info(
                f"Participant {state.participantID} reached earnings cap {state.cap} "
                f"(earned {earned})"
            )

        return capped, newState, warningNow

    async def getCapStatus(self, participantId: int) -> Dict:
        """
        Reportable cap status.

        Raises:
            ValidationError: If participant does not exist
        """
        participant = self.session.query(Participant).filter_by(participantID=participantId).first()
        if not participant:
            raise ValidationError(f"Participant {participantId} not found")

        state = self.loadEarningsState(participant)
        progress = None
        if state.cap is not None and state.cap > ZERO:
            progress = money_str(state.earned * Decimal("100") / state.cap)

        return {
            "participantID": participantId,
            "planID": participant.planID,
            "cap": money_str(state.cap) if state.cap is not None else None,
            "earned": money_str(state.earned),
            "headroom": money_str(state.headroom) if state.headroom is not None else None,
            "progressPercent": progress,
            "capReached": state.capReached,
            "warningSent": state.warningSent,
        }
