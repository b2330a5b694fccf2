# mlm_system/services/commission_service.py
"""
Commission calculation service - direct, override, matching, leadership and rank bonus.

Calculations are pure functions of a sale event, the genealogy snapshot and
the compensation plan; nothing is persisted here. Crediting happens only
inside a commission run (see CommissionRunService).
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Dict, Optional
from sqlalchemy.orm import Session
import logging

from models.sale import Sale
from mlm_system.config.ranks import CompensationPlan, Rank, get_compensation_plan, parse_rank
from mlm_system.errors import ValidationError, DataIntegrityError
from mlm_system.services.volume_service import SaleEvent, VolumeService
from mlm_system.utils.genealogy import GenealogySnapshot
from mlm_system.utils.money import ZERO, round_down, money_str, to_decimal

logger = logging.getLogger(__name__)

COMMISSION_TYPES = ("direct", "override", "leadership", "matching", "bonus")


@dataclass(frozen=True)
class CommissionLine:
    """Calculated commission, before the earnings cap is applied."""
    recipientID: int
    commissionType: str
    level: int
    rate: Optional[Decimal]
    baseAmount: Decimal
    amount: Decimal
    sourceParticipantID: Optional[int] = None
    saleID: Optional[int] = None

    def toDict(self) -> Dict:
        return {
            "recipientID": self.recipientID,
            "type": self.commissionType,
            "level": self.level,
            "rate": str(self.rate) if self.rate is not None else None,
            "baseAmount": money_str(self.baseAmount),
            "amount": money_str(self.amount),
            "sourceParticipantID": self.sourceParticipantID,
            "saleID": self.saleID,
        }


class CommissionService:
    """Service for calculating commissions."""

    def __init__(self, session: Session, plan: Optional[CompensationPlan] = None):
        self.session = session
        self.plan = plan or get_compensation_plan()

    # ═══════════════════════════════════════════════════════════════════
    # SALE EVENT COMMISSIONS
    # ═══════════════════════════════════════════════════════════════════

    def calculateEventCommissions(
            self,
            event: SaleEvent,
            genealogy: GenealogySnapshot,
            errors: Optional[List[DataIntegrityError]] = None
    ) -> List[CommissionLine]:
        """
        Direct, override and matching lines for one qualifying sale.

        - direct: sale × directRate to the immediate sponsor, level 0
        - override: the ancestor at position k (sponsor = 1) gets
          sale × overrideRate[k]; an ancestor that is inactive or below
          overrideMinRank[k] is skipped and that level is forfeited
        - matching: direct amount × matchingRate[rank of the sponsor's sponsor],
          paid to the sponsor's sponsor

        Ranks are read from the snapshot, never from live rows. An ancestor
        whose stored rank cannot be parsed forfeits only its own override and
        matching lines; the error is appended to `errors` when given.
        """
        if event.participantID not in genealogy:
            raise DataIntegrityError(
                f"Sale {event.saleID} references unknown participant {event.participantID}",
                participantId=event.participantID
            )
        if event.amount < ZERO:
            raise ValidationError(f"Sale {event.saleID} has negative amount {event.amount}")

        lines: List[CommissionLine] = []
        chain = genealogy.get_upline_chain(event.participantID, max(self.plan.maxOverrideLevel, 2))
        if not chain:
            logger.debug(f"Sale {event.saleID}: participant {event.participantID} has no upline")
            return lines

        quantum = self.plan.currencyQuantum

        # 1. Direct
        sponsorId = chain[0]
        sponsor = genealogy.get_node(sponsorId)
        directAmount = round_down(event.amount * self.plan.directRate, quantum)
        if sponsor.isActive:
            lines.append(CommissionLine(
                recipientID=sponsorId,
                commissionType="direct",
                level=0,
                rate=self.plan.directRate,
                baseAmount=event.amount,
                amount=directAmount,
                sourceParticipantID=event.participantID,
                saleID=event.saleID,
            ))
        else:
            logger.debug(f"Sale {event.saleID}: sponsor {sponsorId} inactive, direct forfeited")

        # 2. Override levels by position relative to the sale
        for level, ancestorId in enumerate(chain[:self.plan.maxOverrideLevel], start=1):
            ancestor = genealogy.get_node(ancestorId)
            minRank = self.plan.overrideMinRank(level)

            if not ancestor.isActive:
                logger.debug(f"Sale {event.saleID}: L{level} ancestor {ancestorId} inactive, skipped")
                continue

            ancestorRank = self._rankOrNone(event, ancestor.participantID, ancestor.rank, errors)
            if ancestorRank is None:
                continue
            if ancestorRank < minRank:
                logger.debug(
                    f"Sale {event.saleID}: L{level} ancestor {ancestorId} rank "
                    f"{ancestorRank.value} below {minRank.value}, level forfeited"
                )
                continue

            rate = self.plan.overrideRate(level)
            lines.append(CommissionLine(
                recipientID=ancestorId,
                commissionType="override",
                level=level,
                rate=rate,
                baseAmount=event.amount,
                amount=round_down(event.amount * rate, quantum),
                sourceParticipantID=event.participantID,
                saleID=event.saleID,
            ))

        # 3. Matching on the direct commission, one hop above the sponsor
        if len(chain) > 1 and sponsor.isActive:
            matcher = genealogy.get_node(chain[1])
            if matcher.isActive:
                matcherRank = self._rankOrNone(event, matcher.participantID, matcher.rank, errors)
                rate = self.plan.matchingRate(matcherRank) if matcherRank is not None else ZERO
                if rate > ZERO:
                    lines.append(CommissionLine(
                        recipientID=matcher.participantID,
                        commissionType="matching",
                        level=1,
                        rate=rate,
                        baseAmount=directAmount,
                        amount=round_down(directAmount * rate, quantum),
                        sourceParticipantID=sponsorId,
                        saleID=event.saleID,
                    ))

        return lines

    # ═══════════════════════════════════════════════════════════════════
    # PERIOD BONUSES
    # ═══════════════════════════════════════════════════════════════════

    def calculateLeadership(
            self,
            participantId: int,
            rank: Rank,
            teamVolume: Decimal
    ) -> Optional[CommissionLine]:
        """teamVolume × leadershipRate[rank]; None for ranks without a leadership tier."""
        rate = self.plan.leadershipRate(rank)
        if rate <= ZERO or teamVolume <= ZERO:
            return None

        return CommissionLine(
            recipientID=participantId,
            commissionType="leadership",
            level=0,
            rate=rate,
            baseAmount=teamVolume,
            amount=round_down(teamVolume * rate, self.plan.currencyQuantum),
            sourceParticipantID=participantId,
        )

    def calculateRankBonus(self, participantId: int, rank: Rank) -> Optional[CommissionLine]:
        """Flat monthly bonus for holding a rank."""
        bonus = self.plan.rankBonus(rank)
        if bonus <= ZERO:
            return None

        return CommissionLine(
            recipientID=participantId,
            commissionType="bonus",
            level=0,
            rate=None,
            baseAmount=bonus,
            amount=round_down(bonus, self.plan.currencyQuantum),
            sourceParticipantID=participantId,
        )

    # ═══════════════════════════════════════════════════════════════════
    # PREVIEW
    # ═══════════════════════════════════════════════════════════════════

    async def previewSale(self, saleId: int, genealogy: Optional[GenealogySnapshot] = None) -> Dict:
        """
        Show what a sale would pay out without persisting anything.

        Raises:
            ValidationError: If the sale does not exist
        """
        sale = self.session.query(Sale).filter_by(saleID=saleId).first()
        if not sale:
            raise ValidationError(f"Sale {saleId} not found")

        if genealogy is None:
            genealogy = GenealogySnapshot.from_session(self.session, max_depth=self.plan.maxOverrideLevel)

        lines = self.calculateEventCommissions(VolumeService.toSaleEvent(sale), genealogy)
        total = sum((line.amount for line in lines), ZERO)

        logger.info(f"Preview for sale {saleId}: {len(lines)} commissions, total {total}")

        return {
            "saleID": saleId,
            "amount": money_str(to_decimal(sale.amount)),
            "commissions": [line.toDict() for line in lines],
            "total": money_str(total),
        }

    @staticmethod
    def _rankOrNone(
            event: SaleEvent,
            participantId: int,
            value: str,
            errors: Optional[List[DataIntegrityError]]
    ) -> Optional[Rank]:
        """Parsed rank, or None (logged, collected) when the stored value is corrupt."""
        try:
            return parse_rank(value)
        except DataIntegrityError as e:
            logger.error(f"Sale {event.saleID}: ancestor {participantId} forfeits its lines: {e}")
            if errors is not None:
                errors.append(DataIntegrityError(str(e), participantId=participantId))
            return None
