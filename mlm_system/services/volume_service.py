# mlm_system/services/volume_service.py
"""
Volume aggregation over a fixed period window.

Personal volume = own qualifying sales inside [period.start, period.end).
Team volume = personal volume summed over the full descendant subtree
(the participant's own sales excluded).
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional
from datetime import datetime
from sqlalchemy.orm import Session
from sqlalchemy import func, and_
import logging

from models.sale import Sale
from mlm_system.utils.genealogy import GenealogySnapshot
from mlm_system.utils.money import ZERO, to_decimal
from mlm_system.utils.periods import Period

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SaleEvent:
    """Qualifying event as read from the sale feed."""
    saleID: int
    participantID: int
    amount: Decimal
    occurredAt: datetime
    productType: str = "membership_fee"


@dataclass(frozen=True)
class VolumeSnapshot:
    """Period-bounded personal and team volumes for every participant."""
    period: Period
    personal: Dict[int, Decimal] = field(default_factory=dict)
    team: Dict[int, Decimal] = field(default_factory=dict)

    def personalVolume(self, participantId: int) -> Decimal:
        return self.personal.get(participantId, ZERO)

    def teamVolume(self, participantId: int) -> Decimal:
        return self.team.get(participantId, ZERO)


class VolumeService:
    """Service for personal and team volume within a period."""

    def __init__(self, session: Session):
        self.session = session

    # ============================================================
    # PUBLIC API
    # ============================================================

    async def personalVolume(self, participantId: int, period: Period) -> Decimal:
        """
        Sum of the participant's own qualifying sales within the period.

        Args:
            participantId: Participant ID
            period: Period window

        Returns:
            Decimal volume (0 when there are no sales)
        """
        total = self.session.query(func.sum(Sale.amount)).filter(
            and_(
                Sale.participantID == participantId,
                *self._qualifyingFilter(period)
            )
        ).scalar()
        return to_decimal(total)

    async def teamVolume(
            self,
            participantId: int,
            period: Period,
            genealogy: Optional[GenealogySnapshot] = None
    ) -> Decimal:
        """
        Personal volume summed over the full downline for the same period.

        Args:
            participantId: Participant ID
            period: Period window
            genealogy: Existing snapshot (loaded if not given)

        Returns:
            Decimal team volume
        """
        if genealogy is None:
            genealogy = GenealogySnapshot.from_session(self.session)

        descendants = genealogy.get_descendants(participantId)
        if not descendants:
            return ZERO

        personal = self._loadPersonalVolumes(period)
        return sum((personal.get(pid, ZERO) for pid in descendants), ZERO)

    async def buildVolumeSnapshot(
            self,
            period: Period,
            genealogy: GenealogySnapshot
    ) -> VolumeSnapshot:
        """
        Compute personal and team volume for every participant in one pass:
        one grouped sales query plus a bottom-up sum over the genealogy.
        """
        personal = self._loadPersonalVolumes(period)

        unknown = [pid for pid in personal if pid not in genealogy]
        if unknown:
            logger.warning(f"Sales in {period.key} reference unknown participants: {unknown}")

        team = genealogy.sum_over_descendants(personal)

        logger.info(
            f"Volume snapshot for {period.key}: "
            f"{len(personal)} participants with sales, "
            f"total PV={sum(personal.values(), ZERO)}"
        )

        return VolumeSnapshot(period=period, personal=personal, team=team)

    async def getQualifyingSales(self, period: Period) -> List[SaleEvent]:
        """Qualifying sale events inside the period, oldest first."""
        sales = self.session.query(Sale).filter(
            and_(*self._qualifyingFilter(period))
        ).order_by(Sale.occurredAt, Sale.saleID).all()

        return [self.toSaleEvent(sale) for sale in sales]

    @staticmethod
    def toSaleEvent(sale: Sale) -> SaleEvent:
        return SaleEvent(
            saleID=sale.saleID,
            participantID=sale.participantID,
            amount=to_decimal(sale.amount),
            occurredAt=sale.occurredAt,
            productType=sale.productType,
        )

    # ============================================================
    # HELPERS
    # ============================================================

    @staticmethod
    def _qualifyingFilter(period: Period) -> list:
        return [
            Sale.isQualifying == True,
            Sale.status == "completed",
            Sale.occurredAt >= period.start,
            Sale.occurredAt < period.end,
        ]

    def _loadPersonalVolumes(self, period: Period) -> Dict[int, Decimal]:
        rows = self.session.query(
            Sale.participantID,
            func.sum(Sale.amount)
        ).filter(
            and_(*self._qualifyingFilter(period))
        ).group_by(Sale.participantID).all()

        return {participantId: to_decimal(total) for participantId, total in rows}
