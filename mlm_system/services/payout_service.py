# mlm_system/services/payout_service.py
"""
Payout batching.

Released pending entries (releaseAt <= now) are grouped per recipient; a
Payout is created once the group reaches PAYOUT_MIN_THRESHOLD and the
recipient is out of cooling-off. Entries in the batch move pending → paid.
Money movement is the host's job.
"""
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional
from sqlalchemy.orm import Session
import logging

from config import Config
from models.commission import CommissionEntry
from models.participant import Participant
from models.payout import Payout
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.services.compliance_service import ComplianceService
from mlm_system.utils.money import ZERO, to_decimal, money_str
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class PayoutService:
    """Service for turning released commissions into payouts."""

    def __init__(self, session: Session, minThreshold: Optional[Decimal] = None):
        self.session = session
        self.minThreshold = minThreshold if minThreshold is not None else to_decimal(
            Config.get(Config.PAYOUT_MIN_THRESHOLD, "50"), "PAYOUT_MIN_THRESHOLD"
        )
        self.compliance = ComplianceService(session)

    async def processPayouts(self) -> Dict:
        """
        Create payouts for all eligible recipients. Commits on success.

        Returns:
            Stats dict: payouts, entriesPaid, totalPaid, belowThreshold, coolingOff, inactive
        """
        now = timeMachine.now
        stats = {
            "payouts": 0,
            "entriesPaid": 0,
            "totalPaid": ZERO,
            "belowThreshold": 0,
            "coolingOff": 0,
            "inactive": 0,
        }

        released: List[CommissionEntry] = self.session.query(CommissionEntry).filter(
            CommissionEntry.status == "pending",
            CommissionEntry.releaseAt <= now
        ).order_by(CommissionEntry.recipientID, CommissionEntry.entryID).all()

        byRecipient: Dict[int, List[CommissionEntry]] = defaultdict(list)
        for entry in released:
            byRecipient[entry.recipientID].append(entry)

        created: List[Payout] = []

        try:
            for recipientId, entries in byRecipient.items():
                participant = self.session.query(Participant).filter_by(
                    participantID=recipientId
                ).first()

                if not participant or not participant.isActive:
                    stats["inactive"] += 1
                    continue

                if self.compliance.isInCoolingOff(participant, now):
                    stats["coolingOff"] += 1
                    logger.debug(f"Participant {recipientId} in cooling-off, payout deferred")
                    continue

                total = sum((to_decimal(e.amount) for e in entries), ZERO)
                if total < self.minThreshold:
                    stats["belowThreshold"] += 1
                    logger.debug(
                        f"Participant {recipientId} released total {total} "
                        f"below threshold {self.minThreshold}"
                    )
                    continue

                payout = Payout(
                    participantID=recipientId,
                    amount=total,
                    entryCount=len(entries),
                    status="pending",
                )
                self.session.add(payout)
                self.session.flush()

                for entry in entries:
                    entry.status = "paid"
                    entry.paidAt = now
                    entry.payoutID = payout.payoutID

                created.append(payout)
                stats["payouts"] += 1
                stats["entriesPaid"] += len(entries)
                stats["totalPaid"] += total

            self.session.commit()

        except Exception as e:
            logger.error(f"Error processing payouts: {e}", exc_info=True)
            self.session.rollback()
            raise

        for payout in created:
            await eventBus.emit(MLMEvents.PAYOUT_CREATED, {
                "payoutId": payout.payoutID,
                "participantId": payout.participantID,
                "amount": money_str(to_decimal(payout.amount)),
                "entryCount": payout.entryCount,
            })

        logger.info(
            f"Payouts processed: {stats['payouts']} payouts, "
            f"{stats['entriesPaid']} entries, total {stats['totalPaid']}"
        )

        return stats
