# mlm_system/services/compliance_service.py
"""
Cooling-off and refund policy.

Cooling-off runs for COOLING_OFF_DAYS after registration. While active it
restricts commission earning, payout requests and rank advancement, but
never recruiting.

Refund decisions are terminal: one RefundRequest row per request,
approved or rejected, never updated afterwards.
"""
import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional, Any
from sqlalchemy.orm import Session
import logging

from config import Config
from models.participant import Participant
from models.refund import RefundRequest
from models.commission import CommissionEntry
from mlm_system.config.ranks import CompensationPlan, get_compensation_plan
from mlm_system.errors import ValidationError
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.services.earnings_cap_service import EarningsCapService
from mlm_system.utils.money import ZERO, to_decimal, round_down, money_str
from mlm_system.utils.time_machine import timeMachine, to_naive_utc

logger = logging.getLogger(__name__)

POLICY_VERSION = "1.0"

# Reasons honoured only inside the product's refund window
WINDOW_REASONS = ("dissatisfaction", "technical_issues", "cooling_off_cancellation")
# Reasons that bypass the window and refund 100% of the request
BYPASS_REASONS = ("billing_error", "duplicate_charge")
VALID_REASONS = WINDOW_REASONS + BYPASS_REASONS

COOLING_OFF_RESTRICTIONS = ("commission_earning", "payout_requests", "rank_advancement")

APPROVED = "APPROVED"
TIME_EXPIRED = "TIME_EXPIRED"
INVALID_REASON = "INVALID_REASON"


class ComplianceService:
    """Service for cooling-off status, refunds and cancellations."""

    def __init__(self, session: Session, plan: Optional[CompensationPlan] = None):
        self.session = session
        self.plan = plan or get_compensation_plan()

    # ═══════════════════════════════════════════════════════════════════
    # COOLING-OFF
    # ═══════════════════════════════════════════════════════════════════

    @staticmethod
    def coolingOffEnd(participant: Participant) -> datetime:
        if participant.coolingOffEnd is not None:
            return participant.coolingOffEnd
        days = int(Config.get(Config.COOLING_OFF_DAYS, 14))
        return participant.joinedAt + timedelta(days=days)

    def coolingOffStatus(self, participant: Participant, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Cooling-off state of a participant.

        Returns:
            {endDate, daysRemaining, isActive, restrictions}
            daysRemaining counts started days (joined 10 days ago of 14 → 4).
        """
        now = now or timeMachine.now
        endDate = self.coolingOffEnd(participant)
        isActive = now < endDate

        daysRemaining = 0
        if isActive:
            daysRemaining = math.ceil((endDate - now).total_seconds() / 86400)

        return {
            "endDate": endDate,
            "daysRemaining": daysRemaining,
            "isActive": isActive,
            "restrictions": list(COOLING_OFF_RESTRICTIONS) if isActive else [],
        }

    def isInCoolingOff(self, participant: Participant, now: Optional[datetime] = None) -> bool:
        now = now or timeMachine.now
        return now < self.coolingOffEnd(participant)

    # ═══════════════════════════════════════════════════════════════════
    # REFUNDS
    # ═══════════════════════════════════════════════════════════════════

    def evaluateRefund(
            self,
            reason: str,
            amount: Decimal,
            purchaseDate: datetime,
            productType: str,
            now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Pure refund decision.

        Raises:
            ValidationError: Unknown product type or non-positive amount
        """
        if amount <= ZERO:
            raise ValidationError(f"Refund amount must be positive, got {amount}")

        policy = self.plan.refundPolicies.get(productType)
        if policy is None:
            raise ValidationError(f"Unknown product type: {productType!r}")

        now = now or timeMachine.now
        purchaseAgeDays = Decimal(str((now - to_naive_utc(purchaseDate)).total_seconds())) / Decimal("86400")
        timeEligible = purchaseAgeDays <= policy.windowDays

        quantum = self.plan.currencyQuantum
        decision = {
            "eligible": False,
            "reasonCode": None,
            "approvedAmount": ZERO,
            "processingFee": ZERO,
            "netRefund": ZERO,
            "purchaseAgeDays": purchaseAgeDays,
        }

        if reason not in VALID_REASONS:
            decision["reasonCode"] = INVALID_REASON
            return decision

        if reason in BYPASS_REASONS:
            approved = amount
        elif timeEligible:
            approved = round_down(amount * policy.maxRefundFraction, quantum)
        else:
            decision["reasonCode"] = TIME_EXPIRED
            return decision

        decision["eligible"] = True
        decision["reasonCode"] = APPROVED
        decision["approvedAmount"] = approved
        decision["processingFee"] = policy.processingFee
        decision["netRefund"] = max(ZERO, approved - policy.processingFee)
        return decision

    async def requestRefund(
            self,
            participantId: int,
            reason: str,
            amount: Any,
            purchaseDate: datetime,
            productType: str
    ) -> RefundRequest:
        """
        Decide and record a refund request.

        Rejections are normal outcomes (status "rejected"), not exceptions.

        Raises:
            ValidationError: Unknown participant / product type, non-positive amount
        """
        amount = to_decimal(amount, "refund amount")

        participant = self.session.query(Participant).filter_by(participantID=participantId).first()
        if not participant:
            raise ValidationError(f"Participant {participantId} not found")

        decision = self.evaluateRefund(reason, amount, purchaseDate, productType)

        refund = RefundRequest(
            participantID=participantId,
            reason=reason,
            amountRequested=amount,
            purchaseDate=to_naive_utc(purchaseDate),
            productType=productType,
            eligible=decision["eligible"],
            reasonCode=decision["reasonCode"],
            approvedAmount=decision["approvedAmount"],
            processingFee=decision["processingFee"],
            netRefund=decision["netRefund"],
            status="approved" if decision["eligible"] else "rejected",
            policyVersion=POLICY_VERSION,
        )
        self.session.add(refund)
        self.session.flush()

        logger.info(
            f"Refund {refund.refundID} for participant {participantId}: "
            f"{refund.status} ({refund.reasonCode}), requested={amount}, "
            f"approved={decision['approvedAmount']}, net={decision['netRefund']}"
        )

        await eventBus.emit(MLMEvents.REFUND_PROCESSED, {
            "refundId": refund.refundID,
            "participantId": participantId,
            "status": refund.status,
            "reasonCode": refund.reasonCode,
            "netRefund": money_str(decision["netRefund"]),
        })

        return refund

    async def processCoolingOffCancellation(self, participantId: int, reason: str = None) -> Dict[str, Any]:
        """
        Cancel membership inside the cooling-off window.

        Deactivates the participant, cancels their pending commission entries
        (taking them back out of plan earnings) and files a membership_fee refund for the plan price. Caller commits.

        Raises:
            ValidationError: Unknown participant or cooling-off already over
        """
        participant = self.session.query(Participant).filter_by(participantID=participantId).first()
        if not participant:
            raise ValidationError(f"Participant {participantId} not found")

        status = self.coolingOffStatus(participant)
        if not status["isActive"]:
            raise ValidationError(
                f"Cooling-off period for participant {participantId} ended {status['endDate'].isoformat()}"
            )

        now = timeMachine.now
        participant.isActive = False
        participant.status = "cancelled"
        participant.cancelledAt = now
        participant.cancellationReason = reason

        pending = self.session.query(CommissionEntry).filter_by(
            recipientID=participantId,
            status="pending"
        ).all()
        released = ZERO
        for entry in pending:
            released += to_decimal(entry.amount)
            entry.status = "cancelled"
            entry.notes = "Cancelled by cooling-off cancellation"
        if released > ZERO:
            EarningsCapService(self.session).releaseEarnings(participant, released)

        refund = None
        price = to_decimal(participant.plan.price) if participant.plan else ZERO
        if price > ZERO:
            refund = await self.requestRefund(
                participantId,
                "cooling_off_cancellation",
                price,
                participant.joinedAt,
                "membership_fee",
            )

        logger.info(
            f"Participant {participantId} cancelled during cooling-off: "
            f"{len(pending)} pending entries cancelled, "
            f"refund={refund.netRefund if refund else 0}"
        )

        await eventBus.emit(MLMEvents.PARTICIPANT_CANCELLED, {
            "participantId": participantId,
            "reason": reason,
            "refundId": refund.refundID if refund else None,
        })

        return {
            "participantID": participantId,
            "cancelledEntries": len(pending),
            "refund": refund,
        }
