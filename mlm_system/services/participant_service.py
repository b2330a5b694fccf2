# mlm_system/services/participant_service.py
"""
Participant registration.

The sponsor is resolved from a referral code at registration time and never
changes afterwards. Recruiting is always allowed, including for sponsors
still in their own cooling-off period.
"""
import secrets
import string
from datetime import timedelta
from typing import Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from config import Config
from models.membership_plan import MembershipPlan
from models.participant import Participant
from mlm_system.errors import ValidationError
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

REFERRAL_CODE_PREFIX = "TRV"
REFERRAL_CODE_LENGTH = 6
MAX_CODE_ATTEMPTS = 20


def normalize_referral_code(code: str) -> str:
    return (code or "").strip().upper()


def generate_referral_code() -> str:
    """
    Generate referral code like TRV4F7Q2K.

    Returns:
        Prefix plus random uppercase alphanumeric suffix
    """
    alphabet = string.ascii_uppercase + string.digits
    return REFERRAL_CODE_PREFIX + ''.join(secrets.choice(alphabet) for _ in range(REFERRAL_CODE_LENGTH))


class ParticipantService:
    """Service for registering participants into the sponsorship tree."""

    def __init__(self, session: Session):
        self.session = session

    def findByReferralCode(self, code: str) -> Optional[Participant]:
        """Case-insensitive referral code lookup."""
        normalized = normalize_referral_code(code)
        if not normalized:
            return None
        return self.session.query(Participant).filter(
            func.upper(Participant.referralCode) == normalized
        ).first()

    def validateReferralCode(self, code: str) -> bool:
        sponsor = self.findByReferralCode(code)
        return sponsor is not None and sponsor.status == "active"

    def generateUniqueReferralCode(self) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_referral_code()
            if self.findByReferralCode(code) is None:
                return code
        raise ValidationError("Could not generate a unique referral code")

    async def registerParticipant(
            self,
            sponsorCode: Optional[str] = None,
            email: Optional[str] = None,
            firstname: Optional[str] = None,
            planId: Optional[int] = None
    ) -> Participant:
        """
        Create a participant under the sponsor owning sponsorCode.
        Without a sponsor code the participant becomes a tree root. Caller commits.

        Raises:
            ValidationError: Unknown or cancelled sponsor code, unknown plan
        """
        sponsor = None
        if sponsorCode:
            sponsor = self.findByReferralCode(sponsorCode)
            if sponsor is None:
                raise ValidationError(f"Invalid sponsor referral code: {sponsorCode!r}")
            if sponsor.status != "active":
                raise ValidationError(f"Sponsor {sponsor.participantID} is not active")

        if planId is not None:
            plan = self.session.query(MembershipPlan).filter_by(planID=planId).first()
            if not plan or not plan.isActive:
                raise ValidationError(f"Membership plan {planId} not available")

        now = timeMachine.now
        coolingOffDays = int(Config.get(Config.COOLING_OFF_DAYS, 14))

        participant = Participant(
            sponsorID=sponsor.participantID if sponsor else None,
            referralCode=self.generateUniqueReferralCode(),
            email=email,
            firstname=firstname,
            planID=planId,
            joinedAt=now,
            coolingOffEnd=now + timedelta(days=coolingOffDays),
        )
        self.session.add(participant)
        self.session.flush()

        logger.info(
            f"Registered participant {participant.participantID} "
            f"({participant.referralCode}) under sponsor "
            f"{sponsor.participantID if sponsor else 'ROOT'}"
        )

        await eventBus.emit(MLMEvents.PARTICIPANT_REGISTERED, {
            "participantId": participant.participantID,
            "sponsorId": participant.sponsorID,
            "referralCode": participant.referralCode,
        })

        return participant
