"""
Participant model - a member of the sponsorship tree.
Sponsor is resolved at registration and never changes afterwards.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin, _get_current_time


class Participant(Base, AuditMixin):
    __tablename__ = 'participants'

    # Primary key
    participantID = Column(Integer, primary_key=True, autoincrement=True)

    # Genealogy (NULL sponsor = tree root)
    sponsorID = Column(Integer, ForeignKey('participants.participantID'), nullable=True, index=True)
    referralCode = Column(String(32), unique=True, nullable=False)

    # Identity
    email = Column(String, nullable=True, index=True)
    firstname = Column(String, nullable=True)

    # Rank state (mutated only by RankService during a run)
    rank = Column(String(20), nullable=False, default="starter")
    protectionPeriodsUsed = Column(Integer, nullable=False, default=0)
    protectionWindowYear = Column(Integer, nullable=True)
    lastProtectionPeriod = Column(String(16), nullable=True)
    rankChangedAt = Column(DateTime, nullable=True)

    # Last run's period volumes (reporting snapshot)
    personalVolume = Column(DECIMAL(14, 2), nullable=False, default=0)
    teamVolume = Column(DECIMAL(14, 2), nullable=False, default=0)

    # Status
    isActive = Column(Boolean, nullable=False, default=True)
    status = Column(String(20), nullable=False, default="active")  # active, cancelled
    joinedAt = Column(DateTime, nullable=False, default=_get_current_time)
    coolingOffEnd = Column(DateTime, nullable=True)
    cancelledAt = Column(DateTime, nullable=True)
    cancellationReason = Column(String, nullable=True)

    # Membership plan & earnings cap
    planID = Column(Integer, ForeignKey('membership_plans.planID'), nullable=True)
    currentPlanEarnings = Column(DECIMAL(14, 2), nullable=False, default=0)
    earningsCapReached = Column(Boolean, nullable=False, default=False)
    capWarningSent = Column(Boolean, nullable=False, default=False)

    # Relationships
    sponsor = relationship('Participant', remote_side=[participantID], backref='referrals')
    plan = relationship('MembershipPlan')

    def __repr__(self):
        return f"<Participant(id={self.participantID}, sponsor={self.sponsorID}, rank={self.rank})>"
