"""
RankHistory model - tracks promotions, protections and demotions.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Text, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, _get_current_time


class RankHistory(Base):
    __tablename__ = 'rank_history'

    historyID = Column(Integer, primary_key=True, autoincrement=True)
    createdAt = Column(DateTime, default=_get_current_time)

    # Relations
    participantID = Column(Integer, ForeignKey('participants.participantID'), nullable=False, index=True)
    runID = Column(Integer, ForeignKey('commission_runs.runID'), nullable=True, index=True)
    periodKey = Column(String(16), nullable=True)

    # Transition
    action = Column(String(20), nullable=False)  # promoted, protected, demoted
    previousRank = Column(String(20), nullable=False)
    newRank = Column(String(20), nullable=False)
    qualifiedRank = Column(String(20), nullable=False)
    previousProtectionUsed = Column(Integer, nullable=False, default=0)
    newProtectionUsed = Column(Integer, nullable=False, default=0)
    previousProtectionYear = Column(Integer, nullable=True)

    # Qualification metrics at time of evaluation
    personalVolume = Column(DECIMAL(14, 2), nullable=True)
    teamVolume = Column(DECIMAL(14, 2), nullable=True)
    directReferrals = Column(Integer, nullable=True)

    # Additional context
    notes = Column(Text, nullable=True)  # JSON with additional data

    participant = relationship('Participant', backref='rank_history')

    def __repr__(self):
        return f"<RankHistory(participant={self.participantID}, {self.previousRank}->{self.newRank}, {self.action})>"
