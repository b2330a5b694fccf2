"""
Payout model - a batch of released commission entries owed to one participant.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, ForeignKey
from models.base import Base, AuditMixin


class Payout(Base, AuditMixin):
    __tablename__ = 'payouts'

    payoutID = Column(Integer, primary_key=True, autoincrement=True)
    participantID = Column(Integer, ForeignKey('participants.participantID'), nullable=False, index=True)

    amount = Column(DECIMAL(14, 2), nullable=False)
    entryCount = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending")  # pending (awaiting money movement)

    def __repr__(self):
        return f"<Payout(payoutID={self.payoutID}, participant={self.participantID}, amount={self.amount})>"
