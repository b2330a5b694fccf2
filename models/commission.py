"""
CommissionEntry model - one credited (or clamped) commission line.
Immutable after insert except for a forward status transition,
see models/listeners/commission_listeners.py.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Boolean, Text, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin


class CommissionEntry(Base, AuditMixin):
    __tablename__ = 'commission_entries'

    entryID = Column(Integer, primary_key=True, autoincrement=True)

    # Relations
    recipientID = Column(Integer, ForeignKey('participants.participantID'), nullable=False, index=True)
    sourceParticipantID = Column(Integer, ForeignKey('participants.participantID'), nullable=True)
    saleID = Column(Integer, ForeignKey('sales.saleID'), nullable=True)
    runID = Column(Integer, ForeignKey('commission_runs.runID'), nullable=True, index=True)
    payoutID = Column(Integer, ForeignKey('payouts.payoutID'), nullable=True)
    periodKey = Column(String(16), nullable=True, index=True)

    # Commission details
    commissionType = Column(String(20), nullable=False)  # direct, override, leadership, matching, bonus
    level = Column(Integer, nullable=False, default=0)
    rate = Column(DECIMAL(8, 4), nullable=True)
    baseAmount = Column(DECIMAL(14, 2), nullable=True)
    calculatedAmount = Column(DECIMAL(14, 2), nullable=False)  # before cap clamp
    amount = Column(DECIMAL(14, 2), nullable=False)  # credited
    capClamped = Column(Boolean, nullable=False, default=False)

    # Status
    status = Column(String(20), nullable=False, default="pending")  # pending, paid, cancelled
    releaseAt = Column(DateTime, nullable=True)
    paidAt = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)

    # Relationships
    recipient = relationship('Participant', foreign_keys=[recipientID], backref='commissions_received')
    source = relationship('Participant', foreign_keys=[sourceParticipantID])
    run = relationship('CommissionRun', backref='entries')

    def __repr__(self):
        return (
            f"<CommissionEntry(entryID={self.entryID}, recipient={self.recipientID}, "
            f"type={self.commissionType}, amount={self.amount}, status={self.status})>"
        )
