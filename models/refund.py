"""
RefundRequest model - terminal refund decision, never mutated after insert.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Boolean, ForeignKey
from models.base import Base, AuditMixin


class RefundRequest(Base, AuditMixin):
    __tablename__ = 'refund_requests'

    refundID = Column(Integer, primary_key=True, autoincrement=True)
    participantID = Column(Integer, ForeignKey('participants.participantID'), nullable=False, index=True)

    # Request
    reason = Column(String(40), nullable=False)
    amountRequested = Column(DECIMAL(14, 2), nullable=False)
    purchaseDate = Column(DateTime, nullable=False)
    productType = Column(String(32), nullable=False)

    # Decision
    eligible = Column(Boolean, nullable=False)
    reasonCode = Column(String(20), nullable=False)  # APPROVED, TIME_EXPIRED, INVALID_REASON
    approvedAmount = Column(DECIMAL(14, 2), nullable=False, default=0)
    processingFee = Column(DECIMAL(14, 2), nullable=False, default=0)
    netRefund = Column(DECIMAL(14, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False)  # approved, rejected
    policyVersion = Column(String(10), nullable=False, default="1.0")

    def __repr__(self):
        return f"<RefundRequest(refundID={self.refundID}, participant={self.participantID}, status={self.status})>"
