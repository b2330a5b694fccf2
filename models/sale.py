"""
Sale model - qualifying events feeding volumes and commissions.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from models.base import Base, AuditMixin, _get_current_time


class Sale(Base, AuditMixin):
    __tablename__ = 'sales'

    saleID = Column(Integer, primary_key=True, autoincrement=True)
    participantID = Column(Integer, ForeignKey('participants.participantID'), nullable=False, index=True)

    amount = Column(DECIMAL(14, 2), nullable=False)
    productType = Column(String(32), nullable=False, default="membership_fee")
    occurredAt = Column(DateTime, nullable=False, default=_get_current_time, index=True)

    isQualifying = Column(Boolean, nullable=False, default=True)
    status = Column(String(20), nullable=False, default="completed")  # completed, refunded

    participant = relationship('Participant', backref='sales')

    def __repr__(self):
        return f"<Sale(saleID={self.saleID}, participant={self.participantID}, amount={self.amount})>"
