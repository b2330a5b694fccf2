"""
MembershipPlan model - purchasable tiers, each with an earnings ceiling.
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import Column, Integer, String, DECIMAL, Boolean
from models.base import Base


class MembershipPlan(Base):
    __tablename__ = 'membership_plans'

    planID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    tierLevel = Column(Integer, nullable=False, default=1)

    price = Column(DECIMAL(14, 2), nullable=False)
    earningsCap = Column(DECIMAL(14, 2), nullable=True)  # NULL = price * EARNINGS_CAP_MULTIPLIER

    isActive = Column(Boolean, default=True)

    def capAmount(self, multiplier: Decimal) -> Optional[Decimal]:
        """Effective earnings cap for this plan."""
        if self.earningsCap is not None:
            return Decimal(str(self.earningsCap))
        if self.price is None:
            return None
        return Decimal(str(self.price)) * multiplier

    def __repr__(self):
        return f"<MembershipPlan(planID={self.planID}, name={self.name}, price={self.price})>"
