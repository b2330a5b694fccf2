"""
Database models for the compensation engine.
Import all models here for easy access.
"""

# Base and mixins
from models.base import Base, AuditMixin

# Core models
from models.membership_plan import MembershipPlan
from models.participant import Participant
from models.sale import Sale
from models.payout import Payout
from models.commission import CommissionEntry
from models.refund import RefundRequest

# MLM models
from models.mlm.commission_run import CommissionRun
from models.mlm.rank_history import RankHistory

# Event listeners
from models.listeners import register_all_listeners

__all__ = [
    # Base
    'Base',
    'AuditMixin',

    # Core
    'MembershipPlan',
    'Participant',
    'Sale',
    'Payout',
    'CommissionEntry',
    'RefundRequest',

    # MLM
    'CommissionRun',
    'RankHistory',

    # Listeners
    'register_all_listeners',
]
