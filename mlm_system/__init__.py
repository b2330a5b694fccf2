# mlm_system/__init__.py
"""
MLM System - multi-level compensation and rank engine.
"""

# Services
from mlm_system.services.commission_service import CommissionService
from mlm_system.services.commission_run_service import CommissionRunService
from mlm_system.services.compliance_service import ComplianceService
from mlm_system.services.earnings_cap_service import EarningsCapService
from mlm_system.services.participant_service import ParticipantService
from mlm_system.services.payout_service import PayoutService
from mlm_system.services.rank_service import RankService
from mlm_system.services.report_service import ReportService
from mlm_system.services.volume_service import VolumeService

# Configuration
from mlm_system.config.ranks import Rank, CompensationPlan, get_compensation_plan

# Errors
from mlm_system.errors import (
    MLMError,
    ValidationError,
    DataIntegrityError,
    IdempotencyConflict,
    RunCancelled,
)

# Utilities
from mlm_system.utils.genealogy import GenealogySnapshot
from mlm_system.utils.time_machine import timeMachine

# Events
from mlm_system.events.event_bus import eventBus, MLMEvents

__all__ = [
    # Services
    'CommissionService',
    'CommissionRunService',
    'ComplianceService',
    'EarningsCapService',
    'ParticipantService',
    'PayoutService',
    'RankService',
    'ReportService',
    'VolumeService',

    # Config
    'Rank',
    'CompensationPlan',
    'get_compensation_plan',

    # Errors
    'MLMError',
    'ValidationError',
    'DataIntegrityError',
    'IdempotencyConflict',
    'RunCancelled',

    # Utils
    'GenealogySnapshot',
    'timeMachine',

    # Events
    'eventBus',
    'MLMEvents',
]
