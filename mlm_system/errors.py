# mlm_system/errors.py
"""
Engine error kinds.

ValidationError      - bad caller input, surfaced immediately, never retried
DataIntegrityError   - corrupted data (genealogy cycle, duplicate referral code)
IdempotencyConflict  - run already executed for (runType, periodKey)
RunCancelled         - run stopped at a cooperative checkpoint
"""


class MLMError(Exception):
    """Base class for compensation engine errors."""
    pass


class ValidationError(MLMError):
    """Invalid input (unknown product type, negative amount, bad period key)."""
    pass


class DataIntegrityError(MLMError):
    """Stored data violates an engine invariant."""

    def __init__(self, message: str, participantId: int = None):
        super().__init__(message)
        self.participantId = participantId


class IdempotencyConflict(MLMError):
    """A successful run already exists for the period."""

    def __init__(self, runType: str, periodKey: str, runId: int = None, message: str = None):
        super().__init__(
            message or f"Commission run {runType} {periodKey} already executed (runID={runId})"
        )
        self.runType = runType
        self.periodKey = periodKey
        self.runId = runId


class RunCancelled(MLMError):
    """Participant skipped because the run was cancelled or hit its deadline."""
    pass
