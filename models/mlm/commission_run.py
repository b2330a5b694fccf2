"""
CommissionRun model - one weekly/monthly batch and its report.

completionMarker ("<runType>:<periodKey>") is set only on successful runs and
is unique, so at most one successful run can exist per period.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, Boolean, JSON, Text
from models.base import Base, _get_current_time


class CommissionRun(Base):
    __tablename__ = 'commission_runs'

    runID = Column(Integer, primary_key=True, autoincrement=True)
    runType = Column(String(10), nullable=False)  # weekly, monthly
    periodKey = Column(String(16), nullable=False, index=True)
    completionMarker = Column(String(32), unique=True, nullable=True)

    # completed, completed_with_errors, failed, superseded
    status = Column(String(24), nullable=False, default="running")
    forced = Column(Boolean, nullable=False, default=False)

    startedAt = Column(DateTime, nullable=False, default=_get_current_time)
    finishedAt = Column(DateTime, nullable=True)

    # Report
    participantsTotal = Column(Integer, nullable=False, default=0)
    participantsProcessed = Column(Integer, nullable=False, default=0)
    totalCommissions = Column(DECIMAL(16, 2), nullable=False, default=0)
    breakdown = Column(JSON, nullable=True)
    # Structure: {"direct": "100.00", "override": "50.00", ...} (decimal strings)
    errors = Column(JSON, nullable=True)
    # Structure: [{"participantID": 17, "error": "Cycle detected ..."}, ...]
    rankChanges = Column(JSON, nullable=True)
    # Structure: {"promoted": 3, "demoted": 1, "protected": 2, "blocked": 0}
    notes = Column(Text, nullable=True)

    @property
    def isSuccessful(self) -> bool:
        return self.status in ("completed", "completed_with_errors")

    def __repr__(self):
        return f"<CommissionRun(runID={self.runID}, {self.runType} {self.periodKey}, status={self.status})>"
