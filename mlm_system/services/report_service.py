# mlm_system/services/report_service.py
"""
Read-only summaries for reporting UIs: rank progress, commissions,
runs and per-leg team volume.
"""
from decimal import Decimal
from typing import Dict, Optional, Any
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from config import Config
from models.commission import CommissionEntry
from models.participant import Participant
from models.mlm.commission_run import CommissionRun
from mlm_system.config.ranks import CompensationPlan, get_compensation_plan
from mlm_system.errors import ValidationError
from mlm_system.services.commission_service import COMMISSION_TYPES
from mlm_system.services.compliance_service import ComplianceService
from mlm_system.services.rank_service import RankService, RankMetrics
from mlm_system.services.volume_service import VolumeService
from mlm_system.utils.genealogy import GenealogySnapshot
from mlm_system.utils.money import ZERO, to_decimal, money_str
from mlm_system.utils.periods import parse_period, period_key_for
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

ENTRY_STATUSES = ("pending", "paid", "cancelled")


class ReportService:
    """Service for reporting summaries. Never writes."""

    def __init__(self, session: Session, plan: Optional[CompensationPlan] = None):
        self.session = session
        self.plan = plan or get_compensation_plan()
        self.rankService = RankService(session, self.plan)
        self.volumeService = VolumeService(session)

    def _getParticipant(self, participantId: int) -> Participant:
        participant = self.session.query(Participant).filter_by(participantID=participantId).first()
        if not participant:
            raise ValidationError(f"Participant {participantId} not found")
        return participant

    def _snapshot(self) -> GenealogySnapshot:
        return GenealogySnapshot.from_session(
            self.session,
            max_depth=int(Config.get(Config.MAX_GENEALOGY_DEPTH, 5)),
            max_team_size=int(Config.get(Config.MAX_TEAM_SIZE, 100000)),
        )

    async def getRankSummary(
            self,
            participantId: int,
            periodKey: Optional[str] = None,
            runType: str = "monthly"
    ) -> Dict[str, Any]:
        """
        Current rank, live qualification metrics for the period, gap to
        the next rank and remaining protections.
        """
        participant = self._getParticipant(participantId)
        period = parse_period(runType, periodKey or period_key_for(runType, timeMachine.now))

        genealogy = self._snapshot()
        metrics = RankMetrics(
            directReferrals=genealogy.count_direct_referrals(participantId, active_only=True),
            personalVolume=await self.volumeService.personalVolume(participantId, period),
            teamVolume=await self.volumeService.teamVolume(participantId, period, genealogy),
        )

        state = self.rankService.loadRankState(participant)
        qualified = self.rankService.qualifiedRank(metrics)
        nextRank = self.rankService.nextRank(state.rank)

        gap = None
        if nextRank is not None:
            requirement = self.plan.requirement(nextRank)
            gap = {
                "rank": nextRank.value,
                "directReferrals": max(0, requirement.directReferrals - metrics.directReferrals),
                "personalVolume": money_str(max(ZERO, requirement.personalVolume - metrics.personalVolume)),
                "teamVolume": money_str(max(ZERO, requirement.teamVolume - metrics.teamVolume)),
            }

        return {
            "participantID": participantId,
            "periodKey": period.key,
            "rank": state.rank.value,
            "rankDisplay": state.rank.displayName,
            "qualifiedRank": qualified.value,
            "metrics": {
                "directReferrals": metrics.directReferrals,
                "personalVolume": money_str(metrics.personalVolume),
                "teamVolume": money_str(metrics.teamVolume),
            },
            "nextRank": gap,
            "protectionLimit": self.plan.protectionLimit(state.rank),
            "protectionsRemaining": self.rankService.protectionsRemaining(participant, period),
            "coolingOff": ComplianceService(self.session, self.plan).coolingOffStatus(participant)["isActive"],
        }

    async def getCommissionSummary(self, participantId: int, periodKey: Optional[str] = None) -> Dict[str, Any]:
        """Commission totals for a recipient by type and by status."""
        self._getParticipant(participantId)

        query = self.session.query(
            CommissionEntry.commissionType,
            CommissionEntry.status,
            func.sum(CommissionEntry.amount),
            func.count(CommissionEntry.entryID),
        ).filter(CommissionEntry.recipientID == participantId)
        if periodKey:
            query = query.filter(CommissionEntry.periodKey == periodKey)

        byType: Dict[str, Decimal] = {t: ZERO for t in COMMISSION_TYPES}
        byStatus: Dict[str, Decimal] = {s: ZERO for s in ENTRY_STATUSES}
        entries = 0

        for commissionType, status, total, count in query.group_by(
                CommissionEntry.commissionType, CommissionEntry.status
        ).all():
            amount = to_decimal(total)
            entries += count
            byStatus[status] = byStatus.get(status, ZERO) + amount
            if status != "cancelled":
                byType[commissionType] = byType.get(commissionType, ZERO) + amount

        return {
            "participantID": participantId,
            "periodKey": periodKey,
            "entries": entries,
            "total": money_str(byStatus["pending"] + byStatus["paid"]),
            "byType": {t: money_str(v) for t, v in byType.items()},
            "byStatus": {s: money_str(v) for s, v in byStatus.items()},
        }

    async def getRunSummary(self, runType: str, periodKey: str) -> Optional[Dict[str, Any]]:
        """Latest run for the period; successful run preferred over failed attempts."""
        period = parse_period(runType, periodKey)
        runs = self.session.query(CommissionRun).filter_by(
            runType=runType, periodKey=period.key
        ).order_by(CommissionRun.runID.desc()).all()
        if not runs:
            return None

        run = next((r for r in runs if r.isSuccessful), runs[0])

        return {
            "runID": run.runID,
            "runType": run.runType,
            "periodKey": run.periodKey,
            "status": run.status,
            "forced": run.forced,
            "startedAt": run.startedAt.isoformat() if run.startedAt else None,
            "finishedAt": run.finishedAt.isoformat() if run.finishedAt else None,
            "participantsTotal": run.participantsTotal,
            "participantsProcessed": run.participantsProcessed,
            "totalCommissions": money_str(to_decimal(run.totalCommissions)),
            "breakdown": run.breakdown or {},
            "errors": run.errors or [],
            "rankChanges": run.rankChanges or {},
            "attempts": len(runs),
        }

    async def getTeamVolumeReport(
            self,
            participantId: int,
            periodKey: str,
            runType: str = "monthly"
    ) -> Dict[str, Any]:
        """Team volume split by direct leg (leg = direct referral plus their downline)."""
        self._getParticipant(participantId)
        period = parse_period(runType, periodKey)

        genealogy = self._snapshot()
        volumes = await self.volumeService.buildVolumeSnapshot(period, genealogy)

        legs = []
        for childId in genealogy.get_children(participantId):
            node = genealogy.get_node(childId)
            legVolume = volumes.personalVolume(childId) + volumes.teamVolume(childId)
            legs.append({
                "participantID": childId,
                "rank": node.rank,
                "isActive": node.isActive,
                "personalVolume": money_str(volumes.personalVolume(childId)),
                "legVolume": money_str(legVolume),
                "teamSize": genealogy.count_downline(childId) + 1,
            })

        legs.sort(key=lambda leg: Decimal(leg["legVolume"]), reverse=True)

        return {
            "participantID": participantId,
            "periodKey": period.key,
            "personalVolume": money_str(volumes.personalVolume(participantId)),
            "teamVolume": money_str(volumes.teamVolume(participantId)),
            "legs": legs,
        }
