# mlm_system/services/commission_run_service.py
"""
Commission run orchestrator.

runPeriod(runType, periodKey) drives one weekly/monthly batch:

1. Idempotency guard on the (runType, periodKey) completion marker.
2. Immutable inputs: genealogy snapshot, period volume snapshot, sale
   events turned into commission lines and bucketed per recipient. A sale
   line (sale, recipient, type) already credited by any successful run is
   dropped, so weekly and monthly windows over the same sale pay it once.
3. Per-participant computation on a bounded thread pool. Workers touch no
   database state. Every run applies the cap guard to its lines; only
   monthly runs add leadership and rank bonus and evaluate ranks.
4. Single writer: each participant's entries and state changes commit in
   their own SAVEPOINT, so a participant is credited fully or not at all.
5. Failures are isolated per participant. If the failure share exceeds
   RUN_FAILURE_THRESHOLD everything is rolled back and the run is
   recorded as failed without a completion marker.
"""
import asyncio
import threading
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple, Any
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
import logging

from config import Config
from models.commission import CommissionEntry
from models.participant import Participant
from models.mlm.commission_run import CommissionRun
from models.sale import Sale
from mlm_system.config.ranks import CompensationPlan, get_compensation_plan, parse_rank
from mlm_system.errors import DataIntegrityError, IdempotencyConflict, RunCancelled, ValidationError
from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.services.commission_service import CommissionService, CommissionLine, COMMISSION_TYPES
from mlm_system.services.compliance_service import ComplianceService
from mlm_system.services.earnings_cap_service import EarningsCapService, EarningsState, CappedLine
from mlm_system.services.rank_service import (
    RankService,
    RankMetrics,
    RankState,
    RankDecision,
    PROMOTED,
    PROTECTED,
    DEMOTED,
    BLOCKED,
)
from mlm_system.services.volume_service import VolumeService, VolumeSnapshot
from mlm_system.utils.genealogy import GenealogySnapshot
from mlm_system.utils.money import ZERO, to_decimal, money_str
from mlm_system.utils.periods import Period, parse_period
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

RANK_EVENTS = {
    PROMOTED: MLMEvents.RANK_PROMOTED,
    PROTECTED: MLMEvents.RANK_PROTECTED,
    DEMOTED: MLMEvents.RANK_DEMOTED,
}


@dataclass(frozen=True)
class ParticipantInput:
    """Everything a worker needs for one participant, copied out of the session."""
    participantID: int
    rankValue: str
    protectionPeriodsUsed: int
    protectionWindowYear: Optional[int]
    earnings: EarningsState
    coolingOff: bool
    metrics: RankMetrics
    lines: Tuple[CommissionLine, ...]


@dataclass(frozen=True)
class ParticipantResult:
    participantID: int
    capped: Tuple[CappedLine, ...]
    earnings: EarningsState
    capWarningNow: bool
    decision: Optional[RankDecision]  # None on weekly runs
    coolingOff: bool


class RunReport:
    """
    Run-wide aggregate: totals, breakdown by type, errors, rank changes.
    Workers and the writer update it only through these locked methods.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.totalCommissions = ZERO
        self.breakdown: Dict[str, Decimal] = {t: ZERO for t in COMMISSION_TYPES}
        self.errors: List[Dict[str, Any]] = []
        self.processed = 0
        self.rankChanges: Dict[str, int] = {PROMOTED: 0, PROTECTED: 0, DEMOTED: 0, BLOCKED: 0}
        self.capsReached = 0
        self.coolingOffSkipped = 0
        self._failed = set()

    def recordSuccess(self, result: ParticipantResult):
        with self._lock:
            self.processed += 1
            if result.coolingOff:
                self.coolingOffSkipped += 1
            else:
                for capped in result.capped:
                    self.breakdown[capped.line.commissionType] += capped.amount
                    self.totalCommissions += capped.amount
            if result.decision and result.decision.action in self.rankChanges:
                self.rankChanges[result.decision.action] += 1
            if result.capWarningNow:
                self.capsReached += 1

    def recordError(self, participantId: int, error: Exception):
        with self._lock:
            if participantId in self._failed:
                return
            self._failed.add(participantId)
            self.errors.append({
                "participantID": participantId,
                "errorType": type(error).__name__,
                "error": str(error),
            })

    def hasFailed(self, participantId: int) -> bool:
        with self._lock:
            return participantId in self._failed

    @property
    def failureCount(self) -> int:
        """Errors counted against the failure threshold (cancellations excluded)."""
        return sum(1 for e in self.errors if e["errorType"] != RunCancelled.__name__)

    def sortedErrors(self) -> List[Dict[str, Any]]:
        return sorted(self.errors, key=lambda e: e["participantID"])


class CommissionRunService:
    """Service for executing periodic commission runs."""

    def __init__(
            self,
            session: Session,
            plan: Optional[CompensationPlan] = None,
            workers: Optional[int] = None,
            timeoutSeconds: Optional[float] = None,
            failureThreshold: Optional[Decimal] = None
    ):
        self.session = session
        self.plan = plan or get_compensation_plan()
        self.workers = max(1, int(workers or Config.get(Config.RUN_WORKERS, 4)))
        self.timeoutSeconds = float(
            timeoutSeconds if timeoutSeconds is not None
            else Config.get(Config.RUN_TIMEOUT_SECONDS, 1800)
        )
        self.failureThreshold = to_decimal(
            failureThreshold if failureThreshold is not None
            else Config.get(Config.RUN_FAILURE_THRESHOLD, "0.5"),
            "RUN_FAILURE_THRESHOLD"
        )

        self.volumeService = VolumeService(session)
        self.commissionService = CommissionService(session, self.plan)
        self.capService = EarningsCapService(session)
        self.rankService = RankService(session, self.plan)
        self.complianceService = ComplianceService(session, self.plan)

        self._cancelEvent = threading.Event()
        self._deadline: Optional[float] = None

    # ═══════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════

    def cancel(self):
        """Stop the current run at the next participant checkpoint."""
        logger.warning("Commission run cancellation requested")
        self._cancelEvent.set()

    def getSuccessfulRun(self, runType: str, periodKey: str) -> Optional[CommissionRun]:
        return self.session.query(CommissionRun).filter_by(
            completionMarker=self._marker(runType, periodKey)
        ).first()

    async def runPeriod(self, runType: str, periodKey: str, force: bool = False) -> CommissionRun:
        """
        Execute a commission run for one period.

        Args:
            runType: "weekly" or "monthly"
            periodKey: "YYYY-MM" for monthly, "YYYY-Www" for weekly
            force: Supersede an existing successful run for the period

        Returns:
            Persisted CommissionRun (completed, completed_with_errors or failed)

        Raises:
            ValidationError: Bad run type or period key
            IdempotencyConflict: Period already run (and not forced, or prior entries paid)
        """
        period = parse_period(runType, periodKey)
        self._cancelEvent.clear()
        self._deadline = time.monotonic() + self.timeoutSeconds

        logger.info(f"Starting {runType} commission run for {period.key} (force={force})")

        prior = self.getSuccessfulRun(runType, period.key)
        if prior:
            if not force:
                raise IdempotencyConflict(runType, period.key, prior.runID)
            await self._supersede(prior)

        now = timeMachine.now
        run = CommissionRun(
            runType=runType,
            periodKey=period.key,
            status="running",
            forced=force,
            startedAt=now,
        )
        self.session.add(run)
        self.session.flush()

        report = RunReport()

        try:
            genealogy = GenealogySnapshot.from_session(
                self.session,
                max_depth=int(Config.get(Config.MAX_GENEALOGY_DEPTH, 5)),
                max_team_size=int(Config.get(Config.MAX_TEAM_SIZE, 100000)),
            )
            volumes = await self.volumeService.buildVolumeSnapshot(period, genealogy)

            participants = self.session.query(Participant).filter(
                Participant.isActive == True
            ).order_by(Participant.participantID).all()
            byId = {p.participantID: p for p in participants}

            buckets = await self._bucketSaleCommissions(period, genealogy, byId, report)
            inputs = self._buildInputs(participants, genealogy, volumes, buckets, report, now)

            results = await self._computeAll(inputs, period, runType, genealogy, report)

            pendingEvents = await self._writeResults(run, period, byId, volumes, results, report)

        except Exception as e:
            logger.error(f"Commission run {runType} {period.key} crashed: {e}", exc_info=True)
            self.session.rollback()
            raise

        total = len(participants)
        if total and Decimal(report.failureCount) / Decimal(total) > self.failureThreshold:
            return await self._failRun(runType, period, force, now, total, report)

        run.status = "completed_with_errors" if report.errors else "completed"
        run.completionMarker = self._marker(runType, period.key)
        run.finishedAt = timeMachine.now
        run.participantsTotal = total
        run.participantsProcessed = report.processed
        run.totalCommissions = report.totalCommissions
        run.breakdown = {t: money_str(v) for t, v in report.breakdown.items()}
        run.errors = report.sortedErrors()
        run.rankChanges = dict(report.rankChanges)
        run.notes = self._runNotes(report)

        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            logger.warning(f"Concurrent run committed {runType} {period.key} first")
            raise IdempotencyConflict(runType, period.key)

        logger.info(
            f"Commission run {run.runID} {runType} {period.key} {run.status}: "
            f"{report.processed}/{total} processed, total {report.totalCommissions}, "
            f"{len(report.errors)} errors"
        )

        for eventName, data in pendingEvents:
            await eventBus.emit(eventName, data)

        await eventBus.emit(MLMEvents.RUN_COMPLETED, {
            "runId": run.runID,
            "runType": runType,
            "periodKey": period.key,
            "status": run.status,
            "totalCommissions": money_str(report.totalCommissions),
            "participantsProcessed": report.processed,
            "errors": len(report.errors),
        })

        return run

    # ═══════════════════════════════════════════════════════════════════
    # INPUT PREPARATION (main thread)
    # ═══════════════════════════════════════════════════════════════════

    async def _bucketSaleCommissions(
            self,
            period: Period,
            genealogy: GenealogySnapshot,
            byId: Dict[int, Participant],
            report: RunReport
    ) -> Dict[int, List[CommissionLine]]:
        """Calculate commissions for every sale and group them per recipient."""
        buckets: Dict[int, List[CommissionLine]] = defaultdict(list)
        events = await self.volumeService.getQualifyingSales(period)
        credited = self._creditedSaleLines(period)
        skipped = 0

        for event in events:
            ancestorErrors: List[DataIntegrityError] = []
            try:
                lines = self.commissionService.calculateEventCommissions(event, genealogy, ancestorErrors)
            except (DataIntegrityError, ValidationError) as e:
                culprit = getattr(e, "participantId", None) or event.participantID
                logger.error(f"Sale {event.saleID} skipped: {e}")
                report.recordError(culprit, e)
                continue
            finally:
                for error in ancestorErrors:
                    report.recordError(error.participantId, error)

            for line in lines:
                if (line.saleID, line.recipientID, line.commissionType) in credited:
                    skipped += 1
                    continue
                if line.recipientID in byId:
                    buckets[line.recipientID].append(line)

        logger.info(
            f"Calculated commissions for {len(events)} sales in {period.key}, "
            f"{sum(len(b) for b in buckets.values())} lines for {len(buckets)} recipients, "
            f"{skipped} already credited"
        )
        return buckets

    def _creditedSaleLines(self, period: Period) -> Set[Tuple[int, int, str]]:
        """(saleID, recipientID, type) of sale lines held by successful runs."""
        rows = self.session.query(
            CommissionEntry.saleID,
            CommissionEntry.recipientID,
            CommissionEntry.commissionType,
        ).join(
            CommissionRun, CommissionRun.runID == CommissionEntry.runID
        ).join(
            Sale, Sale.saleID == CommissionEntry.saleID
        ).filter(
            CommissionRun.completionMarker.isnot(None),
            Sale.occurredAt >= period.start,
            Sale.occurredAt < period.end,
        ).all()

        return {(saleId, recipientId, commissionType) for saleId, recipientId, commissionType in rows}

    def _buildInputs(
            self,
            participants: List[Participant],
            genealogy: GenealogySnapshot,
            volumes: VolumeSnapshot,
            buckets: Dict[int, List[CommissionLine]],
            report: RunReport,
            now
    ) -> List[ParticipantInput]:
        inputs = []
        for participant in participants:
            pid = participant.participantID
            if report.hasFailed(pid):
                continue
            try:
                inputs.append(ParticipantInput(
                    participantID=pid,
                    rankValue=participant.rank,
                    protectionPeriodsUsed=participant.protectionPeriodsUsed or 0,
                    protectionWindowYear=participant.protectionWindowYear,
                    earnings=self.capService.loadEarningsState(participant),
                    coolingOff=self.complianceService.isInCoolingOff(participant, now),
                    metrics=RankMetrics(
                        directReferrals=genealogy.count_direct_referrals(pid, active_only=True),
                        personalVolume=volumes.personalVolume(pid),
                        teamVolume=volumes.teamVolume(pid),
                    ),
                    lines=tuple(buckets.get(pid, ())),
                ))
            except Exception as e:
                logger.error(f"Cannot prepare participant {pid}: {e}", exc_info=True)
                report.recordError(pid, e)
        return inputs

    # ═══════════════════════════════════════════════════════════════════
    # PARALLEL COMPUTATION (worker threads, no database access)
    # ═══════════════════════════════════════════════════════════════════

    async def _computeAll(
            self,
            inputs: List[ParticipantInput],
            period: Period,
            runType: str,
            genealogy: GenealogySnapshot,
            report: RunReport
    ) -> List[ParticipantResult]:
        loop = asyncio.get_running_loop()

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="commission-run") as pool:
            futures = [
                loop.run_in_executor(
                    pool, self._safeCompute, item, period, runType, genealogy, report
                )
                for item in inputs
            ]
            results = await asyncio.gather(*futures)

        return sorted(
            (r for r in results if r is not None),
            key=lambda r: r.participantID
        )

    def _safeCompute(
            self,
            item: ParticipantInput,
            period: Period,
            runType: str,
            genealogy: GenealogySnapshot,
            report: RunReport
    ) -> Optional[ParticipantResult]:
        try:
            return self._computeParticipant(item, period, runType, genealogy)
        except RunCancelled as e:
            report.recordError(item.participantID, e)
        except Exception as e:
            logger.error(f"Participant {item.participantID} failed: {e}")
            report.recordError(item.participantID, e)
        return None

    def _computeParticipant(
            self,
            item: ParticipantInput,
            period: Period,
            runType: str,
            genealogy: GenealogySnapshot
    ) -> ParticipantResult:
        self._checkpoint()

        pid = item.participantID
        genealogy.check_integrity(pid)

        try:
            rank = parse_rank(item.rankValue)
        except DataIntegrityError as e:
            raise DataIntegrityError(str(e), participantId=pid)

        lines = list(item.lines)
        if runType == "monthly":
            leadership = self.commissionService.calculateLeadership(pid, rank, item.metrics.teamVolume)
            if leadership:
                lines.append(leadership)
            bonus = self.commissionService.calculateRankBonus(pid, rank)
            if bonus:
                lines.append(bonus)

        if item.coolingOff:
            capped = [CappedLine(line=line, amount=ZERO) for line in lines]
            earnings, warningNow = item.earnings, False
        else:
            capped, earnings, warningNow = self.capService.applyCap(item.earnings, lines)

        decision = None
        if runType == "monthly":
            decision = self.rankService.evaluate(
                pid,
                RankState(
                    rank=rank,
                    protectionPeriodsUsed=item.protectionPeriodsUsed,
                    protectionWindowYear=item.protectionWindowYear,
                ),
                item.metrics,
                period,
                promotionBlocked=item.coolingOff,
            )

        return ParticipantResult(
            participantID=pid,
            capped=tuple(capped),
            earnings=earnings,
            capWarningNow=warningNow,
            decision=decision,
            coolingOff=item.coolingOff,
        )

    def _checkpoint(self):
        """Cooperative cancellation / deadline check between participants."""
        if self._cancelEvent.is_set():
            raise RunCancelled("Run cancelled before participant was processed")
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise RunCancelled(f"Run deadline of {self.timeoutSeconds:.0f}s exceeded")

    # ═══════════════════════════════════════════════════════════════════
    # WRITE PHASE (single writer, one savepoint per participant)
    # ═══════════════════════════════════════════════════════════════════

    async def _writeResults(
            self,
            run: CommissionRun,
            period: Period,
            byId: Dict[int, Participant],
            volumes: VolumeSnapshot,
            results: List[ParticipantResult],
            report: RunReport
    ) -> List[Tuple[str, Dict]]:
        """Persist each participant atomically; return events to emit after commit."""
        pendingEvents: List[Tuple[str, Dict]] = []
        now = timeMachine.now
        releaseAt = now + timedelta(days=int(Config.get(Config.COMMISSION_HOLD_DAYS, 30)))

        for result in results:
            pid = result.participantID
            try:
                self._checkpoint()
            except RunCancelled as e:
                report.recordError(pid, e)
                continue

            try:
                with self.session.begin_nested():
                    participant = byId[pid]
                    self._addEntries(run, period, result, now, releaseAt)

                    if not result.coolingOff:
                        participant.currentPlanEarnings = result.earnings.earned
                        participant.earningsCapReached = result.earnings.capReached
                        participant.capWarningSent = result.earnings.warningSent

                    if result.decision is not None:
                        participant.personalVolume = volumes.personalVolume(pid)
                        participant.teamVolume = volumes.teamVolume(pid)
                        await self.rankService.applyDecision(participant, result.decision, period, run.runID)

            except Exception as e:
                logger.error(f"Failed to persist participant {pid}: {e}", exc_info=True)
                report.recordError(pid, e)
                continue

            report.recordSuccess(result)

            if result.decision and result.decision.action in RANK_EVENTS:
                pendingEvents.append((RANK_EVENTS[result.decision.action], {
                    "participantId": pid,
                    "runId": run.runID,
                    "periodKey": period.key,
                    "previousRank": result.decision.previousRank.value,
                    "newRank": result.decision.newRank.value,
                    "protectionPeriodsUsed": result.decision.newProtectionUsed,
                }))
            if result.capWarningNow:
                pendingEvents.append((MLMEvents.EARNINGS_CAP_REACHED, {
                    "participantId": pid,
                    "cap": money_str(result.earnings.cap),
                    "earned": money_str(result.earnings.earned),
                }))

        return pendingEvents

    def _addEntries(self, run: CommissionRun, period: Period, result: ParticipantResult, now, releaseAt):
        for capped in result.capped:
            line = capped.line
            if result.coolingOff:
                status, notes = "cancelled", "Recipient in cooling-off period"
            else:
                status = "pending"
                notes = "Clamped by earnings cap" if capped.clamped else None

            self.session.add(CommissionEntry(
                recipientID=line.recipientID,
                sourceParticipantID=line.sourceParticipantID,
                saleID=line.saleID,
                runID=run.runID,
                periodKey=period.key,
                commissionType=line.commissionType,
                level=line.level,
                rate=line.rate,
                baseAmount=line.baseAmount,
                calculatedAmount=line.amount,
                amount=capped.amount,
                capClamped=capped.clamped,
                status=status,
                releaseAt=releaseAt,
                notes=notes,
                createdAt=now,
            ))

    # ═══════════════════════════════════════════════════════════════════
    # FAILURE & RERUN
    # ═══════════════════════════════════════════════════════════════════

    async def _failRun(
            self,
            runType: str,
            period: Period,
            force: bool,
            startedAt,
            total: int,
            report: RunReport
    ) -> CommissionRun:
        """Roll back every change of this run and record it as failed."""
        self.session.rollback()

        failed = CommissionRun(
            runType=runType,
            periodKey=period.key,
            status="failed",
            forced=force,
            startedAt=startedAt,
            finishedAt=timeMachine.now,
            participantsTotal=total,
            participantsProcessed=0,
            totalCommissions=ZERO,
            breakdown={t: money_str(ZERO) for t in COMMISSION_TYPES},
            errors=report.sortedErrors(),
            rankChanges={},
            notes=(
                f"{report.failureCount} of {total} participants failed "
                f"(threshold {self.failureThreshold}); no entries committed"
            ),
        )
        self.session.add(failed)
        self.session.commit()

        logger.error(
            f"Commission run {runType} {period.key} FAILED: "
            f"{report.failureCount}/{total} participants failed, all changes rolled back"
        )

        await eventBus.emit(MLMEvents.RUN_FAILED, {
            "runId": failed.runID,
            "runType": runType,
            "periodKey": period.key,
            "errors": report.failureCount,
            "participantsTotal": total,
        })

        return failed

    async def _supersede(self, prior: CommissionRun):
        """
        Undo a successful run before re-running its period.

        Raises:
            IdempotencyConflict: If any of the prior run's entries were already paid
        """
        paid = self.session.query(CommissionEntry).filter_by(
            runID=prior.runID, status="paid"
        ).count()
        if paid:
            raise IdempotencyConflict(
                prior.runType, prior.periodKey, prior.runID,
                message=(
                    f"Cannot re-run {prior.runType} {prior.periodKey}: "
                    f"{paid} entries of run {prior.runID} are already paid"
                )
            )

        pending = self.session.query(CommissionEntry).filter_by(
            runID=prior.runID, status="pending"
        ).all()

        earnedByRecipient: Dict[int, Decimal] = defaultdict(lambda: ZERO)
        for entry in pending:
            earnedByRecipient[entry.recipientID] += to_decimal(entry.amount)
            entry.status = "cancelled"
            entry.notes = f"Superseded by forced re-run of {prior.periodKey}"

        for recipientId, amount in earnedByRecipient.items():
            participant = self.session.query(Participant).filter_by(participantID=recipientId).first()
            if participant:
                self.capService.releaseEarnings(participant, amount)

        await self.rankService.revertRun(prior.runID)

        prior.status = "superseded"
        prior.completionMarker = None
        self.session.flush()

        logger.warning(
            f"Run {prior.runID} ({prior.runType} {prior.periodKey}) superseded: "
            f"{len(pending)} pending entries cancelled"
        )

    # ═══════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════

    @staticmethod
    def _marker(runType: str, periodKey: str) -> str:
        return f"{runType}:{periodKey}"

    @staticmethod
    def _runNotes(report: RunReport) -> Optional[str]:
        parts = []
        if report.capsReached:
            parts.append(f"{report.capsReached} participants reached their earnings cap")
        if report.coolingOffSkipped:
            parts.append(f"{report.coolingOffSkipped} participants in cooling-off")
        return "; ".join(parts) or None
