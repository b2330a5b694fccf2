# mlm_system/events/handlers.py
"""
Default event handlers: audit logging of engine outcomes.
Hosts subscribe their own handlers (notifications, dashboards) next to these.
"""
import logging
from typing import Dict, Any

logger = logging.getLogger("mlm_system.audit")


async def handle_run_completed(data: Dict[str, Any]):
    """Log a finished run with its headline numbers."""
    logger.info(
        f"Run {data.get('runId')} {data.get('runType')} {data.get('periodKey')} "
        f"{data.get('status')}: total={data.get('totalCommissions')}, "
        f"processed={data.get('participantsProcessed')}, errors={data.get('errors')}"
    )


async def handle_run_failed(data: Dict[str, Any]):
    logger.error(
        f"Run {data.get('runId')} {data.get('runType')} {data.get('periodKey')} FAILED: "
        f"{data.get('errors')} of {data.get('participantsTotal')} participants failed"
    )


async def handle_rank_changed(data: Dict[str, Any]):
    """Shared handler for promoted / protected / demoted."""
    logger.info(
        f"Participant {data.get('participantId')} rank "
        f"{data.get('previousRank')} → {data.get('newRank')} in {data.get('periodKey')} "
        f"(protections used: {data.get('protectionPeriodsUsed')})"
    )


async def handle_earnings_cap_reached(data: Dict[str, Any]):
    logger.warning(
        f"Participant {data.get('participantId')} reached earnings cap "
        f"{data.get('cap')} (earned {data.get('earned')})"
    )


async def handle_refund_processed(data: Dict[str, Any]):
    logger.info(
        f"Refund {data.get('refundId')} for participant {data.get('participantId')}: "
        f"{data.get('status')} ({data.get('reasonCode')}), net {data.get('netRefund')}"
    )


async def handle_payout_created(data: Dict[str, Any]):
    logger.info(
        f"Payout {data.get('payoutId')} for participant {data.get('participantId')}: "
        f"{data.get('amount')} ({data.get('entryCount')} entries)"
    )
