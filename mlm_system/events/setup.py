# mlm_system/events/setup.py
"""
Setup engine event handlers.
Register all default handlers with the event bus.
"""
import logging

from mlm_system.events.event_bus import eventBus, MLMEvents
from mlm_system.events.handlers import (
    handle_run_completed,
    handle_run_failed,
    handle_rank_changed,
    handle_earnings_cap_reached,
    handle_refund_processed,
    handle_payout_created,
)

logger = logging.getLogger(__name__)

DEFAULT_HANDLERS = [
    (MLMEvents.RUN_COMPLETED, handle_run_completed),
    (MLMEvents.RUN_FAILED, handle_run_failed),
    (MLMEvents.RANK_PROMOTED, handle_rank_changed),
    (MLMEvents.RANK_PROTECTED, handle_rank_changed),
    (MLMEvents.RANK_DEMOTED, handle_rank_changed),
    (MLMEvents.EARNINGS_CAP_REACHED, handle_earnings_cap_reached),
    (MLMEvents.REFUND_PROCESSED, handle_refund_processed),
    (MLMEvents.PAYOUT_CREATED, handle_payout_created),
]


def setup_mlm_event_handlers():
    """
    Register all default event handlers with the event bus.

    This function should be called during engine initialization.
    """
    logger.info("Setting up MLM event handlers...")

    for eventName, handler in DEFAULT_HANDLERS:
        eventBus.subscribe(eventName, handler)
        logger.debug(f"Registered handler for {eventName}")

    logger.info("MLM event handlers registered successfully")


def teardown_mlm_event_handlers():
    """
    Unregister all default event handlers.
    Useful for testing or shutdown.
    """
    logger.info("Tearing down MLM event handlers...")

    for eventName, handler in DEFAULT_HANDLERS:
        eventBus.unsubscribe(eventName, handler)

    logger.info("MLM event handlers unregistered")
