# mlm_engine/mlm_engine.py
"""
Compensation engine - main entry point.
Loads configuration, prepares the database and runs the scheduler.
"""
import asyncio
import logging
import signal
import sys

from config import Config, ConfigurationError
from core.db import setup_database, dispose_engine
from models.listeners import register_all_listeners

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler('mlm_engine.log')
    ]
)
logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
logging.getLogger('apscheduler').setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def initialize_engine():
    """
    Initialize engine with all services and configurations.

    Returns:
        MLMScheduler: Started scheduler
    """
    try:
        logger.info("=" * 60)
        logger.info("COMPENSATION ENGINE INITIALIZATION")
        logger.info("=" * 60)

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 1: Load configuration from .env
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("📋 Loading configuration from .env...")
        Config.initialize_from_env()
        logger.info("✓ Configuration loaded")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 2: Validate compensation plan
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🔍 Building compensation plan...")
        from mlm_system.config.ranks import get_compensation_plan
        try:
            plan = get_compensation_plan()
        except (ValueError, KeyError) as e:
            raise ConfigurationError(f"Invalid compensation plan: {e}")
        logger.info(f"✓ Compensation plan ready ({plan.maxOverrideLevel} override levels)")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 3: Setup database and listeners
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("💾 Setting up database...")
        setup_database()
        register_all_listeners()
        logger.info("✓ Database ready")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 4: Setup MLM event handlers
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🎲 Setting up MLM event handlers...")
        from mlm_system.events.setup import setup_mlm_event_handlers
        setup_mlm_event_handlers()
        logger.info("✓ MLM event handlers registered")

        # ═══════════════════════════════════════════════════════════════════════
        # STEP 5: Start scheduler
        # ═══════════════════════════════════════════════════════════════════════
        logger.info("🚀 Starting scheduler...")
        import background.mlm_scheduler as scheduler_module
        scheduler_module.scheduler = scheduler_module.MLMScheduler()
        await scheduler_module.scheduler.start()
        logger.info("✓ Scheduler started")

        logger.info("=" * 60)
        logger.info("✅ INITIALIZATION COMPLETE")
        logger.info("=" * 60)

        return scheduler_module.scheduler

    except Exception as e:
        logger.critical(f"❌ Initialization failed: {e}", exc_info=True)
        raise


async def main():
    """Main entry point."""
    scheduler = None
    try:
        scheduler = await initialize_engine()

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass

        await stop_event.wait()
        logger.info("⚠️ Shutdown signal received")

    except KeyboardInterrupt:
        logger.info("⚠️ Engine stopped by user")
    except Exception as e:
        logger.critical(f"❌ Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if scheduler:
            await scheduler.stop()
        dispose_engine()
        logger.info("👋 Engine shutdown complete")


if __name__ == '__main__':
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Engine stopped")
