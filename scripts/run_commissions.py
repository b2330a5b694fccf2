#!/usr/bin/env python3
"""
Run commissions for one period by hand.

Usage:
    python scripts/run_commissions.py monthly 2024-10
    python scripts/run_commissions.py weekly 2024-W43 --force
    python scripts/run_commissions.py monthly 2024-10 --summary
"""

import sys
import os
import json
import asyncio
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from core.db import get_db_session_ctx, setup_database
from mlm_system.errors import IdempotencyConflict, ValidationError
from mlm_system.services.commission_run_service import CommissionRunService
from mlm_system.services.report_service import ReportService

import logging

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run(run_type: str, period_key: str, force: bool):
    with get_db_session_ctx() as session:
        service = CommissionRunService(session)
        result = await service.runPeriod(run_type, period_key, force=force)
        summary = await ReportService(session).getRunSummary(run_type, result.periodKey)

    print(json.dumps(summary, indent=2))
    return 0 if summary["status"] != "failed" else 2


async def show_summary(run_type: str, period_key: str):
    with get_db_session_ctx() as session:
        summary = await ReportService(session).getRunSummary(run_type, period_key)

    if summary is None:
        print(f"No {run_type} run found for {period_key}")
        return 1

    print(json.dumps(summary, indent=2))
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Run or inspect a commission run')
    parser.add_argument('run_type', choices=['weekly', 'monthly'])
    parser.add_argument('period_key', help='YYYY-MM (monthly) or YYYY-Www (weekly)')
    parser.add_argument('--force', action='store_true',
                        help='Supersede an existing successful run for the period')
    parser.add_argument('--summary', action='store_true',
                        help='Show the stored run summary without running')
    args = parser.parse_args()

    # Initialize config
    Config.initialize_from_env()
    setup_database()

    try:
        if args.summary:
            code = asyncio.run(show_summary(args.run_type, args.period_key))
        else:
            code = asyncio.run(run(args.run_type, args.period_key, args.force))
    except IdempotencyConflict as e:
        print(f"❌ {e} (use --force to re-run)")
        code = 3
    except ValidationError as e:
        print(f"❌ {e}")
        code = 1

    sys.exit(code)


if __name__ == "__main__":
    main()
