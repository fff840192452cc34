"""
Overage Reconciliation Driver
=============================

Runs one BatchReconciliationJob pass and prints the run summary as JSON.
Meant to be invoked by an external scheduler (cron, k8s CronJob).

Exit 0 when no tenant failed, 1 otherwise.

Usage:
    python -m overage_billing.scripts.reconcile_overage [--log-level DEBUG] [--compact]
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from overage_billing.config import Settings, settings as default_settings
from overage_billing.core.database import engine_for, init_db, make_session_factory
from overage_billing.core.structured_logging import setup_logging
from overage_billing.services.container import OverageServices, build_overage_services

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Report overage usage for every enabled tenant.")
    parser.add_argument("--log-level", default=None, help="Override OVERAGE_LOG_LEVEL")
    parser.add_argument("--compact", action="store_true", help="Print the summary on one line")
    return parser.parse_args(argv)


async def run(services: OverageServices) -> dict:
    summary = await services.batch_job.run_once()
    return summary.as_dict()


def main(
    argv: Optional[List[str]] = None,
    settings: Optional[Settings] = None,
    services: Optional[OverageServices] = None,
) -> int:
    args = parse_args(argv)
    settings = settings or default_settings
    setup_logging(
        log_dir=settings.log_dir,
        log_file=settings.log_file,
        log_level=(args.log_level or settings.log_level).upper(),
    )

    engine = None
    if services is None:
        engine = engine_for(settings)
        init_db(engine)
        services = build_overage_services(settings, session_scope=make_session_factory(engine))
    try:
        report = asyncio.run(run(services))
    finally:
        if engine is not None:
            engine.dispose()

    print(json.dumps(report, indent=None if args.compact else 2, default=str))
    return 1 if report["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
