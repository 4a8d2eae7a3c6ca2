"""
Grant Expiration Sweep Worker.

Expires PAST_DUE grants whose grace period has passed and deactivates
resources that no longer fit in the tenant's remaining quota.

Run as: python -m quota_ledger.workers.expiration_sweep_job [--once] [--init-db]

Configuration:
- DATABASE_URL: Ledger database
- LEDGER_SWEEP_INTERVAL_SECONDS: Seconds between cycles (default: 3600)
- LEDGER_GRACE_PERIOD_HOURS: Grace period after period end (default: 48)
- LEDGER_PROVISIONER_FACTORY: "module:callable" building the provisioner used
  to deprovision deactivated resources. When unset the worker uses
  LoggingProvisioner: deactivations are recorded in the ledger but the
  external resources (e.g. DNS records) are only logged, not removed.
"""

import argparse
import importlib
import logging
import signal
import time
from typing import Optional

from quota_ledger.config import settings
from quota_ledger.database.session import get_session_factory, init_database, reset_engine
from quota_ledger.services.collaborators import (
    LoggingNotifier,
    LoggingProvisioner,
    ResourceProvisioner,
)
from quota_ledger.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

POLL_INTERVAL = settings.SWEEP_INTERVAL_SECONDS

_shutdown = False


def _handle_signal(signum, frame):
    global _shutdown
    logger.info("Shutdown signal received", extra={"signal": signum})
    _shutdown = True


def load_provisioner(factory_path: Optional[str] = None) -> ResourceProvisioner:
    """
    Build the worker's provisioner from a "module:callable" path.

    Falls back to LoggingProvisioner when no path is configured.

    Raises:
        ValueError: If the path is not of the form "module:callable"
    """
    factory_path = settings.PROVISIONER_FACTORY if factory_path is None else factory_path
    if not factory_path:
        logger.warning(
            "No provisioner factory configured; deactivated resources will not be deprovisioned",
            extra={"setting": "LEDGER_PROVISIONER_FACTORY"},
        )
        return LoggingProvisioner()

    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise ValueError(
            f"LEDGER_PROVISIONER_FACTORY must be 'module:callable', got {factory_path!r}"
        )
    factory = getattr(importlib.import_module(module_name), attr)
    logger.info("Using configured provisioner", extra={"factory": factory_path})
    return factory()


def build_service(provisioner: Optional[ResourceProvisioner] = None) -> LedgerService:
    return LedgerService(
        get_session_factory(),
        provisioner=provisioner or load_provisioner(),
        notifier=LoggingNotifier(),
    )


def run_cycle(service: Optional[LedgerService] = None) -> int:
    """Run one sweep cycle. Returns count of expired grants."""
    try:
        service = service or build_service()
        stats = service.run_expiration_sweep()
    except Exception:
        logger.error("Expiration sweep cycle failed", exc_info=True)
        return 0

    if stats.expired:
        logger.info(
            "Expiration sweep cycle complete",
            extra={"expired_count": stats.expired},
        )
    return stats.expired


def main(argv=None):
    parser = argparse.ArgumentParser(description="Expire lapsed entitlement grants")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing ledger tables before running",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.init_db:
        init_database()

    service = build_service()

    if args.once:
        run_cycle(service)
        reset_engine()
        return

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Expiration sweep worker started",
        extra={"poll_interval": POLL_INTERVAL},
    )

    while not _shutdown:
        run_cycle(service)
        for _ in range(POLL_INTERVAL):
            if _shutdown:
                break
            time.sleep(1)

    reset_engine()
    logger.info("Expiration sweep worker stopped")


if __name__ == "__main__":
    main()
