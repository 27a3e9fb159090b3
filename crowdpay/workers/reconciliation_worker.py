"""
Reconciliation background worker.

Sweeps stale pending transactions every reconciliation_interval_minutes.
"""
import asyncio
import signal
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog

from crowdpay.api.dependencies import Services, build_services
from crowdpay.config import Settings, get_settings
from crowdpay.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_sweep(services: Services) -> Dict[str, Any]:
    """
    Run one reconciliation sweep.

    Returns:
        Dict[str, Any]: The sweep result
    """
    older_than = timedelta(hours=services.settings.reconciliation_older_than_hours)
    result = await services.engine.reconcile_pending(older_than)

    counters = result["results"]
    if counters["errors"]:
        logger.warning(
            "reconciliation_sweep_errors",
            errors=counters["errors"],
            processed=counters["processed"],
        )
    return result


async def start_reconciliation_worker(
    settings: Optional[Settings] = None, services: Optional[Services] = None
) -> None:
    """
    Start the reconciliation worker.

    Runs until SIGINT/SIGTERM. A failed sweep is logged and retried on the
    next interval.

    Args:
        settings: Application settings
        services: Pre-built services (built from settings otherwise)
    """
    settings = settings or get_settings()
    owned = services is None
    services = services or build_services(settings)
    interval = settings.reconciliation_interval_minutes * 60

    logger.info(
        "reconciliation_worker_starting",
        interval_minutes=settings.reconciliation_interval_minutes,
        older_than_hours=settings.reconciliation_older_than_hours,
    )

    stopping = asyncio.Event()

    def request_stop(sig: int) -> None:
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        stopping.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop, sig)

    try:
        while not stopping.is_set():
            try:
                await run_sweep(services)
            except Exception as e:
                logger.error("reconciliation_execution_error", error=str(e))

            try:
                await asyncio.wait_for(stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        if owned:
            await services.aclose()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    asyncio.run(start_reconciliation_worker(settings))


if __name__ == "__main__":
    main()
