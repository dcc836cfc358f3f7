"""
Reconciliation job for document states.

This module re-derives the state of every stored document and persists the
ones that changed. It can run once or on a fixed interval:

    python -m fleetdocs.jobs                 # one pass
    python -m fleetdocs.jobs --interval 3600 # every hour until interrupted
"""

import argparse
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from rich.logging import RichHandler

from fleetdocs import settings
from fleetdocs.clock import Clock, SystemClock
from fleetdocs.db import DatabaseManager, db_manager, execute_with_retry
from fleetdocs.reconciler import reconcile
from fleetdocs.repository import DocumentRepository

logger = logging.getLogger("fleetdocs.jobs")

document_repository = DocumentRepository()


def configure_logging(level: int = logging.INFO) -> None:
    """Configure rich console logging for command line runs."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)]
    )


async def run_reconciliation(
    db: Optional[DatabaseManager] = None,
    clock: Optional[Clock] = None,
    client_id: Optional[int] = None
) -> Dict[str, Any]:
    """Run one reconciliation pass.

    Args:
        db: Database manager. Defaults to the global db_manager.
        clock: Source of "now". Defaults to the system clock.
        client_id: Restrict the pass to one client. Defaults to all clients.

    Returns:
        Dictionary of run statistics

    Raises:
        StorageError: If the documents cannot be loaded or updated
    """
    db = db or db_manager
    clock = clock or SystemClock()
    started = time.monotonic()
    now = clock.now()

    logger.info(f"Starting reconciliation at {now.isoformat()}")

    async with db.session() as session:
        documents = await execute_with_retry(
            session,
            lambda: document_repository.find_all_active(session, client_id)
        )
        changeset = reconcile(documents, now)

        applied = 0
        if changeset:
            applied = await document_repository.apply_changeset(session, changeset)
        await session.commit()

    stats = {
        "checked": len(documents),
        "stale": len(changeset),
        "applied": applied,
        "skipped": len(changeset) - applied,
        "duration_seconds": round(time.monotonic() - started, 3),
    }
    logger.info(
        f"Reconciliation finished: {stats['checked']} checked, "
        f"{stats['applied']} updated, {stats['skipped']} skipped"
    )
    return stats


async def run_periodic(
    interval_seconds: Optional[float] = None,
    stop_event: Optional[asyncio.Event] = None,
    db: Optional[DatabaseManager] = None,
    clock: Optional[Clock] = None,
    client_id: Optional[int] = None
) -> List[Dict[str, Any]]:
    """Run reconciliation repeatedly until ``stop_event`` is set.

    A failed pass is logged and the next one runs on schedule.

    Returns:
        Statistics of every successful pass
    """
    interval_seconds = interval_seconds or settings.RECONCILE_INTERVAL_SECONDS
    stop_event = stop_event or asyncio.Event()
    runs: List[Dict[str, Any]] = []

    while not stop_event.is_set():
        try:
            runs.append(await run_reconciliation(db=db, clock=clock, client_id=client_id))
        except Exception as e:
            logger.exception(f"Reconciliation pass failed: {e}")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass

    logger.info("Periodic reconciliation stopped")
    return runs


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile the expiry state of stored documents")
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Repeat every INTERVAL seconds instead of running once",
    )
    parser.add_argument(
        "--client-id",
        type=int,
        default=None,
        help="Only reconcile documents of this client",
    )
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the reconciliation job."""
    args = parse_args(argv)
    try:
        if args.interval:
            await run_periodic(args.interval, client_id=args.client_id)
        else:
            await run_reconciliation(client_id=args.client_id)
    finally:
        await db_manager.close()


if __name__ == "__main__":
    configure_logging()
    asyncio.run(main())
