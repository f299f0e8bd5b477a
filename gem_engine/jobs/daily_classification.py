"""
Daily classification job.

Runs the per-client pipeline for every client, in parallel, once per day.
Clients are independent: each one reads its own config and records and
writes its own outputs, so a failure in one client is logged, reported in
its result and never aborts the others. There are no retries here; a failed
client is picked up by the next scheduled run or a manual rerun, and reruns
on the same day are safe because alerts are de-duplicated against the
alert log.

Usage:
    summary = await run_daily_classification(["client_001", "client_002"])

    async def post_to_slack(client_id, alerts, blocks):
        ...

    summary = await run_daily_classification(
        client_ids,
        strategy=AlertStrategy.EXTENDED,
        notifier=post_to_slack,
    )
"""

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from gem_engine.core.config import get_settings
from gem_engine.core.database import close_db, init_db
from gem_engine.core.logging_config import configure_logging
from gem_engine.jobs.alert_digest import format_alert_digest
from gem_engine.models.enums import AlertStrategy
from gem_engine.models.schemas import Alert
from gem_engine.services.snapshot import compute_and_store

logger = logging.getLogger(__name__)

# Receives (client_id, alerts, digest_blocks)
Notifier = Callable[[str, List[Alert], List[Dict[str, Any]]], Awaitable[None]]


async def run_client(
    client_id: str,
    run_date: date,
    strategy: AlertStrategy,
    semaphore: asyncio.Semaphore,
    notifier: Optional[Notifier] = None,
) -> Dict[str, Any]:
    """
    Run and store one client, then hand new alerts to the notifier.

    Returns:
        Dict with client_id, success, counts, and error when failed.
    """
    async with semaphore:
        try:
            snapshot = await compute_and_store(client_id, run_date, strategy)
        except Exception as e:
            logger.exception(f"{client_id}: classification run failed")
            return {
                'client_id': client_id,
                'success': False,
                'error': f'{type(e).__name__}: {e}',
            }

        result: Dict[str, Any] = {
            'client_id': client_id,
            'success': True,
            'classified': snapshot.meta.classifiedCount,
            'alerts': len(snapshot.alerts),
            'new_alerts': len(snapshot.newAlerts),
            'notified': False,
        }

        if notifier is None or not snapshot.newAlerts:
            return result

        blocks = format_alert_digest(client_id, snapshot.newAlerts, run_date, title=snapshot.title)
        try:
            await notifier(client_id, snapshot.newAlerts, blocks)
            result['notified'] = True
        except Exception as e:
            # Outputs are already stored; only delivery failed
            logger.exception(f"{client_id}: notifier failed")
            result['notify_error'] = f'{type(e).__name__}: {e}'

        return result


async def run_daily_classification(
    client_ids: Iterable[str],
    run_date: Optional[date] = None,
    strategy: AlertStrategy = AlertStrategy.CORE,
    notifier: Optional[Notifier] = None,
    concurrency: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Classify every client for one day.

    Args:
        client_ids: Clients to process. Duplicates are run once.
        run_date: Last fully synced day. Defaults to yesterday.
        strategy: Alert detection set, applied to every client of this run.
        notifier: Optional async callable receiving each client's new alerts.
        concurrency: Max clients in flight. Defaults to Settings.client_concurrency.

    Returns:
        Dict with run_date, strategy, total, succeeded, failed and the
        per-client results in input order.
    """
    run_date = run_date or date.today() - timedelta(days=1)
    limit = concurrency or get_settings().client_concurrency
    semaphore = asyncio.Semaphore(max(1, limit))
    unique_ids = list(dict.fromkeys(client_ids))

    logger.info(
        f"Daily classification for {len(unique_ids)} client(s) on {run_date} "
        f"(strategy={strategy.value}, concurrency={limit})"
    )

    results = await asyncio.gather(*(
        run_client(client_id, run_date, strategy, semaphore, notifier)
        for client_id in unique_ids
    ))

    succeeded = sum(1 for r in results if r['success'])
    failed = len(results) - succeeded
    if failed:
        logger.warning(f"Daily classification finished with {failed} failed client(s)")
    else:
        logger.info(f"Daily classification finished for {succeeded} client(s)")

    return {
        'run_date': run_date.isoformat(),
        'strategy': strategy.value,
        'total': len(results),
        'succeeded': succeeded,
        'failed': failed,
        'results': list(results),
    }


async def main(client_ids: List[str], strategy: AlertStrategy = AlertStrategy.CORE) -> Dict[str, Any]:
    """Entry point for schedulers: set up logging and the pool around a run."""
    configure_logging()
    await init_db()
    try:
        return await run_daily_classification(client_ids, strategy=strategy)
    finally:
        await close_db()
