"""
Per-client snapshot pipeline.

Assembles one client's daily run end to end:

    records -> entity metrics -> concept metrics -> percentiles
            -> classifications -> alerts -> account summary -> ClientSnapshot

build_client_snapshot is the pure, in-memory pipeline. compute_and_store
wraps it with the storage reads and writes; every write is one batched
statement per table.
"""

import logging
from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional

from gem_engine.core.config import get_settings
from gem_engine.core.database import execute_many, fetch_rows
from gem_engine.models.enums import AlertSeverity, AlertStrategy, BusinessType, EntityLevel
from gem_engine.models.schemas import (
    AccountSummary,
    AlertLogEntry,
    ClientSnapshot,
    ClientTargets,
    DailyPerformanceRecord,
    EngineConfig,
    EntityMetrics,
    SnapshotMeta,
)
from gem_engine.services.alerts import (
    build_alert_log,
    deduplicate_alerts,
    detect_alerts,
    fetch_alert_log,
    persist_alert_log,
)
from gem_engine.services.classification import classify_client_entities, persist_classifications
from gem_engine.services.config_store import get_engine_config
from gem_engine.services.metrics import (
    compute_all_entity_metrics,
    compute_concept_metrics,
    compute_mtd,
    fetch_daily_records,
    history_start,
    persist_entity_metrics,
)
from gem_engine.services.percentiles import (
    MIN_ENTITIES_FOR_PERCENTILES,
    compute_percentiles_by_level,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Pure Pipeline
# =============================================================================


def build_client_snapshot(
    client_id: str,
    records: List[DailyPerformanceRecord],
    config: EngineConfig,
    as_of: date,
    targets: Optional[ClientTargets] = None,
    previous_log: Optional[List[AlertLogEntry]] = None,
    strategy: AlertStrategy = AlertStrategy.CORE,
    min_entities: int = MIN_ENTITIES_FOR_PERCENTILES,
) -> ClientSnapshot:
    """
    Run the full classification pipeline for one client in memory.

    Args:
        client_id: Client being processed. Records of other clients are ignored.
        records: Daily records covering at least the trailing 30 days.
        config: Client engine config.
        as_of: Last fully synced day; also the classification date.
        targets: Business type and targets.
        previous_log: Alert log entries already persisted today. Only
            newAlerts is filtered by it; alerts always holds the full day.
        strategy: Alert detection set.
        min_entities: Population size for sampled percentile bands.

    Returns:
        ClientSnapshot: Identical inputs give an identical snapshot.
    """
    targets = targets or ClientTargets()
    business_type = targets.businessType

    own_records = [r for r in records if r.clientId == client_id]
    if len(own_records) != len(records):
        logger.warning(f"{client_id}: ignoring {len(records) - len(own_records)} records of other clients")

    metrics = compute_all_entity_metrics(own_records, as_of, business_type)
    concepts = compute_concept_metrics(
        own_records,
        as_of,
        business_type,
        concentration_threshold=config.fatigue.concentrationThreshold,
    )
    percentiles = compute_percentiles_by_level(metrics, min_entities)

    classifications = classify_client_entities(
        client_id,
        metrics,
        config,
        run_date=as_of,
        concepts=concepts,
        percentiles=percentiles,
        min_entities=min_entities,
    )

    alerts = detect_alerts(
        client_id,
        metrics,
        classifications,
        config,
        run_date=as_of,
        targets=targets,
        strategy=strategy,
    )
    new_alerts = deduplicate_alerts(alerts, previous_log, as_of)
    logger.info(
        f"{client_id}: {len(alerts)} alert(s), {len(new_alerts)} new, with strategy {strategy.value}"
    )

    entities: Dict[EntityLevel, List[EntityMetrics]] = defaultdict(list)
    for m in metrics:
        entities[m.level].append(m)

    account_metrics = entities.get(EntityLevel.ACCOUNT) or []
    summary = AccountSummary(
        rolling=account_metrics[0] if account_metrics else None,
        mtd=compute_mtd(own_records, as_of, business_type),
    )

    classified = {(c.level, c.entityId) for c in classifications}
    skipped = sorted(
        m.entityId for m in metrics
        if m.spend_14d > 0 and (m.level, m.entityId) not in classified
    )

    meta = SnapshotMeta(
        entityCounts={level.value: len(items) for level, items in entities.items()},
        alertCounts={
            severity.value: sum(1 for a in alerts if a.severity == severity)
            for severity in AlertSeverity
        },
        classifiedCount=len(classifications),
        skippedEntities=skipped,
    )

    return ClientSnapshot(
        clientId=client_id,
        computedDate=as_of,
        businessType=business_type,
        title=config.dailySnapshotTitle,
        entities=dict(entities),
        concepts=concepts,
        percentiles=percentiles,
        classifications=classifications,
        alerts=alerts,
        newAlerts=new_alerts,
        accountSummary=summary,
        meta=meta,
    )


# =============================================================================
# Database Operations
# =============================================================================


async def fetch_client_targets(client_id: str) -> ClientTargets:
    """Business type and targets from the clients table; defaults when absent."""
    rows = await fetch_rows(
        "SELECT business_type, target_cpa, target_roas FROM clients WHERE client_id = $1",
        client_id,
    )
    if not rows:
        return ClientTargets()

    row = rows[0]
    return ClientTargets(
        businessType=BusinessType(row['business_type'] or BusinessType.ECOMMERCE.value),
        targetCpa=row['target_cpa'],
        targetRoas=row['target_roas'],
    )


async def persist_client_snapshot(snapshot: ClientSnapshot) -> int:
    """Upsert the snapshot document for (client, date)."""
    query = """
        INSERT INTO client_snapshots (client_id, computed_date, document, updated_at)
        VALUES ($1, $2, $3::jsonb, NOW())
        ON CONFLICT (client_id, computed_date)
        DO UPDATE SET document = EXCLUDED.document, updated_at = NOW()
    """
    return await execute_many(query, [
        (snapshot.clientId, snapshot.computedDate, snapshot.model_dump_json())
    ])


async def compute_and_store(
    client_id: str,
    as_of: date,
    strategy: AlertStrategy = AlertStrategy.CORE,
) -> ClientSnapshot:
    """
    Load inputs, run the pipeline and persist every output for one client.

    Storage errors propagate; the caller decides about retries.

    Returns:
        ClientSnapshot: The persisted snapshot.
    """
    settings = get_settings()

    config = await get_engine_config(client_id)
    targets = await fetch_client_targets(client_id)

    start = min(history_start(as_of, settings.history_window_days), as_of.replace(day=1))
    records = await fetch_daily_records(client_id, start, as_of)
    previous_log = await fetch_alert_log(client_id, as_of)

    snapshot = build_client_snapshot(
        client_id,
        records,
        config,
        as_of,
        targets=targets,
        previous_log=previous_log,
        strategy=strategy,
        min_entities=settings.percentile_min_entities,
    )

    all_metrics = [m for level_metrics in snapshot.entities.values() for m in level_metrics]
    await persist_entity_metrics(all_metrics)
    await persist_classifications(snapshot.classifications)
    await persist_alert_log(build_alert_log(snapshot.newAlerts))
    await persist_client_snapshot(snapshot)

    logger.info(
        f"{client_id}: snapshot for {as_of} stored "
        f"({snapshot.meta.classifiedCount} classified, {len(snapshot.alerts)} alerts, "
        f"{len(snapshot.newAlerts)} new)"
    )
    return snapshot


__all__ = [
    'build_client_snapshot',
    'fetch_client_targets',
    'persist_client_snapshot',
    'compute_and_store',
]
