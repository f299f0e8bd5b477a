"""
Rolling metrics aggregation service for the GEM engine.

This module turns per-day performance records into rolling-window aggregates
for every entity, creative concept and the account month-to-date.

Key Functions:
- compute_entity_metrics: Rolling metrics for one entity's daily records
- compute_all_entity_metrics: Group a client's records and aggregate each entity
- compute_concept_metrics: Concept-level metrics built from ad records
- compute_mtd: Month-to-date totals for the account
- parse_daily_records: Validate raw rows, skipping malformed ones
- fetch_daily_records: Load a client's daily records from storage
- persist_entity_metrics: Batched upsert of rolling metrics

Windowing:
- Windows are trailing calendar days ending at as_of (the last synced day).
- Days with no record count as zero activity in sums.
- Daily frequency is averaged over the days that have a record only.
- A window shorter than its nominal length still produces a value.

Derived Metrics:
- cpa = spend / conversions
- roas = revenue / spend
- ctr = clicks / impressions * 100
- fitr = purchases / clicks
- conv_rate = purchases / impressions
- hookRate = hookViews / impressions * 100
- delta_pct = (current / previous - 1) * 100

Every ratio is None when its denominator is zero. Deltas are None when the
previous value is zero or undefined.
"""

import json
import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from pydantic import ValidationError

from gem_engine.core.database import execute_many, fetch_rows
from gem_engine.core.exceptions import InputMalformedError
from gem_engine.models.enums import BusinessType, EntityLevel
from gem_engine.models.schemas import (
    ConceptMetrics,
    DailyPerformanceRecord,
    EntityMetrics,
    MTDAggregation,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

FLOW_COLUMNS = [
    'spend',
    'impressions',
    'reach',
    'clicks',
    'purchases',
    'revenue',
    'leads',
    'messagingConversations',
    'installs',
    'addToCart',
    'checkout',
    'hookViews',
]

# Primary conversion counter per business type
CONVERSION_COLUMN: Dict[BusinessType, str] = {
    BusinessType.ECOMMERCE: 'purchases',
    BusinessType.LEADS: 'leads',
    BusinessType.WHATSAPP: 'messagingConversations',
    BusinessType.APPS: 'installs',
}

# Minimum days of history for the 3d-vs-prior-3d budget comparison
BUDGET_CHANGE_MIN_HISTORY_DAYS = 6

# Concepts below this 7d spend never carry the fatigue flag
CONCEPT_FATIGUE_MIN_SPEND = 50.0

LEVEL_ORDER = {
    EntityLevel.ACCOUNT: 0,
    EntityLevel.CAMPAIGN: 1,
    EntityLevel.ADSET: 2,
    EntityLevel.AD: 3,
}

RATIO_PRECISION = 4


# =============================================================================
# Ratio Helpers
# =============================================================================


def safe_ratio(
    numerator: Optional[float],
    denominator: Optional[float],
    scale: float = 1.0,
) -> Optional[float]:
    """
    Divide with a zero guard.

    Args:
        numerator: Value on top.
        denominator: Value below. Zero, negative or None gives None.
        scale: Multiplier applied to the ratio (100 for percentages).

    Returns:
        The ratio rounded to 4 decimals, or None when undefined.

    Example:
        >>> safe_ratio(30, 1000, scale=100)
        3.0
        >>> safe_ratio(5, 0) is None
        True
    """
    if numerator is None or denominator is None or denominator <= 0:
        return None
    return round(float(numerator) / float(denominator) * scale, RATIO_PRECISION)


def calc_delta_pct(current: Optional[float], previous: Optional[float]) -> Optional[float]:
    """
    Percent change from previous to current.

    Returns None when either side is undefined or previous is zero.

    Example:
        >>> calc_delta_pct(132.0, 100.0)
        32.0
    """
    if current is None or previous is None or previous == 0:
        return None
    return round((float(current) / float(previous) - 1.0) * 100.0, RATIO_PRECISION)


def _optional(value: Any) -> Optional[float]:
    """NaN and None both mean 'no data'."""
    if value is None or pd.isna(value):
        return None
    return round(float(value), RATIO_PRECISION)


# =============================================================================
# Frame Construction
# =============================================================================


def _records_frame(records: Iterable[DailyPerformanceRecord], as_of: date) -> pd.DataFrame:
    """
    Build a per-day frame from records on or before as_of.

    Duplicate dates keep the last record. Adds a derived daily frequency
    column and a budget column (dailyBudget, else spend).
    """
    rows = [r.model_dump() for r in records if r.date <= as_of]
    if not rows:
        return pd.DataFrame()

    df = pd.DataFrame(rows)
    df = df.sort_values('date', kind='stable')

    duplicated = df.duplicated(subset='date', keep='last')
    if duplicated.any():
        logger.warning(
            f"{df['entityId'].iloc[0]}: {int(duplicated.sum())} duplicate daily "
            f"record(s), keeping the latest per date"
        )
        df = df[~duplicated]

    reported = pd.to_numeric(df['frequency'], errors='coerce')
    derived = df['impressions'] / df['reach'].where(df['reach'] > 0)
    df['frequency'] = reported.fillna(derived)
    df['budget'] = pd.to_numeric(df['dailyBudget'], errors='coerce').fillna(df['spend'])
    df['date'] = pd.to_datetime(df['date'])
    return df


def _calendar(df: pd.DataFrame, as_of: date) -> pd.DataFrame:
    """
    Reindex a per-day frame onto a contiguous calendar ending at as_of.

    Missing days get zero flows and NaN frequency.
    """
    calendar = pd.date_range(start=df['date'].min(), end=pd.Timestamp(as_of), freq='D')
    daily = df.set_index('date').reindex(calendar)
    daily[FLOW_COLUMNS] = daily[FLOW_COLUMNS].fillna(0.0)
    daily['budget'] = daily['budget'].fillna(0.0)
    return daily


def _window(daily: pd.DataFrame, as_of: date, days: int, offset: int = 0) -> pd.DataFrame:
    """Trailing `days` rows ending `offset` days before as_of."""
    end = pd.Timestamp(as_of) - pd.Timedelta(days=offset)
    start = end - pd.Timedelta(days=days - 1)
    return daily.loc[start:end]


def _coefficient_of_variation(values: pd.Series) -> Optional[float]:
    if len(values) < 2:
        return None
    mean_val = float(np.mean(values))
    if mean_val == 0:
        return None
    # Population std (ddof=0)
    return round(float(np.std(values)) / mean_val, RATIO_PRECISION)


def _window_stats(daily: pd.DataFrame, as_of: date, conversion_col: str) -> Dict[str, Any]:
    """Compute every rolling field shared by entities and concepts."""
    w3 = _window(daily, as_of, 3)
    w7 = _window(daily, as_of, 7)
    w14 = _window(daily, as_of, 14)
    w30 = _window(daily, as_of, 30)
    prev7 = _window(daily, as_of, 7, offset=7)

    spend_3d = float(w3['spend'].sum())
    spend_7d = float(w7['spend'].sum())
    spend_14d = float(w14['spend'].sum())
    spend_prev7 = float(prev7['spend'].sum())

    conv_3d = float(w3[conversion_col].sum())
    conv_7d = float(w7[conversion_col].sum())
    conv_14d = float(w14[conversion_col].sum())

    impressions_7d = float(w7['impressions'].sum())
    impressions_prev7 = float(prev7['impressions'].sum())
    clicks_7d = float(w7['clicks'].sum())
    purchases_7d = float(w7['purchases'].sum())
    revenue_7d = float(w7['revenue'].sum())

    cpa_7d = safe_ratio(spend_7d, conv_7d)
    cpa_14d = safe_ratio(spend_14d, conv_14d)
    roas_7d = safe_ratio(revenue_7d, spend_7d)
    roas_prev7 = safe_ratio(float(prev7['revenue'].sum()), spend_prev7)
    ctr_7d = safe_ratio(clicks_7d, impressions_7d, scale=100.0)
    ctr_prev7 = safe_ratio(float(prev7['clicks'].sum()), impressions_prev7, scale=100.0)
    hook_rate_7d = safe_ratio(float(w7['hookViews'].sum()), impressions_7d, scale=100.0)
    hook_rate_14d = safe_ratio(float(w14['hookViews'].sum()), float(w14['impressions'].sum()), scale=100.0)
    hook_rate_prev7 = safe_ratio(float(prev7['hookViews'].sum()), impressions_prev7, scale=100.0)

    budget_change = None
    if len(daily) >= BUDGET_CHANGE_MIN_HISTORY_DAYS:
        budget_change = calc_delta_pct(
            float(w3['budget'].mean()),
            float(_window(daily, as_of, 3, offset=3)['budget'].mean()),
        )

    return {
        'spend_3d': spend_3d,
        'spend_7d': spend_7d,
        'spend_14d': spend_14d,
        'spend_30d': float(w30['spend'].sum()),
        'impressions_7d': impressions_7d,
        'reach_7d': float(w7['reach'].sum()),
        'clicks_7d': clicks_7d,
        'conversions_7d': conv_7d,
        'conversions_14d': conv_14d,
        'purchases_7d': purchases_7d,
        'revenue_7d': revenue_7d,
        'checkout_7d': float(w7['checkout'].sum()),
        'addToCart_7d': float(w7['addToCart'].sum()),
        'leads_7d': float(w7['leads'].sum()),
        'messaging_7d': float(w7['messagingConversations'].sum()),
        'installs_7d': float(w7['installs'].sum()),
        'cpa_3d': safe_ratio(spend_3d, conv_3d),
        'cpa_7d': cpa_7d,
        'cpa_14d': cpa_14d,
        'cpa_delta_pct': calc_delta_pct(cpa_7d, cpa_14d),
        'roas_7d': roas_7d,
        'roas_delta_pct': calc_delta_pct(roas_7d, roas_prev7),
        'ctr_7d': ctr_7d,
        'ctr_delta_pct': calc_delta_pct(ctr_7d, ctr_prev7),
        'fitr_7d': safe_ratio(purchases_7d, clicks_7d),
        'conv_rate_7d': safe_ratio(purchases_7d, impressions_7d),
        'conversion_velocity_7d': round(conv_7d / 7.0, RATIO_PRECISION),
        'frequency_7d': _optional(w7['frequency'].mean()),
        'hookRate_7d': hook_rate_7d,
        'hookRate_14d': hook_rate_14d,
        'hookRate_delta_pct': calc_delta_pct(hook_rate_7d, hook_rate_prev7),
        'conversions_cv_7d': _coefficient_of_variation(w7[conversion_col]),
        'budget_change_3d_pct': budget_change,
        'daysOfHistory': len(daily),
    }


# =============================================================================
# Entity Metrics
# =============================================================================


def compute_entity_metrics(
    records: List[DailyPerformanceRecord],
    as_of: Optional[date] = None,
    business_type: BusinessType = BusinessType.ECOMMERCE,
) -> EntityMetrics:
    """
    Compute rolling metrics for one entity.

    Args:
        records: Daily records of a single (clientId, level, entityId).
        as_of: Last fully synced day. Defaults to the latest record date.
            Records after as_of are ignored.
        business_type: Selects the primary conversion counter.

    Returns:
        EntityMetrics: Rolling aggregates. With no records on or before
            as_of, all sums are zero and all ratios are None.

    Raises:
        InputMalformedError: If records is empty or mixes entities.
    """
    if not records:
        raise InputMalformedError("no daily records")

    keys = {(r.clientId, r.level, r.entityId) for r in records}
    if len(keys) > 1:
        raise InputMalformedError(
            f"records span {len(keys)} entities", entity_id=records[0].entityId
        )

    first = records[0]
    as_of = as_of or max(r.date for r in records)

    df = _records_frame(records, as_of)
    if df.empty:
        return EntityMetrics(
            clientId=first.clientId,
            level=first.level,
            entityId=first.entityId,
            name=first.name,
            parentId=first.parentId,
            conceptId=first.conceptId,
            lastUpdate=as_of,
        )

    latest = df.iloc[-1]
    daily = _calendar(df, as_of)
    stats = _window_stats(daily, as_of, CONVERSION_COLUMN[business_type])

    days_active = _latest_int(df, 'daysActive')
    if days_active is None:
        days_active = int((daily['spend'] > 0).sum())

    # Stale edit counters age with the gap to as_of
    days_since_edit = _latest_int(df, 'daysSinceLastEdit')
    if days_since_edit is not None:
        last_reported = df.loc[df['daysSinceLastEdit'].notna(), 'date'].iloc[-1]
        days_since_edit += (pd.Timestamp(as_of) - last_reported).days

    return EntityMetrics(
        clientId=first.clientId,
        level=first.level,
        entityId=first.entityId,
        name=_optional_str(latest['name']),
        parentId=_optional_str(latest['parentId']),
        conceptId=_optional_str(latest['conceptId']),
        lastUpdate=as_of,
        daysActive=days_active,
        daysSinceLastEdit=days_since_edit,
        **stats,
    )


def _optional_str(value: Any) -> Optional[str]:
    if value is None or pd.isna(value):
        return None
    return str(value)


def _latest_int(df: pd.DataFrame, column: str) -> Optional[int]:
    values = pd.to_numeric(df[column], errors='coerce').dropna()
    if values.empty:
        return None
    return int(values.iloc[-1])


def group_records(
    records: Iterable[DailyPerformanceRecord],
) -> Dict[Tuple[EntityLevel, str], List[DailyPerformanceRecord]]:
    """Group records by (level, entityId), preserving input order."""
    grouped: Dict[Tuple[EntityLevel, str], List[DailyPerformanceRecord]] = defaultdict(list)
    for record in records:
        grouped[(record.level, record.entityId)].append(record)
    return dict(grouped)


def compute_all_entity_metrics(
    records: Iterable[DailyPerformanceRecord],
    as_of: date,
    business_type: BusinessType = BusinessType.ECOMMERCE,
) -> List[EntityMetrics]:
    """
    Aggregate every entity in a client's records.

    Entities whose records are malformed are skipped with a warning.

    Returns:
        List[EntityMetrics]: Sorted by level (account first) then entityId.
    """
    results: List[EntityMetrics] = []

    for (level, entity_id), entity_records in group_records(records).items():
        try:
            results.append(compute_entity_metrics(entity_records, as_of, business_type))
        except InputMalformedError as e:
            logger.warning(f"Skipping {level.value} {entity_id}: {e}")

    results.sort(key=lambda m: (LEVEL_ORDER[m.level], m.entityId))
    return results


# =============================================================================
# Concept Metrics
# =============================================================================


def compute_concept_metrics(
    records: Iterable[DailyPerformanceRecord],
    as_of: date,
    business_type: BusinessType = BusinessType.ECOMMERCE,
    concentration_threshold: float = 0.6,
) -> List[ConceptMetrics]:
    """
    Aggregate ad-level records into creative concepts.

    Ads sharing a conceptId are summed per day before windowing, so concept
    CPA and hook-rate deltas are spend-weighted across its ads.

    Args:
        records: Any client records. Only ad-level records with a conceptId
            are used.
        as_of: Last fully synced day.
        business_type: Selects the primary conversion counter.
        concentration_threshold: Top-ad spend share above which a concept
            with meaningful spend is flagged as fatigued.

    Returns:
        List[ConceptMetrics]: One entry per concept, sorted by conceptId.
    """
    by_concept: Dict[str, List[DailyPerformanceRecord]] = defaultdict(list)
    for record in records:
        if record.level == EntityLevel.AD and record.conceptId and record.date <= as_of:
            by_concept[record.conceptId].append(record)

    conversion_col = CONVERSION_COLUMN[business_type]
    results: List[ConceptMetrics] = []

    for concept_id in sorted(by_concept):
        concept_records = by_concept[concept_id]
        frames = []
        ad_spend_7d: Dict[str, float] = {}

        for ad_id, ad_records in group_records(concept_records).items():
            ad_df = _records_frame(ad_records, as_of)
            frames.append(ad_df)
            ad_spend_7d[ad_id[1]] = float(_window(_calendar(ad_df, as_of), as_of, 7)['spend'].sum())

        combined = pd.concat(frames, ignore_index=True)
        per_day = combined.groupby('date', as_index=False).agg(
            {**{col: 'sum' for col in FLOW_COLUMNS + ['budget']}, 'frequency': 'mean'}
        )
        stats = _window_stats(_calendar(per_day, as_of), as_of, conversion_col)

        spend_7d = stats['spend_7d']
        top1 = safe_ratio(max(ad_spend_7d.values(), default=0.0), spend_7d)
        fatigue_flag = (
            top1 is not None
            and top1 > concentration_threshold
            and spend_7d > CONCEPT_FATIGUE_MIN_SPEND
        )

        results.append(ConceptMetrics(
            clientId=concept_records[0].clientId,
            conceptId=concept_id,
            adCount=len(ad_spend_7d),
            spend_7d=spend_7d,
            spend_14d=stats['spend_14d'],
            conversions_7d=stats['conversions_7d'],
            cpa_7d=stats['cpa_7d'],
            cpa_14d=stats['cpa_14d'],
            frequency_7d=stats['frequency_7d'],
            hookRate_delta_pct=stats['hookRate_delta_pct'],
            spend_concentration_top1=top1,
            fatigue_flag=fatigue_flag,
        ))

    return results


# =============================================================================
# Month-to-Date
# =============================================================================


def compute_mtd(
    records: Iterable[DailyPerformanceRecord],
    as_of: date,
    business_type: BusinessType = BusinessType.ECOMMERCE,
) -> Optional[MTDAggregation]:
    """
    Month-to-date totals for the account.

    Uses account-level records when present, otherwise sums campaign-level
    records. Returns None when neither level has data this month.
    """
    month_start = as_of.replace(day=1)
    in_month = [r for r in records if month_start <= r.date <= as_of]

    source = [r for r in in_month if r.level == EntityLevel.ACCOUNT]
    if not source:
        source = [r for r in in_month if r.level == EntityLevel.CAMPAIGN]
    if not source:
        return None

    conversion_col = CONVERSION_COLUMN[business_type]
    df = pd.DataFrame([r.model_dump() for r in source])
    df = df.drop_duplicates(subset=['entityId', 'date'], keep='last')

    spend = float(df['spend'].sum())
    conversions = float(df[conversion_col].sum())
    revenue = float(df['revenue'].sum())

    return MTDAggregation(
        month=as_of.strftime('%Y-%m'),
        daysElapsed=(as_of - month_start).days + 1,
        spend=spend,
        impressions=float(df['impressions'].sum()),
        clicks=float(df['clicks'].sum()),
        conversions=conversions,
        revenue=revenue,
        cpa=safe_ratio(spend, conversions),
        roas=safe_ratio(revenue, spend),
    )


# =============================================================================
# Record Parsing
# =============================================================================


def parse_daily_record(row: Mapping[str, Any]) -> DailyPerformanceRecord:
    """
    Validate one raw row.

    Raises:
        InputMalformedError: If the row fails validation.
    """
    try:
        return DailyPerformanceRecord.model_validate(dict(row))
    except ValidationError as e:
        raise InputMalformedError(
            f"invalid daily record ({e.error_count()} error(s))",
            entity_id=row.get('entityId'),
        ) from e


def parse_daily_records(rows: Iterable[Mapping[str, Any]]) -> List[DailyPerformanceRecord]:
    """Validate raw rows, skipping and logging malformed ones."""
    records: List[DailyPerformanceRecord] = []
    skipped = 0

    for row in rows:
        try:
            records.append(parse_daily_record(row))
        except InputMalformedError as e:
            skipped += 1
            logger.warning(f"Skipping malformed record: {e}")

    if skipped:
        logger.info(f"Parsed {len(records)} daily records, skipped {skipped}")
    return records


# =============================================================================
# Database Operations
# =============================================================================


async def fetch_daily_records(
    client_id: str,
    start: date,
    end: date,
) -> List[DailyPerformanceRecord]:
    """
    Load a client's daily records for [start, end] from storage.

    Rows store the record body as a JSONB payload next to the key columns.
    """
    query = """
        SELECT client_id, level, entity_id, date, payload
        FROM daily_entity_snapshots
        WHERE client_id = $1 AND date BETWEEN $2 AND $3
        ORDER BY level, entity_id, date
    """
    rows = await fetch_rows(query, client_id, start, end)

    raw: List[Dict[str, Any]] = []
    for row in rows:
        payload = row['payload']
        if isinstance(payload, str):
            payload = json.loads(payload)
        raw.append({
            **(payload or {}),
            'clientId': row['client_id'],
            'level': row['level'],
            'entityId': row['entity_id'],
            'date': row['date'],
        })

    return parse_daily_records(raw)


async def persist_entity_metrics(metrics: List[EntityMetrics]) -> int:
    """
    Upsert rolling metrics, one row per (client, level, entity).

    Returns:
        int: Number of rows written.
    """
    query = """
        INSERT INTO entity_rolling_metrics (
            client_id, level, entity_id, as_of, rolling, updated_at
        ) VALUES ($1, $2, $3, $4, $5::jsonb, NOW())
        ON CONFLICT (client_id, level, entity_id)
        DO UPDATE SET
            as_of = EXCLUDED.as_of,
            rolling = EXCLUDED.rolling,
            updated_at = NOW()
    """
    written = await execute_many(query, (
        (m.clientId, m.level.value, m.entityId, m.lastUpdate, m.model_dump_json())
        for m in metrics
    ))
    logger.info(f"Persisted rolling metrics for {written} entities")
    return written


def history_start(as_of: date, window_days: int) -> date:
    """First day of the trailing history window ending at as_of."""
    return as_of - timedelta(days=window_days - 1)


__all__ = [
    'FLOW_COLUMNS',
    'CONVERSION_COLUMN',
    'safe_ratio',
    'calc_delta_pct',
    'compute_entity_metrics',
    'compute_all_entity_metrics',
    'group_records',
    'compute_concept_metrics',
    'compute_mtd',
    'parse_daily_record',
    'parse_daily_records',
    'fetch_daily_records',
    'persist_entity_metrics',
    'history_start',
]
