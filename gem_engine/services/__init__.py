"""
GEM Engine Services

Business logic for the classification and alerting core. Compute functions
are stateless and pure; storage access is confined to the fetch_*/persist_*
repository functions and the config store.

Services:
- metrics: Rolling-window aggregation of daily records
- percentiles: Client-relative p10/p50/p90 bands
- classification: Four-axis classification and final decision
- alerts: Alert detection, rendering, de-duplication and ordering
- config_store: Per-client EngineConfig load, merge and update
- snapshot: Per-client pipeline and persistence
"""

# =============================================================================
# Metrics Aggregator
# Trailing-window sums, ratios and deltas per entity, concept and month
# =============================================================================

from gem_engine.services.metrics import (
    safe_ratio,
    calc_delta_pct,
    compute_entity_metrics,
    compute_all_entity_metrics,
    compute_concept_metrics,
    compute_mtd,
    group_records,
    parse_daily_records,
    fetch_daily_records,
    persist_entity_metrics,
)

# =============================================================================
# Percentile Calculator
# Client-relative normalization bands with fixed defaults for small clients
# =============================================================================

from gem_engine.services.percentiles import (
    MIN_ENTITIES_FOR_PERCENTILES,
    DEFAULT_BANDS,
    compute_client_percentiles,
    compute_percentiles_by_level,
    default_percentiles,
)

# =============================================================================
# Classification Engine
# Learning, intent, fatigue and structure axes reduced to one decision
# =============================================================================

from gem_engine.services.classification import (
    classify_entity,
    classify_client_entities,
    classify_learning_state,
    compute_intent,
    classify_fatigue,
    classify_structure,
    determine_final_decision,
    persist_classifications,
)

# =============================================================================
# Alert Engine
# =============================================================================

from gem_engine.services.alerts import (
    detect_alerts,
    run_alert_engine,
    deduplicate_alerts,
    sort_alerts,
    build_alert_log,
    render_template,
    fetch_alert_log,
    persist_alert_log,
)

# =============================================================================
# Configuration Store
# =============================================================================

from gem_engine.services.config_store import (
    get_default_engine_config,
    merge_engine_config,
    get_engine_config,
    update_engine_config,
)

# =============================================================================
# Client Snapshot Pipeline
# =============================================================================

from gem_engine.services.snapshot import (
    build_client_snapshot,
    compute_and_store,
)

__all__ = [
    'safe_ratio',
    'calc_delta_pct',
    'compute_entity_metrics',
    'compute_all_entity_metrics',
    'compute_concept_metrics',
    'compute_mtd',
    'group_records',
    'parse_daily_records',
    'fetch_daily_records',
    'persist_entity_metrics',
    'MIN_ENTITIES_FOR_PERCENTILES',
    'DEFAULT_BANDS',
    'compute_client_percentiles',
    'compute_percentiles_by_level',
    'default_percentiles',
    'classify_entity',
    'classify_client_entities',
    'classify_learning_state',
    'compute_intent',
    'classify_fatigue',
    'classify_structure',
    'determine_final_decision',
    'persist_classifications',
    'detect_alerts',
    'run_alert_engine',
    'deduplicate_alerts',
    'sort_alerts',
    'build_alert_log',
    'render_template',
    'fetch_alert_log',
    'persist_alert_log',
    'get_default_engine_config',
    'merge_engine_config',
    'get_engine_config',
    'update_engine_config',
    'build_client_snapshot',
    'compute_and_store',
]
