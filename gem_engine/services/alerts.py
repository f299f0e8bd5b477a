"""
Alert engine for the GEM engine.

Scans a client's rolling metrics and today's classifications and emits
prioritized alerts. Each detection is a small function returning a Detection
or None; the strategy picks which detections run.

Strategies (passed explicitly per run):
- CORE:
    LEARNING_RESET_RISK (WARNING): |budget_change_3d_pct| above
        alerts.learningResetBudgetChangePct
    SCALING_FREQUENCY_CEILING (INFO): EXPLOITATION with frequency_7d above
        alerts.scalingFrequencyMax
    KILL_RETRY (CRITICAL): classification decided KILL_RETRY
- EXTENDED: CORE plus CPA_SPIKE, BUDGET_BLEED, ROAS_DROP, CPA_VOLATILITY,
  ROTATE_CONCEPT, CONSOLIDATE, SCALING_OPPORTUNITY, INTRODUCE_BOFU_VARIANTS

Pipeline:
1. Run detections per entity
2. Drop types missing from config.enabledAlerts (when set)
3. Render title/description from config.alertTemplates
4. Suppress alerts already logged for the same (client, level, entity, type) today
5. Sort: CRITICAL > WARNING > INFO, then impactScore descending
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from gem_engine.core.database import execute_many, fetch_rows
from gem_engine.models.enums import (
    PARENT_LEVEL,
    SEVERITY_RANK,
    AlertSeverity,
    AlertStrategy,
    AlertType,
    BusinessType,
    EntityLevel,
    FatigueState,
    FinalDecision,
    LearningState,
    StructuralState,
)
from gem_engine.models.schemas import (
    Alert,
    AlertLogEntry,
    AlertTemplate,
    ClientTargets,
    EngineConfig,
    EntityClassification,
    EntityMetrics,
    default_alert_templates,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

ALERT_SEVERITY: Dict[AlertType, AlertSeverity] = {
    AlertType.LEARNING_RESET_RISK: AlertSeverity.WARNING,
    AlertType.SCALING_FREQUENCY_CEILING: AlertSeverity.INFO,
    AlertType.KILL_RETRY: AlertSeverity.CRITICAL,
    AlertType.CPA_SPIKE: AlertSeverity.CRITICAL,
    AlertType.BUDGET_BLEED: AlertSeverity.CRITICAL,
    AlertType.ROAS_DROP: AlertSeverity.WARNING,
    AlertType.CPA_VOLATILITY: AlertSeverity.WARNING,
    AlertType.ROTATE_CONCEPT: AlertSeverity.WARNING,
    AlertType.CONSOLIDATE: AlertSeverity.WARNING,
    AlertType.SCALING_OPPORTUNITY: AlertSeverity.INFO,
    AlertType.INTRODUCE_BOFU_VARIANTS: AlertSeverity.INFO,
}

CONVERSION_LABEL: Dict[BusinessType, str] = {
    BusinessType.ECOMMERCE: 'purchases',
    BusinessType.LEADS: 'leads',
    BusinessType.WHATSAPP: 'conversations',
    BusinessType.APPS: 'installs',
}

# Spend above this multiple of target CPA with zero conversions is a bleed
BUDGET_BLEED_TARGET_MULTIPLE = 2.0

# Minimum conversions per day before a scaling opportunity is worth flagging
SCALING_MIN_VELOCITY = 0.5


# =============================================================================
# Detection
# =============================================================================


@dataclass
class Detection:
    """
    One fired detection before rendering.

    Attributes:
        type: Alert type.
        evidence: Facts with the numbers that fired it.
        values: Placeholder values for the alert template.
    """
    type: AlertType
    evidence: List[str] = field(default_factory=list)
    values: Dict[str, str] = field(default_factory=dict)


DetectorFn = Callable[
    [EntityMetrics, Optional[EntityClassification], EngineConfig, ClientTargets],
    Optional[Detection],
]


def _fmt(value: Optional[float], digits: int = 2) -> str:
    return "n/a" if value is None else f"{value:.{digits}f}"


# -- core ---------------------------------------------------------------------


def detect_learning_reset_risk(metrics, classification, config, targets) -> Optional[Detection]:
    change = metrics.budget_change_3d_pct
    limit = config.alerts.learningResetBudgetChangePct
    if change is None or abs(change) <= limit:
        return None
    return Detection(
        AlertType.LEARNING_RESET_RISK,
        [f"budget_change_3d_pct {change:+.1f}% exceeds {limit:.0f}%"],
        {'budgetChange': f"{change:+.1f}", 'threshold': f"{limit:.0f}", 'threshold_pct': f"{limit:.0f}"},
    )


def detect_scaling_frequency_ceiling(metrics, classification, config, targets) -> Optional[Detection]:
    if classification is None or classification.learningState != LearningState.EXPLOITATION:
        return None
    frequency = metrics.frequency_7d
    ceiling = config.alerts.scalingFrequencyMax
    if frequency is None or frequency <= ceiling:
        return None
    return Detection(
        AlertType.SCALING_FREQUENCY_CEILING,
        [f"frequency_7d {frequency:.2f} above scaling ceiling {ceiling:.2f} in exploitation"],
        {'frequency': _fmt(frequency), 'threshold': _fmt(ceiling)},
    )


def detect_kill_retry(metrics, classification, config, targets) -> Optional[Detection]:
    if classification is None or classification.finalDecision != FinalDecision.KILL_RETRY:
        return None
    return Detection(
        AlertType.KILL_RETRY,
        list(classification.evidence),
        {'reason': "; ".join(classification.evidence)},
    )


# -- extended -----------------------------------------------------------------


def detect_cpa_spike(metrics, classification, config, targets) -> Optional[Detection]:
    delta = metrics.cpa_delta_pct
    limit = config.findings.cpaSpikeThreshold * 100
    if delta is None or delta <= limit:
        return None
    return Detection(
        AlertType.CPA_SPIKE,
        [f"cpa_7d {_fmt(metrics.cpa_7d)} is {delta:+.1f}% vs cpa_14d (limit +{limit:.0f}%)"],
        {'cpaDelta': f"{delta:+.1f}", 'cpa': _fmt(metrics.cpa_7d)},
    )


def detect_budget_bleed(metrics, classification, config, targets) -> Optional[Detection]:
    target_cpa = targets.targetCpa
    if target_cpa is None or metrics.conversions_7d > 0:
        return None
    if metrics.spend_7d <= target_cpa * BUDGET_BLEED_TARGET_MULTIPLE:
        return None
    label = CONVERSION_LABEL[targets.businessType]
    return Detection(
        AlertType.BUDGET_BLEED,
        [f"spend_7d {metrics.spend_7d:.2f} with 0 {label} (target CPA {target_cpa:.2f})"],
        {'spend': _fmt(metrics.spend_7d), 'targetCpa': _fmt(target_cpa), 'conversionLabel': label},
    )


def detect_roas_drop(metrics, classification, config, targets) -> Optional[Detection]:
    delta = metrics.roas_delta_pct
    limit = config.findings.roasDropThreshold * 100
    if delta is None or metrics.roas_7d is None or delta > limit:
        return None
    return Detection(
        AlertType.ROAS_DROP,
        [f"roas_7d {metrics.roas_7d:.2f} moved {delta:+.1f}% week over week (limit {limit:.0f}%)"],
        {'roasDelta': f"{delta:+.1f}", 'roas': _fmt(metrics.roas_7d)},
    )


def detect_cpa_volatility(metrics, classification, config, targets) -> Optional[Detection]:
    change = metrics.budget_change_3d_pct
    limit = config.findings.volatilityThreshold * 100
    if change is None or abs(change) <= limit:
        return None
    return Detection(
        AlertType.CPA_VOLATILITY,
        [f"budget_change_3d_pct {change:+.1f}% exceeds volatility limit {limit:.0f}%"],
        {'budgetChange': f"{change:+.1f}"},
    )


def detect_rotate_concept(metrics, classification, config, targets) -> Optional[Detection]:
    if classification is None:
        return None
    if classification.fatigueState not in (FatigueState.REAL, FatigueState.CONCEPT_DECAY):
        return None
    reason = f"fatigue {classification.fatigueState.value}"
    if classification.evidence:
        reason = f"{reason}: {'; '.join(classification.evidence)}"
    return Detection(AlertType.ROTATE_CONCEPT, [reason], {'reason': reason})


def detect_consolidate(metrics, classification, config, targets) -> Optional[Detection]:
    if classification is None or classification.structuralState == StructuralState.HEALTHY:
        return None
    reason = f"structure {classification.structuralState.value}"
    if classification.finalDecision == FinalDecision.CONSOLIDATE:
        reason = f"{reason}: {'; '.join(classification.evidence)}"
    return Detection(AlertType.CONSOLIDATE, [reason], {'reason': reason})


def detect_scaling_opportunity(metrics, classification, config, targets) -> Optional[Detection]:
    if classification is not None and classification.learningState == LearningState.UNSTABLE:
        return None
    frequency = metrics.frequency_7d
    if frequency is not None and frequency >= config.alerts.scalingFrequencyMax:
        return None
    velocity = metrics.conversion_velocity_7d
    if velocity is None or velocity <= SCALING_MIN_VELOCITY:
        return None

    efficient = (
        (targets.targetCpa is not None and metrics.cpa_7d is not None and metrics.cpa_7d <= targets.targetCpa)
        or (targets.targetRoas is not None and metrics.roas_7d is not None and metrics.roas_7d >= targets.targetRoas)
    )
    if not efficient:
        return None

    label = CONVERSION_LABEL[targets.businessType]
    return Detection(
        AlertType.SCALING_OPPORTUNITY,
        [
            f"cpa_7d {_fmt(metrics.cpa_7d)} vs target {_fmt(targets.targetCpa)}, "
            f"roas_7d {_fmt(metrics.roas_7d)}, {velocity:.2f} {label}/day, frequency {_fmt(frequency)}"
        ],
        {
            'cpa': _fmt(metrics.cpa_7d),
            'targetCpa': _fmt(targets.targetCpa),
            'conversions': f"{metrics.conversions_7d:.0f}",
            'conversionLabel': label,
            'frequency': _fmt(frequency),
        },
    )


def detect_introduce_bofu_variants(metrics, classification, config, targets) -> Optional[Detection]:
    if classification is None or classification.finalDecision != FinalDecision.INTRODUCE_BOFU_VARIANTS:
        return None
    return Detection(
        AlertType.INTRODUCE_BOFU_VARIANTS,
        list(classification.evidence),
        {'reason': "; ".join(classification.evidence)},
    )


CORE_DETECTORS: List[DetectorFn] = [
    detect_learning_reset_risk,
    detect_scaling_frequency_ceiling,
    detect_kill_retry,
]

EXTENDED_DETECTORS: List[DetectorFn] = CORE_DETECTORS + [
    detect_cpa_spike,
    detect_budget_bleed,
    detect_roas_drop,
    detect_cpa_volatility,
    detect_rotate_concept,
    detect_consolidate,
    detect_scaling_opportunity,
    detect_introduce_bofu_variants,
]

STRATEGY_DETECTORS: Dict[AlertStrategy, List[DetectorFn]] = {
    AlertStrategy.CORE: CORE_DETECTORS,
    AlertStrategy.EXTENDED: EXTENDED_DETECTORS,
}


# =============================================================================
# Rendering
# =============================================================================


class _TemplateValues(dict):
    """Leaves unknown placeholders in place."""

    def __missing__(self, key: str) -> str:
        return '{' + key + '}'


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """
    Substitute {placeholder} values into an alert template.

    Unknown placeholders are left untouched. A template that cannot be
    formatted at all is returned verbatim with a warning.

    Example:
        >>> render_template("CPA spike: {entityName} ({cpa})", {'entityName': 'Ad 1'})
        'CPA spike: Ad 1 ({cpa})'
    """
    try:
        return template.format_map(_TemplateValues(values))
    except (ValueError, AttributeError, IndexError) as e:
        logger.warning(f"Unrenderable alert template {template!r}: {e}")
        return template


def entity_label(metrics: EntityMetrics, by_key: Mapping[Tuple[EntityLevel, str], EntityMetrics]) -> str:
    """
    Readable name with parent context, e.g. "Campaign A > Adset B > Ad C".

    The account level is omitted. Unknown parents stop the walk.
    """
    parts = [metrics.name or metrics.entityId]
    current = metrics

    while current.parentId and current.level in PARENT_LEVEL:
        parent_level = PARENT_LEVEL[current.level]
        if parent_level == EntityLevel.ACCOUNT:
            break
        parent = by_key.get((parent_level, current.parentId))
        if parent is None:
            break
        parts.append(parent.name or parent.entityId)
        current = parent

    return " > ".join(reversed(parts))


def metric_values(
    metrics: EntityMetrics,
    classification: Optional[EntityClassification] = None,
) -> Dict[str, str]:
    """
    Placeholder values named after the metric fields, e.g. {cpa_7d}.

    Available to every template alongside the detection's own values, so
    templates written against metric names render without changes.
    """
    values = {
        'spend_7d': _fmt(metrics.spend_7d),
        'cpa_7d': _fmt(metrics.cpa_7d),
        'roas_7d': _fmt(metrics.roas_7d),
        'frequency_7d': _fmt(metrics.frequency_7d),
        'hook_rate_7d': _fmt(metrics.hookRate_7d),
        'budget_change_3d_pct': _fmt(metrics.budget_change_3d_pct, 1),
        'cpa_delta_pct': _fmt(metrics.cpa_delta_pct, 1),
        'roas_delta_pct': _fmt(metrics.roas_delta_pct, 1),
    }
    if classification is not None:
        values['fatigueLabel'] = classification.fatigueState.value
        values['structuralState'] = classification.structuralState.value
        values['learningState'] = classification.learningState.value
    return values


def build_alert(
    detection: Detection,
    metrics: EntityMetrics,
    entity_name: str,
    impact_score: float,
    config: EngineConfig,
    run_date: date,
    classification: Optional[EntityClassification] = None,
) -> Alert:
    """Render a Detection into an Alert."""
    template = config.alertTemplates.get(detection.type)
    if template is None:
        template = default_alert_templates().get(
            detection.type, AlertTemplate(title=detection.type.value)
        )

    values = {
        'entityName': entity_name,
        'entityId': metrics.entityId,
        **metric_values(metrics, classification),
        **detection.values,
    }

    return Alert(
        id=f"{detection.type.value}_{metrics.level.value}_{metrics.entityId}_{run_date.isoformat()}",
        clientId=metrics.clientId,
        level=metrics.level,
        entityId=metrics.entityId,
        entityName=entity_name,
        type=detection.type,
        severity=ALERT_SEVERITY[detection.type],
        title=render_template(template.title, values),
        description=render_template(template.description, values),
        evidence=detection.evidence,
        impactScore=impact_score,
        date=run_date,
    )


# =============================================================================
# De-duplication and Ordering
# =============================================================================


def deduplicate_alerts(
    alerts: List[Alert],
    previous_log: Optional[List[AlertLogEntry]],
    run_date: date,
) -> List[Alert]:
    """
    Drop alerts already emitted today for the same (client, level, entity, type).

    Log entries from other days never suppress anything.
    """
    seen = {
        (entry.clientId, entry.level, entry.entityId, entry.type)
        for entry in (previous_log or [])
        if entry.date == run_date
    }

    kept: List[Alert] = []
    for alert in alerts:
        key = (alert.clientId, alert.level, alert.entityId, alert.type)
        if key in seen:
            continue
        seen.add(key)
        kept.append(alert)

    suppressed = len(alerts) - len(kept)
    if suppressed:
        logger.info(f"Suppressed {suppressed} alert(s) already emitted on {run_date}")
    return kept


def sort_alerts(alerts: List[Alert]) -> List[Alert]:
    """Severity first, then impactScore descending, then entityId and type."""
    return sorted(
        alerts,
        key=lambda a: (SEVERITY_RANK[a.severity], -a.impactScore, a.entityId, a.type.value),
    )


def build_alert_log(alerts: List[Alert]) -> List[AlertLogEntry]:
    """Log entries the caller persists so the next run can de-duplicate."""
    return [
        AlertLogEntry(clientId=a.clientId, level=a.level, entityId=a.entityId, type=a.type, date=a.date)
        for a in alerts
    ]


# =============================================================================
# Engine
# =============================================================================


def detect_alerts(
    client_id: str,
    metrics: List[EntityMetrics],
    classifications: List[EntityClassification],
    config: EngineConfig,
    run_date: date,
    targets: Optional[ClientTargets] = None,
    strategy: AlertStrategy = AlertStrategy.CORE,
) -> List[Alert]:
    """
    Every alert that holds for the client on run_date, ordered, without
    consulting the alert log.

    Reruns on the same day return the same list; this is the day's alert
    state stored in the snapshot.
    """
    targets = targets or ClientTargets()
    detectors = STRATEGY_DETECTORS[strategy]
    enabled = set(config.enabledAlerts) if config.enabledAlerts is not None else None

    own = [m for m in metrics if m.clientId == client_id]
    by_key = {(m.level, m.entityId): m for m in own}
    classification_map = {
        (c.level, c.entityId): c for c in classifications if c.clientId == client_id
    }

    level_spend: Dict[EntityLevel, float] = {}
    for m in own:
        level_spend[m.level] = level_spend.get(m.level, 0.0) + m.spend_7d

    alerts: List[Alert] = []
    for m in own:
        classification = classification_map.get((m.level, m.entityId))
        if classification is not None:
            impact = classification.impactScore
        else:
            total = level_spend.get(m.level, 0.0)
            impact = round(min(1.0, m.spend_7d / total), 4) if total > 0 else 0.0

        for detector in detectors:
            detection = detector(m, classification, config, targets)
            if detection is None:
                continue
            if enabled is not None and detection.type not in enabled:
                continue
            alerts.append(build_alert(
                detection, m, entity_label(m, by_key), impact, config, run_date, classification
            ))

    return sort_alerts(alerts)


def run_alert_engine(
    client_id: str,
    metrics: List[EntityMetrics],
    classifications: List[EntityClassification],
    config: EngineConfig,
    run_date: date,
    previous_log: Optional[List[AlertLogEntry]] = None,
    targets: Optional[ClientTargets] = None,
    strategy: AlertStrategy = AlertStrategy.CORE,
) -> List[Alert]:
    """
    Produce the ordered, de-duplicated alert list for one client run.

    Args:
        client_id: Client being evaluated.
        metrics: Rolling metrics for all levels of the client.
        classifications: Today's classifications.
        config: Client engine config (thresholds, templates, enabledAlerts).
        run_date: Date of the run.
        previous_log: Alert log entries already persisted for this client.
        targets: Business targets for the extended detections.
        strategy: Which detection set to run.

    Returns:
        List[Alert]: Ordered CRITICAL > WARNING > INFO, then by impact.
    """
    detected = detect_alerts(
        client_id, metrics, classifications, config, run_date, targets=targets, strategy=strategy
    )
    ordered = deduplicate_alerts(detected, previous_log, run_date)
    logger.info(f"{client_id}: {len(ordered)} alert(s) with strategy {strategy.value}")
    return ordered


# =============================================================================
# Database Operations
# =============================================================================


async def fetch_alert_log(client_id: str, run_date: date) -> List[AlertLogEntry]:
    """Alert log entries of one client for one day."""
    query = """
        SELECT client_id, entity_level, entity_id, alert_type, alert_date
        FROM alert_log
        WHERE client_id = $1 AND alert_date = $2
    """
    rows = await fetch_rows(query, client_id, run_date)
    return [
        AlertLogEntry(
            clientId=row['client_id'],
            level=EntityLevel(row['entity_level']),
            entityId=row['entity_id'],
            type=AlertType(row['alert_type']),
            date=row['alert_date'],
        )
        for row in rows
    ]


async def persist_alert_log(entries: List[AlertLogEntry]) -> int:
    """Insert alert log entries; existing entries are left as they are."""
    query = """
        INSERT INTO alert_log (client_id, entity_level, entity_id, alert_type, alert_date, created_at)
        VALUES ($1, $2, $3, $4, $5, NOW())
        ON CONFLICT (client_id, entity_level, entity_id, alert_type, alert_date) DO NOTHING
    """
    return await execute_many(query, (
        (e.clientId, e.level.value, e.entityId, e.type.value, e.date) for e in entries
    ))


__all__ = [
    'ALERT_SEVERITY',
    'CONVERSION_LABEL',
    'Detection',
    'CORE_DETECTORS',
    'EXTENDED_DETECTORS',
    'render_template',
    'entity_label',
    'metric_values',
    'build_alert',
    'deduplicate_alerts',
    'sort_alerts',
    'build_alert_log',
    'detect_alerts',
    'run_alert_engine',
    'fetch_alert_log',
    'persist_alert_log',
]
