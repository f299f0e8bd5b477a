"""
Four-axis classification engine for the GEM engine.

Every active entity is classified on four independent axes each day, and the
axes are reduced to a single recommended action through a fixed precedence.
Classification is stateless: yesterday's result never feeds today's.

Axes:
- Learning: EXPLORATION / STABILIZING / EXPLOITATION / UNSTABLE
- Intent: TOFU / MOFU / BOFU from a weighted, client-normalized score
- Fatigue: REAL / HEALTHY_REPETITION / CONCEPT_DECAY / NONE
- Structure: FRAGMENTED / OVERCONCENTRATED / HEALTHY

Decision precedence (first match wins):
1. Fatigue REAL -> KILL_RETRY when learning is UNSTABLE, else ROTATE_CONCEPT
2. Structure OVERCONCENTRATED -> CONSOLIDATE
3. Structure FRAGMENTED -> CONSOLIDATE
4. Learning EXPLOITATION and intent BOFU -> SCALE
5. Intent TOFU with impressions but no purchases or checkouts -> INTRODUCE_BOFU_VARIANTS
6. Otherwise -> HOLD

Scores:
- confidenceScore grows with how far past its threshold the triggering
  metric is: 0.5 at the threshold, 1.0 at double the threshold.
- impactScore is the entity's share of its level's 7d spend.

Missing or zero metrics never raise here; they resolve to the neutral state
of each axis (STABILIZING, TOFU, NONE, HEALTHY) and a HOLD decision.
"""

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from gem_engine.core.database import execute_many
from gem_engine.core.exceptions import InputMalformedError
from gem_engine.models.enums import (
    PARENT_LEVEL,
    EntityLevel,
    FatigueState,
    FinalDecision,
    IntentStage,
    LearningState,
    StructuralState,
)
from gem_engine.models.schemas import (
    ClientPercentiles,
    ConceptMetrics,
    EngineConfig,
    EntityClassification,
    EntityMetrics,
    PercentileBand,
)
from gem_engine.services.metrics import LEVEL_ORDER
from gem_engine.services.percentiles import (
    METRIC_EXTRACTORS,
    MIN_ENTITIES_FOR_PERCENTILES,
    compute_percentiles_by_level,
    cpa_inverse,
    default_percentiles,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

INTENT_WEIGHTS: Dict[str, float] = {
    'fitr': 0.30,
    'convRate': 0.25,
    'cpaInv': 0.25,
    'ctr': 0.20,
}

# Confidence for HOLD, with and without any activity in the window
HOLD_CONFIDENCE_ACTIVE = 0.5
HOLD_CONFIDENCE_EMPTY = 0.0

# Float slack when checking window sums against each other
_SUM_TOLERANCE = 1e-6


# =============================================================================
# Internal Data Classes
# =============================================================================


@dataclass
class AxisResult:
    """
    Outcome of one classification axis.

    Attributes:
        state: The axis enum value.
        evidence: Human-readable facts that made the state fire, with numbers.
        confidence: 0-1 strength of the triggering signal.
    """
    state: Any
    evidence: List[str] = field(default_factory=list)
    confidence: float = 0.0


@dataclass
class IntentResult:
    """Intent score and stage with the evidence behind non-trivial stages."""
    score: float
    stage: IntentStage
    evidence: List[str] = field(default_factory=list)
    confidence: float = 0.0


# =============================================================================
# Helpers
# =============================================================================


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def overshoot_confidence(value: float, threshold: float) -> float:
    """
    Map how far a value is past its threshold onto [0.5, 1.0].

    Works for negative thresholds by comparing magnitudes.

    Example:
        >>> overshoot_confidence(5.2, 4.0)
        0.8
    """
    if threshold == 0:
        return 1.0
    ratio = abs(value) / abs(threshold)
    return round(_clamp(0.5 + (ratio - 1.0)), 4)


def has_activity(metrics: EntityMetrics) -> bool:
    """True when the entity spent or delivered in its 14d window."""
    return metrics.spend_14d > 0 or metrics.impressions_7d > 0


def validate_metrics(metrics: EntityMetrics) -> None:
    """
    Reject metrics whose windows contradict each other.

    Raises:
        InputMalformedError: If a shorter window exceeds a longer one or a
            ratio is negative.
    """
    if metrics.spend_3d > metrics.spend_7d + _SUM_TOLERANCE:
        raise InputMalformedError("spend_3d exceeds spend_7d", entity_id=metrics.entityId)
    if metrics.spend_7d > metrics.spend_14d + _SUM_TOLERANCE:
        raise InputMalformedError("spend_7d exceeds spend_14d", entity_id=metrics.entityId)
    if metrics.conversions_7d > metrics.conversions_14d + _SUM_TOLERANCE:
        raise InputMalformedError("conversions_7d exceeds conversions_14d", entity_id=metrics.entityId)

    for name in ('cpa_7d', 'cpa_14d', 'frequency_7d', 'hookRate_7d', 'ctr_7d'):
        value = getattr(metrics, name)
        if value is not None and value < 0:
            raise InputMalformedError(f"{name} is negative", entity_id=metrics.entityId)


# =============================================================================
# Learning Axis
# =============================================================================


def classify_learning_state(
    metrics: EntityMetrics,
    config: EngineConfig,
    percentiles: ClientPercentiles,
) -> AxisResult:
    """
    Determine the delivery-learning phase.

    UNSTABLE wins over the others: a budget swing beyond
    alerts.learningResetBudgetChangePct or an edit within
    learning.unstableDays resets learning regardless of history.

    Args:
        metrics: Entity rolling metrics.
        config: Client engine config.
        percentiles: Bands of the entity's level. cpaInv p50 is the
            "above median" bar for EXPLOITATION.

    Returns:
        AxisResult with a LearningState.
    """
    if not has_activity(metrics):
        return AxisResult(LearningState.STABILIZING)

    learning = config.learning
    budget_limit = config.alerts.learningResetBudgetChangePct
    budget_change = metrics.budget_change_3d_pct

    if budget_change is not None and abs(budget_change) > budget_limit:
        return AxisResult(
            LearningState.UNSTABLE,
            [f"budget changed {budget_change:+.1f}% in 3 days (limit {budget_limit:.0f}%)"],
            overshoot_confidence(budget_change, budget_limit),
        )

    edited = metrics.daysSinceLastEdit
    if edited is not None and edited < learning.unstableDays:
        return AxisResult(
            LearningState.UNSTABLE,
            [f"edited {edited} day(s) ago (learning resets within {learning.unstableDays} days)"],
            overshoot_confidence(learning.unstableDays, edited + 1),
        )

    days_active = metrics.daysActive
    volatility = metrics.conversions_cv_7d
    volatility_limit = config.findings.volatilityThreshold
    volatile = volatility is not None and volatility > volatility_limit
    conversions = metrics.conversions_14d

    if days_active is not None and days_active <= learning.explorationDays:
        return AxisResult(
            LearningState.EXPLORATION,
            [f"active {days_active} day(s) (exploration window {learning.explorationDays} days)"],
            overshoot_confidence(learning.explorationDays + 1, days_active + 1),
        )

    if volatile and conversions < learning.exploitationMinConversions:
        return AxisResult(
            LearningState.EXPLORATION,
            [
                f"daily conversion volatility {volatility:.2f} above {volatility_limit:.2f} "
                f"with {conversions:.0f} conversions in 14d"
            ],
            overshoot_confidence(volatility, volatility_limit),
        )

    cpa_inv = cpa_inverse(metrics)
    mature = days_active is None or days_active > learning.stabilizingDays
    if (
        conversions >= learning.exploitationMinConversions
        and not volatile
        and mature
        and cpa_inv is not None
        and cpa_inv >= percentiles.cpaInv.p50
    ):
        return AxisResult(
            LearningState.EXPLOITATION,
            [
                f"{conversions:.0f} conversions in 14d (min {learning.exploitationMinConversions:.0f}) "
                f"with CPA {metrics.cpa_7d:.2f} at or below the client median"
            ],
            overshoot_confidence(conversions, learning.exploitationMinConversions or 1.0),
        )

    return AxisResult(LearningState.STABILIZING)


# =============================================================================
# Intent Axis
# =============================================================================


def normalize_metric(value: Optional[float], band: PercentileBand) -> float:
    """
    Position of a value inside its p10-p90 band, clamped to [0, 1].

    A missing value contributes nothing. A degenerate band (p90 <= p10)
    gives the midpoint.
    """
    if value is None:
        return 0.0
    if band.p90 <= band.p10:
        return 0.5
    return _clamp((value - band.p10) / (band.p90 - band.p10))


def compute_intent(
    metrics: EntityMetrics,
    percentiles: ClientPercentiles,
    config: EngineConfig,
) -> IntentResult:
    """
    Score funnel intent and map it to a stage.

    score = 0.30 * fitr + 0.25 * convRate + 0.25 * cpaInv + 0.20 * ctr,
    each input normalized against the client band. Entities with volatile
    daily conversions and enough impressions are multiplied by
    intent.volatilityPenalty.

    Returns:
        IntentResult: score rounded to 4 decimals, stage and evidence.
    """
    intent = config.intent
    bands = {
        'fitr': percentiles.fitr,
        'convRate': percentiles.convRate,
        'cpaInv': percentiles.cpaInv,
        'ctr': percentiles.ctr,
    }

    score = sum(
        weight * normalize_metric(METRIC_EXTRACTORS[name](metrics), bands[name])
        for name, weight in INTENT_WEIGHTS.items()
    )

    penalized = (
        metrics.conversions_cv_7d is not None
        and metrics.conversions_cv_7d > config.findings.volatilityThreshold
        and metrics.impressions_7d >= intent.minImpressionsForPenalty
    )
    if penalized:
        score *= intent.volatilityPenalty

    score = round(_clamp(score), 4)

    if score >= intent.bofuScoreThreshold:
        return IntentResult(
            score,
            IntentStage.BOFU,
            [f"intent score {score:.2f} at or above BOFU threshold {intent.bofuScoreThreshold:.2f}"],
            overshoot_confidence(score, intent.bofuScoreThreshold),
        )
    if score >= intent.mofuScoreThreshold:
        return IntentResult(score, IntentStage.MOFU)

    suffix = " after volatility penalty" if penalized else ""
    return IntentResult(
        score,
        IntentStage.TOFU,
        [f"intent score {score:.2f} below MOFU threshold {intent.mofuScoreThreshold:.2f}{suffix}"],
        round(_clamp(0.5 + 0.5 * (1.0 - score / intent.mofuScoreThreshold)), 4),
    )


# =============================================================================
# Fatigue Axis
# =============================================================================


def classify_fatigue(
    metrics: EntityMetrics,
    config: EngineConfig,
    concept: Optional[ConceptMetrics] = None,
) -> AxisResult:
    """
    Diagnose creative fatigue.

    REAL needs high frequency and degrading CPA together. A hook-rate drop
    alone is CONCEPT_DECAY; the entity's own delta is used, falling back to
    its concept's. High frequency with stable cost is HEALTHY_REPETITION.

    Raising fatigue.frequencyThreshold can only move an entity away from
    REAL, never toward it.
    """
    fatigue = config.fatigue
    frequency = metrics.frequency_7d
    freq_limit = fatigue.frequencyThreshold
    multiplier = fatigue.cpaMultiplierThreshold

    high_frequency = frequency is not None and frequency > freq_limit
    cost_degraded = (
        metrics.cpa_7d is not None
        and metrics.cpa_14d is not None
        and metrics.cpa_14d > 0
        and metrics.cpa_7d > metrics.cpa_14d * multiplier
    )

    if high_frequency and cost_degraded:
        cpa_ratio = metrics.cpa_7d / metrics.cpa_14d
        return AxisResult(
            FatigueState.REAL,
            [
                f"frequency_7d {frequency:.2f} above {freq_limit:.2f}",
                f"cpa_7d {metrics.cpa_7d:.2f} is {cpa_ratio:.2f}x cpa_14d {metrics.cpa_14d:.2f} "
                f"(limit {multiplier:.2f}x)",
            ],
            round(
                (overshoot_confidence(frequency, freq_limit) + overshoot_confidence(cpa_ratio, multiplier)) / 2,
                4,
            ),
        )

    hook_delta = metrics.hookRate_delta_pct
    source = "entity"
    if hook_delta is None and concept is not None:
        hook_delta = concept.hookRate_delta_pct
        source = f"concept {concept.conceptId}"

    hook_limit = fatigue.hookRateDeltaThreshold
    if hook_delta is not None and hook_delta / 100.0 <= hook_limit:
        return AxisResult(
            FatigueState.CONCEPT_DECAY,
            [f"hook rate changed {hook_delta:+.1f}% week over week ({source}, limit {hook_limit * 100:.0f}%)"],
            overshoot_confidence(hook_delta / 100.0, hook_limit),
        )

    if high_frequency:
        return AxisResult(
            FatigueState.HEALTHY_REPETITION,
            [f"frequency_7d {frequency:.2f} above {freq_limit:.2f} without CPA degradation"],
            overshoot_confidence(frequency, freq_limit),
        )

    return AxisResult(FatigueState.NONE)


# =============================================================================
# Structure Axis
# =============================================================================


def classify_structure(
    metrics: EntityMetrics,
    child_spends: Optional[List[float]],
    config: EngineConfig,
) -> AxisResult:
    """
    Classify spend distribution across an entity's children.

    Shares are taken of max(sum of child spend, entity spend_7d), so spend
    in children that no longer report still dilutes the shares.

    Args:
        metrics: The parent entity's metrics.
        child_spends: 7d spend of each child (adsets of a campaign, ads of
            an adset). None or empty means no children.
        config: Client engine config.
    """
    structure = config.structure
    spends = [max(0.0, float(s)) for s in (child_spends or [])]
    total = max(sum(spends), metrics.spend_7d)

    if not spends or total <= 0:
        return AxisResult(StructuralState.HEALTHY)

    top_share = max(spends) / total
    if top_share >= structure.overconcentrationPct and total >= structure.overconcentrationMinSpend:
        return AxisResult(
            StructuralState.OVERCONCENTRATED,
            [
                f"top child holds {top_share * 100:.1f}% of {total:.2f} spend "
                f"(limit {structure.overconcentrationPct * 100:.0f}%)"
            ],
            overshoot_confidence(top_share, structure.overconcentrationPct),
        )

    active_children = sum(1 for s in spends if s > 0)
    max_children = structure.fragmentationAdsetsMax
    if active_children > max_children and top_share <= 1.0 / max_children:
        return AxisResult(
            StructuralState.FRAGMENTED,
            [
                f"{active_children} active children (max {max_children}), "
                f"largest holds {top_share * 100:.1f}% of spend"
            ],
            overshoot_confidence(active_children, max_children),
        )

    return AxisResult(StructuralState.HEALTHY)


# =============================================================================
# Decision
# =============================================================================


def determine_final_decision(
    metrics: EntityMetrics,
    learning: AxisResult,
    intent: IntentResult,
    fatigue: AxisResult,
    structure: AxisResult,
) -> Tuple[FinalDecision, List[str], float]:
    """
    Reduce the four axes to one action.

    Returns:
        (decision, evidence, confidence). Evidence is empty only for HOLD.
    """
    if fatigue.state == FatigueState.REAL:
        if learning.state == LearningState.UNSTABLE:
            return (
                FinalDecision.KILL_RETRY,
                fatigue.evidence + learning.evidence,
                round((fatigue.confidence + learning.confidence) / 2, 4),
            )
        return FinalDecision.ROTATE_CONCEPT, list(fatigue.evidence), fatigue.confidence

    if structure.state in (StructuralState.OVERCONCENTRATED, StructuralState.FRAGMENTED):
        return FinalDecision.CONSOLIDATE, list(structure.evidence), structure.confidence

    if learning.state == LearningState.EXPLOITATION and intent.stage == IntentStage.BOFU:
        return (
            FinalDecision.SCALE,
            learning.evidence + intent.evidence,
            round((learning.confidence + intent.confidence) / 2, 4),
        )

    bofu_signals = metrics.purchases_7d + metrics.checkout_7d
    if intent.stage == IntentStage.TOFU and bofu_signals == 0 and metrics.impressions_7d > 0:
        return (
            FinalDecision.INTRODUCE_BOFU_VARIANTS,
            intent.evidence + [f"no purchases or checkouts across {metrics.impressions_7d:.0f} impressions in 7d"],
            intent.confidence,
        )

    confidence = HOLD_CONFIDENCE_ACTIVE if has_activity(metrics) else HOLD_CONFIDENCE_EMPTY
    return FinalDecision.HOLD, [], confidence


def compute_impact_score(metrics: EntityMetrics, level_spend_7d: Optional[float]) -> float:
    """Entity share of its level's 7d spend, clamped to [0, 1]."""
    if not level_spend_7d or level_spend_7d <= 0:
        return 0.0
    return round(_clamp(metrics.spend_7d / level_spend_7d), 4)


# =============================================================================
# Entity and Client Classification
# =============================================================================


def classify_entity(
    metrics: EntityMetrics,
    percentiles: ClientPercentiles,
    config: EngineConfig,
    run_date: Optional[date] = None,
    child_spends: Optional[List[float]] = None,
    level_spend_7d: Optional[float] = None,
    concept: Optional[ConceptMetrics] = None,
) -> EntityClassification:
    """
    Classify one entity on all four axes and decide its action.

    Args:
        metrics: Entity rolling metrics.
        percentiles: Bands for the entity's level.
        config: Client engine config.
        run_date: Classification date. Defaults to metrics.lastUpdate.
        child_spends: 7d spend of each child, for the structure axis.
        level_spend_7d: Total 7d spend at the entity's level, for impact.
        concept: The ad's concept metrics, for the fatigue fallback.

    Returns:
        EntityClassification: Identical inputs give an identical result.

    Raises:
        InputMalformedError: If the metrics are internally inconsistent.
    """
    validate_metrics(metrics)

    classified_on = run_date or metrics.lastUpdate or date.today()

    learning = classify_learning_state(metrics, config, percentiles)
    intent = compute_intent(metrics, percentiles, config)
    fatigue = classify_fatigue(metrics, config, concept)
    structure = classify_structure(metrics, child_spends, config)

    decision, evidence, confidence = determine_final_decision(
        metrics, learning, intent, fatigue, structure
    )

    return EntityClassification(
        clientId=metrics.clientId,
        level=metrics.level,
        entityId=metrics.entityId,
        conceptId=metrics.conceptId,
        date=classified_on,
        learningState=learning.state,
        intentStage=intent.stage,
        intentScore=intent.score,
        fatigueState=fatigue.state,
        structuralState=structure.state,
        finalDecision=decision,
        evidence=evidence,
        confidenceScore=_clamp(confidence),
        impactScore=compute_impact_score(metrics, level_spend_7d),
    )


def build_child_spends(metrics: List[EntityMetrics]) -> Dict[Tuple[EntityLevel, str], List[float]]:
    """Map each parent (level, entityId) to the 7d spends of its children."""
    children: Dict[Tuple[EntityLevel, str], List[float]] = defaultdict(list)
    for m in metrics:
        parent_level = PARENT_LEVEL.get(m.level)
        if parent_level is not None and m.parentId:
            children[(parent_level, m.parentId)].append(m.spend_7d)
    return dict(children)


def classify_client_entities(
    client_id: str,
    metrics: List[EntityMetrics],
    config: EngineConfig,
    run_date: date,
    concepts: Optional[List[ConceptMetrics]] = None,
    percentiles: Optional[Dict[EntityLevel, ClientPercentiles]] = None,
    min_entities: int = MIN_ENTITIES_FOR_PERCENTILES,
) -> List[EntityClassification]:
    """
    Classify every active entity of one client.

    Percentile bands are computed once per level (unless passed in) and
    shared read-only by every entity of the run. Entities with
    inconsistent metrics are skipped with a warning.

    Args:
        client_id: Client being classified.
        metrics: Rolling metrics for all levels of the client.
        config: Client engine config.
        run_date: Classification date.
        concepts: Concept metrics for the fatigue fallback.
        percentiles: Precomputed bands per level.
        min_entities: Population size for sampled bands.

    Returns:
        List[EntityClassification]: Empty when the client has no entities
            or no spend. Sorted by level then entityId.
    """
    own = [m for m in metrics if m.clientId == client_id]
    if len(own) != len(metrics):
        logger.warning(f"{client_id}: ignoring {len(metrics) - len(own)} metrics of other clients")

    active = [m for m in own if m.spend_14d > 0]
    if not active:
        logger.info(f"{client_id}: no active entities, nothing to classify")
        return []

    if percentiles is None:
        percentiles = compute_percentiles_by_level(own, min_entities)

    child_spends = build_child_spends(own)
    level_spend: Dict[EntityLevel, float] = defaultdict(float)
    for m in own:
        level_spend[m.level] += m.spend_7d
    concept_map = {c.conceptId: c for c in (concepts or [])}

    results: List[EntityClassification] = []
    skipped = 0

    for m in sorted(active, key=lambda x: (LEVEL_ORDER[x.level], x.entityId)):
        try:
            results.append(classify_entity(
                m,
                percentiles.get(m.level) or default_percentiles(),
                config,
                run_date=run_date,
                child_spends=child_spends.get((m.level, m.entityId)),
                level_spend_7d=level_spend[m.level],
                concept=concept_map.get(m.conceptId) if m.conceptId else None,
            ))
        except InputMalformedError as e:
            skipped += 1
            logger.warning(f"{client_id}: skipping {m.level.value} {m.entityId}: {e}")

    logger.info(f"{client_id}: classified {len(results)} entities, skipped {skipped}")
    return results


# =============================================================================
# Database Operations
# =============================================================================


async def persist_classifications(classifications: List[EntityClassification]) -> int:
    """
    Upsert classifications, one row per (client, level, entity, date).

    A rerun on the same date overwrites that date's row; earlier dates are
    never touched.

    Returns:
        int: Number of rows written.
    """
    query = """
        INSERT INTO entity_classification (
            client_id, level, entity_id, run_date, concept_id,
            learning_state, intent_stage, intent_score,
            fatigue_state, structural_state, final_decision,
            evidence, confidence_score, impact_score, created_at
        ) VALUES (
            $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13, $14, NOW()
        )
        ON CONFLICT (client_id, level, entity_id, run_date)
        DO UPDATE SET
            concept_id = EXCLUDED.concept_id,
            learning_state = EXCLUDED.learning_state,
            intent_stage = EXCLUDED.intent_stage,
            intent_score = EXCLUDED.intent_score,
            fatigue_state = EXCLUDED.fatigue_state,
            structural_state = EXCLUDED.structural_state,
            final_decision = EXCLUDED.final_decision,
            evidence = EXCLUDED.evidence,
            confidence_score = EXCLUDED.confidence_score,
            impact_score = EXCLUDED.impact_score
    """
    written = await execute_many(query, (
        (
            c.clientId,
            c.level.value,
            c.entityId,
            c.date,
            c.conceptId,
            c.learningState.value,
            c.intentStage.value,
            c.intentScore,
            c.fatigueState.value,
            c.structuralState.value,
            c.finalDecision.value,
            json.dumps(c.evidence),
            c.confidenceScore,
            c.impactScore,
        )
        for c in classifications
    ))
    logger.info(f"Persisted {written} classifications")
    return written


__all__ = [
    'INTENT_WEIGHTS',
    'AxisResult',
    'IntentResult',
    'overshoot_confidence',
    'has_activity',
    'validate_metrics',
    'classify_learning_state',
    'normalize_metric',
    'compute_intent',
    'classify_fatigue',
    'classify_structure',
    'determine_final_decision',
    'compute_impact_score',
    'classify_entity',
    'build_child_spends',
    'classify_client_entities',
    'persist_classifications',
]
