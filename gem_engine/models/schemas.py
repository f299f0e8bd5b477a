"""
Pydantic models for the GEM engine.

This module provides validated data structures for every artifact that flows
through a classification run:

- DailyPerformanceRecord: one entity-day of raw delivery data (input)
- EntityMetrics / ConceptMetrics: rolling-window aggregates
- PercentileBand / ClientPercentiles: client-relative normalization bands
- EntityClassification: four axes plus the final decision
- EngineConfig and its groups: per-client thresholds and alert templates
- Alert / AlertLogEntry: alert output and de-duplication state
- ClientSnapshot: the per-client document assembled by a run

Conventions:
- Field names are camelCase for identity/state fields and snake_case with a
  window suffix for rolling aggregates (spend_7d, cpa_14d).
- Ratios are Optional[float]. None means "no data" and is never coerced to
  zero; zero is a real observation.
- Flow sums default to 0.0, since an empty window genuinely spent nothing.

All models use Pydantic v2 syntax.
"""

from datetime import datetime, date as DateType
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict, model_validator

from gem_engine.models.enums import (
    AlertSeverity,
    AlertType,
    BusinessType,
    EntityLevel,
    FatigueState,
    FinalDecision,
    IntentStage,
    LearningState,
    PercentileSource,
    StructuralState,
)


# Bumped when a group gains or changes a field
ENGINE_CONFIG_VERSION = 1


# =============================================================================
# Input Records
# =============================================================================


class DailyPerformanceRecord(BaseModel):
    """
    One day of delivery data for one entity.

    Keyed by (clientId, level, entityId, date). Counters are non-negative.
    Conversions may be fractional because platforms report modeled values.
    """
    model_config = ConfigDict(
        str_strip_whitespace=True,
        extra='ignore',
        json_schema_extra={
            "example": {
                "clientId": "client_001",
                "level": "adset",
                "entityId": "2385001",
                "date": "2026-03-14",
                "parentId": "2384000",
                "spend": 142.5,
                "impressions": 18400,
                "reach": 9100,
                "clicks": 320,
                "purchases": 4,
                "revenue": 512.0,
                "hookViews": 5200,
            }
        }
    )

    clientId: str = Field(..., min_length=1)
    level: EntityLevel
    entityId: str = Field(..., min_length=1)
    date: DateType

    name: Optional[str] = None
    parentId: Optional[str] = Field(
        default=None,
        description="Entity id one level up (adset for an ad, campaign for an adset)"
    )
    conceptId: Optional[str] = Field(
        default=None,
        description="Creative concept grouping, ads only"
    )

    # Performance
    spend: float = Field(default=0.0, ge=0)
    impressions: int = Field(default=0, ge=0)
    reach: int = Field(default=0, ge=0)
    clicks: int = Field(default=0, ge=0)
    purchases: float = Field(default=0.0, ge=0)
    revenue: float = Field(default=0.0, ge=0, description="Conversion value")
    leads: float = Field(default=0.0, ge=0)
    messagingConversations: float = Field(default=0.0, ge=0)
    installs: float = Field(default=0.0, ge=0)
    addToCart: float = Field(default=0.0, ge=0)
    checkout: float = Field(default=0.0, ge=0)

    # Engagement
    hookViews: int = Field(default=0, ge=0, description="3-second video views")
    frequency: Optional[float] = Field(
        default=None,
        ge=0,
        description="Platform-reported frequency; derived from impressions/reach when absent"
    )

    # Stability
    dailyBudget: Optional[float] = Field(default=None, ge=0)
    daysActive: Optional[int] = Field(default=None, ge=0)
    daysSinceLastEdit: Optional[int] = Field(default=None, ge=0)


# =============================================================================
# Rolling Metrics
# =============================================================================


class EntityMetrics(BaseModel):
    """
    Rolling-window aggregates for one entity, recomputed every run.

    Keyed by (clientId, level, entityId). Window sums cover trailing calendar
    days ending at lastUpdate.
    """
    model_config = ConfigDict(extra='ignore')

    clientId: str = Field(..., min_length=1)
    level: EntityLevel
    entityId: str = Field(..., min_length=1)
    name: Optional[str] = None
    parentId: Optional[str] = None
    conceptId: Optional[str] = None
    lastUpdate: Optional[DateType] = None

    # Flow sums
    spend_3d: float = Field(default=0.0, ge=0)
    spend_7d: float = Field(default=0.0, ge=0)
    spend_14d: float = Field(default=0.0, ge=0)
    spend_30d: float = Field(default=0.0, ge=0)
    impressions_7d: float = Field(default=0.0, ge=0)
    reach_7d: float = Field(default=0.0, ge=0)
    clicks_7d: float = Field(default=0.0, ge=0)
    conversions_7d: float = Field(default=0.0, ge=0)
    conversions_14d: float = Field(default=0.0, ge=0)
    purchases_7d: float = Field(default=0.0, ge=0)
    revenue_7d: float = Field(default=0.0, ge=0)
    checkout_7d: float = Field(default=0.0, ge=0)
    addToCart_7d: float = Field(default=0.0, ge=0)
    leads_7d: float = Field(default=0.0, ge=0)
    messaging_7d: float = Field(default=0.0, ge=0)
    installs_7d: float = Field(default=0.0, ge=0)

    # Efficiency
    cpa_3d: Optional[float] = None
    cpa_7d: Optional[float] = None
    cpa_14d: Optional[float] = None
    cpa_delta_pct: Optional[float] = Field(default=None, description="cpa_7d vs cpa_14d, percent")
    roas_7d: Optional[float] = None
    roas_delta_pct: Optional[float] = Field(default=None, description="7d vs previous 7d, percent")
    ctr_7d: Optional[float] = Field(default=None, description="Percent")
    ctr_delta_pct: Optional[float] = None
    fitr_7d: Optional[float] = Field(default=None, description="purchases / clicks")
    conv_rate_7d: Optional[float] = Field(default=None, description="purchases / impressions")
    conversion_velocity_7d: Optional[float] = Field(default=None, description="Conversions per day")

    # Engagement
    frequency_7d: Optional[float] = None
    hookRate_7d: Optional[float] = Field(default=None, description="Percent of impressions")
    hookRate_14d: Optional[float] = None
    hookRate_delta_pct: Optional[float] = Field(default=None, description="7d vs previous 7d, percent")

    # Stability
    conversions_cv_7d: Optional[float] = Field(
        default=None,
        description="Coefficient of variation of daily conversions over 7d"
    )
    budget_change_3d_pct: Optional[float] = None
    daysActive: Optional[int] = Field(default=None, ge=0)
    daysSinceLastEdit: Optional[int] = Field(default=None, ge=0)
    daysOfHistory: int = Field(default=0, ge=0)


class ConceptMetrics(BaseModel):
    """Rolling aggregates for a creative concept, built from its ads."""
    model_config = ConfigDict(extra='ignore')

    clientId: str = Field(..., min_length=1)
    conceptId: str = Field(..., min_length=1)
    adCount: int = Field(default=0, ge=0)
    spend_7d: float = Field(default=0.0, ge=0)
    spend_14d: float = Field(default=0.0, ge=0)
    conversions_7d: float = Field(default=0.0, ge=0)
    cpa_7d: Optional[float] = None
    cpa_14d: Optional[float] = None
    frequency_7d: Optional[float] = None
    hookRate_delta_pct: Optional[float] = None
    spend_concentration_top1: Optional[float] = Field(
        default=None,
        description="Share of concept spend_7d held by its top ad"
    )
    fatigue_flag: bool = False


class MTDAggregation(BaseModel):
    """Month-to-date totals for the account level."""
    month: str = Field(..., description="YYYY-MM")
    daysElapsed: int = Field(default=0, ge=0)
    spend: float = 0.0
    impressions: float = 0.0
    clicks: float = 0.0
    conversions: float = 0.0
    revenue: float = 0.0
    cpa: Optional[float] = None
    roas: Optional[float] = None


# =============================================================================
# Percentiles
# =============================================================================


class PercentileBand(BaseModel):
    """Low, median and high percentile of one metric across a client's entities."""
    p10: float
    p50: float
    p90: float


class ClientPercentiles(BaseModel):
    """
    Normalization bands for the intent score, one set per client and level.

    Derived, never stored independently of a run.
    """
    fitr: PercentileBand
    convRate: PercentileBand
    cpaInv: PercentileBand
    ctr: PercentileBand
    source: PercentileSource = PercentileSource.DEFAULT
    population: int = Field(default=0, ge=0)


# =============================================================================
# Classification
# =============================================================================


class EntityClassification(BaseModel):
    """
    Daily classification of one entity.

    Created or overwritten once per (entity, date). A decision other than
    HOLD always carries at least one evidence string.
    """
    clientId: str = Field(..., min_length=1)
    level: EntityLevel
    entityId: str = Field(..., min_length=1)
    conceptId: Optional[str] = None
    date: DateType

    learningState: LearningState
    intentStage: IntentStage
    intentScore: float = Field(..., ge=0.0, le=1.0)
    fatigueState: FatigueState
    structuralState: StructuralState

    finalDecision: FinalDecision
    evidence: List[str] = Field(default_factory=list)
    confidenceScore: float = Field(..., ge=0.0, le=1.0)
    impactScore: float = Field(..., ge=0.0, le=1.0)

    @model_validator(mode='after')
    def _decision_needs_evidence(self) -> 'EntityClassification':
        if self.finalDecision != FinalDecision.HOLD and not self.evidence:
            raise ValueError(f"{self.finalDecision.value} requires at least one evidence string")
        return self


# =============================================================================
# Engine Configuration
# =============================================================================


class FatigueConfig(BaseModel):
    """Creative fatigue thresholds."""
    model_config = ConfigDict(extra='ignore')

    frequencyThreshold: float = Field(default=4.0, gt=0)
    cpaMultiplierThreshold: float = Field(default=1.25, gt=0)
    # Fractional change, -0.2 means a 20% hook-rate drop
    hookRateDeltaThreshold: float = Field(default=-0.2, ge=-1.0, le=0.0)
    concentrationThreshold: float = Field(default=0.6, gt=0, le=1.0)


class StructureConfig(BaseModel):
    """Spend distribution thresholds."""
    model_config = ConfigDict(extra='ignore')

    fragmentationAdsetsMax: int = Field(default=6, ge=1)
    overconcentrationPct: float = Field(default=0.8, gt=0, le=1.0)
    overconcentrationMinSpend: float = Field(default=100.0, ge=0)


class AlertThresholdsConfig(BaseModel):
    """Thresholds shared by learning classification and alert detection."""
    model_config = ConfigDict(extra='ignore')

    learningResetBudgetChangePct: float = Field(default=30.0, gt=0)
    scalingFrequencyMax: float = Field(default=4.0, gt=0)


class FindingsConfig(BaseModel):
    """Thresholds for the extended alert detections."""
    model_config = ConfigDict(extra='ignore')

    cpaSpikeThreshold: float = Field(default=0.25, gt=0)
    roasDropThreshold: float = Field(default=-0.15, ge=-1.0, lt=0)
    cvrDropThreshold: float = Field(default=-0.15, ge=-1.0, lt=0)
    volatilityThreshold: float = Field(default=0.5, gt=0)
    concentrationPct: float = Field(default=0.8, gt=0, le=1.0)


class LearningConfig(BaseModel):
    """Learning-phase boundaries."""
    model_config = ConfigDict(extra='ignore')

    unstableDays: int = Field(default=3, ge=0)
    explorationDays: int = Field(default=4, ge=0)
    stabilizingDays: int = Field(default=14, ge=0)
    exploitationMinConversions: float = Field(default=50, ge=0)


class IntentConfig(BaseModel):
    """Intent stage cut-offs and the volatility penalty."""
    model_config = ConfigDict(extra='ignore')

    bofuScoreThreshold: float = Field(default=0.65, gt=0, le=1.0)
    mofuScoreThreshold: float = Field(default=0.35, gt=0, le=1.0)
    volatilityPenalty: float = Field(default=0.6, gt=0, le=1.0)
    minImpressionsForPenalty: float = Field(default=2000, ge=0)

    @model_validator(mode='after')
    def _ordered_cutoffs(self) -> 'IntentConfig':
        if self.mofuScoreThreshold >= self.bofuScoreThreshold:
            raise ValueError("mofuScoreThreshold must be below bofuScoreThreshold")
        return self


class AlertTemplate(BaseModel):
    """Title and description with {placeholder} substitution."""
    title: str = Field(..., min_length=1)
    description: str = ""


def default_alert_templates() -> Dict[AlertType, AlertTemplate]:
    """Documented default alert copy, one template per alert type."""
    return {
        AlertType.LEARNING_RESET_RISK: AlertTemplate(
            title="Learning reset risk: {entityName}",
            description="Budget changed {budgetChange}% over 3 days (limit {threshold}%).",
        ),
        AlertType.SCALING_FREQUENCY_CEILING: AlertTemplate(
            title="Scaling blocked by frequency ceiling: {entityName}",
            description="Frequency {frequency} is above {threshold} while in exploitation.",
        ),
        AlertType.KILL_RETRY: AlertTemplate(
            title="Kill and retry: {entityName}",
            description="{reason}",
        ),
        AlertType.CPA_SPIKE: AlertTemplate(
            title="CPA spike: {entityName}",
            description="CPA rose {cpaDelta}% (7d vs 14d). Current CPA {cpa}.",
        ),
        AlertType.BUDGET_BLEED: AlertTemplate(
            title="Budget bleed: {entityName}",
            description="Spent {spend} in 7 days with no {conversionLabel}. Target CPA is {targetCpa}.",
        ),
        AlertType.ROAS_DROP: AlertTemplate(
            title="ROAS drop: {entityName}",
            description="ROAS moved {roasDelta}% week over week. Current ROAS {roas}.",
        ),
        AlertType.CPA_VOLATILITY: AlertTemplate(
            title="Budget volatility: {entityName}",
            description="Budget changed {budgetChange}% in 3 days.",
        ),
        AlertType.ROTATE_CONCEPT: AlertTemplate(
            title="Rotate concept: {entityName}",
            description="{reason}",
        ),
        AlertType.CONSOLIDATE: AlertTemplate(
            title="Consolidate structure: {entityName}",
            description="{reason}",
        ),
        AlertType.SCALING_OPPORTUNITY: AlertTemplate(
            title="Scaling opportunity: {entityName}",
            description="CPA {cpa} vs target {targetCpa} with {conversions} {conversionLabel} in 7 days.",
        ),
        AlertType.INTRODUCE_BOFU_VARIANTS: AlertTemplate(
            title="Introduce BOFU variants: {entityName}",
            description="{reason}",
        ),
    }


class EngineConfig(BaseModel):
    """
    Per-client engine configuration.

    One document per client, created lazily with defaults and mutated only
    through update_engine_config. Every group has documented defaults so a
    partial stored document always merges to a complete config.
    """
    model_config = ConfigDict(extra='ignore')

    clientId: str = Field(..., min_length=1)
    version: int = ENGINE_CONFIG_VERSION

    fatigue: FatigueConfig = Field(default_factory=FatigueConfig)
    structure: StructureConfig = Field(default_factory=StructureConfig)
    alerts: AlertThresholdsConfig = Field(default_factory=AlertThresholdsConfig)
    findings: FindingsConfig = Field(default_factory=FindingsConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    intent: IntentConfig = Field(default_factory=IntentConfig)

    alertTemplates: Dict[AlertType, AlertTemplate] = Field(default_factory=default_alert_templates)
    # None enables every alert type
    enabledAlerts: Optional[List[AlertType]] = None
    dailySnapshotTitle: str = "Daily performance snapshot"

    updatedAt: Optional[datetime] = None


class ClientTargets(BaseModel):
    """Client-level business targets used by the extended alert detections."""
    businessType: BusinessType = BusinessType.ECOMMERCE
    targetCpa: Optional[float] = Field(default=None, gt=0)
    targetRoas: Optional[float] = Field(default=None, gt=0)


# =============================================================================
# Alerts
# =============================================================================


class Alert(BaseModel):
    """
    One alert for one entity.

    The id is derived from (type, level, entityId, date) so reruns yield the
    same ids.
    """
    id: str
    clientId: str
    level: EntityLevel
    entityId: str
    entityName: Optional[str] = None
    type: AlertType
    severity: AlertSeverity
    title: str
    description: str = ""
    evidence: List[str] = Field(default_factory=list)
    impactScore: float = Field(default=0.0, ge=0.0, le=1.0)
    date: DateType


class AlertLogEntry(BaseModel):
    """Persisted record of an emitted alert, used for same-day de-duplication."""
    clientId: str
    level: EntityLevel
    entityId: str
    type: AlertType
    date: DateType


# =============================================================================
# Client Snapshot
# =============================================================================


class AccountSummary(BaseModel):
    """Account-level rolling metrics plus the month-to-date aggregation."""
    rolling: Optional[EntityMetrics] = None
    mtd: Optional[MTDAggregation] = None


class SnapshotMeta(BaseModel):
    """Counts describing a snapshot."""
    entityCounts: Dict[str, int] = Field(default_factory=dict)
    alertCounts: Dict[str, int] = Field(default_factory=dict)
    classifiedCount: int = 0
    skippedEntities: List[str] = Field(default_factory=list)


class ClientSnapshot(BaseModel):
    """
    Everything one run produced for one client and date.

    Contains no wall-clock timestamps, so identical inputs serialize
    identically. `alerts` is every alert that holds for the day, so a rerun
    stores the same list; `newAlerts` is the part not yet in the alert log
    and is what gets logged and notified.
    """
    clientId: str
    computedDate: DateType
    businessType: BusinessType = BusinessType.ECOMMERCE
    title: str = "Daily performance snapshot"
    entities: Dict[EntityLevel, List[EntityMetrics]] = Field(default_factory=dict)
    concepts: List[ConceptMetrics] = Field(default_factory=list)
    percentiles: Dict[EntityLevel, ClientPercentiles] = Field(default_factory=dict)
    classifications: List[EntityClassification] = Field(default_factory=list)
    alerts: List[Alert] = Field(default_factory=list)
    newAlerts: List[Alert] = Field(default_factory=list)
    accountSummary: AccountSummary = Field(default_factory=AccountSummary)
    meta: SnapshotMeta = Field(default_factory=SnapshotMeta)
