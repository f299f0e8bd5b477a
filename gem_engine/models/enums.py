"""
Enumeration definitions for the GEM engine.

Every classification axis, decision and alert attribute is a finite set.
All enums inherit from both `str` and `Enum` so Pydantic models serialize
them as plain strings and stored documents round-trip without converters.
"""

from enum import Enum


# =============================================================================
# Entity Hierarchy
# =============================================================================


class EntityLevel(str, Enum):
    """
    Level of an entity in the account hierarchy.

    account > campaign > adset > ad. Concepts are a separate creative
    grouping of ads and are not part of this hierarchy.
    """
    ACCOUNT = "account"
    CAMPAIGN = "campaign"
    ADSET = "adset"
    AD = "ad"


# Parent level of each level, used to build child spend lists
PARENT_LEVEL = {
    EntityLevel.CAMPAIGN: EntityLevel.ACCOUNT,
    EntityLevel.ADSET: EntityLevel.CAMPAIGN,
    EntityLevel.AD: EntityLevel.ADSET,
}


class BusinessType(str, Enum):
    """
    Client business model. Selects which counter is the primary conversion.

    - ecommerce: purchases
    - leads: lead form submissions
    - whatsapp: messaging conversations started
    - apps: installs
    """
    ECOMMERCE = "ecommerce"
    LEADS = "leads"
    WHATSAPP = "whatsapp"
    APPS = "apps"


# =============================================================================
# Classification Axes
# =============================================================================


class LearningState(str, Enum):
    """
    Delivery-learning phase of an entity.

    - EXPLORATION: new or volatile with few conversions
    - STABILIZING: neutral default, neither exploring nor exploiting
    - EXPLOITATION: stable, converting, above-median efficiency
    - UNSTABLE: recent large budget swing or fresh edit reset learning
    """
    EXPLORATION = "EXPLORATION"
    STABILIZING = "STABILIZING"
    EXPLOITATION = "EXPLOITATION"
    UNSTABLE = "UNSTABLE"


class IntentStage(str, Enum):
    """Funnel stage derived from the intent score."""
    TOFU = "TOFU"
    MOFU = "MOFU"
    BOFU = "BOFU"


class FatigueState(str, Enum):
    """
    Creative fatigue diagnosis.

    - REAL: high frequency and CPA degrading together
    - HEALTHY_REPETITION: high frequency without cost degradation
    - CONCEPT_DECAY: hook rate falling without the REAL combination
    - NONE: no fatigue signal
    """
    REAL = "REAL"
    HEALTHY_REPETITION = "HEALTHY_REPETITION"
    CONCEPT_DECAY = "CONCEPT_DECAY"
    NONE = "NONE"


class StructuralState(str, Enum):
    """Spend distribution across an entity's children."""
    FRAGMENTED = "FRAGMENTED"
    OVERCONCENTRATED = "OVERCONCENTRATED"
    HEALTHY = "HEALTHY"


class FinalDecision(str, Enum):
    """Single recommended action per entity per day."""
    HOLD = "HOLD"
    ROTATE_CONCEPT = "ROTATE_CONCEPT"
    CONSOLIDATE = "CONSOLIDATE"
    SCALE = "SCALE"
    INTRODUCE_BOFU_VARIANTS = "INTRODUCE_BOFU_VARIANTS"
    KILL_RETRY = "KILL_RETRY"


# =============================================================================
# Alerts
# =============================================================================


class AlertSeverity(str, Enum):
    """Alert severity. Ordering is CRITICAL > WARNING > INFO."""
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    INFO = "INFO"


SEVERITY_RANK = {
    AlertSeverity.CRITICAL: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.INFO: 2,
}


class AlertType(str, Enum):
    """
    Alert kinds.

    The first three are produced by the core strategy. The remainder are
    added by the extended strategy.
    """
    LEARNING_RESET_RISK = "LEARNING_RESET_RISK"
    SCALING_FREQUENCY_CEILING = "SCALING_FREQUENCY_CEILING"
    KILL_RETRY = "KILL_RETRY"
    CPA_SPIKE = "CPA_SPIKE"
    BUDGET_BLEED = "BUDGET_BLEED"
    ROAS_DROP = "ROAS_DROP"
    CPA_VOLATILITY = "CPA_VOLATILITY"
    ROTATE_CONCEPT = "ROTATE_CONCEPT"
    CONSOLIDATE = "CONSOLIDATE"
    SCALING_OPPORTUNITY = "SCALING_OPPORTUNITY"
    INTRODUCE_BOFU_VARIANTS = "INTRODUCE_BOFU_VARIANTS"


class AlertStrategy(str, Enum):
    """
    Detection set used by the alert engine.

    Passed explicitly by the caller for each run; there is no process-wide
    switch.
    """
    CORE = "core"
    EXTENDED = "extended"


class PercentileSource(str, Enum):
    """Whether a percentile band set was sampled or is the fixed default."""
    SAMPLE = "sample"
    DEFAULT = "default"
