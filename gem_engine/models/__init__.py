"""
Package initialization for GEM engine models.

Re-exports all Pydantic schemas and enumerations so other modules can import
them from gem_engine.models directly.

Usage:
    from gem_engine.models import (
        EntityMetrics,
        EntityClassification,
        EngineConfig,
        FinalDecision,
    )
"""

# =============================================================================
# Enums
# =============================================================================

from gem_engine.models.enums import (
    # Hierarchy
    EntityLevel,
    PARENT_LEVEL,
    BusinessType,
    # Classification axes
    LearningState,
    IntentStage,
    FatigueState,
    StructuralState,
    FinalDecision,
    # Alerts
    AlertSeverity,
    SEVERITY_RANK,
    AlertType,
    AlertStrategy,
    PercentileSource,
)

# =============================================================================
# Schemas
# =============================================================================

from gem_engine.models.schemas import (
    ENGINE_CONFIG_VERSION,
    # Inputs and rolling metrics
    DailyPerformanceRecord,
    EntityMetrics,
    ConceptMetrics,
    MTDAggregation,
    # Percentiles
    PercentileBand,
    ClientPercentiles,
    # Classification
    EntityClassification,
    # Configuration
    FatigueConfig,
    StructureConfig,
    AlertThresholdsConfig,
    FindingsConfig,
    LearningConfig,
    IntentConfig,
    AlertTemplate,
    default_alert_templates,
    EngineConfig,
    ClientTargets,
    # Alerts
    Alert,
    AlertLogEntry,
    # Snapshot
    AccountSummary,
    SnapshotMeta,
    ClientSnapshot,
)

__all__ = [
    'EntityLevel',
    'PARENT_LEVEL',
    'BusinessType',
    'LearningState',
    'IntentStage',
    'FatigueState',
    'StructuralState',
    'FinalDecision',
    'AlertSeverity',
    'SEVERITY_RANK',
    'AlertType',
    'AlertStrategy',
    'PercentileSource',
    'ENGINE_CONFIG_VERSION',
    'DailyPerformanceRecord',
    'EntityMetrics',
    'ConceptMetrics',
    'MTDAggregation',
    'PercentileBand',
    'ClientPercentiles',
    'EntityClassification',
    'FatigueConfig',
    'StructureConfig',
    'AlertThresholdsConfig',
    'FindingsConfig',
    'LearningConfig',
    'IntentConfig',
    'AlertTemplate',
    'default_alert_templates',
    'EngineConfig',
    'ClientTargets',
    'Alert',
    'AlertLogEntry',
    'AccountSummary',
    'SnapshotMeta',
    'ClientSnapshot',
]
