"""
Tests for the four-axis classification engine.

Scenario tests exercise the decision precedence end to end; the axis tests
cover each branch on its own against the default config and default bands.
"""

import json

import pytest
from pydantic import ValidationError

from gem_engine.core.exceptions import InputMalformedError
from gem_engine.models.enums import (
    EntityLevel,
    FatigueState,
    FinalDecision,
    IntentStage,
    LearningState,
    StructuralState,
)
from gem_engine.models.schemas import (
    ConceptMetrics,
    EngineConfig,
    FatigueConfig,
    PercentileBand,
)
from gem_engine.services.classification import (
    classify_client_entities,
    classify_entity,
    classify_fatigue,
    classify_learning_state,
    classify_structure,
    compute_impact_score,
    compute_intent,
    normalize_metric,
    overshoot_confidence,
    persist_classifications,
    validate_metrics,
)
from gem_engine.services.percentiles import default_percentiles
from gem_engine.tests.conftest import AS_OF, CLIENT_ID


# ============================================================
# METRIC FIXTURES
# ============================================================

@pytest.fixture
def fatigued_metrics(make_metrics):
    """High frequency with CPA 32% above its 14d level."""
    return make_metrics(
        'adset_fatigued',
        spend_3d=300.0,
        spend_7d=660.0,
        spend_14d=1400.0,
        impressions_7d=20000.0,
        conversions_7d=5.0,
        conversions_14d=14.0,
        purchases_7d=5.0,
        cpa_7d=132.0,
        cpa_14d=100.0,
        frequency_7d=5.2,
        daysActive=10,
    )


@pytest.fixture
def winning_metrics(make_metrics):
    """Mature, cheap, high-intent entity."""
    return make_metrics(
        'adset_winner',
        spend_3d=90.0,
        spend_7d=200.0,
        spend_14d=400.0,
        impressions_7d=10000.0,
        conversions_7d=40.0,
        conversions_14d=80.0,
        purchases_7d=40.0,
        cpa_7d=5.0,
        cpa_14d=5.0,
        fitr_7d=0.12,
        conv_rate_7d=0.018,
        ctr_7d=2.8,
        frequency_7d=2.0,
        conversions_cv_7d=0.2,
        daysActive=30,
    )


@pytest.fixture
def bands():
    return default_percentiles()


# ============================================================
# SCENARIOS
# ============================================================

@pytest.mark.scenario
class TestScenarios:
    """Decision precedence on representative entities."""

    def test_real_fatigue_rotates_concept(self, fatigued_metrics, bands, default_config):
        result = classify_entity(fatigued_metrics, bands, default_config, run_date=AS_OF)

        assert result.learningState == LearningState.STABILIZING
        assert result.fatigueState == FatigueState.REAL
        assert result.finalDecision == FinalDecision.ROTATE_CONCEPT
        assert any('5.20' in e for e in result.evidence)
        assert any('1.32x' in e for e in result.evidence)
        assert 0.5 <= result.confidenceScore <= 1.0

    def test_fragmented_campaign_consolidates(self, make_metrics, default_config):
        metrics = [
            make_metrics('camp_1', level=EntityLevel.CAMPAIGN,
                         spend_3d=400.0, spend_7d=1000.0, spend_14d=2000.0)
        ]
        metrics += [
            make_metrics(f'adset_{i}', parentId='camp_1',
                         spend_3d=50.0, spend_7d=120.0, spend_14d=240.0)
            for i in range(8)
        ]

        results = classify_client_entities(CLIENT_ID, metrics, default_config, run_date=AS_OF)
        campaign = next(c for c in results if c.entityId == 'camp_1')

        assert campaign.structuralState == StructuralState.FRAGMENTED
        assert campaign.finalDecision == FinalDecision.CONSOLIDATE
        assert campaign.evidence
        assert len(results) == 9

    def test_unremarkable_entity_holds(self, make_metrics, bands, default_config):
        metrics = make_metrics(
            spend_3d=40.0, spend_7d=100.0, spend_14d=200.0,
            impressions_7d=5000.0, purchases_7d=2.0,
            conversions_7d=2.0, conversions_14d=4.0,
            cpa_7d=50.0, cpa_14d=50.0, frequency_7d=2.0, daysActive=20,
        )

        result = classify_entity(metrics, bands, default_config)

        assert result.finalDecision == FinalDecision.HOLD
        assert result.evidence == []
        assert result.date == AS_OF

    def test_empty_entity_holds(self, make_metrics, bands, default_config):
        metrics = make_metrics(spend_7d=0.0, spend_14d=0.0, conversions_7d=0.0, conversions_14d=0.0)

        result = classify_entity(metrics, bands, default_config, run_date=AS_OF)

        assert result.learningState == LearningState.STABILIZING
        assert result.intentStage == IntentStage.TOFU
        assert result.fatigueState == FatigueState.NONE
        assert result.structuralState == StructuralState.HEALTHY
        assert result.finalDecision == FinalDecision.HOLD
        assert result.evidence == []
        assert result.confidenceScore == 0.0

    def test_unstable_fatigue_kills_and_retries(self, fatigued_metrics, bands, default_config):
        metrics = fatigued_metrics.model_copy(update={'budget_change_3d_pct': 45.0})

        result = classify_entity(metrics, bands, default_config)

        assert result.learningState == LearningState.UNSTABLE
        assert result.finalDecision == FinalDecision.KILL_RETRY
        assert any('budget changed' in e for e in result.evidence)
        assert any('frequency_7d' in e for e in result.evidence)

    def test_exploiting_bofu_entity_scales(self, winning_metrics, bands, default_config):
        result = classify_entity(winning_metrics, bands, default_config)

        assert result.learningState == LearningState.EXPLOITATION
        assert result.intentStage == IntentStage.BOFU
        assert result.intentScore == pytest.approx(1.0)
        assert result.finalDecision == FinalDecision.SCALE

    def test_tofu_without_bottom_funnel_gets_variants(self, make_metrics, bands, default_config):
        metrics = make_metrics(
            spend_3d=40.0, spend_7d=100.0, spend_14d=150.0,
            impressions_7d=10000.0, clicks_7d=50.0, ctr_7d=0.5, daysActive=10,
        )

        result = classify_entity(metrics, bands, default_config)

        assert result.intentStage == IntentStage.TOFU
        assert result.finalDecision == FinalDecision.INTRODUCE_BOFU_VARIANTS
        assert any('10000 impressions' in e for e in result.evidence)

    def test_tofu_with_checkouts_holds(self, make_metrics, bands, default_config):
        metrics = make_metrics(
            spend_3d=40.0, spend_7d=100.0, spend_14d=150.0,
            impressions_7d=10000.0, ctr_7d=0.5, checkout_7d=3.0, daysActive=10,
        )

        result = classify_entity(metrics, bands, default_config)

        assert result.intentStage == IntentStage.TOFU
        assert result.finalDecision == FinalDecision.HOLD

    def test_fatigue_outranks_structure(self, fatigued_metrics, bands, default_config):
        result = classify_entity(
            fatigued_metrics, bands, default_config, child_spends=[600.0, 60.0]
        )

        assert result.structuralState == StructuralState.OVERCONCENTRATED
        assert result.finalDecision == FinalDecision.ROTATE_CONCEPT


# ============================================================
# LEARNING AXIS
# ============================================================

class TestLearningState:

    def test_no_activity_is_stabilizing(self, make_metrics, bands, default_config):
        result = classify_learning_state(make_metrics(), default_config, bands)

        assert result.state == LearningState.STABILIZING
        assert result.evidence == []

    def test_budget_swing_is_unstable(self, make_metrics, bands, default_config):
        metrics = make_metrics(spend_14d=100.0, spend_7d=50.0, budget_change_3d_pct=-40.0, daysActive=30)

        result = classify_learning_state(metrics, default_config, bands)

        assert result.state == LearningState.UNSTABLE
        assert result.confidence == pytest.approx(0.8333)

    def test_recent_edit_is_unstable(self, make_metrics, bands, default_config):
        metrics = make_metrics(spend_14d=100.0, spend_7d=50.0, daysSinceLastEdit=1, daysActive=30)

        assert classify_learning_state(metrics, default_config, bands).state == LearningState.UNSTABLE

    def test_edit_at_window_edge_is_not_unstable(self, make_metrics, bands, default_config):
        metrics = make_metrics(spend_14d=100.0, spend_7d=50.0, daysSinceLastEdit=3, daysActive=30)

        assert classify_learning_state(metrics, default_config, bands).state == LearningState.STABILIZING

    def test_young_entity_is_exploring(self, make_metrics, bands, default_config):
        metrics = make_metrics(spend_14d=100.0, spend_7d=100.0, daysActive=3)

        assert classify_learning_state(metrics, default_config, bands).state == LearningState.EXPLORATION

    def test_volatile_low_volume_is_exploring(self, make_metrics, bands, default_config):
        metrics = make_metrics(
            spend_14d=100.0, spend_7d=50.0, daysActive=10,
            conversions_cv_7d=0.9, conversions_14d=10.0, conversions_7d=5.0,
        )

        assert classify_learning_state(metrics, default_config, bands).state == LearningState.EXPLORATION

    def test_volatile_high_volume_is_not_exploiting(self, winning_metrics, bands, default_config):
        metrics = winning_metrics.model_copy(update={'conversions_cv_7d': 0.9})

        assert classify_learning_state(metrics, default_config, bands).state == LearningState.STABILIZING

    def test_exploitation(self, winning_metrics, bands, default_config):
        result = classify_learning_state(winning_metrics, default_config, bands)

        assert result.state == LearningState.EXPLOITATION
        assert result.evidence

    def test_expensive_entity_is_not_exploiting(self, winning_metrics, bands, default_config):
        metrics = winning_metrics.model_copy(update={'cpa_7d': 20.0})

        assert classify_learning_state(metrics, default_config, bands).state == LearningState.STABILIZING

    def test_immature_entity_is_not_exploiting(self, winning_metrics, bands, default_config):
        metrics = winning_metrics.model_copy(update={'daysActive': 10})

        assert classify_learning_state(metrics, default_config, bands).state == LearningState.STABILIZING


# ============================================================
# INTENT AXIS
# ============================================================

class TestIntent:

    def test_normalize_inside_band(self):
        assert normalize_metric(1.75, PercentileBand(p10=0.7, p50=1.75, p90=2.8)) == pytest.approx(0.5)

    def test_normalize_clamps(self):
        band = PercentileBand(p10=1.0, p50=2.0, p90=3.0)

        assert normalize_metric(10.0, band) == 1.0
        assert normalize_metric(-1.0, band) == 0.0

    def test_normalize_missing_value(self):
        assert normalize_metric(None, PercentileBand(p10=1.0, p50=2.0, p90=3.0)) == 0.0

    def test_normalize_degenerate_band(self):
        assert normalize_metric(3.0, PercentileBand(p10=2.0, p50=2.0, p90=2.0)) == 0.5

    def test_volatility_penalty(self, winning_metrics, bands, default_config):
        metrics = winning_metrics.model_copy(update={'conversions_cv_7d': 0.9})

        result = compute_intent(metrics, bands, default_config)

        assert result.score == pytest.approx(0.6)
        assert result.stage == IntentStage.MOFU

    def test_no_penalty_below_impression_floor(self, winning_metrics, bands, default_config):
        metrics = winning_metrics.model_copy(update={'conversions_cv_7d': 0.9, 'impressions_7d': 1000.0})

        assert compute_intent(metrics, bands, default_config).score == pytest.approx(1.0)

    def test_empty_metrics_are_tofu(self, make_metrics, bands, default_config):
        result = compute_intent(make_metrics(), bands, default_config)

        assert result.score == 0.0
        assert result.stage == IntentStage.TOFU
        assert result.confidence == pytest.approx(1.0)


# ============================================================
# FATIGUE AXIS
# ============================================================

class TestFatigue:

    def test_real(self, fatigued_metrics, default_config):
        assert classify_fatigue(fatigued_metrics, default_config).state == FatigueState.REAL

    def test_high_frequency_with_stable_cost(self, fatigued_metrics, default_config):
        metrics = fatigued_metrics.model_copy(update={'cpa_7d': 100.0})

        result = classify_fatigue(metrics, default_config)

        assert result.state == FatigueState.HEALTHY_REPETITION
        assert result.evidence

    def test_hook_rate_drop_is_concept_decay(self, make_metrics, default_config):
        metrics = make_metrics(frequency_7d=2.0, hookRate_delta_pct=-25.0)

        assert classify_fatigue(metrics, default_config).state == FatigueState.CONCEPT_DECAY

    def test_hook_rate_falls_back_to_concept(self, make_metrics, default_config):
        metrics = make_metrics('ad_1', level=EntityLevel.AD, conceptId='c1', frequency_7d=2.0)
        concept = ConceptMetrics(clientId=CLIENT_ID, conceptId='c1', hookRate_delta_pct=-30.0)

        result = classify_fatigue(metrics, default_config, concept)

        assert result.state == FatigueState.CONCEPT_DECAY
        assert 'concept c1' in result.evidence[0]

    def test_small_hook_rate_drop_is_none(self, make_metrics, default_config):
        metrics = make_metrics(frequency_7d=2.0, hookRate_delta_pct=-10.0)

        result = classify_fatigue(metrics, default_config)

        assert result.state == FatigueState.NONE
        assert result.evidence == []

    def test_raising_frequency_threshold_never_creates_real(self, fatigued_metrics):
        strict = EngineConfig(clientId=CLIENT_ID, fatigue=FatigueConfig(frequencyThreshold=4.0))
        relaxed = EngineConfig(clientId=CLIENT_ID, fatigue=FatigueConfig(frequencyThreshold=6.0))

        assert classify_fatigue(fatigued_metrics, strict).state == FatigueState.REAL
        assert classify_fatigue(fatigued_metrics, relaxed).state != FatigueState.REAL


# ============================================================
# STRUCTURE AXIS
# ============================================================

class TestStructure:

    def test_overconcentrated(self, make_metrics, default_config):
        result = classify_structure(make_metrics(spend_7d=500.0), [450.0, 50.0], default_config)

        assert result.state == StructuralState.OVERCONCENTRATED
        assert '90.0%' in result.evidence[0]

    def test_concentration_below_min_spend_is_healthy(self, make_metrics, default_config):
        result = classify_structure(make_metrics(spend_7d=80.0), [72.0, 8.0], default_config)

        assert result.state == StructuralState.HEALTHY

    def test_many_large_children_are_not_fragmented(self, make_metrics, default_config):
        spends = [300.0, 100.0, 100.0, 100.0, 100.0, 100.0, 100.0, 100.0]

        result = classify_structure(make_metrics(spend_7d=1000.0), spends, default_config)

        assert result.state == StructuralState.HEALTHY

    def test_no_children_is_healthy(self, make_metrics, default_config):
        assert classify_structure(make_metrics(spend_7d=100.0), None, default_config).state == StructuralState.HEALTHY


# ============================================================
# SCORES, VALIDATION AND CLIENT RUNS
# ============================================================

class TestScores:

    def test_overshoot_confidence(self):
        assert overshoot_confidence(4.0, 4.0) == 0.5
        assert overshoot_confidence(8.0, 4.0) == 1.0
        assert overshoot_confidence(-0.3, -0.2) == pytest.approx(1.0)

    def test_impact_score(self, make_metrics):
        assert compute_impact_score(make_metrics(spend_7d=50.0), 200.0) == pytest.approx(0.25)
        assert compute_impact_score(make_metrics(spend_7d=50.0), None) == 0.0


class TestValidation:

    def test_inconsistent_windows_raise(self, make_metrics):
        with pytest.raises(InputMalformedError):
            validate_metrics(make_metrics(spend_3d=500.0, spend_7d=100.0, spend_14d=200.0))

    def test_decision_without_evidence_is_rejected(self, make_classification):
        with pytest.raises(ValidationError):
            make_classification(finalDecision=FinalDecision.ROTATE_CONCEPT, evidence=[])

    def test_hold_without_evidence_is_accepted(self, make_classification):
        assert make_classification().finalDecision == FinalDecision.HOLD


class TestClassifyClientEntities:

    def test_no_spend_returns_empty(self, make_metrics, default_config):
        metrics = [make_metrics('adset_1'), make_metrics('adset_2')]

        assert classify_client_entities(CLIENT_ID, metrics, default_config, run_date=AS_OF) == []

    def test_malformed_entity_is_skipped(self, make_metrics, fatigued_metrics, default_config):
        broken = make_metrics('adset_broken', spend_3d=500.0, spend_7d=100.0, spend_14d=200.0)

        results = classify_client_entities(
            CLIENT_ID, [broken, fatigued_metrics], default_config, run_date=AS_OF
        )

        assert [c.entityId for c in results] == ['adset_fatigued']

    def test_same_inputs_same_output(self, fatigued_metrics, winning_metrics, default_config):
        metrics = [fatigued_metrics, winning_metrics]

        first = classify_client_entities(CLIENT_ID, metrics, default_config, run_date=AS_OF)
        second = classify_client_entities(CLIENT_ID, metrics, default_config, run_date=AS_OF)

        assert first == second
        assert [c.impactScore for c in first] == pytest.approx([660.0 / 860.0, 200.0 / 860.0], abs=1e-4)

    def test_outputs_stay_in_their_domains(self, fatigued_metrics, winning_metrics, default_config):
        results = classify_client_entities(
            CLIENT_ID, [fatigued_metrics, winning_metrics], default_config, run_date=AS_OF
        )

        for c in results:
            assert c.finalDecision in FinalDecision
            assert 0.0 <= c.intentScore <= 1.0
            assert 0.0 <= c.confidenceScore <= 1.0
            assert 0.0 <= c.impactScore <= 1.0
            assert c.date == AS_OF


@pytest.mark.storage
class TestPersistClassifications:

    pytestmark = pytest.mark.asyncio

    async def test_one_batch_with_json_evidence(self, mock_database, fatigued_metrics, bands, default_config):
        result = classify_entity(fatigued_metrics, bands, default_config)

        written = await persist_classifications([result])

        assert written == 1
        _, batch = mock_database.conn.executemany.call_args.args
        row = batch[0]
        assert row[2] == 'adset_fatigued'
        assert row[10] == FinalDecision.ROTATE_CONCEPT.value
        assert json.loads(row[11]) == result.evidence
