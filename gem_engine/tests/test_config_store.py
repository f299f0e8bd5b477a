"""
Tests for the engine configuration store.
"""

import json
import logging

import pytest

from gem_engine.core.exceptions import ConfigurationError
from gem_engine.models.enums import AlertType
from gem_engine.models.schemas import ENGINE_CONFIG_VERSION
from gem_engine.services.config_store import (
    deep_merge,
    get_default_engine_config,
    get_engine_config,
    merge_engine_config,
    update_engine_config,
)
from gem_engine.tests.conftest import CLIENT_ID


# ============================================================
# DEFAULTS AND MERGING
# ============================================================

class TestDefaults:

    def test_documented_defaults(self):
        config = get_default_engine_config(CLIENT_ID)

        assert config.clientId == CLIENT_ID
        assert config.version == ENGINE_CONFIG_VERSION
        assert config.fatigue.frequencyThreshold == 4.0
        assert config.fatigue.cpaMultiplierThreshold == 1.25
        assert config.fatigue.hookRateDeltaThreshold == -0.2
        assert config.structure.fragmentationAdsetsMax == 6
        assert config.structure.overconcentrationPct == 0.8
        assert config.structure.overconcentrationMinSpend == 100.0
        assert config.alerts.learningResetBudgetChangePct == 30.0
        assert config.alerts.scalingFrequencyMax == 4.0
        assert config.learning.unstableDays == 3
        assert config.learning.explorationDays == 4
        assert config.learning.exploitationMinConversions == 50
        assert config.intent.bofuScoreThreshold == 0.65
        assert config.intent.mofuScoreThreshold == 0.35
        assert config.enabledAlerts is None

    def test_every_alert_type_has_a_template(self):
        config = get_default_engine_config(CLIENT_ID)

        assert set(config.alertTemplates) == set(AlertType)


class TestDeepMerge:

    def test_nested_merge(self):
        assert deep_merge({'a': {'x': 1, 'y': 2}}, {'a': {'y': 3}}) == {'a': {'x': 1, 'y': 3}}

    def test_lists_are_replaced(self):
        assert deep_merge({'a': [1, 2]}, {'a': [3]}) == {'a': [3]}

    def test_inputs_are_not_mutated(self):
        base = {'a': {'x': 1}}
        override = {'a': {'y': [1]}}

        merged = deep_merge(base, override)
        merged['a']['y'].append(2)

        assert base == {'a': {'x': 1}}
        assert override == {'a': {'y': [1]}}


class TestMergeEngineConfig:

    def test_empty_document_is_defaults(self):
        assert merge_engine_config(CLIENT_ID, None) == get_default_engine_config(CLIENT_ID)

    def test_partial_group_keeps_other_defaults(self):
        config = merge_engine_config(CLIENT_ID, {'fatigue': {'frequencyThreshold': 5}})

        assert config.fatigue.frequencyThreshold == 5.0
        assert config.fatigue.cpaMultiplierThreshold == 1.25
        assert config.structure.fragmentationAdsetsMax == 6

    def test_invalid_group_falls_back_alone(self):
        config = merge_engine_config(CLIENT_ID, {
            'fatigue': {'frequencyThreshold': -1},
            'structure': {'fragmentationAdsetsMax': 8},
        })

        assert config.fatigue.frequencyThreshold == 4.0
        assert config.structure.fragmentationAdsetsMax == 8

    def test_crossed_intent_cutoffs_fall_back(self):
        config = merge_engine_config(CLIENT_ID, {'intent': {'mofuScoreThreshold': 0.7}})

        assert config.intent.mofuScoreThreshold == 0.35
        assert config.intent.bofuScoreThreshold == 0.65

    def test_unknown_alert_type_falls_back(self):
        config = merge_engine_config(CLIENT_ID, {'enabledAlerts': ['NOT_AN_ALERT']})

        assert config.enabledAlerts is None

    def test_enabled_alerts_are_kept(self):
        config = merge_engine_config(CLIENT_ID, {'enabledAlerts': ['KILL_RETRY']})

        assert config.enabledAlerts == [AlertType.KILL_RETRY]

    def test_older_version_is_upgraded(self, caplog):
        stored = {'version': 0, 'clientId': 'someone_else', 'learning': {'stabilizingDays': 10}}

        with caplog.at_level(logging.INFO, logger='gem_engine.services.config_store'):
            config = merge_engine_config(CLIENT_ID, stored)

        assert config.version == ENGINE_CONFIG_VERSION
        assert config.clientId == CLIENT_ID
        assert config.learning.stabilizingDays == 10
        assert 'upgrading engine config' in caplog.text

    def test_unknown_keys_are_ignored(self):
        config = merge_engine_config(CLIENT_ID, {'legacyFlag': True})

        assert config == get_default_engine_config(CLIENT_ID)


# ============================================================
# STORAGE
# ============================================================

@pytest.mark.storage
class TestGetEngineConfig:

    pytestmark = pytest.mark.asyncio

    async def test_missing_config_is_created_with_defaults(self, mock_database):
        config = await get_engine_config(CLIENT_ID)

        assert config == get_default_engine_config(CLIENT_ID)
        mock_database.conn.execute.assert_awaited_once()
        assert mock_database.conn.execute.call_args.args[1] == CLIENT_ID

    async def test_stored_json_is_merged(self, mock_database):
        mock_database.conn.fetchrow.return_value = {
            'config': json.dumps({'fatigue': {'frequencyThreshold': 6}})
        }

        config = await get_engine_config(CLIENT_ID)

        assert config.fatigue.frequencyThreshold == 6.0
        mock_database.conn.execute.assert_not_awaited()

    async def test_decoded_document_is_accepted(self, mock_database):
        mock_database.conn.fetchrow.return_value = {
            'config': {'structure': {'overconcentrationPct': 0.9}}
        }

        config = await get_engine_config(CLIENT_ID)

        assert config.structure.overconcentrationPct == 0.9

    async def test_unreadable_document_uses_defaults(self, mock_database):
        mock_database.conn.fetchrow.return_value = {'config': 'not json'}

        config = await get_engine_config(CLIENT_ID)

        assert config == get_default_engine_config(CLIENT_ID)


@pytest.mark.storage
class TestUpdateEngineConfig:

    pytestmark = pytest.mark.asyncio

    async def test_valid_update_is_upserted(self, mock_database):
        mock_database.conn.fetchrow.return_value = {'config': '{}'}

        config = await update_engine_config(CLIENT_ID, {'fatigue': {'frequencyThreshold': 5}})

        assert config.fatigue.frequencyThreshold == 5.0
        assert config.updatedAt is not None
        mock_database.conn.execute.assert_awaited_once()
        stored = json.loads(mock_database.conn.execute.call_args.args[2])
        assert stored['fatigue']['frequencyThreshold'] == 5.0
        assert stored['clientId'] == CLIENT_ID

    async def test_invalid_update_is_rejected(self, mock_database):
        mock_database.conn.fetchrow.return_value = {'config': '{}'}

        with pytest.raises(ConfigurationError):
            await update_engine_config(CLIENT_ID, {'fatigue': {'frequencyThreshold': -1}})

        mock_database.conn.execute.assert_not_awaited()

    async def test_update_of_new_client_upserts_once(self, mock_database):
        config = await update_engine_config(CLIENT_ID, {'enabledAlerts': ['KILL_RETRY']})

        assert config.enabledAlerts == [AlertType.KILL_RETRY]
        mock_database.conn.execute.assert_awaited_once()

    async def test_update_locks_row_inside_transaction(self, mock_database):
        mock_database.conn.fetchrow.return_value = {'config': '{"fatigue": {"frequencyThreshold": 6}}'}

        config = await update_engine_config(CLIENT_ID, {'structure': {'fragmentationAdsetsMax': 8}})

        query = mock_database.conn.fetchrow.call_args.args[0]
        assert query.rstrip().endswith("FOR UPDATE")
        mock_database.conn.transaction.assert_called_once()
        mock_database.conn.transaction.return_value.__aenter__.assert_awaited_once()
        assert config.fatigue.frequencyThreshold == 6.0
        assert config.structure.fragmentationAdsetsMax == 8

    async def test_rejected_update_leaves_transaction_with_error(self, mock_database):
        mock_database.conn.fetchrow.return_value = {'config': '{}'}

        with pytest.raises(ConfigurationError):
            await update_engine_config(CLIENT_ID, {'fatigue': {'frequencyThreshold': -1}})

        exc_type = mock_database.conn.transaction.return_value.__aexit__.call_args.args[0]
        assert exc_type is ConfigurationError
