"""
Pytest configuration and shared fixtures for GEM engine tests.

Provides:
- Custom markers
- A mocked asyncpg pool (acquire, transaction, fetch/execute/executemany)
- Factories for daily records, entity metrics and classifications
- A default EngineConfig

All storage tests run against the mock pool; no database is needed.
"""

from datetime import date, timedelta
from typing import Any, Callable, Generator, List
from unittest.mock import AsyncMock, Mock, patch

import pytest

from gem_engine.models.enums import (
    EntityLevel,
    FatigueState,
    FinalDecision,
    IntentStage,
    LearningState,
    StructuralState,
)
from gem_engine.models.schemas import (
    DailyPerformanceRecord,
    EngineConfig,
    EntityClassification,
    EntityMetrics,
)


CLIENT_ID = 'client_001'
AS_OF = date(2026, 3, 14)


# ============================================================
# PYTEST HOOKS
# ============================================================

def pytest_configure(config) -> None:
    """
    Register custom markers.

    - scenario: end-to-end classification scenarios
    - storage: tests exercising repository functions on the mock pool
    """
    config.addinivalue_line('markers', 'scenario: end-to-end classification scenarios')
    config.addinivalue_line('markers', 'storage: tests using the mocked asyncpg pool')


# ============================================================
# DATABASE MOCK FIXTURES
# ============================================================

@pytest.fixture
def mock_db_pool() -> AsyncMock:
    """
    Mock asyncpg pool.

    pool.acquire() and conn.transaction() both return async context
    managers. The connection is reachable as pool.conn for assertions.
    """
    pool = AsyncMock()

    conn = AsyncMock()
    conn.execute = AsyncMock(return_value=None)
    conn.executemany = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)

    transaction_context = AsyncMock()
    transaction_context.__aenter__ = AsyncMock(return_value=None)
    transaction_context.__aexit__ = AsyncMock(return_value=None)
    conn.transaction = Mock(return_value=transaction_context)

    acquire_context = AsyncMock()
    acquire_context.__aenter__ = AsyncMock(return_value=conn)
    acquire_context.__aexit__ = AsyncMock(return_value=None)
    pool.acquire = Mock(return_value=acquire_context)

    pool.close = AsyncMock(return_value=None)
    pool.conn = conn

    return pool


@pytest.fixture
def mock_database(mock_db_pool: AsyncMock) -> Generator[AsyncMock, None, None]:
    """Route every get_db_pool() call to the mock pool."""
    pool_getter = AsyncMock(return_value=mock_db_pool)
    with patch('gem_engine.core.database.get_db_pool', new=pool_getter), \
            patch('gem_engine.services.config_store.get_db_pool', new=pool_getter):
        yield mock_db_pool


# ============================================================
# CONFIG FIXTURES
# ============================================================

@pytest.fixture
def default_config() -> EngineConfig:
    """Documented defaults for the test client."""
    return EngineConfig(clientId=CLIENT_ID)


# ============================================================
# DATA FACTORIES
# ============================================================

@pytest.fixture
def make_records() -> Callable[..., List[DailyPerformanceRecord]]:
    """
    Factory for consecutive daily records of one entity ending at AS_OF.

    Keyword values not consumed by the factory are applied to every day.

    Example:
        records = make_records('adset_1', days=14, spend=100.0, purchases=2)
    """
    def _make(
        entity_id: str = 'adset_1',
        level: EntityLevel = EntityLevel.ADSET,
        days: int = 14,
        end: date = AS_OF,
        client_id: str = CLIENT_ID,
        parent_id: str = None,
        concept_id: str = None,
        **values: Any,
    ) -> List[DailyPerformanceRecord]:
        name = values.pop('name', entity_id.replace('_', ' ').title())
        return [
            DailyPerformanceRecord(
                clientId=client_id,
                level=level,
                entityId=entity_id,
                date=end - timedelta(days=offset),
                name=name,
                parentId=parent_id,
                conceptId=concept_id,
                **values,
            )
            for offset in reversed(range(days))
        ]
    return _make


@pytest.fixture
def make_metrics() -> Callable[..., EntityMetrics]:
    """Factory for EntityMetrics of the test client with overrides."""
    def _make(
        entity_id: str = 'adset_1',
        level: EntityLevel = EntityLevel.ADSET,
        client_id: str = CLIENT_ID,
        **overrides: Any,
    ) -> EntityMetrics:
        return EntityMetrics(
            clientId=client_id,
            level=level,
            entityId=entity_id,
            lastUpdate=AS_OF,
            **overrides,
        )
    return _make


@pytest.fixture
def make_classification() -> Callable[..., EntityClassification]:
    """Factory for EntityClassification; defaults to a neutral HOLD."""
    def _make(
        entity_id: str = 'adset_1',
        level: EntityLevel = EntityLevel.ADSET,
        **overrides: Any,
    ) -> EntityClassification:
        fields = {
            'clientId': CLIENT_ID,
            'level': level,
            'entityId': entity_id,
            'date': AS_OF,
            'learningState': LearningState.STABILIZING,
            'intentStage': IntentStage.MOFU,
            'intentScore': 0.5,
            'fatigueState': FatigueState.NONE,
            'structuralState': StructuralState.HEALTHY,
            'finalDecision': FinalDecision.HOLD,
            'evidence': [],
            'confidenceScore': 0.5,
            'impactScore': 0.1,
        }
        fields.update(overrides)
        return EntityClassification(**fields)
    return _make
