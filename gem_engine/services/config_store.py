"""
Per-client engine configuration store.

One EngineConfig document per client lives in the engine_config table as
JSONB. Documents are created lazily with defaults on first read, changed only
through update_engine_config, and never deleted.

Loading is forgiving and updating is strict:
- A stored document is deep-merged over the documented defaults, so older
  or partial documents always resolve to a complete config.
- A stored group that fails validation falls back to its defaults with a
  warning. A bad threshold never stops a run.
- An explicit update that would produce an invalid config is rejected with
  ConfigurationError and nothing is written.

Usage:
    config = await get_engine_config("client_001")
    config = await update_engine_config("client_001", {"fatigue": {"frequencyThreshold": 5}})
"""

import copy
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from gem_engine.core.database import get_db_pool
from gem_engine.core.exceptions import ConfigurationError, ConfigurationMissingError
from gem_engine.models.schemas import ENGINE_CONFIG_VERSION, EngineConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Defaults and Merging
# =============================================================================


def get_default_engine_config(client_id: str) -> EngineConfig:
    """The documented default config for a client."""
    return EngineConfig(clientId=client_id)


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge override into a copy of base.

    Nested mappings merge key by key. Any other value in override replaces
    the base value, including lists.

    Example:
        >>> deep_merge({'a': {'x': 1, 'y': 2}}, {'a': {'y': 3}})
        {'a': {'x': 1, 'y': 3}}
    """
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def merge_engine_config(client_id: str, stored: Optional[Mapping[str, Any]]) -> EngineConfig:
    """
    Resolve a stored (possibly partial or outdated) document to a full config.

    Args:
        client_id: Owner of the config. Always wins over a stored clientId.
        stored: Raw stored document, or None.

    Returns:
        EngineConfig: Valid config. Invalid top-level groups are replaced
            by their defaults.
    """
    defaults = get_default_engine_config(client_id).model_dump(mode='json')
    if not stored:
        return EngineConfig.model_validate(defaults)

    stored_version = stored.get('version')
    if stored_version is not None and stored_version != ENGINE_CONFIG_VERSION:
        logger.info(f"{client_id}: upgrading engine config v{stored_version} to v{ENGINE_CONFIG_VERSION}")

    merged = deep_merge(defaults, stored)
    merged['clientId'] = client_id
    merged['version'] = ENGINE_CONFIG_VERSION

    try:
        return EngineConfig.model_validate(merged)
    except ValidationError as e:
        logger.warning(
            f"{client_id}: stored engine config failed validation "
            f"({e.error_count()} error(s)), resolving group by group"
        )
        return _resolve_valid_groups(client_id, defaults, merged)


def _resolve_valid_groups(
    client_id: str,
    defaults: Dict[str, Any],
    merged: Dict[str, Any],
) -> EngineConfig:
    """Keep each top-level key only if it validates on its own."""
    resolved = dict(defaults)
    for key, value in merged.items():
        if key not in defaults:
            continue
        try:
            EngineConfig.model_validate({**defaults, key: value})
            resolved[key] = value
        except ValidationError as e:
            logger.warning(
                f"{client_id}: stored engine config '{key}' is invalid "
                f"({e.error_count()} error(s)), using defaults"
            )

    return EngineConfig.model_validate(resolved)


# =============================================================================
# Database Operations
# =============================================================================


async def _load_stored_config(conn, client_id: str, for_update: bool = False) -> Dict[str, Any]:
    """
    Read the raw stored document.

    With for_update the row stays locked until the caller's transaction ends.

    Raises:
        ConfigurationMissingError: If no row exists or the document is not
            a JSON object.
    """
    query = "SELECT config FROM engine_config WHERE client_id = $1"
    if for_update:
        query += " FOR UPDATE"
    row = await conn.fetchrow(query, client_id)
    if row is None:
        raise ConfigurationMissingError(client_id, "no stored engine config")

    payload = row['config']
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ConfigurationMissingError(client_id, f"stored engine config is not JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ConfigurationMissingError(client_id, "stored engine config is not an object")
    return payload


async def get_engine_config(client_id: str) -> EngineConfig:
    """
    Load a client's config, creating it with defaults when absent.

    Returns:
        EngineConfig: Always complete and valid.
    """
    pool = await get_db_pool()

    async with pool.acquire() as conn:
        try:
            stored = await _load_stored_config(conn, client_id)
        except ConfigurationMissingError as e:
            logger.warning(f"{e}; using defaults")
            config = get_default_engine_config(client_id)
            await conn.execute(
                """
                INSERT INTO engine_config (client_id, config, updated_at)
                VALUES ($1, $2::jsonb, NOW())
                ON CONFLICT (client_id) DO NOTHING
                """,
                client_id,
                config.model_dump_json(),
            )
            return config

    return merge_engine_config(client_id, stored)


async def update_engine_config(client_id: str, patch: Mapping[str, Any]) -> EngineConfig:
    """
    Merge a partial update into a client's config and persist it.

    The read and the write run in one transaction with the stored row locked,
    so concurrent updates of the same client apply one after the other.

    Args:
        client_id: Owner of the config.
        patch: Partial document, e.g. {"structure": {"fragmentationAdsetsMax": 8}}.

    Returns:
        EngineConfig: The stored result.

    Raises:
        ConfigurationError: If the merged config fails validation.
    """
    pool = await get_db_pool()

    async with pool.acquire() as conn:
        async with conn.transaction():
            try:
                stored = await _load_stored_config(conn, client_id, for_update=True)
                current = merge_engine_config(client_id, stored)
            except ConfigurationMissingError as e:
                logger.warning(f"{e}; updating from defaults")
                current = get_default_engine_config(client_id)

            merged = deep_merge(current.model_dump(mode='json'), patch)
            merged['clientId'] = client_id
            merged['version'] = ENGINE_CONFIG_VERSION
            merged['updatedAt'] = datetime.now(timezone.utc).isoformat()

            try:
                updated = EngineConfig.model_validate(merged)
            except ValidationError as e:
                raise ConfigurationError(
                    f"Invalid engine config update for {client_id}: {e.error_count()} error(s)"
                ) from e

            await conn.execute(
                """
                INSERT INTO engine_config (client_id, config, updated_at)
                VALUES ($1, $2::jsonb, NOW())
                ON CONFLICT (client_id)
                DO UPDATE SET config = EXCLUDED.config, updated_at = NOW()
                """,
                client_id,
                updated.model_dump_json(),
            )

    logger.info(f"{client_id}: engine config updated ({', '.join(sorted(patch))})")
    return updated


__all__ = [
    'get_default_engine_config',
    'deep_merge',
    'merge_engine_config',
    'get_engine_config',
    'update_engine_config',
]
