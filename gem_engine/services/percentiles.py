"""
Client-relative percentile bands for intent normalization.

Intent inputs (fitr, conversion rate, inverse CPA, CTR) are scored against
the distribution of the same client's active entities at the same level,
so a "good" CTR means good for this account rather than for the industry.

Rules:
- Population: entities with spend_7d > 0.
- Percentiles use linear interpolation between closest ranks
  (numpy's default 'linear' method).
- Fewer than MIN_ENTITIES_FOR_PERCENTILES active entities: every band is the
  fixed default.
- Enough entities but too few defined values for one metric: that metric
  alone falls back to its default band.

The result is a pure function of the metrics snapshot and is computed once
per client, level and run.
"""

import logging
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np

from gem_engine.core.exceptions import DataInsufficientError
from gem_engine.models.enums import EntityLevel, PercentileSource
from gem_engine.models.schemas import ClientPercentiles, EntityMetrics, PercentileBand

logger = logging.getLogger(__name__)


MIN_ENTITIES_FOR_PERCENTILES = 5

# fitr and convRate are ratios, cpaInv is conversions per currency unit,
# ctr is a percentage
DEFAULT_BANDS: Dict[str, PercentileBand] = {
    'fitr': PercentileBand(p10=0.01, p50=0.065, p90=0.12),
    'convRate': PercentileBand(p10=0.001, p50=0.0095, p90=0.018),
    'cpaInv': PercentileBand(p10=0.01, p50=0.105, p90=0.2),
    'ctr': PercentileBand(p10=0.7, p50=1.75, p90=2.8),
}


def cpa_inverse(metrics: EntityMetrics) -> Optional[float]:
    """Conversions per currency unit over 7d, None without conversions."""
    if metrics.cpa_7d is None or metrics.cpa_7d <= 0:
        return None
    return 1.0 / metrics.cpa_7d


METRIC_EXTRACTORS: Dict[str, Callable[[EntityMetrics], Optional[float]]] = {
    'fitr': lambda m: m.fitr_7d,
    'convRate': lambda m: m.conv_rate_7d,
    'cpaInv': cpa_inverse,
    'ctr': lambda m: m.ctr_7d,
}


def compute_band(values: Iterable[Optional[float]], min_values: int) -> PercentileBand:
    """
    Compute p10/p50/p90 over the defined values.

    Raises:
        DataInsufficientError: If fewer than min_values finite values remain.
    """
    clean = [float(v) for v in values if v is not None and np.isfinite(v)]
    if len(clean) < min_values:
        raise DataInsufficientError(f"{len(clean)} values, need {min_values}")

    p10, p50, p90 = np.percentile(np.array(clean, dtype=np.float64), [10, 50, 90])
    return PercentileBand(p10=round(float(p10), 6), p50=round(float(p50), 6), p90=round(float(p90), 6))


def default_percentiles(population: int = 0) -> ClientPercentiles:
    """The fixed default band set."""
    return ClientPercentiles(
        **{name: band.model_copy() for name, band in DEFAULT_BANDS.items()},
        source=PercentileSource.DEFAULT,
        population=population,
    )


def compute_client_percentiles(
    metrics: Iterable[EntityMetrics],
    min_entities: int = MIN_ENTITIES_FOR_PERCENTILES,
) -> ClientPercentiles:
    """
    Compute percentile bands for one client's entities at one level.

    Args:
        metrics: Entity metrics at a single level.
        min_entities: Minimum active population for sampled bands.

    Returns:
        ClientPercentiles: Sampled bands where possible, defaults otherwise.

    Example:
        >>> bands = compute_client_percentiles(adset_metrics)
        >>> bands.ctr.p90
        2.41
    """
    active = [m for m in metrics if m.spend_7d > 0]
    if len(active) < min_entities:
        return default_percentiles(len(active))

    bands: Dict[str, PercentileBand] = {}
    sampled = False

    for name, extractor in METRIC_EXTRACTORS.items():
        try:
            bands[name] = compute_band((extractor(m) for m in active), min_entities)
            sampled = True
        except DataInsufficientError as e:
            logger.debug(f"Percentile band {name} uses default: {e}")
            bands[name] = DEFAULT_BANDS[name].model_copy()

    return ClientPercentiles(
        **bands,
        source=PercentileSource.SAMPLE if sampled else PercentileSource.DEFAULT,
        population=len(active),
    )


def compute_percentiles_by_level(
    metrics: Iterable[EntityMetrics],
    min_entities: int = MIN_ENTITIES_FOR_PERCENTILES,
) -> Dict[EntityLevel, ClientPercentiles]:
    """One band set per level present in metrics."""
    by_level: Dict[EntityLevel, List[EntityMetrics]] = defaultdict(list)
    for m in metrics:
        by_level[m.level].append(m)

    return {
        level: compute_client_percentiles(level_metrics, min_entities)
        for level, level_metrics in by_level.items()
    }


__all__ = [
    'MIN_ENTITIES_FOR_PERCENTILES',
    'DEFAULT_BANDS',
    'cpa_inverse',
    'compute_band',
    'default_percentiles',
    'compute_client_percentiles',
    'compute_percentiles_by_level',
]
