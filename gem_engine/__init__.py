"""
GEM Engine Package.

Performance classification and alerting core for paid-media accounts.
Turns raw daily performance records into rolling metrics, client-relative
percentile bands, four-axis entity classifications and a de-duplicated,
severity-ordered alert list.

Subpackages:
    - core: Configuration, database pool, error taxonomy, logging
    - models: Pydantic schemas and enums
    - services: Metrics, percentiles, classification, alerts, config store,
      per-client snapshot pipeline
    - jobs: Daily classification fan-out and alert digest formatting
"""

__version__ = "1.0.0"
