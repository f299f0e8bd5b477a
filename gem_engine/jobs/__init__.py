"""
Daily jobs for the GEM engine.

- daily_classification: Fan-out run of the per-client pipeline
- alert_digest: Slack Block Kit formatting of a client's alerts

Idempotency:
- Classifications and snapshots are upserted per (client, date), so a
  rerun on the same day overwrites rather than duplicates.
- The snapshot keeps every alert of the day. Only alerts missing from the
  same-day alert log are logged and notified, so a rerun only reports
  alerts that are new since the previous run.
"""

from gem_engine.jobs.alert_digest import format_alert_digest
from gem_engine.jobs.daily_classification import run_daily_classification, run_client

__all__ = [
    'format_alert_digest',
    'run_daily_classification',
    'run_client',
]
