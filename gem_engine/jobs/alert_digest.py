"""
Alert digest formatting.

Builds a Slack Block Kit message from one client's alert list. Delivery is
not done here: the blocks are handed to whatever notifier the caller passes
to the daily job.

Layout:
- Header with the snapshot title, client and date
- Severity counts
- Top 3 alerts by impactScore
- One section per alert type, up to MAX_ALERTS_PER_TYPE titles each
"""

from datetime import date
from typing import Any, Dict, List

from gem_engine.models.enums import AlertSeverity
from gem_engine.models.schemas import Alert

TOP_ALERTS = 3
MAX_ALERTS_PER_TYPE = 5

SEVERITY_EMOJI = {
    AlertSeverity.CRITICAL: "🚨",
    AlertSeverity.WARNING: "⚠️",
    AlertSeverity.INFO: "💡",
}


def _section(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def format_alert_digest(
    client_name: str,
    alerts: List[Alert],
    run_date: date,
    title: str = "Daily performance snapshot",
) -> List[Dict[str, Any]]:
    """
    Format alerts into Slack Block Kit blocks.

    Args:
        client_name: Display name of the client.
        alerts: Alerts already ordered by the alert engine.
        run_date: Date of the run.
        title: Header prefix, usually EngineConfig.dailySnapshotTitle.

    Returns:
        List of Block Kit block dicts.
    """
    blocks: List[Dict[str, Any]] = [
        {
            "type": "header",
            "text": {
                "type": "plain_text",
                "text": f"{title} - {client_name} - {run_date.strftime('%B %d, %Y')}",
                "emoji": True,
            },
        },
        {"type": "divider"},
    ]

    if not alerts:
        blocks.append(_section("✅ No new alerts today."))
        return blocks

    counts = "  |  ".join(
        f"{SEVERITY_EMOJI[severity]} {severity.value.title()}: *{sum(1 for a in alerts if a.severity == severity)}*"
        for severity in AlertSeverity
    )
    blocks.append(_section(f"*Summary*\n\n{counts}"))

    top = sorted(alerts, key=lambda a: -a.impactScore)[:TOP_ALERTS]
    top_lines = [
        f"{i}. {SEVERITY_EMOJI[a.severity]} *{a.title}*\n    {a.description} (impact {a.impactScore:.0%})"
        for i, a in enumerate(top, 1)
    ]
    blocks.append(_section("*Top priorities*\n\n" + "\n".join(top_lines)))
    blocks.append({"type": "divider"})

    by_type: Dict[str, List[Alert]] = {}
    for alert in alerts:
        by_type.setdefault(alert.type.value, []).append(alert)

    for alert_type, group in by_type.items():
        lines = [f"• {a.title}" for a in group[:MAX_ALERTS_PER_TYPE]]
        if len(group) > MAX_ALERTS_PER_TYPE:
            lines.append(f"_…and {len(group) - MAX_ALERTS_PER_TYPE} more_")
        blocks.append(_section(f"*{alert_type}* ({len(group)})\n" + "\n".join(lines)))

    blocks.append({
        "type": "context",
        "elements": [{"type": "mrkdwn", "text": f"{len(alerts)} alert(s) for {run_date.isoformat()}"}],
    })
    return blocks
