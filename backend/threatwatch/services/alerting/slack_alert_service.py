# backend/threatwatch/services/alerting/slack_alert_service.py
import logging
import requests

from threatwatch.schemas.alerts import AlertEvent, AlertSeverity
from threatwatch.core.config import settings
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

SLACK_WEBHOOK_URL = settings.SLACK_ALERT_WEBHOOK_URL

_SEVERITY_EMOJI = {
    AlertSeverity.INFO: ":information_source:",
    AlertSeverity.WARNING: ":warning:",
    AlertSeverity.ERROR: ":red_circle:",
    AlertSeverity.CRITICAL: ":rotating_light:",
}


def build_slack_payload(alert: AlertEvent) -> dict:
    text_lines = [
        f"{_SEVERITY_EMOJI.get(alert.severity, '')} *{alert.title}*",
        f"*Severity*: `{alert.severity.value}`",
        alert.message,
    ]

    if alert.source_ip:
        text_lines.append(f"*Source IP*: `{alert.source_ip}`")

    if alert.context:
        text_lines.append("")
        for key, value in list(alert.context.items())[:8]:
            text_lines.append(f"• `{key}`: {value}")

    return {"text": "\n".join(text_lines)}


def send_slack_alert(alert: AlertEvent) -> None:
    """
    Simple Slack alert sender using Incoming Webhook URL.

    Configure env:
      SLACK_ALERT_WEBHOOK_URL=https://hooks.slack.com/services/...
    """
    if not SLACK_WEBHOOK_URL:
        logger.debug("Slack webhook URL not configured; skipping Slack alert.")
        return

    json_payload = jsonable_encoder(build_slack_payload(alert))

    try:
        resp = requests.post(SLACK_WEBHOOK_URL, json=json_payload, timeout=5)
        resp.raise_for_status()
    except Exception as exc:
        logger.exception("Failed to send Slack alert: %s", exc)
