# backend/threatwatch/services/alerting/alert_dispatcher.py
import logging

from threatwatch.schemas.alerts import AlertEvent
from threatwatch.services.alerting.slack_alert_service import send_slack_alert
from threatwatch.services.alerting.webhook_alert_service import send_generic_webhook_alert

logger = logging.getLogger(__name__)


def dispatch_alert(alert: AlertEvent) -> None:
    """
    Fan an alert out to every configured channel.
    A failing channel is logged and never stops the others.
    """
    logger.info(
        "Dispatching %s alert %s (source_ip=%s)",
        alert.severity.value,
        alert.event_type,
        alert.source_ip,
    )

    try:
        send_slack_alert(alert)
    except Exception:
        logger.exception("Slack alert failed.")

    try:
        send_generic_webhook_alert(alert)
    except Exception:
        logger.exception("Generic webhook alert failed.")
