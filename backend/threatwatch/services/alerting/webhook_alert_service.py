# backend/threatwatch/services/alerting/webhook_alert_service.py
import logging
import requests

from threatwatch.schemas.alerts import AlertEvent
from threatwatch.core.config import settings
from fastapi.encoders import jsonable_encoder

logger = logging.getLogger(__name__)

GENERIC_WEBHOOK_URL = settings.GENERIC_ALERT_WEBHOOK_URL


def send_generic_webhook_alert(alert: AlertEvent) -> None:
    """
    Generic JSON webhook for n8n, custom dashboards, etc.

    Configure env:
      GENERIC_ALERT_WEBHOOK_URL=https://your-endpoint/ingest
    """
    if not GENERIC_WEBHOOK_URL:
        logger.debug("Generic webhook URL not configured; skipping generic alert.")
        return

    # Make it JSON-safe (datetimes → isoformat, enums → values, etc.)
    json_payload = jsonable_encoder(alert)

    try:
        resp = requests.post(GENERIC_WEBHOOK_URL, json=json_payload, timeout=5)
        resp.raise_for_status()
    except Exception as exc:
        logger.exception("Failed to send generic webhook alert: %s", exc)
