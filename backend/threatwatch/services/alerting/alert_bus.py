# backend/threatwatch/services/alerting/alert_bus.py
import asyncio
import logging
from typing import Callable

from threatwatch.schemas.alerts import AlertEvent
from threatwatch.services.alerting.alert_dispatcher import dispatch_alert

logger = logging.getLogger(__name__)


class AlertEventBus:
    """
    Fire-and-forget publishing of alerts.

    Channels post over blocking HTTP, so dispatch runs in a worker thread.
    publish() never raises: a lost alert is logged, not propagated.
    """

    def __init__(self, dispatcher: Callable[[AlertEvent], None] = dispatch_alert) -> None:
        self._dispatcher = dispatcher

    async def publish(self, alert: AlertEvent) -> None:
        try:
            await asyncio.to_thread(self._dispatcher, alert)
        except Exception:
            logger.warning("Failed to publish alert %s", alert.event_type, exc_info=True)


alert_bus = AlertEventBus()
