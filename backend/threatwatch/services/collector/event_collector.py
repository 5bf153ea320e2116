# backend/threatwatch/services/collector/event_collector.py
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Sequence, Union

from threatwatch.schemas.threats import ThreatEvent
from threatwatch.services.collector.flow_interest_filter import is_interesting
from threatwatch.services.collector.unifi_client import UniFiClient, load_unifi_credentials
from threatwatch.services.normalizer.threat_event_normalizer import (
    normalize_flow_events,
    normalize_v1_events,
    normalize_v2_events,
)

logger = logging.getLogger(__name__)


@dataclass
class Ok:
    events: List[ThreatEvent]


@dataclass
class TryNext:
    reason: str


StrategyResult = Union[Ok, TryNext]
IpsStrategy = Callable[[datetime, datetime, int], Awaitable[StrategyResult]]


def dedupe_by_id(events: Sequence[ThreatEvent]) -> List[ThreatEvent]:
    """Keep the first event for every id, preserving order."""
    seen: Dict[str, ThreatEvent] = {}
    for event in events:
        seen.setdefault(event.id, event)
    return list(seen.values())


class EventCollector:
    """
    Pulls IPS events and traffic flows for a [start, end) range and returns
    them normalized and deduplicated.

    Traffic flows are collected in two passes:
      A) all flows, filtered client-side for interest; bounded by the page
         budget, so blocked flows buried behind allowed traffic can be missed
      B) blocked flows only, filtered server-side; small result set, reliable
         pagination. Merged into A by id.

    IPS events try the v2 system-log API first and fall back to the v1
    stat/ips/event API.

    A failing source never stops the other one; partial results are fine.
    """

    # Pass B is small; give it room even when the caller's budget is tight
    BLOCKED_PASS_MIN_PAGES = 100

    def __init__(self, client: UniFiClient, settings_store=None) -> None:
        self.client = client
        self.settings_store = settings_store
        self._ips_strategies: List[IpsStrategy] = [
            self._collect_ips_v2,
            self._collect_ips_v1,
        ]

    @property
    def is_configured(self) -> bool:
        return self.client.is_configured

    async def refresh_connection(self) -> None:
        """Pick up controller settings saved since the last cycle."""
        if self.settings_store is None:
            return
        credentials = load_unifi_credentials(self.settings_store)
        if await self.client.apply_credentials(credentials):
            logger.info("UniFi connection settings changed; using %s", credentials.base_url or "(none)")

    async def collect_range(
        self, start: datetime, end: datetime, max_pages: int
    ) -> List[ThreatEvent]:
        events: List[ThreatEvent] = []

        try:
            events.extend(await self.collect_traffic_flows(start, end, max_pages))
        except Exception:
            logger.warning("Traffic flow collection failed for %s..%s", start, end, exc_info=True)

        try:
            events.extend(await self.collect_ips_events(start, end, max_pages))
        except Exception:
            logger.warning("IPS event collection failed for %s..%s", start, end, exc_info=True)

        return dedupe_by_id(events)

    # --------------------------------------------------------
    # Traffic flows
    # --------------------------------------------------------
    async def collect_traffic_flows(
        self, start: datetime, end: datetime, max_pages: int
    ) -> List[ThreatEvent]:
        interesting = await self._paginate_flows(
            start, end, max_pages, blocked_only=False
        )
        blocked = await self._paginate_flows(
            start, end, max(max_pages, self.BLOCKED_PASS_MIN_PAGES), blocked_only=True
        )

        seen_ids = {e.id for e in interesting}
        extra = [e for e in blocked if e.id not in seen_ids]
        if extra:
            logger.debug(
                "Blocked-only pass recovered %d flows missed by the filtered pass", len(extra)
            )
        return interesting + extra

    async def _paginate_flows(
        self,
        start: datetime,
        end: datetime,
        max_pages: int,
        blocked_only: bool,
    ) -> List[ThreatEvent]:
        label = "blocked" if blocked_only else "interest"
        events: List[ThreatEvent] = []
        page = 0

        while page < max_pages:
            try:
                response = await self.client.get_traffic_flows(
                    start, end, page, blocked_only=blocked_only
                )
            except Exception:
                logger.warning(
                    "Traffic flow page %d (%s pass) failed; keeping %d events",
                    page, label, len(events), exc_info=True,
                )
                break

            data = response.get("data")
            if not isinstance(data, list) or not data:
                break

            flows = data if blocked_only else [f for f in data if is_interesting(f)]
            if flows:
                events.extend(normalize_flow_events(flows))

            if not response.get("has_next"):
                break
            page += 1

        if events:
            logger.debug(
                "Collected %d flow events over %d pages (%s pass)", len(events), page + 1, label
            )
        return events

    # --------------------------------------------------------
    # IPS events
    # --------------------------------------------------------
    async def collect_ips_events(
        self, start: datetime, end: datetime, max_pages: int
    ) -> List[ThreatEvent]:
        for strategy in self._ips_strategies:
            try:
                result = await strategy(start, end, max_pages)
            except Exception as exc:
                result = TryNext(f"{type(exc).__name__}: {exc}")

            if isinstance(result, Ok):
                return result.events
            logger.debug("%s gave no events: %s", strategy.__name__, result.reason)

        return []

    async def _collect_ips_v2(
        self, start: datetime, end: datetime, max_pages: int
    ) -> StrategyResult:
        events: List[ThreatEvent] = []
        raw_count = 0

        for page in range(max_pages):
            try:
                response = await self.client.get_threat_log_events(start, end, page)
            except Exception as exc:
                if not events:
                    return TryNext(f"v2 page {page} failed: {type(exc).__name__}: {exc}")
                logger.warning(
                    "v2 threat log page %d failed; keeping %d events",
                    page, len(events), exc_info=True,
                )
                break

            data = response.get("data")
            if not isinstance(data, list):
                if not events:
                    return TryNext("malformed v2 response")
                logger.warning("Malformed v2 threat log page %d; keeping %d events", page, len(events))
                break
            if not data:
                break

            raw_count += len(data)
            events.extend(normalize_v2_events(data))

            total = response.get("totalCount")
            if response.get("isLastPage", True):
                break
            if isinstance(total, int) and raw_count >= total:
                break

        if not events:
            return TryNext("v2 returned no events")

        logger.debug("Collected %d IPS events via v2 API", len(events))
        return Ok(events)

    async def _collect_ips_v1(
        self, start: datetime, end: datetime, max_pages: int
    ) -> StrategyResult:
        raw = await self.client.get_ips_events(start, end)
        events = normalize_v1_events(raw)
        if not events:
            return TryNext("v1 returned no events")

        logger.debug("Collected %d IPS events via v1 API", len(events))
        return Ok(events)
