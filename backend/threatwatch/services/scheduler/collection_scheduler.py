# backend/threatwatch/services/scheduler/collection_scheduler.py
"""
Background collection loop.

Every cycle:
  1. load config and controller credentials from the settings store
     (failures keep last-known values)
  2. phase 1: sweep the recent window (since last sync, at most 24h back)
  3. phase 2: walk historical backfill backwards in 6h chunks
  4. pattern detection, pattern alerts, attack-chain alerts
  5. maintenance: geo database freshness, geo backfill, daily purge

A cycle runs after the poll interval elapses or when trigger_collection()
is called, whichever comes first. Exceptions inside a cycle are logged and
the loop carries on.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from threatwatch.core.config import settings
from threatwatch.schemas.alerts import AlertEvent, AlertSeverity
from threatwatch.schemas.threats import (
    CollectionStatus,
    EventSource,
    PatternType,
    ThreatEvent,
    ThreatPattern,
)
from threatwatch.services.analysis.attack_chain_sequencer import (
    AttackChainSequencer,
    attack_chain_sequencer,
)
from threatwatch.services.analysis.kill_chain_classifier import (
    KillChainClassifier,
    kill_chain_classifier,
)
from threatwatch.services.analysis.pattern_analyzer import PatternAnalyzer, pattern_analyzer
from threatwatch.services.scheduler.scheduler_state import CollectionConfig, SchedulerState

logger = logging.getLogger(__name__)

# Settings store keys
KEY_ENABLED = "threats.enabled"
KEY_POLL_INTERVAL = "threats.poll_interval_minutes"
KEY_RETENTION_DAYS = "threats.retention_days"
KEY_LAST_SYNC = "threats.last_sync_timestamp"
KEY_BACKFILL_CURSOR = "threats.backfill_cursor"
KEY_GEO_CHECK = "threats.geo_check_timestamp"
KEY_MAXMIND_LICENSE = "maxmind.license_key"
KEY_MAXMIND_LAST_DOWNLOAD = "maxmind.last_download"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Ignoring unparseable stored timestamp %r", value)
        return None
    # stored values are UTC; keep the service-wide naive-UTC convention
    return parsed.replace(tzinfo=None)


def _parse_positive_int(value: Optional[str]) -> Optional[int]:
    try:
        parsed = int(value) if value is not None else None
    except ValueError:
        return None
    if parsed is None or parsed < 1:
        return None
    return parsed


class CollectionScheduler:
    RECENT_WINDOW = timedelta(hours=24)
    SYNC_OVERLAP = timedelta(minutes=5)
    RECENT_MAX_PAGES = 10_000

    BACKFILL_CHUNK = timedelta(hours=6)
    BACKFILL_MAX_PAGES = 20
    MAX_BACKFILL_CHUNKS_PER_CYCLE = 12

    ANALYSIS_WINDOW = timedelta(hours=6)
    ANALYSIS_EVENT_LIMIT = 5000
    SEQUENCE_LIMIT = 200

    MAINTENANCE_INTERVAL = timedelta(hours=24)
    GEO_STALE_AFTER = timedelta(days=30)
    PURGE_HOUR_UTC = 3

    EVENT_ALERT_MIN_SEVERITY = 4

    def __init__(
        self,
        collector,
        repository,
        settings_store,
        enrichment,
        alert_bus,
        classifier: KillChainClassifier = kill_chain_classifier,
        analyzer: PatternAnalyzer = pattern_analyzer,
        sequencer: AttackChainSequencer = attack_chain_sequencer,
        clock: Callable[[], datetime] = datetime.utcnow,
        startup_delay_seconds: float = 0,
    ) -> None:
        self.collector = collector
        self.repository = repository
        self.settings_store = settings_store
        self.enrichment = enrichment
        self.alert_bus = alert_bus
        self.classifier = classifier
        self.analyzer = analyzer
        self.sequencer = sequencer
        self._clock = clock
        self._startup_delay = startup_delay_seconds

        self.config = CollectionConfig(
            enabled=settings.COLLECTION_ENABLED,
            poll_interval_minutes=settings.DEFAULT_POLL_INTERVAL_MINUTES,
            retention_days=settings.DEFAULT_RETENTION_DAYS,
        )
        self.state = SchedulerState()
        self.has_collected_once = False

        self._trigger = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None
        self._rebackfill_requested = False
        self._geo_was_available = False

    # --------------------------------------------------------
    # Control surface (safe to call from request handlers)
    # --------------------------------------------------------
    def trigger_collection(self) -> None:
        """
        Ask the loop to run a cycle now. Never blocks; repeated calls before
        the loop wakes collapse into one run.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            self._trigger.set()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._trigger.set()
        else:
            loop.call_soon_threadsafe(self._trigger.set)

    def request_rebackfill(self) -> None:
        """Restart historical backfill from the recent window on the next cycle."""
        self._rebackfill_requested = True
        self.trigger_collection()

    @property
    def status(self) -> CollectionStatus:
        return CollectionStatus(
            has_collected_once=self.has_collected_once,
            last_sync=self.state.last_sync,
            backfill_cursor=self.state.backfill_cursor,
            backfill_complete=self.state.backfill_complete,
        )

    # --------------------------------------------------------
    # Loop lifecycle
    # --------------------------------------------------------
    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="threat-collection")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        logger.info("Threat collection service starting")

        try:
            if self._startup_delay:
                await asyncio.sleep(self._startup_delay)

            self.state = self.load_state()

            while True:
                try:
                    self.state = await self.run_cycle(self.state)
                    self.has_collected_once = True
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Threat collection cycle failed")

                await self._wait_for_trigger(self.config.poll_interval_minutes * 60)
        finally:
            logger.info("Threat collection service stopped")

    async def _wait_for_trigger(self, timeout_seconds: float) -> None:
        try:
            await asyncio.wait_for(self._trigger.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            pass
        # cleared on wake: triggers arriving during the next cycle queue one more run
        self._trigger.clear()

    def load_state(self) -> SchedulerState:
        """Restore persisted cursors. Unreadable values start from scratch."""
        try:
            last_sync = _parse_timestamp(self.settings_store.get(KEY_LAST_SYNC))
            cursor = _parse_timestamp(self.settings_store.get(KEY_BACKFILL_CURSOR))
        except Exception:
            logger.warning("Could not load collection cursors; starting fresh", exc_info=True)
            return SchedulerState()
        return SchedulerState(last_sync=last_sync, backfill_cursor=cursor)

    # --------------------------------------------------------
    # One cycle
    # --------------------------------------------------------
    async def run_cycle(
        self, state: SchedulerState, now: Optional[datetime] = None
    ) -> SchedulerState:
        now = now or self._clock()
        self.config = self._load_config(self.config)

        if not self.config.enabled:
            logger.debug("Threat collection disabled")
            return state

        await self._refresh_connection()

        if not getattr(self.collector, "is_configured", True):
            logger.debug("Network controller not configured, skipping threat collection")
            return state

        if self._rebackfill_requested:
            self._rebackfill_requested = False
            state = self._reset_backfill(state)

        state, recent_start = await self._collect_recent(state, now)
        await asyncio.sleep(0)
        state = await self._collect_backfill(state, recent_start, now)
        await asyncio.sleep(0)
        state = await self._analyze(state, now)
        state = await self._maintenance(state, now)
        return state

    async def _refresh_connection(self) -> None:
        refresh = getattr(self.collector, "refresh_connection", None)
        if refresh is None:
            return
        try:
            await refresh()
        except Exception:
            logger.warning("Could not refresh controller connection settings", exc_info=True)

    def _load_config(self, previous: CollectionConfig) -> CollectionConfig:
        enabled = previous.enabled
        interval = previous.poll_interval_minutes
        retention = previous.retention_days

        try:
            raw_enabled = self.settings_store.get(KEY_ENABLED)
            if raw_enabled is not None:
                enabled = raw_enabled.strip().lower() != "false"
            interval = _parse_positive_int(self.settings_store.get(KEY_POLL_INTERVAL)) or interval
            retention = _parse_positive_int(self.settings_store.get(KEY_RETENTION_DAYS)) or retention
        except Exception:
            logger.warning("Could not read collection settings; using last-known values", exc_info=True)

        return CollectionConfig(
            enabled=enabled,
            poll_interval_minutes=interval,
            retention_days=retention,
        )

    def _reset_backfill(self, state: SchedulerState) -> SchedulerState:
        try:
            self.settings_store.delete(KEY_BACKFILL_CURSOR)
        except Exception:
            logger.warning("Could not clear persisted backfill cursor", exc_info=True)
        logger.info("Backfill restart requested")
        return state.evolve(backfill_cursor=None, backfill_complete=False)

    # --------------------------------------------------------
    # Phase 1: recent window
    # --------------------------------------------------------
    async def _collect_recent(
        self, state: SchedulerState, now: datetime
    ) -> Tuple[SchedulerState, datetime]:
        start = now - self.RECENT_WINDOW
        if state.last_sync is not None:
            start = max(state.last_sync - self.SYNC_OVERLAP, start)

        events = await self.collector.collect_range(start, now, self.RECENT_MAX_PAGES)
        new_events = await self._process_and_save(events)

        # forward progress even when nothing was found
        self.settings_store.set(KEY_LAST_SYNC, now.isoformat())

        if events:
            logger.info("Recent sweep: %d events (%d new)", len(events), len(new_events))
        return state.evolve(last_sync=now), start

    # --------------------------------------------------------
    # Phase 2: gradual backfill
    # --------------------------------------------------------
    async def _collect_backfill(
        self, state: SchedulerState, recent_start: datetime, now: datetime
    ) -> SchedulerState:
        if state.backfill_complete:
            return state

        horizon = now - timedelta(days=self.config.retention_days)
        cursor = state.backfill_cursor or recent_start

        for _ in range(self.MAX_BACKFILL_CHUNKS_PER_CYCLE):
            if cursor <= horizon:
                break

            chunk_end = cursor
            chunk_start = max(cursor - self.BACKFILL_CHUNK, horizon)

            events = await self.collector.collect_range(
                chunk_start, chunk_end, self.BACKFILL_MAX_PAGES
            )
            await self._process_and_save(events)

            # events are stored before the cursor moves; a crash in between
            # re-collects this chunk and the repository drops the duplicates
            cursor = chunk_start
            self.settings_store.set(KEY_BACKFILL_CURSOR, cursor.isoformat())
            state = state.evolve(backfill_cursor=cursor)

            if events:
                logger.info(
                    "Backfill: %d events from %s to %s", len(events), chunk_start, chunk_end
                )
                break

            logger.debug("Backfill: 0 events from %s to %s", chunk_start, chunk_end)
            await asyncio.sleep(0)

        if cursor <= horizon:
            logger.info(
                "Backfill complete: coverage back to retention limit (%dd)",
                self.config.retention_days,
            )
            return state.evolve(backfill_cursor=None, backfill_complete=True)

        return state.evolve(backfill_cursor=cursor)

    # --------------------------------------------------------
    # On-demand range collection
    # --------------------------------------------------------
    async def collect_range(
        self, start: datetime, end: datetime, max_pages: int = 50
    ) -> Tuple[int, int]:
        """
        Collect and store [start, end) right away. Cursors and scheduler
        state are left untouched. Returns (collected, newly saved).
        """
        events = await self.collector.collect_range(start, end, max_pages)
        new_events = await self._process_and_save(events)
        logger.info(
            "On-demand collection %s..%s: %d events (%d new)",
            start, end, len(events), len(new_events),
        )
        return len(events), len(new_events)

    # --------------------------------------------------------
    # Enrich -> classify -> save -> per-event alerts
    # --------------------------------------------------------
    async def _process_and_save(self, events: List[ThreatEvent]) -> List[ThreatEvent]:
        if not events:
            return []

        try:
            self.enrichment.enrich_events(events)
        except Exception:
            logger.warning("Geo enrichment failed; saving events without it", exc_info=True)

        for event in events:
            try:
                event.kill_chain_stage = self.classifier.classify(event)
            except Exception:
                logger.warning("Kill-chain classification failed for %s", event.id, exc_info=True)

        new_events = self.repository.save_events(events)

        for event in new_events:
            if event.severity >= self.EVENT_ALERT_MIN_SEVERITY:
                await self.alert_bus.publish(self._event_alert(event))

        return new_events

    @staticmethod
    def _event_alert(event: ThreatEvent) -> AlertEvent:
        is_flow = event.event_source == EventSource.TRAFFIC_FLOW
        return AlertEvent(
            event_type="threats.traffic_flow" if is_flow else "threats.ips_event",
            severity=AlertSeverity.CRITICAL if event.severity >= 5 else AlertSeverity.ERROR,
            title=f"{'Flow' if is_flow else 'IPS'}: {event.signature_name}",
            message=(
                f"{event.action.value} {event.protocol} from {event.source_ip}:{event.source_port} "
                f"to {event.dest_ip}:{event.dest_port} - {event.category}"
            ),
            source_ip=event.source_ip,
            context={
                "signature_id": str(event.signature_id),
                "category": event.category,
                "kill_chain_stage": event.kill_chain_stage.value if event.kill_chain_stage else "unknown",
                "country": event.country_code or "unknown",
            },
        )

    # --------------------------------------------------------
    # Analysis
    # --------------------------------------------------------
    async def _analyze(self, state: SchedulerState, now: datetime) -> SchedulerState:
        try:
            recent = self.repository.get_events(
                now - self.ANALYSIS_WINDOW, now, limit=self.ANALYSIS_EVENT_LIMIT
            )
            for pattern in self.analyzer.detect_patterns(recent):
                self.repository.save_pattern(pattern)
        except Exception:
            logger.warning("Pattern analysis failed", exc_info=True)

        try:
            for pattern in self.repository.get_unalerted_patterns():
                await self.alert_bus.publish(self._pattern_alert(pattern))
                self.repository.mark_pattern_alerted(pattern.id, now)
        except Exception:
            logger.warning("Pattern alerting failed", exc_info=True)

        try:
            sequences = self.repository.get_attack_sequences(
                now - self.sequencer.LOOKBACK, now, limit=self.SEQUENCE_LIMIT
            )
            result = self.sequencer.evaluate(
                sequences, state.suppressed_high, state.suppressed_early, now
            )
            for alert in result.alerts:
                await self.alert_bus.publish(alert)
            state = state.evolve(
                suppressed_high=result.suppressed_high,
                suppressed_early=result.suppressed_early,
            )
        except Exception:
            logger.warning("Attack chain analysis failed", exc_info=True)

        return state

    @staticmethod
    def _pattern_alert(pattern: ThreatPattern) -> AlertEvent:
        if pattern.pattern_type == PatternType.DDOS:
            severity = AlertSeverity.CRITICAL
        elif pattern.confidence >= 0.8:
            severity = AlertSeverity.ERROR
        else:
            severity = AlertSeverity.WARNING

        return AlertEvent(
            event_type=f"threats.pattern.{pattern.pattern_type.value}",
            severity=severity,
            title=f"{pattern.pattern_type.value.replace('_', ' ').title()} detected",
            message=pattern.description,
            source_ip=pattern.source_ips[0] if pattern.source_ips else None,
            context={
                "pattern_id": str(pattern.id),
                "event_count": str(pattern.event_count),
                "confidence": f"{pattern.confidence:.2f}",
                "target_port": str(pattern.target_port) if pattern.target_port is not None else "",
                "source_ips": ",".join(pattern.source_ips),
            },
        )

    # --------------------------------------------------------
    # Maintenance
    # --------------------------------------------------------
    async def _maintenance(self, state: SchedulerState, now: datetime) -> SchedulerState:
        check_due = self._maintenance_due(state, now)
        if check_due:
            try:
                await self._refresh_geo_databases_if_stale(now)
            except Exception:
                logger.warning("GeoLite2 freshness check failed (non-fatal)", exc_info=True)
            try:
                self.settings_store.set(KEY_GEO_CHECK, now.isoformat())
            except Exception:
                logger.warning("Could not store maintenance timestamp", exc_info=True)
            state = state.evolve(last_maintenance_check=now)

        # events stored while the databases were missing get their geo data late
        geo_available = self.enrichment.is_city_available or self.enrichment.is_asn_available
        if geo_available and (check_due or not self._geo_was_available):
            try:
                self.repository.backfill_geo_data(self.enrichment.enrich)
            except Exception:
                logger.warning("Geo data backfill failed", exc_info=True)
        self._geo_was_available = geo_available

        if now.hour == self.PURGE_HOUR_UTC and state.last_purge_date != now.date():
            try:
                cutoff = now - timedelta(days=self.config.retention_days)
                self.repository.purge_older_than(cutoff)
                state = state.evolve(last_purge_date=now.date())
            except Exception:
                logger.warning("Retention purge failed", exc_info=True)

        return state

    def _maintenance_due(self, state: SchedulerState, now: datetime) -> bool:
        last = state.last_maintenance_check
        if last is None:
            try:
                last = _parse_timestamp(self.settings_store.get(KEY_GEO_CHECK))
            except Exception:
                last = None
        return last is None or now - last >= self.MAINTENANCE_INTERVAL

    async def _refresh_geo_databases_if_stale(self, now: datetime) -> None:
        if self.enrichment.is_city_available and self.enrichment.is_asn_available:
            info = self.enrichment.get_database_info()
            stale_before = now - self.GEO_STALE_AFTER
            fresh = (
                info.city_date is not None and info.city_date > stale_before
                and info.asn_date is not None and info.asn_date > stale_before
            )
            if fresh:
                return
            logger.info("GeoLite2 databases are >30 days old, checking for auto-update")
        else:
            logger.info("GeoLite2 databases missing, checking for auto-download")

        license_key = self.settings_store.get_decrypted(KEY_MAXMIND_LICENSE)
        if not license_key:
            logger.debug("No MaxMind license key configured, skipping auto-download")
            return

        success, message = await self.enrichment.download_databases(license_key)
        if success:
            logger.info("Auto-downloaded GeoLite2 databases: %s", message)
            self.settings_store.set(KEY_MAXMIND_LAST_DOWNLOAD, now.isoformat())
        else:
            logger.warning("Failed to auto-download GeoLite2 databases: %s", message)


def build_collection_scheduler() -> CollectionScheduler:
    """Wire the scheduler to the production collaborators."""
    from threatwatch.services.alerting.alert_bus import alert_bus
    from threatwatch.services.collector.event_collector import EventCollector
    from threatwatch.services.collector.unifi_client import build_unifi_client
    from threatwatch.services.enrichment.geo_enrichment_service import GeoEnrichmentService
    from threatwatch.services.events.threat_repository import threat_repository
    from threatwatch.services.settings.settings_store import settings_store

    return CollectionScheduler(
        collector=EventCollector(build_unifi_client(settings_store), settings_store=settings_store),
        repository=threat_repository,
        settings_store=settings_store,
        enrichment=GeoEnrichmentService(settings.GEOIP_DATA_PATH),
        alert_bus=alert_bus,
        startup_delay_seconds=settings.COLLECTION_STARTUP_DELAY_SECONDS,
    )
