# backend/threatwatch/services/events/threat_repository.py

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from threatwatch.db.session import SessionLocal
from threatwatch.models.threat_event_record import ThreatEventRecord
from threatwatch.models.threat_pattern_record import ThreatPatternRecord
from threatwatch.schemas.threats import (
    AttackSequence,
    EventSource,
    KillChainStage,
    PatternType,
    ThreatAction,
    ThreatEvent,
    ThreatPattern,
)
from threatwatch.services.analysis.attack_chain_sequencer import build_sequences
from threatwatch.services.enrichment.geo_enrichment_service import GeoInfo

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = (
    "id", "timestamp", "source_ip", "source_port", "dest_ip", "dest_port",
    "protocol", "signature_id", "signature_name", "category", "severity",
    "direction", "risk_level", "service", "domain", "bytes_total",
    "network_name", "country_code", "city", "asn", "asn_org",
    "latitude", "longitude",
)


def _event_to_record(event: ThreatEvent) -> ThreatEventRecord:
    values = {name: getattr(event, name) for name in _EVENT_COLUMNS}
    return ThreatEventRecord(
        **values,
        action=event.action.value,
        event_source=event.event_source.value,
        kill_chain_stage=event.kill_chain_stage.value if event.kill_chain_stage else None,
        created_at=datetime.utcnow(),
    )


def _record_to_event(record: ThreatEventRecord) -> ThreatEvent:
    values = {name: getattr(record, name) for name in _EVENT_COLUMNS}
    return ThreatEvent(
        **{k: v for k, v in values.items() if v is not None},
        action=ThreatAction(record.action),
        event_source=EventSource(record.event_source),
        kill_chain_stage=KillChainStage(record.kill_chain_stage) if record.kill_chain_stage else None,
    )


def _record_to_pattern(record: ThreatPatternRecord) -> ThreatPattern:
    return ThreatPattern(
        id=record.id,
        pattern_type=PatternType(record.pattern_type),
        source_ips=list(record.source_ips or []),
        target_ip=record.target_ip,
        target_port=record.target_port,
        event_count=record.event_count,
        confidence=record.confidence,
        description=record.description,
        dedup_key=record.dedup_key,
        detected_at=record.detected_at,
        first_seen=record.first_seen,
        last_seen=record.last_seen,
        alerted_at=record.alerted_at,
    )


class ThreatRepository:
    """
    DB-backed store for threat events and patterns (SQLAlchemy).

    Events are deduplicated on insert by their upstream id. Patterns are
    deduplicated by dedup_key when the new detection overlaps an existing
    one in time.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def _get_db(self) -> Session:
        return self._session_factory()

    # --------------------------------------------------------
    # Threat events
    # --------------------------------------------------------
    def save_events(self, events: List[ThreatEvent]) -> List[ThreatEvent]:
        """
        Insert events whose id is not stored yet.
        Returns the events that were actually inserted.
        """
        if not events:
            return []

        unique: Dict[str, ThreatEvent] = {}
        for event in events:
            unique.setdefault(event.id, event)

        db = self._get_db()
        try:
            existing = {
                row[0]
                for row in db.query(ThreatEventRecord.id)
                .filter(ThreatEventRecord.id.in_(list(unique)))
                .all()
            }
            new_events = [e for e in unique.values() if e.id not in existing]
            if not new_events:
                logger.debug("All %d events already exist, skipping", len(events))
                return []

            db.add_all([_event_to_record(e) for e in new_events])
            db.commit()
            logger.info(
                "Saved %d new threat events (%d duplicates skipped)",
                len(new_events), len(events) - len(new_events),
            )
            return new_events
        except Exception:
            db.rollback()
            logger.exception("Failed to save %d threat events", len(events))
            raise
        finally:
            db.close()

    def get_events(
        self,
        start: datetime,
        end: datetime,
        source_ip: Optional[str] = None,
        dest_port: Optional[int] = None,
        stage: Optional[KillChainStage] = None,
        limit: int = 1000,
    ) -> List[ThreatEvent]:
        """Events in [start, end], newest first."""
        db = self._get_db()
        try:
            q = db.query(ThreatEventRecord).filter(
                ThreatEventRecord.timestamp >= start,
                ThreatEventRecord.timestamp <= end,
            )
            if source_ip:
                q = q.filter(ThreatEventRecord.source_ip == source_ip)
            if dest_port is not None:
                q = q.filter(ThreatEventRecord.dest_port == dest_port)
            if stage is not None:
                q = q.filter(ThreatEventRecord.kill_chain_stage == stage.value)

            q = q.order_by(ThreatEventRecord.timestamp.desc()).limit(limit)
            return [_record_to_event(r) for r in q]
        finally:
            db.close()

    def backfill_geo_data(self, enrich: Callable[[str], GeoInfo], batch_size: int = 1000) -> int:
        """
        Fill in geo/ASN columns for events stored while enrichment was
        unavailable. Source IPs are looked up once each and committed
        `batch_size` IPs at a time. Returns the number of updated events.
        """
        missing = and_(ThreatEventRecord.country_code.is_(None), ThreatEventRecord.asn.is_(None))

        db = self._get_db()
        try:
            ips = [
                row[0]
                for row in db.query(ThreatEventRecord.source_ip).filter(missing).distinct().all()
                if row[0]
            ]
            updated = 0
            for offset in range(0, len(ips), batch_size):
                for ip in ips[offset:offset + batch_size]:
                    geo = enrich(ip)
                    if geo.country_code is None and geo.asn is None:
                        continue
                    updated += (
                        db.query(ThreatEventRecord)
                        .filter(ThreatEventRecord.source_ip == ip, missing)
                        .update(
                            {
                                ThreatEventRecord.country_code: geo.country_code,
                                ThreatEventRecord.city: geo.city,
                                ThreatEventRecord.asn: geo.asn,
                                ThreatEventRecord.asn_org: geo.asn_org,
                                ThreatEventRecord.latitude: geo.latitude,
                                ThreatEventRecord.longitude: geo.longitude,
                            },
                            synchronize_session=False,
                        )
                    )
                db.commit()

            if updated:
                logger.info("Backfilled geo data for %d threat events (%d source IPs)", updated, len(ips))
            return updated
        except Exception:
            db.rollback()
            logger.exception("Failed to backfill geo data")
            raise
        finally:
            db.close()

    def purge_older_than(self, cutoff: datetime) -> int:
        """Delete events and patterns last seen before `cutoff`. Returns deleted event count."""
        db = self._get_db()
        try:
            deleted_events = (
                db.query(ThreatEventRecord)
                .filter(ThreatEventRecord.timestamp < cutoff)
                .delete(synchronize_session=False)
            )
            deleted_patterns = (
                db.query(ThreatPatternRecord)
                .filter(ThreatPatternRecord.last_seen < cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
            logger.info(
                "Purged %d threat events and %d patterns older than %s",
                deleted_events, deleted_patterns, cutoff,
            )
            return deleted_events
        except Exception:
            db.rollback()
            logger.exception("Failed to purge threat data older than %s", cutoff)
            raise
        finally:
            db.close()

    # --------------------------------------------------------
    # Threat patterns
    # --------------------------------------------------------
    def save_pattern(self, pattern: ThreatPattern) -> ThreatPattern:
        """
        Store a pattern unless the same dedup_key already covers an
        overlapping window; in that case the stored pattern is returned.
        """
        db = self._get_db()
        try:
            existing = (
                db.query(ThreatPatternRecord)
                .filter(
                    ThreatPatternRecord.dedup_key == pattern.dedup_key,
                    ThreatPatternRecord.last_seen >= pattern.first_seen,
                )
                .order_by(ThreatPatternRecord.detected_at.desc())
                .first()
            )
            if existing is not None:
                return _record_to_pattern(existing)

            record = ThreatPatternRecord(
                pattern_type=pattern.pattern_type.value,
                dedup_key=pattern.dedup_key,
                source_ips=list(pattern.source_ips),
                target_ip=pattern.target_ip,
                target_port=pattern.target_port,
                event_count=pattern.event_count,
                confidence=pattern.confidence,
                description=pattern.description,
                detected_at=pattern.detected_at,
                first_seen=pattern.first_seen,
                last_seen=pattern.last_seen,
                alerted_at=pattern.alerted_at,
            )
            db.add(record)
            db.commit()
            db.refresh(record)
            logger.info(
                "Saved threat pattern %s: %s with %d events",
                record.id, pattern.pattern_type.value, pattern.event_count,
            )
            return _record_to_pattern(record)
        except Exception:
            db.rollback()
            logger.exception("Failed to save threat pattern %s", pattern.dedup_key)
            raise
        finally:
            db.close()

    def get_unalerted_patterns(self, limit: int = 100) -> List[ThreatPattern]:
        db = self._get_db()
        try:
            q = (
                db.query(ThreatPatternRecord)
                .filter(ThreatPatternRecord.alerted_at.is_(None))
                .order_by(ThreatPatternRecord.detected_at.asc())
                .limit(limit)
            )
            return [_record_to_pattern(r) for r in q]
        finally:
            db.close()

    def mark_pattern_alerted(self, pattern_id: int, alerted_at: Optional[datetime] = None) -> None:
        db = self._get_db()
        try:
            record = (
                db.query(ThreatPatternRecord)
                .filter(ThreatPatternRecord.id == pattern_id)
                .one()
            )
            record.alerted_at = alerted_at or datetime.utcnow()
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to mark pattern %s as alerted", pattern_id)
            raise
        finally:
            db.close()

    def get_patterns(
        self,
        start: datetime,
        end: datetime,
        pattern_type: Optional[PatternType] = None,
        limit: int = 50,
    ) -> List[ThreatPattern]:
        db = self._get_db()
        try:
            q = db.query(ThreatPatternRecord).filter(
                ThreatPatternRecord.detected_at >= start,
                ThreatPatternRecord.detected_at <= end,
            )
            if pattern_type is not None:
                q = q.filter(ThreatPatternRecord.pattern_type == pattern_type.value)
            q = q.order_by(ThreatPatternRecord.detected_at.desc()).limit(limit)
            return [_record_to_pattern(r) for r in q]
        finally:
            db.close()

    # --------------------------------------------------------
    # Attack sequences
    # --------------------------------------------------------
    def get_attack_sequences(
        self, start: datetime, end: datetime, limit: int = 50
    ) -> List[AttackSequence]:
        """Source IPs with 2+ distinct kill-chain stages in [start, end]."""
        events = self.get_events(start, end, limit=50000)
        return build_sequences(events, min_stages=2)[:limit]


threat_repository = ThreatRepository()
