# backend/threatwatch/services/analysis/attack_chain_sequencer.py
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from threatwatch.schemas.alerts import AlertEvent, AlertSeverity
from threatwatch.schemas.threats import (
    AttackSequence,
    KillChainStage,
    SequenceStage,
    ThreatEvent,
)

logger = logging.getLogger(__name__)


def build_sequences(events: Iterable[ThreatEvent], min_stages: int = 1) -> List[AttackSequence]:
    """
    Group classified events by source IP into ordered, distinct stage lists.

    Stages are ordered by first occurrence; simultaneous first occurrences
    fall back to kill-chain rank. Geo metadata comes from the first event
    of that IP which has any.
    """
    by_source: Dict[str, List[ThreatEvent]] = defaultdict(list)
    for event in events:
        if event.kill_chain_stage is None or not event.source_ip:
            continue
        by_source[event.source_ip].append(event)

    sequences: List[AttackSequence] = []
    for source_ip, group in by_source.items():
        by_stage: Dict[KillChainStage, List[ThreatEvent]] = defaultdict(list)
        for event in group:
            by_stage[event.kill_chain_stage].append(event)

        if len(by_stage) < min_stages:
            continue

        stages = []
        for stage, stage_events in by_stage.items():
            signatures = Counter(e.signature_name for e in stage_events if e.signature_name)
            stages.append(
                SequenceStage(
                    stage=stage,
                    first_seen=min(e.timestamp for e in stage_events),
                    last_seen=max(e.timestamp for e in stage_events),
                    event_count=len(stage_events),
                    top_signature=signatures.most_common(1)[0][0] if signatures else "",
                )
            )
        stages.sort(key=lambda s: (s.first_seen, s.stage.rank))

        geo = next((e for e in group if e.country_code or e.asn_org), None)
        sequences.append(
            AttackSequence(
                source_ip=source_ip,
                country_code=geo.country_code if geo else None,
                asn_org=geo.asn_org if geo else None,
                stages=stages,
            )
        )

    # most recently started attackers first
    sequences.sort(key=lambda s: s.stages[0].first_seen, reverse=True)
    return sequences


@dataclass
class SequencerResult:
    alerts: List[AlertEvent] = field(default_factory=list)
    suppressed_high: Dict[str, datetime] = field(default_factory=dict)
    suppressed_early: Dict[str, datetime] = field(default_factory=dict)


class AttackChainSequencer:
    """
    Decides which attack sequences deserve an alert.

      - high-confidence: 2+ stages ending in active/post exploitation
        (critical) or monitored (warning). A 2-stage chain ending in
        monitored is flagged low-confidence: usually admin or scanner noise.
      - early-stage: any other 2+ stage chain, raised as info.

    Each source IP raises at most one alert of each kind per suppression
    interval. Suppression maps are passed in and returned, never kept here.
    """

    HIGH_CONFIDENCE_FINAL_STAGES = (
        KillChainStage.ACTIVE_EXPLOITATION,
        KillChainStage.POST_EXPLOITATION,
        KillChainStage.MONITORED,
    )
    CRITICAL_FINAL_STAGES = (
        KillChainStage.ACTIVE_EXPLOITATION,
        KillChainStage.POST_EXPLOITATION,
    )
    MIN_STAGES = 2
    SUPPRESSION_INTERVAL = timedelta(hours=6)
    LOOKBACK = timedelta(hours=6)

    def evaluate(
        self,
        sequences: Iterable[AttackSequence],
        suppressed_high: Dict[str, datetime],
        suppressed_early: Dict[str, datetime],
        now: Optional[datetime] = None,
    ) -> SequencerResult:
        now = now or datetime.utcnow()
        high = self._expire(suppressed_high, now)
        early = self._expire(suppressed_early, now)
        alerts: List[AlertEvent] = []

        for sequence in sequences:
            if len(sequence.stages) < self.MIN_STAGES:
                continue

            if sequence.final_stage in self.HIGH_CONFIDENCE_FINAL_STAGES:
                if sequence.source_ip in high:
                    continue
                alerts.append(self._high_confidence_alert(sequence))
                high[sequence.source_ip] = now
            else:
                if sequence.source_ip in early:
                    continue
                alerts.append(self._early_stage_alert(sequence))
                early[sequence.source_ip] = now

        if alerts:
            logger.info("Attack chain sequencer raised %d alerts", len(alerts))
        return SequencerResult(alerts=alerts, suppressed_high=high, suppressed_early=early)

    def _expire(self, suppressed: Dict[str, datetime], now: datetime) -> Dict[str, datetime]:
        return {
            ip: since
            for ip, since in suppressed.items()
            if now - since < self.SUPPRESSION_INTERVAL
        }

    @staticmethod
    def _describe(sequence: AttackSequence) -> str:
        return " -> ".join(
            f"{s.stage.value} ({s.event_count})" for s in sequence.stages
        )

    @staticmethod
    def _context(sequence: AttackSequence) -> Dict[str, str]:
        return {
            "stages": ",".join(s.stage.value for s in sequence.stages),
            "stage_count": str(len(sequence.stages)),
            "final_stage": sequence.final_stage.value if sequence.final_stage else "",
            "event_count": str(sum(s.event_count for s in sequence.stages)),
            "country": sequence.country_code or "unknown",
            "asn_org": sequence.asn_org or "unknown",
        }

    def _high_confidence_alert(self, sequence: AttackSequence) -> AlertEvent:
        final = sequence.final_stage
        severity = (
            AlertSeverity.CRITICAL if final in self.CRITICAL_FINAL_STAGES else AlertSeverity.WARNING
        )
        low_confidence = len(sequence.stages) == 2 and final == KillChainStage.MONITORED

        context = self._context(sequence)
        context["confidence"] = "low" if low_confidence else "high"

        title = f"Attack chain from {sequence.source_ip}"
        if low_confidence:
            title += " (likely routine scanning or admin traffic)"

        return AlertEvent(
            event_type="threats.attack_chain",
            severity=severity,
            title=title,
            message=f"Multi-stage activity: {self._describe(sequence)}",
            source_ip=sequence.source_ip,
            context=context,
        )

    def _early_stage_alert(self, sequence: AttackSequence) -> AlertEvent:
        context = self._context(sequence)
        context["confidence"] = "early"
        return AlertEvent(
            event_type="threats.attack_chain_early",
            severity=AlertSeverity.INFO,
            title=f"Early-stage attack attempt from {sequence.source_ip}",
            message=f"Attempted progression: {self._describe(sequence)}",
            source_ip=sequence.source_ip,
            context=context,
        )


attack_chain_sequencer = AttackChainSequencer()
