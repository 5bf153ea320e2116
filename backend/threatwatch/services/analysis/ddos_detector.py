# backend/threatwatch/services/analysis/ddos_detector.py
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Tuple

from threatwatch.schemas.threats import PatternType, ThreatEvent, ThreatPattern


class DDoSDetector:
    """
    One destination (ip, port) receiving 100+ events from 10+ distinct
    sources inside any 5-minute window.
    """

    MIN_EVENTS = 100
    MIN_UNIQUE_SOURCES = 10
    WINDOW = timedelta(minutes=5)
    CONFIDENCE_SCALE = 50.0
    MAX_REPORTED_SOURCES = 20

    def detect(self, events: List[ThreatEvent]) -> List[ThreatPattern]:
        groups: Dict[Tuple[str, int], List[ThreatEvent]] = defaultdict(list)
        for event in events:
            groups[(event.dest_ip, event.dest_port)].append(event)

        now = datetime.utcnow()
        patterns: List[ThreatPattern] = []

        for (dest_ip, dest_port), group in groups.items():
            if len(group) < self.MIN_EVENTS:
                continue

            ordered = sorted(group, key=lambda e: e.timestamp)
            window_start = 0

            for i, event in enumerate(ordered):
                while window_start < i and event.timestamp - ordered[window_start].timestamp > self.WINDOW:
                    window_start += 1

                count = i - window_start + 1
                if count < self.MIN_EVENTS:
                    continue

                window = ordered[window_start:i + 1]
                # first-seen order, so the earliest attacker is the primary offender
                sources = list(dict.fromkeys(e.source_ip for e in window))
                if len(sources) < self.MIN_UNIQUE_SOURCES:
                    continue

                window_minutes = int(self.WINDOW.total_seconds() // 60)
                patterns.append(
                    ThreatPattern(
                        pattern_type=PatternType.DDOS,
                        source_ips=sources[: self.MAX_REPORTED_SOURCES],
                        target_ip=dest_ip or None,
                        target_port=dest_port,
                        event_count=count,
                        confidence=min(1.0, len(sources) / self.CONFIDENCE_SCALE),
                        description=(
                            f"DDoS targeting {dest_ip}:{dest_port}: {count} events "
                            f"from {len(sources)} sources in {window_minutes}min"
                        ),
                        dedup_key=f"ddos:{dest_ip}:{dest_port}",
                        detected_at=now,
                        first_seen=window[0].timestamp,
                        last_seen=window[-1].timestamp,
                    )
                )
                break

        return patterns
