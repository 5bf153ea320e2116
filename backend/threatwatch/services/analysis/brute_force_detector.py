# backend/threatwatch/services/analysis/brute_force_detector.py
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Tuple

from threatwatch.core.ports import BRUTE_FORCE_PORTS
from threatwatch.schemas.threats import PatternType, ThreatEvent, ThreatPattern


class BruteForceDetector:
    """
    Same source IP hammering the same credentialed-service port:
    20+ events inside any 10-minute window.

    Stops at the first qualifying window per (source, port), so confidence
    reflects the count that triggered, not the burst's peak.
    """

    MIN_EVENTS = 20
    WINDOW = timedelta(minutes=10)
    CONFIDENCE_SCALE = 50.0

    def detect(self, events: List[ThreatEvent]) -> List[ThreatPattern]:
        groups: Dict[Tuple[str, int], List[ThreatEvent]] = defaultdict(list)
        for event in events:
            if event.dest_port in BRUTE_FORCE_PORTS:
                groups[(event.source_ip, event.dest_port)].append(event)

        now = datetime.utcnow()
        patterns: List[ThreatPattern] = []

        for (source_ip, port), group in groups.items():
            ordered = sorted(group, key=lambda e: e.timestamp)
            window_start = 0

            for i, event in enumerate(ordered):
                while window_start < i and event.timestamp - ordered[window_start].timestamp > self.WINDOW:
                    window_start += 1

                count = i - window_start + 1
                if count < self.MIN_EVENTS:
                    continue

                window_minutes = int(self.WINDOW.total_seconds() // 60)
                patterns.append(
                    ThreatPattern(
                        pattern_type=PatternType.BRUTE_FORCE,
                        source_ips=[source_ip],
                        target_ip=event.dest_ip or None,
                        target_port=port,
                        event_count=count,
                        confidence=min(1.0, count / self.CONFIDENCE_SCALE),
                        description=(
                            f"Brute force from {source_ip} targeting port {port}: "
                            f"{count} attempts in {window_minutes}min"
                        ),
                        dedup_key=f"bf:{source_ip}:{port}",
                        detected_at=now,
                        first_seen=ordered[window_start].timestamp,
                        last_seen=event.timestamp,
                    )
                )
                break

        return patterns
