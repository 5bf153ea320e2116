# backend/threatwatch/services/analysis/scan_sweep_detector.py
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List

from threatwatch.schemas.threats import (
    KillChainStage,
    PatternType,
    ThreatEvent,
    ThreatPattern,
)


class ScanSweepDetector:
    """
    Port-scan sweep: one source touching 5+ distinct destination ports
    within 6 hours. Only reconnaissance/monitored events are considered;
    repeated hits on the same port add nothing.
    """

    MIN_DISTINCT_PORTS = 5
    WINDOW = timedelta(hours=6)
    CONFIDENCE_SCALE = 15.0
    STAGES = (KillChainStage.RECONNAISSANCE, KillChainStage.MONITORED)

    def detect(self, events: List[ThreatEvent]) -> List[ThreatPattern]:
        by_source: Dict[str, List[ThreatEvent]] = defaultdict(list)
        for event in events:
            if event.kill_chain_stage in self.STAGES:
                by_source[event.source_ip].append(event)

        now = datetime.utcnow()
        patterns: List[ThreatPattern] = []

        for source_ip, group in by_source.items():
            ordered = sorted(group, key=lambda e: e.timestamp)
            window_start = 0
            # port -> hits inside the current window
            port_hits: Dict[int, int] = defaultdict(int)

            for i, event in enumerate(ordered):
                port_hits[event.dest_port] += 1
                while window_start < i and event.timestamp - ordered[window_start].timestamp > self.WINDOW:
                    dropped = ordered[window_start].dest_port
                    port_hits[dropped] -= 1
                    if port_hits[dropped] == 0:
                        del port_hits[dropped]
                    window_start += 1

                distinct_ports = len(port_hits)
                if distinct_ports < self.MIN_DISTINCT_PORTS:
                    continue

                window_hours = int(self.WINDOW.total_seconds() // 3600)
                patterns.append(
                    ThreatPattern(
                        pattern_type=PatternType.SCAN_SWEEP,
                        source_ips=[source_ip],
                        event_count=i - window_start + 1,
                        confidence=min(1.0, distinct_ports / self.CONFIDENCE_SCALE),
                        description=(
                            f"Port scan from {source_ip}: {distinct_ports} ports "
                            f"targeted in {window_hours}h"
                        ),
                        dedup_key=f"scan:{source_ip}",
                        detected_at=now,
                        first_seen=ordered[window_start].timestamp,
                        last_seen=event.timestamp,
                    )
                )
                break

        return patterns
