# backend/threatwatch/services/analysis/pattern_analyzer.py
import logging
from typing import List

from threatwatch.schemas.threats import ThreatEvent, ThreatPattern
from threatwatch.services.analysis.brute_force_detector import BruteForceDetector
from threatwatch.services.analysis.ddos_detector import DDoSDetector
from threatwatch.services.analysis.scan_sweep_detector import ScanSweepDetector

logger = logging.getLogger(__name__)


class PatternAnalyzer:
    """
    Runs every detector over the same batch of recent events.
    A failing detector is logged and skipped; the others still run.
    """

    def __init__(self) -> None:
        self._detectors = [
            ("scan sweep", ScanSweepDetector()),
            ("brute force", BruteForceDetector()),
            ("ddos", DDoSDetector()),
        ]

    def detect_patterns(self, events: List[ThreatEvent]) -> List[ThreatPattern]:
        if not events:
            return []

        patterns: List[ThreatPattern] = []
        for name, detector in self._detectors:
            try:
                patterns.extend(detector.detect(events))
            except Exception:
                logger.warning("%s detection failed", name, exc_info=True)

        if patterns:
            logger.info(
                "Detected %d attack patterns from %d events", len(patterns), len(events)
            )
        return patterns


pattern_analyzer = PatternAnalyzer()
