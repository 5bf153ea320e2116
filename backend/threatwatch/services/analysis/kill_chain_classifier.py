# backend/threatwatch/services/analysis/kill_chain_classifier.py
import re
from typing import Iterable, Pattern

from threatwatch.core.ports import SENSITIVE_PORTS
from threatwatch.schemas.threats import (
    EventSource,
    KillChainStage,
    ThreatAction,
    ThreatEvent,
)


def _keyword_pattern(keywords: Iterable[str]) -> Pattern[str]:
    """
    One regex for a keyword list. Keywords of three characters or fewer only
    match as standalone tokens ("C2" but not "EC2").
    """
    parts = []
    for keyword in keywords:
        escaped = re.escape(keyword)
        if len(keyword) <= 3:
            escaped = rf"(?<![A-Z0-9]){escaped}(?![A-Z0-9])"
        parts.append(escaped)
    return re.compile("|".join(parts))


class KillChainClassifier:
    """
    Assigns a kill-chain stage to each threat event.

    Deterministic, rule-based, no state. IPS events are classified from
    their category/signature text; traffic flows from structural signals
    (direction, risk label, destination port).
    """

    # Matched case-insensitively against "<category> <signature>"; longer
    # keywords as substrings, short ones as whole tokens.
    # Order of evaluation matters: post-exploitation wins over exploitation.
    POST_EXPLOIT_KEYWORDS = (
        "TROJAN", "MALWARE", "CNC", "C2", "COMMAND AND CONTROL",
        "BACKDOOR", "EXFILTRATION", "BOTNET",
    )
    EXPLOIT_KEYWORDS = (
        "EXPLOIT", "CVE", "REMOTE CODE EXECUTION", "OVERFLOW", "INJECTION",
        "SQLI", "XSS", "SHELLCODE", "ATTACK",
    )
    RECON_KEYWORDS = ("SCAN", "POLICY", "INFO", "ICMP", "RECON", "DISCOVERY")

    POST_EXPLOIT_PATTERN = _keyword_pattern(POST_EXPLOIT_KEYWORDS)
    EXPLOIT_PATTERN = _keyword_pattern(EXPLOIT_KEYWORDS)
    RECON_PATTERN = _keyword_pattern(RECON_KEYWORDS)

    HIGH_SEVERITY = 4

    def classify(self, event: ThreatEvent) -> KillChainStage:
        # Informational events are explicitly allowed traffic: watched, not attacks
        if event.severity <= 1:
            return KillChainStage.MONITORED

        if event.event_source == EventSource.TRAFFIC_FLOW:
            return self._classify_flow(event)
        return self._classify_ips(event)

    # -------------------------------------------------------------------------
    # IPS / IDS events
    # -------------------------------------------------------------------------
    def _classify_ips(self, event: ThreatEvent) -> KillChainStage:
        text = f"{event.category} {event.signature_name}".upper()
        detected = event.action == ThreatAction.DETECTED

        if self.POST_EXPLOIT_PATTERN.search(text):
            return KillChainStage.POST_EXPLOITATION

        if self.EXPLOIT_PATTERN.search(text):
            if detected:
                return KillChainStage.ACTIVE_EXPLOITATION
            return KillChainStage.ATTEMPTED_EXPLOITATION

        if self.RECON_PATTERN.search(text):
            return KillChainStage.RECONNAISSANCE

        if event.severity >= self.HIGH_SEVERITY:
            if detected:
                return KillChainStage.ACTIVE_EXPLOITATION
            return KillChainStage.ATTEMPTED_EXPLOITATION

        return KillChainStage.RECONNAISSANCE

    # -------------------------------------------------------------------------
    # Traffic flows
    # -------------------------------------------------------------------------
    def _classify_flow(self, event: ThreatEvent) -> KillChainStage:
        direction = (event.direction or "").lower()
        blocked = event.action == ThreatAction.BLOCKED
        high_risk = (event.risk_level or "").lower() == "high"

        if direction == "outgoing" and high_risk:
            return KillChainStage.POST_EXPLOITATION

        if direction == "incoming":
            if event.dest_port in SENSITIVE_PORTS:
                if blocked:
                    return KillChainStage.ATTEMPTED_EXPLOITATION
                return KillChainStage.ACTIVE_EXPLOITATION
            if blocked:
                return KillChainStage.RECONNAISSANCE

        if event.severity >= self.HIGH_SEVERITY and not blocked:
            return KillChainStage.ACTIVE_EXPLOITATION

        return KillChainStage.RECONNAISSANCE


kill_chain_classifier = KillChainClassifier()
