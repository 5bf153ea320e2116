# backend/threatwatch/services/collector/flow_interest_filter.py
from typing import Any, Dict

from threatwatch.core.ports import SENSITIVE_PORTS, SUSPICIOUS_OUTBOUND_PORTS


def _dest_port(flow: Dict[str, Any]) -> int:
    dest = flow.get("destination")
    if not isinstance(dest, dict):
        return 0
    try:
        return int(dest.get("port") or 0)
    except (TypeError, ValueError):
        return 0


def is_interesting(flow: Any) -> bool:
    """
    Decide whether a raw traffic flow is worth normalizing and storing.

    Applied before normalization to cut daily flow volume down to the
    records that matter:
      - anything the gateway blocked
      - anything DPI labelled medium/high risk
      - incoming connections to sensitive ports, even if allowed
      - outgoing connections to known C2/tunneling ports
    """
    if not isinstance(flow, dict):
        return False

    if str(flow.get("action") or "").lower() == "blocked":
        return True

    if str(flow.get("risk") or "").lower() in ("medium", "high"):
        return True

    direction = str(flow.get("direction") or "").lower()
    if direction == "incoming" and _dest_port(flow) in SENSITIVE_PORTS:
        return True
    if direction == "outgoing" and _dest_port(flow) in SUSPICIOUS_OUTBOUND_PORTS:
        return True

    return False
