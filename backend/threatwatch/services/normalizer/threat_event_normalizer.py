# backend/threatwatch/services/normalizer/threat_event_normalizer.py
"""
Raw controller payloads -> ThreatEvent.

Three upstream shapes are supported:
  - v1  stat/ips/event        (list of dicts, alert details nested under "alert")
  - v2  system-log/all        ({"data": [...]}, flat "inner_alert_*" fields)
  - traffic-flows             ({"data": [...]}, nested source/destination objects)

Records without a usable identifier are dropped: they could never be
deduplicated downstream. Duplicate ids are NOT collapsed here; that is the
repository's job.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from threatwatch.schemas.threats import EventSource, ThreatAction, ThreatEvent

logger = logging.getLogger(__name__)

# Upstream (Suricata) scale: 1 = most severe, 4 = informational
_SEVERITY_MAP = {
    1: 5,
    2: 4,
    3: 2,
    4: 1,
}
DEFAULT_SEVERITY = 3

_BLOCKED_ACTIONS = {"drop", "reject", "blocked", "block", "deny"}


def normalize_severity(raw: Any) -> int:
    """Map the upstream inverted severity onto our 1-5 scale (5 = worst)."""
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_SEVERITY
    return _SEVERITY_MAP.get(value, DEFAULT_SEVERITY)


def normalize_action(raw: Any) -> ThreatAction:
    # Unknown -> DETECTED: never claim a block we can't confirm.
    if not raw:
        return ThreatAction.DETECTED
    if str(raw).strip().lower() in _BLOCKED_ACTIONS:
        return ThreatAction.BLOCKED
    return ThreatAction.DETECTED


def map_flow_severity(risk: Optional[str], action: Optional[str]) -> int:
    """Flows carry a risk label instead of a severity."""
    is_blocked = (action or "").lower() == "blocked"
    risk = (risk or "").lower()

    if risk == "high":
        return 5 if is_blocked else 4
    if risk == "medium":
        return 4 if is_blocked else 3
    if risk == "low" and is_blocked:
        return 2
    return 1


# ---------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------
def _first(record: Dict[str, Any], *names: str, default: Any = None) -> Any:
    """Value of the first field name that is present and non-empty."""
    for name in names:
        value = record.get(name)
        if value is not None and value != "":
            return value
    return default


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


def _from_epoch_ms(value: Any) -> datetime:
    ms = _as_int(value, 0)
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).replace(tzinfo=None)


def _records(payload: Any) -> Iterable[Any]:
    if isinstance(payload, dict):
        payload = payload.get("data")
    if not isinstance(payload, list):
        return []
    return payload


# ---------------------------------------------------------------------
# v1: stat/ips/event
# ---------------------------------------------------------------------
def _normalize_v1_event(evt: Dict[str, Any]) -> Optional[ThreatEvent]:
    event_id = _as_str(evt.get("_id"))
    if not event_id:
        return None

    alert = evt.get("alert")
    if not isinstance(alert, dict):
        alert = {}

    return ThreatEvent(
        id=event_id,
        timestamp=_from_epoch_ms(_first(evt, "timestamp", "time", default=0)),
        source_ip=_as_str(evt.get("src_ip")),
        source_port=_as_int(evt.get("src_port")),
        dest_ip=_as_str(_first(evt, "dest_ip", "dst_ip")),
        dest_port=_as_int(_first(evt, "dest_port", "dst_port")),
        protocol=_as_str(evt.get("proto")),
        signature_id=_as_int(alert.get("signature_id")),
        signature_name=_as_str(alert.get("signature")),
        category=_as_str(_first(alert, "category", default=evt.get("catname"))),
        severity=normalize_severity(alert.get("severity")),
        action=normalize_action(alert.get("action")),
        event_source=EventSource.IPS,
    )


def normalize_v1_events(payload: Any) -> List[ThreatEvent]:
    results: List[ThreatEvent] = []
    for evt in _records(payload):
        if not isinstance(evt, dict):
            logger.debug("Skipping malformed v1 IPS record: %r", evt)
            continue
        try:
            event = _normalize_v1_event(evt)
        except Exception:
            logger.debug("Failed to normalize v1 IPS event", exc_info=True)
            continue
        if event is not None:
            results.append(event)
    return results


# ---------------------------------------------------------------------
# v2: system-log/all (THREAT_MANAGEMENT)
# ---------------------------------------------------------------------
def _normalize_v2_event(entry: Dict[str, Any]) -> Optional[ThreatEvent]:
    event_id = _as_str(entry.get("_id"))
    if not event_id:
        return None

    return ThreatEvent(
        id=event_id,
        timestamp=_from_epoch_ms(_first(entry, "time", "timestamp", default=0)),
        source_ip=_as_str(entry.get("src_ip")),
        source_port=_as_int(entry.get("src_port")),
        dest_ip=_as_str(_first(entry, "dst_ip", "dest_ip")),
        dest_port=_as_int(_first(entry, "dst_port", "dest_port")),
        protocol=_as_str(entry.get("proto")),
        signature_id=_as_int(entry.get("inner_alert_signature_id")),
        signature_name=_as_str(_first(entry, "inner_alert_signature", "msg")),
        category=_as_str(_first(entry, "inner_alert_category", "category_name")),
        severity=normalize_severity(entry.get("inner_alert_severity")),
        action=normalize_action(entry.get("inner_alert_action")),
        event_source=EventSource.IPS,
    )


def normalize_v2_events(payload: Any) -> List[ThreatEvent]:
    results: List[ThreatEvent] = []
    for entry in _records(payload):
        if not isinstance(entry, dict):
            logger.debug("Skipping malformed v2 threat log record: %r", entry)
            continue
        try:
            event = _normalize_v2_event(entry)
        except Exception:
            logger.debug("Failed to normalize v2 threat log entry", exc_info=True)
            continue
        if event is not None:
            results.append(event)
    return results


# ---------------------------------------------------------------------
# Traffic flows
# ---------------------------------------------------------------------
def _ips_alert_severity(advanced_information: str) -> Optional[int]:
    # "IPS Alert 2: ..." carries the raw Suricata severity
    prefix = "ips alert "
    text = advanced_information.strip()
    if not text.lower().startswith(prefix) or len(text) <= len(prefix):
        return None
    digit = text[len(prefix)]
    if not digit.isdigit() or not 1 <= int(digit) <= 4:
        return None
    return normalize_severity(int(digit))


def _normalize_flow(flow: Dict[str, Any]) -> Optional[ThreatEvent]:
    flow_id = _as_str(flow.get("id"))
    if not flow_id:
        return None

    src = flow.get("source") if isinstance(flow.get("source"), dict) else {}
    dst = flow.get("destination") if isinstance(flow.get("destination"), dict) else {}

    domain = None
    domains = dst.get("domains")
    if isinstance(domains, list) and domains:
        domain = _as_str(domains[0]) or None

    action = _as_str(flow.get("action"))
    risk = _as_str(flow.get("risk"), "low") or "low"
    direction = _as_str(flow.get("direction"))
    service = _as_str(flow.get("service"))

    bytes_total = None
    traffic = flow.get("traffic_data")
    if isinstance(traffic, dict) and _as_int(traffic.get("bytes_total")) > 0:
        bytes_total = _as_int(traffic.get("bytes_total"))

    severity = map_flow_severity(risk, action)
    signature_id = 0
    signature_name = f"Flow: {service} {direction} {action}"
    category = f"{risk} risk {direction} {service}"

    # Flows that also tripped an IPS signature carry the real alert data
    ips = flow.get("ips")
    if isinstance(ips, dict) and ips.get("signature"):
        signature_name = _as_str(ips.get("signature"))
        signature_id = _as_int(ips.get("signature_id"))
        category = _as_str(ips.get("category_name")) or category
        ips_severity = _ips_alert_severity(_as_str(ips.get("advanced_information")))
        if ips_severity is not None:
            severity = ips_severity

    return ThreatEvent(
        id=f"flow-{flow_id}",
        timestamp=_from_epoch_ms(_first(flow, "time", "timestamp", default=0)),
        source_ip=_as_str(src.get("ip")),
        source_port=_as_int(src.get("port")),
        dest_ip=_as_str(dst.get("ip")),
        dest_port=_as_int(dst.get("port")),
        protocol=_as_str(flow.get("protocol")),
        signature_id=signature_id,
        signature_name=signature_name,
        category=category,
        severity=severity,
        action=ThreatAction.BLOCKED if action.lower() == "blocked" else ThreatAction.DETECTED,
        event_source=EventSource.TRAFFIC_FLOW,
        direction=direction or None,
        risk_level=risk,
        service=service or None,
        domain=domain,
        bytes_total=bytes_total,
        network_name=_as_str(src.get("network_name")) or None,
    )


def normalize_flow_events(payload: Any) -> List[ThreatEvent]:
    """Accepts either the full traffic-flows response or a bare list of flows."""
    results: List[ThreatEvent] = []
    for flow in _records(payload):
        if not isinstance(flow, dict):
            logger.debug("Skipping malformed traffic flow record: %r", flow)
            continue
        try:
            event = _normalize_flow(flow)
        except Exception:
            logger.debug("Failed to normalize traffic flow entry", exc_info=True)
            continue
        if event is not None:
            results.append(event)
    return results
