from datetime import datetime

import pytest

from threatwatch.schemas.threats import EventSource, ThreatAction
from threatwatch.services.normalizer.threat_event_normalizer import (
    map_flow_severity,
    normalize_action,
    normalize_flow_events,
    normalize_severity,
    normalize_v1_events,
    normalize_v2_events,
)


@pytest.mark.parametrize(
    "raw, expected",
    [(1, 5), (2, 4), (3, 2), (4, 1), ("2", 4), (0, 3), (7, 3), (None, 3), ("high", 3)],
)
def test_severity_mapping_table(raw, expected) -> None:
    assert normalize_severity(raw) == expected


@pytest.mark.parametrize("raw", ["drop", "REJECT", "blocked", "Block", "deny"])
def test_blocking_actions_map_to_blocked(raw) -> None:
    assert normalize_action(raw) == ThreatAction.BLOCKED


@pytest.mark.parametrize("raw", ["alert", "allowed", "", None, "pass"])
def test_other_actions_map_to_detected(raw) -> None:
    assert normalize_action(raw) == ThreatAction.DETECTED


def test_flow_severity_from_risk_and_action() -> None:
    assert map_flow_severity("high", "blocked") == 5
    assert map_flow_severity("high", "allowed") == 4
    assert map_flow_severity("medium", "blocked") == 4
    assert map_flow_severity("medium", "allowed") == 3
    assert map_flow_severity("low", "blocked") == 2
    assert map_flow_severity("low", "allowed") == 1
    assert map_flow_severity(None, None) == 1


def test_v1_event_fields() -> None:
    payload = {
        "data": [
            {
                "_id": "abc123",
                "timestamp": 1709294400000,
                "src_ip": "198.51.100.7",
                "src_port": 51515,
                "dest_ip": "192.168.1.20",
                "dest_port": 22,
                "proto": "TCP",
                "catname": "fallback category",
                "alert": {
                    "signature_id": 2001219,
                    "signature": "ET SCAN Potential SSH Scan",
                    "category": "Attempted Information Leak",
                    "severity": 2,
                    "action": "blocked",
                },
            }
        ]
    }

    [event] = normalize_v1_events(payload)

    assert event.id == "abc123"
    assert event.timestamp == datetime(2024, 3, 1, 12, 0, 0)
    assert event.source_ip == "198.51.100.7"
    assert event.dest_port == 22
    assert event.signature_id == 2001219
    assert event.category == "Attempted Information Leak"
    assert event.severity == 4
    assert event.action == ThreatAction.BLOCKED
    assert event.event_source == EventSource.IPS
    assert event.kill_chain_stage is None


def test_v2_event_fields() -> None:
    entries = [
        {
            "_id": "v2-1",
            "time": 1709294400000,
            "src_ip": "198.51.100.8",
            "dst_ip": "192.168.1.30",
            "dst_port": 3389,
            "proto": "TCP",
            "inner_alert_signature_id": 2027000,
            "inner_alert_signature": "ET EXPLOIT RDP attempt",
            "inner_alert_category": "Attempted Administrator Privilege Gain",
            "inner_alert_severity": 1,
            "inner_alert_action": "alert",
        }
    ]

    [event] = normalize_v2_events({"data": entries})

    assert event.id == "v2-1"
    assert event.dest_ip == "192.168.1.30"
    assert event.dest_port == 3389
    assert event.signature_name == "ET EXPLOIT RDP attempt"
    assert event.severity == 5
    assert event.action == ThreatAction.DETECTED


def test_records_without_identifier_are_dropped() -> None:
    payload = [
        {"_id": "keep-me", "timestamp": 1709294400000, "alert": {}},
        {"timestamp": 1709294400000, "alert": {"signature": "no id"}},
        {"_id": "", "timestamp": 1709294400000},
        "not a record",
    ]

    events = normalize_v1_events(payload)

    assert [e.id for e in events] == ["keep-me"]


def test_duplicate_identifiers_are_not_collapsed() -> None:
    payload = [
        {"_id": "dup", "time": 1709294400000},
        {"_id": "dup", "time": 1709294460000},
    ]

    events = normalize_v2_events(payload)

    assert [e.id for e in events] == ["dup", "dup"]


def test_missing_severity_defaults_to_three() -> None:
    [event] = normalize_v1_events([{"_id": "x", "timestamp": 0}])

    assert event.severity == 3


def test_flow_normalization() -> None:
    flows = {
        "data": [
            {
                "id": "f-1",
                "time": 1709294400000,
                "action": "blocked",
                "risk": "medium",
                "direction": "incoming",
                "service": "SSH",
                "protocol": "TCP",
                "source": {"ip": "198.51.100.9", "port": 60000, "network_name": "WAN"},
                "destination": {"ip": "192.168.1.5", "port": 22, "domains": ["host.example"]},
                "traffic_data": {"bytes_total": 1234},
            }
        ]
    }

    [event] = normalize_flow_events(flows)

    assert event.id == "flow-f-1"
    assert event.event_source == EventSource.TRAFFIC_FLOW
    assert event.action == ThreatAction.BLOCKED
    assert event.severity == 4
    assert event.direction == "incoming"
    assert event.risk_level == "medium"
    assert event.domain == "host.example"
    assert event.bytes_total == 1234
    assert event.network_name == "WAN"
    assert event.signature_name == "Flow: SSH incoming blocked"


def test_flow_with_ips_alert_uses_signature_data() -> None:
    flows = [
        {
            "id": "f-2",
            "time": 1709294400000,
            "action": "allowed",
            "risk": "low",
            "direction": "incoming",
            "source": {"ip": "198.51.100.10"},
            "destination": {"ip": "192.168.1.5", "port": 80},
            "ips": {
                "signature": "ET WEB_SERVER SQL Injection Attempt",
                "signature_id": 2010963,
                "category_name": "Web Application Attack",
                "advanced_information": "IPS Alert 1: Web Application Attack",
            },
        }
    ]

    [event] = normalize_flow_events(flows)

    assert event.signature_name == "ET WEB_SERVER SQL Injection Attempt"
    assert event.signature_id == 2010963
    assert event.category == "Web Application Attack"
    assert event.severity == 5


def test_flow_without_id_is_dropped() -> None:
    assert normalize_flow_events([{"action": "blocked"}]) == []


def test_unexpected_payload_yields_nothing() -> None:
    assert normalize_v1_events(None) == []
    assert normalize_v2_events({"data": "oops"}) == []
    assert normalize_flow_events("garbage") == []
