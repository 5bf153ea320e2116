from datetime import timedelta

from threatwatch.schemas.alerts import AlertSeverity
from threatwatch.schemas.threats import KillChainStage
from threatwatch.services.analysis.attack_chain_sequencer import (
    AttackChainSequencer,
    build_sequences,
)

from conftest import BASE_TIME

ATTACKER = "203.0.113.66"


def _staged(make_event, *stages, source=ATTACKER, step=timedelta(minutes=5)):
    return [
        make_event(
            source_ip=source,
            kill_chain_stage=stage,
            timestamp=BASE_TIME + step * i,
            signature_name=f"sig-{stage.value}",
        )
        for i, stage in enumerate(stages)
    ]


def test_build_sequences_orders_stages_by_first_occurrence(make_event) -> None:
    events = _staged(
        make_event,
        KillChainStage.RECONNAISSANCE,
        KillChainStage.ACTIVE_EXPLOITATION,
        KillChainStage.RECONNAISSANCE,
        KillChainStage.POST_EXPLOITATION,
    )

    [sequence] = build_sequences(events)

    assert [s.stage for s in sequence.stages] == [
        KillChainStage.RECONNAISSANCE,
        KillChainStage.ACTIVE_EXPLOITATION,
        KillChainStage.POST_EXPLOITATION,
    ]
    recon = sequence.stages[0]
    assert recon.event_count == 2
    assert recon.first_seen == BASE_TIME
    assert recon.last_seen == BASE_TIME + timedelta(minutes=10)
    assert recon.top_signature == "sig-reconnaissance"
    assert sequence.final_stage == KillChainStage.POST_EXPLOITATION


def test_build_sequences_breaks_ties_by_rank(make_event) -> None:
    events = _staged(
        make_event,
        KillChainStage.ACTIVE_EXPLOITATION,
        KillChainStage.RECONNAISSANCE,
        step=timedelta(0),
    )

    [sequence] = build_sequences(events)

    assert [s.stage for s in sequence.stages] == [
        KillChainStage.RECONNAISSANCE,
        KillChainStage.ACTIVE_EXPLOITATION,
    ]


def test_build_sequences_min_stages_and_unclassified(make_event) -> None:
    single = _staged(make_event, KillChainStage.RECONNAISSANCE, source="198.51.100.1")
    unclassified = [make_event(source_ip="198.51.100.2")]

    assert build_sequences(single + unclassified, min_stages=2) == []
    assert [s.source_ip for s in build_sequences(single + unclassified)] == ["198.51.100.1"]


def test_build_sequences_carries_geo(make_event) -> None:
    events = _staged(make_event, KillChainStage.RECONNAISSANCE, KillChainStage.ACTIVE_EXPLOITATION)
    events[1].country_code = "NL"
    events[1].asn_org = "Example Hosting"

    [sequence] = build_sequences(events)

    assert sequence.country_code == "NL"
    assert sequence.asn_org == "Example Hosting"


def test_recon_to_active_alerts_critical_once_per_interval(make_event) -> None:
    sequencer = AttackChainSequencer()
    sequences = build_sequences(
        _staged(make_event, KillChainStage.RECONNAISSANCE, KillChainStage.ACTIVE_EXPLOITATION)
    )
    now = BASE_TIME + timedelta(minutes=10)

    first = sequencer.evaluate(sequences, {}, {}, now)
    assert len(first.alerts) == 1
    alert = first.alerts[0]
    assert alert.event_type == "threats.attack_chain"
    assert alert.severity == AlertSeverity.CRITICAL
    assert alert.source_ip == ATTACKER
    assert alert.context["confidence"] == "high"

    high, early = first.suppressed_high, first.suppressed_early
    for minute in range(1, 60):
        result = sequencer.evaluate(sequences, high, early, now + timedelta(minutes=minute))
        assert result.alerts == []
        high, early = result.suppressed_high, result.suppressed_early

    later = sequencer.evaluate(sequences, high, early, now + timedelta(hours=6, minutes=1))
    assert len(later.alerts) == 1


def test_early_stage_chain_is_info(make_event) -> None:
    sequences = build_sequences(
        _staged(make_event, KillChainStage.RECONNAISSANCE, KillChainStage.ATTEMPTED_EXPLOITATION)
    )

    result = AttackChainSequencer().evaluate(sequences, {}, {}, BASE_TIME)

    [alert] = result.alerts
    assert alert.event_type == "threats.attack_chain_early"
    assert alert.severity == AlertSeverity.INFO
    assert ATTACKER in result.suppressed_early
    assert result.suppressed_high == {}


def test_early_and_high_suppression_are_independent(make_event) -> None:
    sequencer = AttackChainSequencer()
    early_seq = build_sequences(
        _staged(make_event, KillChainStage.RECONNAISSANCE, KillChainStage.ATTEMPTED_EXPLOITATION)
    )
    first = sequencer.evaluate(early_seq, {}, {}, BASE_TIME)

    high_seq = build_sequences(
        _staged(
            make_event,
            KillChainStage.RECONNAISSANCE,
            KillChainStage.ATTEMPTED_EXPLOITATION,
            KillChainStage.ACTIVE_EXPLOITATION,
        )
    )
    second = sequencer.evaluate(
        high_seq, first.suppressed_high, first.suppressed_early, BASE_TIME + timedelta(minutes=15)
    )

    assert [a.event_type for a in second.alerts] == ["threats.attack_chain"]


def test_two_stage_chain_ending_in_monitored_is_low_confidence_warning(make_event) -> None:
    sequences = build_sequences(
        _staged(make_event, KillChainStage.RECONNAISSANCE, KillChainStage.MONITORED)
    )

    [alert] = AttackChainSequencer().evaluate(sequences, {}, {}, BASE_TIME).alerts

    assert alert.event_type == "threats.attack_chain"
    assert alert.severity == AlertSeverity.WARNING
    assert alert.context["confidence"] == "low"
    assert "routine" in alert.title


def test_single_stage_never_alerts(make_event) -> None:
    sequences = build_sequences(_staged(make_event, KillChainStage.ACTIVE_EXPLOITATION))

    assert AttackChainSequencer().evaluate(sequences, {}, {}, BASE_TIME).alerts == []


def test_evaluate_does_not_mutate_inputs(make_event) -> None:
    sequences = build_sequences(
        _staged(make_event, KillChainStage.RECONNAISSANCE, KillChainStage.ACTIVE_EXPLOITATION)
    )
    high = {}
    stale = {"198.51.100.99": BASE_TIME - timedelta(days=1)}

    result = AttackChainSequencer().evaluate(sequences, high, stale, BASE_TIME)

    assert high == {}
    assert "198.51.100.99" in stale
    assert "198.51.100.99" not in result.suppressed_early
