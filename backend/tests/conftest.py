import itertools
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from threatwatch.db.base_class import Base
from threatwatch.models import system_setting, threat_event_record, threat_pattern_record  # noqa: F401
from threatwatch.schemas.threats import EventSource, ThreatAction, ThreatEvent
from threatwatch.services.events.threat_repository import ThreatRepository

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def repository(session_factory) -> ThreatRepository:
    return ThreatRepository(session_factory=session_factory)


@pytest.fixture
def make_event():
    """Factory for ThreatEvents with sensible defaults and unique ids."""
    counter = itertools.count(1)

    def _make(**overrides) -> ThreatEvent:
        values = {
            "id": f"evt-{next(counter)}",
            "timestamp": BASE_TIME,
            "source_ip": "203.0.113.10",
            "source_port": 40000,
            "dest_ip": "192.168.1.10",
            "dest_port": 443,
            "protocol": "TCP",
            "signature_id": 2000001,
            "signature_name": "ET MISC Test Signature",
            "category": "Misc activity",
            "severity": 3,
            "action": ThreatAction.DETECTED,
            "event_source": EventSource.IPS,
        }
        values.update(overrides)
        return ThreatEvent(**values)

    return _make
