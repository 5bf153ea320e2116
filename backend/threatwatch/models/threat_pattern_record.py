# backend/threatwatch/models/threat_pattern_record.py
from sqlalchemy import Column, String, Integer, Float, DateTime, JSON
from threatwatch.db.base_class import Base


class ThreatPatternRecord(Base):
    __tablename__ = "threat_patterns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pattern_type = Column(String, index=True, nullable=False)
    dedup_key = Column(String, index=True, nullable=False)

    source_ips = Column(JSON)   # ["1.2.3.4", ...], first is the primary offender
    target_ip = Column(String, nullable=True)
    target_port = Column(Integer, nullable=True)
    event_count = Column(Integer)
    confidence = Column(Float)
    description = Column(String)

    detected_at = Column(DateTime, index=True)
    first_seen = Column(DateTime)
    last_seen = Column(DateTime, index=True)
    alerted_at = Column(DateTime, nullable=True, index=True)
