# backend/threatwatch/models/threat_event_record.py
from sqlalchemy import Column, String, Integer, BigInteger, Float, DateTime
from datetime import datetime
from threatwatch.db.base_class import Base


class ThreatEventRecord(Base):
    __tablename__ = "threat_events"

    id = Column(String, primary_key=True, index=True)   # upstream id, dedup key
    timestamp = Column(DateTime, index=True, nullable=False)

    source_ip = Column(String, index=True)
    source_port = Column(Integer)
    dest_ip = Column(String, index=True)
    dest_port = Column(Integer, index=True)
    protocol = Column(String)

    signature_id = Column(BigInteger)
    signature_name = Column(String)
    category = Column(String)
    severity = Column(Integer, index=True)
    action = Column(String, index=True)
    event_source = Column(String, index=True)

    direction = Column(String, nullable=True)
    risk_level = Column(String, nullable=True)
    service = Column(String, nullable=True)
    domain = Column(String, nullable=True)
    bytes_total = Column(BigInteger, nullable=True)
    network_name = Column(String, nullable=True)

    country_code = Column(String, nullable=True)
    city = Column(String, nullable=True)
    asn = Column(Integer, nullable=True)
    asn_org = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    kill_chain_stage = Column(String, index=True, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
