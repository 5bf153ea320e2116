# backend/threatwatch/schemas/threats.py
from typing import List, Optional
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class ThreatAction(str, Enum):
    BLOCKED = "blocked"
    DETECTED = "detected"


class EventSource(str, Enum):
    IPS = "ips"
    TRAFFIC_FLOW = "traffic_flow"


class KillChainStage(str, Enum):
    """
    Simplified cyber kill chain for network IPS context.

    Progression order is reconnaissance -> attempted exploitation ->
    active exploitation -> post exploitation. MONITORED is the catch-all
    for low-confidence signals and ranks after the progression stages.
    """
    RECONNAISSANCE = "reconnaissance"
    ATTEMPTED_EXPLOITATION = "attempted_exploitation"
    ACTIVE_EXPLOITATION = "active_exploitation"
    POST_EXPLOITATION = "post_exploitation"
    MONITORED = "monitored"

    @property
    def rank(self) -> int:
        return _STAGE_RANK[self]


_STAGE_RANK = {
    KillChainStage.RECONNAISSANCE: 0,
    KillChainStage.ATTEMPTED_EXPLOITATION: 1,
    KillChainStage.ACTIVE_EXPLOITATION: 2,
    KillChainStage.POST_EXPLOITATION: 3,
    KillChainStage.MONITORED: 4,
}


class PatternType(str, Enum):
    BRUTE_FORCE = "brute_force"
    DDOS = "ddos"
    SCAN_SWEEP = "scan_sweep"


class ThreatEvent(BaseModel):
    """
    One normalized IPS alert or interesting traffic flow.

    `id` is the upstream identifier and the dedup key: two ingests of the
    same id collapse to one stored row.
    """
    id: str
    timestamp: datetime
    source_ip: str = ""
    source_port: int = 0
    dest_ip: str = ""
    dest_port: int = 0
    protocol: str = ""

    signature_id: int = 0
    signature_name: str = ""
    category: str = ""
    severity: int = Field(3, ge=1, le=5)  # 5 = most severe
    action: ThreatAction = ThreatAction.DETECTED
    event_source: EventSource = EventSource.IPS

    # Traffic-flow only
    direction: Optional[str] = None  # incoming | outgoing
    risk_level: Optional[str] = None  # low | medium | high
    service: Optional[str] = None
    domain: Optional[str] = None
    bytes_total: Optional[int] = None
    network_name: Optional[str] = None

    # Geo / ASN enrichment
    country_code: Optional[str] = None
    city: Optional[str] = None
    asn: Optional[int] = None
    asn_org: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    kill_chain_stage: Optional[KillChainStage] = None


class ThreatPattern(BaseModel):
    """A multi-event pattern found by one of the detectors."""
    id: Optional[int] = None
    pattern_type: PatternType
    source_ips: List[str] = Field(default_factory=list)  # [0] is the primary offender
    target_ip: Optional[str] = None
    target_port: Optional[int] = None
    event_count: int
    confidence: float = Field(..., ge=0.0, le=1.0)
    description: str
    dedup_key: str
    detected_at: datetime
    first_seen: datetime
    last_seen: datetime
    alerted_at: Optional[datetime] = None


class SequenceStage(BaseModel):
    stage: KillChainStage
    first_seen: datetime
    last_seen: datetime
    event_count: int
    top_signature: str = ""


class AttackSequence(BaseModel):
    """Distinct kill-chain stages reached by one source IP, in order of first occurrence."""
    source_ip: str
    country_code: Optional[str] = None
    asn_org: Optional[str] = None
    stages: List[SequenceStage] = Field(default_factory=list)

    @property
    def final_stage(self) -> Optional[KillChainStage]:
        return self.stages[-1].stage if self.stages else None


class CollectRangeRequest(BaseModel):
    start: datetime
    end: datetime
    max_pages: int = Field(50, ge=1, le=1000)

    @field_validator("start", "end")
    @classmethod
    def _to_naive_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "CollectRangeRequest":
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class CollectRangeResponse(BaseModel):
    collected: int
    saved: int


class CollectionStatus(BaseModel):
    has_collected_once: bool
    last_sync: Optional[datetime] = None
    backfill_cursor: Optional[datetime] = None
    backfill_complete: bool
