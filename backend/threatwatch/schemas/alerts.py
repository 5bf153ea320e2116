# backend/threatwatch/schemas/alerts.py
from typing import Dict, Optional
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertEvent(BaseModel):
    """
    Structured alert handed to the alert bus.
    `context` is a flat string map so every channel can render it.
    """
    event_type: str  # e.g. "threats.attack_chain", "threats.pattern"
    source: str = "threats"
    severity: AlertSeverity
    title: str
    message: str
    source_ip: Optional[str] = None
    context: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
