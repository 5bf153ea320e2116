# backend/threatwatch/services/scheduler/scheduler_state.py
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Dict, Optional


@dataclass(frozen=True)
class CollectionConfig:
    """Last-known collection settings; a failed settings read keeps these."""
    enabled: bool = True
    poll_interval_minutes: int = 1
    retention_days: int = 90


@dataclass(frozen=True)
class SchedulerState:
    """
    Everything the collection loop carries from one cycle to the next.

    The cycle function takes a state and returns a new one; nothing else
    mutates it. `backfill_cursor` is None both before the first backfill
    and once backfill has reached the retention horizon; `backfill_complete`
    tells the two apart.
    """
    last_sync: Optional[datetime] = None
    backfill_cursor: Optional[datetime] = None
    backfill_complete: bool = False
    suppressed_high: Dict[str, datetime] = field(default_factory=dict)
    suppressed_early: Dict[str, datetime] = field(default_factory=dict)
    last_maintenance_check: Optional[datetime] = None
    last_purge_date: Optional[date] = None

    def evolve(self, **changes) -> "SchedulerState":
        return replace(self, **changes)
