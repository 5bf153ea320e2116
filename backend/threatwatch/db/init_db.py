# backend/threatwatch/db/init_db.py

from threatwatch.db.session import engine
from threatwatch.db.base_class import Base

# Import models so they are registered with Base.metadata
from threatwatch.models import system_setting, threat_event_record, threat_pattern_record  # noqa: F401


def init_db() -> None:
    """
    Create all tables (development only).
    In production, replace this with Alembic migrations.
    """
    Base.metadata.create_all(bind=engine)
