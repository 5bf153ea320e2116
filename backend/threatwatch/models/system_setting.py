# backend/threatwatch/models/system_setting.py
from sqlalchemy import Column, String, Text, DateTime
from datetime import datetime
from threatwatch.db.base_class import Base


class SystemSetting(Base):
    __tablename__ = "system_settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
