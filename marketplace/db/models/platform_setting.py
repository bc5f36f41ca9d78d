"""
Platform Settings Model - admin-editable key/value policy (fee rate, delivery fee)
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey

from marketplace.db.database import Base, utcnow


class PlatformSetting(Base):
    __tablename__ = "platform_settings"

    key = Column(String(50), primary_key=True)
    value = Column(String(100), nullable=False)
    updated_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
