"""
Database models for the durable cache tier
SQLAlchemy ORM model for cache entries shared by server-side handlers
"""
from datetime import datetime
from sqlalchemy import Column, Float, String, Text, DateTime
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CacheRecord(Base):
    """
    Persisted cache entry - one row per cache key
    Value is stored as JSON text, expiry as epoch seconds
    """
    __tablename__ = "cache_entries"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(Float, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<CacheRecord(key='{self.key}', expires_at={self.expires_at})>"
