"""Rate limit counter model definitions."""

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint
from scheduling_backend.database import Base


class RateLimitCounter(Base):
    """Request count for one key inside one fixed window."""
    __tablename__ = "rate_limit_counters"
    __table_args__ = (
        UniqueConstraint('bucket', 'key', 'window_start', name='uq_rate_limit_window'),
    )

    id = Column(Integer, primary_key=True)
    bucket = Column(String)
    key = Column(String)
    window_start = Column(DateTime, index=True)
    count = Column(Integer, default=0)
