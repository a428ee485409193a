"""Slot hold model definitions."""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Time, UniqueConstraint
from scheduling_backend.database import Base


class SlotHold(Base):
    """Represents a short-lived claim on one (coach, date, time) slot."""
    __tablename__ = "slot_holds"
    __table_args__ = (
        UniqueConstraint('coach_id', 'slot_date', 'slot_time', name='uq_slot_holds_key'),
    )

    id = Column(Integer, primary_key=True)
    coach_id = Column(Integer, ForeignKey("coaches.id"))
    slot_date = Column(Date)
    slot_time = Column(Time)
    session_type = Column(String)
    duration_minutes = Column(Integer)
    client_email = Column(String, nullable=True)
    expires_at = Column(DateTime, index=True)
