"""Booking model definitions."""

from sqlalchemy import Boolean, Column, Date, ForeignKey, Integer, String, Time
from scheduling_backend.database import Base

ACTIVE_BOOKING_STATUSES = ('scheduled', 'confirmed')
TERMINAL_BOOKING_STATUSES = ('completed', 'cancelled', 'no_show')


class Booking(Base):
    """Represents a confirmed occupancy of a coach's time."""
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    coach_id = Column(Integer, ForeignKey("coaches.id"), index=True)
    enrollment_id = Column(Integer, ForeignKey("enrollments.id"), nullable=True)
    client_email = Column(String)
    session_type = Column(String)
    slot_date = Column(Date)
    slot_time = Column(Time)
    duration_minutes = Column(Integer)
    status = Column(String, default='scheduled')
    calendar_event_id = Column(String, nullable=True)
    video_bot_id = Column(String, nullable=True)
    needs_attention = Column(Boolean, default=False)
    attention_reason = Column(String, nullable=True)
    notes = Column(String, nullable=True)
    week_number = Column(Integer, nullable=True)
    session_number = Column(Integer, nullable=True)
