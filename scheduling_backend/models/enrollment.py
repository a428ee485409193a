"""Enrollment model definitions."""

from sqlalchemy import JSON, Boolean, Column, Date, DateTime, ForeignKey, Integer, String, func
from scheduling_backend.database import Base


class Enrollment(Base):
    """Represents a client's program with a defined end date."""
    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True)
    coach_id = Column(Integer, ForeignKey("coaches.id"), index=True)
    client_email = Column(String)
    status = Column(String, default='pending_start')
    duration_weeks = Column(Integer)
    requested_start_date = Column(Date, nullable=True)
    program_start_date = Column(Date, nullable=True)
    program_end_date = Column(Date, nullable=True)
    original_end_date = Column(Date, nullable=True)
    is_paused = Column(Boolean, default=False)
    pause_start_date = Column(Date, nullable=True)
    pause_end_date = Column(Date, nullable=True)
    pause_reason = Column(String, nullable=True)
    total_pause_days = Column(Integer, default=0)
    pause_count = Column(Integer, default=0)
    consecutive_no_shows = Column(Integer, default=0)
    total_no_shows = Column(Integer, default=0)
    at_risk = Column(Boolean, default=False)
    at_risk_reason = Column(String, nullable=True)
    client_age = Column(Integer, nullable=True)
    preferred_day = Column(Integer, nullable=True)
    preferred_time = Column(String, nullable=True)


class EnrollmentEvent(Base):
    """Append-only audit record of an enrollment lifecycle transition."""
    __tablename__ = "enrollment_events"

    id = Column(Integer, primary_key=True)
    enrollment_id = Column(Integer, ForeignKey("enrollments.id"), index=True)
    event_type = Column(String)
    event_data = Column(JSON)
    triggered_by = Column(String)
    created_at = Column(DateTime, server_default=func.now())
