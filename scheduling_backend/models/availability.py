"""Availability rule model definitions."""

from enum import IntEnum

from sqlalchemy import Boolean, CheckConstraint, Column, Date, ForeignKey, Integer, String, Time
from scheduling_backend.database import Base

SCOPE_WEEKLY = 'weekly'
SCOPE_DATE_SPECIFIC = 'date_specific'
KIND_AVAILABLE = 'available'
KIND_UNAVAILABLE = 'unavailable'


class Weekday(IntEnum):
    """The only day-of-week numbering used for rules, matching date.weekday()."""

    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


class AvailabilityRule(Base):
    """Represents a weekly or date-specific availability window for a coach."""
    __tablename__ = "availability_rules"
    __table_args__ = (
        CheckConstraint('end_time > start_time', name='ck_availability_rules_window'),
    )

    id = Column(Integer, primary_key=True)
    coach_id = Column(Integer, ForeignKey("coaches.id"), index=True)
    scope = Column(String)
    kind = Column(String)
    day_of_week = Column(Integer, nullable=True)
    specific_date = Column(Date, nullable=True)
    start_time = Column(Time)
    end_time = Column(Time)
    is_active = Column(Boolean, default=True)
