"""Coach (provider) model definitions."""

from sqlalchemy import Boolean, Column, Date, ForeignKey, Integer, String
from scheduling_backend.database import Base


class Coach(Base):
    """Represents a coach whose calendar is scheduled."""
    __tablename__ = "coaches"

    id = Column(Integer, primary_key=True)
    name = Column(String)
    email = Column(String, unique=True, index=True)
    is_active = Column(Boolean, default=True)
    is_available = Column(Boolean, default=True)
    exit_status = Column(String, nullable=True)


class CoachReassignment(Base):
    """Log of an enrollment moving from one coach to another."""
    __tablename__ = "coach_reassignments"

    id = Column(Integer, primary_key=True)
    enrollment_id = Column(Integer, ForeignKey("enrollments.id"), index=True)
    original_coach_id = Column(Integer, ForeignKey("coaches.id"), index=True)
    new_coach_id = Column(Integer, ForeignKey("coaches.id"))
    reason = Column(String)
    is_temporary = Column(Boolean, default=False)
    start_date = Column(Date)
    expected_end_date = Column(Date, nullable=True)
    actual_end_date = Column(Date, nullable=True)
