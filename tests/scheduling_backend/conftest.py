import os
from datetime import date, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from scheduling_backend.database import Base  # noqa: E402
from scheduling_backend.models.availability import (  # noqa: E402
    KIND_AVAILABLE,
    SCOPE_DATE_SPECIFIC,
    SCOPE_WEEKLY,
    AvailabilityRule,
)
from scheduling_backend.models.booking import Booking  # noqa: E402
from scheduling_backend.models.coach import Coach, CoachReassignment  # noqa: E402
from scheduling_backend.models.enrollment import Enrollment, EnrollmentEvent  # noqa: E402
from scheduling_backend.models.hold import SlotHold  # noqa: E402
from scheduling_backend.models.rate_limit import RateLimitCounter  # noqa: E402
from scheduling_backend.models.user import User  # noqa: E402

SCHEDULING_TABLES = [
    Coach.__table__,
    User.__table__,
    AvailabilityRule.__table__,
    Enrollment.__table__,
    EnrollmentEvent.__table__,
    Booking.__table__,
    SlotHold.__table__,
    CoachReassignment.__table__,
    RateLimitCounter.__table__,
]


@pytest.fixture
def db_engine():
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine, tables=SCHEDULING_TABLES)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine, tables=list(reversed(SCHEDULING_TABLES)))
        engine.dispose()


@pytest.fixture
def scheduling_db(db_engine):
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_coach(scheduling_db):
    def _make_coach(**overrides) -> Coach:
        count = scheduling_db.query(Coach).count()
        values = {
            'name': f'Coach {count + 1}',
            'email': f'coach{count + 1}@example.com',
            'is_active': True,
            'is_available': True,
        }
        values.update(overrides)
        coach = Coach(**values)
        scheduling_db.add(coach)
        scheduling_db.commit()
        scheduling_db.refresh(coach)
        return coach

    return _make_coach


@pytest.fixture
def make_rule(scheduling_db):
    def _make_rule(coach_id: int, start: time, end: time, *, day_of_week=None, specific_date=None,
                   kind=KIND_AVAILABLE) -> AvailabilityRule:
        rule = AvailabilityRule(
            coach_id=coach_id,
            scope=SCOPE_DATE_SPECIFIC if specific_date else SCOPE_WEEKLY,
            kind=kind,
            day_of_week=day_of_week,
            specific_date=specific_date,
            start_time=start,
            end_time=end,
            is_active=True,
        )
        scheduling_db.add(rule)
        scheduling_db.commit()
        return rule

    return _make_rule


@pytest.fixture
def make_enrollment(scheduling_db):
    def _make_enrollment(coach_id: int, **overrides) -> Enrollment:
        values = {
            'coach_id': coach_id,
            'client_email': 'parent@example.com',
            'status': 'active',
            'duration_weeks': 12,
            'program_start_date': date(2026, 1, 5),
            'program_end_date': date(2026, 3, 30),
            'is_paused': False,
            'total_pause_days': 0,
            'pause_count': 0,
            'consecutive_no_shows': 0,
            'total_no_shows': 0,
        }
        values.update(overrides)
        enrollment = Enrollment(**values)
        scheduling_db.add(enrollment)
        scheduling_db.commit()
        scheduling_db.refresh(enrollment)
        return enrollment

    return _make_enrollment


@pytest.fixture
def make_booking(scheduling_db):
    def _make_booking(coach_id: int, slot_date: date, slot_time: time, **overrides) -> Booking:
        values = {
            'coach_id': coach_id,
            'client_email': 'parent@example.com',
            'session_type': 'coaching',
            'slot_date': slot_date,
            'slot_time': slot_time,
            'duration_minutes': 45,
            'status': 'scheduled',
            'needs_attention': False,
        }
        values.update(overrides)
        booking = Booking(**values)
        scheduling_db.add(booking)
        scheduling_db.commit()
        scheduling_db.refresh(booking)
        return booking

    return _make_booking
