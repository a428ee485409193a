from datetime import date, time

import pytest

from scheduling_backend.models.coach import CoachReassignment
from scheduling_backend.scheduling.errors import ValidationError
from scheduling_backend.scheduling.providers import (
    NO_BACKUP_WARNING,
    STRATEGY_MANUAL,
    STRATEGY_PERMANENT,
    STRATEGY_RESCHEDULE,
    STRATEGY_TEMPORARY,
    find_backup_coach,
    process_coach_exit,
    process_coach_return,
    process_unavailability,
)

TODAY = date(2026, 1, 5)


def test_find_backup_coach_prefers_lightest_caseload(scheduling_db, make_coach, make_enrollment) -> None:
    absent = make_coach()
    busy = make_coach()
    light = make_coach()
    make_coach(is_available=False)
    make_enrollment(busy.id)
    make_enrollment(busy.id)
    make_enrollment(light.id)

    assert find_backup_coach(scheduling_db, absent.id).id == light.id


def test_short_absence_moves_sessions_after_return(scheduling_db, make_coach, make_booking) -> None:
    coach = make_coach()
    booking = make_booking(coach.id, date(2026, 1, 6), time(10, 0))

    change = process_unavailability(scheduling_db, coach.id, TODAY, date(2026, 1, 9), 'illness', today=TODAY)

    assert change.applied is True
    assert change.strategy == STRATEGY_RESCHEDULE
    assert booking.slot_date == date(2026, 1, 10)
    assert booking.slot_time == time(10, 0)
    assert coach.is_available is False


def test_repeated_absence_report_is_noop(scheduling_db, make_coach, make_booking) -> None:
    coach = make_coach()
    make_booking(coach.id, date(2026, 1, 6), time(10, 0))
    process_unavailability(scheduling_db, coach.id, TODAY, date(2026, 1, 9), today=TODAY)

    repeated = process_unavailability(scheduling_db, coach.id, TODAY, date(2026, 1, 9), today=TODAY)

    assert repeated.applied is False


def test_medium_absence_reassigns_temporarily_and_returns(
    scheduling_db, make_coach, make_enrollment, make_booking
) -> None:
    coach = make_coach()
    backup = make_coach()
    enrollment = make_enrollment(coach.id)
    booking = make_booking(coach.id, date(2026, 1, 8), time(10, 0), enrollment_id=enrollment.id)

    change = process_unavailability(scheduling_db, coach.id, TODAY, date(2026, 1, 19), today=TODAY)

    assert change.strategy == STRATEGY_TEMPORARY
    assert change.backup_coach_id == backup.id
    assert booking.coach_id == backup.id
    assert enrollment.coach_id == coach.id
    reassignment = scheduling_db.query(CoachReassignment).one()
    assert reassignment.is_temporary is True
    assert reassignment.expected_end_date == date(2026, 1, 19)

    returned = process_coach_return(scheduling_db, coach.id, today=TODAY)

    assert returned.applied is True
    assert booking.coach_id == coach.id
    assert reassignment.actual_end_date == TODAY
    assert coach.is_available is True
    assert process_coach_return(scheduling_db, coach.id, today=TODAY).applied is False


def test_long_absence_reassigns_enrollment_permanently(
    scheduling_db, make_coach, make_enrollment, make_booking
) -> None:
    coach = make_coach()
    backup = make_coach()
    enrollment = make_enrollment(coach.id)
    in_window = make_booking(coach.id, date(2026, 1, 8), time(10, 0), enrollment_id=enrollment.id)
    after_window = make_booking(coach.id, date(2026, 3, 2), time(10, 0), enrollment_id=enrollment.id)

    change = process_unavailability(scheduling_db, coach.id, TODAY, date(2026, 2, 20), today=TODAY)

    assert change.strategy == STRATEGY_PERMANENT
    assert enrollment.coach_id == backup.id
    assert in_window.coach_id == backup.id
    assert after_window.coach_id == backup.id
    assert scheduling_db.query(CoachReassignment).one().is_temporary is False


def test_absence_without_backup_flags_sessions(scheduling_db, make_coach, make_booking) -> None:
    coach = make_coach()
    booking = make_booking(coach.id, date(2026, 1, 8), time(10, 0))

    change = process_unavailability(scheduling_db, coach.id, TODAY, date(2026, 1, 19), today=TODAY)

    scheduling_db.refresh(booking)
    assert change.applied is True
    assert change.strategy == STRATEGY_MANUAL
    assert change.warning == NO_BACKUP_WARNING
    assert change.flagged_bookings == [booking]
    assert booking.needs_attention is True
    assert booking.coach_id == coach.id
    assert coach.is_available is False


def test_reassignment_never_double_books_backup(scheduling_db, make_coach, make_booking) -> None:
    coach = make_coach()
    backup = make_coach()
    booking = make_booking(coach.id, date(2026, 1, 8), time(10, 0))
    make_booking(backup.id, date(2026, 1, 8), time(10, 30))

    change = process_unavailability(scheduling_db, coach.id, TODAY, date(2026, 1, 19), today=TODAY)

    assert change.flagged_bookings == [booking]
    assert booking.coach_id == coach.id
    assert booking.needs_attention is True


def test_unavailability_rejects_inverted_window(scheduling_db, make_coach) -> None:
    coach = make_coach()

    with pytest.raises(ValidationError):
        process_unavailability(scheduling_db, coach.id, date(2026, 1, 9), TODAY, today=TODAY)


def test_coach_exit_moves_open_enrollments(scheduling_db, make_coach, make_enrollment, make_booking) -> None:
    coach = make_coach()
    backup = make_coach()
    enrollment = make_enrollment(coach.id)
    finished = make_enrollment(coach.id, status='completed')
    booking = make_booking(coach.id, date(2026, 1, 12), time(9, 0), enrollment_id=enrollment.id)

    change = process_coach_exit(scheduling_db, coach.id, today=TODAY)

    assert change.applied is True
    assert coach.exit_status == 'exited'
    assert coach.is_active is False
    assert enrollment.coach_id == backup.id
    assert finished.coach_id == coach.id
    assert booking.coach_id == backup.id
    assert process_coach_exit(scheduling_db, coach.id, today=TODAY).applied is False


def test_exit_without_backup_flags_sessions_and_still_exits(scheduling_db, make_coach, make_enrollment, make_booking) -> None:
    coach = make_coach()
    enrollment = make_enrollment(coach.id)
    booking = make_booking(coach.id, date(2026, 1, 8), time(10, 0), enrollment_id=enrollment.id)

    change = process_coach_exit(scheduling_db, coach.id, today=TODAY)

    scheduling_db.refresh(coach)
    assert change.applied is True
    assert change.warning == NO_BACKUP_WARNING
    assert coach.exit_status == 'exited'
    assert booking.needs_attention is True
    assert enrollment.coach_id == coach.id
