from datetime import date, datetime, time, timedelta

import pytest

from scheduling_backend.models.enrollment import EnrollmentEvent
from scheduling_backend.scheduling.errors import ConflictError, NotFoundError, ValidationError
from scheduling_backend.scheduling.timeline import (
    activate_enrollment,
    apply_auto_pause,
    due_delayed_starts,
    due_pause_endings,
    get_pause_status,
    pause_enrollment,
    resume_enrollment,
    validate_pause_request,
)

NOW = datetime(2026, 1, 5, 9, 0)
PROGRAM_END = date(2026, 3, 30)


def _events(db, enrollment_id: int, event_type: str) -> list[EnrollmentEvent]:
    return db.query(EnrollmentEvent).filter(
        EnrollmentEvent.enrollment_id == enrollment_id,
        EnrollmentEvent.event_type == event_type,
    ).all()


@pytest.mark.parametrize(
    ('overrides', 'start', 'end', 'reason', 'error_type', 'message'),
    [
        ({}, date(2026, 1, 6), date(2026, 1, 10), 'travel', ValidationError,
         'Pause must be requested at least 48 hours in advance.'),
        ({}, date(2026, 1, 10), date(2026, 1, 10), 'travel', ValidationError, 'End date must be after start date.'),
        ({}, date(2026, 1, 10), date(2026, 2, 10), 'travel', ValidationError, 'Maximum pause duration is 30 days.'),
        ({}, date(2026, 1, 10), date(2026, 1, 12), 'vacation', ValidationError,
         'Pause reason must be one of: exams, travel, illness, other.'),
        ({'total_pause_days': 40}, date(2026, 1, 10), date(2026, 1, 20), 'exams', ConflictError,
         'Only 5 pause days remaining.'),
        ({'pause_count': 3}, date(2026, 1, 10), date(2026, 1, 12), 'exams', ConflictError,
         'Maximum 3 pauses allowed.'),
        ({'status': 'pending_start'}, date(2026, 1, 10), date(2026, 1, 12), 'exams', ConflictError,
         'Only active enrollments can be paused.'),
        ({'is_paused': True, 'status': 'paused'}, date(2026, 1, 10), date(2026, 1, 12), 'exams', ConflictError,
         'Program is already paused.'),
    ],
)
def test_validate_pause_request_rejections(
    make_coach, make_enrollment, overrides, start, end, reason, error_type, message
) -> None:
    enrollment = make_enrollment(make_coach().id, **overrides)

    with pytest.raises(error_type) as exception_info:
        validate_pause_request(enrollment, start, end, reason, NOW)

    assert exception_info.value.message == message


def test_validate_pause_request_returns_pause_days(make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id, total_pause_days=35)

    assert validate_pause_request(enrollment, date(2026, 1, 10), date(2026, 1, 20), 'illness', NOW) == 10


def test_pause_extends_end_date_and_pauses_sessions_in_window(
    scheduling_db, make_coach, make_enrollment, make_booking
) -> None:
    coach = make_coach()
    enrollment = make_enrollment(coach.id, program_end_date=PROGRAM_END)
    inside = make_booking(coach.id, date(2026, 1, 12), time(10, 0), enrollment_id=enrollment.id)
    outside = make_booking(coach.id, date(2026, 1, 26), time(10, 0), enrollment_id=enrollment.id)

    result = pause_enrollment(
        scheduling_db, enrollment.id, date(2026, 1, 10), date(2026, 1, 20), 'travel', now=NOW
    )

    assert result.applied is True
    assert result.pause_days == 10
    assert [booking.id for booking in result.affected_bookings] == [inside.id]
    assert enrollment.status == 'paused'
    assert enrollment.pause_count == 1
    assert enrollment.original_end_date == PROGRAM_END
    assert enrollment.program_end_date == PROGRAM_END + timedelta(days=10)
    assert inside.status == 'paused'
    assert outside.status == 'scheduled'
    assert len(_events(scheduling_db, enrollment.id, 'pause_requested')) == 1


def test_repeating_identical_pause_is_noop(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id)
    pause_enrollment(scheduling_db, enrollment.id, date(2026, 1, 10), date(2026, 1, 20), 'travel', now=NOW)

    repeated = pause_enrollment(scheduling_db, enrollment.id, date(2026, 1, 10), date(2026, 1, 20), 'travel', now=NOW)

    assert repeated.applied is False
    assert enrollment.pause_count == 1
    assert len(_events(scheduling_db, enrollment.id, 'pause_requested')) == 1


def test_different_pause_window_while_paused_is_rejected(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id)
    pause_enrollment(scheduling_db, enrollment.id, date(2026, 1, 10), date(2026, 1, 20), 'travel', now=NOW)

    with pytest.raises(ConflictError) as exception_info:
        pause_enrollment(scheduling_db, enrollment.id, date(2026, 1, 12), date(2026, 1, 20), 'travel', now=NOW)

    assert exception_info.value.message == 'Program is already paused.'


def test_third_pause_succeeds_and_fourth_is_rejected(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id)

    for cycle in range(3):
        start = date(2026, 1, 10) + timedelta(days=cycle * 10)
        pause_enrollment(scheduling_db, enrollment.id, start, start + timedelta(days=2), 'exams', now=NOW)
        resume_enrollment(scheduling_db, enrollment.id, today=start + timedelta(days=2))

    assert enrollment.pause_count == 3
    assert enrollment.total_pause_days == 6

    with pytest.raises(ConflictError) as exception_info:
        pause_enrollment(scheduling_db, enrollment.id, date(2026, 3, 1), date(2026, 3, 3), 'exams', now=NOW)

    assert exception_info.value.message == 'Maximum 3 pauses allowed.'


def test_early_resume_only_counts_elapsed_days(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id, program_end_date=PROGRAM_END)
    pause_enrollment(scheduling_db, enrollment.id, date(2026, 1, 10), date(2026, 1, 20), 'illness', now=NOW)

    result = resume_enrollment(scheduling_db, enrollment.id, today=date(2026, 1, 13))

    assert result.applied is True
    assert result.actual_pause_days == 3
    assert result.early_resume is True
    assert enrollment.total_pause_days == 3
    assert enrollment.program_end_date == PROGRAM_END + timedelta(days=3)
    assert enrollment.status == 'active'
    assert enrollment.is_paused is False
    assert enrollment.pause_start_date is None


def test_late_resume_is_capped_at_requested_window(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id, program_end_date=PROGRAM_END)
    pause_enrollment(scheduling_db, enrollment.id, date(2026, 1, 10), date(2026, 1, 20), 'illness', now=NOW)

    result = resume_enrollment(scheduling_db, enrollment.id, today=date(2026, 1, 25))

    assert result.actual_pause_days == 10
    assert result.early_resume is False
    assert enrollment.program_end_date == PROGRAM_END + timedelta(days=10)


def test_resume_is_idempotent(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id, program_end_date=PROGRAM_END)
    pause_enrollment(scheduling_db, enrollment.id, date(2026, 1, 10), date(2026, 1, 20), 'other', now=NOW)
    resume_enrollment(scheduling_db, enrollment.id, today=date(2026, 1, 13))

    repeated = resume_enrollment(scheduling_db, enrollment.id, today=date(2026, 1, 14))

    assert repeated.applied is False
    assert enrollment.total_pause_days == 3
    assert enrollment.program_end_date == PROGRAM_END + timedelta(days=3)
    assert len(_events(scheduling_db, enrollment.id, 'pause_ended')) == 1


def test_repeated_pauses_never_compound_end_date(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id, program_end_date=PROGRAM_END)

    pause_enrollment(scheduling_db, enrollment.id, date(2026, 1, 10), date(2026, 1, 20), 'travel', now=NOW)
    resume_enrollment(scheduling_db, enrollment.id, today=date(2026, 1, 14))
    pause_enrollment(
        scheduling_db, enrollment.id, date(2026, 2, 2), date(2026, 2, 7), 'travel', now=datetime(2026, 1, 20, 9, 0)
    )
    resume_enrollment(scheduling_db, enrollment.id, today=date(2026, 2, 7))

    assert enrollment.total_pause_days == 9
    assert enrollment.original_end_date == PROGRAM_END
    assert enrollment.program_end_date == PROGRAM_END + timedelta(days=9)


def test_resume_restores_future_sessions_and_spaces_elapsed_ones(
    scheduling_db, make_coach, make_enrollment, make_booking
) -> None:
    coach = make_coach()
    enrollment = make_enrollment(coach.id)
    first_elapsed = make_booking(coach.id, date(2026, 1, 12), time(10, 0), enrollment_id=enrollment.id)
    second_elapsed = make_booking(coach.id, date(2026, 1, 14), time(10, 0), enrollment_id=enrollment.id)
    upcoming = make_booking(coach.id, date(2026, 1, 20), time(14, 0), enrollment_id=enrollment.id)
    pause_enrollment(scheduling_db, enrollment.id, date(2026, 1, 10), date(2026, 1, 20), 'travel', now=NOW)

    result = resume_enrollment(scheduling_db, enrollment.id, today=date(2026, 1, 17))

    # Jan 18 is a Sunday.
    assert first_elapsed.slot_date == date(2026, 1, 19)
    assert second_elapsed.slot_date == date(2026, 1, 24)
    assert upcoming.slot_date == date(2026, 1, 20)
    assert {booking.status for booking in (first_elapsed, second_elapsed, upcoming)} == {'scheduled'}
    assert len(result.restored_bookings) == 3
    assert result.unplaced_bookings == []


def test_pause_status_reports_budget(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id, total_pause_days=20, pause_count=1)
    pause_enrollment(scheduling_db, enrollment.id, date(2026, 1, 10), date(2026, 1, 17), 'exams', now=NOW)

    status = get_pause_status(enrollment)

    assert status['is_paused'] is True
    assert status['current_pause']['reason'] == 'exams'
    assert status['total_pause_days_used'] == 20
    assert status['remaining_pause_days'] == 25
    assert status['max_single_pause'] == 25
    assert status['pause_count'] == 2
    assert status['remaining_pauses'] == 1
    assert status['can_pause'] is False


def test_activate_enrollment_starts_due_program(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(
        make_coach().id,
        status='pending_start',
        requested_start_date=date(2026, 1, 5),
        program_start_date=None,
        program_end_date=None,
        duration_weeks=8,
    )

    result = activate_enrollment(scheduling_db, enrollment.id, today=date(2026, 1, 6))
    repeated = activate_enrollment(scheduling_db, enrollment.id, today=date(2026, 1, 7))

    assert result.applied is True
    assert repeated.applied is False
    assert enrollment.status == 'active'
    assert enrollment.program_start_date == date(2026, 1, 6)
    assert enrollment.program_end_date == date(2026, 1, 6) + timedelta(weeks=8)
    assert len(_events(scheduling_db, enrollment.id, 'started')) == 1


def test_activate_enrollment_waits_for_requested_start(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id, status='pending_start', requested_start_date=date(2026, 2, 1))

    result = activate_enrollment(scheduling_db, enrollment.id, today=date(2026, 1, 6))

    assert result.applied is False
    assert enrollment.status == 'pending_start'


def test_activate_missing_enrollment_raises(scheduling_db) -> None:
    with pytest.raises(NotFoundError):
        activate_enrollment(scheduling_db, 404, today=date(2026, 1, 6))


def test_auto_pause_starts_today_within_remaining_budget(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id, total_pause_days=35)

    result = apply_auto_pause(scheduling_db, enrollment, date(2026, 1, 5))

    assert result.applied is True
    assert enrollment.pause_start_date == date(2026, 1, 5)
    assert enrollment.pause_end_date == date(2026, 1, 15)
    assert enrollment.pause_reason == 'auto_noshow'


def test_auto_pause_skipped_when_budget_exhausted(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id, total_pause_days=45)

    result = apply_auto_pause(scheduling_db, enrollment, date(2026, 1, 5))

    assert result.applied is False
    assert enrollment.is_paused is False


def test_due_queries_select_enrollments_needing_maintenance(scheduling_db, make_coach, make_enrollment) -> None:
    coach = make_coach()
    due_start = make_enrollment(coach.id, status='pending_start', requested_start_date=date(2026, 1, 5))
    make_enrollment(coach.id, status='pending_start', requested_start_date=date(2026, 2, 5))
    due_pause = make_enrollment(
        coach.id, status='paused', is_paused=True, pause_start_date=date(2026, 1, 1), pause_end_date=date(2026, 1, 5)
    )
    make_enrollment(
        coach.id, status='paused', is_paused=True, pause_start_date=date(2026, 1, 1), pause_end_date=date(2026, 1, 9)
    )

    assert due_delayed_starts(scheduling_db, date(2026, 1, 5)) == [due_start.id]
    assert due_pause_endings(scheduling_db, date(2026, 1, 5)) == [due_pause.id]
