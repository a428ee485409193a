from datetime import date, datetime, time

import pytest
from sqlalchemy.exc import OperationalError

from scheduling_backend.models.enrollment import EnrollmentEvent
from scheduling_backend.scheduling.errors import ExternalCollaboratorError
from scheduling_backend.scheduling.orchestrator import HANDLERS, SchedulingEvent, dispatch

NOW = datetime(2026, 1, 5, 9, 0)


class FakeCalendar:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.cancelled = []
        self.rescheduled = []

    def cancel_event(self, event_id: str, notify: bool = True) -> None:
        if self.fail:
            raise ExternalCollaboratorError('calendar down', operation='calendar.cancel_event', entity_id=event_id)
        self.cancelled.append(event_id)

    def reschedule_event(self, event_id: str, new_start: datetime, duration_minutes: int) -> None:
        if self.fail:
            raise ExternalCollaboratorError('calendar down', operation='calendar.reschedule_event', entity_id=event_id)
        self.rescheduled.append((event_id, new_start, duration_minutes))


class FakeVideoBot:
    def __init__(self):
        self.cancelled = []

    def cancel_bot(self, bot_id: str) -> None:
        self.cancelled.append(bot_id)


def _dispatch(db, event, payload, calendar=None, video_bot=None, now=NOW):
    return dispatch(
        db,
        event,
        payload,
        actor='admin:ops@example.com',
        calendar=calendar or FakeCalendar(),
        video_bot=video_bot or FakeVideoBot(),
        now=now,
    )


def test_every_allowed_event_has_a_handler() -> None:
    assert set(HANDLERS) == set(SchedulingEvent)


def test_unknown_event_is_rejected_without_side_effects(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id)

    result = _dispatch(scheduling_db, 'enrollment.deleted', {'enrollment_id': enrollment.id})

    assert result.success is False
    assert result.outcome == 'rejected'
    assert result.error == 'Unknown event: enrollment.deleted'
    assert result.correlation_id
    assert scheduling_db.query(EnrollmentEvent).count() == 0


def test_invalid_payload_is_rejected(scheduling_db) -> None:
    result = _dispatch(scheduling_db, 'session.reschedule', {'session_id': 1, 'new_date': '2026-01-07', 'new_time': '25:00'})

    assert result.outcome == 'rejected'
    assert result.error_type == 'PayloadValidationError'
    assert 'new_time' in result.error


def test_pause_commits_even_when_calendar_fails(scheduling_db, make_coach, make_enrollment, make_booking) -> None:
    coach = make_coach()
    enrollment = make_enrollment(coach.id)
    booking = make_booking(
        coach.id, date(2026, 1, 12), time(10, 0), enrollment_id=enrollment.id,
        calendar_event_id='evt-1', video_bot_id='bot-1',
    )
    video_bot = FakeVideoBot()

    result = _dispatch(
        scheduling_db,
        'enrollment.paused',
        {
            'enrollment_id': enrollment.id,
            'pause_start_date': '2026-01-10',
            'pause_end_date': '2026-01-20',
            'pause_reason': 'travel',
        },
        calendar=FakeCalendar(fail=True),
        video_bot=video_bot,
    )

    assert result.success is True
    assert result.outcome == 'applied'
    assert result.data['affected_sessions'] == 1
    assert result.data['external_failures'] == [
        {'operation': 'calendar.cancel_event', 'entity_id': 'evt-1', 'session_id': booking.id}
    ]
    assert video_bot.cancelled == ['bot-1']
    scheduling_db.refresh(enrollment)
    scheduling_db.refresh(booking)
    assert enrollment.is_paused is True
    assert booking.status == 'paused'
    assert booking.calendar_event_id == 'evt-1'
    assert booking.video_bot_id is None


def test_pause_rejection_reports_domain_message(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(make_coach().id, pause_count=3)

    result = _dispatch(
        scheduling_db,
        'enrollment.paused',
        {
            'enrollment_id': enrollment.id,
            'pause_start_date': '2026-01-10',
            'pause_end_date': '2026-01-12',
            'pause_reason': 'exams',
        },
    )

    assert result.outcome == 'rejected'
    assert result.error == 'Maximum 3 pauses allowed.'
    assert result.error_type == 'ConflictError'


def test_resume_twice_reports_noop(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(
        make_coach().id,
        status='paused',
        is_paused=True,
        pause_start_date=date(2026, 1, 1),
        pause_end_date=date(2026, 1, 11),
        original_end_date=date(2026, 3, 30),
        program_end_date=date(2026, 4, 9),
    )

    first = _dispatch(scheduling_db, 'enrollment.resumed', {'enrollment_id': enrollment.id})
    second = _dispatch(scheduling_db, 'enrollment.resumed', {'enrollment_id': enrollment.id})

    assert first.outcome == 'applied'
    assert first.data['actual_pause_days'] == 4
    assert first.data['early_resume'] is True
    assert first.data['program_end_date'] == date(2026, 4, 3)
    assert second.outcome == 'noop'


def test_session_cancel_fans_out_once(scheduling_db, make_coach, make_booking) -> None:
    booking = make_booking(make_coach().id, date(2026, 1, 7), time(10, 0), calendar_event_id='evt-9', video_bot_id='bot-9')
    calendar = FakeCalendar()
    video_bot = FakeVideoBot()

    first = _dispatch(scheduling_db, 'session.cancel', {'session_id': booking.id}, calendar, video_bot)
    second = _dispatch(scheduling_db, 'session.cancel', {'session_id': booking.id}, calendar, video_bot)

    assert first.outcome == 'applied'
    assert second.outcome == 'noop'
    assert calendar.cancelled == ['evt-9']
    assert video_bot.cancelled == ['bot-9']


def test_session_reschedule_updates_calendar(scheduling_db, make_coach, make_booking) -> None:
    booking = make_booking(make_coach().id, date(2026, 1, 7), time(10, 0), calendar_event_id='evt-3')
    calendar = FakeCalendar()

    result = _dispatch(
        scheduling_db,
        'session.reschedule',
        {'session_id': booking.id, 'new_date': '2026-01-08', 'new_time': '9:30'},
        calendar,
    )

    assert result.outcome == 'applied'
    assert result.data['slot_time'] == '09:30'
    assert calendar.rescheduled == [('evt-3', datetime(2026, 1, 8, 9, 30), 45)]


def test_no_backup_coach_applies_and_flags_sessions(scheduling_db, make_coach, make_booking) -> None:
    coach = make_coach()
    booking = make_booking(coach.id, date(2026, 1, 8), time(10, 0))

    result = _dispatch(
        scheduling_db,
        'coach.unavailable',
        {'coach_id': coach.id, 'start_date': '2026-01-05', 'end_date': '2026-01-19'},
    )

    assert result.success is True
    assert result.outcome == 'applied'
    assert result.data['strategy'] == 'manual_attention'
    assert result.data['needs_attention_session_ids'] == [booking.id]
    assert 'No backup coach' in result.data['warning']
    assert coach.is_available is False


def test_delayed_start_activation(scheduling_db, make_coach, make_enrollment) -> None:
    enrollment = make_enrollment(
        make_coach().id, status='pending_start', requested_start_date=date(2026, 1, 5), program_end_date=None
    )

    result = _dispatch(scheduling_db, 'enrollment.delayed_start_activated', {'enrollment_id': enrollment.id})

    assert result.outcome == 'applied'
    assert result.data['status'] == 'active'
    assert result.data['program_start_date'] == date(2026, 1, 5)
    assert result.data['sessions_created'] == 9
    assert result.data['needs_attention_session_ids'] == []

    repeated = _dispatch(scheduling_db, 'enrollment.created', {'enrollment_id': enrollment.id})

    assert repeated.outcome == 'noop'
    assert repeated.data['sessions_created'] == 0


def test_fifth_no_show_cancels_paused_session_resources(
    scheduling_db, make_coach, make_enrollment, make_booking
) -> None:
    coach = make_coach()
    enrollment = make_enrollment(coach.id, total_no_shows=4)
    missed = make_booking(coach.id, date(2026, 1, 5), time(8, 0), enrollment_id=enrollment.id)
    make_booking(coach.id, date(2026, 1, 12), time(10, 0), enrollment_id=enrollment.id, calendar_event_id='evt-12')
    calendar = FakeCalendar()

    result = _dispatch(scheduling_db, 'session.no_show', {'session_id': missed.id}, calendar)

    assert result.data['auto_paused'] is True
    assert calendar.cancelled == ['evt-12']


def test_database_error_is_reported_as_failure(scheduling_db, make_coach, make_enrollment, monkeypatch, caplog) -> None:
    enrollment = make_enrollment(make_coach().id, status='pending_start')

    def broken_activation(*args, **kwargs):
        raise OperationalError('SELECT 1', {}, Exception('connection refused'))

    monkeypatch.setattr('scheduling_backend.scheduling.timeline.activate_enrollment', broken_activation)

    with caplog.at_level('ERROR', logger='scheduling_backend.scheduling.orchestrator'):
        result = _dispatch(scheduling_db, 'enrollment.created', {'enrollment_id': enrollment.id})

    assert result.success is False
    assert result.outcome == 'failed'
    assert result.error == 'Scheduling service temporarily unavailable.'
    assert result.error_type == 'InfrastructureError'
    assert 'connection refused' not in result.error
    logged = [record for record in caplog.records if record.getMessage() == 'dispatch_failed']
    assert [record.correlation_id for record in logged] == [result.correlation_id]
