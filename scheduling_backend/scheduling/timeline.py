"""Enrollment timeline: start, pause and resume.

Enrollment states move ``pending_start -> active <-> paused -> completed``.
A pause defers ``program_end_date`` by the requested number of days as soon
as it is accepted. On resume the deferral is recomputed from the days that
actually elapsed, because a client may come back before the requested end of
the pause and is only owed the days really missed:

    program_end_date = original_end_date + total_pause_days

``original_end_date`` is the end date before the first ever pause and is
never moved, so repeated pause/resume cycles never compound.

These functions mutate enrollment and booking rows only. Calendar and
video-bot resources tied to affected bookings are handled by the
orchestrator after the enrollment change has been committed.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy.orm import Session

from scheduling_backend.core import config
from scheduling_backend.models.booking import ACTIVE_BOOKING_STATUSES, TERMINAL_BOOKING_STATUSES, Booking
from scheduling_backend.models.enrollment import Enrollment, EnrollmentEvent
from scheduling_backend.scheduling.errors import ConflictError, NotFoundError, ValidationError
from scheduling_backend.scheduling.holds import find_overlapping_booking

logger = logging.getLogger(__name__)

PAUSE_REASONS = ('exams', 'travel', 'illness', 'other')
AUTO_PAUSE_REASON = 'auto_noshow'
RESCHEDULE_SEARCH_DAYS = 7


@dataclass
class PauseResult:
    enrollment: Enrollment
    applied: bool
    pause_days: int = 0
    affected_bookings: list[Booking] = field(default_factory=list)


@dataclass
class ResumeResult:
    enrollment: Enrollment
    applied: bool
    actual_pause_days: int = 0
    early_resume: bool = False
    restored_bookings: list[Booking] = field(default_factory=list)
    unplaced_bookings: list[Booking] = field(default_factory=list)


@dataclass
class ActivationResult:
    enrollment: Enrollment
    applied: bool
    reason: str | None = None


def get_enrollment(db: Session, enrollment_id: int) -> Enrollment:
    enrollment = db.query(Enrollment).filter(Enrollment.id == enrollment_id).first()
    if enrollment is None:
        raise NotFoundError('Enrollment not found.')
    return enrollment


def log_enrollment_event(db: Session, enrollment_id: int, event_type: str, event_data: dict, triggered_by: str = 'system') -> None:
    db.add(
        EnrollmentEvent(
            enrollment_id=enrollment_id,
            event_type=event_type,
            event_data=event_data,
            triggered_by=triggered_by,
        )
    )


def remaining_pause_days(enrollment: Enrollment) -> int:
    return max(0, config.MAX_PAUSE_DAYS_TOTAL - (enrollment.total_pause_days or 0))


def remaining_pauses(enrollment: Enrollment) -> int:
    return max(0, config.MAX_PAUSE_COUNT - (enrollment.pause_count or 0))


def get_pause_status(enrollment: Enrollment) -> dict:
    remaining_days = remaining_pause_days(enrollment)
    return {
        'enrollment_id': enrollment.id,
        'status': enrollment.status,
        'is_paused': bool(enrollment.is_paused),
        'current_pause': {
            'start_date': enrollment.pause_start_date,
            'end_date': enrollment.pause_end_date,
            'reason': enrollment.pause_reason,
        } if enrollment.is_paused else None,
        'total_pause_days_used': enrollment.total_pause_days or 0,
        'remaining_pause_days': remaining_days,
        'max_single_pause': min(config.MAX_PAUSE_DAYS_SINGLE, remaining_days),
        'pause_count': enrollment.pause_count or 0,
        'remaining_pauses': remaining_pauses(enrollment),
        'can_pause': (
            not enrollment.is_paused
            and enrollment.status == 'active'
            and remaining_days > 0
            and remaining_pauses(enrollment) > 0
        ),
        'program_end_date': enrollment.program_end_date,
        'original_end_date': enrollment.original_end_date,
    }


def validate_pause_request(
    enrollment: Enrollment,
    pause_start_date: date | None,
    pause_end_date: date | None,
    pause_reason: str | None,
    now: datetime,
) -> int:
    """Check every pause precondition and return the requested pause length in days."""
    if enrollment.is_paused:
        raise ConflictError('Program is already paused.')

    if enrollment.status != 'active':
        raise ConflictError('Only active enrollments can be paused.')

    if (enrollment.pause_count or 0) >= config.MAX_PAUSE_COUNT:
        raise ConflictError(f'Maximum {config.MAX_PAUSE_COUNT} pauses allowed.')

    if pause_start_date is None or pause_end_date is None:
        raise ValidationError('Start and end dates are required.')

    if pause_end_date <= pause_start_date:
        raise ValidationError('End date must be after start date.')

    if pause_reason not in PAUSE_REASONS:
        raise ValidationError(f'Pause reason must be one of: {", ".join(PAUSE_REASONS)}.')

    if datetime.combine(pause_start_date, datetime.min.time()) < now + timedelta(hours=config.MIN_NOTICE_HOURS):
        raise ValidationError(f'Pause must be requested at least {config.MIN_NOTICE_HOURS} hours in advance.')

    pause_days = (pause_end_date - pause_start_date).days
    if pause_days > config.MAX_PAUSE_DAYS_SINGLE:
        raise ValidationError(f'Maximum pause duration is {config.MAX_PAUSE_DAYS_SINGLE} days.')

    remaining = remaining_pause_days(enrollment)
    if pause_days > remaining:
        raise ConflictError(f'Only {remaining} pause days remaining.')

    return pause_days


def _bookings_in_window(db: Session, enrollment_id: int, start: date, end: date) -> list[Booking]:
    return db.query(Booking).filter(
        Booking.enrollment_id == enrollment_id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.slot_date >= start,
        Booking.slot_date <= end,
    ).order_by(Booking.slot_date.asc(), Booking.slot_time.asc()).all()


def _apply_pause(
    db: Session,
    enrollment: Enrollment,
    pause_start_date: date,
    pause_end_date: date,
    pause_reason: str,
    triggered_by: str,
) -> PauseResult:
    pause_days = (pause_end_date - pause_start_date).days
    affected = _bookings_in_window(db, enrollment.id, pause_start_date, pause_end_date)

    if enrollment.original_end_date is None:
        enrollment.original_end_date = enrollment.program_end_date
    if enrollment.program_end_date is not None:
        enrollment.program_end_date = enrollment.program_end_date + timedelta(days=pause_days)
    enrollment.status = 'paused'
    enrollment.is_paused = True
    enrollment.pause_start_date = pause_start_date
    enrollment.pause_end_date = pause_end_date
    enrollment.pause_reason = pause_reason
    # Counts pauses started, not pauses completed.
    enrollment.pause_count = (enrollment.pause_count or 0) + 1

    log_enrollment_event(
        db,
        enrollment.id,
        'pause_requested',
        {
            'start_date': pause_start_date.isoformat(),
            'end_date': pause_end_date.isoformat(),
            'reason': pause_reason,
            'pause_days': pause_days,
            'new_end_date': enrollment.program_end_date.isoformat() if enrollment.program_end_date else None,
            'affected_sessions': len(affected),
        },
        triggered_by,
    )
    db.commit()

    for booking in affected:
        booking.status = 'paused'
    db.commit()

    logger.info(
        'enrollment_paused',
        extra={'enrollment_id': enrollment.id, 'pause_days': pause_days, 'affected_sessions': len(affected)},
    )
    return PauseResult(enrollment=enrollment, applied=True, pause_days=pause_days, affected_bookings=affected)


def pause_enrollment(
    db: Session,
    enrollment_id: int,
    pause_start_date: date | None,
    pause_end_date: date | None,
    pause_reason: str | None,
    *,
    triggered_by: str = 'parent',
    now: datetime | None = None,
) -> PauseResult:
    now = now or datetime.now()
    enrollment = get_enrollment(db, enrollment_id)

    if (
        enrollment.is_paused
        and enrollment.pause_start_date == pause_start_date
        and enrollment.pause_end_date == pause_end_date
    ):
        return PauseResult(
            enrollment=enrollment,
            applied=False,
            pause_days=(pause_end_date - pause_start_date).days,
        )

    validate_pause_request(enrollment, pause_start_date, pause_end_date, pause_reason, now)
    return _apply_pause(db, enrollment, pause_start_date, pause_end_date, pause_reason, triggered_by)


def apply_auto_pause(db: Session, enrollment: Enrollment, today: date, reason: str = AUTO_PAUSE_REASON) -> PauseResult:
    """Pause starting today without the notice window, within the remaining budget."""
    window_days = min(config.MAX_PAUSE_DAYS_SINGLE, remaining_pause_days(enrollment))
    if (
        enrollment.is_paused
        or enrollment.status != 'active'
        or window_days < 1
        or remaining_pauses(enrollment) < 1
    ):
        logger.warning('auto_pause_skipped', extra={'enrollment_id': enrollment.id})
        return PauseResult(enrollment=enrollment, applied=False)

    return _apply_pause(db, enrollment, today, today + timedelta(days=window_days), reason, 'system')


def first_free_date(db: Session, booking: Booking, earliest: date) -> date | None:
    for offset in range(RESCHEDULE_SEARCH_DAYS):
        candidate = earliest + timedelta(days=offset)
        if candidate.weekday() in config.NON_WORKING_WEEKDAYS:
            continue
        if not find_overlapping_booking(
            db, booking.coach_id, candidate, booking.slot_time, booking.duration_minutes, exclude_booking_id=booking.id
        ):
            return candidate
    return None


def _restore_paused_bookings(db: Session, enrollment_id: int, today: date) -> tuple[list[Booking], list[Booking]]:
    paused = db.query(Booking).filter(
        Booking.enrollment_id == enrollment_id,
        Booking.status == 'paused',
    ).order_by(Booking.slot_date.asc(), Booking.slot_time.asc()).all()

    restored: list[Booking] = []
    unplaced: list[Booking] = []
    next_earliest = today + timedelta(days=1)

    for booking in paused:
        earliest = booking.slot_date if booking.slot_date > today else next_earliest
        new_date = first_free_date(db, booking, max(earliest, today + timedelta(days=1)))
        if new_date is None:
            booking.status = 'rescheduled'
            booking.needs_attention = True
            booking.attention_reason = 'No free day found after resume'
            unplaced.append(booking)
            continue

        if booking.slot_date <= today:
            next_earliest = new_date + timedelta(days=config.RESUME_SESSION_SPACING_DAYS)
        booking.slot_date = new_date
        booking.status = 'scheduled'
        # Flush so the next overlap check sees this placement.
        db.flush()
        restored.append(booking)

    db.commit()
    return restored, unplaced


def resume_enrollment(
    db: Session,
    enrollment_id: int,
    *,
    triggered_by: str = 'parent',
    today: date | None = None,
) -> ResumeResult:
    today = today or date.today()
    enrollment = get_enrollment(db, enrollment_id)

    if not enrollment.is_paused:
        return ResumeResult(enrollment=enrollment, applied=False)

    pause_start = enrollment.pause_start_date or today
    actual_pause_days = max(0, (today - pause_start).days)
    if enrollment.pause_end_date is not None:
        actual_pause_days = min(actual_pause_days, (enrollment.pause_end_date - pause_start).days)
    actual_pause_days = min(actual_pause_days, remaining_pause_days(enrollment))
    early_resume = enrollment.pause_end_date is not None and today < enrollment.pause_end_date

    enrollment.total_pause_days = (enrollment.total_pause_days or 0) + actual_pause_days
    base_end_date = enrollment.original_end_date or enrollment.program_end_date
    if base_end_date is not None:
        enrollment.program_end_date = base_end_date + timedelta(days=enrollment.total_pause_days)

    original_pause_end = enrollment.pause_end_date
    enrollment.status = 'active'
    enrollment.is_paused = False
    enrollment.pause_start_date = None
    enrollment.pause_end_date = None
    enrollment.pause_reason = None

    log_enrollment_event(
        db,
        enrollment.id,
        'pause_ended',
        {
            'original_pause_end': original_pause_end.isoformat() if original_pause_end else None,
            'actual_pause_end': today.isoformat(),
            'actual_pause_days': actual_pause_days,
            'early_resume': early_resume,
            'new_end_date': enrollment.program_end_date.isoformat() if enrollment.program_end_date else None,
        },
        triggered_by,
    )
    db.commit()

    restored, unplaced = _restore_paused_bookings(db, enrollment.id, today)
    if unplaced:
        logger.warning(
            'resume_sessions_unplaced',
            extra={'enrollment_id': enrollment.id, 'booking_ids': [booking.id for booking in unplaced]},
        )

    logger.info('enrollment_resumed', extra={'enrollment_id': enrollment.id, 'actual_pause_days': actual_pause_days})
    return ResumeResult(
        enrollment=enrollment,
        applied=True,
        actual_pause_days=actual_pause_days,
        early_resume=early_resume,
        restored_bookings=restored,
        unplaced_bookings=unplaced,
    )


def activate_enrollment(
    db: Session,
    enrollment_id: int,
    *,
    triggered_by: str = 'system',
    today: date | None = None,
) -> ActivationResult:
    today = today or date.today()
    enrollment = get_enrollment(db, enrollment_id)

    if enrollment.status in ('active', 'paused'):
        return ActivationResult(enrollment=enrollment, applied=False, reason='Enrollment already started')

    if enrollment.status != 'pending_start':
        raise ConflictError(f'Cannot start an enrollment with status {enrollment.status}.')

    if enrollment.requested_start_date is not None and enrollment.requested_start_date > today:
        return ActivationResult(enrollment=enrollment, applied=False, reason='Requested start date not reached')

    weeks = enrollment.duration_weeks or config.DEFAULT_PROGRAM_WEEKS
    enrollment.status = 'active'
    enrollment.program_start_date = today
    if enrollment.program_end_date is None:
        enrollment.program_end_date = today + timedelta(weeks=weeks)

    log_enrollment_event(
        db,
        enrollment.id,
        'started',
        {
            'requested_start_date': enrollment.requested_start_date.isoformat() if enrollment.requested_start_date else None,
            'program_end_date': enrollment.program_end_date.isoformat(),
        },
        triggered_by,
    )
    db.commit()
    return ActivationResult(enrollment=enrollment, applied=True)


def complete_enrollment_if_finished(db: Session, enrollment_id: int) -> bool:
    enrollment = get_enrollment(db, enrollment_id)
    if enrollment.status not in ('active', 'paused'):
        return False

    statuses = [status for (status,) in db.query(Booking.status).filter(Booking.enrollment_id == enrollment_id).all()]
    if not statuses or 'completed' not in statuses:
        return False
    if any(status not in TERMINAL_BOOKING_STATUSES for status in statuses):
        return False

    enrollment.status = 'completed'
    enrollment.is_paused = False
    enrollment.pause_start_date = None
    enrollment.pause_end_date = None
    enrollment.pause_reason = None
    log_enrollment_event(db, enrollment.id, 'completed', {'sessions': len(statuses)}, 'system')
    db.commit()
    return True


def due_delayed_starts(db: Session, today: date) -> list[int]:
    return [
        enrollment_id
        for (enrollment_id,) in db.query(Enrollment.id).filter(
            Enrollment.status == 'pending_start',
            Enrollment.requested_start_date <= today,
        ).all()
    ]


def due_pause_endings(db: Session, today: date) -> list[int]:
    return [
        enrollment_id
        for (enrollment_id,) in db.query(Enrollment.id).filter(
            Enrollment.is_paused.is_(True),
            Enrollment.pause_end_date <= today,
        ).all()
    ]
