import logging
from dataclasses import dataclass
from datetime import date, datetime, time

from sqlalchemy.orm import Session

from scheduling_backend.core import config
from scheduling_backend.models.booking import Booking
from scheduling_backend.models.enrollment import Enrollment
from scheduling_backend.scheduling.errors import ConflictError, NotFoundError, ValidationError
from scheduling_backend.scheduling.holds import find_active_hold, find_overlapping_booking
from scheduling_backend.scheduling.slots import parse_time
from scheduling_backend.scheduling.timeline import (
    PauseResult,
    apply_auto_pause,
    complete_enrollment_if_finished,
    log_enrollment_event,
)

logger = logging.getLogger(__name__)

RESCHEDULABLE_STATUSES = ('scheduled', 'confirmed', 'rescheduled', 'pending_scheduling')
# sessions waiting for a manual placement
UNPLACED_STATUSES = ('rescheduled', 'pending_scheduling')


@dataclass
class SessionChange:
    booking: Booking
    applied: bool
    previous_date: date | None = None
    previous_time: time | None = None
    enrollment_completed: bool = False


@dataclass
class NoShowResult:
    booking: Booking
    applied: bool
    consecutive_no_shows: int = 0
    total_no_shows: int = 0
    at_risk: bool = False
    auto_pause: PauseResult | None = None


def get_booking(db: Session, session_id: int) -> Booking:
    booking = db.query(Booking).filter(Booking.id == session_id).first()
    if booking is None:
        raise NotFoundError('Session not found.')
    return booking


def _get_booking_enrollment(db: Session, booking: Booking) -> Enrollment | None:
    if booking.enrollment_id is None:
        return None
    return db.query(Enrollment).filter(Enrollment.id == booking.enrollment_id).first()


def cancel_session(db: Session, session_id: int, reason: str | None = None, cancelled_by: str | None = None) -> SessionChange:
    booking = get_booking(db, session_id)

    if booking.status == 'completed':
        raise ConflictError('Cannot cancel a completed session.')
    if booking.status == 'cancelled':
        return SessionChange(booking=booking, applied=False)

    booking.status = 'cancelled'
    booking.needs_attention = False
    booking.notes = reason
    if booking.enrollment_id is not None:
        log_enrollment_event(
            db,
            booking.enrollment_id,
            'session_cancelled',
            {'session_id': booking.id, 'reason': reason},
            cancelled_by or 'system',
        )
    db.commit()

    logger.info('session_cancelled', extra={'session_id': booking.id, 'cancelled_by': cancelled_by})
    return SessionChange(booking=booking, applied=True)


def reschedule_session(
    db: Session,
    session_id: int,
    new_date: date,
    new_time: time | str,
    *,
    now: datetime | None = None,
) -> SessionChange:
    now = now or datetime.now()
    booking = get_booking(db, session_id)
    target_time = parse_time(new_time)

    if booking.status not in RESCHEDULABLE_STATUSES:
        raise ConflictError(f'Cannot reschedule a session with status {booking.status}.')

    if datetime.combine(new_date, target_time) < now:
        raise ValidationError('Sessions cannot be moved into the past.')

    if new_date.weekday() in config.NON_WORKING_WEEKDAYS:
        raise ValidationError('Sessions cannot be moved to a non-working day.')

    if booking.slot_date == new_date and booking.slot_time == target_time and booking.status not in UNPLACED_STATUSES:
        return SessionChange(booking=booking, applied=False)

    if find_overlapping_booking(
        db, booking.coach_id, new_date, target_time, booking.duration_minutes, exclude_booking_id=booking.id
    ):
        raise ConflictError('This slot is already booked.')

    hold = find_active_hold(db, booking.coach_id, new_date, target_time, now=now)
    if hold is not None and hold.client_email != booking.client_email:
        raise ConflictError('This slot is currently being booked by someone else. Please try a different time.')

    previous_date, previous_time = booking.slot_date, booking.slot_time
    booking.slot_date = new_date
    booking.slot_time = target_time
    booking.status = 'scheduled'
    booking.needs_attention = False
    booking.attention_reason = None
    db.commit()

    logger.info('session_rescheduled', extra={'session_id': booking.id, 'new_date': str(new_date)})
    return SessionChange(booking=booking, applied=True, previous_date=previous_date, previous_time=previous_time)


def complete_session(db: Session, session_id: int) -> SessionChange:
    booking = get_booking(db, session_id)

    if booking.status == 'completed':
        return SessionChange(booking=booking, applied=False)
    if booking.status in ('cancelled', 'no_show'):
        raise ConflictError(f'Cannot complete a session with status {booking.status}.')

    booking.status = 'completed'
    enrollment = _get_booking_enrollment(db, booking)
    if enrollment is not None:
        enrollment.consecutive_no_shows = 0
    db.commit()

    enrollment_completed = False
    if enrollment is not None:
        enrollment_completed = complete_enrollment_if_finished(db, enrollment.id)

    return SessionChange(booking=booking, applied=True, enrollment_completed=enrollment_completed)


def mark_no_show(db: Session, session_id: int, today: date | None = None) -> NoShowResult:
    today = today or date.today()
    booking = get_booking(db, session_id)

    if booking.status == 'no_show':
        return NoShowResult(booking=booking, applied=False)
    if booking.status in ('cancelled', 'completed'):
        raise ConflictError(f'Cannot mark a session with status {booking.status} as no-show.')

    booking.status = 'no_show'
    enrollment = _get_booking_enrollment(db, booking)
    if enrollment is None:
        db.commit()
        return NoShowResult(booking=booking, applied=True)

    enrollment.consecutive_no_shows = (enrollment.consecutive_no_shows or 0) + 1
    enrollment.total_no_shows = (enrollment.total_no_shows or 0) + 1

    became_at_risk = False
    if enrollment.consecutive_no_shows >= config.NO_SHOW_AT_RISK_THRESHOLD and not enrollment.at_risk:
        enrollment.at_risk = True
        enrollment.at_risk_reason = f'{enrollment.consecutive_no_shows} consecutive no-shows'
        became_at_risk = True

    log_enrollment_event(
        db,
        enrollment.id,
        'no_show',
        {
            'session_id': booking.id,
            'consecutive_no_shows': enrollment.consecutive_no_shows,
            'total_no_shows': enrollment.total_no_shows,
        },
        'system',
    )
    db.commit()

    if became_at_risk:
        logger.warning('enrollment_at_risk', extra={'enrollment_id': enrollment.id})

    auto_pause = None
    if enrollment.total_no_shows >= config.NO_SHOW_AUTO_PAUSE_THRESHOLD:
        auto_pause = apply_auto_pause(db, enrollment, today)

    return NoShowResult(
        booking=booking,
        applied=True,
        consecutive_no_shows=enrollment.consecutive_no_shows,
        total_no_shows=enrollment.total_no_shows,
        at_risk=bool(enrollment.at_risk),
        auto_pause=auto_pause,
    )
