"""Coach availability changes and the rebooking they cause.

How a coach's absence is absorbed depends on its length:

* up to ``UNAVAILABILITY_BACKUP_DAYS``: sessions move to the first free day
  after the coach returns, at the same time;
* up to ``UNAVAILABILITY_REASSIGN_DAYS``: sessions in the window go to a
  backup coach and come back when the coach is available again;
* longer absences and exits: enrollments move to the backup coach for good.

The backup is the active coach with the fewest open enrollments. Sessions
that cannot be placed without overlapping another booking are flagged with
``needs_attention`` instead of being double booked. When no backup exists the
coach change is still applied and every affected session is flagged, with the
reason reported in ``ProviderChange.warning``.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from scheduling_backend.core import config
from scheduling_backend.models.booking import ACTIVE_BOOKING_STATUSES, Booking
from scheduling_backend.models.coach import Coach, CoachReassignment
from scheduling_backend.models.enrollment import Enrollment
from scheduling_backend.scheduling.errors import NotFoundError, ValidationError
from scheduling_backend.scheduling.holds import find_overlapping_booking
from scheduling_backend.scheduling.timeline import first_free_date, log_enrollment_event

logger = logging.getLogger(__name__)

OPEN_ENROLLMENT_STATUSES = ('pending_start', 'active', 'paused')
STRATEGY_RESCHEDULE = 'reschedule'
STRATEGY_TEMPORARY = 'temporary_reassignment'
STRATEGY_PERMANENT = 'permanent_reassignment'
STRATEGY_MANUAL = 'manual_attention'
NO_BACKUP_WARNING = 'No backup coach available. Affected sessions were flagged for attention.'


@dataclass
class ProviderChange:
    coach_id: int
    applied: bool
    strategy: str | None = None
    backup_coach_id: int | None = None
    rescheduled_bookings: list[Booking] = field(default_factory=list)
    reassigned_bookings: list[Booking] = field(default_factory=list)
    flagged_bookings: list[Booking] = field(default_factory=list)
    enrollment_ids: list[int] = field(default_factory=list)
    warning: str | None = None


def get_coach(db: Session, coach_id: int) -> Coach:
    coach = db.query(Coach).filter(Coach.id == coach_id).first()
    if coach is None:
        raise NotFoundError('Coach not found.')
    return coach


def find_backup_coach(db: Session, exclude_coach_id: int) -> Coach | None:
    open_counts = dict(
        db.query(Enrollment.coach_id, func.count(Enrollment.id))
        .filter(Enrollment.status.in_(OPEN_ENROLLMENT_STATUSES))
        .group_by(Enrollment.coach_id)
        .all()
    )
    candidates = db.query(Coach).filter(
        Coach.id != exclude_coach_id,
        Coach.is_active.is_(True),
        Coach.is_available.is_(True),
        Coach.exit_status.is_(None),
    ).order_by(Coach.id.asc()).all()

    if not candidates:
        return None
    return min(candidates, key=lambda coach: open_counts.get(coach.id, 0))


def _flag(booking: Booking, reason: str, change: ProviderChange) -> None:
    booking.needs_attention = True
    booking.attention_reason = reason
    change.flagged_bookings.append(booking)


def _move_to_coach(db: Session, booking: Booking, coach_id: int, change: ProviderChange) -> None:
    if find_overlapping_booking(
        db, coach_id, booking.slot_date, booking.slot_time, booking.duration_minutes, exclude_booking_id=booking.id
    ):
        _flag(booking, f'Coach {coach_id} is already booked at this time', change)
        return
    booking.coach_id = coach_id
    db.flush()
    change.reassigned_bookings.append(booking)


def _affected_bookings(db: Session, coach_id: int, start_date: date, end_date: date | None = None) -> list[Booking]:
    query = db.query(Booking).filter(
        Booking.coach_id == coach_id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.slot_date >= start_date,
    )
    if end_date is not None:
        query = query.filter(Booking.slot_date <= end_date)
    return query.order_by(Booking.slot_date.asc(), Booking.slot_time.asc()).all()


def _record_reassignment(
    db: Session,
    enrollment_id: int,
    original_coach_id: int,
    new_coach_id: int,
    reason: str,
    *,
    is_temporary: bool,
    start_date: date,
    expected_end_date: date | None = None,
) -> None:
    db.add(
        CoachReassignment(
            enrollment_id=enrollment_id,
            original_coach_id=original_coach_id,
            new_coach_id=new_coach_id,
            reason=reason,
            is_temporary=is_temporary,
            start_date=start_date,
            expected_end_date=expected_end_date,
        )
    )
    log_enrollment_event(
        db,
        enrollment_id,
        'coach_reassigned',
        {
            'from_coach_id': original_coach_id,
            'to_coach_id': new_coach_id,
            'temporary': is_temporary,
            'reason': reason,
        },
        'system',
    )


def _reassign_permanently(
    db: Session,
    coach_id: int,
    backup: Coach,
    reason: str,
    today: date,
    change: ProviderChange,
    enrollment_ids: set[int] | None = None,
) -> None:
    """Move open enrollments and their future sessions to ``backup``.

    With ``enrollment_ids`` only those enrollments move; otherwise every open
    enrollment of the coach does.
    """
    query = db.query(Enrollment).filter(
        Enrollment.coach_id == coach_id,
        Enrollment.status.in_(OPEN_ENROLLMENT_STATUSES),
    )
    if enrollment_ids is not None:
        query = query.filter(Enrollment.id.in_(enrollment_ids))
    for enrollment in query.all():
        enrollment.coach_id = backup.id
        _record_reassignment(db, enrollment.id, coach_id, backup.id, reason, is_temporary=False, start_date=today)
        change.enrollment_ids.append(enrollment.id)

    for booking in _affected_bookings(db, coach_id, today):
        if enrollment_ids is None or booking.enrollment_id in enrollment_ids:
            _move_to_coach(db, booking, backup.id, change)


def process_unavailability(
    db: Session,
    coach_id: int,
    start_date: date,
    end_date: date,
    reason: str | None = None,
    *,
    today: date | None = None,
) -> ProviderChange:
    today = today or date.today()
    if end_date < start_date:
        raise ValidationError('End date must not be before start date.')

    coach = get_coach(db, coach_id)
    change = ProviderChange(coach_id=coach_id, applied=False)
    affected = _affected_bookings(db, coach_id, start_date, end_date)
    was_available = bool(coach.is_available)
    coach.is_available = False

    if not affected:
        db.commit()
        change.applied = was_available
        return change

    reason = reason or 'coach_unavailable'
    duration_days = (end_date - start_date).days
    change.applied = True

    if duration_days <= config.UNAVAILABILITY_BACKUP_DAYS:
        change.strategy = STRATEGY_RESCHEDULE
        earliest = end_date + timedelta(days=1)
        for booking in affected:
            new_date = first_free_date(db, booking, max(earliest, today + timedelta(days=1)))
            if new_date is None:
                _flag(booking, 'No free day after coach return', change)
                continue
            booking.slot_date = new_date
            db.flush()
            change.rescheduled_bookings.append(booking)
        db.commit()
        logger.info(
            'coach_unavailability_rescheduled',
            extra={'coach_id': coach_id, 'sessions': len(change.rescheduled_bookings)},
        )
        return change

    backup = find_backup_coach(db, coach_id)
    if backup is None:
        change.strategy = STRATEGY_MANUAL
        change.warning = NO_BACKUP_WARNING
        for booking in affected:
            _flag(booking, 'No backup coach available', change)
        db.commit()
        logger.warning('coach_backup_missing', extra={'coach_id': coach_id, 'sessions': len(affected)})
        return change

    change.backup_coach_id = backup.id

    if duration_days <= config.UNAVAILABILITY_REASSIGN_DAYS:
        change.strategy = STRATEGY_TEMPORARY
        enrollment_ids = sorted({booking.enrollment_id for booking in affected if booking.enrollment_id is not None})
        for enrollment_id in enrollment_ids:
            _record_reassignment(
                db,
                enrollment_id,
                coach_id,
                backup.id,
                reason,
                is_temporary=True,
                start_date=start_date,
                expected_end_date=end_date,
            )
        change.enrollment_ids = enrollment_ids
        for booking in affected:
            _move_to_coach(db, booking, backup.id, change)
    else:
        change.strategy = STRATEGY_PERMANENT
        affected_enrollments = {booking.enrollment_id for booking in affected if booking.enrollment_id is not None}
        _reassign_permanently(db, coach_id, backup, reason, today, change, affected_enrollments)
        for booking in affected:
            if booking.enrollment_id is None:
                _move_to_coach(db, booking, backup.id, change)

    db.commit()
    logger.info(
        'coach_unavailability_reassigned',
        extra={'coach_id': coach_id, 'backup_coach_id': backup.id, 'strategy': change.strategy},
    )
    return change


def process_coach_return(db: Session, coach_id: int, *, today: date | None = None) -> ProviderChange:
    """Make the coach bookable again and take back temporarily reassigned sessions."""
    today = today or date.today()
    coach = get_coach(db, coach_id)
    change = ProviderChange(coach_id=coach_id, applied=False, strategy=STRATEGY_TEMPORARY)

    open_reassignments = db.query(CoachReassignment).filter(
        CoachReassignment.original_coach_id == coach_id,
        CoachReassignment.is_temporary.is_(True),
        CoachReassignment.actual_end_date.is_(None),
    ).all()

    if coach.is_available and not open_reassignments:
        return change

    coach.is_available = True
    change.applied = True

    for reassignment in open_reassignments:
        bookings = db.query(Booking).filter(
            Booking.enrollment_id == reassignment.enrollment_id,
            Booking.coach_id == reassignment.new_coach_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            Booking.slot_date >= today,
        ).all()
        for booking in bookings:
            _move_to_coach(db, booking, coach_id, change)
        reassignment.actual_end_date = today
        change.enrollment_ids.append(reassignment.enrollment_id)
        log_enrollment_event(
            db,
            reassignment.enrollment_id,
            'coach_returned',
            {'coach_id': coach_id, 'from_coach_id': reassignment.new_coach_id},
            'system',
        )

    db.commit()
    logger.info('coach_returned', extra={'coach_id': coach_id, 'sessions': len(change.reassigned_bookings)})
    return change


def process_coach_exit(db: Session, coach_id: int, reason: str | None = None, *, today: date | None = None) -> ProviderChange:
    today = today or date.today()
    coach = get_coach(db, coach_id)
    change = ProviderChange(coach_id=coach_id, applied=False, strategy=STRATEGY_PERMANENT)

    has_open_work = db.query(Enrollment.id).filter(
        Enrollment.coach_id == coach_id,
        Enrollment.status.in_(OPEN_ENROLLMENT_STATUSES),
    ).first() is not None or bool(_affected_bookings(db, coach_id, today))

    if coach.exit_status == 'exited' and not has_open_work:
        return change

    coach.exit_status = 'exited'
    coach.is_active = False
    coach.is_available = False
    change.applied = True

    if not has_open_work:
        db.commit()
        return change

    backup = find_backup_coach(db, coach_id)
    if backup is None:
        change.strategy = STRATEGY_MANUAL
        change.warning = NO_BACKUP_WARNING
        for booking in _affected_bookings(db, coach_id, today):
            _flag(booking, 'Coach exited and no backup coach is available', change)
        db.commit()
        logger.warning('coach_backup_missing', extra={'coach_id': coach_id})
        return change

    change.backup_coach_id = backup.id
    _reassign_permanently(db, coach_id, backup, reason or 'coach_exit', today, change)
    db.commit()

    logger.info('coach_exited', extra={'coach_id': coach_id, 'backup_coach_id': backup.id})
    return change
