"""Slot holds and the booking-conflict guard.

A hold claims one (coach, date, time) key between "slot shown" and "booking
confirmed". The ``uq_slot_holds_key`` unique constraint is the only thing that
stops two concurrent clients from claiming the same key: placement deletes
expired rows for the key and inserts in one transaction, and whichever insert
loses the race gets an ``IntegrityError``. No read-then-write check is relied
on for exclusivity.

Stores without unique constraints or conditional writes have to simulate
this, for example with a version column per key and optimistic retry.

Expiry is lazy: readers compare ``expires_at`` with the clock, and
``compact_expired_holds`` only reclaims storage.
"""

import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scheduling_backend.core import config
from scheduling_backend.models.booking import ACTIVE_BOOKING_STATUSES, Booking
from scheduling_backend.models.coach import Coach
from scheduling_backend.models.hold import SlotHold
from scheduling_backend.scheduling.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from scheduling_backend.scheduling.slots import get_session_duration, parse_time, to_minutes

logger = logging.getLogger(__name__)

MAX_HOLD_TTL_SECONDS = 900


def find_overlapping_booking(
    db: Session,
    coach_id: int,
    slot_date: date,
    slot_time: time | str,
    duration_minutes: int,
    exclude_booking_id: int | None = None,
) -> Booking | None:
    start_minutes = to_minutes(slot_time)
    end_minutes = start_minutes + duration_minutes

    query = db.query(Booking).filter(
        Booking.coach_id == coach_id,
        Booking.slot_date == slot_date,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
    )
    if exclude_booking_id is not None:
        query = query.filter(Booking.id != exclude_booking_id)

    for booking in query.all():
        booked_start = to_minutes(booking.slot_time)
        booked_end = booked_start + (booking.duration_minutes or 0)
        if booked_start < end_minutes and booked_end > start_minutes:
            return booking

    return None


def find_active_hold(db: Session, coach_id: int, slot_date: date, slot_time: time | str, now: datetime | None = None) -> SlotHold | None:
    now = now or datetime.now()
    return db.query(SlotHold).filter(
        SlotHold.coach_id == coach_id,
        SlotHold.slot_date == slot_date,
        SlotHold.slot_time == parse_time(slot_time),
        SlotHold.expires_at > now,
    ).first()


def get_hold(db: Session, hold_id: int, now: datetime | None = None) -> SlotHold | None:
    """Return the hold if it exists and has not expired."""
    now = now or datetime.now()
    hold = db.query(SlotHold).filter(SlotHold.id == hold_id).first()
    if hold is None or hold.expires_at <= now:
        return None
    return hold


def place_hold(
    db: Session,
    coach_id: int,
    slot_date: date,
    slot_time: time | str,
    *,
    session_type: str = 'discovery',
    duration_minutes: int | None = None,
    client_email: str | None = None,
    client_age: int | None = None,
    ttl_seconds: int | None = None,
    now: datetime | None = None,
) -> SlotHold:
    now = now or datetime.now()
    ttl = ttl_seconds if ttl_seconds is not None else config.HOLD_TTL_SECONDS
    if ttl <= 0 or ttl > MAX_HOLD_TTL_SECONDS:
        raise ValidationError(f'Hold TTL must be between 1 and {MAX_HOLD_TTL_SECONDS} seconds.')

    held_time = parse_time(slot_time)
    if slot_date < now.date():
        raise ValidationError('Slots in the past cannot be held.')

    coach = db.query(Coach).filter(Coach.id == coach_id, Coach.is_active.is_(True)).first()
    if coach is None:
        raise NotFoundError('Coach not found.')

    duration = duration_minutes or get_session_duration(session_type, client_age)
    if find_overlapping_booking(db, coach_id, slot_date, held_time, duration):
        raise ConflictError('This slot is already booked.')

    expires_at = now + timedelta(seconds=ttl)
    key_filter = (
        SlotHold.coach_id == coach_id,
        SlotHold.slot_date == slot_date,
        SlotHold.slot_time == held_time,
    )

    db.query(SlotHold).filter(*key_filter, SlotHold.expires_at <= now).delete(synchronize_session=False)

    if client_email:
        extended = db.query(SlotHold).filter(
            *key_filter,
            SlotHold.client_email == client_email,
            SlotHold.expires_at > now,
        ).update({SlotHold.expires_at: expires_at}, synchronize_session=False)
        if extended:
            db.commit()
            logger.info('hold_extended', extra={'coach_id': coach_id, 'slot_date': str(slot_date)})
            return db.query(SlotHold).filter(*key_filter).one()

    hold = SlotHold(
        coach_id=coach_id,
        slot_date=slot_date,
        slot_time=held_time,
        session_type=session_type,
        duration_minutes=duration,
        client_email=client_email,
        expires_at=expires_at,
    )
    db.add(hold)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(
            'This slot is currently being booked by someone else. Please try a different time.'
        ) from exc

    db.refresh(hold)
    logger.info('hold_placed', extra={'hold_id': hold.id, 'coach_id': coach_id, 'slot_date': str(slot_date)})
    return hold


def _load_owned_hold(db: Session, hold_id: int, client_email: str | None) -> SlotHold:
    hold = db.query(SlotHold).filter(SlotHold.id == hold_id).first()
    if hold is None:
        raise NotFoundError('Hold not found.')
    if hold.client_email and hold.client_email != client_email:
        raise ForbiddenError('This hold belongs to another client.')
    return hold


def release_hold(db: Session, hold_id: int, client_email: str | None = None) -> None:
    hold = _load_owned_hold(db, hold_id, client_email)
    db.delete(hold)
    db.commit()
    logger.info('hold_released', extra={'hold_id': hold_id})


def confirm_hold(
    db: Session,
    hold_id: int,
    *,
    client_email: str | None = None,
    enrollment_id: int | None = None,
    calendar_event_id: str | None = None,
    video_bot_id: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """Turn an unexpired hold into a booking and drop the hold in one commit."""
    now = now or datetime.now()
    hold = _load_owned_hold(db, hold_id, client_email)
    if hold.expires_at <= now:
        raise ConflictError('This hold has expired. Please select the slot again.')

    conflict = find_overlapping_booking(db, hold.coach_id, hold.slot_date, hold.slot_time, hold.duration_minutes)
    if conflict:
        raise ConflictError('This slot is already booked.')

    booking = Booking(
        coach_id=hold.coach_id,
        enrollment_id=enrollment_id,
        client_email=client_email or hold.client_email,
        session_type=hold.session_type,
        slot_date=hold.slot_date,
        slot_time=hold.slot_time,
        duration_minutes=hold.duration_minutes,
        status='scheduled',
        calendar_event_id=calendar_event_id,
        video_bot_id=video_bot_id,
    )
    db.add(booking)
    db.delete(hold)
    db.commit()
    db.refresh(booking)

    logger.info('hold_confirmed', extra={'hold_id': hold_id, 'booking_id': booking.id})
    return booking


def compact_expired_holds(db: Session, now: datetime | None = None) -> int:
    now = now or datetime.now()
    removed = db.query(SlotHold).filter(SlotHold.expires_at <= now).delete(synchronize_session=False)
    db.commit()
    return removed
