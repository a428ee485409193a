"""Slot generation and multi-coach availability aggregation.

A coach's bookable slots are derived from three stores: the coach's active
availability rules, the booking ledger and the hold table. Rules produce
candidate windows on a fixed grid; bookings and unexpired holds mark
candidates as blocked. For provider-agnostic bookings (discovery calls) the
per-coach candidates are unioned on (date, time) so a slot is shown when any
coach can take it.

All clock arithmetic is done in whole minutes since midnight on
timezone-naive coach-local dates.
"""

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Iterable, NamedTuple

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scheduling_backend.core import config
from scheduling_backend.models.availability import (
    KIND_AVAILABLE,
    KIND_UNAVAILABLE,
    SCOPE_DATE_SPECIFIC,
    SCOPE_WEEKLY,
    AvailabilityRule,
    Weekday,
)
from scheduling_backend.models.booking import ACTIVE_BOOKING_STATUSES, Booking
from scheduling_backend.models.coach import Coach
from scheduling_backend.models.hold import SlotHold
from scheduling_backend.scheduling.errors import ValidationError

logger = logging.getLogger(__name__)

SESSION_TYPES = ('discovery', 'coaching', 'parent_checkin', 'group')
FIXED_SESSION_DURATIONS = {
    'discovery': 30,
    'parent_checkin': 30,
    'group': 45,
}
# (min_age, max_age, minutes), inclusive bounds
COACHING_AGE_DURATIONS = (
    (4, 6, 30),
    (7, 9, 45),
    (10, 12, 60),
)
DEFAULT_COACHING_DURATION = 45

TIME_BUCKETS = (
    ('early_morning', 'Early Morning', 6, 9),
    ('morning', 'Morning', 9, 12),
    ('afternoon', 'Afternoon', 12, 16),
    ('evening', 'Evening', 16, 20),
    ('night', 'Night', 20, 22),
)


class RuleWindow(NamedTuple):
    start_minutes: int
    end_minutes: int


class SlotResponse(BaseModel):
    date: date
    time: str
    end_time: str
    starts_at: str
    available: bool
    bucket_name: str
    coach_ids: list[int] = []


class TimeBucketResponse(BaseModel):
    name: str
    display_name: str
    start_hour: int
    end_hour: int
    total_slots: int


class SlotSummaryResponse(BaseModel):
    total_slots: int
    total_available: int
    coaches: int
    recommended_bucket: str | None = None
    rules_count: int = 0


class SlotQueryResponse(BaseModel):
    slots: list[SlotResponse]
    slots_by_bucket: list[TimeBucketResponse]
    slots_by_date: dict[str, list[SlotResponse]]
    duration_minutes: int
    summary: SlotSummaryResponse
    message: str | None = None


def to_minutes(value: time | str) -> int:
    """Minutes since midnight for a ``time`` or an ``HH:MM[:SS]`` string."""
    if isinstance(value, time):
        return value.hour * 60 + value.minute

    parts = value.strip().split(':')
    if len(parts) < 2:
        raise ValidationError(f'Invalid time value: {value!r}.')
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise ValidationError(f'Invalid time value: {value!r}.') from exc
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValidationError(f'Invalid time value: {value!r}.')
    return hours * 60 + minutes


def format_minutes(minutes: int) -> str:
    return f'{minutes // 60:02d}:{minutes % 60:02d}'


def normalize_time(value: time | str) -> str:
    return format_minutes(to_minutes(value))


def parse_time(value: time | str) -> time:
    minutes = to_minutes(value)
    return time(minutes // 60, minutes % 60)


def get_session_duration(session_type: str, client_age: int | None = None) -> int:
    normalized = (session_type or '').strip().lower()
    if normalized not in SESSION_TYPES:
        raise ValidationError('Invalid session type.')

    if normalized == 'coaching':
        if client_age is None:
            return DEFAULT_COACHING_DURATION
        for min_age, max_age, minutes in COACHING_AGE_DURATIONS:
            if min_age <= client_age <= max_age:
                return minutes
        return DEFAULT_COACHING_DURATION

    return FIXED_SESSION_DURATIONS[normalized]


def get_bucket_name(hour: int) -> str:
    for name, _, start_hour, end_hour in TIME_BUCKETS:
        if start_hour <= hour < end_hour:
            return name
    if hour < TIME_BUCKETS[0][2]:
        return TIME_BUCKETS[0][0]
    return TIME_BUCKETS[-1][0]


def rule_weekday(rule: AvailabilityRule) -> Weekday | None:
    try:
        return Weekday(rule.day_of_week)
    except (TypeError, ValueError):
        logger.warning('availability_rule_invalid_weekday', extra={'rule_id': rule.id, 'day_of_week': rule.day_of_week})
        return None


def rule_window(rule: AvailabilityRule) -> RuleWindow | None:
    start_minutes = to_minutes(rule.start_time)
    end_minutes = to_minutes(rule.end_time)
    if end_minutes <= start_minutes:
        logger.warning('availability_rule_empty_window', extra={'rule_id': rule.id})
        return None
    return RuleWindow(start_minutes, end_minutes)


def default_window() -> RuleWindow:
    return RuleWindow(config.DEFAULT_START_HOUR * 60, config.DEFAULT_END_HOUR * 60)


def iterate_window_starts(window: RuleWindow, duration_minutes: int, grid_minutes: int | None = None) -> list[int]:
    """Grid-aligned start minutes whose whole session fits inside ``window``."""
    grid = grid_minutes or config.SLOT_GRID_MINUTES
    current = -(-window.start_minutes // grid) * grid
    starts: list[int] = []

    while current + duration_minutes <= window.end_minutes:
        starts.append(current)
        current += grid

    return starts


def collect_day_windows(rules: Iterable[AvailabilityRule]) -> tuple[dict[Weekday, list[RuleWindow]], set[date]]:
    weekly: dict[Weekday, list[RuleWindow]] = defaultdict(list)
    blocked_dates: set[date] = set()

    for rule in rules:
        if not rule.is_active:
            continue

        if rule.scope == SCOPE_DATE_SPECIFIC and rule.kind == KIND_UNAVAILABLE:
            if rule.specific_date is not None:
                blocked_dates.add(rule.specific_date)
            continue

        if rule.scope == SCOPE_WEEKLY and rule.kind == KIND_AVAILABLE:
            weekday = rule_weekday(rule)
            window = rule_window(rule)
            if weekday is not None and window is not None:
                weekly[weekday].append(window)

    return weekly, blocked_dates


class BlockedSlots:
    """Occupied time for a set of coaches: booked intervals and held start keys."""

    def __init__(self) -> None:
        self.booked: dict[tuple[int, date], list[RuleWindow]] = defaultdict(list)
        self.held: set[tuple[int, date, str]] = set()

    def add_booking(self, coach_id: int, slot_date: date, slot_time: time | str, duration_minutes: int) -> None:
        start = to_minutes(slot_time)
        self.booked[(coach_id, slot_date)].append(RuleWindow(start, start + max(duration_minutes or 0, 1)))

    def add_hold(self, coach_id: int, slot_date: date, slot_time: time | str) -> None:
        self.held.add((coach_id, slot_date, normalize_time(slot_time)))

    def is_blocked(self, coach_id: int, slot_date: date, start_minutes: int, duration_minutes: int) -> bool:
        if (coach_id, slot_date, format_minutes(start_minutes)) in self.held:
            return True
        end_minutes = start_minutes + duration_minutes
        return any(
            interval.start_minutes < end_minutes and interval.end_minutes > start_minutes
            for interval in self.booked.get((coach_id, slot_date), ())
        )

    def __len__(self) -> int:
        return sum(len(intervals) for intervals in self.booked.values()) + len(self.held)


def generate_coach_slots(
    coach_id: int,
    rules: Iterable[AvailabilityRule],
    start_date: date,
    days: int,
    duration_minutes: int,
    blocked: BlockedSlots,
    now: datetime,
) -> list[SlotResponse]:
    weekly, blocked_dates = collect_day_windows(rules)
    has_configured_schedule = bool(weekly)
    lead_cutoff = to_minutes(now.time()) + config.LEAD_TIME_MINUTES
    slots: dict[str, SlotResponse] = {}

    for offset in range(days):
        current_day = start_date + timedelta(days=offset)

        if current_day in blocked_dates:
            continue
        if current_day.weekday() in config.NON_WORKING_WEEKDAYS:
            continue

        if has_configured_schedule:
            windows = weekly.get(Weekday(current_day.weekday()), [])
        else:
            windows = [default_window()]

        for window in windows:
            for start_minutes in iterate_window_starts(window, duration_minutes):
                if current_day < now.date():
                    continue
                if current_day == now.date() and start_minutes <= lead_cutoff:
                    continue

                slot_time = format_minutes(start_minutes)
                starts_at = f'{current_day.isoformat()}T{slot_time}'
                if starts_at in slots:
                    continue
                slots[starts_at] = SlotResponse(
                    date=current_day,
                    time=slot_time,
                    end_time=format_minutes(start_minutes + duration_minutes),
                    starts_at=starts_at,
                    available=not blocked.is_blocked(coach_id, current_day, start_minutes, duration_minutes),
                    bucket_name=get_bucket_name(start_minutes // 60),
                    coach_ids=[coach_id],
                )

    return [slots[key] for key in sorted(slots)]


def get_eligible_coaches(db: Session, coach_id: int | None) -> list[Coach]:
    if coach_id is not None:
        coach = db.query(Coach).filter(Coach.id == coach_id, Coach.is_active.is_(True)).first()
        return [coach] if coach else []

    return db.query(Coach).filter(
        Coach.is_active.is_(True),
        Coach.is_available.is_(True),
        Coach.exit_status.is_(None),
    ).order_by(Coach.id.asc()).limit(config.MAX_PROVIDERS_PER_REQUEST).all()


def load_coach_rules(db: Session, coach_id: int) -> list[AvailabilityRule]:
    return db.query(AvailabilityRule).filter(
        AvailabilityRule.coach_id == coach_id,
        AvailabilityRule.is_active.is_(True),
    ).all()


def get_blocked_slots(db: Session, coach_ids: list[int], start_date: date, end_date: date, now: datetime) -> BlockedSlots:
    blocked = BlockedSlots()

    bookings = db.query(Booking.coach_id, Booking.slot_date, Booking.slot_time, Booking.duration_minutes).filter(
        Booking.coach_id.in_(coach_ids),
        Booking.slot_date >= start_date,
        Booking.slot_date <= end_date,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
    ).all()
    for coach_id, slot_date, slot_time, duration_minutes in bookings:
        blocked.add_booking(coach_id, slot_date, slot_time, duration_minutes)

    holds = db.query(SlotHold.coach_id, SlotHold.slot_date, SlotHold.slot_time).filter(
        SlotHold.coach_id.in_(coach_ids),
        SlotHold.slot_date >= start_date,
        SlotHold.slot_date <= end_date,
        SlotHold.expires_at > now,
    ).all()
    for coach_id, slot_date, slot_time in holds:
        blocked.add_hold(coach_id, slot_date, slot_time)

    return blocked


def empty_buckets() -> list[TimeBucketResponse]:
    return [
        TimeBucketResponse(name=name, display_name=display_name, start_hour=start_hour, end_hour=end_hour, total_slots=0)
        for name, display_name, start_hour, end_hour in TIME_BUCKETS
    ]


def merge_coach_slots(per_coach_slots: Iterable[list[SlotResponse]]) -> list[SlotResponse]:
    merged: dict[str, SlotResponse] = {}

    for coach_slots in per_coach_slots:
        for slot in coach_slots:
            existing = merged.get(slot.starts_at)
            if existing is None:
                merged[slot.starts_at] = slot.model_copy(
                    update={'coach_ids': list(slot.coach_ids) if slot.available else []}
                )
                continue
            if slot.available:
                existing.available = True
                existing.coach_ids.extend(slot.coach_ids)

    return sorted(merged.values(), key=lambda slot: slot.starts_at)


def group_slots(slots: list[SlotResponse]) -> tuple[list[TimeBucketResponse], dict[str, list[SlotResponse]]]:
    buckets = empty_buckets()
    counts: dict[str, int] = defaultdict(int)
    by_date: dict[str, list[SlotResponse]] = {}

    for slot in slots:
        by_date.setdefault(slot.date.isoformat(), []).append(slot)
        if slot.available:
            counts[slot.bucket_name] += 1

    for bucket in buckets:
        bucket.total_slots = counts[bucket.name]

    return buckets, by_date


def get_slots(
    db: Session,
    coach_id: int | None = None,
    days: int | None = None,
    session_type: str = 'discovery',
    client_age: int | None = None,
    now: datetime | None = None,
) -> SlotQueryResponse:
    """Bookable slots for one coach, or aggregated over all eligible coaches."""
    now = now or datetime.now()
    requested_days = days if days is not None else config.DEFAULT_SLOT_DAYS
    if requested_days < 1:
        raise ValidationError('Days must be at least 1.')
    horizon = min(requested_days, config.MAX_SLOT_DAYS)
    duration_minutes = get_session_duration(session_type, client_age)

    coaches = get_eligible_coaches(db, coach_id)
    if not coaches:
        return SlotQueryResponse(
            slots=[],
            slots_by_bucket=empty_buckets(),
            slots_by_date={},
            duration_minutes=duration_minutes,
            summary=SlotSummaryResponse(total_slots=0, total_available=0, coaches=0),
            message='No coaches available',
        )

    start_date = now.date()
    end_date = start_date + timedelta(days=horizon - 1)
    coach_ids = [coach.id for coach in coaches]
    blocked = get_blocked_slots(db, coach_ids, start_date, end_date, now)

    per_coach_slots: list[list[SlotResponse]] = []
    rules_count = 0
    coaches_used = 0
    for coach in coaches:
        try:
            rules = load_coach_rules(db, coach.id)
        except SQLAlchemyError:
            logger.exception('coach_rules_fetch_failed', extra={'coach_id': coach.id})
            db.rollback()
            continue

        rules_count += len(rules)
        coaches_used += 1
        per_coach_slots.append(
            generate_coach_slots(coach.id, rules, start_date, horizon, duration_minutes, blocked, now)
        )

    slots = merge_coach_slots(per_coach_slots)
    slots_by_bucket, slots_by_date = group_slots(slots)
    populated = [bucket for bucket in slots_by_bucket if bucket.total_slots > 0]
    recommended = max(populated, key=lambda bucket: bucket.total_slots).name if populated else None
    total_available = sum(1 for slot in slots if slot.available)

    logger.info(
        'slots_generated',
        extra={
            'coach_id': coach_id,
            'coaches': coaches_used,
            'days': horizon,
            'session_type': session_type,
            'total_slots': len(slots),
            'total_available': total_available,
            'blocked': len(blocked),
        },
    )

    return SlotQueryResponse(
        slots=slots,
        slots_by_bucket=slots_by_bucket,
        slots_by_date=slots_by_date,
        duration_minutes=duration_minutes,
        summary=SlotSummaryResponse(
            total_slots=len(slots),
            total_available=total_available,
            coaches=coaches_used,
            recommended_bucket=recommended,
            rules_count=rules_count,
        ),
        message=None if coaches_used else 'No coach schedules could be loaded',
    )
