"""Initial session plan for an enrollment that has just started.

Each program length has fixed weeks for coaching sessions and parent
check-ins. For every planned week the coach's free slots are searched in this
order:

1. preferred weekday inside the preferred time bucket,
2. preferred weekday at any time,
3. preferred time bucket on any day of the week,
4. any free slot that week,
5. any free slot the following week.

After the first placement each session first tries the weekday and bucket of
the previous one, so a client keeps a steady slot where the calendar allows.
Weeks with no free slot get a ``pending_scheduling`` session flagged with
``needs_attention`` for manual placement.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import NamedTuple

from sqlalchemy.orm import Session

from scheduling_backend.core import config
from scheduling_backend.models.booking import Booking
from scheduling_backend.models.enrollment import Enrollment
from scheduling_backend.scheduling.errors import ConflictError
from scheduling_backend.scheduling.slots import (
    TIME_BUCKETS,
    BlockedSlots,
    SlotResponse,
    generate_coach_slots,
    get_blocked_slots,
    get_bucket_name,
    get_session_duration,
    load_coach_rules,
    parse_time,
    to_minutes,
)
from scheduling_backend.scheduling.timeline import get_enrollment, log_enrollment_event

logger = logging.getLogger(__name__)

PENDING_SCHEDULING_STATUS = 'pending_scheduling'
DEFAULT_PREFERRED_BUCKET = 'evening'
PLACEHOLDER_TIME = time(10, 0)

MATCH_EXACT = 'exact_match'
MATCH_PREFERRED_DAY = 'preferred_day'
MATCH_PREFERRED_TIME = 'preferred_time'
MATCH_ANY_IN_WEEK = 'any_in_week'
MATCH_SHIFTED_WEEK = 'shifted_week'
MATCH_MANUAL = 'manual_required'


class PlanSchedule(NamedTuple):
    coaching_weeks: tuple[int, ...]
    checkin_weeks: tuple[int, ...]


# keyed by program length in weeks
PLAN_SCHEDULES = {
    4: PlanSchedule(coaching_weeks=(1, 2), checkin_weeks=(4,)),
    8: PlanSchedule(coaching_weeks=(1, 2, 5, 6), checkin_weeks=(4, 8)),
    12: PlanSchedule(coaching_weeks=(1, 2, 5, 6, 9, 10), checkin_weeks=(4, 8, 12)),
}


@dataclass
class PlannedSession:
    booking: Booking
    week_number: int
    match_type: str


@dataclass
class SessionPlanResult:
    enrollment: Enrollment
    applied: bool
    sessions: list[PlannedSession] = field(default_factory=list)

    @property
    def manual_required(self) -> list[Booking]:
        return [planned.booking for planned in self.sessions if planned.match_type == MATCH_MANUAL]


def get_plan_schedule(duration_weeks: int | None) -> PlanSchedule:
    """Plan for the longest program that fits in ``duration_weeks``."""
    weeks = duration_weeks or config.DEFAULT_PROGRAM_WEEKS
    fitting = [length for length in PLAN_SCHEDULES if length <= weeks]
    return PLAN_SCHEDULES[max(fitting)] if fitting else PLAN_SCHEDULES[min(PLAN_SCHEDULES)]


def _preferred_bucket(value: str | None) -> str:
    names = {name for name, _, _, _ in TIME_BUCKETS}
    normalized = (value or '').strip().lower()
    return normalized if normalized in names else DEFAULT_PREFERRED_BUCKET


def find_slot_in_week(
    slots: list[SlotResponse],
    week_start: date,
    bucket: str,
    preferred_day: int | None,
) -> tuple[SlotResponse | None, str]:
    """Best free slot for the week starting at ``week_start`` and how it matched."""
    week_end = week_start + timedelta(days=6)
    in_week = [slot for slot in slots if week_start <= slot.date <= week_end]

    if preferred_day is not None:
        on_day = [slot for slot in in_week if slot.date.weekday() == preferred_day]
        for slot in on_day:
            if slot.bucket_name == bucket:
                return slot, MATCH_EXACT
        if on_day:
            return on_day[0], MATCH_PREFERRED_DAY

    for slot in in_week:
        if slot.bucket_name == bucket:
            return slot, MATCH_PREFERRED_TIME
    if in_week:
        return in_week[0], MATCH_ANY_IN_WEEK

    next_week_end = week_end + timedelta(days=7)
    for slot in slots:
        if week_end < slot.date <= next_week_end:
            return slot, MATCH_SHIFTED_WEEK

    return None, MATCH_MANUAL


def _free_slots(slots: list[SlotResponse], blocked: BlockedSlots, coach_id: int, duration_minutes: int) -> list[SlotResponse]:
    return [
        slot for slot in slots
        if not blocked.is_blocked(coach_id, slot.date, to_minutes(slot.time), duration_minutes)
    ]


def _place_sessions(
    db: Session,
    enrollment: Enrollment,
    session_type: str,
    weeks: tuple[int, ...],
    rules: list,
    blocked: BlockedSlots,
    horizon_days: int,
    now: datetime,
) -> list[PlannedSession]:
    duration = get_session_duration(session_type, enrollment.client_age)
    start = enrollment.program_start_date
    candidates = [
        slot
        for slot in generate_coach_slots(enrollment.coach_id, rules, start, horizon_days, duration, blocked, now)
        if slot.available
    ]
    bucket = _preferred_bucket(enrollment.preferred_time)
    planned: list[PlannedSession] = []
    previous: SlotResponse | None = None

    for week in weeks:
        week_start = start + timedelta(weeks=week - 1)
        free = _free_slots(candidates, blocked, enrollment.coach_id, duration)

        slot, match_type = None, MATCH_MANUAL
        if previous is not None:
            slot, match_type = find_slot_in_week(
                free, week_start, get_bucket_name(to_minutes(previous.time) // 60), previous.date.weekday()
            )
            if match_type not in (MATCH_EXACT, MATCH_PREFERRED_TIME):
                slot = None
        if slot is None:
            slot, match_type = find_slot_in_week(free, week_start, bucket, enrollment.preferred_day)

        booking = Booking(
            coach_id=enrollment.coach_id,
            enrollment_id=enrollment.id,
            client_email=enrollment.client_email,
            session_type=session_type,
            duration_minutes=duration,
            week_number=week,
        )
        if slot is None:
            booking.slot_date = week_start
            booking.slot_time = PLACEHOLDER_TIME
            booking.status = PENDING_SCHEDULING_STATUS
            booking.needs_attention = True
            booking.attention_reason = f'No free slot in week {week}'
        else:
            booking.slot_date = slot.date
            booking.slot_time = parse_time(slot.time)
            booking.status = 'scheduled'
            booking.needs_attention = False
            blocked.add_booking(enrollment.coach_id, slot.date, slot.time, duration)
            previous = slot

        db.add(booking)
        planned.append(PlannedSession(booking=booking, week_number=week, match_type=match_type))

    return planned


def schedule_enrollment_sessions(
    db: Session,
    enrollment_id: int,
    *,
    triggered_by: str = 'system',
    now: datetime | None = None,
) -> SessionPlanResult:
    now = now or datetime.now()
    enrollment = get_enrollment(db, enrollment_id)

    if enrollment.status != 'active':
        raise ConflictError('Sessions can only be planned for active enrollments.')
    if db.query(Booking.id).filter(Booking.enrollment_id == enrollment.id).first() is not None:
        return SessionPlanResult(enrollment=enrollment, applied=False)

    plan = get_plan_schedule(enrollment.duration_weeks)
    start = enrollment.program_start_date or now.date()
    enrollment.program_start_date = start
    last_week = max(plan.coaching_weeks + plan.checkin_weeks)
    horizon_days = (last_week + 1) * 7

    rules = load_coach_rules(db, enrollment.coach_id)
    blocked = get_blocked_slots(db, [enrollment.coach_id], start, start + timedelta(days=horizon_days), now)

    sessions = _place_sessions(db, enrollment, 'coaching', plan.coaching_weeks, rules, blocked, horizon_days, now)
    sessions += _place_sessions(db, enrollment, 'parent_checkin', plan.checkin_weeks, rules, blocked, horizon_days, now)
    sessions.sort(key=lambda planned: (planned.week_number, planned.booking.session_type != 'coaching'))
    for number, planned in enumerate(sessions, start=1):
        planned.booking.session_number = number

    result = SessionPlanResult(enrollment=enrollment, applied=True, sessions=sessions)
    log_enrollment_event(
        db,
        enrollment.id,
        'sessions_planned',
        {'sessions': len(sessions), 'manual_required': len(result.manual_required)},
        triggered_by,
    )
    db.commit()

    logger.info(
        'enrollment_sessions_planned',
        extra={
            'enrollment_id': enrollment.id,
            'coach_id': enrollment.coach_id,
            'sessions': len(sessions),
            'manual_required': len(result.manual_required),
        },
    )
    return result
