"""Scheduling orchestrator.

``dispatch`` is the single entry point for lifecycle events. It checks the
event against an allow-list, validates the payload for that event, runs the
handler and returns a ``DispatchResult`` instead of raising:

* ``applied`` - state changed;
* ``noop`` - the event was already applied (re-pause with the same window,
  second cancel, resume of an active enrollment ...);
* ``rejected`` - unknown event, invalid payload or a domain rule refused it;
* ``failed`` - the database was unavailable. The message is generic and the
  ``correlation_id`` ties it to the logged traceback.

Calendar and video-bot calls only happen here, after the state change has
been committed. Their failures are logged with the operation and entity id
and reported under ``data['external_failures']``; they never undo the
committed change.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, field_validator
from pydantic import ValidationError as PayloadValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scheduling_backend.integrations.calendar import CalendarClient
from scheduling_backend.integrations.video_bot import VideoBotClient
from scheduling_backend.models.booking import Booking
from scheduling_backend.scheduling import providers, session_plan, sessions, timeline
from scheduling_backend.scheduling.errors import (
    ExternalCollaboratorError,
    InfrastructureError,
    SchedulingError,
    new_correlation_id,
)
from scheduling_backend.scheduling.slots import normalize_time

logger = logging.getLogger(__name__)

OUTCOME_APPLIED = 'applied'
OUTCOME_NOOP = 'noop'
OUTCOME_REJECTED = 'rejected'
OUTCOME_FAILED = 'failed'


class SchedulingEvent(str, Enum):
    ENROLLMENT_CREATED = 'enrollment.created'
    ENROLLMENT_PAUSED = 'enrollment.paused'
    ENROLLMENT_RESUMED = 'enrollment.resumed'
    ENROLLMENT_DELAYED_START_ACTIVATED = 'enrollment.delayed_start_activated'
    COACH_UNAVAILABLE = 'coach.unavailable'
    COACH_AVAILABLE = 'coach.available'
    COACH_EXIT = 'coach.exit'
    SESSION_RESCHEDULE = 'session.reschedule'
    SESSION_CANCEL = 'session.cancel'
    SESSION_COMPLETED = 'session.completed'
    SESSION_NO_SHOW = 'session.no_show'


class EnrollmentPayload(BaseModel):
    enrollment_id: int


class EnrollmentPausedPayload(BaseModel):
    enrollment_id: int
    pause_start_date: date
    pause_end_date: date
    pause_reason: str


class EnrollmentResumedPayload(BaseModel):
    enrollment_id: int


class CoachUnavailablePayload(BaseModel):
    coach_id: int
    start_date: date
    end_date: date
    reason: str | None = None


class CoachPayload(BaseModel):
    coach_id: int
    reason: str | None = None


class SessionPayload(BaseModel):
    session_id: int


class SessionReschedulePayload(BaseModel):
    session_id: int
    new_date: date
    new_time: str

    @field_validator('new_time')
    @classmethod
    def validate_new_time(cls, value: str) -> str:
        try:
            return normalize_time(value)
        except SchedulingError as exc:
            raise ValueError(exc.message) from exc


class SessionCancelPayload(BaseModel):
    session_id: int
    reason: str | None = None
    cancelled_by: str | None = None


class DispatchResult(BaseModel):
    success: bool
    event: str
    outcome: str
    data: dict[str, Any] = {}
    error: str | None = None
    error_type: str | None = None
    correlation_id: str


@dataclass
class DispatchContext:
    db: Session
    actor: str
    calendar: CalendarClient
    video_bot: VideoBotClient
    now: datetime
    correlation_id: str

    @property
    def today(self) -> date:
        return self.now.date()


Handler = Callable[[DispatchContext, BaseModel], tuple[str, dict[str, Any]]]
HANDLERS: dict[SchedulingEvent, tuple[type[BaseModel], Handler]] = {}


def handles(*events: SchedulingEvent, payload: type[BaseModel]):
    def register(handler: Handler) -> Handler:
        for event in events:
            HANDLERS[event] = (payload, handler)
        return handler

    return register


def _outcome(applied: bool) -> str:
    return OUTCOME_APPLIED if applied else OUTCOME_NOOP


def _log_external_failure(ctx: DispatchContext, exc: ExternalCollaboratorError, booking: Booking) -> dict[str, Any]:
    logger.warning(
        'external_call_failed',
        extra={
            'operation': exc.operation,
            'entity_id': exc.entity_id,
            'booking_id': booking.id,
            'correlation_id': ctx.correlation_id,
        },
    )
    return {'operation': exc.operation, 'entity_id': exc.entity_id, 'session_id': booking.id}


def _cancel_external(ctx: DispatchContext, bookings: list[Booking], notify: bool = True) -> list[dict[str, Any]]:
    """Cancel calendar events and recorder bots; ids are cleared once cancelled."""
    failures = []
    for booking in bookings:
        if booking.calendar_event_id:
            try:
                ctx.calendar.cancel_event(booking.calendar_event_id, notify=notify)
                booking.calendar_event_id = None
            except ExternalCollaboratorError as exc:
                failures.append(_log_external_failure(ctx, exc, booking))
        if booking.video_bot_id:
            try:
                ctx.video_bot.cancel_bot(booking.video_bot_id)
                booking.video_bot_id = None
            except ExternalCollaboratorError as exc:
                failures.append(_log_external_failure(ctx, exc, booking))
    ctx.db.commit()
    return failures


def _reschedule_external(ctx: DispatchContext, bookings: list[Booking]) -> list[dict[str, Any]]:
    failures = []
    for booking in bookings:
        if not booking.calendar_event_id:
            continue
        try:
            ctx.calendar.reschedule_event(
                booking.calendar_event_id,
                datetime.combine(booking.slot_date, booking.slot_time),
                booking.duration_minutes,
            )
        except ExternalCollaboratorError as exc:
            failures.append(_log_external_failure(ctx, exc, booking))
    return failures


def _enrollment_data(enrollment) -> dict[str, Any]:
    return {
        'enrollment_id': enrollment.id,
        'status': enrollment.status,
        'program_start_date': enrollment.program_start_date,
        'program_end_date': enrollment.program_end_date,
    }


@handles(
    SchedulingEvent.ENROLLMENT_CREATED,
    SchedulingEvent.ENROLLMENT_DELAYED_START_ACTIVATED,
    payload=EnrollmentPayload,
)
def handle_enrollment_start(ctx: DispatchContext, payload: EnrollmentPayload):
    result = timeline.activate_enrollment(ctx.db, payload.enrollment_id, triggered_by=ctx.actor, today=ctx.today)
    data = _enrollment_data(result.enrollment)
    if result.reason:
        data['reason'] = result.reason
    if result.enrollment.status != 'active':
        return _outcome(result.applied), data

    # no-op once the enrollment has sessions
    plan = session_plan.schedule_enrollment_sessions(ctx.db, result.enrollment.id, triggered_by=ctx.actor, now=ctx.now)
    data.update({
        'sessions_created': len(plan.sessions),
        'session_ids': [planned.booking.id for planned in plan.sessions],
        'match_types': [planned.match_type for planned in plan.sessions],
        'needs_attention_session_ids': [booking.id for booking in plan.manual_required],
    })
    return _outcome(result.applied or plan.applied), data


@handles(SchedulingEvent.ENROLLMENT_PAUSED, payload=EnrollmentPausedPayload)
def handle_enrollment_paused(ctx: DispatchContext, payload: EnrollmentPausedPayload):
    result = timeline.pause_enrollment(
        ctx.db,
        payload.enrollment_id,
        payload.pause_start_date,
        payload.pause_end_date,
        payload.pause_reason,
        triggered_by=ctx.actor,
        now=ctx.now,
    )
    data = _enrollment_data(result.enrollment)
    data.update({
        'pause_days': result.pause_days,
        'remaining_pause_days': timeline.remaining_pause_days(result.enrollment),
        'affected_sessions': len(result.affected_bookings),
        'external_failures': _cancel_external(ctx, result.affected_bookings) if result.applied else [],
    })
    return _outcome(result.applied), data


@handles(SchedulingEvent.ENROLLMENT_RESUMED, payload=EnrollmentResumedPayload)
def handle_enrollment_resumed(ctx: DispatchContext, payload: EnrollmentResumedPayload):
    result = timeline.resume_enrollment(ctx.db, payload.enrollment_id, triggered_by=ctx.actor, today=ctx.today)
    data = _enrollment_data(result.enrollment)
    data.update({
        'actual_pause_days': result.actual_pause_days,
        'early_resume': result.early_resume,
        'total_pause_days': result.enrollment.total_pause_days or 0,
        'restored_session_ids': [booking.id for booking in result.restored_bookings],
        'needs_attention_session_ids': [booking.id for booking in result.unplaced_bookings],
    })
    return _outcome(result.applied), data


def _provider_data(change: providers.ProviderChange) -> dict[str, Any]:
    return {
        'coach_id': change.coach_id,
        'strategy': change.strategy,
        'backup_coach_id': change.backup_coach_id,
        'rescheduled_session_ids': [booking.id for booking in change.rescheduled_bookings],
        'reassigned_session_ids': [booking.id for booking in change.reassigned_bookings],
        'needs_attention_session_ids': [booking.id for booking in change.flagged_bookings],
        'enrollment_ids': change.enrollment_ids,
        'warning': change.warning,
    }


@handles(SchedulingEvent.COACH_UNAVAILABLE, payload=CoachUnavailablePayload)
def handle_coach_unavailable(ctx: DispatchContext, payload: CoachUnavailablePayload):
    change = providers.process_unavailability(
        ctx.db,
        payload.coach_id,
        payload.start_date,
        payload.end_date,
        payload.reason,
        today=ctx.today,
    )
    data = _provider_data(change)
    data['external_failures'] = _reschedule_external(ctx, change.rescheduled_bookings)
    return _outcome(change.applied), data


@handles(SchedulingEvent.COACH_AVAILABLE, payload=CoachPayload)
def handle_coach_available(ctx: DispatchContext, payload: CoachPayload):
    change = providers.process_coach_return(ctx.db, payload.coach_id, today=ctx.today)
    return _outcome(change.applied), _provider_data(change)


@handles(SchedulingEvent.COACH_EXIT, payload=CoachPayload)
def handle_coach_exit(ctx: DispatchContext, payload: CoachPayload):
    change = providers.process_coach_exit(ctx.db, payload.coach_id, payload.reason, today=ctx.today)
    return _outcome(change.applied), _provider_data(change)


@handles(SchedulingEvent.SESSION_RESCHEDULE, payload=SessionReschedulePayload)
def handle_session_reschedule(ctx: DispatchContext, payload: SessionReschedulePayload):
    change = sessions.reschedule_session(ctx.db, payload.session_id, payload.new_date, payload.new_time, now=ctx.now)
    data = {
        'session_id': change.booking.id,
        'slot_date': change.booking.slot_date,
        'slot_time': normalize_time(change.booking.slot_time),
        'external_failures': _reschedule_external(ctx, [change.booking]) if change.applied else [],
    }
    return _outcome(change.applied), data


@handles(SchedulingEvent.SESSION_CANCEL, payload=SessionCancelPayload)
def handle_session_cancel(ctx: DispatchContext, payload: SessionCancelPayload):
    change = sessions.cancel_session(ctx.db, payload.session_id, payload.reason, payload.cancelled_by or ctx.actor)
    data = {
        'session_id': change.booking.id,
        'status': change.booking.status,
        'external_failures': _cancel_external(ctx, [change.booking]) if change.applied else [],
    }
    return _outcome(change.applied), data


@handles(SchedulingEvent.SESSION_COMPLETED, payload=SessionPayload)
def handle_session_completed(ctx: DispatchContext, payload: SessionPayload):
    change = sessions.complete_session(ctx.db, payload.session_id)
    return _outcome(change.applied), {
        'session_id': change.booking.id,
        'status': change.booking.status,
        'enrollment_completed': change.enrollment_completed,
    }


@handles(SchedulingEvent.SESSION_NO_SHOW, payload=SessionPayload)
def handle_session_no_show(ctx: DispatchContext, payload: SessionPayload):
    result = sessions.mark_no_show(ctx.db, payload.session_id, today=ctx.today)
    auto_paused = result.auto_pause is not None and result.auto_pause.applied
    data = {
        'session_id': result.booking.id,
        'status': result.booking.status,
        'consecutive_no_shows': result.consecutive_no_shows,
        'total_no_shows': result.total_no_shows,
        'at_risk': result.at_risk,
        'auto_paused': auto_paused,
        'external_failures': _cancel_external(ctx, result.auto_pause.affected_bookings) if auto_paused else [],
    }
    return _outcome(result.applied), data


def _payload_error_message(exc: PayloadValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = '.'.join(str(part) for part in error['loc'])
        problems.append(f'{location}: {error["msg"]}' if location else error['msg'])
    return 'Invalid payload. ' + '; '.join(problems)


def dispatch(
    db: Session,
    event: str,
    payload: dict[str, Any] | None,
    *,
    actor: str = 'system',
    calendar: CalendarClient | None = None,
    video_bot: VideoBotClient | None = None,
    now: datetime | None = None,
) -> DispatchResult:
    correlation_id = new_correlation_id()

    try:
        event_type = SchedulingEvent(event)
    except ValueError:
        logger.warning('dispatch_unknown_event', extra={'event': event, 'correlation_id': correlation_id})
        return DispatchResult(
            success=False,
            event=str(event),
            outcome=OUTCOME_REJECTED,
            error=f'Unknown event: {event}',
            error_type='UnknownEvent',
            correlation_id=correlation_id,
        )

    payload_model, handler = HANDLERS[event_type]
    try:
        parsed = payload_model.model_validate(payload or {})
    except PayloadValidationError as exc:
        return DispatchResult(
            success=False,
            event=event_type.value,
            outcome=OUTCOME_REJECTED,
            error=_payload_error_message(exc),
            error_type='PayloadValidationError',
            correlation_id=correlation_id,
        )

    ctx = DispatchContext(
        db=db,
        actor=actor,
        calendar=calendar or CalendarClient(),
        video_bot=video_bot or VideoBotClient(),
        now=now or datetime.now(),
        correlation_id=correlation_id,
    )

    try:
        outcome, data = handler(ctx, parsed)
    except SchedulingError as exc:
        db.rollback()
        logger.info(
            'dispatch_rejected',
            extra={'event': event_type.value, 'error': exc.message, 'correlation_id': correlation_id},
        )
        return DispatchResult(
            success=False,
            event=event_type.value,
            outcome=OUTCOME_REJECTED,
            error=exc.message,
            error_type=type(exc).__name__,
            correlation_id=correlation_id,
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception('dispatch_failed', extra={'event': event_type.value, 'correlation_id': correlation_id})
        error = InfrastructureError(correlation_id=correlation_id)
        return DispatchResult(
            success=False,
            event=event_type.value,
            outcome=OUTCOME_FAILED,
            error=error.message,
            error_type=type(error).__name__,
            correlation_id=correlation_id,
        )

    logger.info(
        'dispatch_completed',
        extra={'event': event_type.value, 'outcome': outcome, 'correlation_id': correlation_id},
    )
    return DispatchResult(
        success=True,
        event=event_type.value,
        outcome=outcome,
        data=data,
        correlation_id=correlation_id,
    )
