from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scheduling_backend.auth.dependencies import ROLE_ADMIN, ROLE_COACH, require_coach_or_admin
from scheduling_backend.integrations.calendar import CalendarClient
from scheduling_backend.integrations.video_bot import VideoBotClient
from scheduling_backend.models.booking import Booking
from scheduling_backend.models.user import User
from scheduling_backend.routes.common import (
    database_unavailable,
    ensure_database_ready,
    get_calendar_client,
    get_db,
    get_video_bot_client,
)
from scheduling_backend.scheduling.orchestrator import OUTCOME_FAILED, DispatchResult, dispatch

router = APIRouter(tags=['scheduling'])

COACH_SCOPED_PREFIXES = ('coach.', 'session.')


class DispatchRequest(BaseModel):
    event: str
    payload: dict[str, Any] = {}

    @field_validator('event')
    @classmethod
    def validate_event(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Event is required.')
        return normalized


def resolve_event_coach_id(db: Session, event: str, payload: dict[str, Any]) -> int | None:
    """The coach an event acts on, used to scope coach callers to their own calendar."""
    if event.startswith('coach.'):
        coach_id = payload.get('coach_id')
        return coach_id if isinstance(coach_id, int) else None

    session_id = payload.get('session_id')
    if not isinstance(session_id, int):
        return None
    booking = db.query(Booking).filter(Booking.id == session_id).first()
    return booking.coach_id if booking else None


def authorize_dispatch(db: Session, user: User, event: str, payload: dict[str, Any]) -> None:
    if user.role == ROLE_ADMIN:
        return

    if user.role == ROLE_COACH and event.startswith(COACH_SCOPED_PREFIXES):
        if user.coach_id is not None and resolve_event_coach_id(db, event, payload) == user.coach_id:
            return
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Coaches can only dispatch events for their own schedule.',
        )

    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail='Admin access required for this event.',
    )


@router.post('/dispatch', response_model=DispatchResult)
def dispatch_event(
    data: DispatchRequest,
    response: Response,
    db: Session = Depends(get_db),
    user: User = Depends(require_coach_or_admin),
    calendar: CalendarClient = Depends(get_calendar_client),
    video_bot: VideoBotClient = Depends(get_video_bot_client),
):
    ensure_database_ready()

    try:
        authorize_dispatch(db, user, data.event, data.payload)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    result = dispatch(
        db,
        data.event,
        data.payload,
        actor=f'{user.role}:{user.email}',
        calendar=calendar,
        video_bot=video_bot,
    )
    if result.outcome == OUTCOME_FAILED:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result
