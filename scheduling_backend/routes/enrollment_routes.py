from datetime import date
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scheduling_backend.auth.dependencies import ROLE_ADMIN, ROLE_COACH, ROLE_PARENT, get_current_user
from scheduling_backend.integrations.calendar import CalendarClient
from scheduling_backend.integrations.video_bot import VideoBotClient
from scheduling_backend.models.enrollment import Enrollment
from scheduling_backend.models.user import User
from scheduling_backend.routes.common import (
    database_unavailable,
    ensure_database_ready,
    get_calendar_client,
    get_db,
    get_video_bot_client,
)
from scheduling_backend.scheduling.orchestrator import (
    OUTCOME_FAILED,
    OUTCOME_REJECTED,
    DispatchResult,
    SchedulingEvent,
    dispatch,
)
from scheduling_backend.scheduling.timeline import PAUSE_REASONS, get_pause_status

router = APIRouter(tags=['enrollments'])

REJECTION_STATUS_CODES = {
    'ValidationError': status.HTTP_400_BAD_REQUEST,
    'PayloadValidationError': status.HTTP_400_BAD_REQUEST,
    'ConflictError': status.HTTP_409_CONFLICT,
    'NotFoundError': status.HTTP_404_NOT_FOUND,
    'ForbiddenError': status.HTTP_403_FORBIDDEN,
}


class CurrentPauseResponse(BaseModel):
    start_date: date | None = None
    end_date: date | None = None
    reason: str | None = None


class PauseStatusResponse(BaseModel):
    enrollment_id: int
    status: str
    is_paused: bool
    current_pause: CurrentPauseResponse | None = None
    total_pause_days_used: int
    remaining_pause_days: int
    max_single_pause: int
    pause_count: int
    remaining_pauses: int
    can_pause: bool
    program_end_date: date | None = None
    original_end_date: date | None = None


class PauseActionRequest(BaseModel):
    enrollment_id: int
    action: Literal['pause', 'resume', 'early_resume']
    pause_start_date: date | None = None
    pause_end_date: date | None = None
    pause_reason: str | None = None

    @field_validator('pause_reason')
    @classmethod
    def validate_pause_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in PAUSE_REASONS:
            raise ValueError(f'Pause reason must be one of: {", ".join(PAUSE_REASONS)}.')
        return normalized

    @model_validator(mode='after')
    def validate_pause_fields(self):
        if self.action == 'pause' and (
            self.pause_start_date is None or self.pause_end_date is None or self.pause_reason is None
        ):
            raise ValueError('Start date, end date, and reason are required to pause.')
        return self


def load_enrollment_for_user(db: Session, enrollment_id: int, user: User) -> Enrollment:
    enrollment = db.query(Enrollment).filter(Enrollment.id == enrollment_id).first()
    if enrollment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Enrollment not found.',
        )

    allowed = (
        user.role == ROLE_ADMIN
        or (user.role == ROLE_COACH and user.coach_id is not None and user.coach_id == enrollment.coach_id)
        or (user.role == ROLE_PARENT and (user.email or '').lower() == (enrollment.client_email or '').lower())
    )
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='You do not have access to this enrollment.',
        )
    return enrollment


def raise_for_dispatch_result(result: DispatchResult) -> None:
    if result.outcome == OUTCOME_FAILED:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={'message': result.error, 'correlation_id': result.correlation_id},
        )
    if result.outcome == OUTCOME_REJECTED:
        raise HTTPException(
            status_code=REJECTION_STATUS_CODES.get(result.error_type, status.HTTP_400_BAD_REQUEST),
            detail=result.error,
        )


@router.get('/{enrollment_id}/pause', response_model=PauseStatusResponse)
def read_pause_status(
    enrollment_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    ensure_database_ready()

    try:
        enrollment = load_enrollment_for_user(db, enrollment_id, user)
        return get_pause_status(enrollment)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.post('/pause', response_model=DispatchResult)
def update_pause(
    data: PauseActionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    calendar: CalendarClient = Depends(get_calendar_client),
    video_bot: VideoBotClient = Depends(get_video_bot_client),
):
    ensure_database_ready()

    try:
        load_enrollment_for_user(db, data.enrollment_id, user)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if data.action == 'pause':
        event = SchedulingEvent.ENROLLMENT_PAUSED
        payload = {
            'enrollment_id': data.enrollment_id,
            'pause_start_date': data.pause_start_date,
            'pause_end_date': data.pause_end_date,
            'pause_reason': data.pause_reason,
        }
    else:
        event = SchedulingEvent.ENROLLMENT_RESUMED
        payload = {'enrollment_id': data.enrollment_id}

    result = dispatch(
        db,
        event.value,
        payload,
        actor=f'{user.role}:{user.email}',
        calendar=calendar,
        video_bot=video_bot,
    )
    raise_for_dispatch_result(result)
    return result
