from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scheduling_backend.routes.common import database_unavailable, ensure_database_ready, get_db
from scheduling_backend.scheduling.errors import SchedulingError, to_http_exception
from scheduling_backend.scheduling.holds import confirm_hold, find_active_hold, get_hold, place_hold, release_hold
from scheduling_backend.scheduling.slots import SESSION_TYPES, normalize_time

router = APIRouter(tags=['holds'])


def normalize_email(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    return normalized or None


class CreateHoldRequest(BaseModel):
    provider_id: int
    date: date
    time: str
    session_type: str = 'discovery'
    client_email: str | None = None
    client_age: int | None = Field(default=None, ge=1, le=21)
    ttl_seconds: int | None = None

    @field_validator('time')
    @classmethod
    def validate_time(cls, value: str) -> str:
        try:
            return normalize_time(value)
        except SchedulingError as exc:
            raise ValueError(exc.message) from exc

    @field_validator('session_type')
    @classmethod
    def validate_session_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SESSION_TYPES:
            raise ValueError('Invalid session type.')
        return normalized

    @field_validator('client_email')
    @classmethod
    def validate_client_email(cls, value: str | None) -> str | None:
        return normalize_email(value)


class ConfirmHoldRequest(BaseModel):
    client_email: str | None = None
    enrollment_id: int | None = None
    calendar_event_id: str | None = None
    video_bot_id: str | None = None

    @field_validator('client_email')
    @classmethod
    def validate_client_email(cls, value: str | None) -> str | None:
        return normalize_email(value)


class HoldResponse(BaseModel):
    id: int
    coach_id: int
    slot_date: date
    slot_time: time
    session_type: str
    duration_minutes: int
    client_email: str | None = None
    expires_at: datetime

    class Config:
        from_attributes = True


class HoldLookupResponse(BaseModel):
    held: bool
    hold: HoldResponse | None = None


class BookingResponse(BaseModel):
    id: int
    coach_id: int
    enrollment_id: int | None = None
    client_email: str | None = None
    session_type: str
    slot_date: date
    slot_time: time
    duration_minutes: int
    status: str

    class Config:
        from_attributes = True


@router.post('/holds', response_model=HoldResponse, status_code=status.HTTP_201_CREATED)
def create_hold(data: CreateHoldRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return place_hold(
            db,
            data.provider_id,
            data.date,
            data.time,
            session_type=data.session_type,
            client_email=data.client_email,
            client_age=data.client_age,
            ttl_seconds=data.ttl_seconds,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/holds/{hold_id}', response_model=HoldResponse)
def read_hold(hold_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        hold = get_hold(db, hold_id)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if hold is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Hold not found.',
        )
    return hold


@router.get('/holds', response_model=HoldLookupResponse)
def lookup_hold(
    provider_id: int = Query(...),
    slot_date: date = Query(..., alias='date'),
    slot_time: str = Query(..., alias='time'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        hold = find_active_hold(db, provider_id, slot_date, slot_time)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return HoldLookupResponse(
        held=hold is not None,
        hold=HoldResponse.model_validate(hold) if hold is not None else None,
    )


@router.delete('/holds/{hold_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_hold(
    hold_id: int,
    client_email: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        release_hold(db, hold_id, normalize_email(client_email))
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.post('/holds/{hold_id}/confirm', response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def confirm_hold_booking(hold_id: int, data: ConfirmHoldRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        return confirm_hold(
            db,
            hold_id,
            client_email=data.client_email,
            enrollment_id=data.enrollment_id,
            calendar_event_id=data.calendar_event_id,
            video_bot_id=data.video_bot_id,
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
