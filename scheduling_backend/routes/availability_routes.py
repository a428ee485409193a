from datetime import date, datetime, time

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from scheduling_backend.auth.dependencies import get_optional_user
from scheduling_backend.core import config
from scheduling_backend.models.availability import AvailabilityRule
from scheduling_backend.models.coach import Coach
from scheduling_backend.models.user import User
from scheduling_backend.routes.common import database_unavailable, ensure_database_ready, get_db
from scheduling_backend.scheduling.errors import SchedulingError, to_http_exception
from scheduling_backend.scheduling.rate_limit import check_rate_limit, resolve_client_key, set_rate_headers
from scheduling_backend.scheduling.slots import (
    COACHING_AGE_DURATIONS,
    DEFAULT_COACHING_DURATION,
    FIXED_SESSION_DURATIONS,
    SESSION_TYPES,
    SlotQueryResponse,
    get_slots,
)

router = APIRouter(tags=['availability'])

SLOTS_RATE_LIMIT_BUCKET = 'availability_slots'


class SessionTypeOptionResponse(BaseModel):
    session_type: str
    duration_minutes: int
    age_durations: dict[str, int] | None = None


class AvailabilityRuleResponse(BaseModel):
    id: int
    coach_id: int
    scope: str
    kind: str
    day_of_week: int | None = None
    specific_date: date | None = None
    start_time: time
    end_time: time
    is_active: bool

    class Config:
        from_attributes = True


def enforce_slots_rate_limit(request: Request, response: Response, db: Session, user: User | None) -> None:
    if not config.RATE_LIMIT_ENABLED:
        return

    now = datetime.now()
    decision = check_rate_limit(db, SLOTS_RATE_LIMIT_BUCKET, resolve_client_key(request, user), now=now)
    set_rate_headers(response, decision, now)
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail='Too many availability requests. Please try again shortly.',
            headers={'Retry-After': str(decision.retry_after_seconds(now))},
        )


@router.get('/slots', response_model=SlotQueryResponse)
def list_available_slots(
    request: Request,
    response: Response,
    provider_id: int | None = Query(default=None),
    days: int | None = Query(default=None),
    session_type: str = Query(default='discovery'),
    client_age: int | None = Query(default=None, ge=1, le=21),
    db: Session = Depends(get_db),
    user: User | None = Depends(get_optional_user),
):
    ensure_database_ready()

    try:
        enforce_slots_rate_limit(request, response, db, user)
        return get_slots(db, coach_id=provider_id, days=days, session_type=session_type, client_age=client_age)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/session-types', response_model=list[SessionTypeOptionResponse])
def list_session_types():
    options = []
    for session_type in SESSION_TYPES:
        if session_type == 'coaching':
            options.append(
                SessionTypeOptionResponse(
                    session_type=session_type,
                    duration_minutes=DEFAULT_COACHING_DURATION,
                    age_durations={
                        f'{min_age}-{max_age}': duration
                        for min_age, max_age, duration in COACHING_AGE_DURATIONS
                    },
                )
            )
        else:
            options.append(
                SessionTypeOptionResponse(
                    session_type=session_type,
                    duration_minutes=FIXED_SESSION_DURATIONS[session_type],
                )
            )
    return options


@router.get('/rules/{provider_id}', response_model=list[AvailabilityRuleResponse])
def list_provider_rules(provider_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        coach = db.query(Coach).filter(Coach.id == provider_id).first()
        if coach is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Coach not found.',
            )

        return db.query(AvailabilityRule).filter(
            AvailabilityRule.coach_id == provider_id,
            AvailabilityRule.is_active.is_(True),
        ).order_by(
            AvailabilityRule.scope.asc(),
            AvailabilityRule.day_of_week.asc(),
            AvailabilityRule.specific_date.asc(),
            AvailabilityRule.start_time.asc(),
        ).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc
