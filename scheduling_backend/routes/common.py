import logging

from fastapi import HTTPException
from sqlalchemy.exc import SQLAlchemyError

from scheduling_backend.database import SessionLocal, ensure_booking_schema, ensure_enrollment_schema, ensure_hold_schema
from scheduling_backend.integrations.calendar import CalendarClient
from scheduling_backend.integrations.video_bot import VideoBotClient
from scheduling_backend.scheduling.errors import InfrastructureError, to_http_exception

logger = logging.getLogger(__name__)

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable. Verify DATABASE_URL and Postgres credentials.'


def database_unavailable() -> HTTPException:
    """503 for the ``SQLAlchemyError`` being handled, tagged with a correlation id.

    Call from inside the ``except`` block so the traceback is logged.
    """
    error = InfrastructureError(DATABASE_UNAVAILABLE_DETAIL)
    logger.exception('database_unavailable', extra={'correlation_id': error.correlation_id})
    return to_http_exception(error)


def ensure_database_ready() -> None:
    try:
        ensure_booking_schema()
        ensure_hold_schema()
        ensure_enrollment_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_calendar_client() -> CalendarClient:
    return CalendarClient()


def get_video_bot_client() -> VideoBotClient:
    return VideoBotClient()
