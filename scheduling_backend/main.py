import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from scheduling_backend.core import config
from scheduling_backend.database import Base, engine, ensure_booking_schema, ensure_enrollment_schema, ensure_hold_schema
from scheduling_backend.models import availability, booking, coach, enrollment, hold, rate_limit, user  # noqa: F401
from scheduling_backend.routes import availability_routes, dispatch_routes, enrollment_routes, hold_routes
from scheduling_backend.scheduling.errors import SchedulingError, to_http_exception

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_booking_schema()
        ensure_hold_schema()
        ensure_enrollment_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and Postgres credentials.')


@app.exception_handler(SchedulingError)
def handle_scheduling_error(request: Request, exc: SchedulingError) -> JSONResponse:
    http_exception = to_http_exception(exc)
    return JSONResponse(status_code=http_exception.status_code, content={'detail': http_exception.detail})


@app.get('/')
def root():
    return {'status': 'Scheduling API Running'}


app.include_router(availability_routes.router, prefix='/availability')
app.include_router(hold_routes.router, prefix='/scheduling')
app.include_router(dispatch_routes.router, prefix='/scheduling')
app.include_router(enrollment_routes.router, prefix='/enrollments')
