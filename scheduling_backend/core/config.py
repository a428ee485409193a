import os



def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _get_int_set(value: str | None, default: frozenset[int]) -> frozenset[int]:
    if value is None:
        return default
    return frozenset(int(part) for part in value.split(",") if part.strip())

APP_ENV = os.getenv("APP_ENV", "development")

CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

# Slot generation
SLOT_GRID_MINUTES = _get_int(os.getenv("SLOT_GRID_MINUTES"), 30)
LEAD_TIME_MINUTES = _get_int(os.getenv("LEAD_TIME_MINUTES"), 30)
DEFAULT_SLOT_DAYS = _get_int(os.getenv("DEFAULT_SLOT_DAYS"), 14)
MAX_SLOT_DAYS = _get_int(os.getenv("MAX_SLOT_DAYS"), 30)
MAX_PROVIDERS_PER_REQUEST = _get_int(os.getenv("MAX_PROVIDERS_PER_REQUEST"), 50)
DEFAULT_START_HOUR = _get_int(os.getenv("DEFAULT_START_HOUR"), 9)
DEFAULT_END_HOUR = _get_int(os.getenv("DEFAULT_END_HOUR"), 19)
# Weekday numbers follow date.weekday(): 0 = Monday ... 6 = Sunday.
NON_WORKING_WEEKDAYS = _get_int_set(os.getenv("NON_WORKING_WEEKDAYS"), frozenset({6}))

# Holds
HOLD_TTL_SECONDS = _get_int(os.getenv("HOLD_TTL_SECONDS"), 300)

# Enrollment pause budget
MAX_PAUSE_COUNT = _get_int(os.getenv("MAX_PAUSE_COUNT"), 3)
MAX_PAUSE_DAYS_SINGLE = _get_int(os.getenv("MAX_PAUSE_DAYS_SINGLE"), 30)
MAX_PAUSE_DAYS_TOTAL = _get_int(os.getenv("MAX_PAUSE_DAYS_TOTAL"), 45)
MIN_NOTICE_HOURS = _get_int(os.getenv("MIN_NOTICE_HOURS"), 48)
DEFAULT_PROGRAM_WEEKS = _get_int(os.getenv("DEFAULT_PROGRAM_WEEKS"), 12)
RESUME_SESSION_SPACING_DAYS = _get_int(os.getenv("RESUME_SESSION_SPACING_DAYS"), 5)

# Provider absence handling, in days
UNAVAILABILITY_BACKUP_DAYS = _get_int(os.getenv("UNAVAILABILITY_BACKUP_DAYS"), 7)
UNAVAILABILITY_REASSIGN_DAYS = _get_int(os.getenv("UNAVAILABILITY_REASSIGN_DAYS"), 21)

NO_SHOW_AT_RISK_THRESHOLD = _get_int(os.getenv("NO_SHOW_AT_RISK_THRESHOLD"), 3)
NO_SHOW_AUTO_PAUSE_THRESHOLD = _get_int(os.getenv("NO_SHOW_AUTO_PAUSE_THRESHOLD"), 5)

# Shared-store rate limiting for the public slot query
RATE_LIMIT_ENABLED = _get_bool(os.getenv("RATE_LIMIT_ENABLED"), default=True)
RATE_LIMIT_WINDOW_SECONDS = _get_int(os.getenv("RATE_LIMIT_WINDOW_SECONDS"), 60)
RATE_LIMIT_SLOTS_MAX = _get_int(os.getenv("RATE_LIMIT_SLOTS_MAX"), 30)

# External collaborators. Empty base URL means "not configured".
CALENDAR_SERVICE_URL = os.getenv("CALENDAR_SERVICE_URL", "")
CALENDAR_SERVICE_TOKEN = os.getenv("CALENDAR_SERVICE_TOKEN", "")
VIDEO_BOT_SERVICE_URL = os.getenv("VIDEO_BOT_SERVICE_URL", "")
VIDEO_BOT_SERVICE_TOKEN = os.getenv("VIDEO_BOT_SERVICE_TOKEN", "")
COLLABORATOR_TIMEOUT_SECONDS = float(os.getenv("COLLABORATOR_TIMEOUT_SECONDS", "10"))


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if DEFAULT_END_HOUR <= DEFAULT_START_HOUR:
        raise RuntimeError("DEFAULT_END_HOUR must be later than DEFAULT_START_HOUR.")
    if SLOT_GRID_MINUTES <= 0:
        raise RuntimeError("SLOT_GRID_MINUTES must be positive.")
