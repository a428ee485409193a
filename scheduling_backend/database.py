import os
from dotenv import load_dotenv
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker


load_dotenv()
DATABASE_URL = os.getenv("DATABASE_URL")

engine = create_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_booking_schema_checked = False
_hold_schema_checked = False
_enrollment_schema_checked = False


def ensure_booking_schema() -> None:
    global _booking_schema_checked

    if _booking_schema_checked:
        return

    with _schema_lock:
        if _booking_schema_checked:
            return

        inspector = inspect(engine)

        if 'bookings' not in inspector.get_table_names():
            _booking_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('bookings')}
        migration_steps = [
            ('video_bot_id', 'ALTER TABLE bookings ADD COLUMN video_bot_id VARCHAR'),
            ('needs_attention', 'ALTER TABLE bookings ADD COLUMN needs_attention BOOLEAN DEFAULT FALSE'),
            ('attention_reason', 'ALTER TABLE bookings ADD COLUMN attention_reason VARCHAR'),
            ('week_number', 'ALTER TABLE bookings ADD COLUMN week_number INTEGER'),
            ('session_number', 'ALTER TABLE bookings ADD COLUMN session_number INTEGER'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_bookings_coach_date ON bookings(coach_id, slot_date)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_bookings_enrollment_date ON bookings(enrollment_id, slot_date)')
            )

        _booking_schema_checked = True


def ensure_hold_schema() -> None:
    global _hold_schema_checked

    if _hold_schema_checked:
        return

    with _schema_lock:
        if _hold_schema_checked:
            return

        inspector = inspect(engine)

        if 'slot_holds' not in inspector.get_table_names():
            _hold_schema_checked = True
            return

        # The unique key is what makes hold placement atomic; tables created
        # before the constraint existed get it as an index.
        with engine.begin() as connection:
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_slot_holds_key '
                    'ON slot_holds(coach_id, slot_date, slot_time)'
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_slot_holds_expires ON slot_holds(expires_at)')
            )

        _hold_schema_checked = True


def ensure_enrollment_schema() -> None:
    global _enrollment_schema_checked

    if _enrollment_schema_checked:
        return

    with _schema_lock:
        if _enrollment_schema_checked:
            return

        inspector = inspect(engine)

        if 'enrollments' not in inspector.get_table_names():
            _enrollment_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('enrollments')}
        migration_steps = [
            ('client_age', 'ALTER TABLE enrollments ADD COLUMN client_age INTEGER'),
            ('preferred_day', 'ALTER TABLE enrollments ADD COLUMN preferred_day INTEGER'),
            ('preferred_time', 'ALTER TABLE enrollments ADD COLUMN preferred_time VARCHAR'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))

        _enrollment_schema_checked = True
