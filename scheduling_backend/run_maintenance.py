"""Run periodic scheduling maintenance once.

Activates enrollments whose delayed start date has arrived, resumes
enrollments whose pause window has ended, and deletes expired holds and
stale rate-limit counters. Meant to be run from cron.

Usage:
    python -m scheduling_backend.run_maintenance
"""
import logging
import sys
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from scheduling_backend.database import SessionLocal
from scheduling_backend.scheduling.holds import compact_expired_holds
from scheduling_backend.scheduling.orchestrator import OUTCOME_FAILED, SchedulingEvent, dispatch
from scheduling_backend.scheduling.rate_limit import prune_rate_limit_counters
from scheduling_backend.scheduling.timeline import due_delayed_starts, due_pause_endings

logger = logging.getLogger(__name__)


def run_maintenance(db, now: datetime | None = None, calendar=None, video_bot=None) -> dict[str, int]:
    now = now or datetime.now()
    today = now.date()
    summary = {'started': 0, 'resumed': 0, 'failed': 0, 'holds_removed': 0, 'counters_removed': 0}

    jobs = [(SchedulingEvent.ENROLLMENT_DELAYED_START_ACTIVATED, 'started', due_delayed_starts(db, today))]
    jobs.append((SchedulingEvent.ENROLLMENT_RESUMED, 'resumed', due_pause_endings(db, today)))

    for event, counter, enrollment_ids in jobs:
        for enrollment_id in enrollment_ids:
            result = dispatch(
                db,
                event.value,
                {'enrollment_id': enrollment_id},
                actor='system',
                calendar=calendar,
                video_bot=video_bot,
                now=now,
            )
            if result.success:
                summary[counter] += 1
            else:
                summary['failed'] += 1
                log = logger.error if result.outcome == OUTCOME_FAILED else logger.warning
                log(
                    'maintenance_dispatch_unsuccessful',
                    extra={
                        'event': event.value,
                        'enrollment_id': enrollment_id,
                        'error': result.error,
                        'correlation_id': result.correlation_id,
                    },
                )

    summary['holds_removed'] = compact_expired_holds(db, now)
    summary['counters_removed'] = prune_rate_limit_counters(db, now)
    logger.info('maintenance_completed', extra=summary)
    return summary


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    db = SessionLocal()
    try:
        summary = run_maintenance(db)
    except SQLAlchemyError:
        logger.exception('Maintenance failed. Check DATABASE_URL and Postgres credentials.')
        sys.exit(1)
    finally:
        db.close()
    print(summary)


if __name__ == "__main__":
    main()
