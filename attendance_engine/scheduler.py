import logging

from apscheduler.schedulers.background import BackgroundScheduler

from attendance_engine.config import settings
from attendance_engine.domain.jobs import leave_rollover, missed_session_detection


scheduler = BackgroundScheduler(timezone=settings.app_timezone)
logger = logging.getLogger(__name__)


def missed_session_detection_job():
    missed_session_detection.execute()


def leave_rollover_job():
    leave_rollover.execute()


def _parse_hhmm(value: str, default_hour: int = 0, default_minute: int = 5) -> tuple[int, int]:
    try:
        hour_raw, minute_raw = (value or '').split(':', 1)
        hour = int(hour_raw)
        minute = int(minute_raw)
        if hour < 0 or hour > 23 or minute < 0 or minute > 59:
            raise ValueError
        return hour, minute
    except ValueError:
        logger.warning('scheduler_invalid_time value=%s fallback=%02d:%02d', value, default_hour, default_minute)
        return default_hour, default_minute


def start_scheduler():
    detection_hour, detection_minute = _parse_hhmm(settings.missed_detection_time)
    rollover_hour, rollover_minute = _parse_hhmm(settings.leave_rollover_time, 0, 20)
    scheduler.add_job(
        missed_session_detection_job,
        'cron',
        hour=detection_hour,
        minute=detection_minute,
        id='missed_session_detection',
        replace_existing=True,
        coalesce=True,
    )
    scheduler.add_job(
        leave_rollover_job,
        'cron',
        hour=rollover_hour,
        minute=rollover_minute,
        id='leave_rollover',
        replace_existing=True,
        coalesce=True,
    )

    if not scheduler.running:
        scheduler.start()
    logger.info(
        'scheduler_started missed_detection=%02d:%02d leave_rollover=%02d:%02d',
        detection_hour,
        detection_minute,
        rollover_hour,
        rollover_minute,
    )


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
