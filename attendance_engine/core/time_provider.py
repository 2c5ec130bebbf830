from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

from attendance_engine.config import settings


APP_TIMEZONE = settings.app_timezone or 'Asia/Kolkata'
APP_ZONEINFO = ZoneInfo(APP_TIMEZONE)


class TimeProvider:
    def now(self) -> datetime:
        return datetime.now(APP_ZONEINFO)

    def today(self) -> date:
        return self.now().date()

    def naive_now(self) -> datetime:
        # Stored timestamps are naive app-local wall time.
        return self.now().replace(tzinfo=None)


def ensure_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValueError('Naive datetime not allowed in business logic')
    return dt


default_time_provider = TimeProvider()
