from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def next_local_midnight(moment: datetime, tz_name: str = "Europe/Moscow") -> datetime:
    """Начало следующих суток (в tz_name) после moment, в UTC."""
    tz = ZoneInfo(tz_name)
    local_day = moment.astimezone(tz).date()
    start = datetime.combine(local_day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc)


def format_msk(moment: datetime, tz_name: str = "Europe/Moscow") -> str:
    return moment.astimezone(ZoneInfo(tz_name)).strftime("%d.%m.%Y %H:%M")
