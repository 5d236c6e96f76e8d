from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from ..config import get_settings


def get_app_tz() -> ZoneInfo:
    s = get_settings()
    try:
        return ZoneInfo(s.app.timezone)
    except Exception:
        return ZoneInfo("UTC")


def get_user_tz(user) -> ZoneInfo:
    """Timezone from the user's profile, falling back to the app timezone."""
    name = (getattr(user, "timezone", None) or "").strip() if user is not None else ""
    if name:
        try:
            return ZoneInfo(name)
        except Exception:
            pass
    return get_app_tz()


def now_utc() -> datetime:
    # Stored timestamps are naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_aware_utc(dt_utc_naive: datetime) -> datetime:
    return dt_utc_naive.replace(tzinfo=timezone.utc)


def local_date_for_user(user, dt_utc_naive: datetime | None = None) -> date:
    """Calendar date of a UTC instant as seen by `user`."""
    dt = dt_utc_naive if dt_utc_naive is not None else now_utc()
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return as_aware_utc(dt).astimezone(get_user_tz(user)).date()
