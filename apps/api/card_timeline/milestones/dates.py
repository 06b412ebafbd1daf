from __future__ import annotations

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from dateutil import parser as dateparser

from card_timeline.config import settings

NORMALIZED_HOUR = 7


def _display_tz() -> ZoneInfo:
  return ZoneInfo(settings.display_timezone or "UTC")


def _as_utc(dt: datetime) -> datetime:
  if dt.tzinfo is None:
    return dt.replace(tzinfo=timezone.utc)
  return dt.astimezone(timezone.utc)


def iso_utc(dt: datetime) -> str:
  """Millisecond-precision ISO 8601 in UTC with a `Z` suffix; sorts lexicographically."""
  u = _as_utc(dt)
  return f"{u:%Y-%m-%dT%H:%M:%S}.{u.microsecond // 1000:03d}Z"


def parse_iso(value: str | datetime | None) -> datetime | None:
  if value is None:
    return None
  if isinstance(value, datetime):
    return _as_utc(value)
  s = str(value).strip()
  if not s:
    return None
  return _as_utc(dateparser.isoparse(s))


def card_creation_date(card_id: str) -> datetime:
  """
  Card ids start with 8 hex chars holding the creation time as Unix seconds.

  Raises ValueError when the id does not carry a timestamp.
  """
  prefix = (card_id or "")[:8]
  if len(prefix) != 8:
    raise ValueError(f"card id {card_id!r} does not embed a timestamp")
  seconds = int(prefix, 16)
  return datetime.fromtimestamp(seconds, tz=timezone.utc)


def normalize_occurred_at(value: date | datetime, *, now: datetime | None = None) -> datetime:
  """
  A milestone dated today keeps the current clock time; any other day is pinned to 07:00
  local time so same-day sorting does not depend on when the entry was typed.
  """
  tz = _display_tz()
  now_local = _as_utc(now or datetime.now(timezone.utc)).astimezone(tz)
  if isinstance(value, datetime):
    local = value.replace(tzinfo=tz) if value.tzinfo is None else value.astimezone(tz)
    day = local.date()
  else:
    day = value
  if day == now_local.date():
    out = datetime.combine(day, now_local.timetz().replace(tzinfo=None), tzinfo=tz)
  else:
    out = datetime.combine(day, time(NORMALIZED_HOUR, 0), tzinfo=tz)
  return out.astimezone(timezone.utc)


def history_entry(action: str, *, now: datetime | None = None) -> str:
  stamp = _as_utc(now or datetime.now(timezone.utc)).astimezone(_display_tz())
  return f"{stamp:%d %b %Y, %H:%M:%S} - {action}"


def display_date(dt: datetime) -> str:
  return f"{_as_utc(dt).astimezone(_display_tz()):%d %b %Y}"
