"""
Quest Helpers

Pure functions behind the quest board: due-date recurrence, fairness-weighted
XP awards, timestamp coercion and duration formatting. Nothing in here touches
the database or reads the wall clock; callers pass ``now`` explicitly.
"""

import math
from datetime import date, datetime, time, timedelta, timezone
from functools import singledispatch
from typing import Any, Dict, Iterable, Mapping, NamedTuple, Optional

from bson.timestamp import Timestamp

DIFFICULTY_XP = {
    "easy": 100,
    "medium": 250,
    "hard": 500,
}
DEFAULT_DIFFICULTY = "easy"

FREQUENCY_TYPES = ("once", "daily", "weekly", "monthly")
DEFAULT_FREQUENCY = "once"

DEFAULT_FAIRNESS_THRESHOLD = 1000
FAIRNESS_MULTIPLIER = 1.5
XP_PER_STAR_COIN = 10

FRIEND_CODE_FILLER = "MEOWTIVATRULES"


# -------- Date coercion --------

class _InvalidDate:
    """Marker returned when a value cannot be read as a date."""

    def __repr__(self):
        return "INVALID_DATE"


INVALID_DATE = _InvalidDate()


def is_valid_date(value: Any) -> bool:
    return isinstance(value, datetime)


@singledispatch
def coerce_date(value: Any):
    """Turn a stored timestamp-like value into a datetime.

    Returns None for None and INVALID_DATE for anything unreadable.
    """
    if value is None:
        return None
    return INVALID_DATE


@coerce_date.register
def _(value: datetime):
    return value


@coerce_date.register
def _(value: date):
    return datetime.combine(value, time.min)


@coerce_date.register
def _(value: Timestamp):
    return value.as_datetime()


@coerce_date.register
def _(value: str):
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return INVALID_DATE


@coerce_date.register(int)
@coerce_date.register(float)
def _(value):
    # Numbers are epoch milliseconds
    if isinstance(value, bool):
        return INVALID_DATE
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return INVALID_DATE


def _as_instant(value: datetime) -> datetime:
    # Naive values are local wall time
    return value.astimezone(timezone.utc)


def _as_local(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


# -------- Duration formatting --------

def format_ms(ms: Optional[float] = 0) -> str:
    """Format milliseconds as H:MM:SS. Hours are not padded or wrapped."""
    total_seconds = max(0, math.floor((ms or 0) / 1000))
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    seconds = total_seconds % 60
    return f"{hours}:{minutes:02d}:{seconds:02d}"


# -------- Calendar keys --------

def start_of_day(value: datetime) -> datetime:
    return _as_local(value).replace(hour=0, minute=0, second=0, microsecond=0)


def week_key(value: datetime) -> str:
    d = _as_local(value)
    first_day = datetime(d.year, 1, 1)
    past_days = (d - first_day).total_seconds() / 86400
    # Sunday-based weekday of Jan 1
    first_weekday = (first_day.weekday() + 1) % 7
    week = math.floor((past_days + first_weekday + 1) / 7)
    return f"{d.year}-W{week}"


def month_key(value: datetime) -> str:
    d = _as_local(value)
    return f"{d.year}-{d.month}"


# -------- Recurrence engine --------

def difficulty_xp(difficulty: Optional[str]) -> int:
    if difficulty in DIFFICULTY_XP:
        return DIFFICULTY_XP[difficulty]
    return DIFFICULTY_XP[DEFAULT_DIFFICULTY]


def _add_months(value: datetime, months: int) -> datetime:
    # Day-of-month overflows into the following month (Jan 31 + 1 -> Mar 3)
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    first = value.replace(year=year, month=month, day=1)
    return first + timedelta(days=value.day - 1)


def calculate_next_due_at(frequency_type: str, frequency_interval: int, from_date: datetime) -> datetime:
    """Next due instant after a completion at ``from_date``.

    ``once`` returns ``from_date`` unchanged; the caller retires the quest.
    """
    if frequency_type == "daily":
        return from_date + timedelta(days=frequency_interval)
    elif frequency_type == "weekly":
        return from_date + timedelta(days=frequency_interval * 7)
    elif frequency_type == "monthly":
        return _add_months(from_date, frequency_interval)
    elif frequency_type == "once":
        return from_date
    # unknown frequency: no rescheduling
    return from_date


def is_quest_due(quest: Mapping[str, Any], now: datetime) -> bool:
    """Whether the quest can be completed at ``now``."""
    if quest.get("is_active") is False:
        return False

    next_due_at = quest.get("next_due_at")
    if next_due_at:
        next_due = coerce_date(next_due_at)
        if not is_valid_date(next_due):
            return False
        return _as_instant(now) >= _as_instant(next_due)

    # Legacy documents without next_due_at
    frequency_type = quest.get("frequency_type") or quest.get("frequency") or DEFAULT_FREQUENCY
    last_completed = coerce_date(quest.get("last_completed_at"))

    if frequency_type == "once":
        return last_completed is None
    if frequency_type not in FREQUENCY_TYPES:
        return True
    if last_completed is None:
        return True
    if not is_valid_date(last_completed):
        return False
    if frequency_type == "daily":
        return start_of_day(now) > start_of_day(last_completed)
    if frequency_type == "weekly":
        return week_key(now) != week_key(last_completed)
    return month_key(now) != month_key(last_completed)


def _first_present(doc: Mapping[str, Any], *keys, default=None):
    for key in keys:
        value = doc.get(key)
        if value is not None and value != "":
            return value
    return default


def _first_key(doc: Mapping[str, Any], *keys, default=None):
    # Presence wins, so a field cleared to None hides its legacy spelling
    for key in keys:
        if key in doc:
            return doc[key]
    return default


def normalize_quest_doc(doc: Mapping[str, Any]) -> Dict[str, Any]:
    """Map a stored quest (current or legacy field names) to the canonical shape."""
    difficulty = _first_present(doc, "difficulty", "difficulty_level", default=DEFAULT_DIFFICULTY)
    xp = _first_present(doc, "xp", "xp_value")
    if xp is None:
        xp = difficulty_xp(difficulty)
    interval = _first_present(doc, "frequency_interval", "frequencyInterval", default=1)
    is_active = _first_key(doc, "is_active", "isActive")
    last_completed = _first_key(doc, "last_completed_at", "lastCompletedAt", "last_completed")
    next_due = _first_key(doc, "next_due_at", "nextDueAt")

    return {
        "id": doc.get("id"),
        "title": _first_present(doc, "title", "name", default="Quest"),
        "difficulty": difficulty,
        "xp": xp,
        "frequency_type": _first_present(doc, "frequency_type", "frequencyType", "frequency", default=DEFAULT_FREQUENCY),
        "frequency_interval": interval,
        "is_active": True if is_active is None else is_active,
        "next_due_at": coerce_date(next_due),
        "reserved_by_id": _first_key(doc, "reserved_by_id", "reservedById"),
        "reserved_by_name": _first_key(doc, "reserved_by_name", "reservedByName"),
        "last_completed_at": coerce_date(last_completed),
        "last_completed_by_id": _first_key(doc, "last_completed_by_id", "lastCompletedById", "completed_by_id"),
        "last_completed_by_name": _first_key(doc, "last_completed_by_name", "lastCompletedByName", "completed_by_name"),
        "last_focus_duration_seconds": _first_key(doc, "last_focus_duration_seconds", "lastFocusDurationSeconds"),
        "created_by_id": _first_present(doc, "created_by_id", "createdById", "createdBy", default=""),
        "created_by_name": _first_present(doc, "created_by_name", "createdByName", "created_by", default=""),
    }


# -------- Fairness calculator --------

class WeeklyStats(NamedTuple):
    highest: int = 0
    lowest: Optional[Mapping[str, Any]] = None


class FairnessResult(NamedTuple):
    xp_award: int
    fairness_applied: bool


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def fairness_threshold_for(player: Mapping[str, Any]) -> float:
    threshold = player.get("fairness_threshold")
    return threshold if _is_number(threshold) else DEFAULT_FAIRNESS_THRESHOLD


def compute_weekly_stats(players: Iterable[Mapping[str, Any]]) -> WeeklyStats:
    """Highest weekly XP and the lowest weekly earner.

    Ties for lowest go to the smallest player id.
    """
    highest = 0
    lowest = None
    for player in players:
        weekly = player.get("weekly_xp") or 0
        if weekly > highest:
            highest = weekly
        if lowest is None:
            lowest = player
            continue
        lowest_weekly = lowest.get("weekly_xp") or 0
        if weekly < lowest_weekly or (
            weekly == lowest_weekly and str(player.get("id")) < str(lowest.get("id"))
        ):
            lowest = player
    return WeeklyStats(highest=highest, lowest=lowest)


def calculate_xp_with_fairness(target_user_id: Optional[str], base_xp: int, weekly_stats: WeeklyStats) -> FairnessResult:
    """XP to award ``target_user_id`` for a quest worth ``base_xp``.

    The lowest weekly earner gets a 1.5x boost while the gap between the top
    weekly score and theirs is above their own fairness threshold.
    """
    lowest = weekly_stats.lowest
    if not lowest or not target_user_id:
        return FairnessResult(base_xp, False)

    gap = (weekly_stats.highest or 0) - (lowest.get("weekly_xp") or 0)
    threshold = fairness_threshold_for(lowest)
    applied = lowest.get("id") == target_user_id and gap > threshold
    if applied:
        return FairnessResult(_round_half_up(base_xp * FAIRNESS_MULTIPLIER), True)
    return FairnessResult(base_xp, False)


# -------- Player progress --------

def star_coins_for(total_xp: int) -> int:
    return math.floor((total_xp or 0) / XP_PER_STAR_COIN)


def monthly_xp(player: Mapping[str, Any]) -> int:
    return (player.get("total_xp") or 0) - (player.get("monthly_xp_start") or 0)


def rollover_updates(player: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
    """Fields to merge when the player's month or week baseline is stale."""
    updates: Dict[str, Any] = {}
    current_month = month_key(now)
    if player.get("monthly_start_month") != current_month:
        updates["monthly_xp_start"] = player.get("total_xp") or 0
        updates["monthly_start_month"] = current_month
    current_week = week_key(now)
    if player.get("weekly_start_week") != current_week:
        updates["weekly_xp"] = 0
        updates["weekly_start_week"] = current_week
    return updates


def generate_friend_code(raw_id: Optional[str] = "") -> str:
    base = "".join(ch for ch in (raw_id or "MEOWTIVATR") if ch.isascii() and ch.isalnum()).upper()
    padded = (base + FRIEND_CODE_FILLER)[:8]
    return f"{padded[:4]}-{padded[4:8]}"
