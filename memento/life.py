"""Life expectancy arithmetic.

Pure functions only: no database, no clock unless ``now``/``today`` is omitted.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timezone

LIFE_EXPECTANCY = {"male": 80, "female": 85}
DEFAULT_GENDER = "male"
DEFAULT_CUSTOM_YEARS = 80
MIN_YEARS = 1
MAX_YEARS = 120

SECONDS_PER_YEAR = 365.2425 * 24 * 60 * 60

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def clamp_life_expectancy(raw) -> int:
    """Coerce a user supplied expectancy to an int in [1, 120].

    Reads the leading integer the way the web client's ``parseInt`` does
    (``"85.5"`` is 85, ``"90 years"`` is 90); no digits, or zero, means 80.
    """
    match = _LEADING_INT.match(str(raw)) if raw is not None else None
    years = int(match.group(1)) if match else 0
    if years == 0:
        years = DEFAULT_CUSTOM_YEARS
    return max(MIN_YEARS, min(MAX_YEARS, years))


def life_expectancy_years(gender: str | None, custom_years=None) -> int:
    if gender == "custom":
        return clamp_life_expectancy(custom_years)
    return LIFE_EXPECTANCY.get(gender or DEFAULT_GENDER, LIFE_EXPECTANCY[DEFAULT_GENDER])


def parse_birth_date(raw) -> date | None:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        return date.fromisoformat(raw.strip()[:10])
    except ValueError:
        return None


def years_lived(birth: date, now: datetime | None = None) -> float:
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    born_at = datetime.combine(birth, time(0, 0), tzinfo=timezone.utc)
    return (now - born_at).total_seconds() / SECONDS_PER_YEAR


def life_percentage_remaining(
    date_of_birth,
    gender: str | None = DEFAULT_GENDER,
    custom_life_expectancy_years=None,
    now: datetime | None = None,
) -> float | None:
    """Percentage of the estimated lifespan still ahead, one decimal, in [0, 100].

    Returns ``None`` when the birth date is missing or unparseable. A birth
    date in the future is not an error: it simply reports 100.0.
    """
    birth = parse_birth_date(date_of_birth)
    if birth is None:
        return None
    expectancy = life_expectancy_years(gender, custom_life_expectancy_years)
    remaining = expectancy - years_lived(birth, now)
    pct = remaining / expectancy * 100
    return round(max(0.0, min(100.0, pct)), 1)


def life_weeks(date_of_birth, expectancy_years: int, today: date | None = None) -> dict:
    """Total and elapsed week counts backing the dot grid."""
    birth = parse_birth_date(date_of_birth)
    if birth is None:
        raise ValueError("date_of_birth is required")
    today = today or datetime.now(timezone.utc).date()
    if birth > today:
        raise ValueError(f"date_of_birth ({birth}) is in the future")

    years = clamp_life_expectancy(expectancy_years)
    try:
        end = birth.replace(year=birth.year + years)
    except ValueError:
        # 29 February rolls over to 1 March
        end = date(birth.year + years, 3, 1)
    return {
        "total_weeks": (end - birth).days // 7,
        "past_weeks": (today - birth).days // 7,
    }
