"""Subscriber records and the ingestion boundary that builds them.

Everything arriving over HTTP is normalized here exactly once; the store,
scheduler and composer trust the resulting objects.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from memento.errors import ValidationError
from memento.life import DEFAULT_GENDER, clamp_life_expectancy, parse_birth_date

GENDER_ALIASES = {
    "male": "male",
    "homme": "male",
    "female": "female",
    "femme": "female",
    "custom": "custom",
}

# Client field names first, the longer descriptive names second.
_DOB_KEYS = ("dob", "dateOfBirth", "date_of_birth")
_GENDER_KEYS = ("gender", "genderOrCustomFlag")
_CUSTOM_KEYS = ("customLifeExpectancy", "customLifeExpectancyYears", "custom_life_expectancy_years")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Preferences:
    date_of_birth: str | None = None
    gender: str = DEFAULT_GENDER
    custom_life_expectancy_years: int | None = None

    @classmethod
    def from_dict(cls, raw: dict | None) -> "Preferences | None":
        if not raw:
            return None
        custom = raw.get("custom_life_expectancy_years")
        return cls(
            date_of_birth=raw.get("date_of_birth"),
            gender=GENDER_ALIASES.get(raw.get("gender") or "", DEFAULT_GENDER),
            custom_life_expectancy_years=None if custom is None else clamp_life_expectancy(custom),
        )


@dataclass
class Subscriber:
    endpoint: str
    subscription: dict
    timezone: str
    preferences: Preferences | None = None
    last_sent_local_date: str | None = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_row(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "subscription_json": json.dumps(self.subscription),
            "timezone": self.timezone,
            "prefs_json": json.dumps(asdict(self.preferences)) if self.preferences else None,
            "last_sent_local_date": self.last_sent_local_date,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row) -> "Subscriber":
        prefs = json.loads(row["prefs_json"]) if row["prefs_json"] else None
        return cls(
            endpoint=row["endpoint"],
            subscription=json.loads(row["subscription_json"]),
            timezone=row["timezone"],
            preferences=Preferences.from_dict(prefs),
            last_sent_local_date=row["last_sent_local_date"],
            created_at=row["created_at"],
        )


def normalize_timezone(name, fallback: str) -> str:
    if not isinstance(name, str) or not name.strip():
        return fallback
    try:
        ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return fallback
    return name.strip()


def _first(payload: dict, keys: tuple[str, ...]):
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def subscriber_from_payload(payload: dict | None, default_timezone: str) -> Subscriber:
    """Build a Subscriber from a subscribe request body.

    Accepts ``{"subscription": {...}, "timezone": "..."}`` or the push
    subscription object itself at the top level.
    """
    payload = payload or {}
    sub = payload.get("subscription")
    if sub is None and "endpoint" in payload:
        sub = payload
    if not isinstance(sub, dict):
        raise ValidationError("subscription is required")

    endpoint = sub.get("endpoint")
    if not isinstance(endpoint, str) or not endpoint.strip():
        raise ValidationError("subscription.endpoint is required")

    keys = sub.get("keys")
    if not isinstance(keys, dict) or not keys.get("p256dh") or not keys.get("auth"):
        raise ValidationError("subscription.keys.p256dh and subscription.keys.auth are required")

    subscription = {
        "endpoint": endpoint.strip(),
        "keys": {"p256dh": str(keys["p256dh"]), "auth": str(keys["auth"])},
    }
    if sub.get("expirationTime") is not None:
        subscription["expirationTime"] = sub["expirationTime"]

    return Subscriber(
        endpoint=endpoint.strip(),
        subscription=subscription,
        timezone=normalize_timezone(payload.get("timezone"), default_timezone),
    )


def preferences_update_from_payload(payload: dict) -> dict:
    """Return only the preference fields present in ``payload``, normalized.

    Missing or null fields are omitted so that the store merges instead of
    overwriting them.
    """
    update: dict = {}

    dob = _first(payload, _DOB_KEYS)
    if dob is not None and dob != "":
        parsed = parse_birth_date(dob)
        if parsed is None:
            raise ValidationError(f"invalid date of birth: {dob!r}")
        update["date_of_birth"] = parsed.isoformat()

    gender = _first(payload, _GENDER_KEYS)
    if gender is not None:
        update["gender"] = GENDER_ALIASES.get(str(gender).strip().lower(), DEFAULT_GENDER)

    custom = _first(payload, _CUSTOM_KEYS)
    if custom is not None:
        update["custom_life_expectancy_years"] = clamp_life_expectancy(custom)

    return update


def merge_preferences(current: Preferences | None, update: dict) -> Preferences:
    merged = asdict(current) if current else asdict(Preferences())
    merged.update(update)
    return Preferences(**merged)


def endpoint_tail(endpoint: str, size: int = 16) -> str:
    if len(endpoint) <= size:
        return endpoint
    return "..." + endpoint[-size:]
