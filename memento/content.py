from __future__ import annotations

import json
import random
from functools import lru_cache
from pathlib import Path

from memento.life import life_percentage_remaining
from memento.models import Subscriber

MESSAGES_FILE = Path(__file__).resolve().parent / "messages.json"

DEFAULT_TITLE = "Memento Mori"
DEFAULT_URL = "/"
GENERIC_REMINDER = "Remember that you will die."

FALLBACK_MESSAGES = (
    "Time is the one thing you cannot earn back.",
    "Do not act as if you had ten thousand years to live.",
)


def _load_json(path: Path, fallback):
    if not path.exists():
        return fallback
    return json.loads(path.read_text(encoding="utf-8-sig"))


@lru_cache(maxsize=8)
def load_messages(path: Path | None = None) -> tuple[str, ...]:
    """Message pool, read from disk once per path."""
    data = _load_json(path or MESSAGES_FILE, {})
    messages = tuple(m for m in data.get("messages", []) if isinstance(m, str) and m.strip())
    return messages or FALLBACK_MESSAGES


def pick_message(rng: random.Random | None = None, messages: tuple[str, ...] | None = None) -> str:
    pool = messages or load_messages()
    return (rng or random).choice(pool)


def compose(
    subscriber: Subscriber,
    title: str | None = None,
    body: str | None = None,
    url: str | None = None,
    rng: random.Random | None = None,
    now=None,
) -> dict:
    """Build the push payload for one subscriber.

    ``body`` replaces the composed text entirely; ``title`` and ``url`` fall
    back to the fixed defaults.
    """
    if body is None:
        message = pick_message(rng)
        prefs = subscriber.preferences
        pct = None
        if prefs is not None:
            pct = life_percentage_remaining(
                prefs.date_of_birth,
                prefs.gender,
                prefs.custom_life_expectancy_years,
                now=now,
            )
        if pct is None:
            body = f"{GENERIC_REMINDER} {message}"
        else:
            body = f"{pct:.1f}% of your estimated life remains. {message}"

    return {
        "title": title or DEFAULT_TITLE,
        "body": body,
        "url": url or DEFAULT_URL,
    }
