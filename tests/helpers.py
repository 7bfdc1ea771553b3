from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

import memento.db as db
from memento.models import Preferences, Subscriber
from memento.notifier import DeliveryStatus, Notifier


def make_subscriber(endpoint: str = "https://push.example.com/send/abc123", tz: str = "Europe/Paris", **kwargs) -> Subscriber:
    return Subscriber(
        endpoint=endpoint,
        subscription={"endpoint": endpoint, "keys": {"p256dh": "BNcRdreALRFX", "auth": "tBHItJI5svbpez7KI4CCXg"}},
        timezone=tz,
        **kwargs,
    )


def make_preferences(dob: str = "1990-05-17", gender: str = "male", custom=None) -> Preferences:
    return Preferences(date_of_birth=dob, gender=gender, custom_life_expectancy_years=custom)


class ScriptedNotifier(Notifier):
    """Returns a fixed status per endpoint and records every call."""

    def __init__(self, results: dict[str, DeliveryStatus] | None = None, default: DeliveryStatus = DeliveryStatus.DELIVERED) -> None:
        self.results = results or {}
        self.default = default
        self.calls: list[tuple[str, dict]] = []

    def send(self, subscriber: Subscriber, payload: dict) -> DeliveryStatus:
        self.calls.append((subscriber.endpoint, payload))
        result = self.results.get(subscriber.endpoint, self.default)
        if isinstance(result, Exception):
            raise result
        return result


class DBIsolatedTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self._old_db = db.DB_PATH
        db.DB_PATH = Path(self._tmp.name) / "test.sqlite3"
        db.init_db()

    def tearDown(self) -> None:
        db.DB_PATH = self._old_db
        self._tmp.cleanup()
