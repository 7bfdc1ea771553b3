from __future__ import annotations

import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import memento.db as db
from memento.config import Settings
from memento.errors import StoreUnavailable
from memento.jobs import schedule_runner
from memento.jobs.schedule_runner import SubscriberState, evaluate, run_forever, run_tick, seconds_until_next_tick
from memento.notifier import DeliveryStatus

from helpers import DBIsolatedTestCase, ScriptedNotifier, make_preferences, make_subscriber

PARIS = "https://push.example.com/paris"
NEW_YORK = "https://push.example.com/new-york"

# 2026-03-15: Paris is UTC+1, New York already on daylight time (UTC-4).
PARIS_NINE = datetime(2026, 3, 15, 8, 0, tzinfo=timezone.utc)
NEW_YORK_NINE = datetime(2026, 3, 15, 13, 0, tzinfo=timezone.utc)


class EvaluateTests(unittest.TestCase):
    def test_due_only_at_send_minute(self) -> None:
        sub = make_subscriber(tz="Europe/Paris")
        self.assertEqual(evaluate(sub, PARIS_NINE, "09:00", "Europe/Paris"), (SubscriberState.DUE, "2026-03-15"))
        self.assertEqual(evaluate(sub, PARIS_NINE - timedelta(minutes=1), "09:00", "Europe/Paris")[0], SubscriberState.NOT_DUE)
        self.assertEqual(evaluate(sub, PARIS_NINE + timedelta(minutes=1), "09:00", "Europe/Paris")[0], SubscriberState.NOT_DUE)

    def test_already_sent_today_is_not_due(self) -> None:
        sub = make_subscriber(tz="Europe/Paris", last_sent_local_date="2026-03-15")
        self.assertEqual(evaluate(sub, PARIS_NINE, "09:00", "Europe/Paris")[0], SubscriberState.NOT_DUE)

    def test_sent_yesterday_is_due(self) -> None:
        sub = make_subscriber(tz="Europe/Paris", last_sent_local_date="2026-03-14")
        self.assertEqual(evaluate(sub, PARIS_NINE, "09:00", "Europe/Paris")[0], SubscriberState.DUE)

    def test_local_date_not_utc_date(self) -> None:
        # 22:00 UTC on the 14th is already 09:00 on the 15th in Sydney.
        sub = make_subscriber(tz="Australia/Sydney")
        now = datetime(2026, 3, 14, 22, 0, tzinfo=timezone.utc)
        self.assertEqual(evaluate(sub, now, "09:00", "Europe/Paris"), (SubscriberState.DUE, "2026-03-15"))

    def test_unknown_timezone_uses_fallback(self) -> None:
        sub = make_subscriber(tz="Nowhere/Special")
        self.assertEqual(evaluate(sub, PARIS_NINE, "09:00", "Europe/Paris")[0], SubscriberState.DUE)


class RunTickTests(DBIsolatedTestCase):
    def setUp(self) -> None:
        super().setUp()
        patcher = patch("memento.jobs.schedule_runner.get_settings", return_value=Settings())
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_sends_once_per_local_day(self) -> None:
        db.upsert_subscriber(make_subscriber(endpoint=PARIS, tz="Europe/Paris", preferences=make_preferences()))
        notifier = ScriptedNotifier()

        result = run_tick(PARIS_NINE, notifier)
        self.assertEqual(result["sent"], 1)
        self.assertEqual(result["states"][PARIS], SubscriberState.SENT)
        self.assertEqual(db.find_subscriber(PARIS).last_sent_local_date, "2026-03-15")
        self.assertIn("% of your estimated life remains.", notifier.calls[0][1]["body"])

        run_tick(PARIS_NINE, notifier)
        run_tick(PARIS_NINE + timedelta(minutes=1), notifier)
        self.assertEqual(len(notifier.calls), 1)

        run_tick(PARIS_NINE + timedelta(days=1), notifier)
        self.assertEqual(len(notifier.calls), 2)
        self.assertEqual(db.find_subscriber(PARIS).last_sent_local_date, "2026-03-16")

    def test_marker_survives_restart(self) -> None:
        db.upsert_subscriber(make_subscriber(endpoint=PARIS, tz="Europe/Paris", last_sent_local_date="2026-03-15"))
        notifier = ScriptedNotifier()
        result = run_tick(PARIS_NINE, notifier)
        self.assertEqual(notifier.calls, [])
        self.assertEqual(result["not_due"], 1)

    def test_gone_subscriber_is_removed(self) -> None:
        db.upsert_subscriber(make_subscriber(endpoint=PARIS, tz="Europe/Paris"))
        result = run_tick(PARIS_NINE, ScriptedNotifier(default=DeliveryStatus.GONE))
        self.assertEqual(result["removed"], 1)
        self.assertEqual(db.list_subscribers(), [])

    def test_transient_failure_forfeits_the_day(self) -> None:
        db.upsert_subscriber(make_subscriber(endpoint=PARIS, tz="Europe/Paris"))
        notifier = ScriptedNotifier(default=DeliveryStatus.TRANSIENT)

        result = run_tick(PARIS_NINE, notifier)
        self.assertEqual(result["states"][PARIS], SubscriberState.FAILED)
        self.assertIsNone(db.find_subscriber(PARIS).last_sent_local_date)

        run_tick(PARIS_NINE + timedelta(minutes=1), notifier)
        self.assertEqual(len(notifier.calls), 1)

        notifier.default = DeliveryStatus.DELIVERED
        run_tick(PARIS_NINE + timedelta(days=1), notifier)
        self.assertEqual(db.find_subscriber(PARIS).last_sent_local_date, "2026-03-16")

    def test_each_timezone_gets_exactly_one(self) -> None:
        db.upsert_subscriber(make_subscriber(endpoint=PARIS, tz="Europe/Paris"))
        db.upsert_subscriber(make_subscriber(endpoint=NEW_YORK, tz="America/New_York"))
        notifier = ScriptedNotifier()

        start = datetime(2026, 3, 15, 0, 0, tzinfo=timezone.utc)
        sent_at = {}
        for minute in range(24 * 60):
            now = start + timedelta(minutes=minute)
            before = len(notifier.calls)
            run_tick(now, notifier)
            for endpoint, _ in notifier.calls[before:]:
                sent_at.setdefault(endpoint, []).append(now)

        self.assertEqual(sent_at, {PARIS: [PARIS_NINE], NEW_YORK: [NEW_YORK_NINE]})
        self.assertEqual(db.find_subscriber(PARIS).last_sent_local_date, "2026-03-15")
        self.assertEqual(db.find_subscriber(NEW_YORK).last_sent_local_date, "2026-03-15")

    def test_one_failure_does_not_block_others(self) -> None:
        db.upsert_subscriber(make_subscriber(endpoint=PARIS, tz="Europe/Paris"))
        other = "https://push.example.com/berlin"
        db.upsert_subscriber(make_subscriber(endpoint=other, tz="Europe/Berlin"))
        notifier = ScriptedNotifier(results={PARIS: RuntimeError("boom")})

        result = run_tick(PARIS_NINE, notifier)
        self.assertEqual(result["states"][PARIS], SubscriberState.FAILED)
        self.assertEqual(result["states"][other], SubscriberState.SENT)
        self.assertEqual(db.find_subscriber(other).last_sent_local_date, "2026-03-15")

    def test_no_write_when_nothing_changed(self) -> None:
        db.upsert_subscriber(make_subscriber(endpoint=PARIS, tz="Europe/Paris"))
        with patch("memento.db._write") as write:
            run_tick(PARIS_NINE - timedelta(hours=1), ScriptedNotifier())
        write.assert_not_called()

    def test_scheduled_sends_are_logged(self) -> None:
        db.upsert_subscriber(make_subscriber(endpoint=PARIS, tz="Europe/Paris"))
        run_tick(PARIS_NINE, ScriptedNotifier())
        log = db.recent_deliveries()
        self.assertEqual([entry["source"] for entry in log], ["scheduled"])
        self.assertEqual(log[0]["payload"]["title"], "Memento Mori")


class LoopTests(DBIsolatedTestCase):
    def test_store_failure_does_not_stop_the_loop(self) -> None:
        stop = threading.Event()
        calls = []

        def failing_tick(**kwargs):
            calls.append(kwargs)
            if len(calls) == 2:
                stop.set()
            raise StoreUnavailable("database is locked")

        with patch.object(schedule_runner, "run_tick", side_effect=failing_tick), patch.object(
            schedule_runner, "get_settings", return_value=Settings(tick_seconds=60)
        ), patch.object(schedule_runner, "seconds_until_next_tick", return_value=0):
            run_forever(stop, owner="worker-1")

        self.assertEqual(len(calls), 2)

    def test_loop_without_the_lease_does_not_tick(self) -> None:
        db.claim_scheduler_lease("worker-1", 3600)
        stop = threading.Event()

        def one_round(*args):
            stop.set()
            return 0

        with patch.object(schedule_runner, "run_tick") as tick, patch.object(
            schedule_runner, "get_settings", return_value=Settings(tick_seconds=60)
        ), patch.object(schedule_runner, "seconds_until_next_tick", side_effect=one_round):
            run_forever(stop, owner="worker-2")

        tick.assert_not_called()
        # the holder's lease survives the idle loop's shutdown
        self.assertFalse(db.claim_scheduler_lease("worker-3", 60))

    def test_stopping_releases_the_lease(self) -> None:
        stop = threading.Event()

        def one_round(*args):
            stop.set()
            return 0

        with patch.object(schedule_runner, "run_tick") as tick, patch.object(
            schedule_runner, "get_settings", return_value=Settings(tick_seconds=60)
        ), patch.object(schedule_runner, "seconds_until_next_tick", side_effect=one_round):
            run_forever(stop, owner="worker-1")

        tick.assert_called_once()
        self.assertTrue(db.claim_scheduler_lease("worker-2", 60))

    def test_ticks_align_to_minute_start(self) -> None:
        now = datetime(2026, 3, 15, 8, 0, 30, tzinfo=timezone.utc)
        self.assertAlmostEqual(seconds_until_next_tick(now, 60), 30.5)
        self.assertEqual(seconds_until_next_tick(now, 45), 45.0)


if __name__ == "__main__":
    unittest.main()
