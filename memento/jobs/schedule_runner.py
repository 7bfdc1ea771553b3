"""Daily 09:00 local-time push reminders.

Every tick looks at all subscribers, works out their local wall clock, and
sends to those whose local minute equals the configured send time and who have
not been sent anything yet for their local date. A missed minute is a missed
day; there is no catch-up.
"""

from __future__ import annotations

import argparse
import logging
import os
import socket
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from memento.config import configure_logging, get_settings
from memento.content import compose
from memento.db import claim_scheduler_lease, commit_tick, init_db, list_subscribers, release_scheduler_lease
from memento.errors import StoreUnavailable
from memento.models import Subscriber, endpoint_tail
from memento.notifier import DeliveryStatus, Notifier, build_notifier

logger = logging.getLogger(__name__)


class SubscriberState(str, Enum):
    NOT_DUE = "not_due"
    DUE = "due"
    SENT = "sent"
    REMOVED = "removed"
    FAILED = "failed"


def local_now(tz_name: str, now: datetime, fallback: str) -> datetime:
    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        zone = ZoneInfo(fallback)
    return now.astimezone(zone)


def get_schedule_context(subscriber: Subscriber, now: datetime, fallback_tz: str) -> dict:
    local = local_now(subscriber.timezone, now, fallback_tz)
    return {
        "local_date": local.date().isoformat(),
        "local_hhmm": local.strftime("%H:%M"),
        "timezone": subscriber.timezone,
    }


def evaluate(subscriber: Subscriber, now: datetime, send_time: str, fallback_tz: str) -> tuple[SubscriberState, str]:
    ctx = get_schedule_context(subscriber, now, fallback_tz)
    if ctx["local_hhmm"] == send_time and subscriber.last_sent_local_date != ctx["local_date"]:
        return SubscriberState.DUE, ctx["local_date"]
    return SubscriberState.NOT_DUE, ctx["local_date"]


def run_tick(now: datetime | None = None, notifier: Notifier | None = None) -> dict:
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    notifier = notifier or build_notifier(settings)

    subscribers = list_subscribers()
    states: dict[str, SubscriberState] = {}
    sent: dict[str, str] = {}
    removed: list[str] = []
    deliveries: list[tuple[str, dict]] = []

    for subscriber in subscribers:
        try:
            state, local_date = evaluate(subscriber, now, settings.send_time, settings.default_timezone)
            if state is SubscriberState.NOT_DUE:
                states[subscriber.endpoint] = state
                continue

            payload = compose(subscriber, now=now)
            result = notifier.send(subscriber, payload)
            if result is DeliveryStatus.DELIVERED:
                sent[subscriber.endpoint] = local_date
                deliveries.append((subscriber.endpoint, payload))
                states[subscriber.endpoint] = SubscriberState.SENT
            elif result is DeliveryStatus.GONE:
                removed.append(subscriber.endpoint)
                states[subscriber.endpoint] = SubscriberState.REMOVED
            else:
                states[subscriber.endpoint] = SubscriberState.FAILED
        except Exception:
            logger.exception("Scheduled send failed for %s", endpoint_tail(subscriber.endpoint))
            states[subscriber.endpoint] = SubscriberState.FAILED

    commit_tick(sent, removed, deliveries)

    counts = {state.value: 0 for state in SubscriberState}
    for state in states.values():
        counts[state.value] += 1
    if sent or removed or counts[SubscriberState.FAILED.value]:
        logger.info(
            "Tick %s: sent=%d removed=%d failed=%d of %d",
            now.isoformat(timespec="minutes"),
            len(sent),
            len(removed),
            counts[SubscriberState.FAILED.value],
            len(subscribers),
        )
    return {"checked": len(subscribers), **counts, "states": states}


def seconds_until_next_tick(now: datetime, interval: int) -> float:
    """Wait so that ticks land just after the start of a wall-clock minute."""
    if interval % 60:
        return float(interval)
    into_minute = now.second + now.microsecond / 1_000_000
    return interval - into_minute + 0.5


def lease_seconds(tick_seconds: int) -> float:
    return tick_seconds * 2 + 30


def run_forever(
    stop_event: threading.Event | None = None,
    notifier: Notifier | None = None,
    owner: str | None = None,
) -> None:
    """Tick until ``stop_event`` is set.

    Several loops may share one database (uvicorn workers, a standalone
    runner); only the holder of the scheduler lease ticks, the others idle
    until the lease expires.
    """
    settings = get_settings()
    stop_event = stop_event or threading.Event()
    owner = owner or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
    logger.info("Scheduler started: daily at %s local time, tick every %ss", settings.send_time, settings.tick_seconds)
    while not stop_event.is_set():
        try:
            if claim_scheduler_lease(owner, lease_seconds(settings.tick_seconds)):
                run_tick(notifier=notifier)
            else:
                logger.debug("Scheduler lease held elsewhere; %s idle", owner)
        except StoreUnavailable as exc:
            logger.error("Scheduler tick skipped, store unavailable: %s", exc)
        except Exception:
            logger.exception("Scheduler tick crashed")
        stop_event.wait(seconds_until_next_tick(datetime.now(timezone.utc), settings.tick_seconds))
    try:
        release_scheduler_lease(owner)
    except StoreUnavailable as exc:
        logger.warning("Could not release scheduler lease: %s", exc)
    logger.info("Scheduler stopped")


class SchedulerThread:
    """Runs ``run_forever`` in a daemon thread inside the API process."""

    def __init__(self) -> None:
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=run_forever, args=(self._stop,), name="memento-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


def main() -> None:
    parser = argparse.ArgumentParser(description="Send the daily Memento Mori push reminders.")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.log_level)
    init_db()

    if args.once:
        result = run_tick()
        logger.info("Checked %d subscribers, sent %d", result["checked"], result["sent"])
        return

    try:
        run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
