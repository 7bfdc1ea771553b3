"""Manual sends triggered from the API.

These bypass the daily schedule and leave ``last_sent_local_date`` alone, so a
test send in the morning does not cancel that day's 09:00 reminder.
"""

from __future__ import annotations

import argparse
import logging

from memento.config import configure_logging, get_settings
from memento.content import compose
from memento.db import find_subscriber, list_subscribers, log_delivery, remove_subscriber
from memento.errors import NotFoundError
from memento.models import Subscriber, endpoint_tail
from memento.notifier import DeliveryStatus, Notifier, build_notifier

logger = logging.getLogger(__name__)


def _targets(endpoint: str | None) -> list[Subscriber]:
    if endpoint:
        subscriber = find_subscriber(endpoint)
        if subscriber is None:
            raise NotFoundError(f"unknown endpoint {endpoint_tail(endpoint)}")
        return [subscriber]
    return list_subscribers()


def _deliver(subscribers: list[Subscriber], source: str, notifier: Notifier, **overrides) -> int:
    sent = 0
    for subscriber in subscribers:
        payload = compose(subscriber, **overrides)
        result = notifier.send(subscriber, payload)
        if result is DeliveryStatus.DELIVERED:
            sent += 1
            log_delivery(subscriber.endpoint, source, payload)
        elif result is DeliveryStatus.GONE:
            remove_subscriber(subscriber.endpoint)
    logger.info("Manual %s send: %d/%d delivered", source, sent, len(subscribers))
    return sent


def send_test(
    endpoint: str | None = None,
    title: str | None = None,
    body: str | None = None,
    url: str | None = None,
    notifier: Notifier | None = None,
) -> int:
    notifier = notifier or build_notifier(get_settings())
    return _deliver(_targets(endpoint), "test", notifier, title=title, body=body, url=url)


def send_now(endpoint: str | None = None, notifier: Notifier | None = None) -> int:
    notifier = notifier or build_notifier(get_settings())
    return _deliver(_targets(endpoint), "now", notifier)


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("mode", choices=["test", "now"])
    parser.add_argument("--endpoint", default=None)
    args = parser.parse_args()

    configure_logging(get_settings().log_level)
    if args.mode == "test":
        sent = send_test(args.endpoint)
    else:
        sent = send_now(args.endpoint)
    print(f"sent={sent}")


if __name__ == "__main__":
    main()
