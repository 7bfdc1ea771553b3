from __future__ import annotations

import json
import logging
from enum import Enum

from pywebpush import WebPushException, webpush

from memento.config import Settings
from memento.models import Subscriber, endpoint_tail

logger = logging.getLogger(__name__)

# Push services answer these when the subscription no longer exists.
GONE_STATUS_CODES = {404, 410}


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    GONE = "gone"
    TRANSIENT = "transient"


class Notifier:
    def send(self, subscriber: Subscriber, payload: dict) -> DeliveryStatus:
        raise NotImplementedError


class NoopNotifier(Notifier):
    """Used when no VAPID key is configured. Nothing leaves the process."""

    def send(self, subscriber: Subscriber, payload: dict) -> DeliveryStatus:
        logger.warning("Push disabled (no VAPID private key); not sending to %s", endpoint_tail(subscriber.endpoint))
        return DeliveryStatus.TRANSIENT


class WebPushNotifier(Notifier):
    def __init__(self, private_key: str, subject: str, timeout_s: float = 10.0, ttl: int = 86400) -> None:
        self.private_key = private_key
        self.subject = subject
        self.timeout_s = timeout_s
        self.ttl = ttl

    def send(self, subscriber: Subscriber, payload: dict) -> DeliveryStatus:
        tail = endpoint_tail(subscriber.endpoint)
        try:
            webpush(
                subscription_info=subscriber.subscription,
                data=json.dumps(payload),
                vapid_private_key=self.private_key,
                vapid_claims={"sub": self.subject},
                timeout=self.timeout_s,
                ttl=self.ttl,
            )
        except WebPushException as exc:
            status = getattr(exc.response, "status_code", None)
            if status in GONE_STATUS_CODES:
                logger.info("Push endpoint gone (%s) for %s", status, tail)
                return DeliveryStatus.GONE
            logger.warning("Push failed for %s: status=%s %s", tail, status, exc)
            return DeliveryStatus.TRANSIENT
        except Exception as exc:
            logger.warning("Push error for %s: %s: %s", tail, type(exc).__name__, exc)
            return DeliveryStatus.TRANSIENT
        logger.debug("Push delivered to %s", tail)
        return DeliveryStatus.DELIVERED


def build_notifier(settings: Settings) -> Notifier:
    if settings.vapid_private_key:
        return WebPushNotifier(
            settings.vapid_private_key,
            settings.vapid_subject,
            timeout_s=settings.push_timeout_seconds,
            ttl=settings.push_ttl_seconds,
        )
    return NoopNotifier()
