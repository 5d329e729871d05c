"""
Prediction -> at most one tiered user notification.

Tiers, evaluated top down once the multiplier clears the surge threshold:

    confidence >= 0.85  actionable      (price-lock link, 30 min)
    confidence >= 0.75  detailed        (45 min)
    confidence >= 0.65  early-warning   (60 min)
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol
from urllib.parse import urlencode

from prometheus_client import Counter

from surgecast.common.config import CITY
from surgecast.common.time_utils import ensure_utc, utcnow
from surgecast.prediction.types import SurgePrediction

logger = logging.getLogger(__name__)

SURGE_THRESHOLD = 1.2

NOTIFICATIONS_EVALUATED = Counter(
    'surgecast_notifications_evaluated_total',
    'Predictions evaluated by the notification policy',
    ['city', 'tier']
)

NOTIFICATIONS_SENT = Counter(
    'surgecast_notifications_sent_total',
    'Notification deliveries by outcome',
    ['city', 'tier', 'status']
)


class NotificationTier(str, enum.Enum):
    NONE = "none"
    EARLY_WARNING = "early-warning"
    DETAILED = "detailed"
    ACTIONABLE = "actionable"


# (minimum confidence, tier, expiry minutes), highest first
TIER_RULES = (
    (0.85, NotificationTier.ACTIONABLE, 30),
    (0.75, NotificationTier.DETAILED, 45),
    (0.65, NotificationTier.EARLY_WARNING, 60),
)


@dataclass(frozen=True)
class Notification:
    tier: NotificationTier
    cell_id: str
    prediction_id: str
    message: str
    expires_at: datetime
    action_url: str | None = None

    def to_dict(self) -> dict:
        payload = {
            "tier": self.tier.value,
            "cellId": self.cell_id,
            "predictionId": self.prediction_id,
            "message": self.message,
            "expiresAt": self.expires_at.isoformat(),
        }
        if self.action_url:
            payload["actionUrl"] = self.action_url
        return payload


def price_lock_url(cell_id: str, prediction_id: str) -> str:
    return "/price-lock?" + urlencode({"cellId": cell_id, "predictionId": prediction_id})


def _message(tier: NotificationTier, multiplier: float) -> str:
    if tier is NotificationTier.ACTIONABLE:
        return f"Surge pricing of {multiplier:.1f}x expected soon. Lock in current rates now!"
    if tier is NotificationTier.DETAILED:
        return f"Surge pricing of {multiplier:.1f}x likely in your area soon."
    return "Demand increasing in your area. Possible surge pricing soon."


class NotificationPolicy:
    def __init__(self, surge_threshold: float = SURGE_THRESHOLD, city: str = CITY):
        self.surge_threshold = surge_threshold
        self.city = city

    def tier_for(self, prediction: SurgePrediction) -> NotificationTier:
        if prediction.multiplier <= self.surge_threshold:
            return NotificationTier.NONE
        for min_confidence, tier, _ in TIER_RULES:
            if prediction.confidence >= min_confidence:
                return tier
        return NotificationTier.NONE

    def evaluate(self, prediction: SurgePrediction, now: datetime | None = None) -> Notification | None:
        """
        Decide whether a prediction warrants a notification.

        Returns:
            The single notification for this prediction, or None
        """
        tier = self.tier_for(prediction)
        NOTIFICATIONS_EVALUATED.labels(city=self.city, tier=tier.value).inc()
        if tier is NotificationTier.NONE:
            return None

        now = ensure_utc(now) if now else utcnow()
        expiry = next(m for _, t, m in TIER_RULES if t is tier)
        action_url = None
        if tier is NotificationTier.ACTIONABLE:
            action_url = price_lock_url(prediction.cell_id, prediction.id)

        return Notification(
            tier=tier,
            cell_id=prediction.cell_id,
            prediction_id=prediction.id,
            message=_message(tier, prediction.multiplier),
            expires_at=now + timedelta(minutes=expiry),
            action_url=action_url,
        )


class NotificationSink(Protocol):
    def send(self, user_id: str, payload: dict) -> None: ...


class NotificationDispatcher:
    """
    Fans a notification out to the users of a cell.

    A failed delivery is logged and counted; it never stops delivery to the
    remaining recipients.
    """

    def __init__(
        self,
        recipient_lookup: Callable[[str], list[str]],
        sink: NotificationSink,
        city: str = CITY,
    ):
        self.recipient_lookup = recipient_lookup
        self.sink = sink
        self.city = city

    def dispatch(self, notification: Notification) -> dict:
        """
        Returns:
            Dict with 'sent' and 'failed' delivery counts
        """
        try:
            recipients = self.recipient_lookup(notification.cell_id)
        except Exception as e:
            logger.error(f"Recipient lookup failed for cell {notification.cell_id}: {e}")
            return {"sent": 0, "failed": 0}

        payload = notification.to_dict()
        sent = failed = 0
        for user_id in recipients:
            try:
                self.sink.send(user_id, payload)
                sent += 1
                NOTIFICATIONS_SENT.labels(city=self.city, tier=notification.tier.value, status="sent").inc()
            except Exception as e:
                failed += 1
                NOTIFICATIONS_SENT.labels(city=self.city, tier=notification.tier.value, status="failed").inc()
                logger.warning(f"Notification delivery to {user_id} failed: {e}")

        if recipients:
            logger.info(
                f"Dispatched {notification.tier.value} notification for {notification.cell_id}: "
                f"{sent} sent, {failed} failed"
            )
        return {"sent": sent, "failed": failed}
