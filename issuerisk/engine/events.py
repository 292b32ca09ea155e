"""Publish/subscribe channel for risk status transitions."""

from __future__ import annotations

import logging
from collections.abc import Callable

from issuerisk.engine.models import RiskUpdateEvent

logger = logging.getLogger(__name__)

Listener = Callable[[RiskUpdateEvent], None]


class Subscription:
    """Handle returned by EventBus.subscribe; revoke() detaches the listener."""

    def __init__(self, bus: EventBus, listener: Listener) -> None:
        self._bus = bus
        self._listener = listener
        self.active = True

    def revoke(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, listener: Listener) -> Subscription:
        subscription = Subscription(self, listener)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: RiskUpdateEvent) -> None:
        # Snapshot so a listener may revoke itself while being notified
        for subscription in list(self._subscriptions):
            try:
                subscription._listener(event)
            except Exception as e:
                logger.warning(
                    f"Risk update listener failed for {event.repository}#{event.issue_number}: {e}"
                )

    def clear(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.revoke()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
