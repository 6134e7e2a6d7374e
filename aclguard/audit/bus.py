"""Authorization event bus.

Every decision is published here. Delivery is synchronous and in
subscription order. A failing listener is logged and skipped; it never
changes the decision or stops delivery to the others.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Literal
from uuid import uuid4

from aclguard.authz.models import AuthorizationDecision

logger = logging.getLogger(__name__)

Listener = Callable[[AuthorizationDecision], None]
Outcome = Literal["granted", "denied"]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by ``subscribe``."""

    listener: Listener
    name: str
    outcome: Outcome | None = None
    subscription_id: str = field(default_factory=lambda: uuid4().hex)

    def accepts(self, decision: AuthorizationDecision) -> bool:
        if self.outcome is None:
            return True
        return decision.granted == (self.outcome == "granted")


class AuthorizationEventBus:
    """Fan-out of authorization decisions to listeners.

    Usage:
        bus = AuthorizationEventBus()
        bus.subscribe(LoggingAuditListener())
        bus.subscribe(alerts.on_denied, outcome="denied")

        bus.publish(decision)
    """

    def __init__(self):
        # Copy on write: publish iterates a snapshot without locking
        self._subscriptions: tuple[Subscription, ...] = ()
        self._lock = threading.Lock()
        self._published = 0
        self._failures = 0

    def subscribe(
        self,
        listener: Listener,
        *,
        name: str | None = None,
        outcome: Outcome | None = None,
    ) -> Subscription:
        """Register a listener.

        Args:
            listener: Callable receiving each decision
            name: Name used in logs (default: the listener's type or function name)
            outcome: Only deliver granted or only denied decisions
        """
        if outcome not in (None, "granted", "denied"):
            raise ValueError(f"Invalid outcome filter: {outcome!r}")
        subscription = Subscription(
            listener=listener,
            name=name or getattr(listener, "__name__", type(listener).__name__),
            outcome=outcome,
        )
        with self._lock:
            self._subscriptions = self._subscriptions + (subscription,)
        logger.debug("Subscribed listener %s (outcome=%s)", subscription.name, outcome)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        with self._lock:
            remaining = tuple(
                s for s in self._subscriptions
                if s.subscription_id != subscription.subscription_id
            )
            removed = len(remaining) != len(self._subscriptions)
            self._subscriptions = remaining
        return removed

    def publish(self, decision: AuthorizationDecision) -> int:
        """Deliver a decision to every matching listener.

        Returns:
            Number of listeners that handled the decision without error
        """
        subscriptions = self._subscriptions
        delivered = 0
        failures = 0
        for subscription in subscriptions:
            if not subscription.accepts(decision):
                continue
            try:
                subscription.listener(decision)
                delivered += 1
            except Exception:
                failures += 1
                logger.exception(
                    "Authorization listener %s failed on decision %s",
                    subscription.name, decision.decision_id,
                )

        with self._lock:
            self._published += 1
            self._failures += failures
        return delivered

    @property
    def subscriptions(self) -> tuple[Subscription, ...]:
        return self._subscriptions

    @property
    def published_count(self) -> int:
        return self._published

    @property
    def failure_count(self) -> int:
        return self._failures
