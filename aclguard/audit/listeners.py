"""Standard authorization listeners."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from typing import Callable

from pydantic import BaseModel

from aclguard.audit.chain import AuditChain
from aclguard.audit.models import AuditEvent
from aclguard.authz.models import AuthorizationDecision

logger = logging.getLogger(__name__)


class LoggingAuditListener:
    """Logs grants at INFO and denials at WARNING."""

    def __init__(self, logger_name: str = "aclguard.audit.decisions"):
        self._logger = logging.getLogger(logger_name)

    def __call__(self, decision: AuthorizationDecision) -> None:
        if decision.granted:
            self._logger.info("Authorization granted: %s", decision.describe())
        else:
            self._logger.warning("Authorization denied: %s", decision.describe())


class AuditTrailListener:
    """Appends every decision to a hash-chained audit trail."""

    def __init__(self, chain: AuditChain):
        self.chain = chain

    def __call__(self, decision: AuthorizationDecision) -> None:
        self.chain.append_event(AuditEvent.from_decision(decision))


class DenialAlert(BaseModel):
    """Raised to the alert callback when a principal is denied too often."""

    principal_id: str
    denials: int
    window_seconds: float
    last_operation: str
    last_reason: str


class DenialMonitor:
    """Sliding-window count of denials per principal.

    When a principal collects ``threshold`` denials within
    ``window_seconds``, the alert callback is called, a CRITICAL line is
    logged and the principal's window starts over.

    Memory is bounded: at most ``max_principals`` windows are tracked,
    least recently denied first out.
    """

    def __init__(
        self,
        threshold: int = 10,
        window_seconds: float = 60,
        on_alert: Callable[[DenialAlert], None] | None = None,
        max_principals: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.on_alert = on_alert
        self.max_principals = max_principals
        self._clock = clock
        self._windows: OrderedDict[str, deque[float]] = OrderedDict()
        self._lock = threading.Lock()
        self.alerts_raised = 0

    def __call__(self, decision: AuthorizationDecision) -> None:
        if decision.granted:
            return

        principal_id = decision.principal_id or "<anonymous>"
        now = self._clock()
        cutoff = now - self.window_seconds

        with self._lock:
            window = self._windows.get(principal_id)
            if window is None:
                window = deque(maxlen=self.threshold)
                self._windows[principal_id] = window
                while len(self._windows) > self.max_principals:
                    self._windows.popitem(last=False)
            else:
                self._windows.move_to_end(principal_id)

            while window and window[0] <= cutoff:
                window.popleft()
            window.append(now)

            if len(window) < self.threshold:
                return
            denials = len(window)
            window.clear()
            self.alerts_raised += 1

        alert = DenialAlert(
            principal_id=principal_id,
            denials=denials,
            window_seconds=self.window_seconds,
            last_operation=decision.operation,
            last_reason=decision.reason.value,
        )
        logger.critical(
            "Repeated authorization denials: principal=%s denials=%d window=%ss last=%s (%s)",
            alert.principal_id, alert.denials, alert.window_seconds,
            alert.last_operation, alert.last_reason,
        )
        if self.on_alert is not None:
            self.on_alert(alert)

    def denial_count(self, principal_id: str) -> int:
        """Denials currently inside the principal's window."""
        cutoff = self._clock() - self.window_seconds
        with self._lock:
            window = self._windows.get(principal_id)
            if window is None:
                return 0
            return sum(1 for ts in window if ts > cutoff)


class DecisionMetrics:
    """Counters of decisions by outcome and reason."""

    def __init__(self):
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()
        self.granted = 0
        self.denied = 0

    def __call__(self, decision: AuthorizationDecision) -> None:
        with self._lock:
            if decision.granted:
                self.granted += 1
            else:
                self.denied += 1
            reason = decision.reason.value
            self._counts[reason] = self._counts.get(reason, 0) + 1

    def by_reason(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    @property
    def total(self) -> int:
        return self.granted + self.denied
