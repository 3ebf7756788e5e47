"""Periodic subscription reconciliation.

Each pass lapses ACTIVE subscriptions whose period ended unpaid, then
expires CANCELLED ones whose grace period is over.  A failure for one
tenant is rolled back, logged and collected; the rest of the batch runs.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from models import SUBSCRIPTION_ACTIVE, SUBSCRIPTION_CANCELLED, Subscription
from services.subscription import SubscriptionLifecycle
from utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    processed: int = 0
    errors: list = field(default_factory=list)


@dataclass
class ReconcileResult:
    lapsed: SweepResult
    expired: SweepResult

    @property
    def processed(self) -> int:
        return self.lapsed.processed + self.expired.processed

    @property
    def errors(self) -> list:
        return self.lapsed.errors + self.expired.errors

    def to_dict(self) -> dict:
        return {
            "lapsed": {"processed": self.lapsed.processed, "errors": self.lapsed.errors},
            "expired": {"processed": self.expired.processed, "errors": self.expired.errors},
        }


def _sweep(session, tenant_ids: list[int], transition, now: datetime, label: str) -> SweepResult:
    result = SweepResult()
    for tenant_id in tenant_ids:
        try:
            if transition(tenant_id, now=now) is not None:
                result.processed += 1
        except Exception as e:
            session.rollback()
            logger.error("%s failed for tenant %s: %s", label, tenant_id, e)
            result.errors.append({"tenant_id": tenant_id, "error": str(e)})
    return result


def reconcile(now: Optional[datetime] = None,
              lifecycle: Optional[SubscriptionLifecycle] = None) -> ReconcileResult:
    """Run the lapse sweep then the expiry sweep.  Safe to repeat."""
    if lifecycle is None:
        from services.billing import get_lifecycle
        lifecycle = get_lifecycle()
    now = now or utc_now()
    session = lifecycle.session

    lapse_ids = [
        row.tenant_id
        for row in session.query(Subscription.tenant_id)
        .filter(
            Subscription.status == SUBSCRIPTION_ACTIVE,
            Subscription.current_period_end < now,
        )
        .all()
    ]
    lapsed = _sweep(session, lapse_ids, lifecycle.lapse, now, "Lapse")

    cutoff = now - lifecycle.grace_period
    expire_ids = [
        row.tenant_id
        for row in session.query(Subscription.tenant_id)
        .filter(
            Subscription.status == SUBSCRIPTION_CANCELLED,
            Subscription.current_period_end < cutoff,
        )
        .all()
    ]
    expired = _sweep(session, expire_ids, lifecycle.expire, now, "Expiry")

    logger.info(
        "Reconciliation finished: %s lapsed, %s expired, %s errors",
        lapsed.processed, expired.processed, len(lapsed.errors) + len(expired.errors),
    )
    return ReconcileResult(lapsed=lapsed, expired=expired)


class ReconciliationScheduler:
    """Runs :func:`reconcile` now and then every *interval_seconds*.

    A tick that starts while the previous one is still running is skipped.
    """

    def __init__(self, app, interval_seconds: float):
        self.app = app
        self.interval_seconds = interval_seconds
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> Optional[ReconcileResult]:
        if not self._lock.acquire(blocking=False):
            logger.warning("Reconciliation still running; tick skipped")
            return None
        try:
            with self.app.app_context():
                return reconcile()
        except Exception:
            logger.exception("Reconciliation tick failed")
            return None
        finally:
            self._lock.release()

    def _run(self):
        self.tick()
        while not self._stop.wait(self.interval_seconds):
            self.tick()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="subscription-reconciliation", daemon=True
        )
        self._thread.start()
        logger.info("Subscription reconciliation scheduled every %s seconds",
                    self.interval_seconds)

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Subscription reconciliation stopped")
