"""Subscription lifecycle: the state machine behind tenant access.

States: TRIAL, ACTIVE, CANCELLED, EXPIRED.  Every public transition writes
the subscription row and the tenant's ``is_active`` flag in one
transaction; on any error the session is rolled back and nothing is
persisted.  The ``apply_*`` methods do *not* commit: they are called by
:class:`services.ledger.PaymentLedger` inside the payment's transaction.
"""

from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from config_models import BillingConfig
from errors import ConflictError, NotFoundError, StateError
from models import (
    PAYMENT_PAID,
    PAYMENT_TYPE_MONTHLY,
    PAYMENT_TYPE_SETUP_FEE,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_TRIAL,
    Payment,
    Subscription,
    Tenant,
)
from services.audit import log_action
from services.billing_period import compute_period
from utils import as_utc, isoformat, utc_now

logger = logging.getLogger(__name__)


@contextmanager
def transaction(session):
    """Commit on success, roll back and re-raise on any error."""
    try:
        yield
        session.commit()
    except Exception:
        session.rollback()
        raise


class SubscriptionLifecycle:
    def __init__(self, session, config: BillingConfig):
        self.session = session
        self.config = config

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, tenant_id: int) -> Optional[Subscription]:
        return self.session.query(Subscription).filter_by(tenant_id=tenant_id).first()

    def require(self, tenant_id: int) -> Subscription:
        sub = self.get(tenant_id)
        if sub is None:
            raise NotFoundError("Subscription not found")
        return sub

    def _tenant(self, tenant_id: int) -> Tenant:
        tenant = self.session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found")
        return tenant

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.config.grace_period_days)

    def grace_ends_at(self, sub: Subscription) -> datetime:
        return as_utc(sub.current_period_end) + self.grace_period

    def within_grace(self, sub: Subscription, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return now <= self.grace_ends_at(sub)

    # ------------------------------------------------------------------
    # Payment-driven transitions (run inside the ledger's transaction)
    # ------------------------------------------------------------------

    def apply_setup_fee(self, tenant_id: int, now: Optional[datetime] = None) -> Subscription:
        """(none) -> ACTIVE with a period starting *now*; activates the tenant.

        A tenant that already has a subscription keeps its single row: an
        ACTIVE/TRIAL row is left alone, a CANCELLED/EXPIRED one restarts
        like a renewal.
        """
        now = now or utc_now()
        tenant = self._tenant(tenant_id)
        sub = self.get(tenant_id)
        if sub is None:
            period = compute_period(now)
            sub = Subscription(
                tenant_id=tenant_id,
                status=SUBSCRIPTION_ACTIVE,
                current_period_start=period.period_start,
                current_period_end=period.period_end,
                next_billing_date=period.next_billing_date,
            )
            self.session.add(sub)
            log_action(
                "subscription_created", "subscription", None,
                f"Setup fee paid; period ends {period.period_end.date()}",
                tenant_id=tenant_id,
            )
            logger.info("Created subscription for tenant %s (period ends %s)",
                        tenant_id, period.period_end)
        elif sub.status in (SUBSCRIPTION_CANCELLED, SUBSCRIPTION_EXPIRED):
            self._restart_period(sub, now)
        tenant.is_active = True
        return sub

    def apply_renewal(self, tenant_id: int, now: Optional[datetime] = None) -> Subscription:
        """Extend the subscription by one period; ACTIVE -> ACTIVE.

        The new period starts at the old ``next_billing_date`` (the day
        after ``current_period_end``), or at *now* when that date has
        already passed.
        """
        now = now or utc_now()
        tenant = self._tenant(tenant_id)
        sub = self.require(tenant_id)
        self._restart_period(sub, now)
        tenant.is_active = True
        return sub

    def _restart_period(self, sub: Subscription, now: datetime) -> None:
        previous_next = as_utc(sub.next_billing_date)
        start = now if previous_next < now else previous_next
        period = compute_period(start)
        previous_status = sub.status
        sub.status = SUBSCRIPTION_ACTIVE
        sub.current_period_start = period.period_start
        sub.current_period_end = period.period_end
        sub.next_billing_date = period.next_billing_date
        sub.cancelled_at = None
        log_action(
            "subscription_renewed", "subscription", sub.id,
            f"{previous_status} -> ACTIVE; period {period.period_start.date()} - "
            f"{period.period_end.date()}",
            tenant_id=sub.tenant_id,
        )
        logger.info("Renewed subscription for tenant %s (%s -> ACTIVE, period ends %s)",
                    sub.tenant_id, previous_status, period.period_end)

    # ------------------------------------------------------------------
    # Time-driven transitions (reconciliation)
    # ------------------------------------------------------------------

    def lapse(self, tenant_id: int, now: Optional[datetime] = None) -> Optional[Subscription]:
        """ACTIVE -> CANCELLED once the period has ended unpaid.

        The tenant stays active for the grace period.  Returns None when
        the row no longer qualifies (renewed since it was selected).
        """
        now = now or utc_now()
        with transaction(self.session):
            self._tenant(tenant_id)
            sub = self.require(tenant_id)
            if sub.status != SUBSCRIPTION_ACTIVE or as_utc(sub.current_period_end) >= now:
                return None
            sub.status = SUBSCRIPTION_CANCELLED
            sub.cancelled_at = now
            log_action(
                "subscription_lapsed", "subscription", sub.id,
                f"Period ended {isoformat(sub.current_period_end)} without renewal",
                tenant_id=tenant_id,
            )
        logger.info("Subscription for tenant %s lapsed -> CANCELLED", tenant_id)
        return sub

    def expire(self, tenant_id: int, now: Optional[datetime] = None) -> Optional[Subscription]:
        """CANCELLED -> EXPIRED after the grace period; deactivates the tenant."""
        now = now or utc_now()
        with transaction(self.session):
            tenant = self._tenant(tenant_id)
            sub = self.require(tenant_id)
            if sub.status != SUBSCRIPTION_CANCELLED or self.within_grace(sub, now):
                return None
            sub.status = SUBSCRIPTION_EXPIRED
            tenant.is_active = False
            log_action(
                "subscription_expired", "subscription", sub.id,
                f"Grace period of {self.config.grace_period_days} days elapsed",
                tenant_id=tenant_id,
            )
        logger.info("Subscription for tenant %s expired; tenant deactivated", tenant_id)
        return sub

    # ------------------------------------------------------------------
    # Owner-driven transitions
    # ------------------------------------------------------------------

    def cancel(self, tenant_id: int, now: Optional[datetime] = None,
               user_id: Optional[int] = None) -> Subscription:
        """ACTIVE -> CANCELLED at the owner's request (end-of-period policy)."""
        now = now or utc_now()
        with transaction(self.session):
            self._tenant(tenant_id)
            sub = self.require(tenant_id)
            if sub.status == SUBSCRIPTION_CANCELLED:
                return sub
            if sub.status != SUBSCRIPTION_ACTIVE:
                raise StateError(f"Cannot cancel a subscription in status {sub.status}")
            sub.status = SUBSCRIPTION_CANCELLED
            sub.cancelled_at = now
            log_action(
                "subscription_cancelled", "subscription", sub.id,
                f"Cancelled by owner; access until {isoformat(sub.current_period_end)}",
                tenant_id=tenant_id, user_id=user_id,
            )
        logger.info("Subscription for tenant %s cancelled by owner", tenant_id)
        return sub

    def reactivate(self, tenant_id: int, ledger, now: Optional[datetime] = None,
                   user_id: Optional[int] = None) -> Subscription:
        """CANCELLED (within grace) -> ACTIVE for free; EXPIRED -> ACTIVE via payment."""
        now = now or utc_now()
        sub = self.require(tenant_id)
        tenant = self._tenant(tenant_id)
        if sub.status in (SUBSCRIPTION_ACTIVE, SUBSCRIPTION_TRIAL):
            raise StateError(f"Subscription is already {sub.status.lower()}")

        if sub.status == SUBSCRIPTION_CANCELLED and self.within_grace(sub, now):
            with transaction(self.session):
                sub.status = SUBSCRIPTION_ACTIVE
                sub.cancelled_at = None
                if not tenant.is_active:
                    tenant.is_active = True
                log_action(
                    "subscription_reactivated", "subscription", sub.id,
                    "Resumed within grace period without payment",
                    tenant_id=tenant_id, user_id=user_id,
                )
            logger.info("Subscription for tenant %s reactivated without payment", tenant_id)
            return sub

        # Expired (or cancelled past grace but not yet swept): a new period must be paid for
        payment = ledger.create_payment(
            tenant_id, user_id or tenant.owner_id, PAYMENT_TYPE_MONTHLY
        )
        ledger.process_mock_payment(payment.id, now=now)
        self.session.refresh(sub)
        logger.info("Subscription for tenant %s reactivated with payment %s",
                    tenant_id, payment.id)
        return sub

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def recover_subscription(self, tenant_id: int, user_id: Optional[int] = None,
                             now: Optional[datetime] = None) -> Optional[Subscription]:
        """Create the missing subscription for a tenant whose setup fee was paid.

        Returns the existing subscription when there is one and None when
        no paid setup fee exists.
        """
        existing = self.get(tenant_id)
        if existing is not None:
            return existing
        query = self.session.query(Payment).filter_by(
            tenant_id=tenant_id, type=PAYMENT_TYPE_SETUP_FEE, status=PAYMENT_PAID
        )
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        if query.first() is None:
            return None
        logger.warning("Recovering missing subscription for tenant %s (setup fee was paid)",
                       tenant_id)
        try:
            with transaction(self.session):
                sub = self.apply_setup_fee(tenant_id, now=now)
        except IntegrityError:
            # another request created it first
            existing = self.get(tenant_id)
            if existing is None:
                raise ConflictError("Subscription could not be recovered") from None
            return existing
        return sub

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def snapshot(self, sub: Subscription, now: Optional[datetime] = None) -> dict:
        now = now or utc_now()
        period_end = as_utc(sub.current_period_end)
        return {
            "id": sub.id,
            "tenant_id": sub.tenant_id,
            "status": sub.status,
            "current_period_start": isoformat(sub.current_period_start),
            "current_period_end": isoformat(period_end),
            "next_billing_date": isoformat(sub.next_billing_date),
            "cancelled_at": isoformat(sub.cancelled_at),
            "grace_ends_at": isoformat(self.grace_ends_at(sub)),
            "days_remaining": days_until(period_end, now),
        }


def days_until(moment: datetime, now: datetime) -> int:
    """Whole days from *now* until *moment*, rounded up; negative once past."""
    return math.ceil((moment - now).total_seconds() / 86400)
