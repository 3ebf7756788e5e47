"""Payment ledger: payment attempts and their single terminal outcome."""

from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from config_models import BillingConfig
from errors import ConflictError, NotFoundError, StateError, ValidationError
from models import (
    PAYMENT_FAILED,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_TYPE_MONTHLY,
    PAYMENT_TYPE_SETUP_FEE,
    TERMINAL_PAYMENT_STATUSES,
    VALID_PAYMENT_METHODS,
    VALID_PAYMENT_TYPES,
    Payment,
    Tenant,
)
from services.audit import log_action
from services.payment_metadata import build_metadata
from services.subscription import SubscriptionLifecycle
from utils import isoformat, utc_now

logger = logging.getLogger(__name__)


def price_table(config: BillingConfig) -> dict[str, Decimal]:
    return {
        PAYMENT_TYPE_SETUP_FEE: config.setup_fee,
        PAYMENT_TYPE_MONTHLY: config.monthly_subscription,
    }


def mock_transaction_id() -> str:
    return f"MOCK-{int(time.time() * 1000)}-{secrets.token_hex(5)}"


class PaymentLedger:
    def __init__(self, session, config: BillingConfig, lifecycle: SubscriptionLifecycle):
        self.session = session
        self.config = config
        self.lifecycle = lifecycle

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_payment(self, tenant_id: int, user_id: int, payment_type: str,
                       payment_method: str = "MOCK") -> Payment:
        """Insert a PENDING payment priced from the configured table."""
        if payment_type not in VALID_PAYMENT_TYPES:
            raise ValidationError(f"Unknown payment type: {payment_type!r}")
        if payment_method not in VALID_PAYMENT_METHODS:
            raise ValidationError(f"Unknown payment method: {payment_method!r}")
        if self.session.get(Tenant, tenant_id) is None:
            raise NotFoundError("Tenant not found")
        payment = Payment(
            tenant_id=tenant_id,
            user_id=user_id,
            type=payment_type,
            amount=price_table(self.config)[payment_type],
            currency=self.config.currency,
            status=PAYMENT_PENDING,
            payment_method=payment_method,
            payment_metadata=build_metadata(payment_type),
        )
        self.session.add(payment)
        self.session.commit()
        logger.info("Created %s payment %s for tenant %s (amount=%s)",
                    payment_type, payment.id, tenant_id, payment.amount)
        return payment

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settle(self, payment_id: int, outcome: str, transaction_id: Optional[str] = None,
               now: Optional[datetime] = None, **metadata) -> Payment:
        """Move a PENDING payment to PAID or FAILED exactly once.

        Settling an already-terminal payment is a no-op that returns the
        stored record.  On PAID the subscription transition runs in the
        same transaction as the status update.
        """
        if outcome not in TERMINAL_PAYMENT_STATUSES:
            raise ValidationError(f"Invalid settlement outcome: {outcome!r}")
        now = now or utc_now()
        payment = self.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.status in TERMINAL_PAYMENT_STATUSES:
            logger.info("Payment %s already %s; settlement ignored", payment_id, payment.status)
            return payment
        if transaction_id and payment.transaction_id and payment.transaction_id != transaction_id:
            raise ConflictError(
                "Payment is bound to a different transaction",
                details={"transaction_id": payment.transaction_id},
            )
        if transaction_id:
            other = self.find_by_transaction_id(transaction_id)
            if other is not None and other.id != payment.id:
                raise ConflictError(
                    "Transaction id already recorded on another payment",
                    details={"transaction_id": transaction_id, "payment_id": other.id},
                )

        stamp = "processed_at" if outcome == PAYMENT_PAID else "failed_at"
        metadata[stamp] = now.isoformat()
        try:
            if outcome == PAYMENT_PAID:
                if payment.type == PAYMENT_TYPE_SETUP_FEE:
                    self.lifecycle.apply_setup_fee(payment.tenant_id, now=now)
                else:
                    sub = self.lifecycle.apply_renewal(payment.tenant_id, now=now)
                    metadata["period_start"] = isoformat(sub.current_period_start)
                    metadata["period_end"] = isoformat(sub.current_period_end)
            values = {
                "status": outcome,
                "payment_metadata": build_metadata(
                    payment.type, payment.payment_metadata, **metadata
                ),
                "updated_at": now,
            }
            if transaction_id:
                values["transaction_id"] = transaction_id
            result = self.session.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == PAYMENT_PENDING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # another writer settled it between our read and this update
                self.session.rollback()
                logger.info("Payment %s settled concurrently; returning stored record", payment_id)
                return self._reload(payment_id)
            log_action(
                "payment_settled", "payment", payment_id,
                f"{payment.type} {outcome} (transaction {transaction_id or '-'})",
                tenant_id=payment.tenant_id, user_id=payment.user_id,
            )
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            stored = self._reload(payment_id)
            if stored.status in TERMINAL_PAYMENT_STATUSES:
                # lost a race with another settlement of the same payment
                logger.info("Payment %s settled concurrently (%s); returning stored record",
                            payment_id, stored.status)
                return stored
            logger.error("Settlement of payment %s hit a constraint: %s", payment_id, e.orig)
            raise ConflictError(
                "Payment could not be settled because of a conflicting write",
                details={"transaction_id": transaction_id},
            ) from None
        except Exception:
            self.session.rollback()
            raise
        logger.info("Payment %s (%s) settled %s for tenant %s",
                    payment_id, payment.type, outcome, payment.tenant_id)
        return self._reload(payment_id)

    def process_mock_payment(self, payment_id: int, now: Optional[datetime] = None) -> Payment:
        """Synchronous mock-gateway settlement.

        A PAID payment is returned unchanged; a FAILED one must be replaced
        by a new payment.  Payments sent to BOG settle only through its
        callback.  If the subscription transition fails the payment
        is recorded as FAILED and the error is re-raised.
        """
        payment = self.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.status == PAYMENT_PAID:
            return payment
        if payment.status == PAYMENT_FAILED:
            raise StateError("Payment already failed. Please create a new payment.")
        if payment.payment_method == "BOG":
            raise StateError("Payment is awaiting BOG confirmation and cannot be processed here.")
        try:
            return self.settle(payment_id, PAYMENT_PAID, mock_transaction_id(), now=now)
        except (NotFoundError, StateError) as exc:
            self.settle(payment_id, PAYMENT_FAILED, now=now, error=exc.message)
            logger.error("Mock payment %s failed: %s", payment_id, exc.message)
            raise

    def attach_gateway_order(self, payment_id: int, transaction_id: str,
                             gateway_order_id: str) -> Payment:
        """Record the provider order created for a PENDING payment."""
        payment = self.get_payment(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.status != PAYMENT_PENDING:
            raise StateError(f"Payment is already {payment.status.lower()}")
        payment.transaction_id = transaction_id
        payment.payment_method = "BOG"
        payment.payment_metadata = build_metadata(
            payment.type, payment.payment_metadata, gateway_order_id=gateway_order_id
        )
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError(
                "Transaction id already recorded on another payment",
                details={"transaction_id": transaction_id},
            ) from None
        logger.info("Payment %s attached to BOG order %s", payment_id, gateway_order_id)
        return payment

    def _reload(self, payment_id: int) -> Payment:
        payment = self.session.get(Payment, payment_id)
        self.session.refresh(payment)
        return payment

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_payment(self, payment_id: int) -> Optional[Payment]:
        return self.session.get(Payment, payment_id)

    def find_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        return self.session.query(Payment).filter_by(transaction_id=transaction_id).first()

    def get_user_payments(self, user_id: int) -> list[Payment]:
        return (
            self.session.query(Payment)
            .filter_by(user_id=user_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .all()
        )

    def get_tenant_payments(self, tenant_id: int) -> list[Payment]:
        return (
            self.session.query(Payment)
            .filter_by(tenant_id=tenant_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .all()
        )

    def get_or_create_pending_setup_fee(self, user) -> Optional[Payment]:
        """Return the user's pending setup fee.

        Tenants created before billing existed have neither a subscription
        nor a setup-fee payment; one is created for the first such tenant.
        """
        pending = (
            self.session.query(Payment)
            .filter_by(user_id=user.id, type=PAYMENT_TYPE_SETUP_FEE, status=PAYMENT_PENDING)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .first()
        )
        if pending is not None:
            return pending
        for tenant in user.owned_tenants:
            if tenant.subscription is None:
                logger.info("Tenant %s has no subscription; creating setup fee payment",
                            tenant.subdomain)
                return self.create_payment(tenant.id, user.id, PAYMENT_TYPE_SETUP_FEE)
        return None


def payment_to_dict(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "user_id": payment.user_id,
        "tenant_id": payment.tenant_id,
        "type": payment.type,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "payment_method": payment.payment_method,
        "transaction_id": payment.transaction_id,
        "metadata": payment.payment_metadata or {},
        "created_at": isoformat(payment.created_at),
        "updated_at": isoformat(payment.updated_at),
    }
