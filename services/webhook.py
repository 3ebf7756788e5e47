"""Payment-provider callback ingestion.

Callbacks may arrive late, twice or out of order.  Correctness rests on
the unique ``transaction_id`` and the ledger's PENDING-only settlement, so
a redelivered callback is acknowledged without a second state change.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from config_models import BogConfig
from errors import SignatureError, ValidationError
from models import PAYMENT_FAILED, PAYMENT_PAID, TERMINAL_PAYMENT_STATUSES, Payment, Tenant
from services.bog_gateway import parse_callback, parse_external_order_id, transaction_id_for
from services.ledger import PaymentLedger

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Callback-Signature"

# Published by BOG for SHA256withRSA callback signatures
BOG_CALLBACK_PUBLIC_KEY = """-----BEGIN PUBLIC KEY-----
MIIBIjANBgkqhkiG9w0BAQEFAAOCAQ8AMIIBCgKCAQEAu4RUyAw3+CdkS3ZNILQh
zHI9Hemo+vKB9U2BSabppkKjzjjkf+0Sm76hSMiu/HFtYhqWOESryoCDJoqffY0Q
1VNt25aTxbj068QNUtnxQ7KQVLA+pG0smf+EBWlS1vBEAFbIas9d8c9b9sSEkTrr
TYQ90WIM8bGB6S/KLVoT1a7SnzabjoLc5Qf/SLDG5fu8dH8zckyeYKdRKSBJKvhx
tcBuHV4f7qsynQT+f2UYbESX/TLHwT5qFWZDHZ0YUOUIvb8n7JujVSGZO9/+ll/g
4ZIWhC1MlJgPObDwRkRd8NFOopgxMcMsDIZIoLbWKhHVq67hdbwpAq9K9WMmEhPn
PwIDAQAB
-----END PUBLIC KEY-----"""

Verifier = Callable[[bytes, Optional[str]], bool]


class NoopVerifier:
    """Accepts every callback."""

    def __call__(self, raw_body: bytes, signature: Optional[str]) -> bool:
        logger.debug("Callback signature verification disabled")
        return True


class BogSignatureVerifier:
    """Checks the base64 SHA256withRSA signature BOG sends over the raw body."""

    def __init__(self, public_key_pem: str = BOG_CALLBACK_PUBLIC_KEY):
        self.public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))

    def __call__(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not signature:
            logger.warning("Callback without %s header rejected", SIGNATURE_HEADER)
            return False
        try:
            self.public_key.verify(
                base64.b64decode(signature, validate=True),
                raw_body,
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except (InvalidSignature, ValueError):
            logger.warning("Callback signature verification failed")
            return False
        return True


def make_verifier(config: BogConfig) -> Verifier:
    if not config.verify_signatures:
        return NoopVerifier()
    return BogSignatureVerifier(config.public_key or BOG_CALLBACK_PUBLIC_KEY)


@dataclass
class IngestResult:
    action: str  # ignored | acknowledged | unmatched | duplicate | paid | failed
    payment_id: Optional[int] = None


class WebhookIngestor:
    def __init__(self, ledger: PaymentLedger, verifier: Optional[Verifier] = None):
        self.ledger = ledger
        self.verifier = verifier or NoopVerifier()

    def ingest(self, raw_body: bytes, headers) -> IngestResult:
        """Verify, decode and apply one BOG callback.

        Raises ValidationError for an empty or non-JSON body and
        SignatureError when verification fails.  Processing errors from
        the ledger propagate so the provider retries the delivery.
        """
        if not raw_body:
            raise ValidationError("Missing body")
        if not self.verifier(raw_body, headers.get(SIGNATURE_HEADER)):
            raise SignatureError("Invalid signature")
        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Invalid JSON") from None

        parsed = parse_callback(payload)
        if parsed is None or not parsed.external_order_id:
            logger.info("BOG callback without an order reference acknowledged")
            return IngestResult("ignored")

        external_id = parsed.external_order_id
        transaction_id = transaction_id_for(external_id)
        ref = parse_external_order_id(external_id)

        if not parsed.is_successful and not parsed.is_rejected:
            logger.info("BOG callback for %s with status %s acknowledged",
                        external_id, parsed.status)
            payment = self._find_payment(transaction_id, ref)
            return IngestResult("acknowledged", payment.id if payment else None)

        if parsed.is_rejected:
            logger.info("BOG payment rejected for %s (code=%s, reason=%s)",
                        external_id, parsed.code or "-", parsed.reject_reason or "-")
        else:
            logger.info("BOG payment completed for %s", external_id)

        payment = self._find_payment(transaction_id, ref)
        if payment is None:
            if ref is not None and self.ledger.get_payment(ref.payment_id) is not None:
                logger.warning("BOG order %s does not match payment %s; acknowledged",
                               external_id, ref.payment_id)
                return IngestResult("unmatched")
            payment = self._create_missing_payment(ref, external_id)
            if payment is None:
                return IngestResult("unmatched")

        if payment.status in TERMINAL_PAYMENT_STATUSES:
            logger.info("Duplicate BOG callback for payment %s (already %s)",
                        payment.id, payment.status)
            return IngestResult("duplicate", payment.id)
        if payment.transaction_id and payment.transaction_id != transaction_id:
            logger.warning("BOG order %s names payment %s bound to transaction %s; acknowledged",
                           external_id, payment.id, payment.transaction_id)
            return IngestResult("unmatched", payment.id)

        outcome = PAYMENT_PAID if parsed.is_successful else PAYMENT_FAILED
        settled = self.ledger.settle(
            payment.id,
            outcome,
            transaction_id,
            gateway_order_id=parsed.order_id,
            gateway_status=parsed.status,
            gateway_code=parsed.code or None,
            error=parsed.reject_reason if parsed.is_rejected else None,
        )
        if settled.status != outcome:
            return IngestResult("duplicate", settled.id)
        return IngestResult("paid" if outcome == PAYMENT_PAID else "failed", settled.id)

    def _find_payment(self, transaction_id: str, ref) -> Optional[Payment]:
        payment = self.ledger.find_by_transaction_id(transaction_id)
        if payment is not None or ref is None:
            return payment
        payment = self.ledger.get_payment(ref.payment_id)
        if payment is None or payment.tenant_id != ref.tenant_id or payment.type != ref.payment_type:
            return None
        return payment

    def _create_missing_payment(self, ref, external_id: str) -> Optional[Payment]:
        tenant = self.ledger.session.get(Tenant, ref.tenant_id) if ref else None
        if tenant is None:
            logger.warning("BOG callback for unknown order %s acknowledged", external_id)
            return None
        logger.warning("No payment found for BOG order %s; creating %s payment for tenant %s",
                       external_id, ref.payment_type, tenant.id)
        return self.ledger.create_payment(
            tenant.id, tenant.owner_id, ref.payment_type, payment_method="BOG"
        )
