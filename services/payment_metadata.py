"""Typed payment metadata, one payload shape per payment type.

The JSON column stores ``{"type": <payment type>, ...fields}``.  Building
metadata through these classes rejects unknown keys and payloads tagged
with the wrong payment type.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import ClassVar, Optional

from errors import ValidationError
from models import PAYMENT_TYPE_MONTHLY, PAYMENT_TYPE_SETUP_FEE


@dataclass
class PaymentMetadata:
    processed_at: Optional[str] = None
    failed_at: Optional[str] = None
    error: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_status: Optional[str] = None
    gateway_code: Optional[str] = None

    payment_type: ClassVar[str] = ""

    def to_dict(self) -> dict:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        data["type"] = self.payment_type
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "PaymentMetadata":
        data = dict(data or {})
        tag = data.pop("type", cls.payment_type)
        if tag != cls.payment_type:
            raise ValidationError(
                f"Metadata tagged {tag!r} cannot be stored on a {cls.payment_type} payment"
            )
        allowed = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - allowed)
        if unknown:
            raise ValidationError(
                "Unknown payment metadata fields", details={"fields": unknown}
            )
        for key, value in data.items():
            if value is not None and not isinstance(value, str):
                raise ValidationError(
                    "Payment metadata values must be strings", details={"field": key}
                )
        return cls(**data)


@dataclass
class SetupFeeMetadata(PaymentMetadata):
    payment_type: ClassVar[str] = PAYMENT_TYPE_SETUP_FEE


@dataclass
class MonthlySubscriptionMetadata(PaymentMetadata):
    period_start: Optional[str] = None
    period_end: Optional[str] = None

    payment_type: ClassVar[str] = PAYMENT_TYPE_MONTHLY


METADATA_TYPES = {
    PAYMENT_TYPE_SETUP_FEE: SetupFeeMetadata,
    PAYMENT_TYPE_MONTHLY: MonthlySubscriptionMetadata,
}


def metadata_class(payment_type: str):
    try:
        return METADATA_TYPES[payment_type]
    except KeyError:
        raise ValidationError(f"Unknown payment type: {payment_type!r}") from None


def build_metadata(payment_type: str, existing: Optional[dict] = None, **updates) -> dict:
    """Validate *existing* metadata merged with *updates* and return the stored form."""
    cls = metadata_class(payment_type)
    merged = dict(existing or {})
    merged.update({k: v for k, v in updates.items() if v is not None})
    return cls.from_dict(merged).to_dict()
