"""Bank of Georgia payment manager API client.

Handles the OAuth2 client-credentials token, hosted order creation,
callback parsing and receipt lookup.  See https://api.bog.ge/docs/en/payments/
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import NamedTuple, Optional

import requests
from requests.exceptions import RequestException

from config_models import BogConfig
from errors import GatewayError
from models import VALID_PAYMENT_TYPES

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN_SECONDS = 60
REQUEST_TIMEOUT_SECONDS = 30
SUCCESS_STATUS = "completed"
SUCCESS_CODE = "100"
REJECTED_STATUS = "rejected"


class GatewayClientError(GatewayError):
    """Raised when the BOG API cannot be reached or answers with an error."""


class ExternalOrderRef(NamedTuple):
    tenant_id: int
    payment_type: str
    payment_id: int


def build_external_order_id(tenant_id: int, payment_type: str, payment_id: int) -> str:
    return f"{tenant_id}:{payment_type}:{payment_id}"


def parse_external_order_id(value: Optional[str]) -> Optional[ExternalOrderRef]:
    """Split ``<tenant_id>:<payment_type>:<payment_id>``; None if malformed."""
    parts = (value or "").split(":")
    if len(parts) != 3 or parts[1] not in VALID_PAYMENT_TYPES:
        return None
    try:
        return ExternalOrderRef(int(parts[0]), parts[1], int(parts[2]))
    except ValueError:
        return None


def transaction_id_for(external_order_id: str) -> str:
    return f"BOG-{external_order_id}"


def mask_email(email: Optional[str]) -> str:
    if not email or "@" not in email:
        return "***@***"
    local, domain = email.split("@", 1)
    if len(local) <= 2:
        masked = local[:1] + "***"
    else:
        masked = local[0] + "***" + local[-1]
    return f"{masked}@{domain}"


@dataclass
class BogOrder:
    order_id: str
    redirect_url: str
    details_url: Optional[str] = None


@dataclass
class BogCallback:
    event: str
    order_id: str
    external_order_id: Optional[str]
    status: Optional[str]
    code: str = ""
    transfer_amount: str = "0"
    reject_reason: Optional[str] = None

    @property
    def is_successful(self) -> bool:
        return self.status == SUCCESS_STATUS and self.code == SUCCESS_CODE

    @property
    def is_rejected(self) -> bool:
        return self.status == REJECTED_STATUS


def parse_callback(payload) -> Optional[BogCallback]:
    """Extract the fields we act on from a decoded callback; None if unusable."""
    if not isinstance(payload, dict):
        return None
    body = payload.get("body")
    if not isinstance(body, dict) or not body.get("order_id") or not payload.get("event"):
        return None
    order_status = body.get("order_status") or {}
    payment_detail = body.get("payment_detail") or {}
    purchase_units = body.get("purchase_units") or {}
    return BogCallback(
        event=payload["event"],
        order_id=str(body["order_id"]),
        external_order_id=body.get("external_order_id"),
        status=order_status.get("key"),
        code=str(payment_detail.get("code") or ""),
        transfer_amount=str(purchase_units.get("transfer_amount") or "0"),
        reject_reason=body.get("reject_reason"),
    )


def is_payment_successful(parsed: Optional[BogCallback]) -> bool:
    return bool(parsed) and parsed.is_successful


class BogGateway:
    def __init__(self, config: BogConfig, http: Optional[requests.Session] = None):
        self.config = config
        self.http = http or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _credentials(self) -> tuple[str, str]:
        if not self.config.client_id or not self.config.client_secret:
            raise GatewayClientError("BOG client id and secret must be configured")
        return self.config.client_id, self.config.client_secret

    def get_access_token(self) -> str:
        """Return a bearer token, refreshing it shortly before expiry."""
        now = time.time()
        if self._token and self._token_expires_at > now + TOKEN_REFRESH_MARGIN_SECONDS:
            return self._token
        client_id, client_secret = self._credentials()
        try:
            response = self.http.post(
                self.config.oauth_url,
                auth=(client_id, client_secret),
                data={"grant_type": "client_credentials"},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            data = response.json()
        except (RequestException, ValueError) as e:
            logger.error("BOG OAuth request failed: %s", e)
            raise GatewayClientError(f"BOG OAuth failed: {e}") from e
        self._token = data.get("access_token")
        if not self._token:
            raise GatewayClientError("BOG OAuth response did not contain an access token")
        self._token_expires_at = now + float(data.get("expires_in") or 0)
        return self._token

    def create_order(
        self,
        external_order_id: str,
        amount: Decimal,
        description: str,
        customer_name: str = "",
        customer_email: str = "",
        idempotency_key: Optional[str] = None,
        ttl: int = 15,
    ) -> BogOrder:
        """Create a hosted payment order and return its redirect URL."""
        token = self.get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept-Language": "ka",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        total = float(Decimal(amount).quantize(Decimal("0.01")))
        payload = {
            "callback_url": self.config.callback_url,
            "external_order_id": external_order_id,
            "capture": "automatic",
            "ttl": min(1440, max(2, ttl)),
            "payment_method": ["card"],
            "buyer": {
                "full_name": customer_name,
                "masked_email": mask_email(customer_email),
            },
            "purchase_units": {
                "currency": "GEL",
                "total_amount": total,
                "total_discount_amount": 0,
                "basket": [
                    {
                        "product_id": external_order_id,
                        "description": description,
                        "quantity": 1,
                        "unit_price": total,
                        "total_price": total,
                    }
                ],
            },
            "redirect_urls": {
                "success": self.config.success_url,
                "fail": self.config.fail_url,
            },
        }
        try:
            logger.info("Creating BOG order for %s (amount=%s)", external_order_id, total)
            response = self.http.post(
                f"{self.config.api_url}/ecommerce/orders",
                headers=headers,
                json=payload,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            data = response.json()
        except (RequestException, ValueError) as e:
            logger.error("BOG create order failed for %s: %s", external_order_id, e)
            raise GatewayClientError(f"BOG create order failed: {e}") from e

        links = data.get("_links") or {}
        redirect_url = (links.get("redirect") or {}).get("href")
        if not redirect_url:
            raise GatewayClientError("BOG did not return a redirect URL")
        return BogOrder(
            order_id=str(data.get("id")),
            redirect_url=redirect_url,
            details_url=(links.get("details") or {}).get("href"),
        )

    def get_payment_details(self, order_id: str) -> Optional[dict]:
        """Fetch the receipt of *order_id*; None if BOG does not know it."""
        token = self.get_access_token()
        try:
            response = self.http.get(
                f"{self.config.api_url}/receipt/{order_id}",
                headers={"Authorization": f"Bearer {token}"},
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except (RequestException, ValueError) as e:
            logger.error("BOG receipt lookup failed for %s: %s", order_id, e)
            raise GatewayClientError(f"BOG get details failed: {e}") from e
