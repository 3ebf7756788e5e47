from dataclasses import dataclass, field
from decimal import Decimal


@dataclass
class AppConfig:
    name: str
    secret_key: str
    main_domains: list = field(default_factory=list)


@dataclass
class BillingConfig:
    setup_fee: Decimal
    monthly_subscription: Decimal
    grace_period_days: int
    scheduler_interval_ms: int
    scheduler_enabled: bool
    currency: str = "GEL"


@dataclass
class BogConfig:
    enabled: bool
    client_id: str
    client_secret: str
    oauth_url: str
    api_url: str
    callback_url: str
    success_url: str
    fail_url: str
    verify_signatures: bool
    public_key: str
