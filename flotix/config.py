import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from .errors import ConfigError


@dataclass(frozen=True)
class Settings:
    database_url: str
    payment_gateway: str = "mollie"  # 'mollie' | 'mock'
    mollie_api_key: str = ""
    mollie_api_url: str = "https://api.mollie.com/v2"
    public_url: str = "http://localhost:8000"
    redirect_url: str = "https://www.intheflo.xyz/thank-you"
    currency: str = "EUR"
    tax_rate: Decimal = Decimal("0.09")
    order_ttl_seconds: int = 2 * 3600
    admin_pass: str = ""
    mail_backend: str = "smtp"  # 'smtp' | 'memory'
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    mail_from: str = ""
    mock_webhook_url: str = ""
    log_level: str = "INFO"

    @property
    def webhook_url(self) -> str:
        return f"{self.public_url.rstrip('/')}/payments/webhook"

    def validate_url(self, code: str) -> str:
        return f"{self.public_url.rstrip('/')}/validate/{code}"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        database_url = env.get("DATABASE_URL")
        if not database_url:
            raise ConfigError("DATABASE_URL is required")

        try:
            tax_rate = Decimal(env.get("TAX_RATE", "0.09"))
        except InvalidOperation:
            raise ConfigError("TAX_RATE must be a decimal number")
        if tax_rate < 0:
            raise ConfigError("TAX_RATE must not be negative")

        gateway = env.get("PAYMENT_GATEWAY", "mollie").lower()
        if gateway not in ("mollie", "mock"):
            raise ConfigError("PAYMENT_GATEWAY must be 'mollie' or 'mock'")
        if gateway == "mollie" and not env.get("MOLLIE_API_KEY"):
            raise ConfigError("MOLLIE_API_KEY is required for mollie")

        mail_backend = env.get("MAIL_BACKEND", "smtp").lower()
        if mail_backend not in ("smtp", "memory"):
            raise ConfigError("MAIL_BACKEND must be 'smtp' or 'memory'")

        smtp_user = env.get("SMTP_USER", env.get("EMAIL_USER", ""))
        return cls(
            database_url=database_url,
            payment_gateway=gateway,
            mollie_api_key=env.get("MOLLIE_API_KEY", ""),
            mollie_api_url=env.get(
                "MOLLIE_API_URL", "https://api.mollie.com/v2"
            ),
            public_url=env.get(
                "PUBLIC_URL", env.get("RENDER_URL", "http://localhost:8000")
            ),
            redirect_url=env.get(
                "REDIRECT_URL", "https://www.intheflo.xyz/thank-you"
            ),
            currency=env.get("CURRENCY", "EUR").upper(),
            tax_rate=tax_rate,
            order_ttl_seconds=int(env.get("ORDER_TTL_SECONDS", "7200")),
            admin_pass=env.get("ADMIN_PASS", ""),
            mail_backend=mail_backend,
            smtp_host=env.get("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=int(env.get("SMTP_PORT", "587")),
            smtp_user=smtp_user,
            smtp_pass=env.get("SMTP_PASS", env.get("EMAIL_PASS", "")),
            mail_from=env.get(
                "MAIL_FROM", f'"MIXO Tickets" <{smtp_user}>' if smtp_user
                else ""
            ),
            mock_webhook_url=env.get("MOCK_WEBHOOK_URL", ""),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
