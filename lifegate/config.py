from __future__ import annotations
import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional

from .errors import ConfigError

_TRUTHY = {"1", "true", "yes", "on", "y"}

# attribute name -> environment variable, for error messages
_ENV_NAMES = {
    "database_url": "DATABASE_URL",
    "stripe_webhook_secret": "STRIPE_WEBHOOK_SECRET",
    "paystack_secret_key": "PAYSTACK_SECRET_KEY",
    "brevo_api_key": "BREVO_API_KEY",
    "brevo_sender_email": "BREVO_SENDER_EMAIL",
    "public_base_url": "PUBLIC_BASE_URL",
}


@dataclass(frozen=True)
class Settings:
    ledger_backend: str = "pg"  # 'pg' | 'redis'
    database_url: Optional[str] = None
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64

    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance: int = 300
    paystack_secret_key: Optional[str] = None

    brevo_api_key: Optional[str] = None
    brevo_sender_email: Optional[str] = None
    brevo_sender_name: str = "Life Gate Ministries"
    brevo_api_url: str = "https://api.brevo.com/v3/smtp/email"

    public_base_url: Optional[str] = None

    campaign_id: str = "global"
    campaign_goal_minor: int = 100_000_000  # kobo (NGN 1,000,000)
    campaign_auto_create: bool = True
    ministry_name: str = "Life Gate Ministries Worldwide"
    campaign_title: str = "Life Gate Ministries Campaign"

    ledger_max_attempts: int = 5

    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        def get(key: str, default: Optional[str] = None) -> Optional[str]:
            v = (env.get(key) or "").strip()
            return v or default

        return cls(
            ledger_backend=get("LEDGER_BACKEND", "pg").lower(),
            database_url=get("DATABASE_URL"),
            redis_url=get("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=int(get("REDIS_MAX_CONN", "64")),
            stripe_webhook_secret=get("STRIPE_WEBHOOK_SECRET"),
            stripe_webhook_tolerance=int(
                get("STRIPE_WEBHOOK_TOLERANCE", "300")
            ),
            paystack_secret_key=get("PAYSTACK_SECRET_KEY"),
            brevo_api_key=get("BREVO_API_KEY"),
            brevo_sender_email=get("BREVO_SENDER_EMAIL"),
            brevo_sender_name=get("BREVO_SENDER_NAME", "Life Gate Ministries"),
            brevo_api_url=get(
                "BREVO_API_URL", "https://api.brevo.com/v3/smtp/email"
            ),
            public_base_url=get("PUBLIC_BASE_URL"),
            campaign_id=get("CAMPAIGN_ID", "global"),
            campaign_goal_minor=int(get("CAMPAIGN_GOAL_MINOR", "100000000")),
            campaign_auto_create=(
                get("CAMPAIGN_AUTO_CREATE", "1").lower() in _TRUTHY
            ),
            ministry_name=get("MINISTRY_NAME", "Life Gate Ministries Worldwide"),
            campaign_title=get("CAMPAIGN_TITLE", "Life Gate Ministries Campaign"),
            ledger_max_attempts=max(1, int(get("LEDGER_MAX_ATTEMPTS", "5"))),
            session_secret=get("SESSION_SECRET", "dev-secret-change-me"),
            admin_username=get("ADMIN_USERNAME", "admin"),
            admin_password=get("ADMIN_PASSWORD", "supasecret"),
            log_level=get("LOG_LEVEL", "INFO").upper(),
        )

    def require(self, name: str) -> str:
        """Return a required setting or fail with the variable it came from."""
        if name not in {f.name for f in fields(self)}:
            raise AttributeError(name)
        value = getattr(self, name)
        if not value:
            raise ConfigError(f"Missing {_ENV_NAMES.get(name, name.upper())}")
        return value
