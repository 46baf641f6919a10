"""Application configuration using pydantic-settings.

Reddit credentials, the lbrycrd node and the ledger database are all
configured through environment variables or a local .env file.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")
    dry_run: bool = Field(
        default=True, description="Simulate the lbrycrd node (no real transfers)"
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/tipbot.db",
        description="Database connection URL",
    )

    # ======================
    # Reddit
    # ======================
    reddit_client_id: str = Field(default="", description="Reddit OAuth client id")
    reddit_client_secret: str = Field(default="", description="Reddit OAuth client secret")
    reddit_username: str = Field(default="", description="Bot account username")
    reddit_password: str = Field(default="", description="Bot account password")
    reddit_user_agent: str = Field(
        default="lbryian/1.0.0 (by /u/lbryian)", description="User-Agent sent to Reddit"
    )
    bot_name: str = Field(default="lbryian", description="Username mentioned to trigger gilds")
    how_to_use_url: str = Field(
        default="https://www.reddit.com/r/lbry/wiki/tipbot",
        description="Help link appended to every reply",
    )
    token_max_age_minutes: int = Field(
        default=59, description="Refresh the bearer token once it is this old"
    )
    inbox_limit: int = Field(default=100, description="Unread messages fetched per cycle")

    # ======================
    # lbrycrd node
    # ======================
    lbrycrd_rpc_url: str = Field(
        default="http://127.0.0.1:9245", description="lbrycrd JSON-RPC URL"
    )
    lbrycrd_account: str = Field(default="tips", description="Wallet account holding tips")
    lbrycrd_txfee: Decimal = Field(
        default=Decimal("0.00002000"), description="Network fee; withdrawals must exceed it"
    )
    transaction_scan_limit: int = Field(
        default=1000, description="Transactions listed per deposit discovery pass"
    )
    confirmation_threshold: int = Field(
        default=3, description="Confirmations before a deposit is credited"
    )
    withdrawal_reconcile_grace: int = Field(
        default=600,
        description="Seconds before an unseen ambiguous withdrawal is considered failed",
    )

    # ======================
    # Rates and gilding
    # ======================
    rate_url: str = Field(
        default="https://api.lbry.io/lbc/exchange_rate", description="LBC/USD rate endpoint"
    )
    gild_price: Decimal = Field(default=Decimal("3.99"), description="Gild price in USD")
    gild_sink_username: str = Field(
        default="lbryian", description="Account credited with LBC spent on gilds"
    )

    # ======================
    # Timing
    # ======================
    http_timeout: float = Field(default=30.0, description="Timeout for external HTTP calls")
    bot_interval: int = Field(default=60, description="Seconds between inbox cycles")
    deposit_interval: int = Field(default=60, description="Seconds between deposit cycles")
    notification_retry_delay: float = Field(
        default=2.0, description="Delay after a failed completed-deposit notification"
    )
    rate_limit_delay: float = Field(
        default=5.0, description="Delay before retrying a rate-limited send"
    )
    notification_max_attempts: int = Field(
        default=2, description="Attempts per notification when rate limited"
    )
    lock_timeout: float = Field(default=30.0, description="Per-user lock acquisition timeout")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "database_url": self._redact_url(self.database_url),
            "reddit": {
                "username": self.reddit_username or "(not set)",
                "client_id": "***" if self.reddit_client_id else "(not set)",
                "client_secret": "***" if self.reddit_client_secret else "(not set)",
                "password": "***" if self.reddit_password else "(not set)",
                "bot_name": self.bot_name,
            },
            "lbrycrd": {
                "rpc": self._redact_url(self.lbrycrd_rpc_url),
                "account": self.lbrycrd_account,
                "txfee": str(self.lbrycrd_txfee),
                "confirmations": self.confirmation_threshold,
            },
            "gild": {
                "price": str(self.gild_price),
                "sink": self.gild_sink_username,
            },
            "intervals": {
                "bot": self.bot_interval,
                "deposits": self.deposit_interval,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact credentials embedded in a URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
