from __future__ import annotations

import math
import os
from dataclasses import dataclass

from walletpnl.errors import ValidationError


CHAIN_EXPLORERS: dict[int, str] = {
    1: "https://etherscan.io",
    11155111: "https://sepolia.etherscan.io",
    5: "https://goerli.etherscan.io",
}


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


@dataclass(frozen=True)
class Settings:
    """Application configuration loaded from environment variables."""

    app_name: str = os.getenv("APP_NAME", "Wallet PnL")
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./walletpnl.db")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    cache_ttl_seconds: int = int(os.getenv("CACHE_TTL_SECONDS", "60"))
    pnl_page_size: int = int(os.getenv("PNL_PAGE_SIZE", "1000"))
    pnl_max_pages: int = int(os.getenv("PNL_MAX_PAGES", "40"))
    deposit_page_size: int = int(os.getenv("DEPOSIT_PAGE_SIZE", "40"))
    deposit_limit: int = int(os.getenv("DEPOSIT_LIMIT", "8"))
    etherscan_api_url: str = _env("ETHERSCAN_API_URL") or "https://api.etherscan.io/v2/api"
    etherscan_api_key: str = _env("ETHERSCAN_API_KEY")
    etherscan_base_url: str = _env("ETHERSCAN_BASE_URL")
    etherscan_timeout_seconds: float = float(os.getenv("ETHERSCAN_TIMEOUT_SECONDS", "20"))
    etherscan_max_retries: int = int(os.getenv("ETHERSCAN_MAX_RETRIES", "3"))
    chain_id_raw: str = _env("CHAIN_ID", "1")
    rpc_url: str = _env("RPC_URL")
    wallet_address: str = _env("WALLET_ADDRESS")
    wallet_private_key: str = _env("WALLET_PRIVATE_KEY")
    usdc_address: str = _env("USDC_ADDRESS")
    usdc_decimals_raw: str = _env("USDC_DECIMALS", "6")
    tracked_token_address: str = _env("TRACKED_TOKEN_ADDRESS")
    tracked_token_decimals_raw: str = _env("TRACKED_TOKEN_DECIMALS")
    tracked_token_price_usd_raw: str = _env("TRACKED_TOKEN_PRICE_USD", "1")
    tracked_token_price_symbol: str = _env("TRACKED_TOKEN_PRICE_SYMBOL")
    sqlite_busy_timeout_ms: int = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "30000"))
    sqlite_journal_mode: str = os.getenv("SQLITE_JOURNAL_MODE", "WAL")

    @property
    def cache_ttl_ms(self) -> int:
        return max(self.cache_ttl_seconds, 0) * 1000

    @property
    def chain_id(self) -> int:
        try:
            return int(self.chain_id_raw)
        except ValueError as exc:
            raise ValidationError(f"Invalid CHAIN_ID: {self.chain_id_raw}") from exc

    @property
    def explorer_base_url(self) -> str:
        if self.etherscan_base_url:
            return self.etherscan_base_url
        return CHAIN_EXPLORERS.get(self.chain_id, CHAIN_EXPLORERS[1])

    @property
    def usdc_decimals(self) -> int:
        return _parse_decimals("USDC_DECIMALS", self.usdc_decimals_raw)

    @property
    def tracked_token_decimals(self) -> int | None:
        """Configured override; ``None`` means read ``decimals()`` on chain."""
        if not self.tracked_token_decimals_raw:
            return None
        return _parse_decimals("TRACKED_TOKEN_DECIMALS", self.tracked_token_decimals_raw)

    @property
    def tracked_token_price_usd(self) -> float:
        raw = self.tracked_token_price_usd_raw
        try:
            price = float(raw)
        except ValueError as exc:
            raise ValidationError(f"Invalid TRACKED_TOKEN_PRICE_USD: {raw}") from exc
        if not math.isfinite(price) or price <= 0:
            raise ValidationError(f"Invalid TRACKED_TOKEN_PRICE_USD: {raw}")
        return price

    def require(self, field_name: str) -> str:
        """Return a required string setting or fail with the env var name."""
        value = getattr(self, field_name)
        if not value:
            raise ValidationError(f"Missing env: {field_name.upper()}")
        return value


def _parse_decimals(name: str, raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid {name}: {raw}") from exc
    if value < 0 or value > 36:
        raise ValidationError(f"Invalid {name}: {raw}")
    return value


settings = Settings()
