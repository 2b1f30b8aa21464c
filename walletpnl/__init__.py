from __future__ import annotations

import logging

from fastapi import FastAPI

from walletpnl.config import Settings, settings as default_settings
from walletpnl.db import SessionLocal, init_db
from walletpnl.routes import wallet
from walletpnl.services.cache import TTLCache
from walletpnl.services.chain import ChainGateway
from walletpnl.services.display_names import DisplayNameStore
from walletpnl.services.etherscan import EtherscanClient
from walletpnl.services.pricing import PricingService, QuoteProvider, YFinanceProvider
from walletpnl.services.wallet import WalletService

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.strip().upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_wallet_service(config: Settings) -> WalletService:
    """Wire the default collaborators from configuration."""
    cache = TTLCache()

    provider: QuoteProvider | None = None
    if config.tracked_token_price_symbol:
        try:
            provider = YFinanceProvider()
        except Exception:
            logger.warning("yfinance unavailable, using TRACKED_TOKEN_PRICE_USD")
            provider = None

    pricing = PricingService(
        configured_price_usd=config.tracked_token_price_usd,
        provider=provider,
        symbol=config.tracked_token_price_symbol,
        cache=cache,
        ttl_seconds=config.cache_ttl_seconds,
    )
    history = EtherscanClient(
        api_url=config.etherscan_api_url,
        api_key=config.etherscan_api_key,
        chain_id=config.chain_id,
        timeout=config.etherscan_timeout_seconds,
        max_retries=config.etherscan_max_retries,
    )
    chain = ChainGateway(rpc_url=config.rpc_url, chain_id=config.chain_id)
    return WalletService(
        settings=config,
        history=history,
        chain=chain,
        pricing=pricing,
        display_names=DisplayNameStore(SessionLocal),
        cache=cache,
    )


def create_app(
    wallet_service: WalletService | None = None,
    enable_startup_init: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    configure_logging(default_settings.log_level)
    app = FastAPI(title=default_settings.app_name)

    app.state.wallet_service = wallet_service or build_wallet_service(default_settings)

    app.include_router(wallet.router)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    if enable_startup_init:

        @app.on_event("startup")
        def startup() -> None:
            init_db()

    return app
