from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

# Ensure the repository root is importable in pytest runs.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from walletpnl import create_app
from walletpnl.config import Settings
from walletpnl.db import Base, build_engine, make_session_factory
from walletpnl.services.cache import TTLCache
from walletpnl.services.display_names import DisplayNameStore
from walletpnl.services.etherscan import NormalTransaction, TransferRecord
from walletpnl.services.pricing import PricingService
from walletpnl.services.wallet import WalletService

WALLET = "0x" + "11" * 20
TOKEN = "0x" + "22" * 20
USDC = "0x" + "33" * 20
OTHER = "0x" + "44" * 20
PRIVATE_KEY = "0x" + "ab" * 32

# Minute-aligned "now".
NOW_MS = 1_700_000_040_000


def make_transfer(
    ts_seconds: int,
    value: int,
    incoming: bool = True,
    block: int = 1,
    tx_index: int = 0,
    wallet: str = WALLET,
    counterparty: str = OTHER,
    tx_hash: str = "",
    symbol: str = "TKN",
    decimals: str = "6",
) -> TransferRecord:
    return TransferRecord(
        from_address=counterparty if incoming else wallet,
        to_address=wallet if incoming else counterparty,
        raw_amount=str(value),
        timestamp_seconds=str(ts_seconds),
        block_number=str(block),
        transaction_index=str(tx_index),
        tx_hash=tx_hash or f"0x{ts_seconds:064x}",
        token_symbol=symbol,
        token_decimal=decimals,
    )


class ManualClock:
    """Millisecond clock that only moves when a test advances it."""

    def __init__(self, now_ms: int = NOW_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class FakeHistorySource:
    """In-memory paginated transfer log, newest-first like Etherscan with sort=desc."""

    def __init__(self) -> None:
        self.transfers: dict[str, list[TransferRecord]] = {}
        self.normal_transactions: list[NormalTransaction] = []
        self.error: Exception | None = None
        self.calls: list[dict] = []

    def add_transfers(self, contract: str, records: list[TransferRecord]) -> None:
        rows = self.transfers.setdefault(contract.lower(), [])
        rows.extend(records)
        rows.sort(key=lambda record: int(record.timestamp_seconds), reverse=True)

    def get_token_transfers(self, address, contract_address, sort="desc", page=1, offset=250):
        self.calls.append(
            {"address": address, "contract": contract_address, "sort": sort, "page": page, "offset": offset}
        )
        if self.error is not None:
            raise self.error
        rows = list(self.transfers.get(contract_address.lower(), []))
        if sort == "asc":
            rows.reverse()
        start = (page - 1) * offset
        return rows[start : start + offset]

    def get_normal_transactions(self, address, sort="desc", page=1, offset=50):
        if self.error is not None:
            raise self.error
        rows = list(self.normal_transactions)
        if sort == "desc":
            rows.reverse()
        return rows[(page - 1) * offset : page * offset]


class FakeChain:
    """Deterministic stand-in for JSON-RPC reads and the USDC transfer."""

    def __init__(self) -> None:
        self.balances: dict[tuple[str, str], int] = {}
        self.eth_balances: dict[str, int] = {}
        self.decimals: dict[str, int] = {}
        self.symbols: dict[str, str] = {}
        self.signer = WALLET
        self.transfer_error: Exception | None = None
        self.balance_error: Exception | None = None
        self.sent: list[tuple[str, str, int]] = []

    def set_balance(self, token: str, owner: str, raw: int) -> None:
        self.balances[(token.lower(), owner.lower())] = raw

    def token_balance(self, token: str, owner: str) -> int:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get((token.lower(), owner.lower()), 0)

    def token_decimals(self, token: str) -> int:
        return self.decimals.get(token.lower(), 6)

    def token_symbol(self, token: str) -> str:
        symbol = self.symbols.get(token.lower())
        if symbol is None:
            raise RuntimeError("symbol() reverted")
        return symbol

    def eth_balance(self, owner: str) -> int:
        return self.eth_balances.get(owner.lower(), 0)

    def signer_address(self, private_key: str) -> str:
        return self.signer

    def transfer_token(self, token: str, private_key: str, to: str, amount_raw: int) -> str:
        if self.transfer_error is not None:
            raise self.transfer_error
        self.sent.append((token, to, amount_raw))
        self.balances[(token.lower(), self.signer.lower())] = (
            self.balances.get((token.lower(), self.signer.lower()), 0) - amount_raw
        )
        return "0x" + "ef" * 32


def make_settings(**overrides) -> Settings:
    values = {
        "wallet_address": WALLET,
        "wallet_private_key": PRIVATE_KEY,
        "usdc_address": USDC,
        "usdc_decimals_raw": "6",
        "tracked_token_address": TOKEN,
        "tracked_token_decimals_raw": "6",
        "tracked_token_price_usd_raw": "1",
        "tracked_token_price_symbol": "",
        "etherscan_base_url": "https://etherscan.io",
        "cache_ttl_seconds": 60,
        "pnl_page_size": 3,
        "pnl_max_pages": 2,
        "deposit_page_size": 40,
        "deposit_limit": 8,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def session_factory():
    engine = build_engine("sqlite://", poolclass=StaticPool)
    SessionLocal = make_session_factory(engine)

    from walletpnl import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    yield SessionLocal
    engine.dispose()


@pytest.fixture()
def clock():
    return ManualClock()


@pytest.fixture()
def history():
    return FakeHistorySource()


@pytest.fixture()
def chain():
    fake = FakeChain()
    fake.symbols[TOKEN.lower()] = "TKN"
    return fake


@pytest.fixture()
def settings():
    return make_settings()


@pytest.fixture()
def wallet_service(settings, history, chain, clock, session_factory):
    cache = TTLCache(clock=clock)
    return WalletService(
        settings=settings,
        history=history,
        chain=chain,
        pricing=PricingService(configured_price_usd=settings.tracked_token_price_usd, cache=cache),
        display_names=DisplayNameStore(session_factory),
        cache=cache,
        clock=clock,
    )


@pytest.fixture()
def client(wallet_service):
    app = create_app(wallet_service=wallet_service, enable_startup_init=False)
    with TestClient(app) as test_client:
        yield test_client
