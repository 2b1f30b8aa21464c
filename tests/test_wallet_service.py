from __future__ import annotations

import pytest

import walletpnl
from tests.conftest import (
    NOW_MS,
    OTHER,
    TOKEN,
    USDC,
    WALLET,
    ManualClock,
    make_settings,
    make_transfer,
)
from walletpnl.errors import SourceError
from walletpnl.services.cache import TTLCache
from walletpnl.services.display_names import DisplayNameStore
from walletpnl.services.etherscan import EtherscanApiError, NormalTransaction
from walletpnl.services.pricing import PricingService
from walletpnl.services.wallet import (
    STATUS_ERROR,
    STATUS_NO_HISTORY,
    STATUS_OK,
    RangeKey,
    WalletService,
    friendly_tx_error,
)

NOW_S = NOW_MS // 1000
HOUR_MS = 60 * 60 * 1000


def _points(series):
    return [(point.timestamp_ms, point.usd_value) for point in series.points]


def _service_with(settings, history, chain, session_factory, clock=None) -> WalletService:
    clock = clock or ManualClock()
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


def test_injected_cache_is_shared(wallet_service) -> None:
    assert len(wallet_service.cache) == 0
    assert wallet_service.pricing.cache is wallet_service.cache


def test_empty_cache_passed_in_is_kept(settings, history, chain, session_factory) -> None:
    cache = TTLCache(clock=ManualClock())
    service = WalletService(
        settings=settings,
        history=history,
        chain=chain,
        pricing=PricingService(configured_price_usd=1.0, cache=cache),
        display_names=DisplayNameStore(session_factory),
        cache=cache,
    )

    assert service.cache is cache
    assert service.pricing.cache is cache


class _NoopProvider:
    def get_latest_quote(self, symbol: str):
        raise RuntimeError("offline")


def test_build_wallet_service_uses_one_store(monkeypatch) -> None:
    monkeypatch.setattr(walletpnl, "YFinanceProvider", lambda: _NoopProvider())
    service = walletpnl.build_wallet_service(
        make_settings(rpc_url="http://127.0.0.1:8545", tracked_token_price_symbol="ETH-USD")
    )

    assert isinstance(service.pricing.provider, _NoopProvider)
    assert service.pricing.cache is service.cache


# PnL series


def test_wallet_without_transfers_has_no_history(wallet_service) -> None:
    series = wallet_service.get_pnl_series("1H")

    assert series.status == STATUS_NO_HISTORY
    assert series.points == ()
    assert series.delta == 0.0
    assert series.message == "No token history for tracked token."


def test_pnl_series_replays_transfers_inside_the_window(wallet_service, history, chain) -> None:
    history.add_transfers(
        TOKEN,
        [
            make_transfer(NOW_S - 1800, 2_000_000, block=10),
            make_transfer(NOW_S - 600, 500_000, incoming=False, block=20),
        ],
    )
    chain.set_balance(TOKEN, WALLET, 1_500_000)

    series = wallet_service.get_pnl_series(RangeKey.ONE_HOUR)

    assert series.status == STATUS_OK
    assert series.message is None
    assert _points(series) == [
        (NOW_MS - HOUR_MS, 0.0),
        ((NOW_S - 1800) * 1000, 2.0),
        ((NOW_S - 600) * 1000, 1.5),
        (NOW_MS, 1.5),
    ]
    assert series.delta == pytest.approx(1.5)
    assert series.to_payload()["points"][0] == {"ts": NOW_MS - HOUR_MS, "value": 0.0}


def test_pnl_end_is_floored_to_the_minute(settings, history, chain, session_factory) -> None:
    clock = ManualClock(NOW_MS + 42_123)
    service = _service_with(settings, history, chain, session_factory, clock)
    history.add_transfers(TOKEN, [make_transfer(NOW_S - 60, 1_000_000)])
    chain.set_balance(TOKEN, WALLET, 1_000_000)

    series = service.get_pnl_series("1H")
    assert series.points[-1].timestamp_ms == NOW_MS
    assert series.points[0].timestamp_ms == NOW_MS - HOUR_MS


def test_all_time_range_starts_just_before_first_transfer(wallet_service, history, chain) -> None:
    first = NOW_S - 90 * 24 * 3600
    history.add_transfers(TOKEN, [make_transfer(first, 3_000_000), make_transfer(NOW_S - 60, 1_000_000)])
    chain.set_balance(TOKEN, WALLET, 4_000_000)

    series = wallet_service.get_pnl_series("ALL")

    assert series.status == STATUS_OK
    assert _points(series)[0] == (first * 1000 - 1, 0.0)
    assert _points(series)[-1] == (NOW_MS, 4.0)
    assert series.delta == pytest.approx(4.0)


def test_transfer_in_current_minute_stays_inside_the_series(
    settings, history, chain, session_factory
) -> None:
    clock = ManualClock(NOW_MS + 30_000)
    service = _service_with(settings, history, chain, session_factory, clock)
    history.add_transfers(TOKEN, [make_transfer(NOW_S + 10, 1_000_000)])
    chain.set_balance(TOKEN, WALLET, 1_000_000)

    for range_key in ("ALL", "1H"):
        series = service.get_pnl_series(range_key)
        timestamps = [point.timestamp_ms for point in series.points]

        assert series.status == STATUS_OK
        assert timestamps == sorted(set(timestamps))
        assert _points(series)[-1] == ((NOW_S + 10) * 1000, 1.0)
        assert series.delta == pytest.approx(1.0)

    assert _points(service.get_pnl_series("ALL"))[0] == ((NOW_S + 10) * 1000 - 1, 0.0)


def test_range_beyond_page_budget_is_an_error(wallet_service, history, chain) -> None:
    history.add_transfers(TOKEN, [make_transfer(NOW_S - 60 * idx, 1, block=idx) for idx in range(1, 8)])
    chain.set_balance(TOKEN, WALLET, 7)

    weekly = wallet_service.get_pnl_series("1W")
    assert weekly.status == STATUS_ERROR
    assert weekly.points == ()
    assert weekly.message == "PnL history is too large for the selected range. Try a shorter range."

    all_time = wallet_service.get_pnl_series("ALL")
    assert all_time.status == STATUS_ERROR
    assert all_time.message == "All-time history is too large. Try a shorter range."


def test_source_errors_are_reported_and_not_cached(wallet_service, history, chain) -> None:
    history.error = EtherscanApiError(
        "Etherscan rate limit reached. Retry in a few seconds.", SourceError.RATE_LIMIT
    )

    failed = wallet_service.get_pnl_series("1D")
    assert failed.status == STATUS_ERROR
    assert failed.message == "Etherscan rate limit reached. Retry in a few seconds."

    history.error = None
    history.add_transfers(TOKEN, [make_transfer(NOW_S - 60, 1_000_000)])
    chain.set_balance(TOKEN, WALLET, 1_000_000)

    recovered = wallet_service.get_pnl_series("1D")
    assert recovered.status == STATUS_OK


def test_pnl_results_are_cached_per_range(wallet_service, history, chain, clock) -> None:
    history.add_transfers(TOKEN, [make_transfer(NOW_S - 60, 1_000_000)])
    chain.set_balance(TOKEN, WALLET, 1_000_000)

    first = wallet_service.get_pnl_series("1H")
    calls_after_first = len(history.calls)
    assert wallet_service.get_pnl_series("1H") == first
    assert len(history.calls) == calls_after_first

    wallet_service.get_pnl_series("6H")
    assert len(history.calls) == calls_after_first + 1

    clock.advance(60_001)
    wallet_service.get_pnl_series("1H")
    assert len(history.calls) == calls_after_first + 2


def test_negative_reconstruction_is_flagged(wallet_service, history, chain) -> None:
    history.add_transfers(TOKEN, [make_transfer(NOW_S - 600, 1_000_000)])
    chain.set_balance(TOKEN, WALLET, 400_000)

    series = wallet_service.get_pnl_series("1H")

    assert series.status == STATUS_OK
    assert series.points[0].usd_value == pytest.approx(-0.6)
    assert series.message == "Token history looks incomplete: a reconstructed balance went negative."


def test_unknown_range_and_bad_address_are_errors(wallet_service) -> None:
    assert wallet_service.get_pnl_series("2Y").message == "Unknown range: 2Y"

    series = wallet_service.get_pnl_series("1H", public_key="not-an-address")
    assert series.status == STATUS_ERROR
    assert series.message == "Invalid publicKey. Pass a valid EVM address."


def test_missing_tracked_token_is_reported(history, chain, session_factory) -> None:
    service = _service_with(make_settings(tracked_token_address=""), history, chain, session_factory)

    series = service.get_pnl_series("1H")
    assert series.status == STATUS_ERROR
    assert series.message == "Missing env: TRACKED_TOKEN_ADDRESS"


def test_token_decimals_fall_back_to_chain(history, chain, session_factory) -> None:
    service = _service_with(
        make_settings(tracked_token_decimals_raw=""), history, chain, session_factory
    )
    chain.decimals[TOKEN.lower()] = 18
    history.add_transfers(TOKEN, [make_transfer(NOW_S - 60, 2 * 10**18)])
    chain.set_balance(TOKEN, WALLET, 2 * 10**18)

    series = service.get_pnl_series("1H")
    assert series.points[-1].usd_value == pytest.approx(2.0)


# Summary


def test_wallet_summary_collects_balances(wallet_service, history, chain) -> None:
    chain.set_balance(USDC, WALLET, 12_345_678)
    chain.set_balance(TOKEN, WALLET, 2_500_000)
    chain.eth_balances[WALLET.lower()] = 1_500_000_000_000_000_000
    history.normal_transactions = [
        NormalTransaction(
            block_number="1",
            timestamp_seconds="1600000000",
            tx_hash="0x01",
            from_address=WALLET,
            to_address=OTHER,
            value="0",
            is_error=False,
        )
    ]

    result = wallet_service.get_wallet_summary()

    assert result.status == STATUS_OK
    summary = result.summary
    assert summary.display_name == "My Wallet"
    assert summary.wallet_address == WALLET
    assert summary.managed_by_server is True
    assert summary.usdc_balance == "12.345678"
    assert summary.eth_balance == "1.5"
    assert summary.tracked_token_balance == "2.5"
    assert summary.tracked_token_symbol == "TKN"
    assert summary.portfolio_not_usdc_usd == pytest.approx(2.5)
    assert summary.joined_at == "Sep 2020"
    assert summary.explorer_base_url == "https://etherscan.io"


def test_summary_for_foreign_wallet_with_unreadable_symbol(wallet_service, chain) -> None:
    chain.symbols.clear()

    result = wallet_service.get_wallet_summary(OTHER)

    assert result.status == STATUS_OK
    assert result.summary.managed_by_server is False
    assert result.summary.tracked_token_symbol == "TOKEN"
    assert result.summary.joined_at == "—"


def test_summary_reports_rpc_failure(wallet_service, chain) -> None:
    chain.balance_error = RuntimeError("rpc down")

    result = wallet_service.get_wallet_summary()
    assert result.status == STATUS_ERROR
    assert result.message == "rpc down"


# Deposits


def test_deposit_info_lists_incoming_usdc_only(wallet_service, history) -> None:
    history.add_transfers(
        USDC,
        [
            make_transfer(1_000, 1_250_500_000, symbol="USDC", tx_hash="0xaa"),
            make_transfer(900, 5_000_000, incoming=False, symbol="USDC"),
            make_transfer(800, 1_000_000, symbol="USDC", tx_hash="0xbb"),
        ],
    )

    info = wallet_service.get_deposit_info()

    assert info.status == STATUS_OK
    assert info.address == WALLET
    assert info.address_url == f"https://etherscan.io/address/{WALLET}"
    assert [item.amount for item in info.deposits] == ["1,250.50", "1.00"]
    assert info.deposits[0].from_short == f"{OTHER[:6]}…{OTHER[-4:]}"
    assert info.deposits[0].tx_url == "https://etherscan.io/tx/0xaa"
    assert info.deposits[1].timestamp_ms == 800_000


def test_deposit_info_is_capped(wallet_service, history) -> None:
    history.add_transfers(USDC, [make_transfer(100 + idx, 1_000_000, symbol="USDC") for idx in range(12)])

    info = wallet_service.get_deposit_info()
    assert len(info.deposits) == 8
    assert info.deposits[0].timestamp_ms == 111_000


def test_deposit_info_without_deposits(wallet_service) -> None:
    info = wallet_service.get_deposit_info()
    assert info.status == STATUS_NO_HISTORY
    assert info.message == "No USDC deposit history yet."


def test_deposit_errors_are_not_cached(wallet_service, history) -> None:
    history.error = EtherscanApiError("Invalid Etherscan API key.", SourceError.INVALID_API_KEY)
    failed = wallet_service.get_deposit_info()
    assert failed.status == STATUS_ERROR
    assert failed.message == "Invalid Etherscan API key."

    history.error = None
    history.add_transfers(USDC, [make_transfer(100, 1_000_000, symbol="USDC")])
    assert wallet_service.get_deposit_info().status == STATUS_OK


def test_deposit_address(wallet_service) -> None:
    assert wallet_service.get_deposit_address().address == WALLET
    result = wallet_service.get_deposit_address("0x123")
    assert result.ok is False
    assert result.error == "Invalid publicKey. Pass a valid EVM address."


# Withdraw


def test_withdraw_sends_usdc_and_refreshes_cached_views(wallet_service, chain) -> None:
    chain.set_balance(USDC, WALLET, 10_000_000)
    assert wallet_service.get_wallet_summary().summary.usdc_balance == "10.0"

    result = wallet_service.withdraw_usdc(OTHER, "2,5")

    assert result.ok is True
    assert result.tx_hash == "0x" + "ef" * 32
    assert result.tx_url == f"https://etherscan.io/tx/{result.tx_hash}"
    assert chain.sent == [(USDC, OTHER, 2_500_000)]
    assert wallet_service.get_wallet_summary().summary.usdc_balance == "7.5"


def test_withdraw_drops_sender_pnl_and_deposit_entries(wallet_service, history, chain) -> None:
    chain.set_balance(USDC, WALLET, 10_000_000)
    chain.set_balance(TOKEN, WALLET, 1_000_000)
    history.add_transfers(TOKEN, [make_transfer(NOW_S - 60, 1_000_000)])
    history.add_transfers(USDC, [make_transfer(NOW_S - 120, 10_000_000, symbol="USDC")])

    wallet_service.get_pnl_series("1H")
    wallet_service.get_deposit_info()
    wallet_service.get_pnl_series("1H", public_key=OTHER)
    primed = len(history.calls)
    wallet_service.get_pnl_series("1H")
    wallet_service.get_deposit_info()
    assert len(history.calls) == primed

    assert wallet_service.withdraw_usdc(OTHER, "1").ok is True

    wallet_service.get_pnl_series("1H")
    assert len(history.calls) == primed + 1
    wallet_service.get_deposit_info()
    assert len(history.calls) == primed + 2
    wallet_service.get_pnl_series("1H", public_key=OTHER)
    assert len(history.calls) == primed + 2


@pytest.mark.parametrize(
    ("to", "amount", "message"),
    [
        ("", "1", "Recipient address is required."),
        ("0x123", "1", "Recipient address is invalid."),
        (WALLET, "1", "Recipient address must be different from wallet address."),
        (OTHER, " ", "Amount is required."),
        (OTHER, "1.1234567", "Amount format is invalid. Use up to 6 decimal places."),
        (OTHER, "abc", "Amount format is invalid. Use up to 6 decimal places."),
        (OTHER, "0.000", "Amount must be greater than 0."),
    ],
)
def test_withdraw_validation(wallet_service, chain, to, amount, message) -> None:
    chain.set_balance(USDC, WALLET, 10_000_000)

    result = wallet_service.withdraw_usdc(to, amount)
    assert result.ok is False
    assert result.error == message
    assert chain.sent == []


def test_withdraw_rejects_amount_above_balance(wallet_service, chain) -> None:
    chain.set_balance(USDC, WALLET, 1_000_000)

    result = wallet_service.withdraw_usdc(OTHER, "2")
    assert result.error == "Insufficient USDC balance. Available: 1.0 USDC."


def test_withdraw_requires_matching_signer(wallet_service, chain) -> None:
    chain.signer = OTHER

    result = wallet_service.withdraw_usdc("0x" + "55" * 20, "1")
    assert result.error == "WALLET_PRIVATE_KEY does not match WALLET_ADDRESS."


def test_withdraw_maps_send_failures(wallet_service, chain) -> None:
    chain.set_balance(USDC, WALLET, 10_000_000)
    chain.transfer_error = RuntimeError("insufficient funds for gas * price + value")

    result = wallet_service.withdraw_usdc(OTHER, "1")
    assert result.ok is False
    assert result.error == "Not enough ETH for gas on the server wallet."


def test_withdraw_without_private_key(history, chain, session_factory) -> None:
    service = _service_with(make_settings(wallet_private_key=""), history, chain, session_factory)

    result = service.withdraw_usdc(OTHER, "1")
    assert result.error == "Missing env: WALLET_PRIVATE_KEY"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("nonce too low", "Nonce conflict. Retry the transaction."),
        ("replacement transaction underpriced", "Gas price too low. Retry in a few seconds."),
        ("execution reverted: transfer amount exceeds balance", "Insufficient USDC balance for transfer."),
        ("Network unreachable", "Network error while sending transaction."),
        ("Invalid WALLET_PRIVATE_KEY format", "Invalid server wallet private key."),
        ("", "Withdraw failed."),
        ("something odd", "something odd"),
    ],
)
def test_friendly_tx_error(raw, expected) -> None:
    assert friendly_tx_error(RuntimeError(raw)) == expected


# Rename


def test_rename_updates_summary(wallet_service) -> None:
    assert wallet_service.get_wallet_summary().summary.display_name == "My Wallet"

    result = wallet_service.rename_wallet("  Treasury   Ops ")
    assert result.ok is True
    assert result.display_name == "Treasury Ops"
    assert wallet_service.get_wallet_summary().summary.display_name == "Treasury Ops"

    assert wallet_service.rename_wallet("My Wallet").ok is True
    assert wallet_service.get_wallet_summary().summary.display_name == "My Wallet"


@pytest.mark.parametrize(
    ("name", "message"),
    [
        ("   ", "Wallet name is required."),
        ("x" * 33, "Wallet name is too long (max 32 chars)."),
    ],
)
def test_rename_validation(wallet_service, name, message) -> None:
    result = wallet_service.rename_wallet(name)
    assert result.ok is False
    assert result.error == message


def test_rename_foreign_wallet_is_scoped_to_that_address(wallet_service) -> None:
    assert wallet_service.rename_wallet("Friend", public_key=OTHER).ok is True

    assert wallet_service.get_wallet_summary(OTHER).summary.display_name == "Friend"
    assert wallet_service.get_wallet_summary().summary.display_name == "My Wallet"
    assert wallet_service.rename_wallet("Friend", public_key="bogus").error == (
        "Invalid publicKey. Pass a valid EVM address."
    )
