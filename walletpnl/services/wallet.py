from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from walletpnl.config import Settings
from walletpnl.errors import RangeUnreachable, SourceError, ValidationError, WalletError
from walletpnl.helpers import (
    checksum_address,
    format_month_year,
    format_token_amount,
    format_units,
    is_address,
    normalize_display_name,
    parse_units,
    round_to_minute,
    safe_timestamp_ms,
    short_addr,
)
from walletpnl.services.cache import TTLCache, address_prefix, cache_key, system_clock_ms
from walletpnl.services.chain import ChainReader, TokenSnapshot
from walletpnl.services.display_names import DisplayNameStore
from walletpnl.services.etherscan import HistorySource
from walletpnl.services.history import FetchOutcome, fetch_history
from walletpnl.services.ledger import SeriesPoint, build_ledger, build_series, raw_to_usd
from walletpnl.services.pricing import PricingService

logger = logging.getLogger(__name__)

DEFAULT_WALLET_DISPLAY_NAME = "My Wallet"
MAX_WALLET_DISPLAY_NAME_LENGTH = 32

STATUS_OK = "ok"
STATUS_NO_HISTORY = "no_history"
STATUS_ERROR = "error"


class RangeKey(str, Enum):
    ONE_HOUR = "1H"
    SIX_HOURS = "6H"
    ONE_DAY = "1D"
    ONE_WEEK = "1W"
    ONE_MONTH = "1M"
    ALL = "ALL"

    @property
    def window_ms(self) -> int | None:
        return _RANGE_WINDOWS_MS[self]


_RANGE_WINDOWS_MS: dict[RangeKey, int | None] = {
    RangeKey.ONE_HOUR: 60 * 60 * 1000,
    RangeKey.SIX_HOURS: 6 * 60 * 60 * 1000,
    RangeKey.ONE_DAY: 24 * 60 * 60 * 1000,
    RangeKey.ONE_WEEK: 7 * 24 * 60 * 60 * 1000,
    RangeKey.ONE_MONTH: 30 * 24 * 60 * 60 * 1000,
    RangeKey.ALL: None,
}


@dataclass(frozen=True)
class PnlSeries:
    range: str
    points: tuple[SeriesPoint, ...] = ()
    delta: float = 0.0
    status: str = STATUS_OK
    message: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "range": self.range,
            "points": [{"ts": point.timestamp_ms, "value": point.usd_value} for point in self.points],
            "delta": self.delta,
            "status": self.status,
        }
        if self.message:
            payload["message"] = self.message
        return payload


@dataclass(frozen=True)
class WalletSummary:
    display_name: str
    wallet_address: str
    managed_by_server: bool
    usdc_balance: str
    eth_balance: str
    tracked_token_balance: str
    tracked_token_symbol: str
    tracked_token_price_usd: float
    portfolio_not_usdc_usd: float
    joined_at: str
    explorer_base_url: str


@dataclass(frozen=True)
class SummaryResult:
    status: str
    summary: WalletSummary | None = None
    message: str | None = None


@dataclass(frozen=True)
class DepositItem:
    tx_hash: str
    from_address: str
    from_short: str
    amount: str
    symbol: str
    timestamp_ms: int
    tx_url: str


@dataclass(frozen=True)
class DepositInfo:
    address: str
    address_url: str
    explorer_base_url: str
    deposits: tuple[DepositItem, ...] = ()
    status: str = STATUS_OK
    message: str | None = None


@dataclass(frozen=True)
class WithdrawResult:
    ok: bool
    tx_hash: str | None = None
    tx_url: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RenameResult:
    ok: bool
    display_name: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class DepositAddressResult:
    ok: bool
    address: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class _WithdrawRequest:
    to: str
    value: int


def message_from_error(error: BaseException, fallback: str) -> str:
    text = str(error).strip()
    return text or fallback


def friendly_tx_error(error: BaseException) -> str:
    """Map a transaction failure to a short, actionable message."""
    raw = str(error or "")
    lower = raw.lower()

    if "missing env" in lower:
        return raw
    if "invalid wallet_private_key" in lower:
        return "Invalid server wallet private key."
    if "insufficient funds" in lower:
        return "Not enough ETH for gas on the server wallet."
    if "execution reverted" in lower and "balance" in lower:
        return "Insufficient USDC balance for transfer."
    if "nonce" in lower:
        return "Nonce conflict. Retry the transaction."
    if "underpriced" in lower:
        return "Gas price too low. Retry in a few seconds."
    if "network" in lower:
        return "Network error while sending transaction."
    return raw or "Withdraw failed."


def range_too_large_message(range_key: RangeKey) -> str:
    if range_key == RangeKey.ALL:
        return "All-time history is too large. Try a shorter range."
    return "PnL history is too large for the selected range. Try a shorter range."


class WalletService:
    """Reconstruction boundary: every public method returns a result, never raises."""

    def __init__(
        self,
        settings: Settings,
        history: HistorySource,
        chain: ChainReader,
        pricing: PricingService,
        display_names: DisplayNameStore,
        cache: TTLCache | None = None,
        clock: Callable[[], int] = system_clock_ms,
        max_workers: int = 5,
    ) -> None:
        self.settings = settings
        self.history = history
        self.chain = chain
        self.pricing = pricing
        self.display_names = display_names
        self.cache = cache if cache is not None else TTLCache(clock=clock)
        self.clock = clock
        self.max_workers = max_workers

    # Address and token configuration

    def resolve_wallet_address(self, public_key: str | None = None) -> str:
        candidate = (public_key or "").strip()
        if not candidate:
            configured = self.settings.require("wallet_address")
            if not is_address(configured):
                raise ValidationError("Invalid WALLET_ADDRESS")
            return checksum_address(configured)
        if not is_address(candidate):
            raise ValidationError("Invalid publicKey. Pass a valid EVM address.")
        return checksum_address(candidate)

    def _configured_address(self, field_name: str) -> str:
        value = self.settings.require(field_name)
        if not is_address(value):
            raise ValidationError(f"Invalid {field_name.upper()}")
        return checksum_address(value)

    def _tracked_token_snapshot(self, wallet: str, token: str) -> TokenSnapshot:
        balance_raw = self.chain.token_balance(token, wallet)
        try:
            symbol = self.chain.token_symbol(token).strip() or "TOKEN"
        except Exception as exc:
            logger.debug("token symbol read failed token=%s error=%s", token, exc)
            symbol = "TOKEN"

        decimals = self.settings.tracked_token_decimals
        if decimals is None:
            decimals = self.chain.token_decimals(token)
        if decimals < 0 or decimals > 36:
            raise ValidationError("Invalid tracked token decimals")

        return TokenSnapshot(
            balance_raw=balance_raw,
            decimals=decimals,
            symbol=symbol,
            price_usd=self.pricing.current_price(),
        )

    # Profit / loss series

    def get_pnl_series(self, range_key: RangeKey | str, public_key: str | None = None) -> PnlSeries:
        range_label = getattr(range_key, "value", str(range_key))
        try:
            selected = RangeKey(range_label)
            wallet = self.resolve_wallet_address(public_key)
            token = self._configured_address("tracked_token_address")
        except ValidationError as exc:
            return PnlSeries(range=range_label, status=STATUS_ERROR, message=str(exc))
        except ValueError:
            message = f"Unknown range: {range_label}"
            return PnlSeries(range=range_label, status=STATUS_ERROR, message=message)

        key = cache_key("pnl", wallet, token, selected.value)
        try:
            return self.cache.cached(
                key,
                self.settings.cache_ttl_ms,
                lambda: self._compute_pnl_series(selected, wallet, token),
            )
        except (SourceError, RangeUnreachable, ValidationError) as exc:
            logger.warning("pnl series failed address=%s range=%s error=%s", wallet, selected.value, exc)
            return PnlSeries(range=selected.value, status=STATUS_ERROR, message=str(exc))
        except Exception as exc:
            logger.exception("pnl series crashed address=%s range=%s", wallet, selected.value)
            return PnlSeries(
                range=selected.value,
                status=STATUS_ERROR,
                message=message_from_error(exc, "Failed to load token history from Etherscan."),
            )

    def _compute_pnl_series(self, selected: RangeKey, wallet: str, token: str) -> PnlSeries:
        end = round_to_minute(self.clock())
        window = selected.window_ms
        requested_start = None if window is None else end - window

        with ThreadPoolExecutor(max_workers=2) as pool:
            snapshot_future = pool.submit(self._tracked_token_snapshot, wallet, token)
            fetch_future = pool.submit(
                fetch_history,
                self.history,
                wallet,
                token,
                requested_start,
                self.settings.pnl_page_size,
                self.settings.pnl_max_pages,
            )
            fetched = fetch_future.result()
            tracked = snapshot_future.result()

        # A truncated fetch builds a ledger that looks complete, so reject it first.
        if fetched.outcome == FetchOutcome.PAGE_LIMIT_EXCEEDED:
            raise RangeUnreachable(range_too_large_message(selected))

        ledger = build_ledger(fetched.records, wallet)
        if not ledger:
            return PnlSeries(
                range=selected.value,
                status=STATUS_NO_HISTORY,
                message="No token history for tracked token.",
            )

        # Transfers inside the current minute sit past the floored end; extend to cover them.
        end = max(end, ledger[-1].timestamp_ms)
        start = requested_start if requested_start is not None else max(0, ledger[0].timestamp_ms - 1)
        series = build_series(
            ledger,
            tracked.balance_raw,
            start,
            end,
            tracked.decimals,
            tracked.price_usd,
        )
        message = None
        if series.negative_balance:
            message = "Token history looks incomplete: a reconstructed balance went negative."
        return PnlSeries(
            range=selected.value,
            points=series.points,
            delta=series.delta,
            status=STATUS_OK,
            message=message,
        )

    # Summary

    def get_wallet_joined_at(self, wallet: str) -> str:
        def compute() -> str:
            try:
                txs = self.history.get_normal_transactions(address=wallet, sort="asc", offset=1)
            except Exception as exc:
                logger.warning("first-seen lookup failed address=%s error=%s", wallet, exc)
                return "—"
            return format_month_year(safe_timestamp_ms(txs[0].timestamp_seconds) if txs else 0)

        return self.cache.cached(
            cache_key("wallet-first-seen", wallet), self.settings.cache_ttl_ms, compute
        )

    def _display_name_or_none(self, wallet: str) -> str | None:
        try:
            return self.display_names.get(wallet)
        except Exception as exc:
            logger.warning("display name lookup failed address=%s error=%s", wallet, exc)
            return None

    def get_wallet_summary(self, public_key: str | None = None) -> SummaryResult:
        try:
            wallet = self.resolve_wallet_address(public_key)
            managed = self.resolve_wallet_address()
            usdc = self._configured_address("usdc_address")
            token = self._configured_address("tracked_token_address")
        except ValidationError as exc:
            return SummaryResult(status=STATUS_ERROR, message=str(exc))

        def compute() -> SummaryResult:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                usdc_future = pool.submit(self.chain.token_balance, usdc, wallet)
                eth_future = pool.submit(self.chain.eth_balance, wallet)
                tracked_future = pool.submit(self._tracked_token_snapshot, wallet, token)
                joined_future = pool.submit(self.get_wallet_joined_at, wallet)
                name_future = pool.submit(self._display_name_or_none, wallet)

                usdc_raw = usdc_future.result()
                eth_wei = eth_future.result()
                tracked = tracked_future.result()
                joined_at = joined_future.result()
                display_name = name_future.result()

            summary = WalletSummary(
                display_name=display_name or DEFAULT_WALLET_DISPLAY_NAME,
                wallet_address=wallet,
                managed_by_server=wallet.lower() == managed.lower(),
                usdc_balance=format_units(usdc_raw, self.settings.usdc_decimals),
                eth_balance=format_units((eth_wei + 5 * 10**11) // 10**12, 6),
                tracked_token_balance=format_units(tracked.balance_raw, tracked.decimals),
                tracked_token_symbol=tracked.symbol,
                tracked_token_price_usd=tracked.price_usd,
                portfolio_not_usdc_usd=raw_to_usd(tracked.balance_raw, tracked.decimals, tracked.price_usd),
                joined_at=joined_at,
                explorer_base_url=self.settings.explorer_base_url,
            )
            return SummaryResult(status=STATUS_OK, summary=summary)

        try:
            return self.cache.cached(cache_key("summary", wallet), self.settings.cache_ttl_ms, compute)
        except WalletError as exc:
            return SummaryResult(status=STATUS_ERROR, message=str(exc))
        except Exception as exc:
            logger.exception("wallet summary failed address=%s", wallet)
            return SummaryResult(
                status=STATUS_ERROR,
                message=message_from_error(exc, "Failed to load wallet summary."),
            )

    # Deposits

    def get_deposit_info(self, public_key: str | None = None) -> DepositInfo:
        explorer = self.settings.explorer_base_url
        try:
            address = self.resolve_wallet_address(public_key)
            usdc = self._configured_address("usdc_address")
            usdc_decimals = self.settings.usdc_decimals
        except ValidationError as exc:
            return DepositInfo(
                address="",
                address_url="",
                explorer_base_url=explorer,
                status=STATUS_ERROR,
                message=str(exc),
            )
        address_url = f"{explorer}/address/{address}"

        def compute() -> DepositInfo:
            transfers = self.history.get_token_transfers(
                address=address,
                contract_address=usdc,
                sort="desc",
                page=1,
                offset=self.settings.deposit_page_size,
            )
            deposits = []
            for item in transfers:
                if item.to_address.lower() != address.lower():
                    continue
                try:
                    decimals = int(item.token_decimal)
                except ValueError:
                    decimals = usdc_decimals
                if decimals < 0:
                    decimals = usdc_decimals
                try:
                    raw_amount = int(item.raw_amount)
                except ValueError:
                    raw_amount = 0
                deposits.append(
                    DepositItem(
                        tx_hash=item.tx_hash,
                        from_address=item.from_address,
                        from_short=short_addr(item.from_address),
                        amount=format_token_amount(raw_amount, decimals),
                        symbol=item.token_symbol or "USDC",
                        timestamp_ms=safe_timestamp_ms(item.timestamp_seconds),
                        tx_url=f"{explorer}/tx/{item.tx_hash}",
                    )
                )
                if len(deposits) >= self.settings.deposit_limit:
                    break

            if not deposits:
                return DepositInfo(
                    address=address,
                    address_url=address_url,
                    explorer_base_url=explorer,
                    status=STATUS_NO_HISTORY,
                    message="No USDC deposit history yet.",
                )
            return DepositInfo(
                address=address,
                address_url=address_url,
                explorer_base_url=explorer,
                deposits=tuple(deposits),
            )

        try:
            return self.cache.cached(
                cache_key("deposits", address, usdc), self.settings.cache_ttl_ms, compute
            )
        except Exception as exc:
            if not isinstance(exc, WalletError):
                logger.exception("deposit lookup failed address=%s", address)
            return DepositInfo(
                address=address,
                address_url=address_url,
                explorer_base_url=explorer,
                status=STATUS_ERROR,
                message=message_from_error(exc, "Failed to load deposits from Etherscan."),
            )

    def get_deposit_address(self, public_key: str | None = None) -> DepositAddressResult:
        try:
            return DepositAddressResult(ok=True, address=self.resolve_wallet_address(public_key))
        except ValidationError as exc:
            return DepositAddressResult(ok=False, error=str(exc))

    # Mutations

    def _validate_withdraw(self, sender: str, to: str, amount: str) -> _WithdrawRequest:
        recipient = (to or "").strip()
        if not recipient:
            raise ValidationError("Recipient address is required.")
        if not is_address(recipient):
            raise ValidationError("Recipient address is invalid.")
        if recipient.lower() == sender.lower():
            raise ValidationError("Recipient address must be different from wallet address.")

        raw_amount = (amount or "").strip()
        if not raw_amount:
            raise ValidationError("Amount is required.")
        decimals = self.settings.usdc_decimals
        try:
            value = parse_units(raw_amount, decimals)
        except ValueError as exc:
            raise ValidationError(
                f"Amount format is invalid. Use up to {decimals} decimal places."
            ) from exc
        if value <= 0:
            raise ValidationError("Amount must be greater than 0.")
        return _WithdrawRequest(to=checksum_address(recipient), value=value)

    def withdraw_usdc(self, to: str, amount: str) -> WithdrawResult:
        """Send USDC from the server wallet, then drop that wallet's cached views."""
        try:
            configured_sender = self.resolve_wallet_address()
            private_key = self.settings.require("wallet_private_key")
            signer = self.chain.signer_address(private_key)
            if signer.lower() != configured_sender.lower():
                return WithdrawResult(ok=False, error="WALLET_PRIVATE_KEY does not match WALLET_ADDRESS.")

            try:
                request = self._validate_withdraw(signer, to, amount)
            except ValidationError as exc:
                return WithdrawResult(ok=False, error=str(exc))

            usdc = self._configured_address("usdc_address")
            sender_balance = self.chain.token_balance(usdc, signer)
            if sender_balance < request.value:
                available = format_units(sender_balance, self.settings.usdc_decimals)
                return WithdrawResult(
                    ok=False,
                    error=f"Insufficient USDC balance. Available: {available} USDC.",
                )

            tx_hash = self.chain.transfer_token(usdc, private_key, request.to, request.value)
            if not tx_hash:
                return WithdrawResult(ok=False, error="Failed to get transaction hash.")
        except Exception as exc:
            logger.warning("withdraw failed error=%s", exc)
            return WithdrawResult(ok=False, error=friendly_tx_error(exc))

        for operation in ("summary", "pnl", "deposits"):
            self.cache.invalidate(address_prefix(operation, signer))
        logger.info("withdraw complete tx=%s sender=%s", tx_hash, signer)
        return WithdrawResult(
            ok=True,
            tx_hash=tx_hash,
            tx_url=f"{self.settings.explorer_base_url}/tx/{tx_hash}",
        )

    def rename_wallet(self, next_display_name: str, public_key: str | None = None) -> RenameResult:
        try:
            wallet = self.resolve_wallet_address(public_key)
            normalized = normalize_display_name(next_display_name)
            if not normalized:
                return RenameResult(ok=False, error="Wallet name is required.")
            if len(normalized) > MAX_WALLET_DISPLAY_NAME_LENGTH:
                return RenameResult(
                    ok=False,
                    error=f"Wallet name is too long (max {MAX_WALLET_DISPLAY_NAME_LENGTH} chars).",
                )

            if normalized == DEFAULT_WALLET_DISPLAY_NAME:
                self.display_names.clear(wallet)
            else:
                self.display_names.set(wallet, normalized)
        except Exception as exc:
            if not isinstance(exc, WalletError):
                logger.exception("rename failed")
            return RenameResult(ok=False, error=message_from_error(exc, "Failed to update wallet name."))

        self.cache.invalidate(address_prefix("summary", wallet))
        return RenameResult(ok=True, display_name=normalized)
