from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import requests
from web3 import Web3

from walletpnl.errors import SourceError, ValidationError

logger = logging.getLogger(__name__)


class EtherscanApiError(SourceError):
    """Error surfaced by the Etherscan API or its HTTP transport."""


@dataclass(frozen=True)
class TransferRecord:
    """One ERC-20 transfer row as returned by ``module=account&action=tokentx``.

    ``sequence_index_in_page`` is the row's position within its page. Ledger
    ordering uses the position in the fetched sequence, which extends it
    across pages.
    """

    from_address: str
    to_address: str
    raw_amount: str
    timestamp_seconds: str
    block_number: str = "0"
    transaction_index: str = "0"
    sequence_index_in_page: int = 0
    tx_hash: str = ""
    token_symbol: str = ""
    token_decimal: str = ""

    @classmethod
    def from_api(cls, item: dict[str, Any], index: int = 0) -> TransferRecord:
        return cls(
            from_address=str(item.get("from") or ""),
            to_address=str(item.get("to") or ""),
            raw_amount=str(item.get("value") or "0"),
            timestamp_seconds=str(item.get("timeStamp") or "0"),
            block_number=str(item.get("blockNumber") or "0"),
            transaction_index=str(item.get("transactionIndex") or "0"),
            sequence_index_in_page=index,
            tx_hash=str(item.get("hash") or ""),
            token_symbol=str(item.get("tokenSymbol") or ""),
            token_decimal=str(item.get("tokenDecimal") or ""),
        )


@dataclass(frozen=True)
class NormalTransaction:
    block_number: str
    timestamp_seconds: str
    tx_hash: str
    from_address: str
    to_address: str
    value: str
    is_error: bool

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> NormalTransaction:
        return cls(
            block_number=str(item.get("blockNumber") or "0"),
            timestamp_seconds=str(item.get("timeStamp") or "0"),
            tx_hash=str(item.get("hash") or ""),
            from_address=str(item.get("from") or ""),
            to_address=str(item.get("to") or ""),
            value=str(item.get("value") or "0"),
            is_error=str(item.get("isError") or "0") == "1",
        )


class HistorySource(Protocol):
    """Paginated transfer log; an empty list means no more data."""

    def get_token_transfers(
        self,
        address: str,
        contract_address: str,
        sort: str = "desc",
        page: int = 1,
        offset: int = 250,
    ) -> list[TransferRecord]:
        ...

    def get_normal_transactions(
        self,
        address: str,
        sort: str = "desc",
        page: int = 1,
        offset: int = 50,
    ) -> list[NormalTransaction]:
        ...


def _no_data_response(value: Any) -> bool:
    if isinstance(value, list) and not value:
        return True
    if not isinstance(value, str):
        return False
    return "no transactions found" in value.lower()


def normalize_etherscan_error(message: str) -> EtherscanApiError:
    lower = message.lower()
    if "missing/invalid api key" in lower or "invalid api key" in lower:
        return EtherscanApiError("Invalid Etherscan API key.", SourceError.INVALID_API_KEY, message)
    if "rate limit" in lower:
        return EtherscanApiError(
            "Etherscan rate limit reached. Retry in a few seconds.",
            SourceError.RATE_LIMIT,
            message,
        )
    return EtherscanApiError(
        f"Etherscan error: {message or 'Unknown error'}",
        SourceError.UNKNOWN,
        message,
    )


class EtherscanClient:
    """Thin ``requests`` client for the Etherscan v2 account endpoints.

    Rate-limit and transport failures are retried with exponential backoff.
    Pages are addressed by number, so a retry re-reads the same page.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        chain_id: int = 1,
        timeout: float = 20.0,
        max_retries: int = 3,
        backoff: float = 1.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.chain_id = chain_id
        self.timeout = timeout
        self.max_retries = max(max_retries, 0)
        self.backoff = backoff
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        self._sleep = sleep

    def _request_once(self, params: dict[str, Any]) -> Any:
        query = {"chainid": str(self.chain_id), "apikey": self.api_key}
        query.update({key: str(value) for key, value in params.items()})

        try:
            response = self.session.get(self.api_url, params=query, timeout=self.timeout)
        except requests.RequestException as exc:
            raise EtherscanApiError(
                "Network error while contacting Etherscan.", SourceError.HTTP_ERROR, str(exc)
            ) from exc

        if response.status_code == 429:
            raise EtherscanApiError(
                "Etherscan rate limit reached. Retry in a few seconds.",
                SourceError.RATE_LIMIT,
                "HTTP 429",
            )
        if not response.ok:
            raise EtherscanApiError(f"Etherscan HTTP {response.status_code}", SourceError.HTTP_ERROR)

        try:
            data = response.json()
        except ValueError as exc:
            raise EtherscanApiError("Etherscan returned invalid JSON.", SourceError.UNKNOWN) from exc
        if not isinstance(data, dict):
            raise EtherscanApiError("Etherscan returned an unexpected payload.", SourceError.UNKNOWN)

        if str(data.get("status")) == "0":
            result = data.get("result")
            if _no_data_response(result):
                return []
            if isinstance(result, str):
                text = result
            elif isinstance(data.get("message"), str):
                text = data["message"]
            else:
                text = "Unknown Etherscan error"
            raise normalize_etherscan_error(text)

        return data.get("result")

    def request(self, params: dict[str, Any]) -> Any:
        attempt = 0
        while True:
            try:
                return self._request_once(params)
            except EtherscanApiError as exc:
                if not exc.retryable or attempt >= self.max_retries:
                    raise
                delay = self.backoff * (2**attempt)
                logger.warning(
                    "etherscan %s (attempt %s/%s), retrying in %.1fs action=%s page=%s",
                    exc.kind,
                    attempt + 1,
                    self.max_retries + 1,
                    delay,
                    params.get("action"),
                    params.get("page"),
                )
                self._sleep(delay)
                attempt += 1

    def get_token_transfers(
        self,
        address: str,
        contract_address: str,
        sort: str = "desc",
        page: int = 1,
        offset: int = 250,
    ) -> list[TransferRecord]:
        if not Web3.is_address(address):
            raise ValidationError("Invalid wallet address for Etherscan")
        if not Web3.is_address(contract_address):
            raise ValidationError("Invalid token address for Etherscan")

        result = self.request(
            {
                "module": "account",
                "action": "tokentx",
                "address": address,
                "contractaddress": contract_address,
                "page": page,
                "offset": offset,
                "startblock": 0,
                "endblock": 99999999,
                "sort": sort,
            }
        )
        if not isinstance(result, list):
            raise EtherscanApiError("Etherscan returned an unexpected payload.", SourceError.UNKNOWN)
        return [TransferRecord.from_api(item, index) for index, item in enumerate(result)]

    def get_normal_transactions(
        self,
        address: str,
        sort: str = "desc",
        page: int = 1,
        offset: int = 50,
    ) -> list[NormalTransaction]:
        if not Web3.is_address(address):
            raise ValidationError("Invalid wallet address for Etherscan")

        result = self.request(
            {
                "module": "account",
                "action": "txlist",
                "address": address,
                "page": page,
                "offset": offset,
                "startblock": 0,
                "endblock": 99999999,
                "sort": sort,
            }
        )
        if not isinstance(result, list):
            raise EtherscanApiError("Etherscan returned an unexpected payload.", SourceError.UNKNOWN)
        return [NormalTransaction.from_api(item) for item in result]
