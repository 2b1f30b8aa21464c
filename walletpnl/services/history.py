from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from walletpnl.helpers import safe_timestamp_ms
from walletpnl.services.etherscan import HistorySource, TransferRecord

logger = logging.getLogger(__name__)


class FetchOutcome(str, Enum):
    EXHAUSTED = "exhausted"
    REACHED_TARGET = "reached_target"
    PAGE_LIMIT_EXCEEDED = "page_limit_exceeded"


@dataclass(frozen=True)
class FetchResult:
    records: tuple[TransferRecord, ...]
    outcome: FetchOutcome
    pages: int


def record_timestamp_ms(record: TransferRecord) -> int:
    """Whole-second source timestamp in milliseconds; 0 when unusable."""
    return safe_timestamp_ms(record.timestamp_seconds)


def fetch_history(
    source: HistorySource,
    address: str,
    asset: str,
    cutoff_ms: int | None,
    page_size: int,
    max_pages: int,
) -> FetchResult:
    """Pull transfer pages newest-first until the history or the window ends.

    Source errors propagate unchanged; no page is retried here.
    """
    records: list[TransferRecord] = []
    page = 1

    while page <= max_pages:
        batch = source.get_token_transfers(
            address=address,
            contract_address=asset,
            sort="desc",
            page=page,
            offset=page_size,
        )
        if not batch:
            return _done(records, FetchOutcome.EXHAUSTED, page, address)
        records.extend(batch)

        oldest_ms = record_timestamp_ms(batch[-1])
        if cutoff_ms is not None and 0 < oldest_ms <= cutoff_ms:
            return _done(records, FetchOutcome.REACHED_TARGET, page, address)
        if len(batch) < page_size:
            return _done(records, FetchOutcome.EXHAUSTED, page, address)
        page += 1

    return _done(records, FetchOutcome.PAGE_LIMIT_EXCEEDED, max_pages, address)


def _done(
    records: list[TransferRecord], outcome: FetchOutcome, pages: int, address: str
) -> FetchResult:
    logger.info(
        "history fetch address=%s outcome=%s pages=%s records=%s",
        address.lower(),
        outcome.value,
        pages,
        len(records),
    )
    return FetchResult(records=tuple(records), outcome=outcome, pages=pages)
