from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Sequence

from walletpnl.services.etherscan import TransferRecord
from walletpnl.services.history import record_timestamp_ms

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class LedgerEvent:
    timestamp_ms: int
    delta_raw: int


@dataclass(frozen=True)
class SeriesPoint:
    timestamp_ms: int
    usd_value: float


@dataclass(frozen=True)
class SeriesBuild:
    points: tuple[SeriesPoint, ...]
    delta: float
    balance_at_start: int
    balance_at_end: int
    negative_balance: bool


def _parse_int(value: object) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


def transfer_delta_raw(record: TransferRecord, address: str) -> int:
    """Signed raw amount of ``record`` as seen from ``address``."""
    wallet = address.lower()
    raw = _parse_int(record.raw_amount)
    if record.to_address.lower() == wallet:
        return raw
    if record.from_address.lower() == wallet:
        return -raw
    return 0


def build_ledger(records: Iterable[TransferRecord], address: str) -> tuple[LedgerEvent, ...]:
    """Normalize transfer records into a strictly increasing event sequence.

    ``records`` must be in fetch order (page 1 first, each page as returned).
    Ties on (timestamp, block, transaction index) fall back to the position
    in that flattened sequence, which is the page order; the per-page
    ``sequence_index_in_page`` alone cannot order records across pages.
    """
    candidates = []
    for index, record in enumerate(records):
        ts = record_timestamp_ms(record)
        delta = transfer_delta_raw(record, address)
        if ts <= 0 or delta == 0:
            continue
        candidates.append(
            (ts, _parse_int(record.block_number), _parse_int(record.transaction_index), index, delta)
        )
    candidates.sort(key=lambda item: item[:4])

    events: list[LedgerEvent] = []
    last_ts = 0
    for ts, _block, _tx_index, _index, delta in candidates:
        # Second-granularity ties keep their causal order one millisecond apart.
        next_ts = last_ts + 1 if ts <= last_ts else ts
        events.append(LedgerEvent(timestamp_ms=next_ts, delta_raw=delta))
        last_ts = next_ts
    return tuple(events)


def balances_at(
    ledger: Sequence[LedgerEvent],
    current_balance_raw: int,
    targets: Iterable[int],
) -> dict[int, int]:
    """Replay the ledger backward from now once for every target instant."""
    out: dict[int, int] = {}
    running = current_balance_raw
    index = len(ledger) - 1
    for target in sorted(set(targets), reverse=True):
        while index >= 0 and ledger[index].timestamp_ms > target:
            running -= ledger[index].delta_raw
            index -= 1
        out[target] = running
    return out


def balance_at(ledger: Sequence[LedgerEvent], current_balance_raw: int, target_ms: int) -> int:
    return balances_at(ledger, current_balance_raw, [target_ms])[target_ms]


def raw_to_decimal(raw: int, decimals: int) -> Decimal:
    return Decimal(raw).scaleb(-decimals)


def round_money(value: Decimal | float) -> float:
    try:
        amount = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except InvalidOperation:
        return 0.0
    if not amount.is_finite():
        return 0.0
    return float(amount.quantize(_CENT, rounding=ROUND_HALF_UP))


def raw_to_usd(raw: int, decimals: int, unit_price_usd: float) -> float:
    return round_money(raw_to_decimal(raw, decimals) * Decimal(str(unit_price_usd)))


def build_series(
    ledger: Sequence[LedgerEvent],
    current_balance_raw: int,
    range_start: int,
    range_end: int,
    decimals: int,
    unit_price_usd: float,
) -> SeriesBuild:
    """Assemble the USD step-function series for ``(range_start, range_end]``."""
    boundaries = balances_at(ledger, current_balance_raw, [range_start, range_end])
    balance_at_start = boundaries[range_start]
    balance_at_end = boundaries[range_end]
    negative = balance_at_start < 0 or balance_at_end < 0

    def usd(raw: int) -> float:
        return raw_to_usd(raw, decimals, unit_price_usd)

    points = [SeriesPoint(timestamp_ms=range_start, usd_value=usd(balance_at_start))]
    running = balance_at_start
    for event in ledger:
        if event.timestamp_ms <= range_start:
            continue
        if event.timestamp_ms > range_end:
            break
        running += event.delta_raw
        negative = negative or running < 0
        point = SeriesPoint(timestamp_ms=event.timestamp_ms, usd_value=usd(running))
        if points[-1].timestamp_ms == event.timestamp_ms:
            points[-1] = point
        else:
            points.append(point)

    end_point = SeriesPoint(timestamp_ms=range_end, usd_value=usd(balance_at_end))
    if points[-1].timestamp_ms == range_end:
        points[-1] = end_point
    else:
        points.append(end_point)

    if negative:
        logger.warning(
            "reconstructed balance went negative start_raw=%s end_raw=%s",
            balance_at_start,
            balance_at_end,
        )

    delta = round_money(Decimal(str(points[-1].usd_value)) - Decimal(str(points[0].usd_value)))
    return SeriesBuild(
        points=tuple(points),
        delta=delta,
        balance_at_start=balance_at_start,
        balance_at_end=balance_at_end,
        negative_balance=negative,
    )
