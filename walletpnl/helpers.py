from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from web3 import Web3

from walletpnl.errors import ValidationError

_WHITESPACE_RE = re.compile(r"\s+")


def is_address(value: str) -> bool:
    return bool(value) and Web3.is_address(value)


def checksum_address(value: str) -> str:
    """Return the EIP-55 form of ``value`` or raise ValidationError."""
    candidate = (value or "").strip()
    if not is_address(candidate):
        raise ValidationError("Invalid address.")
    return Web3.to_checksum_address(candidate)


def short_addr(address: str) -> str:
    if not is_address(address):
        return address
    return f"{address[:6]}…{address[-4:]}"


def format_units(raw: int, decimals: int) -> str:
    """Render a raw integer amount with ``decimals`` places, e.g. ``1.5`` or ``0.0``."""
    negative = raw < 0
    digits = str(abs(raw)).rjust(decimals + 1, "0")
    whole = digits[: len(digits) - decimals] if decimals else digits
    fraction = digits[len(digits) - decimals :].rstrip("0") if decimals else ""
    text = f"{whole}.{fraction or '0'}"
    return f"-{text}" if negative else text


def format_token_amount(raw: int, decimals: int) -> str:
    """Grouped display amount with two to six fraction digits, e.g. ``1,250.50``."""
    value = Decimal(raw).scaleb(-decimals).quantize(Decimal("0.000001"))
    whole, _, fraction = f"{value:,f}".partition(".")
    return f"{whole}.{fraction.rstrip('0').ljust(2, '0')}"


def parse_units(amount: str, decimals: int) -> int:
    """Parse a human amount into raw units; more than ``decimals`` places is an error."""
    normalized = amount.strip().replace(",", ".", 1)
    if not re.fullmatch(r"\d*\.?\d*", normalized) or normalized in {"", "."}:
        raise ValueError(f"Invalid amount: {amount}")
    try:
        value = Decimal(normalized)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {amount}") from exc
    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"Too many decimal places: {amount}")
    return int(scaled)


def safe_timestamp_ms(value: str) -> int:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        return 0
    return seconds * 1000 if seconds > 0 else 0


def round_to_minute(value_ms: int) -> int:
    return (value_ms // 60_000) * 60_000


def format_month_year(ts_ms: int) -> str:
    if not ts_ms:
        return "—"
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%b %Y")


def normalize_display_name(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value or "").strip()
