from __future__ import annotations

from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from walletpnl.db import session_scope
from walletpnl.helpers import checksum_address
from walletpnl.models import WalletDisplayName


def _storage_key(address: str) -> str:
    return checksum_address(address).lower()


class DisplayNameStore:
    """Per-address wallet display names persisted with SQLAlchemy."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def get(self, address: str) -> str | None:
        key = _storage_key(address)
        with session_scope(self.session_factory) as db:
            name = db.scalar(
                select(WalletDisplayName.display_name).where(WalletDisplayName.address == key)
            )
        return name if name and name.strip() else None

    def set(self, address: str, display_name: str) -> None:
        key = _storage_key(address)
        with session_scope(self.session_factory) as db:
            row = db.scalar(select(WalletDisplayName).where(WalletDisplayName.address == key))
            if row is None:
                db.add(WalletDisplayName(address=key, display_name=display_name.strip()))
            else:
                row.display_name = display_name.strip()

    def clear(self, address: str) -> None:
        key = _storage_key(address)
        with session_scope(self.session_factory) as db:
            db.execute(delete(WalletDisplayName).where(WalletDisplayName.address == key))
