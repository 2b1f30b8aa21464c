from __future__ import annotations

import argparse
import json
from dataclasses import asdict

from walletpnl import build_wallet_service, configure_logging
from walletpnl.config import settings
from walletpnl.db import init_db
from walletpnl.services.wallet import STATUS_ERROR, RangeKey, WalletService


def show_pnl(service: WalletService, range_key: str, address: str | None) -> dict:
    """Return the PnL series payload for one range."""
    return service.get_pnl_series(range_key, address).to_payload()


def show_summary(service: WalletService, address: str | None) -> dict:
    result = service.get_wallet_summary(address)
    if result.status == STATUS_ERROR:
        return {"status": result.status, "message": result.message}
    return {"status": result.status, "summary": asdict(result.summary)}


def rename(service: WalletService, name: str, address: str | None) -> dict:
    return asdict(service.rename_wallet(name, address))


def main(argv: list[str] | None = None, service: WalletService | None = None) -> int:
    parser = argparse.ArgumentParser(description="Wallet PnL management commands")
    sub = parser.add_subparsers(dest="command", required=True)

    pnl_parser = sub.add_parser("pnl", help="Print the profit/loss series")
    pnl_parser.add_argument(
        "--range",
        dest="range_key",
        default=RangeKey.SIX_HOURS.value,
        choices=[key.value for key in RangeKey],
    )
    pnl_parser.add_argument("--address", default=None, help="Wallet address (defaults to WALLET_ADDRESS)")

    summary_parser = sub.add_parser("summary", help="Print the wallet summary")
    summary_parser.add_argument("--address", default=None)

    rename_parser = sub.add_parser("rename", help="Set the wallet display name")
    rename_parser.add_argument("--name", required=True)
    rename_parser.add_argument("--address", default=None)

    args = parser.parse_args(argv)

    configure_logging(settings.log_level)
    init_db()
    service = service or build_wallet_service(settings)

    if args.command == "pnl":
        output = show_pnl(service, args.range_key, args.address)
        failed = output["status"] == STATUS_ERROR
    elif args.command == "summary":
        output = show_summary(service, args.address)
        failed = output["status"] == STATUS_ERROR
    else:
        output = rename(service, args.name, args.address)
        failed = not output["ok"]

    print(json.dumps(output, indent=2))
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
