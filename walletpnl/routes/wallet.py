from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from walletpnl.services.wallet import STATUS_ERROR, WalletService

router = APIRouter(prefix="/api/wallet")


class WithdrawRequest(BaseModel):
    to: str = ""
    amount: str = ""


class RenameRequest(BaseModel):
    display_name: str = ""
    address: str | None = None


def _service(request: Request) -> WalletService:
    return request.app.state.wallet_service


@router.get("/summary")
def wallet_summary(request: Request, address: str | None = Query(default=None)):
    """Return balances, display name and first-seen date for one wallet."""
    result = _service(request).get_wallet_summary(address)
    if result.status == STATUS_ERROR:
        return JSONResponse(status_code=502, content={"status": result.status, "message": result.message})
    return {"status": result.status, "summary": asdict(result.summary)}


@router.get("/pnl")
def wallet_pnl(
    request: Request,
    range: str = Query(default="6H", description="One of 1H, 6H, 1D, 1W, 1M, ALL"),
    address: str | None = Query(default=None),
):
    """Return the profit/loss step series; errors are reported in the payload."""
    series = _service(request).get_pnl_series(range.strip().upper(), address)
    return series.to_payload()


@router.get("/deposits")
def wallet_deposits(request: Request, address: str | None = Query(default=None)):
    return asdict(_service(request).get_deposit_info(address))


@router.get("/deposit-address")
def wallet_deposit_address(request: Request, address: str | None = Query(default=None)):
    result = _service(request).get_deposit_address(address)
    if not result.ok:
        return JSONResponse(status_code=400, content={"error": result.error})
    return {"address": result.address}


@router.post("/withdraw")
def wallet_withdraw(request: Request, payload: WithdrawRequest):
    """Send USDC from the managed wallet."""
    result = _service(request).withdraw_usdc(payload.to, payload.amount)
    if not result.ok:
        return JSONResponse(status_code=400, content=asdict(result))
    return asdict(result)


@router.post("/name")
def wallet_rename(request: Request, payload: RenameRequest):
    result = _service(request).rename_wallet(payload.display_name, payload.address)
    if not result.ok:
        return JSONResponse(status_code=400, content=asdict(result))
    return asdict(result)
