"""
Wallet endpoints: registration, status, usage and token-holder verification.
"""
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from unrepo.core.collaborators import get_quota_enforcer, get_token_oracle, get_usage_ledger
from unrepo.core.database import get_db
from unrepo.core.errors import ValidationError
from unrepo.api.common import envelope
from unrepo.features.quota.service import QuotaEnforcer
from unrepo.features.tokens.oracle import HeliusTokenOracle
from unrepo.features.usage.service import UsageLedger
from unrepo.features.wallets.service import (
    get_wallet,
    refresh_token_status,
    refresh_token_status_in_background,
    register_wallet,
    require_wallet,
    validate_wallet_address,
    wallet_summary,
)
from unrepo.models.capability import Capability
from unrepo.models.principal import AuthenticatedPrincipal


router = APIRouter(prefix="/api/wallet", tags=["wallet"])


class RegisterWalletRequest(BaseModel):
    walletAddress: Optional[str] = None
    signature: Optional[str] = None
    message: Optional[str] = None


class WalletUsageRequest(BaseModel):
    walletAddress: Optional[str] = None
    type: Optional[str] = None


class VerifyTokensRequest(BaseModel):
    walletAddress: Optional[str] = None


def _parse_type(value: Optional[str]) -> Capability:
    try:
        return Capability.from_usage_type(value or "")
    except ValueError:
        raise ValidationError('Type must be "research" or "chat"')


@router.get("/check")
def check_wallet(address: Optional[str] = Query(None), db: Session = Depends(get_db)):
    wallet = get_wallet(db, validate_wallet_address(address))
    if wallet is None:
        return {"success": True, "exists": False, "data": None}
    return {"success": True, "exists": True, "data": wallet_summary(wallet)}


@router.post("/register")
def register(
    body: RegisterWalletRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    oracle: HeliusTokenOracle = Depends(get_token_oracle),
):
    address = (body.walletAddress or "").strip()
    if not address or not body.signature or not body.message:
        raise ValidationError("Wallet address, signature, and message are required")

    wallet, created = register_wallet(db, address, body.signature, body.message)
    if created:
        background_tasks.add_task(refresh_token_status_in_background, address, oracle)
        message = "Wallet registered successfully! You get 1 free research and 5 free chats."
    else:
        message = "Wallet already registered"

    body_out = envelope(wallet_summary(wallet, include_token_state=False))
    body_out["message"] = message
    body_out["created"] = created
    return body_out


@router.post("/usage")
def record_usage(
    body: WalletUsageRequest,
    db: Session = Depends(get_db),
    enforcer: QuotaEnforcer = Depends(get_quota_enforcer),
):
    if not (body.walletAddress or "").strip() or not body.type:
        raise ValidationError("Wallet address and type are required")
    capability = _parse_type(body.type)
    wallet = require_wallet(db, body.walletAddress)

    principal = AuthenticatedPrincipal.for_wallet(wallet, capability)
    decision = enforcer.enforce(db, principal, capability).raise_for_deny()

    updated = get_wallet(db, wallet.wallet_address)
    return envelope(wallet_summary(updated, include_token_state=False), decision=decision)


@router.get("/validate")
def validate_wallet(
    address: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    enforcer: QuotaEnforcer = Depends(get_quota_enforcer),
):
    wallet = require_wallet(db, address)
    data = wallet_summary(wallet, include_token_state=False)

    if type:
        capability = _parse_type(type)
        decision = enforcer.check(db, AuthenticatedPrincipal.for_wallet(wallet, capability), capability)
        data["valid"] = decision.allowed
        return envelope(data, decision=decision)

    data["valid"] = True
    return envelope(data)


@router.get("/history")
def wallet_history(
    address: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    wallet = require_wallet(db, address)
    return envelope(ledger.history(db, wallet_address=wallet.wallet_address, limit=limit))

@router.post("/verify-tokens")
def verify_tokens(
    body: VerifyTokensRequest,
    db: Session = Depends(get_db),
    oracle: HeliusTokenOracle = Depends(get_token_oracle),
):
    address = validate_wallet_address(body.walletAddress)
    result = refresh_token_status(db, address, oracle)
    result["tokenMint"] = oracle.mint
    if result["isTokenHolder"]:
        result["message"] = "Congratulations! You are a verified token holder with unlimited access."
    else:
        needed = max(result["threshold"] - result["tokenBalance"], 0)
        result["message"] = f"You need {needed:,.0f} more tokens to unlock unlimited access."
    return envelope(result)


@router.get("/token-info")
def token_info(oracle: HeliusTokenOracle = Depends(get_token_oracle)):
    return envelope(oracle.token_info())
