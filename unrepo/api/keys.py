"""
API key management endpoints.

Keys are issued per email-identified account. The plaintext token appears
only in the issuance response.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from unrepo.core.collaborators import get_quota_enforcer, get_usage_ledger
from unrepo.core.config import settings
from unrepo.core.database import get_db
from unrepo.core.errors import ValidationError
from unrepo.features.accounts.service import get_account_by_email, get_or_create_account_by_email
from unrepo.features.keys.service import deactivate_api_key, issue_api_key, list_api_keys, list_key_usage
from unrepo.features.quota.service import QuotaEnforcer
from unrepo.features.usage.service import UsageLedger
from unrepo.models.api_key import ApiKey
from unrepo.models.capability import Capability
from unrepo.models.principal import AuthenticatedPrincipal, Tier


router = APIRouter(prefix="/api/keys", tags=["keys"])


class GenerateKeyRequest(BaseModel):
    type: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None


def _key_payload(key: ApiKey) -> dict:
    return {
        "id": key.id,
        "name": key.name,
        "type": key.capability.key_type,
        "keyPrefix": key.key_prefix,
        "usageCount": key.usage_count,
        "isActive": key.is_active,
        "lastUsedAt": key.last_used_at.isoformat() if key.last_used_at else None,
        "createdAt": key.created_at.isoformat() if key.created_at else None,
    }


def _require_email(email: Optional[str]) -> str:
    value = (email or "").strip()
    if not value:
        raise ValidationError("Email parameter required")
    return value


@router.post("/generate")
def generate_key(body: GenerateKeyRequest, db: Session = Depends(get_db)):
    try:
        capability = Capability.from_key_type(body.type or "")
    except ValueError:
        raise ValidationError("Invalid API key type. Must be RESEARCH or CHATBOT")
    name = (body.name or "").strip()
    if not name:
        raise ValidationError("API name is required")

    account = get_or_create_account_by_email(db, body.email or settings.DEFAULT_KEY_EMAIL, name=name)
    issued = issue_api_key(db, account, capability, name)

    data = _key_payload(issued.key)
    data["apiKey"] = issued.token
    return {"success": True, "message": "API key created successfully", "data": data}


@router.get("")
def list_keys(
    email: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    enforcer: QuotaEnforcer = Depends(get_quota_enforcer),
):
    account = get_account_by_email(db, _require_email(email))
    if account is None:
        return {"success": True, "data": []}

    keys = []
    for key in list_api_keys(db, account.id):
        decision = enforcer.check(db, AuthenticatedPrincipal.for_key(key, account))
        payload = _key_payload(key)
        payload.update(
            {
                "tier": decision.tier.value,
                "isPremium": decision.tier is Tier.PREMIUM,
                "remainingCalls": decision.remaining,
                "limit": decision.limit,
            }
        )
        keys.append(payload)
    return {"success": True, "data": keys}


@router.get("/usage")
def key_usage(email: Optional[str] = Query(None), db: Session = Depends(get_db)):
    account = get_account_by_email(db, _require_email(email))
    if account is None:
        return {"success": True, "data": []}
    return {"success": True, "data": list_key_usage(db, account.id)}


@router.get("/usage/events")
def key_usage_events(
    email: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    account = get_account_by_email(db, _require_email(email))
    if account is None:
        return {"success": True, "data": {"total": 0, "events": []}}
    return {"success": True, "data": ledger.history(db, account_id=account.id, limit=limit)}


@router.delete("/{key_id}")
def delete_key(key_id: str, email: Optional[str] = Query(None), db: Session = Depends(get_db)):
    account = get_account_by_email(db, _require_email(email))
    key = deactivate_api_key(db, key_id, account.id if account else None)
    return {"success": True, "message": "API key deactivated", "data": _key_payload(key)}
