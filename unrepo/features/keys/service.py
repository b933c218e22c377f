"""
API key service.

Handles issuance, authentication, listing and deactivation of bearer keys.
Keys follow the format: unrepo_<research|chatbot>_<64 hex chars>

Security properties:
- Only the SHA-256 digest of a key is stored; the plaintext is returned once
- The capability prefix is checked before any storage access
- Deactivation flips is_active; keys are never physically deleted
"""
import hashlib
import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from sqlalchemy import select, insert, update, func
from sqlalchemy.orm import Session

from unrepo.core.database import accounts, api_keys, api_usage
from unrepo.core.errors import AuthError, AuthErrorReason, NotFoundError, PermissionError
from unrepo.features.accounts.service import row_to_account
from unrepo.models.account import Account
from unrepo.models.api_key import ApiKey, IssuedApiKey
from unrepo.models.capability import Capability
from unrepo.models.principal import AuthenticatedPrincipal


logger = logging.getLogger(__name__)

TOKEN_RANDOM_BYTES = 32
DISPLAY_PREFIX_CHARS = 12


def generate_api_key(capability: Capability) -> str:
    """Generate a new bearer token for the capability."""
    return f"{capability.key_prefix}{secrets.token_hex(TOKEN_RANDOM_BYTES)}"


def hash_api_key(token: str) -> str:
    """Deterministic digest so a key can be found by indexed equality."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _display_prefix(token: str, capability: Capability) -> str:
    return token[: len(capability.key_prefix) + DISPLAY_PREFIX_CHARS]


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        account_id=row.account_id,
        name=row.name,
        capability=Capability(row.capability),
        key_hash=row.key_hash,
        key_prefix=row.key_prefix,
        is_active=bool(row.is_active),
        usage_count=row.usage_count,
        last_used_at=row.last_used_at,
        created_at=row.created_at,
    )


def parse_api_key(raw: Optional[str], capability: Capability) -> str:
    """
    Check the structural prefix of a bearer string. No storage access.

    Raises:
        AuthError(MALFORMED): empty string or prefix of another capability
    """
    token = (raw or "").strip()
    if not token:
        raise AuthError(AuthErrorReason.MALFORMED, "API key is required")
    if not token.startswith(capability.key_prefix) or len(token) == len(capability.key_prefix):
        raise AuthError(
            AuthErrorReason.MALFORMED,
            f"Invalid API key format. {capability.key_type} endpoints require a key starting with {capability.key_prefix}",
        )
    return token


def issue_api_key(db: Session, account: Account, capability: Capability, name: str) -> IssuedApiKey:
    """Create a key for the account. The plaintext token is only in the result."""
    token = generate_api_key(capability)
    key_id = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    db.execute(
        insert(api_keys).values(
            id=key_id,
            account_id=account.id,
            name=name,
            capability=capability.value,
            key_hash=hash_api_key(token),
            key_prefix=_display_prefix(token, capability),
            is_active=True,
            usage_count=0,
            created_at=now,
        )
    )
    db.commit()

    logger.info(
        "[keys] issued",
        extra={"principal": f"key:{key_id}", "capability": capability.value, "event_type": "key.issued"},
    )
    key = get_api_key(db, key_id)
    return IssuedApiKey(key=key, token=token)


def get_api_key(db: Session, key_id: str) -> Optional[ApiKey]:
    row = db.execute(select(api_keys).where(api_keys.c.id == key_id)).first()
    return _row_to_api_key(row) if row else None


def authenticate_api_key(db: Session, raw: Optional[str], capability: Capability) -> AuthenticatedPrincipal:
    """
    Resolve a bearer string into a key principal with its owning account.

    Either fully succeeds or raises AuthError (MALFORMED before storage,
    NOT_FOUND when no active key of this capability matches).
    """
    token = parse_api_key(raw, capability)

    key_columns = [c.label(f"key_{c.name}") for c in api_keys.c]
    row = db.execute(
        select(*key_columns, accounts)
        .join(accounts, accounts.c.id == api_keys.c.account_id)
        .where(api_keys.c.key_hash == hash_api_key(token))
        .where(api_keys.c.capability == capability.value)
        .where(api_keys.c.is_active.is_(True))
    ).first()
    if row is None:
        raise AuthError(AuthErrorReason.NOT_FOUND, "Invalid or inactive API key")

    mapping = row._mapping
    key = ApiKey(
        id=mapping["key_id"],
        account_id=mapping["key_account_id"],
        name=mapping["key_name"],
        capability=Capability(mapping["key_capability"]),
        key_hash=mapping["key_key_hash"],
        key_prefix=mapping["key_key_prefix"],
        is_active=bool(mapping["key_is_active"]),
        usage_count=mapping["key_usage_count"],
        last_used_at=mapping["key_last_used_at"],
        created_at=mapping["key_created_at"],
    )
    return AuthenticatedPrincipal.for_key(key, row_to_account(row))


def list_api_keys(db: Session, account_id: str, *, include_inactive: bool = False) -> List[ApiKey]:
    query = select(api_keys).where(api_keys.c.account_id == account_id)
    if not include_inactive:
        query = query.where(api_keys.c.is_active.is_(True))
    rows = db.execute(query.order_by(api_keys.c.created_at.desc())).all()
    return [_row_to_api_key(row) for row in rows]


def list_key_usage(db: Session, account_id: str) -> List[Dict[str, Any]]:
    """Per-key usage: lifetime counter plus ledger totals."""
    rows = db.execute(
        select(
            api_keys.c.id,
            api_keys.c.name,
            api_keys.c.capability,
            api_keys.c.usage_count,
            api_keys.c.last_used_at,
            func.count(api_usage.c.id).label("recorded_calls"),
            func.max(api_usage.c.created_at).label("last_recorded_at"),
        )
        .select_from(api_keys.outerjoin(api_usage, api_usage.c.api_key_id == api_keys.c.id))
        .where(api_keys.c.account_id == account_id)
        .where(api_keys.c.is_active.is_(True))
        .group_by(
            api_keys.c.id,
            api_keys.c.name,
            api_keys.c.capability,
            api_keys.c.usage_count,
            api_keys.c.last_used_at,
        )
        .order_by(api_keys.c.name)
    ).all()
    return [
        {
            "keyId": row.id,
            "name": row.name,
            "type": Capability(row.capability).key_type,
            "usageCount": row.usage_count,
            "recordedCalls": row.recorded_calls,
            "lastUsedAt": row.last_used_at.isoformat() if row.last_used_at else None,
            "lastRecordedAt": row.last_recorded_at.isoformat() if row.last_recorded_at else None,
        }
        for row in rows
    ]


def deactivate_api_key(db: Session, key_id: str, account_id: Optional[str]) -> ApiKey:
    """
    Deactivate a key owned by the account.

    Raises:
        NotFoundError: no such key
        PermissionError: key belongs to another account
    """
    key = get_api_key(db, key_id)
    if key is None:
        raise NotFoundError("API key not found")
    if key.account_id != account_id:
        raise PermissionError("API key does not belong to this account")

    db.execute(update(api_keys).where(api_keys.c.id == key_id).values(is_active=False))
    db.commit()
    logger.info("[keys] deactivated", extra={"principal": f"key:{key_id}", "event_type": "key.deactivated"})
    return get_api_key(db, key_id)
