"""
Auth utilities for the UnRepo gateway.

- Credential extraction from x-api-key / x-wallet-address headers
- Format pre-check (no storage) and full authentication into an
  AuthenticatedPrincipal
- Session JWTs for GitHub-authenticated accounts
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

import jwt
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from unrepo.core.config import settings
from unrepo.core.database import get_db
from unrepo.core.errors import AppError, AuthError, AuthErrorReason
from unrepo.features.accounts.service import get_account
from unrepo.features.keys.service import authenticate_api_key, parse_api_key
from unrepo.features.wallets.service import authenticate_wallet, decode_wallet_address
from unrepo.models.account import Account
from unrepo.models.capability import Capability
from unrepo.models.principal import AuthenticatedPrincipal, PrincipalKind

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-api-key"
WALLET_HEADER = "x-wallet-address"
JWT_ALGORITHM = "HS256"


@dataclass(frozen=True)
class Credential:
    kind: PrincipalKind
    value: str


def read_credential(request: Request) -> Credential:
    """
    Pick the credential presented on the request. The API key wins when both
    headers are present.

    Raises:
        AuthError(MALFORMED): neither header present
    """
    api_key = (request.headers.get(API_KEY_HEADER) or "").strip()
    if api_key:
        return Credential(PrincipalKind.KEY, api_key)
    wallet = (request.headers.get(WALLET_HEADER) or "").strip()
    if wallet:
        return Credential(PrincipalKind.WALLET, wallet)
    raise AuthError(
        AuthErrorReason.MALFORMED,
        f"A credential is required: send an API key in {API_KEY_HEADER} or a wallet in {WALLET_HEADER}",
    )


def precheck_credential(credential: Credential, capability: Capability) -> None:
    """Structural validation only; never touches storage."""
    if credential.kind is PrincipalKind.KEY:
        parse_api_key(credential.value, capability)
    else:
        decode_wallet_address(credential.value)


def authenticate(db: Session, credential: Credential, capability: Capability) -> AuthenticatedPrincipal:
    if credential.kind is PrincipalKind.KEY:
        return authenticate_api_key(db, credential.value, capability)
    return authenticate_wallet(db, credential.value, capability)


def _jwt_secret() -> str:
    if not settings.JWT_SECRET:
        raise AppError("JWT_SECRET is not configured", code="config_error", status_code=500)
    return settings.JWT_SECRET


def issue_session_token(account: Account, now: Optional[datetime] = None) -> str:
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "sub": account.id,
        "github_username": account.github_username,
        "iat": issued_at,
        "exp": issued_at + timedelta(days=settings.JWT_EXPIRES_DAYS),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_session_token(token: str) -> str:
    """
    Verify a session JWT and return the account id.

    Raises:
        AuthError: expired or invalid token
    """
    try:
        payload = jwt.decode(token, _jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError(AuthErrorReason.NOT_FOUND, "Session expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid session token: {e}")
        raise AuthError(AuthErrorReason.MALFORMED, "Invalid session token")

    account_id = payload.get("sub")
    if not account_id:
        raise AuthError(AuthErrorReason.MALFORMED, "Invalid session token")
    return account_id


def get_current_account(request: Request, db: Session = Depends(get_db)) -> Account:
    """Resolve `Authorization: Bearer <jwt>` to the logged-in account."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise AuthError(AuthErrorReason.MALFORMED, "Missing Authorization (Bearer JWT) header")

    account = get_account(db, decode_session_token(auth_header[7:]))
    if account is None:
        raise AuthError(AuthErrorReason.NOT_FOUND, "Account not found")
    return account
