"""
unrepo/features/wallets/service.py

Wallet principals.

Handles:
- Base58 address decoding and detached Ed25519 signature verification
- Idempotent registration with fixed starting limits
- Wallet authentication for research/chat calls
- Token-holder refresh (explicit call or detached background task)
"""
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from unrepo.core.config import settings
from unrepo.core.database import wallet_users, get_db_session
from unrepo.core.errors import AuthError, AuthErrorReason, CollaboratorError, NotFoundError, ValidationError
from unrepo.core.logging import mask_wallet
from unrepo.models.capability import Capability
from unrepo.models.principal import AuthenticatedPrincipal
from unrepo.models.wallet import Wallet


logger = logging.getLogger(__name__)

PUBLIC_KEY_BYTES = 32
SIGNATURE_BYTES = 64
SIGNATURE_MODE_STRICT = "strict"
SIGNATURE_MODE_PERMISSIVE = "permissive"


def _row_to_wallet(row) -> Wallet:
    return Wallet(
        wallet_address=row.wallet_address,
        signature_hash=row.signature_hash,
        is_verified=bool(row.is_verified),
        research_used=row.research_used,
        research_limit=row.research_limit,
        chat_used=row.chat_used,
        chat_limit=row.chat_limit,
        is_token_holder=bool(row.is_token_holder),
        token_balance=float(row.token_balance or 0),
        last_token_check=row.last_token_check,
        last_used_at=row.last_used_at,
        created_at=row.created_at,
    )


def decode_wallet_address(address: Optional[str]) -> bytes:
    """
    Decode a base58 wallet address into its 32-byte Ed25519 public key.

    Raises:
        AuthError(MALFORMED): not base58 or wrong length
    """
    value = (address or "").strip()
    if not value:
        raise AuthError(AuthErrorReason.MALFORMED, "Wallet address is required")
    try:
        raw = base58.b58decode(value)
    except ValueError:
        raise AuthError(AuthErrorReason.MALFORMED, "Wallet address is not valid base58")
    if len(raw) != PUBLIC_KEY_BYTES:
        raise AuthError(AuthErrorReason.MALFORMED, "Wallet address must encode a 32-byte public key")
    return raw


def verify_wallet_signature(address: str, signature: str, message: str) -> None:
    """
    Verify a detached Ed25519 signature over the UTF-8 message.

    Raises:
        AuthError(MALFORMED): address not decodable
        AuthError(INVALID_SIGNATURE): signature not decodable or does not verify
    """
    public_key_bytes = decode_wallet_address(address)
    try:
        signature_bytes = base58.b58decode(signature)
    except ValueError:
        raise AuthError(AuthErrorReason.INVALID_SIGNATURE, "Signature is not valid base58")
    if len(signature_bytes) != SIGNATURE_BYTES:
        raise AuthError(AuthErrorReason.INVALID_SIGNATURE, "Signature must be 64 bytes")

    public_key = Ed25519PublicKey.from_public_bytes(public_key_bytes)
    try:
        public_key.verify(signature_bytes, message.encode("utf-8"))
    except InvalidSignature:
        raise AuthError(AuthErrorReason.INVALID_SIGNATURE, "Invalid signature")


def get_wallet(db: Session, address: str) -> Optional[Wallet]:
    row = db.execute(select(wallet_users).where(wallet_users.c.wallet_address == address)).first()
    return _row_to_wallet(row) if row else None


def register_wallet(
    db: Session,
    address: str,
    signature: str,
    message: str,
    *,
    mode: Optional[str] = None,
) -> Tuple[Wallet, bool]:
    """
    Register a wallet. Returns (wallet, created).

    An existing wallet is returned unchanged; counters are never reset.
    In strict mode a failed signature check raises AuthError(INVALID_SIGNATURE);
    in permissive mode it is logged and registration proceeds.
    """
    existing = get_wallet(db, address)
    if existing:
        return existing, False

    signature_mode = (mode or settings.SIGNATURE_MODE or SIGNATURE_MODE_STRICT).lower()
    try:
        verify_wallet_signature(address, signature, message)
    except AuthError as e:
        if e.reason is AuthErrorReason.MALFORMED or signature_mode != SIGNATURE_MODE_PERMISSIVE:
            raise
        logger.warning(
            "[wallet] signature verification failed for %s; registering in permissive mode",
            mask_wallet(address),
            extra={"event_type": "wallet.signature_bypass", "error_code": e.reason.value},
        )

    now = datetime.now(timezone.utc)
    try:
        db.execute(
            insert(wallet_users).values(
                wallet_address=address,
                signature_hash=hashlib.sha256(signature.encode("utf-8")).hexdigest(),
                is_verified=True,
                research_used=0,
                research_limit=settings.WALLET_RESEARCH_LIMIT,
                chat_used=0,
                chat_limit=settings.WALLET_CHAT_LIMIT,
                is_token_holder=False,
                token_balance=0,
                created_at=now,
            )
        )
        db.commit()
    except IntegrityError:
        # Concurrent registration of the same address won the insert
        db.rollback()
        return get_wallet(db, address), False

    logger.info(
        "[wallet] registered %s",
        mask_wallet(address),
        extra={"principal": f"wallet:{mask_wallet(address)}", "event_type": "wallet.registered"},
    )
    return get_wallet(db, address), True


def authenticate_wallet(db: Session, address: Optional[str], capability: Capability) -> AuthenticatedPrincipal:
    """
    Resolve a wallet header into a wallet principal.

    Raises:
        AuthError(MALFORMED): address is not a base58 32-byte key
        AuthError(NOT_FOUND): wallet missing or not verified
    """
    decode_wallet_address(address)
    wallet = get_wallet(db, address.strip())
    if wallet is None or not wallet.is_verified:
        raise AuthError(AuthErrorReason.NOT_FOUND, "Wallet not registered")
    return AuthenticatedPrincipal.for_wallet(wallet, capability)


def validate_wallet_address(address: Optional[str]) -> str:
    """Strip and check an address from a request body or query; malformed input is a 400."""
    try:
        decode_wallet_address(address)
    except AuthError as e:
        raise ValidationError(e.message)
    return address.strip()


def require_wallet(db: Session, address: Optional[str]) -> Wallet:
    """Lookup for the wallet management endpoints: 400 on bad input, 404 when absent."""
    value = validate_wallet_address(address)
    wallet = get_wallet(db, value)
    if wallet is None:
        raise NotFoundError("Wallet not registered")
    return wallet


def wallet_summary(wallet: Wallet, *, include_token_state: bool = True) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "walletAddress": wallet.wallet_address,
        "researchUsed": wallet.research_used,
        "researchLimit": wallet.research_limit,
        "chatUsed": wallet.chat_used,
        "chatLimit": wallet.chat_limit,
    }
    if include_token_state:
        data.update(
            {
                "isVerified": wallet.is_verified,
                "isTokenHolder": wallet.is_token_holder,
                "tokenBalance": wallet.token_balance,
                "lastTokenCheck": wallet.last_token_check.isoformat() if wallet.last_token_check else None,
            }
        )
    return data


def refresh_token_status(db: Session, address: str, oracle) -> Dict[str, Any]:
    """
    Ask the oracle for the current balance and cache it on the wallet row.

    Unregistered addresses are only reported on, not created.
    Raises CollaboratorError when the oracle fails.
    """
    verification = oracle.verify_token_holder(address)
    registered = get_wallet(db, address) is not None
    if registered:
        db.execute(
            update(wallet_users)
            .where(wallet_users.c.wallet_address == address)
            .values(
                is_token_holder=verification.is_token_holder,
                token_balance=verification.token_balance,
                last_token_check=datetime.now(timezone.utc),
            )
        )
        db.commit()
        logger.info(
            "[wallet] token status updated for %s holder=%s",
            mask_wallet(address),
            verification.is_token_holder,
            extra={"event_type": "wallet.token_refreshed"},
        )

    result = verification.to_dict()
    result["registered"] = registered
    return result


def refresh_token_status_in_background(address: str, oracle) -> None:
    """
    Detached best-effort refresh scheduled after registration.

    Opens its own session (the request session is closed by then). A failure
    is logged at WARNING and otherwise ignored.
    """
    try:
        with get_db_session() as session:
            refresh_token_status(session, address, oracle)
    except CollaboratorError as e:
        logger.warning(
            "[wallet] background token check skipped for %s: %s",
            mask_wallet(address),
            e.message,
            extra={"event_type": "wallet.token_refresh_failed", "error_code": e.code},
        )
    except Exception:
        logger.warning(
            "[wallet] background token check failed for %s",
            mask_wallet(address),
            exc_info=True,
            extra={"event_type": "wallet.token_refresh_failed"},
        )
