"""
unrepo/features/quota/service.py

Quota enforcement.

Decision procedure per call:
- FREE key: lifetime cap on usage_count
- FREE wallet: per-capability counter against the wallet's own limit
- PREMIUM wallet (token holder): unconditional allow, no increment
- PREMIUM key: rolling window over the usage ledger

Every counted allow increments with a single conditional UPDATE, so two
requests racing at used = limit - 1 cannot both be granted. The decision and
the increment are committed before the caller makes any external call.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from unrepo.core.config import settings
from unrepo.core.database import api_keys, wallet_users
from unrepo.core.errors import QuotaError, QuotaErrorReason
from unrepo.core.logging import log_event
from unrepo.features.tiers.service import classify_principal
from unrepo.features.usage.service import UsageLedger
from unrepo.models.capability import Capability
from unrepo.models.principal import AuthenticatedPrincipal, PrincipalKind, Tier


@dataclass(frozen=True)
class QuotaPolicy:
    free_key_lifetime_limit: int = 5
    premium_research_per_window: int = 100
    premium_chat_per_window: int = 200
    window_seconds: int = 3600

    @classmethod
    def from_settings(cls, cfg=None) -> "QuotaPolicy":
        cfg = cfg or settings
        return cls(
            free_key_lifetime_limit=cfg.FREE_KEY_LIFETIME_LIMIT,
            premium_research_per_window=cfg.PREMIUM_RESEARCH_PER_HOUR,
            premium_chat_per_window=cfg.PREMIUM_CHAT_PER_HOUR,
            window_seconds=cfg.RATE_WINDOW_SECONDS,
        )

    def premium_ceiling(self, capability: Capability) -> int:
        if capability is Capability.RESEARCH:
            return self.premium_research_per_window
        return self.premium_chat_per_window


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    tier: Tier
    capability: Capability
    used: Optional[int] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reason: Optional[QuotaErrorReason] = None
    message: Optional[str] = None
    bypass: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    def usage(self) -> Dict[str, Any]:
        """Counters returned to the caller alongside every response."""
        return {
            "tier": self.tier.value,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "unlimited": self.bypass,
        }

    def raise_for_deny(self) -> "QuotaDecision":
        if not self.allowed:
            raise QuotaError(self.reason, self.message, used=self.used, limit=self.limit)
        return self


def _utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _wallet_columns(capability: Capability):
    if capability is Capability.RESEARCH:
        return wallet_users.c.research_used, wallet_users.c.research_limit
    return wallet_users.c.chat_used, wallet_users.c.chat_limit


def free_key_message(limit: int) -> str:
    return f"Free tier limit reached ({limit} calls). Please upgrade to continue using this API."


def wallet_limit_message(capability: Capability, limit: int) -> str:
    label = "Research" if capability is Capability.RESEARCH else "Chat"
    return (
        f"Free tier limit reached: {label} limit of {limit} used. "
        "Hold 1M+ $UNREPO tokens for unlimited access!"
    )


def rate_limit_message(ceiling: int) -> str:
    return f"Rate limit exceeded. Maximum {ceiling} requests per hour."


class QuotaEnforcer:
    """Allow/deny decisions with atomic consumption accounting."""

    def __init__(self, policy: Optional[QuotaPolicy] = None, ledger: Optional[UsageLedger] = None):
        self.policy = policy or QuotaPolicy.from_settings()
        self.ledger = ledger or UsageLedger()

    def enforce(
        self,
        db: Session,
        principal: AuthenticatedPrincipal,
        capability: Optional[Capability] = None,
        now: Optional[datetime] = None,
    ) -> QuotaDecision:
        """Decide and, on a counted allow, commit the increment."""
        capability = capability or principal.capability
        now = _utc(now)
        tier = classify_principal(principal)

        if principal.kind is PrincipalKind.WALLET:
            if tier is Tier.PREMIUM:
                decision = QuotaDecision(allowed=True, tier=tier, capability=capability, bypass=True)
            else:
                decision = self._consume_wallet(db, principal, capability, tier, now)
        elif tier is Tier.FREE:
            decision = self._consume_free_key(db, principal, capability, tier, now)
        else:
            decision = self._consume_premium_key(db, principal, capability, tier, now)

        self._log(principal, decision)
        return decision

    def check(
        self,
        db: Session,
        principal: AuthenticatedPrincipal,
        capability: Optional[Capability] = None,
        now: Optional[datetime] = None,
    ) -> QuotaDecision:
        """Same decision as enforce with no writes; remaining counts the current state."""
        capability = capability or principal.capability
        now = _utc(now)
        tier = classify_principal(principal)

        if principal.kind is PrincipalKind.WALLET:
            wallet = principal.wallet
            if tier is Tier.PREMIUM:
                return QuotaDecision(allowed=True, tier=tier, capability=capability, bypass=True)
            used, limit = wallet.used(capability), wallet.limit(capability)
            if used >= limit:
                return self._deny_free_wallet(tier, capability, used, limit)
            return QuotaDecision(
                allowed=True, tier=tier, capability=capability, used=used, limit=limit, remaining=limit - used
            )

        key = principal.api_key
        if tier is Tier.FREE:
            limit = self.policy.free_key_lifetime_limit
            used = key.usage_count
            if used >= limit:
                return self._deny_free_key(tier, capability, used, limit)
            return QuotaDecision(
                allowed=True, tier=tier, capability=capability, used=used, limit=limit, remaining=limit - used
            )

        ceiling = self.policy.premium_ceiling(capability)
        recent = self.ledger.count_recent(db, key.id, self.policy.window_seconds, now)
        if recent >= ceiling:
            return self._deny_rate(tier, capability, recent, ceiling)
        return QuotaDecision(
            allowed=True, tier=tier, capability=capability, used=recent, limit=ceiling, remaining=ceiling - recent
        )

    def _consume_free_key(self, db, principal, capability, tier, now) -> QuotaDecision:
        key_id = principal.api_key.id
        limit = self.policy.free_key_lifetime_limit
        try:
            result = db.execute(
                update(api_keys)
                .where(api_keys.c.id == key_id)
                .where(api_keys.c.usage_count < limit)
                .values(usage_count=api_keys.c.usage_count + 1, last_used_at=now)
            )
            if result.rowcount == 0:
                db.rollback()
                used = db.execute(select(api_keys.c.usage_count).where(api_keys.c.id == key_id)).scalar()
                return self._deny_free_key(tier, capability, used, limit)

            # Read inside the same transaction: the row is locked until commit
            used_after = db.execute(select(api_keys.c.usage_count).where(api_keys.c.id == key_id)).scalar()
            db.commit()
        except Exception:
            db.rollback()
            raise
        return QuotaDecision(
            allowed=True,
            tier=tier,
            capability=capability,
            used=used_after,
            limit=limit,
            remaining=max(limit - used_after, 0),
        )

    def _consume_premium_key(self, db, principal, capability, tier, now) -> QuotaDecision:
        key_id = principal.api_key.id
        ceiling = self.policy.premium_ceiling(capability)
        recent = self.ledger.count_recent(db, key_id, self.policy.window_seconds, now)
        if recent >= ceiling:
            return self._deny_rate(tier, capability, recent, ceiling)

        try:
            db.execute(
                update(api_keys)
                .where(api_keys.c.id == key_id)
                .values(usage_count=api_keys.c.usage_count + 1, last_used_at=now)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        return QuotaDecision(
            allowed=True,
            tier=tier,
            capability=capability,
            used=recent + 1,
            limit=ceiling,
            remaining=max(ceiling - (recent + 1), 0),
        )

    def _consume_wallet(self, db, principal, capability, tier, now) -> QuotaDecision:
        address = principal.wallet.wallet_address
        used_col, limit_col = _wallet_columns(capability)
        try:
            result = db.execute(
                update(wallet_users)
                .where(wallet_users.c.wallet_address == address)
                .where(used_col < limit_col)
                .values({used_col: used_col + 1, wallet_users.c.last_used_at: now})
            )
            if result.rowcount == 0:
                db.rollback()
                row = db.execute(
                    select(used_col, limit_col).where(wallet_users.c.wallet_address == address)
                ).first()
                used, limit = (row[0], row[1]) if row else (0, 0)
                return self._deny_free_wallet(tier, capability, used, limit)

            row = db.execute(select(used_col, limit_col).where(wallet_users.c.wallet_address == address)).first()
            db.commit()
        except Exception:
            db.rollback()
            raise
        used_after, limit = row[0], row[1]
        return QuotaDecision(
            allowed=True,
            tier=tier,
            capability=capability,
            used=used_after,
            limit=limit,
            remaining=max(limit - used_after, 0),
        )

    def _deny_free_key(self, tier, capability, used, limit) -> QuotaDecision:
        return QuotaDecision(
            allowed=False,
            tier=tier,
            capability=capability,
            used=used,
            limit=limit,
            remaining=0,
            reason=QuotaErrorReason.FREE_LIMIT_EXCEEDED,
            message=free_key_message(limit),
        )

    def _deny_free_wallet(self, tier, capability, used, limit) -> QuotaDecision:
        return QuotaDecision(
            allowed=False,
            tier=tier,
            capability=capability,
            used=used,
            limit=limit,
            remaining=0,
            reason=QuotaErrorReason.FREE_LIMIT_EXCEEDED,
            message=wallet_limit_message(capability, limit),
        )

    def _deny_rate(self, tier, capability, recent, ceiling) -> QuotaDecision:
        return QuotaDecision(
            allowed=False,
            tier=tier,
            capability=capability,
            used=recent,
            limit=ceiling,
            remaining=0,
            reason=QuotaErrorReason.RATE_LIMIT_EXCEEDED,
            message=rate_limit_message(ceiling),
        )

    @staticmethod
    def _log(principal: AuthenticatedPrincipal, decision: QuotaDecision) -> None:
        common = dict(
            principal=principal.label,
            capability=decision.capability.value,
            tier=decision.tier.value,
        )
        if decision.allowed:
            log_event(
                "info",
                "quota.allow",
                event_type="quota.allow",
                extra={"used": decision.used, "limit": decision.limit, "bypass": decision.bypass},
                **common,
            )
        else:
            log_event(
                "warning",
                "quota.deny",
                event_type="quota.deny",
                error_code=decision.reason.value,
                extra={"used": decision.used, "limit": decision.limit},
                **common,
            )
