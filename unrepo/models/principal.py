"""
Authenticated principal passed explicitly from the authentication step through
tier classification, quota enforcement and the request handlers.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from unrepo.models.account import Account
from unrepo.models.api_key import ApiKey
from unrepo.models.capability import Capability
from unrepo.models.wallet import Wallet


class Tier(str, Enum):
    FREE = "FREE"
    PREMIUM = "PREMIUM"


class PrincipalKind(str, Enum):
    KEY = "key"
    WALLET = "wallet"


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    kind: PrincipalKind
    capability: Capability
    api_key: Optional[ApiKey] = None
    account: Optional[Account] = None
    wallet: Optional[Wallet] = None

    @classmethod
    def for_key(cls, api_key: ApiKey, account: Account) -> "AuthenticatedPrincipal":
        return cls(kind=PrincipalKind.KEY, capability=api_key.capability, api_key=api_key, account=account)

    @classmethod
    def for_wallet(cls, wallet: Wallet, capability: Capability) -> "AuthenticatedPrincipal":
        return cls(kind=PrincipalKind.WALLET, capability=capability, wallet=wallet)

    @property
    def account_id(self) -> Optional[str]:
        return self.account.id if self.account else None

    @property
    def api_key_id(self) -> Optional[str]:
        return self.api_key.id if self.api_key else None

    @property
    def wallet_address(self) -> Optional[str]:
        return self.wallet.wallet_address if self.wallet else None

    @property
    def label(self) -> str:
        """Log-safe identifier (never the bearer token)."""
        if self.kind is PrincipalKind.KEY and self.api_key:
            return f"key:{self.api_key.id}"
        if self.wallet:
            return f"wallet:{self.wallet.wallet_address[:8]}..."
        return "anonymous"
