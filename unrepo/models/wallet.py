from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from unrepo.models.capability import Capability


class Wallet(BaseModel):
    """
    Wallet principal: self-contained, carries its own tier state.

    Counters are per capability so exhausting chat never blocks research.
    """
    model_config = ConfigDict(frozen=True)

    wallet_address: str
    signature_hash: Optional[str] = None
    is_verified: bool = False
    research_used: int = 0
    research_limit: int = 1
    chat_used: int = 0
    chat_limit: int = 5
    is_token_holder: bool = False
    token_balance: float = 0.0
    last_token_check: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def used(self, capability: Capability) -> int:
        return self.research_used if capability is Capability.RESEARCH else self.chat_used

    def limit(self, capability: Capability) -> int:
        return self.research_limit if capability is Capability.RESEARCH else self.chat_limit
