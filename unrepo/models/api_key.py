"""
ApiKey model.

The bearer token itself is never stored; `key_hash` is its SHA-256 digest and
`key_prefix` a display-only leading slice.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from unrepo.models.capability import Capability


class ApiKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    account_id: str
    name: str
    capability: Capability
    key_hash: str
    key_prefix: str
    is_active: bool = True
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class IssuedApiKey(BaseModel):
    """Result of key issuance: the only place the plaintext token appears."""
    model_config = ConfigDict(frozen=True)

    key: ApiKey
    token: str
