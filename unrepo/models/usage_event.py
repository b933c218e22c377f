"""
UsageEvent model.

One row per accepted call. Append-only: never mutated or deleted.
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class UsageEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    account_id: Optional[str] = None
    api_key_id: Optional[str] = None
    wallet_address: Optional[str] = None
    endpoint: str
    method: str
    request_summary: Optional[Dict[str, Any]] = None
    created_at: datetime
