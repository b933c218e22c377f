from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Account(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    github_id: Optional[str] = None
    github_username: Optional[str] = None
    avatar: Optional[str] = None
    auth_method: str = "GITHUB"
    payment_verified: bool = False
    is_token_holder: bool = False
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
