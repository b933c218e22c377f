"""
Account session endpoints: GitHub login and session lookup.
"""
from typing import Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from unrepo.core.auth import get_current_account, issue_session_token
from unrepo.core.database import get_db
from unrepo.core.errors import ValidationError
from unrepo.features.accounts.service import upsert_github_account
from unrepo.models.account import Account


router = APIRouter(prefix="/auth", tags=["auth"])


class GitHubLoginRequest(BaseModel):
    githubId: Optional[Union[str, int]] = None
    githubUsername: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    avatar: Optional[str] = None


def _account_payload(account: Account) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "email": account.email,
        "avatar": account.avatar,
        "githubUsername": account.github_username,
        "isTokenHolder": account.is_token_holder,
        "paymentVerified": account.payment_verified,
    }


@router.post("/github/login")
def github_login(body: GitHubLoginRequest, db: Session = Depends(get_db)):
    if body.githubId in (None, "") or not (body.githubUsername or "").strip():
        raise ValidationError("GitHub ID and username are required")

    account = upsert_github_account(
        db,
        github_id=str(body.githubId),
        username=body.githubUsername.strip(),
        email=body.email,
        name=body.name,
        avatar=body.avatar,
    )
    return {
        "success": True,
        "data": {
            "token": issue_session_token(account),
            "user": _account_payload(account),
        },
    }


@router.get("/session")
def session(account: Account = Depends(get_current_account)):
    return {"success": True, "data": {"user": _account_payload(account)}}
