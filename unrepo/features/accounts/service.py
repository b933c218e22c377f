"""
Account domain service.
- get_account / get_account_by_email
- get_or_create_account_by_email (key issuance without login)
- upsert_github_account (GitHub login)
- set_tier_flags (payment / token-holder upgrades)
"""

import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.orm import Session

from unrepo.core.database import accounts
from unrepo.models.account import Account


def row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        name=row.name,
        github_id=row.github_id,
        github_username=row.github_username,
        avatar=row.avatar,
        auth_method=row.auth_method,
        payment_verified=bool(row.payment_verified),
        is_token_holder=bool(row.is_token_holder),
        created_at=row.created_at,
        last_login_at=row.last_login_at,
    )


def get_account(db: Session, account_id: str) -> Optional[Account]:
    row = db.execute(select(accounts).where(accounts.c.id == account_id)).first()
    return row_to_account(row) if row else None


def get_account_by_email(db: Session, email: str) -> Optional[Account]:
    row = db.execute(select(accounts).where(accounts.c.email == email.strip().lower())).first()
    return row_to_account(row) if row else None


def get_or_create_account_by_email(db: Session, email: str, name: Optional[str] = None) -> Account:
    normalized = email.strip().lower()
    existing = get_account_by_email(db, normalized)
    if existing:
        return existing

    account_id = str(uuid.uuid4())
    db.execute(
        insert(accounts).values(
            id=account_id,
            email=normalized,
            name=name or normalized.split("@")[0],
            auth_method="EMAIL",
            payment_verified=False,
            is_token_holder=False,
            created_at=datetime.now(timezone.utc),
        )
    )
    db.commit()
    return get_account(db, account_id)


def upsert_github_account(
    db: Session,
    *,
    github_id: str,
    username: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    avatar: Optional[str] = None,
) -> Account:
    """Create or refresh the account for a GitHub identity and stamp the login."""
    now = datetime.now(timezone.utc)
    normalized_email = email.strip().lower() if email else None
    row = db.execute(select(accounts).where(accounts.c.github_id == str(github_id))).first()

    if row is None and normalized_email:
        # Link an account created earlier through key issuance
        row = db.execute(select(accounts).where(accounts.c.email == normalized_email)).first()

    if row is None:
        account_id = str(uuid.uuid4())
        db.execute(
            insert(accounts).values(
                id=account_id,
                email=normalized_email,
                name=name or username,
                github_id=str(github_id),
                github_username=username,
                avatar=avatar,
                auth_method="GITHUB",
                created_at=now,
                last_login_at=now,
            )
        )
    else:
        account_id = row.id
        db.execute(
            update(accounts)
            .where(accounts.c.id == account_id)
            .values(
                github_id=str(github_id),
                github_username=username,
                name=name or row.name or username,
                avatar=avatar or row.avatar,
                email=row.email or normalized_email,
                last_login_at=now,
            )
        )
    db.commit()
    return get_account(db, account_id)


def set_tier_flags(
    db: Session,
    account_id: str,
    *,
    payment_verified: Optional[bool] = None,
    is_token_holder: Optional[bool] = None,
) -> Optional[Account]:
    values = {}
    if payment_verified is not None:
        values["payment_verified"] = payment_verified
    if is_token_holder is not None:
        values["is_token_holder"] = is_token_holder
    if values:
        db.execute(update(accounts).where(accounts.c.id == account_id).values(**values))
        db.commit()
    return get_account(db, account_id)
