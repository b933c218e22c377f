"""
unrepo/features/usage/service.py

Usage ledger.

Handles:
- Appending one event per accepted call (committed before returning)
- Rolling-window counts for premium rate limiting
- Audit listing by account, key or wallet
"""

import json
import logging
from datetime import datetime, timezone, timedelta
from typing import Dict, Optional, Any, List
from sqlalchemy import select, insert, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from unrepo.core.database import api_usage
from unrepo.core.errors import LedgerWriteError
from unrepo.models.usage_event import UsageEvent


logger = logging.getLogger(__name__)


def _utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _decode_summary(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        decoded = json.loads(raw)
    except ValueError:
        return {"raw": raw}
    return decoded if isinstance(decoded, dict) else {"value": decoded}


def _row_to_event(row) -> UsageEvent:
    return UsageEvent(
        id=row.id,
        account_id=row.account_id,
        api_key_id=row.api_key_id,
        wallet_address=row.wallet_address,
        endpoint=row.endpoint,
        method=row.method,
        request_summary=_decode_summary(row.request_summary),
        created_at=_utc(row.created_at),
    )


class UsageLedger:
    """Append-only record of accepted calls."""

    def record(
        self,
        db: Session,
        *,
        account_id: Optional[str],
        api_key_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
        endpoint: str,
        method: str = "POST",
        summary: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> UsageEvent:
        """
        Append a usage event and commit it.

        The event is durable and visible to count_recent before this returns.

        Raises:
            LedgerWriteError: storage rejected the write (session rolled back)
        """
        created_at = _utc(now)
        try:
            result = db.execute(
                insert(api_usage).values(
                    account_id=account_id,
                    api_key_id=api_key_id,
                    wallet_address=wallet_address,
                    endpoint=endpoint,
                    method=method,
                    request_summary=json.dumps(summary, default=str) if summary is not None else None,
                    created_at=created_at,
                )
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise LedgerWriteError(f"Failed to record usage for {endpoint}") from e

        inserted = result.inserted_primary_key
        return UsageEvent(
            id=inserted[0] if inserted else None,
            account_id=account_id,
            api_key_id=api_key_id,
            wallet_address=wallet_address,
            endpoint=endpoint,
            method=method,
            request_summary=summary,
            created_at=created_at,
        )

    def count_recent(
        self,
        db: Session,
        api_key_id: str,
        window_seconds: int,
        now: Optional[datetime] = None,
    ) -> int:
        """Count events for a key with created_at inside the trailing window."""
        since = _utc(now) - timedelta(seconds=window_seconds)
        count = db.execute(
            select(func.count())
            .select_from(api_usage)
            .where(api_usage.c.api_key_id == api_key_id)
            .where(api_usage.c.created_at >= since)
        ).scalar()
        return int(count or 0)

    def count_total(
        self,
        db: Session,
        *,
        account_id: Optional[str] = None,
        api_key_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
    ) -> int:
        query = select(func.count()).select_from(api_usage)
        query = self._filter(query, account_id, api_key_id, wallet_address)
        return int(db.execute(query).scalar() or 0)

    def list_events(
        self,
        db: Session,
        *,
        account_id: Optional[str] = None,
        api_key_id: Optional[str] = None,
        wallet_address: Optional[str] = None,
        limit: int = 50,
    ) -> List[UsageEvent]:
        """Most recent events first, filtered by the given owner."""
        query = select(api_usage)
        query = self._filter(query, account_id, api_key_id, wallet_address)
        query = query.order_by(api_usage.c.created_at.desc(), api_usage.c.id.desc()).limit(limit)
        return [_row_to_event(row) for row in db.execute(query).all()]

    def history(self, db: Session, *, limit: int = 50, **owner) -> Dict[str, Any]:
        """Audit view for one owner: lifetime total plus the most recent events."""
        return {
            "total": self.count_total(db, **owner),
            "events": [event_payload(e) for e in self.list_events(db, limit=limit, **owner)],
        }

    @staticmethod
    def _filter(query, account_id, api_key_id, wallet_address):
        if account_id is None and api_key_id is None and wallet_address is None:
            raise ValueError("an account_id, api_key_id or wallet_address filter is required")
        if account_id is not None:
            query = query.where(api_usage.c.account_id == account_id)
        if api_key_id is not None:
            query = query.where(api_usage.c.api_key_id == api_key_id)
        if wallet_address is not None:
            query = query.where(api_usage.c.wallet_address == wallet_address)
        return query


def event_payload(event: UsageEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "endpoint": event.endpoint,
        "method": event.method,
        "apiKeyId": event.api_key_id,
        "walletAddress": event.wallet_address,
        "requestSummary": event.request_summary,
        "createdAt": _utc(event.created_at).isoformat(),
    }


def record_or_warn(ledger: UsageLedger, db: Session, warnings: List[str], **kwargs) -> Optional[UsageEvent]:
    """
    Record usage after the call was already served.

    A ledger failure never fails the request: it is logged at ERROR and
    surfaced as a `usage_not_recorded` warning on the success response.
    """
    try:
        return ledger.record(db, **kwargs)
    except LedgerWriteError as e:
        logger.error(
            "[usage] ledger write failed",
            exc_info=True,
            extra={"event_type": "usage.record_failed", "error_code": e.code},
        )
        warnings.append("usage_not_recorded")
        return None
