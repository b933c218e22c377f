"""
Chat orchestration.

Answers one chat turn after the quota decision has been committed, records
the call in the usage ledger and keeps the transcript in chat_messages.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from unrepo.core.database import chat_messages
from unrepo.core.errors import AnalysisUnavailableError
from unrepo.features.ai.service import AnalysisService, RepoContext
from unrepo.features.usage.service import UsageLedger, record_or_warn
from unrepo.models.capability import Capability
from unrepo.models.principal import AuthenticatedPrincipal


logger = logging.getLogger(__name__)

SUMMARY_MESSAGE_CHARS = 200


def session_id_for(principal: AuthenticatedPrincipal, now: datetime) -> str:
    stamp = int(now.timestamp() * 1000)
    if principal.api_key_id:
        return f"api_{principal.api_key_id}_{stamp}"
    return f"wallet_{principal.wallet_address}_{stamp}"


def save_transcript(
    db: Session,
    principal: AuthenticatedPrincipal,
    *,
    session_id: str,
    user_message: str,
    assistant_message: str,
    repo_context: Optional[Dict[str, Any]],
    now: datetime,
) -> None:
    context = json.dumps(repo_context) if repo_context else None
    rows = [
        {"role": "user", "content": user_message},
        {"role": "assistant", "content": assistant_message},
    ]
    db.execute(
        insert(chat_messages),
        [
            {
                "account_id": principal.account_id,
                "wallet_address": principal.wallet_address,
                "session_id": session_id,
                "role": row["role"],
                "content": row["content"],
                "repo_context": context,
                "created_at": now,
            }
            for row in rows
        ],
    )
    db.commit()


def list_transcript(
    db: Session, session_id: str, owner: Optional[AuthenticatedPrincipal] = None
) -> List[Dict[str, Any]]:
    """Messages of one session in order; with an owner, only that principal's rows."""
    query = select(chat_messages.c.role, chat_messages.c.content).where(chat_messages.c.session_id == session_id)
    if owner is not None:
        if owner.wallet_address:
            query = query.where(chat_messages.c.wallet_address == owner.wallet_address)
        else:
            query = query.where(chat_messages.c.account_id == owner.account_id)
    rows = db.execute(query.order_by(chat_messages.c.id)).all()
    return [{"role": row.role, "content": row.content} for row in rows]


def run_chat(
    db: Session,
    principal: AuthenticatedPrincipal,
    *,
    message: str,
    repo_url: Optional[str],
    context: RepoContext,
    history: List[Dict[str, str]],
    analysis: AnalysisService,
    ledger: UsageLedger,
) -> Tuple[Dict[str, Any], List[str]]:
    """Returns (data, warnings)."""
    messages = list(history) + [{"role": "user", "content": message}]
    try:
        reply = analysis.converse(messages, context)
    except AnalysisUnavailableError as e:
        logger.warning("[chat] response degraded: %s", e.message, extra={"error_code": e.code})
        reply = f"AI response unavailable: {e.message}"

    warnings: List[str] = []
    record_or_warn(
        ledger,
        db,
        warnings,
        account_id=principal.account_id,
        api_key_id=principal.api_key_id,
        wallet_address=principal.wallet_address,
        endpoint=Capability.CHAT.endpoint,
        method="POST",
        summary={"message": message[:SUMMARY_MESSAGE_CHARS], "repoUrl": repo_url},
    )

    now = datetime.now(timezone.utc)
    session_id = session_id_for(principal, now)
    try:
        save_transcript(
            db,
            principal,
            session_id=session_id,
            user_message=message,
            assistant_message=reply,
            repo_context={"repoUrl": repo_url, "owner": context.owner, "name": context.name} if repo_url else None,
            now=now,
        )
    except SQLAlchemyError:
        db.rollback()
        logger.error("[chat] transcript not saved", exc_info=True, extra={"event_type": "chat.save_failed"})
        warnings.append("transcript_not_saved")

    data = {
        "response": reply,
        "sessionId": session_id,
        "conversationHistory": messages + [{"role": "assistant", "content": reply}],
    }
    return data, warnings
