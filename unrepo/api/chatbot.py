"""
Chatbot endpoint: one chat turn grounded in repository content.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from unrepo.core.auth import authenticate, precheck_credential, read_credential
from unrepo.core.collaborators import get_analysis_service, get_quota_enforcer, get_usage_ledger
from unrepo.core.database import get_db
from unrepo.core.errors import NotFoundError, ValidationError
from unrepo.api.common import envelope
from unrepo.features.ai.service import AnalysisService, RepoContext
from unrepo.features.chat.service import list_transcript, run_chat
from unrepo.features.quota.service import QuotaEnforcer
from unrepo.features.usage.service import UsageLedger
from unrepo.models.capability import Capability


router = APIRouter(prefix="/api/v1/chatbot", tags=["chatbot"])


class ChatFile(BaseModel):
    path: str
    content: str = ""


class ChatRepoContext(BaseModel):
    owner: str = ""
    name: str = ""
    files: List[ChatFile] = []


class ChatTurn(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    message: Optional[str] = None
    repoUrl: Optional[str] = None
    repoContext: Optional[ChatRepoContext] = None
    conversationHistory: List[ChatTurn] = []


@router.post("")
def chatbot(
    request: Request,
    body: ChatRequest,
    db: Session = Depends(get_db),
    enforcer: QuotaEnforcer = Depends(get_quota_enforcer),
    analysis: AnalysisService = Depends(get_analysis_service),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    credential = read_credential(request)
    precheck_credential(credential, Capability.CHAT)

    message = (body.message or "").strip()
    if not message:
        raise ValidationError("Message is required")

    principal = authenticate(db, credential, Capability.CHAT)
    decision = enforcer.enforce(db, principal, Capability.CHAT).raise_for_deny()

    repo_context = body.repoContext or ChatRepoContext()
    context = RepoContext(
        repo_url=body.repoUrl or "",
        owner=repo_context.owner,
        name=repo_context.name,
        files=[f.model_dump() for f in repo_context.files],
    )
    data, warnings = run_chat(
        db,
        principal,
        message=message,
        repo_url=body.repoUrl,
        context=context,
        history=[turn.model_dump() for turn in body.conversationHistory],
        analysis=analysis,
        ledger=ledger,
    )
    return envelope(data, decision=decision, warnings=warnings)


@router.get("/sessions/{session_id}")
def chat_session(session_id: str, request: Request, db: Session = Depends(get_db)):
    credential = read_credential(request)
    precheck_credential(credential, Capability.CHAT)
    principal = authenticate(db, credential, Capability.CHAT)

    messages = list_transcript(db, session_id, owner=principal)
    if not messages:
        raise NotFoundError("Chat session not found")
    return envelope({"sessionId": session_id, "messages": messages})
