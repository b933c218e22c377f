"""
Research endpoint: one-shot repository report.

Order of checks: credential present and well-formed, body valid, principal
found, quota granted. Every check before the quota commit fails without
touching GitHub or a language model.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from unrepo.core.auth import authenticate, precheck_credential, read_credential
from unrepo.core.collaborators import get_analysis_service, get_github_service, get_quota_enforcer, get_usage_ledger
from unrepo.core.database import get_db
from unrepo.core.errors import ValidationError
from unrepo.api.common import envelope
from unrepo.features.ai.service import AnalysisService
from unrepo.features.github.service import GitHubService, parse_repo_url
from unrepo.features.quota.service import QuotaEnforcer
from unrepo.features.research.service import run_research
from unrepo.features.usage.service import UsageLedger
from unrepo.models.capability import Capability


router = APIRouter(prefix="/api/v1/research", tags=["research"])


class ResearchRequest(BaseModel):
    repoUrl: Optional[str] = None
    options: Dict[str, Any] = {}


@router.post("")
def research(
    request: Request,
    body: ResearchRequest,
    db: Session = Depends(get_db),
    enforcer: QuotaEnforcer = Depends(get_quota_enforcer),
    github: GitHubService = Depends(get_github_service),
    analysis: AnalysisService = Depends(get_analysis_service),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    credential = read_credential(request)
    precheck_credential(credential, Capability.RESEARCH)

    repo_url = (body.repoUrl or "").strip()
    if not repo_url:
        raise ValidationError("Repository URL is required")
    owner, repo = parse_repo_url(repo_url)

    principal = authenticate(db, credential, Capability.RESEARCH)
    decision = enforcer.enforce(db, principal, Capability.RESEARCH).raise_for_deny()

    data, warnings = run_research(
        db,
        principal,
        repo_url=repo_url,
        owner=owner,
        repo=repo,
        github=github,
        analysis=analysis,
        ledger=ledger,
    )
    return envelope(data, decision=decision, warnings=warnings)
