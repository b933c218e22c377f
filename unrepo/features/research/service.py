"""
Research orchestration.

Runs after the quota decision has been committed: fetch the repository,
ask for an analysis, record the call. An analysis failure degrades to a
placeholder string; the caller has already spent a quota unit on the attempt.
"""

import logging
from typing import Any, Dict, List, Tuple

from sqlalchemy.orm import Session

from unrepo.core.errors import AnalysisUnavailableError
from unrepo.features.ai.service import AnalysisService, RepoContext
from unrepo.features.github.service import GitHubService
from unrepo.features.usage.service import UsageLedger, record_or_warn
from unrepo.models.capability import Capability
from unrepo.models.principal import AuthenticatedPrincipal


logger = logging.getLogger(__name__)

SAMPLE_FILES = ["README.md", "package.json", "Cargo.toml", "go.mod", "requirements.txt", "setup.py"]
FILE_TREE_LIMIT = 100
ANALYSIS_NOT_AVAILABLE = "AI analysis not available"


def run_analysis(analysis: AnalysisService, context: RepoContext) -> Any:
    if not analysis.available:
        return ANALYSIS_NOT_AVAILABLE
    try:
        return analysis.analyze(context)
    except AnalysisUnavailableError as e:
        logger.warning("[research] analysis degraded: %s", e.message, extra={"error_code": e.code})
        return f"AI analysis unavailable: {e.message}"


def run_research(
    db: Session,
    principal: AuthenticatedPrincipal,
    *,
    repo_url: str,
    owner: str,
    repo: str,
    github: GitHubService,
    analysis: AnalysisService,
    ledger: UsageLedger,
) -> Tuple[Dict[str, Any], List[str]]:
    """Returns (data, warnings)."""
    repo_data = github.get_repository(owner, repo)
    branch = repo_data["branch"]
    file_tree = github.get_file_tree(owner, repo, branch)
    languages = github.get_languages(owner, repo)
    sample_files = github.get_multiple_files(owner, repo, SAMPLE_FILES, branch)

    report = run_analysis(
        analysis,
        RepoContext(repo_url=repo_url, owner=owner, name=repo, files=sample_files, structure=file_tree),
    )

    warnings: List[str] = []
    record_or_warn(
        ledger,
        db,
        warnings,
        account_id=principal.account_id,
        api_key_id=principal.api_key_id,
        wallet_address=principal.wallet_address,
        endpoint=Capability.RESEARCH.endpoint,
        method="POST",
        summary={"repoUrl": repo_url},
    )

    data = {
        "repository": {
            "owner": owner,
            "name": repo,
            "url": repo_url,
            "description": repo_data["description"],
            "stars": repo_data["stars"],
            "forks": repo_data["forks"],
            "language": repo_data["language"],
            "branch": branch,
        },
        "languages": languages,
        "fileTree": file_tree[:FILE_TREE_LIMIT],
        "files": sample_files,
        "analysis": report,
    }
    return data, warnings
