"""
Collaborator providers.

Every external collaborator reaches the route functions through one of these
FastAPI dependencies, so tests substitute fakes with `app.dependency_overrides`.
"""

from unrepo.features.ai.service import AnalysisService
from unrepo.features.github.service import GitHubService
from unrepo.features.quota.service import QuotaEnforcer, QuotaPolicy
from unrepo.features.tokens.oracle import HeliusTokenOracle
from unrepo.features.usage.service import UsageLedger


def get_usage_ledger() -> UsageLedger:
    return UsageLedger()


def get_quota_enforcer() -> QuotaEnforcer:
    return QuotaEnforcer(QuotaPolicy.from_settings(), get_usage_ledger())


def get_github_service() -> GitHubService:
    return GitHubService()


def get_analysis_service() -> AnalysisService:
    return AnalysisService.from_settings()


def get_token_oracle() -> HeliusTokenOracle:
    return HeliusTokenOracle()
