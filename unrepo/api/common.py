from typing import Any, List, Optional

from unrepo.features.quota.service import QuotaDecision


def envelope(data: Any, *, decision: Optional[QuotaDecision] = None, warnings: Optional[List[str]] = None) -> dict:
    """Success shape shared by every gateway endpoint."""
    body = {"success": True, "data": data}
    if decision is not None:
        body["usage"] = decision.usage()
    if warnings:
        body["warnings"] = warnings
    return body
