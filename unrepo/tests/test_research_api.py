"""
POST /api/v1/research end to end through the FastAPI app, with GitHub, the
language model and the token oracle replaced by in-process fakes.
"""

from sqlalchemy import select, update

from unrepo.core.collaborators import get_usage_ledger
from unrepo.core.database import api_keys
from unrepo.core.errors import LedgerWriteError
from unrepo.features.usage.service import UsageLedger
from unrepo.main import app
from unrepo.models.capability import Capability

URL = "/api/v1/research"
BODY = {"repoUrl": "https://github.com/octo/demo"}


class FailingLedger(UsageLedger):
    def record(self, db, **kwargs):
        raise LedgerWriteError("storage offline")


def _usage_count(db, key_id):
    db.expire_all()
    return db.execute(select(api_keys.c.usage_count).where(api_keys.c.id == key_id)).scalar()


class TestAuthentication:
    def test_missing_credential_is_401(self, client, fakes):
        resp = client.post(URL, json=BODY)

        assert resp.status_code == 401
        payload = resp.json()
        assert payload["success"] is False
        assert payload["code"] == "unauthorized"
        assert payload["reason"] == "MALFORMED"
        assert fakes["github"].calls == []

    def test_chatbot_key_on_research_is_401_without_calls(self, client, fakes, make_key):
        issued = make_key(Capability.CHAT)

        resp = client.post(URL, json=BODY, headers={"x-api-key": issued.token})

        assert resp.status_code == 401
        assert resp.json()["reason"] == "MALFORMED"
        assert fakes["github"].calls == []
        assert fakes["analysis"].calls == []

    def test_unknown_key_is_401_not_found(self, client, fakes):
        resp = client.post(URL, json=BODY, headers={"x-api-key": "unrepo_research_" + "ab" * 32})

        assert resp.status_code == 401
        assert resp.json()["reason"] == "NOT_FOUND"
        assert fakes["github"].calls == []

    def test_unregistered_wallet_is_401(self, client, fakes, wallet_keypair):
        resp = client.post(URL, json=BODY, headers={"x-wallet-address": wallet_keypair.address})

        assert resp.status_code == 401
        assert resp.json()["reason"] == "NOT_FOUND"
        assert fakes["github"].calls == []

    def test_malformed_credential_beats_missing_body_field(self, client):
        resp = client.post(URL, json={}, headers={"x-api-key": "bogus"})
        assert resp.status_code == 401


class TestValidation:
    def test_missing_repo_url_is_400(self, client, fakes, db, make_key):
        issued = make_key(Capability.RESEARCH)

        resp = client.post(URL, json={}, headers={"x-api-key": issued.token})

        assert resp.status_code == 400
        assert resp.json()["error"] == "Repository URL is required"
        assert fakes["github"].calls == []
        assert _usage_count(db, issued.key.id) == 0

    def test_invalid_repo_url_is_400(self, client, make_key):
        issued = make_key(Capability.RESEARCH)

        resp = client.post(URL, json={"repoUrl": "not a repository"}, headers={"x-api-key": issued.token})

        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid GitHub URL format"


class TestSuccess:
    def test_report_shape_and_usage(self, client, fakes, make_key):
        issued = make_key(Capability.RESEARCH)

        resp = client.post(URL, json=BODY, headers={"x-api-key": issued.token})

        assert resp.status_code == 200
        payload = resp.json()
        assert payload["success"] is True
        data = payload["data"]
        assert data["repository"]["owner"] == "octo"
        assert data["repository"]["name"] == "demo"
        assert data["repository"]["stars"] == 42
        assert data["languages"] == {"Python": 1000}
        assert len(data["fileTree"]) == 100
        assert data["analysis"] == {"codeQuality": 80, "summary": "fine"}
        assert payload["usage"] == {"tier": "FREE", "used": 1, "limit": 5, "remaining": 4, "unlimited": False}
        assert "warnings" not in payload
        assert resp.headers.get("x-request-id")

    def test_api_key_wins_over_wallet_header(self, client, make_key, wallet_keypair):
        issued = make_key(Capability.RESEARCH)

        resp = client.post(
            URL, json=BODY, headers={"x-api-key": issued.token, "x-wallet-address": wallet_keypair.address}
        )

        assert resp.status_code == 200

    def test_shorthand_repo_reference(self, client, fakes, make_key):
        issued = make_key(Capability.RESEARCH)

        resp = client.post(URL, json={"repoUrl": "octo/demo.git"}, headers={"x-api-key": issued.token})

        assert resp.status_code == 200
        assert fakes["github"].calls[0] == ("get_repository", "octo", "demo")

    def test_call_is_recorded_in_ledger(self, client, db, make_key):
        issued = make_key(Capability.RESEARCH)

        client.post(URL, json=BODY, headers={"x-api-key": issued.token})

        events = UsageLedger().list_events(db, api_key_id=issued.key.id)
        assert len(events) == 1
        assert events[0].endpoint == "/api/v1/research"
        assert events[0].request_summary == {"repoUrl": BODY["repoUrl"]}


class TestQuota:
    def test_sixth_free_call_is_429_with_usage(self, client, fakes, make_key):
        issued = make_key(Capability.RESEARCH)
        headers = {"x-api-key": issued.token}
        for _ in range(5):
            assert client.post(URL, json=BODY, headers=headers).status_code == 200
        github_calls = len(fakes["github"].calls)

        resp = client.post(URL, json=BODY, headers=headers)

        assert resp.status_code == 429
        payload = resp.json()
        assert payload["code"] == "quota_exceeded"
        assert payload["reason"] == "FREE_LIMIT_EXCEEDED"
        assert payload["usage"] == {"used": 5, "limit": 5}
        assert "Free tier limit reached" in payload["error"]
        assert len(fakes["github"].calls) == github_calls

    def test_wallet_gets_one_research_call(self, client, make_wallet):
        pair, _ = make_wallet()
        headers = {"x-wallet-address": pair.address}

        first = client.post(URL, json=BODY, headers=headers)
        second = client.post(URL, json=BODY, headers=headers)

        assert first.status_code == 200
        assert first.json()["usage"]["remaining"] == 0
        assert second.status_code == 429

    def test_token_holder_wallet_is_unlimited(self, client, make_wallet):
        pair, _ = make_wallet(token_holder=True)
        headers = {"x-wallet-address": pair.address}

        for _ in range(3):
            resp = client.post(URL, json=BODY, headers=headers)
            assert resp.status_code == 200
            assert resp.json()["usage"]["unlimited"] is True

    def test_premium_key_rate_limited_at_ceiling(self, client, db, make_key):
        issued = make_key(Capability.RESEARCH, premium=True)
        ledger = UsageLedger()
        for _ in range(100):
            ledger.record(db, account_id=issued.key.account_id, api_key_id=issued.key.id, endpoint=URL)

        resp = client.post(URL, json=BODY, headers={"x-api-key": issued.token})

        assert resp.status_code == 429
        assert resp.json()["reason"] == "RATE_LIMIT_EXCEEDED"
        assert resp.json()["error"] == "Rate limit exceeded. Maximum 100 requests per hour."


class TestCollaborators:
    def test_missing_repository_is_404_after_quota(self, client, fakes, db, make_key):
        fakes["github"].missing = True
        issued = make_key(Capability.RESEARCH)

        resp = client.post(URL, json=BODY, headers={"x-api-key": issued.token})

        assert resp.status_code == 404
        assert resp.json()["error"] == "Repository not found"
        assert _usage_count(db, issued.key.id) == 1
        assert UsageLedger().count_total(db, api_key_id=issued.key.id) == 0

    def test_analysis_failure_degrades(self, client, fakes, make_key):
        fakes["analysis"].fail = True
        issued = make_key(Capability.RESEARCH)

        resp = client.post(URL, json=BODY, headers={"x-api-key": issued.token})

        assert resp.status_code == 200
        assert resp.json()["data"]["analysis"] == "AI analysis unavailable: provider down"

    def test_no_provider_configured(self, client, fakes, make_key):
        fakes["analysis"].available = False
        issued = make_key(Capability.RESEARCH)

        resp = client.post(URL, json=BODY, headers={"x-api-key": issued.token})

        assert resp.json()["data"]["analysis"] == "AI analysis not available"
        assert fakes["analysis"].calls == []

    def test_ledger_failure_surfaces_warning(self, client, db, make_key):
        issued = make_key(Capability.RESEARCH)
        app.dependency_overrides[get_usage_ledger] = lambda: FailingLedger()

        resp = client.post(URL, json=BODY, headers={"x-api-key": issued.token})

        assert resp.status_code == 200
        assert resp.json()["warnings"] == ["usage_not_recorded"]
        assert _usage_count(db, issued.key.id) == 1
