"""
Quota enforcement for API keys.

- Free keys: lifetime cap of 5, atomic under concurrency
- Premium keys: rolling one-hour window over the usage ledger
"""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from unrepo.core.database import api_keys
from unrepo.core.errors import QuotaError, QuotaErrorReason
from unrepo.features.accounts.service import set_tier_flags
from unrepo.features.keys.service import authenticate_api_key
from unrepo.features.quota.service import QuotaEnforcer, QuotaPolicy
from unrepo.features.usage.service import UsageLedger
from unrepo.models.capability import Capability
from unrepo.models.principal import Tier


@pytest.fixture
def enforcer():
    return QuotaEnforcer(QuotaPolicy(), UsageLedger())


def _usage_count(db, key_id):
    return db.execute(select(api_keys.c.usage_count).where(api_keys.c.id == key_id)).scalar()


class TestFreeKeyLifetimeCap:
    def test_five_allows_then_free_limit(self, db, make_key, enforcer):
        issued = make_key(Capability.RESEARCH)
        remaining = []
        for _ in range(5):
            principal = authenticate_api_key(db, issued.token, Capability.RESEARCH)
            decision = enforcer.enforce(db, principal, Capability.RESEARCH)
            assert decision.allowed
            assert decision.tier is Tier.FREE
            remaining.append(decision.remaining)

        assert remaining == [4, 3, 2, 1, 0]

        principal = authenticate_api_key(db, issued.token, Capability.RESEARCH)
        decision = enforcer.enforce(db, principal, Capability.RESEARCH)
        assert not decision.allowed
        assert decision.reason is QuotaErrorReason.FREE_LIMIT_EXCEEDED
        assert "Free tier limit reached" in decision.message
        assert (decision.used, decision.limit) == (5, 5)
        assert _usage_count(db, issued.key.id) == 5

    def test_cap_applies_to_chat_keys(self, db, make_key, enforcer):
        issued = make_key(Capability.CHAT)
        for _ in range(5):
            principal = authenticate_api_key(db, issued.token, Capability.CHAT)
            assert enforcer.enforce(db, principal).allowed
        principal = authenticate_api_key(db, issued.token, Capability.CHAT)
        assert enforcer.enforce(db, principal).reason is QuotaErrorReason.FREE_LIMIT_EXCEEDED

    def test_denied_decision_raises_quota_error_with_usage(self, db, make_key, enforcer):
        issued = make_key(Capability.RESEARCH)
        db.execute(update(api_keys).where(api_keys.c.id == issued.key.id).values(usage_count=5))
        db.commit()
        principal = authenticate_api_key(db, issued.token, Capability.RESEARCH)

        with pytest.raises(QuotaError) as exc:
            enforcer.enforce(db, principal).raise_for_deny()
        assert exc.value.status_code == 429
        assert exc.value.details["usage"] == {"used": 5, "limit": 5}
        assert exc.value.details["reason"] == "FREE_LIMIT_EXCEEDED"

    def test_allow_sets_last_used(self, db, make_key, enforcer, now):
        issued = make_key(Capability.RESEARCH)
        principal = authenticate_api_key(db, issued.token, Capability.RESEARCH)
        enforcer.enforce(db, principal, now=now)
        last_used = db.execute(select(api_keys.c.last_used_at).where(api_keys.c.id == issued.key.id)).scalar()
        assert last_used is not None

    def test_check_has_no_side_effects(self, db, make_key, enforcer):
        issued = make_key(Capability.RESEARCH)
        principal = authenticate_api_key(db, issued.token, Capability.RESEARCH)
        for _ in range(3):
            decision = enforcer.check(db, principal)
            assert decision.allowed
            assert decision.remaining == 5
        assert _usage_count(db, issued.key.id) == 0

    def test_concurrent_calls_at_four_never_exceed_cap(self, db, session_factory, make_key, enforcer):
        issued = make_key(Capability.RESEARCH)
        db.execute(update(api_keys).where(api_keys.c.id == issued.key.id).values(usage_count=4))
        db.commit()
        principal = authenticate_api_key(db, issued.token, Capability.RESEARCH)

        workers = 8
        barrier = threading.Barrier(workers)
        decisions = []
        errors = []
        lock = threading.Lock()

        def call():
            session = session_factory()
            try:
                barrier.wait()
                decision = enforcer.enforce(session, principal)
                with lock:
                    decisions.append(decision)
            except Exception as e:  # surfaced below
                with lock:
                    errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=call) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sum(1 for d in decisions if d.allowed) == 1
        assert all(d.reason is QuotaErrorReason.FREE_LIMIT_EXCEEDED for d in decisions if not d.allowed)
        assert _usage_count(db, issued.key.id) == 5


class TestPremiumRollingWindow:
    def _fill_window(self, db, issued, now, count):
        ledger = UsageLedger()
        # Oldest event near the back edge of the window, the rest recent
        ledger.record(
            db,
            account_id=issued.key.account_id,
            api_key_id=issued.key.id,
            endpoint=Capability.RESEARCH.endpoint,
            now=now - timedelta(seconds=3590),
        )
        for i in range(count - 1):
            ledger.record(
                db,
                account_id=issued.key.account_id,
                api_key_id=issued.key.id,
                endpoint=Capability.RESEARCH.endpoint,
                now=now - timedelta(seconds=60 + i),
            )

    def test_premium_key_not_subject_to_lifetime_cap(self, db, make_key, enforcer):
        issued = make_key(Capability.RESEARCH, premium=True)
        db.execute(update(api_keys).where(api_keys.c.id == issued.key.id).values(usage_count=500))
        db.commit()
        principal = authenticate_api_key(db, issued.token, Capability.RESEARCH)
        decision = enforcer.enforce(db, principal)
        assert decision.allowed
        assert decision.tier is Tier.PREMIUM
        assert decision.limit == 100
        assert decision.remaining == 99
        assert _usage_count(db, issued.key.id) == 501

    def test_hundred_events_deny_then_window_slides(self, db, make_key, enforcer, now):
        issued = make_key(Capability.RESEARCH, premium=True)
        self._fill_window(db, issued, now, 100)
        principal = authenticate_api_key(db, issued.token, Capability.RESEARCH)

        denied = enforcer.enforce(db, principal, now=now)
        assert not denied.allowed
        assert denied.reason is QuotaErrorReason.RATE_LIMIT_EXCEEDED
        assert denied.message == "Rate limit exceeded. Maximum 100 requests per hour."
        assert (denied.used, denied.limit) == (100, 100)
        before = _usage_count(db, issued.key.id)

        later = now + timedelta(seconds=20)
        allowed = enforcer.enforce(db, principal, now=later)
        assert allowed.allowed
        assert allowed.remaining == 0
        assert _usage_count(db, issued.key.id) == before + 1

    def test_chat_ceiling_is_two_hundred(self, db, make_key, enforcer, now):
        issued = make_key(Capability.CHAT, premium=True)
        ledger = UsageLedger()
        for i in range(150):
            ledger.record(
                db,
                account_id=issued.key.account_id,
                api_key_id=issued.key.id,
                endpoint=Capability.CHAT.endpoint,
                now=now - timedelta(seconds=i + 1),
            )
        principal = authenticate_api_key(db, issued.token, Capability.CHAT)
        decision = enforcer.enforce(db, principal, now=now)
        assert decision.allowed
        assert decision.limit == 200
        assert decision.remaining == 49

    def test_token_holder_account_is_premium(self, db, make_account, make_key, enforcer):
        account = make_account(is_token_holder=True)
        issued = make_key(Capability.RESEARCH, account=account)
        principal = authenticate_api_key(db, issued.token, Capability.RESEARCH)
        assert enforcer.enforce(db, principal).tier is Tier.PREMIUM

    def test_upgrade_takes_effect_on_next_request(self, db, make_key, enforcer):
        issued = make_key(Capability.RESEARCH)
        db.execute(update(api_keys).where(api_keys.c.id == issued.key.id).values(usage_count=5))
        db.commit()
        principal = authenticate_api_key(db, issued.token, Capability.RESEARCH)
        assert not enforcer.enforce(db, principal).allowed

        set_tier_flags(db, issued.key.account_id, payment_verified=True)
        principal = authenticate_api_key(db, issued.token, Capability.RESEARCH)
        assert enforcer.enforce(db, principal).allowed
