import logging
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from unrepo.core.errors import LedgerWriteError
from unrepo.features.usage.service import UsageLedger, record_or_warn
from unrepo.models.capability import Capability


@pytest.fixture
def ledger():
    return UsageLedger()


def test_recorded_event_is_visible_to_window_count(db, make_key, ledger, now):
    issued = make_key(Capability.RESEARCH, premium=True)
    assert ledger.count_recent(db, issued.key.id, 3600, now) == 0

    event = ledger.record(
        db,
        account_id=issued.key.account_id,
        api_key_id=issued.key.id,
        endpoint="/api/v1/research",
        summary={"repoUrl": "https://github.com/octo/demo"},
        now=now,
    )

    assert event.id is not None
    assert ledger.count_recent(db, issued.key.id, 3600, now) == 1


def test_window_excludes_old_events(db, make_key, ledger, now):
    issued = make_key(Capability.RESEARCH, premium=True)
    for age in (10, 1800, 3700, 7200):
        ledger.record(
            db,
            account_id=issued.key.account_id,
            api_key_id=issued.key.id,
            endpoint="/api/v1/research",
            now=now - timedelta(seconds=age),
        )

    assert ledger.count_recent(db, issued.key.id, 3600, now) == 2
    assert ledger.count_total(db, api_key_id=issued.key.id) == 4


def test_list_events_newest_first_with_summary(db, make_wallet, ledger, now):
    pair, _ = make_wallet()
    for i in range(3):
        ledger.record(
            db,
            account_id=None,
            wallet_address=pair.address,
            endpoint="/api/v1/chatbot",
            summary={"turn": i},
            now=now - timedelta(minutes=10 - i),
        )

    events = ledger.list_events(db, wallet_address=pair.address, limit=2)

    assert [e.request_summary for e in events] == [{"turn": 2}, {"turn": 1}]
    assert all(e.api_key_id is None for e in events)


def test_list_events_requires_a_filter(db, ledger):
    with pytest.raises(ValueError):
        ledger.list_events(db)


def test_storage_failure_raises_ledger_write_error(ledger):
    session = MagicMock()
    session.execute.side_effect = OperationalError("INSERT INTO api_usage", {}, Exception("disk I/O error"))

    with pytest.raises(LedgerWriteError):
        ledger.record(session, account_id="acc-1", endpoint="/api/v1/research")

    session.rollback.assert_called_once()
    session.commit.assert_not_called()


def test_record_or_warn_surfaces_warning(ledger, caplog):
    session = MagicMock()
    session.execute.side_effect = OperationalError("INSERT INTO api_usage", {}, Exception("disk I/O error"))
    warnings = []

    with caplog.at_level(logging.ERROR, logger="unrepo"):
        result = record_or_warn(ledger, session, warnings, account_id="acc-1", endpoint="/api/v1/research")

    assert result is None
    assert warnings == ["usage_not_recorded"]
    assert any("ledger write failed" in r.getMessage() for r in caplog.records)


def test_record_or_warn_success_leaves_warnings_empty(db, make_key, ledger):
    issued = make_key(Capability.CHAT)
    warnings = []

    event = record_or_warn(
        ledger, db, warnings, account_id=issued.key.account_id, api_key_id=issued.key.id, endpoint="/api/v1/chatbot"
    )

    assert event is not None
    assert warnings == []
