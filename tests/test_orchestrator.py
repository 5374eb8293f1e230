from __future__ import annotations

import asyncio
from datetime import date

import pytest
from db.client import session_scope
from db.models.finance import FsCategoryRule, FsSyncEvent, FsTransaction
from finance_sync.categorization import CategorizationEngine
from finance_sync.errors import ConcurrentSessionError, CredentialValidationError, SourceError
from finance_sync.models import Credential, DateRange, SessionStatus, StepSignal, SyncOptions, SyncState
from finance_sync.orchestrator import CancellationToken, SessionRegistry, SyncOrchestrator, can_transition
from finance_sync.persistence import continuation_start_date
from finance_sync.progress import EventName
from finance_sync.settings import SyncSettings
from finance_sync.sources import ReplaySource
from sqlalchemy import select

from tests.helpers.db import count_transactions
from tests.helpers.sources import CREDENTIAL, GatedSource, ScriptedSource, account, happy_items, tx

JAN = DateRange(start=date(2024, 1, 1))


def _orchestrator(db_url: str, **settings) -> SyncOrchestrator:
    return SyncOrchestrator(
        settings=SyncSettings(database_url=db_url, **settings), registry=SessionRegistry()
    )


def _drain(stream) -> list:
    return asyncio.run(stream.collect())


def _audit_rows(db_url: str) -> list[tuple[str, int]]:
    with session_scope(database_url=db_url) as s:
        return [(r.status, r.attempts) for r in s.scalars(select(FsSyncEvent).order_by(FsSyncEvent.id))]


def _two_accounts():
    return (
        account("1234", tx("2024-01-03", -40, "Shufersal", category="Groceries"), tx("2024-01-04", -12, "Aroma")),
        account("5678", tx("2024-01-05", -99, "Cellcom")),
    )


def test_happy_path_saves_batches_and_reports_summary(db_url: str) -> None:
    orch = _orchestrator(db_url)
    stream = orch.start_session(CREDENTIAL, JAN, source=ScriptedSource(happy_items(*_two_accounts())))
    events = _drain(stream)

    assert events[-1].event is EventName.COMPLETE
    assert all(e.event is EventName.PROGRESS for e in events[:-1])
    percents = [e.data["percent"] for e in events]
    assert percents == sorted(percents)
    assert percents[-1] == 100

    summary = events[-1].data["summary"]
    assert summary["accounts"] == 2
    assert summary["transactions"] == 3
    assert summary["savedTransactions"] == 3
    assert summary["duplicateTransactions"] == 0
    assert summary["scraperCategories"] == 1
    assert summary["uncategorized"] == 2

    assert stream.session.status is SessionStatus.COMPLETED
    assert stream.session.state is SyncState.COMPLETED
    assert "loginSuccess" in stream.session.completed_steps
    assert not orch.registry.active()
    assert count_transactions(db_url) == 3
    assert _audit_rows(db_url) == [("success", 1)]


def test_resync_is_idempotent(db_url: str) -> None:
    orch = _orchestrator(db_url)
    _drain(orch.start_session(CREDENTIAL, JAN, source=ScriptedSource(happy_items(*_two_accounts()))))
    again = _drain(orch.start_session(CREDENTIAL, JAN, source=ScriptedSource(happy_items(*_two_accounts()))))

    summary = again[-1].data["summary"]
    assert (summary["savedTransactions"], summary["duplicateTransactions"]) == (0, 3)
    assert count_transactions(db_url) == 3


def test_continuation_never_reingests_last_day(db_url: str) -> None:
    capture = {
        "success": True,
        "accounts": [
            {
                "accountNumber": "1234",
                "txns": [
                    {"date": f"2024-01-{d:02d}", "chargedAmount": -d, "description": f"Shop {d}"}
                    for d in range(1, 13)
                ],
            }
        ],
    }
    orch = _orchestrator(db_url)
    first = _drain(
        orch.start_session(
            CREDENTIAL, DateRange(date(2024, 1, 1), date(2024, 1, 10)), source=ReplaySource(capture)
        )
    )
    assert first[-1].data["summary"]["savedTransactions"] == 10

    with session_scope(database_url=db_url) as s:
        resume = continuation_start_date(s, "max", CREDENTIAL.id)
    assert resume == date(2024, 1, 11)

    second = _drain(orch.start_session(CREDENTIAL, DateRange(resume), source=ReplaySource(capture)))
    summary = second[-1].data["summary"]
    assert (summary["transactions"], summary["savedTransactions"]) == (2, 2)
    assert count_transactions(db_url) == 12


def test_source_failure_keeps_committed_batches(db_url: str) -> None:
    first, second = _two_accounts()
    script = [
        StepSignal("startScraping"),
        StepSignal("loginSuccess"),
        first,
        SourceError("socket hang up", hint="Try again in a few minutes."),
        second,
    ]
    orch = _orchestrator(db_url)
    stream = orch.start_session(CREDENTIAL, JAN, source=ScriptedSource(script))
    events = _drain(stream)

    errors = [e for e in events if e.event is EventName.ERROR]
    assert len(errors) == 1
    assert events[-1] is errors[0]
    assert errors[0].data == {
        "message": "Sync failed: socket hang up",
        "attemptsMade": 1,
        "hint": "Try again in a few minutes.",
    }
    assert count_transactions(db_url) == 2
    assert stream.session.status is SessionStatus.FAILED
    assert _audit_rows(db_url) == [("failed", 1)]
    assert not orch.registry.active()


def test_retry_resumes_without_double_counting(db_url: str) -> None:
    first, second = _two_accounts()
    failing = [StepSignal("loginSuccess"), first, SourceError("ECONNRESET")]
    source = ScriptedSource(failing, happy_items(first, second))
    orch = _orchestrator(db_url, max_retries=1, retry_base_delay=0.0)

    events = _drain(orch.start_session(CREDENTIAL, JAN, source=source))

    assert len(source.calls) == 2
    retry = [e for e in events if e.data.get("step") == "retry"]
    assert len(retry) == 1
    assert retry[0].data["phase"] == "retry"
    summary = events[-1].data["summary"]
    assert events[-1].event is EventName.COMPLETE
    assert summary["attempts"] == 2
    assert summary["transactions"] == 3
    assert summary["savedTransactions"] == 3
    assert summary["duplicateTransactions"] == 0
    assert _audit_rows(db_url) == [("success", 2)]


def test_authentication_errors_are_not_retried(db_url: str) -> None:
    source = ReplaySource({"success": False, "errorType": "INVALID_PASSWORD", "errorMessage": "Wrong password"})
    events = _drain(
        _orchestrator(db_url, max_retries=3, retry_base_delay=0.0).start_session(CREDENTIAL, JAN, source=source)
    )
    assert [e.data.get("step") for e in events].count("retry") == 0
    assert events[-1].event is EventName.ERROR
    assert events[-1].data["attemptsMade"] == 1
    assert "hint" in events[-1].data


def test_cancellation_ends_stream_without_error(db_url: str) -> None:
    source = GatedSource()
    orch = _orchestrator(db_url)
    stream = orch.start_session(CREDENTIAL, JAN, source=source)

    async def consume():
        seen = []
        async for ev in stream:
            seen.append(ev)
            if ev.data.get("step") == "loginStarted":
                stream.cancel()
                source.release.set()
        return seen

    events = asyncio.run(consume())

    assert [e.data.get("step") for e in events][-1] == "loginStarted"
    assert all(e.event is EventName.PROGRESS for e in events)
    assert stream.session.status is SessionStatus.ABORTED
    assert stream.session.state is SyncState.ABORTED
    assert source.closed
    assert not orch.registry.active()
    assert _audit_rows(db_url) == [("aborted", 1)]


def test_closing_stream_midway_aborts(db_url: str) -> None:
    source = GatedSource()
    orch = _orchestrator(db_url)
    stream = orch.start_session(CREDENTIAL, JAN, source=source)

    async def consume():
        first = await stream.__anext__()
        await stream.aclose()
        return first

    first = asyncio.run(consume())
    assert first.data["step"] == "initializing"
    assert stream.session.status is SessionStatus.ABORTED
    assert not orch.registry.active()


def test_cancel_during_batch_save_emits_nothing_more(db_url: str, monkeypatch: pytest.MonkeyPatch) -> None:
    token = CancellationToken()
    orch = _orchestrator(db_url)
    save_batch = orch._save_batch

    def save_then_cancel(ctx, batch):
        report = save_batch(ctx, batch)
        token.cancel()
        return report

    monkeypatch.setattr(orch, "_save_batch", save_then_cancel)
    stream = orch.start_session(
        CREDENTIAL, JAN, source=ScriptedSource(happy_items(*_two_accounts())), token=token
    )
    events = _drain(stream)

    assert events[-1].data["step"] == "saving"
    assert all(e.event is EventName.PROGRESS for e in events)
    assert "accountSaved" not in [e.data.get("step") for e in events]
    assert stream.session.status is SessionStatus.ABORTED
    # The first account's batch was committed before the cancel was seen.
    assert count_transactions(db_url) == 2
    assert _audit_rows(db_url) == [("aborted", 1)]


def test_cancellation_token_interrupts_sleep() -> None:
    token = CancellationToken()

    async def run():
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        return await token.sleep(30)

    assert asyncio.run(run()) is True


def test_second_session_for_same_credential_is_rejected(db_url: str) -> None:
    orch = _orchestrator(db_url)
    first = orch.start_session(CREDENTIAL, JAN, source=GatedSource())

    with pytest.raises(ConcurrentSessionError):
        orch.start_session(CREDENTIAL, JAN, source=GatedSource())

    other = Credential(vendor="max", fields={"username": "noa", "password": "pw"}, id="cred-2")
    parallel = orch.start_session(other, JAN, source=GatedSource())
    assert len(orch.registry.active()) == 2

    asyncio.run(first.aclose())
    asyncio.run(parallel.aclose())
    assert not orch.registry.active()
    again = orch.start_session(CREDENTIAL, JAN, source=ScriptedSource(happy_items()))
    assert _drain(again)[-1].event is EventName.COMPLETE


def test_invalid_requests_are_rejected_before_a_session_exists(db_url: str) -> None:
    orch = _orchestrator(db_url)
    bad_vendor = Credential(vendor="paypal", fields={"username": "u", "password": "p"})
    with pytest.raises(CredentialValidationError):
        orch.start_session(bad_vendor, JAN, source=GatedSource())

    missing = Credential(vendor="max", fields={"username": "u"})
    with pytest.raises(CredentialValidationError):
        orch.start_session(missing, JAN, source=GatedSource())

    future = SyncOrchestrator(
        settings=SyncSettings(database_url=db_url),
        registry=orch.registry,
        today=lambda: date(2024, 1, 1),
    )
    with pytest.raises(CredentialValidationError, match="future"):
        future.start_session(CREDENTIAL, DateRange(date(2024, 2, 1)), source=GatedSource())

    assert not orch.registry.active()
    assert _audit_rows(db_url) == []


def test_rules_and_failures_in_categorization(db_url: str, monkeypatch: pytest.MonkeyPatch) -> None:
    with session_scope(database_url=db_url) as s:
        s.add(FsCategoryRule(match_description="aroma", category="Coffee", is_active=True))

    events = _drain(
        _orchestrator(db_url).start_session(CREDENTIAL, JAN, source=ScriptedSource(happy_items(*_two_accounts())))
    )
    summary = events[-1].data["summary"]
    assert (summary["ruleCategories"], summary["scraperCategories"], summary["uncategorized"]) == (1, 1, 1)

    def boom(self, *a, **kw):
        raise RuntimeError("categorizer down")

    monkeypatch.setattr(CategorizationEngine, "categorize", boom)
    batch = account("9999", tx("2024-01-20", -5, "Kiosk", category="Snacks"))
    events = _drain(
        _orchestrator(db_url).start_session(CREDENTIAL, JAN, source=ScriptedSource(happy_items(batch)))
    )
    assert events[-1].event is EventName.COMPLETE
    assert events[-1].data["summary"]["uncategorized"] == 1
    with session_scope(database_url=db_url) as s:
        row = s.scalars(select(FsTransaction).where(FsTransaction.account_number == "9999")).one()
        assert row.category is None


def test_unknown_steps_and_options_override(db_url: str) -> None:
    items = [StepSignal("solvingCaptcha"), *happy_items()]
    orch = _orchestrator(db_url, max_retries=0)
    events = _drain(
        orch.start_session(
            CREDENTIAL, JAN, SyncOptions(max_retries=0), source=ScriptedSource(items)
        )
    )
    captcha = next(e for e in events if e.data.get("step") == "solvingCaptcha")
    assert (captcha.data["percent"], captcha.data["phase"]) == (50, "processing")


def test_state_machine_transitions() -> None:
    assert can_transition(SyncState.INIT, SyncState.AUTHENTICATING)
    assert can_transition(SyncState.SAVING, SyncState.FETCHING)
    assert can_transition(SyncState.PROCESSING, SyncState.ABORTED)
    assert not can_transition(SyncState.COMPLETED, SyncState.FAILED)
    assert not can_transition(SyncState.SAVING, SyncState.AUTHENTICATING)
