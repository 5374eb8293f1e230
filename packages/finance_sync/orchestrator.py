# ruff: noqa: I001
"""Sync session orchestration.

``SyncOrchestrator.start_session`` validates a request, claims the credential
in the ``SessionRegistry`` and returns a ``SyncStream``: an async iterable of
``ProgressEvent`` objects the caller pulls at its own pace. Nothing runs until
the caller starts iterating, and the source is only asked for its next item
after the previous event was consumed.

Lifecycle
---------
``init -> authenticating -> fetching -> processing -> saving`` and then
``completed`` or ``failed``; ``saving`` loops back to ``fetching`` or
``processing`` while the source has more accounts, and any non-terminal state
can end in ``aborted``. Source step names are translated through
``progress.STEP_TABLE``. The reported percent never decreases.

Each ``AccountTransactions`` batch is categorized and merged inside one
``session_scope``: a batch is committed whole or not at all, and batches
committed before a failure stay committed.

Failures
--------
A ``SourceError`` marked retryable is retried up to ``max_retries`` times with
exponential back-off (``base * 2**(n-1)``, capped at 60 s); fingerprints
already committed in this session are skipped on the retry so the summary does
not double count. When retries run out the stream ends with one ``error``
event. Cancellation (``CancellationToken.cancel``, ``SyncStream.aclose`` or
task cancellation) ends the stream silently with status ``aborted``.

Every run leaves one ``fs_sync_events`` audit row.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from db.client import session_scope
from db.models.finance import FsSyncEvent
from .categorization import CategorizationEngine
from .errors import ConcurrentSessionError, CredentialValidationError, SourceError
from .logging_setup import get_logger
from .models import (
    AccountTransactions,
    CategoryDecision,
    Credential,
    DateRange,
    MergeAction,
    SessionStatus,
    StepSignal,
    SyncOptions,
    SyncSession,
    SyncState,
    SyncSummary,
)
from .persistence import fingerprint_record, merge_transaction
from .progress import (
    SAVED_PERCENT,
    SAVING_PERCENT,
    Phase,
    ProgressEvent,
    complete_event,
    describe_step,
    error_event,
    progress_event,
)
from .settings import SyncSettings, backoff_delay
from .sources import RawTransactionSource, credential_key, validate_credential

_logger = get_logger("finance_sync.orchestrator")

_ENDINGS = frozenset({SyncState.COMPLETED, SyncState.FAILED, SyncState.ABORTED})
# Forward skips are allowed because sources need not report every phase.
_TRANSITIONS: dict[SyncState, frozenset[SyncState]] = {
    SyncState.INIT: frozenset(
        {SyncState.AUTHENTICATING, SyncState.FETCHING, SyncState.PROCESSING, SyncState.SAVING}
    )
    | _ENDINGS,
    SyncState.AUTHENTICATING: frozenset(
        {SyncState.FETCHING, SyncState.PROCESSING, SyncState.SAVING}
    )
    | _ENDINGS,
    SyncState.FETCHING: frozenset({SyncState.PROCESSING, SyncState.SAVING}) | _ENDINGS,
    SyncState.PROCESSING: frozenset({SyncState.SAVING}) | _ENDINGS,
    SyncState.SAVING: frozenset({SyncState.FETCHING, SyncState.PROCESSING}) | _ENDINGS,
    SyncState.COMPLETED: frozenset(),
    SyncState.FAILED: frozenset(),
    SyncState.ABORTED: frozenset(),
}


def can_transition(current: SyncState, new: SyncState) -> bool:
    return new in _TRANSITIONS[current]


class CancellationToken:
    """Thread-safe cancel flag checked by the orchestrator between source items."""

    def __init__(self) -> None:
        self._flag = threading.Event()

    def cancel(self) -> None:
        self._flag.set()

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    async def sleep(self, seconds: float, *, poll: float = 0.05) -> bool:
        """Sleep up to ``seconds``; return ``True`` early if cancelled."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + seconds
        while not self.cancelled:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(poll, remaining))
        return True


class SessionRegistry:
    """Running sessions keyed by credential; a second start is rejected."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, SyncSession] = {}

    def acquire(self, session: SyncSession) -> None:
        with self._lock:
            if session.credential_key in self._active:
                raise ConcurrentSessionError(session.credential_key)
            self._active[session.credential_key] = session

    def release(self, session: SyncSession) -> None:
        with self._lock:
            if self._active.get(session.credential_key) is session:
                del self._active[session.credential_key]

    def active(self) -> list[SyncSession]:
        with self._lock:
            return list(self._active.values())


DEFAULT_REGISTRY = SessionRegistry()


class _Aborted(Exception):
    pass


@dataclass(slots=True)
class _BatchReport:
    inserted: int = 0
    updated: int = 0
    duplicates: int = 0
    seen: int = 0
    decisions: list[CategoryDecision] = field(default_factory=list)


@dataclass(slots=True)
class _RunContext:
    session: SyncSession
    credential: Credential
    date_range: DateRange
    options: SyncOptions
    source: RawTransactionSource
    token: CancellationToken
    summary: SyncSummary
    max_retries: int
    retry_base_delay: float
    update_category_on_rescrape: bool
    categorizer: CategorizationEngine | None = None
    committed: set[str] = field(default_factory=set)
    skip_committed: frozenset[str] = frozenset()
    accounts: set[str] = field(default_factory=set)
    started: float = field(default_factory=time.monotonic)


class SyncStream:
    """Async iterable of a session's events.

    ``session`` and ``summary`` are live views, final once iteration ends.
    ``aclose`` stops the run (status ``aborted`` unless it already ended) and
    frees the credential even when iteration never started.
    """

    def __init__(
        self,
        events: AsyncGenerator[ProgressEvent, None],
        *,
        session: SyncSession,
        summary: SyncSummary,
        token: CancellationToken,
        on_unstarted_close: Callable[[], None],
    ) -> None:
        self._events = events
        self._started = False
        self._closed = False
        self._on_unstarted_close = on_unstarted_close
        self.session = session
        self.summary = summary
        self.token = token

    def __aiter__(self) -> SyncStream:
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._closed:
            raise StopAsyncIteration
        self._started = True
        return await self._events.__anext__()

    def cancel(self) -> None:
        self.token.cancel()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._started:
            await self._events.aclose()
        else:
            self._on_unstarted_close()

    async def collect(self) -> list[ProgressEvent]:
        """Drain the stream; convenient for the CLI and tests."""

        out: list[ProgressEvent] = []
        try:
            async for ev in self:
                out.append(ev)
        finally:
            await self.aclose()
        return out


class SyncOrchestrator:
    def __init__(
        self,
        *,
        settings: SyncSettings | None = None,
        registry: SessionRegistry | None = None,
        database_url: str | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._settings = settings or SyncSettings()
        self._registry = registry or DEFAULT_REGISTRY
        self._database_url = database_url or self._settings.database_url
        self._today = today

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def start_session(
        self,
        credential: Credential,
        date_range: DateRange,
        options: SyncOptions | None = None,
        *,
        source: RawTransactionSource,
        token: CancellationToken | None = None,
    ) -> SyncStream:
        """Validate, claim the credential and return the event stream.

        Raises ``CredentialValidationError`` or ``ConcurrentSessionError``
        before any session exists.
        """

        validate_credential(credential)
        if date_range.start > self._today():
            raise CredentialValidationError(
                f"Start date {date_range.start.isoformat()} is in the future"
            )
        options = options or SyncOptions()
        session = SyncSession(
            credential_key=credential_key(credential),
            vendor=credential.vendor,
            start_date=date_range.start,
            credential_id=credential.id,
        )
        self._registry.acquire(session)
        _logger.info(
            "sync:start vendor=%s credential=%s start=%s",
            credential.vendor,
            session.credential_key,
            date_range.start.isoformat(),
        )

        ctx = _RunContext(
            session=session,
            credential=credential,
            date_range=date_range,
            options=options,
            source=source,
            token=token or CancellationToken(),
            summary=SyncSummary(),
            max_retries=(
                options.max_retries if options.max_retries is not None else self._settings.max_retries
            ),
            retry_base_delay=(
                options.retry_base_delay
                if options.retry_base_delay is not None
                else self._settings.retry_base_delay
            ),
            update_category_on_rescrape=(
                options.update_category_on_rescrape
                if options.update_category_on_rescrape is not None
                else self._settings.update_category_on_rescrape
            ),
        )

        def _never_started() -> None:
            self._finish(ctx, SessionStatus.ABORTED)

        return SyncStream(
            self._run(ctx),
            session=session,
            summary=ctx.summary,
            token=ctx.token,
            on_unstarted_close=_never_started,
        )

    # ---- Event helpers -----------------------------------------------------

    def _advance(self, ctx: _RunContext, new: SyncState) -> None:
        current = ctx.session.state
        if new == current:
            return
        if can_transition(current, new):
            ctx.session.state = new
        else:
            _logger.debug("sync:state_ignored from=%s to=%s", current, new)

    def _progress(
        self,
        ctx: _RunContext,
        *,
        step: str,
        message: str,
        percent: int,
        phase: Phase | str,
        success: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> ProgressEvent:
        s = ctx.session
        s.percent = max(s.percent, min(100, percent))
        s.last_emitted_step = step
        if success is True and step not in s.completed_steps:
            s.completed_steps.append(step)
        return progress_event(
            step=step,
            message=message,
            percent=s.percent,
            phase=phase,
            success=success,
            completed_steps=s.completed_steps,
            details=details,
        )

    def _step_event(self, ctx: _RunContext, signal: StepSignal) -> ProgressEvent:
        info = describe_step(signal.step)
        self._advance(ctx, info.state)
        return self._progress(
            ctx,
            step=signal.step,
            message=signal.message or info.message,
            percent=info.percent,
            phase=info.phase,
            success=info.success,
            details=dict(signal.details) if signal.details else None,
        )

    # ---- Run ---------------------------------------------------------------

    async def _run(self, ctx: _RunContext) -> AsyncIterator[ProgressEvent]:
        outcome = SessionStatus.ABORTED
        try:
            ctx.session.audit_event_id = await asyncio.to_thread(self._open_audit, ctx)
            end = ctx.date_range.end or self._today()
            yield self._progress(
                ctx,
                step="initializing",
                message=(
                    f"Syncing {ctx.credential.vendor} from {ctx.date_range.start.isoformat()} "
                    f"to {end.isoformat()}"
                ),
                percent=5,
                phase=Phase.INITIALIZATION,
                success=True,
            )

            attempt = 0
            while True:
                attempt += 1
                ctx.session.attempts = attempt
                ctx.summary.attempts = attempt
                ctx.skip_committed = frozenset(ctx.committed)
                try:
                    async with aclosing(self._consume_source(ctx)) as events:
                        async for ev in events:
                            yield ev
                    break
                except SourceError as exc:
                    if ctx.token.cancelled:
                        raise _Aborted from exc
                    if exc.retryable and attempt <= ctx.max_retries:
                        delay = backoff_delay(ctx.retry_base_delay, attempt)
                        _logger.warning(
                            "sync:retry vendor=%s attempt=%d delay=%.1f error=%s",
                            ctx.session.vendor,
                            attempt,
                            delay,
                            exc.message,
                        )
                        yield self._progress(
                            ctx,
                            step="retry",
                            message=f"Retrying in {delay:g}s (retry {attempt}/{ctx.max_retries})...",
                            percent=ctx.session.percent,
                            phase=Phase.RETRY,
                            success=False,
                            details={"attempt": attempt, "delaySeconds": delay, "error": exc.message},
                        )
                        if await ctx.token.sleep(delay):
                            raise _Aborted from exc
                        ctx.session.state = SyncState.INIT
                        continue
                    _logger.error(
                        "sync:failed vendor=%s attempts=%d error=%s",
                        ctx.session.vendor,
                        attempt,
                        exc.message,
                    )
                    outcome = SessionStatus.FAILED
                    ctx.session.error = exc.message
                    self._advance(ctx, SyncState.FAILED)
                    yield error_event(
                        f"Sync failed: {exc.message}", hint=exc.hint, attempts_made=attempt
                    )
                    return

            if ctx.token.cancelled:
                raise _Aborted
            yield self._progress(
                ctx,
                step="saved",
                message="All transactions saved",
                percent=SAVED_PERCENT,
                phase=Phase.SAVING,
                success=True,
            )
            ctx.summary.duration_seconds = round(time.monotonic() - ctx.started, 3)
            outcome = SessionStatus.COMPLETED
            self._advance(ctx, SyncState.COMPLETED)
            ctx.session.percent = 100
            yield complete_event(ctx.summary)
        except _Aborted:
            _logger.info("sync:aborted vendor=%s", ctx.session.vendor)
        except SQLAlchemyError as exc:
            _logger.exception("sync:db_error vendor=%s", ctx.session.vendor)
            outcome = SessionStatus.FAILED
            ctx.session.error = str(exc)
            self._advance(ctx, SyncState.FAILED)
            yield error_event(
                "Sync failed: could not save transactions",
                hint="Check the database connection; already saved accounts were kept.",
                attempts_made=ctx.session.attempts,
            )
        except Exception as exc:
            _logger.exception("sync:unexpected_error vendor=%s", ctx.session.vendor)
            outcome = SessionStatus.FAILED
            ctx.session.error = str(exc)
            self._advance(ctx, SyncState.FAILED)
            yield error_event(f"Sync failed: {exc}", attempts_made=ctx.session.attempts)
        finally:
            # Synchronous on purpose: awaiting is unreliable while the
            # generator is being closed or cancelled.
            self._finish(ctx, outcome)

    async def _consume_source(self, ctx: _RunContext) -> AsyncIterator[ProgressEvent]:
        items = ctx.source.fetch(ctx.credential, ctx.date_range, ctx.options)
        try:
            async for item in items:
                if ctx.token.cancelled:
                    raise _Aborted
                if isinstance(item, StepSignal):
                    yield self._step_event(ctx, item)
                elif isinstance(item, AccountTransactions):
                    async with aclosing(self._save_account(ctx, item)) as saving:
                        async for ev in saving:
                            yield ev
                else:
                    raise SourceError(
                        f"Source yielded an unsupported item: {type(item).__name__}",
                        retryable=False,
                    )
        finally:
            aclose = getattr(items, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _save_account(
        self, ctx: _RunContext, batch: AccountTransactions
    ) -> AsyncIterator[ProgressEvent]:
        self._advance(ctx, SyncState.SAVING)
        account = batch.account_number or ""
        yield self._progress(
            ctx,
            step="saving",
            message=f"Saving {len(batch.transactions)} transactions for account {account}".rstrip(),
            percent=SAVING_PERCENT,
            phase=Phase.SAVING,
            details={"accountNumber": batch.account_number, "count": len(batch.transactions)},
        )
        if ctx.token.cancelled:
            raise _Aborted

        report = await asyncio.to_thread(self._save_batch, ctx, batch)
        if ctx.token.cancelled:
            raise _Aborted

        ctx.accounts.add(account)
        summary = ctx.summary
        summary.accounts = len(ctx.accounts)
        summary.transactions += report.seen
        summary.saved_transactions += report.inserted
        summary.updated_transactions += report.updated
        summary.duplicate_transactions += report.duplicates
        for decision in report.decisions:
            summary.count_decision(decision.source)
        _logger.info(
            "sync:batch_saved vendor=%s account=%s inserted=%d updated=%d duplicates=%d",
            ctx.session.vendor,
            account,
            report.inserted,
            report.updated,
            report.duplicates,
        )
        yield self._progress(
            ctx,
            step="accountSaved",
            message=f"Saved account {account}".rstrip(),
            percent=SAVING_PERCENT,
            phase=Phase.SAVING,
            success=True,
            details={
                "accountNumber": batch.account_number,
                "inserted": report.inserted,
                "updated": report.updated,
                "duplicates": report.duplicates,
            },
        )

    def _save_batch(self, ctx: _RunContext, batch: AccountTransactions) -> _BatchReport:
        """Categorize and merge one account's records in a single transaction."""

        report = _BatchReport()
        batch_fps: set[str] = set()
        vendor = ctx.credential.vendor
        with session_scope(database_url=self._database_url) as s:
            if ctx.categorizer is None:
                ctx.categorizer = CategorizationEngine.load(s)
            engine = ctx.categorizer
            for record in batch.transactions:
                fp = fingerprint_record(vendor, record, batch.account_number)
                if fp in ctx.skip_committed:
                    continue
                report.seen += 1
                try:
                    decision = engine.categorize(
                        s, record.description, record.category, exclude_fingerprint=fp
                    )
                except Exception:
                    _logger.warning(
                        "categorize:failed vendor=%s description=%r; leaving uncategorized",
                        vendor,
                        record.description,
                        exc_info=True,
                    )
                    decision = CategoryDecision.uncategorized()
                result = merge_transaction(
                    s,
                    vendor=vendor,
                    record=record,
                    decision=decision,
                    account_number=batch.account_number,
                    credential_id=ctx.credential.id,
                    update_category_on_rescrape=ctx.update_category_on_rescrape,
                )
                if result.action is MergeAction.INSERT:
                    report.inserted += 1
                    report.decisions.append(decision)
                elif result.action is MergeAction.UPDATE:
                    report.updated += 1
                    report.decisions.append(decision)
                else:
                    report.duplicates += 1
                engine.remember(
                    result.transaction.description_norm, result.transaction.category, fp
                )
                batch_fps.add(fp)
        ctx.committed |= batch_fps
        return report

    # ---- Audit -------------------------------------------------------------

    def _open_audit(self, ctx: _RunContext) -> int | None:
        try:
            with session_scope(database_url=self._database_url) as s:
                row = FsSyncEvent(
                    credential_id=ctx.credential.id,
                    vendor=ctx.credential.vendor,
                    start_date=ctx.date_range.start,
                    status="started",
                    message=f"Sync started for {ctx.session.credential_key}",
                    attempts=1,
                )
                s.add(row)
                s.flush()
                return row.id
        except SQLAlchemyError:
            _logger.warning("audit:open_failed vendor=%s", ctx.credential.vendor, exc_info=True)
            return None

    def _finish(self, ctx: _RunContext, outcome: SessionStatus) -> None:
        session = ctx.session
        if session.status is SessionStatus.RUNNING:
            session.status = outcome
            if outcome is SessionStatus.ABORTED:
                self._advance(ctx, SyncState.ABORTED)
        self._registry.release(session)
        if ctx.summary.duration_seconds == 0:
            ctx.summary.duration_seconds = round(time.monotonic() - ctx.started, 3)
        if session.audit_event_id is None:
            return
        audit_status = {
            SessionStatus.COMPLETED: "success",
            SessionStatus.FAILED: "failed",
            SessionStatus.ABORTED: "aborted",
        }.get(session.status, "failed")
        message = {
            "success": "Sync completed",
            "failed": f"Failed after {session.attempts} attempt(s): {session.error}",
            "aborted": "Sync cancelled",
        }[audit_status]
        try:
            with session_scope(database_url=self._database_url) as s:
                row = s.get(FsSyncEvent, session.audit_event_id)
                if row is not None:
                    row.status = audit_status
                    row.message = message
                    row.report_json = ctx.summary.model_dump(by_alias=True)
                    row.attempts = max(1, session.attempts)
                    row.duration_seconds = int(round(ctx.summary.duration_seconds))
                    row.updated_at = datetime.now(UTC)
        except SQLAlchemyError:
            _logger.warning(
                "audit:close_failed id=%s status=%s", session.audit_event_id, audit_status, exc_info=True
            )


def start_session(
    credential: Credential,
    date_range: DateRange,
    options: SyncOptions | None = None,
    *,
    source: RawTransactionSource,
    token: CancellationToken | None = None,
    settings: SyncSettings | None = None,
) -> SyncStream:
    """Module-level shortcut using the process-wide ``DEFAULT_REGISTRY``."""

    return SyncOrchestrator(settings=settings).start_session(
        credential, date_range, options, source=source, token=token
    )


__all__ = [
    "DEFAULT_REGISTRY",
    "CancellationToken",
    "SessionRegistry",
    "SyncOrchestrator",
    "SyncStream",
    "can_transition",
    "start_session",
]
