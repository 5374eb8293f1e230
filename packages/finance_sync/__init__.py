"""Public interface for the ``finance_sync`` package.

Symbol re-exports only: sync sessions, the record and event types they use,
and the session-managing helpers from ``finance_sync.api``.
"""

from .api import (
    add_exclusion,
    apply_rules,
    delete_exclusion,
    find_patterns,
    get_continuation_start,
    get_last_transaction_date,
    list_exclusions,
    list_sync_events,
    merge_categories,
    update_category,
)
from .errors import (
    CategoryUpdateError,
    ConcurrentSessionError,
    CredentialValidationError,
    FinanceSyncError,
    PatternQueryError,
    SourceAuthenticationError,
    SourceError,
)
from .models import (
    AccountTransactions,
    CategoryDecision,
    CategorySource,
    Credential,
    DateRange,
    RawTransaction,
    StepSignal,
    SyncOptions,
    SyncSummary,
)
from .orchestrator import CancellationToken, SessionRegistry, SyncOrchestrator, SyncStream, start_session
from .patterns import PatternQuery
from .progress import FrameDecoder, ProgressEvent, iter_frames
from .sources import RawTransactionSource, ReplaySource

__all__ = [
    # Sessions
    "CancellationToken",
    "SessionRegistry",
    "SyncOrchestrator",
    "SyncStream",
    "start_session",
    # Types
    "AccountTransactions",
    "CategoryDecision",
    "CategorySource",
    "Credential",
    "DateRange",
    "PatternQuery",
    "ProgressEvent",
    "RawTransaction",
    "RawTransactionSource",
    "ReplaySource",
    "StepSignal",
    "SyncOptions",
    "SyncSummary",
    # Stream decoding
    "FrameDecoder",
    "iter_frames",
    # Stored-data helpers
    "add_exclusion",
    "apply_rules",
    "delete_exclusion",
    "find_patterns",
    "get_continuation_start",
    "get_last_transaction_date",
    "list_exclusions",
    "list_sync_events",
    "merge_categories",
    "update_category",
    # Errors
    "CategoryUpdateError",
    "ConcurrentSessionError",
    "CredentialValidationError",
    "FinanceSyncError",
    "PatternQueryError",
    "SourceAuthenticationError",
    "SourceError",
]
