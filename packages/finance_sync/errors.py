"""Exception hierarchy for ``finance_sync``.

Everything the engine raises on purpose derives from ``FinanceSyncError`` so
entrypoints (CLI, HTTP) can map failures to exit codes and problem documents
without catching unrelated exceptions.

- ``CredentialValidationError`` and ``ConcurrentSessionError`` are raised
  before a sync session exists.
- ``SourceError`` is raised by a ``RawTransactionSource`` mid-stream. The
  orchestrator turns it into a single ``error`` event; it never escapes the
  stream.
- ``PatternQueryError`` rejects invalid sort keys, limits and offsets.
"""

from __future__ import annotations


class FinanceSyncError(Exception):
    """Base class for engine errors."""


class CredentialValidationError(FinanceSyncError):
    """A credential or date range is malformed; no session was started."""

    def __init__(self, message: str, *, missing_fields: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.missing_fields = missing_fields


class ConcurrentSessionError(FinanceSyncError):
    """A sync is already running for the same credential."""

    def __init__(self, credential_key: str) -> None:
        super().__init__(f"A sync is already running for credential {credential_key!r}")
        self.credential_key = credential_key


class PatternQueryError(FinanceSyncError):
    """Invalid pattern query parameters (sort key, order, limit, offset, filters)."""


class CategoryUpdateError(FinanceSyncError):
    """A manual category correction was rejected (e.g. blank description)."""


class SourceError(FinanceSyncError):
    """A raw transaction source failed.

    ``hint`` is an optional remediation message surfaced to the user.
    ``retryable`` tells the orchestrator whether another attempt may help.
    """

    def __init__(self, message: str, *, hint: str | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.retryable = retryable


class SourceAuthenticationError(SourceError):
    """Login was rejected by the institution. Retrying with the same secrets won't help."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(
            message,
            hint=hint or "Check the saved credentials for this account and try again.",
            retryable=False,
        )


__all__ = [
    "CategoryUpdateError",
    "ConcurrentSessionError",
    "CredentialValidationError",
    "FinanceSyncError",
    "PatternQueryError",
    "SourceAuthenticationError",
    "SourceError",
]
