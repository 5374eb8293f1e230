"""Raw transaction sources and credential checks.

A source is whatever talks to a bank or card issuer. The engine only sees the
``RawTransactionSource`` protocol: ``fetch`` is an async iterator yielding
``StepSignal`` items (``loginStarted``, ``endScraping``...) and one
``AccountTransactions`` batch per account, and it raises ``SourceError`` (or
``SourceAuthenticationError``) when the institution refuses or the transport
breaks. Institution-specific automation lives outside this package.

``ReplaySource`` is the one concrete source shipped here. It replays a captured
scrape result from JSON, in the shape scrapers return it::

    {"success": true,
     "accounts": [{"accountNumber": "1234", "txns": [{"date": "...", "chargedAmount": -12.5, ...}]}]}

A capture with ``"success": false`` raises with its ``errorType`` and
``errorMessage``. The CLI and the web app use it for offline syncs; tests use
it and simple in-memory fakes.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable, Mapping
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import ValidationError

from .errors import CredentialValidationError, SourceAuthenticationError, SourceError
from .logging_setup import get_logger
from .models import (
    AccountTransactions,
    Credential,
    DateRange,
    RawTransaction,
    SourceItem,
    StepSignal,
    SyncOptions,
)

_logger = get_logger("finance_sync.sources")

BANK_VENDORS: tuple[str, ...] = (
    "hapoalim",
    "leumi",
    "discount",
    "otsarHahayal",
    "mercantile",
    "mizrahi",
    "igud",
    "massad",
    "yahav",
    "beinleumi",
    "oneZero",
)
CARD_VENDORS: tuple[str, ...] = ("isracard", "amex", "max", "visaCal")
KNOWN_VENDORS: frozenset[str] = frozenset(BANK_VENDORS + CARD_VENDORS)

_DEFAULT_REQUIRED: tuple[str, ...] = ("username", "password")
REQUIRED_FIELDS: Mapping[str, tuple[str, ...]] = {
    "hapoalim": ("userCode", "password"),
    "isracard": ("id", "card6Digits", "password"),
    "amex": ("id", "card6Digits", "password"),
}

# Error types a scraper reports for rejected logins.
_AUTH_ERROR_TYPES = frozenset({"INVALID_PASSWORD", "CHANGE_PASSWORD", "ACCOUNT_BLOCKED"})


@runtime_checkable
class RawTransactionSource(Protocol):
    def fetch(
        self, credential: Credential, date_range: DateRange, options: SyncOptions
    ) -> AsyncIterator[SourceItem]: ...


type SourceFactory = Callable[[str], RawTransactionSource]


# ---- Credentials --------------------------------------------------------------


def required_fields(vendor: str) -> tuple[str, ...]:
    return REQUIRED_FIELDS.get(vendor, _DEFAULT_REQUIRED)


def prepare_credential(
    vendor: str,
    raw: Mapping[str, Any],
    *,
    credential_id: str | None = None,
) -> Credential:
    """Build a ``Credential`` from loosely-keyed input.

    Values are stringified and blanks dropped. Hapoalim logs in with a
    ``userCode``, which older records stored as ``username`` or ``id``.
    """

    fields = {k: str(v).strip() for k, v in raw.items() if v is not None and str(v).strip()}
    nickname = fields.pop("nickname", None)
    if vendor == "hapoalim" and "userCode" not in fields:
        for alt in ("username", "id", "id_number"):
            if alt in fields:
                fields["userCode"] = fields[alt]
                break
    return Credential(vendor=vendor, fields=fields, id=credential_id, nickname=nickname)


def validate_credential(credential: Credential) -> None:
    """Reject unknown vendors and missing login fields before a session starts."""

    if credential.vendor not in KNOWN_VENDORS:
        raise CredentialValidationError(f"Invalid vendor: {credential.vendor!r}")
    needed = required_fields(credential.vendor)
    missing = tuple(f for f in needed if not credential.fields.get(f))
    if missing:
        raise CredentialValidationError(
            f"Invalid credentials for {credential.vendor}: {', '.join(needed)} are required.",
            missing_fields=missing,
        )


def credential_key(credential: Credential) -> str:
    """Key used to allow one running sync per credential."""

    if credential.id:
        return f"id:{credential.id}"
    login = next(
        (
            credential.fields[f]
            for f in ("userCode", "username", "id", "card6Digits")
            if credential.fields.get(f)
        ),
        "",
    )
    return f"{credential.vendor}:{login}"


# ---- Replay source ------------------------------------------------------------


def _raise_capture_error(capture: Mapping[str, Any]) -> None:
    error_type = str(capture.get("errorType") or "GENERIC")
    message = str(capture.get("errorMessage") or f"Source reported {error_type}")
    if error_type in _AUTH_ERROR_TYPES:
        raise SourceAuthenticationError(message)
    if error_type == "TIMEOUT":
        raise SourceError(message, hint="The institution did not respond in time; try again later.")
    raise SourceError(message)


class ReplaySource:
    """Replays a captured scrape result (file path or already-loaded mapping)."""

    def __init__(self, capture: Path | Mapping[str, Any], *, step_delay: float = 0.0) -> None:
        self._capture = capture
        self._step_delay = step_delay

    def _load(self) -> Mapping[str, Any]:
        if isinstance(self._capture, Path):
            try:
                with self._capture.open("r", encoding="utf-8") as f:
                    data = json.load(f)
            except FileNotFoundError as exc:
                raise SourceError(
                    f"No capture found at {self._capture}",
                    hint="Record a capture for this vendor or set FS_REPLAY_DIR.",
                    retryable=False,
                ) from exc
            except json.JSONDecodeError as exc:
                raise SourceError(f"Capture {self._capture} is not valid JSON: {exc}", retryable=False) from exc
            if not isinstance(data, Mapping):
                raise SourceError(f"Capture {self._capture} must be a JSON object", retryable=False)
            return data
        return self._capture

    async def _signal(self, step: str, message: str | None = None, **details: Any) -> StepSignal:
        if self._step_delay:
            await asyncio.sleep(self._step_delay)
        return StepSignal(step=step, message=message, details=details or None)

    async def fetch(
        self, credential: Credential, date_range: DateRange, options: SyncOptions
    ) -> AsyncIterator[SourceItem]:
        yield await self._signal("startScraping")
        yield await self._signal("loginStarted")
        capture = self._load()
        if capture.get("success") is False:
            yield await self._signal("loginFailed")
            _raise_capture_error(capture)
        yield await self._signal("loginSuccess")
        yield await self._signal("fetchingTransactions")

        for account in capture.get("accounts") or []:
            account_number = account.get("accountNumber")
            yield await self._signal(
                "processingAccount", f"Processing account {account_number or ''}", accountNumber=account_number
            )
            records: list[RawTransaction] = []
            for raw in account.get("txns") or []:
                try:
                    record = RawTransaction.model_validate(raw)
                except ValidationError as exc:
                    raise SourceError(
                        f"Malformed transaction in capture for account {account_number}: {exc.error_count()} error(s)",
                        retryable=False,
                    ) from exc
                if date_range.contains(record.date):
                    records.append(record)
            _logger.debug(
                "replay:account account=%s kept=%d", account_number, len(records)
            )
            yield AccountTransactions(account_number=account_number, transactions=records)

        yield await self._signal("endScraping")


def replay_source_factory(directory: Path) -> SourceFactory:
    """Factory serving ``<directory>/<vendor>.json`` captures."""

    def _factory(vendor: str) -> RawTransactionSource:
        return ReplaySource(directory / f"{vendor}.json")

    return _factory


__all__ = [
    "BANK_VENDORS",
    "CARD_VENDORS",
    "KNOWN_VENDORS",
    "REQUIRED_FIELDS",
    "RawTransactionSource",
    "ReplaySource",
    "SourceFactory",
    "credential_key",
    "prepare_credential",
    "replay_source_factory",
    "required_fields",
    "validate_credential",
]
