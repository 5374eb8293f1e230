"""Value objects shared across the sync engine.

Three families live here:

- Inbound records from a ``RawTransactionSource``: ``RawTransaction`` (a
  Pydantic model, because sources hand us loosely-typed JSON), plus the
  ``StepSignal`` / ``AccountTransactions`` items a source yields.
- Session inputs: ``Credential``, ``DateRange`` and ``SyncOptions``.
- Engine outputs: ``CategoryDecision``, ``MergeResult``, ``SyncSession`` and
  the ``SyncSummary`` carried by the final ``complete`` event.

Wire-facing models serialize with camelCase aliases (``savedTransactions``)
while Python code uses snake_case attribute names.
"""

from __future__ import annotations

import calendar
import datetime as dt
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .dates import add_months

if TYPE_CHECKING:  # pragma: no cover - typing only
    from db.models.finance import FsTransaction


# ---------------------------------------------------------------------------
# Source records
# ---------------------------------------------------------------------------


def _coerce_iso_date(value: Any) -> Any:
    # Sources emit midnight-local timestamps serialized as UTC
    # ("2024-01-09T22:00:00.000Z"); the calendar date is the leading part.
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, str) and len(value) > 10 and value[4] == "-" and value[7] == "-":
        return value[:10]
    return value


class RawTransaction(BaseModel):
    """One transaction as reported by a source.

    ``amount`` is the signed charged amount: expenses are negative, credits
    positive. Unknown keys are kept (``extra="allow"``) and end up in the
    stored ``raw_record`` JSON.
    """

    model_config = ConfigDict(
        extra="allow",
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    date: dt.date
    amount: Decimal = Field(validation_alias="chargedAmount")
    description: str
    account_number: str | None = None
    processed_date: dt.date | None = None
    original_amount: Decimal | None = None
    original_currency: str | None = None
    charged_currency: str | None = None
    memo: str | None = None
    category: str | None = None
    installment_number: int | None = None
    installment_total: int | None = None
    identifier: str | int | None = None
    status: str = "completed"

    @model_validator(mode="before")
    @classmethod
    def _flatten_installments(cls, data: Any) -> Any:
        # Accept both flat keys and the nested {"installments": {"number", "total"}} shape.
        if isinstance(data, Mapping):
            nested = data.get("installments")
            if isinstance(nested, Mapping):
                data = dict(data)
                data.pop("installments")
                data.setdefault("installmentNumber", nested.get("number"))
                data.setdefault("installmentTotal", nested.get("total"))
        return data

    @field_validator("date", "processed_date", mode="before")
    @classmethod
    def _iso_date(cls, v: Any) -> Any:
        return _coerce_iso_date(v)

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("description must not be blank")
        return v

    @field_validator("category")
    @classmethod
    def _blank_category_is_missing(cls, v: str | None) -> str | None:
        if v is None:
            return None
        s = v.strip()
        return None if not s or s.upper() == "N/A" else s

    def to_record(self) -> dict[str, Any]:
        """JSON-safe dict of the record as received (camelCase keys)."""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


@dataclass(frozen=True, slots=True)
class StepSignal:
    """A phase/step notification from a source (``loginSuccess``, ``endScraping``...)."""

    step: str
    message: str | None = None
    details: Mapping[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class AccountTransactions:
    """All transactions a source fetched for one account; saved as one unit."""

    account_number: str | None
    transactions: Sequence[RawTransaction]


type SourceItem = StepSignal | AccountTransactions


# ---------------------------------------------------------------------------
# Session inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Credential:
    """Login material for one vendor.

    ``id`` references a stored credential when the caller has one; inline
    credentials (first-time syncs) leave it ``None``. ``fields`` holds the
    vendor-specific login values (``userCode``, ``card6Digits``...).
    """

    vendor: str
    fields: Mapping[str, str] = field(default_factory=dict)
    id: str | None = None
    nickname: str | None = None


@dataclass(frozen=True, slots=True)
class DateRange:
    start: dt.date
    end: dt.date | None = None

    def __post_init__(self) -> None:
        if self.end is not None and self.end < self.start:
            raise ValueError(f"date range end {self.end} is before start {self.start}")

    @classmethod
    def billing_cycle(cls, year: int, month: int, start_day: int = 1) -> DateRange:
        """Statement period named by the month it closes in.

        Runs from ``start_day`` of the previous month to the day before
        ``start_day`` of ``month``. With ``start_day=10``, the March 2024
        cycle is 2024-02-10..2024-03-09. Days past a month's end clamp to it.
        """

        if not 1 <= month <= 12:
            raise ValueError(f"month must be 1..12 (got {month})")
        if not 1 <= start_day <= 31:
            raise ValueError(f"start_day must be 1..31 (got {start_day})")
        prev = add_months(dt.date(year, month, 1), -1)
        start = _clamped(prev.year, prev.month, start_day)
        end = _clamped(year, month, start_day) - dt.timedelta(days=1)
        return cls(start=start, end=end)

    def contains(self, d: dt.date) -> bool:
        return d >= self.start and (self.end is None or d <= self.end)


def _clamped(year: int, month: int, day: int) -> dt.date:
    return dt.date(year, month, min(day, calendar.monthrange(year, month)[1]))


@dataclass(frozen=True, slots=True)
class SyncOptions:
    """Per-run knobs. ``None`` means "use ``SyncSettings``"."""

    update_category_on_rescrape: bool | None = None
    max_retries: int | None = None
    retry_base_delay: float | None = None


# ---------------------------------------------------------------------------
# Categorization and merge outputs
# ---------------------------------------------------------------------------


class CategorySource(StrEnum):
    RULE = "rule"
    CACHE = "cache"
    SCRAPER = "scraper"
    MANUAL = "manual"
    NONE = "none"


@dataclass(frozen=True, slots=True)
class CategoryDecision:
    category: str | None
    source: CategorySource
    rule_matched: str | None = None

    @classmethod
    def uncategorized(cls) -> CategoryDecision:
        return cls(category=None, source=CategorySource.NONE)


class MergeAction(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    SKIP = "skip"


@dataclass(frozen=True, slots=True)
class MergeResult:
    action: MergeAction
    transaction: FsTransaction
    decision: CategoryDecision
    old_category: str | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.action is MergeAction.SKIP

    @property
    def is_update(self) -> bool:
        return self.action is MergeAction.UPDATE


class CategoryUpdateResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    transactions_updated: int
    rule_created: bool
    rule_updated: bool
    description: str
    new_category: str


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


class SessionStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class SyncState(StrEnum):
    INIT = "init"
    AUTHENTICATING = "authenticating"
    FETCHING = "fetching"
    PROCESSING = "processing"
    SAVING = "saving"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(slots=True)
class SyncSession:
    credential_key: str
    vendor: str
    start_date: dt.date
    credential_id: str | None = None
    status: SessionStatus = SessionStatus.RUNNING
    state: SyncState = SyncState.INIT
    last_emitted_step: str | None = None
    percent: int = 0
    error: str | None = None
    attempts: int = 0
    completed_steps: list[str] = field(default_factory=list)
    audit_event_id: int | None = None


class SyncSummary(BaseModel):
    """Counters reported by the ``complete`` event."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    accounts: int = 0
    transactions: int = 0
    saved_transactions: int = 0
    duplicate_transactions: int = 0
    updated_transactions: int = 0
    rule_categories: int = 0
    cached_categories: int = 0
    scraper_categories: int = 0
    uncategorized: int = 0
    attempts: int = 0
    duration_seconds: float = 0.0

    def count_decision(self, source: CategorySource) -> None:
        if source is CategorySource.RULE:
            self.rule_categories += 1
        elif source is CategorySource.CACHE:
            self.cached_categories += 1
        elif source is CategorySource.SCRAPER:
            self.scraper_categories += 1
        else:
            self.uncategorized += 1


__all__ = [
    "AccountTransactions",
    "CategoryDecision",
    "CategorySource",
    "CategoryUpdateResult",
    "Credential",
    "DateRange",
    "MergeAction",
    "MergeResult",
    "RawTransaction",
    "SessionStatus",
    "SourceItem",
    "StepSignal",
    "SyncOptions",
    "SyncSession",
    "SyncState",
    "SyncSummary",
]
