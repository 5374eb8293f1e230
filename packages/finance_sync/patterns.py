# ruff: noqa: I001
"""Installment plans and recurring charges derived from stored transactions.

Nothing here is persisted: groups are rebuilt from ``fs_transactions`` on every
query, so they can never drift from the transactions they summarize. A query
sees whatever is committed at that moment, including a half-finished sync.

Installments
------------
Rows with ``installment_total > 1`` and an ``installment_number``. A plan is
identified by (normalized description, vendor, account, total, original
amount, month of the original purchase), where the purchase date is the
charge date moved back ``number - 1`` months; two purchases of the same item
therefore stay separate. ``current_installment`` is the highest index seen
and ``monthly_price`` the magnitude of that charge.

Next payment: while ``current < total`` it is the latest charge when that is
dated today or later, otherwise one month after it. Once ``current >= total``
it is the final charge itself, so a final charge dated in the future keeps the
plan active until it posts. A plan is ``completed`` when ``current >= total``
and that date is before today.

Recurring
---------
Expenses without installment metadata, outside the excluded categories, whose
description is not used by any installment plan. Grouped by (normalized
description, vendor, account) and, inside a group, clustered by amount: a
charge joins the first cluster whose running mean is within 10% or within 5
currency units of it. A cluster is recurring when it spans at least two
calendar months. The modal gap between consecutive months decides the
frequency (2 means bi-monthly, anything else monthly) and the next payment is
the last charge moved forward by that gap.

Paging
------
Sorting is stable and total: primary key, secondary key (count and amount
back each other up), then the group's identity tuple. Identities are built
from stored fields only, so pages stay disjoint when unrelated transactions
arrive between requests.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from db.models.finance import FsTransaction
from .dates import add_months, month_index, month_key
from .errors import PatternQueryError
from .exclusions import excluded_keys
from .logging_setup import get_logger
from .settings import DEFAULT_RECURRING_EXCLUDED_CATEGORIES

_logger = get_logger("finance_sync.patterns")

DEFAULT_LIMIT = 50
MAX_LIMIT = 500
AMOUNT_TOLERANCE_RATIO = Decimal("0.10")
AMOUNT_TOLERANCE_ABS = Decimal("5")
_CENT = Decimal("0.01")


class PatternType(StrEnum):
    INSTALLMENTS = "installments"
    RECURRING = "recurring"


class SortKey(StrEnum):
    AMOUNT = "amount"
    COUNT = "count"
    NAME = "name"
    NEXT_PAYMENT_DATE = "next_payment_date"
    LAST_CHARGE_DATE = "last_charge_date"


class SortOrder(StrEnum):
    ASC = "asc"
    DESC = "desc"


class Frequency(StrEnum):
    MONTHLY = "monthly"
    BI_MONTHLY = "bi-monthly"


class InstallmentStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"


_SORT_ALIASES = {
    "nextPaymentDate": SortKey.NEXT_PAYMENT_DATE,
    "lastChargeDate": SortKey.LAST_CHARGE_DATE,
    "price": SortKey.AMOUNT,
    "monthly_amount": SortKey.AMOUNT,
    "month_count": SortKey.COUNT,
}


def _parse_enum[E: StrEnum](enum: type[E], raw: str | E, label: str) -> E:
    if isinstance(raw, enum):
        return raw
    try:
        return enum(str(raw).strip())
    except ValueError:
        allowed = ", ".join(e.value for e in enum)
        raise PatternQueryError(f"Invalid {label} {raw!r}; expected one of: {allowed}") from None


@dataclass(frozen=True, slots=True)
class PatternQuery:
    type: PatternType = PatternType.RECURRING
    sort_by: SortKey = SortKey.AMOUNT
    sort_order: SortOrder = SortOrder.DESC
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    frequency: Frequency | None = None
    status: InstallmentStatus | None = None
    today: date | None = None

    def __post_init__(self) -> None:
        if isinstance(self.limit, bool) or not isinstance(self.limit, int):
            raise PatternQueryError(f"limit must be an integer (got {self.limit!r})")
        if not 1 <= self.limit <= MAX_LIMIT:
            raise PatternQueryError(f"limit must be between 1 and {MAX_LIMIT} (got {self.limit})")
        if isinstance(self.offset, bool) or not isinstance(self.offset, int):
            raise PatternQueryError(f"offset must be an integer (got {self.offset!r})")
        if self.offset < 0:
            raise PatternQueryError(f"offset must be >= 0 (got {self.offset})")
        if self.frequency is not None and self.type is not PatternType.RECURRING:
            raise PatternQueryError("frequency filter applies to recurring queries only")
        if self.status is not None and self.type is not PatternType.INSTALLMENTS:
            raise PatternQueryError("status filter applies to installment queries only")

    @classmethod
    def parse(
        cls,
        *,
        type: str | None = None,
        sort_by: str | None = None,
        sort_order: str | None = None,
        limit: int | str | None = None,
        offset: int | str | None = None,
        frequency: str | None = None,
        status: str | None = None,
        today: date | None = None,
    ) -> PatternQuery:
        """Build a query from loosely-typed (HTTP/CLI) values, rejecting bad ones."""

        return cls(
            type=_parse_enum(PatternType, type, "type") if type else PatternType.RECURRING,
            sort_by=(
                _parse_enum(SortKey, _SORT_ALIASES.get(sort_by, sort_by), "sortBy")
                if sort_by
                else SortKey.AMOUNT
            ),
            sort_order=(
                _parse_enum(SortOrder, sort_order.lower(), "sortOrder") if sort_order else SortOrder.DESC
            ),
            limit=_parse_int(limit, "limit", DEFAULT_LIMIT),
            offset=_parse_int(offset, "offset", 0),
            frequency=_parse_enum(Frequency, frequency, "frequency") if frequency else None,
            status=_parse_enum(InstallmentStatus, status, "status") if status else None,
            today=today,
        )


def _parse_int(raw: int | str | None, label: str, default: int) -> int:
    if raw is None or raw == "":
        return default
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    try:
        return int(str(raw).strip())
    except ValueError:
        raise PatternQueryError(f"{label} must be an integer (got {raw!r})") from None


# ---- Group models -------------------------------------------------------------


def _money(value: Decimal | None) -> float | None:
    return None if value is None else float(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def _iso(d: date | None) -> str | None:
    return d.isoformat() if d else None


@dataclass(slots=True)
class InstallmentGroup:
    name: str
    name_norm: str
    category: str | None
    vendor: str
    account_number: str | None
    current_installment: int
    total_installments: int
    monthly_price: Decimal
    original_amount: Decimal | None
    original_currency: str | None
    last_charge_date: date
    last_billing_date: date | None
    original_purchase_date: date
    next_payment_date: date | None
    last_payment_date: date
    status: InstallmentStatus
    identity: tuple[str, ...]

    @property
    def amount(self) -> Decimal:
        return self.monthly_price

    @property
    def count(self) -> int:
        return self.current_installment

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category,
            "vendor": self.vendor,
            "account_number": self.account_number,
            "current_installment": self.current_installment,
            "total_installments": self.total_installments,
            "price": _money(-self.monthly_price),
            "monthly_price": _money(self.monthly_price),
            "original_amount": _money(self.original_amount),
            "original_currency": self.original_currency,
            "last_charge_date": _iso(self.last_charge_date),
            "last_billing_date": _iso(self.last_billing_date),
            "original_purchase_date": _iso(self.original_purchase_date),
            "next_payment_date": _iso(self.next_payment_date),
            "last_payment_date": _iso(self.last_payment_date),
            "status": self.status.value,
        }


@dataclass(slots=True)
class RecurringGroup:
    name: str
    name_norm: str
    category: str | None
    vendor: str
    account_number: str | None
    frequency: Frequency
    month_count: int
    months: list[str]
    occurrences: list[tuple[date, Decimal]]
    monthly_amount: Decimal
    last_charge_date: date
    next_payment_date: date
    identity: tuple[str, ...]

    @property
    def amount(self) -> Decimal:
        return self.monthly_amount

    @property
    def count(self) -> int:
        return self.month_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category,
            "vendor": self.vendor,
            "account_number": self.account_number,
            "frequency": self.frequency.value,
            "month_count": self.month_count,
            "months": list(self.months),
            "occurrences": [{"date": d.isoformat(), "amount": _money(a)} for d, a in self.occurrences],
            "monthly_amount": _money(self.monthly_amount),
            "price": _money(-self.monthly_amount),
            "last_charge_date": _iso(self.last_charge_date),
            "next_payment_date": _iso(self.next_payment_date),
        }


type PatternGroup = InstallmentGroup | RecurringGroup


@dataclass(slots=True)
class PatternPage:
    type: PatternType
    items: list[Any]
    limit: int
    offset: int
    total: int
    total_unfiltered: int
    summary: dict[str, Any] = field(default_factory=dict)

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total

    def to_dict(self) -> dict[str, Any]:
        total_key = (
            "totalInstallments" if self.type is PatternType.INSTALLMENTS else "totalRecurring"
        )
        return {
            self.type.value: [g.to_dict() for g in self.items],
            "pagination": {
                "limit": self.limit,
                "offset": self.offset,
                "total": self.total,
                total_key: self.total_unfiltered,
                "hasMore": self.has_more,
            },
            "summary": dict(self.summary),
        }


# ---- Installment detection ----------------------------------------------------


def _abs2(value: Decimal | None) -> Decimal:
    return abs(value if value is not None else Decimal(0)).quantize(_CENT, rounding=ROUND_HALF_UP)


def next_installment_date(
    current: int, total: int, last_charge: date, today: date
) -> date:
    if current >= total:
        return last_charge
    if last_charge >= today:
        return last_charge
    return add_months(last_charge, 1)


def installment_status(
    current: int, total: int, next_payment: date | None, today: date
) -> InstallmentStatus:
    if current >= total and (next_payment is None or next_payment < today):
        return InstallmentStatus.COMPLETED
    return InstallmentStatus.ACTIVE


def detect_installments(rows: Iterable[FsTransaction], *, today: date) -> list[InstallmentGroup]:
    plans: dict[tuple[str, ...], list[FsTransaction]] = {}
    for tx in rows:
        if tx.installment_number is None or not tx.installment_total or tx.installment_total <= 1:
            continue
        number = max(tx.installment_number, 1)
        purchase = add_months(tx.date, -(number - 1))
        key = (
            tx.description_norm,
            tx.vendor,
            tx.account_number or "",
            f"{tx.installment_total:04d}",
            month_key(purchase),
            f"{_abs2(tx.original_amount):.2f}",
        )
        plans.setdefault(key, []).append(tx)

    groups: list[InstallmentGroup] = []
    for key, items in plans.items():
        latest = max(items, key=lambda t: (t.installment_number or 0, t.date, t.id or 0))
        current = max(latest.installment_number or 1, 1)
        total = latest.installment_total or current
        purchase = add_months(latest.date, -(current - 1))
        projected = next_installment_date(current, total, latest.date, today)
        status = installment_status(current, total, projected, today)
        groups.append(
            InstallmentGroup(
                name=latest.description,
                name_norm=latest.description_norm,
                category=latest.category,
                vendor=latest.vendor,
                account_number=latest.account_number,
                current_installment=current,
                total_installments=total,
                monthly_price=_abs2(latest.amount),
                original_amount=latest.original_amount,
                original_currency=latest.original_currency,
                last_charge_date=latest.date,
                last_billing_date=latest.processed_date,
                original_purchase_date=purchase,
                next_payment_date=None if status is InstallmentStatus.COMPLETED else projected,
                last_payment_date=add_months(purchase, total - 1),
                status=status,
                identity=key,
            )
        )
    return groups


# ---- Recurring detection ------------------------------------------------------


def amounts_comparable(amount: Decimal, mean: Decimal) -> bool:
    diff = abs(amount - mean)
    if diff <= AMOUNT_TOLERANCE_ABS:
        return True
    return mean > 0 and diff / mean <= AMOUNT_TOLERANCE_RATIO


def classify_frequency(dates: Sequence[date]) -> Frequency:
    """Bi-monthly when the most common gap between charge months is 2."""

    months = sorted({month_index(d) for d in dates})
    gaps = Counter(b - a for a, b in zip(months, months[1:], strict=False))
    if not gaps:
        return Frequency.MONTHLY
    # Ties go to the shorter gap.
    modal = min(gaps, key=lambda g: (-gaps[g], g))
    return Frequency.BI_MONTHLY if modal == 2 else Frequency.MONTHLY


@dataclass(slots=True)
class _Cluster:
    items: list[FsTransaction] = field(default_factory=list)
    total: Decimal = Decimal(0)

    @property
    def mean(self) -> Decimal:
        return self.total / len(self.items)

    def add(self, tx: FsTransaction) -> None:
        self.items.append(tx)
        self.total += _abs2(tx.amount)


def detect_recurring(
    rows: Iterable[FsTransaction],
    *,
    exclusions: set[tuple[str, str]] | None = None,
    excluded_categories: Iterable[str] = DEFAULT_RECURRING_EXCLUDED_CATEGORIES,
    installment_names: set[str] | None = None,
) -> list[RecurringGroup]:
    exclusions = exclusions or set()
    skip_categories = set(excluded_categories)
    installment_names = installment_names or set()

    buckets: dict[tuple[str, str, str], list[FsTransaction]] = {}
    for tx in rows:
        if tx.amount is None or tx.amount >= 0:
            continue
        if tx.installment_total is not None and tx.installment_total > 1:
            continue
        if tx.category in skip_categories:
            continue
        if not tx.description_norm or tx.description_norm in installment_names:
            continue
        account = tx.account_number or ""
        if (tx.description_norm, account) in exclusions:
            continue
        buckets.setdefault((tx.description_norm, tx.vendor, account), []).append(tx)

    groups: list[RecurringGroup] = []
    for key, items in buckets.items():
        items.sort(key=lambda t: (t.date, t.id or 0))
        clusters: list[_Cluster] = []
        for tx in items:
            amount = _abs2(tx.amount)
            target = next((c for c in clusters if amounts_comparable(amount, c.mean)), None)
            if target is None:
                target = _Cluster()
                clusters.append(target)
            target.add(tx)

        for cluster in clusters:
            dates = [t.date for t in cluster.items]
            if len({month_index(d) for d in dates}) < 2:
                continue
            frequency = classify_frequency(dates)
            last = cluster.items[-1]
            step = 2 if frequency is Frequency.BI_MONTHLY else 1
            groups.append(
                RecurringGroup(
                    name=last.description,
                    name_norm=key[0],
                    category=last.category,
                    vendor=last.vendor,
                    account_number=last.account_number,
                    frequency=frequency,
                    month_count=len({month_index(d) for d in dates}),
                    months=sorted({month_key(d) for d in dates}, reverse=True),
                    occurrences=[(t.date, _abs2(t.amount)) for t in reversed(cluster.items)],
                    monthly_amount=(cluster.total / len(cluster.items)).quantize(
                        _CENT, rounding=ROUND_HALF_UP
                    ),
                    last_charge_date=last.date,
                    next_payment_date=add_months(last.date, step),
                    # The first charge anchors the cluster; later charges never move it.
                    identity=(*key, cluster.items[0].date.isoformat(), str(cluster.items[0].id or 0)),
                )
            )
    return groups


# ---- Sorting and paging -------------------------------------------------------


def _sort_value(group: PatternGroup, key: SortKey, descending: bool) -> Any:
    if key is SortKey.AMOUNT:
        return group.amount
    if key is SortKey.COUNT:
        return group.count
    if key is SortKey.NAME:
        return group.name_norm
    value = group.next_payment_date if key is SortKey.NEXT_PAYMENT_DATE else group.last_charge_date
    if value is None:
        # Missing dates sort last in either direction.
        return date.min if descending else date.max
    return value


def _secondary(key: SortKey) -> SortKey:
    return SortKey.AMOUNT if key is SortKey.COUNT else SortKey.COUNT


def sort_groups[G: (InstallmentGroup, RecurringGroup)](
    groups: list[G], sort_by: SortKey, sort_order: SortOrder
) -> list[G]:
    descending = sort_order is SortOrder.DESC
    secondary = _secondary(sort_by)
    ordered = sorted(groups, key=lambda g: g.identity)
    key: Callable[[G], tuple[Any, Any]] = lambda g: (  # noqa: E731
        _sort_value(g, sort_by, descending),
        _sort_value(g, secondary, descending),
    )
    # Stable: equal keys keep identity order even when reversed.
    ordered.sort(key=key, reverse=descending)
    return ordered


def _installment_summary(groups: Sequence[InstallmentGroup]) -> dict[str, Any]:
    active = [g for g in groups if g.status is InstallmentStatus.ACTIVE]
    return {
        "activeCount": len(active),
        "activeAmount": _money(sum((g.monthly_price for g in active), Decimal(0))),
        "completedCount": len(groups) - len(active),
        "total": len(groups),
    }


def _recurring_summary(groups: Sequence[RecurringGroup]) -> dict[str, Any]:
    return {
        "activeCount": len(groups),
        "activeAmount": _money(sum((g.monthly_amount for g in groups), Decimal(0))),
        "monthlyCount": sum(1 for g in groups if g.frequency is Frequency.MONTHLY),
        "biMonthlyCount": sum(1 for g in groups if g.frequency is Frequency.BI_MONTHLY),
    }


def _installment_rows(session: Session) -> list[FsTransaction]:
    stmt = select(FsTransaction).where(
        FsTransaction.installment_total > 1, FsTransaction.installment_number.is_not(None)
    )
    return list(session.scalars(stmt))


def query_patterns(
    session: Session,
    query: PatternQuery,
    *,
    excluded_categories: Iterable[str] = DEFAULT_RECURRING_EXCLUDED_CATEGORIES,
) -> PatternPage:
    today = query.today or date.today()
    installment_rows = _installment_rows(session)

    groups: list[Any]
    if query.type is PatternType.INSTALLMENTS:
        all_groups: list[Any] = detect_installments(installment_rows, today=today)
        summary = _installment_summary(all_groups)
        groups = [g for g in all_groups if query.status is None or g.status is query.status]
    else:
        candidates = session.scalars(
            select(FsTransaction).where(
                FsTransaction.amount < 0,
                or_(FsTransaction.installment_total.is_(None), FsTransaction.installment_total <= 1),
            )
        )
        all_groups = detect_recurring(
            candidates,
            exclusions=excluded_keys(session),
            excluded_categories=excluded_categories,
            installment_names={t.description_norm for t in installment_rows},
        )
        summary = _recurring_summary(all_groups)
        groups = [g for g in all_groups if query.frequency is None or g.frequency is query.frequency]

    ordered = sort_groups(groups, query.sort_by, query.sort_order)
    page = ordered[query.offset : query.offset + query.limit]
    _logger.debug(
        "patterns:query type=%s sort=%s:%s offset=%d limit=%d total=%d",
        query.type,
        query.sort_by,
        query.sort_order,
        query.offset,
        query.limit,
        len(ordered),
    )
    return PatternPage(
        type=query.type,
        items=page,
        limit=query.limit,
        offset=query.offset,
        total=len(ordered),
        total_unfiltered=len(all_groups),
        summary=summary,
    )


__all__ = [
    "DEFAULT_LIMIT",
    "MAX_LIMIT",
    "Frequency",
    "InstallmentGroup",
    "InstallmentStatus",
    "PatternPage",
    "PatternQuery",
    "PatternType",
    "RecurringGroup",
    "SortKey",
    "SortOrder",
    "amounts_comparable",
    "classify_frequency",
    "detect_installments",
    "detect_recurring",
    "installment_status",
    "next_installment_date",
    "query_patterns",
    "sort_groups",
]
