# ruff: noqa: I001
"""Fingerprinting and the insert / update / skip merge of source records.

Functions here write to ``fs_transactions`` (``db.models.finance``) through a
caller-provided SQLAlchemy session; they never commit. The orchestrator wraps
each account batch in one ``db.client.session_scope`` so a batch is saved or
discarded as a unit.

Identity
--------
A transaction's fingerprint hashes only immutable identity fields: vendor,
account number, date, amount magnitude and normalized description. Category
fields are engine-mutable and stay out of it. The magnitude (not the signed
amount) is hashed so a source that later corrects the sign of a charge maps
onto the same row and produces an update instead of a second row.

Concurrency
-----------
The table carries a unique constraint on ``fingerprint_sha256``. New rows go
in with ``INSERT ... ON CONFLICT DO NOTHING`` (PostgreSQL or SQLite dialect,
picked from the session's bind) followed by a re-read, so two writers racing on
one fingerprint end with one row and the loser reconciles against it.
"""

from __future__ import annotations

import hashlib
import json
import re
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from db.models.finance import FsTransaction
from .logging_setup import get_logger
from .models import CategoryDecision, CategorySource, MergeAction, MergeResult, RawTransaction

_logger = get_logger("finance_sync.persistence")

_WS_RE = re.compile(r"\s+")
# \w is Unicode-aware: Hebrew, Cyrillic etc. survive, punctuation does not.
_PUNCT_RE = re.compile(r"[^\w\s]|_")
_CENT = Decimal("0.01")


def normalize_description(description: str | None) -> str:
    """Lower-case, trim, collapse whitespace and drop punctuation.

    >>> normalize_description("  NETFLIX.COM  *Subscription ")
    'netflixcom subscription'
    """

    if not description:
        return ""
    s = _WS_RE.sub(" ", description.lower().strip())
    s = _PUNCT_RE.sub("", s)
    return _WS_RE.sub(" ", s).strip()


def _to_decimal_2(raw: Decimal | float | int | str) -> Decimal:
    return Decimal(str(raw)).quantize(_CENT, rounding=ROUND_HALF_UP)


def compute_fingerprint(
    *,
    vendor: str,
    account_number: str | None,
    txn_date: date,
    amount: Decimal | float | int | str,
    description: str,
) -> str:
    """Stable SHA-256 over canonical JSON of the identity fields.

    Fields: vendor (trimmed, lowercased), account number (trimmed or ``""``),
    ISO date, amount magnitude as a 2dp string, normalized description.
    """

    payload = {
        "vendor": (vendor or "").strip().lower(),
        "account": (account_number or "").strip(),
        "date": txn_date.isoformat(),
        "amount": f"{abs(_to_decimal_2(amount)):.2f}",
        "description": normalize_description(description),
    }
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def fingerprint_record(vendor: str, record: RawTransaction, account_number: str | None = None) -> str:
    return compute_fingerprint(
        vendor=vendor,
        account_number=record.account_number or account_number,
        txn_date=record.date,
        amount=record.amount,
        description=record.description,
    )


def insert_ignore(
    session: Session, model: type[Any], values: dict[str, Any], index_elements: list[str]
):
    """``INSERT ... ON CONFLICT (index_elements) DO NOTHING`` for the session's dialect."""

    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite_insert(model).values(**values)
    else:  # pragma: no cover - only PostgreSQL and SQLite are deployed
        raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")
    return stmt.on_conflict_do_nothing(index_elements=index_elements)


def _category_to_apply(
    row: FsTransaction, decision: CategoryDecision, *, update_category_on_rescrape: bool
) -> str | None:
    """Category the stored row should move to, or ``None`` to leave it alone."""

    if decision.category is None:
        return None
    if decision.source is CategorySource.RULE:
        return decision.category
    if not row.category:
        return decision.category
    if row.category_source == CategorySource.MANUAL.value:
        return None
    return decision.category if update_category_on_rescrape else None


def merge_transaction(
    session: Session,
    *,
    vendor: str,
    record: RawTransaction,
    decision: CategoryDecision,
    account_number: str | None = None,
    credential_id: str | None = None,
    update_category_on_rescrape: bool = True,
) -> MergeResult:
    """Insert, update or skip one source record.

    - No stored row with the fingerprint: insert.
    - Stored row, same amount and no category change: skip (duplicate).
    - Stored row whose amount sign differs, or whose category should change
      under the precedence rules: update in place, keeping ``old_category``.

    Re-merging an unchanged record with the same decision always skips.
    """

    account = record.account_number or account_number
    fingerprint = fingerprint_record(vendor, record, account)
    amount = _to_decimal_2(record.amount)
    now = datetime.now(UTC)

    by_fp = select(FsTransaction).where(FsTransaction.fingerprint_sha256 == fingerprint)
    row = session.scalars(by_fp).one_or_none()

    if row is None:
        values: dict[str, Any] = {
            "vendor": vendor,
            "account_number": account,
            "credential_id": credential_id,
            "fingerprint_sha256": fingerprint,
            "raw_record": record.to_record(),
            "date": record.date,
            "processed_date": record.processed_date,
            "amount": amount,
            "charged_currency": record.charged_currency,
            "original_amount": (
                _to_decimal_2(record.original_amount) if record.original_amount is not None else None
            ),
            "original_currency": record.original_currency,
            "description": record.description.strip(),
            "description_norm": normalize_description(record.description),
            "memo": record.memo,
            "status": record.status,
            "installment_number": record.installment_number,
            "installment_total": record.installment_total,
            "category": decision.category,
            "category_source": (
                decision.source.value if decision.category else CategorySource.NONE.value
            ),
            "rule_matched": decision.rule_matched,
            "categorized_at": now if decision.category else None,
        }
        inserted = session.execute(
            insert_ignore(session, FsTransaction, values, ["fingerprint_sha256"])
        ).rowcount
        row = session.scalars(by_fp).one()
        if inserted:
            return MergeResult(action=MergeAction.INSERT, transaction=row, decision=decision)
        _logger.debug("merge:insert_conflict fingerprint=%s", fingerprint)

    old_category = row.category
    changed = False

    if row.amount != amount:
        _logger.info(
            "merge:amount_corrected id=%s old=%s new=%s", row.id, row.amount, amount
        )
        row.amount = amount
        changed = True

    new_category = _category_to_apply(
        row, decision, update_category_on_rescrape=update_category_on_rescrape
    )
    if new_category is not None and new_category != row.category:
        row.category = new_category
        row.category_source = decision.source.value
        row.rule_matched = decision.rule_matched
        row.categorized_at = now
        changed = True

    if not changed:
        return MergeResult(
            action=MergeAction.SKIP, transaction=row, decision=decision, old_category=old_category
        )

    row.updated_at = now
    session.flush()
    return MergeResult(
        action=MergeAction.UPDATE, transaction=row, decision=decision, old_category=old_category
    )


def last_transaction_date(
    session: Session, vendor: str, credential_id: str | None = None
) -> date | None:
    """Latest stored transaction date for ``vendor`` (and credential, when given)."""

    stmt = select(func.max(FsTransaction.date)).where(FsTransaction.vendor == vendor)
    if credential_id is not None:
        stmt = stmt.where(FsTransaction.credential_id == credential_id)
    return session.execute(stmt).scalar_one_or_none()


def continuation_start_date(
    session: Session,
    vendor: str,
    credential_id: str | None = None,
    *,
    fallback: date | None = None,
) -> date | None:
    """Gap-fill start date: the day after the last stored transaction.

    Returns ``fallback`` when nothing is stored yet.
    """

    last = last_transaction_date(session, vendor, credential_id)
    if last is None:
        return fallback
    return last + timedelta(days=1)


__all__ = [
    "compute_fingerprint",
    "continuation_start_date",
    "fingerprint_record",
    "insert_ignore",
    "last_transaction_date",
    "merge_transaction",
    "normalize_description",
]
