# ruff: noqa: I001
"""User exclusions that keep a description/account pair out of recurring detection.

An exclusion is keyed on the normalized description and the account number
(``""`` for "no account"), the same key the pattern detector groups by, so an
excluded pair stays hidden however many matching transactions arrive later.
Adding an exclusion is idempotent.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.models.finance import FsRecurringExclusion
from .errors import PatternQueryError
from .logging_setup import get_logger
from .persistence import insert_ignore, normalize_description

_logger = get_logger("finance_sync.exclusions")


@dataclass(frozen=True, slots=True)
class ExclusionResult:
    exclusion: FsRecurringExclusion
    already_existed: bool


def exclusion_key(name: str, account_number: str | None) -> tuple[str, str]:
    return normalize_description(name), (account_number or "").strip()


def add_exclusion(session: Session, name: str, account_number: str | None = None) -> ExclusionResult:
    """Mark ``name``/``account_number`` as not recurring."""

    name = (name or "").strip()
    if not name:
        raise PatternQueryError("name is required")
    name_norm, account = exclusion_key(name, account_number)
    if not name_norm:
        raise PatternQueryError("name must contain letters or digits")

    inserted = session.execute(
        insert_ignore(
            session,
            FsRecurringExclusion,
            {"name": name, "name_norm": name_norm, "account_number": account},
            ["name_norm", "account_number"],
        )
    ).rowcount
    row = session.scalars(
        select(FsRecurringExclusion).where(
            FsRecurringExclusion.name_norm == name_norm,
            FsRecurringExclusion.account_number == account,
        )
    ).one()
    if inserted:
        _logger.info("exclusions:added name=%r account=%s id=%s", name_norm, account, row.id)
    return ExclusionResult(exclusion=row, already_existed=not inserted)


def list_exclusions(session: Session) -> list[FsRecurringExclusion]:
    stmt = select(FsRecurringExclusion).order_by(
        FsRecurringExclusion.created_at.desc(), FsRecurringExclusion.id.desc()
    )
    return list(session.scalars(stmt))


def delete_exclusion(session: Session, exclusion_id: int) -> bool:
    row = session.get(FsRecurringExclusion, exclusion_id)
    if row is None:
        return False
    session.delete(row)
    session.flush()
    _logger.info("exclusions:deleted id=%s", exclusion_id)
    return True


def excluded_keys(session: Session) -> set[tuple[str, str]]:
    rows = session.execute(
        select(FsRecurringExclusion.name_norm, FsRecurringExclusion.account_number)
    ).all()
    return {(name_norm, account or "") for name_norm, account in rows}


def exclusion_to_dict(row: FsRecurringExclusion) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "account_number": row.account_number or None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


__all__ = [
    "ExclusionResult",
    "add_exclusion",
    "delete_exclusion",
    "excluded_keys",
    "exclusion_key",
    "exclusion_to_dict",
    "list_exclusions",
]
