# ruff: noqa: I001
"""Public API for the ``finance_sync`` package.

Each function opens its own ``db.client.session_scope`` so callers (the CLI,
the web app, scripts) do not manage sessions. The building blocks that take an
explicit session live in ``persistence``, ``categorization``, ``patterns`` and
``exclusions`` and are what tests and the orchestrator use directly.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from typing import Any

from sqlalchemy import select

from db.client import session_scope
from db.models.finance import FsSyncEvent
from .categorization import apply_rules as _apply_rules
from .categorization import merge_categories as _merge_categories
from .categorization import update_category_by_description as _update_category
from .exclusions import add_exclusion as _add_exclusion
from .exclusions import delete_exclusion as _delete_exclusion
from .exclusions import exclusion_to_dict, list_exclusions as _list_exclusions
from .models import CategoryUpdateResult
from .orchestrator import start_session
from .patterns import PatternPage, PatternQuery, query_patterns
from .persistence import continuation_start_date, last_transaction_date
from .settings import DEFAULT_RECURRING_EXCLUDED_CATEGORIES


def get_last_transaction_date(
    vendor: str, credential_id: str | None = None, *, database_url: str | None = None
) -> date | None:
    """Latest stored transaction date for a vendor, or ``None`` before the first sync."""

    with session_scope(database_url=database_url) as s:
        return last_transaction_date(s, vendor, credential_id)


def get_continuation_start(
    vendor: str,
    credential_id: str | None = None,
    *,
    fallback: date | None = None,
    database_url: str | None = None,
) -> date | None:
    """Start date for a gap-filling sync: the day after the last stored transaction."""

    with session_scope(database_url=database_url) as s:
        return continuation_start_date(s, vendor, credential_id, fallback=fallback)


def find_patterns(
    query: PatternQuery,
    *,
    excluded_categories: Iterable[str] = DEFAULT_RECURRING_EXCLUDED_CATEGORIES,
    database_url: str | None = None,
) -> dict[str, Any]:
    """Run a pattern query and return the JSON-ready page."""

    with session_scope(database_url=database_url) as s:
        page: PatternPage = query_patterns(s, query, excluded_categories=excluded_categories)
        return page.to_dict()


def update_category(
    description: str,
    new_category: str,
    *,
    create_rule: bool = True,
    database_url: str | None = None,
) -> CategoryUpdateResult:
    with session_scope(database_url=database_url) as s:
        return _update_category(s, description, new_category, create_rule=create_rule)


def merge_categories(
    source_categories: Iterable[str], target: str, *, database_url: str | None = None
) -> int:
    with session_scope(database_url=database_url) as s:
        return _merge_categories(s, source_categories, target)


def apply_rules(*, database_url: str | None = None) -> tuple[int, int]:
    with session_scope(database_url=database_url) as s:
        return _apply_rules(s)


def add_exclusion(
    name: str, account_number: str | None = None, *, database_url: str | None = None
) -> dict[str, Any]:
    """Exclude a description/account pair from recurring detection (idempotent)."""

    with session_scope(database_url=database_url) as s:
        result = _add_exclusion(s, name, account_number)
        return {**exclusion_to_dict(result.exclusion), "alreadyExisted": result.already_existed}


def list_exclusions(*, database_url: str | None = None) -> list[dict[str, Any]]:
    with session_scope(database_url=database_url) as s:
        return [exclusion_to_dict(row) for row in _list_exclusions(s)]


def delete_exclusion(exclusion_id: int, *, database_url: str | None = None) -> bool:
    with session_scope(database_url=database_url) as s:
        return _delete_exclusion(s, exclusion_id)


def sync_event_to_dict(row: FsSyncEvent) -> dict[str, Any]:
    return {
        "id": row.id,
        "credentialId": row.credential_id,
        "vendor": row.vendor,
        "startDate": row.start_date.isoformat() if row.start_date else None,
        "status": row.status,
        "message": row.message,
        "attempts": row.attempts,
        "durationSeconds": row.duration_seconds,
        "report": row.report_json,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


def list_sync_events(
    *,
    vendor: str | None = None,
    limit: int = 50,
    database_url: str | None = None,
) -> list[dict[str, Any]]:
    """Most recent sync audit rows first."""

    stmt = select(FsSyncEvent).order_by(FsSyncEvent.id.desc()).limit(max(1, min(limit, 500)))
    if vendor:
        stmt = stmt.where(FsSyncEvent.vendor == vendor)
    with session_scope(database_url=database_url) as s:
        return [sync_event_to_dict(row) for row in s.scalars(stmt)]


__all__ = [
    "add_exclusion",
    "apply_rules",
    "delete_exclusion",
    "find_patterns",
    "get_continuation_start",
    "get_last_transaction_date",
    "list_exclusions",
    "list_sync_events",
    "merge_categories",
    "start_session",
    "sync_event_to_dict",
    "update_category",
]
