# ruff: noqa: I001
"""Category assignment for ingested transactions.

Precedence, first match wins:

1. An active ``FsCategoryRule`` whose ``match_description`` equals the
   transaction's normalized description.
2. The cache: the category most recently assigned to any *other* stored
   transaction with the same normalized description.
3. The category the source supplied (``"N/A"`` and blanks count as missing).
4. Uncategorized.

Whatever category wins is then passed through ``FsCategoryMapping`` so
categories merged by the user stay merged for future ingests. Mapping chains
are followed until they stop or loop.

``CategorizationEngine`` is built once per sync session (``load``) and reused
for every batch. Rules and mappings are preloaded; cache lookups hit the
database once per description and are then kept current with ``remember``.

Manual corrections (``update_category_by_description``), category merges and
retroactive rule application are plain functions over a session; callers own
the transaction.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from db.models.finance import FsCategoryMapping, FsCategoryRule, FsTransaction
from .errors import CategoryUpdateError
from .logging_setup import get_logger
from .models import CategoryDecision, CategorySource, CategoryUpdateResult
from .persistence import normalize_description

_logger = get_logger("finance_sync.categorization")

# (category, fingerprint of the row it came from)
type _CacheEntry = tuple[str, str]


def resolve_mapping(category: str, mappings: Mapping[str, str]) -> str:
    """Follow ``source -> target`` mappings transitively; stops on cycles."""

    seen: set[str] = set()
    current = category
    while current in mappings and current not in seen:
        seen.add(current)
        current = mappings[current]
    return current


class CategorizationEngine:
    def __init__(
        self,
        *,
        rules: Mapping[str, str] | None = None,
        mappings: Mapping[str, str] | None = None,
    ) -> None:
        self._rules = dict(rules or {})
        self._mappings = dict(mappings or {})
        self._cache: dict[str, list[_CacheEntry]] = {}

    @classmethod
    def load(cls, session: Session) -> CategorizationEngine:
        rules = {
            r.match_description: r.category
            for r in session.scalars(
                select(FsCategoryRule).where(FsCategoryRule.is_active.is_(True))
            )
        }
        mappings = {
            m.source_category: m.target_category for m in session.scalars(select(FsCategoryMapping))
        }
        _logger.debug("categorize:loaded rules=%d mappings=%d", len(rules), len(mappings))
        return cls(rules=rules, mappings=mappings)

    def apply_mappings(self, category: str) -> str:
        return resolve_mapping(category, self._mappings)

    def categorize(
        self,
        session: Session,
        description: str,
        source_category: str | None = None,
        *,
        exclude_fingerprint: str | None = None,
    ) -> CategoryDecision:
        norm = normalize_description(description)

        rule_category = self._rules.get(norm) if norm else None
        if rule_category:
            return CategoryDecision(
                category=self.apply_mappings(rule_category),
                source=CategorySource.RULE,
                rule_matched=norm,
            )

        cached = self._cached_category(session, norm, exclude_fingerprint) if norm else None
        if cached:
            return CategoryDecision(category=self.apply_mappings(cached), source=CategorySource.CACHE)

        scraped = (source_category or "").strip()
        if scraped and scraped.upper() != "N/A":
            return CategoryDecision(
                category=self.apply_mappings(scraped), source=CategorySource.SCRAPER
            )

        return CategoryDecision.uncategorized()

    def remember(self, description_norm: str, category: str | None, fingerprint: str) -> None:
        """Record the latest category for a description after a merge."""

        if not description_norm or not category:
            return
        entries = self._cache.get(description_norm)
        if entries is None:
            # Not looked up yet; the next lookup reads the committed state.
            return
        fresh = [(category, fingerprint)]
        fresh.extend(e for e in entries if e[1] != fingerprint)
        self._cache[description_norm] = fresh[:2]

    def _cached_category(
        self, session: Session, norm: str, exclude_fingerprint: str | None
    ) -> str | None:
        entries = self._cache.get(norm)
        if entries is None:
            # Two candidates are enough to skip over the excluded row.
            stmt = (
                select(FsTransaction.category, FsTransaction.fingerprint_sha256)
                .where(
                    FsTransaction.description_norm == norm,
                    FsTransaction.category.is_not(None),
                    FsTransaction.category != "",
                )
                .order_by(
                    FsTransaction.categorized_at.desc().nulls_last(),
                    FsTransaction.id.desc(),
                )
                .limit(2)
            )
            entries = [(cat, fp) for cat, fp in session.execute(stmt).all()]
            self._cache[norm] = entries
        for category, fp in entries:
            if fp != exclude_fingerprint:
                return category
        return None


# ---- Manual corrections -------------------------------------------------------


def update_category_by_description(
    session: Session,
    description: str,
    new_category: str,
    *,
    create_rule: bool = True,
) -> CategoryUpdateResult:
    """Re-categorize every stored transaction with this description.

    Matching is on the normalized description. Rows are marked ``manual`` so
    later re-scrapes do not overwrite them. With ``create_rule`` the rule is
    created, or re-pointed and re-activated when it already exists.
    ``transactions_updated`` is the number of matching rows, which callers
    must surface as-is.
    """

    norm = normalize_description(description)
    category = (new_category or "").strip()
    if not norm:
        raise CategoryUpdateError("description is required")
    if not category:
        raise CategoryUpdateError("newCategory is required")

    now = datetime.now(UTC)
    result = session.execute(
        update(FsTransaction)
        .where(FsTransaction.description_norm == norm)
        .values(
            category=category,
            category_source=CategorySource.MANUAL.value,
            rule_matched=None,
            categorized_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    updated = result.rowcount or 0

    rule_created = rule_updated = False
    if create_rule:
        rule = session.scalars(
            select(FsCategoryRule).where(FsCategoryRule.match_description == norm)
        ).one_or_none()
        if rule is None:
            session.add(FsCategoryRule(match_description=norm, category=category, is_active=True))
            rule_created = True
        else:
            rule.category = category
            rule.is_active = True
            rule.updated_at = now
            rule_updated = True
        session.flush()

    _logger.info(
        "categorize:manual_update description=%r category=%s updated=%d rule_created=%s",
        norm,
        category,
        updated,
        rule_created,
    )
    return CategoryUpdateResult(
        transactions_updated=updated,
        rule_created=rule_created,
        rule_updated=rule_updated,
        description=description,
        new_category=category,
    )


def merge_categories(session: Session, source_categories: Iterable[str], target: str) -> int:
    """Fold ``source_categories`` into ``target``.

    Re-labels stored transactions and rules, and records a mapping per source
    so future ingests land in ``target``. Returns the number of transactions
    re-labelled.
    """

    target = (target or "").strip()
    sources = sorted({s.strip() for s in source_categories if s and s.strip()} - {target})
    if not target:
        raise CategoryUpdateError("target category is required")
    if not sources:
        raise CategoryUpdateError("at least one source category different from the target is required")

    now = datetime.now(UTC)
    moved = (
        session.execute(
            update(FsTransaction)
            .where(FsTransaction.category.in_(sources))
            .values(category=target, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        or 0
    )
    session.execute(
        update(FsCategoryRule)
        .where(FsCategoryRule.category.in_(sources))
        .values(category=target, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    for source in sources:
        mapping = session.get(FsCategoryMapping, source)
        if mapping is None:
            session.add(FsCategoryMapping(source_category=source, target_category=target))
        else:
            mapping.target_category = target
    # A target that used to be mapped elsewhere would send rows back out.
    stale = session.get(FsCategoryMapping, target)
    if stale is not None:
        session.delete(stale)
    session.flush()
    _logger.info("categorize:merged sources=%s target=%s moved=%d", sources, target, moved)
    return moved


def apply_rules(session: Session) -> tuple[int, int]:
    """Apply every active rule to already-stored transactions.

    Manual corrections are left alone. Returns ``(rules_applied, transactions_updated)``.
    """

    now = datetime.now(UTC)
    rules = session.scalars(
        select(FsCategoryRule).where(FsCategoryRule.is_active.is_(True)).order_by(FsCategoryRule.id)
    ).all()
    total = 0
    for rule in rules:
        res = session.execute(
            update(FsTransaction)
            .where(
                FsTransaction.description_norm == rule.match_description,
                FsTransaction.category_source != CategorySource.MANUAL.value,
                func.coalesce(FsTransaction.category, "") != rule.category,
            )
            .values(
                category=rule.category,
                category_source=CategorySource.RULE.value,
                rule_matched=rule.match_description,
                categorized_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        total += res.rowcount or 0
    _logger.info("categorize:rules_applied rules=%d updated=%d", len(rules), total)
    return len(rules), total


__all__ = [
    "CategorizationEngine",
    "apply_rules",
    "merge_categories",
    "resolve_mapping",
    "update_category_by_description",
]
