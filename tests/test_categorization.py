from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest
from db.client import session_scope
from db.models.finance import FsCategoryMapping, FsCategoryRule, FsTransaction
from finance_sync.categorization import (
    CategorizationEngine,
    apply_rules,
    merge_categories,
    resolve_mapping,
    update_category_by_description,
)
from finance_sync.errors import CategoryUpdateError
from finance_sync.models import CategorySource
from sqlalchemy import select

from tests.helpers.db import insert_transaction


def _categories(db_url: str, description_norm: str) -> list[tuple[str | None, str]]:
    with session_scope(database_url=db_url) as s:
        rows = s.scalars(
            select(FsTransaction)
            .where(FsTransaction.description_norm == description_norm)
            .order_by(FsTransaction.id)
        ).all()
        return [(r.category, r.category_source) for r in rows]


def test_rule_beats_cache_and_scraper(db_url: str) -> None:
    insert_transaction(
        database_url=db_url, txn_date=date(2024, 1, 2), amount="-20", description="Netflix", category="Fun"
    )
    with session_scope(database_url=db_url) as s:
        s.add(FsCategoryRule(match_description="netflix", category="Streaming", is_active=True))

    with session_scope(database_url=db_url) as s:
        decision = CategorizationEngine.load(s).categorize(s, "NETFLIX", "Entertainment")

    assert decision.category == "Streaming"
    assert decision.source is CategorySource.RULE
    assert decision.rule_matched == "netflix"


def test_cache_uses_most_recent_other_transaction(db_url: str) -> None:
    now = datetime.now(UTC)
    insert_transaction(
        database_url=db_url,
        txn_date=date(2024, 1, 2),
        amount="-20",
        description="Wolt",
        category="Restaurants",
        categorized_at=now - timedelta(days=3),
    )
    insert_transaction(
        database_url=db_url,
        txn_date=date(2024, 1, 9),
        amount="-25",
        description="wolt",
        category="Delivery",
        categorized_at=now,
    )

    with session_scope(database_url=db_url) as s:
        engine = CategorizationEngine.load(s)
        decision = engine.categorize(s, "Wolt!", "Food")
    assert (decision.category, decision.source) == ("Delivery", CategorySource.CACHE)


def test_cache_skips_the_transaction_being_categorized(db_url: str) -> None:
    insert_transaction(
        database_url=db_url, txn_date=date(2024, 1, 2), amount="-20", description="Cafe Joe", category="Coffee"
    )
    with session_scope(database_url=db_url) as s:
        fp = s.scalars(select(FsTransaction.fingerprint_sha256)).one()
        engine = CategorizationEngine.load(s)
        decision = engine.categorize(s, "Cafe Joe", None, exclude_fingerprint=fp)
    assert decision.category is None
    assert decision.source is CategorySource.NONE


def test_scraper_category_and_na_fallbacks(db_url: str) -> None:
    with session_scope(database_url=db_url) as s:
        engine = CategorizationEngine.load(s)
        assert engine.categorize(s, "New shop", "Shopping").source is CategorySource.SCRAPER
        assert engine.categorize(s, "New shop", "N/A").category is None
        assert engine.categorize(s, "New shop", "   ").category is None


def test_mappings_are_followed_and_loops_stop() -> None:
    mappings = {"Food": "Groceries", "Groceries": "Supermarket", "A": "B", "B": "A"}
    assert resolve_mapping("Food", mappings) == "Supermarket"
    assert resolve_mapping("Other", mappings) == "Other"
    assert resolve_mapping("A", mappings) in {"A", "B"}

    engine = CategorizationEngine(rules={"wolt": "Food"}, mappings=mappings)
    assert engine.apply_mappings("Food") == "Supermarket"


def test_remember_refreshes_cached_lookup() -> None:
    engine = CategorizationEngine()
    engine._cache["aroma"] = [("Coffee", "fp-1")]
    engine.remember("aroma", "Cafe", "fp-2")
    assert engine._cache["aroma"][0] == ("Cafe", "fp-2")
    engine.remember("unseen", "X", "fp-3")
    assert "unseen" not in engine._cache


def test_manual_update_reports_exact_count_and_creates_rule(db_url: str) -> None:
    for day in (1, 2, 3):
        insert_transaction(
            database_url=db_url,
            txn_date=date(2024, 1, day),
            amount=f"-{day}0",
            description="Super-Pharm",
            category="Health",
            category_source="scraper",
        )
    insert_transaction(
        database_url=db_url, txn_date=date(2024, 1, 4), amount="-5", description="Other", category="Health"
    )

    with session_scope(database_url=db_url) as s:
        result = update_category_by_description(s, "SUPER-PHARM", "Pharmacy")

    assert result.transactions_updated == 3
    assert result.rule_created is True
    assert _categories(db_url, "superpharm") == [("Pharmacy", "manual")] * 3
    assert _categories(db_url, "other") == [("Health", "none")]

    with session_scope(database_url=db_url) as s:
        decision = CategorizationEngine.load(s).categorize(s, "Super-Pharm", "Health")
    assert (decision.category, decision.source) == ("Pharmacy", CategorySource.RULE)


def test_manual_update_repoints_existing_rule(db_url: str) -> None:
    with session_scope(database_url=db_url) as s:
        s.add(FsCategoryRule(match_description="wolt", category="Food", is_active=False))

    with session_scope(database_url=db_url) as s:
        result = update_category_by_description(s, "Wolt", "Delivery")
        assert result.transactions_updated == 0
        assert result.rule_updated is True
        rule = s.scalars(select(FsCategoryRule)).one()
        assert (rule.category, rule.is_active) == ("Delivery", True)


def test_manual_update_rejects_blank_input(db_url: str) -> None:
    with session_scope(database_url=db_url) as s:
        with pytest.raises(CategoryUpdateError):
            update_category_by_description(s, "  ", "Food")
        with pytest.raises(CategoryUpdateError):
            update_category_by_description(s, "Wolt", "")


def test_merge_categories_moves_rows_rules_and_future_ingests(db_url: str) -> None:
    insert_transaction(
        database_url=db_url, txn_date=date(2024, 1, 1), amount="-10", description="A", category="Dining"
    )
    insert_transaction(
        database_url=db_url, txn_date=date(2024, 1, 2), amount="-10", description="B", category="Restaurants"
    )
    with session_scope(database_url=db_url) as s:
        s.add(FsCategoryRule(match_description="b", category="Restaurants", is_active=True))
        s.add(FsCategoryMapping(source_category="Food", target_category="Dining"))

    with session_scope(database_url=db_url) as s:
        moved = merge_categories(s, ["Dining", "Restaurants"], "Food")

    assert moved == 2
    with session_scope(database_url=db_url) as s:
        assert set(s.scalars(select(FsTransaction.category))) == {"Food"}
        assert s.scalars(select(FsCategoryRule.category)).one() == "Food"
        # The old Food -> Dining mapping would have sent rows back out.
        assert s.get(FsCategoryMapping, "Food") is None
        engine = CategorizationEngine.load(s)
        assert engine.categorize(s, "brand new", "Dining").category == "Food"

    with session_scope(database_url=db_url) as s:
        with pytest.raises(CategoryUpdateError):
            merge_categories(s, ["Food"], "Food")


def test_apply_rules_skips_manual_rows(db_url: str) -> None:
    insert_transaction(
        database_url=db_url, txn_date=date(2024, 1, 1), amount="-10", description="Gym", category="Other"
    )
    insert_transaction(
        database_url=db_url,
        txn_date=date(2024, 1, 2),
        amount="-10",
        description="Gym",
        category="Mine",
        category_source="manual",
    )
    with session_scope(database_url=db_url) as s:
        s.add(FsCategoryRule(match_description="gym", category="Fitness", is_active=True))

    with session_scope(database_url=db_url) as s:
        rules, updated = apply_rules(s)

    assert (rules, updated) == (1, 1)
    assert _categories(db_url, "gym") == [("Fitness", "rule"), ("Mine", "manual")]
