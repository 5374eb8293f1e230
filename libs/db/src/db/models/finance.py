from __future__ import annotations

import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    CHAR,
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
    true,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------
# Core: fs_transactions
# ---------------------------


class FsTransaction(Base):
    __tablename__ = "fs_transactions"

    # BigInteger on PostgreSQL; SQLite needs INTEGER for rowid autoincrement.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    vendor: Mapped[str] = mapped_column(String, nullable=False)
    account_number: Mapped[str | None] = mapped_column(String, nullable=True)
    credential_id: Mapped[str | None] = mapped_column(String, nullable=True)
    fingerprint_sha256: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    raw_record: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    processed_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    # Signed charged amount; expenses are negative.
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    charged_currency: Mapped[str | None] = mapped_column(CHAR(3), nullable=True)
    original_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    original_currency: Mapped[str | None] = mapped_column(CHAR(3), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    # Normalized description used for fingerprints, rules, the category cache
    # and pattern grouping. Computed in Python (see
    # ``finance_sync.persistence.normalize_description``) so SQLite and
    # PostgreSQL agree byte-for-byte.
    description_norm: Mapped[str] = mapped_column(Text, nullable=False)
    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'completed'")
    )
    installment_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    installment_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    category_source: Mapped[str] = mapped_column(
        String,
        nullable=False,
        server_default=text("'none'"),
    )
    rule_matched: Mapped[str | None] = mapped_column(Text, nullable=True)
    categorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("fingerprint_sha256", name="uq_fs_tx_fingerprint"),
        CheckConstraint(
            "category_source in ('rule','cache','scraper','manual','none')",
            name="ck_fs_tx_category_source",
        ),
        CheckConstraint(
            "installment_total IS NULL OR installment_total >= 0",
            name="ck_fs_tx_installment_total",
        ),
        Index("ix_fs_tx_vendor_date", "vendor", "date"),
        Index("ix_fs_tx_description_norm", "description_norm"),
    )


# ---------------------------
# Categorization: rules and mappings
# ---------------------------


class FsCategoryRule(Base):
    __tablename__ = "fs_category_rules"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    # Stored normalized; matching is exact equality against
    # ``FsTransaction.description_norm``.
    match_description: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    category: Mapped[str] = mapped_column(String, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=true())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class FsCategoryMapping(Base):
    __tablename__ = "fs_category_mappings"

    source_category: Mapped[str] = mapped_column(String, primary_key=True)
    target_category: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


# ---------------------------
# Pattern detection: exclusions
# ---------------------------


class FsRecurringExclusion(Base):
    __tablename__ = "fs_recurring_exclusions"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    name_norm: Mapped[str] = mapped_column(Text, nullable=False)
    # Empty string stands for "no account" so the unique constraint holds.
    account_number: Mapped[str] = mapped_column(String, nullable=False, server_default=text("''"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("name_norm", "account_number", name="uq_fs_exclusion_name_account"),
    )


# ---------------------------
# Audit: fs_sync_events
# ---------------------------


class FsSyncEvent(Base):
    __tablename__ = "fs_sync_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    credential_id: Mapped[str | None] = mapped_column(String, nullable=True)
    vendor: Mapped[str] = mapped_column(String, nullable=False)
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'started'"))
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    report_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status in ('started','success','failed','aborted')",
            name="ck_fs_sync_events_status",
        ),
    )


__all__ = [
    "Base",
    "FsCategoryMapping",
    "FsCategoryRule",
    "FsRecurringExclusion",
    "FsSyncEvent",
    "FsTransaction",
]
