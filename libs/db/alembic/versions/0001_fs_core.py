# ruff: noqa: I001
"""Sync core tables: transactions, category rules/mappings, exclusions, audit.

Revision ID: 0001_fs_core
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_fs_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _pk() -> sa.Column:
    return sa.Column(
        "id",
        sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )


def _ts(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "fs_transactions",
        _pk(),
        sa.Column("vendor", sa.String(), nullable=False),
        sa.Column("account_number", sa.String(), nullable=True),
        sa.Column("credential_id", sa.String(), nullable=True),
        sa.Column("fingerprint_sha256", sa.CHAR(64), nullable=False),
        sa.Column("raw_record", sa.JSON(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("processed_date", sa.Date(), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("charged_currency", sa.CHAR(3), nullable=True),
        sa.Column("original_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("original_currency", sa.CHAR(3), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("description_norm", sa.Text(), nullable=False),
        sa.Column("memo", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'completed'")),
        sa.Column("installment_number", sa.Integer(), nullable=True),
        sa.Column("installment_total", sa.Integer(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column(
            "category_source", sa.String(), nullable=False, server_default=sa.text("'none'")
        ),
        sa.Column("rule_matched", sa.Text(), nullable=True),
        sa.Column("categorized_at", sa.DateTime(timezone=True), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("fingerprint_sha256", name="uq_fs_tx_fingerprint"),
        sa.CheckConstraint(
            "category_source in ('rule','cache','scraper','manual','none')",
            name="ck_fs_tx_category_source",
        ),
        sa.CheckConstraint(
            "installment_total IS NULL OR installment_total >= 0",
            name="ck_fs_tx_installment_total",
        ),
    )
    op.create_index("ix_fs_tx_vendor_date", "fs_transactions", ["vendor", "date"])
    op.create_index("ix_fs_tx_description_norm", "fs_transactions", ["description_norm"])

    op.create_table(
        "fs_category_rules",
        _pk(),
        sa.Column("match_description", sa.Text(), nullable=False, unique=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at"),
        _ts("updated_at"),
    )

    op.create_table(
        "fs_category_mappings",
        sa.Column("source_category", sa.String(), primary_key=True),
        sa.Column("target_category", sa.String(), nullable=False),
        _ts("created_at"),
    )

    op.create_table(
        "fs_recurring_exclusions",
        _pk(),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("name_norm", sa.Text(), nullable=False),
        sa.Column("account_number", sa.String(), nullable=False, server_default=sa.text("''")),
        _ts("created_at"),
        sa.UniqueConstraint("name_norm", "account_number", name="uq_fs_exclusion_name_account"),
    )

    op.create_table(
        "fs_sync_events",
        _pk(),
        sa.Column("credential_id", sa.String(), nullable=True),
        sa.Column("vendor", sa.String(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'started'")),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("report_json", sa.JSON(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint(
            "status in ('started','success','failed','aborted')",
            name="ck_fs_sync_events_status",
        ),
    )


def downgrade() -> None:
    op.drop_table("fs_sync_events")
    op.drop_table("fs_recurring_exclusions")
    op.drop_table("fs_category_mappings")
    op.drop_table("fs_category_rules")
    op.drop_index("ix_fs_tx_description_norm", table_name="fs_transactions")
    op.drop_index("ix_fs_tx_vendor_date", table_name="fs_transactions")
    op.drop_table("fs_transactions")
