"""Initial ledger schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18

Creates the ledger tables:
- categories / category_provider_mappings: two-level taxonomy and the
  provider category codes each category absorbs
- merchant_rules: ranked merchant patterns used by the classifier
- plaid_items: linked items with their sync cursor and run bookkeeping
- transactions: canonical ledger rows keyed on external_id
"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.TIMESTAMP(),
            nullable=False,
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(),
            nullable=False,
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
        ),
    ]


def upgrade() -> None:
    """Create the ledger tables."""

    op.create_table(
        "categories",
        sa.Column("category_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["parent_id"], ["categories.category_id"]),
        sa.PrimaryKeyConstraint("category_id"),
        sa.UniqueConstraint("key"),
    )

    op.create_table(
        "category_provider_mappings",
        sa.Column("provider_code", sa.String(), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(
            ["category_id"], ["categories.category_id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("provider_code"),
    )

    op.create_table(
        "merchant_rules",
        sa.Column("rule_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("pattern", sa.String(), nullable=False),
        sa.Column("category_id", sa.Integer(), nullable=False),
        sa.Column(
            "confidence",
            sa.String(),
            nullable=False,
            server_default=sa.text("'user_confirmed'"),
        ),
        sa.Column(
            "match_count", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(["category_id"], ["categories.category_id"]),
        sa.PrimaryKeyConstraint("rule_id"),
        sa.UniqueConstraint("pattern"),
    )
    op.create_index(
        "idx_merchant_rules_match_count", "merchant_rules", ["match_count"]
    )

    op.create_table(
        "plaid_items",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("institution_id", sa.String(), nullable=True),
        sa.Column("institution_name", sa.String(), nullable=True),
        sa.Column("sync_cursor", sa.Text(), nullable=True),
        sa.Column("last_synced_at", sa.TIMESTAMP(), nullable=True),
        sa.Column(
            "status", sa.String(), nullable=False, server_default=sa.text("'active'")
        ),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("item_id"),
    )

    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("external_id", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("item_id", sa.String(), nullable=True),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("posted_at", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("direction", sa.String(), nullable=False),
        sa.Column(
            "currency", sa.String(), nullable=False, server_default=sa.text("'USD'")
        ),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("merchant_name", sa.Text(), nullable=True),
        sa.Column("provider_category", sa.String(), nullable=True),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("category_method", sa.String(), nullable=True),
        sa.Column(
            "pending", sa.Boolean(), nullable=False, server_default=sa.text("(FALSE)")
        ),
        sa.Column(
            "reviewed", sa.Boolean(), nullable=False, server_default=sa.text("(FALSE)")
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(["item_id"], ["plaid_items.item_id"]),
        sa.ForeignKeyConstraint(["category_id"], ["categories.category_id"]),
        sa.PrimaryKeyConstraint("transaction_id"),
        sa.UniqueConstraint("external_id"),
    )
    op.create_index("idx_transactions_posted", "transactions", ["posted_at"])
    op.create_index("idx_transactions_item", "transactions", ["item_id"])
    op.create_index("idx_transactions_category", "transactions", ["category_id"])


def downgrade() -> None:
    """Drop the ledger tables."""
    op.drop_index("idx_transactions_category", table_name="transactions")
    op.drop_index("idx_transactions_item", table_name="transactions")
    op.drop_index("idx_transactions_posted", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("plaid_items")
    op.drop_index("idx_merchant_rules_match_count", table_name="merchant_rules")
    op.drop_table("merchant_rules")
    op.drop_table("category_provider_mappings")
    op.drop_table("categories")
