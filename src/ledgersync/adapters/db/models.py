from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Literal, TypedDict

from sqlalchemy import (
    TIMESTAMP,
    Boolean,
    Date,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

ItemStatus = Literal["active", "error", "disconnected"]
RuleConfidence = Literal["system_inferred", "user_confirmed"]
CategoryMethod = Literal["rule", "taxonomy", "manual"]

SOURCE_PLAID = "PLAID"
SOURCE_MANUAL = "MANUAL"


class Base(DeclarativeBase):
    pass


class Timestamped:
    """created_at/updated_at pair; ORM flushes refresh updated_at."""

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=func.current_timestamp()
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP,
        nullable=False,
        server_default=func.current_timestamp(),
        onupdate=func.current_timestamp(),
    )


class Category(Timestamped, Base):
    """Node of the category tree; keys are dotted paths like food.groceries."""

    __tablename__ = "categories"

    category_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    parent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("categories.category_id"), nullable=True
    )
    key: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    provider_mappings: Mapped[list[CategoryProviderMapping]] = relationship(
        "CategoryProviderMapping",
        back_populates="category",
        cascade="all, delete-orphan",
    )


class CategoryProviderMapping(Base):
    """Provider category code (e.g. Plaid PFC primary) mapped to a category."""

    __tablename__ = "category_provider_mappings"

    provider_code: Mapped[str] = mapped_column(String, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("categories.category_id", ondelete="CASCADE"),
        nullable=False,
    )

    category: Mapped[Category] = relationship(
        "Category", back_populates="provider_mappings"
    )


class MerchantRule(Timestamped, Base):
    """User-defined or promoted merchant pattern that assigns a category."""

    __tablename__ = "merchant_rules"

    rule_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pattern: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    category_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("categories.category_id"), nullable=False
    )
    confidence: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'user_confirmed'")
    )
    match_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )


class PlaidItem(Timestamped, Base):
    """Linked Plaid item together with its incremental sync state."""

    __tablename__ = "plaid_items"

    item_id: Mapped[str] = mapped_column(String, primary_key=True)
    institution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    sync_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'active'")
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Relationships
    transactions: Mapped[list[Transaction]] = relationship(
        "Transaction", back_populates="plaid_item"
    )


class Transaction(Timestamped, Base):
    """Canonical ledger row, shared by synced and manually entered transactions."""

    __tablename__ = "transactions"

    transaction_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    # NULL for manual entries; unique across all synced rows.
    external_id: Mapped[str | None] = mapped_column(
        String, unique=True, nullable=True
    )
    source: Mapped[str] = mapped_column(String, nullable=False)  # "PLAID" | "MANUAL"
    item_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("plaid_items.item_id"), nullable=True
    )
    account_id: Mapped[str] = mapped_column(String, nullable=False)
    posted_at: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    direction: Mapped[str] = mapped_column(String, nullable=False)  # debit | credit
    currency: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'USD'")
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    merchant_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_category: Mapped[str | None] = mapped_column(String, nullable=True)
    category_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("categories.category_id"), nullable=True
    )
    category_method: Mapped[str | None] = mapped_column(String, nullable=True)
    pending: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )
    reviewed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE")
    )

    # Relationships
    plaid_item: Mapped[PlaidItem | None] = relationship(
        "PlaidItem", back_populates="transactions"
    )
    category: Mapped[Category | None] = relationship("Category")


class CategoryRow(TypedDict):
    category_id: int
    parent_id: int | None
    key: str
    name: str
    description: str | None
    parent_key: str | None


@dataclass(frozen=True)
class SyncState:
    item_id: str
    cursor: str | None
    last_synced_at: datetime | None
    status: str


@dataclass(frozen=True)
class MerchantRuleRow:
    rule_id: int
    pattern: str
    category_id: int
    confidence: str
    match_count: int


@dataclass(frozen=True)
class CategoryMapping:
    category_id: int
    provider_codes: frozenset[str]
