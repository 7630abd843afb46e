from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import case, create_engine, func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ledgersync.adapters.db.models import (
    SOURCE_PLAID,
    Base,
    Category,
    CategoryMapping,
    CategoryProviderMapping,
    CategoryRow,
    ItemStatus,
    MerchantRule,
    MerchantRuleRow,
    PlaidItem,
    RuleConfidence,
    SyncState,
    Transaction,
)
from ledgersync.classify.rules import normalize_pattern, rule_pattern_for_merchant

# Provider-owned columns refreshed when an added transaction is re-delivered.
_PROVIDER_COLUMNS = (
    "item_id",
    "account_id",
    "posted_at",
    "amount_cents",
    "direction",
    "currency",
    "description",
    "merchant_name",
    "provider_category",
    "pending",
)
# Columns a "modified" delta may change. Category columns are never among them.
_MUTABLE_COLUMNS = (
    "amount_cents",
    "direction",
    "description",
    "merchant_name",
    "pending",
    "posted_at",
)
_CATEGORY_COLUMNS = ("category_id", "category_method", "reviewed")


def _rule_row(rule: MerchantRule) -> MerchantRuleRow:
    return MerchantRuleRow(
        rule_id=rule.rule_id,
        pattern=rule.pattern,
        category_id=rule.category_id,
        confidence=rule.confidence,
        match_count=rule.match_count,
    )


class DB:
    """Database service layer providing ORM models and helper methods."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///ledgersync.db")
        """
        self._url = url
        if url.startswith("sqlite") and ":memory:" in url:
            # One shared connection so worker threads see the same database.
            self._engine = create_engine(
                url,
                echo=False,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create all tables directly (tests and local development)."""
        Base.metadata.create_all(self._engine)

    def _dialect_insert(self) -> Any:
        dialect = self._engine.dialect.name
        if dialect == "sqlite":
            return sqlite.insert
        if dialect == "postgresql":
            return postgresql.insert
        raise NotImplementedError(f"Upsert is not supported for dialect {dialect!r}")

    # Transactions --------------------------------------------------------

    def upsert_transactions(self, rows: Sequence[Mapping[str, Any]]) -> int:
        """Insert or update synced transactions keyed on external_id.

        Re-delivery refreshes provider fields. Category columns are refreshed
        too unless a human categorized the existing row. A conflicting MANUAL
        row is left as it is.

        Args:
            rows: Transaction column dicts, all with the same keys

        Returns:
            Number of rows written
        """
        if not rows:
            return 0

        table = Transaction.__table__
        stmt = self._dialect_insert()(table).values([dict(row) for row in rows])
        excluded = stmt.excluded
        manually_set = table.c.category_method == "manual"

        set_: dict[str, Any] = {col: excluded[col] for col in _PROVIDER_COLUMNS}
        for col in _CATEGORY_COLUMNS:
            set_[col] = case((manually_set, table.c[col]), else_=excluded[col])
        set_["updated_at"] = func.current_timestamp()

        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.external_id],
            set_=set_,
            where=table.c.source == SOURCE_PLAID,
        )
        with self.session() as session:  # type: Session
            session.execute(stmt)
        return len(rows)

    def update_transactions(self, rows: Sequence[Mapping[str, Any]]) -> int:
        """Update mutable provider fields of synced transactions by external_id.

        Returns:
            Number of existing rows updated
        """
        if not rows:
            return 0

        updated = 0
        with self.session() as session:  # type: Session
            for row in rows:
                values = {col: row[col] for col in _MUTABLE_COLUMNS if col in row}
                values["updated_at"] = func.current_timestamp()
                result = session.execute(
                    update(Transaction)
                    .where(
                        Transaction.external_id == row["external_id"],
                        Transaction.source == SOURCE_PLAID,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                updated += result.rowcount  # type: ignore[attr-defined]
        return updated

    def delete_transactions_by_external_ids(self, external_ids: Sequence[str]) -> int:
        """Hard delete synced transactions by their external IDs.

        Manual transactions are never matched.

        Returns:
            Number of transactions deleted
        """
        if not external_ids:
            return 0

        with self.session() as session:  # type: Session
            result = (
                session.query(Transaction)
                .filter(
                    Transaction.external_id.in_(list(external_ids)),
                    Transaction.source == SOURCE_PLAID,
                )
                .delete(synchronize_session=False)
            )
            return result

    def get_transaction_by_external_id(self, external_id: str) -> Transaction | None:
        with self.session() as session:  # type: Session
            txn = (
                session.query(Transaction)
                .filter(Transaction.external_id == external_id)
                .first()
            )
            if txn:
                session.expunge(txn)
            return txn

    def recategorize_transaction(
        self,
        transaction_id: int,
        category_id: int,
    ) -> MerchantRuleRow | None:
        """Apply a manual category correction and promote a merchant rule.

        The transaction is marked reviewed with category_method="manual", so
        later provider re-deliveries keep the human's choice. When the
        transaction has a merchant, a user-confirmed rule derived from it is
        created or re-pointed at the new category.

        Returns:
            The promoted rule, or None when the transaction has no merchant text

        Raises:
            ValueError: If the transaction does not exist
        """
        with self.session() as session:  # type: Session
            txn = session.get(Transaction, transaction_id)
            if txn is None:
                raise ValueError(f"Transaction {transaction_id} not found")

            txn.category_id = category_id
            txn.category_method = "manual"
            txn.reviewed = True
            merchant = txn.merchant_name or txn.description

        if not merchant:
            return None
        pattern = rule_pattern_for_merchant(merchant)
        if not pattern:
            return None
        return self.save_merchant_rule(pattern, category_id, "user_confirmed")

    # Sync state ----------------------------------------------------------

    def link_item(
        self,
        *,
        item_id: str,
        institution_id: str | None = None,
        institution_name: str | None = None,
    ) -> SyncState:
        """Create the sync state for a newly linked item, or refresh its details.

        Relinking an existing item reactivates it but keeps its cursor.
        """
        with self.session() as session:  # type: Session
            item = session.get(PlaidItem, item_id)
            if item is None:
                item = PlaidItem(
                    item_id=item_id,
                    institution_id=institution_id,
                    institution_name=institution_name,
                    status="active",
                )
                session.add(item)
            else:
                item.institution_id = institution_id
                item.institution_name = institution_name
                item.status = "active"
                item.last_error = None
            session.flush()
            return SyncState(
                item_id=item.item_id,
                cursor=item.sync_cursor,
                last_synced_at=item.last_synced_at,
                status=item.status,
            )

    def get_sync_state(self, item_id: str) -> SyncState | None:
        with self.session() as session:  # type: Session
            item = session.get(PlaidItem, item_id)
            if item is None:
                return None
            return SyncState(
                item_id=item.item_id,
                cursor=item.sync_cursor,
                last_synced_at=item.last_synced_at,
                status=item.status,
            )

    def save_sync_state(
        self,
        item_id: str,
        *,
        cursor: str | None,
        last_synced_at: datetime,
        status: ItemStatus,
        last_error: str | None = None,
    ) -> None:
        """Persist the resumption cursor and run bookkeeping for an item.

        Raises:
            ValueError: If the item was never linked
        """
        with self.session() as session:  # type: Session
            item = session.get(PlaidItem, item_id)
            if item is None:
                raise ValueError(f"Plaid item {item_id} not found")
            item.sync_cursor = cursor
            item.last_synced_at = last_synced_at
            item.status = status
            item.last_error = last_error

    def mark_item_status(
        self,
        item_id: str,
        status: ItemStatus,
        *,
        error: str | None = None,
    ) -> bool:
        """Set an item's status without touching its cursor.

        Returns:
            True if the item exists
        """
        with self.session() as session:  # type: Session
            item = session.get(PlaidItem, item_id)
            if item is None:
                return False
            item.status = status
            item.last_error = error
            return True

    def list_plaid_items(
        self, *, include_disconnected: bool = False
    ) -> list[PlaidItem]:
        with self.session() as session:  # type: Session
            query = session.query(PlaidItem)
            if not include_disconnected:
                query = query.filter(PlaidItem.status != "disconnected")
            items = query.order_by(PlaidItem.item_id).all()
            for item in items:
                session.expunge(item)
            return items

    # Merchant rules ------------------------------------------------------

    def list_merchant_rules(self) -> list[MerchantRuleRow]:
        """Return all rules ranked by usage (most used first, then oldest)."""
        with self.session() as session:  # type: Session
            rules = (
                session.query(MerchantRule)
                .order_by(MerchantRule.match_count.desc(), MerchantRule.rule_id.asc())
                .all()
            )
            return [_rule_row(rule) for rule in rules]

    def save_merchant_rule(
        self,
        pattern: str,
        category_id: int,
        confidence: RuleConfidence = "user_confirmed",
    ) -> MerchantRuleRow:
        """Create a rule or re-point an existing rule with the same pattern.

        Raises:
            ValueError: If the pattern is blank
        """
        normalized = normalize_pattern(pattern)
        if not normalized:
            raise ValueError("merchant pattern must not be blank")

        with self.session() as session:  # type: Session
            rule = (
                session.query(MerchantRule)
                .filter(MerchantRule.pattern == normalized)
                .first()
            )
            if rule is None:
                rule = MerchantRule(
                    pattern=normalized,
                    category_id=category_id,
                    confidence=confidence,
                    match_count=0,
                )
                session.add(rule)
            else:
                rule.category_id = category_id
                rule.confidence = confidence
            session.flush()
            return _rule_row(rule)

    def increment_rule_usage(self, counts: Mapping[int, int]) -> None:
        """Add classification wins to each rule's match_count."""
        if not counts:
            return
        with self.session() as session:  # type: Session
            for rule_id, wins in counts.items():
                session.execute(
                    update(MerchantRule)
                    .where(MerchantRule.rule_id == rule_id)
                    .values(match_count=MerchantRule.match_count + wins)
                    .execution_options(synchronize_session=False)
                )

    # Categories ----------------------------------------------------------

    def get_category_id_by_key(self, key: str) -> int | None:
        with self.session() as session:  # type: Session
            category = session.query(Category).filter(Category.key == key).first()
            return category.category_id if category else None

    def fetch_categories(self) -> list[CategoryRow]:
        """Fetch all categories as CategoryRow TypedDicts."""
        with self.session() as session:  # type: Session
            categories = session.query(Category).all()

            id_to_key: dict[int, str] = {cat.category_id: cat.key for cat in categories}

            rows: list[CategoryRow] = []
            for cat in categories:
                parent_key = None
                if cat.parent_id is not None:
                    parent_key = id_to_key.get(cat.parent_id)

                rows.append(
                    CategoryRow(
                        category_id=cat.category_id,
                        parent_id=cat.parent_id,
                        key=cat.key,
                        name=cat.name,
                        description=cat.description,
                        parent_key=parent_key,
                    )
                )

            return rows

    def fetch_category_mappings(self) -> list[CategoryMapping]:
        """Return provider-code mappings grouped per category, by category id."""
        with self.session() as session:  # type: Session
            mappings = session.query(CategoryProviderMapping).all()
            grouped: dict[int, set[str]] = {}
            for mapping in mappings:
                grouped.setdefault(mapping.category_id, set()).add(
                    mapping.provider_code
                )
        return [
            CategoryMapping(category_id=category_id, provider_codes=frozenset(codes))
            for category_id, codes in sorted(grouped.items())
        ]

    def replace_taxonomy(
        self,
        rows: Sequence[CategoryRow],
        mappings: Mapping[str, int],
    ) -> None:
        """Replace categories and provider mappings with pre-built rows.

        Args:
            rows: Category rows with ids and parent ids already resolved
            mappings: Provider code -> category id
        """
        with self.session() as session:  # type: Session
            session.query(CategoryProviderMapping).delete()
            session.query(Category).delete()

            for row in rows:
                session.add(
                    Category(
                        category_id=row["category_id"],
                        parent_id=row["parent_id"],
                        key=row["key"],
                        name=row["name"],
                        description=row.get("description"),
                    )
                )
            session.flush()

            for code, category_id in mappings.items():
                session.add(
                    CategoryProviderMapping(provider_code=code, category_id=category_id)
                )
