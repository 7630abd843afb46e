"""Shared test fixtures."""

from __future__ import annotations

import pytest

from ledgersync.adapters.db.facade import DB
from ledgersync.taxonomy.core import CategoryNode, Taxonomy
from ledgersync.taxonomy.loader import seed_taxonomy


@pytest.fixture
def db() -> DB:
    """In-memory database with the schema created."""
    db = DB("sqlite:///:memory:")
    db.create_schema()
    return db


@pytest.fixture
def seeded_db(db: DB) -> DB:
    """In-memory database with a small two-level taxonomy.

    FOOD_AND_DRINK falls back to "food"; GENERAL_MERCHANDISE to "shopping".
    """
    taxonomy = Taxonomy.from_nodes(
        [
            CategoryNode("food", "Food", None, None, ("FOOD_AND_DRINK",)),
            CategoryNode("food.groceries", "Groceries", None, "food"),
            CategoryNode("food.restaurants", "Restaurants", None, "food"),
            CategoryNode("shopping", "Shopping", None, None, ("GENERAL_MERCHANDISE",)),
            CategoryNode("entertainment", "Entertainment", None, None),
        ]
    )
    seed_taxonomy(db, taxonomy)
    return db
