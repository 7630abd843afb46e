"""Taxonomy loader - moves taxonomy between YAML, memory, and the database.

Kept separate from Taxonomy so the core tree has no storage dependency.
"""

from __future__ import annotations

from pathlib import Path
from typing import TypedDict, cast

from loguru import logger
from yaml import safe_load

from ledgersync.adapters.db.facade import DB
from ledgersync.adapters.db.models import CategoryRow
from ledgersync.taxonomy.core import CategoryNode, Taxonomy


class RawCategoryRecord(TypedDict, total=False):
    key: str
    name: str
    description: str | None
    parent_key: str | None
    provider_codes: list[str]


class RawTaxonomyDoc(TypedDict, total=False):
    categories: list[RawCategoryRecord]


def _load_yaml(path: Path) -> RawTaxonomyDoc:
    if not path.exists():
        raise FileNotFoundError(f"taxonomy yaml not found at {path}")

    with path.open("r", encoding="utf-8") as handle:
        loaded: object = safe_load(handle)

    if loaded is None:
        return {"categories": []}

    if not isinstance(loaded, dict):
        raise ValueError("taxonomy yaml must be a mapping with a 'categories' key")

    return cast(RawTaxonomyDoc, loaded)


def _validate_record(record: object, *, position: int) -> CategoryNode:
    if not isinstance(record, dict):
        raise ValueError(f"category at position {position} must be a mapping")
    key = record.get("key")
    name = record.get("name")
    description = record.get("description")
    parent_key = record.get("parent_key")
    provider_codes = record.get("provider_codes") or []

    if not isinstance(key, str) or not key:
        raise ValueError(
            f"category at position {position} is missing a non-empty 'key'"
        )
    if not isinstance(name, str) or not name:
        raise ValueError(f"category '{key}' must define a non-empty 'name'")
    if description is not None and not isinstance(description, str):
        raise ValueError(f"category '{key}' has invalid 'description'")
    if parent_key is not None and not isinstance(parent_key, str):
        raise ValueError(f"category '{key}' has invalid 'parent_key'")
    if not isinstance(provider_codes, list) or not all(
        isinstance(code, str) and code for code in provider_codes
    ):
        raise ValueError(f"category '{key}' has invalid 'provider_codes'")

    return CategoryNode(
        key=key,
        name=name,
        description=description,
        parent_key=parent_key,
        provider_codes=tuple(code.strip().upper() for code in provider_codes),
    )


def load_taxonomy_yaml(path: Path) -> Taxonomy:
    """Load and validate a taxonomy YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the document or any category is malformed
    """
    raw = _load_yaml(path)
    records = raw.get("categories")
    if records is None:
        records = []
    if not isinstance(records, list):
        raise ValueError("'categories' must be a list")
    nodes = [
        _validate_record(record, position=index)
        for index, record in enumerate(records)
    ]
    return Taxonomy.from_nodes(nodes)


def seed_taxonomy(db: DB, taxonomy: Taxonomy) -> int:
    """Replace the database taxonomy and provider mappings.

    Returns:
        Number of categories written
    """
    rows: list[CategoryRow] = []
    ids: dict[str, int] = {}
    for category_id, node in enumerate(taxonomy.all_nodes(), start=1):
        ids[node.key] = category_id
        rows.append(
            CategoryRow(
                category_id=category_id,
                parent_id=ids[node.parent_key] if node.parent_key else None,
                key=node.key,
                name=node.name,
                description=node.description,
                parent_key=node.parent_key,
            )
        )
    mappings = {
        code: ids[key] for code, key in taxonomy.provider_code_index().items()
    }
    db.replace_taxonomy(rows, mappings)
    logger.bind(categories=len(rows), mappings=len(mappings)).info(
        "Seeded taxonomy: {} categories, {} provider mappings",
        len(rows),
        len(mappings),
    )
    return len(rows)


def load_taxonomy_from_db(db: DB) -> Taxonomy:
    """Load taxonomy, including provider mappings, from the database."""
    rows = db.fetch_categories()
    codes_by_id: dict[int, list[str]] = {
        mapping.category_id: sorted(mapping.provider_codes)
        for mapping in db.fetch_category_mappings()
    }
    nodes = [
        CategoryNode(
            key=str(row["key"]),
            name=str(row["name"]),
            description=row.get("description"),
            parent_key=row.get("parent_key"),
            provider_codes=tuple(codes_by_id.get(row["category_id"], [])),
        )
        for row in rows
    ]
    return Taxonomy.from_nodes(nodes)
