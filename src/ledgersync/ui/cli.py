from __future__ import annotations

import asyncio
from dataclasses import asdict
import json
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
import typer

from ledgersync.adapters.db.facade import DB
from ledgersync.core.config import SyncSettings, load_sync_settings_from_env
from ledgersync.infra.clients.plaid import PlaidClient
from ledgersync.infra.secrets import EnvSecretStore
from ledgersync.sync.orchestrator import (
    SyncOrchestrator,
    SyncRunResult,
    SyncStateNotFoundError,
)
from ledgersync.taxonomy.loader import load_taxonomy_yaml, seed_taxonomy

# Load environment variables from .env
load_dotenv()

DEFAULT_TAXONOMY_PATH = Path("configs/taxonomy.yaml")

app = typer.Typer(
    help="ledgersync: incremental Plaid sync and transaction classification.",
    no_args_is_help=True,
)

rules_app = typer.Typer(help="Manage merchant classification rules.")
app.add_typer(rules_app, name="rules")


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _open_db(settings: SyncSettings) -> DB:
    return DB(settings.database_url)


def _build_orchestrator(settings: SyncSettings, db: DB) -> SyncOrchestrator:
    client = PlaidClient.from_env(timeout_seconds=settings.request_timeout_seconds)
    return SyncOrchestrator(client, db, EnvSecretStore(), settings)


def _category_id_or_exit(db: DB, category_key: str) -> int:
    category_id = db.get_category_id_by_key(category_key)
    if category_id is None:
        typer.echo(f"Unknown category key: {category_key}", err=True)
        raise typer.Exit(code=2)
    return category_id


def _exit_on_failure(results: list[SyncRunResult]) -> None:
    if any(result.status == "failed" for result in results):
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db_cmd() -> None:
    """Create the ledger tables in the configured database."""
    settings = load_sync_settings_from_env()
    _open_db(settings).create_schema()
    typer.echo(f"Initialized schema at {settings.database_url}")


@app.command("seed-taxonomy")
def seed_taxonomy_cmd(
    path: Path = typer.Argument(  # noqa: B008
        DEFAULT_TAXONOMY_PATH, help="Taxonomy YAML file"
    ),
) -> None:
    """Replace categories and provider-code mappings from a YAML file."""
    settings = load_sync_settings_from_env()
    taxonomy = load_taxonomy_yaml(path)
    count = seed_taxonomy(_open_db(settings), taxonomy)
    typer.echo(f"Seeded {count} categories from {path}")


@app.command("link")
def link_cmd(
    item_id: str = typer.Argument(..., help="Plaid item ID"),
    institution_id: str | None = typer.Option(None, help="Plaid institution ID"),
    institution_name: str | None = typer.Option(None, help="Institution name"),
    lookup: bool = typer.Option(
        False, "--lookup", help="Resolve institution details from Plaid"
    ),
) -> None:
    """Register a linked item so it can be synced.

    The item's access token must already be available as
    PLAID_ACCESS_TOKEN_<ITEM_ID>.
    """
    settings = load_sync_settings_from_env()
    if lookup:
        client = PlaidClient.from_env(timeout_seconds=settings.request_timeout_seconds)
        info = client.get_item_info(EnvSecretStore().get_access_token(item_id))
        institution_id = institution_id or info["institution_id"]
        institution_name = institution_name or info["institution_name"]
    state = _open_db(settings).link_item(
        item_id=item_id,
        institution_id=institution_id,
        institution_name=institution_name,
    )
    _echo_json(asdict(state))


@app.command("sync")
def sync_cmd(item_id: str = typer.Argument(..., help="Plaid item ID")) -> None:
    """Run one incremental sync for an item."""
    settings = load_sync_settings_from_env()
    db = _open_db(settings)
    try:
        result = asyncio.run(_build_orchestrator(settings, db).run(item_id))
    except SyncStateNotFoundError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2) from e
    _echo_json(result.to_dict())
    _exit_on_failure([result])


@app.command("sync-all")
def sync_all_cmd() -> None:
    """Sync every linked item concurrently."""
    settings = load_sync_settings_from_env()
    db = _open_db(settings)
    results = asyncio.run(_build_orchestrator(settings, db).run_all())
    _echo_json([result.to_dict() for result in results])
    _exit_on_failure(results)


@app.command("recategorize")
def recategorize_cmd(
    transaction_id: int = typer.Argument(..., help="Local transaction ID"),
    category_key: str = typer.Argument(..., help="Category key, e.g. food.groceries"),
) -> None:
    """Manually set a transaction's category and learn a merchant rule."""
    settings = load_sync_settings_from_env()
    db = _open_db(settings)
    category_id = _category_id_or_exit(db, category_key)
    try:
        rule = db.recategorize_transaction(transaction_id, category_id)
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2) from e
    _echo_json(
        {
            "transaction_id": transaction_id,
            "category_id": category_id,
            "promoted_rule": asdict(rule) if rule else None,
        }
    )


@rules_app.command("list")
def rules_list_cmd() -> None:
    """List merchant rules in evaluation order."""
    settings = load_sync_settings_from_env()
    rules = _open_db(settings).list_merchant_rules()
    _echo_json([asdict(rule) for rule in rules])


@rules_app.command("add")
def rules_add_cmd(
    pattern: str = typer.Argument(..., help="Pattern, e.g. %MART%, TARGET%, NETFLIX"),
    category_key: str = typer.Argument(..., help="Category key, e.g. food.groceries"),
) -> None:
    """Create or re-point a user-confirmed merchant rule."""
    settings = load_sync_settings_from_env()
    db = _open_db(settings)
    category_id = _category_id_or_exit(db, category_key)
    try:
        rule = db.save_merchant_rule(pattern, category_id, "user_confirmed")
    except ValueError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=2) from e
    _echo_json(asdict(rule))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
