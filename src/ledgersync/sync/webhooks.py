"""Plaid webhook dispatch.

TRANSACTIONS webhooks trigger an incremental sync for the item. Item error
webhooks mark the item so the UI can prompt a relink. Everything else is
acknowledged and ignored.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any

from loguru import logger

from ledgersync.adapters.db.facade import DB
from ledgersync.sync.orchestrator import SyncOrchestrator

SYNC_WEBHOOK_CODES = frozenset(
    {
        "SYNC_UPDATES_AVAILABLE",
        "INITIAL_UPDATE",
        "HISTORICAL_UPDATE",
        "DEFAULT_UPDATE",
        "TRANSACTIONS_REMOVED",
    }
)
ITEM_ERROR_WEBHOOKS = frozenset({("ITEM", "ERROR"), ("TRANSACTIONS", "ITEM_ERROR")})


async def handle_webhook(
    orchestrator: SyncOrchestrator,
    db: DB,
    payload: Mapping[str, Any],
) -> dict[str, Any]:
    """Route one webhook payload and return a JSON-serializable summary."""
    webhook_type = payload.get("webhook_type")
    webhook_code = payload.get("webhook_code")
    item_id = payload.get("item_id")
    log = logger.bind(webhook_type=webhook_type, webhook_code=webhook_code)

    if webhook_type == "TRANSACTIONS" and webhook_code in SYNC_WEBHOOK_CODES:
        if not item_id or await asyncio.to_thread(db.get_sync_state, item_id) is None:
            log.warning("Webhook for unknown item {}", item_id)
            return {"received": True, "status": "unknown_item", "item_id": item_id}
        log.info("Webhook {} triggering sync for item {}", webhook_code, item_id)
        result = await orchestrator.run(item_id)
        return {"received": True, "status": "synced", "sync": result.to_dict()}

    if (webhook_type, webhook_code) in ITEM_ERROR_WEBHOOKS:
        error = payload.get("error") or {}
        message = error.get("error_message") if isinstance(error, dict) else None
        if not item_id or not await asyncio.to_thread(
            db.mark_item_status, item_id, "error", error=message
        ):
            log.warning("Webhook for unknown item {}", item_id)
            return {"received": True, "status": "unknown_item", "item_id": item_id}
        log.warning("Item {} reported an error: {}", item_id, message)
        return {"received": True, "status": "item_error", "item_id": item_id}

    log.debug("Ignoring webhook {}/{}", webhook_type, webhook_code)
    return {"received": True, "status": "ignored"}
