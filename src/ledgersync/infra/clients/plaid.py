from __future__ import annotations

import json
import os
from typing import Any, Literal, Self, TypedDict, cast
import urllib.error
import urllib.request

from pydantic import BaseModel, Field, ValidationError

from ledgersync.models.transaction import RemovedTransaction, SyncPage, Transaction

PlaidEnv = Literal["sandbox", "development", "production"]

PLAID_HOSTS: dict[str, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

SYNC_ENDPOINT = "/transactions/sync"


class PlaidClientError(Exception):
    """Raised for any failed or unreadable call to the Plaid API."""


class ItemInfo(TypedDict):
    item_id: str
    institution_id: str | None
    institution_name: str | None


class _PlaidPayload(BaseModel):
    @classmethod
    def from_payload(cls, payload: Any) -> Self:
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise PlaidClientError(f"{cls.__name__} did not validate: {e}") from e


class _Category(_PlaidPayload):
    primary: str
    detailed: str = ""
    confidence_level: str = ""


class _SyncedTransaction(_PlaidPayload):
    transaction_id: str
    account_id: str
    amount: float
    date: str
    name: str
    iso_currency_code: str | None = None
    merchant_name: str | None = None
    pending: bool = False
    personal_finance_category: _Category | None = None


class _RemovedMarker(_PlaidPayload):
    transaction_id: str


class SyncResponse(_PlaidPayload):
    added: list[_SyncedTransaction] = Field(default_factory=list)
    modified: list[_SyncedTransaction] = Field(default_factory=list)
    removed: list[_RemovedMarker] = Field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False

    def page(self, request_cursor: str | None) -> SyncPage:
        # Extra keys Plaid sends (payment_channel, request_id, ...) are dropped
        # by the model, so a dump matches the Transaction shape exactly.
        def dump(txns: list[_SyncedTransaction]) -> list[Transaction]:
            return [cast(Transaction, t.model_dump()) for t in txns]

        removed: list[RemovedTransaction] = [
            {"transaction_id": marker.transaction_id} for marker in self.removed
        ]
        return {
            "added": dump(self.added),
            "modified": dump(self.modified),
            "removed": removed,
            "next_cursor": self.next_cursor or request_cursor or "",
            "has_more": self.has_more,
        }


class _Item(_PlaidPayload):
    item_id: str
    institution_id: str | None = None


class _ItemEnvelope(_PlaidPayload):
    item: _Item


class _Institution(_PlaidPayload):
    name: str | None = None


class _InstitutionEnvelope(_PlaidPayload):
    institution: _Institution | None = None


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise PlaidClientError(f"Missing required environment variable: {name}")
    return value


class PlaidClient:
    """Blocking client for the handful of Plaid endpoints the sync needs.

    Every call is a single HTTPS POST with the client credentials merged into
    the JSON body. Callers that must not block the event loop wrap calls in
    ``asyncio.to_thread``.
    """

    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        env: PlaidEnv = "sandbox",
        timeout_seconds: float = 30.0,
    ) -> None:
        if env not in PLAID_HOSTS:
            raise PlaidClientError(f"Invalid PLAID_ENV={env!r}")
        self.env = env
        self._host = PLAID_HOSTS[env]
        self._credentials = {"client_id": client_id, "secret": secret}
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_env(cls, *, timeout_seconds: float = 30.0) -> PlaidClient:
        """Build a client from PLAID_ENV, PLAID_CLIENT_ID and PLAID_<ENV>_SECRET.

        PLAID_ENV defaults to sandbox.
        """
        env = os.getenv("PLAID_ENV", "sandbox").lower()
        if env not in PLAID_HOSTS:
            raise PlaidClientError(
                f"Invalid PLAID_ENV={env!r}; use one of {', '.join(PLAID_HOSTS)}"
            )
        return cls(
            client_id=_required_env("PLAID_CLIENT_ID"),
            secret=_required_env(f"PLAID_{env.upper()}_SECRET"),
            env=cast(PlaidEnv, env),
            timeout_seconds=timeout_seconds,
        )

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        request = urllib.request.Request(  # noqa: S310
            self._host + path,
            data=json.dumps({**self._credentials, **payload}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(  # noqa: S310
                request, timeout=self._timeout_seconds
            ) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as e:  # pragma: no cover - network-dependent
            detail = e.read().decode("utf-8", "ignore")
            raise PlaidClientError(f"{path} returned HTTP {e.code}: {detail}") from e
        except urllib.error.URLError as e:  # pragma: no cover - network-dependent
            raise PlaidClientError(f"{path} unreachable: {e.reason}") from e
        except TimeoutError as e:  # pragma: no cover - network-dependent
            raise PlaidClientError(f"{path} timed out") from e

        try:
            return cast(dict[str, Any], json.loads(raw))
        except json.JSONDecodeError as e:
            raise PlaidClientError(f"{path} returned invalid JSON: {raw!r}") from e

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 500,
    ) -> SyncPage:
        """Fetch one page of changes after ``cursor``.

        The cursor is opaque and sent back untouched. A response without
        next_cursor keeps the request cursor so the caller never loses its
        place.
        """
        payload: dict[str, Any] = {"access_token": access_token, "count": count}
        if cursor:
            payload["cursor"] = cursor
        response = SyncResponse.from_payload(self._post(SYNC_ENDPOINT, payload))
        return response.page(cursor)

    def get_item_info(self, access_token: str) -> ItemInfo:
        item = _ItemEnvelope.from_payload(
            self._post("/item/get", {"access_token": access_token})
        ).item

        institution_name: str | None = None
        if item.institution_id:
            envelope = _InstitutionEnvelope.from_payload(
                self._post(
                    "/institutions/get_by_id",
                    {"institution_id": item.institution_id, "country_codes": ["US"]},
                )
            )
            if envelope.institution is not None:
                institution_name = envelope.institution.name

        return {
            "item_id": item.item_id,
            "institution_id": item.institution_id,
            "institution_name": institution_name,
        }
