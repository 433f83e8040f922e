"""
Permission store as seen by the Subscription Manager.

Two implementations of the same async interface:
  - DatabasePermissionStore: in-process, on the subscription store via the threadpool.
  - PushApiClient: the client-side view, over the HTTP API (httpx).
Both also act as the public-key provider.
"""
from __future__ import annotations

import logging
from typing import Callable, Protocol

import httpx
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from app.core.errors import AudienceUnavailable, PersistenceFailed, PushNotConfigured
from app.schemas import SubscriptionResponse
from app.services import subscription_store
from app.services.vapid import get_server_public_key

log = logging.getLogger("edupay.subscriptions")


class PermissionStore(Protocol):
    async def upsert_subscription(
        self,
        user_id: str,
        endpoint: str,
        keys: dict[str, str],
        school_id: str | None = None,
        user_agent: str | None = None,
    ) -> SubscriptionResponse: ...

    async def delete_subscription(self, user_id: str, endpoint: str) -> None: ...

    async def list_active_subscriptions(self, school_id: str | None = None) -> list[SubscriptionResponse]: ...

    async def get_server_public_key(self) -> str: ...


class DatabasePermissionStore:
    """Session work runs on the threadpool so the caller's event loop never blocks on the database."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _upsert(self, user_id, endpoint, keys, school_id, user_agent) -> SubscriptionResponse:
        with self.session_factory() as db:
            row = subscription_store.upsert_subscription(
                db,
                user_id,
                endpoint,
                keys.get("p256dh", ""),
                keys.get("auth", ""),
                school_id=school_id,
                user_agent=user_agent,
            )
            return SubscriptionResponse.from_row(row)

    def _delete(self, user_id, endpoint) -> None:
        with self.session_factory() as db:
            subscription_store.delete_subscription(db, user_id, endpoint)

    def _list(self, school_id) -> list[SubscriptionResponse]:
        with self.session_factory() as db:
            rows = subscription_store.list_active_subscriptions(db, school_id=school_id)
            return [SubscriptionResponse.from_row(r) for r in rows]

    async def upsert_subscription(self, user_id, endpoint, keys, school_id=None, user_agent=None):
        return await run_in_threadpool(self._upsert, user_id, endpoint, keys, school_id, user_agent)

    async def delete_subscription(self, user_id, endpoint):
        await run_in_threadpool(self._delete, user_id, endpoint)

    async def list_active_subscriptions(self, school_id=None):
        return await run_in_threadpool(self._list, school_id)

    async def get_server_public_key(self) -> str:
        return get_server_public_key()


class PushApiClient:
    """
    HTTP permission store. The subscriber is identified by the bearer token, so the
    user_id argument is informational; listing needs the admin secret.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        access_token: str | None = None,
        admin_secret: str | None = None,
    ):
        self.client = client
        self.access_token = access_token
        self.admin_secret = admin_secret

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"} if self.access_token else {}

    async def upsert_subscription(self, user_id, endpoint, keys, school_id=None, user_agent=None):
        body = {"endpoint": endpoint, "keys": keys, "school_id": school_id, "user_agent": user_agent}
        try:
            r = await self.client.post("/push/subscribe", json=body, headers=self._auth_headers())
            r.raise_for_status()
        except httpx.HTTPError as e:
            log.warning("Subscription save failed for user_id=%s: %s", user_id, e)
            raise PersistenceFailed("could not save subscription", cause=e) from e
        return SubscriptionResponse.model_validate(r.json())

    async def delete_subscription(self, user_id, endpoint):
        try:
            r = await self.client.post("/push/unsubscribe", json={"endpoint": endpoint}, headers=self._auth_headers())
            r.raise_for_status()
        except httpx.HTTPError as e:
            log.warning("Subscription delete failed for user_id=%s: %s", user_id, e)
            raise PersistenceFailed("could not delete subscription", cause=e) from e

    async def list_active_subscriptions(self, school_id=None):
        params = {"school_id": school_id} if school_id is not None else {}
        headers = {"X-Admin-Secret": self.admin_secret or ""}
        try:
            r = await self.client.get("/push/subscriptions", params=params, headers=headers)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise AudienceUnavailable("subscription listing failed", cause=e) from e
        return [SubscriptionResponse.model_validate(item) for item in r.json()]

    async def get_server_public_key(self) -> str:
        try:
            r = await self.client.get("/push/public-key")
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise PushNotConfigured("public key unavailable", cause=e) from e
        return r.json()["publicKey"]
