"""
Client-side subscription lifecycle.

    unsubscribed -> subscribing -> subscribed -> unsubscribing -> unsubscribed
                         +-> error (PermissionDenied | Unsupported | RegistrationFailed | PersistenceFailed)

Single flight: a toggle that arrives while subscribing/unsubscribing is ignored, not
queued. Errors never propagate out of the manager; they are exposed as `state`/`error`
for the UI. The permission store is the source of truth for fan-out, so a local
registration that could not be persisted is rolled back.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Awaitable, Callable

from app.core.errors import PermissionDenied, PersistenceFailed, PushError, RegistrationFailed, Unsupported
from app.services.capability import PermissionState, PushRuntime, check_support, register, request_permission
from app.services.permission_store import PermissionStore

log = logging.getLogger("edupay.subscriptions")


class SubscriptionState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBING = "unsubscribing"
    ERROR = "error"


BUSY_STATES = (SubscriptionState.SUBSCRIBING, SubscriptionState.UNSUBSCRIBING)


class SubscriptionManager:
    def __init__(
        self,
        runtime: PushRuntime,
        store: PermissionStore,
        user_id: str,
        school_id: str | None = None,
        key_provider: Callable[[], Awaitable[str]] | None = None,
    ):
        self.runtime = runtime
        self.store = store
        self.user_id = user_id
        self.school_id = school_id
        self.key_provider = key_provider or store.get_server_public_key
        self.state = SubscriptionState.UNSUBSCRIBED
        self.error: PushError | None = None
        self.endpoint: str | None = None

    @property
    def permission(self) -> PermissionState:
        return check_support(self.runtime)

    @property
    def is_supported(self) -> bool:
        return self.permission != PermissionState.UNSUPPORTED

    @property
    def is_subscribed(self) -> bool:
        return self.state == SubscriptionState.SUBSCRIBED

    @property
    def is_loading(self) -> bool:
        return self.state in BUSY_STATES

    async def refresh(self) -> SubscriptionState:
        """Start-up sync: adopt the runtime's registration and re-assert it in the store."""
        if self.is_loading:
            return self.state
        if not self.is_supported:
            return self._fail(Unsupported("push not supported in this runtime"))
        # Held until every exit below settles the state, so toggles are rejected meanwhile
        self.state = SubscriptionState.SUBSCRIBING
        registration = await self._local_registration()
        if registration is None:
            self.endpoint = None
            self.state = SubscriptionState.UNSUBSCRIBED
            return self.state
        try:
            await self._persist(registration.endpoint, registration.keys)
        except PersistenceFailed as e:
            return self._fail(e)
        self.endpoint = registration.endpoint
        self.error = None
        self.state = SubscriptionState.SUBSCRIBED
        return self.state

    async def toggle_subscription(self) -> SubscriptionState:
        if self.is_loading:
            log.info("Toggle ignored for user_id=%s: %s in progress", self.user_id, self.state.value)
            return self.state
        if self.state == SubscriptionState.SUBSCRIBED:
            return await self.unsubscribe()
        if self.state == SubscriptionState.ERROR:
            # Hold the guard while probing so an overlapping toggle is still rejected
            self.state = SubscriptionState.SUBSCRIBING
            has_local = await self._local_registration() is not None
            self.state = SubscriptionState.ERROR
            if has_local:
                # Local registration that never made it to the store: remove it
                return await self.unsubscribe()
        return await self.subscribe()

    async def subscribe(self) -> SubscriptionState:
        if self.is_loading or self.state == SubscriptionState.SUBSCRIBED:
            return self.state
        self.state = SubscriptionState.SUBSCRIBING
        self.error = None

        permission = check_support(self.runtime)
        if permission == PermissionState.DEFAULT:
            permission = await request_permission(self.runtime)
            if permission == PermissionState.DEFAULT:
                # Prompt dismissed without an answer
                self.state = SubscriptionState.UNSUBSCRIBED
                return self.state
        if permission == PermissionState.UNSUPPORTED:
            return self._fail(Unsupported("push not supported in this runtime"))
        if permission == PermissionState.DENIED:
            return self._fail(PermissionDenied("enable notifications in the browser settings"))

        try:
            public_key = await self.key_provider()
        except Exception as e:
            return self._fail(RegistrationFailed(f"server public key unavailable: {e}", cause=e))
        try:
            registration = await register(self.runtime, public_key)
        except RegistrationFailed as e:
            return self._fail(e)

        try:
            await self._persist(registration.endpoint, registration.keys)
        except PersistenceFailed as e:
            await self._rollback_registration()
            return self._fail(e)

        self.endpoint = registration.endpoint
        self.state = SubscriptionState.SUBSCRIBED
        log.info("Push enabled for user_id=%s school_id=%s", self.user_id, self.school_id)
        return self.state

    async def unsubscribe(self) -> SubscriptionState:
        if self.is_loading:
            return self.state
        self.state = SubscriptionState.UNSUBSCRIBING
        self.error = None
        endpoint = self.endpoint
        try:
            registration = await self.runtime.get_subscription()
            if registration is not None:
                endpoint = registration.endpoint
                await self.runtime.unsubscribe()
        except Exception as e:
            return self._fail(RegistrationFailed(f"could not remove local registration: {e}", cause=e))

        if endpoint:
            try:
                await self.store.delete_subscription(self.user_id, endpoint)
            except Exception as e:
                # Local side is gone; the stale row is pruned on the next failed delivery
                log.warning("Store delete failed for user_id=%s, leaving row to pruning: %s", self.user_id, e)
        self.endpoint = None
        self.state = SubscriptionState.UNSUBSCRIBED
        log.info("Push disabled for user_id=%s", self.user_id)
        return self.state

    async def _persist(self, endpoint: str, keys: dict[str, str]) -> None:
        try:
            await self.store.upsert_subscription(
                self.user_id,
                endpoint,
                keys,
                school_id=self.school_id,
                user_agent=getattr(self.runtime, "user_agent", None),
            )
        except PersistenceFailed:
            raise
        except Exception as e:
            raise PersistenceFailed(f"could not save subscription: {e}", cause=e) from e

    async def _rollback_registration(self) -> None:
        try:
            await self.runtime.unsubscribe()
        except Exception as e:
            log.warning("Rollback of local registration failed for user_id=%s: %s", self.user_id, e)

    async def _local_registration(self):
        try:
            return await self.runtime.get_subscription()
        except Exception as e:
            log.warning("Reading local registration failed: %s", e)
            return None

    def _fail(self, error: PushError) -> SubscriptionState:
        self.error = error
        self.state = SubscriptionState.ERROR
        log.warning(
            "Push subscription error for user_id=%s: %s (%s, retryable=%s)",
            self.user_id,
            error,
            type(error).__name__,
            error.retryable,
        )
        return self.state
