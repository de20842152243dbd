"""Shared dependencies for API routes."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Query

from caresync.storage.base import VersionStore

logger = logging.getLogger(__name__)

DEFAULT_TENANT = "default"

_USER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_\-\.@]+$")

StoreFactory = Callable[[str], Awaitable[VersionStore]]


class StoreRegistry:
    """One store per tenant, opened on first request.

    Args:
        factory: Opens the store for a tenant name
    """

    def __init__(self, factory: StoreFactory) -> None:
        self._factory = factory
        self._stores: dict[str, VersionStore] = {}
        self._lock = asyncio.Lock()

    async def get(self, tenant: str) -> VersionStore:
        async with self._lock:
            store = self._stores.get(tenant)
            if store is None:
                store = await self._factory(tenant)
                self._stores[tenant] = store
                logger.info("Opened store %s for tenant %s", store.clock_id, tenant)
            return store

    @property
    def tenants(self) -> list[str]:
        return sorted(self._stores)

    async def close(self) -> None:
        stores = list(self._stores.values())
        self._stores.clear()
        for store in stores:
            await store.close()


async def get_registry() -> StoreRegistry:
    """
    Dependency to get the tenant store registry.

    This is overridden by the application at startup.
    """
    raise NotImplementedError("Store registry not configured")


def tenant_name(user_id: str | None) -> str:
    """Store name for a tenant; raises HTTPException on malformed ids."""
    if not user_id:
        return DEFAULT_TENANT
    if len(user_id) > 128 or not _USER_ID_PATTERN.match(user_id):
        raise HTTPException(status_code=422, detail="Invalid userId format")
    return f"user-{user_id}"


async def get_store(
    registry: Annotated[StoreRegistry, Depends(get_registry)],
    user_id: Annotated[str | None, Query(alias="userId")] = None,
) -> VersionStore:
    """Resolve the store of the tenant named by the ``userId`` query parameter."""
    return await registry.get(tenant_name(user_id))
