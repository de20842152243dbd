"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from caresync import __version__
from caresync.server.dependencies import StoreFactory, StoreRegistry
from caresync.server.models import HealthResponse
from caresync.server.routes import revisions_router
from caresync.storage.base import VersionStore


async def _shared_store_factory(tenant: str) -> VersionStore:
    from caresync.utils.config import get_shared_store

    return await get_shared_store(tenant)


def create_app(
    title: str = "caresync",
    description: str = "Revision-record sync server for care plans",
    cors_origins: list[str] | None = None,
    store_factory: StoreFactory | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        title: API title
        description: API description
        cors_origins: Allowed CORS origins (default: from configuration)
        store_factory: Opens the store of a tenant (default: SQLite stores
            under the configured data directory)

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        registry = StoreRegistry(store_factory or _shared_store_factory)
        app.state.registry = registry
        yield
        await registry.close()

    app = FastAPI(
        title=title,
        description=description,
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    if cors_origins is None:
        from caresync.utils.config import get_config

        cors_origins = list(get_config().server.cors_origins)

    is_wildcard = cors_origins == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=not is_wildcard,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Override registry dependency using the shared module
    from caresync.server.dependencies import get_registry as shared_get_registry

    async def get_registry() -> StoreRegistry:
        registry: StoreRegistry = app.state.registry
        return registry

    app.dependency_overrides[shared_get_registry] = get_registry

    # Versioned API routes
    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(revisions_router)
    app.include_router(api_v1)

    # Unversioned routes, the path devices use by default
    app.include_router(revisions_router)

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(status="healthy", version=__version__)

    @app.get("/", tags=["health"])
    async def root() -> dict[str, str]:
        """Root endpoint with API info."""
        return {
            "name": title,
            "description": description,
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    return app
