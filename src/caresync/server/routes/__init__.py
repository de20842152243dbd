"""API routes for the caresync server."""

from caresync.server.routes.revisions import router as revisions_router

__all__ = ["revisions_router"]
