"""HTTP server exposing the revision-record protocol."""

from caresync.server.app import create_app

__all__ = ["create_app"]
