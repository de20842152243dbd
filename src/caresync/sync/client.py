"""HTTP remote endpoint speaking the revision-record protocol."""

from __future__ import annotations

import json
import logging
import ssl
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import aiohttp

from caresync.core.change import RevisionRecord
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.core.serialization import revision_from_dict, revision_to_dict
from caresync.errors import (
    RemoteConflict,
    RemoteRejected,
    RemoteServerError,
    SyncTimeoutError,
    TransportFailure,
)
from caresync.sync.policy import ConflictResolutionPolicy, KeepRemotePolicy
from caresync.sync.protocol import ConflictDescription

logger = logging.getLogger(__name__)

REVISION_PATH = "/revisionRecord"

PolicySelector = Callable[[ConflictDescription], Awaitable[ConflictResolutionPolicy]]


class HTTPRemote:
    """
    Remote endpoint reached over HTTP.

    Usage:
        async with HTTPRemote("https://sync.example.org", user_id="alice") as remote:
            result = await SyncEngine(store, remote).synchronize()

    Or without context manager:
        remote = HTTPRemote("http://localhost:8000")
        await remote.connect()
        try:
            ...
        finally:
            await remote.disconnect()
    """

    def __init__(
        self,
        base_url: str,
        *,
        user_id: str | None = None,
        timeout: float = 30.0,
        ca_file: str | Path | None = None,
        conflict_policy: ConflictResolutionPolicy | None = None,
        policy_selector: PolicySelector | None = None,
    ) -> None:
        """
        Initialize the HTTP remote.

        Args:
            base_url: Server base URL (e.g., "http://localhost:8000/api/v1")
            user_id: Tenant the server keeps this user's records under
            timeout: Total request timeout in seconds
            ca_file: PEM bundle to trust instead of the system store
            conflict_policy: Policy for every conflict when no selector is given
            policy_selector: Async callback choosing a policy per conflict
        """
        if not base_url.startswith(("http://", "https://")):
            raise ValueError("Invalid remote URL scheme: must start with http:// or https://")
        self._base_url = base_url.rstrip("/")
        self._user_id = user_id
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._ssl: ssl.SSLContext | None = (
            ssl.create_default_context(cafile=str(ca_file)) if ca_file else None
        )
        self.conflict_policy: ConflictResolutionPolicy = conflict_policy or KeepRemotePolicy()
        self._policy_selector = policy_selector
        self._session: aiohttp.ClientSession | None = None

    @property
    def identity(self) -> str:
        if self._user_id:
            return f"{self._base_url}#{self._user_id}"
        return self._base_url

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    async def connect(self) -> None:
        """Open the HTTP session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=self._ssl) if self._ssl else None
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)

    async def disconnect(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> HTTPRemote:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.disconnect()

    def _params(self, **extra: str) -> dict[str, str]:
        params = dict(extra)
        if self._user_id:
            params["userId"] = self._user_id
        return params

    async def _request(
        self,
        method: str,
        path: str = REVISION_PATH,
        *,
        params: dict[str, str] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        """Send one request and map failures into the sync error taxonomy."""
        await self.connect()
        assert self._session is not None
        url = f"{self._base_url}{path}"

        try:
            async with self._session.request(
                method, url, params=params, json=json_data
            ) as response:
                body = await response.text()
                if response.status == 409:
                    raise RemoteConflict(
                        f"Rejected due to conflict: {body}", status_code=response.status
                    )
                if 400 <= response.status < 500:
                    raise RemoteRejected(
                        f"Remote rejected {method}: {body}", status_code=response.status
                    )
                if response.status >= 500:
                    raise RemoteServerError(
                        f"Remote error on {method}: {body}", status_code=response.status
                    )
                if not body:
                    return None
                try:
                    return json.loads(body)
                except json.JSONDecodeError as e:
                    raise TransportFailure(f"Undecodable response from remote: {e}") from e
        except TimeoutError as e:
            raise SyncTimeoutError(f"{method} {url} timed out") from e
        except aiohttp.ClientError as e:
            raise TransportFailure(f"Connection error: {e}") from e

    async def pull_revisions(self, since: KnowledgeVector) -> RevisionRecord:
        data = await self._request("GET", params=self._params(knowledgeVector=since.to_json()))
        try:
            revision = revision_from_dict(data)
        except ValueError as e:
            raise TransportFailure(f"Malformed revision record from remote: {e}") from e
        logger.debug("Pulled %d entities from %s", len(revision.entities), self.identity)
        return revision

    async def push_revisions(self, revision: RevisionRecord, overwrite_remote: bool) -> None:
        await self._request(
            "POST",
            params=self._params(overwriteRemote=str(overwrite_remote).lower()),
            json_data=revision_to_dict(revision),
        )
        logger.debug("Pushed %d entities to %s", len(revision.entities), self.identity)

    async def clear_remote(self) -> None:
        """Delete every record the remote holds for this user (testing aid)."""
        await self._request("DELETE", params=self._params())
        logger.info("Cleared remote %s", self.identity)

    async def status(self) -> dict[str, Any]:
        """Fetch the remote's store summary."""
        result: dict[str, Any] = await self._request(
            "GET", f"{REVISION_PATH}/status", params=self._params()
        )
        return result

    async def choose_conflict_resolution_policy(
        self, conflict: ConflictDescription
    ) -> ConflictResolutionPolicy:
        if self._policy_selector is not None:
            return await self._policy_selector(conflict)
        return self.conflict_policy
