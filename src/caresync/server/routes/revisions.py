"""Revision-record endpoints: pull, push, clear and status."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from caresync.core.change import RevisionRecord
from caresync.core.knowledge_vector import KnowledgeVector
from caresync.core.serialization import revision_from_dict, revision_to_dict
from caresync.errors import RemoteConflict, RemoteRejected, SyncError
from caresync.server.dependencies import get_store, tenant_name
from caresync.server.models import PushResponse, RevisionRecordModel, StoreStatusResponse
from caresync.storage.base import VersionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/revisionRecord", tags=["revisions"])


def _parse_knowledge_vector(raw: str | None) -> KnowledgeVector:
    try:
        return KnowledgeVector.from_json(raw)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


async def _is_empty(store: VersionStore) -> bool:
    if await store.fetch_task_versions():
        return False
    return not await store.fetch_outcomes(include_deleted=True)


@router.get("", summary="Pull everything the caller's vector does not reflect")
async def pull_revisions(
    store: Annotated[VersionStore, Depends(get_store)],
    knowledge_vector: Annotated[str | None, Query(alias="knowledgeVector")] = None,
) -> dict[str, Any]:
    since = _parse_knowledge_vector(knowledge_vector)
    revision = await store.compute_revision(since)
    if revision.is_empty and await _is_empty(store):
        revision = RevisionRecord(knowledge_vector=since)
    logger.debug("Serving %d entities to a pull", len(revision.entities))
    return revision_to_dict(revision)


@router.post("", response_model=PushResponse, summary="Merge a pushed revision")
async def push_revisions(
    body: RevisionRecordModel,
    store: Annotated[VersionStore, Depends(get_store)],
    overwrite_remote: Annotated[bool, Query(alias="overwriteRemote")] = False,
    user_id: Annotated[str | None, Query(alias="userId")] = None,
) -> PushResponse:
    try:
        revision = revision_from_dict(body.to_wire())
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e

    try:
        resolved = await store.merge_revision(
            revision, f"http:{tenant_name(user_id)}", overwrite_remote
        )
    except RemoteConflict as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except RemoteRejected as e:
        raise HTTPException(status_code=e.status_code or 422, detail=str(e)) from e
    except SyncError as e:
        logger.error("Failed to merge pushed revision", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Merge failed: {e}") from e

    return PushResponse(
        applied=len(resolved.operations),
        superseded=len(resolved.superseded),
        conflicts=len(resolved.conflicts),
    )


@router.delete("", status_code=204, summary="Delete every record of the tenant")
async def clear_revisions(store: Annotated[VersionStore, Depends(get_store)]) -> Response:
    await store.clear()
    return Response(status_code=204)


@router.get("/status", response_model=StoreStatusResponse, summary="Store summary")
async def store_status(
    store: Annotated[VersionStore, Depends(get_store)],
) -> StoreStatusResponse:
    stats = await store.get_stats()
    return StoreStatusResponse(**stats)
