"""Pydantic models for API request/response."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# ============ Wire Models ============


class WireEntity(BaseModel):
    """One task or outcome version as it travels over the wire.

    Only the fields every version carries are checked here; the rest of the
    payload is kept as-is and validated when it is turned into an entity.
    """

    model_config = ConfigDict(extra="allow")

    kind: Literal["task", "outcome"]
    id: str = Field(..., min_length=1, max_length=256)
    uuid: str = Field(..., min_length=1, max_length=256)
    createdDate: str
    previousVersionUuid: str | None = None
    originClockId: str = Field("", max_length=256)
    originClock: int = Field(0, ge=0)


class RevisionRecordModel(BaseModel):
    """A revision record: entities plus the sender's knowledge vector."""

    entities: list[WireEntity] = Field(default_factory=list, max_length=10_000)
    knowledgeVector: dict[str, int] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {
            "entities": [e.model_dump() for e in self.entities],
            "knowledgeVector": dict(self.knowledgeVector),
        }


# ============ Response Models ============


class PushResponse(BaseModel):
    """Summary of a merged push."""

    applied: int
    superseded: int
    conflicts: int


class StoreStatusResponse(BaseModel):
    clock_id: str
    task_count: int
    task_version_count: int
    outcome_count: int
    knowledge_vector: dict[str, int]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str


class ErrorResponse(BaseModel):
    detail: str
