"""Pydantic schemas for identity administration."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from chatsync.db.enums import IdentityProvenance


class IdentityRead(BaseModel):
    id: UUID
    external_user_id: str
    display_name: str
    email: str | None = None
    email_domain: str | None = None
    confidence: int
    resolved_by: IdentityProvenance
    discovered_by_account_id: UUID | None = None
    original_resource_name: str | None = None
    first_seen: datetime
    last_seen: datetime
    seen_count: int

    model_config = {"from_attributes": True}


class IdentityListResponse(BaseModel):
    items: list[IdentityRead]
    total: int
    page: int
    per_page: int
    pages: int


class IdentityOverride(BaseModel):
    """Manual identity assignment; always wins over discovered data."""

    display_name: str = Field(..., min_length=1, max_length=255)
    email: str | None = Field(None, max_length=320)


class IdentityMergeRequest(BaseModel):
    primary_external_user_id: str = Field(..., min_length=1)
    duplicate_external_user_ids: list[str] = Field(..., min_length=1)


class ProvenanceBreakdown(BaseModel):
    resolved_by: str | None = None
    count: int
    avg_confidence: float


class DomainBreakdown(BaseModel):
    domain: str | None = None
    count: int


class ConfidenceBucket(BaseModel):
    bucket: str
    count: int


class IdentityStats(BaseModel):
    total: int
    avg_confidence: float
    total_seen: int
    by_provenance: list[ProvenanceBreakdown]
    by_domain: list[DomainBreakdown]
    confidence_distribution: list[ConfidenceBucket]


class ReresolveRequest(BaseModel):
    limit: int = Field(100, ge=1, le=1000)


class ReresolveResponse(BaseModel):
    checked: int
    upgraded: int
    messages_updated: int
