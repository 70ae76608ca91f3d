"""Pydantic schemas for flag definition and grant endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from membership_admin.db.models import FlagCategory


class FlagDefinitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None = None
    category: FlagCategory
    created_at: datetime | None = None
    updated_at: datetime | None = None


class FlagDefinitionCreate(BaseModel):
    id: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9_]+$")
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    category: FlagCategory = FlagCategory.OTHER


class FlagDefinitionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    category: FlagCategory | None = None


class FlagGrantCreate(BaseModel):
    flag_id: str = Field(min_length=1)
    expires_at: datetime | None = None
    metadata: dict[str, Any] | None = None


class FlagGrantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    flag_id: str
    member_id: str
    name: str
    granted_at: datetime
    granted_by: str
    expires_at: datetime | None = None
    expired: bool = False
    metadata: dict[str, Any] | None = None


class BulkAssignment(BaseModel):
    member_id: str = Field(min_length=1)
    flag_id: str = Field(min_length=1)
    expires_at: datetime | None = None
    metadata: dict[str, Any] | None = None


class BulkGrantRequest(BaseModel):
    assignments: list[BulkAssignment] = Field(min_length=1, max_length=1000)


class BulkGrantResponse(BaseModel):
    granted: int


class ExpireFlagsResponse(BaseModel):
    processed: int
    errors: list[str]
    duration_ms: int


class PermissionCheckResponse(BaseModel):
    member_id: str
    allowed: bool
    active_flags: list[str]
    missing_flags: list[str]
    resource: dict[str, str] | None = None
    reason: str | None = None
