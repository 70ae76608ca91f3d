"""Flag definition, grant and permission-tester endpoints."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, Response, status

from membership_admin.core.errors import ValidationError
from membership_admin.core.security.authorization import (
    AdminSession,
    Engine,
    FlagManager,
    FlagReader,
    MemberManager,
    Subject,
)
from membership_admin.db.models import FlagCategory
from membership_admin.modules.flags.schemas import (
    BulkGrantRequest,
    BulkGrantResponse,
    ExpireFlagsResponse,
    FlagDefinitionCreate,
    FlagDefinitionResponse,
    FlagDefinitionUpdate,
    FlagGrantCreate,
    FlagGrantResponse,
    PermissionCheckResponse,
)
from membership_admin.modules.flags.service import FlagStore, GrantRequest

router = APIRouter()


def get_flag_store(request: Request) -> FlagStore:
    store: FlagStore = request.app.state.flag_store
    return store


Flags = Annotated[FlagStore, Depends(get_flag_store)]


# -----------------------------------------------------------------------------
# Definitions
# -----------------------------------------------------------------------------


@router.get("/flags", response_model=list[FlagDefinitionResponse])
async def list_flags(store: Flags, _session: FlagReader) -> list[FlagDefinitionResponse]:
    """List every flag definition."""
    flags = await store.list_definitions()
    return [FlagDefinitionResponse.model_validate(flag) for flag in flags]


@router.post(
    "/flags",
    response_model=FlagDefinitionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_flag(
    body: FlagDefinitionCreate, store: Flags, _session: FlagManager
) -> FlagDefinitionResponse:
    flag = await store.create_definition(body.id, body.name, body.description, body.category)
    return FlagDefinitionResponse.model_validate(flag)


@router.get("/flags/categories/{category}", response_model=list[FlagDefinitionResponse])
async def list_flags_by_category(
    category: FlagCategory, store: Flags, _session: FlagReader
) -> list[FlagDefinitionResponse]:
    flags = await store.list_definitions(category)
    return [FlagDefinitionResponse.model_validate(flag) for flag in flags]


@router.put("/flags/{flag_id}", response_model=FlagDefinitionResponse)
async def update_flag(
    flag_id: str, body: FlagDefinitionUpdate, store: Flags, _session: FlagManager
) -> FlagDefinitionResponse:
    flag = await store.update_definition(
        flag_id, name=body.name, description=body.description, category=body.category
    )
    return FlagDefinitionResponse.model_validate(flag)


@router.get("/flags/{flag_id}/members", response_model=list[FlagGrantResponse])
async def list_flag_holders(
    flag_id: str, store: Flags, _session: FlagReader
) -> list[FlagGrantResponse]:
    """Members currently holding an active grant of the flag."""
    grants = await store.holders(flag_id)
    return [FlagGrantResponse.model_validate(grant) for grant in grants]


# -----------------------------------------------------------------------------
# Bulk operations
# -----------------------------------------------------------------------------


@router.post("/flags/bulk", response_model=BulkGrantResponse)
async def bulk_grant_flags(
    body: BulkGrantRequest, store: Flags, session: FlagManager
) -> BulkGrantResponse:
    """Grant many flags at once; all or nothing."""
    granted = await store.bulk_grant(
        [
            GrantRequest(
                subject_id=item.member_id,
                flag_id=item.flag_id,
                expires_at=item.expires_at,
                metadata=item.metadata,
            )
            for item in body.assignments
        ],
        granted_by=session.email,
    )
    return BulkGrantResponse(granted=granted)


@router.post("/flags/expire", response_model=ExpireFlagsResponse)
async def expire_flags(store: Flags, _session: FlagManager) -> ExpireFlagsResponse:
    """Delete grants whose expiry has passed."""
    result = await store.purge_expired()
    return ExpireFlagsResponse(
        processed=result.processed,
        errors=result.errors,
        duration_ms=result.duration_ms,
    )


# -----------------------------------------------------------------------------
# Member grants
# -----------------------------------------------------------------------------


@router.get("/members/{member_id}/flags", response_model=list[FlagGrantResponse])
async def list_member_flags(
    member_id: int, store: Flags, _session: MemberManager
) -> list[FlagGrantResponse]:
    grants = await store.grants_for_subject(str(member_id))
    return [FlagGrantResponse.model_validate(grant) for grant in grants]


@router.post(
    "/members/{member_id}/flags",
    response_model=FlagGrantResponse,
    status_code=status.HTTP_201_CREATED,
)
async def grant_member_flag(
    member_id: int, body: FlagGrantCreate, store: Flags, session: FlagManager
) -> FlagGrantResponse:
    grant = await store.grant(
        str(member_id),
        body.flag_id,
        granted_by=session.email,
        expires_at=body.expires_at,
        metadata=body.metadata,
    )
    return FlagGrantResponse.model_validate(grant)


@router.delete("/members/{member_id}/flags/{flag_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_member_flag(
    member_id: int,
    flag_id: str,
    store: Flags,
    session: FlagManager,
    reason: str | None = Query(None, max_length=500),
) -> Response:
    await store.revoke(str(member_id), flag_id, reason, revoked_by=session.email)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/members/{member_id}/permissions", response_model=PermissionCheckResponse)
async def check_member_permissions(
    member_id: int,
    engine: Engine,
    _session: AdminSession,
    required_flags: Annotated[list[str], Query()] = [],  # noqa: B006
    resource_type: str | None = Query(None),
    resource_id: int | None = Query(None, ge=1),
) -> PermissionCheckResponse:
    """Evaluate a flag policy for a member without acting as them."""
    if resource_id is not None and resource_type is None:
        raise ValidationError("resource_type is required when resource_id is given")
    resource = Subject(resource_type, resource_id) if resource_type else None
    report = await engine.evaluate_member(str(member_id), required_flags, resource)
    return PermissionCheckResponse(
        member_id=report.subject_id,
        allowed=report.allowed,
        active_flags=report.active_flags,
        missing_flags=report.missing_flags,
        resource=report.resource.as_dict() if report.resource else None,
        reason=report.reason.value if report.reason else None,
    )
