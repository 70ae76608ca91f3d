"""Read access to the legacy ``flags`` bitfield of resource rows."""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from membership_admin.core.errors import NotFoundError
from membership_admin.core.routing import MAX_ENTITY_ID, singularize
from membership_admin.db.models import (
    Base,
    Event,
    ExternalIntegration,
    Member,
    MembershipType,
    PaymentStatus,
)
from membership_admin.db.session import transaction


class ResourceReader(Protocol):
    async def get_resource_flags_bitfield(self, resource_type: str, resource_id: int) -> int:
        """Return the row's bitfield or raise ``NotFoundError``."""
        ...


RESOURCE_MODELS: dict[str, type[Base]] = {
    "member": Member,
    "event": Event,
    "membership_type": MembershipType,
    "payment_status": PaymentStatus,
    "external_integration": ExternalIntegration,
}


class DatabaseResourceReader:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get_resource_flags_bitfield(self, resource_type: str, resource_id: int) -> int:
        resource_type = singularize(resource_type)
        model = RESOURCE_MODELS.get(resource_type)
        if model is None or not 0 <= resource_id <= MAX_ENTITY_ID:
            raise NotFoundError(resource_type, resource_id)
        async with transaction(self.session_factory) as session:
            value = await session.scalar(
                select(model.flags).where(model.id == resource_id)  # type: ignore[attr-defined]
            )
        if value is None:
            raise NotFoundError(resource_type, resource_id)
        return int(value)
