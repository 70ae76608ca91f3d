"""Session introspection endpoint for the admin client."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel

from membership_admin.core.security.session import CurrentSession

router = APIRouter()


class SessionResponse(BaseModel):
    id: str
    user_id: str
    email: str
    name: str | None = None
    expires_at: datetime
    access_level: int
    member_id: int | None = None


@router.get("/session", response_model=SessionResponse)
async def get_current_session(session: CurrentSession) -> SessionResponse:
    """Return the caller's session; 401 when there is none."""
    return SessionResponse(
        id=session.id,
        user_id=session.user_id,
        email=session.email,
        name=session.name,
        expires_at=session.expires_at,
        access_level=int(session.access_level),
        member_id=session.member_id,
    )
