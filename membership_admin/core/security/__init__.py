"""Security modules for authentication and authorization."""

from membership_admin.core.security.authorization import (
    AdminSession,
    AuthorizationEngine,
    Decision,
    DenyReason,
    Subject,
    require_admin_access,
    require_event_manager_access,
    require_member_manager_access,
    require_permission,
    require_resource_permission,
    require_verified,
    require_volunteer,
)
from membership_admin.core.security.session import (
    AccessLevel,
    CurrentSession,
    DatabaseSessionResolver,
    Session,
    SessionResolver,
    require_auth,
)

__all__ = [
    "AccessLevel",
    "CurrentSession",
    "DatabaseSessionResolver",
    "Session",
    "SessionResolver",
    "require_auth",
    "AdminSession",
    "AuthorizationEngine",
    "Decision",
    "DenyReason",
    "Subject",
    "require_permission",
    "require_resource_permission",
    "require_verified",
    "require_volunteer",
    "require_admin_access",
    "require_event_manager_access",
    "require_member_manager_access",
]
