"""Standard flag set installed on a fresh database."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from membership_admin.core.logging import get_logger
from membership_admin.db.models import Flag, FlagCategory
from membership_admin.db.session import transaction

logger = get_logger(__name__)

DEFAULT_FLAGS: list[tuple[str, str, FlagCategory]] = [
    ("socials_approved", "Socials Approved", FlagCategory.VERIFICATION),
    ("video_verified", "Video Verified", FlagCategory.VERIFICATION),
    ("identity_verified", "Identity Verified", FlagCategory.VERIFICATION),
    ("newsletter_public", "Public", FlagCategory.SUBSCRIPTION),
    ("newsletter_vetted", "Vetted", FlagCategory.SUBSCRIPTION),
    ("newsletter_private", "Private", FlagCategory.SUBSCRIPTION),
    ("subscriber_tip", "Just The Tip", FlagCategory.SUBSCRIPTION),
    ("subscriber_supporter", "Supporter", FlagCategory.SUBSCRIPTION),
    ("subscriber_more", "More Please", FlagCategory.SUBSCRIPTION),
    ("subscriber_play", "Come Play With Us", FlagCategory.SUBSCRIPTION),
    ("subscriber_sugar", "Sugar Zaddy", FlagCategory.SUBSCRIPTION),
    ("curio", "Curio", FlagCategory.FEATURE),
    ("hmu_friend", "HMU Friend", FlagCategory.FEATURE),
    ("guardian_certified", "Guardian Certified", FlagCategory.COMPLIANCE),
    ("volunteer_lead_certified", "Volunteer Lead Certified", FlagCategory.COMPLIANCE),
    ("professional", "Professional", FlagCategory.FEATURE),
    ("instructor", "HMU Instructor", FlagCategory.FEATURE),
    ("admin", "HMU Admin", FlagCategory.ADMIN),
    ("events_write", "HMU Events Coordinator", FlagCategory.ADMIN),
    ("members_write", "HMU Members Coordinator", FlagCategory.ADMIN),
]


async def seed_default_flags(session_factory: async_sessionmaker[AsyncSession]) -> int:
    """Insert the standard flags when the table is empty. Returns the number inserted."""
    async with transaction(session_factory) as session:
        existing = await session.scalar(select(func.count()).select_from(Flag))
        if existing:
            return 0
        session.add_all(
            Flag(id=flag_id, name=name, category=category)
            for flag_id, name, category in DEFAULT_FLAGS
        )
    logger.info("default_flags_seeded", count=len(DEFAULT_FLAGS))
    return len(DEFAULT_FLAGS)
