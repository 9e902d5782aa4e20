"""Subject profile read-model sync, including the blacklist."""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import utcnow
from shared.errors import NotFound, ValidationError

from .models import SubjectProfile

logger = logging.getLogger(__name__)

_UPDATABLE = (
    "account_created_at",
    "device_fingerprint",
    "kyc_verified",
    "risk_level",
    "has_prior_violations",
    "is_blacklisted",
    "blacklist_reason",
)


class ProfileDirectory:
    """Reads and upserts SubjectProfile rows."""

    async def get(self, session: AsyncSession, subject_id: str) -> Optional[SubjectProfile]:
        return await session.get(SubjectProfile, subject_id)

    async def require(self, session: AsyncSession, subject_id: str) -> SubjectProfile:
        profile = await self.get(session, subject_id)
        if profile is None:
            raise NotFound(f"Subject {subject_id} not found", subject_id=subject_id)
        return profile

    async def upsert(self, session: AsyncSession, subject_id: str, **fields) -> SubjectProfile:
        """
        Create or update a profile from the identity provider's record.

        Fields left as None keep their stored value. A new profile needs
        ``account_created_at``.
        """
        unknown = set(fields) - set(_UPDATABLE)
        if unknown:
            raise ValidationError(f"Unknown profile fields: {sorted(unknown)}")

        risk_level = fields.get("risk_level")
        if risk_level is not None and not 0 <= risk_level <= 100:
            raise ValidationError("risk_level must be between 0 and 100", risk_level=risk_level)

        profile = await self.get(session, subject_id)
        if profile is None:
            if fields.get("account_created_at") is None:
                raise ValidationError(
                    "account_created_at is required for a new subject", subject_id=subject_id
                )
            profile = SubjectProfile(subject_id=subject_id)
            session.add(profile)

        was_blacklisted = bool(profile.is_blacklisted)
        for name, value in fields.items():
            if value is not None:
                setattr(profile, name, value)
        if fields.get("is_blacklisted") is False:
            profile.blacklist_reason = None
        profile.updated_at = utcnow()
        await session.flush()

        if bool(profile.is_blacklisted) != was_blacklisted:
            action = "added to" if profile.is_blacklisted else "removed from"
            logger.warning(f"Subject {subject_id} {action} blacklist: {profile.blacklist_reason}")
        return profile
