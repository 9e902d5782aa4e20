"""Database models for the Risk & Auto-Approval Engine."""
from sqlalchemy import Boolean, Column, DateTime, Integer, String

from shared.database import Base, utcnow


class SubjectProfile(Base):
    """Read-model of the identity provider's customer record."""

    __tablename__ = "subject_profiles"

    subject_id = Column(String(128), primary_key=True)
    account_created_at = Column(DateTime, nullable=False)
    device_fingerprint = Column(String(255), nullable=True)
    kyc_verified = Column(Boolean, nullable=False, default=False)
    risk_level = Column(Integer, nullable=False, default=0)  # 0-100
    has_prior_violations = Column(Boolean, nullable=False, default=False)
    is_blacklisted = Column(Boolean, nullable=False, default=False)
    blacklist_reason = Column(String(255), nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
