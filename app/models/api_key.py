"""API key database model."""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index, CheckConstraint, func

from app.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApiKey(Base):
    """Named API key with a monthly usage allowance, owned by a single user."""
    __tablename__ = "api_keys"
    __table_args__ = (
        CheckConstraint("usage >= 0", name="ck_api_keys_usage_non_negative"),
        CheckConstraint("monthly_limit > 0", name="ck_api_keys_monthly_limit_positive"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    key = Column(String(128), unique=True, nullable=False, index=True)  # Issued once, never changes
    user_id = Column(String(255), nullable=False, index=True)  # Owner
    is_active = Column(Boolean, default=True, nullable=False)
    usage = Column(Integer, default=0, nullable=False)
    monthly_limit = Column(Integer, default=1000, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    last_used = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        """Plain row snapshot, as delivered by the change feed."""
        return {
            "id": self.id,
            "name": self.name,
            "key": self.key,
            "user_id": self.user_id,
            "is_active": self.is_active,
            "usage": self.usage,
            "monthly_limit": self.monthly_limit,
            "created_at": self.created_at,
            "last_used": self.last_used,
        }

    def __repr__(self):
        return f"<ApiKey {self.name!r} {self.key[:8]}...>"


# Names are unique per owner regardless of case
Index("uq_api_keys_user_name", ApiKey.user_id, func.lower(ApiKey.name), unique=True)
