"""
Decoupled Auth - Database Models

SQLAlchemy models backing SQLAlchemyIdentityStore.

The login name is nullable: a NULL name is what makes a user decoupled.
Profiles reference their owner without a foreign key, so deleting a user
leaves its profiles in place as orphans.
"""

from uuid import uuid4
from datetime import datetime, timezone
from typing import Dict, Any

from sqlalchemy import (
    Column, String, Boolean, Integer, DateTime,
    ForeignKey, JSON, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from database.connection import Base


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserDB(Base):
    """
    User - identity record table

    Coupled users have a login name; decoupled users only carry data
    (usually an email address) acquired from orders, profiles and the like.
    """
    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_mail", "mail"),
    )

    uid = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(36), unique=True, nullable=False, default=lambda: str(uuid4()))
    name = Column(String(60), unique=True, nullable=True)
    pass_hash = Column("pass", String(255), nullable=True)
    mail = Column(String(254), nullable=True)
    init = Column(String(254), nullable=True)
    status = Column(Boolean, default=True)
    timezone = Column(String(32), nullable=True)
    langcode = Column(String(12), nullable=True)
    created = Column(DateTime(timezone=True), default=_utcnow)
    changed = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    access = Column(DateTime(timezone=True), nullable=True)
    login = Column(DateTime(timezone=True), nullable=True)
    extra_data = Column("data", JSONType, default=dict)

    roles = relationship(
        "UserRoleDB",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    @property
    def decoupled(self) -> bool:
        return self.name is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "uid": self.uid,
            "uuid": self.uuid,
            "name": self.name,
            "mail": self.mail,
            "status": self.status,
            "decoupled": self.decoupled,
            "roles": sorted(r.role for r in self.roles),
            "created": self.created.isoformat() if self.created else None,
            "changed": self.changed.isoformat() if self.changed else None,
        }


class UserRoleDB(Base):
    """User Role - one row per role held by a user"""
    __tablename__ = "user_roles"

    uid = Column(Integer, ForeignKey("users.uid", ondelete="CASCADE"), primary_key=True)
    role = Column(String(64), primary_key=True)

    user = relationship("UserDB", back_populates="roles")


class ProfileDB(Base):
    """
    Profile - secondary record owned by a user

    The bundle identifies the profile sub-type (e.g. customer, billing).
    """
    __tablename__ = "profiles"
    __table_args__ = (
        Index("idx_profiles_uid_type", "uid", "type"),
    )

    profile_id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(64), nullable=False)
    uid = Column(Integer, nullable=True)
    status = Column(Boolean, default=True)
    data = Column(JSONType, default=dict)
    created = Column(DateTime(timezone=True), default=_utcnow)
    changed = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "profile_id": self.profile_id,
            "type": self.type,
            "uid": self.uid,
            "status": self.status,
            "data": self.data,
            "created": self.created.isoformat() if self.created else None,
        }
