from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship

from huddle.database import Base
from huddle.models.types import UTCDateTime
from huddle.utils.clock import utcnow


class WorkspaceRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class User(Base):
    __tablename__ = "users"

    user_id = Column(String(36), primary_key=True, index=True)
    display_name = Column(String(200), nullable=False)
    email = Column(String, unique=True, index=True, nullable=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    memberships = relationship(
        "WorkspaceMember",
        back_populates="user",
        cascade="all, delete-orphan",
    )


class WorkspaceMember(Base):
    __tablename__ = "workspace_members"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_user"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    workspace_id = Column(String(36), nullable=False, index=True)
    user_id = Column(
        String(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False
    )
    role = Column(String(20), default=WorkspaceRole.MEMBER.value, nullable=False)
    joined_at = Column(UTCDateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="memberships")
