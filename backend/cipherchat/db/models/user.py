import datetime
from sqlalchemy import Boolean, Column, Integer, String, DateTime
from sqlalchemy.orm import relationship
from ..database import Base
from .association import user_friends_table


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    role = Column(String, default="user", nullable=False)
    # hex-encoded AES-256 key; messages addressed to this user are sealed with it
    encryption_key = Column(String(64), nullable=False)
    avatar_url = Column(String, nullable=True)
    avatar_key = Column(String, nullable=True)
    is_online = Column(Boolean, default=False, nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc))
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    friends = relationship(
        "User",
        secondary=user_friends_table,
        primaryjoin=id == user_friends_table.c.user_id,
        secondaryjoin=id == user_friends_table.c.friend_id,
    )
    memberships = relationship("GroupMember", back_populates="user", cascade="all, delete-orphan")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
