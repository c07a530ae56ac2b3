import datetime
from sqlalchemy import BigInteger, Boolean, Column, Integer, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship
from ..database import Base

DEFAULT_MAX_FILE_SIZE = 2 * 1024 * 1024 * 1024


class Group(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    avatar_url = Column(String, nullable=True)
    avatar_key = Column(String, nullable=True)
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    is_private = Column(Boolean, default=False, nullable=False)
    allow_invites = Column(Boolean, default=True, nullable=False)
    # days, 0 keeps messages forever
    message_retention_days = Column(Integer, default=0, nullable=False)
    max_file_size = Column(BigInteger, default=DEFAULT_MAX_FILE_SIZE, nullable=False)

    last_activity = Column(DateTime(timezone=True), nullable=True, index=True)
    message_count = Column(Integer, default=0, nullable=False)
    member_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.datetime.now(datetime.timezone.utc))
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    members = relationship("GroupMember", back_populates="group", cascade="all, delete-orphan")
    messages = relationship("Message", back_populates="group")

    @property
    def admin_ids(self) -> list[int]:
        return [m.user_id for m in self.members if m.role == "admin"]
