from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
)
from sqlalchemy.orm import relationship
from ..database import Base

MESSAGE_STATUSES = ("sent", "delivered", "read", "deleted")
# longest self-destruct delay accepted, 30 days
MAX_SELF_DESTRUCT_MS = 30 * 24 * 60 * 60 * 1000


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    group_id = Column(Integer, ForeignKey("groups.id"), nullable=True, index=True)

    encrypted_payload = Column(JSON, nullable=False)
    attachments = Column(JSON, nullable=False, default=list)

    is_encrypted = Column(Boolean, default=True, nullable=False)
    is_self_destructing = Column(Boolean, default=False, nullable=False)
    self_destruct_at = Column(DateTime(timezone=True), nullable=True)

    status = Column(
        Enum(*MESSAGE_STATUSES, name="message_status_enum"),
        default="sent",
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    sender = relationship("User", foreign_keys=[sender_id])
    recipient = relationship("User", foreign_keys=[recipient_id])
    group = relationship("Group", back_populates="messages")
    reads = relationship(
        "MessageRead",
        back_populates="message",
        order_by="MessageRead.read_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint(
            "(recipient_id IS NULL) <> (group_id IS NULL)",
            name="ck_message_single_address",
        ),
        CheckConstraint(
            "(is_self_destructing AND self_destruct_at IS NOT NULL)"
            " OR (NOT is_self_destructing AND self_destruct_at IS NULL)",
            name="ck_message_self_destruct",
        ),
        Index("ix_messages_expiry", "is_self_destructing", "self_destruct_at"),
    )

    @property
    def is_group(self) -> bool:
        return self.group_id is not None
