import datetime
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from typing import List, Optional

from ..db import models


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def insert_message(
    db: Session,
    *,
    sender_id: int,
    payload: dict,
    recipient_id: Optional[int] = None,
    group_id: Optional[int] = None,
    attachments: Optional[list] = None,
    self_destruct_ms: Optional[int] = None,
    created_at: Optional[datetime.datetime] = None,
) -> models.Message:
    """Stage a new message in the session; the caller commits."""
    created_at = created_at or utcnow()
    rec = models.Message(
        sender_id=sender_id,
        recipient_id=recipient_id,
        group_id=group_id,
        encrypted_payload=payload,
        attachments=list(attachments or []),
        is_encrypted=True,
        is_self_destructing=self_destruct_ms is not None,
        self_destruct_at=(
            created_at + datetime.timedelta(milliseconds=self_destruct_ms)
            if self_destruct_ms is not None
            else None
        ),
        status="sent",
        created_at=created_at,
    )
    db.add(rec)
    db.flush()
    return rec


def bump_group_activity(db: Session, group_id: int, at: datetime.datetime) -> None:
    db.query(models.Group).filter(models.Group.id == group_id).update(
        {
            models.Group.message_count: models.Group.message_count + 1,
            models.Group.last_activity: at,
        },
        synchronize_session=False,
    )


def get_message(db: Session, message_id: int) -> Optional[models.Message]:
    return db.query(models.Message).filter(models.Message.id == message_id).first()


def find_direct(db: Session, user_id: int, other_user_id: int, limit: int) -> List[models.Message]:
    return (
        db.query(models.Message)
        .options(selectinload(models.Message.reads))
        .filter(
            or_(
                and_(models.Message.sender_id == user_id, models.Message.recipient_id == other_user_id),
                and_(models.Message.sender_id == other_user_id, models.Message.recipient_id == user_id),
            ),
            models.Message.deleted_at.is_(None),
        )
        .order_by(models.Message.created_at.desc(), models.Message.id.desc())
        .limit(limit)
        .all()
    )


def find_group(db: Session, group_id: int, limit: int) -> List[models.Message]:
    return (
        db.query(models.Message)
        .options(selectinload(models.Message.reads))
        .filter(models.Message.group_id == group_id, models.Message.deleted_at.is_(None))
        .order_by(models.Message.created_at.desc(), models.Message.id.desc())
        .limit(limit)
        .all()
    )


def add_read_receipt(db: Session, message_id: int, user_id: int) -> bool:
    """Append a read receipt; returns False when the user already has one."""
    exists = (
        db.query(models.MessageRead.id)
        .filter(models.MessageRead.message_id == message_id, models.MessageRead.user_id == user_id)
        .first()
    )
    if exists:
        return False
    db.add(models.MessageRead(message_id=message_id, user_id=user_id, read_at=utcnow()))
    try:
        db.flush()
    except IntegrityError:
        # a concurrent reader won the unique constraint
        db.rollback()
        return False
    return True


def mark_status_read(db: Session, message_id: int) -> int:
    return (
        db.query(models.Message)
        .filter(
            models.Message.id == message_id,
            models.Message.deleted_at.is_(None),
            models.Message.status != "deleted",
        )
        .update({models.Message.status: "read"}, synchronize_session=False)
    )


def mark_deleted(db: Session, message_id: int, at: Optional[datetime.datetime] = None) -> bool:
    """Apply the terminal transition. Only the first caller sees True."""
    updated = (
        db.query(models.Message)
        .filter(models.Message.id == message_id, models.Message.deleted_at.is_(None))
        .update(
            {models.Message.deleted_at: at or utcnow(), models.Message.status: "deleted"},
            synchronize_session=False,
        )
    )
    return updated == 1


def find_expired_ids(db: Session, now: datetime.datetime) -> List[int]:
    rows = (
        db.query(models.Message.id)
        .filter(
            models.Message.is_self_destructing.is_(True),
            models.Message.self_destruct_at <= now,
            models.Message.deleted_at.is_(None),
        )
        .order_by(models.Message.self_destruct_at.asc())
        .all()
    )
    return [r.id for r in rows]
