import datetime
from sqlalchemy.orm import Session, selectinload
from typing import Optional

from ..db import models, schemas


def _now():
    return datetime.datetime.now(datetime.timezone.utc)


def get_group(db: Session, group_id: int):
    return (
        db.query(models.Group)
        .options(selectinload(models.Group.members).selectinload(models.GroupMember.user))
        .filter(models.Group.id == group_id, models.Group.deleted_at.is_(None))
        .first()
    )


def get_groups_for_user(db: Session, user_id: int):
    return (
        db.query(models.Group)
        .join(models.GroupMember, models.GroupMember.group_id == models.Group.id)
        .filter(models.GroupMember.user_id == user_id, models.Group.deleted_at.is_(None))
        .order_by(models.Group.last_activity.desc(), models.Group.id.desc())
        .all()
    )


def get_group_ids_for_user(db: Session, user_id: int) -> list[int]:
    rows = (
        db.query(models.GroupMember.group_id)
        .join(models.Group, models.Group.id == models.GroupMember.group_id)
        .filter(models.GroupMember.user_id == user_id, models.Group.deleted_at.is_(None))
        .all()
    )
    return [r.group_id for r in rows]


def get_membership(db: Session, group_id: int, user_id: int) -> Optional[models.GroupMember]:
    return (
        db.query(models.GroupMember)
        .filter(models.GroupMember.group_id == group_id, models.GroupMember.user_id == user_id)
        .first()
    )


def is_admin(db: Session, group_id: int, user_id: int) -> bool:
    m = get_membership(db, group_id, user_id)
    return m is not None and m.role == "admin"


def admin_count(db: Session, group_id: int) -> int:
    return (
        db.query(models.GroupMember)
        .filter(models.GroupMember.group_id == group_id, models.GroupMember.role == "admin")
        .count()
    )


def create_group(db: Session, body: schemas.GroupCreate, creator_id: int):
    group = models.Group(
        name=body.name.strip(),
        description=body.description,
        creator_id=creator_id,
        is_private=body.is_private,
        member_count=0,
        message_count=0,
        last_activity=_now(),
    )
    db.add(group)
    db.flush()
    member_ids = [creator_id] + [uid for uid in dict.fromkeys(body.member_ids) if uid != creator_id]
    for uid in member_ids:
        exists = (
            db.query(models.User.id)
            .filter(models.User.id == uid, models.User.deleted_at.is_(None))
            .first()
        )
        if not exists:
            continue
        role = "admin" if uid == creator_id else "member"
        db.add(models.GroupMember(group_id=group.id, user_id=uid, role=role))
        group.member_count += 1
    db.commit()
    return get_group(db, group.id)


def add_member(db: Session, group_id: int, user_id: int, role: str = "member"):
    db.add(models.GroupMember(group_id=group_id, user_id=user_id, role=role))
    db.query(models.Group).filter(models.Group.id == group_id).update(
        {models.Group.member_count: models.Group.member_count + 1},
        synchronize_session=False,
    )
    db.commit()


def remove_member(db: Session, group_id: int, user_id: int) -> bool:
    deleted = (
        db.query(models.GroupMember)
        .filter(models.GroupMember.group_id == group_id, models.GroupMember.user_id == user_id)
        .delete(synchronize_session=False)
    )
    if deleted:
        db.query(models.Group).filter(models.Group.id == group_id).update(
            {models.Group.member_count: models.Group.member_count - 1},
            synchronize_session=False,
        )
    db.commit()
    db.expire_all()
    return bool(deleted)


def update_member_role(db: Session, membership: models.GroupMember, role: str):
    membership.role = role
    db.commit()
    db.refresh(membership)
    return membership


def update_settings(db: Session, group: models.Group, data: schemas.GroupSettingsUpdate):
    for field, value in data.model_dump(exclude_unset=True).items():
        if value is None:
            continue
        setattr(group, field, value.strip() if field == "name" else value)
    db.commit()
    db.refresh(group)
    return group


def set_avatar(db: Session, group: models.Group, url: Optional[str], key: Optional[str]):
    group.avatar_url = url
    group.avatar_key = key
    db.commit()
    db.refresh(group)
    return group


def soft_delete_group(db: Session, group: models.Group):
    group.deleted_at = _now()
    db.commit()
