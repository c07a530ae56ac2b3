import datetime
from sqlalchemy import func, or_
from sqlalchemy.orm import Session
from typing import Optional

from ..db import models, schemas
from ..core.crypto import generate_key
from ..core.security import get_password_hash


def get_user(db: Session, user_id: int):
    return (
        db.query(models.User)
        .filter(models.User.id == user_id, models.User.deleted_at.is_(None))
        .first()
    )


def get_user_by_username(db: Session, username: str):
    return db.query(models.User).filter(models.User.username == username).first()


def get_user_by_email(db: Session, email: str):
    return db.query(models.User).filter(models.User.email == email.strip().lower()).first()


def get_user_by_login(db: Session, login: str):
    """Resolve a login name that may be either a username or an e-mail."""
    login = login.strip()
    return (
        db.query(models.User)
        .filter(
            or_(models.User.username == login, models.User.email == login.lower()),
            models.User.deleted_at.is_(None),
        )
        .first()
    )


def create_user(db: Session, body: schemas.RegisterIn, role: str = "user"):
    db_user = models.User(
        username=body.username.strip(),
        email=body.email.strip().lower(),
        password_hash=get_password_hash(body.password),
        role=role,
        encryption_key=generate_key(),
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def list_online_users(db: Session):
    return (
        db.query(models.User)
        .filter(models.User.is_online.is_(True), models.User.deleted_at.is_(None))
        .order_by(models.User.username.asc())
        .all()
    )


def update_user(db: Session, user: models.User, data: schemas.UserUpdate):
    if data.username is not None:
        user.username = data.username.strip()
    db.commit()
    db.refresh(user)
    return user


def set_avatar(db: Session, user: models.User, url: Optional[str], key: Optional[str]):
    user.avatar_url = url
    user.avatar_key = key
    db.commit()
    db.refresh(user)
    return user


def set_presence(db: Session, user_id: int, online: bool):
    """Flag the user online/offline and stamp ``last_seen`` in one UPDATE."""
    db.query(models.User).filter(models.User.id == user_id).update(
        {
            models.User.is_online: online,
            models.User.last_seen: datetime.datetime.now(datetime.timezone.utc),
        },
        synchronize_session=False,
    )
    db.commit()


def username_taken(db: Session, username: str, exclude_user_id: Optional[int] = None) -> bool:
    q = db.query(func.count(models.User.id)).filter(models.User.username == username.strip())
    if exclude_user_id is not None:
        q = q.filter(models.User.id != exclude_user_id)
    return q.scalar() > 0
