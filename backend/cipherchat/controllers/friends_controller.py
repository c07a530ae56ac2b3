from sqlalchemy.orm import Session

from ..db import models


def list_friends(db: Session, user_id: int):
    return (
        db.query(models.User)
        .join(models.user_friends_table, models.user_friends_table.c.friend_id == models.User.id)
        .filter(models.user_friends_table.c.user_id == user_id, models.User.deleted_at.is_(None))
        .order_by(models.User.username.asc())
        .all()
    )


def friend_ids(db: Session, user_id: int) -> list[int]:
    rows = (
        db.query(models.user_friends_table.c.friend_id)
        .filter(models.user_friends_table.c.user_id == user_id)
        .all()
    )
    return [r.friend_id for r in rows]


def are_friends(db: Session, user_id: int, other_id: int) -> bool:
    return (
        db.query(models.user_friends_table)
        .filter(
            models.user_friends_table.c.user_id == user_id,
            models.user_friends_table.c.friend_id == other_id,
        )
        .first()
        is not None
    )


def add_friend(db: Session, user_id: int, friend_id: int):
    # Friendship is mutual: write both directions in one transaction
    table = models.user_friends_table
    db.execute(table.insert(), [
        {"user_id": user_id, "friend_id": friend_id},
        {"user_id": friend_id, "friend_id": user_id},
    ])
    db.commit()
