from sqlalchemy.orm import Session
from typing import List, Optional, Tuple

from ..db import models


class UserDirectory:
    """Read-only lookups of user keys and group membership."""

    def __init__(self, db: Session):
        self.db = db

    def encryption_key(self, user_id: int) -> Optional[str]:
        row = (
            self.db.query(models.User.encryption_key)
            .filter(models.User.id == user_id, models.User.deleted_at.is_(None))
            .first()
        )
        return row.encryption_key if row else None

    def group_exists(self, group_id: int) -> bool:
        return (
            self.db.query(models.Group.id)
            .filter(models.Group.id == group_id, models.Group.deleted_at.is_(None))
            .first()
            is not None
        )

    def member_keys(self, group_id: int) -> List[Tuple[int, str]]:
        """Snapshot of ``(user_id, key)`` for every current member, in one query."""
        rows = (
            self.db.query(models.GroupMember.user_id, models.User.encryption_key)
            .join(models.User, models.User.id == models.GroupMember.user_id)
            .filter(models.GroupMember.group_id == group_id, models.User.deleted_at.is_(None))
            .order_by(models.GroupMember.joined_at.asc(), models.GroupMember.user_id.asc())
            .all()
        )
        return [(r.user_id, r.encryption_key) for r in rows]

    def is_member(self, group_id: int, user_id: int) -> bool:
        return self._role(group_id, user_id) is not None

    def is_group_admin(self, group_id: int, user_id: int) -> bool:
        return self._role(group_id, user_id) == "admin"

    def _role(self, group_id: int, user_id: int) -> Optional[str]:
        row = (
            self.db.query(models.GroupMember.role)
            .filter(models.GroupMember.group_id == group_id, models.GroupMember.user_id == user_id)
            .first()
        )
        return row.role if row else None
