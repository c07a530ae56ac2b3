from sqlalchemy import Table, Column, Integer, ForeignKey
from ..database import Base


# Friendship is stored in both directions
user_friends_table = Table(
    "user_friends",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("friend_id", Integer, ForeignKey("users.id"), primary_key=True),
)
