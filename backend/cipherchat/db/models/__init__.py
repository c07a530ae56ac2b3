from ..database import Base
from .association import user_friends_table
from .user import User
from .group import Group
from .group_member import GroupMember, MEMBER_ROLES
from .message import Message, MESSAGE_STATUSES, MAX_SELF_DESTRUCT_MS
from .message_read import MessageRead

__all__ = [
    "Base",
    "user_friends_table",
    "User",
    "Group",
    "GroupMember",
    "MEMBER_ROLES",
    "Message",
    "MESSAGE_STATUSES",
    "MAX_SELF_DESTRUCT_MS",
    "MessageRead",
]
