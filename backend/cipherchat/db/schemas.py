from pydantic import BaseModel, ConfigDict, Field
import datetime
from typing import List, Literal, Optional

from .models.message import MAX_SELF_DESTRUCT_MS

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class RegisterIn(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=6)


class UserBasic(BaseModel):
    id: int
    username: str
    avatar_url: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class UserOut(UserBasic):
    email: str
    role: str
    is_online: bool = False
    last_seen: Optional[datetime.datetime] = None
    created_at: Optional[datetime.datetime] = None


class PresenceUserOut(UserBasic):
    is_online: bool = False
    last_seen: Optional[datetime.datetime] = None


class UserUpdate(BaseModel):
    username: Optional[str] = Field(default=None, min_length=3, max_length=50)


class AvatarOut(BaseModel):
    url: Optional[str] = None


class Token(BaseModel):
    access_token: str
    token_type: str


class FriendAddIn(BaseModel):
    email: str = Field(pattern=EMAIL_PATTERN)


# Groups

class GroupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    is_private: bool = False
    member_ids: List[int] = []


class GroupSettingsUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    is_private: Optional[bool] = None
    allow_invites: Optional[bool] = None
    message_retention_days: Optional[int] = Field(default=None, ge=0)
    max_file_size: Optional[int] = Field(default=None, gt=0)


class MemberRoleUpdate(BaseModel):
    role: Literal["admin", "moderator", "member"]


class GroupMemberOut(BaseModel):
    user: UserBasic
    role: str
    joined_at: Optional[datetime.datetime] = None

    model_config = ConfigDict(from_attributes=True)


class GroupOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    creator_id: int
    is_private: bool
    allow_invites: bool
    message_retention_days: int
    max_file_size: int
    last_activity: Optional[datetime.datetime] = None
    message_count: int
    member_count: int
    admin_ids: List[int] = []
    members: List[GroupMemberOut] = []

    model_config = ConfigDict(from_attributes=True)


# Messages

class SelfDestructIn(BaseModel):
    delay_ms: int = Field(gt=0, le=MAX_SELF_DESTRUCT_MS)


class AttachmentDescriptor(BaseModel):
    type: str
    url: str
    key: str
    name: str
    size: int
    mime_type: str
    uploaded_at: datetime.datetime


class MessageCreate(BaseModel):
    content: str = Field(min_length=1)
    self_destruct: Optional[SelfDestructIn] = None
    attachments: List[AttachmentDescriptor] = []


class SendResultOut(BaseModel):
    id: int
    created_at: datetime.datetime


class ReadReceiptOut(BaseModel):
    user_id: int
    read_at: datetime.datetime


class MessageOut(BaseModel):
    id: int
    sender_id: int
    recipient_id: Optional[int] = None
    group_id: Optional[int] = None
    content: Optional[str] = None
    unreadable: bool = False
    attachments: List[AttachmentDescriptor] = []
    status: str
    is_self_destructing: bool = False
    self_destruct_at: Optional[datetime.datetime] = None
    created_at: datetime.datetime
    read_by: List[ReadReceiptOut] = []

    model_config = ConfigDict(from_attributes=True)
