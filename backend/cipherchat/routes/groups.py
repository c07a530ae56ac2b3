import logging
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from ..db import models, schemas
from ..controllers import groups_controller, users_controller
from ..deps.db import get_db
from ..deps.auth import get_current_user
from ..deps.services import get_storage
from ..storage import BlobStore
from ..ws.ws_manager import group_room, manager
from .users import read_avatar

router = APIRouter()
logger = logging.getLogger(__name__)


def _load_membership(db: Session, group_id: int, user_id: int):
    group = groups_controller.get_group(db, group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    membership = groups_controller.get_membership(db, group_id, user_id)
    if not membership:
        raise HTTPException(status_code=403, detail="Not a member of this group")
    return group, membership


def _require_admin(membership: models.GroupMember) -> None:
    if membership.role != "admin":
        raise HTTPException(status_code=403, detail="Admin role required")


def _guard_last_admin(db: Session, group_id: int, membership: models.GroupMember) -> None:
    if membership.role == "admin" and groups_controller.admin_count(db, group_id) <= 1:
        raise HTTPException(status_code=400, detail="Group must keep at least one admin")


@router.post("/groups", response_model=schemas.GroupOut)
def create_group(body: schemas.GroupCreate, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    group = groups_controller.create_group(db, body, current_user.id)
    room = group_room(group.id)
    for m in group.members:
        manager.join_user_to_room(m.user_id, room)
    logger.info(f"Group created group_id={group.id} creator_id={current_user.id} members={group.member_count}")
    return group


@router.get("/groups", response_model=List[schemas.GroupOut])
def list_groups(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return groups_controller.get_groups_for_user(db, current_user.id)


@router.get("/groups/{group_id}", response_model=schemas.GroupOut)
def read_group(group_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    group, _ = _load_membership(db, group_id, current_user.id)
    return group


@router.put("/groups/{group_id}/settings", response_model=schemas.GroupOut)
def update_group_settings(
    group_id: int,
    body: schemas.GroupSettingsUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    group, membership = _load_membership(db, group_id, current_user.id)
    _require_admin(membership)
    return groups_controller.update_settings(db, group, body)


@router.post("/groups/{group_id}/avatar", response_model=schemas.AvatarOut)
async def upload_group_avatar(
    group_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
    store: BlobStore = Depends(get_storage),
):
    group, membership = _load_membership(db, group_id, current_user.id)
    _require_admin(membership)
    data = await read_avatar(file)
    blob = store.put(data, filename=file.filename or "avatar", content_type=file.content_type, folder="group-avatars")
    old_key = group.avatar_key
    groups_controller.set_avatar(db, group, blob.url, blob.key)
    if old_key:
        store.delete(old_key)
    return {"url": blob.url}


@router.post("/groups/{group_id}/invite/{user_id}", response_model=schemas.GroupOut)
def invite_member(group_id: int, user_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    group, membership = _load_membership(db, group_id, current_user.id)
    if not group.allow_invites and membership.role != "admin":
        raise HTTPException(status_code=403, detail="Invites are disabled for this group")
    if not users_controller.get_user(db, user_id):
        raise HTTPException(status_code=404, detail="User not found")
    if groups_controller.get_membership(db, group_id, user_id):
        raise HTTPException(status_code=400, detail="User is already a member")
    groups_controller.add_member(db, group_id, user_id)
    manager.join_user_to_room(user_id, group_room(group_id))
    logger.info(f"Group member added group_id={group_id} user_id={user_id} by={current_user.id}")
    db.expire_all()
    return groups_controller.get_group(db, group_id)


@router.delete("/groups/{group_id}/members/{user_id}", response_model=schemas.GroupOut)
def remove_member(group_id: int, user_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    _, membership = _load_membership(db, group_id, current_user.id)
    if user_id != current_user.id:
        _require_admin(membership)
    target = groups_controller.get_membership(db, group_id, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="Member not found")
    _guard_last_admin(db, group_id, target)
    groups_controller.remove_member(db, group_id, user_id)
    manager.remove_user_from_room(user_id, group_room(group_id))
    logger.info(f"Group member removed group_id={group_id} user_id={user_id} by={current_user.id}")
    return groups_controller.get_group(db, group_id)


@router.put("/groups/{group_id}/members/{user_id}/role", response_model=schemas.GroupMemberOut)
def change_member_role(
    group_id: int,
    user_id: int,
    body: schemas.MemberRoleUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    _, membership = _load_membership(db, group_id, current_user.id)
    _require_admin(membership)
    target = groups_controller.get_membership(db, group_id, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="Member not found")
    if body.role != "admin":
        _guard_last_admin(db, group_id, target)
    return groups_controller.update_member_role(db, target, body.role)


@router.post("/groups/{group_id}/leave")
def leave_group(group_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    _, membership = _load_membership(db, group_id, current_user.id)
    _guard_last_admin(db, group_id, membership)
    groups_controller.remove_member(db, group_id, current_user.id)
    manager.remove_user_from_room(current_user.id, group_room(group_id))
    logger.info(f"Group left group_id={group_id} user_id={current_user.id}")
    return {"ok": True}


@router.delete("/groups/{group_id}")
def delete_group(group_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    group, membership = _load_membership(db, group_id, current_user.id)
    _require_admin(membership)
    member_ids = [m.user_id for m in group.members]
    groups_controller.soft_delete_group(db, group)
    room = group_room(group_id)
    for uid in member_ids:
        manager.remove_user_from_room(uid, room)
    logger.info(f"Group deleted group_id={group_id} by={current_user.id}")
    return {"ok": True}
