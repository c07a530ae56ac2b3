import logging
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..db import models, schemas
from ..controllers import users_controller
from ..deps.db import get_db
from ..deps.auth import get_current_user
from ..deps.services import get_storage
from ..storage import BlobStore

router = APIRouter()
logger = logging.getLogger(__name__)


async def read_avatar(file: UploadFile) -> bytes:
    """Read an uploaded avatar, enforcing image type and AVATAR_MAX_MB."""
    mime_type = file.content_type or "application/octet-stream"
    if not mime_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Avatar must be an image")
    data = await file.read()
    max_bytes = get_settings().AVATAR_MAX_MB * 1024 * 1024
    if not data or len(data) > max_bytes:
        raise HTTPException(status_code=400, detail="File too large or empty")
    return data


@router.get("/users/active", response_model=List[schemas.PresenceUserOut])
def list_active_users(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return users_controller.list_online_users(db)


@router.put("/users/me", response_model=schemas.UserOut)
def update_me(body: schemas.UserUpdate, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    if body.username is not None and users_controller.username_taken(db, body.username, exclude_user_id=current_user.id):
        raise HTTPException(status_code=400, detail="Username already taken")
    return users_controller.update_user(db, current_user, body)


@router.put("/users/me/avatar", response_model=schemas.AvatarOut)
async def upload_my_avatar(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
    store: BlobStore = Depends(get_storage),
):
    data = await read_avatar(file)
    blob = store.put(data, filename=file.filename or "avatar", content_type=file.content_type, folder="avatars")
    old_key = current_user.avatar_key
    users_controller.set_avatar(db, current_user, blob.url, blob.key)
    if old_key:
        store.delete(old_key)
    logger.info(f"Avatar updated user_id={current_user.id}")
    return {"url": blob.url}


@router.delete("/users/me/avatar", response_model=schemas.AvatarOut)
def delete_my_avatar(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
    store: BlobStore = Depends(get_storage),
):
    old_key = current_user.avatar_key
    users_controller.set_avatar(db, current_user, None, None)
    if old_key:
        store.delete(old_key)
    return {"url": None}


@router.get("/users/{user_id}", response_model=schemas.PresenceUserOut)
def read_user(user_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    user = users_controller.get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user
