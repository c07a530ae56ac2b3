import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import models, schemas
from ..controllers import friends_controller, users_controller
from ..deps.db import get_db
from ..deps.auth import get_current_user

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/friends", response_model=List[schemas.PresenceUserOut])
def list_friends(db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    return friends_controller.list_friends(db, current_user.id)


@router.post("/friends", response_model=schemas.PresenceUserOut)
def add_friend(body: schemas.FriendAddIn, db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)):
    friend = users_controller.get_user_by_email(db, body.email)
    if not friend or friend.is_deleted:
        raise HTTPException(status_code=404, detail="User not found")
    if friend.id == current_user.id:
        raise HTTPException(status_code=400, detail="Cannot add yourself as a friend")
    if friends_controller.are_friends(db, current_user.id, friend.id):
        raise HTTPException(status_code=400, detail="Already friends")
    friends_controller.add_friend(db, current_user.id, friend.id)
    logger.info(f"Friend added user_id={current_user.id} friend_id={friend.id}")
    return friend
