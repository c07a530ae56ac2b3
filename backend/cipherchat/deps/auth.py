from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from ..core import security
from ..controllers import users_controller
from .db import get_db


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


def user_from_token(db: Session, token: str):
    """Resolve a bearer token to a live user, or None."""
    payload = security.decode_access_token(token)
    if payload is None:
        return None
    sub = payload.get("sub")
    if sub is None:
        return None
    try:
        user_id = int(sub)
    except (TypeError, ValueError):
        return None
    return users_controller.get_user(db, user_id)


def get_current_user(db: Session = Depends(get_db), token: str = Depends(oauth2_scheme)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    user = user_from_token(db, token)
    if user is None:
        raise credentials_exception
    return user
