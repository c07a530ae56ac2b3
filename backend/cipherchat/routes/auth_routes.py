import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from ..core import security
from ..core.rate_limit import limiter, login_limit
from ..db import models, schemas
from ..controllers import users_controller
from ..deps.db import get_db
from ..deps.auth import get_current_user

router = APIRouter()
logger = logging.getLogger(__name__)


def _issue_token(user: models.User) -> dict:
    access_token = security.create_access_token(data={"sub": str(user.id)})
    return {"access_token": access_token, "token_type": "bearer"}


@router.post("/auth/register", response_model=schemas.Token)
def register_user(body: schemas.RegisterIn, db: Session = Depends(get_db)):
    if users_controller.get_user_by_username(db, body.username.strip()):
        raise HTTPException(status_code=400, detail="Username already registered")
    if users_controller.get_user_by_email(db, body.email):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = users_controller.create_user(db, body)
    logger.info(f"User registered user_id={user.id}")
    return _issue_token(user)


@router.post("/token", response_model=schemas.Token)
@limiter.limit(login_limit)
def login_for_access_token(request: Request, db: Session = Depends(get_db), form_data: OAuth2PasswordRequestForm = Depends()):
    user = users_controller.get_user_by_login(db, form_data.username)
    if not user or not security.verify_password(form_data.password, user.password_hash):
        logger.warning("Failed login attempt")
        raise HTTPException(status_code=401, detail="Incorrect username or password", headers={"WWW-Authenticate": "Bearer"})
    return _issue_token(user)


@router.get("/users/me", response_model=schemas.UserOut)
def read_users_me(current_user: models.User = Depends(get_current_user)):
    return current_user
