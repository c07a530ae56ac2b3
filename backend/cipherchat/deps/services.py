from fastapi import Depends
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..services.message_service import MessageService
from ..storage import BlobStore, get_blob_store
from ..ws.relay import relay
from .db import get_db


def get_message_service(db: Session = Depends(get_db)) -> MessageService:
    return MessageService(db, relay=relay, fetch_limit=get_settings().MESSAGE_FETCH_LIMIT)


def get_storage() -> BlobStore:
    return get_blob_store()
