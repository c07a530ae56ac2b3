import datetime
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..db import models, schemas
from ..controllers import groups_controller
from ..deps.db import get_db
from ..deps.auth import get_current_user
from ..deps.services import get_message_service, get_storage
from ..services.message_service import MessageService, SelfDestruct
from ..storage import BlobStore

router = APIRouter()
logger = logging.getLogger(__name__)

ALLOWED_PREFIXES = ("image/", "video/", "audio/")
ALLOWED_SPECIFIC = {
    "application/pdf",
    # Word
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    # Excel
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    # PowerPoint
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    # Archives
    "application/zip",
    "application/x-zip-compressed",
    "application/vnd.rar",
    "application/x-rar-compressed",
    "application/x-7z-compressed",
    "application/x-tar",
    "application/gzip",
    "application/x-gzip",
    "text/plain",
}


def attachment_type(mime_type: str) -> str:
    for prefix in ALLOWED_PREFIXES:
        if mime_type.startswith(prefix):
            return prefix.rstrip("/")
    return "file"


def _validate_upload(mime_type: str, size_bytes: int, max_bytes: int) -> None:
    if size_bytes <= 0 or size_bytes > max_bytes:
        raise HTTPException(status_code=400, detail="File too large or empty")
    ok = mime_type.startswith(ALLOWED_PREFIXES) or mime_type in ALLOWED_SPECIFIC
    if not ok:
        raise HTTPException(status_code=400, detail="Unsupported file type")


def _send_args(body: schemas.MessageCreate):
    self_destruct = SelfDestruct(body.self_destruct.delay_ms) if body.self_destruct else None
    attachments = [a.model_dump(mode="json") for a in body.attachments]
    return self_destruct, attachments


@router.post("/messages/user/{user_id}", response_model=schemas.SendResultOut)
def send_direct_message(
    user_id: int,
    body: schemas.MessageCreate,
    current_user: models.User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
):
    self_destruct, attachments = _send_args(body)
    return service.send_direct(current_user.id, user_id, body.content, self_destruct, attachments)


@router.post("/messages/group/{group_id}", response_model=schemas.SendResultOut)
def send_group_message(
    group_id: int,
    body: schemas.MessageCreate,
    current_user: models.User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
):
    self_destruct, attachments = _send_args(body)
    return service.send_group(current_user.id, group_id, body.content, self_destruct, attachments)


@router.get("/messages/user/{user_id}", response_model=List[schemas.MessageOut])
def get_direct_messages(
    user_id: int,
    limit: Optional[int] = Query(None, ge=1),
    current_user: models.User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
):
    return [v.to_dict() for v in service.fetch_direct(current_user.id, user_id, limit)]


@router.get("/messages/group/{group_id}", response_model=List[schemas.MessageOut])
def get_group_messages(
    group_id: int,
    limit: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
):
    if groups_controller.get_group(db, group_id) and not groups_controller.get_membership(db, group_id, current_user.id):
        raise HTTPException(status_code=403, detail="Not a member of this group")
    return [v.to_dict() for v in service.fetch_group(current_user.id, group_id, limit)]


@router.post("/messages/{message_id}/read")
def mark_message_read(
    message_id: int,
    current_user: models.User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
):
    added = service.mark_read(message_id, current_user.id)
    return {"ok": True, "added": added}


@router.delete("/messages/{message_id}")
def delete_message(
    message_id: int,
    current_user: models.User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service),
):
    service.soft_delete(message_id, current_user.id)
    return {"ok": True}


@router.post("/messages/attachment", response_model=schemas.AttachmentDescriptor)
async def upload_attachment(
    file: UploadFile = File(...),
    group_id: Optional[int] = Form(None),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
    store: BlobStore = Depends(get_storage),
):
    max_bytes = get_settings().FILES_MAX_MB * 1024 * 1024
    if group_id is not None:
        group = groups_controller.get_group(db, group_id)
        if not group:
            raise HTTPException(status_code=404, detail="Group not found")
        if not groups_controller.get_membership(db, group_id, current_user.id):
            raise HTTPException(status_code=403, detail="Not a member of this group")
        max_bytes = min(max_bytes, group.max_file_size)
    data = await file.read()
    mime_type = file.content_type or "application/octet-stream"
    _validate_upload(mime_type, len(data), max_bytes)
    name = file.filename or "file"
    blob = store.put(data, filename=name, content_type=mime_type, folder="attachments")
    logger.info(f"Attachment stored user_id={current_user.id} key={blob.key} size={len(data)}")
    return {
        "type": attachment_type(mime_type),
        "url": blob.url,
        "key": blob.key,
        "name": name,
        "size": len(data),
        "mime_type": mime_type,
        "uploaded_at": datetime.datetime.now(datetime.timezone.utc),
    }
