import mimetypes
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from urllib.parse import quote

from ..db import models
from ..deps.auth import get_current_user
from ..deps.services import get_storage
from ..storage import BlobStore

router = APIRouter()


@router.get("/files/{key:path}")
def serve_file(key: str, current_user: models.User = Depends(get_current_user), store: BlobStore = Depends(get_storage)):
    try:
        data = store.open(key)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Not found")
    filename = key.rsplit("/", 1)[-1]
    media_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    resp = Response(content=data, media_type=media_type)
    # ASCII-safe header value with RFC 5987 filename*
    safe_ascii = filename.encode("ascii", "ignore").decode("ascii") or "file"
    resp.headers["Content-Disposition"] = (
        f"inline; filename=\"{safe_ascii}\"; filename*=UTF-8''{quote(filename)}"
    )
    return resp
