from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
import json
import logging

from .relay import relay
from .ws_manager import group_room, manager
from ..core.config import get_settings
from ..core.errors import ChatError
from ..controllers import friends_controller, groups_controller, users_controller
from ..db import database
from ..deps.auth import user_from_token
from ..services.message_service import MessageService, SelfDestruct

ws_router = APIRouter()
logger = logging.getLogger(__name__)


def _error(code: str, message: str = None) -> dict:
    event = {"v": 1, "type": "error", "code": code}
    if message:
        event["message"] = message
    return event


def _self_destruct(data: dict):
    raw = data.get("self_destruct")
    if not raw:
        return None
    return SelfDestruct(int(raw["delay_ms"]))


def _content(data: dict) -> str:
    content = data.get("content")
    if not isinstance(content, str) or not content:
        raise ValueError("content")
    return content


def _call_service(method: str, *args):
    """Run one MessageService operation in its own short-lived session."""
    db = database.SessionLocal()
    try:
        service = MessageService(db, relay=relay, fetch_limit=get_settings().MESSAGE_FETCH_LIMIT)
        return getattr(service, method)(*args)
    finally:
        db.close()


def _friend_ids(user_id: int) -> list:
    db = database.SessionLocal()
    try:
        return friends_controller.friend_ids(db, user_id)
    finally:
        db.close()


def _set_presence(user_id: int, online: bool) -> None:
    db = database.SessionLocal()
    try:
        users_controller.set_presence(db, user_id, online)
    finally:
        db.close()


def _open_session(token: str):
    """Authenticate and mark the user online; returns None for a bad token."""
    db = database.SessionLocal()
    try:
        user = user_from_token(db, token)
        if user is None:
            return None
        group_ids = groups_controller.get_group_ids_for_user(db, user.id)
        first_connection = not manager.is_online(user.id)
        users_controller.set_presence(db, user.id, True)
        return user.id, group_ids, first_connection
    finally:
        db.close()


async def _notify_friends(user_id: int, online: bool) -> None:
    friend_ids = await run_in_threadpool(_friend_ids, user_id)
    event = {"v": 1, "type": "friend_status", "user_id": user_id, "online": online}
    for fid in friend_ids:
        if manager.is_online(fid):
            await manager.send_to_user(fid, event)


async def _handle_event(websocket: WebSocket, connection_id: str, user_id: int, data: dict) -> None:
    t = data.get("type")
    if t == "private_message":
        recipient_id = int(data["recipient_id"])
        content = _content(data)
        result = await run_in_threadpool(_call_service, "send_direct", user_id, recipient_id, content, _self_destruct(data))
        await websocket.send_json({
            "v": 1,
            "type": "message_sent",
            "message_id": result.id,
            "recipient_id": recipient_id,
            "created_at": result.created_at.isoformat(),
        })
    elif t == "group_message":
        group_id = int(data["group_id"])
        content = _content(data)
        result = await run_in_threadpool(_call_service, "send_group", user_id, group_id, content, _self_destruct(data))
        await websocket.send_json({
            "v": 1,
            "type": "message_sent",
            "message_id": result.id,
            "group_id": group_id,
            "created_at": result.created_at.isoformat(),
        })
    elif t == "typing":
        recipient_id = int(data["recipient_id"])
        await manager.send_to_user(recipient_id, {
            "v": 1,
            "type": "typing",
            "user_id": user_id,
            "is_typing": bool(data.get("is_typing", True)),
        })
    elif t == "group_typing":
        group_id = int(data["group_id"])
        room = group_room(group_id)
        if room not in manager.connection_rooms.get(connection_id, set()):
            await websocket.send_json(_error("FORBIDDEN", "Not a member"))
            return
        await manager.broadcast_room(room, {
            "v": 1,
            "type": "group_typing",
            "group_id": group_id,
            "user_id": user_id,
            "is_typing": bool(data.get("is_typing", True)),
        }, exclude=connection_id)
    elif t == "mark_read":
        message_id = int(data["message_id"])
        added = await run_in_threadpool(_call_service, "mark_read", message_id, user_id)
        await websocket.send_json({"v": 1, "type": "read_ack", "message_id": message_id, "added": added})
    else:
        await websocket.send_json(_error("INVALID_PAYLOAD"))
        logger.warning(f"WS invalid payload user_id={user_id} type={t}")


@ws_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    session = await run_in_threadpool(_open_session, token)
    if session is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    user_id, group_ids, first_connection = session

    await websocket.accept()
    connection_id = manager.register(user_id, websocket)
    for gid in group_ids:
        manager.join_room(connection_id, group_room(gid))
    try:
        await websocket.send_json({
            "v": 1,
            "type": "presence_snapshot",
            "online_user_ids": sorted(manager.online_user_ids()),
        })
        if first_connection:
            await _notify_friends(user_id, True)

        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await websocket.send_json(_error("INVALID_PAYLOAD"))
                continue
            if not isinstance(data, dict):
                await websocket.send_json(_error("INVALID_PAYLOAD"))
                continue
            logger.debug(f"WS received type={data.get('type')} user_id={user_id}")
            try:
                await _handle_event(websocket, connection_id, user_id, data)
            except ChatError as exc:
                await websocket.send_json(_error(exc.code, exc.detail))
            except (KeyError, TypeError, ValueError):
                await websocket.send_json(_error("INVALID_PAYLOAD"))
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception(f"WS error user_id={user_id}")
    finally:
        manager.unregister(connection_id)
        if not manager.is_online(user_id):
            # before any await, so a cancelled handler still goes offline
            _set_presence(user_id, False)
            await _notify_friends(user_id, False)
