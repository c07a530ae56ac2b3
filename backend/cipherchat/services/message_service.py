"""Message lifecycle: send, fetch, read receipts, soft delete and expiry sweep.

Direct messages are sealed under the recipient's key, with a second copy
under the sender's key so the sender can read their own history. Group
messages carry one entry per member at send time, all sharing a single IV.
Plaintext is never persisted.
"""

import datetime
import logging
from dataclasses import asdict, dataclass, field
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional, Tuple

from ..controllers import messages_controller
from ..core import crypto
from ..core.errors import (
    CryptoError,
    GroupNotFound,
    InvalidRequest,
    NotAMember,
    NotAuthorized,
    NotFound,
    RecipientNotFound,
    UserNotFound,
    translate_store_errors,
)
from ..db import models
from ..ws.relay import NullRelay, Relay
from .directory import UserDirectory

logger = logging.getLogger(__name__)

MAX_FETCH_LIMIT = 200


@dataclass(frozen=True)
class SelfDestruct:
    delay_ms: int


@dataclass(frozen=True)
class SendResult:
    id: int
    created_at: datetime.datetime


@dataclass
class MessageView:
    id: int
    sender_id: int
    recipient_id: Optional[int]
    group_id: Optional[int]
    content: Optional[str]
    unreadable: bool
    attachments: List[Dict[str, Any]]
    status: str
    is_self_destructing: bool
    self_destruct_at: Optional[datetime.datetime]
    created_at: datetime.datetime
    read_by: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SweepReport:
    scanned: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: List[int] = field(default_factory=list)


class MessageService:
    def __init__(
        self,
        db: Session,
        directory: Optional[UserDirectory] = None,
        relay: Optional[Relay] = None,
        fetch_limit: int = 50,
    ):
        self.db = db
        self.directory = directory or UserDirectory(db)
        self.relay = relay or NullRelay()
        self.fetch_limit = fetch_limit

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    @translate_store_errors
    def send_direct(
        self,
        sender_id: int,
        recipient_id: int,
        plaintext: str,
        self_destruct: Optional[SelfDestruct] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> SendResult:
        self._check_self_destruct(self_destruct)
        recipient_key = self.directory.encryption_key(recipient_id)
        if recipient_key is None:
            raise RecipientNotFound()

        payload = {"kind": "direct", **crypto.encrypt(plaintext, recipient_key).to_dict(), "sender_copy": None}
        if sender_id != recipient_id:
            sender_key = self.directory.encryption_key(sender_id)
            if sender_key is None:
                raise UserNotFound("Sender not found")
            payload["sender_copy"] = crypto.encrypt(plaintext, sender_key).to_dict()

        rec = messages_controller.insert_message(
            self.db,
            sender_id=sender_id,
            recipient_id=recipient_id,
            payload=payload,
            attachments=attachments,
            self_destruct_ms=self_destruct.delay_ms if self_destruct else None,
        )
        result = SendResult(id=rec.id, created_at=rec.created_at)
        self.db.commit()
        logger.info(f"Direct message saved id={result.id} sender_id={sender_id} recipient_id={recipient_id}")

        self._notify_user(recipient_id, {
            "v": 1,
            "type": "new_message",
            "message_id": result.id,
            "sender_id": sender_id,
            "recipient_id": recipient_id,
            "created_at": result.created_at.isoformat(),
        })
        return result

    @translate_store_errors
    def send_group(
        self,
        sender_id: int,
        group_id: int,
        plaintext: str,
        self_destruct: Optional[SelfDestruct] = None,
        attachments: Optional[List[Dict[str, Any]]] = None,
    ) -> SendResult:
        self._check_self_destruct(self_destruct)
        if not self.directory.group_exists(group_id):
            raise GroupNotFound()
        members = self.directory.member_keys(group_id)
        if not members or sender_id not in {uid for uid, _ in members}:
            raise NotAMember()

        iv = crypto.generate_iv()
        entries = []
        for uid, key in members:
            sealed = crypto.encrypt(plaintext, key, iv_hex=iv)
            entries.append({"user_id": uid, "ciphertext": sealed.ciphertext, "auth_tag": sealed.auth_tag})

        rec = messages_controller.insert_message(
            self.db,
            sender_id=sender_id,
            group_id=group_id,
            payload={"kind": "group", "iv": iv, "entries": entries},
            attachments=attachments,
            self_destruct_ms=self_destruct.delay_ms if self_destruct else None,
        )
        result = SendResult(id=rec.id, created_at=rec.created_at)
        messages_controller.bump_group_activity(self.db, group_id, result.created_at)
        self.db.commit()
        logger.info(f"Group message saved id={result.id} group_id={group_id} recipients={len(entries)}")

        self._notify_group(group_id, {
            "v": 1,
            "type": "new_message",
            "message_id": result.id,
            "sender_id": sender_id,
            "group_id": group_id,
            "created_at": result.created_at.isoformat(),
        })
        return result

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    @translate_store_errors
    def fetch_direct(self, user_id: int, other_user_id: int, limit: Optional[int] = None) -> List[MessageView]:
        key = self.directory.encryption_key(user_id)
        if key is None:
            raise UserNotFound()
        msgs = messages_controller.find_direct(self.db, user_id, other_user_id, self._limit(limit))
        return [self._view(m, *self._open_direct(m, user_id, key)) for m in msgs]

    @translate_store_errors
    def fetch_group(self, user_id: int, group_id: int, limit: Optional[int] = None) -> List[MessageView]:
        if not self.directory.group_exists(group_id):
            raise GroupNotFound()
        key = self.directory.encryption_key(user_id)
        if key is None:
            raise UserNotFound()
        msgs = messages_controller.find_group(self.db, group_id, self._limit(limit))
        return [self._view(m, *self._open_group(m, user_id, key)) for m in msgs]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @translate_store_errors
    def mark_read(self, message_id: int, user_id: int) -> bool:
        """Record that ``user_id`` read the message. Returns False on a repeat."""
        msg = messages_controller.get_message(self.db, message_id)
        if msg is None or msg.deleted_at is not None:
            raise NotFound("Message not found")
        if msg.group_id is not None:
            if not self.directory.is_member(msg.group_id, user_id):
                raise NotAuthorized()
        elif msg.recipient_id != user_id:
            raise NotAuthorized()

        sender_id = msg.sender_id
        added = messages_controller.add_read_receipt(self.db, message_id, user_id)
        if added:
            messages_controller.mark_status_read(self.db, message_id)
        self.db.commit()
        if added:
            self._notify_user(sender_id, {
                "v": 1,
                "type": "message_read",
                "message_id": message_id,
                "user_id": user_id,
            })
        return added

    @translate_store_errors
    def soft_delete(self, message_id: int, requesting_user_id: Optional[int] = None, *, system: bool = False) -> bool:
        """Soft-delete a message.

        User deletes (``system=False``) must come from the sender or an admin
        of the owning group, and raise ``NotFound`` when the message is gone
        or already deleted. System deletes (the expiry sweep) skip
        authorization and treat an already-deleted message as a no-op.
        """
        msg = messages_controller.get_message(self.db, message_id)
        if msg is None or msg.deleted_at is not None:
            if system:
                return False
            raise NotFound("Message not found")
        if not system:
            self._authorize_delete(msg, requesting_user_id)

        sender_id, recipient_id, group_id = msg.sender_id, msg.recipient_id, msg.group_id
        deleted = messages_controller.mark_deleted(self.db, message_id)
        self.db.commit()
        if not deleted:
            # lost the race against another delete of the same message
            if system:
                return False
            raise NotFound("Message not found")

        logger.info(f"Message soft-deleted id={message_id} system={system}")
        event = {"v": 1, "type": "message_deleted", "message_id": message_id}
        if group_id is not None:
            self._notify_group(group_id, {**event, "group_id": group_id})
        else:
            for uid in {sender_id, recipient_id}:
                self._notify_user(uid, {**event, "recipient_id": recipient_id})
        return True

    @translate_store_errors
    def sweep_expired(self, now: Optional[datetime.datetime] = None) -> SweepReport:
        """Soft-delete every self-destructing message whose time has come.

        Each message is handled on its own; a failure is logged and the sweep
        moves on. Failed messages stay eligible for the next run.
        """
        now = now or messages_controller.utcnow()
        report = SweepReport()
        expired = messages_controller.find_expired_ids(self.db, now)
        report.scanned = len(expired)
        for message_id in expired:
            try:
                if self.soft_delete(message_id, system=True):
                    report.deleted += 1
                else:
                    report.skipped += 1
            except Exception:
                logger.exception(f"Sweep could not delete message_id={message_id}")
                self.db.rollback()
                report.failed.append(message_id)
        if report.scanned:
            logger.info(
                f"Sweep finished scanned={report.scanned} deleted={report.deleted} "
                f"skipped={report.skipped} failed={len(report.failed)}"
            )
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _authorize_delete(self, msg: models.Message, user_id: Optional[int]) -> None:
        if user_id is None:
            raise NotAuthorized()
        if msg.sender_id == user_id:
            return
        if msg.group_id is not None and self.directory.is_group_admin(msg.group_id, user_id):
            return
        raise NotAuthorized("Not authorized to delete this message")

    def _check_self_destruct(self, self_destruct: Optional[SelfDestruct]) -> None:
        if self_destruct is None:
            return
        if self_destruct.delay_ms <= 0:
            raise InvalidRequest("Self-destruct delay must be positive")
        if self_destruct.delay_ms > models.MAX_SELF_DESTRUCT_MS:
            raise InvalidRequest("Self-destruct delay is too long")

    def _limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.fetch_limit
        if limit <= 0:
            raise InvalidRequest("Limit must be positive")
        return min(limit, MAX_FETCH_LIMIT)

    def _open_direct(self, msg: models.Message, user_id: int, key: str) -> Tuple[Optional[str], bool]:
        payload = msg.encrypted_payload or {}
        if msg.recipient_id == user_id:
            envelope = payload
        elif msg.sender_id == user_id:
            envelope = payload.get("sender_copy")
        else:
            envelope = None
        if not envelope:
            return None, False
        return self._decrypt(msg.id, user_id, envelope.get("iv"), envelope, key)

    def _open_group(self, msg: models.Message, user_id: int, key: str) -> Tuple[Optional[str], bool]:
        payload = msg.encrypted_payload or {}
        entry = next((e for e in payload.get("entries", []) if e.get("user_id") == user_id), None)
        if entry is None:
            # joined after the message was sent
            return None, False
        return self._decrypt(msg.id, user_id, payload.get("iv"), entry, key)

    def _decrypt(self, message_id: int, user_id: int, iv: Optional[str], envelope: dict, key: str) -> Tuple[Optional[str], bool]:
        try:
            sealed = crypto.EncryptedData(iv=iv, ciphertext=envelope["ciphertext"], auth_tag=envelope["auth_tag"])
            return crypto.decrypt(sealed, key), False
        except (CryptoError, KeyError, TypeError):
            logger.warning(f"Message unreadable message_id={message_id} user_id={user_id}")
            return None, True

    def _view(self, msg: models.Message, content: Optional[str], unreadable: bool) -> MessageView:
        return MessageView(
            id=msg.id,
            sender_id=msg.sender_id,
            recipient_id=msg.recipient_id,
            group_id=msg.group_id,
            content=content,
            unreadable=unreadable,
            attachments=list(msg.attachments or []),
            status=msg.status,
            is_self_destructing=bool(msg.is_self_destructing),
            self_destruct_at=msg.self_destruct_at,
            created_at=msg.created_at,
            read_by=[{"user_id": r.user_id, "read_at": r.read_at} for r in msg.reads],
        )

    def _notify_user(self, user_id: int, event: dict) -> None:
        try:
            self.relay.notify_user(user_id, event)
        except Exception:
            logger.warning(f"Relay notify_user failed user_id={user_id} type={event.get('type')}")

    def _notify_group(self, group_id: int, event: dict) -> None:
        try:
            self.relay.notify_group(group_id, event)
        except Exception:
            logger.warning(f"Relay notify_group failed group_id={group_id} type={event.get('type')}")
