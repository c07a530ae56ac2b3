"""Error taxonomy shared by the message core and the HTTP layer.

Two branches: ``DomainError`` for expected outcomes a caller should branch on
(missing entities, authorization, unreadable ciphertext) and
``InfrastructureError`` for failures of a collaborator such as the database.
Every error carries a stable ``code`` so callers never match on message text.
"""

import functools
import logging

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class ChatError(Exception):
    code = "error"
    status_code = 500
    detail = "Internal error"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class DomainError(ChatError):
    pass


class NotFound(DomainError):
    code = "not_found"
    status_code = 404
    detail = "Not found"


class RecipientNotFound(NotFound):
    code = "recipient_not_found"
    detail = "Recipient not found"


class UserNotFound(NotFound):
    code = "user_not_found"
    detail = "User not found"


class GroupNotFound(NotFound):
    code = "group_not_found"
    detail = "Group not found"


class NotAuthorized(DomainError):
    code = "not_authorized"
    status_code = 403
    detail = "Not authorized"


class NotAMember(NotAuthorized):
    code = "not_a_member"
    detail = "Not a member of this group"


class InvalidRequest(DomainError):
    code = "invalid_request"
    status_code = 400
    detail = "Invalid request"


class Conflict(DomainError):
    code = "conflict"
    status_code = 409
    detail = "Conflict"


class CryptoError(DomainError):
    # The detail is fixed: the underlying cause never leaves this process.
    code = "message_unreadable"
    status_code = 422
    detail = "Message unreadable"

    def __init__(self, detail: str | None = None):
        super().__init__(None)


class InfrastructureError(ChatError):
    pass


class StoreUnavailable(InfrastructureError):
    code = "store_unavailable"
    status_code = 503
    detail = "Storage temporarily unavailable"


def translate_store_errors(func):
    """Re-raise SQLAlchemy failures from ``func`` as ``StoreUnavailable``."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SQLAlchemyError as exc:
            logger.error(f"Store failure in {func.__name__}: {exc.__class__.__name__}")
            raise StoreUnavailable() from exc

    return wrapper
