import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from .ws_manager import manager

logger = logging.getLogger(__name__)


class Relay(ABC):
    """Fire-and-forget push channel to connected clients."""

    @abstractmethod
    def notify_user(self, user_id: int, event: dict) -> None:
        ...

    @abstractmethod
    def notify_group(self, group_id: int, event: dict) -> None:
        ...


class NullRelay(Relay):
    def notify_user(self, user_id: int, event: dict) -> None:
        pass

    def notify_group(self, group_id: int, event: dict) -> None:
        pass


class WebSocketRelay(Relay):
    """Schedules delivery through a ConnectionManager on the app's event loop.

    Callers may live on the loop itself, in the request threadpool or in the
    sweep thread; ``notify_*`` never blocks and never raises.
    """

    def __init__(self, manager, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.manager = manager
        self.loop = loop

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop

    def notify_user(self, user_id: int, event: dict) -> None:
        if not self.manager.is_online(user_id):
            # offline: the message is picked up on the next fetch
            return
        self._schedule(self.manager.send_to_user(user_id, event))

    def notify_group(self, group_id: int, event: dict) -> None:
        self._schedule(self.manager.broadcast_group(group_id, event))

    def _schedule(self, coro) -> None:
        loop = self.loop
        if loop is None or loop.is_closed():
            coro.close()
            logger.debug("Relay has no running loop; event dropped")
            return
        try:
            future = asyncio.run_coroutine_threadsafe(coro, loop)
        except RuntimeError:
            coro.close()
            logger.debug("Relay loop is shutting down; event dropped")
            return
        future.add_done_callback(_log_failure)


def _log_failure(future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning(f"Relay delivery failed: {exc.__class__.__name__}")


relay = WebSocketRelay(manager)
