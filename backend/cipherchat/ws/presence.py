import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional, Set


class PresenceRegistry(ABC):
    """Maps live connection ids to the user that owns them.

    The websocket manager only talks to this interface, so the in-memory
    registry below can be replaced by one backed by a shared cache when
    several processes serve the same users.
    """

    @abstractmethod
    def register(self, connection_id: str, user_id: int) -> None:
        ...

    @abstractmethod
    def unregister(self, connection_id: str) -> Optional[int]:
        """Forget ``connection_id``; returns its user id if it was known."""

    @abstractmethod
    def lookup(self, user_id: int) -> Set[str]:
        """Return the connection ids currently held by ``user_id``."""

    @abstractmethod
    def online_user_ids(self) -> Set[int]:
        ...

    def is_online(self, user_id: int) -> bool:
        return bool(self.lookup(user_id))


class InMemoryPresenceRegistry(PresenceRegistry):
    def __init__(self):
        self._lock = threading.Lock()
        self._conn_to_user: Dict[str, int] = {}
        self._user_to_conns: Dict[int, Set[str]] = {}

    def register(self, connection_id: str, user_id: int) -> None:
        with self._lock:
            previous = self._conn_to_user.get(connection_id)
            if previous is not None and previous != user_id:
                self._drop(connection_id, previous)
            self._conn_to_user[connection_id] = user_id
            self._user_to_conns.setdefault(user_id, set()).add(connection_id)

    def unregister(self, connection_id: str) -> Optional[int]:
        with self._lock:
            user_id = self._conn_to_user.pop(connection_id, None)
            if user_id is not None:
                self._drop(connection_id, user_id)
            return user_id

    def lookup(self, user_id: int) -> Set[str]:
        with self._lock:
            return set(self._user_to_conns.get(user_id, ()))

    def online_user_ids(self) -> Set[int]:
        with self._lock:
            return set(self._user_to_conns.keys())

    def _drop(self, connection_id: str, user_id: int) -> None:
        conns = self._user_to_conns.get(user_id)
        if conns is None:
            return
        conns.discard(connection_id)
        if not conns:
            del self._user_to_conns[user_id]
