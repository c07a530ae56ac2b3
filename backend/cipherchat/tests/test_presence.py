import asyncio
import threading
import time

from cipherchat.ws.presence import InMemoryPresenceRegistry
from cipherchat.ws.relay import NullRelay, WebSocketRelay
from cipherchat.ws.ws_manager import ConnectionManager, group_room


class FakeSocket:
    def __init__(self, broken: bool = False):
        self.sent = []
        self.broken = broken

    async def send_text(self, text: str):
        if self.broken:
            raise RuntimeError("closed")
        self.sent.append(text)


def test_registry_tracks_multiple_connections():
    reg = InMemoryPresenceRegistry()
    reg.register("c1", 1)
    reg.register("c2", 1)
    reg.register("c3", 2)
    assert reg.lookup(1) == {"c1", "c2"}
    assert reg.online_user_ids() == {1, 2}

    assert reg.unregister("c1") == 1
    assert reg.is_online(1)
    assert reg.unregister("c2") == 1
    assert not reg.is_online(1)
    assert reg.unregister("missing") is None


def test_manager_rooms_and_broadcast():
    mgr = ConnectionManager()
    a, b, c = FakeSocket(), FakeSocket(), FakeSocket()
    ca = mgr.register(1, a)
    cb = mgr.register(2, b)
    mgr.register(3, c)
    room = group_room(10)
    mgr.join_room(ca, room)
    mgr.join_user_to_room(2, room)

    sent = asyncio.run(mgr.broadcast_room(room, {"type": "hello"}, exclude=ca))
    assert sent == 1
    assert b.sent and not a.sent and not c.sent

    mgr.remove_user_from_room(2, room)
    assert asyncio.run(mgr.broadcast_group(10, {"type": "again"})) == 1
    assert len(a.sent) == 1

    mgr.unregister(cb)
    assert not mgr.is_online(2)
    assert mgr.online_user_ids() == {1, 3}


def test_manager_drops_broken_socket():
    mgr = ConnectionManager()
    good, bad = FakeSocket(), FakeSocket(broken=True)
    mgr.register(1, good)
    mgr.register(1, bad)
    assert asyncio.run(mgr.send_to_user(1, {"type": "ping"})) == 1
    assert len(mgr.registry.lookup(1)) == 1


def test_relay_without_loop_drops_quietly():
    mgr = ConnectionManager()
    mgr.register(1, FakeSocket())
    WebSocketRelay(mgr).notify_user(1, {"type": "x"})
    NullRelay().notify_group(1, {"type": "x"})


def test_relay_delivers_from_another_thread():
    loop = asyncio.new_event_loop()
    runner = threading.Thread(target=loop.run_forever, daemon=True)
    runner.start()
    try:
        mgr = ConnectionManager()
        online, offline_target = FakeSocket(), 2
        mgr.register(1, online)
        relay = WebSocketRelay(mgr, loop)

        relay.notify_user(1, {"type": "new_message", "message_id": 5})
        relay.notify_user(offline_target, {"type": "new_message", "message_id": 6})

        deadline = time.time() + 2
        while not online.sent and time.time() < deadline:
            time.sleep(0.01)
        assert len(online.sent) == 1
        assert '"message_id": 5' in online.sent[0]
    finally:
        loop.call_soon_threadsafe(loop.stop)
        runner.join(timeout=2)
        loop.close()
