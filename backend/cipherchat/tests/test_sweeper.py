import time

from cipherchat.db import database, models
from cipherchat.services.message_service import MessageService, SelfDestruct
from cipherchat.services.sweeper import ExpirySweeper

from .helpers import make_user


def test_run_now_deletes_expired(db, relay):
    alice, bob = make_user(db, "alice"), make_user(db, "bob")
    service = MessageService(db, relay=relay)
    result = service.send_direct(alice.id, bob.id, "poof", SelfDestruct(delay_ms=1))
    time.sleep(0.01)

    sweeper = ExpirySweeper(database.SessionLocal, relay)
    report = sweeper.run_now()

    assert report.deleted == 1
    assert sweeper.last_report is report
    db.expire_all()
    assert db.get(models.Message, result.id).status == "deleted"
    assert "message_deleted" in relay.types_for_user(bob.id)


def test_run_now_with_nothing_to_do(db_url):
    report = ExpirySweeper(database.SessionLocal).run_now()
    assert report.scanned == 0
    assert report.deleted == 0


def test_run_now_swallows_cycle_failure():
    class ExplodingSession:
        def close(self):
            pass

    sweeper = ExpirySweeper(lambda: ExplodingSession())
    assert sweeper.run_now() is None
    assert sweeper.last_report is None


def test_start_and_stop(db_url):
    sweeper = ExpirySweeper(database.SessionLocal, interval_seconds=3600)
    assert not sweeper.is_running
    sweeper.start()
    try:
        assert sweeper.is_running
        sweeper.start()  # second start is a no-op
        assert sweeper.is_running
    finally:
        sweeper.stop()
    assert not sweeper.is_running
