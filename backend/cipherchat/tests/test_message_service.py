import datetime
import threading

import pytest

from cipherchat.controllers import groups_controller
from cipherchat.core import crypto
from cipherchat.core.errors import (
    GroupNotFound,
    InvalidRequest,
    NotAMember,
    NotAuthorized,
    NotFound,
    RecipientNotFound,
    StoreUnavailable,
)
from cipherchat.db import database, models, schemas
from cipherchat.services.message_service import MessageService, SelfDestruct

from .helpers import make_user


@pytest.fixture
def users(db):
    return [make_user(db, name) for name in ("alice", "bob", "carol", "dave")]


@pytest.fixture
def service(db, relay):
    return MessageService(db, relay=relay)


@pytest.fixture
def group(db, users):
    alice, bob, carol, _ = users
    return groups_controller.create_group(
        db, schemas.GroupCreate(name="team", member_ids=[bob.id, carol.id]), alice.id
    )


def _past(ms: int = 1) -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(milliseconds=ms)


def test_direct_send_then_fetch_returns_plaintext(service, users, relay):
    alice, bob, _, _ = users
    result = service.send_direct(alice.id, bob.id, "hi bob")

    msgs = service.fetch_direct(bob.id, alice.id)
    assert [m.id for m in msgs] == [result.id]
    assert msgs[0].content == "hi bob"
    assert msgs[0].unreadable is False
    assert msgs[0].status == "sent"
    assert relay.types_for_user(bob.id) == ["new_message"]


def test_direct_plaintext_is_never_stored(service, db, users):
    alice, bob, _, _ = users
    result = service.send_direct(alice.id, bob.id, "top secret words")
    rec = db.get(models.Message, result.id)
    assert "top secret words" not in str(rec.encrypted_payload)
    assert rec.is_encrypted is True


def test_sender_reads_own_direct_message(service, users):
    alice, bob, _, _ = users
    service.send_direct(alice.id, bob.id, "my own words")
    msgs = service.fetch_direct(alice.id, bob.id)
    assert msgs[0].content == "my own words"


def test_third_party_sees_no_content(service, users):
    alice, bob, carol, _ = users
    service.send_direct(alice.id, bob.id, "private")
    # carol asking for the alice<->bob thread gets nothing
    assert service.fetch_direct(carol.id, alice.id) == []


def test_note_to_self(service, users):
    alice = users[0]
    service.send_direct(alice.id, alice.id, "remember milk")
    msgs = service.fetch_direct(alice.id, alice.id)
    assert msgs[0].content == "remember milk"


def test_unknown_recipient(service, users):
    with pytest.raises(RecipientNotFound):
        service.send_direct(users[0].id, 9999, "anyone?")


def test_direct_messages_newest_first_with_limit(service, users):
    alice, bob, _, _ = users
    for i in range(5):
        service.send_direct(alice.id, bob.id, f"m{i}")
    msgs = service.fetch_direct(bob.id, alice.id, limit=3)
    assert [m.content for m in msgs] == ["m4", "m3", "m2"]


def test_limit_must_be_positive(service, users):
    with pytest.raises(InvalidRequest):
        service.fetch_direct(users[0].id, users[1].id, limit=0)


def test_group_payload_has_one_entry_per_member(service, db, users, group, relay):
    alice, bob, carol, _ = users
    result = service.send_group(alice.id, group.id, "hello team")

    rec = db.get(models.Message, result.id)
    entries = rec.encrypted_payload["entries"]
    assert sorted(e["user_id"] for e in entries) == sorted([alice.id, bob.id, carol.id])
    assert all("iv" not in e for e in entries)
    assert [gid for gid, _ in relay.group_events] == [group.id]


def test_group_members_decrypt_their_entry(service, users, group):
    alice, bob, carol, _ = users
    service.send_group(alice.id, group.id, "hello team")
    for member in (alice, bob, carol):
        assert service.fetch_group(member.id, group.id)[0].content == "hello team"


def test_group_fetch_as_non_member_omits_content(service, users, group):
    alice, _, _, dave = users
    service.send_group(alice.id, group.id, "members only")
    msgs = service.fetch_group(dave.id, group.id)
    assert len(msgs) == 1
    assert msgs[0].content is None
    assert msgs[0].unreadable is False


def test_late_joiner_cannot_read_earlier_messages(service, db, users, group):
    alice, _, _, dave = users
    service.send_group(alice.id, group.id, "before")
    groups_controller.add_member(db, group.id, dave.id)
    service.send_group(alice.id, group.id, "after")
    msgs = service.fetch_group(dave.id, group.id)
    assert [m.content for m in msgs] == ["after", None]


def test_group_send_bumps_activity(service, db, users, group):
    service.send_group(users[0].id, group.id, "one")
    service.send_group(users[1].id, group.id, "two")
    db.expire_all()
    g = db.get(models.Group, group.id)
    assert g.message_count == 2
    assert g.last_activity is not None


def test_group_send_by_non_member(service, users, group):
    with pytest.raises(NotAMember):
        service.send_group(users[3].id, group.id, "let me in")


def test_group_send_unknown_group(service, users):
    with pytest.raises(GroupNotFound):
        service.send_group(users[0].id, 9999, "hello?")


def test_group_send_empty_group(service, db, users, group):
    for uid in (users[0].id, users[1].id, users[2].id):
        groups_controller.remove_member(db, group.id, uid)
    with pytest.raises(NotAMember):
        service.send_group(users[0].id, group.id, "echo")


def test_tampered_entry_is_flagged_unreadable(service, db, users):
    alice, bob, _, _ = users
    good = service.send_direct(alice.id, bob.id, "good")
    bad = service.send_direct(alice.id, bob.id, "bad")

    rec = db.get(models.Message, bad.id)
    payload = dict(rec.encrypted_payload)
    tag = bytearray(bytes.fromhex(payload["auth_tag"]))
    tag[0] ^= 1
    payload["auth_tag"] = tag.hex()
    rec.encrypted_payload = payload
    db.commit()

    msgs = {m.id: m for m in service.fetch_direct(bob.id, alice.id)}
    assert msgs[good.id].content == "good"
    assert msgs[bad.id].content is None
    assert msgs[bad.id].unreadable is True


def test_mark_read_is_idempotent(service, db, users, relay):
    alice, bob, _, _ = users
    result = service.send_direct(alice.id, bob.id, "read me")

    assert service.mark_read(result.id, bob.id) is True
    assert service.mark_read(result.id, bob.id) is False

    rec = db.get(models.Message, result.id)
    db.refresh(rec)
    assert rec.status == "read"
    assert len(rec.reads) == 1
    assert relay.types_for_user(alice.id) == ["message_read"]


def test_mark_read_by_stranger(service, users):
    alice, bob, carol, _ = users
    result = service.send_direct(alice.id, bob.id, "not for carol")
    with pytest.raises(NotAuthorized):
        service.mark_read(result.id, carol.id)


def test_mark_read_group_members_each_get_a_receipt(service, users, group):
    alice, bob, carol, _ = users
    result = service.send_group(alice.id, group.id, "all hands")
    service.mark_read(result.id, bob.id)
    service.mark_read(result.id, carol.id)
    view = service.fetch_group(alice.id, group.id)[0]
    assert sorted(r["user_id"] for r in view.read_by) == sorted([bob.id, carol.id])


def test_mark_read_deleted_message(service, users):
    alice, bob, _, _ = users
    result = service.send_direct(alice.id, bob.id, "gone")
    service.soft_delete(result.id, alice.id)
    with pytest.raises(NotFound):
        service.mark_read(result.id, bob.id)


def test_soft_delete_by_sender(service, db, users, relay):
    alice, bob, _, _ = users
    result = service.send_direct(alice.id, bob.id, "oops")
    assert service.soft_delete(result.id, alice.id) is True

    rec = db.get(models.Message, result.id)
    db.refresh(rec)
    assert rec.status == "deleted"
    assert rec.deleted_at is not None
    assert service.fetch_direct(bob.id, alice.id) == []
    assert "message_deleted" in relay.types_for_user(bob.id)


def test_soft_delete_twice_by_user_is_not_found(service, users):
    alice, bob, _, _ = users
    result = service.send_direct(alice.id, bob.id, "oops")
    service.soft_delete(result.id, alice.id)
    with pytest.raises(NotFound):
        service.soft_delete(result.id, alice.id)


def test_soft_delete_by_recipient_is_refused(service, users):
    alice, bob, _, _ = users
    result = service.send_direct(alice.id, bob.id, "mine")
    with pytest.raises(NotAuthorized):
        service.soft_delete(result.id, bob.id)


def test_group_admin_may_delete_any_message(service, users, group):
    alice, bob, carol, _ = users
    result = service.send_group(bob.id, group.id, "spam")
    with pytest.raises(NotAuthorized):
        service.soft_delete(result.id, carol.id)
    assert service.soft_delete(result.id, alice.id) is True


def test_system_delete_of_deleted_message_is_noop(service, users):
    alice, bob, _, _ = users
    result = service.send_direct(alice.id, bob.id, "bye")
    service.soft_delete(result.id, alice.id)
    assert service.soft_delete(result.id, system=True) is False


def test_self_destruct_sets_expiry_from_creation(service, db, users):
    alice, bob, _, _ = users
    result = service.send_direct(alice.id, bob.id, "poof", SelfDestruct(delay_ms=5000))
    rec = db.get(models.Message, result.id)
    assert rec.is_self_destructing is True
    expected = result.created_at + datetime.timedelta(milliseconds=5000)
    assert rec.self_destruct_at.replace(tzinfo=None) == expected.replace(tzinfo=None)


def test_self_destruct_requires_positive_delay(service, users):
    with pytest.raises(InvalidRequest):
        service.send_direct(users[0].id, users[1].id, "poof", SelfDestruct(delay_ms=0))


def test_self_destruct_delay_is_bounded(service, users):
    alice, bob, _, _ = users
    with pytest.raises(InvalidRequest):
        service.send_direct(alice.id, bob.id, "poof", SelfDestruct(delay_ms=10**18))
    with pytest.raises(InvalidRequest):
        service.send_direct(alice.id, bob.id, "poof", SelfDestruct(delay_ms=models.MAX_SELF_DESTRUCT_MS + 1))
    result = service.send_direct(alice.id, bob.id, "slow poof", SelfDestruct(delay_ms=models.MAX_SELF_DESTRUCT_MS))
    assert service.fetch_direct(bob.id, alice.id)[0].id == result.id


def test_sweep_deletes_expired_messages(service, db, users):
    alice, bob, _, _ = users
    expired = service.send_direct(alice.id, bob.id, "poof", SelfDestruct(delay_ms=1))
    later = service.send_direct(alice.id, bob.id, "not yet", SelfDestruct(delay_ms=60_000))
    plain = service.send_direct(alice.id, bob.id, "forever")

    report = service.sweep_expired(now=datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=1))
    assert report.scanned == 1
    assert report.deleted == 1
    assert report.failed == []

    rec = db.get(models.Message, expired.id)
    db.refresh(rec)
    assert rec.status == "deleted"
    remaining = [m.id for m in service.fetch_direct(bob.id, alice.id)]
    assert remaining == [plain.id, later.id]


def test_sweep_isolates_failures(service, db, users, monkeypatch):
    alice, bob, _, _ = users
    first = service.send_direct(alice.id, bob.id, "a", SelfDestruct(delay_ms=1))
    second = service.send_direct(alice.id, bob.id, "b", SelfDestruct(delay_ms=1))

    original = service.soft_delete

    def flaky(message_id, requesting_user_id=None, *, system=False):
        if message_id == first.id:
            raise StoreUnavailable()
        return original(message_id, requesting_user_id, system=system)

    monkeypatch.setattr(service, "soft_delete", flaky)
    report = service.sweep_expired(now=datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=1))
    assert report.failed == [first.id]
    assert report.deleted == 1

    # the failed message stays eligible for the next run
    monkeypatch.setattr(service, "soft_delete", original)
    report = service.sweep_expired(now=datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=1))
    assert report.deleted == 1
    assert service.fetch_direct(bob.id, alice.id) == []
    assert second.id not in [m.id for m in service.fetch_direct(alice.id, bob.id)]


def test_relay_failure_does_not_fail_send(db, users):
    class BrokenRelay:
        def notify_user(self, user_id, event):
            raise RuntimeError("socket gone")

        def notify_group(self, group_id, event):
            raise RuntimeError("socket gone")

    service = MessageService(db, relay=BrokenRelay())
    alice, bob, _, _ = users
    result = service.send_direct(alice.id, bob.id, "still saved")
    assert service.fetch_direct(bob.id, alice.id)[0].id == result.id


def test_relay_events_carry_no_content(service, users, group, relay):
    alice, bob, _, _ = users
    service.send_direct(alice.id, bob.id, "whisper")
    service.send_group(alice.id, group.id, "shout")
    for _, event in relay.user_events + relay.group_events:
        assert "whisper" not in str(event)
        assert "shout" not in str(event)


def test_member_keys_snapshot_matches_membership(db, users, group):
    from cipherchat.services.directory import UserDirectory

    snapshot = UserDirectory(db).member_keys(group.id)
    assert sorted(uid for uid, _ in snapshot) == sorted([users[0].id, users[1].id, users[2].id])
    assert all(len(bytes.fromhex(k)) == 32 for _, k in snapshot)
    assert crypto.decrypt(crypto.encrypt("x", snapshot[0][1]), snapshot[0][1]) == "x"


def _entry_ids_and_check_decrypt(msg, keys):
    payload = msg.encrypted_payload
    for e in payload["entries"]:
        sealed = crypto.EncryptedData(iv=payload["iv"], ciphertext=e["ciphertext"], auth_tag=e["auth_tag"])
        assert crypto.decrypt(sealed, keys[e["user_id"]])
    return {e["user_id"] for e in payload["entries"]}


def test_membership_change_during_send_keeps_snapshot(service, db, users, group, monkeypatch):
    alice, bob, carol, dave = users
    keys = {u.id: u.encryption_key for u in users}
    read_snapshot = service.directory.member_keys

    def snapshot_then_change(group_id):
        snapshot = read_snapshot(group_id)
        # another session changes membership while this send is in flight
        other = database.SessionLocal()
        try:
            groups_controller.add_member(other, group_id, dave.id)
            groups_controller.remove_member(other, group_id, carol.id)
        finally:
            other.close()
        return snapshot

    monkeypatch.setattr(service.directory, "member_keys", snapshot_then_change)
    first = service.send_group(alice.id, group.id, "in flight")
    monkeypatch.setattr(service.directory, "member_keys", read_snapshot)
    second = service.send_group(alice.id, group.id, "after")

    db.expire_all()
    assert _entry_ids_and_check_decrypt(db.get(models.Message, first.id), keys) == {alice.id, bob.id, carol.id}
    assert _entry_ids_and_check_decrypt(db.get(models.Message, second.id), keys) == {alice.id, bob.id, dave.id}


def test_concurrent_group_sends_each_match_a_membership(db, users, group):
    alice, bob, carol, dave = users
    keys = {u.id: u.encryption_key for u in users}
    base = {alice.id, bob.id, carol.id}
    errors = []

    def send(sender_id, count):
        session = database.SessionLocal()
        try:
            svc = MessageService(session)
            for i in range(count):
                svc.send_group(sender_id, group.id, f"msg {sender_id}-{i}")
        except Exception as exc:
            errors.append(exc)
        finally:
            session.close()

    def toggle_dave(count):
        session = database.SessionLocal()
        try:
            for _ in range(count):
                groups_controller.add_member(session, group.id, dave.id)
                groups_controller.remove_member(session, group.id, dave.id)
        except Exception as exc:
            errors.append(exc)
        finally:
            session.close()

    threads = [
        threading.Thread(target=send, args=(alice.id, 10)),
        threading.Thread(target=send, args=(bob.id, 10)),
        threading.Thread(target=toggle_dave, args=(10,)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    db.expire_all()
    msgs = db.query(models.Message).filter(models.Message.group_id == group.id).all()
    assert len(msgs) == 20
    for msg in msgs:
        assert _entry_ids_and_check_decrypt(msg, keys) in (base, base | {dave.id})
