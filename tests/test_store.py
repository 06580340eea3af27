from datetime import datetime

import pytest

from zktools.store import AttendanceLog, InMemoryStore, StoredFingerprint, StoredUser


def test_users_are_copied_out():
    store = InMemoryStore()
    store.insert_user(StoredUser(user_id="348", name="Alice", stored_devices="1, 3"))
    user = store.get_user("348")
    user.name = "changed"
    assert store.get_user("348").name == "Alice"
    assert store.get_user("348").device_ids() == ["1", "3"]
    with pytest.raises(KeyError):
        store.insert_user(StoredUser(user_id="348"))


def test_users_on_device():
    store = InMemoryStore()
    store.insert_user(StoredUser(user_id="1", stored_devices="1,2"))
    store.insert_user(StoredUser(user_id="2", stored_devices="12"))
    store.update_user("2", name="Bob")
    assert [u.user_id for u in store.users_on_device(1)] == ["1"]
    assert store.get_user("2").name == "Bob"


def test_upsert_fingerprint_keys_on_finger():
    store = InMemoryStore()
    assert store.upsert_fingerprint(StoredFingerprint(
        user_id="348", finger_index="5,1", template="AA==", device_id=1))
    assert not store.upsert_fingerprint(StoredFingerprint(
        user_id="348", finger_index="5,0", template="AQ==", device_id=1))
    assert store.upsert_fingerprint(StoredFingerprint(
        user_id="348", finger_index="5,1", template="AA==", device_id=2))
    assert [f.template for f in store.fingerprints_for("348", 1)] == ["AQ=="]
    assert len(store.fingerprints_for("348")) == 2


def test_log_keys():
    store = InMemoryStore()
    when = datetime(2024, 3, 15, 8, 59)
    store.insert_log(AttendanceLog(user_id="348", record_time=when, device_id=1))
    assert store.has_log(when, 1)
    assert not store.has_log(when, 2)


def test_finger_availability_keeps_template():
    store = InMemoryStore()
    store.upsert_fingerprint(StoredFingerprint(
        user_id="348", finger_index="5,1", template="AA==", device_id=1))
    store.upsert_fingerprint(StoredFingerprint(
        user_id="348", finger_index="5,1", template="AQ==", device_id=2))
    assert store.set_finger_available("348", 1, 5, False)
    assert not store.set_finger_available("348", 1, 7, False)
    on_one, = store.fingerprints_for("348", 1)
    assert on_one.finger_index == "5,0"
    assert not on_one.on_device
    assert on_one.template == "AA=="
    assert store.fingerprints_for("348", 2)[0].on_device
