import pytest

from zktools.client import ZKClient
from zktools.config import Settings
from zktools.const import CMD_DELETE_USER
from zktools.errors import (
    CommandRejected, DeviceConnectionError, DeviceError, UserNotFoundAfterWrite,
)
from zktools.reconcile import (
    UserProfile, add_fingerprint, choose_uid, copy_user, delete_fingerprint, rewrite_user,
)
from zktools.records import DeviceUser
from zktools.session import SessionManager

from fakes import DEVICE_IP, FakeDevice, FakeNetwork, FakeTransport

TARGET_IP = "10.10.20.60"


def users_with_id(device, user_id):
    return [u for u in device.users.values() if u.user_id == user_id]


def test_rewrite_keeps_exactly_one_user(client, device):
    templates = client.fetch_templates("348")
    result = rewrite_user(client, "348", UserProfile("Alice", role=14), templates)
    assert result.success
    assert result.written == 2
    assert len(users_with_id(device, "348")) == 1
    assert device.fingers_of("348") == [0, 5]


def test_rewrite_follows_reassigned_uid(client, device):
    device.uid_shift = 100
    templates = client.fetch_templates("348")
    result = rewrite_user(client, "348", UserProfile("Alice"), templates)
    assert result.old_uid == 1
    assert result.uid == 101
    assert device.uid_of("348") == 101
    assert device.fingers_of("348") == [0, 5]
    assert len(users_with_id(device, "348")) == 1


def test_rewrite_new_user_takes_next_uid(client, device):
    result = rewrite_user(client, "900", {"name": "New", "role": "0"},
                          [(2, b'\x42' * 300)])
    assert result.old_uid is None
    assert result.uid == 3
    assert device.users[3].name == "New"
    assert device.fingers_of("900") == [2]


def test_rewrite_counts_failed_templates(client, device):
    device.fail_fingers.add(5)
    templates = client.fetch_templates("348")
    result = rewrite_user(client, "348", UserProfile("Alice"), templates)
    assert not result.success
    assert (result.written, result.failed) == (1, 1)
    assert result.to_dict()["errors"][0]["finger_idx"] == 5


def test_rewrite_missing_after_write(client, monkeypatch):
    monkeypatch.setattr(FakeTransport, "set_user", lambda self, *args: None)
    with pytest.raises(UserNotFoundAfterWrite):
        rewrite_user(client, "555", UserProfile("Ghost"))


def test_rewrite_settles_between_steps(manager, device):
    manager.settings = Settings(settle_delay=1.5)
    session = manager.connect(DEVICE_IP)
    sleeps = []
    client = ZKClient(manager, session, sleep=sleeps.append)
    rewrite_user(client, "349", UserProfile("Bob"), client.fetch_templates("349"))
    # delete, recreate, template write-back
    assert sleeps == [1.5, 1.5, 1.5]


def test_choose_uid():
    users = [DeviceUser(4, "1"), DeviceUser(9, "2")]
    assert choose_uid(users[0], users, "1", 3000) == 4
    assert choose_uid(None, users, "77", 3000) == 10
    assert choose_uid(None, [], "3348", 3000) == 348


def test_delete_fingerprint_rewrites_without_finger(client, device):
    users = client.fetch_users()
    templates = client.fetch_templates("348", users=users)
    alice = next(u for u in users if u.user_id == "348")
    result = delete_fingerprint(client, "348", 5, UserProfile.from_user(alice), templates,
                                users=users)
    assert result.success
    assert device.fingers_of("348") == [0]
    assert device.users[device.uid_of("348")].privilege == 14


def test_add_fingerprint_direct_write(client, device):
    uid = add_fingerprint(client, "349", 8, b'\x55' * 256)
    assert uid == 2
    assert device.fingers_of("349") == [3, 8]


def test_add_fingerprint_unknown_user(client):
    with pytest.raises(DeviceError):
        add_fingerprint(client, "4242", 1, b'\x55' * 256)


def test_copy_user_between_devices(network, manager, device):
    target_dev = network.add(TARGET_IP, FakeDevice())
    target_dev.add_user(1, "900", "Someone")
    source = ZKClient.connect(DEVICE_IP, manager=manager)
    target = ZKClient.connect(TARGET_IP, manager=manager)
    result = copy_user(source, target, "348")
    assert result.success
    assert result.verified_templates == 2
    assert result.uid == 2
    assert target_dev.users[2].name == "Alice"
    assert target_dev.fingers_of("348") == [0, 5]
    assert target_dev.templates[(2, 0)] == device.templates[(1, 0)]
    target.close()


def test_copy_user_missing_on_source(network, manager):
    network.add(TARGET_IP, FakeDevice())
    source = ZKClient.connect(DEVICE_IP, manager=manager)
    target = ZKClient.connect(TARGET_IP, manager=manager)
    with pytest.raises(DeviceError):
        copy_user(source, target, "4242")
    source.close()
    target.close()


def test_rewrite_continues_when_delete_fails(client, device, monkeypatch):
    def refuse(uid):
        raise CommandRejected(CMD_DELETE_USER, 2001)
    monkeypatch.setattr(client, "delete_user", refuse)
    templates = client.fetch_templates("348")
    result = rewrite_user(client, "348", UserProfile("Alice", role=14), templates)
    assert result.success
    assert result.old_uid == 1
    assert result.uid == 1
    assert len(users_with_id(device, "348")) == 1
    assert device.fingers_of("348") == [0, 5]


def test_rewrite_treats_failed_lookup_as_new_user(client, device, monkeypatch):
    fetch = client.fetch_users
    calls = []

    def flaky_fetch():
        calls.append(1)
        if len(calls) == 1:
            raise DeviceConnectionError("user read timed out")
        return fetch()
    monkeypatch.setattr(client, "fetch_users", flaky_fetch)
    result = rewrite_user(client, "349", UserProfile("Bob"), [(3, b'\x33' * 200)])
    assert result.old_uid is None
    assert device.sent(CMD_DELETE_USER) == []
    # no user list: the uid comes from the numeric user id
    assert result.uid == 349
    assert len(users_with_id(device, "349")) == 1
    assert device.fingers_of("349") == [3]
