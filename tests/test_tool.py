import json

import pytest

from zktools.tool import main, parse_passwd_args, passwd_main

from fakes import DEVICE_IP, FakeDevice

TARGET_IP = "10.10.20.60"


@pytest.fixture
def zktool(settings, manager):
    def run(*argv):
        return main(list(argv), settings, manager)
    return run


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_no_arguments_prints_usage(zktool, capsys):
    assert zktool() == 1
    assert "Usage:" in capsys.readouterr().out


def test_unknown_command(zktool, capsys):
    assert zktool("reboot", DEVICE_IP) == 1
    assert "Unknown command: reboot" in capsys.readouterr().out


def test_info(zktool, capsys):
    assert zktool("info", DEVICE_IP) == 0
    out = capsys.readouterr().out
    assert "ABC1234567" in out
    assert "00:17:61:AA:BB:CC" in out


def test_time(zktool, capsys):
    assert zktool("time", DEVICE_IP) == 0
    assert "Device time: 2024-03-15 10:30:45" in capsys.readouterr().out


def test_users(zktool, capsys):
    assert zktool("users", DEVICE_IP) == 0
    out = capsys.readouterr().out
    assert "Alice" in out and "Bob" in out
    assert "2 users" in out


def test_connection_error_is_reported(zktool, capsys):
    assert zktool("time", "10.9.9.9") == 1
    assert "ERROR:" in capsys.readouterr().out


def test_dump_and_restore(zktool, device, workdir):
    assert zktool("dump", "348", DEVICE_IP) == 0
    data = json.loads((workdir / "user_348.json").read_text())
    assert data["user"]["name"] == "Alice"
    assert sorted(t["finger_idx"] for t in data["templates"]) == [0, 5]

    device.templates.clear()
    assert zktool("restore", "348", DEVICE_IP) == 0
    assert device.fingers_of("348") == [0, 5]


def test_dump_unknown_user(zktool, workdir, capsys):
    assert zktool("dump", "4242", DEVICE_IP) == 1
    assert not (workdir / "user_4242.json").exists()


def test_restore_without_dump(zktool, workdir, capsys):
    assert zktool("restore", "348", DEVICE_IP) == 1
    assert "ERROR:" in capsys.readouterr().out


def test_copy(zktool, network, capsys):
    target = network.add(TARGET_IP, FakeDevice())
    assert zktool("copy", "349", DEVICE_IP, TARGET_IP) == 0
    assert target.fingers_of("349") == [3]
    assert "1 on target" in capsys.readouterr().out


def test_delfinger(zktool, device):
    assert zktool("delfinger", "348", "5", DEVICE_IP) == 0
    assert device.fingers_of("348") == [0]


def test_delfinger_missing_finger(zktool, device, capsys):
    assert zktool("delfinger", "348", "7", DEVICE_IP) == 1
    assert "no template for finger 7" in capsys.readouterr().out
    assert device.fingers_of("348") == [0, 5]


def test_deluser(zktool, device):
    assert zktool("deluser", "349", DEVICE_IP) == 0
    assert device.uid_of("349") is None


def test_missing_arguments_are_prompted(zktool, device, monkeypatch):
    answers = iter(["349", DEVICE_IP])
    monkeypatch.setattr("builtins.input", lambda prompt: next(answers))
    assert zktool("deluser") == 0
    assert device.uid_of("349") is None


def test_empty_prompt_fails(zktool, monkeypatch, capsys):
    monkeypatch.setattr("builtins.input", lambda prompt: "")
    assert zktool("deluser") == 1
    assert "Missing required arguments" in capsys.readouterr().out


def test_parse_passwd_args():
    assert parse_passwd_args(["--ip", DEVICE_IP, "--new", "22"]) == (DEVICE_IP, None, "22")
    assert parse_passwd_args(["--ip", DEVICE_IP, "--old", "1", "--new", "2"]) == \
        (DEVICE_IP, "1", "2")
    assert parse_passwd_args([DEVICE_IP, "0", "9"]) == (DEVICE_IP, None, "9")
    assert parse_passwd_args([DEVICE_IP, "5"]) == (DEVICE_IP, "5", None)
    assert parse_passwd_args([]) == (None, None, None)


def test_passwd_sets_key(settings, manager, device, capsys):
    assert passwd_main([DEVICE_IP, "0", "4321"], settings, manager) == 0
    assert device.password == 4321
    assert "COM password changed" in capsys.readouterr().out


def test_passwd_with_old_key(settings, manager, device):
    device.password = 1111
    assert passwd_main(["--ip", DEVICE_IP, "--old", "1111", "--new", "2222"],
                       settings, manager) == 0
    assert device.password == 2222


def test_passwd_interactive(settings, manager, device, monkeypatch):
    answers = iter([DEVICE_IP, "", "77"])
    monkeypatch.setattr("builtins.input", lambda prompt: next(answers))
    assert passwd_main([], settings, manager) == 0
    assert device.password == 77


def test_passwd_requires_new(settings, manager, capsys):
    assert passwd_main([DEVICE_IP], settings, manager) == 1
    assert "New password required" in capsys.readouterr().out
