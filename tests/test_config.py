import pytest
from pydantic import ValidationError

from zktools.config import Settings

ZK_VARS = ("ZK_DEVICE_IP", "ZK_DEVICE_PORT", "ZK_TIMEOUT", "ZK_BULK_TIMEOUT", "ZK_LISTEN_PORT",
           "ZK_PASSWORD", "ZK_FORCE_UDP", "ZK_SETTLE_DELAY", "ZK_MAX_TEMPLATE_SIZE",
           "ZK_MAX_UID", "ZK_LOG_BATCH_SIZE", "ZK_LOG_DIR")


def clear_env(monkeypatch):
    for name in ZK_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    clear_env(monkeypatch)
    s = Settings.from_env()
    assert s.device_port == 4370
    assert s.listen_port == 4000
    assert s.timeout == 10.0
    assert s.bulk_timeout is None
    assert s.password is None
    assert s.settle_delay == 1.5
    assert s.max_template_size == 2000
    assert s.max_uid == 3000
    assert s.log_batch_size == 500


def test_environment_overrides(monkeypatch):
    clear_env(monkeypatch)
    monkeypatch.setenv("ZK_DEVICE_IP", "10.10.20.59")
    monkeypatch.setenv("ZK_PASSWORD", "123456")
    monkeypatch.setenv("ZK_TIMEOUT", "off")
    monkeypatch.setenv("ZK_FORCE_UDP", "yes")
    monkeypatch.setenv("ZK_SETTLE_DELAY", "0.2")
    s = Settings.from_env()
    assert s.device_ip == "10.10.20.59"
    assert s.password == 123456
    assert s.timeout is None
    assert s.force_udp is True
    assert s.settle_delay == 0.2


def test_zero_timeout_is_rejected(monkeypatch):
    clear_env(monkeypatch)
    monkeypatch.setenv("ZK_TIMEOUT", "0")
    with pytest.raises(ValidationError):
        Settings.from_env()


def test_empty_values_keep_defaults(monkeypatch):
    clear_env(monkeypatch)
    monkeypatch.setenv("ZK_PASSWORD", "")
    monkeypatch.setenv("ZK_BULK_TIMEOUT", "30")
    s = Settings.from_env()
    assert s.password is None
    assert s.bulk_timeout == 30.0
