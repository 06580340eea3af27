import struct
from datetime import datetime

import pytest

from zktools import protocol
from zktools.codec import DeviceTime, auth_payload
from zktools.const import (
    CMD_ACK_ERROR, CMD_AUTH, CMD_DATA, CMD_DELETE_USERTEMP, CMD_PREPARE_DATA, CMD_SET_TIME,
    CMD_TMP_WRITE,
)
from zktools.errors import (
    AuthenticationFailed, CommandRejected, NoSessionId, TemplateWriteFailed,
)
from zktools.records import decode_template_stream

from fakes import FakeDevice, FakeTransport


@pytest.fixture
def transport(device):
    t = FakeTransport(device)
    t.open()
    return t


def test_authenticate_sends_derived_key():
    dev = FakeDevice(password=123456)
    t = FakeTransport(dev)
    assert t.open() is True
    assert protocol.authenticate(t, 123456) == protocol.AuthState.AUTHENTICATED
    assert dev.sent(CMD_AUTH) == [auth_payload(123456, t.session_id)]


def test_authenticate_wrong_password():
    t = FakeTransport(FakeDevice(password=123456))
    t.open()
    with pytest.raises(AuthenticationFailed) as exc:
        protocol.authenticate(t, 111)
    assert exc.value.status == 2005


def test_authenticate_needs_session():
    t = FakeTransport(FakeDevice(password=1))
    with pytest.raises(NoSessionId):
        protocol.authenticate(t, 1)


def test_get_time(transport):
    assert protocol.get_time(transport) == DeviceTime(2024, 3, 15, 10, 30, 45)


def test_set_time_refreshes(transport, device):
    value = protocol.set_time(transport, datetime(2025, 1, 2, 3, 4, 5))
    assert device.sent(CMD_SET_TIME) == [struct.pack('<I', value)]
    assert protocol.get_time(transport).to_datetime() == datetime(2025, 1, 2, 3, 4, 5)


def test_query_device_info(transport):
    info = protocol.query_device_info(transport)
    assert info["~SerialNumber"] == "ABC1234567"
    assert info["MAC"] == "00:17:61:AA:BB:CC"
    assert info["~ProductTime"] == "2019-05-10 12:00:00"
    assert info["DeviceTime"] == "2024-03-15 10:30:45"
    assert info["FirmwareVersion"] == "Ver 6.60 Apr 28 2017"
    # ZKFaceVersion is unknown to this device and simply absent
    assert "ZKFaceVersion" not in info


def test_template_dump(transport, device):
    data = protocol.read_template_dump(transport)
    records = decode_template_stream(data)
    assert {(r.uid, r.finger_idx) for r in records} == {(1, 0), (1, 5), (2, 3)}


def test_write_template_sequence(transport, device):
    template = b'\x01\x02' * 300
    protocol.write_template(transport, 2, 7, template)
    assert device.sent(CMD_PREPARE_DATA) == [struct.pack('<I', 600)]
    assert device.sent(CMD_DATA) == [template]
    assert device.sent(CMD_TMP_WRITE) == [struct.pack('<HBBH', 2, 7, 1, 600)]
    assert device.templates[(2, 7)] == (template, 1)


def test_write_template_failure_is_final_status(transport, device):
    device.fail_fingers.add(4)
    with pytest.raises(TemplateWriteFailed) as exc:
        protocol.write_template(transport, 1, 4, b'\x00' * 64)
    assert exc.value.status == CMD_ACK_ERROR


def test_delete_user_template_payload(transport, device):
    protocol.delete_user_template(transport, 1, 5)
    assert device.sent(CMD_DELETE_USERTEMP) == [struct.pack('<HB', 1, 5)]
    assert (1, 5) not in device.templates


def test_delete_missing_user_is_rejected(transport):
    with pytest.raises(CommandRejected):
        protocol.delete_user(transport, 77)


def test_refresh_data_never_raises(transport):
    transport.close()
    assert protocol.refresh_data(transport) is False


def test_write_option_returns_response(transport, device):
    device.com_key_status = CMD_ACK_ERROR
    resp = protocol.write_option(transport, "COMKey=42")
    assert not resp.ok


@pytest.mark.parametrize("finger", [-1, 10, 12, 300])
def test_finger_index_out_of_range(transport, device, finger):
    with pytest.raises(ValueError):
        protocol.write_template(transport, 1, finger, b'\x01' * 64)
    with pytest.raises(ValueError):
        protocol.delete_user_template(transport, 1, finger)
    assert not device.sent(CMD_PREPARE_DATA)
    assert not device.sent(CMD_DELETE_USERTEMP)
