import struct
from datetime import datetime
from types import SimpleNamespace

from zktools.records import (
    DeviceUser, TemplateRecord, decode_template_stream, encode_template_record, find_user,
    format_finger_index, normalize_attendance, normalize_user, parse_finger_index, parse_role,
    strip_size_prefix, uid_for_user_id,
)


def test_single_record_decode():
    template = bytes(range(256)) * 2
    data = encode_template_record(7, 3, template)
    records = decode_template_stream(data)
    assert len(records) == 1
    r = records[0]
    assert (r.uid, r.finger_idx, r.valid, r.size) == (7, 3, 1, len(template) + 6)
    assert r.template == template


def test_zero_bytes_decode_to_nothing():
    assert decode_template_stream(b'\x00' * 1000) == []


def test_stream_resyncs_over_garbage():
    first = encode_template_record(1, 0, b'\xAA' * 300)
    second = encode_template_record(2, 6, b'\xBB' * 400, valid=3)
    records = decode_template_stream(b'\x00\x00\x00' + first + b'\xff\xff' + second)
    assert [(r.uid, r.finger_idx, r.valid) for r in records] == [(1, 0, 1), (2, 6, 3)]


def test_oversized_record_is_skipped():
    huge = struct.pack('<HHBB', 2500, 1, 0, 1) + b'\x00' * 10
    assert decode_template_stream(huge, max_size=2000) == []


def test_truncated_record_stops_decoding():
    record = encode_template_record(1, 0, b'\xAA' * 300)
    assert len(decode_template_stream(record + record[:50])) == 1


def test_max_size_is_configurable():
    record = encode_template_record(1, 0, b'\xAA' * 1500)
    assert not any(r.size == 1506 for r in decode_template_stream(record, max_size=1000))
    assert len(decode_template_stream(record, max_size=2000)) == 1


def test_strip_size_prefix():
    body = encode_template_record(1, 0, b'\x01' * 20)
    assert strip_size_prefix(struct.pack('<I', len(body)) + body) == body
    # inconsistent prefix: leave untouched
    assert strip_size_prefix(body) == body


def test_template_record_b64():
    r = TemplateRecord(3, 2, b'\x00\x01\x02')
    assert r.size == 9
    again = TemplateRecord.from_b64(3, 2, r.template_b64)
    assert again.template == r.template
    assert r.to_dict()["template"] == 'AAEC'


def test_finger_index_strings():
    assert format_finger_index(3) == '3,1'
    assert format_finger_index(3, 0) == '3,0'
    assert parse_finger_index('3,1') == (3, 1)
    assert parse_finger_index('7') == (7, 1)


def test_parse_role():
    assert parse_role('14,1,2') == 14
    assert parse_role('0') == 0
    assert parse_role(None) == 0
    assert parse_role(14) == 14
    assert parse_role('admin') == 0


def test_normalize_pyzk_user():
    sdk = SimpleNamespace(uid=4, user_id='1001', name='Carol ', privilege=14,
                          password='12', card=998877, group_id='')
    user = normalize_user(sdk)
    assert user == DeviceUser(4, '1001', 'Carol', 14, '12', 998877)
    assert user.is_admin


def test_normalize_dict_user():
    user = normalize_user({"uid": 9, "user_id": "55", "name": "Dan", "role": "0", "card_no": ""})
    assert (user.uid, user.user_id, user.role, user.card_no) == (9, '55', 0, 0)


def test_find_user():
    users = [DeviceUser(1, '348'), DeviceUser(2, '349')]
    assert find_user(users, 349).uid == 2
    assert find_user(users, '999') is None


def test_normalize_attendance():
    when = datetime(2024, 3, 15, 8, 59, 2)
    rec = normalize_attendance(SimpleNamespace(user_id=348, timestamp=when, status=1, punch=0,
                                               uid=1))
    assert rec.user_id == '348'
    assert rec.record_time == when
    assert rec.to_dict()["record_time"] == '2024-03-15T08:59:02'


def test_uid_for_user_id():
    assert uid_for_user_id('348') == 348
    assert uid_for_user_id('3000') == 3000
    assert uid_for_user_id('3348') == 348
    assert uid_for_user_id('6000') == 1
    assert uid_for_user_id('EMP-7') == 1
