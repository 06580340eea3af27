"""
Entity decoders: device users, fingerprint templates, attendance records.
"""

import base64
import struct
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .const import TEMPLATE_RECORD_HEADER, USER_ADMIN, USER_DEFAULT

DEFAULT_MAX_TEMPLATE_SIZE = 2000

_RECORD_HEAD = struct.Struct('<HHBB')   # size, uid, finger, valid


# ─── Users ────────────────────────────────────────────────────────────────────

@dataclass
class DeviceUser:
    uid: int
    user_id: str
    name: str = ''
    role: int = USER_DEFAULT
    password: str = ''
    card_no: int = 0

    @property
    def is_admin(self):
        return self.role == USER_ADMIN

    def to_dict(self):
        return {
            "uid": self.uid,
            "user_id": self.user_id,
            "name": self.name,
            "role": self.role,
            "password": self.password,
            "card_no": self.card_no,
        }


def _field(obj, name, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def parse_role(role):
    """'14,1,2' -> 14, '0' -> 0, None -> 0"""
    if role is None or role == '':
        return USER_DEFAULT
    if isinstance(role, int):
        return role
    head = str(role).split(',')[0].strip()
    try:
        return int(head)
    except ValueError:
        return USER_DEFAULT


def normalize_user(sdk_user):
    """SDK user listing entry (object or dict) -> DeviceUser"""
    uid = int(_field(sdk_user, 'uid', 0) or 0)
    user_id = _field(sdk_user, 'user_id') or str(uid)
    role = _field(sdk_user, 'privilege', _field(sdk_user, 'role'))
    card = _field(sdk_user, 'card', _field(sdk_user, 'card_no', 0))
    try:
        card = int(card or 0)
    except (TypeError, ValueError):
        card = 0
    return DeviceUser(
        uid=uid,
        user_id=str(user_id),
        name=(_field(sdk_user, 'name') or '').strip(),
        role=parse_role(role),
        password=_field(sdk_user, 'password') or '',
        card_no=card,
    )


def find_user(users, user_id):
    user_id = str(user_id)
    for u in users:
        if u.user_id == user_id:
            return u
    return None


# ─── Fingerprint templates ────────────────────────────────────────────────────

@dataclass
class TemplateRecord:
    uid: int
    finger_idx: int
    template: bytes
    valid: int = 1
    size: int = 0

    def __post_init__(self):
        if not self.size:
            self.size = len(self.template) + TEMPLATE_RECORD_HEADER

    @property
    def template_b64(self):
        return base64.b64encode(self.template).decode('ascii')

    @classmethod
    def from_b64(cls, uid, finger_idx, template_b64, valid=1):
        return cls(uid, finger_idx, base64.b64decode(template_b64), valid)

    def to_dict(self):
        return {
            "uid": self.uid,
            "finger_idx": self.finger_idx,
            "valid": self.valid,
            "size": self.size,
            "template": self.template_b64,
        }


def decode_template_stream(data, max_size=DEFAULT_MAX_TEMPLATE_SIZE):
    """Walk a raw EF_FINGER dump and return every plausible record.

    Record: [size:2][uid:2][finger:1][valid:1][template: size-6]
    An implausible size advances one byte to resync; a record running past
    the end of the buffer stops decoding.
    """
    records = []
    offset = 0
    n = len(data)
    while offset + TEMPLATE_RECORD_HEADER <= n:
        size, uid, finger, valid = _RECORD_HEAD.unpack_from(data, offset)
        if size <= 0 or size > max_size:
            offset += 1
            continue
        if offset + size > n:
            break
        template = bytes(data[offset + TEMPLATE_RECORD_HEADER:offset + size])
        records.append(TemplateRecord(uid, finger, template, valid, size))
        offset += size
    return records


def encode_template_record(uid, finger_idx, template, valid=1):
    """Inverse of one decode step"""
    return _RECORD_HEAD.pack(len(template) + TEMPLATE_RECORD_HEADER,
                             uid, finger_idx, valid) + bytes(template)


def strip_size_prefix(data):
    """Drop the uint32 total-size prefix a buffered read carries, if consistent"""
    if len(data) >= 4:
        total = struct.unpack('<I', data[:4])[0]
        if total == len(data) - 4:
            return data[4:]
    return data


def format_finger_index(finger_idx, valid=1):
    """Stored finger index form: '<idx>,<valid>'"""
    return f"{finger_idx},{valid}"


def parse_finger_index(value):
    """'3,1' -> (3, 1); '3' -> (3, 1)"""
    head, _, tail = str(value).partition(',')
    return int(head), int(tail) if tail.strip() else 1


# ─── Attendance ───────────────────────────────────────────────────────────────

@dataclass
class AttendanceRecord:
    user_id: str
    record_time: datetime
    status: int = 0
    punch: int = 0
    uid: Optional[int] = None

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "record_time": self.record_time.isoformat(),
            "status": self.status,
            "punch": self.punch,
            "uid": self.uid,
        }


def normalize_attendance(sdk_record):
    """SDK attendance entry (object or dict) -> AttendanceRecord"""
    return AttendanceRecord(
        user_id=str(_field(sdk_record, 'user_id', '')),
        record_time=_field(sdk_record, 'timestamp', _field(sdk_record, 'record_time')),
        status=int(_field(sdk_record, 'status', 0) or 0),
        punch=int(_field(sdk_record, 'punch', 0) or 0),
        uid=_field(sdk_record, 'uid'),
    )


def uid_for_user_id(user_id, max_uid=3000):
    """Numeric external id mapped into the device uid range 1..max_uid"""
    try:
        uid = int(user_id)
    except (TypeError, ValueError):
        return 1
    if uid <= 0 or uid > max_uid:
        uid = (uid % max_uid) or 1
    return uid
