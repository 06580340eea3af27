"""
ZKTeco / ESSL Command Codec
===========================
Pure functions for the vendor frame format. No I/O.

Frame (little-endian):
  [command:2] [checksum:2] [session_id:2] [reply_id:2] [payload...]

Over TCP every frame is prefixed with an 8-byte top header:
  [0x5050:2] [0x7282:2] [length:4]
"""

import datetime
import struct
from dataclasses import dataclass

from .const import (
    CMD_ACK_OK, HEADER_SIZE, TCP_MAGIC_1, TCP_MAGIC_2, USHRT_MAX, AUTH_TICKS,
)
from .errors import MalformedResponse


# ═══════════════════════════════════════════════════════════
# FRAME BUILDER / PARSER
# ═══════════════════════════════════════════════════════════

def checksum16(data):
    """16-bit one's-complement style checksum over LE words (vendor variant)"""
    total = 0
    n = len(data)
    i = 0
    while n > 1:
        total += data[i] | (data[i + 1] << 8)
        if total > USHRT_MAX:
            total -= USHRT_MAX
        i += 2
        n -= 2
    if n:
        total += data[-1]
    while total > USHRT_MAX:
        total -= USHRT_MAX
    total = ~total
    while total < 0:
        total += USHRT_MAX
    return total


def build_frame(command, payload=b'', session_id=0, reply_id=0):
    """Build a command frame.

    The checksum is computed with the incoming reply_id; the emitted frame
    carries reply_id + 1 (wrapping at 65535), matching device firmware.
    """
    payload = bytes(payload)
    buf = struct.pack('<4H', command, 0, session_id, reply_id) + payload
    checksum = checksum16(buf)
    reply_id += 1
    if reply_id >= USHRT_MAX:
        reply_id -= USHRT_MAX
    return struct.pack('<4H', command, checksum, session_id, reply_id) + payload


def wrap_tcp(frame):
    """Prefix a frame with the TCP top header"""
    return struct.pack('<HHI', TCP_MAGIC_1, TCP_MAGIC_2, len(frame)) + frame


def unwrap_tcp(data):
    """Strip the TCP top header if present, otherwise return data unchanged"""
    if len(data) >= 8:
        magic1, magic2, length = struct.unpack('<HHI', data[:8])
        if magic1 == TCP_MAGIC_1 and magic2 == TCP_MAGIC_2:
            return data[8:8 + length]
    return data


@dataclass(frozen=True)
class Response:
    status: int
    checksum: int
    session_id: int
    reply_id: int
    payload: bytes = b''

    @property
    def ok(self):
        return self.status == CMD_ACK_OK

    @property
    def text(self):
        return payload_text(self.payload)


def parse_response(data):
    """Parse a reply (optionally TCP-wrapped) into a Response"""
    if data is None:
        raise MalformedResponse("No response data", b'')
    data = unwrap_tcp(bytes(data))
    if len(data) < HEADER_SIZE:
        raise MalformedResponse(f"Response too short ({len(data)} bytes)", data)
    status, checksum, session_id, reply_id = struct.unpack('<4H', data[:HEADER_SIZE])
    return Response(status, checksum, session_id, reply_id, data[HEADER_SIZE:])


def payload_text(payload):
    return bytes(payload).replace(b'\x00', b'').decode('ascii', errors='ignore').strip()


def strip_header(data):
    """Drop the 8-byte header and NUL bytes, return trimmed ASCII text"""
    if data is None or len(data) <= HEADER_SIZE:
        return ''
    return payload_text(data[HEADER_SIZE:])


def parse_key_value_blob(text):
    """'A=1,B=2,junk' -> {'A': '1', 'B': '2'}. Parts without '=' are dropped."""
    result = {}
    for part in text.split(','):
        if '=' not in part:
            continue
        key, _, value = part.partition('=')
        key = key.strip()
        if key:
            result[key] = value
    return result


def parse_single_value(text, default_key):
    """Single option reply: 'MAC=00:17:..' or a bare value stored under default_key"""
    if '=' in text:
        key, _, value = text.partition('=')
        return {key.strip(): value}
    return {default_key: text}


def hex_dump(data, prefix="  "):
    """Pretty hex dump of bytes"""
    hex_str = ' '.join(f'{b:02X}' for b in data)
    ascii_str = ''.join(chr(b) if 32 <= b < 127 else '.' for b in data)
    return f"{prefix}{hex_str}  |{ascii_str}|"


# ═══════════════════════════════════════════════════════════
# COM PASSWORD KEY
# ═══════════════════════════════════════════════════════════

def make_auth_key(password, session_id, ticks=AUTH_TICKS):
    """Derive the 32-bit CMD_AUTH key from a numeric COM password.

      1. reverse the 32 bits of the password
      2. add the session id (wrapping at 32 bits)
      3. XOR the LE bytes with 'Z','K','S','O'
      4. swap the two 16-bit halves
      5. XOR bytes 0,1,3 with ticks; byte 2 becomes ticks
      6. read the 4 bytes back as LE uint32
    """
    password = int(password)
    session_id = int(session_id)

    k = 0
    for i in range(32):
        k = (k << 1) | ((password >> i) & 1)
    k = (k + session_id) & 0xFFFFFFFF

    b = struct.pack('<I', k)
    b = bytes([b[0] ^ ord('Z'), b[1] ^ ord('K'), b[2] ^ ord('S'), b[3] ^ ord('O')])
    lo, hi = struct.unpack('<HH', b)
    b = struct.pack('<HH', hi, lo)

    t = ticks & 0xFF
    b = bytes([b[0] ^ t, b[1] ^ t, t, b[3] ^ t])
    return struct.unpack('<I', b)[0]


def auth_payload(password, session_id, ticks=AUTH_TICKS):
    return struct.pack('<I', make_auth_key(password, session_id, ticks))


# ═══════════════════════════════════════════════════════════
# DEVICE TIME
# ═══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DeviceTime:
    year: int
    month: int
    day: int
    hour: int = 0
    minute: int = 0
    second: int = 0

    @classmethod
    def from_datetime(cls, dt):
        return cls(dt.year, dt.month, dt.day, dt.hour, dt.minute, dt.second)

    def to_datetime(self):
        return datetime.datetime(self.year, self.month, self.day,
                                 self.hour, self.minute, self.second)

    def __str__(self):
        return (f"{self.year:04d}-{self.month:02d}-{self.day:02d} "
                f"{self.hour:02d}:{self.minute:02d}:{self.second:02d}")


def encode_device_time(t):
    """DeviceTime or datetime -> packed uint32 (2000..2099 only)"""
    if isinstance(t, datetime.datetime):
        t = DeviceTime.from_datetime(t)
    if not 2000 <= t.year <= 2099:
        raise ValueError(f"Year {t.year} outside device range 2000..2099")
    days = (t.year % 100) * 12 * 31 + (t.month - 1) * 31 + t.day - 1
    return days * 86400 + t.hour * 3600 + t.minute * 60 + t.second


def decode_device_time(value):
    """Packed uint32 (int or 4 LE bytes) -> DeviceTime"""
    if isinstance(value, (bytes, bytearray)):
        value = struct.unpack('<I', bytes(value[:4]))[0]
    second = value % 60
    value //= 60
    minute = value % 60
    value //= 60
    hour = value % 24
    value //= 24
    day = value % 31 + 1
    value //= 31
    month = value % 12 + 1
    value //= 12
    return DeviceTime(value + 2000, month, day, hour, minute, second)


# ═══════════════════════════════════════════════════════════
# BUFFERED READ REQUEST
# ═══════════════════════════════════════════════════════════

BUFFER_REQUEST_FMT = '<bhii'


def build_buffer_request(command, fct=0, ext=0):
    """11-byte CMD_PREPARE_BUFFER request.

    EF_FINGER dump: 01 07 00 02 00 00 00 00 00 00 00
    """
    return struct.pack(BUFFER_REQUEST_FMT, 1, command, fct, ext)


def parse_buffer_request(request):
    """Inverse of build_buffer_request -> (command, fct, ext)"""
    if len(request) != struct.calcsize(BUFFER_REQUEST_FMT):
        raise MalformedResponse(f"Bad buffer request length {len(request)}", request)
    _, command, fct, ext = struct.unpack(BUFFER_REQUEST_FMT, request)
    return command, fct, ext
