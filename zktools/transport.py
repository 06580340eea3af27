"""
Low-level transport
===================
``LowLevelTransport`` is the narrow surface the rest of the package talks to:
raw command send/receive, buffered table reads, and the SDK's user and
attendance listings.

``PyzkTransport`` implements it on top of pyzk. pyzk keeps its socket and
session state in name-mangled attributes (``_ZK__sock``, ``_ZK__session_id``,
``_ZK__reply_id``, ``_ZK__data_recv``); every access to them lives in this
module and nowhere else.
"""

import socket
from contextlib import contextmanager
from typing import Optional, Protocol

from zk import ZK
from zk.exception import ZKError, ZKErrorConnection, ZKErrorResponse, ZKNetworkError

from .codec import Response, parse_buffer_request, parse_response
from .const import (
    CMD_ACK_OK, CMD_ACK_UNAUTH, CMD_CONNECT, CMD_EXIT, DEFAULT_PORT, USHRT_MAX,
    command_name,
)
from .errors import (
    CommandRejected, ConnectionRefused, ConnectionTimeout, DeviceConnectionError,
    DeviceError, NotConnected,
)
from .logging_setup import log_debug, log_proto, log_warn


class LowLevelTransport(Protocol):
    session_id: Optional[int]

    def open(self) -> bool:
        """Open the socket and run the CONNECT handshake. True if auth is required."""

    def close(self) -> None: ...

    def is_connected(self) -> bool: ...

    def send_command(self, command: int, payload: bytes = b'',
                     response_size: int = 8) -> Response: ...

    def read_buffer(self, request: bytes) -> bytes: ...

    def get_users(self) -> list: ...

    def set_user(self, uid: int, name: str, privilege: int, password: str,
                 user_id: str, card: int) -> None: ...

    def get_attendance(self) -> list: ...


@contextmanager
def sdk_errors(what):
    """Translate pyzk and socket exceptions into this package's errors."""
    try:
        yield
    except DeviceError:
        raise
    except ZKErrorConnection as e:
        raise NotConnected(f"{what}: {e}") from e
    except ZKNetworkError as e:
        msg = str(e)
        if 'timed out' in msg:
            raise ConnectionTimeout(f"{what}: {msg}") from e
        if 'refused' in msg.lower():
            raise ConnectionRefused(f"{what}: {msg}") from e
        raise DeviceConnectionError(f"{what}: {msg}") from e
    except ZKErrorResponse as e:
        raise DeviceError(f"{what}: {e}") from e
    except ZKError as e:
        raise DeviceError(f"{what}: {e}") from e
    except socket.timeout as e:
        raise ConnectionTimeout(f"{what}: timed out") from e
    except ConnectionRefusedError as e:
        raise ConnectionRefused(f"{what}: connection refused") from e
    except OSError as e:
        raise DeviceConnectionError(f"{what}: {e}") from e


class PyzkTransport:
    """pyzk-backed transport. One instance == one socket."""

    def __init__(self, host, port=DEFAULT_PORT, timeout=10, force_udp=False, zk=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.force_udp = force_udp
        self.session_id = None
        self._zk = zk
        self._sock = None
        self._calibrated = False

    def __repr__(self):
        return f"PyzkTransport({self.host}:{self.port}, session={self.session_id})"

    # ─── Connection ───

    def _new_zk(self):
        if self._zk is not None:
            return self._zk
        return ZK(self.host, port=self.port, timeout=self.timeout or 60,
                  password=0, force_udp=self.force_udp, ommit_ping=True)

    def _create_socket(self):
        if self.force_udp:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.settimeout(self.timeout)
            return sock
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        if self.timeout is None:
            # Bulk mode: block indefinitely, let TCP keepalive detect dead peers
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        sock.settimeout(self.timeout)
        sock.connect((self.host, self.port))
        return sock

    def open(self):
        zk = self._new_zk()
        self._zk = zk
        try:
            with sdk_errors(f"connect {self.host}:{self.port}"):
                self._sock = self._create_socket()
                zk._ZK__sock = self._sock
                zk.tcp = not self.force_udp
                zk._ZK__session_id = 0
                zk._ZK__reply_id = USHRT_MAX - 1
                zk._ZK__send_command(CMD_CONNECT)
                resp = parse_response(zk._ZK__data_recv)
        except DeviceError:
            self.close()
            raise
        self._calibrated = False
        self.session_id = resp.session_id
        zk._ZK__session_id = resp.session_id
        log_proto(f"CONNECT -> status={resp.status} session={resp.session_id}")

        if resp.status not in (CMD_ACK_OK, CMD_ACK_UNAUTH):
            self.close()
            raise CommandRejected(CMD_CONNECT, resp.status)
        # pyzk refuses anything but CONNECT/AUTH until this flag is set
        zk.is_connect = True
        return resp.status == CMD_ACK_UNAUTH

    def close(self):
        zk = self._zk
        if zk is not None and zk.is_connect:
            try:
                zk._ZK__send_command(CMD_EXIT)
            except (ZKError, OSError) as e:
                log_debug(f"EXIT failed on {self.host}: {e}")
            zk.is_connect = False
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError as e:
                log_warn(f"Socket close failed on {self.host}: {e}")
            self._sock = None
        self.session_id = None

    def is_connected(self):
        return self._zk is not None and self._sock is not None and bool(self._zk.is_connect)

    def _require(self):
        if not self.is_connected():
            raise NotConnected(f"Not connected to {self.host}:{self.port}")
        return self._zk

    # ─── Raw commands ───

    def send_command(self, command, payload=b'', response_size=8):
        zk = self._zk
        if zk is None or self._sock is None:
            raise NotConnected(f"Not connected to {self.host}:{self.port}")
        with sdk_errors(command_name(command)):
            zk._ZK__send_command(command, bytes(payload), response_size)
            return parse_response(zk._ZK__data_recv)

    def read_buffer(self, request):
        zk = self._require()
        command, fct, ext = parse_buffer_request(request)
        with sdk_errors(f"read buffer {command_name(command)}"):
            data, size = zk.read_with_buffer(command, fct, ext)
        return data or b''

    # ─── SDK listings ───

    def get_users(self):
        zk = self._require()
        with sdk_errors("get users"):
            users = zk.get_users()
        self._calibrated = True
        return users

    def set_user(self, uid, name, privilege, password, user_id, card):
        zk = self._require()
        if not self._calibrated:
            # pyzk learns the user record size (28 or 72 bytes) from a listing
            self.get_users()
        with sdk_errors("set user"):
            zk.set_user(uid=uid, name=name, privilege=privilege, password=password,
                        group_id='', user_id=str(user_id), card=card)

    def get_attendance(self):
        zk = self._require()
        with sdk_errors("get attendance"):
            return zk.get_attendance()


def pyzk_factory(force_udp=False):
    """Transport factory for SessionManager"""
    def factory(host, port, timeout):
        return PyzkTransport(host, port, timeout, force_udp=force_udp)
    return factory
