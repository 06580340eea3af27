"""
Session / connection manager.

A DeviceSession is an explicit handle carrying the connection parameters and
the live transport. SessionManager owns the connect, reconnect and teardown
policy so call sites never retry on their own.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from .config import Settings
from .const import DEFAULT_LISTEN_PORT, DEFAULT_PORT
from .errors import AuthenticationFailed, DeviceError, NotConnected
from .logging_setup import log_cmd, log_error, log_info, log_warn
from .protocol import AuthState, authenticate
from .transport import pyzk_factory


@dataclass
class DeviceSession:
    host: str
    port: int = DEFAULT_PORT
    timeout: Optional[float] = 10
    listen_port: int = DEFAULT_LISTEN_PORT
    password: Optional[int] = None
    session_id: Optional[int] = None
    transport: Any = field(default=None, repr=False)
    connected: bool = False
    auth_state: AuthState = AuthState.UNAUTHENTICATED
    generation: int = 0

    @property
    def is_alive(self):
        return (self.connected and self.transport is not None
                and self.transport.is_connected())

    @property
    def address(self):
        return f"{self.host}:{self.port}"

    def matches(self, host, port, password):
        return self.host == host and self.port == port and self.password == password

    def to_dict(self):
        return {
            "host": self.host,
            "port": self.port,
            "session_id": self.session_id,
            "connected": self.is_alive,
            "auth_state": self.auth_state.value,
            "generation": self.generation,
        }


# timeout argument not given: take it from Settings
USE_SETTINGS = object()


class SessionManager:
    """Opens, re-opens and closes device sessions over a transport factory.

    transport_factory(host, port, timeout) must return a LowLevelTransport.
    """

    def __init__(self, transport_factory=None, settings=None):
        self.settings = settings or Settings()
        self.transport_factory = transport_factory or pyzk_factory(self.settings.force_udp)

    def connect(self, host, port=DEFAULT_PORT, timeout=USE_SETTINGS, listen_port=None,
                password=None, bulk=False):
        """bulk=True uses the bulk timeout (None: no timeout, TCP keepalive)"""
        if timeout is USE_SETTINGS:
            timeout = self.settings.bulk_timeout if bulk else self.settings.timeout
        session = DeviceSession(
            host=host,
            port=port,
            timeout=timeout,
            listen_port=listen_port or self.settings.listen_port,
            password=password,
        )
        self._open(session)
        return session

    def _open(self, session):
        log_info(f"Connecting to {session.address}...")
        transport = self.transport_factory(session.host, session.port, session.timeout)
        needs_auth = transport.open()

        session.transport = transport
        session.session_id = transport.session_id
        session.generation += 1
        session.auth_state = AuthState.UNAUTHENTICATED

        if session.password is not None:
            session.auth_state = AuthState.AUTHENTICATING
            try:
                session.auth_state = authenticate(transport, session.password)
            except DeviceError as e:
                session.auth_state = AuthState.FAILED
                self._teardown(session)
                log_error(f"Password authentication failed on {session.address}: {e}")
                if isinstance(e, AuthenticationFailed):
                    raise
                raise AuthenticationFailed(f"Password authentication failed: {e}") from e
        elif needs_auth:
            session.auth_state = AuthState.FAILED
            self._teardown(session)
            raise AuthenticationFailed(
                f"Device {session.address} requires a COM password")

        session.connected = True
        log_cmd(f"Connected to {session.address} (session {session.session_id})")
        return session

    def _teardown(self, session):
        transport = session.transport
        session.transport = None
        session.connected = False
        session.session_id = None
        if transport is None:
            return
        try:
            transport.close()
        except Exception as e:
            log_warn(f"Disconnect error on {session.address} (ignored): {e}")

    def ensure_connected(self, session):
        """Reconnect if the transport is down. Cached UIDs are suspect afterwards."""
        if session.is_alive:
            return session
        if not session.host:
            raise NotConnected("No connection parameters known")
        log_info(f"Reconnecting to {session.address}...")
        self._teardown(session)
        return self._open(session)

    def force_reconnect(self, session):
        """Always tear down and reconnect (fresh socket, fresh session id)"""
        log_info(f"Forcing fresh connection to {session.address}...")
        self._teardown(session)
        return self._open(session)

    def disconnect(self, session):
        """Best effort. Never raises."""
        if session is None:
            return
        self._teardown(session)
        session.auth_state = AuthState.UNAUTHENTICATED
        log_cmd(f"Disconnected from {session.address}")
