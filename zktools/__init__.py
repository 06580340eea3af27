"""ZKTeco / ESSL biometric terminal communication core."""

from .client import ZKClient
from .config import Settings
from .errors import DeviceError
from .session import DeviceSession, SessionManager
from .sync import SyncManager

__version__ = "1.0.0"

__all__ = [
    "DeviceError",
    "DeviceSession",
    "SessionManager",
    "Settings",
    "SyncManager",
    "ZKClient",
]
