"""
Persisted record shapes and the storage seam used by the sync manager.

Role strings carry admin scope: "0" regular, "14" admin, "14,3,7" admin on
devices 3 and 7. ``stored_devices`` is a comma list of device ids holding
the user.
"""

import threading
from datetime import datetime
from typing import Optional, Protocol

from pydantic import BaseModel

from .const import DEFAULT_PORT
from .records import format_finger_index, parse_finger_index


class Device(BaseModel):
    name: str
    ip: str
    port: int = DEFAULT_PORT
    password: Optional[int] = None
    device_id: Optional[int] = None


class StoredUser(BaseModel):
    user_id: str
    name: str = ''
    role: str = '0'
    card_no: Optional[str] = None
    password: Optional[str] = None
    stored_devices: Optional[str] = None

    def device_ids(self):
        if not self.stored_devices:
            return []
        return [d.strip() for d in self.stored_devices.split(',') if d.strip()]


class StoredFingerprint(BaseModel):
    user_id: str
    finger_index: str           # "<idx>,<valid>"
    template: str               # base64
    template_length: int = 0
    flag: int = 1
    device_id: Optional[int] = None

    @property
    def finger_idx(self):
        return parse_finger_index(self.finger_index)[0]

    @property
    def on_device(self):
        return parse_finger_index(self.finger_index)[1] == 1


class AttendanceLog(BaseModel):
    device_serial: Optional[str] = None
    user_id: str
    record_time: datetime
    type: int = 1
    state: int = 0
    device_id: Optional[int] = None


class SyncStore(Protocol):
    def get_user(self, user_id: str) -> Optional[StoredUser]: ...

    def insert_user(self, user: StoredUser) -> None: ...

    def update_user(self, user_id: str, **changes) -> None: ...

    def users_on_device(self, device_id: int) -> list: ...

    def upsert_fingerprint(self, fp: StoredFingerprint) -> bool:
        """Insert or replace the (user, device, finger) record. True if inserted."""

    def set_finger_available(self, user_id: str, device_id: Optional[int], finger_idx: int,
                             available: bool) -> bool: ...

    def has_log(self, record_time: datetime, device_id: Optional[int]) -> bool: ...

    def insert_log(self, log: AttendanceLog) -> None: ...


class InMemoryStore:
    """Dict-backed SyncStore for the CLI, the web bridge and tests"""

    def __init__(self):
        self._lock = threading.Lock()
        self.users = {}             # user_id -> StoredUser
        self.fingerprints = []      # [StoredFingerprint]
        self.logs = []              # [AttendanceLog]
        self._log_keys = set()

    def get_user(self, user_id):
        with self._lock:
            user = self.users.get(str(user_id))
            return user.model_copy() if user else None

    def insert_user(self, user):
        with self._lock:
            if user.user_id in self.users:
                raise KeyError(f"User {user.user_id} already stored")
            self.users[user.user_id] = user.model_copy()

    def update_user(self, user_id, **changes):
        with self._lock:
            user = self.users[str(user_id)]
            self.users[user.user_id] = user.model_copy(update=changes)

    def users_on_device(self, device_id):
        device_id = str(device_id)
        with self._lock:
            return [u.model_copy() for u in self.users.values()
                    if device_id in u.device_ids()]

    def fingerprints_for(self, user_id, device_id=None):
        with self._lock:
            return [f for f in self.fingerprints
                    if f.user_id == str(user_id)
                    and (device_id is None or f.device_id == device_id)]

    def upsert_fingerprint(self, fp):
        with self._lock:
            same_finger = [f for f in self.fingerprints
                           if f.user_id == fp.user_id and f.device_id == fp.device_id
                           and f.finger_idx == fp.finger_idx]
            # one record per (user, device, finger) survives
            for f in same_finger:
                self.fingerprints.remove(f)
            self.fingerprints.append(fp.model_copy())
            return not same_finger

    def has_log(self, record_time, device_id):
        with self._lock:
            return (record_time, device_id) in self._log_keys

    def insert_log(self, log):
        with self._lock:
            self.logs.append(log.model_copy())
            self._log_keys.add((log.record_time, log.device_id))

    def set_finger_available(self, user_id, device_id, finger_idx, available):
        """Flip the "<idx>,<0|1>" on-device flag. The template itself is kept."""
        with self._lock:
            found = False
            for i, f in enumerate(self.fingerprints):
                if (f.user_id == str(user_id) and f.device_id == device_id
                        and f.finger_idx == int(finger_idx)):
                    self.fingerprints[i] = f.model_copy(update={
                        "finger_index": format_finger_index(f.finger_idx, 1 if available else 0)})
                    found = True
            return found
