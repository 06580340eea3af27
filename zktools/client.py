"""
ZKTeco / ESSL device client
===========================
Session-aware protocol operations: every call goes through the
SessionManager so reconnect policy lives in one place.

Usage:
    manager = SessionManager()
    client = ZKClient.connect("10.10.20.59", password=123456, manager=manager)
    users = client.fetch_users()
    templates = client.fetch_templates(user_id="348", users=users)
    client.close()
"""

import base64
import time
from dataclasses import dataclass, field

from . import protocol
from .const import DEFAULT_PORT, USER_DEFAULT
from .errors import DeviceError
from .logging_setup import log_cmd, log_info, log_warn
from .records import (
    TemplateRecord, decode_template_stream, find_user, normalize_attendance,
    normalize_user, parse_role,
)
from .session import USE_SETTINGS, SessionManager


@dataclass
class TemplateWriteResult:
    success: int = 0
    failed: int = 0
    errors: list = field(default_factory=list)   # [{"finger_idx": n, "error": "..."}]

    def to_dict(self):
        return {"success": self.success, "failed": self.failed, "errors": list(self.errors)}


def _template_bytes(template):
    if isinstance(template, str):
        return base64.b64decode(template)
    return bytes(template)


def _template_items(templates):
    """Accept TemplateRecords, (idx, data) pairs or {"finger_idx", "template"} dicts"""
    for t in templates:
        if isinstance(t, TemplateRecord):
            yield t.finger_idx, t.template
        elif isinstance(t, dict):
            idx = t.get("finger_idx", t.get("fingerIdx"))
            yield int(idx), _template_bytes(t["template"])
        else:
            idx, data = t
            yield int(idx), _template_bytes(data)


class ZKClient:
    """Protocol operations bound to one DeviceSession"""

    def __init__(self, manager, session, sleep=time.sleep):
        self.manager = manager
        self.session = session
        self.settings = manager.settings
        self._sleep = sleep

    @classmethod
    def connect(cls, host, port=DEFAULT_PORT, password=None, timeout=USE_SETTINGS,
                listen_port=None, manager=None, bulk=False):
        manager = manager or SessionManager()
        session = manager.connect(host, port, timeout=timeout, listen_port=listen_port,
                                  password=password, bulk=bulk)
        return cls(manager, session)

    def __repr__(self):
        return f"ZKClient({self.session.address})"

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @property
    def transport(self):
        return self.manager.ensure_connected(self.session).transport

    def settle(self):
        if self.settings.settle_delay > 0:
            self._sleep(self.settings.settle_delay)

    def close(self):
        self.manager.disconnect(self.session)

    # ─── Session ───

    def authenticate(self, password=None):
        if password is not None:
            self.session.password = password
        if self.session.password is None:
            raise ValueError("No password configured")
        self.session.auth_state = protocol.authenticate(self.transport, self.session.password)
        return self.session.auth_state

    # ─── Users ───

    def fetch_users(self):
        """Full user list on a fresh connection"""
        self.manager.force_reconnect(self.session)
        raw = self.session.transport.get_users() or []
        users = [normalize_user(u) for u in raw]
        log_cmd(f"Fetched {len(users)} users from {self.session.address}")
        return users

    def set_user(self, uid, user_id, name, password='', role=USER_DEFAULT, card_no=0):
        role = parse_role(role)
        try:
            card_no = int(card_no or 0)
        except (TypeError, ValueError):
            card_no = 0
        log_cmd(f"Writing user uid={uid} user_id={user_id} name={name} role={role}")
        self.transport.set_user(uid, name, role, password or '', str(user_id), card_no)

    def delete_user(self, uid):
        protocol.delete_user(self.transport, uid)

    def delete_users(self, uids):
        result = {"success": 0, "failed": 0, "errors": []}
        for uid in uids:
            try:
                self.delete_user(uid)
                result["success"] += 1
            except DeviceError as e:
                result["failed"] += 1
                result["errors"].append({"uid": uid, "error": str(e)})
        log_info(f"Delete users complete: {result['success']} ok, {result['failed']} failed")
        return result

    # ─── Attendance ───

    def fetch_attendance(self):
        """Attendance log on a fresh connection"""
        self.manager.force_reconnect(self.session)
        started = time.monotonic()
        raw = self.session.transport.get_attendance() or []
        logs = [normalize_attendance(r) for r in raw]
        log_cmd(f"Fetched {len(logs)} attendance logs in {time.monotonic() - started:.1f}s")
        return logs

    # ─── Templates ───

    def fetch_templates(self, user_id=None, users=None):
        """All templates, or only those of user_id (empty if the user is unknown)"""
        if user_id is not None and users is None:
            users = self.fetch_users()
        data = protocol.read_template_dump(self.transport)
        log_cmd(f"Received {len(data)} bytes of template data")
        records = decode_template_stream(data, self.settings.max_template_size)
        log_cmd(f"Parsed {len(records)} fingerprint templates")
        if user_id is None:
            return records

        user = find_user(users or [], user_id)
        if user is None:
            log_warn(f"User {user_id} not found in user list")
            return []
        return [r for r in records if r.uid == user.uid]

    def write_template(self, uid, finger_idx, template):
        protocol.write_template(self.transport, uid, finger_idx, _template_bytes(template))

    def write_templates(self, uid, templates):
        """Write each template, count failures, then refresh and settle"""
        result = TemplateWriteResult()
        for finger_idx, data in _template_items(templates):
            try:
                self.write_template(uid, finger_idx, data)
                result.success += 1
            except (DeviceError, ValueError) as e:
                result.failed += 1
                result.errors.append({"finger_idx": finger_idx, "error": str(e)})
                log_warn(f"Failed to write template for finger {finger_idx}: {e}", "CMD")
        self.refresh_data()
        self.settle()
        log_cmd(f"Write templates complete: {result.success} ok, {result.failed} failed")
        return result

    def delete_template(self, uid, finger_idx):
        protocol.delete_user_template(self.transport, uid, finger_idx)

    # ─── Device ───

    def refresh_data(self):
        try:
            transport = self.transport
        except DeviceError as e:
            log_warn(f"Refresh data skipped: {e}", "CMD")
            return False
        return protocol.refresh_data(transport)

    def get_time(self):
        return protocol.get_time(self.transport)

    def set_time(self, t):
        return protocol.set_time(self.transport, t)

    def query_device_info(self):
        info = protocol.query_device_info(self.transport)
        info.setdefault("IPAddress", self.session.host)
        return info

    def set_com_password(self, new_password):
        """Write COMKey=<new>; a non-ACK reply is only a warning"""
        resp = protocol.write_option(self.transport, f"COMKey={int(new_password)}")
        if not resp.ok:
            log_warn(f"COMKey write returned status {resp.status}; "
                     f"the device may still have applied it", "CMD")
        self.refresh_data()
        if resp.ok:
            # later reconnects must authenticate with the new key
            self.session.password = int(new_password)
        return resp.ok
