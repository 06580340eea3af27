"""
Safe user rewrite
=================
The device has no "edit one fingerprint" command and template writes are
keyed by a device-assigned uid that can change on recreate. Every mutation
of a user's fingerprints therefore goes through the same sequence:

  1. look up the user, delete it by uid (failures tolerated)
  2. RefreshData + settle delay
  3. SetUser with the prior uid, else max(uid)+1, else the numeric id
  4. RefreshData + settle delay, re-fetch users, resolve the actual uid
  5. write back every surviving template to that uid
"""

from dataclasses import dataclass, field
from typing import Optional

from .errors import DeviceError, UserNotFoundAfterWrite
from .logging_setup import log_info, log_warn
from .records import TemplateRecord, find_user, uid_for_user_id


@dataclass
class UserProfile:
    name: str = ''
    password: str = ''
    role: object = 0
    card_no: object = 0

    @classmethod
    def from_user(cls, user):
        return cls(user.name, user.password, user.role, user.card_no)

    @classmethod
    def from_dict(cls, d):
        return cls(
            name=d.get("name") or '',
            password=d.get("password") or '',
            role=d.get("role", 0),
            card_no=d.get("card_no", d.get("cardNo", 0)),
        )


@dataclass
class RewriteResult:
    user_id: str
    old_uid: Optional[int] = None
    uid: Optional[int] = None
    written: int = 0
    failed: int = 0
    errors: list = field(default_factory=list)
    verified_templates: Optional[int] = None

    @property
    def success(self):
        return self.failed == 0

    def to_dict(self):
        return {
            "success": self.success,
            "user_id": self.user_id,
            "old_uid": self.old_uid,
            "uid": self.uid,
            "written": self.written,
            "failed": self.failed,
            "errors": list(self.errors),
            "verified_templates": self.verified_templates,
        }


def _finger_of(t):
    if isinstance(t, TemplateRecord):
        return t.finger_idx
    if isinstance(t, dict):
        return int(t.get("finger_idx", t.get("fingerIdx")))
    return int(t[0])


def choose_uid(existing, users, user_id, max_uid):
    if existing is not None:
        return existing.uid
    if users:
        return max(u.uid for u in users) + 1
    return uid_for_user_id(user_id, max_uid)


def rewrite_user(client, user_id, profile, templates=(), drop_fingers=(), users=None):
    """Delete, recreate and re-template one user. Returns RewriteResult.

    Raises UserNotFoundAfterWrite if the recreated user cannot be resolved.
    """
    user_id = str(user_id)
    if isinstance(profile, dict):
        profile = UserProfile.from_dict(profile)
    result = RewriteResult(user_id)

    # 1. look up and delete
    if users is None:
        try:
            users = client.fetch_users()
        except DeviceError as e:
            log_warn(f"[Rewrite {user_id}] User lookup failed, assuming new user: {e}", "SYNC")
            users = []
    existing = find_user(users, user_id)
    if existing is not None:
        result.old_uid = existing.uid
        log_info(f"[Rewrite {user_id}] User exists (UID: {existing.uid}). Deleting for clean sync...", "SYNC")
        try:
            client.delete_user(existing.uid)
        except DeviceError as e:
            log_warn(f"[Rewrite {user_id}] Delete failed (continuing): {e}", "SYNC")

    # 2. refresh + settle
    client.refresh_data()
    client.settle()

    # 3. recreate
    uid = choose_uid(existing, users, user_id, client.settings.max_uid)
    log_info(f"[Rewrite {user_id}] Writing user info (UID: {uid})...", "SYNC")
    client.set_user(uid, user_id, profile.name, profile.password, profile.role, profile.card_no)

    # 4. refresh + settle, resolve the uid the device actually assigned
    client.refresh_data()
    client.settle()
    found = find_user(client.fetch_users(), user_id)
    if found is None:
        raise UserNotFoundAfterWrite(user_id)
    result.uid = found.uid
    if found.uid != uid:
        log_info(f"[Rewrite {user_id}] Device assigned UID {found.uid} (requested {uid})", "SYNC")

    # 5. write back surviving templates
    drop = {int(f) for f in drop_fingers}
    keep = [t for t in templates if _finger_of(t) not in drop]
    if keep:
        written = client.write_templates(found.uid, keep)
        result.written = written.success
        result.failed = written.failed
        result.errors = written.errors
    else:
        log_info(f"[Rewrite {user_id}] No templates to write back", "SYNC")

    log_info(f"[Rewrite {user_id}] Done: uid={result.uid} written={result.written} "
             f"failed={result.failed}", "SYNC")
    return result


def delete_fingerprint(client, user_id, finger_idx, profile, templates, users=None):
    """Remove one finger by rewriting the user without it"""
    return rewrite_user(client, user_id, profile, templates,
                        drop_fingers=(finger_idx,), users=users)


def add_fingerprint(client, user_id, finger_idx, template, users=None):
    """Write one template to the user's current uid. No rewrite."""
    if users is None:
        users = client.fetch_users()
    user = find_user(users, user_id)
    if user is None:
        raise DeviceError(f"User {user_id} not found on device")
    client.write_template(user.uid, finger_idx, template)
    client.refresh_data()
    return user.uid


def copy_user(source, target, user_id):
    """Read a user and its templates from source, rewrite them on target, verify"""
    user_id = str(user_id)
    source_users = source.fetch_users()
    user = find_user(source_users, user_id)
    if user is None:
        raise DeviceError(f"User {user_id} not found on source device")
    try:
        templates = source.fetch_templates(user_id, users=source_users)
    except DeviceError as e:
        log_warn(f"[Copy {user_id}] Failed to read templates from source: {e}", "SYNC")
        templates = []
    source.close()

    result = rewrite_user(target, user_id, UserProfile.from_user(user), templates)

    try:
        verified = target.fetch_templates(user_id)
    except DeviceError as e:
        log_warn(f"[Copy {user_id}] Verification read failed: {e}", "SYNC")
        return result
    result.verified_templates = len(verified)
    if templates and len(verified) != len(templates):
        log_warn(f"[Copy {user_id}] Template count mismatch "
                 f"(source: {len(templates)}, target: {len(verified)})", "SYNC")
    return result
