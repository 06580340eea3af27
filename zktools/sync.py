"""
Bulk device → store synchronization
===================================
``SyncManager`` pulls users, fingerprint templates and attendance logs
from one or more devices into a ``SyncStore``, publishing progress to
subscribed listeners.

Devices are synced strictly one after another; every bulk loop checks the
stop signal and raises ``Cancelled``, after which the device is
disconnected and the run ends in the ``stopped`` phase.
"""

import copy
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from typing import Optional

from .client import ZKClient
from .errors import Cancelled, DeviceError
from .locks import GLOBAL
from .logging_setup import log_error, log_sync, log_warn
from .records import format_finger_index
from .session import SessionManager
from .store import AttendanceLog, StoredFingerprint, StoredUser

SYNC_TIMEOUT = 20
PROGRESS_EVERY = 100
USERS_SHARE = 20        # percent of the progress bar taken by the users phase
MAX_ORPHAN_WARNINGS = 5

_NUMERIC = re.compile(r'^\d+$')


def _is_numeric(name):
    return bool(name) and bool(_NUMERIC.match(name.strip()))


def empty_results():
    return {
        "users": {"synced": 0, "updated": 0, "skipped": 0},
        "logs": {"synced": 0, "skipped": 0},
        "fingerprints": {"saved": 0, "updated": 0, "errors": 0},
        "duration": 0.0,
    }


@dataclass
class SyncState:
    is_syncing: bool = False
    phase: str = "idle"         # idle | users | logs | complete | stopped | error
    status: str = "idle"
    message: str = ''
    progress: int = 0
    current: int = 0
    total: int = 0
    results: dict = field(default_factory=empty_results)
    error: Optional[str] = None
    is_multi_device: bool = False
    current_device_index: int = 0
    total_devices: int = 0
    current_device_name: Optional[str] = None
    device_results: list = field(default_factory=list)

    def to_dict(self):
        return copy.deepcopy(asdict(self))


def merge_role(current, admin_on_device, device_id):
    """New role string for a stored user, or None if unchanged.

    With a device id the admin scope list gains or loses that id; without
    one the role collapses to plain "14" / "0".
    """
    current = str(current or '0')
    if device_id is None:
        wanted = '14' if admin_on_device else '0'
        return wanted if wanted != current else None

    dev = str(device_id)
    is_admin = current.startswith('14')
    scope = [d.strip() for d in current.split(',')[1:] if d.strip()] if is_admin else []
    if admin_on_device:
        if not is_admin:
            return f"14,{dev}"
        if dev in scope:
            return None
        return ','.join(['14'] + scope + [dev])
    if not is_admin:
        return None
    remaining = [d for d in scope if d != dev]
    wanted = ','.join(['14'] + remaining) if remaining else '0'
    return wanted if wanted != current else None


def new_user_role(admin_on_device, device_id):
    if not admin_on_device:
        return '0'
    return f"14,{device_id}" if device_id is not None else '14'


class SyncManager:
    """Observable sync runner over a SyncStore.

    connect(device) must return a ZKClient-like object; by default it opens
    a session with ``SYNC_TIMEOUT`` through the shared SessionManager.
    """

    def __init__(self, store, manager=None, connect=None, clock=time.monotonic, lock=None):
        self.store = store
        self.manager = manager or SessionManager()
        self.settings = self.manager.settings
        self._connect = connect or self._connect_device
        self._clock = clock
        self._state = SyncState()
        self._state_lock = threading.Lock()
        self._listeners = []
        self._stop = threading.Event()
        self._started = 0.0
        self.lock = lock           # OperationLock held on GLOBAL for a whole run

    def _connect_device(self, device):
        return ZKClient.connect(device.ip, device.port, password=device.password,
                                timeout=SYNC_TIMEOUT, manager=self.manager)

    # ─── State & listeners ───

    @property
    def state(self):
        with self._state_lock:
            return self._state.to_dict()

    @property
    def is_syncing(self):
        return self._state.is_syncing

    def subscribe(self, listener):
        """listener(state_dict) is called now and on every change. Returns unsubscribe."""
        self._listeners.append(listener)
        listener(self.state)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _update(self, **changes):
        with self._state_lock:
            for k, v in changes.items():
                setattr(self._state, k, v)
            snapshot = self._state.to_dict()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                log_warn(f"Sync listener failed: {e}", "SYNC")

    def _elapsed(self):
        return round(self._clock() - self._started, 3)

    def _results(self, users, logs=None, fingerprints=None):
        results = empty_results()
        results["users"].update(users)
        if logs:
            results["logs"].update(logs)
        if fingerprints:
            results["fingerprints"].update(fingerprints)
        results["duration"] = self._elapsed()
        return results

    def stop(self):
        if self._state.is_syncing:
            log_sync("Stop requested")
        self._stop.set()

    def _check_stop(self):
        if self._stop.is_set():
            raise Cancelled()

    def _begin(self, multi, total_devices, message):
        with self._state_lock:
            if self._state.is_syncing:
                return False
            self._state = SyncState(is_syncing=True)
        self._stop.clear()
        self._started = self._clock()
        self._update(is_multi_device=multi, total_devices=total_devices,
                     phase="idle", status="starting", message=message)
        log_sync(message)
        return True

    def _finish(self, phase, message, results=None, error=None):
        changes = dict(is_syncing=False, phase=phase, message=message, error=error,
                       status={"complete": "done"}.get(phase, phase))
        if phase == "complete":
            changes["progress"] = 100
        if results is not None:
            results["duration"] = self._elapsed()
            changes["results"] = results
        self._update(**changes)
        if error:
            log_error(f"Sync failed: {error}", "SYNC")
        else:
            log_sync(message)

    # ─── Users ───

    def _merge_user(self, user, device_id):
        """Apply one device user to the store. Returns synced, updated, skipped or None."""
        existing = self.store.get_user(user.user_id)
        if existing is None:
            self.store.insert_user(StoredUser(
                user_id=user.user_id,
                name=user.name,
                role=new_user_role(user.is_admin, device_id),
                card_no=str(user.card_no) if user.card_no else None,
                password=user.password or None,
                stored_devices=str(device_id) if device_id is not None else None,
            ))
            return "synced"

        if _is_numeric(user.name):
            return "skipped"

        updates = {}
        if _is_numeric(existing.name) and user.name:
            updates["name"] = user.name
        if device_id is not None:
            ids = existing.device_ids()
            if str(device_id) not in ids:
                updates["stored_devices"] = ','.join(ids + [str(device_id)])
        role = merge_role(existing.role, user.is_admin, device_id)
        if role is not None:
            updates["role"] = role
        if not updates:
            return "skipped"

        self.store.update_user(user.user_id, **updates)
        # admin scope bookkeeping on a stored admin is not a user update
        if str(existing.role or '0').startswith('14') and "name" not in updates:
            return None
        return "updated"

    def _sync_user_records(self, client, device):
        device_id = device.device_id
        self._update(phase="users", status="fetching",
                     message=f"Fetching users from {device.name}...")
        users = client.fetch_users()
        counts = {"synced": 0, "updated": 0, "skipped": 0}
        total = len(users)
        log_sync(f"[{device.name}] {total} users on device")

        for i, user in enumerate(users):
            self._check_stop()
            try:
                outcome = self._merge_user(user, device_id)
            except Exception as e:
                log_warn(f"[{device.name}] Failed to store user {user.user_id}: {e}", "SYNC")
                outcome = "skipped"
            if outcome:
                counts[outcome] += 1
            if (i + 1) % PROGRESS_EVERY == 0 or i == total - 1:
                self._update(
                    status="syncing", current=i + 1, total=total,
                    message=f"Syncing users: {i + 1}/{total}",
                    progress=min(USERS_SHARE, round((i + 1) / total * USERS_SHARE)),
                    results=self._results(counts),
                )
        return users, counts

    def _sync_fingerprints(self, client, device, users):
        device_id = device.device_id
        counts = {"saved": 0, "updated": 0, "errors": 0}
        self._check_stop()
        uid_to_user = {u.uid: u.user_id for u in users}
        self._update(status="fetching", message=f"Fetching fingerprints from {device.name}...")
        try:
            templates = client.fetch_templates()
        except DeviceError as e:
            log_error(f"[{device.name}] Fingerprint fetch failed: {e}", "SYNC")
            counts["errors"] += 1
            return counts

        orphans = 0
        for t in templates:
            self._check_stop()
            user_id = uid_to_user.get(t.uid)
            if user_id is None:
                orphans += 1
                if orphans <= MAX_ORPHAN_WARNINGS:
                    log_warn(f"[{device.name}] Template with uid {t.uid} has no matching user", "SYNC")
                continue
            try:
                inserted = self.store.upsert_fingerprint(StoredFingerprint(
                    user_id=user_id,
                    finger_index=format_finger_index(t.finger_idx, 1),
                    template=t.template_b64,
                    template_length=t.size,
                    flag=t.valid,
                    device_id=device_id,
                ))
            except Exception as e:
                log_warn(f"[{device.name}] Failed to store template uid={t.uid} "
                         f"finger={t.finger_idx}: {e}", "SYNC")
                counts["errors"] += 1
                continue
            counts["saved" if inserted else "updated"] += 1

        log_sync(f"[{device.name}] Fingerprints: {counts['saved']} saved, "
                 f"{counts['updated']} updated, {counts['errors']} errors")
        return counts

    def _cleanup_stored_devices(self, device, users):
        """Drop the device id from stored users the device no longer holds"""
        dev = str(device.device_id)
        on_device = {u.user_id for u in users}
        cleaned = 0
        for stored in self.store.users_on_device(device.device_id):
            if stored.user_id in on_device:
                continue
            remaining = [d for d in stored.device_ids() if d != dev]
            self.store.update_user(stored.user_id,
                                   stored_devices=','.join(remaining) or None)
            cleaned += 1
        if cleaned:
            log_sync(f"[{device.name}] Removed device {dev} from {cleaned} stored users")
        return cleaned

    def sync_users(self, client, device):
        """Users, fingerprints and stored-device cleanup for one connected device"""
        users, user_counts = self._sync_user_records(client, device)
        fp_counts = {"saved": 0, "updated": 0, "errors": 0}
        if device.device_id is not None:
            fp_counts = self._sync_fingerprints(client, device, users)
            self._cleanup_stored_devices(device, users)
        else:
            log_warn(f"[{device.name}] No device id; skipping fingerprints", "SYNC")

        synced_users = user_counts["synced"] + user_counts["updated"]
        synced_fps = fp_counts["saved"] + fp_counts["updated"]
        self._update(status="complete",
                     message=f"Sync complete: {synced_users} users, {synced_fps} fingerprints",
                     results=self._results(user_counts, fingerprints=fp_counts))
        return {"users": user_counts, "logs": {"synced": 0, "skipped": 0},
                "fingerprints": fp_counts}

    # ─── Logs ───

    def _sync_logs(self, client, device, user_counts):
        device_id = device.device_id
        self._check_stop()
        self._update(phase="logs", status="fetching", progress=USERS_SHARE,
                     message=f"Fetching logs from {device.name}...")
        records = client.fetch_attendance()
        counts = {"synced": 0, "skipped": 0}
        total = len(records)
        batch_size = self.settings.log_batch_size

        for start in range(0, total, batch_size):
            self._check_stop()
            for rec in records[start:start + batch_size]:
                try:
                    if device_id is not None and self.store.has_log(rec.record_time, device_id):
                        counts["skipped"] += 1
                        continue
                    self.store.insert_log(AttendanceLog(
                        user_id=rec.user_id,
                        record_time=rec.record_time,
                        type=rec.status or 1,
                        state=rec.punch,
                        device_id=device_id,
                    ))
                    counts["synced"] += 1
                except Exception as e:
                    log_warn(f"[{device.name}] Failed to store log for {rec.user_id}: {e}", "SYNC")
                    counts["skipped"] += 1
            processed = min(start + batch_size, total)
            self._update(
                status="syncing", current=processed, total=total,
                message=f"Syncing logs: {processed}/{total}",
                progress=USERS_SHARE + round(processed / total * (100 - USERS_SHARE)),
                results=self._results(user_counts, logs=counts),
            )
        log_sync(f"[{device.name}] Logs: {counts['synced']} synced, {counts['skipped']} skipped")
        return counts

    def sync_device(self, client, device):
        """Users then attendance logs for one connected device"""
        _, user_counts = self._sync_user_records(client, device)
        log_counts = self._sync_logs(client, device, user_counts)
        return {"users": user_counts, "logs": log_counts,
                "fingerprints": {"saved": 0, "updated": 0, "errors": 0}}

    # ─── Runs ───

    @contextmanager
    def _held(self):
        if self.lock is None:
            yield
            return
        with self.lock.hold(GLOBAL):
            yield

    def _spawn(self, target, *args):
        thread = threading.Thread(target=target, args=args, name="zk-sync", daemon=True)
        thread.start()
        return thread

    def run_users(self, device):
        """Users-only sync of a single device. Returns the final state, or None if busy."""
        if not self._begin(False, 1, "Starting users sync..."):
            return None
        return self._run_users(device)

    def start_users(self, device):
        """Claim the run now, sync in a background thread. Returns the thread, or None if busy."""
        if not self._begin(False, 1, "Starting users sync..."):
            return None
        return self._spawn(self._run_users, device)

    def _run_users(self, device):
        client = None
        try:
            with self._held():
                client = self._connect(device)
                result = self.sync_users(client, device)
            self._finish("complete", "Users sync complete!", results=result)
        except Cancelled as e:
            self._finish("stopped", str(e))
        except DeviceError as e:
            self._finish("error", str(e), error=str(e))
        except Exception as e:
            self._finish("error", str(e), error=str(e))
            raise
        finally:
            if client is not None:
                client.close()
        return self.state

    def _begin_all(self, devices, users_only):
        kind = "users sync" if users_only else "sync"
        return self._begin(True, len(devices), f"Starting {kind} for {len(devices)} devices...")

    def sync_all(self, devices, users_only=False):
        """Sync every device in order. Returns the final state, or None if busy."""
        devices = list(devices)
        if not self._begin_all(devices, users_only):
            return None
        return self._run_all(devices, users_only)

    def start_all(self, devices, users_only=False):
        """Background sync_all. Returns the thread, or None if busy."""
        devices = list(devices)
        if not self._begin_all(devices, users_only):
            return None
        return self._spawn(self._run_all, devices, users_only)

    def _run_all(self, devices, users_only):
        kind = "users sync" if users_only else "sync"
        overall = empty_results()
        device_results = []

        def record(device, success, result=None, error=None):
            result = result or empty_results()
            device_results.append({
                "device_name": device.name,
                "device_ip": device.ip,
                "success": success,
                "users": dict(result["users"]),
                "logs": dict(result["logs"]),
                "fingerprints": dict(result["fingerprints"]),
                "error": error,
            })
            for part in ("users", "logs", "fingerprints"):
                for k, v in result[part].items():
                    overall[part][k] += v
            overall["duration"] = self._elapsed()
            self._update(device_results=copy.deepcopy(device_results),
                         results=copy.deepcopy(overall))

        try:
            with self._held():
                for i, device in enumerate(devices):
                    self._check_stop()
                    self._update(current_device_index=i + 1, current_device_name=device.name,
                                 progress=round(i / len(devices) * 100),
                                 message=f"Connecting to {device.name} ({i + 1}/{len(devices)})...")
                    try:
                        client = self._connect(device)
                    except DeviceError as e:
                        log_error(f"[{device.name}] Connection failed: {e}", "SYNC")
                        record(device, False, error=str(e) or "Connection failed")
                        continue
                    try:
                        if users_only:
                            result = self.sync_users(client, device)
                        else:
                            result = self.sync_device(client, device)
                        record(device, True, result)
                    except DeviceError as e:
                        log_error(f"[{device.name}] Sync failed: {e}", "SYNC")
                        record(device, False, error=str(e))
                    finally:
                        client.close()
            self._finish("complete", f"All devices {kind} complete!", results=overall)
        except Cancelled as e:
            self._finish("stopped", str(e), results=overall)
        except Exception as e:
            self._finish("error", str(e), error=str(e))
            raise
        return self.state
