"""
ZKTeco / ESSL Device Bridge: Web Backend
========================================
Thin FastAPI server bridging browser ↔ attendance terminals via TCP/4370.

Usage:
    pip install -e .
    uvicorn web.server:app --host 0.0.0.0 --port 8080

Every route answers {"success": bool, "error": str | None, ...}.
Routes that talk to a device are plain ``def`` so they run in the
threadpool and never block the event loop on device_lock.
"""

import asyncio
import base64
import binascii
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from zktools.client import ZKClient
from zktools.config import Settings
from zktools.const import DEFAULT_PORT, MAX_FINGER_INDEX, USER_DEFAULT
from zktools.errors import (
    AuthenticationFailed, CommandRejected, DeviceBusy, DeviceConnectionError, DeviceError,
    NotConnected,
)
from zktools.locks import GLOBAL, OperationLock
from zktools.logging_setup import (
    configure_logging, log_cmd, log_debug, log_error, log_info, log_ring,
)
from zktools.records import find_user, format_finger_index
from zktools.reconcile import (
    UserProfile, add_fingerprint, copy_user, delete_fingerprint, rewrite_user,
)
from zktools.session import SessionManager
from zktools.store import Device, InMemoryStore, StoredFingerprint
from zktools.sync import SyncManager

# ─── Logging Setup ────────────────────────────────────────────────────────────

LOG_DIR = Path(__file__).parent / "logs"

settings = Settings.from_env()
configure_logging(settings.log_dir or LOG_DIR)

# ─── Global State ─────────────────────────────────────────────────────────────

manager = SessionManager(settings=settings)
client: Optional[ZKClient] = None
device_lock = threading.Lock()
fp_lock = OperationLock()
store = InMemoryStore()
devices: dict = {}          # ip -> Device
sync_manager = SyncManager(store, manager, lock=fp_lock)
sync_ws_clients: list = []

FP_LOCK_TIMEOUT = 120


# ─── Pydantic Models ──────────────────────────────────────────────────────────

class ConnectRequest(BaseModel):
    ip: str
    port: int = DEFAULT_PORT
    password: Optional[int] = None
    timeout: Optional[float] = None     # None = settings default

class SetTimeRequest(BaseModel):
    timestamp: Optional[int] = None  # None = use current PC time

class PasswordRequest(BaseModel):
    new_password: int

class TemplateIn(BaseModel):
    finger_idx: int = Field(ge=0, le=MAX_FINGER_INDEX)
    template: str                     # base64

class AddFingerprintRequest(BaseModel):
    user_id: str
    finger_idx: int = Field(ge=0, le=MAX_FINGER_INDEX)
    template: Optional[str] = None    # None = stored template

class DeleteFingerprintRequest(BaseModel):
    user_id: str
    finger_idx: int = Field(ge=0, le=MAX_FINGER_INDEX)

class RestoreUserRequest(BaseModel):
    user_id: str
    name: Optional[str] = None        # None = stored user profile
    password: str = ''
    role: str = str(USER_DEFAULT)
    card_no: int = 0
    templates: Optional[list[TemplateIn]] = None    # None = stored templates

class SaveFingerprintsRequest(BaseModel):
    user_id: str
    device_id: Optional[int] = None   # None = the connected registered device

class PushFingerprintsRequest(BaseModel):
    user_id: str
    target_ips: list[str] = Field(min_length=1)
    source_device_id: Optional[int] = None   # None = rows of every device

class CopyUserRequest(BaseModel):
    user_id: str
    source_ip: str
    target_ip: str
    source_port: int = DEFAULT_PORT
    target_port: int = DEFAULT_PORT
    source_password: Optional[int] = None
    target_password: Optional[int] = None

class DeviceRequest(BaseModel):
    name: str
    ip: str
    port: int = DEFAULT_PORT
    password: Optional[int] = None

class SyncRequest(BaseModel):
    ip: Optional[str] = None          # None = the connected device

class SyncAllRequest(BaseModel):
    users_only: bool = False


# ─── App Setup ────────────────────────────────────────────────────────────────

app = FastAPI(title="ZKTeco Device Bridge", version="1.0.0")


def fail(status_code, error):
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


@app.exception_handler(DeviceError)
async def device_error_handler(request: Request, exc: DeviceError):
    if isinstance(exc, AuthenticationFailed):
        status_code = 401
    elif isinstance(exc, NotConnected):
        status_code = 400
    elif isinstance(exc, (CommandRejected, DeviceBusy)):
        status_code = 409
    elif isinstance(exc, DeviceConnectionError):
        status_code = 502
    else:
        status_code = 500
    log_error(f"{request.url.path}: {exc}", "CMD")
    return fail(status_code, str(exc))


@app.exception_handler(TimeoutError)
async def busy_handler(request: Request, exc: TimeoutError):
    return fail(409, f"Device busy: {exc}")


@app.exception_handler(ValueError)
async def bad_value_handler(request: Request, exc: ValueError):
    return fail(422, str(exc))


@app.exception_handler(RequestValidationError)
async def validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err["loc"] if p != "body")
        problems.append(f"{where}: {err['msg']}" if where else err["msg"])
    return fail(422, "; ".join(problems))


# ─── Helper ───────────────────────────────────────────────────────────────────

def require_client():
    """Raise NotConnected (400) if no device session is open."""
    if client is None:
        raise NotConnected("Not connected to device")
    return client


def ensure_idle():
    """Raise DeviceBusy (409) while a sync run owns the devices."""
    if sync_manager.is_syncing:
        raise DeviceBusy("Sync in progress")


def ok(**fields):
    return {"success": True, "error": None, **fields}


def decode_b64(value):
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 template: {e}") from e


def hold_fp_lock(user_id, host=None):
    """Global fingerprint lock plus the per-user/device key. Returns release."""
    if host is None:
        host = client.session.host if client else '-'
    key = f"fp:{user_id}:{host}"
    release_global = fp_lock.acquire(GLOBAL, FP_LOCK_TIMEOUT)
    try:
        release_key = fp_lock.acquire(key, FP_LOCK_TIMEOUT)
    except TimeoutError:
        release_global()
        raise

    def release():
        release_key()
        release_global()
    return release


def close_client():
    global client
    if client is not None:
        client.close()
        client = None


def connected_device_id():
    """Store id of the registered device behind the open session"""
    if client is None:
        return None
    device = devices.get(client.session.host)
    return device.device_id if device else None


def open_device(ip, port=DEFAULT_PORT, password=None):
    """(client, owned). Reuses the bridge session when it already points at ip."""
    if client is not None and client.session.host == ip:
        return client, False
    return ZKClient.connect(ip, port, password=password, manager=manager, bulk=True), True


def by_finger(rows):
    """Stored rows -> [(finger_idx, base64)], one per finger, last row wins"""
    fingers = {f.finger_idx: f.template for f in rows}
    return sorted(fingers.items())


def remember_template(user_id, device_id, finger_idx, template):
    """Upsert an on-device "<idx>,1" row. Unregistered devices have nothing to key on."""
    if device_id is None:
        return
    if isinstance(template, str):
        template = base64.b64decode(template)
    store.upsert_fingerprint(StoredFingerprint(
        user_id=str(user_id),
        finger_index=format_finger_index(finger_idx, 1),
        template=base64.b64encode(template).decode('ascii'),
        template_length=len(template),
        device_id=device_id,
    ))


def stored_profile(user_id):
    stored = store.get_user(user_id)
    if stored is None:
        return None
    return UserProfile.from_dict(stored.model_dump())


# ─── Connection ───────────────────────────────────────────────────────────────

@app.post("/api/connect")
def connect(req: ConnectRequest):
    global client
    with device_lock:
        ensure_idle()
        close_client()
        timeout = req.timeout if req.timeout is not None else settings.timeout
        try:
            client = ZKClient.connect(req.ip, req.port, password=req.password,
                                      timeout=timeout, manager=manager)
        except DeviceError as e:
            client = None
            log_error(f"Connection failed: {e}")
            raise
        log_info(f"Connected to {req.ip}:{req.port}", "CMD")
        return ok(session=client.session.to_dict())


@app.post("/api/disconnect")
def disconnect():
    with device_lock:
        close_client()
    log_info("Disconnected", "CMD")
    return ok()


@app.get("/api/status")
async def status():
    return ok(
        connected=client is not None and client.session.is_alive,
        session=client.session.to_dict() if client else None,
        is_syncing=sync_manager.is_syncing,
        ws_clients=len(sync_ws_clients),
    )


@app.get("/api/logs")
async def get_logs(after: int = 0, cat: str = "", level: str = ""):
    """Get log entries from ring buffer. Filters: after=index, cat=SYS|CMD|PROTO|SYNC, level=DEBUG|INFO|WARNING|ERROR"""
    entries = list(log_ring)
    if after > 0:
        entries = entries[after:]
    if cat:
        cats = cat.upper().split(",")
        entries = [e for e in entries if e["cat"] in cats]
    if level:
        levels = level.upper().split(",")
        entries = [e for e in entries if e["level"] in levels]
    return ok(logs=entries, total=len(log_ring))


# ─── Device ───────────────────────────────────────────────────────────────────

@app.get("/api/device/info")
def device_info():
    c = require_client()
    with device_lock:
        info = c.query_device_info()
    return ok(info=info)


@app.get("/api/device/time")
def get_time():
    c = require_client()
    with device_lock:
        t = c.get_time()
    drift = (t.to_datetime() - datetime.now()).total_seconds()
    return ok(device_time=str(t), pc_time=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
              drift_seconds=round(drift))


@app.post("/api/device/time")
def set_time(req: SetTimeRequest):
    ensure_idle()
    c = require_client()
    ts = req.timestamp if req.timestamp is not None else int(time.time())
    when = datetime.fromtimestamp(ts)
    with device_lock:
        c.set_time(when)
    log_cmd(f"Device time set to {when:%Y-%m-%d %H:%M:%S}")
    return ok(device_time=when.strftime("%Y-%m-%d %H:%M:%S"))


@app.post("/api/device/password")
def set_password(req: PasswordRequest):
    ensure_idle()
    c = require_client()
    with device_lock:
        acknowledged = c.set_com_password(req.new_password)
    return ok(acknowledged=acknowledged)


@app.get("/api/device/users")
def device_users():
    c = require_client()
    with device_lock:
        users = c.fetch_users()
    return ok(users=[u.to_dict() for u in users], total=len(users))


@app.delete("/api/device/users/{user_id}")
def delete_device_user(user_id: str):
    ensure_idle()
    c = require_client()
    with device_lock:
        user = find_user(c.fetch_users(), user_id)
        if user is None:
            return fail(404, f"User {user_id} not found on device")
        c.delete_user(user.uid)
        c.refresh_data()
    return ok(uid=user.uid)


# ─── Fingerprints ─────────────────────────────────────────────────────────────

@app.get("/api/fingerprint/{user_id}")
def read_fingerprints(user_id: str):
    c = require_client()
    with device_lock:
        templates = c.fetch_templates(user_id)
    return ok(user_id=user_id, templates=[t.to_dict() for t in templates])


@app.post("/api/fingerprint/add")
def add_fp(req: AddFingerprintRequest):
    ensure_idle()
    c = require_client()
    device_id = connected_device_id()
    if req.template is not None:
        template = decode_b64(req.template)
    else:
        # this device's row first, else the same finger stored from another device
        rows = [f for f in store.fingerprints_for(req.user_id) if f.finger_idx == req.finger_idx]
        rows.sort(key=lambda f: f.device_id != device_id)
        if not rows:
            return fail(404, f"No stored template for user {req.user_id} finger {req.finger_idx}")
        template = decode_b64(rows[0].template)
    release = hold_fp_lock(req.user_id)
    try:
        with device_lock:
            uid = add_fingerprint(c, req.user_id, req.finger_idx, template)
    finally:
        release()
    remember_template(req.user_id, device_id, req.finger_idx, template)
    return ok(user_id=req.user_id, uid=uid, finger_idx=req.finger_idx)


@app.post("/api/fingerprint/delete")
def delete_fp(req: DeleteFingerprintRequest):
    ensure_idle()
    c = require_client()
    device_id = connected_device_id()
    release = hold_fp_lock(req.user_id)
    try:
        with device_lock:
            users = c.fetch_users()
            user = find_user(users, req.user_id)
            if user is None:
                return fail(404, f"User {req.user_id} not found on device")
            templates = []
            if device_id is not None:
                templates = by_finger(f for f in store.fingerprints_for(req.user_id, device_id)
                                      if f.on_device)
            source = "store"
            if not templates:
                templates = c.fetch_templates(req.user_id, users=users)
                source = "device"
            result = delete_fingerprint(c, req.user_id, req.finger_idx,
                                        UserProfile.from_user(user), templates, users=users)
    finally:
        release()
    # template stays stored, flagged off-device
    if device_id is not None:
        store.set_finger_available(req.user_id, device_id, req.finger_idx, False)
    return ok(templates_from=source, **result.to_dict())


@app.post("/api/fingerprint/restore")
def restore_fp(req: RestoreUserRequest):
    ensure_idle()
    c = require_client()
    device_id = connected_device_id()
    if req.templates is not None:
        templates = [(t.finger_idx, decode_b64(t.template)) for t in req.templates]
    else:
        templates = by_finger(store.fingerprints_for(req.user_id, device_id))
        if not templates:
            return fail(404, f"No stored templates for user {req.user_id}")
    if req.name is not None:
        profile = UserProfile(req.name, req.password, req.role, req.card_no)
    else:
        profile = stored_profile(req.user_id)
        if profile is None:
            return fail(404, f"User {req.user_id} not found in store")
    release = hold_fp_lock(req.user_id)
    try:
        with device_lock:
            result = rewrite_user(c, req.user_id, profile, templates)
    finally:
        release()
    failed = {err["finger_idx"] for err in result.errors}
    for finger_idx, data in templates:
        if finger_idx not in failed:
            remember_template(req.user_id, device_id, finger_idx, data)
    return ok(**result.to_dict())


@app.post("/api/fingerprint/save")
def save_fp(req: SaveFingerprintsRequest):
    """Store the connected device's templates of one user"""
    c = require_client()
    device_id = req.device_id if req.device_id is not None else connected_device_id()
    if device_id is None:
        return fail(400, "device_id is required for an unregistered device")
    if store.get_user(req.user_id) is None:
        return fail(404, f"User {req.user_id} not found in store")
    release = hold_fp_lock(req.user_id)
    try:
        with device_lock:
            templates = c.fetch_templates(req.user_id)
    finally:
        release()
    saved = updated = 0
    for t in templates:
        inserted = store.upsert_fingerprint(StoredFingerprint(
            user_id=req.user_id,
            finger_index=format_finger_index(t.finger_idx, 1),
            template=t.template_b64,
            template_length=t.size,
            flag=t.valid,
            device_id=device_id,
        ))
        if inserted:
            saved += 1
        else:
            updated += 1
    log_info(f"Stored {len(templates)} templates of user {req.user_id} for device {device_id}")
    return ok(user_id=req.user_id, device_id=device_id, saved=saved, updated=updated)


@app.post("/api/fingerprint/push")
def push_fp(req: PushFingerprintsRequest):
    """Rewrite a stored user with its stored templates on each target device"""
    ensure_idle()
    profile = stored_profile(req.user_id)
    if profile is None:
        return fail(404, f"User {req.user_id} not found in store")
    templates = by_finger(store.fingerprints_for(req.user_id, req.source_device_id))
    if not templates:
        return fail(404, f"No stored templates for user {req.user_id}")

    results = []
    release = hold_fp_lock(req.user_id, "push")
    try:
        with device_lock:
            for ip in req.target_ips:
                target = devices.get(ip)
                entry = {"device_ip": ip, "success": False, "error": None}
                results.append(entry)
                try:
                    c, owned = open_device(ip, target.port if target else DEFAULT_PORT,
                                           target.password if target else None)
                    try:
                        result = rewrite_user(c, req.user_id, profile, templates)
                    finally:
                        if owned:
                            c.close()
                except DeviceError as e:
                    log_error(f"Push of user {req.user_id} to {ip} failed: {e}")
                    entry["error"] = str(e)
                    continue
                entry.update(success=result.success, uid=result.uid,
                             written=result.written, failed=result.failed)
                failed = {err["finger_idx"] for err in result.errors}
                for finger_idx, data in templates:
                    if target is not None and finger_idx not in failed:
                        remember_template(req.user_id, target.device_id, finger_idx, data)
    finally:
        release()
    successful = sum(1 for r in results if r["success"])
    return ok(user_id=req.user_id, results=results,
              summary={"total_devices": len(results), "successful": successful,
                       "failed": len(results) - successful})


@app.post("/api/fingerprint/copy")
def copy_fp(req: CopyUserRequest):
    ensure_idle()
    release = hold_fp_lock(req.user_id, req.target_ip)
    try:
        source = ZKClient.connect(req.source_ip, req.source_port, password=req.source_password,
                                  manager=manager, bulk=True)
        try:
            target = ZKClient.connect(req.target_ip, req.target_port,
                                      password=req.target_password, manager=manager, bulk=True)
        except DeviceError:
            source.close()
            raise
        try:
            result = copy_user(source, target, req.user_id)
        finally:
            source.close()
            target.close()
    finally:
        release()
    return ok(**result.to_dict())


# ─── Devices & Sync ───────────────────────────────────────────────────────────

@app.get("/api/devices")
async def list_devices():
    return ok(devices=[d.model_dump(exclude={"password"}) for d in devices.values()])


@app.post("/api/devices")
async def register_device(req: DeviceRequest):
    existing = devices.get(req.ip)
    device_id = existing.device_id if existing else len(devices) + 1
    devices[req.ip] = Device(device_id=device_id, **req.model_dump())
    log_info(f"Registered device {req.name} ({req.ip}) as id {device_id}")
    return ok(device=devices[req.ip].model_dump(exclude={"password"}))


def _start_sync(start, *args, **kwargs):
    """Claim the run, drop the bridge session, then spawn the sync thread"""
    with device_lock:
        ensure_idle()
        # the sync opens its own sessions
        close_client()
        if start(*args, **kwargs) is None:
            return fail(409, "Sync already in progress")
    return ok(started=True)


@app.post("/api/sync/users")
def sync_users(req: SyncRequest):
    ip = req.ip or (client.session.host if client else None)
    if not ip:
        raise NotConnected("No device given and none connected")
    device = devices.get(ip)
    if device is None:
        password = client.session.password if client else None
        device = Device(name="Device", ip=ip, password=password)
    return _start_sync(sync_manager.start_users, device)


@app.post("/api/sync/all")
def sync_all(req: SyncAllRequest):
    if not devices:
        return fail(400, "No devices registered")
    return _start_sync(sync_manager.start_all, list(devices.values()), users_only=req.users_only)


@app.post("/api/sync/stop")
async def sync_stop():
    sync_manager.stop()
    return ok()


@app.get("/api/sync/state")
async def sync_state():
    return ok(state=sync_manager.state)


@app.websocket("/ws/sync")
async def ws_sync(ws: WebSocket):
    """Push every sync state change to the browser."""
    await ws.accept()
    sync_ws_clients.append(ws)
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = sync_manager.subscribe(
        lambda state: loop.call_soon_threadsafe(queue.put_nowait, state))
    receiver = asyncio.ensure_future(ws.receive_text())
    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, receiver},
                                         return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                receiver.result()   # raises WebSocketDisconnect on close
                receiver = asyncio.ensure_future(ws.receive_text())
                continue
            await ws.send_json(getter.result())
    except WebSocketDisconnect:
        log_debug("Sync stream client disconnected")
    finally:
        receiver.cancel()
        unsubscribe()
        sync_ws_clients.remove(ws)


# ─── Stored Records ───────────────────────────────────────────────────────────

@app.get("/api/db/users")
async def stored_users():
    users = sorted(store.users.values(), key=lambda u: u.user_id)
    return ok(users=[u.model_dump() for u in users], total=len(users))


@app.get("/api/db/fingerprints/{user_id}")
async def stored_fingerprints(user_id: str):
    return ok(fingerprints=[f.model_dump() for f in store.fingerprints_for(user_id)])


@app.get("/api/db/attendance")
async def stored_attendance(user_id: str = "", limit: int = 500):
    logs = [l for l in store.logs if not user_id or l.user_id == user_id]
    logs.sort(key=lambda l: l.record_time, reverse=True)
    return ok(logs=[l.model_dump(mode="json") for l in logs[:limit]], total=len(logs))


# ─── Entry Point ──────────────────────────────────────────────────────────────

def main():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)


if __name__ == "__main__":
    main()
