"""
Protocol operations over a LowLevelTransport.

Each function performs one vendor exchange (or a fixed short sequence of
them) and returns decoded data. Session bookkeeping lives in session.py.
"""

import enum
import struct

from .codec import (
    auth_payload, build_buffer_request, decode_device_time, encode_device_time,
    hex_dump, parse_key_value_blob, parse_single_value,
)
from .const import (
    CMD_ACK_OK, CMD_AUTH, CMD_DATA, CMD_DB_RRQ, CMD_DELETE_USER, CMD_DELETE_USERTEMP,
    CMD_DEVICE_PARAMS_RRQ, CMD_GET_TIME, CMD_GET_VERSION, CMD_OPTIONS_RRQ,
    CMD_OPTIONS_WRQ, CMD_PREPARE_DATA, CMD_REFRESHDATA, CMD_SET_TIME, CMD_TMP_WRITE,
    EF_FINGER, MAX_FINGER_INDEX, command_name,
)
from .errors import (
    AuthenticationFailed, CommandRejected, DeviceError, MalformedResponse, NoSessionId,
    TemplateWriteFailed,
)
from .logging_setup import log_cmd, log_proto, log_warn
from .records import strip_size_prefix

TEXT_RESPONSE_SIZE = 1024

DEVICE_PARAMS_QUERY = (
    "~OS=?,ExtendFmt=?,~ExtendFmt=?,ExtendOPLog=?,~ExtendOPLog=?,~Platform=?,"
    "~ZKFPVersion=?,WorkCode=?,~SSR=?,~PIN2Width=?,~UserExtFmt=?,BuildVersion=?,"
    "AttPhotoForSDK=?,~IsOnlyRFMachine=?,CameraOpen=?,CompatOldFirmware=?,"
    "IsSupportPull=?,Language=?,~SerialNumber=?,FaceFunOn=?,~DeviceName=?"
)

# option name sent -> key used when the device replies with a bare value
SINGLE_OPTIONS = (
    ("ZKFaceVersion", "ZKFaceVersion"),
    ("MAC", "MAC"),
    ("~ProductTime", "ProductTime"),
    ("IPAddress", "IPAddress"),
)


class AuthState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


def send_command(transport, command, payload=b'', response_size=8, check=False):
    """Send one command; raise CommandRejected on non-ACK when check=True"""
    name = command_name(command)
    log_proto(f"TX {name} ({len(payload)} bytes)")
    if payload and len(payload) <= 64:
        log_proto(hex_dump(payload))
    resp = transport.send_command(command, payload, response_size)
    log_proto(f"RX {name} status={resp.status} ({len(resp.payload)} bytes)")
    if check and resp.status != CMD_ACK_OK:
        raise CommandRejected(command, resp.status)
    return resp


# ─── Authentication ───

def authenticate(transport, password):
    """CMD_AUTH with the key derived from the COM password and session id"""
    session_id = transport.session_id
    if not session_id:
        raise NoSessionId()
    resp = send_command(transport, CMD_AUTH, auth_payload(password, session_id))
    if resp.status != CMD_ACK_OK:
        raise AuthenticationFailed(
            f"Authentication failed. Response code: {resp.status}", resp.status)
    log_cmd(f"Authenticated (session {session_id})")
    return AuthState.AUTHENTICATED


# ─── Device state ───

def refresh_data(transport):
    """CMD_REFRESHDATA. Failures are logged, never raised."""
    try:
        resp = send_command(transport, CMD_REFRESHDATA)
    except DeviceError as e:
        log_warn(f"Refresh data failed: {e}", "CMD")
        return False
    if resp.status != CMD_ACK_OK:
        log_warn(f"Refresh data returned status {resp.status}", "CMD")
        return False
    return True


def get_time(transport):
    resp = send_command(transport, CMD_GET_TIME, response_size=1032, check=True)
    if len(resp.payload) < 4:
        raise MalformedResponse("GET_TIME reply carries no time value", resp.payload)
    return decode_device_time(resp.payload[:4])


def set_time(transport, t):
    value = encode_device_time(t)
    send_command(transport, CMD_SET_TIME, struct.pack('<I', value), check=True)
    refresh_data(transport)
    return value


def get_firmware_version(transport):
    resp = send_command(transport, CMD_GET_VERSION, response_size=TEXT_RESPONSE_SIZE)
    return resp.text


# ─── Options ───

def read_option(transport, name):
    """CMD_OPTIONS_RRQ 'name\\0' -> reply text"""
    resp = send_command(transport, CMD_OPTIONS_RRQ, f"{name}\0".encode('ascii'),
                        response_size=TEXT_RESPONSE_SIZE)
    return resp.text


def write_option(transport, assignment):
    """CMD_OPTIONS_WRQ 'Key=Value\\0' -> Response (caller decides on status)"""
    return send_command(transport, CMD_OPTIONS_WRQ, f"{assignment}\0".encode('ascii'))


def query_params(transport, query=DEVICE_PARAMS_QUERY):
    resp = send_command(transport, CMD_DEVICE_PARAMS_RRQ, f"{query}\0".encode('ascii'),
                        response_size=TEXT_RESPONSE_SIZE)
    return parse_key_value_blob(resp.text)


def query_device_info(transport):
    """SDKBuild handshake, parameter query, single options, time and firmware"""
    info = {}
    write_option(transport, "SDKBuild=1")
    info.update(query_params(transport))
    for option, default_key in SINGLE_OPTIONS:
        text = read_option(transport, option)
        if text:
            info.update(parse_single_value(text, default_key))
    try:
        info["DeviceTime"] = str(get_time(transport))
    except (CommandRejected, MalformedResponse) as e:
        log_warn(f"Device time unavailable: {e}", "CMD")
    version = get_firmware_version(transport)
    if version:
        info.update(parse_single_value(version, "FirmwareVersion"))
    return info


# ─── Users ───

def delete_user(transport, uid):
    send_command(transport, CMD_DELETE_USER, struct.pack('<H', uid), check=True)
    log_cmd(f"Deleted user uid={uid}")


def check_finger_index(finger_idx):
    if not 0 <= int(finger_idx) <= MAX_FINGER_INDEX:
        raise ValueError(f"Finger index must be 0-{MAX_FINGER_INDEX}, got {finger_idx}")
    return int(finger_idx)


def delete_user_template(transport, uid, finger_idx):
    finger_idx = check_finger_index(finger_idx)
    send_command(transport, CMD_DELETE_USERTEMP, struct.pack('<HB', uid, finger_idx),
                 check=True)
    log_cmd(f"Deleted template uid={uid} finger={finger_idx}")


# ─── Templates ───

def read_template_dump(transport):
    """Raw EF_FINGER table, size prefix removed"""
    request = build_buffer_request(CMD_DB_RRQ, EF_FINGER)
    log_proto(f"Template dump request:\n{hex_dump(request)}")
    data = transport.read_buffer(request)
    return strip_size_prefix(data)


def write_template(transport, uid, finger_idx, template, flag=1):
    """PREPARE_DATA(size) -> DATA(raw) -> TMP_WRITE(uid, finger, flag, size)

    Only the final TMP_WRITE status decides success. No rollback.
    """
    finger_idx = check_finger_index(finger_idx)
    template = bytes(template)
    size = len(template)
    resp = send_command(transport, CMD_PREPARE_DATA, struct.pack('<I', size))
    if resp.status != CMD_ACK_OK:
        log_warn(f"PREPARE_DATA status {resp.status} (uid={uid}, finger={finger_idx})", "CMD")
    resp = send_command(transport, CMD_DATA, template)
    if resp.status != CMD_ACK_OK:
        log_warn(f"DATA status {resp.status} (uid={uid}, finger={finger_idx})", "CMD")
    resp = send_command(transport, CMD_TMP_WRITE,
                        struct.pack('<HBBH', uid, finger_idx, flag, size))
    if resp.status != CMD_ACK_OK:
        raise TemplateWriteFailed(resp.status)
    log_cmd(f"Wrote template uid={uid} finger={finger_idx} size={size}")
