"""
ZKTeco / ESSL binary protocol constants
=======================================
Command codes and reply codes as seen on the wire (port 4370).
"""

DEFAULT_PORT = 4370
DEFAULT_LISTEN_PORT = 4000

# ─── Session ───
CMD_CONNECT = 1000
CMD_EXIT = 1001
CMD_AUTH = 1102

# ─── Options / parameters ───
CMD_OPTIONS_RRQ = 11
CMD_OPTIONS_WRQ = 12
CMD_DEVICE_PARAMS_RRQ = 501

# ─── Data ───
CMD_DB_RRQ = 7
CMD_DELETE_USER = 18
CMD_DELETE_USERTEMP = 19
CMD_TMP_WRITE = 87
CMD_REFRESHDATA = 1013
CMD_PREPARE_DATA = 1500
CMD_DATA = 1501
CMD_PREPARE_BUFFER = 1503

# ─── Device ───
CMD_GET_TIME = 201
CMD_SET_TIME = 202
CMD_GET_VERSION = 1100

# ─── Replies ───
CMD_ACK_OK = 2000
CMD_ACK_ERROR = 2001
CMD_ACK_DATA = 2002
CMD_ACK_UNAUTH = 2005

# Data-table selectors for buffered reads
EF_ATTLOG = 1
EF_FINGER = 2
EF_USER = 5

# Finger slots 0..9
MAX_FINGER_INDEX = 9

USHRT_MAX = 65535
HEADER_SIZE = 8
TEMPLATE_RECORD_HEADER = 6

# TCP framing top header
TCP_MAGIC_1 = 0x5050
TCP_MAGIC_2 = 0x7282

USER_DEFAULT = 0
USER_ADMIN = 14

AUTH_TICKS = 50

COMMAND_NAMES = {
    CMD_CONNECT: "CONNECT",
    CMD_EXIT: "EXIT",
    CMD_AUTH: "AUTH",
    CMD_OPTIONS_RRQ: "OPTIONS_RRQ",
    CMD_OPTIONS_WRQ: "OPTIONS_WRQ",
    CMD_DEVICE_PARAMS_RRQ: "PARAMS_RRQ",
    CMD_DB_RRQ: "DB_RRQ",
    CMD_DELETE_USER: "DELETE_USER",
    CMD_DELETE_USERTEMP: "DELETE_USERTEMP",
    CMD_TMP_WRITE: "TMP_WRITE",
    CMD_REFRESHDATA: "REFRESHDATA",
    CMD_PREPARE_DATA: "PREPARE_DATA",
    CMD_DATA: "DATA",
    CMD_PREPARE_BUFFER: "PREPARE_BUFFER",
    CMD_GET_TIME: "GET_TIME",
    CMD_SET_TIME: "SET_TIME",
    CMD_GET_VERSION: "GET_VERSION",
}


def command_name(code):
    return COMMAND_NAMES.get(code, f"CMD_{code}")
