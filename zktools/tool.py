#!/usr/bin/env python3
"""
ZKTeco / ESSL device tool

Usage:
  zktool info <ip> [port]                         # Serial, firmware, MAC, time...
  zktool time <ip> [port]                         # Read device clock
  zktool settime <ip> [port]                      # Set device clock to PC time
  zktool users <ip> [port]                        # List users
  zktool dump <user_id> <ip> [port]               # Save user + templates to user_<id>.json
  zktool restore <user_id> <ip> [port]            # Rewrite user from user_<id>.json
  zktool copy <user_id> <source_ip> <target_ip>   # Copy user + templates between devices
  zktool delfinger <user_id> <finger> <ip> [port] # Remove one finger (user rewrite)
  zktool deluser <user_id> <ip> [port]            # Delete user from device
  zktool passwd --ip <ip> [--old <pass>] --new <pass>
  zktool passwd <ip> [old_pass|0] [new_pass]      # Change COM password

The COM password used to connect is read from ZK_PASSWORD.
Missing arguments are prompted for interactively.
"""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from .client import ZKClient
from .config import Settings
from .errors import DeviceError
from .logging_setup import configure_logging
from .records import find_user
from .reconcile import UserProfile, copy_user, delete_fingerprint, rewrite_user
from .session import USE_SETTINGS, SessionManager


def ask(prompt):
    try:
        return input(prompt).strip()
    except EOFError:
        return ''


def _port(args, i, settings):
    return int(args[i]) if len(args) > i else settings.device_port


def _need(args, names):
    """Positional values, prompting for the missing ones"""
    values = list(args[:len(names)])
    for name in names[len(values):]:
        values.append(ask(f"{name}: "))
    if not all(values):
        raise ValueError("Missing required arguments")
    return values


def dump_path(user_id):
    return Path(f"user_{user_id}.json")


class Tool:
    """One CLI invocation. manager is injectable for tests."""

    def __init__(self, settings=None, manager=None, out=print):
        self.settings = settings or Settings.from_env()
        self.manager = manager or SessionManager(settings=self.settings)
        self.out = out

    def connect(self, ip, port=None, password=USE_SETTINGS, bulk=False):
        if password is USE_SETTINGS:
            password = self.settings.password
        self.out(f"[*] Connecting to {ip}:{port or self.settings.device_port}...")
        return ZKClient.connect(ip, port or self.settings.device_port, password=password,
                                manager=self.manager, bulk=bulk)

    # ─── Commands ───

    def info(self, args):
        ip, = _need(args, ["Device IP"])
        with self.connect(ip, _port(args, 1, self.settings)) as client:
            info = client.query_device_info()
        width = max((len(k) for k in info), default=10)
        self.out("╔" + "═" * (width + 44) + "╗")
        for key in sorted(info):
            self.out(f"║  {key:<{width}}  {str(info[key])[:40]:<40s}║")
        self.out("╚" + "═" * (width + 44) + "╝")
        return 0

    def time(self, args):
        ip, = _need(args, ["Device IP"])
        with self.connect(ip, _port(args, 1, self.settings)) as client:
            t = client.get_time()
        drift = (t.to_datetime() - datetime.now()).total_seconds()
        self.out(f"Device time: {t}")
        self.out(f"PC time:     {datetime.now():%Y-%m-%d %H:%M:%S}")
        self.out(f"Drift:       {drift:+.0f}s")
        return 0

    def settime(self, args):
        ip, = _need(args, ["Device IP"])
        now = datetime.now().replace(microsecond=0)
        with self.connect(ip, _port(args, 1, self.settings)) as client:
            client.set_time(now)
            t = client.get_time()
        self.out(f"Device time set to {t}")
        return 0

    def users(self, args):
        ip, = _need(args, ["Device IP"])
        with self.connect(ip, _port(args, 1, self.settings), bulk=True) as client:
            users = client.fetch_users()
        self.out(f"{'UID':>5}  {'User ID':<12} {'Role':>4}  Name")
        for u in sorted(users, key=lambda u: u.uid):
            self.out(f"{u.uid:>5}  {u.user_id:<12} {u.role:>4}  {u.name}")
        self.out(f"{len(users)} users")
        return 0

    def dump(self, args):
        user_id, ip = _need(args, ["User ID", "Device IP"])
        with self.connect(ip, _port(args, 2, self.settings), bulk=True) as client:
            users = client.fetch_users()
            user = find_user(users, user_id)
            if user is None:
                self.out(f"User {user_id} not found on device")
                return 1
            templates = client.fetch_templates(user_id, users=users)
        path = dump_path(user_id)
        path.write_text(json.dumps({
            "user": user.to_dict(),
            "templates": [t.to_dict() for t in templates],
        }, indent=2), encoding="utf-8")
        self.out(f"Saved user {user_id} ({len(templates)} templates) to {path}")
        return 0

    def restore(self, args):
        user_id, ip = _need(args, ["User ID", "Device IP"])
        path = dump_path(user_id)
        data = json.loads(path.read_text(encoding="utf-8"))
        profile = UserProfile.from_dict(data["user"])
        templates = data.get("templates", [])
        with self.connect(ip, _port(args, 2, self.settings), bulk=True) as client:
            result = rewrite_user(client, user_id, profile, templates)
        self.out(f"Restored user {user_id} as uid {result.uid}: "
                 f"{result.written} templates written, {result.failed} failed")
        return 0 if result.success else 1

    def copy(self, args):
        user_id, source_ip, target_ip = _need(args, ["User ID", "Source Device IP",
                                                     "Target Device IP"])
        source = self.connect(source_ip, bulk=True)
        try:
            target = self.connect(target_ip, bulk=True)
        except DeviceError:
            source.close()
            raise
        try:
            result = copy_user(source, target, user_id)
        finally:
            source.close()
            target.close()
        self.out(f"Copied user {user_id} to {target_ip} (uid {result.uid}): "
                 f"{result.written} written, {result.failed} failed, "
                 f"{result.verified_templates} on target")
        return 0 if result.success else 1

    def delfinger(self, args):
        user_id, finger, ip = _need(args, ["User ID", "Finger index (0-9)", "Device IP"])
        finger = int(finger)
        with self.connect(ip, _port(args, 3, self.settings), bulk=True) as client:
            users = client.fetch_users()
            user = find_user(users, user_id)
            if user is None:
                self.out(f"User {user_id} not found on device")
                return 1
            templates = client.fetch_templates(user_id, users=users)
            if not any(t.finger_idx == finger for t in templates):
                self.out(f"User {user_id} has no template for finger {finger}")
                return 1
            result = delete_fingerprint(client, user_id, finger, UserProfile.from_user(user),
                                        templates, users=users)
        self.out(f"Removed finger {finger} from user {user_id}: "
                 f"{result.written} templates kept, {result.failed} failed")
        return 0 if result.success else 1

    def deluser(self, args):
        user_id, ip = _need(args, ["User ID", "Device IP"])
        with self.connect(ip, _port(args, 2, self.settings)) as client:
            user = find_user(client.fetch_users(), user_id)
            if user is None:
                self.out(f"User {user_id} not found on device")
                return 1
            client.delete_user(user.uid)
            client.refresh_data()
        self.out(f"Deleted user {user_id} (uid {user.uid})")
        return 0

    def passwd(self, args):
        ip, old, new = parse_passwd_args(args)
        if not ip:
            self.out("No arguments provided. Entering interactive mode...")
            ip = ask("Enter device IP address: ")
            if not ip:
                self.out("ERROR: IP address required.")
                return 1
            old = ask("Enter OLD password (leave empty if none): ") or None
            new = ask("Enter NEW password: ")
        if not new:
            self.out("ERROR: New password required.")
            return 1
        with self.connect(ip, password=int(old) if old else None) as client:
            acknowledged = client.set_com_password(int(new))
        if acknowledged:
            self.out(f"COM password changed on {ip}")
        else:
            self.out("WARNING: device did not acknowledge the change; verify by reconnecting")
        return 0

    COMMANDS = ("info", "time", "settime", "users", "dump", "restore", "copy",
                "delfinger", "deluser", "passwd")

    def run(self, argv):
        if not argv:
            self.out(__doc__)
            return 1
        cmd = argv[0].lower()
        if cmd not in self.COMMANDS:
            self.out(f"Unknown command: {cmd}")
            self.out(__doc__)
            return 1
        try:
            return getattr(self, cmd)(argv[1:])
        except DeviceError as e:
            self.out(f"ERROR: {e}")
            return 1
        except (ValueError, OSError, KeyError) as e:
            self.out(f"ERROR: {e}")
            return 1


def parse_passwd_args(args):
    """--ip/--old/--new flags, else positional <ip> [old|0] [new]"""
    if "--ip" in args:
        def flag(name):
            i = args.index(name) if name in args else -1
            return args[i + 1] if 0 <= i < len(args) - 1 else None
        return flag("--ip"), flag("--old"), flag("--new")
    ip = args[0] if args else None
    old = args[1] if len(args) > 1 and args[1] != '0' else None
    new = args[2] if len(args) > 2 else None
    return ip, old, new


def main(argv=None, settings=None, manager=None):
    settings = settings or Settings.from_env()
    configure_logging(settings.log_dir, console_level=logging.WARNING, ring=False)
    argv = sys.argv[1:] if argv is None else argv
    return Tool(settings, manager).run(argv)


def passwd_main(argv=None, settings=None, manager=None):
    argv = sys.argv[1:] if argv is None else argv
    return main(["passwd"] + list(argv), settings, manager)


def run():
    sys.exit(main())


def run_passwd():
    sys.exit(passwd_main())


if __name__ == '__main__':
    run()
