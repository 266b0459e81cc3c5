from __future__ import annotations

import argparse
import getpass
import os
import sys
from dataclasses import dataclass
from typing import Callable, List, Optional

from leadauth.core.config import ClientConfig, ConfigError, ConfigFsPaths, ConfigManager
from leadauth.core.errors import AuthError, ErrorKind
from leadauth.core.events import EventLogger
from leadauth.core.identity.client import IdentityClient
from leadauth.core.logger import setup_logging
from leadauth.core.notifications.poller import NotificationPoller
from leadauth.core.recovery.machine import RecoveryStateMachine
from leadauth.core.session.manager import SessionManager
from leadauth.core.session.store import build_credential_store


@dataclass
class Core:
    cfg: ClientConfig
    client: IdentityClient
    session: SessionManager
    recovery: RecoveryStateMachine
    poller: NotificationPoller

    def close(self) -> None:
        self.poller.close()
        self.recovery.close()
        self.session.close()
        self.client.close()


def build_core(root: str = ".", *, http=None) -> Core:  # noqa: ANN001
    fs = ConfigFsPaths(root)
    cm = ConfigManager(fs=fs)
    cfg = cm.load_all()
    logger = setup_logging(fs.resolve(cfg.log_dir))
    cm.logger = logger
    events = EventLogger(fs.resolve(cfg.events_path))

    client = IdentityClient(cfg.api_base_url, timeout_seconds=cfg.request_timeout_seconds, http=http)
    store = build_credential_store(cfg.credential_store, resolve=fs.resolve)
    session = SessionManager(client=client, store=store, logger=logger, event_logger=events)
    recovery = RecoveryStateMachine.from_config(cfg, client=client, logger=logger, event_logger=events)
    poller = NotificationPoller(session_manager=session, interval_seconds=cfg.poll_interval_seconds, logger=logger)
    return Core(cfg=cfg, client=client, session=session, recovery=recovery, poller=poller)


def _fail(err: Optional[AuthError]) -> int:
    if err is None:
        print("Failed.")
        return 1
    msg = err.user_message
    if err.kind == ErrorKind.ACCOUNT_LOCKED and err.remaining_minutes is not None:
        msg = f"{msg} Try again in {err.remaining_minutes} minute(s)."
    left = err.context.get("attempts_left")
    if left is not None:
        msg = f"{msg} Attempts left: {left}."
    print(f"[{err.code}] {msg}")
    return 1


# ---------- commands ----------
def cmd_login(core: Core, args: argparse.Namespace) -> int:
    secret = getpass.getpass("Password: ")
    res = core.session.login(args.email, secret, service_scope=args.service, admin_only=args.admin)
    if not res.ok:
        return _fail(res.error)
    s = res.value
    print(f"Logged in as {s.user.get('email') or s.user_id} ({s.role.value}).")
    return 0


def cmd_register(core: Core, args: argparse.Namespace) -> int:
    secret = getpass.getpass("Password: ")
    if getpass.getpass("Confirm password: ") != secret:
        print("Passwords do not match.")
        return 1
    profile = {"email": args.email, "password": secret}
    if args.name:
        profile["name"] = args.name
    res = core.session.register(profile)
    if not res.ok:
        return _fail(res.error)
    print(f"Registered and logged in as {res.value.user.get('email') or res.value.user_id}.")
    return 0


def cmd_logout(core: Core, args: argparse.Namespace) -> int:
    core.session.restore()
    core.session.logout()
    print("Logged out.")
    return 0


def cmd_status(core: Core, args: argparse.Namespace) -> int:
    s = core.session.restore()
    if s is None:
        print("Not logged in.")
        return 1
    if args.profile:
        res = core.session.fetch_profile()
        if not res.ok:
            return _fail(res.error)
        s = res.value
    print(f"user_id: {s.user_id}")
    print(f"role:    {s.role.value}")
    if s.user.get("email"):
        print(f"email:   {s.user.get('email')}")
    return 0


def cmd_refresh(core: Core, args: argparse.Namespace) -> int:
    if core.session.restore() is None:
        print("Not logged in.")
        return 1
    res = core.session.refresh()
    if not res.ok:
        return _fail(res.error)
    print("Session refreshed.")
    return 0


def cmd_unread(core: Core, args: argparse.Namespace) -> int:
    if core.session.restore() is None:
        print("Not logged in.")
        return 1
    count = core.poller.refresh_now()
    if count is None:
        return _fail(core.poller.last_error)
    print(f"Unread notifications: {count}")
    return 0


def cmd_forgot_password(core: Core, args: argparse.Namespace, *, prompt: Callable[[str], str] = input, secret_prompt: Callable[[str], str] = getpass.getpass) -> int:
    rsm = core.recovery
    res = rsm.request_code(args.email, args.service)
    if not res.ok:
        return _fail(res.error)
    attempt = res.value
    print(f"A code was sent to {attempt.email}. It expires in {int(attempt.seconds_left(rsm.clock()) // 60)} minute(s).")

    token = None
    while token is None:
        code = prompt("Code (or 'r' to resend, 'q' to quit): ").strip()
        if code.lower() == "q":
            rsm.cancel()
            return 1
        if code.lower() == "r":
            rr = rsm.resend_code()
            if not rr.ok:
                _fail(rr.error)
                continue
            attempt = rr.value
            print("A new code was sent.")
            continue
        vr = rsm.verify_code(attempt, code)
        if vr.ok:
            token = vr.value
            break
        _fail(vr.error)
        if vr.kind in (ErrorKind.CODE_EXPIRED, ErrorKind.TOO_MANY_ATTEMPTS):
            print("Request a new code with 'r'.")

    while True:
        new = secret_prompt("New password: ")
        confirmation = secret_prompt("Confirm new password: ")
        rr = rsm.reset_password(token, new, confirmation)
        if rr.ok:
            print("Password changed. You can log in now.")
            return 0
        _fail(rr.error)
        if rr.kind != ErrorKind.VALIDATION_ERROR:
            return 1


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="leadauth", description="Session and password-recovery client for the CRM identity service")
    ap.add_argument("--root", default=os.environ.get("LEADAUTH_ROOT", "."), help="Directory holding config/, secure/ and logs/.")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("login", help="Log in and persist the session.")
    p.add_argument("email")
    p.add_argument("--service", default=None, help="Service scope (e.g. leadgen, invoice).")
    p.add_argument("--admin", action="store_true", help="Admin login (requires superadmin).")
    p.set_defaults(func=cmd_login)

    p = sub.add_parser("register", help="Create an account and log into it.")
    p.add_argument("email")
    p.add_argument("--name", default=None)
    p.set_defaults(func=cmd_register)

    p = sub.add_parser("logout", help="Forget the persisted session.")
    p.set_defaults(func=cmd_logout)

    p = sub.add_parser("status", help="Show the persisted session.")
    p.add_argument("--profile", action="store_true", help="Fetch the profile from the server first.")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("refresh", help="Exchange the refresh token for a new pair.")
    p.set_defaults(func=cmd_refresh)

    p = sub.add_parser("forgot-password", help="Reset a password with an emailed code.")
    p.add_argument("email")
    p.add_argument("--service", default=None)
    p.set_defaults(func=cmd_forgot_password)

    p = sub.add_parser("unread", help="Show the unread notification count.")
    p.set_defaults(func=cmd_unread)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        core = build_core(args.root)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 2
    try:
        return int(args.func(core, args))
    except KeyboardInterrupt:
        print()
        return 130
    except EOFError:
        # stdin closed at a prompt
        print()
        return 1
    finally:
        core.close()


if __name__ == "__main__":
    raise SystemExit(main())
