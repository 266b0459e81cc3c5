"""
SessionManager: the single source of truth for "who is logged in".

Concurrency:
- `_lock` guards the in-memory session, generation counter and listeners.
- `_flight` serializes network operations that create sessions
  (login/register/refresh). Listeners and logout run after it is released.
- refresh is single-flight: concurrent callers share one Future.
- every login/logout bumps `_generation`; results of requests started under an
  older generation are discarded, so a late response never resurrects a
  session that was logged out.
"""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from leadauth.core.errors import AuthError, ErrorKind, IdentityServiceError, Outcome, auth_error
from leadauth.core.events import NullEventLogger
from leadauth.core.logger import get_logger
from leadauth.core.session.models import ADMIN_ROLES, Role, Session, parse_role, session_from_login
from leadauth.core.session.store import CredentialStore


SessionListener = Callable[[str, Optional[Session]], None]

EVENT_LOGIN = "login"
EVENT_REFRESH = "refresh"
EVENT_LOGOUT = "logout"

_REQUEST_STATUS_KINDS = {401: ErrorKind.NOT_AUTHENTICATED}


def _role_of(role: Union[Role, str]) -> Role:
    return role if isinstance(role, Role) else parse_role(role)


class SessionManager:
    def __init__(
        self,
        *,
        client: Any,
        store: CredentialStore,
        logger=None,
        event_logger: Any = None,
        clock: Callable[[], float] = time.time,
        max_workers: int = 2,
    ):
        self.client = client
        self.store = store
        self.logger = logger or get_logger()
        self.event_logger = event_logger or NullEventLogger()
        self.clock = clock

        self._lock = threading.RLock()
        self._flight = threading.Lock()
        self._session: Optional[Session] = None
        self._generation = 0
        self._refresh_inflight: Optional["Future[Outcome[Session]]"] = None
        self._listeners: List[SessionListener] = []
        self._exec = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="session-io")

        if getattr(client, "credentials", None) is None and hasattr(client, "bind_credentials"):
            client.bind_credentials(self.auth_headers)

    # ---------- listeners ----------
    def add_listener(self, fn: SessionListener) -> None:
        with self._lock:
            if fn not in self._listeners:
                self._listeners.append(fn)

    def remove_listener(self, fn: SessionListener) -> None:
        with self._lock:
            if fn in self._listeners:
                self._listeners.remove(fn)

    def _notify(self, event: str, session: Optional[Session]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(event, session)
            except Exception as e:  # noqa: BLE001
                self.logger.warning(f"Session listener failed on {event}: {e}")

    # ---------- state ----------
    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def current(self) -> Optional[Session]:
        with self._lock:
            return self._session

    def restore(self) -> Optional[Session]:
        """Rehydrate the session persisted by a previous run, if any."""
        loaded = self.store.load()
        if loaded is None or not loaded.is_complete():
            return None
        with self._lock:
            if self._session is not None:
                return self._session
            self._generation += 1
            self._session = loaded
        self.logger.info(f"Session restored for user {loaded.user_id} ({loaded.role.value}).")
        self._notify(EVENT_LOGIN, loaded)
        return loaded

    def _persist(self, session: Session) -> None:
        try:
            self.store.save(session)
        except Exception as e:  # noqa: BLE001
            # in-memory session stays valid; it just won't survive a restart
            self.logger.warning(f"Credential store save failed: {e}")

    # ---------- predicates ----------
    def is_authenticated(self) -> bool:
        with self._lock:
            s = self._session
        return s is not None and s.is_complete()

    def has_role(self, role: Union[Role, str]) -> bool:
        s = self.current()
        return s is not None and s.role == _role_of(role)

    def has_any_role(self, roles: Iterable[Union[Role, str]]) -> bool:
        s = self.current()
        if s is None:
            return False
        return s.role in {_role_of(r) for r in roles}

    def is_partner(self) -> bool:
        return self.has_role(Role.partner)

    def is_superadmin(self) -> bool:
        return self.has_role(Role.superadmin)

    def is_user(self) -> bool:
        return self.has_role(Role.user)

    def auth_headers(self) -> Dict[str, str]:
        """Per-request credential injection; empty when logged out."""
        s = self.current()
        if s is None or not s.access_token:
            return {}
        return {"Authorization": f"Bearer {s.access_token}"}

    # ---------- login / register / logout ----------
    def login(self, identifier: str, secret: str, service_scope: Optional[str] = None, admin_only: bool = False) -> Outcome[Session]:
        if not str(identifier or "").strip() or not secret:
            return Outcome.fail(auth_error(ErrorKind.VALIDATION_ERROR, "Identifier and password are required."))
        return self._open_session(
            "login",
            lambda: self.client.login(identifier, secret, service_scope=service_scope, admin_only=admin_only),
            admin_only=admin_only,
        )

    def register(self, profile: Dict[str, Any]) -> Outcome[Session]:
        """
        Create an account and sign straight into it. The new session replaces
        any current one, exactly like a login.
        """
        if not isinstance(profile, dict):
            return Outcome.fail(auth_error(ErrorKind.VALIDATION_ERROR, "Registration data must be an object."))
        missing = [k for k in ("email", "password") if not str(profile.get(k) or "").strip()]
        if missing:
            return Outcome.fail(auth_error(ErrorKind.VALIDATION_ERROR, "Email and password are required.", fields=missing))
        return self._open_session("register", lambda: self.client.register(dict(profile)), admin_only=False)

    def _open_session(self, action: str, fetch: Callable[[], Any], *, admin_only: bool) -> Outcome[Session]:
        trace_id = uuid.uuid4().hex
        with self._flight:
            session, err = self._establish(fetch, admin_only=admin_only)
        if err is not None:
            return self._login_failed(trace_id, err, admin_only=admin_only, action=action)
        assert session is not None

        self.logger.info(f"Session opened via {action} for user {session.user_id} ({session.role.value}).")
        self._audit(trace_id, f"{action}_succeeded", {"user_id": session.user_id, "role": session.role.value, "admin_only": bool(admin_only)})
        self._notify(EVENT_LOGIN, session)
        return Outcome.success(session)

    def _establish(self, fetch: Callable[[], Any], *, admin_only: bool) -> Tuple[Optional[Session], Optional[AuthError]]:
        # runs under _flight: no listeners, no logout from here
        gen = self.generation
        try:
            resp = fetch()
        except IdentityServiceError as e:
            return None, e
        except Exception as e:  # noqa: BLE001
            return None, auth_error(ErrorKind.NETWORK_ERROR, detail=type(e).__name__)

        session = session_from_login(resp.tokens, resp.user, issued_at=self.clock())
        if not session.is_complete():
            return None, auth_error(ErrorKind.NETWORK_ERROR, "Login response was incomplete.")
        if admin_only and session.role not in ADMIN_ROLES:
            # password accepted but the account is not privileged
            return None, auth_error(ErrorKind.ACCESS_DENIED, role=session.role.value)

        with self._lock:
            if self._generation != gen:
                return None, auth_error(ErrorKind.NOT_AUTHENTICATED, "Login was cancelled.")
            self._generation += 1
            self._session = session
            self._persist(session)
        return session, None

    def _login_failed(self, trace_id: str, err: AuthError, *, admin_only: bool, action: str = "login") -> Outcome[Session]:
        if admin_only and err.kind == ErrorKind.ACCESS_DENIED:
            self._clear(reason="admin_login_denied")
        self.logger.warning(f"{action.capitalize()} failed: {err.code}")
        self._audit(trace_id, f"{action}_failed", {"error_code": err.code, "admin_only": bool(admin_only), "status": err.context.get("status")})
        return Outcome.fail(err)

    def logout(self) -> None:
        """Idempotent; never raises."""
        self._clear(reason="logout")

    def _clear(self, *, reason: str, only_generation: Optional[int] = None) -> bool:
        with self._lock:
            if only_generation is not None and self._generation != only_generation:
                return False
            prev = self._session
            self._session = None
            self._generation += 1
        try:
            self.store.clear()
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Credential store clear failed: {e}")
        if prev is not None:
            self.logger.info(f"Session ended ({reason}).")
            self._audit(uuid.uuid4().hex, "logout", {"user_id": prev.user_id, "reason": reason})
            self._notify(EVENT_LOGOUT, None)
        return True

    def _audit(self, trace_id: str, event_type: str, details: Dict[str, Any]) -> None:
        try:
            self.event_logger.log(trace_id, event_type, details)
        except Exception as e:  # noqa: BLE001
            # the session change already happened
            self.logger.warning(f"Audit event {event_type} not written: {e}")

    # ---------- refresh ----------
    def refresh(self) -> Outcome[Session]:
        with self._lock:
            fut = self._refresh_inflight
            owner = fut is None
            if owner:
                fut = Future()
                self._refresh_inflight = fut
        assert fut is not None
        if not owner:
            return fut.result()

        try:
            outcome = self._refresh_once()
        except Exception as e:  # noqa: BLE001
            self._clear(reason="refresh_failed")
            outcome = Outcome.fail(auth_error(ErrorKind.NETWORK_ERROR, detail=type(e).__name__))
        finally:
            with self._lock:
                self._refresh_inflight = None
        fut.set_result(outcome)
        return outcome

    def _refresh_once(self) -> Outcome[Session]:
        trace_id = uuid.uuid4().hex
        with self._flight:
            with self._lock:
                session = self._session
                gen = self._generation
            if session is None or not session.refresh_token:
                renewed, err = None, auth_error(ErrorKind.NOT_AUTHENTICATED, "No refresh token available.")
            else:
                renewed, err = self._exchange(session, gen)

        if session is None or not session.refresh_token:
            self._clear(reason="refresh_unavailable")
            return Outcome.fail(err)
        if err is not None:
            return self._refresh_failed(trace_id, err, gen)
        if renewed is None:
            return Outcome.fail(auth_error(ErrorKind.NOT_AUTHENTICATED, "Session ended during refresh."))

        self._audit(trace_id, "refresh_succeeded", {"user_id": renewed.user_id})
        self._notify(EVENT_REFRESH, renewed)
        return Outcome.success(renewed)

    def _exchange(self, session: Session, gen: int) -> Tuple[Optional[Session], Optional[AuthError]]:
        """Swap the refresh token for a new pair; (None, None) means the session moved on meanwhile."""
        try:
            tokens = self.client.refresh(session.refresh_token)
        except IdentityServiceError as e:
            return None, e
        except Exception as e:  # noqa: BLE001
            return None, auth_error(ErrorKind.NETWORK_ERROR, detail=type(e).__name__)

        with self._lock:
            if self._generation != gen or self._session is None:
                return None, None
            renewed = session.with_tokens(tokens, issued_at=self.clock())
            self._session = renewed
            self._persist(renewed)
        return renewed, None

    def _refresh_failed(self, trace_id: str, err: AuthError, gen: int) -> Outcome[Session]:
        # fail-safe: never keep a half-refreshed session
        self._clear(reason="refresh_failed", only_generation=gen)
        self.logger.warning(f"Token refresh failed: {err.code}")
        self._audit(trace_id, "refresh_failed", {"error_code": err.code})
        return Outcome.fail(err)

    # ---------- profile ----------
    def update_user(self, user: Dict[str, Any]) -> Outcome[Session]:
        with self._lock:
            s = self._session
            if s is None:
                return Outcome.fail(auth_error(ErrorKind.NOT_AUTHENTICATED))
            updated = s.with_user(user)
            self._session = updated
            self._persist(updated)
        return Outcome.success(updated)

    def fetch_profile(self) -> Outcome[Session]:
        res = self.request("GET", "/auth/profile")
        if not res.ok:
            return Outcome.fail(res.error)
        user = (res.value or {}).get("user")
        if not isinstance(user, dict):
            return Outcome.fail(auth_error(ErrorKind.NETWORK_ERROR, "Profile response carried no user."))
        return self.update_user(user)

    # ---------- authorized requests ----------
    def _call(self, method: str, path: str, json: Optional[Dict[str, Any]], params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        try:
            return self.client.call(method, path, json=json, params=params, status_kinds=_REQUEST_STATUS_KINDS)
        except IdentityServiceError:
            raise
        except Exception as e:  # noqa: BLE001
            raise IdentityServiceError(ErrorKind.NETWORK_ERROR, context={"path": path, "detail": type(e).__name__}) from e

    def request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None, params: Optional[Dict[str, Any]] = None) -> Outcome[Dict[str, Any]]:
        """
        Authenticated call through the identity client. A 401 triggers one
        (shared) refresh and a single retry; a failed refresh has already
        logged the session out.
        """
        if not self.is_authenticated():
            return Outcome.fail(auth_error(ErrorKind.NOT_AUTHENTICATED))
        gen = self.generation
        try:
            data = self._call(method, path, json, params)
        except IdentityServiceError as e:
            if e.context.get("status") != 401:
                return Outcome.fail(e)
            r = self.refresh()
            if not r.ok:
                return Outcome.fail(r.error)
            gen = self.generation
            try:
                data = self._call(method, path, json, params)
            except IdentityServiceError as e2:
                return Outcome.fail(e2)
        if self.generation != gen:
            return Outcome.fail(auth_error(ErrorKind.NOT_AUTHENTICATED, "Session ended during request."))
        return Outcome.success(data)

    # ---------- non-blocking variants ----------
    def login_async(self, identifier: str, secret: str, service_scope: Optional[str] = None, admin_only: bool = False) -> "Future[Outcome[Session]]":
        return self._exec.submit(self.login, identifier, secret, service_scope, admin_only)

    def register_async(self, profile: Dict[str, Any]) -> "Future[Outcome[Session]]":
        return self._exec.submit(self.register, profile)

    def refresh_async(self) -> "Future[Outcome[Session]]":
        return self._exec.submit(self.refresh)

    def close(self) -> None:
        """Stop worker threads. The session itself is left as-is."""
        self._exec.shutdown(wait=False, cancel_futures=True)
