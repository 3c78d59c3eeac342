"""Typed access to the per-client session.

The session itself is the signed cookie dictionary provided by Starlette's
``SessionMiddleware``; everything stored here must stay JSON serializable.
A signed cookie can be replayed by the client, so session liveness and
unconsumed pending operations are tracked server side in ``SessionRegistry``.
"""

from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, MutableMapping

from qwebif.csrf import current_token
from qwebif.privilege import PRIVILEGE_KEY, PrivilegeLevel


SESSION_ID_KEY = "sid"
USER_KEY = "user"
PENDING_KEY = "pending_operation"


@dataclass(frozen=True)
class PendingOperation:
    """Handoff record read by the reboot-confirmation page."""

    kind: str
    requested_at: datetime
    op_id: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "requested_at": self.requested_at.isoformat(), "op_id": self.op_id}

    @classmethod
    def from_dict(cls, data: Any) -> "PendingOperation | None":
        if not isinstance(data, dict):
            return None
        kind = data.get("kind")
        stamp = data.get("requested_at")
        op_id = data.get("op_id")
        if not isinstance(kind, str) or not kind or not isinstance(stamp, str):
            return None
        if not isinstance(op_id, str) or not op_id:
            return None
        try:
            requested_at = datetime.fromisoformat(stamp)
        except ValueError:
            return None
        return cls(kind=kind, requested_at=requested_at, op_id=op_id)

    @classmethod
    def now(cls, kind: str) -> "PendingOperation":
        return cls(kind=kind, requested_at=datetime.now(timezone.utc), op_id=secrets.token_urlsafe(16))


class SessionRegistry:
    """Live session ids and outstanding pending operations, held in process memory."""

    def __init__(self, max_age: float) -> None:
        self.max_age = max_age
        self._lock = threading.Lock()
        self._sessions: dict[str, float] = {}
        self._pending: dict[str, str] = {}

    def open(self, sid: str) -> None:
        with self._lock:
            self._sessions[sid] = time.monotonic()

    def close(self, sid: str | None) -> None:
        if not sid:
            return
        with self._lock:
            self._sessions.pop(sid, None)
            self._pending = {op_id: owner for op_id, owner in self._pending.items() if owner != sid}

    def is_live(self, sid: str | None) -> bool:
        if not sid:
            return False
        with self._lock:
            started = self._sessions.get(sid)
            if started is None:
                return False
            if time.monotonic() - started > self.max_age:
                del self._sessions[sid]
                self._pending = {op_id: owner for op_id, owner in self._pending.items() if owner != sid}
                return False
            return True

    def issue(self, sid: str, op_id: str) -> None:
        with self._lock:
            self._pending[op_id] = sid

    def consume(self, sid: str | None, op_id: str) -> bool:
        with self._lock:
            if not sid or self._pending.get(op_id) != sid:
                return False
            del self._pending[op_id]
            return True


def start_session(
    session: MutableMapping[str, Any],
    registry: SessionRegistry,
    user: str,
    privilege: PrivilegeLevel,
) -> None:
    """Begin a new session lifecycle: fresh id, fresh anti-forgery token."""
    registry.close(session_id(session))
    session.clear()
    sid = secrets.token_urlsafe(16)
    session[SESSION_ID_KEY] = sid
    session[USER_KEY] = user
    session[PRIVILEGE_KEY] = int(privilege)
    current_token(session)
    registry.open(sid)


def end_session(session: MutableMapping[str, Any], registry: SessionRegistry) -> None:
    registry.close(session_id(session))
    session.clear()


def session_user(session: MutableMapping[str, Any]) -> str | None:
    user = session.get(USER_KEY)
    return user if isinstance(user, str) and user else None


def session_id(session: MutableMapping[str, Any]) -> str | None:
    sid = session.get(SESSION_ID_KEY)
    return sid if isinstance(sid, str) and sid else None


def set_pending_operation(
    session: MutableMapping[str, Any],
    registry: SessionRegistry,
    operation: PendingOperation,
) -> None:
    sid = session_id(session)
    if sid is None:
        raise ValueError("pending operation requires an established session")
    registry.issue(sid, operation.op_id)
    session[PENDING_KEY] = operation.to_dict()


def pop_pending_operation(session: MutableMapping[str, Any], registry: SessionRegistry) -> PendingOperation | None:
    """Remove the pending record; return it only if the server had not consumed it yet."""
    operation = PendingOperation.from_dict(session.pop(PENDING_KEY, None))
    if operation is None or not registry.consume(session_id(session), operation.op_id):
        return None
    return operation
