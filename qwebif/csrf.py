from __future__ import annotations

import secrets
from typing import Any, Mapping, MutableMapping

from markupsafe import Markup, escape


CSRF_SESSION_KEY = "csrf_token"
CSRF_FORM_FIELD = "csrf_token"


def current_token(session: MutableMapping[str, Any]) -> str:
    token = session.get(CSRF_SESSION_KEY)
    if not token or not isinstance(token, str):
        token = secrets.token_urlsafe(32)
        session[CSRF_SESSION_KEY] = token
    return token


def validate(session: Mapping[str, Any], presented: Any) -> bool:
    # Read only: a missing session token is a mismatch, never a reason to mint one.
    expected = session.get(CSRF_SESSION_KEY)
    if not expected or not isinstance(expected, str):
        return False
    if not presented or not isinstance(presented, str):
        return False
    return secrets.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def csrf_field(session: MutableMapping[str, Any]) -> Markup:
    token = current_token(session)
    return Markup(f'<input type="hidden" name="{CSRF_FORM_FIELD}" value="{escape(token)}" />')
