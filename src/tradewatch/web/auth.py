"""HTTP Basic gate for page routes.

The API is left open for the external writer. After one successful
challenge a fingerprint of the accepted credentials is stored in Flask's
signed session cookie, so later requests are not re-challenged until the
configured user or password changes.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Optional

from flask import Response, current_app, request, session

from tradewatch.web.context import services

SESSION_KEY = "basic_auth"
_OPEN_PREFIXES = ("/api/", "/static/")
_OPEN_PATHS = ("/favicon.ico",)


def _unauthorized(message: str = "Unauthorized") -> Response:
    return Response(
        message,
        status=401,
        headers={"WWW-Authenticate": 'Basic realm="Protected"'},
    )


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def credential_fingerprint(user: str, password: str) -> str:
    """Keyed digest of the credential pair, safe to keep in the cookie."""
    key = current_app.secret_key
    if isinstance(key, str):
        key = key.encode("utf-8")
    return hmac.new(
        key, f"{user}:{password}".encode("utf-8"), hashlib.sha256
    ).hexdigest()


def check_basic_auth() -> Optional[Response]:
    """``before_request`` hook; returns a response only to reject."""
    settings = services().settings
    if not settings.auth_enabled:
        return None
    path = request.path
    if path.startswith(_OPEN_PREFIXES) or path in _OPEN_PATHS:
        return None

    user = settings.basic_auth_user or ""
    password = settings.basic_auth_password or ""
    expected = credential_fingerprint(user, password)
    remembered = session.get(SESSION_KEY)
    if isinstance(remembered, str) and _same(remembered, expected):
        return None

    header = request.headers.get("Authorization", "")
    if not header.startswith("Basic "):
        return _unauthorized()
    try:
        decoded = base64.b64decode(
            header.split(" ", 1)[1].strip(), validate=True
        ).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return Response("Invalid authorization header", status=400)

    given_user, _, given_password = decoded.partition(":")
    if _same(given_user, user) and _same(given_password, password):
        session[SESSION_KEY] = expected
        return None
    session.pop(SESSION_KEY, None)
    return _unauthorized("Invalid credentials")
