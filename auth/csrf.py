"""
auth/csrf.py -- Double-submit-cookie CSRF check.

A fresh random nonce is written to the XSRF-TOKEN cookie on every response
(see api/main.py). The cookie is readable by page JavaScript, which copies it
into the X-CSRF-Token header on mutating requests. A cross-site attacker can
make the browser send the cookie but cannot read it, so cannot produce the
matching header.

Layer rule: no imports from api/. The cookie and header names are exported
so the transport layer uses the same spelling.
"""

from __future__ import annotations

import hmac
import secrets

from auth.errors import CsrfMismatch

CSRF_COOKIE_NAME = "XSRF-TOKEN"
CSRF_HEADER_NAME = "X-CSRF-Token"


def new_csrf_nonce() -> str:
    return secrets.token_urlsafe(32)


def verify_double_submit(cookie_value: str | None, header_value: str | None) -> None:
    """Raise CsrfMismatch unless both values are present and equal (constant-time)."""
    if not cookie_value or not header_value:
        raise CsrfMismatch()
    if not hmac.compare_digest(cookie_value.encode("utf-8"), header_value.encode("utf-8")):
        raise CsrfMismatch()
